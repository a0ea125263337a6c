"""
Signing module for medaudit.

Records are signed by an external, asynchronous signing oracle that holds
the private key. The oracle is a capability: a local Ed25519 key for
development and tests, or an AWS KMS secp256k1 key in production.

Protocol for every record:
1. Retrieve the public key for the fixed key name and empty derivation path.
2. Request a signature over SHA-256(canonical message).
Nothing is persisted unless both steps succeed.
"""

import asyncio
import json
import logging
from decimal import Decimal
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

from nacl.signing import SigningKey, VerifyKey
from nacl.exceptions import BadSignatureError

from .config import Settings, is_production
from .errors import SigningError
from .util import b64d, sha256_bytes

logger = logging.getLogger(__name__)

MESSAGE_DELIMITER = "|"


@dataclass(frozen=True)
class KeyRef:
    """Named oracle key plus its derivation path."""
    name: str
    derivation_path: Tuple[bytes, ...] = ()


def format_confidence(value: float) -> str:
    """
    Shortest round-trip decimal for a confidence, in plain notation.

    Integral values carry no fractional part and exponents are expanded:
    1.0 -> "1", 0.0 -> "0", 1e-05 -> "0.00001", 0.78 -> "0.78".
    """
    text = format(Decimal(repr(float(value))), "f")
    if text.endswith(".0"):
        text = text[:-2]
    return text


def canonical_message(label: str, confidence: float, timestamp: int, anonymized_id: str) -> str:
    """
    Build the message that is signed for a record.

    The composition is part of the signing protocol; any consumer
    verifying record signatures rebuilds it exactly this way.
    """
    return MESSAGE_DELIMITER.join([label, format_confidence(confidence), str(timestamp), anonymized_id])


def record_message(record) -> str:
    """Rebuild the canonical message a stored record was signed over."""
    return canonical_message(
        record.diagnosis,
        record.confidence_score,
        record.timestamp,
        record.patient_metadata.anonymized_id,
    )


class SigningOracle(ABC):
    """Abstract interface for the external signing oracle."""

    @abstractmethod
    async def get_public_key(self, key_ref: KeyRef) -> bytes:
        """Return the public key bytes for `key_ref`."""
        pass

    @abstractmethod
    async def sign(self, key_ref: KeyRef, digest: bytes) -> bytes:
        """Sign a 32-byte message digest and return the signature bytes."""
        pass

    @abstractmethod
    async def verify(self, key_ref: KeyRef, public_key: bytes, digest: bytes, signature: bytes) -> bool:
        """Check a signature over `digest` against `public_key`."""
        pass


class LocalEd25519Oracle(SigningOracle):
    """
    In-process oracle backed by a PyNaCl Ed25519 key.

    Only the configured key name with an empty derivation path is served.
    """

    def __init__(self, signing_key: SigningKey, key_name: str):
        self._sk = signing_key
        self._key_name = key_name

    @classmethod
    def from_file(cls, path: str, key_name: Optional[str] = None) -> "LocalEd25519Oracle":
        """Load a key file written by tools/gen_keys.py."""
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
        return cls(SigningKey(b64d(raw["private_key_b64"])), key_name or raw["kid"])

    @classmethod
    def generate(cls, key_name: str) -> "LocalEd25519Oracle":
        """Create an oracle around a fresh, unpersisted key."""
        return cls(SigningKey.generate(), key_name)

    def _check_ref(self, key_ref: KeyRef) -> None:
        if key_ref.name != self._key_name:
            raise KeyError(f"unknown key name {key_ref.name!r}")
        if key_ref.derivation_path:
            raise ValueError("key derivation is not supported")

    async def get_public_key(self, key_ref: KeyRef) -> bytes:
        self._check_ref(key_ref)
        return bytes(self._sk.verify_key)

    async def sign(self, key_ref: KeyRef, digest: bytes) -> bytes:
        self._check_ref(key_ref)
        return self._sk.sign(digest).signature

    async def verify(self, key_ref: KeyRef, public_key: bytes, digest: bytes, signature: bytes) -> bool:
        try:
            VerifyKey(public_key).verify(digest, signature)
            return True
        except (BadSignatureError, ValueError, TypeError):
            return False


class AwsKmsOracle(SigningOracle):
    """
    AWS KMS oracle using an ECC_SECG_P256K1 key.

    Signs pre-computed digests with ECDSA_SHA_256 and MessageType DIGEST.
    Blocking boto3 calls run in a worker thread.

    Docs: https://docs.aws.amazon.com/kms/latest/APIReference/API_Sign.html
    """

    SIGNING_ALGORITHM = "ECDSA_SHA_256"

    def __init__(self, kms_key_id: str = "", region: Optional[str] = None):
        self._kms_key_id = kms_key_id
        self._region = region or None
        self._client = None

    def _get_client(self):
        """Lazy-load boto3 client."""
        if self._client is None:
            try:
                import boto3
            except ImportError as e:
                raise RuntimeError(
                    "boto3 required for AWS KMS signing. Install with: pip install 'medaudit[aws]'"
                ) from e
            self._client = boto3.client("kms", region_name=self._region)
        return self._client

    def _key_id(self, key_ref: KeyRef) -> str:
        if key_ref.derivation_path:
            raise ValueError("key derivation is not supported")
        return self._kms_key_id or f"alias/{key_ref.name}"

    async def get_public_key(self, key_ref: KeyRef) -> bytes:
        client = self._get_client()
        resp = await asyncio.to_thread(client.get_public_key, KeyId=self._key_id(key_ref))
        return resp["PublicKey"]

    async def sign(self, key_ref: KeyRef, digest: bytes) -> bytes:
        client = self._get_client()
        resp = await asyncio.to_thread(
            client.sign,
            KeyId=self._key_id(key_ref),
            Message=digest,
            MessageType="DIGEST",
            SigningAlgorithm=self.SIGNING_ALGORITHM,
        )
        return resp["Signature"]

    async def verify(self, key_ref: KeyRef, public_key: bytes, digest: bytes, signature: bytes) -> bool:
        # KMS verifies with its own copy of the key; a record signed under a
        # different key must not pass.
        if public_key != await self.get_public_key(key_ref):
            return False
        client = self._get_client()
        try:
            resp = await asyncio.to_thread(
                client.verify,
                KeyId=self._key_id(key_ref),
                Message=digest,
                MessageType="DIGEST",
                Signature=signature,
                SigningAlgorithm=self.SIGNING_ALGORITHM,
            )
        except client.exceptions.KMSInvalidSignatureException:
            return False
        return bool(resp.get("SignatureValid"))


class SigningClient:
    """
    Runs the two-step signing protocol against an oracle.

    Every oracle failure, including a timeout, surfaces as SigningError.
    """

    def __init__(self, oracle: SigningOracle, key_ref: KeyRef, timeout_seconds: float = 30.0):
        self._oracle = oracle
        self._key_ref = key_ref
        self._timeout = timeout_seconds

    async def _call(self, what: str, coro):
        try:
            return await asyncio.wait_for(coro, timeout=self._timeout)
        except asyncio.TimeoutError as e:
            raise SigningError(f"{what}: timed out after {self._timeout}s") from e
        except SigningError:
            raise
        except Exception as e:
            raise SigningError(f"{what}: {e!r}") from e

    async def sign_message(self, message: str) -> Tuple[bytes, bytes]:
        """
        Sign a canonical message.

        Returns:
            Tuple of (signature, public_key)

        Raises:
            SigningError: If either oracle call fails or returns nothing
        """
        public_key = await self._call(
            "Failed to get public key", self._oracle.get_public_key(self._key_ref)
        )
        if not public_key:
            raise SigningError("Failed to get public key: oracle returned an empty key")

        digest = sha256_bytes(message)
        signature = await self._call(
            "Failed to create signature", self._oracle.sign(self._key_ref, digest)
        )
        if not signature:
            raise SigningError("Failed to create signature: oracle returned an empty signature")

        return bytes(signature), bytes(public_key)

    async def verify_message(self, message: str, signature: bytes, public_key: bytes) -> bool:
        """Check a stored signature against the message it should cover."""
        if not signature or not public_key:
            return False
        digest = sha256_bytes(message)
        return bool(await self._call(
            "Failed to verify signature",
            self._oracle.verify(self._key_ref, public_key, digest, signature),
        ))


def get_signing_oracle(settings: Settings) -> SigningOracle:
    """
    Factory function to create the configured signing oracle.

    Outside production a missing local key file falls back to an
    ephemeral key, so signatures do not survive a restart.
    """
    if settings.signer_type == "aws_kms":
        return AwsKmsOracle(kms_key_id=settings.aws_kms_key_id, region=settings.aws_region)
    if settings.signer_type != "local":
        raise ValueError(f"Unknown signer type: {settings.signer_type}")

    path = settings.signing_key_path
    if path and Path(path).exists():
        return LocalEd25519Oracle.from_file(path, key_name=settings.signing_key_name)
    if is_production():
        raise RuntimeError(f"Signing key file not found: {path}")

    logger.warning("Signing key %s not found; using an ephemeral key", path)
    return LocalEd25519Oracle.generate(settings.signing_key_name)


def get_signing_client(settings: Settings, oracle: Optional[SigningOracle] = None) -> SigningClient:
    """Wire a SigningClient for the configured key name and derivation path."""
    key_ref = KeyRef(name=settings.signing_key_name, derivation_path=settings.signing_derivation_path)
    return SigningClient(
        oracle or get_signing_oracle(settings),
        key_ref,
        timeout_seconds=settings.signing_timeout_seconds,
    )
