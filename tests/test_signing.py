import asyncio
import hashlib

import pytest
from nacl.signing import VerifyKey

from medaudit.config import Settings
from medaudit.errors import SigningError
from medaudit.signing import (
    AwsKmsOracle,
    KeyRef,
    LocalEd25519Oracle,
    SigningClient,
    canonical_message,
    format_confidence,
    get_signing_oracle,
)
from conftest import KEY_NAME, load_tool, run


class BrokenKeyOracle(LocalEd25519Oracle):
    async def get_public_key(self, key_ref):
        raise RuntimeError("key service unavailable")


class BrokenSignOracle(LocalEd25519Oracle):
    async def sign(self, key_ref, digest):
        raise RuntimeError("quota exceeded")


class EmptySignatureOracle(LocalEd25519Oracle):
    async def sign(self, key_ref, digest):
        return b""


class StalledOracle(LocalEd25519Oracle):
    async def sign(self, key_ref, digest):
        await asyncio.sleep(10)
        return b"late"


def client_for(oracle_cls, timeout=2.0):
    oracle = oracle_cls.generate(KEY_NAME)
    return SigningClient(oracle, KeyRef(KEY_NAME), timeout_seconds=timeout)


def test_canonical_message_composition():
    msg = canonical_message("Possible pleural effusion - Suggest further imaging", 0.78, 1700000000000000000, "P001")
    assert msg == "Possible pleural effusion - Suggest further imaging|0.78|1700000000000000000|P001"


@pytest.mark.parametrize("value, text", [
    (1.0, "1"),
    (0.0, "0"),
    (1e-05, "0.00001"),
    (0.78, "0.78"),
    (0.92, "0.92"),
    (0.5, "0.5"),
])
def test_confidence_rendering(value, text):
    assert format_confidence(value) == text


def test_integral_confidence_in_message():
    assert canonical_message("L", 1.0, 5, "P001") == "L|1|5|P001"
    assert canonical_message("L", 1e-05, 5, "P001") == "L|0.00001|5|P001"


def test_signature_covers_sha256_of_message():
    signer = client_for(LocalEd25519Oracle)
    msg = canonical_message("label", 0.92, 123, "P001")
    signature, public_key = run(signer.sign_message(msg))
    assert signature and public_key
    digest = hashlib.sha256(msg.encode("utf-8")).digest()
    VerifyKey(public_key).verify(digest, signature)


def test_verify_message_detects_tampering():
    signer = client_for(LocalEd25519Oracle)
    msg = canonical_message("label", 0.92, 123, "P001")
    signature, public_key = run(signer.sign_message(msg))
    assert run(signer.verify_message(msg, signature, public_key)) is True
    assert run(signer.verify_message(msg.replace("P001", "P002"), signature, public_key)) is False
    assert run(signer.verify_message(msg, b"", public_key)) is False


def test_public_key_failure_maps_to_signing_error():
    with pytest.raises(SigningError) as exc:
        run(client_for(BrokenKeyOracle).sign_message("m"))
    assert exc.value.message.startswith("Failed to get public key")
    assert "key service unavailable" in exc.value.message


def test_sign_failure_maps_to_signing_error():
    with pytest.raises(SigningError) as exc:
        run(client_for(BrokenSignOracle).sign_message("m"))
    assert exc.value.message.startswith("Failed to create signature")


def test_empty_signature_is_an_error():
    with pytest.raises(SigningError):
        run(client_for(EmptySignatureOracle).sign_message("m"))


def test_stalled_oracle_times_out():
    with pytest.raises(SigningError) as exc:
        run(client_for(StalledOracle, timeout=0.05).sign_message("m"))
    assert "timed out" in exc.value.message


def test_unknown_key_name_rejected():
    oracle = LocalEd25519Oracle.generate(KEY_NAME)
    signer = SigningClient(oracle, KeyRef("other_key"))
    with pytest.raises(SigningError):
        run(signer.sign_message("m"))


def test_derivation_path_rejected():
    oracle = LocalEd25519Oracle.generate(KEY_NAME)
    signer = SigningClient(oracle, KeyRef(KEY_NAME, (b"tenant-1",)))
    with pytest.raises(SigningError):
        run(signer.sign_message("m"))


class FakeKms:
    class exceptions:
        class KMSInvalidSignatureException(Exception):
            pass

    def __init__(self):
        self.calls = []

    def get_public_key(self, **kw):
        self.calls.append(("get_public_key", kw))
        return {"PublicKey": b"der-public-key"}

    def sign(self, **kw):
        self.calls.append(("sign", kw))
        return {"Signature": b"der-signature"}

    def verify(self, **kw):
        self.calls.append(("verify", kw))
        if kw["Signature"] != b"der-signature":
            raise self.exceptions.KMSInvalidSignatureException()
        return {"SignatureValid": True}


def test_kms_oracle_signs_digest_with_ecdsa_sha256():
    kms = FakeKms()
    oracle = AwsKmsOracle(kms_key_id="key-123")
    oracle._client = kms
    signer = SigningClient(oracle, KeyRef(KEY_NAME))

    signature, public_key = run(signer.sign_message("m"))
    assert (signature, public_key) == (b"der-signature", b"der-public-key")

    name, kw = kms.calls[1]
    assert name == "sign"
    assert kw["KeyId"] == "key-123"
    assert kw["MessageType"] == "DIGEST"
    assert kw["SigningAlgorithm"] == "ECDSA_SHA_256"
    assert kw["Message"] == hashlib.sha256(b"m").digest()


def test_kms_oracle_verification():
    oracle = AwsKmsOracle()
    oracle._client = FakeKms()
    signer = SigningClient(oracle, KeyRef(KEY_NAME))
    assert run(signer.verify_message("m", b"der-signature", b"der-public-key")) is True
    assert run(signer.verify_message("m", b"forged", b"der-public-key")) is False
    assert run(signer.verify_message("m", b"der-signature", b"other-key")) is False


def test_kms_alias_from_key_name():
    kms = FakeKms()
    oracle = AwsKmsOracle()
    oracle._client = kms
    run(oracle.get_public_key(KeyRef("records")))
    assert kms.calls[0][1]["KeyId"] == "alias/records"


def test_factory_ephemeral_local_key(tmp_path):
    settings = Settings(signing_key_path=str(tmp_path / "missing.json"), signer_type="local")
    assert isinstance(get_signing_oracle(settings), LocalEd25519Oracle)


def test_factory_loads_key_file(tmp_path):
    path = str(tmp_path / "key.json")
    pub_b64 = load_tool("gen_keys").generate(path, KEY_NAME)
    oracle = get_signing_oracle(Settings(signing_key_path=path, signing_key_name=KEY_NAME))
    import base64
    assert run(oracle.get_public_key(KeyRef(KEY_NAME))) == base64.b64decode(pub_b64)


def test_factory_kms_and_unknown():
    assert isinstance(get_signing_oracle(Settings(signer_type="aws_kms")), AwsKmsOracle)
    with pytest.raises(ValueError):
        get_signing_oracle(Settings(signer_type="hsm"))
