
import os
from typing import Any, Dict

from .config import S3_BUCKET, S3_LEGAL_HOLD, S3_PREFIX, S3_RETENTION_DAYS
from .errors import StorageError
from .util import canonicalize


class AuditMirror:
    """Secondary write-once destination for committed audit envelopes."""

    def write_entry(self, envelope: Dict[str, Any]) -> None:
        raise NotImplementedError


class NullMirror(AuditMirror):
    def write_entry(self, envelope: Dict[str, Any]) -> None:
        return None


class S3ObjectLockMirror(AuditMirror):
    """Writes each audit envelope as a separate immutable object to an S3 bucket with Object Lock.
    Requires bucket with Object Lock enabled.
    Docs: https://docs.aws.amazon.com/AmazonS3/latest/userguide/object-lock.html
    """
    def __init__(self, bucket: str, prefix: str, retention_days: int, legal_hold: str = "OFF"):
        self.bucket = bucket
        self.prefix = prefix.rstrip("/") + "/"
        self.retention_days = retention_days
        self.legal_hold = legal_hold
        self._client = None

    def _get_client(self):
        if self._client is None:
            try:
                import boto3
            except ImportError as e:
                raise RuntimeError("boto3 required for S3 Object Lock mirroring. Install with: pip install 'medaudit[aws]'") from e
            self._client = boto3.client("s3")
        return self._client

    def write_entry(self, envelope: Dict[str, Any]) -> None:
        from datetime import datetime, timedelta, timezone

        entry = envelope["entry"]
        key = f"{self.prefix}{entry['id']:020d}-{entry['action']}-{entry['record_id']}.json"
        retain_until = datetime.now(timezone.utc) + timedelta(days=int(self.retention_days))
        try:
            self._get_client().put_object(
                Bucket=self.bucket,
                Key=key,
                Body=canonicalize(envelope),
                ContentType="application/json",
                ObjectLockMode="COMPLIANCE",
                ObjectLockRetainUntilDate=retain_until,
                ObjectLockLegalHoldStatus=self.legal_hold
            )
        except RuntimeError:
            raise
        except Exception as e:
            raise StorageError(f"audit mirror write failed for entry {entry['id']}: {e}") from e


def get_audit_mirror(backend: str = "none") -> AuditMirror:
    if backend == "s3_object_lock":
        bucket = os.getenv("S3_BUCKET", S3_BUCKET)
        if not bucket:
            raise ValueError("S3_BUCKET required for s3_object_lock audit mirror")
        return S3ObjectLockMirror(
            bucket=bucket,
            prefix=os.getenv("S3_PREFIX", S3_PREFIX),
            retention_days=int(os.getenv("S3_RETENTION_DAYS", str(S3_RETENTION_DAYS))),
            legal_hold=os.getenv("S3_LEGAL_HOLD", S3_LEGAL_HOLD),
        )
    if backend != "none":
        raise ValueError(f"Unknown audit mirror backend: {backend}")
    return NullMirror()
