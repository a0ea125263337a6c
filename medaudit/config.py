"""
Configuration module for medaudit.

Centralizes all configuration with environment variable support
and validation. Module-level constants reflect the environment at import
time; `Settings.from_env()` takes a fresh snapshot that is injected into
the record service.
"""

import os
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple
from pathlib import Path

# ============================================================
# Environment Configuration
# ============================================================

ENV = os.getenv("MEDAUDIT_ENV", "dev")  # dev|stage|prod

# Storage
DB_PATH = os.getenv("DB_PATH", "data/medaudit.db")

# Rate limits (requests per minute)
CREATE_RPM = int(os.getenv("CREATE_RPM", "120"))

# Content bounds (bytes)
MIN_CONTENT_BYTES = 1024
MAX_CONTENT_BYTES = 50 * 1024 * 1024

# Classifier
MODEL_VERSION = "MedicalAI-v2.1.0"
CLASSIFIER_BUCKET_MODE = os.getenv("CLASSIFIER_BUCKET_MODE", "numeric")  # numeric|legacy_prefix

# Signing configuration
SIGNER_TYPE = os.getenv("MEDAUDIT_SIGNER", "local")  # local|aws_kms
SIGNING_KEY_PATH = os.getenv("SIGNING_KEY_PATH", "secrets/medaudit_signing_key.json")
SIGNING_KEY_NAME = os.getenv("SIGNING_KEY_NAME", "medaudit_record_key")
SIGNING_DERIVATION_PATH: Tuple[bytes, ...] = ()
SIGNING_TIMEOUT_SECONDS = float(os.getenv("SIGNING_TIMEOUT_SECONDS", "30"))
AWS_KMS_KEY_ID = os.getenv("AWS_KMS_KEY_ID", "")
AWS_REGION = os.getenv("AWS_REGION", "")

# Audit mirror
AUDIT_MIRROR_BACKEND = os.getenv("AUDIT_MIRROR_BACKEND", "none")  # none|s3_object_lock
S3_BUCKET = os.getenv("S3_BUCKET", "")
S3_PREFIX = os.getenv("S3_PREFIX", "medaudit/audit-log/")
S3_RETENTION_DAYS = int(os.getenv("S3_RETENTION_DAYS", "2555"))
S3_LEGAL_HOLD = os.getenv("S3_LEGAL_HOLD", "OFF")

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_JSON = os.getenv("LOG_JSON", "1").lower() in ("1", "true", "yes")


@dataclass(frozen=True)
class Settings:
    """Immutable snapshot of the service configuration."""

    db_path: str = DB_PATH
    create_rpm: int = CREATE_RPM
    min_content_bytes: int = MIN_CONTENT_BYTES
    max_content_bytes: int = MAX_CONTENT_BYTES
    model_version: str = MODEL_VERSION
    classifier_bucket_mode: str = CLASSIFIER_BUCKET_MODE
    signer_type: str = SIGNER_TYPE
    signing_key_path: Optional[str] = SIGNING_KEY_PATH
    signing_key_name: str = SIGNING_KEY_NAME
    signing_derivation_path: Tuple[bytes, ...] = field(default=SIGNING_DERIVATION_PATH)
    signing_timeout_seconds: float = SIGNING_TIMEOUT_SECONDS
    aws_kms_key_id: str = AWS_KMS_KEY_ID
    aws_region: str = AWS_REGION
    audit_mirror_backend: str = AUDIT_MIRROR_BACKEND

    @classmethod
    def from_env(cls) -> "Settings":
        """Read the current environment, falling back to module defaults."""
        return cls(
            db_path=os.getenv("DB_PATH", DB_PATH),
            create_rpm=int(os.getenv("CREATE_RPM", str(CREATE_RPM))),
            classifier_bucket_mode=os.getenv("CLASSIFIER_BUCKET_MODE", CLASSIFIER_BUCKET_MODE),
            signer_type=os.getenv("MEDAUDIT_SIGNER", SIGNER_TYPE),
            signing_key_path=os.getenv("SIGNING_KEY_PATH", SIGNING_KEY_PATH),
            signing_key_name=os.getenv("SIGNING_KEY_NAME", SIGNING_KEY_NAME),
            signing_timeout_seconds=float(os.getenv("SIGNING_TIMEOUT_SECONDS", str(SIGNING_TIMEOUT_SECONDS))),
            aws_kms_key_id=os.getenv("AWS_KMS_KEY_ID", AWS_KMS_KEY_ID),
            aws_region=os.getenv("AWS_REGION", AWS_REGION),
            audit_mirror_backend=os.getenv("AUDIT_MIRROR_BACKEND", AUDIT_MIRROR_BACKEND),
        )


# ============================================================
# Validation
# ============================================================

def validate_config(settings: Optional[Settings] = None) -> Dict[str, bool]:
    """
    Validate that all required configuration is present.
    Returns dict of name -> present.
    """
    settings = settings or Settings.from_env()
    checks = {"db_dir": Path(settings.db_path).parent.exists() or settings.db_path == ":memory:"}

    if settings.signer_type == "local" and settings.signing_key_path:
        checks["signing_key"] = Path(settings.signing_key_path).exists()
    if settings.signer_type == "aws_kms":
        checks["aws_kms_key_id"] = bool(settings.aws_kms_key_id)

    return checks


# ============================================================
# Feature Flags
# ============================================================

def is_production() -> bool:
    """Check if running in production mode."""
    return ENV == "prod"
