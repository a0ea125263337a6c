"""
medaudit - signed medical classification records with an append-only audit trail.
"""

__version__ = "0.1.0"

from .errors import (
    ClassificationError,
    CorruptDataError,
    MedAuditError,
    NotFoundError,
    SigningError,
    StorageError,
    ValidationError,
)
from .models import AuditAction, AuditEntry, ComplianceReport, Finding, PatientMetadata, Record
from .service import RecordService

__all__ = [
    "AuditAction",
    "AuditEntry",
    "ClassificationError",
    "ComplianceReport",
    "CorruptDataError",
    "Finding",
    "MedAuditError",
    "NotFoundError",
    "PatientMetadata",
    "Record",
    "RecordService",
    "SigningError",
    "StorageError",
    "ValidationError",
]
