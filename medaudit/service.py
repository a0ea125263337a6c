"""
Record service for medaudit.

Owns the stores, ID allocators, signing client and classifier, and runs
the record pipeline:

    Validating -> Classifying -> Signing -> Committed

A failure in any of the first three states leaves every store untouched.
Commit (ID allocation, record insert, audit append) happens under one
lock and one database transaction, so record IDs and audit IDs are
assigned in the same order the records become visible. A failed commit
releases the IDs it took. Size limits of both regions are checked against
a draft before the oracle is called.
"""

import threading
from typing import Any, Dict, List, Optional

from .audit_backends import AuditMirror, NullMirror, get_audit_mirror
from .classifier import Classifier, check_classification, get_classifier
from .compliance import REPORT_DETAILS, ComplianceReportGenerator
from .config import Settings
from .db import Database
from .errors import ClassificationError, NotFoundError, SigningError, ValidationError
from .ids import IdAllocator
from .logging_config import audit_log
from .models import (
    COMPLIANCE_FLAGS,
    MAX_PRINCIPAL_LENGTH,
    AuditAction,
    AuditEntry,
    ComplianceReport,
    HealthSummary,
    PatientMetadata,
    Record,
)
from .signing import SigningClient, canonical_message, get_signing_client, record_message
from .store import open_stores
from .util import now_ns
from .validator import validate_content

DEFAULT_PRINCIPAL = "anonymous"

# Widest values a draft is sized with: largest sqlite rowid, and room for a
# DER-encoded secp256k1 signature or public key
DRAFT_ID = 2 ** 63 - 1
SIGNATURE_RESERVE = b"\x00" * 128


class RecordService:
    """Explicit context object behind every operation; construct once per process."""

    def __init__(
        self,
        settings: Settings,
        db: Database,
        signer: SigningClient,
        classifier: Optional[Classifier] = None,
        mirror: Optional[AuditMirror] = None
    ):
        self.settings = settings
        self._db = db
        self._signer = signer
        self._classifier = classifier or get_classifier(settings.classifier_bucket_mode)
        self._mirror = mirror or NullMirror()
        self.records, self.audit = open_stores(db)

        # Seed from storage so IDs are never reused across restarts
        self._record_ids = IdAllocator(self.records.max_id() + 1)
        self._audit_ids = IdAllocator(self.audit.max_id() + 1)
        self._commit_lock = threading.RLock()

        self.compliance = ComplianceReportGenerator(
            self.records, self.audit, signer, self._append_audit
        )

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "RecordService":
        settings = settings or Settings.from_env()
        return cls(
            settings,
            Database(settings.db_path),
            get_signing_client(settings),
            mirror=get_audit_mirror(settings.audit_mirror_backend),
        )

    # ============================================================
    # Record pipeline
    # ============================================================

    def _classify(self, data: bytes):
        try:
            return check_classification(self._classifier.classify(data))
        except ClassificationError:
            raise
        except Exception as e:
            raise ClassificationError(f"Classifier failed: {e}") from e

    async def create_record(
        self,
        data: bytes,
        metadata: PatientMetadata,
        principal: str = DEFAULT_PRINCIPAL
    ) -> Record:
        """
        Validate, classify, sign and commit a new record.

        Raises:
            ValidationError: Content outside the size bounds
            ClassificationError: Classifier failure
            SigningError: Oracle failure or timeout
        """
        timestamp = now_ns()

        try:
            validate_content(data, self.settings.min_content_bytes, self.settings.max_content_bytes)
            self._check_principal(principal)
            result = self._classify(data)
            details = f"Medical image analyzed: {result.label}"
            self._check_storable(
                self._build_record(DRAFT_ID, result, timestamp, SIGNATURE_RESERVE, SIGNATURE_RESERVE, metadata),
                self._build_entry(DRAFT_ID, DRAFT_ID, AuditAction.RECORD_CREATED, principal, details),
            )
        except ValidationError as e:
            audit_log.validation_rejected(len(data), e.message)
            raise

        message = canonical_message(
            result.label, result.confidence, timestamp, metadata.anonymized_id
        )

        try:
            signature, public_key = await self._signer.sign_message(message)
        except SigningError as e:
            audit_log.signing_failed(e.message)
            raise

        with self._commit_lock:
            record_id = self._record_ids.allocate()
            try:
                with self._db.transaction():
                    record = self._build_record(record_id, result, timestamp, signature, public_key, metadata)
                    self.records.insert(record)
                    entry = self._append_audit(record.id, AuditAction.RECORD_CREATED, principal, details)
            except Exception:
                self._record_ids.release(record_id)
                raise

        audit_log.record_created(record.id, entry.id, record.diagnosis, metadata.anonymized_id, principal)
        return record

    def _build_record(self, record_id, result, timestamp, signature, public_key, metadata) -> Record:
        return Record(
            id=record_id,
            diagnosis=result.label,
            confidence_score=result.confidence,
            findings=list(result.findings),
            timestamp=timestamp,
            signature=signature,
            public_key=public_key,
            fda_compliant=True,
            hipaa_compliant=True,
            model_version=self.settings.model_version,
            patient_metadata=metadata,
        )

    @staticmethod
    def _build_entry(audit_id, record_id, action, principal, details) -> AuditEntry:
        return AuditEntry(
            id=audit_id,
            record_id=record_id,
            action=action,
            timestamp=now_ns(),
            principal=principal,
            details=details,
            compliance_flags=list(COMPLIANCE_FLAGS),
        )

    @staticmethod
    def _check_principal(principal: str) -> None:
        if len(principal) > MAX_PRINCIPAL_LENGTH:
            raise ValidationError(f"Caller identity too long - maximum {MAX_PRINCIPAL_LENGTH} characters")

    def _check_storable(self, record: Optional[Record], entry: AuditEntry) -> None:
        """Reject values that could not be committed, before the oracle is called."""
        if record is not None and not self.records.fits(record):
            raise ValidationError("Record too large to store")
        if not self.audit.fits(entry):
            raise ValidationError("Audit entry too large to store")

    def _append_audit(
        self,
        record_id: int,
        action: AuditAction,
        principal: str,
        details: str
    ) -> AuditEntry:
        with self._commit_lock:
            audit_id = self._audit_ids.allocate()
            try:
                with self._db.transaction():
                    entry = self._build_entry(audit_id, record_id, action, principal, details)
                    envelope = self.audit.append(entry)
                    self._mirror.write_entry(envelope)
            except Exception:
                self._audit_ids.release(audit_id)
                raise
        return entry

    # ============================================================
    # Query surface
    # ============================================================

    def get_record(self, record_id: int) -> Optional[Record]:
        return self.records.get(record_id)

    def _require_record(self, record_id: int) -> Record:
        record = self.records.get(record_id)
        if record is None:
            raise NotFoundError("Record not found")
        return record

    def list_records(self) -> List[Record]:
        return self.records.list()

    def list_audit_entries(self) -> List[AuditEntry]:
        return self.audit.list()

    def list_audit_entries_for_record(self, record_id: int) -> List[AuditEntry]:
        self._require_record(record_id)
        return self.audit.list_by_record(record_id)

    async def verify_signature(self, record_id: int) -> bool:
        """
        True iff the record carries a signature that verifies under its
        stored public key over the rebuilt canonical message.
        """
        record = self._require_record(record_id)
        if not record.signature:
            return False
        return await self._signer.verify_message(
            record_message(record), record.signature, record.public_key
        )

    async def compliance_report(
        self,
        record_id: int,
        principal: str = DEFAULT_PRINCIPAL
    ) -> ComplianceReport:
        """
        Raises:
            ValidationError: Caller identity too long to be logged
            NotFoundError: Unknown record
        """
        self._check_principal(principal)
        self._check_storable(
            None,
            self._build_entry(DRAFT_ID, record_id, AuditAction.COMPLIANCE_REPORT_GENERATED, principal, REPORT_DETAILS),
        )
        return await self.compliance.generate(record_id, principal)

    def health(self) -> HealthSummary:
        return HealthSummary(
            status="HEALTHY",
            records=self.records.count(),
            audit_entries=self.audit.count(),
            model_version=self.settings.model_version,
        )

    def health_summary(self) -> str:
        return self.health().summary()

    def audit_proof(self) -> Dict[str, Any]:
        return self.audit.proof()

    def close(self) -> None:
        self._db.close()
