"""
Compliance report generation.

A report is derived from a stored record on demand and never persisted.
Generating one is the only read path with a write side effect: it appends
a COMPLIANCE_REPORT_GENERATED entry to the audit trail.
"""

import asyncio
from typing import Callable, List

from .errors import NotFoundError
from .logging_config import audit_log
from .models import AuditAction, AuditEntry, ComplianceReport, Record
from .signing import SigningClient, record_message
from .store import AuditStore, RecordStore
from .util import now_ns

FDA_COMPLIANT = "COMPLIANT - FDA 21 CFR Part 820"
HIPAA_COMPLIANT = "COMPLIANT - HIPAA Privacy Rule"
NON_COMPLIANT = "NON_COMPLIANT"
CERTIFICATION_LEVEL = "Class II Medical Device Software"
REGULATORY_NOTES: List[str] = [
    "Medical AI system meets FDA software as medical device requirements",
    "Patient data anonymized per HIPAA standards",
    "Cryptographic signatures ensure data integrity",
]
REPORT_DETAILS = "FDA compliance report requested"

AppendAudit = Callable[[int, AuditAction, str, str], AuditEntry]


class ComplianceReportGenerator:
    """
    Assembles compliance reports for stored records.

    `audit_trail_complete` and `signature_verified` are recomputed on every
    call: the first requires a RECORD_CREATED entry for the record and an
    intact audit hash chain, the second a valid signature under the stored
    public key.
    """

    def __init__(
        self,
        records: RecordStore,
        audit: AuditStore,
        signer: SigningClient,
        append_audit: AppendAudit
    ):
        self._records = records
        self._audit = audit
        self._signer = signer
        self._append_audit = append_audit

    def _audit_trail_complete(self, record: Record) -> bool:
        trail = self._audit.list_by_record(record.id)
        created = any(e.action == AuditAction.RECORD_CREATED for e in trail)
        chain_ok, _ = self._audit.verify_chain()
        return created and chain_ok

    async def _signature_verified(self, record: Record) -> bool:
        return await self._signer.verify_message(
            record_message(record), record.signature, record.public_key
        )

    async def generate(self, record_id: int, principal: str) -> ComplianceReport:
        """
        Build a report for `record_id` and log its generation.

        Raises:
            NotFoundError: If the record does not exist
            SigningError: If the oracle cannot be reached for verification
        """
        record = self._records.get(record_id)
        if record is None:
            raise NotFoundError("Record not found")

        signature_verified = await self._signature_verified(record)
        # full chain walk; kept off the event loop
        audit_trail_complete = await asyncio.to_thread(self._audit_trail_complete, record)

        entry = self._append_audit(
            record_id, AuditAction.COMPLIANCE_REPORT_GENERATED, principal, REPORT_DETAILS
        )
        audit_log.compliance_report_generated(record_id, entry.id, principal, signature_verified)

        return ComplianceReport(
            record_id=record_id,
            fda_status=FDA_COMPLIANT if record.fda_compliant else NON_COMPLIANT,
            hipaa_status=HIPAA_COMPLIANT if record.hipaa_compliant else NON_COMPLIANT,
            audit_trail_complete=audit_trail_complete,
            signature_verified=signature_verified,
            regulatory_notes=list(REGULATORY_NOTES),
            certification_level=CERTIFICATION_LEVEL,
            generated_timestamp=now_ns(),
        )
