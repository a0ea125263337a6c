"""
Data model for medaudit.

Records and audit entries are frozen once built. Metadata fields that
reach storage are length-bounded so accepted values fit their region's
encoded size limit.
"""

from enum import Enum
from typing import List

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from .util import b64d, b64e

COMPLIANCE_FLAGS = ["FDA_AUDIT", "HIPAA_LOG"]

MAX_METADATA_FIELD_LENGTH = 256
MAX_PRINCIPAL_LENGTH = 256


class AuditAction(str, Enum):
    RECORD_CREATED = "RECORD_CREATED"
    COMPLIANCE_REPORT_GENERATED = "COMPLIANCE_REPORT_GENERATED"


class PatientMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    anonymized_id: str = Field(max_length=MAX_METADATA_FIELD_LENGTH)
    age_range: str = Field(max_length=MAX_METADATA_FIELD_LENGTH)
    study_type: str = Field(max_length=MAX_METADATA_FIELD_LENGTH)
    acquisition_date: str = Field(max_length=MAX_METADATA_FIELD_LENGTH)


class Finding(BaseModel):
    model_config = ConfigDict(frozen=True)

    finding: str
    location: str
    severity: str
    confidence: float = Field(ge=0.0, le=1.0)


class Record(BaseModel):
    """A finalized, signed classification result."""
    model_config = ConfigDict(frozen=True)

    id: int
    diagnosis: str
    confidence_score: float = Field(ge=0.0, le=1.0)
    findings: List[Finding] = Field(default_factory=list)
    timestamp: int
    signature: bytes
    public_key: bytes
    fda_compliant: bool
    hipaa_compliant: bool
    model_version: str
    patient_metadata: PatientMetadata

    @field_validator("signature", "public_key", mode="before")
    @classmethod
    def _decode_b64(cls, v):
        # JSON carries key material as base64 text
        if isinstance(v, str):
            return b64d(v)
        return v

    @field_serializer("signature", "public_key")
    def _encode_b64(self, v: bytes) -> str:
        return b64e(v)


class AuditEntry(BaseModel):
    """Immutable log line for an action taken against a record."""
    model_config = ConfigDict(frozen=True)

    id: int
    record_id: int
    action: AuditAction
    timestamp: int
    principal: str
    details: str
    compliance_flags: List[str] = Field(default_factory=lambda: list(COMPLIANCE_FLAGS))


class ComplianceReport(BaseModel):
    record_id: int
    fda_status: str
    hipaa_status: str
    audit_trail_complete: bool
    signature_verified: bool
    regulatory_notes: List[str]
    certification_level: str
    generated_timestamp: int


class ImageAnalysisMetrics(BaseModel):
    image_size_kb: int
    processing_time_ms: int
    model_inference_time_ms: int
    preprocessing_time_ms: int
    quality_score: float


class HealthSummary(BaseModel):
    status: str
    records: int
    audit_entries: int
    model_version: str

    def summary(self) -> str:
        return (
            f"Medical AI System Status: {self.status} | Records: {self.records} "
            f"| Audit Entries: {self.audit_entries} | Model: {self.model_version}"
        )


# Request bodies

class CreateRecordRequest(BaseModel):
    content_b64: str
    patient_metadata: PatientMetadata


class VerifyResponse(BaseModel):
    record_id: int
    verified: bool
