import base64
import binascii
import logging
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from .config import CREATE_RPM, LOG_JSON, LOG_LEVEL, validate_config
from .errors import (
    ClassificationError,
    CorruptDataError,
    MedAuditError,
    NotFoundError,
    SigningError,
    StorageError,
    ValidationError,
)
from .logging_config import audit_log, configure_logging, set_request_id
from .models import (
    MAX_PRINCIPAL_LENGTH,
    AuditEntry,
    ComplianceReport,
    CreateRecordRequest,
    Record,
    VerifyResponse,
)
from .rate_limit import RateLimiter
from .service import DEFAULT_PRINCIPAL, RecordService

app = FastAPI(title="medaudit - signed medical records")
logger = logging.getLogger(__name__)

create_limiter = RateLimiter(CREATE_RPM)
SERVICE: Optional[RecordService] = None

ERROR_STATUS = [
    (NotFoundError, 404),
    (ValidationError, 422),
    (ClassificationError, 422),
    (SigningError, 502),
    (CorruptDataError, 500),
    (StorageError, 500),
]


@app.on_event("startup")
def _startup():
    global SERVICE
    configure_logging(LOG_LEVEL, json_format=LOG_JSON)
    missing = [name for name, ok in validate_config().items() if not ok]
    if missing:
        logger.warning("Configuration incomplete: %s", ", ".join(missing))
    if SERVICE is None:
        SERVICE = RecordService.from_settings()


@app.on_event("shutdown")
def _shutdown():
    if SERVICE is not None:
        SERVICE.close()


def get_service() -> RecordService:
    if SERVICE is None:
        _startup()
    return SERVICE


@app.middleware("http")
async def request_context(request: Request, call_next):
    rid = set_request_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = rid
    return response


@app.exception_handler(MedAuditError)
async def medaudit_error(request: Request, exc: MedAuditError):
    status = next((code for cls, code in ERROR_STATUS if isinstance(exc, cls)), 500)
    return JSONResponse(status_code=status, content={"error": type(exc).__name__, "message": exc.message})


@app.post("/records", response_model=Record)
async def create_record(
    req: CreateRecordRequest,
    x_caller_id: str = Header(default=DEFAULT_PRINCIPAL, max_length=MAX_PRINCIPAL_LENGTH),
    service: RecordService = Depends(get_service),
):
    limit = create_limiter.check(x_caller_id)
    if not limit.allowed:
        audit_log.rate_limit_exceeded(x_caller_id, "/records")
        raise HTTPException(429, "RATE_LIMIT", headers={"Retry-After": str(int(limit.retry_after or 0) + 1)})
    try:
        data = base64.b64decode(req.content_b64, validate=True)
    except (binascii.Error, ValueError):
        raise HTTPException(422, "INVALID_CONTENT_ENCODING")
    return await service.create_record(data, req.patient_metadata, principal=x_caller_id)


@app.get("/records", response_model=List[Record])
def list_records(service: RecordService = Depends(get_service)):
    return service.list_records()


@app.get("/records/{record_id}", response_model=Record)
def get_record(record_id: int, service: RecordService = Depends(get_service)):
    record = service.get_record(record_id)
    if record is None:
        raise HTTPException(404, "NOT_FOUND")
    return record


@app.get("/records/{record_id}/audit", response_model=List[AuditEntry])
def record_audit_trail(record_id: int, service: RecordService = Depends(get_service)):
    return service.list_audit_entries_for_record(record_id)


@app.get("/records/{record_id}/verify", response_model=VerifyResponse)
async def verify_record(record_id: int, service: RecordService = Depends(get_service)):
    verified = await service.verify_signature(record_id)
    return VerifyResponse(record_id=record_id, verified=verified)


@app.post("/records/{record_id}/compliance_report", response_model=ComplianceReport)
async def compliance_report(
    record_id: int,
    x_caller_id: str = Header(default=DEFAULT_PRINCIPAL, max_length=MAX_PRINCIPAL_LENGTH),
    service: RecordService = Depends(get_service),
):
    return await service.compliance_report(record_id, principal=x_caller_id)


@app.get("/audit", response_model=List[AuditEntry])
def audit_trail(service: RecordService = Depends(get_service)):
    return service.list_audit_entries()


@app.get("/audit/proof")
def audit_proof(service: RecordService = Depends(get_service)):
    return service.audit_proof()


@app.get("/health")
def health(service: RecordService = Depends(get_service)):
    h = service.health()
    return {**h.model_dump(), "summary": h.summary()}
