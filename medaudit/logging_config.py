"""
Logging configuration for medaudit.

Provides structured JSON logging for audit trails and debugging.
"""

import json
import logging
import sys
import time
import uuid
from contextvars import ContextVar
from typing import Optional

from .util import mask_sensitive

# Context variable for request ID tracking
request_id_var: ContextVar[str] = ContextVar('request_id', default='')


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs logs in a consistent JSON format suitable for
    log aggregation systems like ELK, Splunk, or CloudWatch.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": time.strftime('%Y-%m-%dT%H:%M:%SZ', time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        request_id = request_id_var.get()
        if request_id:
            log_data["request_id"] = request_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, 'extra_fields'):
            log_data.update(record.extra_fields)

        return json.dumps(log_data, default=str)


class AuditLogger:
    """
    Specialized logger for audit events.

    Mirrors every state change of the record pipeline into the
    operational log. The persisted audit trail remains the source of truth.
    """

    def __init__(self, name: str = "medaudit.audit"):
        self._logger = logging.getLogger(name)

    def _log(self, level: int, event_type: str, **kwargs) -> None:
        extra = {
            "event_type": event_type,
            "request_id": request_id_var.get(),
            **kwargs
        }

        record = self._logger.makeRecord(
            self._logger.name,
            level,
            "",
            0,
            f"{event_type}: {kwargs.get('message', '')}",
            (),
            None
        )
        record.extra_fields = extra
        self._logger.handle(record)

    def record_created(
        self,
        record_id: int,
        audit_id: int,
        diagnosis: str,
        anonymized_id: str,
        principal: str
    ) -> None:
        """Log a committed record."""
        self._log(
            logging.INFO,
            "RECORD_CREATED",
            record_id=record_id,
            audit_id=audit_id,
            diagnosis=diagnosis,
            patient=mask_sensitive(anonymized_id),
            principal=principal,
            message=f"Record {record_id} committed"
        )

    def validation_rejected(self, size: int, reason: str) -> None:
        """Log content rejected by the validator."""
        self._log(
            logging.WARNING,
            "VALIDATION_REJECTED",
            size=size,
            reason=reason,
            message=f"Content rejected: {reason}"
        )

    def signing_failed(self, reason: str) -> None:
        """Log a signing oracle failure."""
        self._log(
            logging.ERROR,
            "SIGNING_FAILED",
            reason=reason,
            message=f"Signing failed: {reason}"
        )

    def compliance_report_generated(
        self,
        record_id: int,
        audit_id: int,
        principal: str,
        signature_verified: bool
    ) -> None:
        """Log a compliance report generation."""
        self._log(
            logging.INFO,
            "COMPLIANCE_REPORT_GENERATED",
            record_id=record_id,
            audit_id=audit_id,
            principal=principal,
            signature_verified=signature_verified,
            message=f"Compliance report generated for record {record_id}"
        )

    def storage_corruption(self, region: str, key: int, reason: str) -> None:
        """Log undecodable persisted data."""
        self._log(
            logging.CRITICAL,
            "STORAGE_CORRUPTION",
            region=region,
            key=key,
            reason=reason,
            message=f"Corrupt value in {region} at key {key}"
        )

    def rate_limit_exceeded(
        self,
        client_id: str,
        endpoint: str
    ) -> None:
        """Log rate limit exceeded."""
        self._log(
            logging.WARNING,
            "RATE_LIMIT_EXCEEDED",
            client_id=client_id,
            endpoint=endpoint,
            message=f"Rate limit exceeded for {client_id} on {endpoint}"
        )


def configure_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None
) -> None:
    """
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON formatting (recommended for production)
        log_file: Optional file path for log output
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


def set_request_id(request_id: Optional[str] = None) -> str:
    """
    Set the request ID for the current context.

    Args:
        request_id: Request ID to set, or None to generate one

    Returns:
        The request ID that was set
    """
    if request_id is None:
        request_id = str(uuid.uuid4())
    request_id_var.set(request_id)
    return request_id


# Global audit logger instance
audit_log = AuditLogger()
