"""
Error taxonomy for medaudit.

Every failure surfaced by the record pipeline or the query surface is one
of these, carrying a human-readable message.
"""


class MedAuditError(Exception):
    """Base class for all medaudit failures."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(MedAuditError):
    """Raised when submitted content falls outside the accepted size bounds."""


class ClassificationError(MedAuditError):
    """Raised when a classifier produces an unusable result."""


class SigningError(MedAuditError):
    """Raised when the signing oracle fails, times out, or returns nothing."""


class NotFoundError(MedAuditError):
    """Raised when a record ID does not exist."""


class StorageError(MedAuditError):
    """Raised when a value cannot be written to a store."""


class CorruptDataError(StorageError):
    """Raised when persisted bytes cannot be decoded. Always fatal."""
