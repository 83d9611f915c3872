"""
Error types for the compliance evidence ledger.

Validation, conflict and not-found errors are user-actionable and surface
directly to callers. IntegrityError signals tampering or a defect and is
never retried or repaired automatically.
"""

from typing import Optional


class CertLedgerError(Exception):
    """Base class for all ledger errors."""


class ValidationError(CertLedgerError):
    """Raised when input is malformed. Nothing has been written."""

    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


class ConflictError(CertLedgerError):
    """Raised when a correction targets a record that is no longer the chain head."""

    def __init__(self, record_id: str, current_head_id: Optional[str] = None,
                 message: str = "this record changed since you loaded it"):
        self.record_id = record_id
        self.current_head_id = current_head_id
        super().__init__(message)


class NotFoundError(CertLedgerError):
    """Raised when a referenced subject, record or evidence node does not exist."""

    def __init__(self, kind: str, key: str):
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} not found: {key}")


class IntegrityError(CertLedgerError):
    """
    Fatal, non-retryable integrity violation.

    Raised for chain cycles, dangling or out-of-order supersedes links,
    branched chains, and writes against quarantined chains.
    """

    def __init__(self, message: str, subject_id: Optional[str] = None,
                 type_id: Optional[str] = None):
        self.subject_id = subject_id
        self.type_id = type_id
        super().__init__(message)
