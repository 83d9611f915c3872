"""
Logging configuration for the evidence ledger.

Provides structured JSON logging and an audit logger with one method per
ledger event, so operators can alert on integrity violations.
"""

import json
import logging
import sys
import time
import uuid
from contextvars import ContextVar
from typing import List, Optional

# Context variable for request ID tracking
request_id_var: ContextVar[str] = ContextVar('request_id', default='')


class StructuredFormatter(logging.Formatter):
    """JSON formatter for log aggregation systems."""

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
    Logger for ledger events.

    Every write path reports here after its transaction commits;
    integrity violations are logged at CRITICAL.
    """

    def __init__(self, name: str = "certledger.audit"):
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

    def certification_created(self, record_id: str, subject_id: str, type_id: str,
                              actor_id: str) -> None:
        self._log(
            logging.INFO,
            "CERTIFICATION_CREATED",
            record_id=record_id,
            subject_id=subject_id,
            type_id=type_id,
            actor_id=actor_id,
            message=f"Certification {type_id} created for {subject_id}"
        )

    def certification_corrected(self, record_id: str, supersedes: str, reason: str,
                                actor_id: str) -> None:
        self._log(
            logging.INFO,
            "CERTIFICATION_CORRECTED",
            record_id=record_id,
            supersedes=supersedes,
            reason=reason,
            actor_id=actor_id,
            message=f"Record {supersedes} superseded by {record_id}"
        )

    def correction_conflict(self, record_id: str, current_head_id: Optional[str],
                            actor_id: str) -> None:
        self._log(
            logging.WARNING,
            "CORRECTION_CONFLICT",
            record_id=record_id,
            current_head_id=current_head_id,
            actor_id=actor_id,
            message=f"Correction rejected: {record_id} is no longer the chain head"
        )

    def verification_recorded(self, verification_id: str, subject_id: str, method: str,
                              enforcement_state: str) -> None:
        self._log(
            logging.INFO,
            "VERIFICATION_RECORDED",
            verification_id=verification_id,
            subject_id=subject_id,
            method=method,
            enforcement_state=enforcement_state,
            message=f"Verification scan recorded for {subject_id}"
        )

    def integrity_violation(self, detail: str, subject_id: Optional[str] = None,
                            type_id: Optional[str] = None) -> None:
        """Integrity violations require manual audit."""
        self._log(
            logging.CRITICAL,
            "INTEGRITY_VIOLATION",
            subject_id=subject_id,
            type_id=type_id,
            detail=detail,
            message=f"Integrity violation: {detail}"
        )

    def head_index_rebuilt(self, chains: int, drifted: List[str]) -> None:
        level = logging.WARNING if drifted else logging.INFO
        self._log(
            level,
            "HEAD_INDEX_REBUILT",
            chains=chains,
            drifted=drifted,
            message=f"Head index rebuilt for {chains} chains, {len(drifted)} drifted"
        )

    def audit_package_exported(self, package_id: str, subjects: int, location: str) -> None:
        self._log(
            logging.INFO,
            "AUDIT_PACKAGE_EXPORTED",
            package_id=package_id,
            subjects=subjects,
            location=location,
            message=f"Audit package {package_id} exported to {location}"
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
    """Set the request ID for the current context, generating one if needed."""
    if request_id is None:
        request_id = str(uuid.uuid4())
    request_id_var.set(request_id)
    return request_id


# Global audit logger instance
audit_log = AuditLogger()
