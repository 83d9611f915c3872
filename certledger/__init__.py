"""
CertLedger: Compliance Evidence Ledger

An append-only, tamper-evident store for employee certifications.

- Certification records are never mutated; a correction is a new version
  that supersedes the current head, guarded by a compare-and-swap.
- Status (PASS / FAIL / INCOMPLETE) is derived at read time from record
  fields and an explicit evaluation instant, never cached.
- Point-in-time queries pin both the believed-current version and its
  evaluation to the same instant, so later corrections cannot change
  what was reported earlier.
- Every state change appends exactly one hash-chained ledger event in the
  same transaction.

Usage:
    from certledger import Actor, CertLedger, init_db

    init_db()
    ledger = CertLedger()
    clerk = Actor("hr-clerk-1")

    ledger.register_subject("E1", ["OSHA-10", "FALL-PROTECTION"], clerk)
    rec = ledger.create_certification(
        "E1", "OSHA-10",
        {"issue_date": "2024-01-01", "non_expiring": True, "proof_references": ["p1"]},
        clerk,
    )
    ledger.correct_certification(rec.id, "late upload", {"proof_references": ["p1", "p2"]}, clerk)

    decision = ledger.employee_enforcement_state("E1")
    decision.state    # EnforcementState.PENDING (FALL-PROTECTION has no record yet)
"""

__version__ = "1.0.0"

from .catalog import CertificationCatalog, CertificationType, default_catalog, load_catalog
from .chain import CorrectionChainManager, HeadIndexReport
from .core import CertLedger
from .db import init_db, set_db_path
from .enforcement import EnforcementAggregator, EnforcementDecision, aggregate
from .errors import CertLedgerError, ConflictError, IntegrityError, NotFoundError, ValidationError
from .ledger import ChainVerification, EventLedger, LedgerEventStream
from .models import (
    Actor,
    CertificationRecord,
    CertificationStatus,
    EnforcementState,
    EntityType,
    EventType,
    EvidenceNode,
    LedgerEvent,
    SnapshotStatus,
    VerificationEvent,
)
from .snapshot import SnapshotEngine
from .status import derive_status, failure_reason
from .subjects import SubjectRegistry
from .verification import NOT_SUBSCRIBED_MARKER, VerificationRecorder, present_verification

__all__ = [
    # Version
    "__version__",

    # Facade
    "CertLedger",
    "init_db",
    "set_db_path",

    # Model
    "Actor",
    "CertificationRecord",
    "CertificationStatus",
    "SnapshotStatus",
    "EnforcementState",
    "EntityType",
    "EventType",
    "EvidenceNode",
    "LedgerEvent",
    "VerificationEvent",

    # Catalog
    "CertificationCatalog",
    "CertificationType",
    "default_catalog",
    "load_catalog",

    # Components
    "derive_status",
    "failure_reason",
    "CorrectionChainManager",
    "HeadIndexReport",
    "EventLedger",
    "LedgerEventStream",
    "ChainVerification",
    "SnapshotEngine",
    "EnforcementAggregator",
    "EnforcementDecision",
    "aggregate",
    "VerificationRecorder",
    "present_verification",
    "NOT_SUBSCRIBED_MARKER",
    "SubjectRegistry",

    # Errors
    "CertLedgerError",
    "ValidationError",
    "ConflictError",
    "NotFoundError",
    "IntegrityError",
]
