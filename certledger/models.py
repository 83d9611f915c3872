"""
Evidence store data model.

Every type here is an immutable value. Records are created, never updated:
a correction is a new CertificationRecord whose ``supersedes`` names the
version it replaces.
"""

import json
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional

from .errors import ValidationError
from .util import format_date, format_ts, parse_date, parse_ts


class CertificationStatus(str, Enum):
    """Status derived from a single record at an instant."""
    PASS = "PASS"
    FAIL = "FAIL"
    INCOMPLETE = "INCOMPLETE"


class SnapshotStatus(str, Enum):
    """Point-in-time status. UNKNOWN means no record existed yet."""
    PASS = "PASS"
    FAIL = "FAIL"
    INCOMPLETE = "INCOMPLETE"
    UNKNOWN = "UNKNOWN"


class EnforcementState(str, Enum):
    """Employee-level work authorization."""
    CLEARED = "CLEARED"
    BLOCKED = "BLOCKED"
    PENDING = "PENDING"


class EntityType(str, Enum):
    EMPLOYEE = "employee"
    CERTIFICATION = "certification"
    ORGANIZATION = "organization"


class EventType(str, Enum):
    CERTIFICATION_CREATED = "certification_created"
    CERTIFICATION_CORRECTED = "certification_corrected"
    SUBJECT_REGISTERED = "subject_registered"
    REQUIREMENTS_ADDED = "requirements_added"
    VERIFIED = "verified"
    CHAIN_QUARANTINED = "chain_quarantined"


# Fields a correction may change. Identity and chain fields are fixed.
CORRECTABLE_FIELDS = frozenset({
    "issuing_authority",
    "issue_date",
    "expiration_date",
    "non_expiring",
    "proof_references",
})

SYSTEM_ACTOR_ID = "system:automated"


def chain_key(subject_id: str, type_id: str) -> str:
    """Entity id of the evidence node that anchors one correction chain."""
    return f"{subject_id}::{type_id}"


@dataclass(frozen=True)
class Actor:
    """A resolved identity performing a write."""
    actor_id: str
    actor_type: str = "user"

    def __post_init__(self):
        if not self.actor_id or not str(self.actor_id).strip():
            raise ValidationError("actor_id", "anonymous writes are not allowed")
        if not self.actor_type or not str(self.actor_type).strip():
            raise ValidationError("actor_type", "cannot be empty")

    @classmethod
    def system(cls) -> "Actor":
        return cls(actor_id=SYSTEM_ACTOR_ID, actor_type="system")


@dataclass(frozen=True)
class CertificationRecord:
    """One immutable version of a certification."""
    id: str
    subject_id: str
    type_id: str
    created_at: datetime
    created_by: str
    issuing_authority: Optional[str] = None
    issue_date: Optional[date] = None
    expiration_date: Optional[date] = None
    non_expiring: bool = False
    proof_references: FrozenSet[str] = field(default_factory=frozenset)
    supersedes: Optional[str] = None
    correction_reason: Optional[str] = None
    corrected_by: Optional[str] = None
    corrected_at: Optional[datetime] = None

    def __post_init__(self):
        if self.supersedes and not (self.correction_reason or "").strip():
            raise ValidationError("correction_reason", "required when superseding a record")

    @property
    def has_proof(self) -> bool:
        return len(self.proof_references) > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "subject_id": self.subject_id,
            "type_id": self.type_id,
            "issuing_authority": self.issuing_authority,
            "issue_date": format_date(self.issue_date),
            "expiration_date": format_date(self.expiration_date),
            "non_expiring": self.non_expiring,
            "proof_references": sorted(self.proof_references),
            "created_at": format_ts(self.created_at),
            "created_by": self.created_by,
            "supersedes": self.supersedes,
            "correction_reason": self.correction_reason,
            "corrected_by": self.corrected_by,
            "corrected_at": format_ts(self.corrected_at) if self.corrected_at else None,
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "CertificationRecord":
        return cls(
            id=row["id"],
            subject_id=row["subject_id"],
            type_id=row["type_id"],
            issuing_authority=row["issuing_authority"],
            issue_date=parse_date(row["issue_date"]),
            expiration_date=parse_date(row["expiration_date"]),
            non_expiring=bool(row["non_expiring"]),
            proof_references=frozenset(json.loads(row["proof_references"])),
            created_at=parse_ts(row["created_at"]),
            created_by=row["created_by"],
            supersedes=row["supersedes"],
            correction_reason=row["correction_reason"],
            corrected_by=row["corrected_by"],
            corrected_at=parse_ts(row["corrected_at"]) if row["corrected_at"] else None,
        )


@dataclass(frozen=True)
class EvidenceNode:
    """Lookup anchor linking a logical entity to its ledger of facts."""
    id: str
    entity_type: str
    entity_id: str
    created_at: datetime

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "EvidenceNode":
        return cls(
            id=row["id"],
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            created_at=parse_ts(row["created_at"]),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "created_at": format_ts(self.created_at),
        }


@dataclass(frozen=True)
class LedgerEvent:
    """One append-only fact. Ordered per node by (created_at, insertion_seq)."""
    id: str
    evidence_node_id: str
    event_type: str
    payload: Dict[str, Any]
    actor_id: str
    actor_type: str
    created_at: datetime
    insertion_seq: int
    payload_hash: str
    prev_entry_hash: Optional[str]
    entry_hash: str

    @property
    def sort_key(self):
        return (self.created_at, self.insertion_seq)

    def hashed_body(self) -> Dict[str, Any]:
        """The fields covered by payload_hash."""
        return {
            "id": self.id,
            "evidence_node_id": self.evidence_node_id,
            "event_type": self.event_type,
            "payload": self.payload,
            "actor_id": self.actor_id,
            "actor_type": self.actor_type,
            "created_at": format_ts(self.created_at),
            "insertion_seq": self.insertion_seq,
        }

    def to_dict(self) -> Dict[str, Any]:
        d = self.hashed_body()
        d["payload_hash"] = self.payload_hash
        d["prev_entry_hash"] = self.prev_entry_hash
        d["entry_hash"] = self.entry_hash
        return d

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "LedgerEvent":
        return cls(
            id=row["id"],
            evidence_node_id=row["evidence_node_id"],
            event_type=row["event_type"],
            payload=json.loads(row["payload_json"]),
            actor_id=row["actor_id"],
            actor_type=row["actor_type"],
            created_at=parse_ts(row["created_at"]),
            insertion_seq=row["seq"],
            payload_hash=row["payload_hash"],
            prev_entry_hash=row["prev_entry_hash"],
            entry_hash=row["entry_hash"],
        )


@dataclass(frozen=True)
class VerificationEvent:
    """
    The fact of one public verification scan.

    ``derived_status_at_scan`` is what was shown at scan time. It is
    stored verbatim and never recomputed.
    """
    id: str
    subject_id: str
    scan_timestamp: datetime
    derived_status_at_scan: Dict[str, str]
    enforcement_state_at_scan: str
    method: str
    location_hint: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "subject_id": self.subject_id,
            "scan_timestamp": format_ts(self.scan_timestamp),
            "derived_status_at_scan": dict(self.derived_status_at_scan),
            "enforcement_state_at_scan": self.enforcement_state_at_scan,
            "method": self.method,
            "location_hint": self.location_hint,
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "VerificationEvent":
        return cls(
            id=row["id"],
            subject_id=row["subject_id"],
            scan_timestamp=parse_ts(row["scan_timestamp"]),
            derived_status_at_scan=json.loads(row["derived_status_json"]),
            enforcement_state_at_scan=row["enforcement_state"],
            method=row["method"],
            location_hint=row["location_hint"],
        )


def normalize_proof_references(refs: Optional[Iterable[str]]) -> FrozenSet[str]:
    if refs is None:
        return frozenset()
    if isinstance(refs, str):
        raise ValidationError("proof_references", "must be a collection of references")
    cleaned = set()
    for ref in refs:
        if not isinstance(ref, str) or not ref.strip():
            raise ValidationError("proof_references", "references must be non-empty strings")
        cleaned.add(ref.strip())
    return frozenset(cleaned)
