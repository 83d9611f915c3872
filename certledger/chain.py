"""
Evidence Store & Correction Chain Manager.

Certification records are never edited. A correction writes a new version
whose ``supersedes`` names the current head, and the (subject, type) head
pointer is advanced with a compare-and-swap in the same transaction as the
record insert and its ledger event. A correction against anything but the
live head is rejected with ConflictError.

Chains are walked from raw records on every read. A walk that finds a
cycle, a branch, a dangling link or a non-increasing created_at raises
IntegrityError and quarantines the chain for manual audit.
"""

import json
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from . import db
from .catalog import CertificationCatalog, CertificationType, default_catalog
from .errors import ConflictError, IntegrityError, NotFoundError, ValidationError
from .ledger import EventLedger
from .logging_config import audit_log
from .models import (
    CORRECTABLE_FIELDS,
    Actor,
    CertificationRecord,
    EntityType,
    EventType,
    chain_key,
    normalize_proof_references,
)
from .util import format_date, format_ts, generate_id, utc_now

_ONE_TICK = timedelta(microseconds=1)


@dataclass
class HeadIndexReport:
    """Outcome of rebuilding the head index from raw records."""
    chains: int
    drifted: List[str] = field(default_factory=list)
    quarantined: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chains": self.chains,
            "drifted": list(self.drifted),
            "quarantined": list(self.quarantined),
        }


def _record_row(record: CertificationRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "subject_id": record.subject_id,
        "type_id": record.type_id,
        "issuing_authority": record.issuing_authority,
        "issue_date": format_date(record.issue_date),
        "expiration_date": format_date(record.expiration_date),
        "non_expiring": 1 if record.non_expiring else 0,
        "proof_references": json.dumps(sorted(record.proof_references)),
        "created_at": format_ts(record.created_at),
        "created_by": record.created_by,
        "supersedes": record.supersedes,
        "correction_reason": record.correction_reason,
        "corrected_by": record.corrected_by,
        "corrected_at": format_ts(record.corrected_at) if record.corrected_at else None,
    }


def _coerce_date(name: str, value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        raise ValidationError(name, "must be a calendar date, not a timestamp")
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value)
        except ValueError as e:
            raise ValidationError(name, f"invalid date '{value}'") from e
    raise ValidationError(name, "must be a date or YYYY-MM-DD string")


def _coerce_fields(fields: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Validate and normalize user-supplied record fields."""
    fields = dict(fields or {})
    unknown = sorted(set(fields) - CORRECTABLE_FIELDS)
    if unknown:
        raise ValidationError(
            unknown[0],
            f"not a writable certification field (allowed: {', '.join(sorted(CORRECTABLE_FIELDS))})"
        )

    values: Dict[str, Any] = {}
    if "issuing_authority" in fields:
        authority = fields["issuing_authority"]
        if authority is not None and not isinstance(authority, str):
            raise ValidationError("issuing_authority", "must be a string")
        values["issuing_authority"] = (authority or "").strip() or None
    if "issue_date" in fields:
        values["issue_date"] = _coerce_date("issue_date", fields["issue_date"])
    if "expiration_date" in fields:
        values["expiration_date"] = _coerce_date("expiration_date", fields["expiration_date"])
    if "non_expiring" in fields:
        if not isinstance(fields["non_expiring"], bool):
            raise ValidationError("non_expiring", "must be a boolean")
        values["non_expiring"] = fields["non_expiring"]
    if "proof_references" in fields:
        values["proof_references"] = normalize_proof_references(fields["proof_references"])
    return values


def _check_against_type(values: Mapping[str, Any], ctype: Optional[CertificationType]) -> None:
    if ctype is not None and ctype.requires_expiration and values.get("non_expiring"):
        raise ValidationError("non_expiring", f"{ctype.type_id} requires an expiration date")
    issue, expires = values.get("issue_date"), values.get("expiration_date")
    if issue is not None and expires is not None and expires < issue:
        raise ValidationError("expiration_date", "is before issue_date")


class _ChainBroken(Exception):
    """Internal: a walk found a structural violation."""


def walk_chain(records: List[CertificationRecord]) -> List[CertificationRecord]:
    """
    Order one (subject, type) group of records oldest to newest.

    Visits each id at most once and stops after len(records) steps.
    Raises _ChainBroken on any cycle, branch, dangling link or
    out-of-order timestamp.
    """
    if not records:
        return []
    by_id = {r.id: r for r in records}
    successors: Dict[str, List[CertificationRecord]] = defaultdict(list)
    roots = []
    for r in records:
        if r.supersedes is None:
            roots.append(r)
        elif r.supersedes not in by_id:
            raise _ChainBroken(f"record {r.id} supersedes unknown record {r.supersedes}")
        else:
            successors[r.supersedes].append(r)

    for parent, children in successors.items():
        if len(children) > 1:
            raise _ChainBroken(
                f"record {parent} has {len(children)} successors: "
                f"{', '.join(sorted(c.id for c in children))}"
            )
    if len(roots) != 1:
        raise _ChainBroken(f"chain has {len(roots)} roots; expected exactly one")

    ordered = [roots[0]]
    visited = {roots[0].id}
    current = roots[0]
    while current.id in successors:
        nxt = successors[current.id][0]
        if nxt.id in visited:
            raise _ChainBroken(f"cycle at record {nxt.id}")
        if not nxt.created_at > current.created_at:
            raise _ChainBroken(f"record {nxt.id} is not newer than the record it supersedes")
        visited.add(nxt.id)
        ordered.append(nxt)
        current = nxt

    if len(ordered) != len(records):
        stray = sorted(set(by_id) - visited)
        raise _ChainBroken(f"records unreachable from the root (cycle): {', '.join(stray)}")
    return ordered


class CorrectionChainManager:
    """Creates, corrects and reads certification chains."""

    def __init__(
        self,
        catalog: Optional[CertificationCatalog] = None,
        ledger: Optional[EventLedger] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self.catalog = catalog if catalog is not None else default_catalog()
        self.ledger = ledger or EventLedger(clock=clock)
        self._clock = clock

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def create_certification(
        self,
        subject_id: str,
        type_id: str,
        fields: Optional[Mapping[str, Any]],
        actor: Actor
    ) -> CertificationRecord:
        """Start a new chain for (subject_id, type_id)."""
        if not subject_id or not str(subject_id).strip():
            raise ValidationError("subject_id", "cannot be empty")
        if not isinstance(actor, Actor):
            raise ValidationError("actor", "a resolved actor is required")
        ctype = self.catalog.require(type_id)
        values = _coerce_fields(fields)
        _check_against_type(values, ctype)

        record = CertificationRecord(
            id=generate_id("cert"),
            subject_id=subject_id,
            type_id=type_id,
            created_at=self._clock(),
            created_by=actor.actor_id,
            **values
        )

        with db.transaction():
            existing = db.get_head(subject_id, type_id)
            if existing is not None:
                raise ConflictError(
                    existing["head_id"], existing["head_id"],
                    message=f"a {type_id} certification already exists for {subject_id}; correct it instead"
                )
            db.insert_record(_record_row(record))
            if not db.insert_head(subject_id, type_id, record.id, format_ts(record.created_at)):
                raise ConflictError(record.id, message="this record changed since you loaded it")
            node = self.ledger.ensure_node(EntityType.CERTIFICATION, chain_key(subject_id, type_id))
            self.ledger.append(
                node.id,
                EventType.CERTIFICATION_CREATED,
                {"record_id": record.id, "record": record.to_dict(), "catalog_version": self.catalog.version},
                actor,
            )

        audit_log.certification_created(record.id, subject_id, type_id, actor.actor_id)
        return record

    def correct_certification(
        self,
        current_id: str,
        reason: str,
        changed_fields: Optional[Mapping[str, Any]],
        actor: Actor
    ) -> CertificationRecord:
        """
        Write a new version superseding ``current_id``.

        ``current_id`` must still be the chain head when the transaction
        runs; otherwise ConflictError and nothing is written.
        """
        if not isinstance(reason, str) or not reason.strip():
            raise ValidationError("reason", "a correction reason is required")
        reason = reason.strip()
        if not isinstance(actor, Actor):
            raise ValidationError("actor", "a resolved actor is required")
        changes = _coerce_fields(changed_fields)

        row = db.get_record_row(current_id)
        if row is None:
            raise NotFoundError("certification record", current_id)
        current = CertificationRecord.from_row(row)
        subject_id, type_id = current.subject_id, current.type_id
        self._refuse_if_quarantined(subject_id, type_id)

        merged = {
            "issuing_authority": current.issuing_authority,
            "issue_date": current.issue_date,
            "expiration_date": current.expiration_date,
            "non_expiring": current.non_expiring,
            "proof_references": current.proof_references,
        }
        merged.update(changes)
        _check_against_type(merged, self.catalog.get(type_id))

        head = db.get_head(subject_id, type_id)
        if head is None:
            raise IntegrityError(
                f"no head index entry for {chain_key(subject_id, type_id)}; rebuild the head index",
                subject_id, type_id
            )
        if head["head_id"] != current_id:
            audit_log.correction_conflict(current_id, head["head_id"], actor.actor_id)
            raise ConflictError(current_id, head["head_id"])

        now = self._clock()
        if now <= current.created_at:
            now = current.created_at + _ONE_TICK
        record = CertificationRecord(
            id=generate_id("cert"),
            subject_id=subject_id,
            type_id=type_id,
            created_at=now,
            created_by=actor.actor_id,
            supersedes=current_id,
            correction_reason=reason,
            corrected_by=actor.actor_id,
            corrected_at=now,
            **merged
        )

        try:
            with db.transaction():
                if not db.cas_head(subject_id, type_id, current_id, record.id, format_ts(now)):
                    winner = db.get_head(subject_id, type_id)
                    raise ConflictError(current_id, winner["head_id"] if winner else None)
                if db.successor_ids(current_id):
                    raise IntegrityError(
                        f"record {current_id} passed the head check but already has a successor",
                        subject_id, type_id
                    )
                db.insert_record(_record_row(record))
                node = self.ledger.ensure_node(EntityType.CERTIFICATION, chain_key(subject_id, type_id))
                self.ledger.append(
                    node.id,
                    EventType.CERTIFICATION_CORRECTED,
                    {
                        "record_id": record.id,
                        "supersedes": current_id,
                        "reason": reason,
                        "changed_fields": sorted(changes),
                        "record": record.to_dict(),
                    },
                    actor,
                )
        except ConflictError as e:
            audit_log.correction_conflict(current_id, e.current_head_id, actor.actor_id)
            raise
        except IntegrityError as e:
            self.quarantine(subject_id, type_id, str(e))
            raise

        audit_log.certification_corrected(record.id, current_id, reason, actor.actor_id)
        return record

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_record(self, record_id: str) -> CertificationRecord:
        row = db.get_record_row(record_id)
        if row is None:
            raise NotFoundError("certification record", record_id)
        return CertificationRecord.from_row(row)

    def current_head(self, subject_id: str, type_id: str) -> Optional[CertificationRecord]:
        head = db.get_head(subject_id, type_id)
        if head is None:
            return None
        return self.get_record(head["head_id"])

    def get_chain(self, any_version_id: str) -> List[CertificationRecord]:
        """The full chain containing ``any_version_id``, oldest to newest."""
        record = self.get_record(any_version_id)
        return self.chain_for(record.subject_id, record.type_id)

    def chain_for(self, subject_id: str, type_id: str) -> List[CertificationRecord]:
        """The validated chain for (subject_id, type_id); empty if none exists."""
        self._refuse_if_quarantined(subject_id, type_id)
        records = [CertificationRecord.from_row(r) for r in db.chain_record_rows(subject_id, type_id)]
        try:
            return walk_chain(records)
        except _ChainBroken as e:
            self.quarantine(subject_id, type_id, str(e))
            raise IntegrityError(str(e), subject_id, type_id) from e

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def rebuild_head_index(self) -> HeadIndexReport:
        """
        Recompute every head from raw supersedes links and rewrite the index.
        Chains that fail the walk are quarantined and left out.
        """
        groups: Dict[Tuple[str, str], List[CertificationRecord]] = defaultdict(list)
        for row in db.all_record_rows():
            rec = CertificationRecord.from_row(row)
            groups[(rec.subject_id, rec.type_id)].append(rec)

        heads: Dict[Tuple[str, str], str] = {}
        report = HeadIndexReport(chains=0)
        for (subject_id, type_id), records in sorted(groups.items()):
            try:
                heads[(subject_id, type_id)] = walk_chain(records)[-1].id
            except _ChainBroken as e:
                self.quarantine(subject_id, type_id, str(e))
                report.quarantined.append(chain_key(subject_id, type_id))

        with db.transaction():
            existing = db.all_heads()
            for key in sorted(set(existing) | set(heads)):
                if existing.get(key) != heads.get(key):
                    report.drifted.append(chain_key(*key))
            db.replace_heads(heads, format_ts(self._clock()))

        report.chains = len(heads)
        audit_log.head_index_rebuilt(report.chains, report.drifted)
        return report

    def audit_consistency(self) -> List[Dict[str, Any]]:
        """
        Cross-check records against their ledger events.

        Every record must have exactly one created/corrected event on its
        chain node and every such event must name an existing record.
        Mismatched chains are quarantined.
        """
        problems: List[Dict[str, Any]] = []
        groups: Dict[Tuple[str, str], set] = defaultdict(set)
        for row in db.all_record_rows():
            groups[(row["subject_id"], row["type_id"])].add(row["id"])

        node_keys = {
            node.entity_id: node for node in (
                self.ledger.find_node(EntityType.CERTIFICATION, chain_key(s, t)) for s, t in groups
            ) if node is not None
        }
        for (subject_id, type_id), record_ids in sorted(groups.items()):
            key = chain_key(subject_id, type_id)
            node = node_keys.get(key)
            logged: List[str] = []
            if node is not None:
                logged = [
                    e.payload.get("record_id") for e in self.ledger.read(node.id)
                    if e.event_type in (EventType.CERTIFICATION_CREATED.value,
                                        EventType.CERTIFICATION_CORRECTED.value)
                ]
            issues = []
            missing = sorted(record_ids - set(logged))
            orphaned = sorted(set(logged) - record_ids)
            duplicated = sorted({r for r in logged if logged.count(r) > 1})
            if missing:
                issues.append(f"records without ledger events: {', '.join(missing)}")
            if orphaned:
                issues.append(f"ledger events without records: {', '.join(orphaned)}")
            if duplicated:
                issues.append(f"records logged more than once: {', '.join(duplicated)}")
            if issues:
                detail = "; ".join(issues)
                problems.append({"chain": key, "subject_id": subject_id, "type_id": type_id,
                                 "detail": detail})
                self.quarantine(subject_id, type_id, detail)
        return problems

    # ------------------------------------------------------------------
    # Quarantine
    # ------------------------------------------------------------------

    def _refuse_if_quarantined(self, subject_id: str, type_id: str) -> None:
        q = db.get_quarantine(subject_id, type_id)
        if q is not None:
            raise IntegrityError(
                f"chain {chain_key(subject_id, type_id)} is quarantined: {q['reason']}",
                subject_id, type_id
            )

    def quarantine(self, subject_id: str, type_id: str, reason: str) -> None:
        """Flag a chain for manual audit. Never repairs it."""
        with db.transaction():
            if db.quarantine_chain(subject_id, type_id, reason, format_ts(self._clock())):
                node = self.ledger.ensure_node(EntityType.CERTIFICATION, chain_key(subject_id, type_id))
                self.ledger.append(
                    node.id,
                    EventType.CHAIN_QUARANTINED,
                    {"subject_id": subject_id, "type_id": type_id, "reason": reason},
                    Actor.system(),
                )
        audit_log.integrity_violation(reason, subject_id, type_id)
