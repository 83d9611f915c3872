"""
Event Ledger.

The sole write path for facts. Each evidence node owns an append-only
sequence of events ordered by (created_at, insertion_seq) and linked by a
hash chain: every entry hash covers the previous entry hash, so rewriting
any earlier event changes every later one.
"""

import json
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from . import db
from .errors import IntegrityError, NotFoundError, ValidationError
from .models import Actor, EvidenceNode, LedgerEvent
from .util import (
    canonicalize,
    chain_entry_hash,
    format_ts,
    generate_id,
    parse_ts,
    sha256_hex,
    utc_now,
)

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 200


def _value(v) -> str:
    """Accept either a str Enum member or its plain string value."""
    return v.value if isinstance(v, Enum) else str(v)


class LedgerEventStream:
    """
    Ordered, lazy, restartable view of one node's events.

    Events are fetched a page at a time with keyset pagination on
    (created_at, insertion_seq). Every ``iter()`` starts again from the
    beginning of the range.
    """

    def __init__(
        self,
        evidence_node_id: str,
        from_time: Optional[datetime] = None,
        to_time: Optional[datetime] = None,
        page_size: int = DEFAULT_PAGE_SIZE
    ):
        if page_size < 1:
            raise ValueError("page_size must be positive")
        self.evidence_node_id = evidence_node_id
        self.from_time = from_time
        self.to_time = to_time
        self.page_size = page_size

    def __iter__(self) -> Iterator[LedgerEvent]:
        from_ts = format_ts(self.from_time) if self.from_time is not None else None
        to_ts = format_ts(self.to_time) if self.to_time is not None else None
        after: Optional[Tuple[str, int]] = None
        while True:
            rows = db.ledger_page(self.evidence_node_id, from_ts, to_ts, after, self.page_size)
            for row in rows:
                yield LedgerEvent.from_row(row)
            if len(rows) < self.page_size:
                return
            last = rows[-1]
            after = (last["created_at"], last["seq"])

    def to_list(self) -> List[LedgerEvent]:
        return list(self)


@dataclass
class ChainVerification:
    """Result of recomputing one node's hash chain."""
    evidence_node_id: str
    ok: bool
    events_checked: int
    head_hash: Optional[str] = None
    first_bad_seq: Optional[int] = None
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "evidence_node_id": self.evidence_node_id,
            "ok": self.ok,
            "events_checked": self.events_checked,
            "head_hash": self.head_hash,
            "first_bad_seq": self.first_bad_seq,
            "errors": list(self.errors),
        }


class EventLedger:
    """Append-only event log keyed by evidence node."""

    def __init__(
        self,
        clock: Callable[[], datetime] = utc_now,
        page_size: int = DEFAULT_PAGE_SIZE
    ):
        self._clock = clock
        self._page_size = page_size

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def find_node(self, entity_type: str, entity_id: str) -> Optional[EvidenceNode]:
        row = db.find_node_row(_value(entity_type), entity_id)
        return EvidenceNode.from_row(row) if row is not None else None

    def get_node(self, node_id: str) -> EvidenceNode:
        row = db.get_node_row(node_id)
        if row is None:
            raise NotFoundError("evidence node", node_id)
        return EvidenceNode.from_row(row)

    def ensure_node(self, entity_type: str, entity_id: str) -> EvidenceNode:
        """Return the node for an entity, creating it on first use."""
        etype = _value(entity_type)
        if not entity_id:
            raise ValidationError("entity_id", "cannot be empty")
        with db.transaction():
            row = db.find_node_row(etype, entity_id)
            if row is not None:
                return EvidenceNode.from_row(row)
            node = EvidenceNode(
                id=generate_id("node"),
                entity_type=etype,
                entity_id=entity_id,
                created_at=self._clock(),
            )
            db.insert_node(node.id, node.entity_type, node.entity_id, format_ts(node.created_at))
        logger.debug("Created evidence node %s for %s %s", node.id, etype, entity_id)
        return node

    # ------------------------------------------------------------------
    # Append
    # ------------------------------------------------------------------

    def append(
        self,
        evidence_node_id: str,
        event_type: str,
        payload: Dict[str, Any],
        actor: Actor
    ) -> LedgerEvent:
        """
        Append one event to a node.

        Joins the caller's transaction when one is open, so a state write
        and its ledger entry commit or roll back together.
        """
        etype = _value(event_type)
        if not etype:
            raise ValidationError("event_type", "cannot be empty")
        if not isinstance(actor, Actor):
            raise ValidationError("actor", "a resolved actor is required")
        # Normalize to plain JSON so the stored payload hashes identically.
        try:
            payload = json.loads(json.dumps(payload if payload is not None else {}))
        except (TypeError, ValueError) as e:
            raise ValidationError("payload", f"must be JSON serializable: {e}") from e

        with db.transaction():
            seq_row = db.get_sequence(evidence_node_id)
            if seq_row is None:
                raise NotFoundError("evidence node", evidence_node_id)

            last_seq = seq_row["last_seq"]
            prev_hash = seq_row["last_entry_hash"]
            created_at = self._clock()
            # Per-node order must agree with insertion order.
            if seq_row["last_created_at"] and format_ts(created_at) < seq_row["last_created_at"]:
                created_at = parse_ts(seq_row["last_created_at"])

            unsigned = LedgerEvent(
                id=generate_id("evt"),
                evidence_node_id=evidence_node_id,
                event_type=etype,
                payload=payload,
                actor_id=actor.actor_id,
                actor_type=actor.actor_type,
                created_at=created_at,
                insertion_seq=last_seq + 1,
                payload_hash="",
                prev_entry_hash=prev_hash,
                entry_hash="",
            )
            payload_hash = sha256_hex(canonicalize(unsigned.hashed_body()))
            entry_hash = chain_entry_hash(prev_hash, payload_hash)
            event = replace(unsigned, payload_hash=payload_hash, entry_hash=entry_hash)

            db.insert_ledger_event({
                "id": event.id,
                "evidence_node_id": event.evidence_node_id,
                "seq": event.insertion_seq,
                "event_type": event.event_type,
                "payload_json": json.dumps(event.payload, sort_keys=True),
                "actor_id": event.actor_id,
                "actor_type": event.actor_type,
                "created_at": format_ts(event.created_at),
                "payload_hash": event.payload_hash,
                "prev_entry_hash": event.prev_entry_hash,
                "entry_hash": event.entry_hash,
            })
            if not db.advance_sequence(evidence_node_id, last_seq, entry_hash, format_ts(event.created_at)):
                raise IntegrityError(f"sequence counter for node {evidence_node_id} moved during append")

        logger.debug("Appended %s #%d to node %s", etype, event.insertion_seq, evidence_node_id)
        return event

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def read(
        self,
        evidence_node_id: str,
        from_time: Optional[datetime] = None,
        to_time: Optional[datetime] = None
    ) -> LedgerEventStream:
        """Events for one node in (created_at, insertion_seq) order, inclusive bounds."""
        if db.get_node_row(evidence_node_id) is None:
            raise NotFoundError("evidence node", evidence_node_id)
        return LedgerEventStream(evidence_node_id, from_time, to_time, self._page_size)

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify_node(self, evidence_node_id: str) -> ChainVerification:
        """Recompute every payload and entry hash of a node and report the first break."""
        if db.get_node_row(evidence_node_id) is None:
            raise NotFoundError("evidence node", evidence_node_id)

        result = ChainVerification(evidence_node_id=evidence_node_id, ok=True, events_checked=0)
        prev_hash: Optional[str] = None
        prev_ts: Optional[datetime] = None

        def fail(seq: int, message: str) -> None:
            if result.first_bad_seq is None:
                result.first_bad_seq = seq
            result.ok = False
            result.errors.append(f"seq {seq}: {message}")

        for expected_seq, row in enumerate(db.ledger_rows_by_seq(evidence_node_id), start=1):
            event = LedgerEvent.from_row(row)
            result.events_checked += 1
            if event.insertion_seq != expected_seq:
                fail(event.insertion_seq, f"expected sequence {expected_seq}")
            if event.prev_entry_hash != prev_hash:
                fail(event.insertion_seq, "prev_entry_hash does not link to the previous entry")
            if sha256_hex(canonicalize(event.hashed_body())) != event.payload_hash:
                fail(event.insertion_seq, "payload_hash mismatch")
            if chain_entry_hash(event.prev_entry_hash, event.payload_hash) != event.entry_hash:
                fail(event.insertion_seq, "entry_hash mismatch")
            if prev_ts is not None and event.created_at < prev_ts:
                fail(event.insertion_seq, "created_at goes backwards")
            prev_hash = event.entry_hash
            prev_ts = event.created_at

        seq_row = db.get_sequence(evidence_node_id)
        if seq_row is not None:
            if seq_row["last_seq"] != result.events_checked:
                fail(result.events_checked + 1,
                     f"sequence counter is {seq_row['last_seq']} but {result.events_checked} events exist")
            elif seq_row["last_entry_hash"] != prev_hash:
                fail(result.events_checked, "last entry hash differs from the sequence counter")

        result.head_hash = prev_hash
        if not result.ok:
            logger.error("Hash chain broken for node %s: %s", evidence_node_id, result.errors[0])
        return result

    def verify_all(self) -> List[ChainVerification]:
        return [self.verify_node(node_id) for node_id in db.all_node_ids()]


HASHED_FIELDS = (
    "id", "evidence_node_id", "event_type", "payload", "actor_id", "actor_type",
    "created_at", "insertion_seq",
)


def verify_event_dicts(events: List[Dict[str, Any]]) -> List[str]:
    """
    Check exported events (``LedgerEvent.to_dict`` form) without a database.

    Recomputes every payload and entry hash and checks that consecutive
    events of a node link up. A node's export may start mid-chain when it
    was cut by a time range, so the first event's predecessor is not known.
    """
    errors: List[str] = []
    last: Dict[str, Dict[str, Any]] = {}
    for event in events:
        node = event.get("evidence_node_id")
        seq = event.get("insertion_seq")
        try:
            body = {k: event[k] for k in HASHED_FIELDS}
        except KeyError as e:
            errors.append(f"{node} seq {seq}: missing field {e}")
            continue
        if sha256_hex(canonicalize(body)) != event.get("payload_hash"):
            errors.append(f"{node} seq {seq}: payload_hash mismatch")
        if chain_entry_hash(event.get("prev_entry_hash"), event.get("payload_hash", "")) != event.get("entry_hash"):
            errors.append(f"{node} seq {seq}: entry_hash mismatch")
        prev = last.get(node)
        if prev is not None and prev["insertion_seq"] + 1 == seq:
            if event.get("prev_entry_hash") != prev.get("entry_hash"):
                errors.append(f"{node} seq {seq}: does not link to seq {prev['insertion_seq']}")
        elif prev is not None:
            errors.append(f"{node} seq {seq}: gap after seq {prev['insertion_seq']}")
        last[node] = event
    return errors
