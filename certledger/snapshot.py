"""
Snapshot / point-in-time query engine.

Two things are pinned to the same instant: which version of a record was
believed current (the latest with created_at <= instant), and whether
that version was valid (the status derived at instant). A correction made
after the instant is invisible, so nothing recorded later can change what
the ledger reported earlier.
"""

import heapq
from datetime import datetime
from typing import Dict, Iterator, List, Optional

from . import db
from .chain import CorrectionChainManager
from .errors import NotFoundError
from .ledger import EventLedger
from .models import CertificationRecord, EntityType, LedgerEvent, SnapshotStatus, chain_key
from .status import derive_status
from .util import ensure_utc, format_ts


class SnapshotEngine:
    """Read-only reconstruction of believed-true state."""

    def __init__(self, chains: CorrectionChainManager, ledger: Optional[EventLedger] = None):
        self.chains = chains
        self.ledger = ledger or chains.ledger

    def record_as_of(self, subject_id: str, type_id: str, instant: datetime) -> Optional[CertificationRecord]:
        instant = ensure_utc(instant)
        believed = None
        for record in self.chains.chain_for(subject_id, type_id):
            if record.created_at > instant:
                break
            believed = record
        return believed

    def status_as_of(self, subject_id: str, type_id: str, instant: datetime) -> SnapshotStatus:
        record = self.record_as_of(subject_id, type_id, instant)
        if record is None:
            return SnapshotStatus.UNKNOWN
        return SnapshotStatus(derive_status(record, ensure_utc(instant)).value)

    def required_types(self, subject_id: str, instant: datetime) -> List[str]:
        """
        Types required of the subject as of ``instant``.

        Requirements registered by then win; a subject with none yet is
        held to every type it had a chain for at that time. Both the rule
        and its inputs are read as of ``instant``.
        """
        if not db.subject_exists(subject_id):
            raise NotFoundError("subject", subject_id)
        as_of = format_ts(instant)
        if not db.subject_known_as_of(subject_id, as_of):
            raise NotFoundError("subject", f"{subject_id} as of {as_of}")
        required = db.requirement_type_ids(subject_id, as_of)
        if required:
            return required
        return db.chain_type_ids(subject_id, as_of)

    def employee_snapshot(self, subject_id: str, instant: datetime) -> Dict[str, SnapshotStatus]:
        return {
            type_id: self.status_as_of(subject_id, type_id, instant)
            for type_id in self.required_types(subject_id, instant)
        }

    def timeline(
        self,
        subject_id: str,
        from_time: Optional[datetime] = None,
        to_time: Optional[datetime] = None
    ) -> Iterator[LedgerEvent]:
        """Every ledger event about a subject, merged across its nodes in time order."""
        if not db.subject_exists(subject_id):
            raise NotFoundError("subject", subject_id)
        nodes = []
        employee = self.ledger.find_node(EntityType.EMPLOYEE, subject_id)
        if employee is not None:
            nodes.append(employee)
        for type_id in db.chain_type_ids(subject_id):
            node = self.ledger.find_node(EntityType.CERTIFICATION, chain_key(subject_id, type_id))
            if node is not None:
                nodes.append(node)
        streams = [self.ledger.read(n.id, from_time, to_time) for n in nodes]
        return heapq.merge(*streams, key=lambda e: (e.created_at, e.evidence_node_id, e.insertion_seq))
