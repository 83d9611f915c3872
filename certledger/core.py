"""
CertLedger facade.

Wires the chain manager, ledger, snapshot engine, enforcement aggregator,
verification recorder and subject registry to one catalog and one clock.
The HTTP layer and CLI talk to this object only.
"""

from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from . import db
from .catalog import CertificationCatalog, effective_catalog
from .chain import CorrectionChainManager, HeadIndexReport
from .config import CATALOG_PATH
from .enforcement import EnforcementAggregator, EnforcementDecision
from .ledger import ChainVerification, EventLedger, LedgerEventStream
from .models import Actor, CertificationRecord, SnapshotStatus, VerificationEvent
from .snapshot import SnapshotEngine
from .subjects import SubjectRegistry
from .util import utc_now
from .verification import VerificationRecorder


class CertLedger:

    def __init__(
        self,
        catalog: Optional[CertificationCatalog] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self.catalog = catalog if catalog is not None else effective_catalog(CATALOG_PATH)
        self.clock = clock
        self.ledger = EventLedger(clock=clock)
        self.chains = CorrectionChainManager(self.catalog, self.ledger, clock)
        self.subjects = SubjectRegistry(self.catalog, self.ledger, clock)
        self.snapshots = SnapshotEngine(self.chains, self.ledger)
        self.enforcement = EnforcementAggregator(self.snapshots, clock)
        self.verifications = VerificationRecorder(self.enforcement, self.ledger, clock)

    def now(self) -> datetime:
        return self.clock()

    # Commands

    def register_subject(self, subject_id: str, required_type_ids: Iterable[str], actor: Actor) -> List[str]:
        return self.subjects.register_subject(subject_id, required_type_ids, actor)

    def require_types(self, subject_id: str, type_ids: Iterable[str], actor: Actor) -> List[str]:
        return self.subjects.require_types(subject_id, type_ids, actor)

    def create_certification(self, subject_id: str, type_id: str, fields: Optional[Mapping[str, Any]],
                             actor: Actor) -> CertificationRecord:
        return self.chains.create_certification(subject_id, type_id, fields, actor)

    def correct_certification(self, current_id: str, reason: str,
                              changed_fields: Optional[Mapping[str, Any]], actor: Actor) -> CertificationRecord:
        return self.chains.correct_certification(current_id, reason, changed_fields, actor)

    def record_verification(self, subject_id: str, method: str,
                            location_hint: Optional[str] = None) -> VerificationEvent:
        return self.verifications.record_verification(subject_id, method, location_hint)

    # Queries

    def get_chain(self, any_version_id: str) -> List[CertificationRecord]:
        return self.chains.get_chain(any_version_id)

    def status_as_of(self, subject_id: str, type_id: str, instant: Optional[datetime] = None) -> SnapshotStatus:
        return self.snapshots.status_as_of(subject_id, type_id, instant or self.clock())

    def employee_snapshot(self, subject_id: str,
                          instant: Optional[datetime] = None) -> Dict[str, SnapshotStatus]:
        return self.snapshots.employee_snapshot(subject_id, instant or self.clock())

    def employee_enforcement_state(self, subject_id: str,
                                   instant: Optional[datetime] = None) -> EnforcementDecision:
        return self.enforcement.employee_enforcement_state(subject_id, instant)

    # Export & integrity

    def read(self, evidence_node_id: str, from_time: Optional[datetime] = None,
             to_time: Optional[datetime] = None) -> LedgerEventStream:
        return self.ledger.read(evidence_node_id, from_time, to_time)

    def verify_ledger(self) -> List[ChainVerification]:
        return self.ledger.verify_all()

    def rebuild_head_index(self) -> HeadIndexReport:
        return self.chains.rebuild_head_index()

    def integrity_report(self) -> Dict[str, Any]:
        """Hash-chain verification plus record/ledger pairing, in one report."""
        chains = self.ledger.verify_all()
        pairing = self.chains.audit_consistency()
        broken = [c.to_dict() for c in chains if not c.ok]
        return {
            "ok": not broken and not pairing,
            "nodes_checked": len(chains),
            "broken_nodes": broken,
            "pairing_problems": pairing,
            "quarantined": db.list_quarantined(),
            "stats": db.get_db_stats(),
        }
