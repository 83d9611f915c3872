"""
Enforcement aggregator.

Strict precedence over an employee's required certifications:
any FAIL -> BLOCKED, else any INCOMPLETE (or UNKNOWN) -> PENDING,
else CLEARED. No weighting and no advisory inputs.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .models import EnforcementState, SnapshotStatus
from .snapshot import SnapshotEngine
from .util import ensure_utc, format_ts, utc_now


@dataclass(frozen=True)
class EnforcementDecision:
    subject_id: str
    state: EnforcementState
    reasons: Tuple[str, ...]
    snapshot: Dict[str, SnapshotStatus] = field(default_factory=dict)
    evaluated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subject_id": self.subject_id,
            "state": self.state.value,
            "reasons": list(self.reasons),
            "snapshot": {k: v.value for k, v in self.snapshot.items()},
            "evaluated_at": format_ts(self.evaluated_at) if self.evaluated_at else None,
        }


def aggregate(snapshot: Mapping[str, SnapshotStatus]) -> Tuple[EnforcementState, List[str]]:
    """
    Pure core: (state, contributing type ids) for a per-type snapshot.
    Reasons list FAIL types first, then incomplete ones.
    """
    failed = sorted(t for t, s in snapshot.items() if s == SnapshotStatus.FAIL)
    # A required type with no record yet counts as incomplete.
    pending = sorted(
        t for t, s in snapshot.items()
        if s in (SnapshotStatus.INCOMPLETE, SnapshotStatus.UNKNOWN)
    )
    if failed:
        return EnforcementState.BLOCKED, failed + pending
    if pending:
        return EnforcementState.PENDING, pending
    return EnforcementState.CLEARED, []


class EnforcementAggregator:

    def __init__(self, snapshots: SnapshotEngine, clock: Callable[[], datetime] = utc_now):
        self.snapshots = snapshots
        self._clock = clock

    def employee_enforcement_state(
        self,
        subject_id: str,
        instant: Optional[datetime] = None
    ) -> EnforcementDecision:
        instant = ensure_utc(instant) if instant is not None else ensure_utc(self._clock())
        snapshot = self.snapshots.employee_snapshot(subject_id, instant)
        state, reasons = aggregate(snapshot)
        return EnforcementDecision(
            subject_id=subject_id,
            state=state,
            reasons=tuple(reasons),
            snapshot=snapshot,
            evaluated_at=instant,
        )
