"""
Verification recorder.

Every public scan is a fact: the snapshot shown at scan time is frozen into
a VerificationEvent and a ``verified`` ledger event is appended to the
employee's node in the same transaction. Recording never depends on the
organization's subscription; that flag only changes what is displayed.
"""

import json
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from . import db
from .enforcement import EnforcementAggregator
from .errors import IntegrityError, ValidationError
from .ledger import EventLedger
from .logging_config import audit_log
from .models import Actor, EntityType, EventType, VerificationEvent
from .util import format_ts, generate_id, utc_now

NOT_SUBSCRIBED_MARKER = "not verified — organization not subscribed"


class VerificationRecorder:

    def __init__(
        self,
        enforcement: EnforcementAggregator,
        ledger: Optional[EventLedger] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self.enforcement = enforcement
        self.ledger = ledger or enforcement.snapshots.ledger
        self._clock = clock

    def record_verification(
        self,
        subject_id: str,
        method: str,
        location_hint: Optional[str] = None
    ) -> VerificationEvent:
        """
        Record one scan. Not idempotent: every call writes a new event with
        its own frozen snapshot.
        """
        if not method or not str(method).strip():
            raise ValidationError("method", "cannot be empty")

        # Snapshot and insert share one write lock.
        try:
            with db.transaction():
                now = self._clock()
                decision = self.enforcement.employee_enforcement_state(subject_id, now)
                event = VerificationEvent(
                    id=generate_id("ver"),
                    subject_id=subject_id,
                    scan_timestamp=now,
                    derived_status_at_scan={k: v.value for k, v in decision.snapshot.items()},
                    enforcement_state_at_scan=decision.state.value,
                    method=method.strip(),
                    location_hint=location_hint,
                )
                db.insert_verification({
                    "id": event.id,
                    "subject_id": event.subject_id,
                    "scan_timestamp": format_ts(event.scan_timestamp),
                    "derived_status_json": json.dumps(event.derived_status_at_scan, sort_keys=True),
                    "enforcement_state": event.enforcement_state_at_scan,
                    "method": event.method,
                    "location_hint": event.location_hint,
                })
                node = self.ledger.ensure_node(EntityType.EMPLOYEE, subject_id)
                self.ledger.append(
                    node.id,
                    EventType.VERIFIED,
                    {
                        "verification_id": event.id,
                        "method": event.method,
                        "location_hint": event.location_hint,
                        "enforcement_state": event.enforcement_state_at_scan,
                        "derived_status": event.derived_status_at_scan,
                        "reasons": list(decision.reasons),
                    },
                    Actor.system(),
                )
        except IntegrityError as e:
            # A quarantine raised mid-scan was rolled back with the scan.
            if e.subject_id and e.type_id and db.get_quarantine(e.subject_id, e.type_id) is None:
                self.enforcement.snapshots.chains.quarantine(e.subject_id, e.type_id, str(e))
            raise

        audit_log.verification_recorded(event.id, subject_id, event.method, event.enforcement_state_at_scan)
        return event

    def list_verifications(
        self,
        subject_id: str,
        from_time: Optional[datetime] = None,
        to_time: Optional[datetime] = None
    ) -> List[VerificationEvent]:
        rows = db.verification_rows(
            subject_id,
            format_ts(from_time) if from_time else None,
            format_ts(to_time) if to_time else None,
        )
        return [VerificationEvent.from_row(r) for r in rows]


def present_verification(event: VerificationEvent, organization_licensed: bool) -> Dict[str, Any]:
    """
    Public view of a recorded scan. An unsubscribed organization gets an
    explicit marker instead of the derived status; the stored event is
    not touched.
    """
    view = {
        "verification_id": event.id,
        "subject_id": event.subject_id,
        "scanned_at": format_ts(event.scan_timestamp),
        "method": event.method,
        "verified": bool(organization_licensed),
    }
    if organization_licensed:
        view["status"] = dict(event.derived_status_at_scan)
        view["enforcement_state"] = event.enforcement_state_at_scan
    else:
        view["status"] = NOT_SUBSCRIBED_MARKER
        view["enforcement_state"] = NOT_SUBSCRIBED_MARKER
    return view
