import sqlite3
import threading
from datetime import date

import pytest

from certledger import db
from certledger.chain import walk_chain
from certledger.errors import ConflictError, IntegrityError, NotFoundError, ValidationError
from certledger.models import Actor, CertificationStatus, EntityType, EventType, chain_key
from certledger.status import derive_status

VALID = {
    "issue_date": "2024-01-01",
    "expiration_date": "2026-01-01",
    "proof_references": ["p1"],
}


def events_for(ledger, subject_id, type_id):
    node = ledger.ledger.find_node(EntityType.CERTIFICATION, chain_key(subject_id, type_id))
    return ledger.read(node.id).to_list()


# ------------------------------------------------------------------
# create_certification
# ------------------------------------------------------------------

def test_create_starts_a_chain_with_one_event(ledger, clerk):
    rec = ledger.create_certification("E1", "FALL-PROTECTION", VALID, clerk)

    assert rec.supersedes is None
    assert rec.issue_date == date(2024, 1, 1)
    assert rec.proof_references == frozenset({"p1"})
    assert ledger.chains.current_head("E1", "FALL-PROTECTION").id == rec.id

    events = events_for(ledger, "E1", "FALL-PROTECTION")
    assert [e.event_type for e in events] == [EventType.CERTIFICATION_CREATED.value]
    assert events[0].payload["record_id"] == rec.id
    assert events[0].actor_id == "hr-clerk-1"


def test_create_twice_for_same_pair_conflicts(ledger, clerk):
    first = ledger.create_certification("E1", "OSHA-10", {"non_expiring": True}, clerk)
    with pytest.raises(ConflictError) as exc:
        ledger.create_certification("E1", "OSHA-10", {"non_expiring": True}, clerk)
    assert exc.value.current_head_id == first.id
    assert len(ledger.get_chain(first.id)) == 1


def test_create_rejects_unknown_type(ledger, clerk):
    with pytest.raises(ValidationError) as exc:
        ledger.create_certification("E1", "UNDERWATER-WELDING", VALID, clerk)
    assert exc.value.field == "type_id"


def test_create_rejects_unknown_field(ledger, clerk):
    with pytest.raises(ValidationError) as exc:
        ledger.create_certification("E1", "OSHA-10", {"status": "PASS"}, clerk)
    assert exc.value.field == "status"


def test_create_rejects_bad_date(ledger, clerk):
    with pytest.raises(ValidationError):
        ledger.create_certification("E1", "FALL-PROTECTION", {"issue_date": "yesterday"}, clerk)


def test_create_rejects_expiration_before_issue(ledger, clerk):
    fields = dict(VALID, expiration_date="2023-01-01")
    with pytest.raises(ValidationError) as exc:
        ledger.create_certification("E1", "FALL-PROTECTION", fields, clerk)
    assert exc.value.field == "expiration_date"


def test_non_expiring_refused_for_type_that_expires(ledger, clerk):
    with pytest.raises(ValidationError) as exc:
        ledger.create_certification("E1", "FALL-PROTECTION", {"non_expiring": True}, clerk)
    assert exc.value.field == "non_expiring"


def test_create_requires_resolved_actor(ledger):
    with pytest.raises(ValidationError):
        ledger.create_certification("E1", "OSHA-10", {}, None)


def test_anonymous_actor_cannot_be_built():
    with pytest.raises(ValidationError):
        Actor("   ")


def test_failed_create_writes_nothing(ledger, clerk):
    with pytest.raises(ValidationError):
        ledger.create_certification("E1", "FALL-PROTECTION", {"non_expiring": True}, clerk)
    stats = db.get_db_stats()
    assert stats["certification_records_count"] == 0
    assert stats["ledger_events_count"] == 0


# ------------------------------------------------------------------
# correct_certification
# ------------------------------------------------------------------

def test_correction_supersedes_head_and_keeps_original(ledger, clerk, clock):
    r1 = ledger.create_certification("E1", "FALL-PROTECTION", VALID, clerk)
    clock.advance(hours=1)
    r2 = ledger.correct_certification(r1.id, "renewed", {"expiration_date": "2027-01-01"}, clerk)

    assert r2.supersedes == r1.id
    assert r2.correction_reason == "renewed"
    assert r2.corrected_by == "hr-clerk-1"
    assert r2.expiration_date == date(2027, 1, 1)
    # Unchanged fields carry over from the superseded version.
    assert r2.proof_references == r1.proof_references
    assert r2.issue_date == r1.issue_date

    original = ledger.chains.get_record(r1.id)
    assert original.expiration_date == date(2026, 1, 1)
    assert [r.id for r in ledger.get_chain(r1.id)] == [r1.id, r2.id]
    assert [r.id for r in ledger.get_chain(r2.id)] == [r1.id, r2.id]

    corrected = events_for(ledger, "E1", "FALL-PROTECTION")[-1]
    assert corrected.event_type == EventType.CERTIFICATION_CORRECTED.value
    assert corrected.payload["supersedes"] == r1.id
    assert corrected.payload["changed_fields"] == ["expiration_date"]


def test_correction_without_reason_rejected(ledger, clerk):
    r1 = ledger.create_certification("E1", "OSHA-10", {"non_expiring": True}, clerk)
    for reason in ("", "   ", None):
        with pytest.raises(ValidationError) as exc:
            ledger.correct_certification(r1.id, reason, {"proof_references": ["p1"]}, clerk)
        assert exc.value.field == "reason"


def test_correction_of_unknown_record_not_found(ledger, clerk):
    with pytest.raises(NotFoundError):
        ledger.correct_certification("cert_missing", "typo", {}, clerk)


def test_correction_cannot_change_identity_fields(ledger, clerk):
    r1 = ledger.create_certification("E1", "OSHA-10", {"non_expiring": True}, clerk)
    with pytest.raises(ValidationError):
        ledger.correct_certification(r1.id, "move", {"subject_id": "E2"}, clerk)


def test_stale_correction_conflicts(ledger, clerk, clock):
    r1 = ledger.create_certification("E1", "FALL-PROTECTION", VALID, clerk)
    clock.advance(minutes=1)
    r2 = ledger.correct_certification(r1.id, "fix authority", {"issuing_authority": "NSC"}, clerk)
    clock.advance(minutes=1)

    with pytest.raises(ConflictError) as exc:
        ledger.correct_certification(r1.id, "second fix", {"issuing_authority": "OSHA"}, clerk)
    assert exc.value.current_head_id == r2.id
    assert str(exc.value) == "this record changed since you loaded it"
    assert len(ledger.get_chain(r1.id)) == 2


def test_correction_in_same_instant_is_still_newer(ledger, clerk):
    # The clock never moves here; the correction must still sort after.
    r1 = ledger.create_certification("E1", "OSHA-10", {"non_expiring": True}, clerk)
    r2 = ledger.correct_certification(r1.id, "upload", {"proof_references": ["p1"]}, clerk)
    assert r2.created_at > r1.created_at
    assert [r.id for r in ledger.get_chain(r1.id)] == [r1.id, r2.id]


def test_concurrent_corrections_exactly_one_wins(ledger, clerk, clock):
    r1 = ledger.create_certification("E1", "FALL-PROTECTION", VALID, clerk)
    clock.advance(minutes=5)
    barrier = threading.Barrier(2)
    results, errors = [], []

    def correct(actor_id, authority):
        barrier.wait()
        try:
            results.append(ledger.correct_certification(
                r1.id, "authority", {"issuing_authority": authority}, Actor(actor_id)))
        except ConflictError as e:
            errors.append(e)
        finally:
            db.close_connection()

    threads = [
        threading.Thread(target=correct, args=("clerk-a", "NSC")),
        threading.Thread(target=correct, args=("clerk-b", "OSHA")),
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(results) == 1
    assert len(errors) == 1
    winner = results[0]
    assert errors[0].current_head_id == winner.id
    chain = ledger.get_chain(r1.id)
    assert [r.id for r in chain] == [r1.id, winner.id]
    assert db.successor_ids(r1.id) == [winner.id]


# ------------------------------------------------------------------
# Scenario-style walks
# ------------------------------------------------------------------

def test_late_proof_upload_correction(ledger, clerk, clock):
    r1 = ledger.create_certification(
        "E3", "FALL-PROTECTION",
        {"issue_date": "2024-01-01", "expiration_date": "2026-01-01", "proof_references": []},
        clerk,
    )
    assert derive_status(r1, clock()) == CertificationStatus.INCOMPLETE

    clock.advance(days=1)
    r2 = ledger.correct_certification(r1.id, "late upload", {"proof_references": ["p3"]}, clerk)

    assert derive_status(r2, clock()) == CertificationStatus.PASS
    assert ledger.chains.current_head("E3", "FALL-PROTECTION").id == r2.id
    # The superseded version still derives its own status.
    assert derive_status(ledger.chains.get_record(r1.id), clock()) == CertificationStatus.INCOMPLETE


# ------------------------------------------------------------------
# Walking, tampering and quarantine
# ------------------------------------------------------------------

def _three_versions(ledger, clerk, clock):
    r1 = ledger.create_certification("E9", "FALL-PROTECTION", VALID, clerk)
    clock.advance(minutes=1)
    r2 = ledger.correct_certification(r1.id, "one", {"issuing_authority": "A"}, clerk)
    clock.advance(minutes=1)
    r3 = ledger.correct_certification(r2.id, "two", {"issuing_authority": "B"}, clerk)
    return r1, r2, r3


def test_walk_chain_orders_oldest_to_newest(ledger, clerk, clock):
    r1, r2, r3 = _three_versions(ledger, clerk, clock)
    shuffled = [ledger.chains.get_record(i) for i in (r3.id, r1.id, r2.id)]
    assert [r.id for r in walk_chain(shuffled)] == [r1.id, r2.id, r3.id]


def test_records_are_append_only(ledger, clerk, raw_conn):
    r1 = ledger.create_certification("E1", "OSHA-10", {"non_expiring": True}, clerk)
    with pytest.raises(sqlite3.DatabaseError):
        raw_conn.execute("UPDATE certification_records SET issuing_authority='x' WHERE id=?", (r1.id,))
    with pytest.raises(sqlite3.DatabaseError):
        raw_conn.execute("DELETE FROM certification_records WHERE id=?", (r1.id,))


def test_branch_is_refused_by_storage(ledger, clerk, clock, raw_conn):
    r1 = ledger.create_certification("E1", "OSHA-10", {"non_expiring": True}, clerk)
    clock.advance(minutes=1)
    ledger.correct_certification(r1.id, "one", {"proof_references": ["p1"]}, clerk)
    with pytest.raises(sqlite3.IntegrityError):
        raw_conn.execute(
            "INSERT INTO certification_records(id, subject_id, type_id, created_at, created_by, "
            "supersedes, correction_reason) VALUES('cert_rogue','E1','OSHA-10',"
            "'2030-01-01T00:00:00.000000Z','x',?,'branch')",
            (r1.id,)
        )


def test_cycle_quarantines_chain(ledger, clerk, clock, raw_conn):
    r1, r2, r3 = _three_versions(ledger, clerk, clock)
    raw_conn.execute("DROP TRIGGER trg_certification_records_no_update")
    raw_conn.execute(
        "UPDATE certification_records SET supersedes=?, correction_reason='forged' WHERE id=?",
        (r3.id, r1.id)
    )

    with pytest.raises(IntegrityError) as exc:
        ledger.get_chain(r2.id)
    assert exc.value.subject_id == "E9"
    assert db.get_quarantine("E9", "FALL-PROTECTION") is not None

    # Quarantined chains refuse further reads and writes.
    with pytest.raises(IntegrityError):
        ledger.status_as_of("E9", "FALL-PROTECTION")
    with pytest.raises(IntegrityError):
        ledger.correct_certification(r3.id, "after tamper", {"issuing_authority": "C"}, clerk)

    events = events_for(ledger, "E9", "FALL-PROTECTION")
    assert events[-1].event_type == EventType.CHAIN_QUARANTINED.value
    assert events[-1].actor_type == "system"


def test_out_of_order_timestamps_quarantine_chain(ledger, clerk, clock, raw_conn):
    r1, r2, _ = _three_versions(ledger, clerk, clock)
    raw_conn.execute("DROP TRIGGER trg_certification_records_no_update")
    raw_conn.execute(
        "UPDATE certification_records SET created_at='2000-01-01T00:00:00.000000Z' WHERE id=?",
        (r2.id,)
    )
    with pytest.raises(IntegrityError):
        ledger.get_chain(r1.id)
    assert [q["subject_id"] for q in db.list_quarantined()] == ["E9"]


def test_other_chains_unaffected_by_quarantine(ledger, clerk, clock, raw_conn):
    r1, _, r3 = _three_versions(ledger, clerk, clock)
    other = ledger.create_certification("E9", "OSHA-10", {"non_expiring": True,
                                                           "issue_date": "2020-01-01",
                                                           "proof_references": ["p"]}, clerk)
    raw_conn.execute("DROP TRIGGER trg_certification_records_no_update")
    raw_conn.execute(
        "UPDATE certification_records SET supersedes=?, correction_reason='forged' WHERE id=?",
        (r3.id, r1.id)
    )
    with pytest.raises(IntegrityError):
        ledger.get_chain(r1.id)
    assert [r.id for r in ledger.get_chain(other.id)] == [other.id]


# ------------------------------------------------------------------
# Head index
# ------------------------------------------------------------------

def test_rebuild_head_index_repairs_drift(ledger, clerk, clock, raw_conn):
    r1, _, r3 = _three_versions(ledger, clerk, clock)
    raw_conn.execute("UPDATE chain_heads SET head_id=? WHERE subject_id='E9'", (r1.id,))

    report = ledger.rebuild_head_index()

    assert report.drifted == [chain_key("E9", "FALL-PROTECTION")]
    assert report.quarantined == []
    assert ledger.chains.current_head("E9", "FALL-PROTECTION").id == r3.id


def test_rebuild_head_index_restores_lost_index(ledger, clerk, clock, raw_conn):
    _, _, r3 = _three_versions(ledger, clerk, clock)
    raw_conn.execute("DELETE FROM chain_heads")
    with pytest.raises(IntegrityError):
        ledger.correct_certification(r3.id, "no head", {"issuing_authority": "C"}, clerk)

    report = ledger.rebuild_head_index()
    assert report.chains == 1
    assert ledger.chains.current_head("E9", "FALL-PROTECTION").id == r3.id


def test_rebuild_on_clean_ledger_reports_no_drift(ledger, clerk, clock):
    _three_versions(ledger, clerk, clock)
    report = ledger.rebuild_head_index()
    assert report.to_dict() == {"chains": 1, "drifted": [], "quarantined": []}


def test_record_without_ledger_event_is_reported(ledger, clerk, clock):
    ledger.create_certification("E1", "OSHA-10", {"non_expiring": True}, clerk)
    db.insert_record({
        "id": "cert_orphan", "subject_id": "E1", "type_id": "LOTO",
        "issuing_authority": None, "issue_date": None, "expiration_date": None,
        "non_expiring": 0, "proof_references": "[]",
        "created_at": "2025-06-01T12:00:00.000000Z", "created_by": "x",
        "supersedes": None, "correction_reason": None, "corrected_by": None, "corrected_at": None,
    })
    problems = ledger.chains.audit_consistency()
    assert [p["chain"] for p in problems] == [chain_key("E1", "LOTO")]
    assert "cert_orphan" in problems[0]["detail"]
    assert db.get_quarantine("E1", "LOTO") is not None
