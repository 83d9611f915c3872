from datetime import date, datetime, timezone

import pytest

from certledger.errors import ValidationError
from certledger.models import CertificationRecord, CertificationStatus
from certledger.status import (
    REASON_EXPIRED,
    REASON_NO_EXPIRATION,
    REASON_NO_ISSUE_DATE,
    REASON_NO_PROOF,
    derive_status,
    evaluate,
    failure_reason,
)

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def record(**fields):
    base = dict(
        id="cert_1",
        subject_id="E1",
        type_id="FALL-PROTECTION",
        created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        created_by="hr-clerk-1",
    )
    base.update(fields)
    return CertificationRecord(**base)


def test_no_proof_is_incomplete_before_anything_else():
    # Missing proof wins even when the record is also expired and undated.
    r = record(proof_references=frozenset(), expiration_date=date(2000, 1, 1))
    assert evaluate(r, NOW) == (CertificationStatus.INCOMPLETE, REASON_NO_PROOF)


def test_missing_issue_date_is_incomplete():
    r = record(proof_references=frozenset({"p1"}), non_expiring=True)
    assert evaluate(r, NOW) == (CertificationStatus.INCOMPLETE, REASON_NO_ISSUE_DATE)


def test_non_expiring_passes_without_expiration():
    r = record(proof_references=frozenset({"p1"}), issue_date=date(2020, 1, 1), non_expiring=True)
    assert derive_status(r, NOW) == CertificationStatus.PASS
    assert failure_reason(r, NOW) is None


def test_non_expiring_ignores_a_past_expiration_date():
    r = record(proof_references=frozenset({"p1"}), issue_date=date(2020, 1, 1),
               expiration_date=date(2021, 1, 1), non_expiring=True)
    assert derive_status(r, NOW) == CertificationStatus.PASS


def test_missing_expiration_is_incomplete():
    r = record(proof_references=frozenset({"p1"}), issue_date=date(2020, 1, 1))
    assert evaluate(r, NOW) == (CertificationStatus.INCOMPLETE, REASON_NO_EXPIRATION)


def test_expired_is_fail():
    r = record(proof_references=frozenset({"p2"}), issue_date=date(2019, 1, 1),
               expiration_date=date(2020, 1, 1))
    assert evaluate(r, NOW) == (CertificationStatus.FAIL, REASON_EXPIRED)


def test_future_expiration_passes():
    r = record(proof_references=frozenset({"p1"}), issue_date=date(2024, 1, 1),
               expiration_date=date(2026, 1, 1))
    assert derive_status(r, NOW) == CertificationStatus.PASS


class TestExpirationBoundary:
    """The expiration date is compared as midnight UTC at its start."""

    r = record(proof_references=frozenset({"p1"}), issue_date=date(2024, 1, 1),
               expiration_date=date(2025, 6, 1))

    def test_exactly_midnight_is_not_yet_expired(self):
        at = datetime(2025, 6, 1, 0, 0, tzinfo=timezone.utc)
        assert derive_status(self.r, at) == CertificationStatus.PASS

    def test_one_microsecond_after_midnight_is_expired(self):
        at = datetime(2025, 6, 1, 0, 0, 0, 1, tzinfo=timezone.utc)
        assert derive_status(self.r, at) == CertificationStatus.FAIL

    def test_day_before_passes(self):
        at = datetime(2025, 5, 31, 23, 59, 59, tzinfo=timezone.utc)
        assert derive_status(self.r, at) == CertificationStatus.PASS

    def test_naive_instant_is_taken_as_utc(self):
        assert derive_status(self.r, datetime(2025, 6, 2)) == CertificationStatus.FAIL


def test_deterministic_for_same_inputs():
    r = record(proof_references=frozenset({"p1"}), issue_date=date(2024, 1, 1),
               expiration_date=date(2025, 1, 1))
    results = {evaluate(r, NOW) for _ in range(5)}
    assert results == {(CertificationStatus.FAIL, REASON_EXPIRED)}


def test_superseding_record_needs_reason():
    with pytest.raises(ValidationError):
        record(supersedes="cert_0", correction_reason="  ")
