"""
Status Deriver.

Maps a certification record and an evaluation instant to PASS, FAIL or
INCOMPLETE. Deterministic: the instant is always passed in, never read
from a clock, so the same inputs give the same answer at any later time.

Rule order (first match wins):
    1. no proof references       -> INCOMPLETE  "No proof uploaded"
    2. no issue date             -> INCOMPLETE  "Missing issue date"
    3. non-expiring              -> PASS
    4. no expiration date        -> INCOMPLETE  "Missing expiration date"
    5. expired before instant    -> FAIL        "Certification expired"
    6. otherwise                 -> PASS
"""

from datetime import datetime
from typing import Optional, Tuple

from .models import CertificationRecord, CertificationStatus
from .util import ensure_utc, start_of_day_utc

REASON_NO_PROOF = "No proof uploaded"
REASON_NO_ISSUE_DATE = "Missing issue date"
REASON_NO_EXPIRATION = "Missing expiration date"
REASON_EXPIRED = "Certification expired"


def evaluate(
    record: CertificationRecord,
    evaluation_instant: datetime
) -> Tuple[CertificationStatus, Optional[str]]:
    """Return (status, failure reason) for a record at an instant."""
    if not record.has_proof:
        return CertificationStatus.INCOMPLETE, REASON_NO_PROOF

    if record.issue_date is None:
        return CertificationStatus.INCOMPLETE, REASON_NO_ISSUE_DATE

    if record.non_expiring:
        return CertificationStatus.PASS, None

    if record.expiration_date is None:
        return CertificationStatus.INCOMPLETE, REASON_NO_EXPIRATION

    if start_of_day_utc(record.expiration_date) < ensure_utc(evaluation_instant):
        return CertificationStatus.FAIL, REASON_EXPIRED

    return CertificationStatus.PASS, None


def derive_status(record: CertificationRecord, evaluation_instant: datetime) -> CertificationStatus:
    return evaluate(record, evaluation_instant)[0]


def failure_reason(record: CertificationRecord, evaluation_instant: datetime) -> Optional[str]:
    return evaluate(record, evaluation_instant)[1]
