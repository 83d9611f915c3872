"""
HTTP surface for the evidence ledger.

Identity is resolved upstream: writes carry the actor in X-Actor-Id /
X-Actor-Type, and the public verification endpoint carries the
organization's subscription flag in X-Organization-Licensed.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import AsyncGenerator, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from . import db
from .audit_export import build_audit_package, write_audit_package
from .config import (
    AWS_KMS_KEY_ID,
    AWS_KMS_KID,
    AWS_REGION,
    LOG_JSON,
    LOG_LEVEL,
    SIGNER,
    SIGNING_KEY_PATH,
    TRUST_STORE_PATH,
    VERIFY_RPM,
    is_production,
    validate_config,
)
from .core import CertLedger
from .errors import ConflictError, IntegrityError, NotFoundError, ValidationError
from .keys import KeyProvider, get_key_provider
from .logging_config import configure_logging, set_request_id
from .models import Actor
from .rate_limit import RateLimiter
from .schemas import (
    AuditExportRequest,
    CertificationCreate,
    CorrectionCreate,
    RequirementsAdd,
    SubjectCreate,
    VerifyRequest,
)
from .status import failure_reason
from .tokens import issue_token, validate_token
from .util import ensure_utc, format_ts, mask_sensitive
from .verification import present_verification

logger = logging.getLogger(__name__)

LEDGER: Optional[CertLedger] = None
KEYS: Optional[KeyProvider] = None
verify_limiter = RateLimiter(VERIFY_RPM)


def configure(ledger: Optional[CertLedger] = None, keys: Optional[KeyProvider] = None) -> None:
    """Install the ledger and signing keys the routes use."""
    global LEDGER, KEYS
    LEDGER = ledger
    KEYS = keys


def _startup():
    configure_logging(LOG_LEVEL, LOG_JSON)
    db.init_db()
    for name, present in validate_config().items():
        if not present:
            logger.warning("Configured %s file is missing", name)
    keys = None
    if SIGNER == "aws_kms" or Path(SIGNING_KEY_PATH).exists():
        keys = get_key_provider(
            signer_type=SIGNER,
            signing_key_path=SIGNING_KEY_PATH,
            trust_store_path=TRUST_STORE_PATH,
            kms_key_id=AWS_KMS_KEY_ID or None,
            kms_region=AWS_REGION,
            kms_kid=AWS_KMS_KID,
        )
    elif is_production():
        raise RuntimeError(f"Signing key required in production: {SIGNING_KEY_PATH}")
    else:
        logger.warning("No signing key at %s; token and export endpoints disabled", SIGNING_KEY_PATH)
    configure(CertLedger(), keys)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    _startup()
    yield


app = FastAPI(title="CertLedger Evidence Ledger", lifespan=lifespan)


def get_ledger() -> CertLedger:
    global LEDGER
    if LEDGER is None:
        LEDGER = CertLedger()
    return LEDGER


def get_keys() -> KeyProvider:
    if KEYS is None:
        raise HTTPException(503, "SIGNING_NOT_CONFIGURED")
    return KEYS


def get_actor(
    x_actor_id: Optional[str] = Header(None),
    x_actor_type: str = Header("user")
) -> Actor:
    if not x_actor_id:
        raise HTTPException(401, "ACTOR_REQUIRED")
    return Actor(actor_id=x_actor_id, actor_type=x_actor_type)


def _at(value: Optional[datetime], ledger: CertLedger) -> datetime:
    return ensure_utc(value) if value is not None else ledger.now()


# ============================================================
# Request correlation & error mapping
# ============================================================

@app.middleware("http")
async def _request_id(request: Request, call_next):
    request_id = set_request_id(request.headers.get("x-request-id"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(ValidationError)
async def _validation_error(request: Request, exc: ValidationError):
    return JSONResponse(status_code=422, content={
        "error": "VALIDATION_ERROR", "field": exc.field, "message": exc.message,
    })


@app.exception_handler(ConflictError)
async def _conflict_error(request: Request, exc: ConflictError):
    return JSONResponse(status_code=409, content={
        "error": "CONFLICT", "message": str(exc),
        "record_id": exc.record_id, "current_head_id": exc.current_head_id,
    })


@app.exception_handler(NotFoundError)
async def _not_found_error(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={
        "error": "NOT_FOUND", "kind": exc.kind, "key": exc.key,
    })


@app.exception_handler(IntegrityError)
async def _integrity_error(request: Request, exc: IntegrityError):
    logger.critical("Integrity violation surfaced to %s: %s", request.url.path, exc)
    return JSONResponse(status_code=500, content={
        "error": "INTEGRITY_VIOLATION", "message": str(exc),
        "subject_id": exc.subject_id, "type_id": exc.type_id,
    })


# ============================================================
# Subjects
# ============================================================

@app.post("/subjects", status_code=201)
def register_subject(req: SubjectCreate, actor: Actor = Depends(get_actor)):
    types = get_ledger().register_subject(req.subject_id, req.required_types, actor)
    return {"subject_id": req.subject_id, "required_types": types}


@app.post("/subjects/{subject_id}/requirements")
def add_requirements(subject_id: str, req: RequirementsAdd, actor: Actor = Depends(get_actor)):
    return {"subject_id": subject_id, "added": get_ledger().require_types(subject_id, req.type_ids, actor)}


@app.get("/subjects/{subject_id}/status/{type_id}")
def status_as_of(subject_id: str, type_id: str, at: Optional[datetime] = None):
    ledger = get_ledger()
    instant = _at(at, ledger)
    record = ledger.snapshots.record_as_of(subject_id, type_id, instant)
    return {
        "subject_id": subject_id,
        "type_id": type_id,
        "at": format_ts(instant),
        "status": ledger.status_as_of(subject_id, type_id, instant).value,
        "reason": failure_reason(record, instant) if record else None,
        "record_id": record.id if record else None,
    }


@app.get("/subjects/{subject_id}/snapshot")
def employee_snapshot(subject_id: str, at: Optional[datetime] = None):
    ledger = get_ledger()
    instant = _at(at, ledger)
    snapshot = ledger.employee_snapshot(subject_id, instant)
    return {
        "subject_id": subject_id,
        "at": format_ts(instant),
        "statuses": {k: v.value for k, v in snapshot.items()},
    }


@app.get("/subjects/{subject_id}/enforcement")
def enforcement_state(subject_id: str, at: Optional[datetime] = None):
    ledger = get_ledger()
    return ledger.employee_enforcement_state(subject_id, _at(at, ledger)).to_dict()


@app.get("/subjects/{subject_id}/timeline")
def timeline(subject_id: str, from_time: Optional[datetime] = None, to_time: Optional[datetime] = None):
    events = get_ledger().snapshots.timeline(subject_id, from_time, to_time)
    return [e.to_dict() for e in events]


@app.get("/subjects/{subject_id}/verifications")
def list_verifications(subject_id: str):
    return [v.to_dict() for v in get_ledger().verifications.list_verifications(subject_id)]


@app.post("/subjects/{subject_id}/verification-tokens", status_code=201)
def issue_verification_token(subject_id: str, actor: Actor = Depends(get_actor)):
    ledger = get_ledger()
    if not db.subject_exists(subject_id):
        raise NotFoundError("subject", subject_id)
    token = issue_token(get_keys(), subject_id, ledger.now())
    logger.info("Issued verification token %s for %s to %s",
                mask_sensitive(token, 8), subject_id, actor.actor_id)
    return {"subject_id": subject_id, "token": token}


# ============================================================
# Certifications
# ============================================================

@app.post("/certifications", status_code=201)
def create_certification(req: CertificationCreate, actor: Actor = Depends(get_actor)):
    record = get_ledger().create_certification(req.subject_id, req.type_id, req.record_fields(), actor)
    return record.to_dict()


@app.post("/certifications/{record_id}/corrections", status_code=201)
def correct_certification(record_id: str, req: CorrectionCreate, actor: Actor = Depends(get_actor)):
    record = get_ledger().correct_certification(record_id, req.reason, req.changes, actor)
    return record.to_dict()


@app.get("/certifications/{record_id}")
def get_certification(record_id: str):
    return get_ledger().chains.get_record(record_id).to_dict()


@app.get("/certifications/{record_id}/chain")
def get_chain(record_id: str):
    chain = get_ledger().get_chain(record_id)
    return {
        "head_id": chain[-1].id,
        "versions": [dict(r.to_dict(), version=i) for i, r in enumerate(chain, start=1)],
    }


# ============================================================
# Public verification
# ============================================================

@app.post("/verify/{token}")
def verify(
    token: str,
    req: Optional[VerifyRequest] = None,
    x_organization_licensed: bool = Header(False)
):
    ledger = get_ledger()
    check = validate_token(token, get_keys().get_trust_store(), ledger.now())
    if not check.valid:
        raise HTTPException(401, check.error)
    if not verify_limiter.allow(check.subject_id):
        raise HTTPException(429, "RATE_LIMIT")
    req = req or VerifyRequest()
    event = ledger.record_verification(check.subject_id, req.method, req.location_hint)
    return present_verification(event, x_organization_licensed)


# ============================================================
# Ledger, integrity & export
# ============================================================

@app.get("/ledger/nodes/{node_id}/events")
def ledger_events(node_id: str, from_time: Optional[datetime] = None, to_time: Optional[datetime] = None):
    return [e.to_dict() for e in get_ledger().read(node_id, from_time, to_time)]


@app.get("/integrity")
def integrity():
    return get_ledger().integrity_report()


@app.post("/admin/rebuild-index")
def rebuild_index(actor: Actor = Depends(get_actor)):
    logger.info("Head index rebuild requested by %s", actor.actor_id)
    return get_ledger().rebuild_head_index().to_dict()


@app.post("/audit/packages", status_code=201)
def export_audit_package(req: AuditExportRequest, actor: Actor = Depends(get_actor)):
    package = build_audit_package(get_ledger(), req.subject_ids, actor, get_keys(),
                                  req.from_time, req.to_time)
    location = write_audit_package(package)
    return {"location": location, "manifest": package.manifest}
