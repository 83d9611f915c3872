"""
Signed verification tokens.

A token is what a QR badge encodes: ``<payload>.<signature>``, both
base64url, where the payload is canonical JSON naming the subject and a
validity window and the signature is Ed25519 over the payload bytes.
Validation never raises; every failure is reported in a TokenCheck.
"""

import json
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from .config import QR_TOKEN_TTL_SECONDS
from .keys import KeyProvider, public_key_for, verify_ed25519
from .util import b64d, b64e, b64url_decode, b64url_encode, canonicalize, ensure_utc

TOKEN_VERSION = 1


@dataclass
class TokenCheck:
    valid: bool
    subject_id: Optional[str] = None
    error: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)


def issue_token(
    keys: KeyProvider,
    subject_id: str,
    now: datetime,
    ttl_seconds: int = QR_TOKEN_TTL_SECONDS
) -> str:
    """Issue a token for ``subject_id`` valid for ``ttl_seconds`` from ``now``."""
    issued = ensure_utc(now)
    payload = {
        "v": TOKEN_VERSION,
        "sub": subject_id,
        "iat": int(issued.timestamp()),
        "exp": int((issued + timedelta(seconds=ttl_seconds)).timestamp()),
        "kid": keys.get_kid(),
        "nonce": secrets.token_hex(8),
    }
    body = canonicalize(payload)
    _, sig_b64 = keys.sign(body)
    return f"{b64url_encode(body)}.{b64url_encode(b64d(sig_b64))}"


def validate_token(token: str, trust_store: Dict[str, Any], now: datetime) -> TokenCheck:
    try:
        body_part, sig_part = token.split(".")
        body = b64url_decode(body_part)
        signature = b64url_decode(sig_part)
        payload = json.loads(body.decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        return TokenCheck(valid=False, error="Invalid token format")
    if not isinstance(payload, dict) or not payload.get("sub") or not isinstance(payload.get("exp"), int):
        return TokenCheck(valid=False, error="Invalid token format")

    public_key = public_key_for(trust_store, str(payload.get("kid", "")))
    if public_key is None:
        return TokenCheck(valid=False, error="Unknown signing key", payload=payload)
    if not verify_ed25519(b64e(signature), body, public_key):
        return TokenCheck(valid=False, error="Invalid signature", payload=payload)

    if int(payload["exp"]) < int(ensure_utc(now).timestamp()):
        return TokenCheck(valid=False, subject_id=payload["sub"], error="Token expired", payload=payload)

    return TokenCheck(valid=True, subject_id=payload["sub"], payload=payload)
