"""
Utility functions for the evidence ledger.

Canonical JSON serialization, hashing, encoding, identifiers and
timestamp handling.
"""

import base64
import hashlib
import json
import secrets
from datetime import date, datetime, time, timezone
from typing import Any, Optional, Union

# Fixed-width so that lexical order equals chronological order in SQLite.
_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def canonicalize(obj: Any) -> bytes:
    """
    Convert object to canonical JSON bytes.

    Canonical JSON:
    - Lexicographically sorted keys
    - No whitespace
    - UTF-8 encoded
    """
    s = json.dumps(obj, sort_keys=True, separators=(',', ':'), ensure_ascii=False)
    return s.encode('utf-8')


def sha256_hex(data: Union[bytes, str]) -> str:
    """Compute SHA-256 hash and return as hex string."""
    if isinstance(data, str):
        data = data.encode('utf-8')
    return hashlib.sha256(data).hexdigest()


def chain_entry_hash(prev_entry_hash: Optional[str], payload_hash: str) -> str:
    """
    Compute the hash chain entry hash.

    Links an entry to its predecessor so that any rewrite of an earlier
    entry changes every later entry hash.
    """
    data = (prev_entry_hash or "").encode("utf-8") + payload_hash.encode("utf-8")
    return sha256_hex(data)


def b64e(b: bytes) -> str:
    """Base64 encode bytes to string."""
    return base64.b64encode(b).decode('ascii')


def b64d(s: str) -> bytes:
    """Base64 decode string to bytes."""
    return base64.b64decode(s.encode('ascii'))


def b64url_encode(b: bytes) -> str:
    """URL-safe base64 encode bytes to string (no padding)."""
    return base64.urlsafe_b64encode(b).rstrip(b'=').decode('ascii')


def b64url_decode(s: str) -> bytes:
    """URL-safe base64 decode string to bytes (handles missing padding)."""
    padding = 4 - (len(s) % 4)
    if padding != 4:
        s += '=' * padding
    return base64.urlsafe_b64decode(s.encode('ascii'))


def generate_id(prefix: str, length: int = 16) -> str:
    """Generate a prefixed, cryptographically random identifier."""
    return f"{prefix}_{secrets.token_hex(length)}"


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Return an aware UTC datetime. Naive values are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_ts(value: datetime) -> str:
    """Serialize a datetime as a fixed-width UTC timestamp string."""
    return ensure_utc(value).strftime(_TS_FORMAT)


def parse_ts(s: str) -> datetime:
    """Parse a timestamp written by format_ts (or any ISO-8601 string)."""
    try:
        return datetime.strptime(s, _TS_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return ensure_utc(datetime.fromisoformat(s.replace("Z", "+00:00")))


def format_date(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def parse_date(s: Optional[str]) -> Optional[date]:
    return date.fromisoformat(s) if s else None


def start_of_day_utc(value: date) -> datetime:
    """Midnight UTC at the start of the given calendar day."""
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def mask_sensitive(value: str, visible_chars: int = 4) -> str:
    """
    Mask a sensitive value, showing only the last N characters.
    Useful for logging.
    """
    if len(value) <= visible_chars:
        return '*' * len(value)
    return '*' * (len(value) - visible_chars) + value[-visible_chars:]
