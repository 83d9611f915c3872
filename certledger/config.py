"""
Configuration module for the evidence ledger.

Centralizes all configuration with environment variable support,
validation, and caching for JSON configuration files.
"""

import json
import os
import threading
import time
from pathlib import Path
from typing import Any, Dict, Optional

# ============================================================
# Environment Configuration
# ============================================================

ENV = os.getenv("CERTLEDGER_ENV", "dev")  # dev|stage|prod

# Storage
DB_PATH = os.getenv("CERTLEDGER_DB_PATH", "data/certledger.db")
CATALOG_PATH = os.getenv("CERTLEDGER_CATALOG_PATH", "")

# Logging
LOG_LEVEL = os.getenv("CERTLEDGER_LOG_LEVEL", "INFO")
LOG_JSON = os.getenv("CERTLEDGER_LOG_JSON", "true").lower() in ("1", "true", "yes")

# Public verification scans (requests per minute, per subject)
VERIFY_RPM = int(os.getenv("VERIFY_RPM", "120"))

# Signing configuration
SIGNER = os.getenv("CERTLEDGER_SIGNER", "file")  # file|aws_kms
AWS_KMS_KEY_ID = os.getenv("AWS_KMS_KEY_ID", "")
AWS_REGION = os.getenv("AWS_REGION")
AWS_KMS_KID = os.getenv("AWS_KMS_KID", "aws-kms-ed25519")
SIGNING_KEY_PATH = os.getenv("SIGNING_KEY_PATH", "secrets/certledger_signing_key.json")
TRUST_STORE_PATH = os.getenv("TRUST_STORE_PATH", "trust/trust_store.json")
QR_TOKEN_TTL_SECONDS = int(os.getenv("QR_TOKEN_TTL_SECONDS", "300"))

# Audit package export
AUDIT_EXPORT_BACKEND = os.getenv("AUDIT_EXPORT_BACKEND", "local")  # local|s3_object_lock
AUDIT_EXPORT_DIR = os.getenv("AUDIT_EXPORT_DIR", "exports")
S3_BUCKET = os.getenv("S3_BUCKET", "")
S3_PREFIX = os.getenv("S3_PREFIX", "certledger/audit-packages/")
S3_RETENTION_DAYS = int(os.getenv("S3_RETENTION_DAYS", "2555"))
S3_LEGAL_HOLD = os.getenv("S3_LEGAL_HOLD", "OFF")

# Cache TTL (seconds)
CONFIG_CACHE_TTL = int(os.getenv("CONFIG_CACHE_TTL", "60"))


# ============================================================
# Cached Configuration Loaders
# ============================================================

class CachedConfig:
    """
    Thread-safe cached JSON loader.
    Reloads a file once its cached copy is older than the TTL.
    """

    def __init__(self, ttl_seconds: int = 60):
        self._cache: Dict[str, Any] = {}
        self._timestamps: Dict[str, float] = {}
        self._lock = threading.RLock()
        self._ttl = ttl_seconds

    def _is_stale(self, key: str) -> bool:
        if key not in self._timestamps:
            return True
        return (time.time() - self._timestamps[key]) > self._ttl

    def get_json(self, path: str, force_reload: bool = False) -> Dict[str, Any]:
        with self._lock:
            if not force_reload and path in self._cache and not self._is_stale(path):
                return self._cache[path]

            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)

            self._cache[path] = data
            self._timestamps[path] = time.time()
            return data

    def invalidate(self, path: Optional[str] = None) -> None:
        """Invalidate cache for a specific path or all paths."""
        with self._lock:
            if path:
                self._cache.pop(path, None)
                self._timestamps.pop(path, None)
            else:
                self._cache.clear()
                self._timestamps.clear()


_config_cache = CachedConfig(ttl_seconds=CONFIG_CACHE_TTL)


def load_json_cached(path: str) -> Dict[str, Any]:
    """Load JSON file with caching."""
    return _config_cache.get_json(path)


# ============================================================
# Validation
# ============================================================

def validate_config() -> Dict[str, bool]:
    """
    Report which configured files exist.
    The catalog is only checked when a path is configured.
    """
    paths = {
        "signing_key": SIGNING_KEY_PATH,
        "trust_store": TRUST_STORE_PATH,
    }
    if CATALOG_PATH:
        paths["catalog"] = CATALOG_PATH
    return {name: Path(path).exists() for name, path in paths.items()}


def is_production() -> bool:
    return ENV == "prod"
