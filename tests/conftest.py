import threading
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from certledger import api, db
from certledger.catalog import default_catalog
from certledger.core import CertLedger
from certledger.keys import FileKeyProvider, generate_keypair
from certledger.models import Actor

T0 = datetime(2025, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock. Calls return the same instant until advanced."""

    def __init__(self, start: datetime = T0):
        self._now = start
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, **kwargs) -> datetime:
        with self._lock:
            self._now += timedelta(**kwargs)
            return self._now

    def set(self, value: datetime) -> None:
        with self._lock:
            self._now = value


# Fresh database file for every test
@pytest.fixture(autouse=True)
def _fresh_db(tmp_path):
    db.set_db_path(tmp_path / "certledger.db")
    db.init_db()
    yield
    db.close_connection()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger(clock):
    return CertLedger(catalog=default_catalog(), clock=clock)


@pytest.fixture
def clerk():
    return Actor("hr-clerk-1")


@pytest.fixture
def keys(tmp_path):
    key_path = tmp_path / "secrets" / "signing_key.json"
    trust_path = tmp_path / "trust" / "trust_store.json"
    generate_keypair(str(key_path), str(trust_path), "test-signing-01")
    return FileKeyProvider(str(key_path), str(trust_path))


@pytest.fixture
def client(ledger, keys):
    api.configure(ledger, keys)
    api.verify_limiter.reset()
    yield TestClient(api.app)
    api.configure(None, None)


@pytest.fixture
def raw_conn():
    """Raw connection for tests that tamper with storage."""
    return db._get_connection()
