"""
Database module for the evidence ledger.

SQLite storage for certification records, evidence nodes, ledger events,
verification events and subject requirements, plus the CAS-guarded chain
head index. Each thread holds its own connection; the file runs in WAL
mode so reads see a committed snapshot and never block writers.

Append-only tables carry triggers that abort any UPDATE or DELETE.
"""

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from . import config

# Thread-local storage for connection pooling
_local = threading.local()

_path_lock = threading.Lock()
_db_path = Path(config.DB_PATH)

APPEND_ONLY_TABLES = (
    "subjects",
    "subject_requirements",
    "certification_records",
    "evidence_nodes",
    "ledger_events",
    "verification_events",
)


def set_db_path(path) -> None:
    """Point every thread at a different database file."""
    global _db_path
    with _path_lock:
        _db_path = Path(path)


def get_db_path() -> Path:
    with _path_lock:
        return _db_path


def _get_connection() -> sqlite3.Connection:
    """
    Get a thread-local database connection.
    Connections are reused within the same thread and reopened if the
    configured path changes.
    """
    path = get_db_path()
    conn = getattr(_local, 'conn', None)
    if conn is not None and getattr(_local, 'path', None) == path:
        return conn
    if conn is not None:
        conn.close()

    path.parent.mkdir(parents=True, exist_ok=True)
    # isolation_level=None: transactions are opened explicitly below.
    conn = sqlite3.connect(str(path), check_same_thread=False, isolation_level=None, timeout=30)
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    conn.execute("PRAGMA busy_timeout=30000;")
    conn.row_factory = sqlite3.Row
    _local.conn = conn
    _local.path = path
    return conn


@contextmanager
def transaction() -> Iterator[sqlite3.Connection]:
    """
    Write transaction. Takes the write lock up front (BEGIN IMMEDIATE),
    commits on success, rolls back on failure. Re-entrant: a nested call
    joins the outer transaction.
    """
    conn = _get_connection()
    if conn.in_transaction:
        yield conn
        return
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
        conn.execute("COMMIT")
    except BaseException:
        conn.execute("ROLLBACK")
        raise


def init_db() -> None:
    """
    Initialize database schema with indexes and append-only triggers.
    Safe to call multiple times (uses IF NOT EXISTS).
    """
    with transaction() as conn:
        conn.execute("""
        CREATE TABLE IF NOT EXISTS subjects (
            subject_id TEXT PRIMARY KEY,
            created_at TEXT NOT NULL,
            created_by TEXT NOT NULL
        );""")

        conn.execute("""
        CREATE TABLE IF NOT EXISTS subject_requirements (
            subject_id TEXT NOT NULL REFERENCES subjects(subject_id),
            type_id TEXT NOT NULL,
            created_at TEXT NOT NULL,
            created_by TEXT NOT NULL,
            PRIMARY KEY (subject_id, type_id)
        );""")

        conn.execute("""
        CREATE TABLE IF NOT EXISTS certification_records (
            id TEXT PRIMARY KEY,
            subject_id TEXT NOT NULL,
            type_id TEXT NOT NULL,
            issuing_authority TEXT,
            issue_date TEXT,
            expiration_date TEXT,
            non_expiring INTEGER NOT NULL DEFAULT 0,
            proof_references TEXT NOT NULL DEFAULT '[]',
            created_at TEXT NOT NULL,
            created_by TEXT NOT NULL,
            supersedes TEXT REFERENCES certification_records(id),
            correction_reason TEXT,
            corrected_by TEXT,
            corrected_at TEXT,
            CHECK (supersedes IS NULL OR length(trim(coalesce(correction_reason, ''))) > 0)
        );""")
        conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_records_chain
        ON certification_records(subject_id, type_id, created_at);""")
        # At most one successor per record: chains cannot branch.
        conn.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS idx_records_supersedes
        ON certification_records(supersedes) WHERE supersedes IS NOT NULL;""")

        conn.execute("""
        CREATE TABLE IF NOT EXISTS chain_heads (
            subject_id TEXT NOT NULL,
            type_id TEXT NOT NULL,
            head_id TEXT NOT NULL REFERENCES certification_records(id) DEFERRABLE INITIALLY DEFERRED,
            version INTEGER NOT NULL DEFAULT 1,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (subject_id, type_id)
        );""")

        conn.execute("""
        CREATE TABLE IF NOT EXISTS quarantined_chains (
            subject_id TEXT NOT NULL,
            type_id TEXT NOT NULL,
            reason TEXT NOT NULL,
            detected_at TEXT NOT NULL,
            PRIMARY KEY (subject_id, type_id)
        );""")

        conn.execute("""
        CREATE TABLE IF NOT EXISTS evidence_nodes (
            id TEXT PRIMARY KEY,
            entity_type TEXT NOT NULL,
            entity_id TEXT NOT NULL,
            created_at TEXT NOT NULL,
            UNIQUE (entity_type, entity_id)
        );""")

        # Mutable per-node counter, guarded by the write transaction.
        conn.execute("""
        CREATE TABLE IF NOT EXISTS node_sequences (
            node_id TEXT PRIMARY KEY REFERENCES evidence_nodes(id),
            last_seq INTEGER NOT NULL DEFAULT 0,
            last_entry_hash TEXT,
            last_created_at TEXT
        );""")

        conn.execute("""
        CREATE TABLE IF NOT EXISTS ledger_events (
            id TEXT PRIMARY KEY,
            evidence_node_id TEXT NOT NULL REFERENCES evidence_nodes(id),
            seq INTEGER NOT NULL,
            event_type TEXT NOT NULL,
            payload_json TEXT NOT NULL,
            actor_id TEXT NOT NULL,
            actor_type TEXT NOT NULL,
            created_at TEXT NOT NULL,
            payload_hash TEXT NOT NULL,
            prev_entry_hash TEXT,
            entry_hash TEXT NOT NULL,
            UNIQUE (evidence_node_id, seq)
        );""")
        conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_ledger_node_order
        ON ledger_events(evidence_node_id, created_at, seq);""")

        conn.execute("""
        CREATE TABLE IF NOT EXISTS verification_events (
            id TEXT PRIMARY KEY,
            subject_id TEXT NOT NULL,
            scan_timestamp TEXT NOT NULL,
            derived_status_json TEXT NOT NULL,
            enforcement_state TEXT NOT NULL,
            method TEXT NOT NULL,
            location_hint TEXT
        );""")
        conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_verification_subject
        ON verification_events(subject_id, scan_timestamp);""")

        for table in APPEND_ONLY_TABLES:
            for op in ("UPDATE", "DELETE"):
                conn.execute(f"""
                CREATE TRIGGER IF NOT EXISTS trg_{table}_no_{op.lower()}
                BEFORE {op} ON {table}
                BEGIN
                    SELECT RAISE(ABORT, '{table} is append-only');
                END;""")


# ============================================================
# Subjects & Requirements
# ============================================================

def insert_subject(subject_id: str, created_at: str, created_by: str) -> bool:
    """Insert a subject. Returns False if it already exists."""
    conn = _get_connection()
    cur = conn.execute(
        "INSERT OR IGNORE INTO subjects(subject_id, created_at, created_by) VALUES(?,?,?)",
        (subject_id, created_at, created_by)
    )
    return cur.rowcount == 1


def subject_exists(subject_id: str) -> bool:
    conn = _get_connection()
    cur = conn.execute("SELECT 1 FROM subjects WHERE subject_id=?", (subject_id,))
    if cur.fetchone() is not None:
        return True
    cur = conn.execute("SELECT 1 FROM certification_records WHERE subject_id=? LIMIT 1", (subject_id,))
    return cur.fetchone() is not None


def is_registered(subject_id: str) -> bool:
    conn = _get_connection()
    cur = conn.execute("SELECT 1 FROM subjects WHERE subject_id=?", (subject_id,))
    return cur.fetchone() is not None


def insert_requirement(subject_id: str, type_id: str, created_at: str, created_by: str) -> bool:
    """Insert a requirement. Returns False if the type is already required."""
    conn = _get_connection()
    cur = conn.execute(
        "INSERT OR IGNORE INTO subject_requirements(subject_id, type_id, created_at, created_by) "
        "VALUES(?,?,?,?)",
        (subject_id, type_id, created_at, created_by)
    )
    return cur.rowcount == 1


def requirement_type_ids(subject_id: str, as_of: Optional[str] = None) -> List[str]:
    conn = _get_connection()
    if as_of is None:
        cur = conn.execute(
            "SELECT type_id FROM subject_requirements WHERE subject_id=? ORDER BY type_id",
            (subject_id,)
        )
    else:
        cur = conn.execute(
            "SELECT type_id FROM subject_requirements WHERE subject_id=? AND created_at<=? "
            "ORDER BY type_id",
            (subject_id, as_of)
        )
    return [row["type_id"] for row in cur.fetchall()]


def subject_known_as_of(subject_id: str, as_of: str) -> bool:
    """True if the subject was registered or had a record at ``as_of``."""
    conn = _get_connection()
    cur = conn.execute(
        "SELECT 1 FROM subjects WHERE subject_id=? AND created_at<=? "
        "UNION ALL SELECT 1 FROM certification_records WHERE subject_id=? AND created_at<=? LIMIT 1",
        (subject_id, as_of, subject_id, as_of)
    )
    return cur.fetchone() is not None


# ============================================================
# Certification Records & Chain Heads
# ============================================================

_RECORD_COLUMNS = (
    "id", "subject_id", "type_id", "issuing_authority", "issue_date", "expiration_date",
    "non_expiring", "proof_references", "created_at", "created_by", "supersedes",
    "correction_reason", "corrected_by", "corrected_at",
)


def insert_record(row: Dict[str, Any]) -> None:
    conn = _get_connection()
    placeholders = ",".join("?" for _ in _RECORD_COLUMNS)
    conn.execute(
        f"INSERT INTO certification_records({','.join(_RECORD_COLUMNS)}) VALUES({placeholders})",
        tuple(row[c] for c in _RECORD_COLUMNS)
    )


def get_record_row(record_id: str) -> Optional[sqlite3.Row]:
    conn = _get_connection()
    cur = conn.execute("SELECT * FROM certification_records WHERE id=?", (record_id,))
    return cur.fetchone()


def chain_record_rows(subject_id: str, type_id: str) -> List[sqlite3.Row]:
    """Every version ever written for one (subject, type) pair, in one read."""
    conn = _get_connection()
    cur = conn.execute(
        "SELECT * FROM certification_records WHERE subject_id=? AND type_id=? "
        "ORDER BY created_at ASC, id ASC",
        (subject_id, type_id)
    )
    return cur.fetchall()


def chain_type_ids(subject_id: str, as_of: Optional[str] = None) -> List[str]:
    """Types for which the subject had at least one record (as of an instant)."""
    conn = _get_connection()
    if as_of is None:
        cur = conn.execute(
            "SELECT DISTINCT type_id FROM certification_records WHERE subject_id=? ORDER BY type_id",
            (subject_id,)
        )
    else:
        cur = conn.execute(
            "SELECT DISTINCT type_id FROM certification_records WHERE subject_id=? AND created_at<=? "
            "ORDER BY type_id",
            (subject_id, as_of)
        )
    return [row["type_id"] for row in cur.fetchall()]


def successor_ids(record_id: str) -> List[str]:
    conn = _get_connection()
    cur = conn.execute("SELECT id FROM certification_records WHERE supersedes=?", (record_id,))
    return [row["id"] for row in cur.fetchall()]


def all_record_rows() -> List[sqlite3.Row]:
    conn = _get_connection()
    cur = conn.execute("SELECT * FROM certification_records ORDER BY subject_id, type_id, created_at")
    return cur.fetchall()


def get_head(subject_id: str, type_id: str) -> Optional[sqlite3.Row]:
    conn = _get_connection()
    cur = conn.execute(
        "SELECT head_id, version FROM chain_heads WHERE subject_id=? AND type_id=?",
        (subject_id, type_id)
    )
    return cur.fetchone()


def insert_head(subject_id: str, type_id: str, head_id: str, updated_at: str) -> bool:
    """Create the head row for a new chain. Returns False if a chain already exists."""
    conn = _get_connection()
    cur = conn.execute(
        "INSERT OR IGNORE INTO chain_heads(subject_id, type_id, head_id, version, updated_at) "
        "VALUES(?,?,?,1,?)",
        (subject_id, type_id, head_id, updated_at)
    )
    return cur.rowcount == 1


def cas_head(subject_id: str, type_id: str, expected_head: str, new_head: str, updated_at: str) -> bool:
    """
    Compare-and-swap the chain head pointer.
    Returns True only if the head was still ``expected_head``.
    """
    conn = _get_connection()
    cur = conn.execute(
        "UPDATE chain_heads SET head_id=?, version=version+1, updated_at=? "
        "WHERE subject_id=? AND type_id=? AND head_id=?",
        (new_head, updated_at, subject_id, type_id, expected_head)
    )
    return cur.rowcount == 1


def all_heads() -> Dict[Tuple[str, str], str]:
    conn = _get_connection()
    cur = conn.execute("SELECT subject_id, type_id, head_id FROM chain_heads")
    return {(row["subject_id"], row["type_id"]): row["head_id"] for row in cur.fetchall()}


def replace_heads(heads: Dict[Tuple[str, str], str], updated_at: str) -> None:
    """Rewrite the whole head index. The index is a derived cache."""
    conn = _get_connection()
    conn.execute("DELETE FROM chain_heads")
    conn.executemany(
        "INSERT INTO chain_heads(subject_id, type_id, head_id, version, updated_at) VALUES(?,?,?,1,?)",
        [(s, t, h, updated_at) for (s, t), h in sorted(heads.items())]
    )


def quarantine_chain(subject_id: str, type_id: str, reason: str, detected_at: str) -> bool:
    conn = _get_connection()
    cur = conn.execute(
        "INSERT OR IGNORE INTO quarantined_chains(subject_id, type_id, reason, detected_at) "
        "VALUES(?,?,?,?)",
        (subject_id, type_id, reason, detected_at)
    )
    return cur.rowcount == 1


def get_quarantine(subject_id: str, type_id: str) -> Optional[sqlite3.Row]:
    conn = _get_connection()
    cur = conn.execute(
        "SELECT reason, detected_at FROM quarantined_chains WHERE subject_id=? AND type_id=?",
        (subject_id, type_id)
    )
    return cur.fetchone()


def list_quarantined() -> List[Dict[str, Any]]:
    conn = _get_connection()
    cur = conn.execute("SELECT * FROM quarantined_chains ORDER BY detected_at")
    return [dict(row) for row in cur.fetchall()]


# ============================================================
# Evidence Nodes & Ledger Events
# ============================================================

def find_node_row(entity_type: str, entity_id: str) -> Optional[sqlite3.Row]:
    conn = _get_connection()
    cur = conn.execute(
        "SELECT * FROM evidence_nodes WHERE entity_type=? AND entity_id=?",
        (entity_type, entity_id)
    )
    return cur.fetchone()


def get_node_row(node_id: str) -> Optional[sqlite3.Row]:
    conn = _get_connection()
    cur = conn.execute("SELECT * FROM evidence_nodes WHERE id=?", (node_id,))
    return cur.fetchone()


def insert_node(node_id: str, entity_type: str, entity_id: str, created_at: str) -> None:
    conn = _get_connection()
    conn.execute(
        "INSERT INTO evidence_nodes(id, entity_type, entity_id, created_at) VALUES(?,?,?,?)",
        (node_id, entity_type, entity_id, created_at)
    )
    conn.execute("INSERT INTO node_sequences(node_id, last_seq) VALUES(?, 0)", (node_id,))


def all_node_ids() -> List[str]:
    conn = _get_connection()
    cur = conn.execute("SELECT id FROM evidence_nodes ORDER BY created_at, id")
    return [row["id"] for row in cur.fetchall()]


def get_sequence(node_id: str) -> Optional[sqlite3.Row]:
    conn = _get_connection()
    cur = conn.execute(
        "SELECT last_seq, last_entry_hash, last_created_at FROM node_sequences WHERE node_id=?",
        (node_id,)
    )
    return cur.fetchone()


def advance_sequence(node_id: str, expected_seq: int, entry_hash: str, created_at: str) -> bool:
    conn = _get_connection()
    cur = conn.execute(
        "UPDATE node_sequences SET last_seq=?, last_entry_hash=?, last_created_at=? "
        "WHERE node_id=? AND last_seq=?",
        (expected_seq + 1, entry_hash, created_at, node_id, expected_seq)
    )
    return cur.rowcount == 1


_EVENT_COLUMNS = (
    "id", "evidence_node_id", "seq", "event_type", "payload_json", "actor_id", "actor_type",
    "created_at", "payload_hash", "prev_entry_hash", "entry_hash",
)


def insert_ledger_event(row: Dict[str, Any]) -> None:
    conn = _get_connection()
    placeholders = ",".join("?" for _ in _EVENT_COLUMNS)
    conn.execute(
        f"INSERT INTO ledger_events({','.join(_EVENT_COLUMNS)}) VALUES({placeholders})",
        tuple(row[c] for c in _EVENT_COLUMNS)
    )


def ledger_page(
    node_id: str,
    from_ts: Optional[str],
    to_ts: Optional[str],
    after: Optional[Tuple[str, int]],
    limit: int
) -> List[sqlite3.Row]:
    """
    One page of a node's events in (created_at, seq) order, starting
    strictly after the ``after`` key.
    """
    clauses = ["evidence_node_id=?"]
    params: List[Any] = [node_id]
    if from_ts is not None:
        clauses.append("created_at>=?")
        params.append(from_ts)
    if to_ts is not None:
        clauses.append("created_at<=?")
        params.append(to_ts)
    if after is not None:
        clauses.append("(created_at>? OR (created_at=? AND seq>?))")
        params.extend([after[0], after[0], after[1]])
    params.append(limit)
    conn = _get_connection()
    cur = conn.execute(
        f"SELECT * FROM ledger_events WHERE {' AND '.join(clauses)} "
        "ORDER BY created_at ASC, seq ASC LIMIT ?",
        params
    )
    return cur.fetchall()


def ledger_rows_by_seq(node_id: str) -> List[sqlite3.Row]:
    conn = _get_connection()
    cur = conn.execute(
        "SELECT * FROM ledger_events WHERE evidence_node_id=? ORDER BY seq ASC",
        (node_id,)
    )
    return cur.fetchall()


# ============================================================
# Verification Events
# ============================================================

def insert_verification(row: Dict[str, Any]) -> None:
    conn = _get_connection()
    conn.execute(
        "INSERT INTO verification_events(id, subject_id, scan_timestamp, derived_status_json, "
        "enforcement_state, method, location_hint) VALUES(?,?,?,?,?,?,?)",
        (row["id"], row["subject_id"], row["scan_timestamp"], row["derived_status_json"],
         row["enforcement_state"], row["method"], row["location_hint"])
    )


def verification_rows(
    subject_id: str,
    from_ts: Optional[str] = None,
    to_ts: Optional[str] = None
) -> List[sqlite3.Row]:
    clauses = ["subject_id=?"]
    params: List[Any] = [subject_id]
    if from_ts is not None:
        clauses.append("scan_timestamp>=?")
        params.append(from_ts)
    if to_ts is not None:
        clauses.append("scan_timestamp<=?")
        params.append(to_ts)
    conn = _get_connection()
    cur = conn.execute(
        f"SELECT * FROM verification_events WHERE {' AND '.join(clauses)} "
        "ORDER BY scan_timestamp ASC, id ASC",
        params
    )
    return cur.fetchall()


# ============================================================
# Metrics and Health
# ============================================================

def get_db_stats() -> Dict[str, int]:
    """Get database statistics for monitoring."""
    conn = _get_connection()
    stats = {}
    for table in APPEND_ONLY_TABLES + ("chain_heads", "quarantined_chains"):
        cur = conn.execute(f"SELECT COUNT(*) as cnt FROM {table}")
        stats[f"{table}_count"] = cur.fetchone()['cnt']
    return stats


def close_connection() -> None:
    """Close the thread-local connection (for cleanup)."""
    conn = getattr(_local, 'conn', None)
    if conn is not None:
        conn.close()
        _local.conn = None
        _local.path = None
