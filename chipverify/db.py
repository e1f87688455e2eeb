"""
Database module for the chip verification service.

Provides SQLite-based storage for chips, chip-artwork links, artwork owners
and the append-only scan event log. Uses thread-local connections and
conditional UPDATEs so the counter advance stays atomic across threads.
"""

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional

from .util import utc_now_rfc3339

DB_PATH = Path("data/chipverify.db")
BUSY_TIMEOUT_SECONDS = 5.0

# One connection per thread; sqlite3 connections are not shared
_local = threading.local()


def configure(db_path: str, busy_timeout: float = BUSY_TIMEOUT_SECONDS) -> None:
    """
    Point the module at a database file.
    Drops this thread's cached connection; other threads reconnect lazily.
    """
    global DB_PATH, BUSY_TIMEOUT_SECONDS
    DB_PATH = Path(db_path)
    BUSY_TIMEOUT_SECONDS = busy_timeout
    close_connection()


def _get_connection() -> sqlite3.Connection:
    """This thread's connection, reopened when DB_PATH has been repointed."""
    conn = getattr(_local, 'conn', None)
    if conn is not None and getattr(_local, 'path', None) != DB_PATH:
        conn.close()
        conn = None
    if conn is None:
        DB_PATH.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(DB_PATH), timeout=BUSY_TIMEOUT_SECONDS, check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("PRAGMA foreign_keys=ON;")
        conn.row_factory = sqlite3.Row
        _local.conn = conn
        _local.path = DB_PATH
    return conn


@contextmanager
def _transaction():
    """Commit on success, roll back and re-raise on failure."""
    conn = _get_connection()
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def _fetch_one(sql: str, params: tuple) -> Optional[sqlite3.Row]:
    conn = _get_connection()
    cur = conn.execute(sql, params)
    try:
        return cur.fetchone()
    finally:
        cur.close()


def init_db() -> None:
    """Create the chip registry and scan log schema. Idempotent."""
    with _transaction() as conn:
        # Chip registry (one row per physical tag)
        conn.execute("""
        CREATE TABLE IF NOT EXISTS chips (
            id TEXT PRIMARY KEY,
            tag_id TEXT NOT NULL UNIQUE,
            public_key TEXT,
            secret TEXT,
            counter INTEGER NOT NULL DEFAULT 0 CHECK (counter >= 0),
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );""")

        # Artwork ownership, read only here
        conn.execute("""
        CREATE TABLE IF NOT EXISTS profiles (
            id TEXT PRIMARY KEY,
            username TEXT
        );""")
        conn.execute("""
        CREATE TABLE IF NOT EXISTS artworks (
            id TEXT PRIMARY KEY,
            owner_id TEXT
        );""")

        conn.execute("""
        CREATE TABLE IF NOT EXISTS chip_artworks (
            chip_id TEXT NOT NULL PRIMARY KEY REFERENCES chips(id) ON DELETE CASCADE,
            artwork_id TEXT NOT NULL
        );""")

        # Append-only scan audit
        conn.execute("""
        CREATE TABLE IF NOT EXISTS chip_scan_events (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            id TEXT NOT NULL UNIQUE,
            chip_id TEXT,
            artwork_id TEXT,
            state TEXT NOT NULL CHECK (state IN ('authentic','mismatch','cloned','invalid')),
            ip TEXT,
            ua TEXT,
            created_at TEXT NOT NULL
        );""")
        conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_scan_events_chip
        ON chip_scan_events(chip_id);""")
        conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_scan_events_artwork
        ON chip_scan_events(artwork_id);""")

        conn.execute("""
        CREATE TRIGGER IF NOT EXISTS chip_scan_events_no_update
        BEFORE UPDATE ON chip_scan_events
        BEGIN SELECT RAISE(ABORT, 'chip_scan_events is append-only'); END;""")


# ============================================================
# Chip Registry Lookups
# ============================================================

def get_chip_by_tag(tag_id: str) -> Optional[Dict[str, Any]]:
    """Retrieve a chip row (including its secret) by tag identifier."""
    row = _fetch_one(
        "SELECT id, tag_id, public_key, secret, counter FROM chips WHERE tag_id=?",
        (tag_id,)
    )
    return dict(row) if row else None


def get_linked_artwork_id(chip_id: str) -> Optional[str]:
    """Retrieve the artwork a chip is bound to, if any."""
    row = _fetch_one("SELECT artwork_id FROM chip_artworks WHERE chip_id=?", (chip_id,))
    return row['artwork_id'] if row else None


def get_artwork_owner(artwork_id: str) -> Optional[Dict[str, Any]]:
    """Retrieve the owner id and username of an artwork."""
    row = _fetch_one(
        "SELECT a.owner_id AS owner_id, p.username AS username "
        "FROM artworks a LEFT JOIN profiles p ON p.id = a.owner_id WHERE a.id=?",
        (artwork_id,)
    )
    return dict(row) if row else None


def advance_counter(chip_id: str, new_counter: int) -> bool:
    """
    Advance a chip's counter if and only if it is strictly greater than the stored value.

    Returns True if the row changed, False if the stored counter was already
    at or above new_counter. Uses a single conditional UPDATE for atomicity.
    """
    with _transaction() as conn:
        cur = conn.execute(
            "UPDATE chips SET counter=?, updated_at=? WHERE id=? AND counter<?",
            (new_counter, utc_now_rfc3339(), chip_id, new_counter)
        )
        return cur.rowcount == 1


# ============================================================
# Scan Event Log
# ============================================================

def append_scan_event(event: Dict[str, Any]) -> None:
    """Append a scan event. Never updates an existing row."""
    with _transaction() as conn:
        conn.execute(
            "INSERT INTO chip_scan_events(id, chip_id, artwork_id, state, ip, ua, created_at) "
            "VALUES(?,?,?,?,?,?,?)",
            (event["id"], event["chip_id"], event["artwork_id"], event["state"],
             event["ip"], event["user_agent"], event["created_at"])
        )


def export_scan_events(chip_id: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
    """Export scan events, newest first."""
    conn = _get_connection()
    sql = ("SELECT seq, id, chip_id, artwork_id, state, ip, ua AS user_agent, created_at "
           "FROM chip_scan_events")
    params: tuple = ()
    if chip_id:
        sql += " WHERE chip_id=?"
        params = (chip_id,)
    sql += " ORDER BY seq DESC LIMIT ?"
    cur = conn.execute(sql, params + (limit,))
    return [dict(row) for row in cur.fetchall()]


# ============================================================
# Registry Seeding (provisioning happens elsewhere; used by tools and tests)
# ============================================================

def insert_chip(chip_id: str, tag_id: str, secret: Optional[str] = None,
                counter: int = 0, public_key: Optional[str] = None) -> None:
    """Insert a chip row."""
    now = utc_now_rfc3339()
    with _transaction() as conn:
        conn.execute(
            "INSERT INTO chips(id, tag_id, public_key, secret, counter, created_at, updated_at) "
            "VALUES(?,?,?,?,?,?,?)",
            (chip_id, tag_id, public_key, secret, counter, now, now)
        )


def link_chip(chip_id: str, artwork_id: str) -> None:
    """Bind a chip to an artwork."""
    with _transaction() as conn:
        conn.execute(
            "INSERT OR REPLACE INTO chip_artworks(chip_id, artwork_id) VALUES(?,?)",
            (chip_id, artwork_id)
        )


def insert_artwork(artwork_id: str, owner_id: Optional[str] = None,
                   username: Optional[str] = None) -> None:
    """Insert an artwork and, optionally, its owner's profile."""
    with _transaction() as conn:
        if owner_id and username is not None:
            conn.execute(
                "INSERT OR REPLACE INTO profiles(id, username) VALUES(?,?)",
                (owner_id, username)
            )
        conn.execute(
            "INSERT OR REPLACE INTO artworks(id, owner_id) VALUES(?,?)",
            (artwork_id, owner_id)
        )


# ============================================================
# Health
# ============================================================

def get_db_stats() -> Dict[str, int]:
    """Row counts reported by /health."""
    conn = _get_connection()
    return {
        f"{table}_count": conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
        for table in ("chips", "chip_artworks", "chip_scan_events")
    }


# ============================================================
# Test Support
# ============================================================

def reset_db() -> None:
    """Empty every table, keeping the schema. Tests only."""
    with _transaction() as conn:
        conn.execute("DELETE FROM chip_scan_events")
        conn.execute("DELETE FROM chip_artworks")
        conn.execute("DELETE FROM chips")
        conn.execute("DELETE FROM artworks")
        conn.execute("DELETE FROM profiles")


def close_connection() -> None:
    """Close this thread's connection."""
    if getattr(_local, 'conn', None) is not None:
        _local.conn.close()
        _local.conn = None
        _local.path = None
