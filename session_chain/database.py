"""SQLite storage for the locked index variant."""
from __future__ import annotations

import os
import sqlite3

SCHEMA_VERSION = 1

INDEX_SCHEMA = """
CREATE TABLE IF NOT EXISTS index_entries (
    store TEXT NOT NULL,
    position INTEGER NOT NULL,
    entry_key TEXT,
    body TEXT NOT NULL,
    PRIMARY KEY (store, position)
);
CREATE INDEX IF NOT EXISTS index_entries_key ON index_entries(store, entry_key);
"""


def connect_db(path: str) -> sqlite3.Connection:
    """Open the index database in autocommit mode.

    Callers open their own transactions with ``BEGIN IMMEDIATE``.
    """
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    conn = sqlite3.connect(path, timeout=30.0, isolation_level=None)
    conn.row_factory = sqlite3.Row
    return conn


def get_schema_version(conn: sqlite3.Connection) -> int:
    return int(conn.execute("PRAGMA user_version").fetchone()[0])


def ensure_schema(conn: sqlite3.Connection) -> None:
    """Create the index table, refusing databases written by a newer release."""
    version = get_schema_version(conn)
    if version > SCHEMA_VERSION:
        raise RuntimeError(
            f"Index database schema {version} is newer than supported ({SCHEMA_VERSION})."
        )
    conn.executescript(INDEX_SCHEMA)
    if version < SCHEMA_VERSION:
        conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
