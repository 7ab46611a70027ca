"""Durable session and milestone indexes.

Both indexes are whole documents: a writer reads the full list, changes it
in memory and writes it back. The default JSON store does this without any
locking, so two processes updating the same index at once can lose an
update (last write wins). The opt-in SQLite store runs every
read-modify-write inside a ``BEGIN IMMEDIATE`` transaction instead.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, List, Optional, Protocol

from .database import connect_db, ensure_schema
from .utils import read_json, write_json

if TYPE_CHECKING:
    from .config import LocalConfig, StoragePaths

logger = logging.getLogger(__name__)

Entry = Dict[str, Any]
Mutator = Callable[[List[Entry]], List[Entry]]

PLACEHOLDER_PROJECTS = {"untitled", "mcp", "unknown"}


class IndexStore(Protocol):
    key_field: str

    def read(self) -> List[Entry]: ...

    def write(self, entries: List[Entry]) -> None: ...

    def update(self, mutate: Mutator) -> List[Entry]: ...


class JsonIndexStore:
    """Index kept as one JSON array on disk."""

    def __init__(self, path: str, key_field: str) -> None:
        self.path = path
        self.key_field = key_field

    def read(self) -> List[Entry]:
        entries = read_json(self.path, [])
        if not isinstance(entries, list):
            logger.warning("Index %s is not a list, treating as empty", self.path)
            return []
        return [entry for entry in entries if isinstance(entry, dict)]

    def write(self, entries: List[Entry]) -> None:
        write_json(self.path, entries)

    def update(self, mutate: Mutator) -> List[Entry]:
        entries = mutate(self.read())
        self.write(entries)
        return entries


class SqliteIndexStore:
    """Index kept as ordered rows, updated under a write transaction."""

    def __init__(self, db_path: str, name: str, key_field: str) -> None:
        self.db_path = db_path
        self.name = name
        self.key_field = key_field

    def _connect(self):
        conn = connect_db(self.db_path)
        ensure_schema(conn)
        return conn

    def _select(self, conn) -> List[Entry]:
        rows = conn.execute(
            "SELECT body FROM index_entries WHERE store = ? ORDER BY position ASC",
            (self.name,),
        ).fetchall()
        return [json.loads(row["body"]) for row in rows]

    def _replace(self, conn, entries: List[Entry]) -> None:
        conn.execute("DELETE FROM index_entries WHERE store = ?", (self.name,))
        conn.executemany(
            """
            INSERT INTO index_entries (store, position, entry_key, body)
            VALUES (?, ?, ?, ?)
            """,
            [
                (self.name, position, entry.get(self.key_field), json.dumps(entry))
                for position, entry in enumerate(entries)
            ],
        )

    def read(self) -> List[Entry]:
        conn = self._connect()
        try:
            return self._select(conn)
        finally:
            conn.close()

    def write(self, entries: List[Entry]) -> None:
        self.update(lambda _current: entries)

    def update(self, mutate: Mutator) -> List[Entry]:
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                entries = mutate(self._select(conn))
                self._replace(conn, entries)
            except Exception:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
            return entries
        finally:
            conn.close()


@dataclass
class Indexes:
    sessions: IndexStore
    milestones: IndexStore


def open_indexes(paths: "StoragePaths", config: Optional["LocalConfig"] = None) -> Indexes:
    """Open the session and milestone indexes for the configured backend."""
    backend = config.index_backend if config is not None else "json"
    if backend == "sqlite":
        return Indexes(
            sessions=SqliteIndexStore(paths.index_db, "sessions", "session_id"),
            milestones=SqliteIndexStore(paths.index_db, "milestones", "id"),
        )
    return Indexes(
        sessions=JsonIndexStore(paths.sessions_file, "session_id"),
        milestones=JsonIndexStore(paths.milestones_file, "id"),
    )


def seal_richness(seal: Entry) -> int:
    """Score an index entry by how much caller-supplied detail it carries."""
    score = 0
    if seal.get("title"):
        score += 10
    if seal.get("private_title"):
        score += 10
    if seal.get("conversation_id"):
        score += 20
    if seal.get("evaluation"):
        score += 20
    if seal.get("languages"):
        score += 5
    if (seal.get("files_touched") or 0) > 0:
        score += 5
    project = seal.get("project")
    if project and project not in PLACEHOLDER_PROJECTS:
        score += 5
    return score


def replace_session(store: IndexStore, seal: Entry) -> None:
    """Insert a seal, replacing any entry with the same session id."""
    session_id = seal["session_id"]

    def mutate(entries: List[Entry]) -> List[Entry]:
        kept = [entry for entry in entries if entry.get("session_id") != session_id]
        kept.append(seal)
        return kept

    store.update(mutate)


def upsert_richer_session(store: IndexStore, seal: Entry) -> bool:
    """Insert a seal unless an existing entry for the id is richer. Returns True if written."""
    session_id = seal["session_id"]
    written = {"value": True}

    def mutate(entries: List[Entry]) -> List[Entry]:
        for position, entry in enumerate(entries):
            if entry.get("session_id") == session_id:
                if seal_richness(seal) >= seal_richness(entry):
                    entries[position] = seal
                else:
                    written["value"] = False
                return entries
        entries.append(seal)
        return entries

    store.update(mutate)
    return written["value"]


def overlay_session(store: IndexStore, session_id: str, fields: Entry, fallback: Entry) -> Entry:
    """Overlay supplied fields onto an existing entry, or insert the fallback entry."""
    result: Dict[str, Entry] = {}

    def mutate(entries: List[Entry]) -> List[Entry]:
        for position, entry in enumerate(entries):
            if entry.get("session_id") == session_id:
                merged = dict(entry)
                merged.update({key: value for key, value in fields.items() if value is not None})
                entries[position] = merged
                result["entry"] = merged
                return entries
        entries.append(fallback)
        result["entry"] = fallback
        return entries

    store.update(mutate)
    return result["entry"]


def append_entries(store: IndexStore, new_entries: Iterable[Entry]) -> int:
    """Append entries whose key is not present yet. Returns the number added."""
    added = {"count": 0}

    def mutate(entries: List[Entry]) -> List[Entry]:
        seen = {entry.get(store.key_field) for entry in entries}
        for entry in new_entries:
            key = entry.get(store.key_field)
            if key in seen:
                continue
            seen.add(key)
            entries.append(entry)
            added["count"] += 1
        return entries

    store.update(mutate)
    return added["count"]


def deduplicate_sessions(store: IndexStore) -> int:
    """Collapse duplicate session ids, keeping the richest entry. Returns entries removed."""
    removed = {"count": 0}

    def mutate(entries: List[Entry]) -> List[Entry]:
        best: Dict[str, Entry] = {}
        order: List[str] = []
        for entry in entries:
            session_id = entry.get("session_id")
            if session_id not in best:
                order.append(session_id)
                best[session_id] = entry
            elif seal_richness(entry) > seal_richness(best[session_id]):
                best[session_id] = entry
        removed["count"] = len(entries) - len(order)
        return [best[session_id] for session_id in order]

    store.update(mutate)
    if removed["count"]:
        logger.info("Deduplicated session index: removed %d entries", removed["count"])
    return removed["count"]


def list_sessions(
    store: IndexStore,
    conversation_id: Optional[str] = None,
    limit: int = 20,
    offset: int = 0,
) -> List[Entry]:
    """List sessions newest first, optionally filtered by conversation."""
    entries = store.read()
    if conversation_id:
        entries = [entry for entry in entries if entry.get("conversation_id") == conversation_id]
    entries.sort(key=lambda entry: entry.get("started_at") or "", reverse=True)
    return entries[offset:offset + limit]


def list_milestones(
    store: IndexStore,
    session_id: Optional[str] = None,
    limit: int = 50,
) -> List[Entry]:
    entries = store.read()
    if session_id:
        entries = [entry for entry in entries if entry.get("session_id") == session_id]
    entries.sort(key=lambda entry: entry.get("created_at") or "", reverse=True)
    return entries[:limit]
