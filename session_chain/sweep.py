"""Auto-seal sweep: closes chains whose callers never sent end()."""
from __future__ import annotations

import logging
import os
import time
from typing import TYPE_CHECKING, Iterable, Optional

from .chain import build_chain_record, read_chain_file, serialize_record, sha256_hex, sign_hash
from .index import upsert_richer_session
from .lifecycle import UNSIGNED_SEAL_FIELDS, close_chain, seal_chain_file
from .models import SessionEndData, SessionSeal, SessionSealData
from .utils import canonical_json, seconds_between, utc_now

if TYPE_CHECKING:
    from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
    from .config import StoragePaths
    from .index import Indexes
    from .state import SessionState

logger = logging.getLogger(__name__)

IDLE_TIMEOUT_SECONDS = 30 * 60


def auto_seal_session(state: "SessionState", indexes: "Indexes") -> bool:
    """Close the live chain of a state with an auto-sealed end and seal.

    Returns False when there is nothing to seal, including a chain that has
    already left active storage.
    """
    if state.session_record_count == 0 or state.sealed:
        return False
    if not os.path.exists(state.chain_path):
        return False

    duration = state.session_duration()
    _end_record, seal = close_chain(
        state,
        SessionEndData(
            duration_seconds=duration,
            task_type=state.task_type,
            languages=[],
            files_touched=0,
            heartbeat_count=state.heartbeat_count,
            model=state.model_id,
            auto_sealed=True,
        ),
        ended_at=utc_now(),
        auto_sealed=True,
    )
    seal_chain_file(state.paths, state.session_id)
    upsert_richer_session(indexes.sessions, seal.to_dict())
    state.sealed = True
    state.clear_in_progress()
    logger.info("Auto-sealed session %s after %ss", state.session_id, duration)
    return True


def seal_session_data(state: "SessionState", indexes: "Indexes") -> bool:
    """Auto-seal, remember the sealed id for a late end(), and reset for the next session."""
    session_id = state.session_id
    sealed = auto_seal_session(state, indexes)
    if sealed:
        state.auto_sealed_session_id = session_id
    state.reset()
    return sealed


def is_idle(state: "SessionState", idle_seconds: int = IDLE_TIMEOUT_SECONDS, now: Optional[float] = None) -> bool:
    now = state.clock() if now is None else now
    if state.in_progress and state.in_progress_since is not None:
        return now - state.in_progress_since >= idle_seconds
    return True


def seal_active(
    states: Iterable["SessionState"],
    indexes: "Indexes",
    idle_seconds: int = IDLE_TIMEOUT_SECONDS,
    force: bool = False,
) -> int:
    """Seal every state holding an open chain. Returns how many were sealed.

    A state whose session is still in progress is skipped until it has been
    idle for ``idle_seconds``, unless ``force`` is set.
    """
    sealed = 0
    for state in states:
        if state.session_record_count == 0 or state.sealed:
            continue
        if not force and not is_idle(state, idle_seconds):
            logger.debug("Skipping in-progress session %s", state.session_id)
            continue
        if seal_session_data(state, indexes):
            sealed += 1
    return sealed


def seal_orphan_file(
    paths: "StoragePaths",
    session_id: str,
    indexes: "Indexes",
    signing_key: Optional["Ed25519PrivateKey"] = None,
) -> bool:
    """Seal a chain file left in active storage by a process that went away.

    The end time is the timestamp of the last record written, not the sweep time.
    """
    path = paths.active_chain(session_id)
    if not os.path.exists(path):
        return False
    try:
        records = read_chain_file(path)
    except (OSError, ValueError) as exc:
        logger.warning("Skipping unreadable orphan chain %s: %s", session_id, exc)
        return False
    if not records:
        return False

    first, last = records[0], records[-1]
    if last.type in ("session_end", "session_seal"):
        return seal_chain_file(paths, session_id)

    start = first.data if first.type == "session_start" else {}
    client = start.get("client") or "unknown"
    task_type = start.get("task_type") or "coding"
    heartbeat_count = sum(1 for record in records if record.type == "heartbeat")
    ended_at = last.timestamp
    try:
        duration = max(0, seconds_between(first.timestamp, ended_at))
    except ValueError:
        duration = 0

    end_record = build_chain_record("session_end", session_id, SessionEndData(
        duration_seconds=duration,
        task_type=task_type,
        languages=[],
        files_touched=0,
        heartbeat_count=heartbeat_count,
        auto_sealed=True,
    ), last.hash, signing_key)
    seal = SessionSeal(
        session_id=session_id,
        conversation_id=start.get("conversation_id"),
        conversation_index=start.get("conversation_index"),
        client=client,
        task_type=task_type,
        languages=[],
        files_touched=0,
        project=start.get("project"),
        title=start.get("title"),
        private_title=start.get("private_title"),
        model=start.get("model"),
        started_at=first.timestamp,
        ended_at=ended_at,
        duration_seconds=duration,
        heartbeat_count=heartbeat_count,
        record_count=len(records) + 2,
        chain_start_hash=first.hash,
        chain_end_hash=end_record.hash,
        seal_signature="",
        parent_session_id=start.get("parent_session_id"),
    )
    seal_json = canonical_json({
        key: value for key, value in seal.to_dict().items()
        if key not in UNSIGNED_SEAL_FIELDS
    })
    seal.seal_signature = sign_hash(sha256_hex(seal_json), signing_key)
    seal_record = build_chain_record("session_seal", session_id, SessionSealData(
        seal=seal_json,
        seal_signature=seal.seal_signature,
        auto_sealed=True,
    ), end_record.hash, signing_key)

    with open(path, "a", encoding="utf-8") as f:
        f.write(serialize_record(end_record) + "\n")
        f.write(serialize_record(seal_record) + "\n")
    seal_chain_file(paths, session_id)
    upsert_richer_session(indexes.sessions, seal.to_dict())
    return True


def seal_orphaned_sessions(
    paths: "StoragePaths",
    indexes: "Indexes",
    live_session_ids: Iterable[str] = (),
    signing_key: Optional["Ed25519PrivateKey"] = None,
    stale_after: Optional[int] = None,
) -> int:
    """Seal every chain in active storage that no live state owns.

    With ``stale_after`` set, files modified more recently than that many
    seconds ago are left alone.
    """
    if not os.path.isdir(paths.active_dir):
        return 0
    live = set(live_session_ids)
    now = time.time()
    sealed = 0
    for name in sorted(os.listdir(paths.active_dir)):
        if not name.endswith(".jsonl"):
            continue
        session_id = name[: -len(".jsonl")]
        if session_id in live:
            continue
        if stale_after is not None:
            try:
                if now - os.path.getmtime(os.path.join(paths.active_dir, name)) < stale_after:
                    continue
            except OSError:
                continue
        if seal_orphan_file(paths, session_id, indexes, signing_key):
            sealed += 1
    if sealed:
        logger.info("Sealed %d orphaned session%s", sealed, "" if sealed == 1 else "s")
    return sealed
