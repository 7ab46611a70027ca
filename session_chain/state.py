"""Mutable per-connection session state and the chain writer."""
from __future__ import annotations

import logging
import os
import time
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from .chain import build_chain_record, serialize_record
from .models import ChainRecord, RecordPayload, SessionSnapshot
from .utils import GENESIS_HASH, generate_session_id

if TYPE_CHECKING:
    from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
    from .config import StoragePaths

logger = logging.getLogger(__name__)

IDLE = "idle"
STARTED = "started"
ACTIVE = "active"
SEALED = "sealed"

DEFAULT_TASK_TYPE = "coding"


class SessionState:
    """All mutable state of one tracked session.

    A single-process deployment holds one instance; a multi-client deployment
    holds one per connected client. Only the owning instance ever appends to
    its chain file.
    """

    def __init__(self, paths: "StoragePaths", clock: Callable[[], float] = time.time) -> None:
        self.paths = paths
        self.clock = clock
        now = clock()

        self.session_id: str = generate_session_id()
        # Stable for the whole conversation, survives reset().
        self.conversation_id: str = generate_session_id()
        self.conversation_index: int = 0
        # Transport-level correlation id, survives reset().
        self.mcp_session_id: Optional[str] = None

        self.chain_tip_hash: str = GENESIS_HASH
        self.chain_start_hash: Optional[str] = None
        self.session_record_count: int = 0
        self.sealed: bool = False

        self.client_name: str = "unknown"
        self.task_type: str = DEFAULT_TASK_TYPE
        self.title: Optional[str] = None
        self.private_title: Optional[str] = None
        self.project: Optional[str] = None
        self.model_id: Optional[str] = None
        self.start_call_tokens_est: Optional[Tuple[int, int]] = None

        self.session_start_time: float = now
        self.heartbeat_count: int = 0
        self.last_activity_time: float = now
        self.in_progress: bool = False
        self.in_progress_since: Optional[float] = None

        self.signing_key: Optional["Ed25519PrivateKey"] = None
        self.signing_available: bool = False

        self.parent_session_id: Optional[str] = None
        self.child_session_ids: List[str] = []
        self._parent_stack: List[SessionSnapshot] = []

        self.auto_sealed_session_id: Optional[str] = None
        self.detect_project()

    # -- lifecycle --------------------------------------------------------

    @property
    def phase(self) -> str:
        if self.sealed:
            return SEALED
        if self.session_record_count == 0:
            return IDLE
        if self.session_record_count == 1:
            return STARTED
        return ACTIVE

    def reset(self) -> None:
        """Begin a new logical session.

        Chain cursor, counters and task fields are reinitialised. Client name,
        conversation id (index incremented), transport id, signing key, the
        parent stack and any auto-sealed id are kept.
        """
        now = self.clock()
        self.session_id = generate_session_id()
        self.session_start_time = now
        self.last_activity_time = now
        self.heartbeat_count = 0
        self.session_record_count = 0
        self.chain_tip_hash = GENESIS_HASH
        self.chain_start_hash = None
        self.sealed = False
        self.conversation_index += 1
        self.task_type = DEFAULT_TASK_TYPE
        self.title = None
        self.private_title = None
        self.model_id = None
        self.start_call_tokens_est = None
        self.in_progress = False
        self.in_progress_since = None
        self.parent_session_id = None
        self.child_session_ids = []
        self.detect_project()

    def detect_project(self) -> None:
        self.project = os.path.basename(os.getcwd()) or None

    def session_duration(self) -> int:
        return max(0, int(self.clock() - self.session_start_time + 0.5))

    def mark_in_progress(self) -> None:
        self.in_progress = True
        self.in_progress_since = self.clock()

    def clear_in_progress(self) -> None:
        self.in_progress = False
        self.in_progress_since = None

    # -- signing ----------------------------------------------------------

    def initialize_keystore(
        self,
        provider: Optional[Callable[["StoragePaths"], Optional["Ed25519PrivateKey"]]] = None,
    ) -> None:
        """Load (or create) the signing key. Without one the chain runs unsigned."""
        if provider is None:
            from .keystore import load_or_create as provider
        self.paths.ensure_dirs()
        self.signing_key = provider(self.paths)
        self.signing_available = self.signing_key is not None
        if not self.signing_available:
            logger.warning("No signing key available, chain records will be unsigned")

    # -- chain writer -----------------------------------------------------

    @property
    def chain_path(self) -> str:
        return self.paths.active_chain(self.session_id)

    def append_to_chain(
        self,
        record_type: str,
        data: Union[RecordPayload, Mapping[str, Any]],
    ) -> ChainRecord:
        """Append one record to this session's active chain file.

        The tip only advances after the line is written; write errors propagate.
        """
        record = build_chain_record(record_type, self.session_id, data, self.chain_tip_hash, self.signing_key)
        self.paths.ensure_dirs()
        with open(self.chain_path, "a", encoding="utf-8") as f:
            f.write(serialize_record(record) + "\n")
            f.flush()

        if self.session_record_count == 0:
            self.chain_start_hash = record.hash
        self.chain_tip_hash = record.hash
        self.session_record_count += 1
        self.last_activity_time = self.clock()
        return record

    # -- parent / child ---------------------------------------------------

    @property
    def parent_state(self) -> Optional[SessionSnapshot]:
        return self._parent_stack[-1] if self._parent_stack else None

    @property
    def nesting_depth(self) -> int:
        return len(self._parent_stack)

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            session_id=self.session_id,
            conversation_id=self.conversation_id,
            conversation_index=self.conversation_index,
            chain_tip_hash=self.chain_tip_hash,
            chain_start_hash=self.chain_start_hash,
            session_record_count=self.session_record_count,
            session_start_time=self.session_start_time,
            heartbeat_count=self.heartbeat_count,
            last_activity_time=self.last_activity_time,
            client_name=self.client_name,
            task_type=self.task_type,
            title=self.title,
            private_title=self.private_title,
            project=self.project,
            model_id=self.model_id,
            in_progress=self.in_progress,
            in_progress_since=self.in_progress_since,
            start_call_tokens_est=self.start_call_tokens_est,
            parent_session_id=self.parent_session_id,
            child_session_ids=tuple(self.child_session_ids),
        )

    def apply_snapshot(self, snapshot: SessionSnapshot) -> None:
        self.session_id = snapshot.session_id
        self.conversation_id = snapshot.conversation_id
        self.conversation_index = snapshot.conversation_index
        self.chain_tip_hash = snapshot.chain_tip_hash
        self.chain_start_hash = snapshot.chain_start_hash
        self.session_record_count = snapshot.session_record_count
        self.session_start_time = snapshot.session_start_time
        self.heartbeat_count = snapshot.heartbeat_count
        self.last_activity_time = snapshot.last_activity_time
        self.client_name = snapshot.client_name
        self.task_type = snapshot.task_type
        self.title = snapshot.title
        self.private_title = snapshot.private_title
        self.project = snapshot.project
        self.model_id = snapshot.model_id
        self.in_progress = snapshot.in_progress
        self.in_progress_since = snapshot.in_progress_since
        self.start_call_tokens_est = snapshot.start_call_tokens_est
        self.parent_session_id = snapshot.parent_session_id
        self.child_session_ids = list(snapshot.child_session_ids)
        self.sealed = False

    def live_session_ids(self) -> List[str]:
        """Ids whose chain files this state still owns: the open session and suspended parents."""
        ids = [snapshot.session_id for snapshot in self._parent_stack]
        if self.session_record_count and not self.sealed:
            ids.append(self.session_id)
        return ids

    def save_parent_state(self) -> SessionSnapshot:
        """Suspend the live session so a child session can run its own chain."""
        snapshot = self.snapshot()
        self._parent_stack.append(snapshot)
        return snapshot

    def restore_parent_state(self) -> Optional[str]:
        """Resume the most recently suspended parent.

        Returns the id of the child session that was live before the restore,
        which is also added to the parent's child_session_ids.
        """
        if not self._parent_stack:
            return None
        child_id = self.session_id
        self.apply_snapshot(self._parent_stack.pop())
        self.child_session_ids.append(child_id)
        return child_id

    # -- persistence ------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Serializable form, without the signing key."""
        data = self.snapshot().to_dict()
        data.update({
            "mcp_session_id": self.mcp_session_id,
            "sealed": self.sealed,
            "auto_sealed_session_id": self.auto_sealed_session_id,
            "parent_stack": [snapshot.to_dict() for snapshot in self._parent_stack],
        })
        return data

    @classmethod
    def from_dict(
        cls,
        paths: "StoragePaths",
        data: Mapping[str, Any],
        clock: Callable[[], float] = time.time,
    ) -> "SessionState":
        state = cls(paths, clock=clock)
        state.apply_snapshot(SessionSnapshot.from_dict(dict(data)))
        state.mcp_session_id = data.get("mcp_session_id")
        state.sealed = bool(data.get("sealed", False))
        state.auto_sealed_session_id = data.get("auto_sealed_session_id")
        state._parent_stack = [SessionSnapshot.from_dict(item) for item in data.get("parent_stack", [])]
        return state
