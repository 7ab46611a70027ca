"""Persistence of the live session state between CLI invocations."""
from __future__ import annotations

import logging
import os
from typing import TYPE_CHECKING, Optional

from .state import SessionState
from .utils import read_json, write_json

if TYPE_CHECKING:
    from .config import StoragePaths

logger = logging.getLogger(__name__)


def get_session_file_path(paths: "StoragePaths") -> str:
    """Get the path to the current session state file."""
    return paths.current_session_file


def load_session_state(paths: "StoragePaths") -> Optional[SessionState]:
    """Load the saved session state, or None if there is none or it is unreadable."""
    data = read_json(get_session_file_path(paths), None)
    if not isinstance(data, dict):
        return None
    try:
        return SessionState.from_dict(paths, data)
    except (KeyError, TypeError, ValueError) as exc:
        logger.warning("Discarding unreadable session state: %s", exc)
        return None


def save_session_state(state: SessionState) -> None:
    write_json(get_session_file_path(state.paths), state.to_dict())


def clear_session_state(paths: "StoragePaths") -> None:
    """Clear the saved session state."""
    session_file = get_session_file_path(paths)
    if os.path.exists(session_file):
        os.remove(session_file)
