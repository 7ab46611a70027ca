"""Pytest configuration and fixtures for BDD tests."""
from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any

import pytest

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from session_chain.chain import read_chain_file
from session_chain.config import LocalConfig, StoragePaths
from session_chain.index import open_indexes
from session_chain.lifecycle import SessionLifecycle
from session_chain.state import SessionState
from session_chain.sweep import auto_seal_session

START_TIME = 1_767_225_600.0


class FakeClock:
    """Deterministic clock in epoch seconds."""

    def __init__(self, now: float = START_TIME):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class BDDTestContext:
    """Holds test state across steps."""

    def __init__(self, root: Path):
        self.root = root
        self.paths = StoragePaths(str(root))
        self.clock = FakeClock()
        self.config = LocalConfig()
        self.state = SessionState(self.paths, clock=self.clock)
        self.last_result: dict | None = None
        self.last_error: Exception | None = None
        self.last_backup: dict | None = None
        self.verification = None
        self.named_ids: dict[str, str] = {}
        self.named_tips: dict[str, str] = {}
        self.named_counts: dict[str, int] = {}

    @property
    def indexes(self):
        return open_indexes(self.paths, self.config)

    def lifecycle(self) -> SessionLifecycle:
        indexes = self.indexes
        return SessionLifecycle(
            self.state,
            config=self.config,
            indexes=indexes,
            seal_before_reset=lambda: auto_seal_session(self.state, indexes),
            handshake_name="test-client",
        )

    def resolve_id(self, name: str) -> str:
        return self.named_ids.get(name, name)

    def records(self, session_id: str) -> list:
        path = self.paths.find_chain(session_id)
        assert path is not None, f"no chain file for {session_id}"
        return read_chain_file(path)

    def sessions_index(self) -> list[dict[str, Any]]:
        return self.indexes.sessions.read()

    def session_entry(self, session_id: str) -> dict[str, Any]:
        for entry in self.sessions_index():
            if entry["session_id"] == session_id:
                return entry
        raise AssertionError(f"no index entry for {session_id}")


@pytest.fixture
def test_context(tmp_path: Path):
    """Create a fresh test context with a temporary storage root."""
    ctx = BDDTestContext(tmp_path / "home")
    ctx.paths.ensure_dirs()
    yield ctx


def parse_datatable(datatable: list[list[str]]) -> dict[str, str]:
    """Convert pytest-bdd 8.x datatable (list of lists) to dict.

    Assumes first row is header with 'field' and 'value' columns.
    """
    if not datatable or len(datatable) == 1:
        return {}
    headers = datatable[0]
    field_idx = headers.index("field")
    value_idx = headers.index("value")
    return {row[field_idx]: row[value_idx] for row in datatable[1:]}


def parse_datatable_rows(datatable: list[list[str]]) -> list[dict[str, str]]:
    """Convert pytest-bdd 8.x datatable to list of dicts."""
    if not datatable:
        return []
    headers = datatable[0]
    return [dict(zip(headers, row)) for row in datatable[1:]]


def parse_cell(value: str) -> Any:
    """Table cells holding JSON are decoded; everything else stays a string."""
    raw = value.strip()
    if raw.startswith(("[", "{")):
        return json.loads(raw)
    return raw
