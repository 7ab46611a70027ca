"""Step definitions for idle and orphan sweeps."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

from pytest_bdd import given, parsers, then, when

from conftest import BDDTestContext

ORPHAN_ID = "0b5e7a10-0000-4000-8000-00000000cafe"


def _write_orphan(test_context: BDDTestContext, name: str, types: list) -> None:
    from session_chain.chain import build_chain_record, serialize_record
    from session_chain.models import HeartbeatData, SessionEndData, SessionStartData
    from session_chain.utils import iso_from_datetime

    started = datetime(2026, 1, 1, 9, 0, tzinfo=timezone.utc)
    prev_hash = "GENESIS"
    lines = []
    for index, record_type in enumerate(types):
        if record_type == "session_start":
            data = SessionStartData(
                client="orphan-client", task_type="coding", project="orphans",
                conversation_id="conv-orphan-0001", conversation_index=0, version="0.1.0",
            )
        elif record_type == "heartbeat":
            data = HeartbeatData(heartbeat_number=index, cumulative_seconds=index * 60)
        else:
            data = SessionEndData(
                duration_seconds=index * 60, task_type="coding", languages=[],
                files_touched=0, heartbeat_count=0,
            )
        record = build_chain_record(record_type, ORPHAN_ID, data, prev_hash, test_context.state.signing_key)
        record.timestamp = iso_from_datetime(started + timedelta(minutes=index))
        prev_hash = record.hash
        lines.append(serialize_record(record))

    test_context.named_ids[name] = ORPHAN_ID
    with open(test_context.paths.active_chain(ORPHAN_ID), "w", encoding="utf-8") as f:
        f.write("\n".join(lines) + "\n")


@given(parsers.parse('an orphaned chain "{name}" of {count:d} heartbeats a minute apart'))
def orphaned_chain_with_heartbeats(test_context: BDDTestContext, name: str, count: int):
    _write_orphan(test_context, name, ["session_start"] + ["heartbeat"] * count)


@given(parsers.parse('an orphaned chain "{name}" that already ended'))
def orphaned_chain_already_ended(test_context: BDDTestContext, name: str):
    _write_orphan(test_context, name, ["session_start", "session_end"])


@given(parsers.parse('the session index holds duplicates of "{name}" with and without a title'))
def duplicate_index_entries(test_context: BDDTestContext, name: str):
    test_context.named_ids[name] = name
    test_context.indexes.sessions.write([
        {"session_id": name, "client": "a"},
        {"session_id": name, "client": "b", "title": "Kept"},
        {"session_id": name, "client": "c"},
    ])


@when(parsers.parse('the session index already holds a richer entry for "{name}"'))
def richer_index_entry(test_context: BDDTestContext, name: str):
    test_context.indexes.sessions.write([{
        "session_id": test_context.resolve_id(name),
        "title": "Richer title",
        "conversation_id": "conv-rich",
        "evaluation": {"task_outcome": "completed"},
    }])


@when("the idle sweep runs")
def idle_sweep_runs(test_context: BDDTestContext):
    from session_chain.sweep import seal_active

    test_context.last_result = {"sealed": seal_active([test_context.state], test_context.indexes)}


@when("the orphan sweep runs")
def orphan_sweep_runs(test_context: BDDTestContext):
    from session_chain.sweep import seal_orphaned_sessions

    state = test_context.state
    test_context.last_result = {"sealed": seal_orphaned_sessions(
        test_context.paths, test_context.indexes, state.live_session_ids(), state.signing_key,
    )}


@when("the session index is deduplicated")
def dedupe_session_index(test_context: BDDTestContext):
    from session_chain.index import deduplicate_sessions

    test_context.last_result = {"removed": deduplicate_sessions(test_context.indexes.sessions)}


@then(parsers.parse("the idle sweep sealed {count:d} sessions"))
def idle_sweep_sealed(test_context: BDDTestContext, count: int):
    assert test_context.last_result["sealed"] == count


@then(parsers.parse("the orphan sweep sealed {count:d} sessions"))
def orphan_sweep_sealed(test_context: BDDTestContext, count: int):
    assert test_context.last_result["sealed"] == count


@then(parsers.parse("the session index holds {count:d} entry"))
def session_index_size(test_context: BDDTestContext, count: int):
    assert len(test_context.sessions_index()) == count
