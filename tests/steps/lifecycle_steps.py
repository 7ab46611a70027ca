"""Step definitions for the session lifecycle."""
from __future__ import annotations

import os

from pytest_bdd import parsers, then, when

from conftest import BDDTestContext


@when(parsers.parse('I remember the conversation as "{name}"'))
def remember_conversation(test_context: BDDTestContext, name: str):
    test_context.named_ids[name] = test_context.state.conversation_id


@then("no heartbeat was recorded")
def no_heartbeat_recorded(test_context: BDDTestContext):
    assert test_context.last_result["recorded"] is False
    assert test_context.state.heartbeat_count == 0


@then("no chain file exists in active storage")
def no_active_chain(test_context: BDDTestContext):
    assert os.listdir(test_context.paths.active_dir) == []


@then(parsers.parse('the milestone index entry for "{name}" points at its milestone record'))
def milestone_entry_points_at_record(test_context: BDDTestContext, name: str):
    session_id = test_context.resolve_id(name)
    milestone_records = [r for r in test_context.records(session_id) if r.type == "milestone"]
    entries = [e for e in test_context.indexes.milestones.read() if e["session_id"] == session_id]
    assert len(entries) == len(milestone_records) == 1
    entry = entries[0]
    assert entry["chain_hash"] == milestone_records[0].hash
    assert entry["id"].startswith("m_")
    assert entry["published"] is False
    assert entry["published_at"] is None
    assert entry["client"] == "test-client"
    assert entry["duration_minutes"] == 30


@then(parsers.parse('the index entry of "{name}" has tool overhead estimates'))
def index_entry_has_tool_overhead(test_context: BDDTestContext, name: str):
    overhead = test_context.session_entry(test_context.resolve_id(name))["tool_overhead"]
    assert overhead["start"]["input_tokens_est"] > 0
    assert overhead["end"]["output_tokens_est"] > 0
    assert overhead["total_tokens_est"] == (
        overhead["start"]["input_tokens_est"] + overhead["start"]["output_tokens_est"]
        + overhead["end"]["input_tokens_est"] + overhead["end"]["output_tokens_est"]
    )


@then("the milestone index is empty")
def milestone_index_empty(test_context: BDDTestContext):
    assert test_context.indexes.milestones.read() == []


@then(parsers.parse('the seal record of "{name}" is marked auto-sealed'))
def seal_record_auto_sealed(test_context: BDDTestContext, name: str):
    records = test_context.records(test_context.resolve_id(name))
    assert records[-1].data["auto_sealed"] is True
    assert records[-2].data["auto_sealed"] is True


@then(parsers.parse('the sessions "{first}" and "{second}" differ'))
def sessions_differ(test_context: BDDTestContext, first: str, second: str):
    assert test_context.resolve_id(first) != test_context.resolve_id(second)


@then(parsers.parse('the result has conversation "{conversation_id}" at index {index:d}'))
def result_has_conversation(test_context: BDDTestContext, conversation_id: str, index: int):
    assert test_context.last_result["conversation_id"] == conversation_id
    assert test_context.last_result["conversation_index"] == index
    start = test_context.records(test_context.last_result["session_id"])[0]
    assert start.data["conversation_id"] == conversation_id
    assert start.data["conversation_index"] == index


@then(parsers.parse('the conversation differs from "{name}"'))
def conversation_differs(test_context: BDDTestContext, name: str):
    assert test_context.last_result["conversation_id"] != test_context.named_ids[name]
    assert test_context.last_result["conversation_index"] == 0
