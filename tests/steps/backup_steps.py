"""Step definitions for backup and restore."""
from __future__ import annotations

import json
import os

from pytest_bdd import given, parsers, then, when

from conftest import BDDTestContext


def _ids(text: str) -> list[str]:
    return [part.strip() for part in text.split(",") if part.strip()]


def _session_entry(session_id: str) -> dict:
    return {
        "session_id": session_id,
        "client": "test",
        "task_type": "coding",
        "languages": [],
        "files_touched": 0,
        "started_at": "2026-01-01T10:00:00.000Z",
        "ended_at": "2026-01-01T10:10:00.000Z",
        "duration_seconds": 600,
        "heartbeat_count": 0,
        "record_count": 2,
        "chain_start_hash": "a",
        "chain_end_hash": "b",
        "seal_signature": "unsigned",
    }


def _restore(test_context: BDDTestContext, bundle: dict, dry_run: bool = False) -> None:
    from session_chain.backup import run_restore

    test_context.last_result = run_restore(
        test_context.paths, test_context.indexes, json.dumps(bundle), dry_run=dry_run,
    )


@given(parsers.parse('the session index holds session "{session_id}"'))
def index_holds_session(test_context: BDDTestContext, session_id: str):
    test_context.indexes.sessions.write([_session_entry(session_id)])


@given(parsers.parse('a sealed chain file "{session_id}" with content "{content}"'))
def sealed_chain_with_content(test_context: BDDTestContext, session_id: str, content: str):
    with open(test_context.paths.sealed_chain(session_id), "w", encoding="utf-8") as f:
        f.write(content)


@when("I take a backup")
def take_backup(test_context: BDDTestContext):
    from session_chain.backup import run_backup

    test_context.last_backup = run_backup(test_context.paths, test_context.indexes)


@when(parsers.parse('I restore a backup with sessions "{ids}"'))
def restore_sessions(test_context: BDDTestContext, ids: str):
    _restore(test_context, {"sessions": [_session_entry(i) for i in _ids(ids)]})


@when(parsers.parse('I restore a backup with sessions "{ids}" as a dry run'))
def restore_sessions_dry_run(test_context: BDDTestContext, ids: str):
    _restore(test_context, {"sessions": [_session_entry(i) for i in _ids(ids)]}, dry_run=True)


@when(parsers.parse('I restore a backup with sealed chains "{ids}"'))
def restore_chains(test_context: BDDTestContext, ids: str):
    chains = {f"{i}.jsonl": f"restored {i}\n" for i in _ids(ids)}
    _restore(test_context, {"sealed_chains": chains})


@then(parsers.parse("the backup holds {sessions:d} sessions and {milestones:d} milestones"))
def backup_holds_counts(test_context: BDDTestContext, sessions: int, milestones: int):
    assert len(test_context.last_backup["sessions"]) == sessions
    assert len(test_context.last_backup["milestones"]) == milestones


@then(parsers.parse('the backup holds the sealed chain of "{name}"'))
def backup_holds_chain(test_context: BDDTestContext, name: str):
    session_id = test_context.resolve_id(name)
    content = test_context.last_backup["sealed_chains"][f"{session_id}.jsonl"]
    with open(test_context.paths.sealed_chain(session_id), "r", encoding="utf-8") as f:
        assert content == f.read()


@then("the backup does not contain the private key")
def backup_has_no_key(test_context: BDDTestContext):
    from session_chain.keystore import load_keystore

    keystore = load_keystore(test_context.paths)
    serialized = json.dumps(test_context.last_backup)
    assert keystore.encrypted_private_key not in serialized
    assert "keystore" not in test_context.last_backup


@then(parsers.parse("the restore reports {count:d} restored sessions"))
def restore_reports_sessions(test_context: BDDTestContext, count: int):
    assert test_context.last_result["restored_count"] == count


@then(parsers.parse("the restore reports {restored:d} restored chains and {skipped:d} skipped chains"))
def restore_reports_chains(test_context: BDDTestContext, restored: int, skipped: int):
    assert test_context.last_result["restored_chains"] == restored
    assert test_context.last_result["skipped_chains"] == skipped


@then(parsers.parse('the session index holds sessions "{ids}"'))
def session_index_holds(test_context: BDDTestContext, ids: str):
    assert [e["session_id"] for e in test_context.sessions_index()] == _ids(ids)


@then("the session index is empty")
def session_index_empty(test_context: BDDTestContext):
    assert test_context.sessions_index() == []


@then(parsers.parse('the sealed chain file "{session_id}" still has content "{content}"'))
def sealed_chain_unchanged(test_context: BDDTestContext, session_id: str, content: str):
    with open(test_context.paths.sealed_chain(session_id), "r", encoding="utf-8") as f:
        assert f.read() == content


@then(parsers.parse('the sealed chain file "{session_id}" exists'))
def sealed_chain_exists(test_context: BDDTestContext, session_id: str):
    assert os.path.exists(test_context.paths.sealed_chain(session_id))
