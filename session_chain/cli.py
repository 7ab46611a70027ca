#!/usr/bin/env python3
"""Command-line interface for the session chain."""
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from typing import List, Optional

from .backup import load_backup, run_backup, run_restore
from .chain import verify_session
from .config import StoragePaths, load_config
from .index import deduplicate_sessions, list_milestones, list_sessions, open_indexes
from .keystore import read_public_key
from .lifecycle import SessionLifecycle
from .sessions import load_session_state, save_session_state
from .state import SessionState
from .sweep import auto_seal_session, seal_active, seal_orphaned_sessions
from .utils import write_json


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(description="Tamper-evident session chain for AI coding sessions")
    parser.add_argument("--home", default=None, help="Storage root (overrides SESSION_CHAIN_HOME)")
    parser.add_argument("--verbose", action="store_true", help="Log debug output to stderr")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # init
    subparsers.add_parser("init", help="Create the storage layout and signing key")

    # start
    start_parser = subparsers.add_parser("start", help="Start a session")
    start_parser.add_argument("--task-type", default=None)
    start_parser.add_argument("--title", default=None)
    start_parser.add_argument("--private-title", default=None)
    start_parser.add_argument("--project", default=None)
    start_parser.add_argument("--model", default=None)
    start_parser.add_argument("--conversation-id", default=None)
    start_parser.add_argument("--parent-session-id", default=None, help="Start a child of the live session")
    start_parser.add_argument("--client", default=None, help="Client name as sent in the handshake")

    # heartbeat
    subparsers.add_parser("heartbeat", help="Record a heartbeat for the live session")

    # end
    end_parser = subparsers.add_parser("end", help="End the live session")
    end_parser.add_argument("--session-id", default=None)
    end_parser.add_argument("--task-type", default=None)
    end_parser.add_argument("--languages", default=None, help="Comma-separated or JSON list")
    end_parser.add_argument("--files-touched", default=None)
    end_parser.add_argument("--milestones", default=None, help="JSON list of milestones")
    end_parser.add_argument("--evaluation", default=None, help="JSON evaluation object")

    # seal-active
    seal_parser = subparsers.add_parser("seal-active", help="Auto-seal the live session")
    seal_parser.add_argument("--force", action="store_true", help="Seal even if the session is in progress")
    seal_parser.add_argument("--idle-seconds", type=int, default=30 * 60)

    # sweep
    sweep_parser = subparsers.add_parser("sweep", help="Seal orphaned chains and deduplicate the index")
    sweep_parser.add_argument("--stale-after", type=int, default=None,
                              help="Only seal files untouched for this many seconds")

    # verify
    verify_parser = subparsers.add_parser("verify", help="Verify a session chain")
    verify_parser.add_argument("session_id")

    # sessions
    sessions_parser = subparsers.add_parser("sessions", help="List sealed sessions")
    sessions_parser.add_argument("--conversation-id", default=None)
    sessions_parser.add_argument("--limit", type=int, default=20)
    sessions_parser.add_argument("--offset", type=int, default=0)

    # milestones
    milestones_parser = subparsers.add_parser("milestones", help="List milestones")
    milestones_parser.add_argument("--session-id", default=None)
    milestones_parser.add_argument("--limit", type=int, default=50)

    # backup
    backup_parser = subparsers.add_parser("backup", help="Export indexes and sealed chains")
    backup_parser.add_argument("--output", default=None, help="Write the backup to a file")

    # restore
    restore_parser = subparsers.add_parser("restore", help="Merge a backup file")
    restore_parser.add_argument("file")
    restore_parser.add_argument("--dry-run", action="store_true")

    return parser.parse_args(argv)


def _print(result) -> None:
    print(json.dumps(result, indent=2))


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point."""
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    paths = StoragePaths.resolve(args.home)

    if args.command == "init":
        _handle_init(paths)
        return

    config = load_config(paths)
    indexes = open_indexes(paths, config)
    state = load_session_state(paths) or SessionState(paths)

    try:
        if args.command in ("start", "heartbeat", "end", "seal-active", "sweep"):
            state.initialize_keystore()
        if args.command == "start":
            _handle_start(state, config, indexes, args)
        elif args.command == "heartbeat":
            _handle_heartbeat(state, config, indexes)
        elif args.command == "end":
            _handle_end(state, config, indexes, args)
        elif args.command == "seal-active":
            _handle_seal_active(state, indexes, args)
        elif args.command == "sweep":
            _handle_sweep(paths, state, indexes, args)
        elif args.command == "verify":
            _handle_verify(paths, args)
        elif args.command == "sessions":
            _print({"ok": True, "sessions": list_sessions(
                indexes.sessions, args.conversation_id, args.limit, args.offset,
            )})
        elif args.command == "milestones":
            _print({"ok": True, "milestones": list_milestones(
                indexes.milestones, args.session_id, args.limit,
            )})
        elif args.command == "backup":
            _print(run_backup(paths, indexes, args.output))
        elif args.command == "restore":
            _print(run_restore(paths, indexes, load_backup(args.file), dry_run=args.dry_run))
    except ValueError as exc:
        _print({"ok": False, "error": str(exc)})
        sys.exit(1)
    finally:
        if args.command in ("start", "heartbeat", "end", "seal-active"):
            save_session_state(state)


def _handle_init(paths: StoragePaths) -> None:
    paths.ensure_dirs()
    if not os.path.exists(paths.config_file):
        write_json(paths.config_file, {
            "milestone_tracking": True,
            "evaluation_framework": "space",
            "index_backend": "json",
        })
    state = SessionState(paths)
    state.initialize_keystore()
    _print({
        "ok": True,
        "home": paths.root,
        "signing": state.signing_available,
        "public_key": read_public_key(paths),
    })


def _lifecycle(state, config, indexes, handshake_name=None) -> SessionLifecycle:
    return SessionLifecycle(
        state,
        config=config,
        indexes=indexes,
        seal_before_reset=lambda: auto_seal_session(state, indexes),
        handshake_name=handshake_name,
    )


def _handle_start(state, config, indexes, args):
    lifecycle = _lifecycle(state, config, indexes, args.client)
    _print(lifecycle.start(
        task_type=args.task_type,
        title=args.title,
        private_title=args.private_title,
        project=args.project,
        model=args.model,
        conversation_id=args.conversation_id,
        parent_session_id=args.parent_session_id,
    ))


def _handle_heartbeat(state, config, indexes):
    _print(_lifecycle(state, config, indexes).heartbeat())


def _handle_end(state, config, indexes, args):
    _print(_lifecycle(state, config, indexes).end(
        session_id=args.session_id,
        task_type=args.task_type,
        languages=args.languages,
        files_touched_count=args.files_touched,
        milestones=args.milestones,
        evaluation=args.evaluation,
    ))


def _handle_seal_active(state, indexes, args):
    sealed = seal_active([state], indexes, idle_seconds=args.idle_seconds, force=args.force)
    _print({"ok": True, "sealed": sealed, "auto_sealed_session_id": state.auto_sealed_session_id})


def _handle_sweep(paths, state, indexes, args):
    sealed = seal_orphaned_sessions(
        paths, indexes, state.live_session_ids(), signing_key=state.signing_key, stale_after=args.stale_after,
    )
    removed = deduplicate_sessions(indexes.sessions)
    _print({"ok": True, "sealed": sealed, "deduplicated": removed})


def _handle_verify(paths, args):
    result = verify_session(paths, args.session_id, read_public_key(paths))
    _print(dict(result.to_dict(), ok=True, session_id=args.session_id))


if __name__ == "__main__":
    main()
