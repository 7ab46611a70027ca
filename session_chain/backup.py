"""Backup and restore of the indexes and sealed chains."""
from __future__ import annotations

import json
import logging
import os
from typing import TYPE_CHECKING, Any, Dict, Optional

from .index import append_entries
from .utils import coerce_json, utc_now

if TYPE_CHECKING:
    from .config import StoragePaths
    from .index import Indexes

logger = logging.getLogger(__name__)

BACKUP_VERSION = 1


def run_backup(paths: "StoragePaths", indexes: "Indexes", output_path: Optional[str] = None) -> dict:
    """Export sessions, milestones and sealed chain files. The keystore is never included."""
    sealed_chains: Dict[str, str] = {}
    if os.path.isdir(paths.sealed_dir):
        for name in sorted(os.listdir(paths.sealed_dir)):
            if not name.endswith(".jsonl"):
                continue
            with open(os.path.join(paths.sealed_dir, name), "r", encoding="utf-8") as f:
                sealed_chains[name] = f.read()

    bundle = {
        "version": BACKUP_VERSION,
        "exported_at": utc_now(),
        "sessions": indexes.sessions.read(),
        "milestones": indexes.milestones.read(),
        "sealed_chains": sealed_chains,
    }
    if output_path is None:
        return bundle

    output_path = os.path.expanduser(output_path)
    out_dir = os.path.dirname(output_path)
    if out_dir:
        os.makedirs(out_dir, exist_ok=True)
    with open(output_path, "w", encoding="utf-8") as f:
        json.dump(bundle, f, indent=2)
    return {
        "ok": True,
        "output_path": output_path,
        "sessions": len(bundle["sessions"]),
        "milestones": len(bundle["milestones"]),
        "sealed_chains": len(sealed_chains),
    }


def load_backup(file_path: str) -> dict:
    file_path = os.path.expanduser(file_path)
    with open(file_path, "r", encoding="utf-8") as f:
        return json.load(f)


def _safe_chain_name(name: Any) -> bool:
    return (
        isinstance(name, str)
        and name.endswith(".jsonl")
        and os.path.basename(name) == name
        and not name.startswith(".")
    )


def run_restore(
    paths: "StoragePaths",
    indexes: "Indexes",
    bundle: Any,
    dry_run: bool = False,
) -> dict:
    """Merge a backup into local storage.

    Sessions are deduplicated by session_id and milestones by id. A sealed
    chain file is only written when none exists under that name.
    """
    bundle = coerce_json(bundle)
    if not isinstance(bundle, dict):
        raise ValueError("backup must be a JSON object")

    sessions = [entry for entry in bundle.get("sessions") or [] if isinstance(entry, dict) and entry.get("session_id")]
    milestones = [entry for entry in bundle.get("milestones") or [] if isinstance(entry, dict) and entry.get("id")]
    chains = bundle.get("sealed_chains") or {}
    if not isinstance(chains, dict):
        raise ValueError("sealed_chains must be an object of file name to content")

    if dry_run:
        known_sessions = {entry.get("session_id") for entry in indexes.sessions.read()}
        known_milestones = {entry.get("id") for entry in indexes.milestones.read()}
        restored_sessions = len({e["session_id"] for e in sessions} - known_sessions)
        restored_milestones = len({e["id"] for e in milestones} - known_milestones)
    else:
        restored_sessions = append_entries(indexes.sessions, sessions)
        restored_milestones = append_entries(indexes.milestones, milestones)

    restored_chains = 0
    skipped_chains = 0
    for name, content in chains.items():
        if not _safe_chain_name(name) or not isinstance(content, str):
            logger.warning("Skipping invalid sealed chain entry %r", name)
            skipped_chains += 1
            continue
        target = os.path.join(paths.sealed_dir, name)
        if os.path.exists(target):
            skipped_chains += 1
            continue
        if not dry_run:
            paths.ensure_dirs()
            try:
                with open(target, "x", encoding="utf-8") as f:
                    f.write(content)
            except FileExistsError:
                skipped_chains += 1
                continue
        restored_chains += 1

    return {
        "ok": True,
        "dry_run": dry_run,
        "restored_count": restored_sessions,
        "restored_sessions": restored_sessions,
        "restored_milestones": restored_milestones,
        "restored_chains": restored_chains,
        "skipped_chains": skipped_chains,
    }
