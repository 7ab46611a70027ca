"""Late enrichment of sessions that were sealed automatically.

When a session is sealed by a sweep (idle timeout, supersession, shutdown)
the caller may still send its end() afterwards. The chain is already closed,
so the supplied details are overlaid onto the index entry instead.
"""
from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

from .chain import read_chain_file
from .index import append_entries, overlay_session
from .models import Milestone, SessionSeal
from .utils import generate_milestone_id, round_half_up, seconds_between, utc_now

if TYPE_CHECKING:
    from .config import LocalConfig, StoragePaths
    from .index import Indexes
    from .models import ChainRecord, MilestoneInput, SessionEvaluation
    from .state import SessionState

logger = logging.getLogger(__name__)


def _sealed_timing(first: "ChainRecord", last: "ChainRecord") -> Tuple[str, int]:
    """Prefer the end time and duration stored in the seal payload."""
    ended_at = last.timestamp
    duration = None
    if last.type == "session_seal":
        try:
            seal = json.loads(last.data.get("seal") or "{}")
        except ValueError:
            seal = {}
        if isinstance(seal, dict):
            ended_at = seal.get("ended_at") or ended_at
            duration = seal.get("duration_seconds")
    if not isinstance(duration, int):
        duration = max(0, seconds_between(first.timestamp, ended_at))
    return ended_at, duration


def _fallback_entry(
    session_id: str,
    records: List["ChainRecord"],
    ended_at: str,
    duration: int,
    fields: Dict[str, Any],
) -> Dict[str, Any]:
    """Index entry rebuilt from the chain file when the index has none."""
    first = records[0]
    start = first.data if first.type == "session_start" else {}
    end_hash = next(
        (record.hash for record in reversed(records) if record.type == "session_end"),
        records[-1].hash,
    )
    last = records[-1]
    seal = SessionSeal(
        session_id=session_id,
        conversation_id=start.get("conversation_id"),
        conversation_index=start.get("conversation_index"),
        client=start.get("client", "unknown"),
        task_type=fields.get("task_type") or start.get("task_type", "coding"),
        languages=fields.get("languages") or [],
        files_touched=fields.get("files_touched") or 0,
        project=start.get("project"),
        title=start.get("title"),
        private_title=start.get("private_title"),
        model=start.get("model"),
        evaluation=fields.get("evaluation"),
        session_score=fields.get("session_score"),
        evaluation_framework=fields.get("evaluation_framework"),
        started_at=first.timestamp,
        ended_at=ended_at,
        duration_seconds=duration,
        heartbeat_count=sum(1 for record in records if record.type == "heartbeat"),
        record_count=len(records),
        chain_start_hash=first.hash,
        chain_end_hash=end_hash,
        seal_signature=last.data.get("seal_signature", "") if last.type == "session_seal" else "",
        parent_session_id=start.get("parent_session_id"),
        milestone_count=fields.get("milestone_count") or 0,
    )
    return seal.to_dict()


def enrich_auto_sealed_session(
    paths: "StoragePaths",
    config: "LocalConfig",
    indexes: "Indexes",
    state: "SessionState",
    session_id: str,
    task_type: Optional[str] = None,
    languages: Optional[List[str]] = None,
    files_touched: Optional[int] = None,
    milestones: Optional[List["MilestoneInput"]] = None,
    evaluation: Optional["SessionEvaluation"] = None,
) -> Dict[str, Any]:
    """Overlay end() details onto an already sealed session. Never raises for missing chains."""
    from .lifecycle import end_summary_text, nothing_to_end, score_evaluation

    path = paths.find_chain(session_id)
    if path is None:
        return nothing_to_end()
    try:
        records = read_chain_file(path)
        if not records:
            raise ValueError("chain file is empty")
        ended_at, duration = _sealed_timing(records[0], records[-1])
    except (OSError, ValueError) as exc:
        logger.warning("Cannot enrich session %s: %s", session_id, exc)
        return nothing_to_end("No active session to end (sealed chain could not be read).")
    if records[-1].type != "session_seal":
        # Open chains are only closed by their owning state.
        logger.warning("Not enriching session %s, its chain is still open", session_id)
        return nothing_to_end(f"No active session to end ({session_id[:8]} is not sealed yet).")

    start =records[0].data if records[0].type == "session_start" else {}
    final_task_type = (task_type or start.get("task_type") or "coding").strip().lower()

    milestone_count = 0
    if milestones and config.milestone_tracking:
        duration_minutes = round_half_up(duration / 60)
        entries = [
            Milestone(
                id=generate_milestone_id(),
                session_id=session_id,
                title=item.title,
                private_title=item.private_title,
                project=start.get("project"),
                category=item.category,
                complexity=item.complexity,
                duration_minutes=duration_minutes,
                languages=languages or [],
                client=start.get("client") or state.client_name,
                created_at=utc_now(),
                # No chain record backs a milestone added after sealing.
                chain_hash="",
            ).to_dict()
            for item in milestones
        ]
        milestone_count = append_entries(indexes.milestones, entries)

    session_score, framework_id = score_evaluation(config, evaluation)
    fields: Dict[str, Any] = {
        "task_type": final_task_type if task_type else None,
        "languages": languages,
        "files_touched": files_touched,
        "evaluation": evaluation.to_dict() if evaluation is not None else None,
        "session_score": session_score,
        "evaluation_framework": framework_id,
    }
    fallback = _fallback_entry(session_id, records, ended_at, duration, dict(fields, milestone_count=milestone_count))
    entry = overlay_session(indexes.sessions, session_id, fields, fallback)
    if milestone_count and entry is not fallback:
        entry = overlay_session(
            indexes.sessions, session_id,
            {"milestone_count": (entry.get("milestone_count") or 0) + milestone_count},
            fallback,
        )
    logger.info("Enriched auto-sealed session %s", session_id)

    message = end_summary_text(
        "Session ended (enriched auto-sealed session)", duration,
        entry.get("task_type") or final_task_type, entry.get("languages") or [],
        milestone_count, evaluation, session_score, framework_id,
    )
    return {
        "ok": True,
        "ended": True,
        "enriched": True,
        "message": message,
        "session_id": session_id,
        "duration_seconds": duration,
        "milestones_recorded": milestone_count,
        "session_score": session_score,
        "parent_session_id": start.get("parent_session_id"),
    }
