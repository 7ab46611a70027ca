"""Session lifecycle: the start, heartbeat and end operations."""
from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Tuple

from .chain import sha256_hex, sign_hash
from .clients import resolve_client
from .config import LocalConfig, load_config
from .enrichment import enrich_auto_sealed_session
from .frameworks import get_framework
from .index import Indexes, append_entries, open_indexes, replace_session
from .models import (
    HeartbeatData,
    Milestone,
    MilestoneData,
    MilestoneInput,
    SessionEndData,
    SessionEvaluation,
    SessionSeal,
    SessionSealData,
    SessionStartData,
    ToolOverhead,
)
from .utils import (
    VERSION,
    canonical_json,
    coerce_json,
    estimate_tokens,
    format_duration,
    generate_milestone_id,
    generate_session_id,
    ids_match,
    iso_from_epoch,
    normalize_languages,
    round_half_up,
    utc_now,
)

if TYPE_CHECKING:
    from .config import StoragePaths
    from .models import ChainRecord
    from .state import SessionState

logger = logging.getLogger(__name__)

NOTHING_TO_END = "No active session to end (already sealed or never started)."

# Fields of the index entry that are not part of the signed seal payload.
UNSIGNED_SEAL_FIELDS = ("chain_start_hash", "seal_signature", "tool_overhead")


def nothing_to_end(message: str = NOTHING_TO_END) -> Dict[str, Any]:
    return {"ok": True, "ended": False, "message": message}


def seal_chain_file(paths: "StoragePaths", session_id: str) -> bool:
    """Move a chain file from active to sealed storage.

    A failed rename leaves the file, with its seal record, in active storage.
    """
    active_path = paths.active_chain(session_id)
    if not os.path.exists(active_path):
        return False
    try:
        paths.ensure_dirs()
        os.rename(active_path, paths.sealed_chain(session_id))
    except OSError as exc:
        logger.warning("Chain %s stays in active storage, rename failed: %s", session_id, exc)
        return False
    return True


def parse_milestones(value: Any) -> List[MilestoneInput]:
    value = coerce_json(value)
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError("milestones must be a list of objects")
    return [MilestoneInput.from_dict(coerce_json(item)) for item in value]


def parse_evaluation(value: Any) -> Optional[SessionEvaluation]:
    value = coerce_json(value)
    if value is None:
        return None
    return SessionEvaluation.from_dict(value)


def parse_files_touched(value: Any) -> Optional[int]:
    value = coerce_json(value)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
        raise ValueError("files_touched_count must be a non-negative number")
    return int(value)


def score_evaluation(
    config: LocalConfig,
    evaluation: Optional[SessionEvaluation],
) -> Tuple[Optional[int], Optional[str]]:
    if evaluation is None:
        return None, None
    framework = get_framework(config.evaluation_framework)
    return framework.score(evaluation), framework.id


def end_summary_text(
    prefix: str,
    duration: int,
    task_type: str,
    languages: List[str],
    milestone_count: int,
    evaluation: Optional[SessionEvaluation],
    score: Optional[int],
    framework_id: Optional[str],
) -> str:
    text = f"{prefix}: {format_duration(duration)} {task_type}"
    if languages:
        text += f" using {', '.join(languages)}"
    if milestone_count:
        text += f" · {milestone_count} milestone{'s' if milestone_count > 1 else ''} recorded"
    if evaluation is not None:
        text += f" · eval: {evaluation.task_outcome} (prompt: {evaluation.prompt_quality}/5)"
    if score is not None:
        text += f" · score: {score}/100 ({framework_id})"
    return text


def build_session_seal(
    state: "SessionState",
    *,
    task_type: str,
    languages: List[str],
    files_touched: int,
    ended_at: str,
    duration: int,
    record_count: int,
    chain_end_hash: str,
    evaluation: Optional[SessionEvaluation] = None,
    session_score: Optional[int] = None,
    evaluation_framework: Optional[str] = None,
    milestone_count: int = 0,
) -> SessionSeal:
    """Snapshot the live state as an index entry; seal_signature is filled in later."""
    return SessionSeal(
        session_id=state.session_id,
        conversation_id=state.conversation_id,
        conversation_index=state.conversation_index,
        client=state.client_name,
        task_type=task_type,
        languages=languages,
        files_touched=files_touched,
        project=state.project,
        title=state.title,
        private_title=state.private_title,
        model=state.model_id,
        evaluation=evaluation.to_dict() if evaluation is not None else None,
        session_score=session_score,
        evaluation_framework=evaluation_framework,
        started_at=iso_from_epoch(state.session_start_time),
        ended_at=ended_at,
        duration_seconds=duration,
        heartbeat_count=state.heartbeat_count,
        record_count=record_count,
        chain_start_hash=state.chain_start_hash or "",
        chain_end_hash=chain_end_hash,
        seal_signature="",
        parent_session_id=state.parent_session_id,
        child_session_ids=list(state.child_session_ids) or None,
        milestone_count=milestone_count,
    )


def close_chain(
    state: "SessionState",
    end_data: SessionEndData,
    *,
    ended_at: str,
    evaluation: Optional[SessionEvaluation] = None,
    session_score: Optional[int] = None,
    evaluation_framework: Optional[str] = None,
    milestone_count: int = 0,
    auto_sealed: bool = False,
) -> Tuple["ChainRecord", SessionSeal]:
    """Append session_end and the signed session_seal, returning the end record and index entry."""
    end_record = state.append_to_chain("session_end", end_data)
    seal = build_session_seal(
        state,
        task_type=end_data.task_type,
        languages=end_data.languages,
        files_touched=end_data.files_touched,
        ended_at=ended_at,
        duration=end_data.duration_seconds,
        record_count=state.session_record_count + 1,
        chain_end_hash=end_record.hash,
        evaluation=evaluation,
        session_score=session_score,
        evaluation_framework=evaluation_framework,
        milestone_count=milestone_count,
    )
    payload = {key: value for key, value in seal.to_dict().items() if key not in UNSIGNED_SEAL_FIELDS}
    seal_json = canonical_json(payload)
    seal.seal_signature = sign_hash(sha256_hex(seal_json), state.signing_key)
    state.append_to_chain("session_seal", SessionSealData(
        seal=seal_json,
        seal_signature=seal.seal_signature,
        auto_sealed=True if auto_sealed else None,
    ))
    return end_record, seal


class SessionLifecycle:
    """Orchestrates start/heartbeat/end for one SessionState.

    ``seal_before_reset`` is called when a top-level start supersedes a
    session that still has an open chain, so it is never silently abandoned.
    """

    def __init__(
        self,
        state: "SessionState",
        config: Optional[LocalConfig] = None,
        indexes: Optional[Indexes] = None,
        seal_before_reset: Optional[Callable[[], None]] = None,
        handshake_name: Optional[str] = None,
    ) -> None:
        self.state = state
        self.paths = state.paths
        self.config = config if config is not None else load_config(self.paths)
        self.indexes = indexes if indexes is not None else open_indexes(self.paths, self.config)
        self.seal_before_reset = seal_before_reset
        self.handshake_name = handshake_name

    @property
    def has_open_session(self) -> bool:
        return self.state.session_record_count > 0 and not self.state.sealed

    def _is_child_start(self, parent_session_id: Optional[str]) -> bool:
        if not parent_session_id:
            return False
        if self.has_open_session and ids_match(parent_session_id, self.state.session_id):
            return True
        logger.warning(
            "Parent session %s is not the live session, starting a top-level session",
            parent_session_id,
        )
        return False

    def _seal_superseded(self) -> None:
        """Seal the open session and every suspended parent, innermost first."""
        state = self.state
        while True:
            if self.has_open_session:
                if self.seal_before_reset is not None:
                    self.seal_before_reset()
                else:
                    logger.warning("Session %s superseded without being sealed", state.session_id)
            if not state.nesting_depth:
                return
            state.restore_parent_state()

    # -- start ------------------------------------------------------------

    def start(
        self,
        task_type: Optional[str] = None,
        title: Optional[str] = None,
        private_title: Optional[str] = None,
        project: Optional[str] = None,
        model: Optional[str] = None,
        conversation_id: Optional[str] = None,
        parent_session_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        state = self.state
        previous_conversation_id = state.conversation_id
        child = self._is_child_start(parent_session_id)
        parent_id = state.session_id if child else None
        parent_project = state.project if child else None

        if child:
            state.save_parent_state()
        else:
            self._seal_superseded()
        state.reset()
        state.auto_sealed_session_id = None
        state.client_name = resolve_client(state.client_name, self.handshake_name)

        if child:
            state.parent_session_id = parent_id
            state.project = parent_project
        elif conversation_id:
            if not ids_match(conversation_id, previous_conversation_id):
                state.conversation_id = conversation_id
                state.conversation_index = 0
        else:
            state.conversation_id = generate_session_id()
            state.conversation_index = 0

        if project:
            state.project = project
        if model:
            state.model_id = model
        state.task_type = (task_type or "coding").strip().lower()
        state.title = title or None
        state.private_title = private_title or None

        record = state.append_to_chain("session_start", SessionStartData(
            client=state.client_name,
            task_type=state.task_type,
            project=state.project,
            conversation_id=state.conversation_id,
            conversation_index=state.conversation_index,
            version=VERSION,
            title=state.title,
            private_title=state.private_title,
            model=state.model_id,
            parent_session_id=state.parent_session_id,
        ))
        state.mark_in_progress()

        message = (
            f"Session started: {state.task_type} on {state.client_name} · {state.session_id[:8]}"
            f" · conv {state.conversation_id[:8]}#{state.conversation_index}"
            f" · {'signed' if state.signing_available else 'unsigned'}"
            f" · conversation_id={state.conversation_id}"
        )
        params_json = json.dumps({
            "task_type": task_type, "title": title, "private_title": private_title,
            "project": project, "model": model,
        })
        state.start_call_tokens_est = (estimate_tokens(message), estimate_tokens(params_json))

        return {
            "ok": True,
            "message": message,
            "session_id": state.session_id,
            "conversation_id": state.conversation_id,
            "conversation_index": state.conversation_index,
            "parent_session_id": state.parent_session_id,
            "signed": state.signing_available,
            "record_hash": record.hash,
        }

    # -- heartbeat --------------------------------------------------------

    def heartbeat(self) -> Dict[str, Any]:
        state = self.state
        if not self.has_open_session:
            return {
                "ok": True,
                "recorded": False,
                "message": "No active session yet. Call start before sending heartbeats.",
            }
        state.heartbeat_count += 1
        duration = state.session_duration()
        state.append_to_chain("heartbeat", HeartbeatData(
            heartbeat_number=state.heartbeat_count,
            cumulative_seconds=duration,
        ))
        return {
            "ok": True,
            "recorded": True,
            "heartbeat_count": state.heartbeat_count,
            "duration_seconds": duration,
            "message": f"Heartbeat recorded. Session active for {format_duration(duration)}.",
        }

    # -- end --------------------------------------------------------------

    def end(
        self,
        session_id: Optional[str] = None,
        task_type: Optional[str] = None,
        languages: Any = None,
        files_touched_count: Any = None,
        milestones: Any = None,
        evaluation: Any = None,
    ) -> Dict[str, Any]:
        state = self.state
        language_list = normalize_languages(languages) if languages is not None else None
        files_touched = parse_files_touched(files_touched_count)
        milestone_inputs = parse_milestones(milestones)
        parsed_evaluation = parse_evaluation(evaluation)

        ends_live = self.has_open_session and (
            session_id is None or ids_match(session_id, state.session_id)
        )
        if ends_live:
            return self._end_live(task_type, language_list or [], files_touched or 0,
                                  milestone_inputs, parsed_evaluation)

        target = session_id or state.auto_sealed_session_id
        if not target:
            return nothing_to_end()

        result = enrich_auto_sealed_session(
            self.paths, self.config, self.indexes, state, target,
            task_type=task_type,
            languages=language_list,
            files_touched=files_touched,
            milestones=milestone_inputs,
            evaluation=parsed_evaluation,
        )
        if result.get("ended") and target == state.auto_sealed_session_id:
            state.auto_sealed_session_id = None
            state.clear_in_progress()
        parent = state.parent_state
        if (
            result.get("ended")
            and not self.has_open_session
            and parent is not None
            and result.get("parent_session_id") == parent.session_id
        ):
            state.restore_parent_state()
            result["resumed_parent_session_id"] = state.session_id
        return result

    def _end_live(
        self,
        task_type: Optional[str],
        languages: List[str],
        files_touched: int,
        milestone_inputs: List[MilestoneInput],
        evaluation: Optional[SessionEvaluation],
    ) -> Dict[str, Any]:
        state = self.state
        duration = state.session_duration()
        ended_at = utc_now()
        final_task_type = (task_type or state.task_type).strip().lower()

        milestone_count = 0
        if milestone_inputs and self.config.milestone_tracking:
            duration_minutes = round_half_up(duration / 60)
            entries = []
            for item in milestone_inputs:
                record = state.append_to_chain("milestone", MilestoneData(
                    title=item.title,
                    private_title=item.private_title,
                    category=item.category,
                    complexity=item.complexity,
                    duration_minutes=duration_minutes,
                    languages=languages,
                ))
                entries.append(Milestone(
                    id=generate_milestone_id(),
                    session_id=state.session_id,
                    title=item.title,
                    private_title=item.private_title,
                    project=state.project,
                    category=item.category,
                    complexity=item.complexity,
                    duration_minutes=duration_minutes,
                    languages=languages,
                    client=state.client_name,
                    created_at=utc_now(),
                    chain_hash=record.hash,
                ).to_dict())
            milestone_count = append_entries(self.indexes.milestones, entries)

        session_score, framework_id = score_evaluation(self.config, evaluation)
        end_record, seal = close_chain(
            state,
            SessionEndData(
                duration_seconds=duration,
                task_type=final_task_type,
                languages=languages,
                files_touched=files_touched,
                heartbeat_count=state.heartbeat_count,
                evaluation=evaluation.to_dict() if evaluation is not None else None,
                session_score=session_score,
                evaluation_framework=framework_id,
                model=state.model_id,
            ),
            ended_at=ended_at,
            evaluation=evaluation,
            session_score=session_score,
            evaluation_framework=framework_id,
            milestone_count=milestone_count,
        )
        moved = seal_chain_file(self.paths, state.session_id)

        message = end_summary_text(
            "Session ended", duration, final_task_type, languages,
            milestone_count, evaluation, session_score, framework_id,
        )
        start_in, start_out = state.start_call_tokens_est or (0, 0)
        end_in = estimate_tokens(message)
        end_out = estimate_tokens(json.dumps({
            "task_type": task_type,
            "languages": languages,
            "files_touched_count": files_touched,
            "milestones": [item.__dict__ for item in milestone_inputs],
            "evaluation": evaluation.to_dict() if evaluation is not None else None,
        }))
        seal.tool_overhead = asdict(ToolOverhead(
            start={"input_tokens_est": start_in, "output_tokens_est": start_out},
            end={"input_tokens_est": end_in, "output_tokens_est": end_out},
            total_tokens_est=start_in + start_out + end_in + end_out,
        ))
        replace_session(self.indexes.sessions, seal.to_dict())

        state.sealed = True
        state.clear_in_progress()
        result: Dict[str, Any] = {
            "ok": True,
            "ended": True,
            "message": message,
            "session_id": state.session_id,
            "duration_seconds": duration,
            "milestones_recorded": milestone_count,
            "session_score": session_score,
            "chain_end_hash": end_record.hash,
            "seal_signature": seal.seal_signature,
            "moved_to_sealed": moved,
        }
        if state.nesting_depth:
            state.restore_parent_state()
            result["resumed_parent_session_id"] = state.session_id
        return result
