"""Data models for the session chain."""
from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, List, Optional, Tuple, Union

RECORD_TYPES = ("session_start", "heartbeat", "milestone", "session_end", "session_seal")

# Aliases are accepted as sent.
MILESTONE_CATEGORIES = (
    "feature", "bugfix", "refactor", "test", "docs", "setup", "deployment",
    "fix", "bug_fix", "testing", "documentation", "config", "configuration",
    "analysis", "research", "investigation", "performance", "cleanup",
    "chore", "security", "migration", "design", "devops", "other",
)
COMPLEXITIES = (
    "simple", "medium", "complex",
    "low", "high", "trivial", "easy", "moderate", "hard", "difficult",
)
TASK_OUTCOMES = ("completed", "partial", "abandoned", "blocked")


def _compact(data: Dict[str, Any]) -> Dict[str, Any]:
    """Drop unset optional fields so payloads match what was supplied."""
    return {key: value for key, value in data.items() if value is not None}


def _known_fields(cls: type, data: Dict[str, Any]) -> Dict[str, Any]:
    names = {f.name for f in fields(cls)}
    return {key: value for key, value in data.items() if key in names}


@dataclass
class ChainRecord:
    """One hash-linked line of a session chain file."""

    id: str
    type: str
    session_id: str
    timestamp: str
    data: Dict[str, Any]
    prev_hash: str
    hash: str
    signature: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChainRecord":
        return cls(
            id=data.get("id", ""),
            type=data["type"],
            session_id=data["session_id"],
            timestamp=data["timestamp"],
            data=data.get("data") or {},
            prev_hash=data["prev_hash"],
            hash=data["hash"],
            signature=data.get("signature", "unsigned"),
        )


# Payloads, one shape per record type. The envelope stores them as plain dicts.


@dataclass
class SessionStartData:
    client: str
    task_type: str
    project: Optional[str]
    conversation_id: str
    conversation_index: int
    version: str
    title: Optional[str] = None
    private_title: Optional[str] = None
    model: Optional[str] = None
    parent_session_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = _compact(asdict(self))
        data.setdefault("project", None)
        return data


@dataclass
class HeartbeatData:
    heartbeat_number: int
    cumulative_seconds: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class MilestoneData:
    title: str
    category: str
    complexity: str
    duration_minutes: int
    languages: List[str]
    private_title: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return _compact(asdict(self))


@dataclass
class SessionEndData:
    duration_seconds: int
    task_type: str
    languages: List[str]
    files_touched: int
    heartbeat_count: int
    evaluation: Optional[Dict[str, Any]] = None
    session_score: Optional[int] = None
    evaluation_framework: Optional[str] = None
    model: Optional[str] = None
    auto_sealed: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        return _compact(asdict(self))


@dataclass
class SessionSealData:
    seal: str
    seal_signature: str
    auto_sealed: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        return _compact(asdict(self))


RecordPayload = Union[SessionStartData, HeartbeatData, MilestoneData, SessionEndData, SessionSealData]


@dataclass
class SessionEvaluation:
    """Self-assessment supplied at session end."""

    prompt_quality: int
    context_provided: int
    task_outcome: str
    iteration_count: int
    independence_level: int
    scope_quality: int
    tools_leveraged: int
    prompt_quality_reason: Optional[str] = None
    context_provided_reason: Optional[str] = None
    task_outcome_reason: Optional[str] = None
    independence_level_reason: Optional[str] = None
    scope_quality_reason: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionEvaluation":
        if not isinstance(data, dict):
            raise ValueError("evaluation must be an object")
        missing = [
            name for name in (
                "prompt_quality", "context_provided", "task_outcome", "iteration_count",
                "independence_level", "scope_quality", "tools_leveraged",
            )
            if name not in data
        ]
        if missing:
            raise ValueError(f"evaluation is missing: {', '.join(missing)}")
        evaluation = cls(**_known_fields(cls, data))
        for name in ("prompt_quality", "context_provided", "independence_level", "scope_quality"):
            value = getattr(evaluation, name)
            if not isinstance(value, (int, float)) or not 1 <= value <= 5:
                raise ValueError(f"evaluation.{name} must be between 1 and 5")
        if evaluation.task_outcome not in TASK_OUTCOMES:
            raise ValueError(f"evaluation.task_outcome must be one of: {', '.join(TASK_OUTCOMES)}")
        if not isinstance(evaluation.iteration_count, int) or evaluation.iteration_count < 1:
            raise ValueError("evaluation.iteration_count must be at least 1")
        if not isinstance(evaluation.tools_leveraged, int) or evaluation.tools_leveraged < 0:
            raise ValueError("evaluation.tools_leveraged must not be negative")
        return evaluation

    def to_dict(self) -> Dict[str, Any]:
        return _compact(asdict(self))


@dataclass
class MilestoneInput:
    """A milestone as supplied by the caller of end()."""

    title: str
    category: str
    complexity: str = "medium"
    private_title: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MilestoneInput":
        if not isinstance(data, dict):
            raise ValueError("milestone must be an object")
        title = str(data.get("title") or "").strip()
        category = str(data.get("category") or "").strip()
        if not title:
            raise ValueError("milestone title is required")
        if not category:
            raise ValueError("milestone category is required")
        if category not in MILESTONE_CATEGORIES:
            raise ValueError(f"milestone category must be one of: {', '.join(MILESTONE_CATEGORIES)}")
        complexity = data.get("complexity") or "medium"
        if complexity not in COMPLEXITIES:
            raise ValueError(f"milestone complexity must be one of: {', '.join(COMPLEXITIES)}")
        return cls(
            title=title,
            category=category,
            complexity=complexity,
            private_title=data.get("private_title"),
        )


@dataclass
class ToolOverhead:
    start: Dict[str, int]
    end: Dict[str, int]
    total_tokens_est: int


@dataclass
class SessionSeal:
    """Denormalized index entry written once a session ends."""

    session_id: str
    client: str
    task_type: str
    languages: List[str]
    files_touched: int
    started_at: str
    ended_at: str
    duration_seconds: int
    heartbeat_count: int
    record_count: int
    chain_start_hash: str
    chain_end_hash: str
    seal_signature: str
    conversation_id: Optional[str] = None
    conversation_index: Optional[int] = None
    project: Optional[str] = None
    title: Optional[str] = None
    private_title: Optional[str] = None
    model: Optional[str] = None
    evaluation: Optional[Dict[str, Any]] = None
    session_score: Optional[int] = None
    evaluation_framework: Optional[str] = None
    tool_overhead: Optional[Dict[str, Any]] = None
    parent_session_id: Optional[str] = None
    child_session_ids: Optional[List[str]] = None
    milestone_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return _compact(asdict(self))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionSeal":
        return cls(**_known_fields(cls, data))


@dataclass
class Milestone:
    """Milestone index entry, owned by one session."""

    id: str
    session_id: str
    title: str
    category: str
    complexity: str
    duration_minutes: int
    languages: List[str]
    client: str
    created_at: str
    chain_hash: str
    private_title: Optional[str] = None
    project: Optional[str] = None
    published: bool = False
    published_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = _compact(asdict(self))
        data["published_at"] = self.published_at
        return data


@dataclass(frozen=True)
class SessionSnapshot:
    """Immutable copy of a suspended parent session."""

    session_id: str
    conversation_id: str
    conversation_index: int
    chain_tip_hash: str
    chain_start_hash: Optional[str]
    session_record_count: int
    session_start_time: float
    heartbeat_count: int
    last_activity_time: float
    client_name: str
    task_type: str
    title: Optional[str]
    private_title: Optional[str]
    project: Optional[str]
    model_id: Optional[str]
    in_progress: bool
    in_progress_since: Optional[float]
    start_call_tokens_est: Optional[Tuple[int, int]]
    parent_session_id: Optional[str]
    child_session_ids: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["child_session_ids"] = list(self.child_session_ids)
        if self.start_call_tokens_est is not None:
            data["start_call_tokens_est"] = list(self.start_call_tokens_est)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionSnapshot":
        values = _known_fields(cls, data)
        values["child_session_ids"] = tuple(values.get("child_session_ids") or ())
        tokens = values.get("start_call_tokens_est")
        values["start_call_tokens_est"] = tuple(tokens) if tokens else None
        return cls(**values)


@dataclass
class ChainVerification:
    valid: bool
    signature_valid: bool
    record_count: int = 0
    broken_at: Optional[int] = None
    reason: Optional[str] = None
    records: List[ChainRecord] = field(default_factory=list, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        return _compact({
            "valid": self.valid,
            "signature_valid": self.signature_valid,
            "record_count": self.record_count,
            "broken_at": self.broken_at,
            "reason": self.reason,
        })
