"""Utility functions for the session chain."""
from __future__ import annotations

import json
import math
import os
import re
import uuid
from datetime import datetime, timezone
from typing import Any, List, Optional

VERSION = "0.1.0"
GENESIS_HASH = "GENESIS"
UNSIGNED = "unsigned"

# Shortest conversation/session id prefix a client may echo back.
MIN_ID_PREFIX = 8


def utc_now() -> str:
    """Get current UTC time in ISO format with millisecond precision."""
    return iso_from_datetime(datetime.now(timezone.utc))


def iso_from_datetime(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def iso_from_epoch(seconds: float) -> str:
    """Convert epoch seconds to an ISO UTC timestamp."""
    return iso_from_datetime(datetime.fromtimestamp(seconds, tz=timezone.utc))


def parse_iso(value: str) -> datetime:
    """Parse an ISO timestamp, accepting a trailing Z."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def seconds_between(start: str, end: str) -> int:
    """Rounded wall-clock seconds between two ISO timestamps."""
    return round_half_up((parse_iso(end) - parse_iso(start)).total_seconds())


def generate_session_id() -> str:
    return str(uuid.uuid4())


def generate_record_id() -> str:
    return f"r_{uuid.uuid4().hex[:12]}"


def generate_milestone_id() -> str:
    return f"m_{uuid.uuid4().hex[:8]}"


def canonical_json(value: Any) -> str:
    """Serialize with stable key order and compact separators."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def format_duration(seconds: int) -> str:
    """Format a duration as 42s, 5m or 1h 30m."""
    if seconds < 60:
        return f"{seconds}s"
    minutes = round_half_up(seconds / 60)
    if minutes < 60:
        return f"{minutes}m"
    hours, rest = divmod(minutes, 60)
    return f"{hours}h {rest}m"


def ids_match(supplied: Optional[str], known: Optional[str]) -> bool:
    """Match an id exactly or by a truncated prefix echoed back by a client."""
    if not supplied or not known:
        return False
    if supplied == known:
        return True
    return len(supplied) >= MIN_ID_PREFIX and known.startswith(supplied)


def coerce_json(value: Any) -> Any:
    """Decode tool arguments that clients send as JSON strings."""
    if isinstance(value, str):
        raw = value.strip()
        if raw.startswith(("[", "{")) or re.fullmatch(r"-?\d+(\.\d+)?", raw):
            try:
                return json.loads(raw)
            except json.JSONDecodeError:
                return value
    return value


def normalize_languages(languages: object) -> List[str]:
    """Normalize a languages argument to a list of unique lowercase names."""
    languages = coerce_json(languages)
    if languages is None:
        return []
    if isinstance(languages, str):
        candidates = [part.strip() for part in languages.split(",")]
    elif isinstance(languages, list):
        candidates = [str(item).strip() for item in languages]
    else:
        raise ValueError(f"languages must be a list of strings, got {type(languages).__name__}")
    normalized: List[str] = []
    seen: set[str] = set()
    for item in candidates:
        clean = item.lower()
        if not clean or clean in seen:
            continue
        seen.add(clean)
        normalized.append(clean)
    return normalized


def estimate_tokens(text: str) -> int:
    """Rough token estimate: four characters per token."""
    return -(-len(text) // 4)


def read_json(path: str, fallback: Any) -> Any:
    """Read a JSON document, returning the fallback if missing or unreadable."""
    if not os.path.exists(path):
        return fallback
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (json.JSONDecodeError, IOError):
        return fallback


def write_json(path: str, data: Any) -> None:
    """Write a JSON document atomically."""
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    tmp_path = f"{path}.{os.getpid()}.tmp"
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)
    os.replace(tmp_path, path)
