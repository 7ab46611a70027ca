"""Storage layout and local configuration."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

from .utils import read_json

logger = logging.getLogger(__name__)

HOME_ENV = "SESSION_CHAIN_HOME"
DEFAULT_HOME = "~/.session_chain"

INDEX_BACKENDS = ("json", "sqlite")
DEFAULT_FRAMEWORK = "space"


def resolve_home(explicit_home: Optional[str] = None) -> str:
    """Resolve the storage root from an explicit path, the environment or the default."""
    if explicit_home:
        return os.path.abspath(os.path.expanduser(explicit_home))
    env_home = os.environ.get(HOME_ENV, "").strip()
    if env_home:
        return os.path.abspath(os.path.expanduser(env_home))
    return os.path.expanduser(DEFAULT_HOME)


@dataclass(frozen=True)
class StoragePaths:
    """Every file location the session chain reads or writes."""

    root: str

    @classmethod
    def resolve(cls, explicit_home: Optional[str] = None) -> "StoragePaths":
        return cls(resolve_home(explicit_home))

    @property
    def data_dir(self) -> str:
        return os.path.join(self.root, "data")

    @property
    def active_dir(self) -> str:
        return os.path.join(self.data_dir, "active")

    @property
    def sealed_dir(self) -> str:
        return os.path.join(self.data_dir, "sealed")

    @property
    def keystore_file(self) -> str:
        return os.path.join(self.root, "keystore.json")

    @property
    def config_file(self) -> str:
        return os.path.join(self.root, "config.json")

    @property
    def current_session_file(self) -> str:
        return os.path.join(self.root, "current_session.json")

    @property
    def sessions_file(self) -> str:
        return os.path.join(self.data_dir, "sessions.json")

    @property
    def milestones_file(self) -> str:
        return os.path.join(self.data_dir, "milestones.json")

    @property
    def index_db(self) -> str:
        return os.path.join(self.data_dir, "index.db")

    def active_chain(self, session_id: str) -> str:
        return os.path.join(self.active_dir, f"{session_id}.jsonl")

    def sealed_chain(self, session_id: str) -> str:
        return os.path.join(self.sealed_dir, f"{session_id}.jsonl")

    def find_chain(self, session_id: str) -> Optional[str]:
        """Locate a chain file, sealed storage first."""
        for path in (self.sealed_chain(session_id), self.active_chain(session_id)):
            if os.path.exists(path):
                return path
        return None

    def ensure_dirs(self) -> None:
        for directory in (self.root, self.data_dir, self.active_dir, self.sealed_dir):
            os.makedirs(directory, exist_ok=True)


@dataclass
class LocalConfig:
    milestone_tracking: bool = True
    evaluation_framework: str = DEFAULT_FRAMEWORK
    index_backend: str = "json"


def load_config(paths: StoragePaths) -> LocalConfig:
    """Load config.json, falling back to defaults for anything missing or invalid."""
    raw = read_json(paths.config_file, {})
    if not isinstance(raw, dict):
        logger.warning("Ignoring malformed config file %s", paths.config_file)
        raw = {}
    config = LocalConfig()
    if "milestone_tracking" in raw:
        config.milestone_tracking = bool(raw["milestone_tracking"])
    capture = raw.get("capture")
    if isinstance(capture, dict) and "milestones" in capture:
        config.milestone_tracking = bool(capture["milestones"])
    if isinstance(raw.get("evaluation_framework"), str):
        config.evaluation_framework = raw["evaluation_framework"]
    backend = raw.get("index_backend")
    if backend in INDEX_BACKENDS:
        config.index_backend = backend
    elif backend is not None:
        logger.warning("Unknown index_backend %r, using json", backend)
    return config
