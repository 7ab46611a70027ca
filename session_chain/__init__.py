"""Session chain package."""
from __future__ import annotations

from .models import (
    ChainRecord,
    ChainVerification,
    Milestone,
    MilestoneInput,
    SessionEvaluation,
    SessionSeal,
    SessionSnapshot,
)
from .config import LocalConfig, StoragePaths, load_config
from .utils import GENESIS_HASH, UNSIGNED, VERSION, canonical_json, format_duration, utc_now
from .chain import build_chain_record, compute_hash, read_chain_file, verify_chain, verify_session
from .keystore import load_or_create, read_public_key
from .state import SessionState
from .index import Indexes, deduplicate_sessions, list_milestones, list_sessions, open_indexes
from .frameworks import get_framework
from .lifecycle import SessionLifecycle, seal_chain_file
from .enrichment import enrich_auto_sealed_session
from .sweep import auto_seal_session, seal_active, seal_orphaned_sessions, seal_session_data
from .backup import run_backup, run_restore
from .sessions import clear_session_state, load_session_state, save_session_state

__all__ = [
    # Models
    "ChainRecord",
    "ChainVerification",
    "Milestone",
    "MilestoneInput",
    "SessionEvaluation",
    "SessionSeal",
    "SessionSnapshot",
    # Config
    "LocalConfig",
    "StoragePaths",
    "load_config",
    # Utils
    "GENESIS_HASH",
    "UNSIGNED",
    "VERSION",
    "canonical_json",
    "format_duration",
    "utc_now",
    # Chain
    "build_chain_record",
    "compute_hash",
    "read_chain_file",
    "verify_chain",
    "verify_session",
    # Keystore
    "load_or_create",
    "read_public_key",
    # State
    "SessionState",
    # Index
    "Indexes",
    "deduplicate_sessions",
    "list_milestones",
    "list_sessions",
    "open_indexes",
    # Lifecycle
    "get_framework",
    "SessionLifecycle",
    "seal_chain_file",
    "enrich_auto_sealed_session",
    # Sweep
    "auto_seal_session",
    "seal_active",
    "seal_orphaned_sessions",
    "seal_session_data",
    # Backup
    "run_backup",
    "run_restore",
    # Sessions
    "clear_session_state",
    "load_session_state",
    "save_session_state",
]
