"""Client identity resolution."""
from __future__ import annotations

import os
from typing import Mapping, Optional

# Checked in order; the first variable present names the client.
CLIENT_ENV_VARS = (
    ("CURSOR_EDITOR", "cursor"),
    ("WINDSURF_EDITOR", "windsurf"),
    ("CLAUDE_CODE", "claude-code"),
    ("VSCODE_PID", "vscode"),
    ("CODEX_CLI", "codex"),
    ("GEMINI_CLI", "gemini-cli"),
    ("JETBRAINS_IDE", "jetbrains"),
    ("ZED_EDITOR", "zed"),
)

HANDSHAKE_NAMES = {
    "claude-code": "claude-code",
    "claude code": "claude-code",
    "claude-desktop": "claude-desktop",
    "claude desktop": "claude-desktop",
    "cursor": "cursor",
    "windsurf": "windsurf",
    "codeium": "windsurf",
    "vscode": "vscode",
    "visual studio code": "vscode",
    "vscode-insiders": "vscode-insiders",
    "codex": "codex",
    "codex-cli": "codex",
    "gemini-cli": "gemini-cli",
    "gemini cli": "gemini-cli",
    "zed": "zed",
    "cline": "cline",
    "roo-code": "roo-code",
    "roo-cline": "roo-code",
    "amazon-q": "amazon-q",
    "opencode": "opencode",
    "goose": "goose",
    "junie": "junie",
}


def normalize_client_name(name: str) -> str:
    """Map a transport handshake name to its canonical client name."""
    lower = name.strip().lower()
    return HANDSHAKE_NAMES.get(lower, lower)


def detect_client(env: Optional[Mapping[str, str]] = None) -> str:
    """Detect the client from environment variables."""
    env = os.environ if env is None else env
    for var, client in CLIENT_ENV_VARS:
        if env.get(var):
            return client
    return env.get("MCP_CLIENT_NAME") or "unknown"


def resolve_client(
    current: str,
    handshake_name: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
) -> str:
    """Keep an already-known client; otherwise prefer the handshake over the environment."""
    if current and current != "unknown":
        return current
    if handshake_name:
        return normalize_client_name(handshake_name)
    return detect_client(env)
