from __future__ import annotations

import os
from dataclasses import dataclass, fields
from typing import Any

PROTOCOL_VERSION = 1

DEFAULTS: dict[str, Any] = {
    "mock": False,
    "log_level": "INFO",
    "claude_bin": "claude",
    "codex_bin": "codex",
    # Seconds a run may keep going after abort before its task is cancelled.
    "abort_grace": 3.0,
    # Fixed deadline for a pending permission request (seconds).
    "permission_timeout": 300.0,
    # Inner (worker <-> codex app-server) request timeout.
    "codex_request_timeout": 30.0,
    "claude_default_model": None,
    "claude_max_turns": 100,
}

_ENV_KEYS: dict[str, str] = {
    "AGENT_BRIDGE_MOCK": "mock",
    "AGENT_BRIDGE_LOG_LEVEL": "log_level",
    "AGENT_BRIDGE_CLAUDE_BIN": "claude_bin",
    "AGENT_BRIDGE_CODEX_BIN": "codex_bin",
    "AGENT_BRIDGE_ABORT_GRACE": "abort_grace",
}


def _coerce(key: str, raw: str) -> Any:
    default = DEFAULTS[key]
    if isinstance(default, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(default, float):
        return float(raw)
    if isinstance(default, int):
        return int(raw)
    return raw


@dataclass
class BridgeConfig:
    mock: bool = DEFAULTS["mock"]
    log_level: str = DEFAULTS["log_level"]
    claude_bin: str = DEFAULTS["claude_bin"]
    codex_bin: str = DEFAULTS["codex_bin"]
    abort_grace: float = DEFAULTS["abort_grace"]
    permission_timeout: float = DEFAULTS["permission_timeout"]
    codex_request_timeout: float = DEFAULTS["codex_request_timeout"]
    claude_default_model: str | None = DEFAULTS["claude_default_model"]
    claude_max_turns: int = DEFAULTS["claude_max_turns"]

    @classmethod
    def load(
        cls,
        env: dict[str, str] | None = None,
        overrides: dict[str, Any] | None = None,
    ) -> "BridgeConfig":
        """Defaults, then environment, then explicit overrides (e.g. CLI flags)."""
        env = os.environ if env is None else env
        values = dict(DEFAULTS)
        for env_key, key in _ENV_KEYS.items():
            raw = env.get(env_key)
            if raw is not None and raw != "":
                values[key] = _coerce(key, raw)
        if overrides:
            values.update({k: v for k, v in overrides.items() if v is not None})
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in values.items() if k in known})
