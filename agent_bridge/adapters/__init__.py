from .base import BackendAdapter, RunParams, RunResult
from .claude import ClaudeAdapter
from .codex import CodexAdapter
from .mock import MockAdapter

ADAPTER_CLASSES: dict[str, type[BackendAdapter]] = {
    "claude": ClaudeAdapter,
    "codex": CodexAdapter,
}

__all__ = [
    "ADAPTER_CLASSES",
    "BackendAdapter",
    "ClaudeAdapter",
    "CodexAdapter",
    "MockAdapter",
    "RunParams",
    "RunResult",
]
