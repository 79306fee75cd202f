from __future__ import annotations

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import Any, AsyncIterator

from ..cancellation import CancelToken
from ..config import BridgeConfig
from ..events import ResumeId, UnifiedEvent
from ..locator import BackendLocator
from ..permissions import PermissionBroker, PermissionDecision

log = logging.getLogger("agent_bridge")

_STDERR_TAIL_LINES = 40
_STREAM_LIMIT = 10 * 1024 * 1024  # agent JSON lines can be large


def _spawn_preview(args: list[str], max_chars: int = 220) -> str:
    """Compact argv for logs to avoid dumping prompts."""
    if not args:
        return ""
    head = args[:2]
    preview = " ".join(head)
    if len(args) > 2:
        preview += f" ... (+{len(args) - 2} args)"
    if len(preview) > max_chars:
        preview = preview[: max_chars - 3] + "..."
    return preview


def _str_or_none(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


@dataclass
class RunParams:
    run_id: str
    prompt: str = ""
    cwd: str | None = None
    credential: str | None = None
    base_url: str | None = None
    model: str | None = None
    permission_mode: str | None = None
    allow_dangerously_skip_permissions: bool = False
    sandbox_mode: str | None = None
    approval_policy: str | None = None
    resume_handle: str | None = None

    @classmethod
    def from_params(cls, run_id: str, params: dict) -> "RunParams":
        prompt = params.get("prompt")
        return cls(
            run_id=run_id,
            prompt=prompt if isinstance(prompt, str) else "",
            cwd=_str_or_none(params.get("cwd")),
            credential=_str_or_none(params.get("credential")),
            base_url=_str_or_none(params.get("baseUrl")),
            model=_str_or_none(params.get("model")),
            permission_mode=_str_or_none(params.get("permissionMode")),
            allow_dangerously_skip_permissions=params.get("allowDangerouslySkipPermissions") is True,
            sandbox_mode=_str_or_none(params.get("sandboxMode")),
            approval_policy=_str_or_none(params.get("approvalPolicy")),
            resume_handle=_str_or_none(params.get("resumeHandle")),
        )

    def redacted(self) -> str:
        """Log-safe summary: secrets only as presence flags."""
        return (
            f"run={self.run_id} cwd={self.cwd} model={self.model} "
            f"has_credential={self.credential is not None} has_base_url={self.base_url is not None} "
            f"resume={self.resume_handle is not None} prompt_chars={len(self.prompt)}"
        )


@dataclass
class RunResult:
    resume_handle: str | None = None
    usage: dict | None = None
    cost: float | None = None
    # Set when the backend finished its turn in failure without raising.
    error: str | None = None


class BackendAdapter(ABC):
    """Common capability interface of every backend.

    ``start()`` yields unified events in backend order until the turn is
    over; afterwards ``result`` carries the resume handle and usage. Expected
    failures are raised as ``BridgeError`` subclasses and turned into a
    terminal status by the worker.
    """

    name: str = ""

    def __init__(
        self,
        token: CancelToken,
        permissions: PermissionBroker,
        locator: BackendLocator,
        config: BridgeConfig,
    ) -> None:
        self.token = token
        self.permissions = permissions
        self.locator = locator
        self.config = config
        self.result = RunResult()
        self.proc: asyncio.subprocess.Process | None = None
        self._stderr_task: asyncio.Task | None = None
        self._stderr_tail: deque[str] = deque(maxlen=_STDERR_TAIL_LINES)
        self._resume_emitted = False

    @abstractmethod
    def start(self, params: RunParams) -> AsyncIterator[UnifiedEvent]:
        """Drive one turn and yield unified events."""

    def resolve_approval(self, request_id: str, decision: PermissionDecision) -> bool:
        return self.permissions.respond(request_id, decision)

    async def abort(self) -> None:
        """Backend-specific interrupt. The token already terminates the process."""

    async def close(self) -> None:
        """Release the process and background tasks. Safe to call twice."""
        if self._stderr_task and not self._stderr_task.done():
            self._stderr_task.cancel()
            try:
                await self._stderr_task
            except asyncio.CancelledError:
                pass
        proc = self.proc
        if proc is not None:
            if proc.returncode is None:
                proc.terminate()
                try:
                    await asyncio.wait_for(proc.wait(), timeout=5.0)
                except asyncio.TimeoutError:
                    proc.kill()
                    await proc.wait()
            self.token.detach_process(proc)
        self.proc = None

    def _emit_resume(self, run_id: str, handle: str | None) -> ResumeId | None:
        """One-shot guard: the first handle wins for the rest of the run."""
        if not handle or self._resume_emitted:
            return None
        self._resume_emitted = True
        self.result.resume_handle = handle
        return ResumeId(run_id=run_id, resume_handle=handle)

    def _child_env(self, set_vars: dict[str, str | None]) -> dict[str, str]:
        """Inherit the environment; set or remove the given keys."""
        env = dict(os.environ)
        for key, value in set_vars.items():
            if value:
                env[key] = value
            else:
                env.pop(key, None)
        return env

    async def _spawn(
        self, args: list[str], *, cwd: str | None, env: dict[str, str], stdin_pipe: bool, attach: bool = True,
    ) -> asyncio.subprocess.Process:
        log.info("[%s] spawning: %s", self.name, _spawn_preview(args))
        self.proc = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.PIPE if stdin_pipe else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env=env,
            limit=_STREAM_LIMIT,
        )
        if attach:
            self.token.attach_process(self.proc)
        self._stderr_task = asyncio.create_task(self._drain_stderr(self.proc))
        return self.proc

    async def _drain_stderr(self, proc: asyncio.subprocess.Process) -> None:
        """Read stderr in the background to prevent pipe buffer deadlock."""
        if proc.stderr is None:
            return
        try:
            async for raw_line in proc.stderr:
                line = raw_line.decode(errors="replace").rstrip()
                if line:
                    self._stderr_tail.append(line)
                    log.debug("[%s] stderr: %s", self.name, line)
        except (ValueError, OSError) as e:
            log.debug("[%s] stderr drain stopped: %s", self.name, e)

    def stderr_tail(self, lines: int = 8) -> str:
        return "\n".join(list(self._stderr_tail)[-lines:])
