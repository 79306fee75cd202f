"""Host-side client for the bridge worker.

Spawns ``python -m agent_bridge worker`` on first use, correlates JSON-RPC
replies by id and fans ``notifications/event`` out to subscribers. When the
worker dies every outstanding request fails with ``BridgeExitedError`` and
the next call starts a fresh worker.
"""
from __future__ import annotations

import asyncio
import logging
import os
import sys
from collections.abc import Callable
from typing import Any

from .config import PROTOCOL_VERSION
from .errors import SERVER_ERROR, BridgeExitedError, BridgeTimeoutError, RpcError
from .locator import BACKENDS
from .rpc import FrameKind, classify, decode_line, encode_notification, encode_request

log = logging.getLogger("agent_bridge")

DEFAULT_TIMEOUT = 60.0
INITIALIZE_TIMEOUT = 30.0
RUN_TIMEOUT = 3600.0
PERMISSION_RESPOND_TIMEOUT = 30.0

EVENT_METHOD = "notifications/event"
_ENV_PASSTHROUGH = ("HOME", "CLAUDE_CONFIG_DIR", "CODEX_HOME", "PATH")
_STREAM_LIMIT = 10 * 1024 * 1024
_UNSET = object()

EventHandler = Callable[[dict], None]


class BridgeClient:
    def __init__(self, command: list[str] | None = None, env: dict[str, str] | None = None) -> None:
        self.command = command or [sys.executable, "-m", "agent_bridge", "worker"]
        self._extra_env = dict(env or {})
        self.proc: asyncio.subprocess.Process | None = None
        self._next_id = 0
        self._pending: dict[int, asyncio.Future] = {}
        self._handlers: list[EventHandler] = []
        self._reader_task: asyncio.Task | None = None
        self._stderr_task: asyncio.Task | None = None
        self._exit_task: asyncio.Task | None = None
        self._start_lock = asyncio.Lock()
        self._init_result: dict | None = None
        self._init_dir: Any = _UNSET

    @property
    def running(self) -> bool:
        return self.proc is not None and self.proc.returncode is None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def _child_env(self) -> dict[str, str]:
        env = dict(os.environ)
        env.update(self._extra_env)
        carried = [k for k in _ENV_PASSTHROUGH if env.get(k)]
        log.debug("[host] worker env carries %s", ",".join(carried))
        return env

    async def _ensure_started(self) -> asyncio.subprocess.Process:
        async with self._start_lock:
            if self.proc is not None and self.proc.returncode is None:
                return self.proc
            proc = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._child_env(),
                limit=_STREAM_LIMIT,
            )
            log.info("[host] started worker pid=%s", proc.pid)
            self.proc = proc
            self._reader_task = asyncio.create_task(self._read_loop(proc))
            self._stderr_task = asyncio.create_task(self._drain_stderr(proc))
            self._exit_task = asyncio.create_task(self._watch_exit(proc, self._reader_task))
            return proc

    # -- link --------------------------------------------------------------

    async def _write(self, proc: asyncio.subprocess.Process, line: str) -> None:
        assert proc.stdin is not None
        try:
            proc.stdin.write(line.encode())
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise BridgeExitedError(proc.returncode) from e

    async def request(self, method: str, params: Any = None, timeout: float = DEFAULT_TIMEOUT) -> Any:
        proc = await self._ensure_started()
        self._next_id += 1
        req_id = self._next_id
        future = asyncio.get_running_loop().create_future()
        self._pending[req_id] = future
        try:
            await self._write(proc, encode_request(req_id, method, params))
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            raise BridgeTimeoutError(f"{method} timed out after {timeout:.0f}s") from None
        finally:
            self._pending.pop(req_id, None)

    async def notify(self, method: str, params: Any = None) -> None:
        proc = self.proc
        if proc is None or proc.returncode is not None:
            log.debug("[host] worker not running, dropping %s", method)
            return
        try:
            await self._write(proc, encode_notification(method, params))
        except BridgeExitedError:
            log.debug("[host] worker gone while sending %s", method)

    def on_event(self, handler: EventHandler) -> Callable[[], None]:
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    def _dispatch_event(self, params: dict) -> None:
        for handler in list(self._handlers):
            try:
                handler(params)
            except Exception:
                log.exception("[host] event handler failed")

    async def _read_loop(self, proc: asyncio.subprocess.Process) -> None:
        assert proc.stdout is not None
        try:
            async for raw_line in proc.stdout:
                obj = decode_line(raw_line)
                kind = classify(obj)
                if kind is FrameKind.RESPONSE:
                    future = self._pending.get(obj["id"])
                    if future is None or future.done():
                        log.debug("[host] dropping response for unknown id=%s", obj["id"])
                        continue
                    if obj.get("error") is not None:
                        err = obj["error"] if isinstance(obj["error"], dict) else {}
                        future.set_exception(RpcError(err.get("code", SERVER_ERROR), err.get("message") or "bridge error", err.get("data")))
                    else:
                        future.set_result(obj.get("result"))
                elif kind is FrameKind.NOTIFICATION and obj["method"] == EVENT_METHOD:
                    params = obj.get("params")
                    if isinstance(params, dict):
                        self._dispatch_event(params)
                elif obj is None and raw_line.strip():
                    log.warning("[host] unparsable line from worker: %s", raw_line[:200].decode(errors="replace").rstrip())
                else:
                    log.debug("[host] ignoring frame kind=%s", kind.value)
        except (ValueError, OSError) as e:
            log.warning("[host] reader stopped: %s", e)

    async def _drain_stderr(self, proc: asyncio.subprocess.Process) -> None:
        if proc.stderr is None:
            return
        try:
            async for raw_line in proc.stderr:
                line = raw_line.decode(errors="replace").rstrip()
                if line:
                    log.info("[host] worker: %s", line)
        except (ValueError, OSError) as e:
            log.debug("[host] stderr drain stopped: %s", e)

    async def _watch_exit(self, proc: asyncio.subprocess.Process, reader: asyncio.Task) -> None:
        returncode = await proc.wait()
        # Deliver replies still buffered in the pipe before failing the rest.
        await asyncio.wait({reader}, timeout=1.0)
        log.warning("[host] worker exited code=%s", returncode)
        self._fail_pending(BridgeExitedError(returncode))
        if self.proc is proc:
            self.proc = None
            self._init_result = None
            self._init_dir = _UNSET

    def _fail_pending(self, error: Exception) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(error)

    # -- conveniences ------------------------------------------------------

    async def initialize(self, external_deps_dir: str | None = None) -> dict:
        normalized = external_deps_dir.strip() if isinstance(external_deps_dir, str) and external_deps_dir.strip() else None
        if self._init_result is not None and self._init_dir == normalized and self.running:
            return self._init_result
        result = await self.request("initialize", {
            "protocolVersion": PROTOCOL_VERSION,
            "backendsSupported": list(BACKENDS),
            "externalDepsDir": normalized,
        }, timeout=INITIALIZE_TIMEOUT)
        self._init_result = result
        self._init_dir = normalized
        return result

    async def run(self, params: dict, timeout: float = RUN_TIMEOUT) -> dict:
        if self._init_result is None or not self.running:
            await self.initialize(None if self._init_dir is _UNSET else self._init_dir)
        return await self.request("agent.run", params, timeout=timeout)

    async def abort(self, run_id: str) -> None:
        await self.notify("agent.abort", {"runId": run_id})

    async def respond_permission(self, params: dict) -> dict:
        return await self.request("permission.respond", params, timeout=PERMISSION_RESPOND_TIMEOUT)

    async def stop(self) -> None:
        proc = self.proc
        self.proc = None
        self._init_result = None
        self._init_dir = _UNSET
        if proc is not None and proc.returncode is None:
            proc.terminate()
            try:
                await asyncio.wait_for(proc.wait(), timeout=5.0)
            except asyncio.TimeoutError:
                proc.kill()
                await proc.wait()
        for task in (self._exit_task, self._reader_task, self._stderr_task):
            if task is not None and not task.done():
                task.cancel()
        await asyncio.gather(
            *(t for t in (self._exit_task, self._reader_task, self._stderr_task) if t is not None),
            return_exceptions=True,
        )
        self._fail_pending(BridgeExitedError(proc.returncode if proc else None))
        log.info("[host] worker stopped")
