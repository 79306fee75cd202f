"""The bridge worker: JSON-RPC 2.0 over stdin/stdout, one run at a time.

Methods (host -> worker):
    initialize          {protocolVersion, backendsSupported?, externalDepsDir?}
    agent.run           {runId, backend, prompt, ...}   replied when the run ends
    agent.abort         {runId}                         notification
    permission.respond  {requestId, behavior, updatedInput?, message?, interrupt?}

Notifications (worker -> host):
    notifications/event {runId, type, ...}

Stdout carries protocol frames only; every diagnostic goes to stderr.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import sys
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from typing import Any

from . import __version__
from .adapters import ADAPTER_CLASSES, BackendAdapter, MockAdapter, RunParams
from .cancellation import CancelToken
from .config import PROTOCOL_VERSION, BridgeConfig
from .errors import (
    INVALID_PARAMS,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    SERVER_ERROR,
    BackendProcessError,
    BridgeError,
    ProtocolError,
    RunAborted,
)
from .events import Status, UnifiedEvent, event_to_dict
from .locator import BACKENDS, BackendLocator
from .permissions import PermissionBroker, PermissionDecision
from .rpc import FrameKind, classify, decode_line, encode_error, encode_notification, encode_result

log = logging.getLogger("agent_bridge")

EVENT_METHOD = "notifications/event"
_STDIN_LIMIT = 10 * 1024 * 1024


def _write_stdout(line: str) -> None:
    sys.stdout.write(line)
    sys.stdout.flush()


@dataclass
class Run:
    run_id: str
    backend: str
    request_id: Any
    token: CancelToken
    adapter: BackendAdapter
    task: asyncio.Task | None = field(default=None, repr=False)


class BridgeWorker:
    def __init__(
        self,
        config: BridgeConfig | None = None,
        write_line: Callable[[str], None] | None = None,
        locator: BackendLocator | None = None,
        adapter_factory: Callable[[str, CancelToken, PermissionBroker], BackendAdapter] | None = None,
    ) -> None:
        self.config = config or BridgeConfig.load()
        self._write_line = write_line or _write_stdout
        self.locator = locator or BackendLocator(self.config)
        self.permissions = PermissionBroker(self.emit, timeout=self.config.permission_timeout)
        self._adapter_factory = adapter_factory or self._default_adapter
        self.run: Run | None = None
        self._tasks: set[asyncio.Task] = set()
        self._stopping = asyncio.Event()

    # -- output ------------------------------------------------------------

    def _send(self, line: str) -> None:
        try:
            self._write_line(line)
        except (BrokenPipeError, OSError) as e:
            log.warning("[worker] failed to write to host: %s", e)

    def emit(self, event: UnifiedEvent) -> None:
        self._send(encode_notification(EVENT_METHOD, event_to_dict(event)))

    def _reply(self, req_id: Any, result: Any) -> None:
        self._send(encode_result(req_id, result))

    def _reply_error(self, req_id: Any, code: int, message: str, data: Any = None) -> None:
        self._send(encode_error(req_id, code, message, data))

    # -- input -------------------------------------------------------------

    def handle_line(self, raw: bytes | str) -> None:
        """Dispatch one line from the host. Never raises."""
        if not raw.strip():
            return
        obj = decode_line(raw)
        if obj is None:
            log.warning("[worker] unparsable line (%d bytes)", len(raw))
            self._reply_error(None, PARSE_ERROR, "Parse error")
            return
        req_id = obj.get("id") if isinstance(obj, dict) else None
        if not isinstance(obj, dict) or obj.get("jsonrpc") != "2.0":
            if req_id is not None:
                self._reply_error(req_id, INVALID_REQUEST, "Invalid Request: jsonrpc must be \"2.0\"")
            else:
                log.debug("[worker] dropping frame without jsonrpc header")
            return

        params = obj.get("params")
        if not isinstance(params, dict):
            params = {}
        kind = classify(obj)
        match kind:
            case FrameKind.REQUEST:
                self._dispatch_request(req_id, obj["method"], params)
            case FrameKind.NOTIFICATION:
                self._dispatch_notification(obj["method"], params)
            case FrameKind.RESPONSE:
                log.debug("[worker] ignoring response id=%s", req_id)
            case _:
                if req_id is not None:
                    self._reply_error(req_id, INVALID_REQUEST, "Invalid Request")

    def _dispatch_request(self, req_id: Any, method: str, params: dict) -> None:
        try:
            if method == "agent.run":
                self._start_run(req_id, params)
            elif method == "initialize":
                self._spawn_task(self._reply_when_done(req_id, self._initialize(params)))
            elif method == "permission.respond":
                self._reply(req_id, self._permission_respond(params))
            elif method == "agent.abort":
                self._reply(req_id, {"ok": self._abort(params)})
            else:
                raise ProtocolError(METHOD_NOT_FOUND, f"Method not found: {method}")
        except ProtocolError as e:
            self._reply_error(req_id, e.code, e.message, e.data)
        except Exception as e:
            log.exception("[worker] handler for %s failed", method)
            self._reply_error(req_id, SERVER_ERROR, str(e) or type(e).__name__)

    def _dispatch_notification(self, method: str, params: dict) -> None:
        if method == "agent.abort":
            self._abort(params)
        else:
            log.debug("[worker] ignoring notification %s", method)

    async def _reply_when_done(self, req_id: Any, coro: Coroutine[Any, Any, Any]) -> None:
        try:
            result = await coro
        except ProtocolError as e:
            self._reply_error(req_id, e.code, e.message, e.data)
        except Exception as e:
            log.exception("[worker] request id=%s failed", req_id)
            self._reply_error(req_id, SERVER_ERROR, str(e) or type(e).__name__)
        else:
            self._reply(req_id, result)

    def _spawn_task(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # -- methods -----------------------------------------------------------

    async def _initialize(self, params: dict) -> dict:
        version = params.get("protocolVersion")
        if version != PROTOCOL_VERSION:
            raise ProtocolError(
                INVALID_PARAMS,
                f"protocolVersion mismatch: expected {PROTOCOL_VERSION}, got {version}",
            )
        self.locator.set_external_dir(params.get("externalDepsDir"))
        log.info(
            "[worker] initialize backends=%s external_dir=%s",
            params.get("backendsSupported"), self.locator.external_dir,
        )
        providers = {}
        for backend in BACKENDS:
            providers[backend] = (await self.locator.provider_status(backend)).to_dict()
        return {"bridgeVersion": __version__, "protocolVersion": PROTOCOL_VERSION, "providers": providers}

    def _default_adapter(self, backend: str, token: CancelToken, permissions: PermissionBroker) -> BackendAdapter:
        cls = MockAdapter if self.config.mock else ADAPTER_CLASSES[backend]
        return cls(token, permissions, self.locator, self.config)

    def _start_run(self, req_id: Any, params: dict) -> None:
        run_id = params.get("runId")
        if not isinstance(run_id, str) or not run_id.strip():
            raise ProtocolError(INVALID_PARAMS, "runId must be a non-empty string")
        backend = params.get("backend")
        if backend not in BACKENDS:
            raise ProtocolError(INVALID_PARAMS, f"backend must be one of {', '.join(BACKENDS)}")
        if self.run is not None:
            raise ProtocolError(SERVER_ERROR, "A run is already active", {"currentRunId": self.run.run_id})

        token = CancelToken(run_id)
        run = Run(
            run_id=run_id,
            backend=backend,
            request_id=req_id,
            token=token,
            adapter=self._adapter_factory(backend, token, self.permissions),
        )
        self.run = run
        run_params = RunParams.from_params(run_id, params)
        log.info("[worker] agent.run backend=%s %s", backend, run_params.redacted())
        run.task = self._spawn_task(self._drive(run, run_params))

    def _abort(self, params: dict) -> bool:
        run_id = params.get("runId")
        run = self.run
        if run is None or run.run_id != run_id:
            log.debug("[worker] abort for inactive run=%s ignored", run_id)
            return False
        run.token.abort()
        self.permissions.clear_run(run.run_id, "Run aborted")
        return True

    def _permission_respond(self, params: dict) -> dict:
        request_id = params.get("requestId")
        if not isinstance(request_id, str) or not request_id:
            raise ProtocolError(INVALID_PARAMS, "requestId is required")
        decision = PermissionDecision.from_params(params)
        if self.run is not None:
            ok = self.run.adapter.resolve_approval(request_id, decision)
        else:
            ok = self.permissions.respond(request_id, decision)
        return {"ok": True} if ok else {"ok": False, "reason": "not_found"}

    # -- run lifecycle -----------------------------------------------------

    async def _consume(self, run: Run, params: RunParams) -> None:
        async with contextlib.aclosing(run.adapter.start(params)) as events:
            async for event in events:
                if run.token.aborted and isinstance(event, Status):
                    # _finish publishes the terminal status of an aborted run
                    log.debug("[worker] dropping %s status from aborted run %s", event.status, run.run_id)
                    continue
                self.emit(event)

    async def _drive(self, run: Run, params: RunParams) -> None:
        self.emit(Status(run_id=run.run_id, status="running"))
        consume = asyncio.create_task(self._consume(run, params))
        aborted = asyncio.create_task(run.token.wait())
        try:
            await asyncio.wait({consume, aborted}, return_when=asyncio.FIRST_COMPLETED)
            if not consume.done():
                # Let the backend wind down before cancelling it.
                await asyncio.wait({consume}, timeout=self.config.abort_grace)
        finally:
            aborted.cancel()
            if not consume.done():
                log.info("[worker] run=%s did not stop within %.1fs, cancelling", run.run_id, self.config.abort_grace)
                consume.cancel()
            await asyncio.gather(consume, aborted, return_exceptions=True)
            self._finish(run, consume)

    def _finish(self, run: Run, consume: asyncio.Task) -> None:
        """Single teardown path for every run outcome."""
        error = None if consume.cancelled() else consume.exception()
        self.permissions.clear_run(run.run_id, "Run finished")
        if self.run is run:
            self.run = None

        result = run.adapter.result
        if run.token.aborted or consume.cancelled() or isinstance(error, RunAborted):
            status, message = "aborted", None
            reply = {"success": False, "aborted": True, "error": "Run aborted"}
        elif error is not None:
            message = _describe(error)
            if isinstance(error, BridgeError):
                log.warning("[worker] run=%s failed: %s", run.run_id, message)
            else:
                log.error("[worker] run=%s crashed", run.run_id, exc_info=error)
            status = "error"
            reply = {"success": False, "aborted": False, "error": message}
        elif result.error:
            status, message = "error", result.error
            reply = {"success": False, "aborted": False, "error": result.error}
        else:
            status, message = "done", None
            reply = {
                "success": True,
                "resumeHandle": result.resume_handle,
                "usage": result.usage,
                "cost": result.cost,
            }
        log.info("[worker] run=%s finished status=%s", run.run_id, status)
        self.emit(Status(run_id=run.run_id, status=status, message=message))
        self._reply(run.request_id, reply)

    # -- stdio loop --------------------------------------------------------

    def request_stop(self) -> None:
        self._stopping.set()

    async def shutdown(self, reason: str = "Worker shutting down") -> None:
        run = self.run
        if run is not None:
            run.token.abort()
        self.permissions.clear_all(reason)
        if run is not None and run.task is not None:
            await asyncio.wait({run.task}, timeout=self.config.abort_grace + 1.0)
        pending = [t for t in self._tasks if not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _read_stdin(self, reader: asyncio.StreamReader) -> None:
        while True:
            try:
                line = await reader.readline()
            except ValueError as e:
                log.warning("[worker] dropping oversized line: %s", e)
                continue
            if not line:
                log.info("[worker] stdin closed")
                return
            self.handle_line(line)

    async def serve_stdio(self) -> None:
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader(limit=_STDIN_LIMIT)
        await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
            except (NotImplementedError, RuntimeError):
                pass
        log.info("[worker] ready pid=%d version=%s mock=%s", os.getpid(), __version__, self.config.mock)

        read_task = asyncio.create_task(self._read_stdin(reader))
        stop_task = asyncio.create_task(self._stopping.wait())
        try:
            await asyncio.wait({read_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (read_task, stop_task):
                task.cancel()
            await asyncio.gather(read_task, stop_task, return_exceptions=True)
            await self.shutdown()

    def _on_signal(self, sig: signal.Signals) -> None:
        log.info("[worker] received %s, stopping", signal.Signals(sig).name)
        self.request_stop()


def _describe(error: BaseException) -> str:
    message = str(error) or type(error).__name__
    if isinstance(error, BackendProcessError) and error.stderr_tail:
        message = f"{message}\n{error.stderr_tail}"
    return message
