"""Codex backend over ``codex app-server``.

The app-server speaks line-delimited JSON-RPC without the ``jsonrpc`` header.
Its request ids and ours live in separate tables:

    _outgoing  our request id     -> Future (handshake, turn/interrupt)
    _incoming  server request id  -> Task answering an approval request

Notifications read for one turn:
    turn/started, turn/completed          {turn: {id, status, error}}
    error                                 {error: {message}, willRetry}
    item/started, item/completed          {item: {id, type, ...}}
    item/agentMessage/delta               {itemId, delta}
    item/reasoning/textDelta              {itemId, delta}
    item/commandExecution/outputDelta     {itemId, delta}
    thread/tokenUsage/updated             {tokenUsage}
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator

from .. import __version__
from ..errors import BackendProcessError, BridgeError, BridgeTimeoutError, RpcError, RunAborted, SERVER_ERROR
from ..events import (
    AssistantDelta,
    AssistantDone,
    Status,
    ThinkingDelta,
    ToolDone,
    ToolError,
    ToolProgress,
    ToolStart,
    UnifiedEvent,
    result_text,
)
from ..rpc import FrameKind, classify, decode_line, encode_notification, encode_request, encode_result
from .base import BackendAdapter, RunParams

log = logging.getLogger("agent_bridge")

SANDBOX_MODES = ("read-only", "workspace-write", "danger-full-access")
APPROVAL_POLICIES = ("untrusted", "on-failure", "on-request", "never")
DEFAULT_SANDBOX = "workspace-write"
DEFAULT_APPROVAL_POLICY = "on-request"

_INTERRUPT_TIMEOUT = 2.0
_EOF = object()
# Internal notification queued when an approval is declined.
_TOOL_DENIED = "bridge/toolDenied"

_COMMAND_APPROVAL = "item/commandExecution/requestApproval"
_FILE_APPROVAL = "item/fileChange/requestApproval"
_LEGACY_EXEC_APPROVAL = "execCommandApproval"
_LEGACY_PATCH_APPROVAL = "applyPatchApproval"


def _pick(value: str | None, allowed: tuple[str, ...], default: str, label: str) -> str:
    if value is None:
        return default
    if value in allowed:
        return value
    log.info("[codex] invalid %s %r, using %s", label, value, default)
    return default


def _tool_name(item: dict) -> str:
    item_type = item.get("type")
    if item_type == "commandExecution":
        return "Bash"
    if item_type == "fileChange":
        return "Edit"
    if item_type == "mcpToolCall":
        return f"mcp__{item.get('server') or 'unknown'}__{item.get('tool') or 'tool'}"
    return str(item_type or "tool")


def _tool_input(item: dict) -> dict:
    item_type = item.get("type")
    if item_type == "commandExecution":
        return {"command": item.get("command"), "cwd": item.get("cwd")}
    if item_type == "fileChange":
        changes = item.get("changes") or []
        return {"changes": [
            {"path": c.get("path"), "kind": c.get("kind")} for c in changes if isinstance(c, dict)
        ]}
    if item_type == "mcpToolCall":
        args = item.get("arguments")
        return args if isinstance(args, dict) else {"arguments": args}
    return {}


def _tool_output(item: dict) -> str:
    item_type = item.get("type")
    if item_type == "commandExecution":
        return result_text(item.get("aggregatedOutput") or "")
    if item_type == "fileChange":
        paths = [c.get("path") for c in item.get("changes") or [] if isinstance(c, dict)]
        return "\n".join(p for p in paths if p)
    if item_type == "mcpToolCall":
        error = item.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        result = item.get("result")
        if isinstance(result, dict) and isinstance(result.get("content"), list):
            texts = [c.get("text", "") for c in result["content"] if isinstance(c, dict) and c.get("type") == "text"]
            if texts:
                return "\n".join(texts)
        return result_text(result if result is not None else "")
    return ""


class CodexAdapter(BackendAdapter):
    name = "codex"

    _TOOL_ITEMS = frozenset({"commandExecution", "fileChange", "mcpToolCall"})

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._run_id = ""
        self._next_id = 0
        self._outgoing: dict[int, asyncio.Future] = {}
        self._incoming: dict[Any, asyncio.Task] = {}
        self._notifications: asyncio.Queue = asyncio.Queue()
        self._reader_task: asyncio.Task | None = None
        self._interrupt_task: asyncio.Task | None = None
        self._thread_id: str | None = None
        self._turn_id: str | None = None
        self._agent_text: dict[str, str] = {}
        self._done_messages: set[str] = set()
        self._tool_names: dict[str, str] = {}
        self._open_tools: list[str] = []

    @property
    def table_sizes(self) -> dict[str, int]:
        return {"outgoing": len(self._outgoing), "incoming": len(self._incoming)}

    # -- run ---------------------------------------------------------------

    async def start(self, params: RunParams) -> AsyncIterator[UnifiedEvent]:
        self._run_id = params.run_id
        binary = self.locator.require_binary("codex")
        log.info("[codex] run %s", params.redacted())
        if params.credential:
            env = self._child_env({"OPENAI_API_KEY": params.credential, "OPENAI_BASE_URL": params.base_url})
        else:
            env = self._child_env({"OPENAI_API_KEY": None, "OPENAI_BASE_URL": None})

        try:
            proc = await self._spawn([binary.path, "app-server"], cwd=params.cwd, env=env, stdin_pipe=True, attach=False)
            self._reader_task = asyncio.create_task(self._read_loop(proc))
            self.token.add_callback(self._on_abort)

            thread_id = await self._handshake(params)
            resume = self._emit_resume(params.run_id, thread_id)
            if resume:
                yield resume
            turn = await self._request("turn/start", {
                "threadId": thread_id,
                "input": [{"type": "text", "text": params.prompt}],
            })
            turn_id = ((turn or {}).get("turn") or {}).get("id")
            if isinstance(turn_id, str):
                self._turn_id = turn_id

            async for event in self._drain_turn():
                yield event
            for event in self._finish_open_tools("Tool call did not complete"):
                yield event
            if self.token.aborted:
                raise RunAborted("Run aborted")
        except BridgeError as e:
            if self.token.aborted and not isinstance(e, RunAborted):
                raise RunAborted("Run aborted") from e
            raise
        finally:
            await self.close()

    async def _handshake(self, params: RunParams) -> str:
        await self._request("initialize", {
            "clientInfo": {"name": "agent_bridge", "title": "Agent Bridge", "version": __version__},
        })
        await self._write(encode_notification("initialized", header=False))

        thread_params: dict[str, Any] = {
            "cwd": params.cwd,
            "model": params.model,
            "approvalPolicy": _pick(params.approval_policy, APPROVAL_POLICIES, DEFAULT_APPROVAL_POLICY, "approvalPolicy"),
            "sandbox": _pick(params.sandbox_mode, SANDBOX_MODES, DEFAULT_SANDBOX, "sandboxMode"),
        }
        thread_params = {k: v for k, v in thread_params.items() if v is not None}
        if params.resume_handle:
            result = await self._request("thread/resume", {"threadId": params.resume_handle, **thread_params})
        else:
            result = await self._request("thread/start", thread_params)
        thread_id = ((result or {}).get("thread") or {}).get("id")
        if not isinstance(thread_id, str) or not thread_id:
            raise BackendProcessError("codex app-server did not return a thread id", stderr_tail=self.stderr_tail())
        self._thread_id = thread_id
        log.info("[codex] thread ready id=%s resumed=%s", thread_id, bool(params.resume_handle))
        return thread_id

    async def _drain_turn(self) -> AsyncIterator[UnifiedEvent]:
        while True:
            msg = await self._notifications.get()
            if msg is _EOF:
                if self.token.aborted:
                    raise RunAborted("Run aborted")
                returncode = self.proc.returncode if self.proc else None
                if self.proc is not None and returncode is None:
                    try:
                        returncode = await asyncio.wait_for(self.proc.wait(), timeout=1.0)
                    except asyncio.TimeoutError:
                        pass
                raise BackendProcessError(
                    f"codex app-server exited with code {returncode} before the turn completed",
                    returncode=returncode,
                    stderr_tail=self.stderr_tail(),
                )
            method = msg.get("method")
            params = msg.get("params") or {}
            if method == "turn/completed":
                turn = params.get("turn") or {}
                status = turn.get("status")
                log.info("[codex] turn completed status=%s", status)
                if status == "failed":
                    error = (turn.get("error") or {}).get("message") or "Codex turn failed"
                    self.result.error = error
                    yield Status(run_id=self._run_id, status="error", message=error)
                return
            if method == "error":
                message = (params.get("error") or {}).get("message") or "Codex error"
                if params.get("willRetry"):
                    log.info("[codex] retrying after error: %s", message)
                    continue
                log.warning("[codex] turn error: %s", message)
                self.result.error = message
                yield Status(run_id=self._run_id, status="error", message=message)
                return
            for event in self._normalize(method, params):
                yield event

    # -- normalization -----------------------------------------------------

    def _normalize(self, method: str | None, params: dict) -> list[UnifiedEvent]:
        run_id = self._run_id
        if method == "item/agentMessage/delta":
            item_id, delta = params.get("itemId"), params.get("delta")
            if not isinstance(item_id, str) or not delta:
                return []
            self._agent_text[item_id] = self._agent_text.get(item_id, "") + delta
            return [AssistantDelta(run_id=run_id, message_id=item_id, text_delta=delta)]
        if method in ("item/reasoning/textDelta", "item/reasoning/summaryTextDelta"):
            item_id, delta = params.get("itemId"), params.get("delta")
            if isinstance(item_id, str) and delta:
                return [ThinkingDelta(run_id=run_id, message_id=item_id, text_delta=delta)]
            return []
        if method == "item/commandExecution/outputDelta":
            item_id = params.get("itemId")
            if not isinstance(item_id, str):
                return []
            return [ToolProgress(run_id=run_id, tool_call_id=item_id, tool_name="Bash", output=params.get("delta"))]
        if method == "item/started":
            item = params.get("item") or {}
            if item.get("type") in self._TOOL_ITEMS:
                return self._start_tool(item)
            return []
        if method == "item/completed":
            return self._item_completed(params.get("item") or {})
        if method == _TOOL_DENIED:
            return self._end_tool(params["itemId"], params.get("toolName"), params["message"], failed=True)
        if method == "turn/started":
            turn_id = (params.get("turn") or {}).get("id")
            if isinstance(turn_id, str):
                self._turn_id = turn_id
            return []
        if method == "thread/tokenUsage/updated":
            usage = params.get("tokenUsage", params)
            if isinstance(usage, dict):
                self.result.usage = usage
            return []
        log.debug("[codex] unhandled notification %s", method)
        return []

    def _start_tool(self, item: dict) -> list[UnifiedEvent]:
        item_id = item.get("id")
        if not isinstance(item_id, str) or item_id in self._tool_names:
            return []
        tool_name = _tool_name(item)
        self._tool_names[item_id] = tool_name
        self._open_tools.append(item_id)
        return [ToolStart(run_id=self._run_id, tool_call_id=item_id, tool_name=tool_name, tool_input=_tool_input(item))]

    def _end_tool(self, item_id: str, tool_name: str | None, text: str, *, failed: bool) -> list[UnifiedEvent]:
        if item_id in self._open_tools:
            self._open_tools.remove(item_id)
        elif item_id in self._tool_names:
            return []
        else:
            # Never started (legacy approval ids); still report the outcome once.
            self._tool_names[item_id] = tool_name or "tool"
        if failed:
            return [ToolError(
                run_id=self._run_id, tool_call_id=item_id,
                tool_name=self._tool_names.get(item_id), message=text or "tool error",
            )]
        return [ToolDone(run_id=self._run_id, tool_call_id=item_id, tool_result=text)]

    def _item_completed(self, item: dict) -> list[UnifiedEvent]:
        item_id = item.get("id")
        if not isinstance(item_id, str):
            return []
        item_type = item.get("type")
        if item_type == "agentMessage":
            events: list[UnifiedEvent] = []
            text = item.get("text") or ""
            seen = self._agent_text.get(item_id, "")
            if text.startswith(seen):
                suffix = text[len(seen):]
                if suffix:
                    self._agent_text[item_id] = text
                    events.append(AssistantDelta(run_id=self._run_id, message_id=item_id, text_delta=suffix))
            else:
                log.debug("[codex] final text of %s diverges from streamed deltas", item_id)
            if self._agent_text.get(item_id) and item_id not in self._done_messages:
                self._done_messages.add(item_id)
                events.append(AssistantDone(run_id=self._run_id, message_id=item_id))
            return events
        if item_type in self._TOOL_ITEMS:
            events = self._start_tool(item)
            failed = item.get("status") in ("failed", "declined")
            if item_type == "commandExecution" and isinstance(item.get("exitCode"), int) and item["exitCode"] != 0:
                failed = True
            output = _tool_output(item)
            if failed and not output:
                output = f"{_tool_name(item)} {item.get('status') or 'failed'}"
            return events + self._end_tool(item_id, None, output, failed=failed)
        return []

    def _finish_open_tools(self, message: str) -> list[UnifiedEvent]:
        events: list[UnifiedEvent] = []
        for item_id in list(self._open_tools):
            events.extend(self._end_tool(item_id, None, message, failed=True))
        return events

    # -- inner JSON-RPC link -----------------------------------------------

    async def _write(self, line: str) -> None:
        proc = self.proc
        if proc is None or proc.stdin is None:
            raise BackendProcessError("codex app-server is not running")
        try:
            proc.stdin.write(line.encode())
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise BackendProcessError(f"codex app-server stdin closed: {e}") from e

    async def _request(self, method: str, params: Any = None, timeout: float | None = None) -> Any:
        timeout = self.config.codex_request_timeout if timeout is None else timeout
        self._next_id += 1
        req_id = self._next_id
        future = asyncio.get_running_loop().create_future()
        self._outgoing[req_id] = future
        try:
            await self._write(encode_request(req_id, method, params, header=False))
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            raise BridgeTimeoutError(f"codex {method} timed out after {timeout:.0f}s") from None
        finally:
            self._outgoing.pop(req_id, None)

    async def _read_loop(self, proc: asyncio.subprocess.Process) -> None:
        assert proc.stdout is not None
        try:
            async for raw_line in proc.stdout:
                obj = decode_line(raw_line)
                kind = classify(obj)
                if kind is FrameKind.RESPONSE:
                    self._settle_response(obj)
                elif kind is FrameKind.REQUEST:
                    req_id = obj["id"]
                    task = asyncio.create_task(self._answer_server_request(req_id, obj["method"], obj.get("params") or {}))
                    self._incoming[req_id] = task
                    task.add_done_callback(lambda t, rid=req_id: self._incoming.pop(rid, None))
                elif kind is FrameKind.NOTIFICATION:
                    self._notifications.put_nowait(obj)
                elif raw_line.strip():
                    log.debug("[codex] dropped line: %s", raw_line[:200].decode(errors="replace").rstrip())
        except (ValueError, OSError) as e:
            log.warning("[codex] reader stopped: %s", e)
        finally:
            for future in self._outgoing.values():
                if not future.done():
                    future.set_exception(BackendProcessError("codex app-server closed its output"))
            self._notifications.put_nowait(_EOF)

    def _settle_response(self, obj: dict) -> None:
        future = self._outgoing.pop(obj["id"], None)
        if future is None or future.done():
            log.debug("[codex] dropping response for unknown id=%s", obj["id"])
            return
        if obj.get("error") is not None:
            err = obj["error"] if isinstance(obj["error"], dict) else {}
            future.set_exception(RpcError(err.get("code", SERVER_ERROR), err.get("message") or "codex error", err.get("data")))
        else:
            future.set_result(obj.get("result"))

    async def _answer_server_request(self, req_id: Any, method: str, params: dict) -> None:
        legacy = method in (_LEGACY_EXEC_APPROVAL, _LEGACY_PATCH_APPROVAL)
        result: dict = {}
        try:
            if method in (_COMMAND_APPROVAL, _FILE_APPROVAL) or legacy:
                allowed = await self._ask_approval(method, params)
                if legacy:
                    result = {"decision": "approved" if allowed else "denied"}
                else:
                    result = {"decision": "accept" if allowed else "decline"}
            else:
                log.info("[codex] answering unsupported server request %s with {}", method)
        except BridgeError as e:
            log.warning("[codex] approval for %s failed: %s", method, e)
            if legacy:
                result = {"decision": "denied"}
            elif method in (_COMMAND_APPROVAL, _FILE_APPROVAL):
                result = {"decision": "decline"}
        try:
            await self._write(encode_result(req_id, result, header=False))
        except BackendProcessError as e:
            log.debug("[codex] could not answer %s: %s", method, e)

    async def _ask_approval(self, method: str, params: dict) -> bool:
        if method == _LEGACY_EXEC_APPROVAL:
            item_id = params.get("callId")
            command = params.get("command")
            tool_name = "Bash"
            tool_input = {
                "command": " ".join(command) if isinstance(command, list) else command,
                "cwd": params.get("cwd"),
            }
        elif method == _LEGACY_PATCH_APPROVAL:
            item_id = params.get("callId")
            tool_name = "Edit"
            changes = params.get("fileChanges")
            tool_input = {"paths": sorted(changes) if isinstance(changes, dict) else []}
        else:
            item_id = params.get("itemId")
            tool_name = self._tool_names.get(item_id) or ("Bash" if method == _COMMAND_APPROVAL else "Edit")
            tool_input = {k: params[k] for k in ("command", "cwd", "grantRoot") if params.get(k) is not None}
        if not isinstance(item_id, str):
            item_id = None
        reason = params.get("reason")

        decision = await self.permissions.ask(
            self._run_id,
            tool_name,
            tool_input,
            tool_use_id=item_id,
            decision_reason=reason if isinstance(reason, str) else None,
        )
        if decision.allowed:
            return True
        if item_id:
            self._notifications.put_nowait({
                "method": _TOOL_DENIED,
                "params": {
                    "itemId": item_id,
                    "toolName": tool_name,
                    "message": decision.message or "User denied permission",
                },
            })
        return False

    # -- abort / teardown --------------------------------------------------

    def _on_abort(self) -> None:
        self._interrupt_task = asyncio.create_task(self._interrupt_and_terminate())

    async def _interrupt_and_terminate(self) -> None:
        try:
            await self.abort()
        finally:
            proc = self.proc
            if proc is not None and proc.returncode is None:
                try:
                    proc.terminate()
                except ProcessLookupError:
                    pass

    async def abort(self) -> None:
        """Send ``turn/interrupt`` for the active turn."""
        if not (self._thread_id and self._turn_id and self.proc and self.proc.returncode is None):
            return
        try:
            await self._request(
                "turn/interrupt",
                {"threadId": self._thread_id, "turnId": self._turn_id},
                timeout=_INTERRUPT_TIMEOUT,
            )
            log.info("[codex] interrupted turn %s", self._turn_id)
        except BridgeError as e:
            log.debug("[codex] turn/interrupt failed: %s", e)

    async def close(self) -> None:
        incoming = list(self._incoming.values())
        for task in incoming:
            task.cancel()
        if incoming:
            await asyncio.gather(*incoming, return_exceptions=True)
        self._incoming.clear()
        for future in self._outgoing.values():
            if not future.done():
                future.cancel()
        self._outgoing.clear()
        if self._interrupt_task is not None and not self._interrupt_task.done():
            self._interrupt_task.cancel()
            await asyncio.gather(self._interrupt_task, return_exceptions=True)
        await super().close()
        if self._reader_task is not None and not self._reader_task.done():
            self._reader_task.cancel()
            await asyncio.gather(self._reader_task, return_exceptions=True)
