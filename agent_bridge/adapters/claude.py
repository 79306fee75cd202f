"""Claude Code backend.

Two execution modes, chosen per run:

  CLI (no explicit credential): ``claude -p <prompt> --output-format
  stream-json --verbose --include-partial-messages``. The engine finds its
  own login under ``HOME`` / ``CLAUDE_CONFIG_DIR``.

  SDK (explicit credential): ``claude_agent_sdk.query()`` in-process, with a
  ``can_use_tool`` callback routed through the permission broker.

Both modes feed the same NDJSON shapes into ``ClaudeStreamNormalizer``:
    system       - init (session_id), compact_boundary
    stream_event - message_start / content_block_delta / message_stop
    assistant    - full content blocks (text, thinking, tool_use)
    user         - tool_result blocks
    tool_progress
    result       - success | error_max_turns | error_during_execution | ...
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from typing import Any, AsyncIterator

from ..errors import BackendProcessError, RunAborted
from ..events import (
    AssistantDelta,
    AssistantDone,
    ResumeId,
    Status,
    ThinkingDelta,
    ToolDone,
    ToolError,
    ToolProgress,
    ToolStart,
    UnifiedEvent,
    result_text,
)
from ..rpc import decode_line
from .base import BackendAdapter, RunParams

log = logging.getLogger("agent_bridge")

_PERMISSION_MODES = frozenset({"default", "acceptEdits", "plan", "dontAsk", "delegate"})
_BYPASS_MODE = "bypassPermissions"
_DEFAULT_MODEL = "claude-sonnet-4-20250514"


def normalize_permission_mode(mode: str | None, allow_dangerously_skip: bool) -> str:
    """Map a requested mode through the whitelist.

    ``bypassPermissions`` needs the explicit secondary flag; without it the
    mode quietly drops to ``default``.
    """
    if mode in _PERMISSION_MODES:
        return mode
    if mode == _BYPASS_MODE:
        return _BYPASS_MODE if allow_dangerously_skip else "default"
    return "default"


def _tool_result_content(raw: Any) -> str:
    if isinstance(raw, list):
        texts = [p.get("text", "") for p in raw if isinstance(p, dict) and p.get("type") == "text"]
        if texts:
            return "\n".join(texts)
    return result_text(raw if raw is not None else "")


class ClaudeStreamNormalizer:
    """Turns Claude stream-json objects into unified events, in order."""

    def __init__(self, run_id: str, on_session: Callable[[str | None], ResumeId | None]) -> None:
        self.run_id = run_id
        self._on_session = on_session
        self._current_message_id: str | None = None
        self._text_by_message: dict[str, str] = {}
        self._done_messages: set[str] = set()
        self._tool_names: dict[str, str] = {}
        self._open_tools: list[str] = []
        self._denied: dict[str, str] = {}
        self.saw_result = False
        self.error: str | None = None
        self.usage: dict | None = None
        self.cost: float | None = None

    def open_tool_id(self, tool_name: str) -> str | None:
        """Most recently started, unfinished tool call with this name."""
        for tool_id in reversed(self._open_tools):
            if self._tool_names.get(tool_id) == tool_name:
                return tool_id
        return None

    def mark_denied(self, tool_id: str, message: str) -> None:
        self._denied[tool_id] = message

    def feed(self, obj: dict) -> list[UnifiedEvent]:
        event_type = obj.get("type", "")
        if event_type == "stream_event":
            return self._stream_event(obj)
        if event_type == "system":
            if obj.get("subtype") == "init":
                resume = self._on_session(obj.get("session_id"))
                return [resume] if resume else []
            log.debug("[claude] system event subtype=%s", obj.get("subtype"))
            return []
        if event_type == "assistant":
            return self._assistant(obj)
        if event_type == "user":
            return self._user(obj)
        if event_type == "tool_progress":
            tool_id = obj.get("tool_use_id")
            if not isinstance(tool_id, str):
                return []
            elapsed = obj.get("elapsed_time_seconds")
            return [ToolProgress(
                run_id=self.run_id,
                tool_call_id=tool_id,
                tool_name=obj.get("tool_name") if isinstance(obj.get("tool_name"), str) else None,
                elapsed_seconds=elapsed if isinstance(elapsed, (int, float)) else None,
            )]
        if event_type == "result":
            return self._result(obj)
        log.debug("[claude] unhandled event type=%s keys=%s", event_type, sorted(obj.keys()))
        return []

    def _stream_event(self, obj: dict) -> list[UnifiedEvent]:
        ev = obj.get("event") or {}
        ev_type = ev.get("type")
        if ev_type == "message_start":
            msg_id = (ev.get("message") or {}).get("id")
            self._current_message_id = msg_id if isinstance(msg_id, str) else f"msg_{uuid.uuid4().hex}"
            return []
        if ev_type == "message_stop":
            self._current_message_id = None
            return []
        if ev_type != "content_block_delta":
            return []
        delta = ev.get("delta") or {}
        message_id = self._current_message_id or obj.get("uuid") or "assistant"
        if delta.get("type") == "text_delta":
            text = str(delta.get("text") or "")
            if not text:
                return []
            self._text_by_message[message_id] = self._text_by_message.get(message_id, "") + text
            return [AssistantDelta(run_id=self.run_id, message_id=message_id, text_delta=text)]
        if delta.get("type") == "thinking_delta":
            thinking = str(delta.get("thinking") or "")
            if thinking:
                return [ThinkingDelta(run_id=self.run_id, message_id=message_id, text_delta=thinking)]
        return []

    def _assistant(self, obj: dict) -> list[UnifiedEvent]:
        msg = obj.get("message") or {}
        content = msg.get("content")
        if not isinstance(content, list):
            return []
        message_id = msg.get("id") or self._current_message_id or obj.get("uuid") or f"msg_{uuid.uuid4().hex}"
        events: list[UnifiedEvent] = []

        for block in content:
            if not isinstance(block, dict) or block.get("type") != "tool_use":
                continue
            tool_id = block.get("id") if isinstance(block.get("id"), str) else str(uuid.uuid4())
            if tool_id in self._tool_names:
                continue
            tool_name = block.get("name") if isinstance(block.get("name"), str) else "tool"
            self._tool_names[tool_id] = tool_name
            self._open_tools.append(tool_id)
            events.append(ToolStart(
                run_id=self.run_id, tool_call_id=tool_id, tool_name=tool_name,
                tool_input=block.get("input") or {},
            ))

        full_text = "".join(
            str(b.get("text") or "") for b in content if isinstance(b, dict) and b.get("type") == "text"
        )
        if full_text and message_id not in self._text_by_message:
            # Nothing was streamed for this message: send the whole text once.
            self._text_by_message[message_id] = full_text
            events.append(AssistantDelta(run_id=self.run_id, message_id=message_id, text_delta=full_text))
        if message_id in self._text_by_message and message_id not in self._done_messages:
            self._done_messages.add(message_id)
            events.append(AssistantDone(run_id=self.run_id, message_id=message_id))
        return events

    def _user(self, obj: dict) -> list[UnifiedEvent]:
        msg = obj.get("message") or {}
        content = msg.get("content")
        results: list[tuple[str, str, bool]] = []
        if isinstance(content, list):
            for block in content:
                if isinstance(block, dict) and block.get("type") == "tool_result":
                    tool_id = block.get("tool_use_id")
                    if isinstance(tool_id, str):
                        results.append((tool_id, _tool_result_content(block.get("content")), bool(block.get("is_error"))))
        if not results and obj.get("tool_use_result") is not None:
            parent = obj.get("parent_tool_use_id")
            if isinstance(parent, str):
                results.append((parent, result_text(obj["tool_use_result"]), False))

        events: list[UnifiedEvent] = []
        for tool_id, text, is_error in results:
            events.extend(self._finish_tool(tool_id, text, is_error))
        return events

    def _finish_tool(self, tool_id: str, text: str, is_error: bool) -> list[UnifiedEvent]:
        if tool_id in self._open_tools:
            self._open_tools.remove(tool_id)
        elif tool_id in self._tool_names:
            return []  # already terminal
        denied = self._denied.pop(tool_id, None)
        if is_error or denied:
            return [ToolError(
                run_id=self.run_id, tool_call_id=tool_id,
                tool_name=self._tool_names.get(tool_id), message=denied or text or "tool error",
            )]
        return [ToolDone(run_id=self.run_id, tool_call_id=tool_id, tool_result=text)]

    def finish_open_tools(self, message: str) -> list[UnifiedEvent]:
        """Terminal ``tool.error`` for every call that never got a result."""
        events: list[UnifiedEvent] = []
        for tool_id in list(self._open_tools):
            events.extend(self._finish_tool(tool_id, message, True))
        return events

    def _result(self, obj: dict) -> list[UnifiedEvent]:
        self.saw_result = True
        events: list[UnifiedEvent] = []
        resume = self._on_session(obj.get("session_id"))
        if resume:
            events.append(resume)
        subtype = obj.get("subtype", "success")
        if subtype == "success" and not obj.get("is_error"):
            self.usage = obj.get("usage")
            cost = obj.get("total_cost_usd")
            self.cost = cost if isinstance(cost, (int, float)) else None
            log.info("[claude] turn complete session_id=%s", obj.get("session_id"))
            return events
        errors = obj.get("errors")
        message = ", ".join(str(e) for e in errors) if isinstance(errors, list) and errors else ""
        if not message and obj.get("is_error") and isinstance(obj.get("result"), str):
            message = obj["result"]
        self.error = message or f"Execution failed: {subtype}"
        log.warning("[claude] turn complete with error subtype=%s error=%s", subtype, self.error)
        events.append(Status(run_id=self.run_id, status="error", message=self.error))
        return events


def sdk_message_to_dict(message: Any) -> dict | None:
    """Convert a ``claude_agent_sdk`` message object to the stream-json shape."""
    if isinstance(message, dict):
        return message
    kind = type(message).__name__
    if kind == "StreamEvent":
        return {
            "type": "stream_event",
            "event": getattr(message, "event", None) or {},
            "uuid": getattr(message, "uuid", None),
            "session_id": getattr(message, "session_id", None),
        }
    if kind == "SystemMessage":
        data = getattr(message, "data", None) or {}
        return {**data, "type": "system", "subtype": getattr(message, "subtype", "")}
    if kind == "AssistantMessage":
        return {
            "type": "assistant",
            "message": {
                "id": getattr(message, "id", None),
                "content": [_sdk_block_to_dict(b) for b in getattr(message, "content", [])],
            },
        }
    if kind == "UserMessage":
        content = getattr(message, "content", None)
        if isinstance(content, list):
            content = [_sdk_block_to_dict(b) for b in content]
        return {
            "type": "user",
            "message": {"role": "user", "content": content},
            "parent_tool_use_id": getattr(message, "parent_tool_use_id", None),
            "tool_use_result": getattr(message, "tool_use_result", None),
        }
    if kind == "ResultMessage":
        return {
            "type": "result",
            "subtype": getattr(message, "subtype", "success"),
            "is_error": getattr(message, "is_error", False),
            "session_id": getattr(message, "session_id", None),
            "total_cost_usd": getattr(message, "total_cost_usd", None),
            "usage": getattr(message, "usage", None),
            "result": getattr(message, "result", None),
        }
    log.debug("[claude] unhandled sdk message type=%s", kind)
    return None


def _sdk_block_to_dict(block: Any) -> dict:
    if isinstance(block, dict):
        return block
    kind = type(block).__name__
    if kind == "TextBlock":
        return {"type": "text", "text": block.text}
    if kind == "ThinkingBlock":
        return {"type": "thinking", "thinking": block.thinking}
    if kind == "ToolUseBlock":
        return {"type": "tool_use", "id": block.id, "name": block.name, "input": block.input}
    if kind == "ToolResultBlock":
        return {
            "type": "tool_result",
            "tool_use_id": block.tool_use_id,
            "content": block.content,
            "is_error": bool(block.is_error),
        }
    return {"type": kind}


class ClaudeAdapter(BackendAdapter):
    name = "claude"

    _normalizer: ClaudeStreamNormalizer | None = None
    _run_id: str = ""
    _sdk: Any = None

    async def start(self, params: RunParams) -> AsyncIterator[UnifiedEvent]:
        self._run_id = params.run_id
        self._normalizer = ClaudeStreamNormalizer(
            params.run_id, lambda sid: self._emit_resume(params.run_id, sid),
        )
        log.info("[claude] run %s mode=%s", params.redacted(), "sdk" if params.credential else "cli")
        stream = self._run_sdk(params) if params.credential else self._run_cli(params)
        try:
            async for event in stream:
                yield event
        finally:
            await stream.aclose()
            await self.close()
        for event in self._normalizer.finish_open_tools("Tool call did not complete"):
            yield event
        self.result.usage = self._normalizer.usage
        self.result.cost = self._normalizer.cost
        self.result.error = self._normalizer.error

    def _permission_mode(self, params: RunParams) -> str:
        mode = normalize_permission_mode(params.permission_mode, params.allow_dangerously_skip_permissions)
        if params.permission_mode and mode != params.permission_mode:
            log.info("[claude] permission mode %s downgraded to %s", params.permission_mode, mode)
        return mode

    async def _run_cli(self, params: RunParams) -> AsyncIterator[UnifiedEvent]:
        assert self._normalizer is not None
        binary = self.locator.require_binary("claude")
        args = [
            binary.path,
            "-p", params.prompt,
            "--output-format", "stream-json",
            "--verbose",
            "--include-partial-messages",
            "--permission-mode", self._permission_mode(params),
        ]
        model = params.model or self.config.claude_default_model
        if model:
            args.extend(["--model", model])
        if params.resume_handle:
            args.extend(["--resume", params.resume_handle])
        # Implicit mode: no key in env so the CLI uses its own login.
        env = self._child_env({"ANTHROPIC_API_KEY": None, "ANTHROPIC_BASE_URL": params.base_url})
        proc = await self._spawn(args, cwd=params.cwd, env=env, stdin_pipe=False)
        assert proc.stdout is not None

        async for raw_line in proc.stdout:
            obj = decode_line(raw_line)
            if not isinstance(obj, dict):
                if raw_line.strip():
                    log.debug("[claude] dropped non-JSON line: %s", raw_line[:200].decode(errors="replace").rstrip())
                continue
            for event in self._normalizer.feed(obj):
                yield event

        returncode = await proc.wait()
        if self.token.aborted:
            raise RunAborted("Run aborted")
        if not self._normalizer.saw_result:
            raise BackendProcessError(
                f"claude exited with code {returncode} before result event",
                returncode=returncode,
                stderr_tail=self.stderr_tail(),
            )
        if returncode != 0:
            log.info("[claude] exit code %d after result, ignoring", returncode)

    async def _run_sdk(self, params: RunParams) -> AsyncIterator[UnifiedEvent]:
        assert self._normalizer is not None
        sdk = self.locator.load_claude_sdk()
        self._sdk = sdk

        env = {"ANTHROPIC_API_KEY": params.credential or ""}
        if params.base_url:
            env["ANTHROPIC_BASE_URL"] = params.base_url
        options_kwargs: dict[str, Any] = dict(
            model=params.model or self.config.claude_default_model or _DEFAULT_MODEL,
            cwd=params.cwd,
            max_turns=self.config.claude_max_turns,
            include_partial_messages=True,
            permission_mode=self._permission_mode(params),
            can_use_tool=self._can_use_tool,
            env=env,
            stderr=lambda line: log.debug("[claude] sdk stderr: %s", line.rstrip()),
        )
        if params.resume_handle:
            options_kwargs["resume"] = params.resume_handle
        cli = self.locator.find_binary("claude")
        if cli is not None and cli.source == "external":
            options_kwargs["cli_path"] = cli.path
        options = sdk.ClaudeAgentOptions(**options_kwargs)

        # can_use_tool needs streaming input; a plain string prompt closes stdin
        # before permission requests can be answered.
        async def _prompt_stream():
            yield {"type": "user", "message": {"role": "user", "content": params.prompt}}

        current = asyncio.current_task()
        if current is not None:
            self.token.add_callback(current.cancel)

        try:
            async for message in sdk.query(prompt=_prompt_stream(), options=options):
                obj = sdk_message_to_dict(message)
                if obj is None:
                    continue
                for event in self._normalizer.feed(obj):
                    yield event
        except asyncio.CancelledError:
            if self.token.aborted:
                raise RunAborted("Run aborted")
            raise
        except Exception as e:
            if self.token.aborted:
                raise RunAborted("Run aborted") from e
            raise BackendProcessError(f"claude sdk failed: {e}") from e

    async def _can_use_tool(self, tool_name: str, tool_input: dict, context: Any = None):
        sdk = self._sdk
        if self.token.aborted:
            return sdk.PermissionResultDeny(message="Run aborted", interrupt=True)
        tool_use_id = getattr(context, "tool_use_id", None)
        if not isinstance(tool_use_id, str) and self._normalizer is not None:
            tool_use_id = self._normalizer.open_tool_id(tool_name)
        reason = getattr(context, "decision_reason", None)
        decision = await self.permissions.ask(
            self._run_id,
            str(tool_name or ""),
            tool_input,
            tool_use_id=tool_use_id,
            decision_reason=reason if isinstance(reason, str) else None,
        )
        if decision.allowed:
            updated = decision.updated_input if decision.updated_input is not None else tool_input
            return sdk.PermissionResultAllow(updated_input=updated)
        message = decision.message or "User denied permission"
        if tool_use_id and self._normalizer is not None:
            self._normalizer.mark_denied(tool_use_id, message)
        return sdk.PermissionResultDeny(message=message, interrupt=bool(decision.interrupt))
