"""Unified events emitted by the bridge for every backend.

Each event is tagged with the ``run_id`` it belongs to and serialized with
``event_to_dict`` into the camelCase payload carried by the
``notifications/event`` notification.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

_PREVIEW_CHARS = 500
_RESULT_CHARS = 20000


def safe_preview(value: Any, max_chars: int = _PREVIEW_CHARS) -> str:
    """Render ``value`` as a bounded string for previews and logs."""
    if isinstance(value, str):
        text = value
    else:
        try:
            text = json.dumps(value, ensure_ascii=False, default=str)
        except (TypeError, ValueError):
            return ""
    if not text:
        return ""
    if len(text) <= max_chars:
        return text
    return f"{text[:max_chars]}…(truncated)"


def result_text(value: Any) -> str:
    return value if isinstance(value, str) else safe_preview(value, _RESULT_CHARS)


@dataclass
class UnifiedEvent:
    """Base class for events sent to the host."""
    run_id: str


@dataclass
class Status(UnifiedEvent):
    status: str  # "running" | "done" | "error" | "aborted"
    message: str | None = None


@dataclass
class AssistantDelta(UnifiedEvent):
    message_id: str
    text_delta: str


@dataclass
class AssistantDone(UnifiedEvent):
    message_id: str


@dataclass
class ThinkingDelta(UnifiedEvent):
    message_id: str
    text_delta: str


@dataclass
class ToolStart(UnifiedEvent):
    tool_call_id: str
    tool_name: str
    tool_input: Any = field(default_factory=dict)

    @property
    def tool_input_preview(self) -> str:
        return safe_preview(self.tool_input)


@dataclass
class ToolProgress(UnifiedEvent):
    tool_call_id: str
    tool_name: str | None = None
    elapsed_seconds: float | None = None
    output: str | None = None


@dataclass
class ToolDone(UnifiedEvent):
    tool_call_id: str
    tool_result: str = ""


@dataclass
class ToolError(UnifiedEvent):
    tool_call_id: str
    tool_name: str | None = None
    message: str = "tool error"


@dataclass
class PermissionRequest(UnifiedEvent):
    request_id: str
    tool_name: str
    input_preview: str = ""
    tool_use_id: str | None = None
    decision_reason: str | None = None
    expires_at: int = 0  # epoch milliseconds


@dataclass
class ResumeId(UnifiedEvent):
    resume_handle: str


def event_to_dict(event: UnifiedEvent) -> dict:
    match event:
        case Status(run_id=rid, status=status, message=msg):
            d = {"runId": rid, "type": "status", "status": status}
            if msg:
                d["message"] = msg
            return d
        case AssistantDelta(run_id=rid, message_id=mid, text_delta=text):
            return {"runId": rid, "type": "assistant.delta", "messageId": mid, "textDelta": text}
        case AssistantDone(run_id=rid, message_id=mid):
            return {"runId": rid, "type": "assistant.done", "messageId": mid}
        case ThinkingDelta(run_id=rid, message_id=mid, text_delta=text):
            return {"runId": rid, "type": "thinking.delta", "messageId": mid, "textDelta": text}
        case ToolStart(run_id=rid, tool_call_id=tid, tool_name=name, tool_input=tinput):
            return {
                "runId": rid, "type": "tool.start", "toolCallId": tid, "toolName": name,
                "toolInput": tinput, "toolInputPreview": event.tool_input_preview,
            }
        case ToolProgress(run_id=rid, tool_call_id=tid, tool_name=name, elapsed_seconds=elapsed, output=output):
            d = {
                "runId": rid, "type": "tool.progress", "toolCallId": tid,
                "toolName": name, "elapsedSeconds": elapsed,
            }
            if output:
                d["output"] = output
            return d
        case ToolDone(run_id=rid, tool_call_id=tid, tool_result=res):
            return {"runId": rid, "type": "tool.done", "toolCallId": tid, "toolResult": res}
        case ToolError(run_id=rid, tool_call_id=tid, tool_name=name, message=msg):
            return {"runId": rid, "type": "tool.error", "toolCallId": tid, "toolName": name, "message": msg}
        case PermissionRequest(
            run_id=rid, request_id=req, tool_name=name, input_preview=preview,
            tool_use_id=tuid, decision_reason=reason, expires_at=expires,
        ):
            return {
                "runId": rid, "type": "permission.request", "requestId": req,
                "toolName": name, "toolUseId": tuid, "inputPreview": preview,
                "decisionReason": reason, "expiresAt": expires,
            }
        case ResumeId(run_id=rid, resume_handle=handle):
            return {"runId": rid, "type": "resume.id", "resumeHandle": handle}
        case _:
            return {"runId": event.run_id, "type": "unknown"}
