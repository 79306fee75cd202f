"""Line-delimited JSON-RPC helpers shared by the outer and inner links.

The outer link (host <-> worker) is strict JSON-RPC 2.0. The Codex app-server
link omits the ``"jsonrpc":"2.0"`` header, so encoders take ``header=False``
for it and ``classify`` never requires the header.

  Requests:      {"method": str, "id": int|str, "params": obj}
  Responses:     {"id": int|str, "result": obj} or {"id": ..., "error": {...}}
  Notifications: {"method": str, "params": obj}  (no "id")
"""
from __future__ import annotations

import json
from enum import Enum
from typing import Any


class FrameKind(Enum):
    RESPONSE = "response"
    REQUEST = "request"
    NOTIFICATION = "notification"
    INVALID = "invalid"


def _frame(body: dict, header: bool) -> str:
    if header:
        body = {"jsonrpc": "2.0", **body}
    return json.dumps(body, ensure_ascii=False, default=str) + "\n"


def encode_request(id: int | str, method: str, params: Any = None, *, header: bool = True) -> str:
    body: dict = {"id": id, "method": method}
    if params is not None:
        body["params"] = params
    return _frame(body, header)


def encode_notification(method: str, params: Any = None, *, header: bool = True) -> str:
    body: dict = {"method": method}
    if params is not None:
        body["params"] = params
    return _frame(body, header)


def encode_result(id: int | str | None, result: Any, *, header: bool = True) -> str:
    return _frame({"id": id, "result": result}, header)


def encode_error(
    id: int | str | None, code: int, message: str, data: Any = None, *, header: bool = True,
) -> str:
    err: dict = {"code": code, "message": message}
    if data is not None:
        err["data"] = data
    return _frame({"id": id, "error": err}, header)


def classify(obj: Any) -> FrameKind:
    """Classify a decoded frame by the keys it carries."""
    if not isinstance(obj, dict):
        return FrameKind.INVALID
    has_id = obj.get("id") is not None
    method = obj.get("method")
    if has_id and ("result" in obj or "error" in obj):
        return FrameKind.RESPONSE
    if isinstance(method, str) and method:
        return FrameKind.REQUEST if has_id else FrameKind.NOTIFICATION
    return FrameKind.INVALID


def decode_line(raw: bytes | str) -> Any | None:
    """Parse one line. Returns None for blank or unparsable input."""
    line = raw.decode(errors="replace") if isinstance(raw, bytes) else raw
    line = line.strip()
    if not line:
        return None
    try:
        return json.loads(line)
    except (json.JSONDecodeError, ValueError):
        return None
