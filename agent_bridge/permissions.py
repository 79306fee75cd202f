"""Human-in-the-loop approval for tool use.

One broker per worker. Both adapters call ``ask()``; it alone owns the
pending table and the deadline. Every entry is resolved exactly once: by
``respond()``, by its timeout, or by ``clear_run()`` / ``clear_all()``.
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from .events import PermissionRequest, UnifiedEvent, safe_preview

log = logging.getLogger("agent_bridge")

DEFAULT_PERMISSION_TIMEOUT = 300.0


@dataclass
class PermissionDecision:
    behavior: str = "deny"  # "allow" | "deny"
    updated_input: Any = None
    message: str | None = None
    interrupt: bool | None = None

    @property
    def allowed(self) -> bool:
        return self.behavior == "allow"

    @classmethod
    def deny(cls, message: str, interrupt: bool = True) -> "PermissionDecision":
        return cls(behavior="deny", message=message, interrupt=interrupt)

    @classmethod
    def from_params(cls, params: dict) -> "PermissionDecision":
        message = params.get("message")
        interrupt = params.get("interrupt")
        return cls(
            behavior="allow" if params.get("behavior") == "allow" else "deny",
            updated_input=params.get("updatedInput"),
            message=message if isinstance(message, str) and message else None,
            interrupt=interrupt if isinstance(interrupt, bool) else None,
        )

    def to_dict(self) -> dict:
        d: dict = {"behavior": self.behavior}
        if self.updated_input is not None:
            d["updatedInput"] = self.updated_input
        if self.message:
            d["message"] = self.message
        if self.interrupt is not None:
            d["interrupt"] = self.interrupt
        return d


@dataclass
class PendingPermission:
    request_id: str
    run_id: str
    tool_name: str
    created_at: float
    expires_at: float
    future: asyncio.Future = field(repr=False)


class PermissionBroker:
    def __init__(
        self,
        emit: Callable[[UnifiedEvent], None],
        timeout: float = DEFAULT_PERMISSION_TIMEOUT,
    ) -> None:
        self._emit = emit
        self.timeout = timeout
        self._pending: dict[str, PendingPermission] = {}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def pending_ids(self, run_id: str | None = None) -> list[str]:
        return [rid for rid, p in self._pending.items() if run_id is None or p.run_id == run_id]

    async def ask(
        self,
        run_id: str,
        tool_name: str,
        tool_input: Any,
        *,
        tool_use_id: str | None = None,
        decision_reason: str | None = None,
        timeout: float | None = None,
    ) -> PermissionDecision:
        """Post a ``permission.request`` and wait for the decision.

        Never raises for timeout: an unanswered request resolves to
        deny + interrupt.
        """
        deadline = self.timeout if timeout is None else timeout
        request_id = f"perm_{uuid.uuid4().hex}"
        now = time.time()
        entry = PendingPermission(
            request_id=request_id,
            run_id=run_id,
            tool_name=tool_name,
            created_at=now,
            expires_at=now + deadline,
            future=asyncio.get_running_loop().create_future(),
        )
        # Register before emitting so a fast respond() cannot miss the entry.
        self._pending[request_id] = entry
        log.info("[perm] request id=%s run=%s tool=%s", request_id, run_id, tool_name)
        self._emit(PermissionRequest(
            run_id=run_id,
            request_id=request_id,
            tool_name=tool_name,
            input_preview=safe_preview(tool_input),
            tool_use_id=tool_use_id,
            decision_reason=decision_reason,
            expires_at=int(entry.expires_at * 1000),
        ))
        try:
            return await asyncio.wait_for(asyncio.shield(entry.future), timeout=deadline)
        except asyncio.TimeoutError:
            log.warning("[perm] request id=%s timed out after %.0fs, denying", request_id, deadline)
            self._settle(request_id, PermissionDecision.deny("Permission request timed out"))
            return entry.future.result()
        finally:
            # Cancelled waiters still leave the table clean.
            self._settle(request_id, PermissionDecision.deny("Permission request cancelled"))

    def respond(self, request_id: str, decision: PermissionDecision) -> bool:
        ok = self._settle(request_id, decision)
        if ok:
            log.info("[perm] respond id=%s behavior=%s", request_id, decision.behavior)
        else:
            log.debug("[perm] respond for unknown id=%s", request_id)
        return ok

    def clear_run(self, run_id: str, reason: str) -> int:
        return self._clear([rid for rid, p in self._pending.items() if p.run_id == run_id], reason)

    def clear_all(self, reason: str) -> int:
        return self._clear(list(self._pending), reason)

    def _clear(self, request_ids: list[str], reason: str) -> int:
        cleared = 0
        for request_id in request_ids:
            if self._settle(request_id, PermissionDecision.deny(reason)):
                cleared += 1
        if cleared:
            log.info("[perm] cleared %d pending request(s): %s", cleared, reason)
        return cleared

    def _settle(self, request_id: str, decision: PermissionDecision) -> bool:
        entry = self._pending.pop(request_id, None)
        if entry is None:
            return False
        if not entry.future.done():
            entry.future.set_result(decision)
        return True
