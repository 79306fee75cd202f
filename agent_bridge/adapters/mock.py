from __future__ import annotations

import logging
import time
import uuid
from typing import AsyncIterator

from ..events import AssistantDelta, AssistantDone, ToolDone, ToolError, ToolStart, UnifiedEvent
from .base import BackendAdapter, RunParams

log = logging.getLogger("agent_bridge")


class MockAdapter(BackendAdapter):
    """Scripted backend used when ``AGENT_BRIDGE_MOCK=1``.

    Plays one assistant message, asks for one permission, then finishes the
    tool call according to the decision. No external program is started.
    """

    name = "mock"

    async def start(self, params: RunParams) -> AsyncIterator[UnifiedEvent]:
        run_id = params.run_id
        stamp = int(time.time() * 1000)
        log.info("[mock] run %s", params.redacted())

        resume = self._emit_resume(run_id, params.resume_handle or f"mock_{stamp}")
        if resume:
            yield resume

        first = f"mock_assistant_{stamp}"
        yield AssistantDelta(run_id=run_id, message_id=first, text_delta="(MOCK) Requesting one permission, then running a tool.")
        yield AssistantDone(run_id=run_id, message_id=first)

        tool_call_id = f"mock_tool_{stamp}"
        tool_input = {"foo": "bar"}
        yield ToolStart(run_id=run_id, tool_call_id=tool_call_id, tool_name="mock_tool", tool_input=tool_input)

        decision = await self.permissions.ask(
            run_id, "mock_tool", tool_input, tool_use_id=tool_call_id, decision_reason="mock",
        )
        if not decision.allowed:
            message = decision.message or "User denied permission"
            yield ToolError(run_id=run_id, tool_call_id=tool_call_id, tool_name="mock_tool", message=message)
            self.result.error = message
            return

        yield ToolDone(run_id=run_id, tool_call_id=tool_call_id, tool_result="ok")
        second = str(uuid.uuid4())
        yield AssistantDelta(run_id=run_id, message_id=second, text_delta="(MOCK) Tool finished.")
        yield AssistantDone(run_id=run_id, message_id=second)
        self.result.usage = {"input_tokens": 1, "output_tokens": 1}
        self.result.cost = 0.0
