import asyncio
import time

import pytest

from agent_bridge.events import PermissionRequest
from agent_bridge.permissions import PermissionBroker, PermissionDecision


@pytest.mark.asyncio
async def test_respond_resolves_pending_request_exactly_once() -> None:
    emitted: list = []
    broker = PermissionBroker(emitted.append)

    task = asyncio.create_task(broker.ask("r1", "Bash", {"command": "ls"}, tool_use_id="t1"))
    await asyncio.sleep(0)
    request = emitted[0]
    assert isinstance(request, PermissionRequest)
    assert request.request_id.startswith("perm_")
    assert request.tool_use_id == "t1"
    assert request.expires_at > int(time.time() * 1000)
    assert broker.pending_ids("r1") == [request.request_id]

    assert broker.respond(request.request_id, PermissionDecision(behavior="allow", updated_input={"command": "ls -la"}))
    assert not broker.respond(request.request_id, PermissionDecision.deny("late"))

    decision = await task
    assert decision.allowed
    assert decision.updated_input == {"command": "ls -la"}
    assert broker.pending_count == 0


@pytest.mark.asyncio
async def test_timeout_denies_with_interrupt() -> None:
    broker = PermissionBroker(lambda ev: None, timeout=0.05)
    decision = await broker.ask("r1", "Write", {"path": "a.txt"})
    assert decision.behavior == "deny"
    assert decision.interrupt is True
    assert decision.message == "Permission request timed out"
    assert broker.pending_count == 0


@pytest.mark.asyncio
async def test_clear_run_only_touches_that_run() -> None:
    broker = PermissionBroker(lambda ev: None)
    a = asyncio.create_task(broker.ask("r1", "Bash", {}))
    b = asyncio.create_task(broker.ask("r2", "Bash", {}))
    await asyncio.sleep(0)

    assert broker.clear_run("r1", "Run aborted") == 1
    decision = await a
    assert decision.message == "Run aborted"
    assert decision.interrupt is True
    assert not b.done()

    assert broker.clear_all("shutdown") == 1
    assert (await b).message == "shutdown"
    assert broker.pending_count == 0


@pytest.mark.asyncio
async def test_cancelled_waiter_leaves_table_clean() -> None:
    broker = PermissionBroker(lambda ev: None)
    task = asyncio.create_task(broker.ask("r1", "Bash", {}))
    await asyncio.sleep(0)
    assert broker.pending_count == 1
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert broker.pending_count == 0


def test_decision_from_params() -> None:
    allow = PermissionDecision.from_params({"behavior": "allow", "updatedInput": {"x": 1}})
    assert allow.allowed and allow.updated_input == {"x": 1}
    other = PermissionDecision.from_params({"behavior": "maybe", "message": "no", "interrupt": False})
    assert other.behavior == "deny"
    assert other.to_dict() == {"behavior": "deny", "message": "no", "interrupt": False}
