import asyncio
import sys

import pytest

from agent_bridge.errors import BridgeExitedError, BridgeTimeoutError, RpcError
from agent_bridge.host import BridgeClient


@pytest.mark.asyncio
async def test_mock_worker_round_trip() -> None:
    client = BridgeClient(env={"AGENT_BRIDGE_MOCK": "1", "AGENT_BRIDGE_LOG_LEVEL": "WARNING"})
    events: list[dict] = []
    pending: list[asyncio.Task] = []

    def on_event(event: dict) -> None:
        events.append(event)
        if event["type"] == "permission.request":
            pending.append(asyncio.get_running_loop().create_task(
                client.respond_permission({"requestId": event["requestId"], "behavior": "allow"})
            ))

    unsubscribe = client.on_event(on_event)
    try:
        init = await client.initialize()
        assert init["protocolVersion"] == 1
        assert init["providers"]["claude"] == {"available": True, "version": "mock", "source": "mock"}

        requests_sent = client._next_id
        assert await client.initialize() is init
        assert client._next_id == requests_sent

        result = await asyncio.wait_for(client.run({"runId": "r1", "backend": "claude", "prompt": "hi"}), 20)
        assert result["success"] is True
        assert [e["status"] for e in events if e["type"] == "status"] == ["running", "done"]
        assert (await pending[0]) == {"ok": True}

        with pytest.raises(RpcError) as excinfo:
            await client.request("agent.run", {"runId": "r2", "backend": "nope"})
        assert excinfo.value.code == -32602
        assert client.pending_count == 0
    finally:
        unsubscribe()
        await client.stop()
    assert not client.running


@pytest.mark.asyncio
async def test_worker_exit_fails_outstanding_requests() -> None:
    client = BridgeClient(command=[sys.executable, "-c", "import sys; sys.stdin.readline(); sys.exit(3)"])
    try:
        with pytest.raises(BridgeExitedError) as excinfo:
            await client.request("initialize", {"protocolVersion": 1}, timeout=10)
        assert excinfo.value.returncode in (3, None)
        assert client.pending_count == 0
    finally:
        await client.stop()


@pytest.mark.asyncio
async def test_raising_event_handler_is_skipped() -> None:
    client = BridgeClient()
    seen: list[dict] = []

    def broken(event: dict) -> None:
        raise RuntimeError("handler bug")

    client.on_event(broken)
    client.on_event(seen.append)
    client._dispatch_event({"runId": "r1", "type": "status", "status": "running"})
    assert seen == [{"runId": "r1", "type": "status", "status": "running"}]


def _mock_client() -> BridgeClient:
    return BridgeClient(env={"AGENT_BRIDGE_MOCK": "1", "AGENT_BRIDGE_LOG_LEVEL": "WARNING"})


@pytest.mark.asyncio
async def test_next_call_respawns_exited_worker() -> None:
    client = _mock_client()
    try:
        await client.initialize()
        first = client.proc
        first.kill()
        async with asyncio.timeout(10):
            while client.proc is not None:
                await asyncio.sleep(0.01)

        init = await client.initialize()
        assert init["protocolVersion"] == 1
        assert client.running
        assert client.proc is not first
        assert client.proc.pid != first.pid
    finally:
        await client.stop()


@pytest.mark.asyncio
async def test_initialize_is_resent_when_deps_dir_changes(tmp_path) -> None:
    client = _mock_client()
    try:
        await client.initialize()
        assert client._next_id == 1

        await client.initialize(str(tmp_path))
        assert client._next_id == 2
        await client.initialize(f"  {tmp_path}  ")
        assert client._next_id == 2

        await client.initialize(None)
        assert client._next_id == 3
    finally:
        await client.stop()


@pytest.mark.asyncio
async def test_request_timeout_clears_pending_entry() -> None:
    client = BridgeClient(command=[sys.executable, "-c", "import sys, time; sys.stdin.readline(); time.sleep(30)"])
    try:
        with pytest.raises(BridgeTimeoutError, match="initialize timed out"):
            await client.request("initialize", {"protocolVersion": 1}, timeout=0.2)
        assert client.pending_count == 0
        assert client.running
    finally:
        await client.stop()
