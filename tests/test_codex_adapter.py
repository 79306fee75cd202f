import asyncio
import json
from collections import deque

import pytest

from agent_bridge.adapters.base import RunParams
from agent_bridge.adapters.codex import CodexAdapter
from agent_bridge.cancellation import CancelToken
from agent_bridge.config import BridgeConfig
from agent_bridge.errors import BackendProcessError, RunAborted
from agent_bridge.events import (
    AssistantDelta,
    AssistantDone,
    PermissionRequest,
    ResumeId,
    Status,
    ToolDone,
    ToolError,
    ToolProgress,
    ToolStart,
)
from agent_bridge.locator import BackendLocator, ResolvedBinary
from agent_bridge.permissions import PermissionBroker, PermissionDecision

_EXIT = "exit"


class _FakeStdin:
    def __init__(self, server: "_FakeAppServer") -> None:
        self._server = server

    def write(self, data: bytes) -> None:
        for line in data.decode().splitlines():
            if line.strip():
                self._server.receive(json.loads(line))

    async def drain(self) -> None:
        return None


class _FakeAppServer:
    """Scripted ``codex app-server``: answers the handshake, then plays the turn.

    Server requests in the script pause playback until the adapter replies.
    """

    def __init__(self, script: list) -> None:
        self.stdout = asyncio.StreamReader()
        self.stderr = None
        self.stdin = _FakeStdin(self)
        self.returncode = None
        self.received: list[dict] = []
        self.replies: dict = {}
        self._script = deque(script)
        self._waiting_for = None
        self._exited = asyncio.Event()

    def methods(self) -> list[str]:
        return [m["method"] for m in self.received if "method" in m]

    def params_of(self, method: str) -> dict:
        return next(m.get("params") or {} for m in self.received if m.get("method") == method)

    def _send(self, obj: dict) -> None:
        if self.returncode is None:
            self.stdout.feed_data((json.dumps(obj) + "\n").encode())

    def _play(self) -> None:
        while self._script:
            frame = self._script.popleft()
            if frame == _EXIT:
                self._exit(1)
                return
            self._send(frame)
            if "id" in frame and "method" in frame:
                self._waiting_for = frame["id"]
                return

    def receive(self, msg: dict) -> None:
        self.received.append(msg)
        method = msg.get("method")
        if method is None:
            self.replies[msg["id"]] = msg.get("result")
            if msg["id"] == self._waiting_for:
                self._waiting_for = None
                self._play()
            return
        if "id" not in msg:
            return
        if method == "initialize":
            self._send({"id": msg["id"], "result": {"userAgent": "codex/0.50"}})
        elif method == "thread/start":
            self._send({"id": msg["id"], "result": {"thread": {"id": "thr_1"}}})
        elif method == "thread/resume":
            self._send({"id": msg["id"], "result": {"thread": {"id": msg["params"]["threadId"]}}})
        elif method == "turn/start":
            self._send({"id": msg["id"], "result": {"turn": {"id": "turn_1", "status": "inProgress"}}})
            self._play()
        elif method == "turn/interrupt":
            self._send({"id": msg["id"], "result": {}})
            self._send({"method": "turn/completed", "params": {"turn": {"id": "turn_1", "status": "interrupted"}}})
        else:
            self._send({"id": msg["id"], "error": {"code": -32601, "message": f"unknown {method}"}})

    def _exit(self, code: int) -> None:
        if self.returncode is None:
            self.returncode = code
            self.stdout.feed_eof()
            self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode

    def terminate(self) -> None:
        self._exit(-15)

    def kill(self) -> None:
        self._exit(-9)


def _make_adapter(monkeypatch, server: _FakeAppServer, emit=None):
    config = BridgeConfig.load(env={})
    locator = BackendLocator(config)
    monkeypatch.setattr(locator, "find_binary", lambda backend: ResolvedBinary("/usr/local/bin/codex", "path"))
    emitted: list = []
    broker = PermissionBroker(emit or emitted.append)
    token = CancelToken("r1")
    adapter = CodexAdapter(token, broker, locator, config)
    spawned: dict = {}

    async def fake_spawn(args, *, cwd, env, stdin_pipe, attach=True):
        spawned.update(args=args, cwd=cwd, env=env, attach=attach)
        adapter.proc = server
        return server

    monkeypatch.setattr(adapter, "_spawn", fake_spawn)
    return adapter, spawned, emitted, broker


def _completed(status: str = "completed") -> dict:
    return {"method": "turn/completed", "params": {"turn": {"id": "turn_1", "status": status}}}


@pytest.mark.asyncio
async def test_run_with_policy_never_streams_without_permission_requests(monkeypatch) -> None:
    server = _FakeAppServer([
        {"method": "turn/started", "params": {"turn": {"id": "turn_1"}}},
        {"method": "item/agentMessage/delta", "params": {"itemId": "msg_a", "delta": "Hello"}},
        {"method": "item/agentMessage/delta", "params": {"itemId": "msg_a", "delta": " wor"}},
        {"method": "item/completed", "params": {"item": {"id": "msg_a", "type": "agentMessage", "text": "Hello world"}}},
        {"method": "thread/tokenUsage/updated", "params": {"tokenUsage": {"total": {"totalTokens": 42}}}},
        _completed(),
    ])
    monkeypatch.setenv("OPENAI_API_KEY", "sk-ambient")
    adapter, spawned, emitted, broker = _make_adapter(monkeypatch, server)

    params = RunParams(run_id="r1", prompt="say hello", cwd="/work", approval_policy="never", sandbox_mode="bogus")
    events = [e async for e in adapter.start(params)]

    assert spawned["args"] == ["/usr/local/bin/codex", "app-server"]
    assert spawned["attach"] is False
    assert "OPENAI_API_KEY" not in spawned["env"]
    assert server.methods()[:4] == ["initialize", "initialized", "thread/start", "turn/start"]
    assert "jsonrpc" not in server.received[0]
    thread_params = server.params_of("thread/start")
    assert thread_params["approvalPolicy"] == "never"
    assert thread_params["sandbox"] == "workspace-write"
    assert thread_params["cwd"] == "/work"
    assert server.params_of("turn/start") == {"threadId": "thr_1", "input": [{"type": "text", "text": "say hello"}]}

    assert events[0] == ResumeId(run_id="r1", resume_handle="thr_1")
    assert "".join(e.text_delta for e in events if isinstance(e, AssistantDelta)) == "Hello world"
    assert [e.message_id for e in events if isinstance(e, AssistantDone)] == ["msg_a"]
    assert not any(isinstance(e, PermissionRequest) for e in emitted)
    assert broker.pending_count == 0
    assert adapter.result.resume_handle == "thr_1"
    assert adapter.result.usage == {"total": {"totalTokens": 42}}
    assert adapter.table_sizes == {"outgoing": 0, "incoming": 0}
    assert server.returncode is not None


@pytest.mark.asyncio
async def test_resume_and_explicit_credential(monkeypatch) -> None:
    server = _FakeAppServer([_completed()])
    adapter, spawned, _, _ = _make_adapter(monkeypatch, server)
    params = RunParams(
        run_id="r1", prompt="continue", credential="sk-explicit", base_url="https://api.example/v1",
        resume_handle="thr_old", sandbox_mode="read-only",
    )
    events = [e async for e in adapter.start(params)]

    assert "thread/resume" in server.methods()
    assert server.params_of("thread/resume")["threadId"] == "thr_old"
    assert server.params_of("thread/resume")["approvalPolicy"] == "on-request"
    assert server.params_of("thread/resume")["sandbox"] == "read-only"
    assert spawned["env"]["OPENAI_API_KEY"] == "sk-explicit"
    assert spawned["env"]["OPENAI_BASE_URL"] == "https://api.example/v1"
    assert events == [ResumeId(run_id="r1", resume_handle="thr_old")]


@pytest.mark.asyncio
async def test_declined_command_approval_emits_single_tool_error(monkeypatch) -> None:
    server = _FakeAppServer([
        {"method": "item/started", "params": {"item": {
            "id": "cmd_1", "type": "commandExecution", "command": "rm -rf build", "cwd": "/work", "status": "inProgress",
        }}},
        {"id": 0, "method": "item/commandExecution/requestApproval", "params": {
            "threadId": "thr_1", "turnId": "turn_1", "itemId": "cmd_1", "reason": "needs write access",
        }},
        {"method": "item/completed", "params": {"item": {
            "id": "cmd_1", "type": "commandExecution", "command": "rm -rf build", "status": "declined",
        }}},
        _completed(),
    ])
    requests: list = []
    holder: dict = {}

    def emit(event) -> None:
        requests.append(event)
        asyncio.get_running_loop().call_soon(
            holder["broker"].respond, event.request_id, PermissionDecision.deny("nope", interrupt=False),
        )

    adapter, _, _, broker = _make_adapter(monkeypatch, server, emit=emit)
    holder["broker"] = broker
    events = [e async for e in adapter.start(RunParams(run_id="r1", prompt="clean"))]

    assert len(requests) == 1
    assert requests[0].tool_use_id == "cmd_1"
    assert requests[0].decision_reason == "needs write access"
    assert server.replies[0] == {"decision": "decline"}
    starts = [e for e in events if isinstance(e, ToolStart)]
    assert [(s.tool_call_id, s.tool_name) for s in starts] == [("cmd_1", "Bash")]
    terminal = [e for e in events if isinstance(e, (ToolDone, ToolError))]
    assert terminal == [ToolError(run_id="r1", tool_call_id="cmd_1", tool_name="Bash", message="nope")]
    assert broker.pending_count == 0
    assert adapter.table_sizes == {"outgoing": 0, "incoming": 0}


@pytest.mark.asyncio
async def test_legacy_and_unknown_server_requests(monkeypatch) -> None:
    server = _FakeAppServer([
        {"id": "a1", "method": "execCommandApproval", "params": {
            "conversationId": "thr_1", "callId": "call_1", "command": ["ls", "-la"], "cwd": "/work",
        }},
        {"id": "a2", "method": "account/chatgptAuthTokens/refresh", "params": {}},
        {"method": "item/started", "params": {"item": {
            "id": "mcp_1", "type": "mcpToolCall", "server": "docs", "tool": "search", "arguments": {"q": "x"},
        }}},
        {"method": "item/commandExecution/outputDelta", "params": {"itemId": "call_1", "delta": "total 0\n"}},
        {"method": "item/completed", "params": {"item": {
            "id": "mcp_1", "type": "mcpToolCall", "server": "docs", "tool": "search", "status": "completed",
            "result": {"content": [{"type": "text", "text": "found"}]},
        }}},
        _completed(),
    ])
    holder: dict = {}

    def emit(event) -> None:
        asyncio.get_running_loop().call_soon(
            holder["broker"].respond, event.request_id, PermissionDecision(behavior="allow"),
        )

    adapter, _, _, broker = _make_adapter(monkeypatch, server, emit=emit)
    holder["broker"] = broker
    events = [e async for e in adapter.start(RunParams(run_id="r1", prompt="look"))]

    assert server.replies["a1"] == {"decision": "approved"}
    assert server.replies["a2"] == {}
    mcp_start = next(e for e in events if isinstance(e, ToolStart))
    assert mcp_start.tool_name == "mcp__docs__search"
    assert mcp_start.tool_input == {"q": "x"}
    assert next(e for e in events if isinstance(e, ToolDone)).tool_result == "found"
    assert next(e for e in events if isinstance(e, ToolProgress)).output == "total 0\n"


@pytest.mark.asyncio
async def test_error_notification_without_retry_ends_turn(monkeypatch) -> None:
    server = _FakeAppServer([
        {"method": "error", "params": {"error": {"message": "stream hiccup"}, "willRetry": True}},
        {"method": "error", "params": {"error": {"message": "quota exceeded"}, "willRetry": False}},
    ])
    adapter, _, _, _ = _make_adapter(monkeypatch, server)
    events = [e async for e in adapter.start(RunParams(run_id="r1", prompt="x"))]
    assert events[-1] == Status(run_id="r1", status="error", message="quota exceeded")
    assert adapter.result.error == "quota exceeded"


@pytest.mark.asyncio
async def test_premature_exit_is_process_error(monkeypatch) -> None:
    server = _FakeAppServer([
        {"method": "item/started", "params": {"item": {"id": "cmd_9", "type": "commandExecution", "command": "make"}}},
        _EXIT,
    ])
    adapter, _, _, _ = _make_adapter(monkeypatch, server)
    with pytest.raises(BackendProcessError) as excinfo:
        async for _ in adapter.start(RunParams(run_id="r1", prompt="x")):
            pass
    assert excinfo.value.returncode == 1
    assert adapter.table_sizes == {"outgoing": 0, "incoming": 0}


@pytest.mark.asyncio
async def test_abort_sends_turn_interrupt(monkeypatch) -> None:
    server = _FakeAppServer([
        {"method": "item/agentMessage/delta", "params": {"itemId": "msg_a", "delta": "Working"}},
    ])
    adapter, _, _, _ = _make_adapter(monkeypatch, server)
    events: list = []
    with pytest.raises(RunAborted):
        async for event in adapter.start(RunParams(run_id="r1", prompt="long job")):
            events.append(event)
            if isinstance(event, AssistantDelta):
                adapter.token.abort()

    assert server.params_of("turn/interrupt") == {"threadId": "thr_1", "turnId": "turn_1"}
    assert adapter.table_sizes == {"outgoing": 0, "incoming": 0}
