from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections import OrderedDict
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from .. import __version__
from ..errors import BridgeError, RpcError
from ..host import BridgeClient

log = logging.getLogger("agent_bridge")

_MAX_WS_MESSAGE_SIZE = 1 * 1024 * 1024  # 1 MB
_WS_QUEUE_SIZE = 1000
_MAX_FINISHED_RUNS = 100

_VALID_WS_TYPES = frozenset({"abort", "permission_response"})
_REQUIRED_FIELDS: dict[str, list[str]] = {
    "abort": ["runId"],
    "permission_response": ["requestId", "behavior"],
}


def _validate_ws_message(msg: dict) -> str | None:
    """Validate a WebSocket message shape. Returns error string or None."""
    if not isinstance(msg, dict):
        return "Message must be a JSON object"
    msg_type = msg.get("type")
    if not isinstance(msg_type, str):
        return "Missing or invalid 'type' field"
    if msg_type not in _VALID_WS_TYPES:
        return f"Unknown message type: {msg_type}"
    for field in _REQUIRED_FIELDS.get(msg_type, []):
        if field not in msg or msg[field] is None:
            return f"Missing required field '{field}' for {msg_type}"
    return None


def _error_content(exc: Exception) -> dict:
    if isinstance(exc, RpcError):
        content = {"detail": exc.message, "code": exc.code}
        if exc.data is not None:
            content["data"] = exc.data
        return content
    return {"detail": str(exc) or type(exc).__name__}


def create_app(
    client: BridgeClient | None = None,
    external_deps_dir: str | None = None,
    max_finished_runs: int = _MAX_FINISHED_RUNS,
) -> FastAPI:
    bridge = client or BridgeClient()
    run_tasks: dict[str, asyncio.Task] = {}
    results: OrderedDict[str, dict] = OrderedDict()

    def _store_result(run_id: str, result: dict) -> None:
        results[run_id] = result
        results.move_to_end(run_id)
        while len(results) > max_finished_runs:
            results.popitem(last=False)

    async def _run_in_background(run_id: str, params: dict) -> None:
        try:
            _store_result(run_id, await bridge.run(params))
        except BridgeError as exc:
            log.warning("[server] run %s failed: %s", run_id, exc)
            _store_result(run_id, {"success": False, "aborted": False, "error": str(exc)})
        finally:
            run_tasks.pop(run_id, None)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        for task in list(run_tasks.values()):
            task.cancel()
        await asyncio.gather(*run_tasks.values(), return_exceptions=True)
        await bridge.stop()

    app = FastAPI(title="Agent Bridge", version=__version__, lifespan=lifespan)

    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "version": __version__,
            "worker_running": bridge.running,
            "active_runs": sorted(run_tasks),
        }

    @app.post("/api/initialize")
    async def initialize(body: dict | None = None):
        deps_dir = (body or {}).get("externalDepsDir", external_deps_dir)
        try:
            return await bridge.initialize(deps_dir)
        except BridgeError as exc:
            return JSONResponse(status_code=502, content=_error_content(exc))

    @app.post("/api/runs")
    async def start_run(body: dict):
        if run_tasks:
            return JSONResponse(
                status_code=409,
                content={"detail": "A run is already active", "currentRunId": next(iter(run_tasks))},
            )
        params = dict(body)
        run_id = params.get("runId") or f"run_{uuid.uuid4().hex}"
        params["runId"] = run_id
        if params.get("backend") not in ("claude", "codex"):
            return JSONResponse(status_code=400, content={"detail": "backend must be 'claude' or 'codex'"})
        results.pop(run_id, None)
        run_tasks[run_id] = asyncio.create_task(_run_in_background(run_id, params))
        return {"runId": run_id}

    @app.get("/api/runs/{run_id}")
    async def get_run(run_id: str):
        if run_id in run_tasks:
            return {"runId": run_id, "state": "running"}
        if run_id in results:
            return {"runId": run_id, "state": "finished", "result": results[run_id]}
        return JSONResponse(status_code=404, content={"detail": "Not found"})

    @app.post("/api/runs/{run_id}/abort")
    async def abort_run(run_id: str):
        await bridge.abort(run_id)
        return {"ok": run_id in run_tasks}

    @app.post("/api/permissions/{request_id}")
    async def respond_permission(request_id: str, body: dict):
        try:
            return await bridge.respond_permission({**body, "requestId": request_id})
        except BridgeError as exc:
            return JSONResponse(status_code=502, content=_error_content(exc))

    @app.websocket("/ws/events")
    async def events_endpoint(ws: WebSocket) -> None:
        await ws.accept()
        log.info("[server] ws connected")
        queue: asyncio.Queue = asyncio.Queue(maxsize=_WS_QUEUE_SIZE)

        def _on_event(event: dict) -> None:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                log.warning("[server] ws queue full, dropping %s event", event.get("type"))

        unsubscribe = bridge.on_event(_on_event)

        async def _sender() -> None:
            while True:
                event = await queue.get()
                await ws.send_json(event)

        sender = asyncio.create_task(_sender())
        try:
            while True:
                raw = await ws.receive_text()
                if len(raw) > _MAX_WS_MESSAGE_SIZE:
                    await ws.send_json({"type": "error", "message": f"Message too large (max {_MAX_WS_MESSAGE_SIZE} bytes)"})
                    continue
                try:
                    msg = json.loads(raw)
                except (json.JSONDecodeError, ValueError):
                    await ws.send_json({"type": "error", "message": "Invalid JSON"})
                    continue
                validation_error = _validate_ws_message(msg)
                if validation_error:
                    await ws.send_json({"type": "error", "message": validation_error})
                    continue

                if msg["type"] == "abort":
                    await bridge.abort(str(msg["runId"]))
                elif msg["type"] == "permission_response":
                    params = {k: v for k, v in msg.items() if k != "type"}
                    try:
                        reply = await bridge.respond_permission(params)
                    except BridgeError as exc:
                        reply = {"ok": False, "reason": str(exc)}
                    await ws.send_json({"type": "permission_response", "requestId": msg["requestId"], **reply})
        except WebSocketDisconnect:
            log.info("[server] ws disconnected")
        finally:
            unsubscribe()
            sender.cancel()
            await asyncio.gather(sender, return_exceptions=True)

    return app
