import json

from agent_bridge.rpc import (
    FrameKind,
    classify,
    decode_line,
    encode_error,
    encode_notification,
    encode_request,
    encode_result,
)


def test_encode_request_has_header_first_and_newline() -> None:
    line = encode_request(7, "initialize", {"protocolVersion": 1})
    assert line.endswith("\n")
    assert line.startswith('{"jsonrpc": "2.0"')
    assert json.loads(line) == {
        "jsonrpc": "2.0", "id": 7, "method": "initialize", "params": {"protocolVersion": 1},
    }


def test_inner_link_frames_omit_header() -> None:
    obj = json.loads(encode_request(1, "thread/start", {"cwd": "/tmp"}, header=False))
    assert "jsonrpc" not in obj
    assert json.loads(encode_notification("initialized", header=False)) == {"method": "initialized"}


def test_encode_error_carries_data_only_when_given() -> None:
    plain = json.loads(encode_error(None, -32700, "Parse error"))
    assert plain["error"] == {"code": -32700, "message": "Parse error"}
    assert plain["id"] is None
    busy = json.loads(encode_error(3, -32000, "busy", {"currentRunId": "r1"}))
    assert busy["error"]["data"] == {"currentRunId": "r1"}


def test_classify_frames() -> None:
    assert classify(json.loads(encode_result(1, {"ok": True}))) is FrameKind.RESPONSE
    assert classify({"id": 2, "error": {"code": 1, "message": "x"}}) is FrameKind.RESPONSE
    assert classify({"id": 0, "method": "item/fileChange/requestApproval"}) is FrameKind.REQUEST
    assert classify({"method": "turn/completed", "params": {}}) is FrameKind.NOTIFICATION
    assert classify({"id": None, "method": "agent.abort"}) is FrameKind.NOTIFICATION
    assert classify({"foo": "bar"}) is FrameKind.INVALID
    assert classify([1, 2]) is FrameKind.INVALID


def test_decode_line_tolerates_garbage() -> None:
    assert decode_line(b"  \n") is None
    assert decode_line(b"not json\n") is None
    assert decode_line(b'{"a": 1}\n') == {"a": 1}
    assert decode_line('{"b": 2}') == {"b": 2}
