from __future__ import annotations

from typing import Any

# JSON-RPC 2.0 error codes used on the outer link.
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
SERVER_ERROR = -32000


class BridgeError(Exception):
    """Base class for every error raised inside the bridge."""


class ProtocolError(BridgeError):
    """Malformed frame, bad params or version mismatch. Never retried."""

    def __init__(self, code: int, message: str, data: Any = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data


class BackendNotFound(BridgeError):
    """Required external program or module is absent."""

    def __init__(self, backend: str, detail: str = "") -> None:
        msg = f"{backend} backend is not available"
        if detail:
            msg = f"{msg}: {detail}"
        super().__init__(msg)
        self.backend = backend


class BackendProcessError(BridgeError):
    """Backend process failed (non-zero exit, signal, early EOF) outside an abort."""

    def __init__(self, message: str, returncode: int | None = None, stderr_tail: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stderr_tail = stderr_tail


class RunAborted(BridgeError):
    """The run was cancelled by the caller."""


class BridgeTimeoutError(BridgeError):
    """A JSON-RPC request did not get a reply in time."""


class RpcError(BridgeError):
    """Error reply received from the other side of a JSON-RPC link."""

    def __init__(self, code: int, message: str, data: Any = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data


class BridgeExitedError(BridgeError):
    """The worker process exited while requests were outstanding."""

    def __init__(self, returncode: int | None) -> None:
        signal = -returncode if returncode is not None and returncode < 0 else None
        code = returncode if signal is None else None
        super().__init__(f"Agent bridge exited: code={code} signal={signal}")
        self.returncode = returncode
        self.signal = signal
