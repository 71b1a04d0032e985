"""Error types for the torcweb client stack.

JSON-RPC 2.0 reserves the -32768..-32000 range for protocol errors. The codes
used by this client for local failures (timeouts, disconnects, unresolvable
targets) live in the implementation-defined server error band so that they can
never collide with the protocol codes a peer sends back.
"""

from __future__ import annotations

from enum import IntEnum
from typing import Any


class ErrorCode(IntEnum):
    """JSON-RPC error codes plus the client-side failure codes."""

    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603

    # Client-side failures (never sent on the wire)
    TIMEOUT = -32001
    DISCONNECTED = -32002
    NOT_FOUND = -32003


_DEFAULT_MESSAGES = {
    ErrorCode.PARSE_ERROR: "Parse error",
    ErrorCode.INVALID_REQUEST: "Invalid request",
    ErrorCode.METHOD_NOT_FOUND: "Method not found",
    ErrorCode.INVALID_PARAMS: "Invalid params",
    ErrorCode.INTERNAL_ERROR: "Internal error",
}


class RpcError(Exception):
    """An error raised by, or reported to, a remote call.

    Attributes:
        code: The error code. Remote codes outside of ``ErrorCode`` are kept
            as plain integers.
        message: Human readable description
        data: Optional structured data sent by the peer
    """

    def __init__(self, code: ErrorCode | int, message: str, data: Any = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data

    def __repr__(self) -> str:
        return f"RpcError({int(self.code)}, {self.message!r})"

    def __str__(self) -> str:
        return f"[{int(self.code)}] {self.message}"

    def to_wire(self) -> dict[str, Any]:
        """Convert to a JSON-RPC error object."""
        error: dict[str, Any] = {"code": int(self.code), "message": self.message}
        if self.data is not None:
            error["data"] = self.data
        return error

    @classmethod
    def from_wire(cls, code: Any, message: Any, data: Any = None) -> RpcError:
        """Build an error from the fields of a received error object.

        Peers are not always strict about types (some send the code as a
        string, or a non-finite number), so anything that is not an integer code is mapped
        to ``INTERNAL_ERROR``.
        """
        try:
            numeric = int(code)
        except (TypeError, ValueError, OverflowError):
            numeric = ErrorCode.INTERNAL_ERROR
        try:
            resolved: ErrorCode | int = ErrorCode(numeric)
        except ValueError:
            resolved = numeric
        if not isinstance(message, str):
            message = _DEFAULT_MESSAGES.get(resolved, "unknown")
        return cls(resolved, message, data)

    @classmethod
    def parse_error(cls, message: str = "Parse error") -> RpcError:
        return cls(ErrorCode.PARSE_ERROR, message)

    @classmethod
    def invalid_request(cls, message: str = "Invalid request") -> RpcError:
        return cls(ErrorCode.INVALID_REQUEST, message)

    @classmethod
    def method_not_found(cls, message: str = "Method not found") -> RpcError:
        return cls(ErrorCode.METHOD_NOT_FOUND, message)

    @classmethod
    def internal(cls, message: str) -> RpcError:
        return cls(ErrorCode.INTERNAL_ERROR, message)

    @classmethod
    def timeout(cls, message: str) -> RpcError:
        return cls(ErrorCode.TIMEOUT, message)

    @classmethod
    def disconnected(cls, message: str) -> RpcError:
        return cls(ErrorCode.DISCONNECTED, message)

    @classmethod
    def not_found(cls, message: str) -> RpcError:
        return cls(ErrorCode.NOT_FOUND, message)
