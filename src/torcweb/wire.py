"""JSON-RPC 2.0 wire format.

Inbound traffic is decoded exactly once, at the channel boundary, into one of
the message dataclasses below. Everything past this module dispatches on the
message type instead of probing dictionaries for keys.

Classification of a single inbound object (first match wins):

- missing or wrong ``"jsonrpc": "2.0"`` tag -> ``WireMalformed``
- ``result`` and ``id``                     -> ``WireResponse``
- ``method`` and ``id``                     -> ``WireInboundCall``
- ``method`` without ``id``                 -> ``WireNotification``
- ``error``                                 -> ``WireErrorResponse``
- anything else                             -> ``WireUnknown``
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Final

from torcweb.error import RpcError

JSONRPC_VERSION: Final[str] = "2.0"


def is_int_not_bool(x: object) -> bool:
    """Check if x is an int but not a bool.

    bool is a subclass of int, and True/False must never alias call ids 1/0.
    """
    return isinstance(x, int) and not isinstance(x, bool)


def parse_call_id(value: Any) -> int | None:
    """Normalize a received id to an int.

    Some servers echo ids back as numeric strings. Anything that is not an
    integer (or an integer string) cannot match an outstanding call.
    """
    if is_int_not_bool(value):
        return value
    if isinstance(value, str):
        try:
            return int(value, 10)
        except ValueError:
            return None
    return None


# Outbound


@dataclass(frozen=True, slots=True)
class WireRequest:
    """An outbound call. A request without an id is a notification."""

    method: str
    params: dict[str, Any] | list[Any] | None = None
    id: int | None = None

    def to_json(self) -> dict[str, Any]:
        result: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": self.method}
        # Only structured params are allowed by JSON-RPC
        if isinstance(self.params, (dict, list)):
            result["params"] = self.params
        if self.id is not None:
            result["id"] = self.id
        return result


@dataclass(frozen=True, slots=True)
class WireErrorReply:
    """An error object we send back in answer to bad inbound traffic."""

    error: RpcError
    id: Any = None

    def to_json(self) -> dict[str, Any]:
        return {"jsonrpc": JSONRPC_VERSION, "error": self.error.to_wire(), "id": self.id}


# Inbound


@dataclass(frozen=True, slots=True)
class WireResponse:
    """Successful result of one of our calls."""

    id: int | None
    result: Any


@dataclass(frozen=True, slots=True)
class WireNotification:
    """Server-pushed event (a call without an id)."""

    method: str
    params: Any = None


@dataclass(frozen=True, slots=True)
class WireInboundCall:
    """A call from the server expecting an answer. We never serve these."""

    id: Any
    method: str
    params: Any = None


@dataclass(frozen=True, slots=True)
class WireErrorResponse:
    """An error object from the server, possibly answering one of our calls."""

    id: int | None
    error: RpcError


@dataclass(frozen=True, slots=True)
class WireMalformed:
    """An object that is not JSON-RPC 2.0 at all."""

    id: Any = None


@dataclass(frozen=True, slots=True)
class WireUnknown:
    """A JSON-RPC 2.0 object that is none of result, call or error."""

    payload: dict[str, Any]


WireMessage = (
    WireResponse
    | WireNotification
    | WireInboundCall
    | WireErrorResponse
    | WireMalformed
    | WireUnknown
)


def decode_message(data: Any) -> WireMessage:
    """Classify a single decoded JSON value."""
    if not isinstance(data, dict):
        return WireMalformed()

    if data.get("jsonrpc") != JSONRPC_VERSION:
        return WireMalformed(data.get("id"))

    if "result" in data and "id" in data:
        return WireResponse(parse_call_id(data["id"]), data["result"])

    if "method" in data:
        method = data["method"]
        if "id" in data:
            return WireInboundCall(data["id"], method, data.get("params"))
        if not isinstance(method, str):
            return WireUnknown(data)
        return WireNotification(method, data.get("params"))

    if "error" in data:
        raw = data["error"]
        if isinstance(raw, dict):
            error = RpcError.from_wire(raw.get("code"), raw.get("message"), raw.get("data"))
        else:
            error = RpcError.internal(str(raw))
        call_id = parse_call_id(data["id"]) if "id" in data else None
        return WireErrorResponse(call_id, error)

    return WireUnknown(data)


def parse_payload(text: str | bytes) -> Any:
    """Decode a frame to JSON.

    Raises:
        ValueError: The frame is not valid JSON (json.JSONDecodeError is a
            subclass of ValueError, as is UnicodeDecodeError)
    """
    if isinstance(text, bytes):
        # Frames are UTF-8 text even when sent as binary
        text = text.decode("utf-8")
    return json.loads(text)


def serialize(message: WireRequest | WireErrorReply | list[WireErrorReply]) -> str:
    """Serialize one message, or a batch of replies, to a text frame."""
    if isinstance(message, list):
        return json.dumps([m.to_json() for m in message], separators=(",", ":"))
    return json.dumps(message.to_json(), separators=(",", ":"))
