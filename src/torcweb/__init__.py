"""torcweb - client for Torc device-control servers.

This package keeps a long-lived JSON-RPC 2.0 WebSocket connection to a
server, makes remote calls and delivers push notifications when service
properties change.
"""

from torcweb.config import ConnectionConfig, TransportConfig
from torcweb.error import ErrorCode, RpcError
from torcweb.ids import IdAllocator
from torcweb.types import ConnectionState
from torcweb.channel import (
    ChannelError,
    RpcChannel,
    WebSocketChannel,
    connect_websocket,
    fetch_token,
)
from torcweb.transport import Transport
from torcweb.subscription import Subscription
from torcweb.connection import Connection

__version__ = "0.1.0"

__all__ = [
    # Configuration (Pydantic models)
    "ConnectionConfig",
    "TransportConfig",
    # Errors
    "ErrorCode",
    "RpcError",
    # Core types
    "ConnectionState",
    "IdAllocator",
    # Channel
    "ChannelError",
    "RpcChannel",
    "WebSocketChannel",
    "connect_websocket",
    "fetch_token",
    # Connection stack
    "Transport",
    "Subscription",
    "Connection",
]
