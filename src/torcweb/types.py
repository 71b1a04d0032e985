"""Shared type definitions for torcweb."""

from __future__ import annotations

from enum import Enum
from typing import Any, Callable

from torcweb.error import RpcError


class ConnectionState(str, Enum):
    """Lifecycle of the connection as seen by upper layers.

    CONNECTING is entered whenever a transport is created. NOT_CONNECTED can
    follow any state. READY is only reachable from CONNECTED, once the service
    directory is known.
    """

    NOT_CONNECTED = "not_connected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    READY = "ready"


# callback(result)
SuccessCallback = Callable[[Any], None]
# callback(error), called exactly once if the call does not succeed
FailureCallback = Callable[[RpcError], None]
# callback(owner_id, params) for inbound notifications
NotificationCallback = Callable[[Any, Any], None]
# callback(property_name, value)
PropertyCallback = Callable[[str, Any], None]
# callback(version, methods, properties) on success, callback() otherwise
SubscriptionCallback = Callable[..., None]
StatusCallback = Callable[[ConnectionState], None]
