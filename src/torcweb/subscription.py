"""Observation of one service's properties.

Subscribing is a single call to ``<service path>Subscribe``. A successful
response describes the service:

    {
        "version": 1,
        "methods": ["Suspend", "Shutdown"],
        "properties": {
            "canSuspend": {"notification": "canSuspendChanged", "value": true}
        }
    }

Later changes to a property arrive as notifications named
``<service path><notification>`` carrying ``{"value": ...}``.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Iterable

from torcweb.error import RpcError
from torcweb.types import PropertyCallback, SubscriptionCallback

if TYPE_CHECKING:
    from torcweb.transport import Transport

logger = logging.getLogger(__name__)

SUBSCRIBE_METHOD = "Subscribe"


def method_names(methods: Any) -> frozenset[str] | None:
    """Normalize the ``methods`` field of a subscribe response.

    Servers send either a list of names or an object keyed by name.
    """
    if isinstance(methods, dict):
        return frozenset(str(name) for name in methods)
    if isinstance(methods, list):
        return frozenset(name for name in methods if isinstance(name, str))
    return None


class Subscription:
    """Client-side record of an active property observation on one service.

    The subscribe call is issued on construction. ``subscription_changed`` is
    then called once with ``(version, methods, properties)`` on success, or
    with no arguments if subscribing failed. The same no-argument call is made
    by ``disconnected()``.

    Requested properties that the service actually exposes are routed to
    ``property_changed(name, value)``. Other properties can be observed with
    ``listen()``.
    """

    def __init__(
        self,
        transport: Transport,
        service_name: str,
        service_path: str,
        properties: Iterable[str] = (),
        property_changed: PropertyCallback | None = None,
        subscription_changed: SubscriptionCallback | None = None,
    ) -> None:
        self.transport = transport
        self.service_name = service_name
        self.service_path = service_path
        self.requested_properties = frozenset(properties)
        self.subscription_changed = subscription_changed
        self._property_changed = property_changed

        # Only known once the subscribe handshake succeeds
        self.version: Any = None
        self.methods: frozenset[str] | None = None
        self.properties: dict[str, Any] | None = None
        self._listeners: dict[str, PropertyCallback] = {}
        self._cancelled = False

        transport.invoke(service_path + SUBSCRIBE_METHOD, None, self._subscribed, self._failed)

    def __repr__(self) -> str:
        return f"Subscription({self.service_name!r}, subscribed={self.subscribed})"

    @property
    def subscribed(self) -> bool:
        return self.version is not None

    def has_method(self, method: str) -> bool:
        """Whether the service advertised ``method`` in its subscribe response."""
        return self.methods is not None and method in self.methods

    def listen(self, name: str, callback: PropertyCallback) -> None:
        """Pass changes of property ``name`` to ``callback(name, value)``.

        Replaces any earlier listener for the same property.
        """
        self._listeners[name] = callback

    def reset(self) -> None:
        """Forget everything learnt from the subscribe response."""
        self.version = None
        self.methods = None
        self.properties = None
        self._listeners.clear()

    def disconnected(self) -> None:
        """Tear down after the socket closed and notify the owner once.

        Any answer to the subscribe call that is still outstanding is ignored.
        """
        self._cancelled = True
        self.reset()
        self._notify()

    def _notify(self, *args: Any) -> None:
        if self.subscription_changed is not None:
            self.subscription_changed(*args)

    def _property_notified(self, name: str, params: Any) -> None:
        """Unwrap a ``{"value": ...}`` notification for a listener."""
        listener = self._listeners.get(name)
        if listener is not None and isinstance(params, dict) and "value" in params:
            listener(name, params["value"])

    def _subscribed(self, data: Any) -> None:
        if self._cancelled:
            return

        methods = None
        if (
            isinstance(data, dict)
            and "version" in data
            and "methods" in data
            and isinstance(data.get("properties"), dict)
        ):
            methods = method_names(data["methods"])

        if methods is None:
            logger.warning("Invalid subscription response from %s", self.service_path)
            self.reset()
            self._notify()
            return

        self.version = data["version"]
        self.methods = methods
        self.properties = data["properties"]

        for name, description in self.properties.items():
            if name not in self.requested_properties:
                continue
            notification = description.get("notification") if isinstance(description, dict) else None
            if not isinstance(notification, str):
                logger.warning("Property %s of %s has no notification", name, self.service_path)
                continue
            self.transport.register_notification_handler(
                self.service_path + notification, name, self._property_notified
            )
            if self._property_changed is not None:
                self.listen(name, self._property_changed)

        logger.debug("Subscribed to %s (version %r)", self.service_path, self.version)
        self._notify(self.version, data["methods"], self.properties)

    def _failed(self, error: RpcError) -> None:
        if self._cancelled:
            return
        logger.warning("Failed to subscribe to %s: %s", self.service_path, error)
        self.reset()
        self._notify()
