"""Connection lifecycle: token, socket, service discovery and reconnect.

State machine::

    CONNECTING    --open-->                      CONNECTED
    CONNECTED     --directory subscribed-->      READY
    any           --close-->                     NOT_CONNECTED
    NOT_CONNECTED --after reconnect_delay-->     CONNECTING

Upper layers are told about READY only once the service directory is known,
so every service name they subscribe to can be resolved to a path.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Iterable, Self

from torcweb.config import ConnectionConfig
from torcweb.error import RpcError
from torcweb.subscription import Subscription
from torcweb.transport import Transport
from torcweb.types import (
    ConnectionState,
    FailureCallback,
    PropertyCallback,
    StatusCallback,
    SubscriptionCallback,
    SuccessCallback,
)

logger = logging.getLogger(__name__)

TransportFactory = Callable[[ConnectionConfig, StatusCallback], Transport]


def default_transport_factory(config: ConnectionConfig, status_changed: StatusCallback) -> Transport:
    return Transport(config.transport, status_changed)


def parse_service_list(value: Any) -> dict[str, str] | None:
    """Convert a ``serviceList`` value to a name -> path mapping.

    The server describes each service as ``{"path": "/services/power/"}``.
    Entries without a usable path are skipped.
    """
    if not isinstance(value, dict):
        return None
    services: dict[str, str] = {}
    for name, description in value.items():
        path = description.get("path") if isinstance(description, dict) else description
        if isinstance(path, str) and path:
            services[name] = path
        else:
            logger.debug("Ignoring service %s without a path", name)
    return services


class Connection:
    """Long-lived connection to a server, reconnecting as needed.

    Example:
        ```python
        def status_changed(state):
            if state is ConnectionState.READY:
                connection.subscribe("power", ["batteryLevel"], on_power, on_power_subscription)

        config = ConnectionConfig(transport=TransportConfig(server_authority="host:4840"))
        async with Connection(config, status_changed) as connection:
            ...
        ```
    """

    def __init__(
        self,
        config: ConnectionConfig | None = None,
        status_changed: StatusCallback | None = None,
        *,
        transport_factory: TransportFactory = default_transport_factory,
    ) -> None:
        """Initialize the connection. Nothing happens until ``start()``.

        Args:
            config: Connection settings
            status_changed: Called with every state change, READY included
            transport_factory: Creates the transport for each connect attempt
        """
        self.config = config or ConnectionConfig()
        self._status_changed = status_changed
        self._transport_factory = transport_factory

        self._transport: Transport | None = None
        self._state = ConnectionState.NOT_CONNECTED
        self._generation = 0
        self._reconnect_handle: asyncio.TimerHandle | None = None
        self._closed = False

        # Subscription registry: service name -> Subscription
        self._subscriptions: dict[str, Subscription] = {}
        self._services = self._default_services()

    async def __aenter__(self) -> Self:
        self.start()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def transport(self) -> Transport | None:
        return self._transport

    @property
    def services(self) -> dict[str, str]:
        """A copy of the current service directory."""
        return dict(self._services)

    def service_path(self, service_name: str) -> str | None:
        return self._services.get(service_name)

    def subscription(self, service_name: str) -> Subscription | None:
        return self._subscriptions.get(service_name)

    def get_stats(self) -> dict[str, int]:
        stats = {
            "services": len(self._services),
            "subscriptions": len(self._subscriptions),
        }
        if self._transport is not None:
            stats.update(self._transport.get_stats())
        return stats

    def start(self) -> None:
        """Start connecting. Must be called from a running event loop."""
        if self._closed:
            raise RuntimeError("Connection has been closed")
        if self._transport is None and self._reconnect_handle is None:
            self._connect()

    async def close(self) -> None:
        """Stop reconnecting and close the current transport."""
        if self._closed:
            return
        self._closed = True
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None
        transport = self._transport
        self._transport = None
        self._generation += 1
        self._subscriptions.clear()
        self._services = self._default_services()
        self._state = ConnectionState.NOT_CONNECTED
        if transport is not None:
            await transport.close()

    def call(
        self,
        service_name: str,
        method: str,
        params: dict[str, Any] | list[Any] | None = None,
        on_success: SuccessCallback | None = None,
        on_failure: FailureCallback | None = None,
    ) -> None:
        """Call ``method`` on a subscribed service.

        The call is only sent if the service's subscribe response advertised
        the method. Otherwise it is logged and dropped without calling either
        callback.
        """
        subscription = self._subscriptions.get(service_name)
        if self._transport is None or subscription is None or not subscription.has_method(method):
            logger.warning("Failed to call %s%s", service_name, method)
            return
        # Methods live under the service path, like Subscribe
        self._transport.invoke(subscription.service_path + method, params, on_success, on_failure)

    async def call_async(
        self,
        service_name: str,
        method: str,
        params: dict[str, Any] | list[Any] | None = None,
    ) -> Any:
        """Call ``method`` on a subscribed service and wait for the result.

        Raises:
            RpcError: The target cannot be resolved (NOT_FOUND) or the call
                failed
        """
        subscription = self._subscriptions.get(service_name)
        if self._transport is None or subscription is None or not subscription.has_method(method):
            raise RpcError.not_found(f"Cannot call {method} on {service_name}")
        return await self._transport.request(subscription.service_path + method, params)

    def subscribe(
        self,
        service_name: str,
        properties: Iterable[str] = (),
        property_changed: PropertyCallback | None = None,
        subscription_changed: SubscriptionCallback | None = None,
    ) -> Subscription | None:
        """Subscribe to a service from the directory.

        Unknown services and services that already have a subscription are
        rejected by calling ``subscription_changed()`` straight away.

        Returns:
            The new subscription, or None if it was rejected
        """
        path = self._services.get(service_name)
        if path is None or self._transport is None:
            logger.warning("Cannot subscribe to unknown service %s", service_name)
            if subscription_changed is not None:
                subscription_changed()
            return None

        if service_name in self._subscriptions:
            logger.warning("Already subscribed to %s", service_name)
            if subscription_changed is not None:
                subscription_changed()
            return None

        subscription = Subscription(
            self._transport,
            service_name,
            path,
            properties,
            property_changed,
            subscription_changed,
        )
        self._subscriptions[service_name] = subscription
        return subscription

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def _default_services(self) -> dict[str, str]:
        return {self.config.discovery_service: self.config.transport.services_path}

    def _connect(self) -> None:
        self._reconnect_handle = None
        if self._closed:
            return
        self._generation += 1
        generation = self._generation

        def status_changed(status: ConnectionState) -> None:
            self._transport_status_changed(generation, status)

        self._transport = self._transport_factory(self.config, status_changed)

    def _transport_status_changed(self, generation: int, status: ConnectionState) -> None:
        # Ignore stragglers from transports we already gave up on
        if generation != self._generation or self._closed:
            return

        self._set_state(status)

        if status is ConnectionState.NOT_CONNECTED:
            self._disconnected()
        elif status is ConnectionState.CONNECTED:
            self._connected()

    def _set_state(self, state: ConnectionState) -> None:
        self._state = state
        logger.info("Connection state: %s", state.value)
        if self._status_changed is not None:
            try:
                self._status_changed(state)
            except Exception:
                logger.exception("Error in status callback")

    def _connected(self) -> None:
        self.subscribe(
            self.config.discovery_service,
            [self.config.discovery_property],
            self._service_list_changed,
            self._discovery_subscription_changed,
        )

    def _disconnected(self) -> None:
        # Tell subscribers they have been disconnected, then forget them
        subscriptions = list(self._subscriptions.values())
        self._subscriptions.clear()
        for subscription in subscriptions:
            try:
                subscription.disconnected()
            except Exception:
                logger.exception("Error notifying %s of disconnect", subscription.service_name)

        self._transport = None
        self._services = self._default_services()

        if self._reconnect_handle is None:
            loop = asyncio.get_running_loop()
            self._reconnect_handle = loop.call_later(self.config.reconnect_delay, self._connect)
            logger.info("Reconnecting in %.1f seconds", self.config.reconnect_delay)

    def _service_list_changed(self, name: str, value: Any) -> None:
        services = parse_service_list(value)
        if services is None:
            logger.warning("Ignoring invalid %s: %r", name, value)
            return
        self._services = services

    def _discovery_subscription_changed(
        self,
        version: Any = None,
        methods: Any = None,
        properties: Any = None,
    ) -> None:
        if version is not None and isinstance(properties, dict):
            entry = properties.get(self.config.discovery_property)
            services = parse_service_list(entry.get("value")) if isinstance(entry, dict) else None
            if services is not None:
                self._services = services
                self._set_state(ConnectionState.READY)
                return

        # Stays CONNECTED; a full reconnect is needed to try again
        if self._state is ConnectionState.CONNECTED:
            logger.warning("Service discovery failed")
        self._services = self._default_services()
