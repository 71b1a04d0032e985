"""JSON-RPC transport over a duplex channel.

The transport owns one channel for its whole life (it is never reopened, the
connection creates a new transport instead). It is responsible for:

1. Fetching an access token and opening the channel
2. Correlating outbound calls with inbound results by call id
3. Expiring calls that never receive an answer
4. Routing inbound notifications to registered handlers
5. Answering malformed inbound traffic with JSON-RPC error objects

Everything runs on the event loop that created the transport. Callbacks are
invoked synchronously from the read loop, in arrival order.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import Any

from torcweb.channel import (
    ChannelError,
    ChannelFactory,
    RpcChannel,
    TokenFetcher,
    connect_websocket,
    fetch_token,
)
from torcweb.config import TransportConfig
from torcweb.error import RpcError
from torcweb.ids import IdAllocator
from torcweb.types import (
    ConnectionState,
    FailureCallback,
    NotificationCallback,
    StatusCallback,
    SuccessCallback,
)
from torcweb.wire import (
    WireErrorReply,
    WireErrorResponse,
    WireInboundCall,
    WireMalformed,
    WireMessage,
    WireNotification,
    WireRequest,
    WireResponse,
    WireUnknown,
    decode_message,
    parse_payload,
    serialize,
)

logger = logging.getLogger(__name__)


class PendingCall:
    """Entry in the pending call table (calls waiting for a result)."""
    __slots__ = ('id', 'method', 'on_success', 'on_failure', 'sent_at')

    def __init__(
        self,
        call_id: int,
        method: str,
        on_success: SuccessCallback,
        on_failure: FailureCallback | None,
        sent_at: float,
    ) -> None:
        self.id = call_id
        self.method = method
        self.on_success = on_success
        self.on_failure = on_failure
        self.sent_at = sent_at


class NotificationRoute:
    """Handler for one inbound notification method."""
    __slots__ = ('owner_id', 'callback')

    def __init__(self, owner_id: Any, callback: NotificationCallback) -> None:
        self.owner_id = owner_id
        self.callback = callback


class Transport:
    """Client side of a JSON-RPC 2.0 session.

    The transport reports CONNECTING as soon as it is constructed, CONNECTED
    when the channel opens and NOT_CONNECTED (once) when the channel closes or
    fails to open. Channel errors are logged and do not change the status.

    A closed channel does not fail outstanding calls: they stay in the table
    until they expire. Only ``close()`` fails them immediately.

    Must be constructed from a running event loop.

    Example:
        ```python
        transport = Transport(TransportConfig(server_authority="host:4840"))
        version = await transport.request("/services/GetVersion")
        ```
    """

    def __init__(
        self,
        config: TransportConfig | None = None,
        status_changed: StatusCallback | None = None,
        *,
        channel_factory: ChannelFactory = connect_websocket,
        token_fetcher: TokenFetcher | None = fetch_token,
    ) -> None:
        """Initialize the transport and start connecting.

        Args:
            config: Transport settings
            status_changed: Called with each ConnectionState change
            channel_factory: Opens the channel given the config and token
            token_fetcher: Obtains an access token, or None to skip
                authentication entirely
        """
        self.config = config or TransportConfig()
        self._status_changed = status_changed
        self._channel_factory = channel_factory
        self._token_fetcher = token_fetcher
        self._loop = asyncio.get_running_loop()

        # Pending call table: call id -> PendingCall
        self._pending: dict[int, PendingCall] = {}
        self._ids = IdAllocator(self.config.max_call_id)

        # Notification routes: method name -> NotificationRoute
        self._routes: dict[str, NotificationRoute] = {}

        self._channel: RpcChannel | None = None
        self._outbox: asyncio.Queue[str] = asyncio.Queue()
        self._writer_task: asyncio.Task[None] | None = None
        self._expire_task: asyncio.Task[None] | None = None
        self._closed = False
        self._status = ConnectionState.CONNECTING

        self._report(ConnectionState.CONNECTING)
        self._run_task: asyncio.Task[None] = asyncio.create_task(self._run())

    @property
    def status(self) -> ConnectionState:
        return self._status

    @property
    def is_open(self) -> bool:
        return self._channel is not None and not self._closed

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def get_stats(self) -> dict[str, int]:
        """Get statistics about the transport.

        Returns:
            Dict with 'pending' and 'routes' counts
        """
        return {
            "pending": len(self._pending),
            "routes": len(self._routes),
        }

    # -------------------------------------------------------------------------
    # Outbound
    # -------------------------------------------------------------------------

    def invoke(
        self,
        method: str,
        params: dict[str, Any] | list[Any] | None = None,
        on_success: SuccessCallback | None = None,
        on_failure: FailureCallback | None = None,
    ) -> int | None:
        """Make a remote call.

        Without ``on_success`` the call is sent as a notification: no id is
        assigned and nothing is tracked. Otherwise exactly one of
        ``on_success(result)`` or ``on_failure(error)`` is called later.

        Returns:
            The call id, or None for notifications
        """
        if on_success is None:
            self._send_sync(serialize(WireRequest(method, params)))
            return None

        if self._closed:
            self._fire(on_failure, RpcError.disconnected(f"Transport closed, cannot call {method}"))
            return None

        call_id = self._ids.allocate(self._pending)
        self._pending[call_id] = PendingCall(
            call_id, method, on_success, on_failure, self._loop.time()
        )
        self._ensure_expiring()
        self._send_sync(serialize(WireRequest(method, params, call_id)))
        return call_id

    async def request(
        self,
        method: str,
        params: dict[str, Any] | list[Any] | None = None,
    ) -> Any:
        """Make a remote call and wait for its result.

        Raises:
            RpcError: The server reported an error, the call expired or the
                transport was closed
        """
        future: asyncio.Future[Any] = self._loop.create_future()

        def on_success(result: Any) -> None:
            if not future.done():
                future.set_result(result)

        def on_failure(error: RpcError) -> None:
            if not future.done():
                future.set_exception(error)

        self.invoke(method, params, on_success, on_failure)
        return await future

    def register_notification_handler(
        self,
        method: str,
        owner_id: Any,
        callback: NotificationCallback,
    ) -> None:
        """Route notifications for ``method`` to ``callback(owner_id, params)``.

        A later registration for the same method replaces the earlier one.
        """
        self._routes[method] = NotificationRoute(owner_id, callback)

    def _send_sync(self, frame: str) -> None:
        """Queue a frame for the writer task (synchronous)."""
        if self._channel is None or self._closed:
            logger.warning("Socket not open, dropping frame: %s", frame)
            return
        self._outbox.put_nowait(frame)

    async def _write_loop(self, channel: RpcChannel) -> None:
        """Send queued frames in order."""
        while True:
            frame = await self._outbox.get()
            try:
                await channel.send(frame)
            except Exception as e:
                logger.warning("Failed to send frame: %s", e)

    # -------------------------------------------------------------------------
    # Call expiry
    # -------------------------------------------------------------------------

    def _ensure_expiring(self) -> None:
        """Start the expiry sweep if it is not already running."""
        if self._expire_task is None or self._expire_task.done():
            self._expire_task = asyncio.create_task(self._expire_loop())

    async def _expire_loop(self) -> None:
        while self._pending:
            await asyncio.sleep(self.config.expire_interval)
            self.expire_calls()

    def expire_calls(self) -> None:
        """Fail every call that has waited longer than the call timeout."""
        now = self._loop.time()
        expired = [
            entry for entry in self._pending.values()
            if entry.sent_at + self.config.call_timeout < now
        ]
        for entry in expired:
            del self._pending[entry.id]
            logger.info("Expiring call id %d (%s): no response received", entry.id, entry.method)
            self._fire(
                entry.on_failure,
                RpcError.timeout(f"No response to {entry.method} (id {entry.id})"),
            )

    # -------------------------------------------------------------------------
    # Inbound
    # -------------------------------------------------------------------------

    def handle_frame(self, frame: str | bytes) -> None:
        """Process one inbound frame, replying to malformed traffic.

        A batch is processed element by element and any error replies are
        sent back as a single array once the whole batch is handled.
        """
        try:
            data = parse_payload(frame)
        except (ValueError, RecursionError) as e:
            logger.warning("Failed to parse frame: %s", e)
            data = None

        if isinstance(data, list):
            replies = []
            for item in data:
                reply = self._process_message(decode_message(item))
                if reply is not None:
                    replies.append(reply)
            # A batch of notifications requires no response
            if replies:
                self._send_sync(serialize(replies))
        elif isinstance(data, dict):
            reply = self._process_message(decode_message(data))
            if reply is not None:
                self._send_sync(serialize(reply))
        else:
            self._send_sync(serialize(WireErrorReply(RpcError.parse_error(), None)))

    def _process_message(self, msg: WireMessage) -> WireErrorReply | None:
        """Process a single decoded message and return an optional reply."""
        match msg:
            case WireMalformed(id=call_id):
                logger.warning("Received non JSON-RPC 2.0 message (id %r)", call_id)
                return WireErrorReply(RpcError.invalid_request(), call_id)

            case WireResponse(id=call_id, result=result):
                entry = self._pending.pop(call_id, None) if call_id is not None else None
                if entry is None:
                    logger.warning("Unknown RPC result for id: %r", call_id)
                    return None
                self._fire(entry.on_success, result)
                return None

            case WireInboundCall(id=call_id, method=method):
                # There is no support for calls to the client
                logger.warning("Rejecting inbound call to %r", method)
                return WireErrorReply(RpcError.method_not_found(), call_id)

            case WireNotification(method=method, params=params):
                route = self._routes.get(method)
                if route is None:
                    logger.info("No event handler for %s", method)
                    return None
                self._fire(route.callback, route.owner_id, params)
                return None

            case WireErrorResponse(id=call_id, error=error):
                entry = self._pending.pop(call_id, None) if call_id is not None else None
                logger.warning("JSON-RPC error (id %r): %s", call_id, error)
                if entry is not None:
                    self._fire(entry.on_failure, error)
                return None

            case WireUnknown(payload=payload):
                logger.warning("Ignoring unrecognised message: %r", payload)
                return None

            case _:
                logger.warning(f"Unknown message type: {type(msg)}")
                return None

    def _fire(self, callback: Any, *args: Any) -> None:
        """Invoke a user callback, keeping its failures out of the read loop."""
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception("Error in callback %r", callback)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def _report(self, status: ConnectionState) -> None:
        if status == ConnectionState.NOT_CONNECTED and self._status == status:
            return
        self._status = status
        self._fire(self._status_changed, status)

    async def _get_token(self) -> str | None:
        """Fetch an access token. Authentication may be optional, so failures
        are tolerated and the socket is opened without a token."""
        if self._token_fetcher is None:
            return None
        try:
            return await self._token_fetcher(self.config)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.info("No access token (%s), connecting without one", e)
            return None

    async def _run(self) -> None:
        """Open the channel and run the read loop until it closes."""
        channel: RpcChannel | None = None
        try:
            token = await self._get_token()
            try:
                channel = await self._channel_factory(self.config, token)
            except Exception as e:
                # aiohttp raises ClientError subclasses that are not OSErrors
                logger.warning("Failed to connect to %s: %s", self.config.websocket_url, e)
                return

            self._channel = channel
            self._writer_task = asyncio.create_task(self._write_loop(channel))
            logger.info("Connected to %s", self.config.websocket_url)
            self._report(ConnectionState.CONNECTED)
            await self._read_loop(channel)
        finally:
            self._channel = None
            if self._writer_task is not None:
                self._writer_task.cancel()
                self._writer_task = None
            if channel is not None:
                try:
                    await channel.close()
                except Exception as e:
                    logger.debug("Error closing channel: %s", e)
            self._report(ConnectionState.NOT_CONNECTED)

    async def _read_loop(self, channel: RpcChannel) -> None:
        while True:
            try:
                frame = await channel.receive()
            except ChannelError as e:
                # Never pertinent on its own; a close follows if it matters
                logger.warning("Websocket error (%s)", e)
                continue
            except ConnectionError as e:
                logger.info("Socket closed: %s", e)
                return
            try:
                self.handle_frame(frame)
            except Exception:
                logger.exception("Error handling frame")

    async def close(self) -> None:
        """Close the transport, failing every outstanding call."""
        if self._closed:
            return
        self._closed = True

        if self._expire_task is not None:
            self._expire_task.cancel()
            self._expire_task = None

        pending = list(self._pending.values())
        self._pending.clear()
        for entry in pending:
            self._fire(
                entry.on_failure,
                RpcError.disconnected(f"Transport closed before {entry.method} completed"),
            )

        if not self._run_task.done():
            self._run_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._run_task
