"""Duplex channel used by the transport.

The transport only needs text frames in both directions plus a close signal,
so any object implementing ``RpcChannel`` can stand in for the WebSocket
(tests use an in-memory pair).
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Protocol

import aiohttp

if TYPE_CHECKING:
    from torcweb.config import TransportConfig

logger = logging.getLogger(__name__)

TOKEN_FIELD = "accesstoken"


class ChannelError(Exception):
    """A channel-level error that does not by itself close the channel."""


class RpcChannel(Protocol):
    """Interface for a bidirectional text channel."""

    async def send(self, message: str) -> None:
        """Send a frame to the peer."""
        ...

    async def receive(self) -> str | bytes:
        """Receive a frame. Binary frames are returned undecoded.

        Raises:
            ConnectionError: The channel has closed
            ChannelError: The channel reported an error
        """
        ...

    async def close(self) -> None:
        """Close the channel."""
        ...


ChannelFactory = Callable[["TransportConfig", "str | None"], Awaitable[RpcChannel]]
TokenFetcher = Callable[["TransportConfig"], Awaitable["str | None"]]


class WebSocketChannel:
    """aiohttp WebSocket wrapped as an ``RpcChannel``."""

    __slots__ = ("_session", "_ws", "_closed")

    def __init__(
        self,
        session: aiohttp.ClientSession,
        ws: aiohttp.ClientWebSocketResponse,
    ) -> None:
        self._session = session
        self._ws = ws
        self._closed = False

    @property
    def protocol(self) -> str | None:
        """The subprotocol the server agreed to."""
        return self._ws.protocol

    async def send(self, message: str) -> None:
        if self._closed or self._ws.closed:
            raise ConnectionError("WebSocket is closed")
        await self._ws.send_str(message)

    async def receive(self) -> str | bytes:
        if self._closed:
            raise ConnectionError("WebSocket is closed")

        msg = await self._ws.receive()

        if msg.type == aiohttp.WSMsgType.TEXT:
            return msg.data
        elif msg.type == aiohttp.WSMsgType.BINARY:
            return msg.data
        elif msg.type in (
            aiohttp.WSMsgType.CLOSE,
            aiohttp.WSMsgType.CLOSING,
            aiohttp.WSMsgType.CLOSED,
        ):
            self._closed = True
            raise ConnectionError(f"WebSocket closed: {self._ws.close_code}")
        elif msg.type == aiohttp.WSMsgType.ERROR:
            raise ChannelError(f"WebSocket error: {self._ws.exception()}")
        else:
            raise ChannelError(f"Unexpected message type: {msg.type}")

    async def close(self) -> None:
        self._closed = True
        try:
            await self._ws.close()
        finally:
            await self._session.close()


async def connect_websocket(config: TransportConfig, token: str | None) -> WebSocketChannel:
    """Open the WebSocket, offering the configured subprotocol.

    Args:
        config: Transport settings
        token: Access token, appended as a query parameter when present
    """
    params = {TOKEN_FIELD: token} if token else None
    session = aiohttp.ClientSession()
    try:
        ws = await session.ws_connect(
            config.websocket_url,
            protocols=(config.subprotocol,),
            params=params,
        )
    except BaseException:
        await session.close()
        raise
    return WebSocketChannel(session, ws)


async def fetch_token(config: TransportConfig) -> str | None:
    """Request a WebSocket access token from the server.

    Returns:
        The token, or None if the server did not hand one out

    Raises:
        aiohttp.ClientError: The request failed
        asyncio.TimeoutError: The server did not answer in time
        ValueError: The body was not JSON
    """
    timeout = aiohttp.ClientTimeout(total=config.token_timeout)
    async with aiohttp.ClientSession(timeout=timeout) as session:
        async with session.get(config.token_url) as response:
            response.raise_for_status()
            body: Any = await response.json(content_type=None)

    token = body.get(TOKEN_FIELD) if isinstance(body, dict) else None
    if isinstance(token, str) and token:
        return token
    logger.debug("No access token in response from %s", config.token_url)
    return None
