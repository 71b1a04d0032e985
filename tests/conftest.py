"""Pytest configuration for all tests."""

import asyncio
import json
from typing import Any

from torcweb.channel import ChannelError
from torcweb.config import ConnectionConfig, TransportConfig
from torcweb.transport import Transport


class InMemoryChannel:
    """In-memory channel for testing.

    The test plays the server: frames the client sends are collected in
    ``sent`` and frames pushed with ``push`` are delivered to the client.
    """

    def __init__(self) -> None:
        self.inbox: asyncio.Queue[str | bytes | BaseException] = asyncio.Queue()
        self.sent: list[str] = []
        self.closed = False

    async def send(self, message: str) -> None:
        """Send message to the server side."""
        if self.closed:
            raise ConnectionError("Channel closed")
        self.sent.append(message)

    async def receive(self) -> str | bytes:
        """Receive message from inbox."""
        item = await self.inbox.get()
        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self) -> None:
        """Close the channel."""
        if not self.closed:
            self.closed = True
            self.inbox.put_nowait(ConnectionError("Channel closed"))

    # Server side helpers

    def push(self, payload: Any) -> None:
        """Deliver a frame (JSON-encoded unless already a string or bytes)."""
        if not isinstance(payload, (str, bytes)):
            payload = json.dumps(payload)
        self.inbox.put_nowait(payload)

    def push_error(self, message: str = "boom") -> None:
        self.inbox.put_nowait(ChannelError(message))

    def drop(self) -> None:
        """Simulate the server closing the socket."""
        self.inbox.put_nowait(ConnectionError("Closed by peer"))

    def frames(self) -> list[Any]:
        """All frames sent by the client, decoded."""
        return [json.loads(frame) for frame in self.sent]

    def requests(self) -> list[dict[str, Any]]:
        """Sent frames that are calls (single objects with a method)."""
        return [f for f in self.frames() if isinstance(f, dict) and "method" in f]

    def reply(self, request: dict[str, Any], result: Any) -> None:
        self.push({"jsonrpc": "2.0", "result": result, "id": request["id"]})

    def reply_error(self, request: dict[str, Any], code: int = -32000, message: str = "failed") -> None:
        self.push({"jsonrpc": "2.0", "error": {"code": code, "message": message}, "id": request["id"]})


class ChannelFactory:
    """Channel factory recording every connect attempt."""

    def __init__(self, fail: bool = False) -> None:
        self.channels: list[InMemoryChannel] = []
        self.tokens: list[str | None] = []
        self.fail = fail

    async def __call__(self, config: TransportConfig, token: str | None) -> InMemoryChannel:
        self.tokens.append(token)
        if self.fail:
            raise ConnectionRefusedError("Connection refused")
        channel = InMemoryChannel()
        self.channels.append(channel)
        return channel

    @property
    def channel(self) -> InMemoryChannel:
        return self.channels[-1]


async def token_abc(config: TransportConfig) -> str:
    return "abc"


async def token_unavailable(config: TransportConfig) -> str:
    raise ConnectionRefusedError("No token service")


FAST_TRANSPORT = TransportConfig(call_timeout=0.2, expire_interval=0.05)


async def settle(rounds: int = 10) -> None:
    """Let queued tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def open_transport(
    config: TransportConfig = FAST_TRANSPORT,
    token_fetcher: Any = token_abc,
) -> tuple[Transport, ChannelFactory, list]:
    """Create a transport over an in-memory channel and let it connect."""
    factory = ChannelFactory()
    statuses: list = []
    transport = Transport(
        config,
        statuses.append,
        channel_factory=factory,
        token_fetcher=token_fetcher,
    )
    await settle()
    return transport, factory, statuses


def transport_factory_for(factory: ChannelFactory, token_fetcher: Any = token_abc):
    """Transport factory for Connection that uses in-memory channels."""

    def create(config: ConnectionConfig, status_changed: Any) -> Transport:
        return Transport(
            config.transport,
            status_changed,
            channel_factory=factory,
            token_fetcher=token_fetcher,
        )

    return create


class CallbackRecorder:
    """Records every invocation of a callback."""

    def __init__(self) -> None:
        self.calls: list[tuple] = []

    def __call__(self, *args: Any) -> None:
        self.calls.append(args)

    @property
    def count(self) -> int:
        return len(self.calls)
