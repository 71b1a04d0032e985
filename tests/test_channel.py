"""Tests for the aiohttp WebSocket channel."""

import aiohttp
import pytest

from torcweb.channel import ChannelError, WebSocketChannel


class FakeWebSocket:
    """Stands in for aiohttp's client WebSocket, replaying queued messages."""

    def __init__(self, *messages: aiohttp.WSMessage) -> None:
        self.messages = list(messages)
        self.closed = False
        self.close_code = 1000

    async def receive(self) -> aiohttp.WSMessage:
        return self.messages.pop(0)

    def exception(self) -> BaseException:
        return RuntimeError("broken pipe")

    async def close(self) -> None:
        self.closed = True


class FakeSession:
    def __init__(self) -> None:
        self.closed = False

    async def close(self) -> None:
        self.closed = True


def message(kind: aiohttp.WSMsgType, data) -> aiohttp.WSMessage:
    return aiohttp.WSMessage(kind, data, None)


@pytest.mark.asyncio
class TestWebSocketChannel:

    async def test_text_frame(self):
        channel = WebSocketChannel(FakeSession(), FakeWebSocket(message(aiohttp.WSMsgType.TEXT, "{}")))
        assert await channel.receive() == "{}"

    async def test_binary_frame_returned_undecoded(self):
        ws = FakeWebSocket(message(aiohttp.WSMsgType.BINARY, b"\xff\xfe"))
        channel = WebSocketChannel(FakeSession(), ws)
        assert await channel.receive() == b"\xff\xfe"

    async def test_error_frame(self):
        channel = WebSocketChannel(FakeSession(), FakeWebSocket(message(aiohttp.WSMsgType.ERROR, None)))
        with pytest.raises(ChannelError):
            await channel.receive()

    async def test_close_frame(self):
        channel = WebSocketChannel(FakeSession(), FakeWebSocket(message(aiohttp.WSMsgType.CLOSE, 1000)))
        with pytest.raises(ConnectionError):
            await channel.receive()
        with pytest.raises(ConnectionError):
            await channel.send("{}")

    async def test_close_closes_session(self):
        session, ws = FakeSession(), FakeWebSocket()
        channel = WebSocketChannel(session, ws)

        await channel.close()

        assert ws.closed
        assert session.closed
