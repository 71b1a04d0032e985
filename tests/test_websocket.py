"""End-to-end tests against a real aiohttp WebSocket server.

The server plays a small device: it hands out an access token, answers the
service directory and the power service, and pushes property changes.
"""

import asyncio
import json

import pytest
from aiohttp import WSMsgType, test_utils, web

from torcweb.config import ConnectionConfig, TransportConfig
from torcweb.connection import Connection
from torcweb.types import ConnectionState

from tests.conftest import CallbackRecorder

SUBPROTOCOL = "torc.json-rpc"

RESULTS = {
    "/services/Subscribe": {
        "version": 1,
        "methods": ["Subscribe"],
        "properties": {
            "serviceList": {
                "notification": "Changed",
                "value": {"power": {"path": "/services/power/"}},
            },
        },
    },
    "/services/power/Subscribe": {
        "version": 1,
        "methods": ["Suspend", "Shutdown"],
        "properties": {
            "canSuspend": {"notification": "canSuspendChanged", "value": True},
        },
    },
    "/services/power/Suspend": True,
}


class DeviceServer:
    """Minimal server speaking the device protocol."""

    def __init__(self, with_token: bool = True) -> None:
        self.tokens: list[str | None] = []
        self.protocols: list[str | None] = []
        self.sockets: list[web.WebSocketResponse] = []
        self.received: list = []

        app = web.Application()
        if with_token:
            app.router.add_get("/services/GetWebSocketToken", self.token)
        app.router.add_get("/", self.websocket)
        self.server = test_utils.TestServer(app, host="127.0.0.1")

    async def start(self) -> None:
        await self.server.start_server()

    async def stop(self) -> None:
        await self.server.close()

    @property
    def authority(self) -> str:
        return f"127.0.0.1:{self.server.port}"

    async def token(self, request: web.Request) -> web.Response:
        return web.json_response({"accesstoken": "abc"})

    async def websocket(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(protocols=(SUBPROTOCOL,))
        await ws.prepare(request)
        self.tokens.append(request.query.get("accesstoken"))
        self.protocols.append(ws.ws_protocol)
        self.sockets.append(ws)

        async for msg in ws:
            if msg.type != WSMsgType.TEXT:
                continue
            data = json.loads(msg.data)
            self.received.append(data)
            if data.get("method") == "/services/power/Shutdown":
                await ws.close()
                break
            if "method" in data and "id" in data:
                await ws.send_str(json.dumps({
                    "jsonrpc": "2.0",
                    "result": RESULTS.get(data["method"]),
                    "id": data["id"],
                }))
        return ws

    async def notify(self, method: str, params: dict) -> None:
        await self.sockets[-1].send_str(json.dumps({"jsonrpc": "2.0", "method": method, "params": params}))


async def wait_for(predicate, timeout: float = 5.0) -> None:
    """Poll until predicate() is true."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("Condition not met in time")
        await asyncio.sleep(0.01)


def connection_config(server: DeviceServer) -> ConnectionConfig:
    return ConnectionConfig(
        transport=TransportConfig(server_authority=server.authority),
        reconnect_delay=30.0,
    )


@pytest.mark.asyncio
class TestWebSocket:
    """Full stack over a real socket."""

    async def test_discovery_subscribe_and_call(self):
        server = DeviceServer()
        await server.start()
        try:
            async with Connection(connection_config(server)) as connection:
                await wait_for(lambda: connection.state is ConnectionState.READY)

                assert server.tokens == ["abc"]
                assert server.protocols == [SUBPROTOCOL]
                assert connection.service_path("power") == "/services/power/"

                changed = CallbackRecorder()
                notified = CallbackRecorder()
                connection.subscribe("power", ["canSuspend"], changed, notified)
                await wait_for(lambda: notified.count == 1)

                await server.notify("/services/power/canSuspendChanged", {"value": False})
                await wait_for(lambda: changed.count == 1)
                assert changed.calls == [("canSuspend", False)]

                assert await connection.call_async("power", "Suspend") is True
        finally:
            await server.stop()

    async def test_server_close(self):
        server = DeviceServer()
        await server.start()
        statuses: list = []
        try:
            async with Connection(connection_config(server), statuses.append) as connection:
                await wait_for(lambda: connection.state is ConnectionState.READY)
                notified = CallbackRecorder()
                connection.subscribe("power", [], None, notified)
                await wait_for(lambda: notified.count == 1)

                connection.call("power", "Shutdown")
                await wait_for(lambda: connection.state is ConnectionState.NOT_CONNECTED)

                assert statuses[-1] is ConnectionState.NOT_CONNECTED
                assert notified.calls[-1] == ()
                assert connection.subscription("power") is None
        finally:
            await server.stop()

    async def test_connects_without_token(self):
        server = DeviceServer(with_token=False)
        await server.start()
        try:
            async with Connection(connection_config(server)) as connection:
                await wait_for(lambda: connection.state is ConnectionState.READY)
                assert server.tokens == [None]
        finally:
            await server.stop()

    async def test_undecodable_binary_frame_answered(self):
        server = DeviceServer()
        await server.start()
        try:
            async with Connection(connection_config(server)) as connection:
                await wait_for(lambda: connection.state is ConnectionState.READY)

                await server.sockets[-1].send_bytes(b"\xff\xfe")
                await wait_for(lambda: any("error" in frame for frame in server.received))

                [reply] = [frame for frame in server.received if "error" in frame]
                assert reply["error"]["code"] == -32700
                assert reply["id"] is None
                assert connection.state is ConnectionState.READY
        finally:
            await server.stop()
