"""
Tests for the JSON-over-websocket bridge transport.

A small in-process bridge answers requests so that the transport is exercised
over a real websocket connection:

- request/response calls and peer-reported errors
- streams, including the close frame sent when a stream is abandoned
- frames for unknown requests being skipped
- connection failures surfacing as TransportError
"""

import asyncio
import socket
from contextlib import aclosing, asynccontextmanager
from pathlib import Path

import orjson
import pytest
import websockets

from replisim.client.transport import PuppetEndpoint, StreamOptions
from replisim.client.websocket_transport import (
    WebSocketPuppetTransport,
    websocket_transport_factory,
)
from replisim.core.config import DEFAULT_CAPS
from replisim.core.errors import TransportError

FEED = "@alice.ed25519"


class FakeBridge:
    """Answers bridge frames the way a shim-side bridge would."""

    def __init__(self) -> None:
        self.requests: list[dict] = []
        self.closed_streams: list[str] = []
        self.stream_closed = asyncio.Event()

    async def _reply(self, websocket, u: str, **fields) -> None:
        await websocket.send(orjson.dumps({"role": "response", "u": u, **fields}))

    async def handler(self, websocket) -> None:
        async for raw in websocket:
            frame = orjson.loads(raw)
            if frame["role"] == "close":
                self.closed_streams.append(frame["u"])
                self.stream_closed.set()
                continue
            self.requests.append(frame)
            u = frame["u"]
            match frame["method"]:
                case "whoami":
                    await self._reply(websocket, "someone-else", result=None)
                    await self._reply(websocket, u, result={"id": FEED})
                case "replicate.upto":
                    for seq in (3, 5):
                        await self._reply(
                            websocket, u, result={"id": f"@{seq}.ed25519", "sequence": seq}
                        )
                    await self._reply(websocket, u, end=True)
                case "createLogStream":
                    for n in range(frame["args"][0]["limit"] * 10):
                        await self._reply(websocket, u, result={"value": {"sequence": n}})
                case _:
                    await self._reply(
                        websocket,
                        u,
                        error={"name": "NotFound", "message": f"no method {frame['method']}"},
                    )


def endpoint_for(bridge_port: int) -> PuppetEndpoint:
    # the bridge listens on the secondary port
    return PuppetEndpoint(
        host="127.0.0.1",
        port=bridge_port - 1,
        caps=DEFAULT_CAPS,
        secret_path=Path("/nonexistent/secret"),
    )


@asynccontextmanager
async def running_bridge():
    bridge = FakeBridge()
    async with websockets.serve(bridge.handler, "127.0.0.1", 0) as server:
        port = next(iter(server.sockets)).getsockname()[1]
        yield bridge, endpoint_for(port)


def unused_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


class TestWebSocketPuppetTransport:
    def test_url_uses_secondary_port(self):
        transport = WebSocketPuppetTransport(endpoint_for(18889))
        assert transport.url == "ws://127.0.0.1:18889/"

    @pytest.mark.asyncio
    async def test_call_round_trip(self):
        async with running_bridge() as (bridge, endpoint):
            transport = await websocket_transport_factory(endpoint)
            try:
                assert await transport.call("whoami") == {"id": FEED}
            finally:
                await transport.close()

        request = bridge.requests[0]
        assert request["kind"] == "async"
        assert request["caps"] == DEFAULT_CAPS
        assert request["args"] == []

    @pytest.mark.asyncio
    async def test_peer_errors_raise(self):
        async with running_bridge() as (_, endpoint):
            transport = await websocket_transport_factory(endpoint)
            try:
                with pytest.raises(TransportError, match="NotFound: no method bogus"):
                    await transport.call("bogus", 1)
            finally:
                await transport.close()

    @pytest.mark.asyncio
    async def test_stream_until_end(self):
        async with running_bridge() as (bridge, endpoint):
            transport = await websocket_transport_factory(endpoint)
            try:
                items = [item async for item in transport.stream("replicate.upto")]
            finally:
                await transport.close()

        assert [item["sequence"] for item in items] == [3, 5]
        assert bridge.requests[0]["kind"] == "source"
        assert bridge.closed_streams == []

    @pytest.mark.asyncio
    async def test_abandoned_stream_sends_close(self):
        async with running_bridge() as (bridge, endpoint):
            transport = await websocket_transport_factory(endpoint)
            try:
                stream = transport.stream(
                    "createLogStream", StreamOptions(limit=1, reverse=True)
                )
                async with aclosing(stream):
                    async for item in stream:
                        assert item == {"value": {"sequence": 0}}
                        break
                await asyncio.wait_for(bridge.stream_closed.wait(), timeout=5)
            finally:
                await transport.close()

        assert bridge.requests[0]["args"] == [{"limit": 1, "reverse": True}]
        assert bridge.closed_streams == [bridge.requests[0]["u"]]

    @pytest.mark.asyncio
    async def test_connection_refused(self):
        endpoint = endpoint_for(unused_port())
        with pytest.raises(TransportError, match="bridge connection"):
            await websocket_transport_factory(endpoint)

    @pytest.mark.asyncio
    async def test_call_before_open(self):
        transport = WebSocketPuppetTransport(endpoint_for(18889))
        with pytest.raises(TransportError, match="not open"):
            await transport.call("whoami")
        # closing an unopened session is a no-op
        await transport.close()
