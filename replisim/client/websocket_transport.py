"""
JSON-over-websocket puppet transport.

Shims that cannot expose their native RPC directly to Python may run a small
bridge on the puppet's reserved secondary port (``port + 1``). The bridge
accepts ``BridgeRequest`` frames, runs them against the peer it belongs to
(which already holds the puppet's secret) and answers with ``BridgeResponse``
frames carrying the same ``u`` identifier.

Error Handling:
    - Connection failures raise TransportError
    - Timeouts raise TransportTimeoutError
    - Errors reported by the peer raise TransportError with the peer's message
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Any

import ulid
import websockets
from loguru import logger
from pydantic import ValidationError
from websockets.exceptions import ConnectionClosed, WebSocketException

from replisim.core.errors import TransportError, TransportTimeoutError
from replisim.serialization import JsonSerializer

from .model import BridgeClose, BridgeRequest, BridgeResponse
from .transport import PuppetEndpoint, PuppetTransport, StreamOptions

DEFAULT_OPEN_TIMEOUT = 10.0


class WebSocketPuppetTransport:
    """One bridge session; requests run one at a time."""

    def __init__(
        self,
        endpoint: PuppetEndpoint,
        *,
        open_timeout: float = DEFAULT_OPEN_TIMEOUT,
    ) -> None:
        self.endpoint = endpoint
        self.url = f"ws://{endpoint.host}:{endpoint.secondary_port}/"
        self.open_timeout = open_timeout
        self.serializer = JsonSerializer()
        self.websocket: Any = None

    async def open(self) -> WebSocketPuppetTransport:
        try:
            self.websocket = await asyncio.wait_for(
                websockets.connect(self.url, max_size=None),
                timeout=self.open_timeout,
            )
        except TimeoutError as e:
            raise TransportTimeoutError(f"bridge connection timeout: {self.url}") from e
        except (OSError, WebSocketException) as e:
            raise TransportError(f"bridge connection to {self.url} failed: {e}") from e
        logger.debug("Opened bridge session {}", self.url)
        return self

    async def _send(self, frame: BridgeRequest | BridgeClose) -> None:
        if self.websocket is None:
            raise TransportError("bridge session is not open")
        try:
            await self.websocket.send(self.serializer.serialize(frame.model_dump()))
        except ConnectionClosed as e:
            raise TransportError(f"bridge connection closed: {e}") from e
        except WebSocketException as e:
            raise TransportError(f"bridge send error: {e}") from e

    async def _receive(self, request_id: str) -> BridgeResponse:
        assert self.websocket is not None
        while True:
            try:
                raw = await self.websocket.recv()
            except ConnectionClosed as e:
                raise TransportError(f"bridge connection closed: {e}") from e
            except WebSocketException as e:
                raise TransportError(f"bridge receive error: {e}") from e

            try:
                response = BridgeResponse.model_validate(
                    self.serializer.deserialize(raw)
                )
            except (ValueError, ValidationError) as e:
                raise TransportError(f"malformed bridge frame: {e}") from e

            if response.u != request_id:
                logger.warning("Dropping bridge frame for unknown request {}", response.u)
                continue
            if response.error is not None:
                raise TransportError(
                    f"{response.error.name}: {response.error.message}"
                )
            return response

    def _request(self, method: str, args: tuple[Any, ...], kind: str) -> BridgeRequest:
        return BridgeRequest(
            u=str(ulid.new()),
            method=method,
            args=args,
            kind=kind,  # type: ignore[arg-type]
            caps=self.endpoint.caps,
        )

    async def call(self, method: str, *args: Any) -> Any:
        request = self._request(method, args, "async")
        await self._send(request)
        response = await self._receive(request.u)
        return response.result

    async def stream(
        self, method: str, options: StreamOptions | None = None
    ) -> AsyncIterator[Any]:
        args = ((options or StreamOptions()).to_dict(),)
        request = self._request(method, args, "source")
        await self._send(request)
        finished = False
        try:
            while True:
                response = await self._receive(request.u)
                if response.end:
                    finished = True
                    return
                yield response.result
        finally:
            if not finished and self.websocket is not None:
                try:
                    await self._send(BridgeClose(u=request.u))
                except TransportError:
                    logger.debug("Bridge session gone before stream {} was closed", request.u)

    async def close(self) -> None:
        if self.websocket is None:
            return
        websocket, self.websocket = self.websocket, None
        try:
            await websocket.close()
        except (OSError, WebSocketException) as e:
            logger.debug("Error closing bridge session {}: {}", self.url, e)


async def websocket_transport_factory(endpoint: PuppetEndpoint) -> PuppetTransport:
    """``TransportFactory`` opening a bridge session to ``endpoint``."""
    return await WebSocketPuppetTransport(endpoint).open()
