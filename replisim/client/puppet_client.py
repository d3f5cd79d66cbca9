"""
Puppet RPC operations used by the simulator.

Each operation opens a fresh session through the configured
``TransportFactory``, performs one logical request and closes the session
again. Low-level ``OSError`` and ``TimeoutError`` are wrapped in
``TransportError`` so the engine only has to know about the simulator's own
error taxonomy.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

import orjson
from loguru import logger

from replisim.core.errors import (
    AssertionFailure,
    ProcessError,
    TransportError,
    TransportTimeoutError,
)
from replisim.core.instruction import SequenceTarget
from replisim.core.puppet import Puppet
from replisim.datastructures.type_aliases import (
    DurationSeconds,
    FeedId,
    HostAddress,
    MessageCount,
    SequenceNumber,
)

from .transport import PuppetTransport, StreamOptions, TransportFactory

POST_TEXT = "bep"


@dataclass(frozen=True, slots=True)
class FeedLatest:
    """One entry of a peer's ``replicate.upto`` answer."""

    id: FeedId
    sequence: SequenceNumber

    @classmethod
    def from_wire(cls, item: Any) -> FeedLatest:
        if not isinstance(item, dict) or "id" not in item:
            raise TransportError(f"unexpected replicate.upto item: {item!r}")
        try:
            return cls(id=str(item["id"]), sequence=int(item.get("sequence", 0)))
        except (TypeError, ValueError) as e:
            raise TransportError(f"unexpected replicate.upto item: {item!r}") from e


def contact_message(contact: FeedId, following: bool) -> dict[str, Any]:
    return {"type": "contact", "contact": contact, "following": following}


def post_message(text: str = POST_TEXT) -> dict[str, Any]:
    return {"type": "post", "text": text}


def _require_feed(puppet: Puppet) -> FeedId:
    if not puppet.feed_id:
        raise ProcessError(f"{puppet.name} has no known feed id; start it first")
    return puppet.feed_id


class PuppetClient:
    """High-level RPC operations against running puppets."""

    def __init__(
        self, factory: TransportFactory, *, host: HostAddress = "localhost"
    ) -> None:
        self.factory = factory
        self.host = host

    @asynccontextmanager
    async def session(self, puppet: Puppet) -> AsyncIterator[PuppetTransport]:
        endpoint = puppet.endpoint(self.host)
        try:
            transport = await self.factory(endpoint)
        except TimeoutError as e:
            raise TransportTimeoutError(
                f"timed out connecting to {puppet.name} on port {endpoint.port}"
            ) from e
        except OSError as e:
            raise TransportError(
                f"could not connect to {puppet.name} on port {endpoint.port}: {e}"
            ) from e

        try:
            yield transport
        except TimeoutError as e:
            raise TransportTimeoutError(f"request to {puppet.name} timed out") from e
        except OSError as e:
            raise TransportError(f"request to {puppet.name} failed: {e}") from e
        finally:
            await transport.close()

    async def _call(self, puppet: Puppet, method: str, *args: Any) -> Any:
        async with self.session(puppet) as transport:
            return await transport.call(method, *args)

    async def _collect(
        self, puppet: Puppet, method: str, options: StreamOptions | None = None
    ) -> list[Any]:
        async with self.session(puppet) as transport:
            return [item async for item in transport.stream(method, options)]

    async def whoami(self, puppet: Puppet) -> FeedId:
        response = await self._call(puppet, "whoami")
        if not isinstance(response, dict) or not response.get("id"):
            raise TransportError(f"unexpected whoami response: {response!r}")
        return str(response["id"])

    async def query_latest(self, puppet: Puppet) -> list[FeedLatest]:
        items = await self._collect(puppet, "replicate.upto")
        return [FeedLatest.from_wire(item) for item in items]

    async def count_messages(self, puppet: Puppet) -> MessageCount:
        """Refresh and return the total number of messages the puppet stores."""
        latest = await self.query_latest(puppet)
        puppet.total_messages = sum(entry.sequence for entry in latest)
        return puppet.total_messages

    async def connect(self, src: Puppet, dst: Puppet) -> None:
        await self._call(src, "conn.connect", dst.multiserver_address(self.host))

    async def disconnect(self, src: Puppet, dst: Puppet) -> None:
        await self._call(src, "conn.disconnect", dst.multiserver_address(self.host))

    async def publish_content(self, puppet: Puppet, content: dict[str, Any]) -> Any:
        return await self._call(puppet, "publish", content)

    async def publish_follow(self, src: Puppet, dst: Puppet, following: bool) -> Any:
        return await self.publish_content(
            src, contact_message(_require_feed(dst), following)
        )

    async def publish_post(self, puppet: Puppet) -> Any:
        return await self.publish_content(puppet, post_message())

    async def is_following(self, src: Puppet, dst: Puppet) -> bool:
        response = await self._call(
            src,
            "friends.isFollowing",
            {"source": _require_feed(src), "dest": _require_feed(dst)},
        )
        if not isinstance(response, bool):
            raise TransportError(f"unexpected friends.isFollowing response: {response!r}")
        return response

    async def check_has(self, src: Puppet, dst: Puppet, target: SequenceTarget) -> str:
        """Assert that ``src`` stores ``dst``'s feed at exactly ``target``.

        Returns the diagnostic describing how ``latest`` was resolved, if it
        was used.
        """
        dst_id = _require_feed(dst)
        expected = target.resolve(dst.seqno)
        assumption = describe_assumption(dst, target)

        latest = await self.query_latest(src)
        record = next((entry for entry in latest if entry.id == dst_id), None)
        if record is None:
            # nothing stored only matches a feed nobody has written to yet
            if expected == 0 and dst.seqno == 0:
                return assumption
            raise AssertionFailure(
                f"expected {src.name} to have {dst.name}; it didn't "
                f"(feed {dst_id} not stored)",
                expected=f"{dst_id} at sequence {expected}",
                actual="no record",
            )

        if record.sequence != expected:
            raise AssertionFailure(
                "sequences didn't match",
                expected=f"{dst_id} at sequence {expected}",
                actual=f"{record.id} at sequence {record.sequence}",
            )
        return assumption

    async def wait_until(
        self,
        src: Puppet,
        dst: Puppet,
        sequence: SequenceNumber,
        *,
        timeout: DurationSeconds,
    ) -> str:
        """Block until ``src`` serves ``dst``'s message number ``sequence``.

        Returns the first history item received, pretty-printed.
        """
        options = StreamOptions(
            seq=sequence,
            live=True,
            limit=1,
            extra={"id": _require_feed(dst)},
        )

        async def first_item() -> Any:
            async with self.session(src) as transport:
                async for item in transport.stream("createHistoryStream", options):
                    return item
            raise TransportError("createHistoryStream ended without a message")

        try:
            item = await asyncio.wait_for(first_item(), timeout=timeout)
        except TimeoutError as e:
            raise TransportTimeoutError(
                f"createHistoryStream on {src.name} timed out after {timeout}s"
            ) from e
        return pretty_json(item)

    async def read_log(self, puppet: Puppet, amount: int) -> str:
        """Return the last ``amount`` messages of the puppet's log."""
        items = await self._collect(
            puppet, "createLogStream", StreamOptions(limit=amount, reverse=True)
        )
        logger.debug("Read {} log entries from {}", len(items), puppet.name)
        return "\n".join(pretty_json(item) for item in items)


def describe_assumption(dst: Puppet, target: SequenceTarget) -> str:
    if not target.is_latest:
        return ""
    return f"assuming {dst.name}@latest => {dst.name}@{dst.seqno}"


def pretty_json(item: Any) -> str:
    return orjson.dumps(item, option=orjson.OPT_INDENT_2).decode()
