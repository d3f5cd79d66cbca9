"""
Abstract transport contract between the simulator and a puppet.

The simulator never speaks a wire protocol itself. It asks a
``TransportFactory`` for a ``PuppetTransport`` bound to one puppet's
endpoint, issues one logical operation over it and closes it again. Any
implementation that can open an authenticated session to a peer and offer
request/response calls plus streaming calls can be plugged in.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from replisim.datastructures.type_aliases import (
    CapsKey,
    HostAddress,
    PortNumber,
)


@dataclass(frozen=True, slots=True)
class PuppetEndpoint:
    """Everything needed to open a session to a running puppet."""

    host: HostAddress
    port: PortNumber
    caps: CapsKey
    secret_path: Path

    @property
    def secondary_port(self) -> PortNumber:
        return self.port + 1


@dataclass(frozen=True, slots=True)
class StreamOptions:
    """Options understood by streaming calls.

    ``extra`` carries method-specific fields such as the feed id of a history
    stream.
    """

    limit: int | None = None
    reverse: bool = False
    seq: int | None = None
    live: bool = False
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        options: dict[str, Any] = dict(self.extra)
        if self.limit is not None:
            options["limit"] = self.limit
        if self.reverse:
            options["reverse"] = True
        if self.seq is not None:
            options["seq"] = self.seq
        if self.live:
            options["live"] = True
        return options


@runtime_checkable
class PuppetTransport(Protocol):
    """One open session to a puppet.

    Implementations raise ``replisim.core.errors.TransportError`` (or a
    subclass) for every failure they can attribute to the session.
    """

    async def call(self, method: str, *args: Any) -> Any: ...

    def stream(
        self, method: str, options: StreamOptions | None = None
    ) -> AsyncIterator[Any]: ...

    async def close(self) -> None: ...


type TransportFactory = Callable[[PuppetEndpoint], Awaitable[PuppetTransport]]
