"""Adjacent port-pair allocation for puppet processes."""

from __future__ import annotations

import asyncio
import socket
from dataclasses import dataclass

from loguru import logger

from replisim.datastructures.type_aliases import HostAddress, PortNumber

from .errors import ConfigurationError

port_log = logger


@dataclass(frozen=True, slots=True)
class PortPair:
    """Primary RPC port plus the reserved secondary port right after it."""

    primary: PortNumber

    @property
    def secondary(self) -> PortNumber:
        return self.primary + 1


def is_port_available(port: PortNumber, host: HostAddress = "localhost") -> bool:
    """Bind and immediately release ``port``."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind((host, port))
            sock.listen(1)
            return True
    except OSError:
        return False


class PortAllocator:
    """Hands out pairs of free adjacent ports starting at ``base_port``.

    Every attempt consumes two ports from the counter, whether or not the
    candidate pair turned out to be usable, so a port is never offered twice
    in the same run.
    """

    def __init__(
        self,
        base_port: PortNumber,
        *,
        max_attempts: int = 50,
        host: HostAddress = "localhost",
    ) -> None:
        self.base_port = base_port
        self.max_attempts = max_attempts
        self.host = host
        self.port_counter = 0

    async def _pair_is_free(self, pair: PortPair) -> bool:
        primary_ok, secondary_ok = await asyncio.gather(
            asyncio.to_thread(is_port_available, pair.primary, self.host),
            asyncio.to_thread(is_port_available, pair.secondary, self.host),
        )
        return primary_ok and secondary_ok

    async def acquire(self) -> PortPair:
        start_port = self.base_port + self.port_counter
        for _ in range(self.max_attempts):
            pair = PortPair(self.base_port + self.port_counter)
            self.port_counter += 2
            if await self._pair_is_free(pair):
                port_log.debug(
                    "Acquired ports {}/{}", pair.primary, pair.secondary
                )
                return pair
            port_log.debug(
                "Ports {}/{} unavailable, trying next pair",
                pair.primary,
                pair.secondary,
            )

        raise ConfigurationError(
            "Could not find any connectable ports in the range "
            f"[{start_port}, {start_port + 2 * self.max_attempts}]"
        )
