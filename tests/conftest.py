"""Pytest configuration and fixtures for replisim testing.

Simulator tests run real ``sim-shim.sh`` subprocesses (a shell script that
just sleeps) but talk to an in-memory ``FakeNetwork`` instead of real peers,
and replace wall-clock sleeps with a ``FakeClock``.
"""

import io
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from replisim.client.transport import PuppetEndpoint, StreamOptions
from replisim.core.config import SimulatorSettings
from replisim.core.errors import TransportError
from replisim.core.port_allocator import PortAllocator, PortPair
from replisim.core.retry import RetryPolicy
from replisim.core.simulator import Simulator
from replisim.core.tap import TapReporter

SLEEPING_SHIM = "#!/bin/sh\nexec sleep 60\n"


@dataclass
class FakePeer:
    feed_id: str
    # feed id -> latest sequence stored
    store: dict[str, int] = field(default_factory=dict)
    following: dict[str, bool] = field(default_factory=dict)
    connections: list[str] = field(default_factory=list)
    published: list[dict[str, Any]] = field(default_factory=list)

    def publish(self, content: dict[str, Any]) -> str:
        self.published.append(content)
        self.store[self.feed_id] = self.store.get(self.feed_id, 0) + 1
        if content.get("type") == "contact":
            self.following[content["contact"]] = content["following"]
        return f"%msg{len(self.published)}.sha256"


class FakeNetwork:
    """In-memory peers keyed by their RPC port."""

    def __init__(self) -> None:
        self.peers: dict[int, FakePeer] = {}
        self.calls: list[tuple[int, str, tuple[Any, ...]]] = []
        # method -> number of upcoming calls that fail
        self.failures: dict[str, int] = {}
        self.opened = 0
        self.closed = 0

    def peer(self, port: int) -> FakePeer:
        if port not in self.peers:
            self.peers[port] = FakePeer(feed_id=f"@peer{port}.ed25519")
        return self.peers[port]

    def fail(self, method: str, times: int) -> None:
        self.failures[method] = times

    def _maybe_fail(self, method: str) -> None:
        remaining = self.failures.get(method, 0)
        if remaining > 0:
            self.failures[method] = remaining - 1
            raise TransportError(f"{method} failed (injected)")

    async def factory(self, endpoint: PuppetEndpoint) -> "FakeTransport":
        self.opened += 1
        return FakeTransport(self, endpoint.port)


class FakeTransport:
    def __init__(self, network: FakeNetwork, port: int) -> None:
        self.network = network
        self.port = port

    @property
    def peer(self) -> FakePeer:
        return self.network.peer(self.port)

    async def call(self, method: str, *args: Any) -> Any:
        self.network.calls.append((self.port, method, args))
        self.network._maybe_fail(method)
        match method:
            case "whoami":
                return {"id": self.peer.feed_id}
            case "publish":
                return self.peer.publish(args[0])
            case "friends.isFollowing":
                return self.peer.following.get(args[0]["dest"], False)
            case "conn.connect" | "conn.disconnect":
                self.peer.connections.append(f"{method} {args[0]}")
                return None
        raise TransportError(f"unknown method {method}")

    async def stream(
        self, method: str, options: StreamOptions | None = None
    ) -> AsyncIterator[Any]:
        opts = (options or StreamOptions()).to_dict()
        self.network.calls.append((self.port, method, (opts,)))
        self.network._maybe_fail(method)
        match method:
            case "replicate.upto":
                for feed_id, sequence in self.peer.store.items():
                    yield {"id": feed_id, "sequence": sequence}
            case "createHistoryStream":
                if self.peer.store.get(opts["id"], 0) < opts["seq"]:
                    raise TransportError("history stream closed before message arrived")
                yield {"key": "%x.sha256", "value": {"sequence": opts["seq"]}}
            case "createLogStream":
                for n in range(opts.get("limit", 1)):
                    yield {"value": {"sequence": n + 1}}
            case _:
                raise TransportError(f"unknown stream {method}")

    async def close(self) -> None:
        self.network.closed += 1


class FakeClock:
    """Monotonic clock that only moves when something sleeps."""

    def __init__(self) -> None:
        self.now = 1000.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class UncheckedPortAllocator(PortAllocator):
    """Hands out port pairs without binding them."""

    async def _pair_is_free(self, pair: PortPair) -> bool:
        return True


@pytest.fixture
def shim_dir(tmp_path: Path) -> Path:
    impl = tmp_path / "go"
    impl.mkdir()
    shim = impl / "sim-shim.sh"
    shim.write_text(SLEEPING_SHIM)
    shim.chmod(0o755)
    return impl


@pytest.fixture
def network() -> FakeNetwork:
    return FakeNetwork()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings(tmp_path: Path, shim_dir: Path) -> SimulatorSettings:
    return SimulatorSettings(
        implementations={"go": shim_dir},
        out_dir=tmp_path / "puppets",
        stop_grace=2.0,
        waituntil_retry=RetryPolicy(max_attempts=3, backoff_seconds=1.0),
    )


@pytest.fixture
def make_simulator(settings, network, clock):
    """Build simulators that write TAP into a StringIO returned alongside."""

    def _make(**overrides: Any) -> tuple[Simulator, io.StringIO]:
        stream = io.StringIO()
        simulator = Simulator(
            overrides.pop("settings", settings),
            network.factory,
            reporter=TapReporter(stream=stream),
            sleep=clock.sleep,
            clock=clock,
            port_allocator=UncheckedPortAllocator(30000),
            **overrides,
        )
        return simulator, stream

    return _make
