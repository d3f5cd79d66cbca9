"""
Script generation from a fixtures folder.

The generated script:

1. declares every fixture identity (``enter`` + ``load``), sorted by name;
2. starts the focus group, the puppets whose replicated state gets asserted;
3. sweeps the discovered follow edges, farthest from the focus group first,
   connecting each pair once per pass;
4. asserts with ``has`` that every focus puppet holds each expected feed;
5. stops the focus group.

Fixture-backed puppets start out holding only their own messages, so a single
inward sweep cannot carry multi-hop chains all the way to the focus group.
The sweep is therefore repeated ``passes`` times.
"""

from __future__ import annotations

import random
from collections.abc import Iterable
from typing import TextIO

from loguru import logger

from replisim.core.config import GeneratorSettings
from replisim.core.errors import ConfigurationError
from replisim.core.fixtures import IdentityMap, names_by_id
from replisim.core.instruction import LATEST, Command
from replisim.datastructures.type_aliases import ExpectationMap, FeedId, PuppetName
from replisim.replication.follow_graph import FollowGraph

from .traversal import Edge, discover_edges

FOCUS_NAME_FORMAT = "puppet-{:05d}"
DISCONNECT_WAIT_MS = 500


class ScriptGenerator:
    def __init__(
        self,
        graph: FollowGraph,
        identities: IdentityMap,
        expectations: ExpectationMap,
        settings: GeneratorSettings | None = None,
    ) -> None:
        self.graph = graph
        self.expectations = expectations
        self.settings = settings or GeneratorSettings()
        self.names = names_by_id(identities)
        self.ids = {name: feed_id for feed_id, name in self.names.items()}
        self.focus_group = self._pick_focus_group()
        self._running: set[PuppetName] = set()
        self._lines: list[str] = []
        self._waited_ms = 0

    def _pick_focus_group(self) -> list[PuppetName]:
        group = [FOCUS_NAME_FORMAT.format(i) for i in range(self.settings.focused_count)]
        missing = [name for name in group if name not in self.ids]
        if missing:
            raise ConfigurationError(
                f"focus puppets missing from the fixture identities: {', '.join(missing)}"
            )
        random.Random(self.settings.seed).shuffle(group)
        return group

    def name_of(self, feed_id: FeedId) -> PuppetName | None:
        return self.names.get(feed_id)

    def edges(self) -> list[Edge]:
        """Edges to connect, farthest from the focus group first."""
        seen_edges: set[tuple[FeedId, FeedId]] = set()
        edges: list[Edge] = []
        for name in self.focus_group:
            edges.extend(
                discover_edges(
                    self.graph,
                    self.ids[name],
                    self.settings.max_hops,
                    seen_edges=seen_edges,
                )
            )
        edges.reverse()
        return edges

    # -- emission ---------------------------------------------------------

    def _emit(self, command: Command, *args: str | int) -> None:
        self._lines.append(" ".join((command.value, *(str(arg) for arg in args))))

    def _start(self, names: Iterable[PuppetName]) -> None:
        for name in names:
            if name not in self._running:
                self._emit(Command.START, name, self.settings.implementation)
                self._running.add(name)

    def _stop(self, names: Iterable[PuppetName], *, include_focus: bool = False) -> None:
        for name in names:
            if name in self.focus_group and not include_focus:
                continue
            if name in self._running:
                self._running.discard(name)
                self._emit(Command.STOP, name)

    def _batch_connect(self, edge: Edge) -> None:
        if self.graph.is_blocking(edge.dst, edge.src):
            return
        src, dst = self.name_of(edge.src), self.name_of(edge.dst)
        if src is None or dst is None:
            logger.warning(
                "Skipping edge {} -> {}: no fixture identity for one of them",
                edge.src,
                edge.dst,
            )
            return
        self._start((src, dst))
        self._emit(Command.WAITUNTIL, src, f"{src}@{LATEST}")
        self._emit(Command.CONNECT, src, dst)
        self._emit(Command.WAITUNTIL, src, f"{dst}@{LATEST}")
        self._emit(Command.DISCONNECT, src, dst)
        self._emit(Command.WAIT, DISCONNECT_WAIT_MS)
        self._waited_ms += DISCONNECT_WAIT_MS
        self._stop((src, dst))

    def _assert_expectations(self, name: PuppetName) -> None:
        for peer in self.expectations.get(self.ids[name], []):
            peer_name = self.name_of(peer)
            if peer_name is None:
                logger.warning("{} expects {}, which has no fixture identity", name, peer)
                continue
            self._emit(Command.HAS, name, f"{peer_name}@{LATEST}")

    def generate_lines(self) -> list[str]:
        self._lines = []
        self._running = set()
        self._waited_ms = 0

        for name in sorted(self.ids):
            self._emit(Command.ENTER, name)
            self._emit(Command.LOAD, name, self.ids[name])

        self._start(self.focus_group)

        edges = self.edges()
        logger.info(
            "Connecting {} edges in {} passes for focus group {}",
            len(edges),
            self.settings.passes,
            ", ".join(self.focus_group),
        )
        for _ in range(self.settings.passes):
            for edge in edges:
                self._batch_connect(edge)

        for name in self.focus_group:
            self._assert_expectations(name)

        self._stop(self.focus_group, include_focus=True)
        self._emit(Command.COMMENT, f"total time: {self._waited_ms // 1000} seconds")
        return list(self._lines)

    def generate(self) -> str:
        return "".join(f"{line}\n" for line in self.generate_lines())

    def write(self, sink: TextIO) -> None:
        """Write the script to any text sink."""
        sink.write(self.generate())
