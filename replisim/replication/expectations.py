"""
Hops-limited replication expectations.

For every peer ``p`` of the follow graph a list of levels is built:

- ``hops[0] = {p}``
- ``hops[1]`` = the peers ``p`` follows
- ``hops[k]`` = union of ``f.hops[k - 1]`` for every ``f`` in ``p.hops[k - 1]``

Level ``k`` of every peer is computed from level ``k - 1`` of the others, so
all peers advance one level at a time.

Blocks are applied twice and in opposite directions:

1. while expanding, ``p`` never adds a peer that ``p`` itself blocks,
   whichever friend offered it;
2. while collapsing the levels, ``p`` drops every peer that blocks ``p``.

Both checks are skipped when blocked peers are replicated anyway.
"""

from __future__ import annotations

from pathlib import Path

from loguru import logger

from replisim.core.config import ExpectationSettings
from replisim.core.fixtures import EXPECTATIONS_FILENAME
from replisim.datastructures.type_aliases import ExpectationMap, FeedId

from .follow_graph import FollowGraph

type HopLevels = list[set[FeedId]]


def initial_levels(graph: FollowGraph, settings: ExpectationSettings) -> dict[FeedId, HopLevels]:
    levels: dict[FeedId, HopLevels] = {}
    for peer in graph:
        peer_levels: HopLevels = [{peer}]
        if settings.max_hops >= 1:
            peer_levels.append(set(graph.follows(peer)))
        levels[peer] = peer_levels
    return levels


def expand_level(
    graph: FollowGraph,
    levels: dict[FeedId, HopLevels],
    level: int,
    settings: ExpectationSettings,
) -> None:
    """Compute ``hops[level]`` for every peer from everyone's ``hops[level - 1]``."""
    additions: dict[FeedId, set[FeedId]] = {}
    for peer, peer_levels in levels.items():
        blocked = set() if settings.replicate_blocked else graph.blocks(peer)
        reached: set[FeedId] = set()
        for friend in peer_levels[level - 1]:
            friend_levels = levels.get(friend)
            # friends outside the graph contribute nothing
            if friend_levels is None or len(friend_levels) < level:
                continue
            reached.update(friend_levels[level - 1] - blocked)
        additions[peer] = reached

    for peer, reached in additions.items():
        levels[peer].append(reached)


def collapse(
    graph: FollowGraph,
    levels: dict[FeedId, HopLevels],
    settings: ExpectationSettings,
) -> ExpectationMap:
    expectations: ExpectationMap = {}
    for peer, peer_levels in levels.items():
        expected = set().union(*peer_levels[: settings.max_hops + 1])
        expected.discard(peer)
        if not settings.replicate_blocked:
            expected = {
                other for other in expected if not graph.is_blocking(other, peer)
            }
        expectations[peer] = sorted(expected)
    return expectations


def compute_expectations(
    graph: FollowGraph, settings: ExpectationSettings | None = None
) -> ExpectationMap:
    """Map every peer of ``graph`` to the sorted ids it should replicate."""
    settings = settings or ExpectationSettings()
    levels = initial_levels(graph, settings)
    for level in range(2, settings.max_hops + 1):
        expand_level(graph, levels, level, settings)
    expectations = collapse(graph, levels, settings)
    logger.debug(
        "Computed expectations for {} peers at {} hops (replicate blocked: {})",
        len(expectations),
        settings.max_hops,
        settings.replicate_blocked,
    )
    return expectations


def expectation_path(target: Path) -> Path:
    """``expectations.json`` next to ``target``, or inside it if it is a folder."""
    if target.suffix == ".json":
        return target.parent / EXPECTATIONS_FILENAME
    return target / EXPECTATIONS_FILENAME
