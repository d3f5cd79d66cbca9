"""Depth-limited discovery of follow edges around a focus peer."""

from __future__ import annotations

from dataclasses import dataclass

from replisim.datastructures.type_aliases import FeedId, HopCount
from replisim.replication.follow_graph import FollowGraph


@dataclass(frozen=True, slots=True)
class Edge:
    """Directed follow edge, tagged with the hop it was discovered at."""

    src: FeedId
    dst: FeedId
    depth: HopCount


def discover_edges(
    graph: FollowGraph,
    root: FeedId,
    max_hops: HopCount,
    *,
    seen_edges: set[tuple[FeedId, FeedId]] | None = None,
) -> list[Edge]:
    """Edges reachable from ``root`` within ``max_hops`` follows.

    A peer's own follows are recorded before recursing into them, so the
    edges of one hop come out before those they lead to. Each peer is
    expanded at most once per root; ``seen_edges`` can be shared across
    roots so an edge is only ever emitted once.
    """
    seen_peers: set[FeedId] = set()
    if seen_edges is None:
        seen_edges = set()

    def visit(peer: FeedId, hops_left: int) -> list[Edge]:
        seen_peers.add(peer)
        if hops_left <= 0:
            return []

        depth = max_hops - hops_left + 1
        follows = graph.follows(peer)
        edges: list[Edge] = []
        for other in follows:
            if other in seen_peers or (peer, other) in seen_edges:
                continue
            seen_edges.add((peer, other))
            edges.append(Edge(src=peer, dst=other, depth=depth))
        for other in follows:
            if other in seen_peers:
                continue
            edges.extend(visit(other, hops_left - 1))
        return edges

    return visit(root, max_hops)
