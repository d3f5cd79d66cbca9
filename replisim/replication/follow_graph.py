"""
Follow graph loaded from ``follow-graph.json``.

Each relation is tri-state: ``True`` means followed, ``False`` means blocked
and a missing (or ``null``) entry means nothing is known.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from pathlib import Path

from replisim.core.errors import ConfigurationError
from replisim.core.fixtures import FOLLOW_GRAPH_FILENAME, read_json
from replisim.datastructures.type_aliases import FeedId, RelationMap


@dataclass(slots=True)
class FollowGraph:
    relations: dict[FeedId, dict[FeedId, bool | None]] = field(default_factory=dict)

    def __contains__(self, peer: object) -> bool:
        return peer in self.relations

    def __iter__(self) -> Iterator[FeedId]:
        return iter(self.relations)

    def __len__(self) -> int:
        return len(self.relations)

    def peers(self) -> list[FeedId]:
        return list(self.relations)

    def follows(self, peer: FeedId) -> list[FeedId]:
        """Followed peers, in file order."""
        return [
            other
            for other, status in self.relations.get(peer, {}).items()
            if status is True
        ]

    def blocks(self, peer: FeedId) -> set[FeedId]:
        return {
            other
            for other, status in self.relations.get(peer, {}).items()
            if status is False
        }

    def is_blocking(self, blocker: FeedId, blocked: FeedId) -> bool:
        return self.relations.get(blocker, {}).get(blocked) is False

    @classmethod
    def from_mapping(
        cls, raw: Mapping[FeedId, RelationMap] | object, *, source: str = "follow graph"
    ) -> FollowGraph:
        if not isinstance(raw, Mapping):
            raise ConfigurationError(f"{source} must be a JSON object")
        relations: dict[FeedId, dict[FeedId, bool | None]] = {}
        for peer, peer_relations in raw.items():
            if not isinstance(peer_relations, Mapping):
                raise ConfigurationError(
                    f"{source}: relations of {peer} must be an object"
                )
            cleaned: dict[FeedId, bool | None] = {}
            for other, status in peer_relations.items():
                if status is not None and not isinstance(status, bool):
                    raise ConfigurationError(
                        f"{source}: relation {peer} -> {other} must be true, false "
                        f"or null, was {status!r}"
                    )
                cleaned[other] = status
            relations[peer] = cleaned
        return cls(relations=relations)

    @classmethod
    def load(cls, path: Path) -> FollowGraph:
        """Read a graph file, or ``follow-graph.json`` inside a directory."""
        if path.is_dir():
            path = path / FOLLOW_GRAPH_FILENAME
        return cls.from_mapping(read_json(path), source=str(path))
