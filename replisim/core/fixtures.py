"""
Fixture side files.

A fixtures root prepared by the log-splicing tool holds one folder per
identity (``<folder>/secret``, ``<folder>/flume/log.offset``) plus:

- ``secret-ids.json``: feed id -> ``{"folder": str, "latest": int}``
- ``follow-graph.json``: feed id -> {feed id -> bool}
- ``expectations.json`` (written by ``replisim expectations``): feed id ->
  [feed id, ...]
"""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from replisim.datastructures.type_aliases import (
    ExpectationMap,
    FeedId,
    PuppetName,
    SecretFolder,
    SequenceNumber,
)
from replisim.serialization import JsonSerializer

from .errors import ConfigurationError

IDENTITIES_FILENAME = "secret-ids.json"
FOLLOW_GRAPH_FILENAME = "follow-graph.json"
EXPECTATIONS_FILENAME = "expectations.json"

_serializer = JsonSerializer()
_pretty_serializer = JsonSerializer(indent=True)


class FixtureFeed(BaseModel):
    """One identity in ``secret-ids.json``."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    folder: SecretFolder = Field(description="Folder holding the identity's secret.")
    latest: SequenceNumber = Field(
        default=0, ge=0, description="Sequence number of the last spliced message."
    )


type IdentityMap = dict[FeedId, FixtureFeed]


def read_json(path: Path) -> object:
    try:
        return _serializer.deserialize(path.read_bytes())
    except FileNotFoundError as e:
        raise ConfigurationError(f"{path} does not exist") from e
    except OSError as e:
        raise ConfigurationError(f"could not read {path}: {e}") from e
    except ValueError as e:
        raise ConfigurationError(f"{path} is not valid JSON: {e}") from e


def write_json(path: Path, data: object) -> None:
    try:
        path.write_bytes(_pretty_serializer.serialize(data) + b"\n")
    except OSError as e:
        raise ConfigurationError(f"could not write {path}: {e}") from e


def parse_identities(raw: object, *, source: str = IDENTITIES_FILENAME) -> IdentityMap:
    if not isinstance(raw, Mapping):
        raise ConfigurationError(f"{source} must contain a JSON object")
    identities: IdentityMap = {}
    for feed_id, info in raw.items():
        try:
            identities[feed_id] = FixtureFeed.model_validate(info)
        except ValidationError as e:
            raise ConfigurationError(f"{source}: bad entry for {feed_id}: {e}") from e
    return identities


def load_identities(fixtures_dir: Path) -> IdentityMap:
    path = fixtures_dir / IDENTITIES_FILENAME
    if not path.is_file():
        raise ConfigurationError(
            f"fixtures folder {fixtures_dir} was missing file {IDENTITIES_FILENAME}; "
            "was it prepared with the log-splicing tool?"
        )
    identities = parse_identities(read_json(path), source=str(path))
    logger.debug("Loaded {} fixture identities from {}", len(identities), path)
    return identities


def names_by_id(identities: IdentityMap) -> dict[FeedId, PuppetName]:
    """Puppet names used by generated scripts are the secret folder names."""
    return {feed_id: feed.folder for feed_id, feed in identities.items()}


def load_expectations(path: Path) -> ExpectationMap:
    raw = read_json(path)
    if not isinstance(raw, Mapping):
        raise ConfigurationError(f"{path} must contain a JSON object")
    expectations: ExpectationMap = {}
    for feed_id, peers in raw.items():
        if not isinstance(peers, list) or not all(isinstance(p, str) for p in peers):
            raise ConfigurationError(f"{path}: {feed_id} must map to a list of ids")
        expectations[feed_id] = list(peers)
    return expectations


def write_expectations(path: Path, expectations: ExpectationMap) -> None:
    write_json(path, {feed_id: sorted(peers) for feed_id, peers in expectations.items()})
    logger.info("Wrote expectations for {} peers to {}", len(expectations), path)
