"""
Semantic type aliases for replisim datastructures.

These aliases keep signatures self-documenting: a feed id and a puppet name
are both strings, but they are never interchangeable.
"""

from collections.abc import Mapping

# Time types
type Timestamp = float
type DurationSeconds = float
type DurationMilliseconds = int

# Identity types
type FeedId = str
type PuppetName = str
type ImplementationName = str
type SecretFolder = str
type CapsKey = str

# Network types
type HostAddress = str
type PortNumber = int
type MultiserverAddress = str

# Replication types
type SequenceNumber = int
type HopCount = int
type MessageCount = int

# Script types
type CommandArgs = tuple[str, ...]
type LineNumber = int

# Graph types
type RelationMap = Mapping[FeedId, bool | None]
type ExpectationMap = dict[FeedId, list[FeedId]]
