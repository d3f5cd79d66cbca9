from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import orjson


class Serializer(ABC):
    """Abstract base class for data serialization."""

    @abstractmethod
    def serialize(self, data: Any) -> bytes:
        """Serializes data into bytes."""

    @abstractmethod
    def deserialize(self, data: bytes | str) -> Any:
        """Deserializes bytes into data."""


class JsonSerializer(Serializer):
    """orjson serializer used for the wire bridge and the JSON side files."""

    def __init__(self, *, indent: bool = False) -> None:
        self._option = orjson.OPT_INDENT_2 if indent else 0

    def serialize(self, data: Any) -> bytes:
        # orjson can't serialize sets or paths directly
        def default(obj: Any) -> Any:
            if isinstance(obj, (set, frozenset)):
                return sorted(obj)
            if isinstance(obj, Path):
                return str(obj)
            raise TypeError

        return orjson.dumps(data, default=default, option=self._option)

    def deserialize(self, data: bytes | str) -> Any:
        return orjson.loads(data)
