"""Loguru setup for simulation runs.

TAP results own stdout, so every handler installed here writes to stderr
(or to the sink a caller passes in).

Records carry two extra fields, shown in every line:

- ``step``: the script line number being executed, set by the engine with
  ``instruction_context``
- ``puppet``: the puppet a record is about, bound with ``puppet_logger``

Debug output can be opened up per module (``core.simulator``) or per puppet
(``puppet:alice``) without lowering the level of the whole run.
"""

from __future__ import annotations

import sys
from collections.abc import Iterable
from contextlib import AbstractContextManager
from dataclasses import dataclass
from typing import Any, TextIO

from loguru import logger

from replisim.datastructures.type_aliases import LineNumber, PuppetName

NO_CONTEXT = "-"
PUPPET_SCOPE_PREFIX = "puppet:"

DEFAULT_LOG_FORMAT = (
    "{time:HH:mm:ss.SSS} | {level: <8} | "
    "{extra[step]: >4} {extra[puppet]: <14} | "
    "{name}:{function} - {message}"
)

logger.configure(extra={"step": NO_CONTEXT, "puppet": NO_CONTEXT})


def puppet_logger(name: PuppetName) -> Any:
    """Logger whose records are attributed to puppet ``name``."""
    return logger.bind(puppet=name)


def instruction_context(index: LineNumber) -> AbstractContextManager[None]:
    """Attribute every record emitted inside the block to script line ``index``."""
    return logger.contextualize(step=index)


@dataclass(frozen=True, slots=True)
class DebugScopes:
    """Module prefixes and puppet names whose debug records get through."""

    modules: tuple[str, ...] = ()
    puppets: frozenset[PuppetName] = frozenset()

    @classmethod
    def parse(cls, scopes: Iterable[str]) -> DebugScopes:
        modules: list[str] = []
        puppets: set[PuppetName] = set()
        for raw in scopes:
            scope = raw.strip()
            if not scope:
                continue
            if scope.startswith(PUPPET_SCOPE_PREFIX):
                puppets.add(scope.removeprefix(PUPPET_SCOPE_PREFIX))
            else:
                modules.append(scope)
        return cls(modules=tuple(modules), puppets=frozenset(puppets))

    def __bool__(self) -> bool:
        return bool(self.modules or self.puppets)

    def matches(self, record: dict[str, Any]) -> bool:
        if record["level"].name != "DEBUG":
            return False
        if record["extra"].get("puppet") in self.puppets:
            return True
        name = record["name"] or ""
        return any(
            name.startswith(scope) or name.startswith(f"replisim.{scope}")
            for scope in self.modules
        )


def configure_logging(
    level: str,
    *,
    debug_scopes: Iterable[str] = (),
    colorize: bool = False,
    sink: TextIO | None = None,
) -> tuple[int, ...]:
    """Replace all handlers with the run's stderr handlers."""
    logger.remove()
    target = sink if sink is not None else sys.stderr

    handler_ids = [
        logger.add(target, level=level, format=DEFAULT_LOG_FORMAT, colorize=colorize)
    ]

    scopes = DebugScopes.parse(debug_scopes)
    if scopes and level.upper() != "DEBUG":
        handler_ids.append(
            logger.add(
                target,
                level="DEBUG",
                format=DEFAULT_LOG_FORMAT,
                colorize=colorize,
                filter=scopes.matches,
            )
        )
    return tuple(handler_ids)
