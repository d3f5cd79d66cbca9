"""
Error taxonomy for simulation runs.

Two kinds of errors exist from the engine's point of view:

- fatal errors (``ParseError``, ``ConfigurationError``) describe a structural
  problem with the script or the run configuration. They abort the whole run
  with ``Bail out!`` after the normal shutdown path has run.
- instruction errors (``AssertionFailure``, ``TransportError``,
  ``ProcessError``) fail only the instruction that raised them; the scan
  continues with the next instruction.
"""

from __future__ import annotations

from typing import Any


class SimulationError(Exception):
    """Base exception for everything the simulator reports."""

    fatal: bool = False


class ParseError(SimulationError):
    """Raised when a script line is malformed or misses an argument."""

    fatal = True

    def __init__(self, message: str, *, line: str = "", index: int = 0) -> None:
        super().__init__(message)
        self.line = line
        self.index = index


class ConfigurationError(SimulationError):
    """Raised for undeclared puppets, unknown implementations, bad caps or
    missing fixtures."""

    fatal = True


class AssertionFailure(SimulationError):
    """Raised when a puppet's observed state does not match the script."""

    def __init__(
        self, message: str, *, expected: Any = None, actual: Any = None
    ) -> None:
        super().__init__(message)
        self.expected = expected
        self.actual = actual

    def __str__(self) -> str:
        message = super().__str__()
        if self.expected is None and self.actual is None:
            return message
        return f"{message}\nexpected: {self.expected}\nactual: {self.actual}"


class TransportError(SimulationError):
    """Raised when an RPC against a puppet fails."""


class TransportTimeoutError(TransportError):
    """Raised when an RPC against a puppet did not answer in time."""


class ProcessError(SimulationError):
    """Raised when a puppet process cannot be spawned or stopped."""
