"""TAP result stream writer."""

from __future__ import annotations

import sys
from dataclasses import dataclass, field
from typing import TextIO


@dataclass(slots=True)
class TapReporter:
    """Writes TAP version 13 lines to ``stream``.

    Counts outcomes so the caller can derive an exit status once the run is
    over.
    """

    stream: TextIO = field(default_factory=lambda: sys.stdout)
    passed: int = field(default=0, init=False)
    failed: int = field(default=0, init=False)
    bailed: bool = field(default=False, init=False)

    def _emit(self, text: str) -> None:
        self.stream.write(text + "\n")
        self.stream.flush()

    def version(self) -> None:
        self._emit("TAP version 13")

    def ok(self, index: int, text: str) -> None:
        self.passed += 1
        self._emit(f"ok {index} - {text}")

    def not_ok(self, index: int, text: str, reason: str = "") -> None:
        self.failed += 1
        self._emit(f"not ok {index} - {text}")
        self.diagnostic(reason)

    def bail_out(self, reason: str) -> None:
        self.bailed = True
        self._emit(f"Bail out! {reason}")

    def plan(self, count: int) -> None:
        self._emit(f"1..{count}")

    def diagnostic(self, text: str) -> None:
        """Emit ``text`` as ``#`` comment lines; empty text emits nothing."""
        if not text:
            return
        for line in text.split("\n"):
            self._emit(f"# {line}")

    @property
    def success(self) -> bool:
        return not self.bailed and self.failed == 0
