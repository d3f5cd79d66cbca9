"""Bounded retry policy for flaky transport calls."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from loguru import logger

from .errors import ConfigurationError, TransportError

DEFAULT_MAX_ATTEMPTS = 10
DEFAULT_BACKOFF_SECONDS = 1.0


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Fixed-backoff retry policy.

    The policy retries only ``TransportError``: assertion failures and fatal
    errors are surfaced on the first attempt.
    """

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_seconds: float = DEFAULT_BACKOFF_SECONDS

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ConfigurationError(
                f"retry policy needs at least one attempt, got {self.max_attempts}"
            )
        if self.backoff_seconds < 0:
            raise ConfigurationError(
                f"retry backoff must be non-negative, got {self.backoff_seconds}"
            )

    def worst_case_seconds(self, attempt_timeout: float) -> float:
        """Upper bound of wall-clock time spent by ``run``."""
        return self.max_attempts * (attempt_timeout + self.backoff_seconds)

    async def run[T](
        self,
        attempt: Callable[[], Awaitable[T]],
        *,
        sleep: Callable[[float], Awaitable[None]],
        is_cancelled: Callable[[], bool] = lambda: False,
        on_failure: Callable[[int, TransportError], None] | None = None,
    ) -> T:
        """Run ``attempt`` until it succeeds or the attempt budget is spent.

        ``is_cancelled`` is polled after every failed attempt and again after
        each backoff; once it reports true the last error is raised without
        starting another attempt.
        """
        last_error: TransportError | None = None
        for attempt_number in range(1, self.max_attempts + 1):
            try:
                return await attempt()
            except TransportError as e:
                last_error = e
                if on_failure is not None:
                    on_failure(attempt_number, e)
                logger.debug(
                    "Attempt {}/{} failed: {}", attempt_number, self.max_attempts, e
                )
                if is_cancelled():
                    break
                if attempt_number < self.max_attempts:
                    await sleep(self.backoff_seconds)
                    if is_cancelled():
                        break

        assert last_error is not None
        raise last_error
