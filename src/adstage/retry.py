"""Bounded retry policy with an injectable wait function."""
from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import TypeVar

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

Sleeper = Callable[[float], None]


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """Maximum attempts plus a fixed (``backoff == 1``) or growing delay."""

    attempts: int = 10
    delay: float = 3.0
    backoff: float = 1.0
    sleep: Sleeper = field(default=time.sleep, compare=False, repr=False)

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError(f"attempts must be at least 1. Got {self.attempts}.")
        if self.delay < 0:
            raise ValueError(f"delay must be non-negative. Got {self.delay}.")
        if self.backoff < 1:
            raise ValueError(f"backoff must be >= 1. Got {self.backoff}.")

    def waits(self) -> Iterator[float]:
        """Yield the wait before each attempt after the first."""
        current = self.delay
        for _ in range(self.attempts - 1):
            yield current
            current *= self.backoff

    def poll(
        self,
        attempt: Callable[[], T | None],
        *,
        retry_on: tuple[type[BaseException], ...] = (),
        label: str = "attempt",
    ) -> tuple[T | None, int]:
        """Call *attempt* until it returns a value or the attempts run out.

        ``None`` and any exception listed in *retry_on* count as "try again".
        Returns ``(value, attempts_made)``; *value* is ``None`` on exhaustion.
        There is no wait after the final attempt.
        """
        waits = self.waits()
        made = 0
        while True:
            made += 1
            try:
                value = attempt()
            except retry_on as exc:
                LOGGER.debug("%s %d/%d failed: %s", label, made, self.attempts, exc)
                value = None
            if value is not None:
                return value, made
            wait = next(waits, None)
            if wait is None:
                return None, made
            LOGGER.debug("%s %d/%d: retrying in %.2fs", label, made, self.attempts, wait)
            self.sleep(wait)


__all__ = ["RetryPolicy", "Sleeper"]
