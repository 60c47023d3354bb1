"""Exponential back-off with jitter for retrying broker connections."""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

CONNECTION_RETRY_BACKOFF_BASE_MS = 500
CONNECTION_RETRY_MAX_BACKOFF_DELAY_MS = 5000
CONNECTION_RETRY_MAX_ATTEMPTS = 5

RETRY_FOREVER = 0
"""A ``max_attempts`` value meaning the retries never run out."""

_MAX_DELAY_MS = 0xFFFF


class RetriesExhausted(RuntimeError):
    """Every permitted retry attempt has been used."""


@dataclass
class BackoffPolicy:
    """Exponential back-off with full jitter.

    Each call to :meth:`next_backoff` picks a delay between zero and the
    current ceiling, then doubles the ceiling up to ``max_delay_ms``.
    """

    base_ms: int = CONNECTION_RETRY_BACKOFF_BASE_MS
    max_delay_ms: int = CONNECTION_RETRY_MAX_BACKOFF_DELAY_MS
    max_attempts: int = CONNECTION_RETRY_MAX_ATTEMPTS
    attempts_done: int = field(default=0, init=False)
    _jitter_ceiling: int = field(default=0, init=False, repr=False)

    def __post_init__(self) -> None:
        for name in ("base_ms", "max_delay_ms"):
            value = getattr(self, name)
            if not 0 <= value <= _MAX_DELAY_MS:
                raise ValueError(f"{name} must be within 0..{_MAX_DELAY_MS}, got {value}")
        if self.max_attempts < 0:
            raise ValueError(f"max_attempts must not be negative, got {self.max_attempts}")
        self.reset()

    @property
    def exhausted(self) -> bool:
        """Whether no further back-off may be granted."""
        return self.max_attempts != RETRY_FOREVER and self.attempts_done >= self.max_attempts

    def reset(self) -> None:
        """Forget all attempts and restore the initial ceiling."""
        self.attempts_done = 0
        self._jitter_ceiling = self.base_ms

    def next_backoff(self, random_value: int) -> int:
        """Return the next delay in milliseconds chosen from ``random_value``.

        Raises RetriesExhausted once ``max_attempts`` delays have been given.
        """
        if random_value < 0:
            raise ValueError("random value must not be negative")
        if self.exhausted:
            raise RetriesExhausted(f"all {self.max_attempts} retry attempts exhausted")
        self.attempts_done += 1
        delay = random_value % (self._jitter_ceiling + 1)
        if self._jitter_ceiling < self.max_delay_ms // 2:
            self._jitter_ceiling += self._jitter_ceiling
        else:
            self._jitter_ceiling = self.max_delay_ms
        return delay


def _default_rng() -> int:
    return random.randrange(2**31)


def retry_with_backoff(
    operation: Callable[[], T],
    policy: BackoffPolicy | None = None,
    sleep: Callable[[float], object] = time.sleep,
    rng: Callable[[], int] | None = None,
) -> T:
    """Call ``operation`` until it returns without raising.

    Between failures, ``sleep`` is called with the back-off in seconds. The
    policy is reset before the first attempt. When the retries run out,
    RetriesExhausted is raised from the last failure.
    """
    if policy is None:
        policy = BackoffPolicy()
    if rng is None:
        rng = _default_rng
    policy.reset()

    while True:
        try:
            return operation()
        except Exception as error:
            try:
                delay_ms = policy.next_backoff(rng())
            except RetriesExhausted as exhausted:
                logger.error("Connection to the broker failed, all attempts exhausted.")
                raise exhausted from error
            logger.warning(
                "Connection to the broker failed (%s). Retrying connection after %d ms backoff.",
                error,
                delay_ms,
            )
            sleep(delay_ms / 1000)