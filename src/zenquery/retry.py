"""Retry decisions and backoff delays."""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Any

from zenquery.config import QueryConfig
from zenquery.duration import parse_duration
from zenquery.types import RetryDelayFn

JITTER_RATIO = 0.2  # ±20% of the computed delay


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Pure retry policy derived from a QueryConfig.

    Delay for the retry following failed attempt ``i`` (0-indexed):

        custom:       retry_delay_fn(i, error)
        linear:       retry_delay
        exponential:  min(retry_delay * multiplier ** i, max_retry_delay)

    Jitter, when enabled, moves the computed delay by up to ±20%.
    """

    retry_count: int
    retry_delay: float  # ms
    max_retry_delay: float  # ms
    multiplier: float = 2.0
    exponential: bool = True
    jitter: bool = True
    delay_fn: RetryDelayFn | None = None

    @classmethod
    def from_config(cls, config: QueryConfig[Any]) -> RetryPolicy:
        return cls(
            retry_count=config.retry_count,
            retry_delay=config.retry_delay_ms,
            max_retry_delay=config.max_retry_delay_ms,
            multiplier=config.retry_backoff_multiplier,
            exponential=config.exponential_backoff,
            jitter=config.retry_with_jitter,
            delay_fn=config.retry_delay_fn,
        )

    def should_retry(self, attempt: int) -> bool:
        """Whether failed attempt ``attempt`` (0-indexed) gets another try."""
        return attempt < self.retry_count

    def delay_for(
        self,
        attempt: int,
        error: BaseException,
        rng: random.Random | None = None,
    ) -> float:
        """Delay in milliseconds before retrying after failed attempt ``attempt``."""
        if self.delay_fn is not None:
            return parse_duration(self.delay_fn(attempt, error))

        delay = self.retry_delay
        if self.exponential:
            delay = min(delay * self.multiplier**attempt, self.max_retry_delay)

        if self.jitter:
            spread = delay * JITTER_RATIO
            delay += spread * ((rng or random).random() - 0.5) * 2

        return max(delay, 0.0)


def retry_delay(
    config: QueryConfig[Any],
    attempt: int,
    error: BaseException,
) -> float:
    """Shortcut for ``RetryPolicy.from_config(config).delay_for(attempt, error)``."""
    return RetryPolicy.from_config(config).delay_for(attempt, error)
