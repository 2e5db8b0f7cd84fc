"""Exponential backoff with jitter around a single task attempt."""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

from bemadralphy.config import RetrySettings
from bemadralphy.execution.failure_classifier import is_retryable

logger = logging.getLogger(__name__)

T = TypeVar("T")

JITTER_RATIO = 0.25


@dataclass(slots=True)
class RetryPolicy:
    """Retry retryable failures up to ``max_retries`` extra attempts."""

    max_retries: int = 3
    base_delay_ms: int = 500
    max_delay_ms: int = 60_000
    classify_error: Callable[[BaseException], bool] = is_retryable
    sleep: Callable[[float], None] = time.sleep
    rng: random.Random = field(default_factory=random.Random)

    @classmethod
    def from_settings(cls, settings: RetrySettings, **overrides: object) -> RetryPolicy:
        return cls(
            max_retries=settings.max_retries,
            base_delay_ms=settings.base_delay_ms,
            max_delay_ms=settings.max_delay_ms,
            **overrides,  # type: ignore[arg-type]
        )

    def delay_seconds(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (1-based), jitter included."""

        delay_ms = min(self.base_delay_ms * (2 ** max(attempt - 1, 0)), self.max_delay_ms)
        jitter_ms = self.rng.uniform(0, delay_ms * JITTER_RATIO)
        return (delay_ms + jitter_ms) / 1000.0

    def run(self, operation: Callable[[], T], *, label: str = "operation") -> T:
        attempt = 0
        while True:
            try:
                return operation()
            except Exception as error:
                if not self.classify_error(error):
                    raise
                attempt += 1
                if attempt > self.max_retries:
                    logger.warning(
                        "%s failed after %d retries: %s",
                        label,
                        self.max_retries,
                        error,
                    )
                    raise
                delay = self.delay_seconds(attempt)
                logger.info(
                    "%s failed with retryable error (retry %d/%d in %.2fs): %s",
                    label,
                    attempt,
                    self.max_retries,
                    delay,
                    error,
                )
                self.sleep(delay)


def with_retry(  # noqa: PLR0913
    operation: Callable[[], T],
    *,
    max_retries: int = 3,
    base_delay_ms: int = 500,
    max_delay_ms: int = 60_000,
    classify_error: Callable[[BaseException], bool] | None = None,
    sleep: Callable[[float], None] = time.sleep,
    rng: random.Random | None = None,
) -> T:
    """Run ``operation`` under a one-off RetryPolicy."""

    policy = RetryPolicy(
        max_retries=max_retries,
        base_delay_ms=base_delay_ms,
        max_delay_ms=max_delay_ms,
        classify_error=classify_error or is_retryable,
        sleep=sleep,
        rng=rng or random.Random(),  # noqa: S311
    )
    return policy.run(operation)
