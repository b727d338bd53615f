from __future__ import annotations

import math
import random
from collections.abc import Callable
from dataclasses import dataclass

from metahub.config.settings import Settings


@dataclass(frozen=True)
class BackoffPolicy:
    base_minutes: float = 1.0
    max_minutes: float = 60.0
    jitter_ratio: float = 0.2

    @classmethod
    def from_settings(cls, settings: Settings) -> "BackoffPolicy":
        return cls(
            base_minutes=settings.retry_base_minutes,
            max_minutes=settings.retry_max_minutes,
            jitter_ratio=settings.retry_jitter_ratio,
        )


def next_backoff_ms(
    attempt: float,
    policy: BackoffPolicy = BackoffPolicy(),
    rand: Callable[[], float] = random.random,
) -> int:
    """Retry delay for the given 1-based attempt.

    ``min(max, base * 2**(attempt-1))`` minutes plus up to ``jitter_ratio`` of
    that on top. Attempts that are not positive finite numbers get the plain
    base delay.
    """
    base_ms = policy.base_minutes * 60_000
    max_ms = policy.max_minutes * 60_000
    if not isinstance(attempt, (int, float)) or not math.isfinite(attempt) or attempt <= 0:
        return int(min(base_ms, max_ms))

    exponent = min(int(attempt) - 1, 62)
    delay = min(max_ms, base_ms * (2 ** max(exponent, 0)))
    jitter = delay * max(policy.jitter_ratio, 0.0) * rand()
    return int(delay + jitter)
