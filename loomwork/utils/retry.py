from __future__ import annotations

import random


def compute_backoff(attempt: int, base: float = 1.5, jitter: float = 0.5) -> float:
    """Compute exponential backoff with jitter."""
    delay = base ** attempt
    return delay + random.uniform(0, jitter)


def poll_delay(interval: float, failures: int, ceiling: float = 60.0) -> float:
    """Delay before the next poll after ``failures`` consecutive poll errors."""
    if failures <= 0:
        return interval
    return min(interval * compute_backoff(failures, jitter=0), max(ceiling, interval))
