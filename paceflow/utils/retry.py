from __future__ import annotations

import random


def compute_backoff(attempt: int, base: float = 1.5, jitter: float = 0.5) -> float:
    """Compute exponential backoff with jitter."""
    delay = base ** attempt
    return delay + random.uniform(0, jitter)


def retry_delay_seconds(
    attempt: int,
    base_delay: float = 30.0,
    backoff_base: float = 2.0,
    jitter: float = 0.5,
) -> float:
    """Seconds to wait before retry ``attempt`` (1-based) of a failing step.

    The first retry waits roughly ``base_delay``; each following retry
    multiplies the wait by ``backoff_base``.
    """
    factor = compute_backoff(max(attempt - 1, 0), base=backoff_base, jitter=0.0)
    return base_delay * factor + random.uniform(0, jitter)
