"""Backoff between attempts of a retried action."""

from __future__ import annotations

import asyncio
import logging
import random

logger = logging.getLogger(__name__)

MAX_BACKOFF_SECONDS = 30.0


def compute_backoff(
    attempt: int,
    base: float = 1.5,
    jitter: float = 0.5,
    ceiling: float = MAX_BACKOFF_SECONDS,
) -> float:
    """Seconds to wait before retry ``attempt`` (zero-based).

    Grows as ``base ** attempt`` up to ``ceiling``, then adds up to
    ``jitter`` seconds of random spread.
    """
    if attempt < 0:
        raise ValueError("attempt must not be negative")
    delay = min(base ** attempt, ceiling)
    return delay + random.uniform(0, jitter)


async def schedule_retry(attempt: int, base: float = 1.5, jitter: float = 0.5) -> float:
    """Sleep out the backoff for ``attempt`` and return how long that was."""
    delay = compute_backoff(attempt, base, jitter)
    logger.debug(f"Retrying in {delay:.2f}s (attempt {attempt + 1})")
    await asyncio.sleep(delay)
    return delay
