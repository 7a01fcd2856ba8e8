"""Backoff helpers shared by the remote client and the write retry loop."""

from __future__ import annotations

import asyncio
import random

# Upper bound (seconds) per attempt of the pause between conflicting writes.
CONFLICT_BACKOFF_STEP = 0.05


def compute_backoff(attempt: int, base: float = 1.5, jitter: float = 0.5) -> float:
    """Compute exponential backoff with jitter."""
    delay = base ** attempt
    return delay + random.uniform(0, jitter)


async def schedule_retry(attempt: int, base: float = 1.5, jitter: float = 0.5) -> None:
    """Sleep for computed backoff delay before retrying."""
    delay = compute_backoff(attempt, base=base, jitter=jitter)
    await asyncio.sleep(delay)


def is_retryable_status(status_code: int) -> bool:
    """Rate limiting and server errors are worth another attempt."""
    return status_code == 429 or status_code >= 500


async def conflict_pause(attempt: int, step: float = CONFLICT_BACKOFF_STEP) -> None:
    """Short jittered pause after losing a conditional write.

    Conflicts resolve as soon as the competing writer is done, so the pause
    grows linearly and stays well below a second.
    """
    await asyncio.sleep(random.uniform(0, step * attempt))
