"""Exponential backoff with proportional jitter."""

import random
from typing import Optional


JITTER_RATIO = 0.1


def compute_delay(
    attempt_index: int,
    base_delay_ms: int = 1000,
    backoff_factor: float = 2.0,
    max_delay_ms: int = 30000,
    rng: Optional[random.Random] = None
) -> int:
    """
    Calculate exponential backoff delay with jitter.

    Formula: min(max_delay_ms, base_delay_ms * backoff_factor ** attempt_index) + jitter
    where jitter is drawn from [0, 10%) of the exponential part.

    Args:
        attempt_index: Retry attempt number (0-indexed)
        base_delay_ms: Base delay in milliseconds
        backoff_factor: Multiplier applied per attempt
        max_delay_ms: Cap applied before jitter
        rng: Random source; pass a seeded ``random.Random`` for reproducible delays

    Returns:
        Delay in whole milliseconds, always >= base_delay_ms and < max_delay_ms * 1.1
    """
    if attempt_index < 0:
        raise ValueError(f"attempt_index must be >= 0, got: {attempt_index}")

    try:
        exponential = min(max_delay_ms, base_delay_ms * (backoff_factor ** attempt_index))
    except OverflowError:
        exponential = max_delay_ms

    source = rng or random
    jitter = source.random() * JITTER_RATIO * exponential
    return int(exponential + jitter)
