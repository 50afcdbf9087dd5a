"""Retry policy engine: maps an attempt number to the delay before the next run."""

import random
from datetime import timedelta
from typing import Any, Mapping

from ..common.config import get_retry_defaults
from ..schemas.retry import RetryKind, RetryStrategy


def next_delay(
    attempt: int, strategy: RetryStrategy, seed: str | None = None
) -> timedelta:
    """Compute how long a task waits after its ``attempt``-th failure.

    The function is pure: identical arguments always produce the identical
    delay. Jitter is only applied when the strategy asks for it, and is then
    drawn from a generator seeded with ``seed`` and ``attempt``.

    Args:
        attempt: 1-based number of the attempt that just failed
        strategy: Retry policy captured on the task
        seed: Stable seed for jitter (the store passes the task id)

    Returns:
        Delay before the task becomes claimable again

    Raises:
        ValueError: If attempt is smaller than 1

    Example:
        >>> next_delay(3, RetryStrategy(base_delay=1, multiplier=2, max_delay=300))
        datetime.timedelta(seconds=4)
    """
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")

    if strategy.kind == RetryKind.NONE:
        # Never retried; the store dead-letters after the single run
        return timedelta(0)
    if strategy.kind == RetryKind.FIXED:
        seconds = strategy.base_delay
    elif strategy.kind == RetryKind.LINEAR:
        seconds = min(strategy.base_delay * attempt, strategy.max_delay)
    else:
        seconds = _exponential(attempt, strategy)

    if strategy.jitter:
        rng = random.Random(f"{seed}:{attempt}")
        spread = seconds * strategy.jitter
        seconds = seconds - spread + rng.random() * spread * 2
        seconds = min(max(seconds, 0.0), max(strategy.max_delay, strategy.base_delay))

    return timedelta(seconds=seconds)


def _exponential(attempt: int, strategy: RetryStrategy) -> float:
    try:
        seconds = strategy.base_delay * strategy.multiplier ** (attempt - 1)
    except OverflowError:
        return strategy.max_delay
    return min(seconds, strategy.max_delay)


def default_retry_strategy(overrides: Mapping[str, Any] | None = None) -> RetryStrategy:
    """Build the strategy for new tasks from the [retry] config table.

    Raises:
        ValueError: If the configured values are invalid
    """
    values = get_retry_defaults()
    if overrides:
        values.update(overrides)
    return RetryStrategy.model_validate(values)
