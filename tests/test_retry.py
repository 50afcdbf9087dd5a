"""Tests for backoff computation and retry strategy validation."""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from spindle.core.retry import default_retry_strategy, next_delay
from spindle.schemas.retry import RetryKind, RetryStrategy


def test_exponential_backoff_doubles_from_base():
    """Test the default exponential curve."""
    strategy = RetryStrategy(base_delay=1, multiplier=2, max_delay=300)

    assert next_delay(1, strategy) == timedelta(seconds=1)
    assert next_delay(2, strategy) == timedelta(seconds=2)
    assert next_delay(3, strategy) == timedelta(seconds=4)


def test_exponential_backoff_is_capped():
    """Test that delays never exceed max_delay, even for huge attempts."""
    strategy = RetryStrategy(base_delay=1, multiplier=2, max_delay=300)

    assert next_delay(20, strategy) == timedelta(seconds=300)
    assert next_delay(10_000, strategy) == timedelta(seconds=300)


def test_linear_backoff():
    strategy = RetryStrategy(kind=RetryKind.LINEAR, base_delay=2, max_delay=7)

    assert next_delay(1, strategy) == timedelta(seconds=2)
    assert next_delay(3, strategy) == timedelta(seconds=6)
    assert next_delay(4, strategy) == timedelta(seconds=7)


def test_fixed_backoff():
    strategy = RetryStrategy(kind=RetryKind.FIXED, base_delay=5, max_delay=5)

    assert next_delay(1, strategy) == timedelta(seconds=5)
    assert next_delay(9, strategy) == timedelta(seconds=5)


def test_none_strategy_runs_once():
    strategy = RetryStrategy(kind="none")

    assert strategy.kind == RetryKind.NONE
    assert strategy.max_attempts == 1
    assert next_delay(1, strategy) == timedelta(0)


def test_none_strategy_rejects_extra_attempts():
    with pytest.raises(ValidationError, match="runs exactly once"):
        RetryStrategy(kind=RetryKind.NONE, max_attempts=3)


def test_attempt_must_be_positive():
    """Test that attempt numbers start at 1."""
    with pytest.raises(ValueError, match="attempt must be >= 1"):
        next_delay(0, RetryStrategy())


def test_next_delay_is_deterministic():
    strategy = RetryStrategy(base_delay=3, multiplier=1.5, max_delay=100)

    assert [next_delay(n, strategy) for n in range(1, 8)] == [
        next_delay(n, strategy) for n in range(1, 8)
    ]


def test_jitter_is_reproducible_per_seed_and_bounded():
    """Test that jittered delays repeat for a seed and stay within max_delay."""
    strategy = RetryStrategy(base_delay=1, multiplier=2, max_delay=60, jitter=0.5)

    first = [next_delay(n, strategy, seed="task-a") for n in range(1, 15)]
    second = [next_delay(n, strategy, seed="task-a") for n in range(1, 15)]
    assert first == second

    for n, delay in enumerate(first, start=1):
        undisturbed = min(2 ** (n - 1), 60)
        assert delay <= timedelta(seconds=60)
        assert timedelta(seconds=undisturbed * 0.5) <= delay <= timedelta(
            seconds=min(undisturbed * 1.5, 60)
        )


def test_strategy_rejects_max_delay_below_base():
    with pytest.raises(ValidationError, match="max_delay"):
        RetryStrategy(base_delay=10, max_delay=5)


def test_strategy_rejects_unknown_fields():
    with pytest.raises(ValueError):
        RetryStrategy.model_validate({"kind": "exponential", "retries": 3})


def test_strategy_roundtrips_through_json():
    """Test that the stored form restores the same strategy."""
    strategy = RetryStrategy(kind=RetryKind.LINEAR, base_delay=2, max_attempts=7)

    assert RetryStrategy.model_validate_json(strategy.model_dump_json()) == strategy


def test_default_strategy_matches_documented_defaults():
    strategy = default_retry_strategy()

    assert strategy.kind == RetryKind.EXPONENTIAL
    assert strategy.base_delay == 1.0
    assert strategy.multiplier == 2.0
    assert strategy.max_delay == 300.0
    assert strategy.max_attempts == 5


def test_default_strategy_reads_config(isolated_cwd):
    """Test that the [retry] table of spindle.toml changes the default."""
    (isolated_cwd / "spindle.toml").write_text(
        '[retry]\nkind = "linear"\nbase_delay = 2.0\nmax_attempts = 3\n'
    )

    strategy = default_retry_strategy()

    assert strategy.kind == RetryKind.LINEAR
    assert strategy.base_delay == 2.0
    assert strategy.max_attempts == 3


def test_default_strategy_rejects_invalid_config(isolated_cwd):
    (isolated_cwd / "spindle.toml").write_text("[retry]\nmax_attempts = 0\n")

    with pytest.raises(ValueError):
        default_retry_strategy()
