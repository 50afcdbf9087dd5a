from typing import TypedDict


class DatabaseSettings(TypedDict):
    path: str
    busy_timeout: float


class WorkerSettings(TypedDict):
    """Dispatcher settings from the [worker] table of spindle.toml.

    Durations are in seconds. ``stale_after = 0`` disables stale task
    recovery.
    """

    concurrency: int
    poll_interval: float
    batch_size: int
    task_timeout: float
    shutdown_timeout: float
    stale_after: float
    reaper_interval: float


class BreakerSettings(TypedDict):
    """Circuit breaker settings from the [circuit_breaker] table."""

    enabled: bool
    window_size: int
    window_seconds: float
    min_calls: int
    failure_rate_threshold: float
    cooldown_seconds: float
