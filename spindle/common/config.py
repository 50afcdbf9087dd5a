import os
import tomllib
from pathlib import Path
from typing import Any

from ..schemas.config import BreakerSettings, DatabaseSettings, WorkerSettings

MIGRATION_UPGRADES = os.path.join(os.path.dirname(__file__), "../", "migrations", "up")

DATA_ROOT = ".spindle"
DATABASE = os.path.join(DATA_ROOT, "tasks.db")

CONFIG_FILE = "spindle.toml"
DATABASE_ENV = "SPINDLE_DATABASE"

DEFAULT_WORKER = WorkerSettings(
    concurrency=4,
    poll_interval=0.5,
    batch_size=10,
    task_timeout=300.0,
    shutdown_timeout=30.0,
    stale_after=900.0,
    reaper_interval=60.0,
)

DEFAULT_BREAKER = BreakerSettings(
    enabled=True,
    window_size=20,
    window_seconds=300.0,
    min_calls=5,
    failure_rate_threshold=0.5,
    cooldown_seconds=60.0,
)


def _load_config() -> dict:
    """Load configuration from spindle.toml if it exists."""
    config_path = Path.cwd() / CONFIG_FILE
    if config_path.exists():
        with open(config_path, "rb") as f:
            return tomllib.load(f)
    return {}


def _section(name: str) -> dict:
    section = _load_config().get(name, {})
    if not isinstance(section, dict):
        raise ValueError(f"Invalid [{name}] section in {CONFIG_FILE}: expected a table")
    return section


def _number(section: str, key: str, value: Any, minimum: float = 0) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"Invalid {section}.{key}: expected a number, got {value!r}")
    if value < minimum:
        raise ValueError(f"Invalid {section}.{key}: must be >= {minimum}, got {value}")
    return float(value)


def _integer(section: str, key: str, value: Any, minimum: int = 1) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"Invalid {section}.{key}: expected an integer, got {value!r}")
    if value < minimum:
        raise ValueError(f"Invalid {section}.{key}: must be >= {minimum}, got {value}")
    return value


def get_database_path() -> str:
    """Get the database file path (env var, then spindle.toml, then default)."""
    env_path = os.environ.get(DATABASE_ENV)
    if env_path:
        return env_path
    return str(_section("database").get("path", DATABASE))


def get_database_settings() -> DatabaseSettings:
    section = _section("database")
    return DatabaseSettings(
        path=get_database_path(),
        busy_timeout=_number(
            "database", "busy_timeout", section.get("busy_timeout", 30.0)
        ),
    )


def get_worker_settings() -> WorkerSettings:
    """Get dispatcher settings merged over the defaults."""
    section = _section("worker")
    settings = WorkerSettings(**DEFAULT_WORKER)

    for key in ("concurrency", "batch_size"):
        if key in section:
            settings[key] = _integer("worker", key, section[key])  # type: ignore[literal-required]

    if "poll_interval" in section:
        settings["poll_interval"] = _number(
            "worker", "poll_interval", section["poll_interval"], minimum=0.01
        )

    for key in (
        "task_timeout",
        "shutdown_timeout",
        "stale_after",
        "reaper_interval",
    ):
        if key in section:
            settings[key] = _number("worker", key, section[key])  # type: ignore[literal-required]

    if settings["task_timeout"] <= 0:
        raise ValueError("Invalid worker.task_timeout: must be > 0")

    return settings


def get_breaker_settings() -> BreakerSettings:
    """Get circuit breaker settings merged over the defaults."""
    section = _section("circuit_breaker")
    settings = BreakerSettings(**DEFAULT_BREAKER)

    if "enabled" in section:
        if not isinstance(section["enabled"], bool):
            raise ValueError("Invalid circuit_breaker.enabled: expected true or false")
        settings["enabled"] = section["enabled"]

    for key in ("window_size", "min_calls"):
        if key in section:
            settings[key] = _integer("circuit_breaker", key, section[key])  # type: ignore[literal-required]

    for key in ("window_seconds", "cooldown_seconds"):
        if key in section:
            settings[key] = _number("circuit_breaker", key, section[key])  # type: ignore[literal-required]

    if "failure_rate_threshold" in section:
        rate = _number(
            "circuit_breaker",
            "failure_rate_threshold",
            section["failure_rate_threshold"],
        )
        if not 0 < rate <= 1:
            raise ValueError(
                f"Invalid circuit_breaker.failure_rate_threshold: must be in (0, 1], got {rate}"
            )
        settings["failure_rate_threshold"] = rate

    if settings["min_calls"] > settings["window_size"]:
        raise ValueError(
            "Invalid circuit_breaker.min_calls: cannot exceed circuit_breaker.window_size"
        )

    return settings


def get_retry_defaults() -> dict[str, Any]:
    """Get the raw [retry] table used as the default strategy for new tasks."""
    return dict(_section("retry"))
