"""Test configuration and fixtures."""

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from spindle.database.store import TaskStore
from spindle.schemas.retry import RetryKind, RetryStrategy


class FrozenClock:
    """Clock that only moves when a test advances it."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        self.now += timedelta(seconds=seconds, **kwargs)
        return self.now


@pytest.fixture(autouse=True)
def isolated_cwd(tmp_path, monkeypatch):
    """Run every test in an empty directory so no spindle.toml leaks in."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("SPINDLE_DATABASE", raising=False)
    return tmp_path


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "data" / "tasks.db")


@pytest_asyncio.fixture
async def store(db_path, clock):
    """Provide a migrated task store on a fresh database file."""
    async with TaskStore(db_path, busy_timeout=10.0, clock=clock) as task_store:
        yield task_store


@pytest_asyncio.fixture
async def registered_store(store):
    """Store with the task types most tests enqueue."""
    await store.register_task_type("email", "Send an email")
    await store.register_task_type("report", "Generate a report")
    await store.register_task_type("flaky", "Fails on demand")
    return store


@pytest.fixture
def no_delay():
    """Strategy whose retries are due immediately."""
    return RetryStrategy(kind=RetryKind.FIXED, base_delay=0, max_attempts=3)
