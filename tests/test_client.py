"""Tests for the producer and administrative client."""

from datetime import timedelta

import pytest
import pytest_asyncio

from spindle.common.errors import (
    InvalidStateTransitionError,
    TaskNotFoundError,
    UnknownTaskTypeError,
)
from spindle.core.client import TaskClient
from spindle.schemas.retry import RetryKind
from spindle.schemas.tasks import TaskPriority, TaskStatus


@pytest_asyncio.fixture
async def client(registered_store):
    async with TaskClient(registered_store) as task_client:
        yield task_client


@pytest.mark.asyncio
async def test_create_task_accepts_priority_names(client):
    """Test that priorities can be given the way the CLI receives them."""
    high = await client.create_task("email", {"to": "a@example.com"}, priority="high")
    ranked = await client.create_task("email", {}, priority=3)

    assert high["priority"] == TaskPriority.HIGH
    assert ranked["priority"] == TaskPriority.CRITICAL

    with pytest.raises(ValueError, match="Invalid priority"):
        await client.create_task("email", {}, priority="urgent")


@pytest.mark.asyncio
async def test_create_task_accepts_strategy_dict(client):
    task = await client.create_task(
        "email", {}, retry_strategy={"kind": "linear", "base_delay": 2, "max_attempts": 4}
    )

    assert task["retry_strategy"].kind == RetryKind.LINEAR
    assert task["max_attempts"] == 4


@pytest.mark.asyncio
async def test_create_task_with_delay(client, clock):
    task = await client.create_task("email", {}, delay=timedelta(minutes=5))

    assert task["scheduled_at"] == clock.now + timedelta(minutes=5)

    with pytest.raises(ValueError, match="either scheduled_at or delay"):
        await client.create_task(
            "email", {}, scheduled_at=clock.now, delay=timedelta(seconds=1)
        )


@pytest.mark.asyncio
async def test_create_task_unknown_type(client):
    with pytest.raises(UnknownTaskTypeError) as exc_info:
        await client.create_task("sms", {})

    assert exc_info.value.code == "unknown_task_type"


@pytest.mark.asyncio
async def test_list_tasks_with_keyword_criteria(client):
    await client.create_task("email", {}, priority="low", created_by="billing")
    await client.create_task("report", {}, priority="high", created_by="billing")
    await client.create_task("report", {}, created_by="ops")

    reports = await client.list_tasks(task_type="report")
    billing = await client.list_tasks(created_by="billing", status="pending")
    high = await client.list_tasks({"created_by": "billing"}, priority="high")

    assert len(reports) == 2
    assert [t["task_type"] for t in billing] == ["report", "email"]
    assert [t["task_type"] for t in high] == ["report"]
    assert await client.list_tasks(status=None, limit=1, offset=2) == [
        (await client.list_tasks())[2]
    ]


@pytest.mark.asyncio
async def test_status_names_are_case_insensitive(client, registered_store):
    """Test that a dead-lettered task is listed as failed, never as pending."""
    dead = await client.create_task("email", {}, retry_strategy={"kind": "none"})
    await registered_store.claim_next(1)
    await registered_store.report_failure(dead["id"], "boom")
    waiting = await client.create_task("email", {})

    pending = await client.list_tasks(status="Pending")
    failed = await client.list_tasks(status="FAILED")

    assert [t["id"] for t in pending] == [waiting["id"]]
    assert [t["id"] for t in failed] == [dead["id"]]
    assert [t["id"] for t in await client.dead_letter()] == [dead["id"]]

    with pytest.raises(ValueError, match="Invalid status 'Finished'"):
        await client.list_tasks(status="Finished")


@pytest.mark.asyncio
async def test_lifecycle_control(client, registered_store):
    task = await client.create_task("email", {})

    cancelled = await client.cancel_task(task["id"])
    assert cancelled["status"] == TaskStatus.CANCELLED

    with pytest.raises(InvalidStateTransitionError) as exc_info:
        await client.cancel_task(task["id"])
    assert exc_info.value.code == "invalid_state_transition"

    await client.delete_task(task["id"])
    with pytest.raises(TaskNotFoundError) as exc_info:
        await client.get_task(task["id"])
    assert exc_info.value.code == "not_found"


@pytest.mark.asyncio
async def test_retry_task_resets_attempts(client, registered_store):
    task = await client.create_task("email", {}, retry_strategy={"max_attempts": 1})
    await registered_store.claim_next(1)
    await registered_store.report_failure(task["id"], "boom")

    [dead] = await client.dead_letter()
    assert dead["id"] == task["id"]

    retried = await client.retry_task(task["id"])

    assert retried["status"] == TaskStatus.PENDING
    assert retried["current_attempt"] == 0
    assert retried["last_error"] is None
    assert await client.dead_letter() == []


@pytest.mark.asyncio
async def test_retry_task_requires_failed_status(client):
    task = await client.create_task("email", {})

    with pytest.raises(InvalidStateTransitionError):
        await client.retry_task(task["id"])


@pytest.mark.asyncio
async def test_purge_completed(client, registered_store, clock):
    """Test that purge only removes old terminal tasks of the chosen statuses."""
    done = await client.create_task("email", {})
    await registered_store.claim_next(1)
    await registered_store.report_success(done["id"])

    cancelled = await client.create_task("email", {})
    await client.cancel_task(cancelled["id"])
    pending = await client.create_task("email", {})

    clock.advance(days=8)

    assert await client.purge_completed(timedelta(days=7), dry_run=True) == 1
    assert await client.purge_completed(timedelta(days=7)) == 1
    assert await client.purge_completed(timedelta(days=7), statuses=["Cancelled"]) == 1

    remaining = await client.list_tasks()
    assert [t["id"] for t in remaining] == [pending["id"]]

    with pytest.raises(ValueError, match="non-terminal"):
        await client.purge_completed(timedelta(days=7), statuses=["pending"])


@pytest.mark.asyncio
async def test_task_type_administration(client):
    await client.deactivate_task_type("flaky")

    active = [t["task_type"] for t in await client.list_task_types()]
    everything = [t["task_type"] for t in await client.list_task_types(include_inactive=True)]

    assert active == ["email", "report"]
    assert everything == ["email", "flaky", "report"]


@pytest.mark.asyncio
async def test_stats(client):
    await client.create_task("email", {})
    task = await client.create_task("email", {})
    await client.cancel_task(task["id"])

    stats = await client.stats()

    assert stats["total"] == 2
    assert stats["pending"] == 1
    assert stats["cancelled"] == 1
