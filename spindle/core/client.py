import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List

from ..database.base import TaskStoreBackend
from ..database.store import TaskStore
from ..schemas.retry import RetryStrategy
from ..schemas.tasks import (
    Task,
    TaskFilter,
    TaskPriority,
    TaskStats,
    TaskStatus,
    TaskType,
)

logger = logging.getLogger(__name__)


class TaskClient:
    """Producer and administrative API over a task store.

    Accepts priorities and statuses either as enums or as their lowercase
    names, so it can be driven directly from CLI or HTTP input.

    Example:
        >>> async with TaskClient() as client:
        ...     await client.register_task_type("email", "Send an email")
        ...     task = await client.create_task("email", {"to": "ops@example.com"}, priority="high")
        ...     await client.cancel_task(task["id"])
    """

    def __init__(self, store: TaskStoreBackend | None = None) -> None:
        self.store = store or TaskStore()

    async def __aenter__(self) -> "TaskClient":
        await self.store.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.store.__aexit__(exc_type, exc, tb)

    # === Producer ===

    async def create_task(
        self,
        task_type: str,
        payload: Dict[str, Any] | None = None,
        priority: TaskPriority | str | int = TaskPriority.NORMAL,
        retry_strategy: RetryStrategy | Dict[str, Any] | None = None,
        created_by: str | None = None,
        *,
        scheduled_at: datetime | None = None,
        delay: timedelta | None = None,
        metadata: Dict[str, Any] | None = None,
    ) -> Task:
        """Enqueue a task.

        Args:
            task_type: Registered, active task type
            payload: JSON document for the handler
            priority: Enum member, name ("low" .. "critical") or rank
            retry_strategy: Strategy or dict of strategy fields
            created_by: Optional owner reference
            scheduled_at: Earliest run time
            delay: Alternative to scheduled_at, relative to now
            metadata: Initial annotations

        Raises:
            UnknownTaskTypeError: If the task type is not registered
            InactiveTaskTypeError: If the task type is deactivated
            ValueError: If priority or retry strategy is invalid
        """
        if isinstance(retry_strategy, dict):
            retry_strategy = RetryStrategy.model_validate(retry_strategy)
        if delay is not None:
            if scheduled_at is not None:
                raise ValueError("Pass either scheduled_at or delay, not both")
            scheduled_at = self.store.now() + delay

        task = await self.store.enqueue(
            task_type,
            payload,
            TaskPriority.parse(priority),
            retry_strategy,
            created_by,
            scheduled_at=scheduled_at,
            metadata=metadata,
        )
        logger.info(
            "Created task %s (%s, priority %s)", task["id"], task_type, task["priority"]
        )
        return task

    # === Task types ===

    async def register_task_type(
        self, task_type: str, description: str | None = None
    ) -> TaskType:
        registered = await self.store.register_task_type(task_type, description)
        logger.info("Registered task type '%s'", task_type)
        return registered

    async def deactivate_task_type(self, task_type: str) -> TaskType:
        deactivated = await self.store.deactivate_task_type(task_type)
        logger.info("Deactivated task type '%s'", task_type)
        return deactivated

    async def list_task_types(self, include_inactive: bool = False) -> List[TaskType]:
        return await self.store.list_task_types(include_inactive)

    # === Queries ===

    async def list_tasks(
        self,
        filter: TaskFilter | None = None,
        limit: int = 100,
        offset: int = 0,
        **criteria: Any,
    ) -> List[Task]:
        """List tasks by filter dict and/or keyword criteria.

        Example:
            >>> await client.list_tasks(status="failed", task_type="email", limit=20)
        """
        merged: Dict[str, Any] = dict(filter or {})
        merged.update({key: value for key, value in criteria.items() if value is not None})
        if "status" in merged:
            merged["status"] = TaskStatus.parse(merged["status"])
        if "priority" in merged:
            merged["priority"] = TaskPriority.parse(merged["priority"])
        return await self.store.list_tasks(merged, limit, offset)  # type: ignore[arg-type]

    async def get_task(self, task_id: str) -> Task:
        return await self.store.get_task(task_id)

    async def stats(self) -> TaskStats:
        return await self.store.stats()

    async def dead_letter(self, limit: int = 100, offset: int = 0) -> List[Task]:
        return await self.store.dead_letter(limit, offset)

    # === Lifecycle control ===

    async def cancel_task(self, task_id: str) -> Task:
        task = await self.store.cancel(task_id)
        logger.info("Cancelled task %s", task_id)
        return task

    async def retry_task(self, task_id: str) -> Task:
        task = await self.store.retry_manually(task_id)
        logger.info("Re-queued failed task %s", task_id)
        return task

    async def delete_task(self, task_id: str) -> None:
        await self.store.delete(task_id)
        logger.info("Deleted task %s", task_id)

    async def purge_completed(
        self,
        older_than: timedelta,
        statuses: Iterable[TaskStatus | str] = (TaskStatus.COMPLETED,),
        dry_run: bool = False,
    ) -> int:
        """Delete terminal tasks finished before ``now - older_than``.

        Returns:
            Number of tasks deleted (or that would be on a dry run)
        """
        count = await self.store.purge(
            older_than, [TaskStatus.parse(status) for status in statuses], dry_run
        )
        if dry_run:
            logger.info("Purge dry run: %d task(s) would be deleted", count)
        else:
            logger.info("Purged %d task(s)", count)
        return count
