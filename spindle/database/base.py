from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List

from ..lib.utils import utc_now
from ..schemas.retry import RetryStrategy
from ..schemas.tasks import Task, TaskFilter, TaskPriority, TaskStats, TaskStatus, TaskType


class TaskStoreBackend(ABC):
    """Abstract base class for task store backends.

    This class defines the interface a durable store must implement so that
    the dispatcher, the admin client and the CLI can run on top of it. Every
    state-changing method must be atomic with respect to other processes
    sharing the same store.
    """

    def now(self) -> datetime:
        """Current time as seen by the store (aware UTC)."""
        return utc_now()

    @abstractmethod
    async def _init_db(self) -> None:
        """Create the storage location and apply pending schema migrations."""
        pass

    # === Producer ===

    @abstractmethod
    async def enqueue(
        self,
        task_type: str,
        payload: Dict[str, Any] | None = None,
        priority: TaskPriority = TaskPriority.NORMAL,
        retry_strategy: RetryStrategy | None = None,
        owner: str | None = None,
        *,
        scheduled_at: datetime | None = None,
        metadata: Dict[str, Any] | None = None,
    ) -> Task:
        """Persist a new pending task of a registered, active type."""
        pass

    # === Dispatcher ===

    @abstractmethod
    async def claim_next(self, limit: int) -> List[Task]:
        """Atomically move up to ``limit`` ready tasks to running."""
        pass

    @abstractmethod
    async def report_success(
        self,
        task_id: str,
        result_metadata: Dict[str, Any] | None = None,
        *,
        claim_id: str | None = None,
    ) -> Task:
        """Complete a running task and merge the handler's metadata.

        When ``claim_id`` is given the report only applies to that claim;
        a task reclaimed since raises ``ClaimLostError``.
        """
        pass

    @abstractmethod
    async def report_failure(
        self,
        task_id: str,
        error: str,
        retryable: bool = True,
        *,
        claim_id: str | None = None,
    ) -> Task:
        """Schedule a retry for a running task or dead-letter it."""
        pass

    @abstractmethod
    async def requeue(
        self, task_id: str, delay: timedelta, *, claim_id: str | None = None
    ) -> Task:
        """Put a running task back without consuming an attempt."""
        pass

    @abstractmethod
    async def recover_stale(self, stale_after: timedelta) -> List[Task]:
        """Fail running tasks whose worker never reported back."""
        pass

    # === Lifecycle control ===

    @abstractmethod
    async def cancel(self, task_id: str) -> Task:
        pass

    @abstractmethod
    async def retry_manually(self, task_id: str) -> Task:
        pass

    @abstractmethod
    async def delete(self, task_id: str) -> None:
        pass

    @abstractmethod
    async def purge(
        self,
        older_than: timedelta,
        statuses: Iterable[TaskStatus] = (TaskStatus.COMPLETED,),
        dry_run: bool = False,
    ) -> int:
        """Delete terminal tasks finished before ``now - older_than``."""
        pass

    # === Queries ===

    @abstractmethod
    async def get_task(self, task_id: str) -> Task:
        pass

    @abstractmethod
    async def list_tasks(
        self, filter: TaskFilter | None = None, limit: int = 100, offset: int = 0
    ) -> List[Task]:
        pass

    @abstractmethod
    async def stats(self) -> TaskStats:
        pass

    @abstractmethod
    async def dead_letter(self, limit: int = 100, offset: int = 0) -> List[Task]:
        pass

    # === Task type registry ===

    @abstractmethod
    async def register_task_type(
        self, task_type: str, description: str | None = None
    ) -> TaskType:
        pass

    @abstractmethod
    async def deactivate_task_type(self, task_type: str) -> TaskType:
        pass

    @abstractmethod
    async def get_task_type(self, task_type: str) -> TaskType | None:
        pass

    @abstractmethod
    async def list_task_types(self, include_inactive: bool = False) -> List[TaskType]:
        pass

    # === Context Manager Methods ===

    async def __aenter__(self) -> "TaskStoreBackend":
        """Async context manager entry point."""
        await self._init_db()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        """Async context manager exit point."""
        pass
