from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, Dict, TypedDict

from .retry import RetryStrategy


class TaskStatus(str, Enum):
    """Task lifecycle status, stored lowercase to match the CHECK constraint"""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    RETRYING = "retrying"

    @classmethod
    def parse(cls, value: "TaskStatus | str") -> "TaskStatus":
        """Accept an enum member or a status name in any case, e.g. ``"Pending"``."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        raise ValueError(
            f"Invalid status '{value}'. "
            f"Expected one of: {', '.join(s.value for s in cls)}"
        )


class TaskPriority(IntEnum):
    """Dispatch priority, persisted as its integer rank"""

    LOW = 0
    NORMAL = 1
    HIGH = 2
    CRITICAL = 3

    @classmethod
    def parse(cls, value: "TaskPriority | str | int") -> "TaskPriority":
        """Accept an enum member, a name such as ``"high"`` or a rank."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls[value.strip().upper()]
            except KeyError:
                raise ValueError(
                    f"Invalid priority '{value}'. "
                    f"Expected one of: {', '.join(str(p) for p in cls)}"
                ) from None
        return cls(value)

    def __str__(self) -> str:
        return self.name.lower()


# Legal status transitions; anything absent is rejected.
TRANSITIONS: Dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.RUNNING, TaskStatus.CANCELLED}),
    TaskStatus.RETRYING: frozenset({TaskStatus.RUNNING, TaskStatus.CANCELLED}),
    TaskStatus.RUNNING: frozenset(
        {TaskStatus.COMPLETED, TaskStatus.RETRYING, TaskStatus.FAILED}
    ),
    TaskStatus.FAILED: frozenset({TaskStatus.PENDING}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}
)

CLAIMABLE_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.RETRYING})


def sources_of(target: TaskStatus) -> frozenset[TaskStatus]:
    """All statuses from which ``target`` may be reached."""
    return frozenset(
        status for status, targets in TRANSITIONS.items() if target in targets
    )


class Task(TypedDict):
    """
    Task record matching the tasks table structure.

    Tasks are durable units of background work: a registered type, an opaque
    JSON payload interpreted only by the matching handler, and the lifecycle
    fields driven by the dispatcher and administrative actions.
    """

    id: str
    task_type: str
    payload: Dict[str, Any]
    status: TaskStatus
    priority: TaskPriority
    retry_strategy: RetryStrategy
    max_attempts: int
    current_attempt: int
    last_error: str | None
    created_at: datetime
    updated_at: datetime
    scheduled_at: datetime | None
    started_at: datetime | None
    completed_at: datetime | None
    claim_id: str | None
    created_by: str | None
    metadata: Dict[str, Any]


class TaskFilter(TypedDict, total=False):
    """
    Filter for listing tasks.

    All fields are optional; omitted fields do not constrain the result.
    """

    task_type: str
    status: TaskStatus
    priority: TaskPriority
    created_by: str
    created_after: datetime
    created_before: datetime


class TaskStats(TypedDict):
    total: int
    pending: int
    running: int
    completed: int
    failed: int
    cancelled: int
    retrying: int


class TaskType(TypedDict):
    task_type: str
    description: str | None
    is_active: bool
    created_at: datetime
    updated_at: datetime
