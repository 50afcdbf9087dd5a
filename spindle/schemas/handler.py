import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, TypeVar, Union

from .tasks import Task


@dataclass
class TaskContext:
    """Everything a handler gets to see about the task it is running.

    ``attempt`` is the 1-based number of the current run, so the first
    execution of a task sees ``attempt == 1``.
    """

    task_id: str
    task_type: str
    payload: Dict[str, Any]
    attempt: int
    max_attempts: int
    metadata: Dict[str, Any]
    created_by: str | None
    created_at: datetime
    logger: logging.LoggerAdapter

    @classmethod
    def from_task(cls, task: Task, logger: logging.LoggerAdapter) -> "TaskContext":
        return cls(
            task_id=task["id"],
            task_type=task["task_type"],
            payload=task["payload"],
            attempt=task["current_attempt"] + 1,
            max_attempts=task["max_attempts"],
            metadata=dict(task["metadata"]),
            created_by=task["created_by"],
            created_at=task["created_at"],
            logger=logger,
        )

    @property
    def is_last_attempt(self) -> bool:
        return self.attempt >= self.max_attempts


@dataclass
class TaskResult:
    """Outcome returned by a handler.

    Handlers may also return a plain value (treated as a successful output)
    or ``None``.
    """

    success: bool
    output: Any = None
    error: str | None = None
    retryable: bool = True
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def completed(cls, output: Any = None, **metadata: Any) -> "TaskResult":
        return cls(success=True, output=output, metadata=metadata)

    @classmethod
    def failed(
        cls, error: str, retryable: bool = True, **metadata: Any
    ) -> "TaskResult":
        return cls(success=False, error=error, retryable=retryable, metadata=metadata)

    @classmethod
    def coerce(cls, value: Any) -> "TaskResult":
        if isinstance(value, cls):
            return value
        return cls.completed(value)

    def result_metadata(self) -> Dict[str, Any]:
        """Metadata merged into the task record on success."""
        merged = dict(self.metadata)
        if self.output is not None:
            merged["output"] = self.output
        return merged


HandlerReturn = Union[TaskResult, Any]

HandlerFunc = TypeVar(
    "HandlerFunc",
    bound=Callable[[TaskContext], Union[HandlerReturn, Awaitable[HandlerReturn]]],
)
