"""Spindle - Durable background task execution engine for Python.

Producers enqueue typed tasks into a shared SQLite store; workers claim them
atomically, run the matching handler with a timeout and retry failures with
backoff until they complete or land in the dead letter list.

Example:
    >>> import spindle
    >>>
    >>> @spindle.handler(task_type="email", timeout_seconds=30)
    >>> async def send_email(ctx: spindle.TaskContext):
    ...     ctx.logger.info(f"Sending to {ctx.payload['to']}")
    ...     return spindle.TaskResult.completed(delivered=True)
    >>>
    >>> async with spindle.TaskClient() as client:
    ...     await client.register_task_type("email")
    ...     await client.create_task("email", {"to": "ops@example.com"}, priority="high")
"""

from spindle.common.errors import (
    ClaimLostError,
    HandlerExecutionError,
    HandlerTimeoutError,
    InactiveTaskTypeError,
    InvalidStateTransitionError,
    NonRetryableError,
    StoreUnavailableError,
    TaskEngineError,
    TaskNotFoundError,
    UnknownTaskTypeError,
    UnregisteredHandlerError,
)
from spindle.common.handler import load_handlers
from spindle.core.breaker import BreakerConfig, CircuitBreaker, CircuitState
from spindle.core.client import TaskClient
from spindle.core.dispatcher import Dispatcher, start_worker
from spindle.core.registry import HandlerRegistry
from spindle.core.retry import next_delay
from spindle.database.store import TaskStore
from spindle.decorators.handler import handler
from spindle.schemas.handler import TaskContext, TaskResult
from spindle.schemas.retry import RetryKind, RetryStrategy
from spindle.schemas.tasks import TaskPriority, TaskStatus

__version__ = "0.1.0"

__all__ = [
    # Decorators
    "handler",
    # Core classes
    "TaskStore",
    "TaskClient",
    "Dispatcher",
    "HandlerRegistry",
    "CircuitBreaker",
    "BreakerConfig",
    "CircuitState",
    # Functions
    "start_worker",
    "load_handlers",
    "next_delay",
    # Version
    "__version__",
    # Schemas
    "TaskContext",
    "TaskResult",
    "TaskPriority",
    "TaskStatus",
    "RetryKind",
    "RetryStrategy",
    # Exceptions
    "TaskEngineError",
    "TaskNotFoundError",
    "UnknownTaskTypeError",
    "InactiveTaskTypeError",
    "InvalidStateTransitionError",
    "ClaimLostError",
    "UnregisteredHandlerError",
    "HandlerExecutionError",
    "HandlerTimeoutError",
    "NonRetryableError",
    "StoreUnavailableError",
]
