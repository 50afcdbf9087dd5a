import asyncio
import inspect
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Tuple

from ..common.errors import UnregisteredHandlerError
from ..schemas.handler import TaskContext


@dataclass(frozen=True)
class RegisteredHandler:
    task_type: str
    func: Callable[..., Any]
    description: str = ""
    timeout_seconds: float | None = None

    @property
    def is_async(self) -> bool:
        return inspect.iscoroutinefunction(self.func) or inspect.iscoroutinefunction(
            getattr(self.func, "__call__", None)
        )

    async def invoke(self, ctx: TaskContext) -> Any:
        """Run the handler; blocking functions go to a worker thread."""
        if self.is_async:
            return await self.func(ctx)
        result = await asyncio.to_thread(self.func, ctx)
        if inspect.isawaitable(result):
            result = await result
        return result


class HandlerRegistry:
    """Maps task type keys to the handlers this worker process can run.

    The registry is filled once at start-up and only read while
    dispatching.

    Example:
        >>> registry = HandlerRegistry()
        >>> registry.register("email", send_email, timeout_seconds=30)
        >>> registry.add(generate_report)  # decorated with @spindle.handler
    """

    def __init__(self) -> None:
        self._handlers: Dict[str, RegisteredHandler] = {}

    def register(
        self,
        task_type: str,
        func: Callable[..., Any],
        *,
        description: str = "",
        timeout_seconds: float | None = None,
    ) -> RegisteredHandler:
        """Register ``func`` as the handler of ``task_type``.

        Raises:
            ValueError: If the type already has a handler or the timeout is invalid
            TypeError: If func is not callable
        """
        if not isinstance(task_type, str) or not task_type.strip():
            raise ValueError(f"Task type must be a non-empty string, got {task_type!r}")
        if not callable(func):
            raise TypeError(f"Handler for '{task_type}' is not callable: {func!r}")
        if timeout_seconds is not None and timeout_seconds <= 0:
            raise ValueError(
                f"Handler timeout for '{task_type}' must be positive, got {timeout_seconds}"
            )
        if task_type in self._handlers:
            raise ValueError(f"A handler is already registered for task type '{task_type}'")

        registered = RegisteredHandler(
            task_type=task_type,
            func=func,
            description=description,
            timeout_seconds=timeout_seconds,
        )
        self._handlers[task_type] = registered
        return registered

    def add(self, func: Callable[..., Any]) -> RegisteredHandler:
        """Register a function decorated with ``@handler`` using its metadata."""
        task_type = getattr(func, "_spindle_task_type", None)
        if task_type is None:
            raise ValueError(
                f"'{getattr(func, '__name__', func)}' is not decorated with @handler"
            )
        return self.register(
            task_type,
            func,
            description=getattr(func, "_spindle_description", ""),
            timeout_seconds=getattr(func, "_spindle_timeout_seconds", None),
        )

    def get(self, task_type: str) -> RegisteredHandler:
        try:
            return self._handlers[task_type]
        except KeyError:
            raise UnregisteredHandlerError(task_type) from None

    def task_types(self) -> List[str]:
        return sorted(self._handlers)

    def items(self) -> List[Tuple[str, RegisteredHandler]]:
        return sorted(self._handlers.items())

    def __contains__(self, task_type: object) -> bool:
        return task_type in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)

    def __iter__(self) -> Iterator[RegisteredHandler]:
        return iter(self._handlers.values())
