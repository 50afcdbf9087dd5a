from ..schemas.handler import HandlerFunc

MAX_TIMEOUT_SECONDS = 3600


def handler(
    task_type: str | None = None,
    description: str | None = None,
    timeout_seconds: float | None = None,
):
    """
    Decorator to declare a function as the handler of a task type.

    The decorated function receives a :class:`TaskContext` and may be a
    coroutine function or a plain function (plain functions are run in a
    worker thread so they never block the dispatcher). It returns a
    :class:`TaskResult`, any JSON serializable value (stored as the task
    output) or ``None``. Raising marks the run as failed; raising
    :class:`NonRetryableError` fails the task without further attempts.

    Args:
        task_type: Task type key handled by the function. If None, uses the
            function name.
        description: Human-readable description, stored with the task type
            when the worker registers it.
        timeout_seconds: Execution timeout for one run. If None, the
            worker's ``task_timeout`` applies. Must be > 0.

    Returns:
        The decorated function with handler metadata attached.

    Example:
        ```python
        @spindle.handler(task_type="email", description="Send an email", timeout_seconds=30)
        async def send_email(ctx: spindle.TaskContext):
            ctx.logger.info(f"Sending email to {ctx.payload['to']}")
            await mailer.send(ctx.payload["to"], ctx.payload["subject"])
            return spindle.TaskResult.completed(delivered_to=ctx.payload["to"])
        ```

    Raises:
        ValueError: If the name or description is not a string, or the
            timeout is not positive or exceeds one hour.
    """
    if task_type is not None and (not isinstance(task_type, str) or not task_type.strip()):
        raise ValueError(
            f"Handler task_type must be a non-empty string or None, got {task_type!r}"
        )

    if description is not None and not isinstance(description, str):
        raise ValueError(
            f"Handler description must be a string or None, got {type(description).__name__}"
        )

    if timeout_seconds is not None:
        if isinstance(timeout_seconds, bool) or not isinstance(timeout_seconds, (int, float)):
            raise ValueError(
                f"Handler timeout_seconds must be a number or None, got {timeout_seconds!r}"
            )
        if timeout_seconds <= 0:
            raise ValueError(
                f"Handler timeout_seconds must be positive, got {timeout_seconds}"
            )
        if timeout_seconds > MAX_TIMEOUT_SECONDS:
            raise ValueError(
                f"Handler timeout_seconds seems excessive: {timeout_seconds}s. "
                f"Long running work should be split into several tasks."
            )

    def decorator(func: HandlerFunc) -> HandlerFunc:
        if not callable(func):
            raise TypeError(f"@handler expects a callable, got {type(func).__name__}")

        setattr(func, "_spindle_task_type", task_type or getattr(func, "__name__"))
        setattr(func, "_spindle_description", description or "")
        setattr(func, "_spindle_timeout_seconds", timeout_seconds)
        return func

    return decorator


def is_handler(obj: object) -> bool:
    return callable(obj) and hasattr(obj, "_spindle_task_type")
