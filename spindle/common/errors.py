class TaskEngineError(Exception):
    """Base class for errors surfaced by the task engine.

    Every subclass carries a stable ``code`` so callers (CLI, HTTP layers)
    can tell failures apart without string matching.
    """

    code = "task_engine_error"


class TaskNotFoundError(TaskEngineError):
    """Exception raised when a task is not found in the store."""

    code = "not_found"

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task with ID {task_id} not found.")


class UnknownTaskTypeError(TaskEngineError):
    """Exception raised when enqueuing a task whose type is not registered."""

    code = "unknown_task_type"

    def __init__(self, task_type: str, message: str | None = None):
        self.task_type = task_type
        super().__init__(message or f"Task type '{task_type}' is not registered.")


class InactiveTaskTypeError(UnknownTaskTypeError):
    """Exception raised when enqueuing a task whose type has been deactivated."""

    code = "inactive_task_type"

    def __init__(self, task_type: str):
        super().__init__(task_type, f"Task type '{task_type}' is not active.")


class InvalidStateTransitionError(TaskEngineError):
    """Exception raised when a task cannot move from its current status.

    The task record is left unchanged.
    """

    code = "invalid_state_transition"

    def __init__(self, task_id: str, current: str, target: str):
        self.task_id = task_id
        self.current = current
        self.target = target
        super().__init__(
            f"Task {task_id} cannot transition from '{current}' to '{target}'."
        )


class ClaimLostError(InvalidStateTransitionError):
    """Exception raised when an outcome is reported for a run that no longer owns the task.

    This happens when a worker reports after its run was recovered as stale
    and the task was claimed again. The task record is left unchanged.
    """

    code = "claim_lost"

    def __init__(self, task_id: str, current: str, target: str):
        self.task_id = task_id
        self.current = current
        self.target = target
        TaskEngineError.__init__(
            self,
            f"Task {task_id} is no longer owned by this run; '{target}' outcome discarded.",
        )


class UnregisteredHandlerError(TaskEngineError):
    """Exception raised when this worker process has no handler for a task type."""

    code = "unregistered_handler"

    def __init__(self, task_type: str):
        self.task_type = task_type
        super().__init__(f"No handler registered for task type: {task_type}")


class HandlerExecutionError(TaskEngineError):
    """Exception describing a handler that raised or returned a failure."""

    code = "handler_execution_failure"

    def __init__(self, task_type: str, error_message: str):
        self.task_type = task_type
        self.error_message = error_message
        super().__init__(f"Handler '{task_type}' failed: {error_message}")


class HandlerTimeoutError(HandlerExecutionError):
    """Exception describing a handler that exceeded its execution timeout."""

    code = "handler_timeout"

    def __init__(self, task_type: str, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(task_type, f"timed out after {timeout_seconds}s")


class NonRetryableError(Exception):  # noqa: N818
    """
    Raised by a handler to fail its task permanently.

    The task skips the remaining attempts and goes straight to the dead
    letter list, e.g. for a payload that can never be processed:

        @spindle.handler(task_type="email")
        async def send_email(ctx):
            if "to" not in ctx.payload:
                raise spindle.NonRetryableError("Missing 'to' field in email payload")
    """

    pass


class StoreUnavailableError(TaskEngineError):
    """Exception raised when the task store cannot be opened or reached."""

    code = "store_unavailable"
