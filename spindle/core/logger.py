import logging
from typing import Any, MutableMapping, Tuple

from rich.logging import RichHandler

LOG_FORMAT = "%(message)s"


def configure_logging(level: int | str = logging.INFO) -> None:
    """Route all ``spindle.*`` loggers (and the root logger) through rich."""
    if isinstance(level, str):
        level = level.upper()

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=[RichHandler(rich_tracebacks=True, show_time=True, show_path=False)],
        force=True,
    )
    # aiosqlite logs every statement at DEBUG
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


class TaskLogger(logging.LoggerAdapter):
    """Logger handed to handlers, prefixing each record with the short task id."""

    def __init__(self, task_id: str, task_type: str, logger: logging.Logger | None = None):
        super().__init__(
            logger or logging.getLogger("spindle.task"),
            {"task_id": task_id, "task_type": task_type},
        )

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> Tuple[Any, MutableMapping[str, Any]]:
        extra = self.extra or {}
        kwargs.setdefault("extra", {}).update(extra)
        return f"[{str(extra['task_id'])[:8]}] {msg}", kwargs
