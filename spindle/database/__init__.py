from .base import TaskStoreBackend
from .store import TaskStore

__all__ = [
    "TaskStoreBackend",
    "TaskStore",
]
