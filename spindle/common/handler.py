import importlib
import sys
from typing import Any, Callable, List

from ..decorators.handler import is_handler


def load_handlers(module: str) -> List[Callable[..., Any]]:
    """Import ``module`` and return every function decorated with ``@handler``.

    The module is reloaded when it was imported before, so a restarted worker
    in the same interpreter picks up code changes.

    Raises:
        ModuleNotFoundError: If the module cannot be imported
        LookupError: If the module defines no handlers
    """
    try:
        imported_before = module in sys.modules
        handler_module = importlib.import_module(module)

        if imported_before:
            handler_module = importlib.reload(handler_module)

    except ModuleNotFoundError as e:
        raise ModuleNotFoundError(
            f"Cannot import handler module '{module}'. "
            f"Ensure the module exists and is in the Python path."
        ) from e

    handlers = []
    seen = set()
    for name in dir(handler_module):
        if name.startswith("__"):
            continue
        candidate = getattr(handler_module, name)
        if is_handler(candidate) and id(candidate) not in seen:
            seen.add(id(candidate))
            handlers.append(candidate)

    if not handlers:
        raise LookupError(
            f"No @handler functions found in module '{module}'. "
            f"Available names: {[name for name in dir(handler_module) if not name.startswith('_')]}"
        )

    return handlers
