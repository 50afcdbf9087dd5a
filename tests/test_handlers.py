"""Tests for the handler decorator, registry and module loading."""

import sys
import threading

import pytest

from spindle.common.errors import UnregisteredHandlerError
from spindle.common.handler import load_handlers
from spindle.core.logger import TaskLogger
from spindle.core.registry import HandlerRegistry
from spindle.decorators.handler import handler
from spindle.schemas.handler import TaskContext, TaskResult


def make_context(**overrides) -> TaskContext:
    values = dict(
        task_id="0123456789abcdef",
        task_type="email",
        payload={"to": "ops@example.com"},
        attempt=1,
        max_attempts=3,
        metadata={},
        created_by=None,
        created_at=None,
        logger=TaskLogger("0123456789abcdef", "email"),
    )
    values.update(overrides)
    return TaskContext(**values)


def test_handler_decorator_basic():
    """Test basic handler decoration."""

    @handler(task_type="email")
    async def send_email(ctx):
        return "sent"

    assert send_email._spindle_task_type == "email"
    assert send_email._spindle_description == ""
    assert send_email._spindle_timeout_seconds is None


def test_handler_defaults_to_function_name():
    @handler(description="Generate a report", timeout_seconds=30)
    def generate_report(ctx):
        pass

    assert generate_report._spindle_task_type == "generate_report"
    assert generate_report._spindle_description == "Generate a report"
    assert generate_report._spindle_timeout_seconds == 30


def test_handler_timeout_validation():
    """Test that invalid timeouts raise ValueError."""
    with pytest.raises(ValueError, match="positive"):

        @handler(timeout_seconds=0)
        async def my_handler(ctx):
            pass

    with pytest.raises(ValueError, match="excessive"):

        @handler(timeout_seconds=3601)
        async def other_handler(ctx):
            pass


def test_handler_name_validation():
    with pytest.raises(ValueError, match="non-empty string"):

        @handler(task_type=42)  # type: ignore[arg-type]
        async def my_handler(ctx):
            pass

    with pytest.raises(ValueError, match="description"):

        @handler(description=["not", "text"])  # type: ignore[arg-type]
        async def other_handler(ctx):
            pass


def test_registry_register_and_get():
    registry = HandlerRegistry()

    async def send_email(ctx):
        pass

    registry.register("email", send_email, description="Send", timeout_seconds=5)

    registered = registry.get("email")
    assert registered.func is send_email
    assert registered.timeout_seconds == 5
    assert "email" in registry
    assert len(registry) == 1
    assert registry.task_types() == ["email"]
    assert registry.items() == [("email", registered)]


def test_registry_rejects_duplicates():
    registry = HandlerRegistry()
    registry.register("email", lambda ctx: None)

    with pytest.raises(ValueError, match="already registered"):
        registry.register("email", lambda ctx: None)


def test_registry_missing_handler():
    with pytest.raises(UnregisteredHandlerError) as exc_info:
        HandlerRegistry().get("email")

    assert exc_info.value.task_type == "email"


def test_registry_add_uses_decorator_metadata():
    @handler(task_type="report", description="Build it", timeout_seconds=12)
    async def build_report(ctx):
        pass

    registry = HandlerRegistry()
    registered = registry.add(build_report)

    assert registered.task_type == "report"
    assert registered.description == "Build it"
    assert registered.timeout_seconds == 12


def test_registry_add_requires_decorator():
    async def plain(ctx):
        pass

    with pytest.raises(ValueError, match="not decorated"):
        HandlerRegistry().add(plain)


@pytest.mark.asyncio
async def test_invoke_async_handler():
    registry = HandlerRegistry()

    async def send_email(ctx):
        return TaskResult.completed(ctx.payload["to"])

    registry.register("email", send_email)

    result = await registry.get("email").invoke(make_context())

    assert result.output == "ops@example.com"


@pytest.mark.asyncio
async def test_invoke_sync_handler_in_thread():
    """Test that blocking handlers never run on the event loop thread."""
    loop_thread = threading.get_ident()
    seen = {}

    def blocking(ctx):
        seen["thread"] = threading.get_ident()
        return ctx.attempt

    registry = HandlerRegistry()
    registry.register("email", blocking)

    assert await registry.get("email").invoke(make_context(attempt=2)) == 2
    assert seen["thread"] != loop_thread


@pytest.mark.asyncio
async def test_invoke_async_callable_object():
    class Sender:
        async def __call__(self, ctx):
            return "called"

    registry = HandlerRegistry()
    registered = registry.register("email", Sender())

    assert registered.is_async
    assert await registered.invoke(make_context()) == "called"


def test_task_result_coerce():
    assert TaskResult.coerce(None) == TaskResult(success=True)
    assert TaskResult.coerce({"n": 1}).result_metadata() == {"output": {"n": 1}}

    failed = TaskResult.failed("nope", retryable=False, code=7)
    assert TaskResult.coerce(failed) is failed
    assert failed.metadata == {"code": 7}


def test_context_last_attempt():
    assert make_context(attempt=3, max_attempts=3).is_last_attempt
    assert not make_context(attempt=1, max_attempts=3).is_last_attempt


def test_task_logger_prefixes_short_id(caplog):
    logger = TaskLogger("0123456789abcdef", "email")

    with caplog.at_level("INFO", logger="spindle.task"):
        logger.info("sending")

    assert caplog.records[-1].getMessage() == "[01234567] sending"
    assert caplog.records[-1].task_type == "email"


def test_load_handlers_from_module(isolated_cwd, monkeypatch):
    (isolated_cwd / "shop_handlers.py").write_text(
        "import spindle\n"
        "\n"
        "@spindle.handler(task_type='invoice')\n"
        "async def send_invoice(ctx):\n"
        "    return None\n"
        "\n"
        "@spindle.handler()\n"
        "def refund(ctx):\n"
        "    return None\n"
        "\n"
        "def helper():\n"
        "    pass\n"
    )
    monkeypatch.syspath_prepend(str(isolated_cwd))
    monkeypatch.delitem(sys.modules, "shop_handlers", raising=False)

    handlers = load_handlers("shop_handlers")

    assert sorted(h._spindle_task_type for h in handlers) == ["invoice", "refund"]


def test_load_handlers_missing_module():
    with pytest.raises(ModuleNotFoundError, match="Cannot import handler module"):
        load_handlers("definitely_not_a_module_xyz")


def test_load_handlers_requires_handlers(isolated_cwd, monkeypatch):
    (isolated_cwd / "empty_handlers.py").write_text("def helper():\n    pass\n")
    monkeypatch.syspath_prepend(str(isolated_cwd))
    monkeypatch.delitem(sys.modules, "empty_handlers", raising=False)

    with pytest.raises(LookupError, match="No @handler functions"):
        load_handlers("empty_handlers")
