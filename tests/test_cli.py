"""Tests for the spindle command-line interface."""

import logging
import sys

import pytest
from click.testing import CliRunner

from spindle.cli import cli as cli_module
from spindle.cli.cli import cli


@pytest.fixture(autouse=True)
def wide_console(monkeypatch):
    """Keep rich from wrapping ids and messages at 80 columns."""
    monkeypatch.setattr(cli_module.console, "width", 200)


@pytest.fixture(autouse=True)
def restore_logging():
    """The CLI reconfigures the root logger; put it back afterwards."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def db(tmp_path):
    return str(tmp_path / "cli.db")


@pytest.fixture
def invoke(db):
    runner = CliRunner()

    def _invoke(*args):
        return runner.invoke(cli, ["--db", db, *args])

    return _invoke


def created_id(result) -> str:
    assert result.exit_code == 0, result.output
    return result.output.split("Task created:")[1].split()[0]


def test_init_creates_database(invoke, db):
    result = invoke("init")

    assert result.exit_code == 0, result.output
    assert "Task database ready" in result.output


def test_types_register_and_list(invoke):
    result = invoke("types", "register", "email", "-d", "Send an email")
    assert result.exit_code == 0, result.output
    assert "Task type 'email' registered" in result.output

    result = invoke("types", "list")
    assert "email" in result.output
    assert "Send an email" in result.output

    invoke("types", "deactivate", "email")
    assert "No task types registered" in invoke("types", "list").output
    assert "email" in invoke("types", "list", "--all").output


def test_enqueue_unknown_type_fails(invoke):
    result = invoke("enqueue", "sms", "-d", "{}")

    assert result.exit_code == 1
    assert "[unknown_task_type]" in result.output


def test_enqueue_rejects_invalid_json(invoke):
    invoke("types", "register", "email")

    result = invoke("enqueue", "email", "-d", "{not json")

    assert result.exit_code == 1
    assert "[invalid_argument]" in result.output


def test_enqueue_list_inspect_and_stats(invoke):
    invoke("types", "register", "email")
    task_id = created_id(
        invoke(
            "enqueue",
            "email",
            "-d",
            '{"to": "ops@example.com"}',
            "--priority",
            "high",
            "--max-attempts",
            "2",
            "--created-by",
            "billing",
        )
    )

    listing = invoke("list", "-s", "pending")
    assert listing.exit_code == 0, listing.output
    assert task_id in listing.output
    assert "high" in listing.output
    assert "0/2" in listing.output

    detail = invoke("inspect", task_id)
    assert detail.exit_code == 0, detail.output
    assert "ops@example.com" in detail.output
    assert "billing" in detail.output

    stats = invoke("stats")
    assert "Task Statistics" in stats.output

    assert "No tasks found" in invoke("list", "-s", "failed").output


def test_cancel_twice_reports_invalid_transition(invoke):
    invoke("types", "register", "email")
    task_id = created_id(invoke("enqueue", "email"))

    first = invoke("cancel", task_id)
    second = invoke("cancel", task_id)

    assert first.exit_code == 0, first.output
    assert f"Task {task_id} cancelled" in first.output
    assert second.exit_code == 1
    assert "[invalid_state_transition]" in second.output


def test_inspect_missing_task(invoke):
    result = invoke("inspect", "does-not-exist")

    assert result.exit_code == 1
    assert "[not_found]" in result.output


def test_worker_once_processes_queue(invoke, tmp_path, monkeypatch):
    """Test a full round trip: enqueue, drain with a worker, inspect."""
    (tmp_path / "cli_handlers.py").write_text(
        "import spindle\n"
        "\n"
        "@spindle.handler(task_type='email', description='Send an email')\n"
        "def send_email(ctx):\n"
        "    return {'delivered_to': ctx.payload['to']}\n"
    )
    monkeypatch.syspath_prepend(str(tmp_path))
    monkeypatch.delitem(sys.modules, "cli_handlers", raising=False)

    invoke("types", "register", "email")
    task_id = created_id(invoke("enqueue", "email", "-d", '{"to": "ops@example.com"}'))

    result = invoke("worker", "-m", "cli_handlers", "--once")

    assert result.exit_code == 0, result.output
    assert "Processed 1 task(s)" in result.output
    detail = invoke("inspect", task_id)
    assert "completed" in detail.output
    assert "delivered_to" in detail.output


def test_worker_with_missing_module(invoke):
    result = invoke("worker", "-m", "no_such_handlers_module", "--once")

    assert result.exit_code == 1
    assert "[worker_error]" in result.output


def test_purge_and_dead_letter(invoke):
    invoke("types", "register", "email")
    invoke("enqueue", "email")

    dry_run = invoke("purge", "--dry-run")
    assert dry_run.exit_code == 0, dry_run.output
    assert "0 task(s) would be deleted" in dry_run.output

    assert "Deleted 0 task(s)" in invoke("purge", "--older-than-days", "0").output
    assert "Dead letter queue is empty" in invoke("dead-letter").output
