#!/usr/bin/env python3
"""Spindle CLI - Command-line interface for the Spindle task engine."""

import asyncio
import json
import os
import sqlite3
import sys
from datetime import timedelta
from typing import Any, Awaitable, Callable, NoReturn, TypeVar

import click
from rich.console import Console
from rich.markup import escape

from .. import __version__
from ..common.errors import TaskEngineError
from ..core.client import TaskClient
from ..core.dispatcher import start_worker
from ..core.logger import configure_logging
from ..core.retry import default_retry_strategy
from ..database.store import TaskStore
from ..schemas.tasks import TaskPriority, TaskStatus
from .tables import stats_table, task_detail, task_table, task_types_table

console = Console()

T = TypeVar("T")

PRIORITIES = [str(priority) for priority in TaskPriority]
STATUSES = [status.value for status in TaskStatus]
TERMINAL = [TaskStatus.COMPLETED.value, TaskStatus.FAILED.value, TaskStatus.CANCELLED.value]


def echo(message: str, **kwargs):
    """Print with rich console."""
    console.print(message, **kwargs)


def fail(code: str, message: str) -> NoReturn:
    echo(f"[red]{escape(f'[{code}] {message}')}[/red]")
    sys.exit(1)


def run(ctx: click.Context, action: Callable[[TaskClient], Awaitable[T]]) -> T:
    """Run ``action`` against a client for the selected database."""

    async def _run() -> T:
        async with TaskClient(TaskStore(ctx.obj["db"])) as client:
            return await action(client)

    try:
        return asyncio.run(_run())
    except TaskEngineError as e:
        fail(e.code, str(e))
    except ValueError as e:
        fail("invalid_argument", str(e))
    except sqlite3.Error as e:
        fail("store_error", str(e))


@click.group()
@click.version_option(version=__version__, prog_name="spindle")
@click.option(
    "--db",
    envvar="SPINDLE_DATABASE",
    type=click.Path(dir_okay=False),
    help="Path of the task database (default: from spindle.toml or .spindle/tasks.db)",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Log level (default: INFO for the worker, WARNING otherwise)",
)
@click.pass_context
def cli(ctx: click.Context, db: str | None, log_level: str | None):
    """Spindle - Durable background task execution engine.

    Producers enqueue typed tasks; workers claim them atomically, run the
    matching handler and retry failures with backoff.
    """
    ctx.ensure_object(dict)
    ctx.obj["db"] = db
    ctx.obj["log_level"] = log_level

    # Ensure current directory is in python path so handler modules can be imported
    if os.getcwd() not in sys.path:
        sys.path.insert(0, os.getcwd())

    if ctx.invoked_subcommand != "worker":
        configure_logging(log_level or "WARNING")


@cli.command()
@click.pass_context
def init(ctx: click.Context):
    """Initialize the task database.

    Creates the database file and applies all pending migrations.
    Safe to run multiple times.
    """

    async def _init(client: TaskClient) -> str:
        return client.store.path  # type: ignore[attr-defined]

    path = run(ctx, _init)
    echo(f"[green]Task database ready at {escape(path)}[/green]")


@cli.command()
@click.option(
    "--workers",
    "-w",
    type=int,
    help="Number of concurrent task executions [default: from config, 4]",
)
@click.option(
    "--poll-interval",
    "-p",
    type=float,
    help="Polling interval in seconds [default: from config, 0.5]",
)
@click.option(
    "--module",
    "-m",
    "modules",
    multiple=True,
    required=True,
    help="Module containing @handler functions (repeatable)",
)
@click.option("--once", is_flag=True, help="Process all ready tasks, then exit")
@click.option(
    "--no-register",
    is_flag=True,
    help="Do not register the handled task types at start-up",
)
@click.pass_context
def worker(
    ctx: click.Context,
    workers: int | None,
    poll_interval: float | None,
    modules: tuple[str, ...],
    once: bool,
    no_register: bool,
):
    """Start a task worker.

    The worker loads the handlers of the given modules, claims ready tasks
    and executes them concurrently. Supports graceful shutdown via Ctrl+C
    or SIGTERM.

    Examples:
        spindle worker -m myapp.handlers              # Start with defaults
        spindle worker -m myapp.handlers -w 8         # 8 concurrent executions
        spindle worker -m myapp.handlers --once       # Drain the queue and exit
    """
    configure_logging(ctx.obj["log_level"] or "INFO")

    options: dict[str, Any] = {}
    if workers is not None:
        options["concurrency"] = workers
    if poll_interval is not None:
        options["poll_interval"] = poll_interval

    try:
        if not once:
            console.print("[bold green]Starting Spindle worker...[/bold green]")
        stats = asyncio.run(
            start_worker(
                modules,
                store=TaskStore(ctx.obj["db"]),
                register_task_types=not no_register,
                once=once,
                **options,
            )
        )
    except KeyboardInterrupt:
        return
    except TaskEngineError as e:
        fail(e.code, str(e))
    except (ValueError, LookupError, ImportError) as e:
        fail("worker_error", str(e))

    if once:
        echo(
            f"Processed {stats['claimed']} task(s): "
            f"[green]{stats['completed']} completed[/green], "
            f"[magenta]{stats['retried']} retrying[/magenta], "
            f"[red]{stats['failed']} failed[/red], "
            f"[dim]{stats['short_circuited']} short-circuited[/dim]"
        )


@cli.command()
@click.argument("task_type")
@click.option("--payload", "-d", default="{}", help="JSON payload", show_default=True)
@click.option(
    "--priority",
    type=click.Choice(PRIORITIES, case_sensitive=False),
    default="normal",
    show_default=True,
)
@click.option("--max-attempts", type=click.IntRange(1, 100), help="Override the attempt budget")
@click.option("--delay", type=click.FloatRange(0), help="Seconds before the task may run")
@click.option("--created-by", help="Owner reference stored with the task")
@click.pass_context
def enqueue(
    ctx: click.Context,
    task_type: str,
    payload: str,
    priority: str,
    max_attempts: int | None,
    delay: float | None,
    created_by: str | None,
):
    """Enqueue a task.

    Examples:
        spindle enqueue email -d '{"to": "ops@example.com"}'
        spindle enqueue report --priority high --max-attempts 3
    """
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        fail("invalid_argument", f"Payload is not valid JSON: {e}")

    async def _enqueue(client: TaskClient):
        strategy = None
        if max_attempts is not None:
            strategy = default_retry_strategy({"max_attempts": max_attempts})
        return await client.create_task(
            task_type,
            data,
            priority,
            strategy,
            created_by,
            delay=timedelta(seconds=delay) if delay else None,
        )

    task = run(ctx, _enqueue)
    echo(f"[green]Task created:[/green] {task['id']}")


@cli.command("list")
@click.option("--status", "-s", type=click.Choice(STATUSES, case_sensitive=False))
@click.option("--type", "-t", "task_type", help="Filter by task type")
@click.option("--priority", type=click.Choice(PRIORITIES, case_sensitive=False))
@click.option("--created-by", help="Filter by owner reference")
@click.option("--limit", "-l", default=50, type=int, show_default=True)
@click.option("--offset", default=0, type=int, show_default=True)
@click.pass_context
def list_tasks(
    ctx: click.Context,
    status: str | None,
    task_type: str | None,
    priority: str | None,
    created_by: str | None,
    limit: int,
    offset: int,
):
    """List tasks, highest priority and oldest first.

    Examples:
        spindle list                       # Up to 50 tasks
        spindle list -s retrying           # Only tasks waiting for a retry
        spindle list -t email -l 100
    """
    tasks = run(
        ctx,
        lambda client: client.list_tasks(
            None,
            limit,
            offset,
            status=status,
            task_type=task_type,
            priority=priority,
            created_by=created_by,
        ),
    )
    if not tasks:
        echo("No tasks found")
        return
    console.print(task_table(tasks))


@cli.command()
@click.argument("task_id")
@click.pass_context
def inspect(ctx: click.Context, task_id: str):
    """Show everything about one task."""
    task = run(ctx, lambda client: client.get_task(task_id))
    console.print(task_detail(task))


@cli.command()
@click.pass_context
def stats(ctx: click.Context):
    """Show task counts per status."""
    counts = run(ctx, lambda client: client.stats())
    console.print(stats_table(counts))


@cli.command("dead-letter")
@click.option("--limit", "-l", default=50, type=int, show_default=True)
@click.option("--offset", default=0, type=int, show_default=True)
@click.pass_context
def dead_letter(ctx: click.Context, limit: int, offset: int):
    """List failed tasks, most recent first."""
    tasks = run(ctx, lambda client: client.dead_letter(limit, offset))
    if not tasks:
        echo("Dead letter queue is empty")
        return
    console.print(task_table(tasks, title="Dead Letter"))


@cli.command()
@click.argument("task_id")
@click.pass_context
def cancel(ctx: click.Context, task_id: str):
    """Cancel a pending or retrying task."""
    run(ctx, lambda client: client.cancel_task(task_id))
    echo(f"[green]Task {task_id} cancelled[/green]")


@cli.command()
@click.argument("task_id")
@click.pass_context
def retry(ctx: click.Context, task_id: str):
    """Re-queue a failed task with a fresh attempt budget."""
    run(ctx, lambda client: client.retry_task(task_id))
    echo(f"[green]Task {task_id} re-queued[/green]")


@cli.command()
@click.argument("task_id")
@click.pass_context
def delete(ctx: click.Context, task_id: str):
    """Delete a completed, failed or cancelled task."""
    run(ctx, lambda client: client.delete_task(task_id))
    echo(f"[green]Task {task_id} deleted[/green]")


@cli.command()
@click.option(
    "--older-than-days",
    default=7.0,
    type=click.FloatRange(0),
    show_default=True,
    help="Only tasks finished more than this many days ago",
)
@click.option(
    "--status",
    "-s",
    "statuses",
    multiple=True,
    type=click.Choice(TERMINAL, case_sensitive=False),
    help="Statuses to purge (repeatable) [default: completed]",
)
@click.option("--dry-run", is_flag=True, help="Only count the tasks that would be deleted")
@click.pass_context
def purge(ctx: click.Context, older_than_days: float, statuses: tuple[str, ...], dry_run: bool):
    """Delete old finished tasks.

    Examples:
        spindle purge                              # Completed tasks older than 7 days
        spindle purge --older-than-days 30 -s completed -s cancelled
        spindle purge --dry-run
    """
    count = run(
        ctx,
        lambda client: client.purge_completed(
            timedelta(days=older_than_days),
            statuses or (TaskStatus.COMPLETED,),
            dry_run,
        ),
    )
    if dry_run:
        echo(f"[yellow]{count} task(s) would be deleted[/yellow]")
    else:
        echo(f"[green]Deleted {count} task(s)[/green]")


@cli.group()
def types():
    """Manage the task types that may be enqueued."""


@types.command("register")
@click.argument("task_type")
@click.option("--description", "-d", help="Human-readable description")
@click.pass_context
def register_type(ctx: click.Context, task_type: str, description: str | None):
    """Register (or re-activate) a task type."""
    run(ctx, lambda client: client.register_task_type(task_type, description))
    echo(f"[green]Task type '{escape(task_type)}' registered[/green]")


@types.command("list")
@click.option("--all", "-a", "include_inactive", is_flag=True, help="Include inactive types")
@click.pass_context
def list_types(ctx: click.Context, include_inactive: bool):
    """List registered task types."""
    task_types = run(ctx, lambda client: client.list_task_types(include_inactive))
    if not task_types:
        echo("No task types registered")
        return
    console.print(task_types_table(task_types))


@types.command("deactivate")
@click.argument("task_type")
@click.pass_context
def deactivate_type(ctx: click.Context, task_type: str):
    """Stop accepting new tasks of a type (queued tasks still run)."""
    run(ctx, lambda client: client.deactivate_task_type(task_type))
    echo(f"[green]Task type '{escape(task_type)}' deactivated[/green]")


if __name__ == "__main__":
    cli()
