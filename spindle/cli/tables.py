import json
from datetime import datetime
from typing import Iterable

from rich.console import Group
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from ..schemas.tasks import Task, TaskStats, TaskStatus, TaskType

STATUS_STYLES = {
    TaskStatus.PENDING: "blue",
    TaskStatus.RUNNING: "yellow",
    TaskStatus.RETRYING: "magenta",
    TaskStatus.COMPLETED: "green",
    TaskStatus.FAILED: "red",
    TaskStatus.CANCELLED: "dim",
}


def format_time(value: datetime | None) -> str:
    if value is None:
        return "-"
    return value.strftime("%Y-%m-%d %H:%M:%S")


def styled_status(status: TaskStatus) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status.value}[/{style}]"


def task_table(tasks: Iterable[Task], title: str = "Tasks") -> Table:
    table = Table(title=title, show_header=True, header_style="bold magenta")
    table.add_column("ID", style="dim", width=34)
    table.add_column("Type", style="cyan")
    table.add_column("Status", justify="center")
    table.add_column("Priority", justify="center")
    table.add_column("Attempts", justify="right")
    table.add_column("Scheduled", style="green")
    table.add_column("Last error", overflow="ellipsis", max_width=40)

    for task in tasks:
        table.add_row(
            task["id"],
            task["task_type"],
            styled_status(task["status"]),
            str(task["priority"]),
            f"{task['current_attempt']}/{task['max_attempts']}",
            format_time(task["scheduled_at"]),
            escape(task["last_error"] or ""),
        )
    return table


def task_detail(task: Task) -> Panel:
    """Full view of one task for ``spindle inspect``."""
    fields = Table.grid(padding=(0, 2))
    fields.add_column(style="bold")
    fields.add_column()

    strategy = task["retry_strategy"]
    rows = [
        ("ID", task["id"]),
        ("Type", task["task_type"]),
        ("Status", styled_status(task["status"])),
        ("Priority", str(task["priority"])),
        ("Attempts", f"{task['current_attempt']}/{task['max_attempts']}"),
        (
            "Retry",
            f"{strategy.kind.value}, base {strategy.base_delay}s, "
            f"x{strategy.multiplier}, max {strategy.max_delay}s",
        ),
        ("Created by", escape(task["created_by"] or "-")),
        ("Created", format_time(task["created_at"])),
        ("Updated", format_time(task["updated_at"])),
        ("Scheduled", format_time(task["scheduled_at"])),
        ("Started", format_time(task["started_at"])),
        ("Finished", format_time(task["completed_at"])),
        ("Last error", escape(task["last_error"] or "-")),
    ]
    for label, value in rows:
        fields.add_row(label, value)

    payload = escape(json.dumps(task["payload"], indent=2, default=str))
    metadata = escape(json.dumps(task["metadata"], indent=2, default=str))
    body = Group(
        fields,
        "",
        "[bold]Payload[/bold]",
        payload,
        "",
        "[bold]Metadata[/bold]",
        metadata,
    )
    return Panel(body, title=f"Task {task['id'][:8]}", expand=False)


def stats_table(stats: TaskStats) -> Table:
    table = Table(title="Task Statistics", show_header=True, header_style="bold magenta")
    table.add_column("Status")
    table.add_column("Count", justify="right")

    for status in TaskStatus:
        table.add_row(styled_status(status), str(stats[status.value]))  # type: ignore[literal-required]
    table.add_section()
    table.add_row("[bold]total[/bold]", f"[bold]{stats['total']}[/bold]")
    return table


def task_types_table(task_types: Iterable[TaskType]) -> Table:
    table = Table(title="Task Types", show_header=True, header_style="bold magenta")
    table.add_column("Type", style="cyan")
    table.add_column("Description")
    table.add_column("Active", justify="center")
    table.add_column("Updated", style="green")

    for task_type in task_types:
        table.add_row(
            task_type["task_type"],
            escape(task_type["description"] or ""),
            "[green]yes[/green]" if task_type["is_active"] else "[dim]no[/dim]",
            format_time(task_type["updated_at"]),
        )
    return table
