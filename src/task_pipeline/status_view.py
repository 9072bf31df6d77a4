"""Render process records and activity events as rich text."""

from __future__ import annotations

import io
from datetime import datetime, timezone
from typing import Optional

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .models import ActivityEvent, Process, ProcessStatus, TaskStatus
from .utils import _parse_iso

_STATUS_STYLES = {
    ProcessStatus.STARTING: "cyan",
    ProcessStatus.RUNNING: "green",
    ProcessStatus.NEEDS_INPUT: "yellow",
    ProcessStatus.COMPLETED: "dim",
    ProcessStatus.FAILED: "red",
    ProcessStatus.STOPPED: "magenta",
}


def _age(value: Optional[str], now: datetime) -> str:
    stamp = _parse_iso(value)
    if stamp is None:
        return "-"
    seconds = max(0, int((now - stamp).total_seconds()))
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m"
    return f"{seconds // 3600}h{(seconds % 3600) // 60:02d}m"


def format_process_table(
    processes: list[Process],
    *,
    signals: Optional[list[str]] = None,
    task_counts: Optional[dict[TaskStatus, int]] = None,
    now: Optional[datetime] = None,
    width: int = 120,
) -> str:
    """Format process records (newest first) as a table.

    Args:
        processes: Records to show.
        signals: Active Signal Bus markers, shown above the table.
        task_counts: Optional per-bucket task counts, shown below the table.
        now: Reference time for heartbeat ages.
        width: Console width used for the export.

    Returns:
        Plain text suitable for a terminal.
    """
    now = now or datetime.now(timezone.utc)
    console = Console(file=io.StringIO(), record=True, width=width)

    if signals:
        console.print(f"[bold]Signals:[/bold] {', '.join(signals)}")

    if not processes:
        console.print("No processes recorded.")
    else:
        table = Table(show_lines=False)
        table.add_column("ID", no_wrap=True)
        table.add_column("Type")
        table.add_column("Status")
        table.add_column("Task")
        table.add_column("Done", justify="right")
        table.add_column("Heartbeat")
        table.add_column("Age", justify="right")
        table.add_column("Error")
        for process in processes:
            style = _STATUS_STYLES.get(process.status, "")
            task = process.task_id or "-"
            if process.task_name:
                task = f"{task} {process.task_name}"
            table.add_row(
                process.id,
                process.type.value,
                f"[{style}]{process.status.value}[/{style}]" if style else process.status.value,
                escape(task),
                str(process.tasks_completed),
                escape(process.heartbeat_status or "-"),
                _age(process.last_heartbeat, now),
                escape(process.error or ""),
            )
        console.print(table)

    if task_counts:
        summary = ", ".join(f"{status.value}={count}" for status, count in task_counts.items())
        console.print(f"[bold]Tasks:[/bold] {summary}")

    return console.export_text()


def format_activity(events: list[ActivityEvent], *, width: int = 120) -> str:
    console = Console(file=io.StringIO(), record=True, width=width)
    for event in events:
        where = event.task_id or "-"
        console.print(f"[dim]{event.timestamp}[/dim] [bold]{event.type}[/bold] ({escape(where)}) {escape(event.message)}")
    return console.export_text()
