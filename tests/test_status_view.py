"""Tests for rendering process tables and activity logs."""

from __future__ import annotations

from datetime import datetime, timezone

from task_pipeline.models import ActivityEvent, Process, ProcessStatus, ProcessType, TaskStatus
from task_pipeline.status_view import format_activity, format_process_table

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def test_table_shows_process_fields_and_heartbeat_age() -> None:
    process = Process(
        id="proc-abc123",
        type=ProcessType.EXECUTION,
        status=ProcessStatus.RUNNING,
        task_id="t-1",
        task_name="Add login",
        tasks_completed=2,
        heartbeat_status="Running agent on t-1",
        last_heartbeat="2026-01-01T11:58:30+00:00",
    )

    text = format_process_table([process], signals=["pause"], task_counts={TaskStatus.TODO: 3}, now=NOW)

    assert "Signals: pause" in text
    assert "proc-abc123" in text
    assert "t-1 Add login" in text
    assert "1m" in text
    assert "Tasks: todo=3" in text


def test_markup_in_errors_is_not_interpreted() -> None:
    process = Process(
        id="proc-x",
        type=ProcessType.ANALYSIS,
        status=ProcessStatus.STOPPED,
        error="[bold]boom[/bold]",
    )
    assert "[bold]boom[/bold]" in format_process_table([process], now=NOW, width=200)


def test_empty_table() -> None:
    assert "No processes recorded." in format_process_table([], now=NOW)


def test_activity_lines() -> None:
    events = [ActivityEvent(type="started", message="hello", task_id="t-1", timestamp="2026-01-01T00:00:00+00:00")]
    text = format_activity(events)
    assert "started" in text
    assert "(t-1) hello" in text
