"""Test the `task-pipeline` CLI subcommands."""

from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest
from loguru import logger

from task_pipeline import runner
from task_pipeline.config import ControlPaths
from task_pipeline.models import ProcessStatus, ProcessType, Task, TaskStatus
from task_pipeline.registry import ProcessRegistry
from task_pipeline.task_index import FileTaskIndex


@pytest.fixture(autouse=True)
def _restore_default_sink():
    yield
    logger.remove()
    logger.add(sys.stderr)


def _main(argv: list[str]) -> int:
    with pytest.raises(SystemExit) as excinfo:
        runner.main(argv)
    return int(excinfo.value.code or 0)


def _registry(project_dir: Path) -> ProcessRegistry:
    paths = ControlPaths.for_project(project_dir)
    paths.ensure()
    return ProcessRegistry(paths.processes_dir)


def test_no_arguments_prints_usage(capsys: pytest.CaptureFixture[str]) -> None:
    assert _main([]) == 2
    assert "usage: task-pipeline" in capsys.readouterr().out


def test_help_exits_zero(capsys: pytest.CaptureFixture[str]) -> None:
    assert _main(["--help"]) == 0
    assert "expand-groups" in capsys.readouterr().out


def test_unknown_command(capsys: pytest.CaptureFixture[str]) -> None:
    assert _main(["launch"]) == 2
    assert "Unknown command: launch" in capsys.readouterr().err


def test_status_on_empty_project(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert _main(["status", "--project-dir", str(tmp_path)]) == 0
    assert capsys.readouterr().out.count("No processes recorded.") == 1


def test_status_json_lists_processes_and_task_counts(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    registry = _registry(tmp_path)
    process = registry.create(registry.new_process(ProcessType.ANALYSIS, task_id="t-1"))
    paths = ControlPaths.for_project(tmp_path)
    index = FileTaskIndex(paths.tasks_dir, paths.locks_dir)
    index.save(Task(id="t-1", status=TaskStatus.ANALYSING))
    index.save(Task(id="t-2"))

    assert _main(["status", "--project-dir", str(tmp_path), "--json"]) == 0

    payload = json.loads(capsys.readouterr().out)
    assert [p["id"] for p in payload["processes"]] == [process.id]
    assert payload["tasks"]["analysing"] == 1
    assert payload["tasks"]["todo"] == 1
    assert payload["signals"] == []


def test_status_table_shows_process(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    registry = _registry(tmp_path)
    process = registry.create(registry.new_process(ProcessType.EXECUTION))

    assert _main(["status", "--project-dir", str(tmp_path)]) == 0

    out = capsys.readouterr().out
    assert process.id in out
    assert "execution" in out


def test_stop_by_id(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    registry = _registry(tmp_path)
    process = registry.create(registry.new_process(ProcessType.EXECUTION))

    assert _main(["stop", "--project-dir", str(tmp_path), "--id", process.id]) == 0
    assert registry.is_stop_requested(process.id)
    assert _main(["stop", "--project-dir", str(tmp_path), "--id", "proc-missing"]) == 1
    assert "Unknown process" in capsys.readouterr().err


def test_stop_by_type_and_all(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    registry = _registry(tmp_path)
    analysis = registry.create(registry.new_process(ProcessType.ANALYSIS))
    execution = registry.create(registry.new_process(ProcessType.EXECUTION))

    assert _main(["stop", "--project-dir", str(tmp_path), "--type", "analysis"]) == 0
    assert registry.is_stop_requested(analysis.id)
    assert not registry.is_stop_requested(execution.id)

    assert _main(["stop", "--project-dir", str(tmp_path), "--all"]) == 0
    assert (tmp_path / ".bot" / ".control" / "stop.signal").exists()


def test_signal_set_list_clear(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    project = str(tmp_path)
    assert _main(["signal", "--project-dir", project, "set", "pause"]) == 0
    capsys.readouterr()

    assert _main(["signal", "--project-dir", project, "list"]) == 0
    assert capsys.readouterr().out.split() == ["pause"]

    assert _main(["signal", "--project-dir", project, "clear", "pause"]) == 0
    assert not (tmp_path / ".bot" / ".control" / "pause.signal").exists()

    assert _main(["signal", "--project-dir", project, "set"]) == 2


def test_signal_rejects_unknown_name(tmp_path: Path) -> None:
    assert _main(["signal", "--project-dir", str(tmp_path), "set", "explode"]) == 2


def test_whisper_and_activity(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    registry = _registry(tmp_path)
    process = registry.create(registry.new_process(ProcessType.EXECUTION))
    registry.log(process, "started", "hello from the loop")

    assert _main(["whisper", "--project-dir", str(tmp_path), process.id, "use the v2 client", "--urgent"]) == 0
    drained = registry.drain_whispers(process.id)
    assert [(w["message"], w["priority"]) for w in drained] == [("use the v2 client", "urgent")]

    capsys.readouterr()
    assert _main(["activity", "--project-dir", str(tmp_path), process.id, "--json"]) == 0
    payload = json.loads(capsys.readouterr().out)
    assert [e["message"] for e in payload["events"]] == ["hello from the loop"]
    assert payload["position"] > 0

    assert _main(["activity", "--project-dir", str(tmp_path), process.id]) == 0
    assert capsys.readouterr().out.count("hello from the loop") == 1


def test_whisper_to_unknown_process_fails(tmp_path: Path) -> None:
    _registry(tmp_path)
    assert _main(["whisper", "--project-dir", str(tmp_path), "proc-nope", "hi"]) == 1


def test_run_without_template_reports_error(tmp_path: Path) -> None:
    index_paths = ControlPaths.for_project(tmp_path)
    index_paths.ensure()
    FileTaskIndex(index_paths.tasks_dir, index_paths.locks_dir).save(Task(id="t-1"))

    assert _main(["run", "--project-dir", str(tmp_path), "--type", "execution", "--no-worktrees"]) == 2

    [record] = ProcessRegistry(index_paths.processes_dir).list()
    assert record.status == ProcessStatus.STOPPED
    assert "TemplateNotFoundError" in (record.error or "")
