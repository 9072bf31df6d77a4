"""Tests for control paths and `.bot/settings.yaml` loading."""

from __future__ import annotations

from pathlib import Path

from loguru import logger

from task_pipeline.config import ControlPaths, RunnerSettings, load_settings


def test_paths_default_to_dot_bot(tmp_path: Path) -> None:
    paths = ControlPaths.for_project(tmp_path)
    root = tmp_path.resolve()
    assert paths.bot_root == root / ".bot"
    assert paths.processes_dir == root / ".bot" / ".control" / "processes"
    assert paths.tasks_dir == root / ".bot" / "workspace" / "tasks"
    assert paths.worktrees_dir == root / ".bot" / "worktrees"


def test_ensure_creates_directories(tmp_path: Path) -> None:
    paths = ControlPaths.for_project(tmp_path, tmp_path / "elsewhere")
    paths.ensure()
    assert paths.processes_dir.is_dir()
    assert paths.locks_dir.is_dir()
    assert paths.product_dir.is_dir()


def test_missing_settings_file_gives_defaults(tmp_path: Path) -> None:
    assert load_settings(ControlPaths.for_project(tmp_path)) == RunnerSettings()


def test_settings_yaml_is_parsed_and_clamped(tmp_path: Path) -> None:
    paths = ControlPaths.for_project(tmp_path)
    paths.bot_root.mkdir(parents=True)
    paths.settings_path.write_text(
        "agent:\n"
        "  model: opus\n"
        "  command: my-agent --model {model} -\n"
        "orchestrator:\n"
        "  max_retries_per_task: 4\n"
        "  max_consecutive_failures: 0\n"
        "  max_rate_limit_waits: 4\n"
        "  task_poll_seconds: -5\n"
        "  between_tasks_seconds: nonsense\n"
        "  use_worktrees: false\n"
        "unknown_key: ignored\n"
    )

    settings = load_settings(paths)

    assert settings.model == "opus"
    assert settings.agent_command == "my-agent --model {model} -"
    assert settings.max_retries_per_task == 4
    assert settings.max_consecutive_failures == 1
    assert settings.max_rate_limit_waits == 4
    assert settings.task_poll_seconds == 0
    assert settings.between_tasks_seconds == RunnerSettings().between_tasks_seconds
    assert settings.use_worktrees is False


def test_unreadable_settings_warn_and_fall_back(tmp_path: Path) -> None:
    paths = ControlPaths.for_project(tmp_path)
    paths.bot_root.mkdir(parents=True)
    paths.settings_path.write_text("orchestrator: [unclosed\n")
    messages: list[str] = []
    handler_id = logger.add(lambda message: messages.append(str(message)), level="WARNING")
    try:
        settings = load_settings(paths)
    finally:
        logger.remove(handler_id)

    assert settings == RunnerSettings()
    assert any("Ignoring unreadable settings file" in m for m in messages)


def test_with_overrides_ignores_none() -> None:
    settings = RunnerSettings().with_overrides(max_retries_per_task=5, use_worktrees=None)
    assert settings.max_retries_per_task == 5
    assert settings.use_worktrees is True
