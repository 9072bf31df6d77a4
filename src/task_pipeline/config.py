"""Resolve control-directory paths and load optional `.bot/settings.yaml`."""

from __future__ import annotations

from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from .constants import (
    CONTROL_DIR_NAME,
    DEFAULT_ACTIVITY_WRITE_ATTEMPTS,
    DEFAULT_AGENT_COMMAND,
    DEFAULT_AGENT_TIMEOUT_SECONDS,
    DEFAULT_BETWEEN_TASKS_SECONDS,
    DEFAULT_MAX_CONSECUTIVE_FAILURES,
    DEFAULT_MAX_RATE_LIMIT_WAITS,
    DEFAULT_MAX_RETRIES_PER_TASK,
    DEFAULT_MODEL,
    DEFAULT_TASK_POLL_SECONDS,
    LOCKS_DIR,
    PROCESSES_DIR,
    PRODUCT_DIR,
    PROMPTS_DIR,
    RATE_LIMIT_FLOOR_SECONDS,
    RATE_LIMIT_MIN_SECONDS,
    RUNS_DIR,
    SETTINGS_FILE,
    STATE_DIR_NAME,
    TASKS_DIR,
    WORKSPACE_DIR,
    WORKTREES_DIR,
)
from .io_utils import _load_data_with_error
from .utils import _coerce_int


@dataclass(frozen=True)
class ControlPaths:
    """Filesystem layout of one project's bot root."""

    project_root: Path
    bot_root: Path

    @classmethod
    def for_project(cls, project_root: Path, bot_root: Optional[Path] = None) -> "ControlPaths":
        project_root = project_root.resolve()
        return cls(
            project_root=project_root,
            bot_root=(bot_root or project_root / STATE_DIR_NAME).resolve(),
        )

    @property
    def control_dir(self) -> Path:
        return self.bot_root / CONTROL_DIR_NAME

    @property
    def processes_dir(self) -> Path:
        return self.control_dir / PROCESSES_DIR

    @property
    def locks_dir(self) -> Path:
        return self.control_dir / LOCKS_DIR

    @property
    def runs_dir(self) -> Path:
        return self.control_dir / RUNS_DIR

    @property
    def worktrees_dir(self) -> Path:
        return self.bot_root / WORKTREES_DIR

    @property
    def prompts_dir(self) -> Path:
        return self.bot_root / PROMPTS_DIR

    @property
    def tasks_dir(self) -> Path:
        return self.bot_root / WORKSPACE_DIR / TASKS_DIR

    @property
    def product_dir(self) -> Path:
        return self.bot_root / WORKSPACE_DIR / PRODUCT_DIR

    @property
    def settings_path(self) -> Path:
        return self.bot_root / SETTINGS_FILE

    def ensure(self) -> None:
        for directory in (self.processes_dir, self.locks_dir, self.tasks_dir, self.product_dir):
            directory.mkdir(parents=True, exist_ok=True)


@dataclass(frozen=True)
class RunnerSettings:
    """Tunable limits and commands for orchestrator loops."""

    model: str = DEFAULT_MODEL
    agent_command: str = DEFAULT_AGENT_COMMAND
    agent_timeout_seconds: int = DEFAULT_AGENT_TIMEOUT_SECONDS
    max_retries_per_task: int = DEFAULT_MAX_RETRIES_PER_TASK
    max_consecutive_failures: int = DEFAULT_MAX_CONSECUTIVE_FAILURES
    max_rate_limit_waits: int = DEFAULT_MAX_RATE_LIMIT_WAITS
    task_poll_seconds: int = DEFAULT_TASK_POLL_SECONDS
    between_tasks_seconds: int = DEFAULT_BETWEEN_TASKS_SECONDS
    rate_limit_min_seconds: int = RATE_LIMIT_MIN_SECONDS
    rate_limit_floor_seconds: int = RATE_LIMIT_FLOOR_SECONDS
    activity_write_attempts: int = DEFAULT_ACTIVITY_WRITE_ATTEMPTS
    use_worktrees: bool = True

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> "RunnerSettings":
        """Build settings from a parsed settings mapping.

        Unknown keys are ignored; invalid numbers fall back to defaults and
        every limit is clamped to at least 1 (0 for sleeps).
        """
        defaults = cls()
        raw = _get_nested(config, "orchestrator")
        section: dict[str, Any] = raw if isinstance(raw, dict) else {}
        agent_raw = _get_nested(config, "agent")
        agent: dict[str, Any] = agent_raw if isinstance(agent_raw, dict) else {}

        def _int(source: dict[str, Any], key: str, default: int, minimum: int) -> int:
            return max(minimum, _coerce_int(source.get(key), default))

        model = agent.get("model") or config.get("model") or defaults.model
        command = agent.get("command") or defaults.agent_command
        return cls(
            model=str(model),
            agent_command=str(command),
            agent_timeout_seconds=_int(agent, "timeout_seconds", defaults.agent_timeout_seconds, 1),
            max_retries_per_task=_int(section, "max_retries_per_task", defaults.max_retries_per_task, 1),
            max_consecutive_failures=_int(
                section, "max_consecutive_failures", defaults.max_consecutive_failures, 1
            ),
            max_rate_limit_waits=_int(section, "max_rate_limit_waits", defaults.max_rate_limit_waits, 1),
            task_poll_seconds=_int(section, "task_poll_seconds", defaults.task_poll_seconds, 0),
            between_tasks_seconds=_int(section, "between_tasks_seconds", defaults.between_tasks_seconds, 0),
            rate_limit_min_seconds=_int(section, "rate_limit_min_seconds", defaults.rate_limit_min_seconds, 1),
            rate_limit_floor_seconds=_int(
                section, "rate_limit_floor_seconds", defaults.rate_limit_floor_seconds, 1
            ),
            activity_write_attempts=_int(
                section, "activity_write_attempts", defaults.activity_write_attempts, 1
            ),
            use_worktrees=bool(section.get("use_worktrees", defaults.use_worktrees)),
        )

    def with_overrides(self, **overrides: Any) -> "RunnerSettings":
        values = {key: value for key, value in overrides.items() if value is not None}
        return replace(self, **values)


def load_runner_config(bot_root: Path) -> tuple[dict[str, Any], str | None]:
    """Load the optional settings file.

    Args:
        bot_root: The `.bot` directory.

    Returns:
        A tuple of `(config, error_message)`. If the file is missing, returns `({}, None)`.
    """
    path = bot_root / SETTINGS_FILE
    if not path.exists():
        return {}, None
    data, err = _load_data_with_error(path, {})
    if err:
        return {}, err
    return data, None


def load_settings(paths: ControlPaths) -> RunnerSettings:
    config, err = load_runner_config(paths.bot_root)
    if err:
        logger.warning("Ignoring unreadable settings file: {}", err)
    return RunnerSettings.from_config(config)


def _get_nested(config: dict[str, Any], *keys: str) -> Any:
    cur: Any = config
    for key in keys:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur
