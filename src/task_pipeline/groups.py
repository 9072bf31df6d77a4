"""Order task groups by dependency and expand each one into concrete tasks.

The manifest `workspace/product/task-groups.json` is produced by an upstream
planning step. It is consumed exactly once: after every group has been
expanded it is renamed to `task-groups.done.json`.
"""

from __future__ import annotations

import uuid
from dataclasses import replace
from pathlib import Path
from typing import Callable, Optional

from loguru import logger

from .agent import AgentInvoker, SubprocessAgent
from .classifier import classify_failure
from .config import ControlPaths, RunnerSettings, load_settings
from .constants import SIGNAL_STOP, TASK_GROUPS_DONE_FILE, TASK_GROUPS_FILE
from .errors import DependencyCycleError, GroupExpansionError, ManifestError, ManifestNotFoundError
from .io_utils import _load_data_with_error
from .logging_utils import task_logger
from .models import Process, ProcessStatus, ProcessType, Task, TaskContext, TaskGroup
from .prompts import build_group_prompt, load_template
from .rate_limit import RateLimitController
from .registry import ProcessRegistry
from .signals import Clock, SignalBus, SystemClock
from .task_index import FileTaskIndex, TaskIndex
from .utils import _now_iso

TASK_CREATION_TEMPLATE = ProcessType.TASK_CREATION.value


def topological_order(groups: list[TaskGroup]) -> list[TaskGroup]:
    """Return `groups` ordered so every group follows all of its dependencies.

    Each ready frontier is sorted by `(order, id)` so the result is
    deterministic.

    Raises:
        ManifestError: If two groups share an id.
        DependencyCycleError: If some groups can never become ready, either
            because of a cycle or a dependency on an unknown group.
    """
    by_id: dict[str, TaskGroup] = {}
    for group in groups:
        if group.id in by_id:
            raise ManifestError(f"Duplicate task group id: {group.id}")
        by_id[group.id] = group

    resolved: list[TaskGroup] = []
    resolved_ids: set[str] = set()
    remaining = dict(by_id)
    max_iterations = len(groups) + 1
    iterations = 0
    while remaining:
        iterations += 1
        if iterations > max_iterations:
            raise DependencyCycleError(sorted(remaining))
        frontier = [
            group for group in remaining.values() if all(dep in resolved_ids for dep in group.depends_on)
        ]
        if not frontier:
            unknown = sorted(
                {dep for group in remaining.values() for dep in group.depends_on if dep not in by_id}
            )
            message = None
            if unknown:
                message = (
                    f"Unresolvable task groups: {', '.join(sorted(remaining))} "
                    f"(unknown dependencies: {', '.join(unknown)})"
                )
            raise DependencyCycleError(sorted(remaining), message)
        frontier.sort(key=lambda g: (g.order, g.id))
        for group in frontier:
            resolved.append(group)
            resolved_ids.add(group.id)
            del remaining[group.id]
    return resolved


def load_manifest(path: Path) -> list[TaskGroup]:
    if not path.exists():
        raise ManifestNotFoundError(f"Task group manifest not found: {path}")
    data, err = _load_data_with_error(path, {})
    if err:
        raise ManifestError(f"Task group manifest is unreadable: {err}")
    raw_groups = data.get("groups")
    if not isinstance(raw_groups, list):
        raise ManifestError(f"{path.name}: expected a 'groups' list")
    groups = [TaskGroup.from_dict(item) for item in raw_groups if isinstance(item, dict)]
    missing = [index for index, group in enumerate(groups) if not group.id]
    if missing:
        raise ManifestError(f"{path.name}: groups at positions {missing} have no id")
    return groups


class TaskGroupResolver:
    def __init__(
        self,
        paths: ControlPaths,
        settings: RunnerSettings,
        *,
        agent: AgentInvoker,
        index: TaskIndex,
        registry: ProcessRegistry,
        rate_limits: RateLimitController,
        should_stop: Callable[[], bool],
    ):
        self.paths = paths
        self.settings = settings
        self.agent = agent
        self.index = index
        self.registry = registry
        self.rate_limits = rate_limits
        self.should_stop = should_stop
        self.interrupted = False

    @property
    def manifest_path(self) -> Path:
        return self.paths.product_dir / TASK_GROUPS_FILE

    @property
    def archive_path(self) -> Path:
        return self.paths.product_dir / TASK_GROUPS_DONE_FILE

    def _existing_by_group(self) -> dict[str, list[Task]]:
        existing: dict[str, list[Task]] = {}
        for task in self.index.list_tasks():
            if task.group_id:
                existing.setdefault(task.group_id, []).append(task)
        return existing

    def expand(self, process: Process) -> dict[str, list[Task]]:
        """Expand every group of the manifest, in dependency order.

        Groups that already own tasks (from an earlier interrupted run) are
        not expanded again. Returns the tasks per group id. When a stop is
        requested mid-way, returns what was created so far, sets
        `interrupted` and leaves the manifest in place.
        """
        groups = topological_order(load_manifest(self.manifest_path))
        template = load_template(self.paths.prompts_dir, TASK_CREATION_TEMPLATE)
        created = self._existing_by_group()

        for position, group in enumerate(groups, start=1):
            if group.id in created:
                logger.info("Task group {} already expanded ({} tasks)", group.id, len(created[group.id]))
                continue
            if self.should_stop():
                self.interrupted = True
                self.registry.log(process, "stopped", f"Stop requested before group {group.id}")
                return created
            process.heartbeat_next_action = f"Expand group {position}/{len(groups)}: {group.id}"
            self.registry.heartbeat(process, f"Expanding {group.name or group.id}")
            self.registry.log(process, "group_started", f"Expanding task group {group.id}")

            prerequisites = {dep: created.get(dep, []) for dep in group.depends_on}
            new_tasks = self._expand_group(process, group, template, prerequisites)
            if new_tasks is None:
                self.interrupted = True
                return created
            created[group.id] = new_tasks
            self.registry.log(
                process,
                "group_completed",
                f"Task group {group.id} produced {len(new_tasks)} task(s)",
            )

        self.manifest_path.replace(self.archive_path)
        logger.info("Archived task group manifest to {}", self.archive_path)
        return created

    def _expand_group(
        self,
        process: Process,
        group: TaskGroup,
        template: str,
        prerequisites: dict[str, list[Task]],
    ) -> Optional[list[Task]]:
        context = TaskContext(
            task_id=group.id,
            phase=ProcessType.TASK_CREATION.value,
            session_id=process.session_id,
            process_id=process.id,
        )
        log = task_logger(context)
        attempts = 0
        rate_limit_waits = 0
        last_error = ""
        while attempts < self.settings.max_retries_per_task:
            before = {task.id for task in self.index.list_tasks()}
            prompt = build_group_prompt(
                template,
                group,
                process,
                prerequisite_tasks=prerequisites,
                whispers=self.registry.drain_whispers(process.id),
            )
            session_id = str(uuid.uuid4())
            process.claude_session_id = session_id
            result = self.agent.invoke(
                prompt,
                model=process.model or self.settings.model,
                session_id=session_id,
                cwd=self.paths.project_root,
                context=replace(context, session_id=session_id),
            )
            if result.claude_session_id:
                process.claude_session_id = result.claude_session_id
            self.registry.heartbeat(process)

            new_tasks = [task for task in self.index.list_tasks() if task.id not in before]
            if new_tasks:
                for task in new_tasks:
                    if not task.group_id:
                        task.group_id = group.id
                        self.index.save(task)
                return new_tasks

            limit = self.rate_limits.detect(result.diagnostics)
            if limit:
                rate_limit_waits += 1
                if rate_limit_waits > self.settings.max_rate_limit_waits:
                    raise GroupExpansionError(
                        group.id, f"still rate limited after {self.settings.max_rate_limit_waits} waits: {limit}"
                    )
                wait = self.rate_limits.compute_reset_window(limit)
                self.registry.log(process, "rate_limited", f"{limit} (waiting {wait}s)", task_id=group.id)
                self.registry.heartbeat(process, "Rate limited", f"Retry group {group.id} in {wait}s")
                if self.rate_limits.wait_cancellable(wait, self.should_stop) == "stop":
                    return None
                continue

            rate_limit_waits = 0
            failure = classify_failure(result.exit_code, result.diagnostics, result.timed_out)
            last_error = f"exit code {result.exit_code}, no tasks created"
            if not failure.recoverable:
                raise GroupExpansionError(group.id, f"non-recoverable: {failure.rule}")
            attempts += 1
            log.warning("Group expansion attempt {} produced no tasks ({})", attempts, last_error)
            self.registry.log(
                process,
                "attempt_failed",
                f"Attempt {attempts}/{self.settings.max_retries_per_task}: {last_error}",
                task_id=group.id,
            )
        raise GroupExpansionError(group.id, f"{attempts} attempt(s) failed; last: {last_error}")


def run_group_expansion(
    project_root: Path,
    *,
    bot_root: Optional[Path] = None,
    settings: Optional[RunnerSettings] = None,
    model: Optional[str] = None,
    agent: Optional[AgentInvoker] = None,
    index: Optional[TaskIndex] = None,
    clock: Optional[Clock] = None,
) -> Process:
    """Run task-group expansion inside a `task-creation` process record."""
    paths = ControlPaths.for_project(project_root, bot_root)
    paths.ensure()
    settings = settings or load_settings(paths)
    clock = clock or SystemClock()
    registry = ProcessRegistry(paths.processes_dir, activity_write_attempts=settings.activity_write_attempts)
    signals = SignalBus(paths.control_dir)
    index = index or FileTaskIndex(paths.tasks_dir, paths.locks_dir)
    process = registry.new_process(
        ProcessType.TASK_CREATION,
        model=model or settings.model,
        description="Expand task groups into tasks",
    )
    agent = agent or SubprocessAgent(
        paths.runs_dir,
        command=settings.agent_command,
        timeout_seconds=settings.agent_timeout_seconds,
        on_poll=lambda: registry.heartbeat(process),
    )
    registry.create(process)

    def should_stop() -> bool:
        return registry.is_stop_requested(process.id) or signals.is_set(SIGNAL_STOP)

    with registry.crash_trap(process):
        process.status = ProcessStatus.RUNNING
        registry.heartbeat(process, "Running", "Load task group manifest")
        registry.log(process, "started", "Task group expansion started")
        resolver = TaskGroupResolver(
            paths,
            settings,
            agent=agent,
            index=index,
            registry=registry,
            rate_limits=RateLimitController(
                clock,
                min_seconds=settings.rate_limit_min_seconds,
                floor_seconds=settings.rate_limit_floor_seconds,
            ),
            should_stop=should_stop,
        )
        created = resolver.expand(process)
        process.tasks_completed = sum(len(tasks) for tasks in created.values())
        if resolver.interrupted:
            process.status = ProcessStatus.STOPPED
            process.heartbeat_status = "Stopped"
            registry.log(process, "stopped", "Task group expansion stopped")
        else:
            process.status = ProcessStatus.COMPLETED
            process.completed_at = _now_iso()
            process.heartbeat_status = "Completed"
            registry.log(process, "completed", f"Created {process.tasks_completed} task(s)")
        process.heartbeat_next_action = None
        registry.heartbeat(process)
    registry.clear_stop(process.id)
    return process
