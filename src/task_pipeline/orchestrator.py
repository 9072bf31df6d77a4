"""Drive agent processes through tasks: claim, isolate, prompt, retry, merge.

One `ProcessOrchestrator` instance is one OS process working tasks strictly
one at a time. Several instances (typically one analysis and one execution
loop) coordinate only through the filesystem: task buckets, process records
and signal files.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Callable, Optional

from loguru import logger

from .agent import AgentInvoker, AgentResult, SubprocessAgent
from .classifier import AttemptClassification, classify_attempt
from .config import ControlPaths, RunnerSettings, load_settings
from .constants import (
    DEFAULT_TICK_SECONDS,
    MERGE_CONFLICT_QUESTION_ID,
    SIGNAL_ANALYSING,
    SIGNAL_PAUSE,
    SIGNAL_RESUME,
    SIGNAL_STOP,
    SIGNAL_STOP_ANALYSIS,
    SKIP_REASON_MAX_RETRIES,
    SKIP_REASON_NON_RECOVERABLE,
    SKIP_REASON_RATE_LIMITED,
    SKIP_REASON_WORKTREE,
)
from .errors import WorktreeError
from .groups import run_group_expansion
from .logging_utils import task_logger, truncate
from .models import (
    AttemptOutcome,
    MergeResult,
    PendingQuestion,
    Process,
    ProcessStatus,
    ProcessType,
    QuestionOption,
    Task,
    TaskContext,
    TaskOutcome,
    TaskStatus,
    WorktreeBinding,
)
from .prompts import _whisper_block, build_task_prompt, load_template, render_template
from .rate_limit import RateLimitController
from .registry import ProcessRegistry
from .signals import Clock, SignalBus, SystemClock, interruptible_sleep
from .task_index import FileTaskIndex, TaskIndex
from .utils import _now_iso
from .worktrees import WorktreeManager

ANALYSIS_PROCESS_TYPES = frozenset({ProcessType.ANALYSIS, ProcessType.ANALYSE})
TASK_PROCESS_TYPES = ANALYSIS_PROCESS_TYPES | {ProcessType.EXECUTION}

ANALYSIS_COMPLETION_STATUSES = frozenset(
    {TaskStatus.ANALYSED, TaskStatus.NEEDS_INPUT, TaskStatus.DONE, TaskStatus.SKIPPED}
)
EXECUTION_COMPLETION_STATUSES = frozenset({TaskStatus.DONE, TaskStatus.NEEDS_INPUT, TaskStatus.SKIPPED})

# Rate-limit waits refresh the heartbeat once per this many ticks.
WAIT_HEARTBEAT_TICKS = 30

MERGE_CONFLICT_OPTIONS = [
    QuestionOption(
        key="A",
        label="Resolve manually",
        description="Resolve the conflicts in the preserved worktree, then mark the task done.",
    ),
    QuestionOption(
        key="B",
        label="Discard",
        description="Throw away the task branch and worktree; the task's changes are lost.",
    ),
    QuestionOption(
        key="C",
        label="Rebase",
        description="Rebase the task branch onto the current base branch and retry the merge.",
    ),
]


@dataclass
class AttemptReport:
    """Result of the bounded retry loop around the agent."""

    classification: Optional[AttemptClassification]
    attempts: int
    stopped: bool = False
    last_result: Optional[AgentResult] = None


class ProcessOrchestrator:
    def __init__(
        self,
        paths: ControlPaths,
        settings: RunnerSettings,
        process_type: ProcessType,
        *,
        task_id: Optional[str] = None,
        continue_mode: bool = False,
        model: Optional[str] = None,
        description: Optional[str] = None,
        agent: Optional[AgentInvoker] = None,
        index: Optional[TaskIndex] = None,
        registry: Optional[ProcessRegistry] = None,
        signals: Optional[SignalBus] = None,
        worktrees: Optional[WorktreeManager] = None,
        rate_limits: Optional[RateLimitController] = None,
        clock: Optional[Clock] = None,
    ):
        if process_type == ProcessType.TASK_CREATION:
            raise ValueError("task-creation processes run through run_group_expansion()")
        self.paths = paths
        self.settings = settings
        self.process_type = process_type
        self.task_id = task_id
        self.continue_mode = continue_mode
        self.clock = clock or SystemClock()
        self.registry = registry or ProcessRegistry(
            paths.processes_dir, activity_write_attempts=settings.activity_write_attempts
        )
        self.signals = signals or SignalBus(paths.control_dir)
        self.index: TaskIndex = index or FileTaskIndex(paths.tasks_dir, paths.locks_dir)
        self.rate_limits = rate_limits or RateLimitController(
            self.clock,
            min_seconds=settings.rate_limit_min_seconds,
            floor_seconds=settings.rate_limit_floor_seconds,
        )
        self.worktrees = worktrees or WorktreeManager(
            paths,
            is_owner_alive=self.registry.is_alive,
            task_status=self._task_status,
        )
        self.process = self.registry.new_process(
            process_type,
            task_id=task_id,
            model=model or settings.model,
            continue_mode=continue_mode,
            description=description,
        )
        self.agent: AgentInvoker = agent or SubprocessAgent(
            paths.runs_dir,
            command=settings.agent_command,
            timeout_seconds=settings.agent_timeout_seconds,
            on_poll=lambda: self.registry.heartbeat(self.process),
        )
        self.consecutive_failures = 0

    @property
    def is_analysis(self) -> bool:
        return self.process_type in ANALYSIS_PROCESS_TYPES

    @property
    def completion_statuses(self) -> frozenset[TaskStatus]:
        return ANALYSIS_COMPLETION_STATUSES if self.is_analysis else EXECUTION_COMPLETION_STATUSES

    def _task_status(self, task_id: str) -> Optional[TaskStatus]:
        task = self.index.find(task_id)
        return task.status if task is not None else None

    # -- control ----------------------------------------------------------

    def should_stop(self) -> bool:
        if self.registry.is_stop_requested(self.process.id):
            return True
        if self.signals.is_set(SIGNAL_STOP):
            return True
        return self.is_analysis and self.signals.is_set(SIGNAL_STOP_ANALYSIS)

    def _sleep(self, seconds: float) -> bool:
        return interruptible_sleep(seconds, self.should_stop, self.clock)

    def _wait_while_paused(self) -> bool:
        """Block while `pause` is set. Returns False if a stop arrived meanwhile."""
        if not self.signals.is_set(SIGNAL_PAUSE):
            return True
        self.registry.heartbeat(self.process, "Paused", "Waiting for resume signal")
        self.registry.log(self.process, "paused", "Pause signal observed")
        while True:
            if self.signals.is_set(SIGNAL_RESUME):
                self.signals.clear(SIGNAL_PAUSE)
                self.signals.clear(SIGNAL_RESUME)
                break
            if not self.signals.is_set(SIGNAL_PAUSE):
                break
            if self.should_stop():
                return False
            self.clock.sleep(DEFAULT_TICK_SECONDS)
        self.registry.log(self.process, "resumed", "Resumed after pause")
        self.registry.heartbeat(self.process, "Running", None)
        return True

    # -- lifecycle --------------------------------------------------------

    def run(self) -> Process:
        """Run the process loop to completion and return the final record."""
        self.registry.create(self.process)
        with self.registry.crash_trap(self.process):
            self._start()
            if self.process_type in TASK_PROCESS_TYPES:
                self._task_loop()
            else:
                self._run_prompt_once()
        self.registry.clear_stop(self.process.id)
        return self.process

    def _start(self) -> None:
        self.process.status = ProcessStatus.RUNNING
        self.registry.heartbeat(self.process, "Running", "Look for work")
        self.registry.log(
            self.process,
            "started",
            f"{self.process_type.value} process started (model={self.process.model}, continue={self.continue_mode})",
        )
        logger.info("Process {} ({}) started", self.process.id, self.process_type.value)
        if self.settings.use_worktrees and self.process_type in TASK_PROCESS_TYPES:
            try:
                removed = self.worktrees.reconcile_orphans()
            except WorktreeError as exc:
                logger.warning("Worktree reconciliation failed: {}", exc)
                self.registry.log(self.process, "warning", f"Worktree reconciliation failed: {exc}")
            else:
                if removed:
                    self.registry.log(
                        self.process,
                        "worktrees_reconciled",
                        f"Removed orphaned worktrees: {', '.join(removed)}",
                    )

    def _finish(self, status: ProcessStatus, message: str, *, error: Optional[str] = None) -> None:
        self.process.status = status
        self.process.task_id = None
        self.process.task_name = None
        if status == ProcessStatus.COMPLETED:
            self.process.completed_at = _now_iso()
        if error:
            self.process.error = error
            self.process.failed_at = _now_iso()
        self.process.heartbeat_next_action = None
        self.registry.heartbeat(self.process, message)
        self.registry.log(self.process, status.value, message)
        logger.info("Process {} {}: {}", self.process.id, status.value, message)

    def _task_loop(self) -> None:
        while True:
            if self.should_stop():
                self._finish(ProcessStatus.STOPPED, "Stopped on request")
                return
            if not self._wait_while_paused():
                self._finish(ProcessStatus.STOPPED, "Stopped while paused")
                return

            task = self._next_task()
            if task is None:
                if self.task_id:
                    self._finish(ProcessStatus.COMPLETED, f"Task {self.task_id} is not claimable")
                    return
                if not self.continue_mode:
                    self._finish(ProcessStatus.COMPLETED, "No more tasks")
                    return
                self.registry.heartbeat(
                    self.process,
                    "Waiting for tasks",
                    f"Poll again in {self.settings.task_poll_seconds}s",
                )
                if not self._sleep(self.settings.task_poll_seconds):
                    self._finish(ProcessStatus.STOPPED, "Stopped while waiting for tasks")
                    return
                continue

            outcome = self._handle_task(task)
            if outcome == TaskOutcome.STOPPED:
                self._finish(ProcessStatus.STOPPED, f"Stopped during task {task.id}")
                return
            if outcome == TaskOutcome.COMPLETED:
                self.consecutive_failures = 0
                self.process.tasks_completed += 1
            elif outcome == TaskOutcome.FAILED:
                self.consecutive_failures += 1
                if self.consecutive_failures >= self.settings.max_consecutive_failures:
                    message = f"{self.consecutive_failures} consecutive task failures"
                    self._finish(ProcessStatus.STOPPED, message, error=message)
                    return
            elif outcome == TaskOutcome.UNCLAIMED and self.task_id:
                self._finish(ProcessStatus.COMPLETED, f"Task {self.task_id} was claimed elsewhere")
                return

            # A fixed task id bounds the process to that one task.
            if not self.continue_mode or self.task_id:
                self._finish(ProcessStatus.COMPLETED, f"Finished task {task.id} ({outcome.value})")
                return
            if outcome != TaskOutcome.UNCLAIMED:
                self.registry.heartbeat(
                    self.process, "Between tasks", f"Next task in {self.settings.between_tasks_seconds}s"
                )
                if not self._sleep(self.settings.between_tasks_seconds):
                    self._finish(ProcessStatus.STOPPED, "Stopped between tasks")
                    return

    def _next_task(self) -> Optional[Task]:
        if self.task_id:
            task = self.index.find(self.task_id)
            if task is None or task.status not in self._claimable_statuses():
                return None
            return task
        return self.index.get_next_task(prefer_analysed=not self.is_analysis)

    def _claimable_statuses(self) -> frozenset[TaskStatus]:
        if self.is_analysis:
            return frozenset({TaskStatus.TODO})
        return frozenset({TaskStatus.TODO, TaskStatus.ANALYSED, TaskStatus.IN_PROGRESS})

    def _claim(self, task: Task) -> Optional[Task]:
        if self.is_analysis:
            return self.index.mark_analysing(task.id, claimed_by=self.process.id)
        if task.status == TaskStatus.IN_PROGRESS:
            # Only an orphan: the process that claimed it must be gone.
            return self.index.resume_in_progress(task.id, self.process.id, self.registry.is_alive)
        return self.index.mark_in_progress(task.id, claimed_by=self.process.id)

    # -- one task ---------------------------------------------------------

    def _handle_task(self, task: Task) -> TaskOutcome:
        template = load_template(self.paths.prompts_dir, self.process_type.value)
        original_status = task.status
        claimed = self._claim(task)
        if claimed is None:
            logger.info("Lost the claim on task {}; moving on", task.id)
            self.registry.log(self.process, "claim_lost", f"Task {task.id} was claimed elsewhere", task_id=task.id)
            return TaskOutcome.UNCLAIMED

        session_id = str(uuid.uuid4())
        self.process.task_id = claimed.id
        self.process.task_name = claimed.name or None
        self.process.claude_session_id = session_id
        context = TaskContext(
            task_id=claimed.id,
            phase=self.process_type.value,
            session_id=session_id,
            process_id=self.process.id,
        )
        self.registry.heartbeat(self.process, f"Working on {claimed.name or claimed.id}", "Prepare worktree")
        self.registry.log(
            self.process,
            "task_started",
            f"Claimed {claimed.id} ({original_status.value} -> {claimed.status.value})",
        )
        if self.is_analysis:
            self.signals.set(SIGNAL_ANALYSING, claimed.id)
        try:
            return self._work_on_task(claimed, original_status, template, context)
        finally:
            if self.is_analysis:
                self.signals.clear(SIGNAL_ANALYSING)
            self.process.task_id = None
            self.process.task_name = None
            self.registry.update(self.process)

    def _work_on_task(
        self,
        task: Task,
        original_status: TaskStatus,
        template: str,
        context: TaskContext,
    ) -> TaskOutcome:
        log = task_logger(context)
        binding: Optional[WorktreeBinding] = None
        cwd = self.paths.project_root
        if self.settings.use_worktrees:
            try:
                binding = self.worktrees.lookup_or_acquire(task.id, task.name, self.process.id)
            except WorktreeError as exc:
                reason = f"{SKIP_REASON_WORKTREE}: {exc}"
                log.error("Skipping task: {}", reason)
                self.index.mark_skipped(task.id, reason)
                self.registry.log(self.process, "task_skipped", reason, task_id=task.id)
                return TaskOutcome.FAILED
            if binding is not None:
                cwd = Path(binding.path)
                self.registry.log(
                    self.process,
                    "worktree",
                    f"Working in {binding.path} on {binding.branch}",
                    task_id=task.id,
                )

        def build_prompt() -> str:
            return build_task_prompt(
                template,
                task,
                self.process,
                working_dir=cwd,
                branch=binding.branch if binding else None,
                whispers=self.registry.drain_whispers(self.process.id),
            )

        report = self._run_attempts(
            build_prompt,
            cwd=cwd,
            context=context,
            completion_status=lambda _result: self._task_status(task.id),
            completion_statuses=self.completion_statuses,
            label=task.id,
        )

        if report.stopped:
            self._release(task, original_status)
            return TaskOutcome.STOPPED

        classification = report.classification
        if classification is None or classification.outcome != AttemptOutcome.SUCCESS:
            if classification is not None and classification.outcome == AttemptOutcome.NON_RECOVERABLE:
                reason = f"{SKIP_REASON_NON_RECOVERABLE}: {classification.rule}"
            elif classification is not None and classification.outcome == AttemptOutcome.RATE_LIMITED:
                reason = SKIP_REASON_RATE_LIMITED
            else:
                reason = SKIP_REASON_MAX_RETRIES
            log.warning("Skipping task after {} attempt(s): {}", report.attempts, reason)
            self.index.mark_skipped(task.id, reason)
            self.registry.log(self.process, "task_skipped", reason, task_id=task.id)
            self.registry.heartbeat(self.process, f"Skipped {task.id}", None)
            return TaskOutcome.FAILED

        final_status = self._task_status(task.id)
        if not self.is_analysis and final_status == TaskStatus.DONE and binding is not None:
            self.registry.heartbeat(self.process, f"Merging {binding.branch}", "Squash merge")
            merge = self.worktrees.complete(task.id, commit_message=self._commit_message(task))
            if not merge.merged:
                self._escalate_merge_failure(task, binding, merge)
                return TaskOutcome.NEEDS_INPUT
            self.registry.log(self.process, "merged", f"Squash-merged {binding.branch}", task_id=task.id)

        status_label = final_status.value if final_status else "unknown"
        log.info("Task finished in {} after {} attempt(s)", status_label, report.attempts + 1)
        self.registry.log(self.process, "task_completed", f"Task {task.id} -> {status_label}", task_id=task.id)
        return TaskOutcome.COMPLETED

    def _release(self, task: Task, original_status: TaskStatus) -> None:
        """Put a claimed task back where it came from after a mid-task stop."""
        claimed_status = TaskStatus.ANALYSING if self.is_analysis else TaskStatus.IN_PROGRESS
        released = self.index.claim(task.id, original_status, from_statuses=[claimed_status])
        if released is not None:
            self.registry.log(
                self.process,
                "task_released",
                f"Returned {task.id} to {original_status.value}",
                task_id=task.id,
            )

    def _commit_message(self, task: Task) -> str:
        title = task.name or next(iter(task.description.splitlines()), "") or task.id
        return f"{task.id}: {truncate(title, 72)}"

    def _escalate_merge_failure(self, task: Task, binding: WorktreeBinding, merge: MergeResult) -> None:
        if merge.conflict_files:
            question_text = (
                f"Merging {binding.branch} into {binding.base_branch or 'the base branch'} "
                f"conflicts in {len(merge.conflict_files)} file(s). How should this be resolved?"
            )
        else:
            question_text = f"Merging {binding.branch} failed: {merge.message}. How should this be resolved?"
        question = PendingQuestion(
            id=MERGE_CONFLICT_QUESTION_ID,
            question=question_text,
            context={
                "worktree_path": binding.path,
                "branch": binding.branch,
                "base_branch": binding.base_branch,
                "files": list(merge.conflict_files),
                "message": merge.message,
            },
            options=list(MERGE_CONFLICT_OPTIONS),
            recommendation="A",
        )
        self.index.mark_needs_input(task.id, question)
        summary = ", ".join(merge.conflict_files) or merge.message
        self.registry.log(self.process, "merge_conflict", f"Merge of {binding.branch} failed: {summary}", task_id=task.id)
        self.registry.heartbeat(self.process, f"Needs input: merge conflict on {task.id}", None)
        logger.warning("Task {} escalated to needs-input: {}", task.id, summary)

    # -- agent attempts ---------------------------------------------------

    def _run_attempts(
        self,
        build_prompt: Callable[[], str],
        *,
        cwd: Path,
        context: TaskContext,
        completion_status: Callable[[AgentResult], Optional[TaskStatus]],
        completion_statuses: frozenset[TaskStatus],
        label: str,
    ) -> AttemptReport:
        """Invoke the agent until success, a non-recoverable failure or budget exhaustion.

        Rate-limited attempts are waited out and do not consume budget, up to
        `max_rate_limit_waits` consecutive waits. Every invocation gets a
        fresh session id.
        """
        budget = self.settings.max_retries_per_task
        attempts = 0
        rate_limit_waits = 0
        classification: Optional[AttemptClassification] = None
        result: Optional[AgentResult] = None
        while attempts < budget:
            if (attempts or rate_limit_waits) and self.should_stop():
                return AttemptReport(classification, attempts, stopped=True, last_result=result)
            session_id = str(uuid.uuid4())
            attempt_context = replace(context, session_id=session_id)
            self.process.claude_session_id = session_id
            self.registry.heartbeat(
                self.process,
                f"Running agent on {label}",
                f"Attempt {attempts + 1}/{budget}",
            )
            result = self.agent.invoke(
                build_prompt(),
                model=self.process.model or self.settings.model,
                session_id=session_id,
                cwd=cwd,
                context=attempt_context,
            )
            if result.claude_session_id:
                self.process.claude_session_id = result.claude_session_id
            classification = classify_attempt(
                task_status=completion_status(result),
                completion_statuses=completion_statuses,
                exit_code=result.exit_code,
                output=result.diagnostics,
                timed_out=result.timed_out,
                rate_limits=self.rate_limits,
            )
            self.registry.heartbeat(self.process, f"Attempt finished: {classification.outcome.value}")

            if classification.outcome == AttemptOutcome.SUCCESS:
                return AttemptReport(classification, attempts, last_result=result)

            if classification.outcome == AttemptOutcome.RATE_LIMITED:
                rate_limit_waits += 1
                if rate_limit_waits > self.settings.max_rate_limit_waits:
                    self.registry.log(
                        self.process,
                        "attempt_failed",
                        f"Still rate limited after {self.settings.max_rate_limit_waits} waits: "
                        f"{truncate(classification.detail, 160)}",
                    )
                    return AttemptReport(classification, attempts, last_result=result)
                wait = self.rate_limits.compute_reset_window(classification.detail)
                self.registry.log(
                    self.process,
                    "rate_limited",
                    f"{truncate(classification.detail, 160)} (waiting {wait}s)",
                )
                self.registry.heartbeat(self.process, "Rate limited", f"Retry in {wait}s")
                if self.rate_limits.wait_cancellable(wait, self.should_stop, on_tick=self._wait_tick(wait)) == "stop":
                    return AttemptReport(classification, attempts, stopped=True, last_result=result)
                continue

            rate_limit_waits = 0
            if classification.outcome == AttemptOutcome.NON_RECOVERABLE:
                self.registry.log(
                    self.process,
                    "attempt_failed",
                    f"Non-recoverable failure ({classification.rule}): {classification.detail}",
                )
                return AttemptReport(classification, attempts + 1, last_result=result)

            attempts += 1
            self.registry.log(
                self.process,
                "attempt_failed",
                f"Attempt {attempts}/{budget} failed: {classification.detail}",
            )
        return AttemptReport(classification, attempts, last_result=result)

    def _wait_tick(self, total: int) -> Callable[[int], None]:
        def on_tick(tick: int) -> None:
            if tick % WAIT_HEARTBEAT_TICKS == 0:
                self.registry.heartbeat(self.process, "Rate limited", f"Retry in {max(0, total - tick)}s")

        return on_tick

    # -- task-less processes ----------------------------------------------

    def _run_prompt_once(self) -> None:
        """Run a single prompt for process types that are not tied to a task."""
        template = load_template(self.paths.prompts_dir, self.process_type.value)
        session_id = str(uuid.uuid4())
        self.process.claude_session_id = session_id
        context = TaskContext(
            task_id=self.task_id,
            phase=self.process_type.value,
            session_id=session_id,
            process_id=self.process.id,
        )
        fields: dict[str, Any] = {
            "PROCESS_ID": self.process.id,
            "PROCESS_TYPE": self.process_type.value,
            "SESSION_ID": session_id,
            "MODEL": self.process.model or "",
            "WORKING_DIR": str(self.paths.project_root),
            "DESCRIPTION": self.process.description or "",
            "TASK_ID": self.task_id or "",
        }

        def build_prompt() -> str:
            return render_template(template, fields) + _whisper_block(self.registry.drain_whispers(self.process.id))

        def _exit_status(result: AgentResult) -> Optional[TaskStatus]:
            return TaskStatus.DONE if result.exit_code == 0 and not result.timed_out else None

        report = self._run_attempts(
            build_prompt,
            cwd=self.paths.project_root,
            context=context,
            completion_status=_exit_status,
            completion_statuses=frozenset({TaskStatus.DONE}),
            label=self.process_type.value,
        )
        if report.stopped:
            self._finish(ProcessStatus.STOPPED, "Stopped on request")
            return
        classification = report.classification
        if classification is not None and classification.outcome == AttemptOutcome.SUCCESS:
            self.process.tasks_completed += 1
            self._finish(ProcessStatus.COMPLETED, f"{self.process_type.value} finished")
            return
        detail = classification.detail if classification else "no attempt made"
        self._finish(ProcessStatus.FAILED, f"{self.process_type.value} failed", error=detail)


def run_process(
    project_root: Path,
    process_type: ProcessType,
    *,
    bot_root: Optional[Path] = None,
    task_id: Optional[str] = None,
    continue_mode: bool = False,
    model: Optional[str] = None,
    description: Optional[str] = None,
    settings: Optional[RunnerSettings] = None,
    agent: Optional[AgentInvoker] = None,
    index: Optional[TaskIndex] = None,
    clock: Optional[Clock] = None,
) -> Process:
    """Launch one process of `process_type` against `project_root` and wait for it."""
    paths = ControlPaths.for_project(project_root, bot_root)
    paths.ensure()
    settings = settings or load_settings(paths)
    if process_type == ProcessType.TASK_CREATION:
        return run_group_expansion(
            project_root,
            bot_root=bot_root,
            settings=settings,
            model=model,
            agent=agent,
            index=index,
            clock=clock,
        )
    orchestrator = ProcessOrchestrator(
        paths,
        settings,
        process_type,
        task_id=task_id,
        continue_mode=continue_mode,
        model=model,
        description=description,
        agent=agent,
        index=index,
        clock=clock,
    )
    return orchestrator.run()
