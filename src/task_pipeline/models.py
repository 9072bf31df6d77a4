"""Define durable task, process and worktree records used by the pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from .utils import _coerce_int, _coerce_string_list, _now_iso


class TaskStatus(str, Enum):
    """Enumerate the task buckets; each value is also a directory name."""

    TODO = "todo"
    ANALYSING = "analysing"
    ANALYSED = "analysed"
    NEEDS_INPUT = "needs-input"
    IN_PROGRESS = "in-progress"
    DONE = "done"
    SKIPPED = "skipped"


class ProcessType(str, Enum):
    """Enumerate the kinds of agent-driving processes."""

    ANALYSIS = "analysis"
    EXECUTION = "execution"
    KICKSTART = "kickstart"
    PLANNING = "planning"
    COMMIT = "commit"
    TASK_CREATION = "task-creation"
    ANALYSE = "analyse"


class ProcessStatus(str, Enum):
    """Enumerate the lifecycle states of a process record."""

    STARTING = "starting"
    RUNNING = "running"
    NEEDS_INPUT = "needs-input"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"


ACTIVE_PROCESS_STATUSES = frozenset(
    {ProcessStatus.STARTING, ProcessStatus.RUNNING, ProcessStatus.NEEDS_INPUT}
)


class AttemptOutcome(str, Enum):
    """Classify one agent attempt; only RETRYABLE_FAILURE spends retry budget."""

    SUCCESS = "success"
    RETRYABLE_FAILURE = "retryable_failure"
    RATE_LIMITED = "rate_limited"
    NON_RECOVERABLE = "non_recoverable"


class TaskOutcome(str, Enum):
    """Summarize how the orchestrator finished with one task."""

    COMPLETED = "completed"
    FAILED = "failed"
    NEEDS_INPUT = "needs_input"
    STOPPED = "stopped"
    UNCLAIMED = "unclaimed"


def _coerce_enum(enum_cls: type[Enum], value: Any, default: Enum) -> Enum:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value))
    except ValueError:
        return default


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


@dataclass
class QuestionOption:
    key: str
    label: str
    description: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "QuestionOption":
        return cls(
            key=str(data.get("key", "")),
            label=str(data.get("label", "")),
            description=str(data.get("description", "") or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"key": self.key, "label": self.label, "description": self.description}


@dataclass
class PendingQuestion:
    """A structured multiple-choice question waiting for a human answer."""

    id: str
    question: str
    context: dict[str, Any] = field(default_factory=dict)
    options: list[QuestionOption] = field(default_factory=list)
    recommendation: Optional[str] = None
    asked_at: str = field(default_factory=_now_iso)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PendingQuestion":
        raw_context = data.get("context")
        return cls(
            id=str(data.get("id", "")),
            question=str(data.get("question", "")),
            context=dict(raw_context) if isinstance(raw_context, dict) else {},
            options=[
                QuestionOption.from_dict(item)
                for item in (data.get("options") or [])
                if isinstance(item, dict)
            ],
            recommendation=_optional_str(data.get("recommendation")),
            asked_at=str(data.get("asked_at") or _now_iso()),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "question": self.question,
            "context": dict(self.context),
            "options": [option.to_dict() for option in self.options],
            "recommendation": self.recommendation,
            "asked_at": self.asked_at,
        }


@dataclass
class Task:
    """A unit of work stored as one JSON file in its status bucket."""

    id: str
    status: TaskStatus = TaskStatus.TODO
    name: str = ""
    category: Optional[str] = None
    priority: int = 50
    effort: Optional[str] = None
    description: str = ""
    steps: list[str] = field(default_factory=list)
    acceptance_criteria: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    questions_resolved: list[dict[str, Any]] = field(default_factory=list)
    pending_question: Optional[PendingQuestion] = None
    skip_history: list[dict[str, Any]] = field(default_factory=list)
    group_id: Optional[str] = None
    claimed_by: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        """Create a `Task` from a bucket file payload.

        Args:
            data: Raw task payload.

        Returns:
            A `Task` with unknown keys preserved in `extra`.
        """
        extra = dict(data)

        def _pop(key: str, default: Any = None) -> Any:
            return extra.pop(key, default)

        pending = _pop("pending_question", None)
        return cls(
            id=str(_pop("id", "")),
            status=_coerce_enum(TaskStatus, _pop("status", None), TaskStatus.TODO),  # type: ignore[arg-type]
            name=str(_pop("name", "") or ""),
            category=_optional_str(_pop("category", None)),
            priority=_coerce_int(_pop("priority", 50), 50),
            effort=_optional_str(_pop("effort", None)),
            description=str(_pop("description", "") or ""),
            steps=_coerce_string_list(_pop("steps", [])),
            acceptance_criteria=_coerce_string_list(_pop("acceptance_criteria", [])),
            dependencies=_coerce_string_list(_pop("dependencies", [])),
            questions_resolved=[q for q in (_pop("questions_resolved", []) or []) if isinstance(q, dict)],
            pending_question=PendingQuestion.from_dict(pending) if isinstance(pending, dict) else None,
            skip_history=[s for s in (_pop("skip_history", []) or []) if isinstance(s, dict)],
            group_id=_optional_str(_pop("group_id", None)),
            claimed_by=_optional_str(_pop("claimed_by", None)),
            created_at=_optional_str(_pop("created_at", None)),
            updated_at=_optional_str(_pop("updated_at", None)),
            extra=extra,
        )

    def to_dict(self) -> dict[str, Any]:
        data = dict(self.extra)
        data.update(
            {
                "id": self.id,
                "status": self.status.value,
                "name": self.name,
                "category": self.category,
                "priority": int(self.priority),
                "effort": self.effort,
                "description": self.description,
                "steps": list(self.steps),
                "acceptance_criteria": list(self.acceptance_criteria),
                "dependencies": list(self.dependencies),
                "questions_resolved": [dict(q) for q in self.questions_resolved],
                "pending_question": self.pending_question.to_dict() if self.pending_question else None,
                "skip_history": [dict(s) for s in self.skip_history],
                "group_id": self.group_id,
                "claimed_by": self.claimed_by,
                "created_at": self.created_at,
                "updated_at": self.updated_at,
            }
        )
        return data


@dataclass
class TaskGroup:
    """A planned slice of work that expands into concrete tasks."""

    id: str
    name: str = ""
    order: int = 0
    depends_on: list[str] = field(default_factory=list)
    scope: list[str] = field(default_factory=list)
    acceptance_criteria: list[str] = field(default_factory=list)
    priority_range: list[int] = field(default_factory=list)
    category_hint: Optional[str] = None
    estimated_task_count: Optional[int] = None
    effort_days: Optional[float] = None

    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskGroup":
        extra = dict(data)

        def _pop(key: str, default: Any = None) -> Any:
            return extra.pop(key, default)

        priority_range = [
            _coerce_int(item, 0) for item in (_pop("priority_range", []) or []) if item is not None
        ][:2]
        estimated = _pop("estimated_task_count", None)
        effort_days = _pop("effort_days", None)
        try:
            effort_value = float(effort_days) if effort_days is not None else None
        except (TypeError, ValueError):
            effort_value = None
        return cls(
            id=str(_pop("id", "")),
            name=str(_pop("name", "") or ""),
            order=_coerce_int(_pop("order", 0), 0),
            depends_on=_coerce_string_list(_pop("depends_on", [])),
            scope=_coerce_string_list(_pop("scope", [])),
            acceptance_criteria=_coerce_string_list(_pop("acceptance_criteria", [])),
            priority_range=priority_range,
            category_hint=_optional_str(_pop("category_hint", None)),
            estimated_task_count=_coerce_int(estimated, 0) if estimated is not None else None,
            effort_days=effort_value,
            extra=extra,
        )

    def to_dict(self) -> dict[str, Any]:
        data = dict(self.extra)
        data.update(
            {
                "id": self.id,
                "name": self.name,
                "order": self.order,
                "depends_on": list(self.depends_on),
                "scope": list(self.scope),
                "acceptance_criteria": list(self.acceptance_criteria),
                "priority_range": list(self.priority_range),
                "category_hint": self.category_hint,
                "estimated_task_count": self.estimated_task_count,
                "effort_days": self.effort_days,
            }
        )
        return data


@dataclass
class Process:
    """Durable record of one orchestrator or agent-driving process."""

    id: str
    type: ProcessType
    status: ProcessStatus = ProcessStatus.STARTING
    task_id: Optional[str] = None
    task_name: Optional[str] = None
    model: Optional[str] = None
    pid: Optional[int] = None
    session_id: Optional[str] = None
    claude_session_id: Optional[str] = None
    last_heartbeat: Optional[str] = None
    heartbeat_status: Optional[str] = None
    heartbeat_next_action: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    failed_at: Optional[str] = None
    tasks_completed: int = 0
    error: Optional[str] = None
    continue_mode: bool = False
    description: Optional[str] = None

    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_PROCESS_STATUSES

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Process":
        extra = dict(data)

        def _pop(key: str, default: Any = None) -> Any:
            return extra.pop(key, default)

        pid = _pop("pid", None)
        return cls(
            id=str(_pop("id", "")),
            type=_coerce_enum(ProcessType, _pop("type", None), ProcessType.EXECUTION),  # type: ignore[arg-type]
            status=_coerce_enum(ProcessStatus, _pop("status", None), ProcessStatus.STARTING),  # type: ignore[arg-type]
            task_id=_optional_str(_pop("task_id", None)),
            task_name=_optional_str(_pop("task_name", None)),
            model=_optional_str(_pop("model", None)),
            pid=_coerce_int(pid, 0) if pid is not None else None,
            session_id=_optional_str(_pop("session_id", None)),
            claude_session_id=_optional_str(_pop("claude_session_id", None)),
            last_heartbeat=_optional_str(_pop("last_heartbeat", None)),
            heartbeat_status=_optional_str(_pop("heartbeat_status", None)),
            heartbeat_next_action=_optional_str(_pop("heartbeat_next_action", None)),
            started_at=_optional_str(_pop("started_at", None)),
            completed_at=_optional_str(_pop("completed_at", None)),
            failed_at=_optional_str(_pop("failed_at", None)),
            tasks_completed=_coerce_int(_pop("tasks_completed", 0), 0),
            error=_optional_str(_pop("error", None)),
            continue_mode=bool(_pop("continue", False)),
            description=_optional_str(_pop("description", None)),
            extra=extra,
        )

    def to_dict(self) -> dict[str, Any]:
        data = dict(self.extra)
        data.update(
            {
                "id": self.id,
                "type": self.type.value,
                "status": self.status.value,
                "task_id": self.task_id,
                "task_name": self.task_name,
                "model": self.model,
                "pid": self.pid,
                "session_id": self.session_id,
                "claude_session_id": self.claude_session_id,
                "last_heartbeat": self.last_heartbeat,
                "heartbeat_status": self.heartbeat_status,
                "heartbeat_next_action": self.heartbeat_next_action,
                "started_at": self.started_at,
                "completed_at": self.completed_at,
                "failed_at": self.failed_at,
                "tasks_completed": int(self.tasks_completed),
                "error": self.error,
                "continue": bool(self.continue_mode),
                "description": self.description,
            }
        )
        return data


@dataclass
class ActivityEvent:
    """One line of a process activity log."""

    type: str
    message: str
    task_id: Optional[str] = None
    phase: Optional[str] = None
    timestamp: str = field(default_factory=_now_iso)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ActivityEvent":
        return cls(
            type=str(data.get("type", "")),
            message=str(data.get("message", "")),
            task_id=_optional_str(data.get("task_id")),
            phase=_optional_str(data.get("phase")),
            timestamp=str(data.get("timestamp") or _now_iso()),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "type": self.type,
            "message": self.message,
            "task_id": self.task_id,
            "phase": self.phase,
        }


@dataclass
class WorktreeBinding:
    """Association between a task and its isolated git worktree."""

    task_id: str
    path: str
    branch: str
    base_branch: Optional[str] = None
    owner_process_id: Optional[str] = None
    created_at: str = field(default_factory=_now_iso)
    preserved: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WorktreeBinding":
        return cls(
            task_id=str(data.get("task_id", "")),
            path=str(data.get("path", "")),
            branch=str(data.get("branch", "")),
            base_branch=_optional_str(data.get("base_branch")),
            owner_process_id=_optional_str(data.get("owner_process_id")),
            created_at=str(data.get("created_at") or _now_iso()),
            preserved=bool(data.get("preserved", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "path": self.path,
            "branch": self.branch,
            "base_branch": self.base_branch,
            "owner_process_id": self.owner_process_id,
            "created_at": self.created_at,
            "preserved": self.preserved,
        }


@dataclass(frozen=True)
class MergeResult:
    merged: bool
    conflict_files: list[str] = field(default_factory=list)
    message: str = ""

    @property
    def conflict(self) -> bool:
        return not self.merged and bool(self.conflict_files)


@dataclass(frozen=True)
class TaskContext:
    """Request-scoped identity of the work currently in flight.

    Threaded explicitly through agent invocation and logging instead of
    process-wide environment variables.
    """

    task_id: Optional[str] = None
    phase: Optional[str] = None
    session_id: Optional[str] = None
    process_id: Optional[str] = None

    def as_env(self) -> dict[str, str]:
        env: dict[str, str] = {}
        if self.task_id:
            env["BOT_CURRENT_TASK_ID"] = self.task_id
        if self.phase:
            env["BOT_CURRENT_PHASE"] = self.phase
        if self.session_id:
            env["BOT_SESSION_ID"] = self.session_id
        if self.process_id:
            env["BOT_PROCESS_ID"] = self.process_id
        return env
