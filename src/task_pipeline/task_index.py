"""Bucket-directory task index consumed by the orchestrator.

Each task is one JSON file in `workspace/tasks/<status>/<id>.json`. Moving a
task between statuses writes the file into the target bucket and removes it
from the source bucket while holding a per-task `filelock.FileLock`, and the
source bucket is re-checked inside the lock. Two orchestrators racing for the
same id therefore see exactly one successful claim.
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Iterable, Optional, Protocol

from filelock import FileLock
from loguru import logger

from .io_utils import _atomic_write_json, _load_data_with_error
from .models import PendingQuestion, Task, TaskStatus
from .utils import _now_iso, _sanitize_fragment

# Dependencies in these buckets no longer block dependents.
SATISFIED_DEPENDENCY_STATUSES = frozenset({TaskStatus.DONE, TaskStatus.SKIPPED})


class TaskIndex(Protocol):
    def get_next_task(self, prefer_analysed: bool) -> Optional[Task]: ...

    def find(self, task_id: str) -> Optional[Task]: ...

    def claim(
        self,
        task_id: str,
        to_status: TaskStatus,
        *,
        from_statuses: Optional[Iterable[TaskStatus]] = None,
        claimed_by: Optional[str] = None,
    ) -> Optional[Task]: ...

    def mark_analysing(self, task_id: str, claimed_by: Optional[str] = None) -> Optional[Task]: ...

    def mark_in_progress(self, task_id: str, claimed_by: Optional[str] = None) -> Optional[Task]: ...

    def resume_in_progress(
        self,
        task_id: str,
        claimed_by: str,
        is_owner_alive: Callable[[Optional[str]], bool],
    ) -> Optional[Task]: ...

    def mark_skipped(self, task_id: str, reason: str) -> Optional[Task]: ...

    def mark_needs_input(self, task_id: str, question: PendingQuestion) -> Optional[Task]: ...

    def list_tasks(self, status: Optional[TaskStatus] = None) -> list[Task]: ...

    def save(self, task: Task) -> Task: ...


class FileTaskIndex:
    def __init__(self, tasks_dir: Path, locks_dir: Path, *, lock_timeout: float = 30.0):
        self.tasks_dir = tasks_dir
        self.locks_dir = locks_dir
        self.lock_timeout = lock_timeout

    def bucket(self, status: TaskStatus) -> Path:
        return self.tasks_dir / status.value

    def ensure_buckets(self) -> None:
        for status in TaskStatus:
            self.bucket(status).mkdir(parents=True, exist_ok=True)

    def _lock(self, task_id: str) -> FileLock:
        self.locks_dir.mkdir(parents=True, exist_ok=True)
        return FileLock(str(self.locks_dir / f"task-{_sanitize_fragment(task_id)}.lock"), timeout=self.lock_timeout)

    def _read(self, path: Path) -> Optional[Task]:
        data, err = _load_data_with_error(path, {})
        if err:
            logger.warning("Skipping unreadable task file {}: {}", path, err)
            return None
        if not data:
            return None
        task = Task.from_dict(data)
        if not task.id:
            task.id = path.stem
        return task

    def _locate(self, task_id: str) -> Optional[tuple[TaskStatus, Path]]:
        for status in TaskStatus:
            path = self.bucket(status) / f"{task_id}.json"
            if path.exists():
                return status, path
        return None

    def list_tasks(self, status: Optional[TaskStatus] = None) -> list[Task]:
        statuses: Iterable[TaskStatus] = [status] if status is not None else list(TaskStatus)
        tasks: list[Task] = []
        for bucket_status in statuses:
            directory = self.bucket(bucket_status)
            if not directory.exists():
                continue
            for path in sorted(directory.glob("*.json")):
                task = self._read(path)
                if task is None:
                    continue
                # The bucket is authoritative for status.
                task.status = bucket_status
                tasks.append(task)
        return tasks

    def find(self, task_id: str) -> Optional[Task]:
        located = self._locate(task_id)
        if located is None:
            return None
        status, path = located
        task = self._read(path)
        if task is not None:
            task.status = status
        return task

    def save(self, task: Task) -> Task:
        """Write `task` into the bucket matching its status, removing stale copies."""
        with self._lock(task.id):
            return self._write_moving(task, task.status)

    def _write_moving(self, task: Task, to_status: TaskStatus) -> Task:
        task.status = to_status
        task.updated_at = _now_iso()
        task.created_at = task.created_at or task.updated_at
        target = self.bucket(to_status) / f"{task.id}.json"
        _atomic_write_json(target, task.to_dict())
        for status in TaskStatus:
            if status == to_status:
                continue
            stale = self.bucket(status) / f"{task.id}.json"
            stale.unlink(missing_ok=True)
        return task

    def _ready(self, task: Task, statuses: dict[str, TaskStatus]) -> bool:
        for dep in task.dependencies:
            if statuses.get(dep) not in SATISFIED_DEPENDENCY_STATUSES:
                return False
        return True

    def get_next_task(self, prefer_analysed: bool) -> Optional[Task]:
        """Return the most urgent ready task without claiming it.

        `prefer_analysed=True` offers analysed tasks before todo ones;
        `False` only ever offers todo tasks.
        """
        all_tasks = self.list_tasks()
        statuses = {task.id: task.status for task in all_tasks}
        order = [TaskStatus.ANALYSED, TaskStatus.TODO] if prefer_analysed else [TaskStatus.TODO]
        for status in order:
            candidates = [t for t in all_tasks if t.status == status and self._ready(t, statuses)]
            if candidates:
                candidates.sort(key=lambda t: (t.priority, t.id))
                return candidates[0]
        return None

    def claim(
        self,
        task_id: str,
        to_status: TaskStatus,
        *,
        from_statuses: Optional[Iterable[TaskStatus]] = None,
        claimed_by: Optional[str] = None,
    ) -> Optional[Task]:
        """Move a task into `to_status` if it is still in one of `from_statuses`.

        Returns the moved task, or None when another actor got there first.
        """
        allowed = set(from_statuses) if from_statuses is not None else None
        with self._lock(task_id):
            located = self._locate(task_id)
            if located is None:
                return None
            status, path = located
            if allowed is not None and status not in allowed:
                return None
            task = self._read(path)
            if task is None:
                return None
            if claimed_by is not None:
                task.claimed_by = claimed_by
            return self._write_moving(task, to_status)

    def mark_analysing(self, task_id: str, claimed_by: Optional[str] = None) -> Optional[Task]:
        return self.claim(task_id, TaskStatus.ANALYSING, from_statuses=[TaskStatus.TODO], claimed_by=claimed_by)

    def mark_in_progress(self, task_id: str, claimed_by: Optional[str] = None) -> Optional[Task]:
        return self.claim(
            task_id,
            TaskStatus.IN_PROGRESS,
            from_statuses=[TaskStatus.TODO, TaskStatus.ANALYSED],
            claimed_by=claimed_by,
        )

    def resume_in_progress(
        self,
        task_id: str,
        claimed_by: str,
        is_owner_alive: Callable[[Optional[str]], bool],
    ) -> Optional[Task]:
        """Take over an in-progress task whose claiming process is gone.

        Returns None if the task is not in progress or its owner still runs.
        """
        with self._lock(task_id):
            located = self._locate(task_id)
            if located is None or located[0] != TaskStatus.IN_PROGRESS:
                return None
            task = self._read(located[1])
            if task is None:
                return None
            if task.claimed_by != claimed_by and is_owner_alive(task.claimed_by):
                logger.info("Task {} is still owned by live process {}", task_id, task.claimed_by)
                return None
            task.claimed_by = claimed_by
            return self._write_moving(task, TaskStatus.IN_PROGRESS)

    def mark_skipped(self, task_id: str, reason: str) -> Optional[Task]:
        with self._lock(task_id):
            located = self._locate(task_id)
            if located is None:
                return None
            status, path = located
            task = self._read(path)
            if task is None:
                return None
            task.skip_history.append({"reason": reason, "from_status": status.value, "skipped_at": _now_iso()})
            return self._write_moving(task, TaskStatus.SKIPPED)

    def mark_needs_input(self, task_id: str, question: PendingQuestion) -> Optional[Task]:
        with self._lock(task_id):
            located = self._locate(task_id)
            if located is None:
                return None
            _, path = located
            task = self._read(path)
            if task is None:
                return None
            task.pending_question = question
            return self._write_moving(task, TaskStatus.NEEDS_INPUT)
