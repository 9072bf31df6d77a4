"""Isolate each task in its own git worktree and squash-merge it back.

Worktrees live under `.bot/worktrees/<task-id>-<digest>` on branch `task/<task-id>`.
Bindings (task id -> path, branch) are persisted in
`.control/worktrees.json` so a later process, for example execution after
analysis, reuses the worktree created earlier for the same task. Every git
mutation runs under one cross-process lock file because git does not
tolerate concurrent writers on the same repository.
"""

from __future__ import annotations

import hashlib
import shutil
import subprocess
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional

from filelock import FileLock
from loguru import logger

from .config import ControlPaths
from .constants import BRANCH_PREFIX, GIT_LOCK_FILE, WORKTREE_MAP_FILE
from .errors import WorktreeError
from .git_utils import (
    _ensure_local_exclude,
    _git,
    _git_branch_exists,
    _git_commits_ahead,
    _git_conflicted_files,
    _git_current_branch,
    _git_has_changes,
    _git_has_commits,
    _git_has_staged_changes,
    _git_is_repo,
)
from .io_utils import _atomic_write_json, _load_data_with_error
from .models import MergeResult, TaskStatus, WorktreeBinding
from .utils import _sanitize_fragment

# Tasks parked in these buckets keep their worktree even without a live owner:
# analysed work is waiting for an execution process, needs-input for a human.
PARKED_TASK_STATUSES = frozenset({TaskStatus.ANALYSED, TaskStatus.NEEDS_INPUT})


def _never_alive(_process_id: Optional[str]) -> bool:
    return False


def _unknown_status(_task_id: str) -> Optional[TaskStatus]:
    return None


class WorktreeManager:
    def __init__(
        self,
        paths: ControlPaths,
        *,
        is_owner_alive: Callable[[Optional[str]], bool] = _never_alive,
        task_status: Callable[[str], Optional[TaskStatus]] = _unknown_status,
        lock_timeout: float = 300.0,
    ):
        self.paths = paths
        self.project_root = paths.project_root
        self.is_owner_alive = is_owner_alive
        self.task_status = task_status
        self.lock_timeout = lock_timeout
        self.map_path = paths.control_dir / WORKTREE_MAP_FILE

    # -- bindings ---------------------------------------------------------

    @contextmanager
    def _git_lock(self) -> Iterator[None]:
        self.paths.locks_dir.mkdir(parents=True, exist_ok=True)
        with FileLock(str(self.paths.locks_dir / GIT_LOCK_FILE), timeout=self.lock_timeout):
            yield

    def _load_bindings(self) -> dict[str, WorktreeBinding]:
        data, err = _load_data_with_error(self.map_path, {})
        if err:
            raise WorktreeError(f"Worktree map is unreadable: {err}")
        raw = data.get("worktrees")
        if not isinstance(raw, dict):
            return {}
        return {
            str(task_id): WorktreeBinding.from_dict(item)
            for task_id, item in raw.items()
            if isinstance(item, dict)
        }

    def _save_bindings(self, bindings: dict[str, WorktreeBinding]) -> None:
        _atomic_write_json(
            self.map_path,
            {"worktrees": {task_id: binding.to_dict() for task_id, binding in sorted(bindings.items())}},
        )

    def bindings(self) -> list[WorktreeBinding]:
        return list(self._load_bindings().values())

    def branch_for(self, task_id: str) -> str:
        return f"{BRANCH_PREFIX}{task_id}"

    def path_for(self, task_id: str) -> Path:
        # Sanitized ids can collide ("api/auth", "api-auth"); the digest keeps them apart.
        digest = hashlib.sha1(task_id.encode("utf-8")).hexdigest()[:8]
        return self.paths.worktrees_dir / f"{_sanitize_fragment(task_id)}-{digest}"

    def enabled(self) -> bool:
        return _git_is_repo(self.project_root) and _git_has_commits(self.project_root)

    # -- lookup / acquire -------------------------------------------------

    def lookup(self, task_id: str) -> Optional[WorktreeBinding]:
        """Return the live binding for `task_id`, dropping it if its directory vanished."""
        bindings = self._load_bindings()
        binding = bindings.get(task_id)
        if binding is None:
            return None
        if Path(binding.path).exists():
            return binding
        logger.info("Dropping stale worktree binding for {} ({} is gone)", task_id, binding.path)
        with self._git_lock():
            bindings = self._load_bindings()
            bindings.pop(task_id, None)
            self._save_bindings(bindings)
        return None

    def acquire(self, task_id: str, task_name: str = "", owner_process_id: Optional[str] = None) -> Optional[WorktreeBinding]:
        """Create the worktree for `task_id` and register its binding.

        Returns None when the project is not a git repository with at least
        one commit; callers then work directly in the project root.

        Raises:
            WorktreeError: If git refuses to create the worktree.
        """
        if not self.enabled():
            logger.debug("Project {} is not a git repository; no worktree for {}", self.project_root, task_id)
            return None
        with self._git_lock():
            bindings = self._load_bindings()
            existing = bindings.get(task_id)
            if existing is not None and Path(existing.path).exists():
                return existing

            path = self.path_for(task_id)
            branch = self.branch_for(task_id)
            base_branch = _git_current_branch(self.project_root)
            self._remove_directory(path)
            _git(self.project_root, "worktree", "prune")
            path.parent.mkdir(parents=True, exist_ok=True)
            self._exclude_control_dirs()

            if _git_branch_exists(self.project_root, branch):
                args = ["worktree", "add", str(path), branch]
            else:
                args = ["worktree", "add", "-b", branch, str(path), "HEAD"]
            result = _git(self.project_root, *args)
            if result.returncode != 0:
                raise WorktreeError(
                    f"git {' '.join(args[:2])} failed for task {task_id}: {result.stderr.strip() or result.stdout.strip()}"
                )

            binding = WorktreeBinding(
                task_id=task_id,
                path=str(path),
                branch=branch,
                base_branch=base_branch,
                owner_process_id=owner_process_id,
            )
            bindings[task_id] = binding
            self._save_bindings(bindings)
        logger.info("Created worktree for task {} ({}) at {} on {}", task_id, task_name or "-", path, branch)
        return binding

    def lookup_or_acquire(
        self,
        task_id: str,
        task_name: str = "",
        owner_process_id: Optional[str] = None,
    ) -> Optional[WorktreeBinding]:
        binding = self.lookup(task_id)
        if binding is not None:
            if owner_process_id and binding.owner_process_id != owner_process_id:
                with self._git_lock():
                    bindings = self._load_bindings()
                    current = bindings.get(task_id)
                    if current is not None:
                        current.owner_process_id = owner_process_id
                        self._save_bindings(bindings)
                        binding = current
            logger.info("Reusing worktree for task {} at {}", task_id, binding.path)
            return binding
        return self.acquire(task_id, task_name, owner_process_id)

    # -- merge ------------------------------------------------------------

    def complete(self, task_id: str, commit_message: Optional[str] = None) -> MergeResult:
        """Squash-merge the task branch into its base branch.

        On success the worktree, branch and binding are removed. On failure
        the base checkout is reset, the worktree is kept for inspection and
        the binding is marked preserved.
        """
        binding = self.lookup(task_id)
        if binding is None:
            return MergeResult(merged=True, message="no worktree bound")
        message = commit_message or f"Complete task {task_id}"
        worktree = Path(binding.path)
        with self._git_lock():
            try:
                if _git_has_changes(worktree):
                    _git(worktree, "add", "-A", check=True)
                    _git(worktree, "commit", "-m", message, check=True)

                base = binding.base_branch
                if base and _git_current_branch(self.project_root) != base:
                    _git(self.project_root, "checkout", base, check=True)

                if _git_commits_ahead(self.project_root, base or "HEAD", binding.branch) == 0:
                    self._cleanup(binding)
                    return MergeResult(merged=True, message="nothing to merge")

                merge = _git(self.project_root, "merge", "--squash", binding.branch)
                if merge.returncode != 0:
                    conflicts = _git_conflicted_files(self.project_root)
                    if _git(self.project_root, "reset", "--merge").returncode != 0:
                        _git(self.project_root, "reset", "--hard", "HEAD")
                    detail = merge.stderr.strip() or merge.stdout.strip()
                    self._preserve(task_id)
                    logger.warning("Squash merge of {} failed; conflicts: {}", binding.branch, conflicts or detail)
                    return MergeResult(merged=False, conflict_files=conflicts, message=detail)

                if _git_has_staged_changes(self.project_root):
                    _git(self.project_root, "commit", "-m", message, check=True)
            except subprocess.CalledProcessError as exc:
                detail = (exc.stderr or exc.stdout or str(exc)).strip()
                self._preserve(task_id)
                return MergeResult(merged=False, message=detail)

            self._cleanup(binding)
        logger.info("Squash-merged {} for task {}", binding.branch, task_id)
        return MergeResult(merged=True, message="merged")

    def discard(self, task_id: str) -> bool:
        """Remove a task's worktree and branch without merging."""
        with self._git_lock():
            bindings = self._load_bindings()
            binding = bindings.get(task_id)
            if binding is None:
                return False
            self._cleanup(binding)
        return True

    # -- reconciliation ---------------------------------------------------

    def reconcile_orphans(self) -> list[str]:
        """Remove worktrees left behind by processes that no longer exist.

        Returns the task ids (or directory names) whose worktrees were removed.
        A second call with no intervening activity removes nothing.
        """
        removed: list[str] = []
        if not self.map_path.exists() and not self.paths.worktrees_dir.exists():
            return removed
        with self._git_lock():
            bindings = self._load_bindings()
            for task_id, binding in list(bindings.items()):
                if binding.preserved:
                    continue
                if self.is_owner_alive(binding.owner_process_id):
                    continue
                if self.task_status(task_id) in PARKED_TASK_STATUSES:
                    continue
                self._remove_directory(Path(binding.path))
                bindings.pop(task_id)
                removed.append(task_id)
            if removed:
                self._save_bindings(bindings)

            bound_paths = {Path(binding.path).resolve() for binding in bindings.values()}
            if self.paths.worktrees_dir.exists():
                for child in sorted(self.paths.worktrees_dir.iterdir()):
                    if not child.is_dir() or child.resolve() in bound_paths:
                        continue
                    self._remove_directory(child)
                    removed.append(child.name)

            if _git_is_repo(self.project_root):
                _git(self.project_root, "worktree", "prune")
        if removed:
            logger.info("Reconciled orphaned worktrees: {}", ", ".join(removed))
        return removed

    # -- internals --------------------------------------------------------

    def _exclude_control_dirs(self) -> None:
        try:
            bot_rel = self.paths.bot_root.relative_to(self.project_root).as_posix()
        except ValueError:
            return
        _ensure_local_exclude(
            self.project_root,
            [f"{bot_rel}/worktrees/", f"{bot_rel}/.control/"],
        )

    def _remove_directory(self, path: Path) -> None:
        if not path.exists():
            return
        if _git_is_repo(self.project_root):
            _git(self.project_root, "worktree", "remove", "--force", str(path))
        if path.exists():
            shutil.rmtree(path, ignore_errors=True)

    def _preserve(self, task_id: str) -> None:
        bindings = self._load_bindings()
        binding = bindings.get(task_id)
        if binding is not None:
            binding.preserved = True
            self._save_bindings(bindings)

    def _cleanup(self, binding: WorktreeBinding) -> None:
        self._remove_directory(Path(binding.path))
        _git(self.project_root, "worktree", "prune")
        _git(self.project_root, "branch", "-D", binding.branch)
        bindings = self._load_bindings()
        bindings.pop(binding.task_id, None)
        self._save_bindings(bindings)
