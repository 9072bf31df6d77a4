"""Tests for per-task git worktrees: acquire, reuse, squash merge, conflicts, orphans."""

from __future__ import annotations

import json
import subprocess
from pathlib import Path
from typing import Optional

from task_pipeline.config import ControlPaths
from task_pipeline.models import TaskStatus, WorktreeBinding
from task_pipeline.worktrees import WorktreeManager


def _git(path: Path, *args: str) -> str:
    result = subprocess.run(["git", *args], cwd=path, check=True, capture_output=True, text=True)
    return result.stdout.strip()


def _git_init(path: Path) -> None:
    """Initialize a git repo with an initial commit."""
    subprocess.run(["git", "init"], cwd=path, check=True, capture_output=True, text=True)
    subprocess.run(["git", "config", "user.email", "test@test.com"], cwd=path, check=True, capture_output=True, text=True)
    subprocess.run(["git", "config", "user.name", "Test"], cwd=path, check=True, capture_output=True, text=True)
    (path / "README.md").write_text("# init\n")
    subprocess.run(["git", "add", "-A"], cwd=path, check=True, capture_output=True, text=True)
    subprocess.run(["git", "commit", "-m", "initial"], cwd=path, check=True, capture_output=True, text=True)


def _manager(
    tmp_path: Path,
    *,
    git: bool = True,
    alive: bool = False,
    status: Optional[TaskStatus] = None,
) -> WorktreeManager:
    if git:
        _git_init(tmp_path)
    paths = ControlPaths.for_project(tmp_path)
    paths.ensure()
    return WorktreeManager(
        paths,
        is_owner_alive=lambda _pid: alive,
        task_status=lambda _tid: status,
    )


def test_acquire_creates_worktree_branch_and_binding(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    binding = manager.acquire("t-1", "First task", owner_process_id="proc-a")

    assert binding is not None
    assert Path(binding.path).parent == tmp_path.resolve() / ".bot" / "worktrees"
    assert Path(binding.path).name.startswith("t-1-")
    assert Path(binding.path, "README.md").exists()
    assert binding.branch == "task/t-1"
    assert _git(tmp_path, "branch", "--list", "task/t-1")

    stored = json.loads((tmp_path / ".bot" / ".control" / "worktrees.json").read_text())
    assert stored["worktrees"]["t-1"]["owner_process_id"] == "proc-a"


def test_ids_that_sanitize_alike_get_separate_worktrees(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    first = manager.acquire("api/auth")
    (Path(first.path) / "wip.txt").write_text("uncommitted work\n")

    second = manager.acquire("api-auth")

    assert first.path != second.path
    assert (Path(first.path) / "wip.txt").read_text() == "uncommitted work\n"
    assert manager.lookup("api/auth").path == first.path
    assert manager.lookup("api-auth").path == second.path


def test_worktree_dirs_are_excluded_from_status(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    manager.acquire("t-1")
    assert _git(tmp_path, "status", "--porcelain") == ""


def test_lookup_or_acquire_reuses_existing_worktree(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    first = manager.lookup_or_acquire("t-1", owner_process_id="analysis")
    second = manager.lookup_or_acquire("t-1", owner_process_id="execution")

    assert first is not None and second is not None
    assert first.path == second.path
    assert second.owner_process_id == "execution"
    worktrees = _git(tmp_path, "worktree", "list", "--porcelain")
    assert worktrees.count("worktree ") == 2


def test_lookup_drops_binding_whose_directory_vanished(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    binding = manager.acquire("t-1")
    subprocess.run(["rm", "-rf", binding.path], check=True)
    assert manager.lookup("t-1") is None
    assert manager.bindings() == []


def test_acquire_reuses_existing_branch(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    _git(tmp_path, "branch", "task/t-1")
    binding = manager.acquire("t-1")
    assert binding is not None
    assert _git(Path(binding.path), "rev-parse", "--abbrev-ref", "HEAD") == "task/t-1"


def test_acquire_outside_git_returns_none(tmp_path: Path) -> None:
    manager = _manager(tmp_path, git=False)
    assert manager.acquire("t-1") is None
    assert manager.lookup_or_acquire("t-1") is None


def test_complete_squash_merges_and_cleans_up(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    base = _git(tmp_path, "rev-parse", "--abbrev-ref", "HEAD")
    binding = manager.acquire("t-1")
    Path(binding.path, "feature.txt").write_text("one\n")
    _git(Path(binding.path), "add", "-A")
    _git(Path(binding.path), "commit", "-m", "wip 1")
    Path(binding.path, "feature.txt").write_text("one\ntwo\n")

    result = manager.complete("t-1", commit_message="t-1: feature")

    assert result.merged is True
    assert (tmp_path / "feature.txt").read_text() == "one\ntwo\n"
    assert _git(tmp_path, "log", "-1", "--format=%s") == "t-1: feature"
    assert _git(tmp_path, "rev-list", "--count", base) == "2"
    assert not Path(binding.path).exists()
    assert _git(tmp_path, "branch", "--list", "task/t-1") == ""
    assert manager.lookup("t-1") is None


def test_complete_without_changes_just_cleans_up(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    binding = manager.acquire("t-1")
    result = manager.complete("t-1")
    assert result.merged is True
    assert result.message == "nothing to merge"
    assert not Path(binding.path).exists()


def test_complete_conflict_preserves_worktree(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    binding = manager.acquire("t-1")

    Path(binding.path, "README.md").write_text("# from task\n")
    (tmp_path / "README.md").write_text("# from main\n")
    _git(tmp_path, "commit", "-am", "main edit")

    result = manager.complete("t-1")

    assert result.merged is False
    assert result.conflict is True
    assert result.conflict_files == ["README.md"]
    assert Path(binding.path).exists()
    assert (tmp_path / "README.md").read_text() == "# from main\n"
    assert _git(tmp_path, "status", "--porcelain") == ""
    stored = manager.lookup("t-1")
    assert stored is not None and stored.preserved is True


def test_discard_removes_worktree_and_branch(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    binding = manager.acquire("t-1")
    assert manager.discard("t-1") is True
    assert not Path(binding.path).exists()
    assert _git(tmp_path, "branch", "--list", "task/t-1") == ""
    assert manager.discard("t-1") is False


def test_reconcile_orphans_is_idempotent(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    orphan = manager.acquire("t-1", owner_process_id="dead-proc")
    stray = manager.paths.worktrees_dir / "stray"
    stray.mkdir(parents=True)

    removed = manager.reconcile_orphans()
    assert sorted(removed) == ["stray", "t-1"]
    assert not Path(orphan.path).exists()
    assert not stray.exists()
    # The task branch survives so a later attempt can continue from it.
    assert _git(tmp_path, "branch", "--list", "task/t-1")

    assert manager.reconcile_orphans() == []


def test_reconcile_keeps_live_parked_and_preserved(tmp_path: Path) -> None:
    paths_root = tmp_path
    _git_init(paths_root)
    paths = ControlPaths.for_project(paths_root)
    paths.ensure()
    statuses = {"parked": TaskStatus.ANALYSED, "asking": TaskStatus.NEEDS_INPUT}
    manager = WorktreeManager(
        paths,
        is_owner_alive=lambda pid: pid == "live-proc",
        task_status=lambda tid: statuses.get(tid),
    )
    manager.acquire("live", owner_process_id="live-proc")
    manager.acquire("parked", owner_process_id="dead")
    manager.acquire("asking", owner_process_id="dead")
    manager.acquire("kept", owner_process_id="dead")
    bindings = manager._load_bindings()
    bindings["kept"].preserved = True
    manager._save_bindings(bindings)

    assert manager.reconcile_orphans() == []
    assert sorted(b.task_id for b in manager.bindings()) == ["asking", "kept", "live", "parked"]


def test_bindings_serialize_round_trip() -> None:
    binding = WorktreeBinding(task_id="t", path="/x", branch="task/t", base_branch="main", preserved=True)
    assert WorktreeBinding.from_dict(binding.to_dict()) == binding
