"""Provide small git helpers used by the worktree manager."""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional

from loguru import logger


def _git(project_dir: Path, *args: str, check: bool = False) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        ["git", *args],
        cwd=project_dir,
        capture_output=True,
        text=True,
        check=check,
    )


def _git_is_repo(project_dir: Path) -> bool:
    if not project_dir.exists():
        return False
    result = _git(project_dir, "rev-parse", "--is-inside-work-tree")
    return result.returncode == 0 and result.stdout.strip().lower() == "true"


def _git_has_commits(project_dir: Path) -> bool:
    return _git(project_dir, "rev-parse", "--verify", "HEAD").returncode == 0


def _git_current_branch(project_dir: Path) -> Optional[str]:
    result = _git(project_dir, "rev-parse", "--abbrev-ref", "HEAD")
    if result.returncode != 0:
        return None
    branch = result.stdout.strip()
    return branch if branch and branch != "HEAD" else None


def _git_branch_exists(project_dir: Path, branch: str) -> bool:
    return _git(project_dir, "show-ref", "--verify", "--quiet", f"refs/heads/{branch}").returncode == 0


def _git_has_changes(project_dir: Path) -> bool:
    result = _git(project_dir, "status", "--porcelain")
    return result.returncode == 0 and bool(result.stdout.strip())


def _git_has_staged_changes(project_dir: Path) -> bool:
    # `diff --cached --quiet` exits 1 when something is staged.
    return _git(project_dir, "diff", "--cached", "--quiet").returncode == 1


def _git_commits_ahead(project_dir: Path, base: str, branch: str) -> int:
    result = _git(project_dir, "rev-list", "--count", f"{base}..{branch}")
    if result.returncode != 0:
        return 0
    try:
        return int(result.stdout.strip() or "0")
    except ValueError:
        return 0


def _git_conflicted_files(project_dir: Path) -> list[str]:
    result = _git(project_dir, "diff", "--name-only", "--diff-filter=U")
    if result.returncode != 0:
        return []
    return sorted({line.strip() for line in result.stdout.splitlines() if line.strip()})


def _git_exclude_path(project_dir: Path) -> Optional[Path]:
    result = _git(project_dir, "rev-parse", "--git-path", "info/exclude")
    if result.returncode != 0 or not result.stdout.strip():
        return None
    path = Path(result.stdout.strip())
    return path if path.is_absolute() else project_dir / path


def _ignore_file_has_entry(path: Path, ignore_entry: str) -> bool:
    if not path.exists():
        return False
    try:
        contents = path.read_text()
    except OSError:
        return False
    lines = {
        line.strip().rstrip("/")
        for line in contents.splitlines()
        if line.strip() and not line.lstrip().startswith("#")
    }
    return ignore_entry.strip().rstrip("/") in lines


def _append_ignore_entry(path: Path, ignore_entry: str) -> None:
    contents = ""
    if path.exists():
        contents = path.read_text()
    if contents and not contents.endswith("\n"):
        contents += "\n"
    contents += ignore_entry + "\n"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(contents)


def _ensure_local_exclude(project_dir: Path, entries: list[str]) -> None:
    """Add entries to `.git/info/exclude` so they never dirty the checkout."""
    exclude_path = _git_exclude_path(project_dir)
    if exclude_path is None:
        return
    try:
        for entry in entries:
            if _ignore_file_has_entry(exclude_path, entry):
                continue
            _append_ignore_entry(exclude_path, entry)
    except OSError as exc:
        logger.warning("Unable to update {}: {}", exclude_path, exc)
