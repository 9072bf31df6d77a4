"""Tests for task-group ordering and expansion."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

from task_pipeline.agent import AgentResult
from task_pipeline.config import ControlPaths, RunnerSettings
from task_pipeline.errors import (
    DependencyCycleError,
    GroupExpansionError,
    ManifestError,
    ManifestNotFoundError,
)
from task_pipeline.groups import run_group_expansion, topological_order
from task_pipeline.models import ProcessStatus, ProcessType, Task, TaskGroup
from task_pipeline.registry import ProcessRegistry
from task_pipeline.task_index import FileTaskIndex


def _groups(*specs: tuple[str, int, list[str]]) -> list[TaskGroup]:
    return [TaskGroup(id=gid, order=order, depends_on=deps) for gid, order, deps in specs]


def test_topological_order_respects_dependencies_and_order() -> None:
    groups = _groups(("C", 3, ["A"]), ("B", 2, ["A"]), ("A", 1, []))
    assert [g.id for g in topological_order(groups)] == ["A", "B", "C"]


def test_topological_order_ties_break_on_id() -> None:
    groups = _groups(("z", 1, []), ("a", 1, []), ("m", 0, ["z"]))
    assert [g.id for g in topological_order(groups)] == ["a", "z", "m"]


def test_cycle_is_reported_with_unresolved_groups() -> None:
    groups = _groups(("A", 1, ["C"]), ("B", 2, ["A"]), ("C", 3, ["B"]), ("D", 4, []))
    with pytest.raises(DependencyCycleError) as excinfo:
        topological_order(groups)
    assert excinfo.value.unresolved == ["A", "B", "C"]


def test_unknown_dependency_is_reported() -> None:
    with pytest.raises(DependencyCycleError, match="unknown dependencies: ghost"):
        topological_order(_groups(("A", 1, ["ghost"])))


def test_duplicate_group_ids_are_rejected() -> None:
    with pytest.raises(ManifestError):
        topological_order(_groups(("A", 1, []), ("A", 2, [])))


class GroupWritingAgent:
    """Fake agent that creates one task per invocation for the group in the prompt."""

    def __init__(self, index: FileTaskIndex, *, produce: bool = True, exit_code: int = 0):
        self.index = index
        self.produce = produce
        self.exit_code = exit_code
        self.prompts: list[str] = []
        self.task_ids: list[str] = []
        self.session_ids: list[str] = []

    def invoke(self, prompt: str, *, model: str, session_id: str, cwd: Path, context: Any) -> AgentResult:
        self.prompts.append(prompt)
        self.task_ids.append(context.task_id)
        self.session_ids.append(session_id)
        if self.produce:
            group_id = context.task_id
            self.index.save(Task(id=f"{group_id.lower()}-1", name=f"First task of {group_id}"))
        return AgentResult(exit_code=self.exit_code, output="ok")


def _project(tmp_path: Path, groups: list[dict[str, Any]] | None) -> tuple[ControlPaths, FileTaskIndex]:
    paths = ControlPaths.for_project(tmp_path)
    paths.ensure()
    paths.prompts_dir.mkdir(parents=True, exist_ok=True)
    (paths.prompts_dir / "task-creation.md").write_text(
        "Group {{GROUP_ID}}\nPrerequisites:\n{{PREREQUISITE_TASKS_JSON}}\n"
    )
    if groups is not None:
        (paths.product_dir / "task-groups.json").write_text(json.dumps({"groups": groups}))
    index = FileTaskIndex(paths.tasks_dir, paths.locks_dir)
    index.ensure_buckets()
    return paths, index


MANIFEST = [
    {"id": "C", "name": "Reports", "order": 3, "depends_on": ["A"]},
    {"id": "A", "name": "Foundation", "order": 1},
    {"id": "B", "name": "API", "order": 2, "depends_on": ["A"]},
]


def test_expansion_runs_groups_in_order_and_archives_manifest(tmp_path: Path) -> None:
    paths, index = _project(tmp_path, MANIFEST)
    agent = GroupWritingAgent(index)

    process = run_group_expansion(tmp_path, settings=RunnerSettings(), agent=agent, index=index)

    assert process.type == ProcessType.TASK_CREATION
    assert process.status == ProcessStatus.COMPLETED
    assert process.tasks_completed == 3
    assert agent.task_ids == ["A", "B", "C"]
    assert agent.prompts[0].startswith("Group A")
    assert '"a-1"' in agent.prompts[1]
    assert '"a-1"' not in agent.prompts[0]
    assert {t.id: t.group_id for t in index.list_tasks()} == {"a-1": "A", "b-1": "B", "c-1": "C"}
    assert not (paths.product_dir / "task-groups.json").exists()
    assert (paths.product_dir / "task-groups.done.json").exists()


def test_every_group_invocation_gets_its_own_session(tmp_path: Path) -> None:
    _, index = _project(tmp_path, MANIFEST)
    agent = GroupWritingAgent(index)

    process = run_group_expansion(tmp_path, settings=RunnerSettings(), agent=agent, index=index)

    assert len(agent.session_ids) == 3
    assert len(set(agent.session_ids)) == 3
    assert process.session_id not in agent.session_ids


def test_expansion_skips_groups_that_already_have_tasks(tmp_path: Path) -> None:
    _, index = _project(tmp_path, MANIFEST)
    index.save(Task(id="a-existing", group_id="A"))
    agent = GroupWritingAgent(index)

    process = run_group_expansion(tmp_path, settings=RunnerSettings(), agent=agent, index=index)

    assert process.status == ProcessStatus.COMPLETED
    assert agent.task_ids == ["B", "C"]
    assert '"a-existing"' in agent.prompts[0]


def test_missing_manifest_stops_the_process(tmp_path: Path) -> None:
    paths, index = _project(tmp_path, None)
    with pytest.raises(ManifestNotFoundError):
        run_group_expansion(tmp_path, settings=RunnerSettings(), agent=GroupWritingAgent(index), index=index)

    [record] = ProcessRegistry(paths.processes_dir).list()
    assert record.status == ProcessStatus.STOPPED
    assert "ManifestNotFoundError" in (record.error or "")


def test_group_that_never_produces_tasks_fails(tmp_path: Path) -> None:
    _, index = _project(tmp_path, MANIFEST)
    agent = GroupWritingAgent(index, produce=False, exit_code=1)

    with pytest.raises(GroupExpansionError) as excinfo:
        run_group_expansion(tmp_path, settings=RunnerSettings(max_retries_per_task=2), agent=agent, index=index)

    assert excinfo.value.group_id == "A"
    assert agent.task_ids == ["A", "A"]
    assert len(set(agent.session_ids)) == 2


def test_global_stop_leaves_manifest_in_place(tmp_path: Path) -> None:
    paths, index = _project(tmp_path, MANIFEST)
    (paths.control_dir / "stop.signal").write_text("")

    process = run_group_expansion(tmp_path, settings=RunnerSettings(), agent=GroupWritingAgent(index), index=index)

    assert process.status == ProcessStatus.STOPPED
    assert (paths.product_dir / "task-groups.json").exists()
