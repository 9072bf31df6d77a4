"""Exceptions raised by the task pipeline."""

from __future__ import annotations

from typing import Sequence


class TaskPipelineError(Exception):
    """Base class for task pipeline errors."""


class StructuralError(TaskPipelineError):
    """The environment is misconfigured; the enclosing run must stop."""


class TemplateNotFoundError(StructuralError):
    """A prompt template file is missing."""


class ManifestNotFoundError(StructuralError):
    """The task-group manifest does not exist."""


class ManifestError(StructuralError):
    """The task-group manifest is malformed."""


class DependencyCycleError(StructuralError):
    """Task groups cannot be ordered because their dependencies never resolve."""

    def __init__(self, unresolved: Sequence[str], message: str | None = None) -> None:
        self.unresolved = list(unresolved)
        super().__init__(
            message or f"Dependency cycle among task groups: {', '.join(self.unresolved)}"
        )


class WorktreeError(TaskPipelineError):
    """A git worktree operation failed."""


class AgentCommandError(TaskPipelineError):
    """The configured agent command cannot be formatted or launched."""


class GroupExpansionError(TaskPipelineError):
    """A task group could not be expanded into tasks."""

    def __init__(self, group_id: str, message: str) -> None:
        self.group_id = group_id
        super().__init__(f"Task group '{group_id}' failed to expand: {message}")
