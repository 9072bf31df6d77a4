"""Provide the public `task_pipeline` package exports."""

from __future__ import annotations

from .groups import run_group_expansion, topological_order
from .orchestrator import ProcessOrchestrator, run_process

__all__ = ["ProcessOrchestrator", "run_group_expansion", "run_process", "topological_order"]
