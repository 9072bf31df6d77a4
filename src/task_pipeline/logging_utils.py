"""Configure loguru sinks and bind task context to log records."""

from __future__ import annotations

import sys
from typing import Any

from loguru import logger

from .models import TaskContext

_CONTEXT_DEFAULTS = {"task_id": "-", "phase": "-", "session_id": "-"}

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{module}</cyan>:<cyan>{line}</cyan> | "
    "<magenta>{extra[task_id]}</magenta>/<magenta>{extra[phase]}</magenta>\n"
    "{message}"
)


def configure_logging(level: str = "INFO") -> None:
    """Configure loguru logger with the specified level."""
    logger.remove()
    logger.configure(extra=dict(_CONTEXT_DEFAULTS))
    logger.add(sys.stderr, level=level.upper(), format=LOG_FORMAT)


def task_logger(context: TaskContext) -> Any:
    """Return a logger bound to the given task context."""
    return logger.bind(
        task_id=context.task_id or "-",
        phase=context.phase or "-",
        session_id=context.session_id or "-",
        process_id=context.process_id or "-",
    )


def truncate(text: str, limit: int = 240) -> str:
    text = (text or "").strip()
    return (text[:limit] + "…") if len(text) > limit else text
