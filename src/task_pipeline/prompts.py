"""Build the text prompts passed to the agent for each process type.

Templates live in `.bot/prompts/<process-type>.md` and use `{{FIELD}}`
placeholders. Unknown placeholders are left untouched so templates can carry
literal braces for the agent.
"""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any, Optional

from .errors import TemplateNotFoundError
from .models import Process, Task, TaskGroup

_PLACEHOLDER = re.compile(r"\{\{\s*([A-Z0-9_]+)\s*\}\}")


def template_path(prompts_dir: Path, name: str) -> Path:
    return prompts_dir / f"{name}.md"


def load_template(prompts_dir: Path, name: str) -> str:
    path = template_path(prompts_dir, name)
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise TemplateNotFoundError(f"Prompt template not found: {path}") from exc


def render_template(template: str, fields: dict[str, Any]) -> str:
    def _sub(match: re.Match[str]) -> str:
        key = match.group(1)
        if key not in fields:
            return match.group(0)
        value = fields[key]
        return "" if value is None else str(value)

    return _PLACEHOLDER.sub(_sub, template)


def _render_json_for_prompt(data: Any, max_chars: int = 20000) -> str:
    text = json.dumps(data, indent=2, sort_keys=True)
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + "\n... (truncated)"


def _bullets(items: list[str]) -> str:
    return "\n".join(f"- {item}" for item in items) if items else "- (none)"


def _whisper_block(whispers: list[dict[str, Any]]) -> str:
    if not whispers:
        return ""
    lines = ["", "## Operator guidance", ""]
    for whisper in whispers:
        marker = "[URGENT] " if whisper.get("priority") == "urgent" else ""
        lines.append(f"- {marker}{whisper.get('message', '')}")
    return "\n".join(lines) + "\n"


def build_task_prompt(
    template: str,
    task: Task,
    process: Process,
    *,
    working_dir: Path,
    branch: Optional[str] = None,
    whispers: Optional[list[dict[str, Any]]] = None,
) -> str:
    fields = {
        "TASK_ID": task.id,
        "TASK_NAME": task.name,
        "TASK_STATUS": task.status.value,
        "TASK_CATEGORY": task.category or "",
        "TASK_PRIORITY": task.priority,
        "TASK_EFFORT": task.effort or "",
        "TASK_DESCRIPTION": task.description,
        "TASK_STEPS": _bullets(task.steps),
        "TASK_ACCEPTANCE_CRITERIA": _bullets(task.acceptance_criteria),
        "TASK_DEPENDENCIES": ", ".join(task.dependencies) or "none",
        "QUESTIONS_RESOLVED": _render_json_for_prompt(task.questions_resolved) if task.questions_resolved else "none",
        "TASK_JSON": _render_json_for_prompt(task.to_dict()),
        "PROCESS_ID": process.id,
        "PROCESS_TYPE": process.type.value,
        "SESSION_ID": process.session_id or "",
        "MODEL": process.model or "",
        "WORKING_DIR": str(working_dir),
        "BRANCH": branch or "",
    }
    return render_template(template, fields) + _whisper_block(whispers or [])


def build_group_prompt(
    template: str,
    group: TaskGroup,
    process: Process,
    *,
    prerequisite_tasks: dict[str, list[Task]],
    whispers: Optional[list[dict[str, Any]]] = None,
) -> str:
    prerequisites = {
        group_id: [
            {"id": task.id, "name": task.name, "status": task.status.value, "priority": task.priority}
            for task in tasks
        ]
        for group_id, tasks in prerequisite_tasks.items()
    }
    fields = {
        "GROUP_ID": group.id,
        "GROUP_NAME": group.name,
        "GROUP_ORDER": group.order,
        "GROUP_SCOPE": _bullets(group.scope),
        "GROUP_ACCEPTANCE_CRITERIA": _bullets(group.acceptance_criteria),
        "GROUP_PRIORITY_RANGE": "-".join(str(p) for p in group.priority_range) or "any",
        "GROUP_CATEGORY_HINT": group.category_hint or "",
        "GROUP_ESTIMATED_TASK_COUNT": group.estimated_task_count if group.estimated_task_count is not None else "",
        "GROUP_JSON": _render_json_for_prompt(group.to_dict()),
        "PREREQUISITE_TASKS_JSON": _render_json_for_prompt(prerequisites),
        "PROCESS_ID": process.id,
        "SESSION_ID": process.session_id or "",
        "MODEL": process.model or "",
    }
    return render_template(template, fields) + _whisper_block(whispers or [])
