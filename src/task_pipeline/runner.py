#!/usr/bin/env python3
"""Provide the CLI entrypoint and subcommands for the task pipeline.

`run` launches one analysis, execution or one-shot process loop;
`expand-groups` turns the task-group manifest into tasks; the remaining
subcommands inspect and steer running processes through the control
directory.
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Optional

from loguru import logger

from .config import ControlPaths, load_settings
from .constants import KNOWN_SIGNALS, SIGNAL_STOP
from .errors import TaskPipelineError
from .groups import run_group_expansion
from .logging_utils import configure_logging
from .models import ProcessStatus, ProcessType, TaskStatus
from .orchestrator import run_process
from .registry import ProcessRegistry
from .signals import SignalBus
from .status_view import format_activity, format_process_table
from .task_index import FileTaskIndex

_PROCESS_TYPE_CHOICES = [t.value for t in ProcessType if t != ProcessType.TASK_CREATION]


def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--project-dir",
        type=Path,
        default=Path("."),
        help="Project directory (default: current directory)",
    )
    parser.add_argument(
        "--bot-dir",
        type=Path,
        default=None,
        help="Bot root directory (default: <project-dir>/.bot)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level for stderr output (default: INFO)",
    )


def _build_run_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="task-pipeline run",
        description="Task Pipeline - run one process loop against the task buckets",
    )
    _add_common(parser)
    parser.add_argument(
        "--type",
        dest="process_type",
        default=ProcessType.EXECUTION.value,
        choices=_PROCESS_TYPE_CHOICES,
        help="Process type (default: execution)",
    )
    parser.add_argument("--task-id", default=None, help="Work on this task only")
    parser.add_argument(
        "--continue",
        dest="continue_mode",
        action="store_true",
        help="Keep polling for new tasks instead of exiting after one",
    )
    parser.add_argument("--model", default=None, help="Agent model (default: from settings)")
    parser.add_argument("--description", default=None, help="Free-text description stored on the process")
    parser.add_argument(
        "--max-retries",
        type=int,
        default=None,
        help="Real agent attempts per task before skipping (default: 2)",
    )
    parser.add_argument(
        "--max-consecutive-failures",
        type=int,
        default=None,
        help="Stop after this many failed tasks in a row (default: 3)",
    )
    parser.add_argument(
        "--no-worktrees",
        action="store_true",
        help="Work directly in the project root instead of per-task git worktrees",
    )
    return parser


def _build_expand_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="task-pipeline expand-groups",
        description="Task Pipeline - expand workspace/product/task-groups.json into tasks",
    )
    _add_common(parser)
    parser.add_argument("--model", default=None, help="Agent model (default: from settings)")
    return parser


def _build_status_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="task-pipeline status",
        description="Task Pipeline - show process records, signals and task counts",
    )
    _add_common(parser)
    parser.add_argument("--active", action="store_true", help="Only show active processes")
    parser.add_argument("--json", action="store_true", help="Print machine-readable JSON")
    return parser


def _build_stop_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="task-pipeline stop",
        description="Task Pipeline - request a graceful stop",
    )
    _add_common(parser)
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--id", dest="process_id", default=None, help="Stop one process")
    target.add_argument(
        "--type",
        dest="process_type",
        default=None,
        choices=[t.value for t in ProcessType],
        help="Stop every active process of this type",
    )
    target.add_argument("--all", action="store_true", help="Raise the global stop signal")
    return parser


def _build_signal_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="task-pipeline signal",
        description="Task Pipeline - set or clear a control signal",
    )
    _add_common(parser)
    parser.add_argument("action", choices=["set", "clear", "list"])
    parser.add_argument("name", nargs="?", choices=list(KNOWN_SIGNALS), default=None)
    return parser


def _build_activity_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="task-pipeline activity",
        description="Task Pipeline - show a process activity log",
    )
    _add_common(parser)
    parser.add_argument("process_id")
    parser.add_argument("--tail", type=int, default=20, help="Number of trailing events (default: 20)")
    parser.add_argument("--position", type=int, default=0, help="Byte offset to read from")
    parser.add_argument("--json", action="store_true", help="Print machine-readable JSON")
    return parser


def _build_whisper_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="task-pipeline whisper",
        description="Task Pipeline - queue guidance for a process's next prompt",
    )
    _add_common(parser)
    parser.add_argument("process_id")
    parser.add_argument("message")
    parser.add_argument("--urgent", action="store_true", help="Put this guidance first")
    return parser


def _paths(args: argparse.Namespace) -> ControlPaths:
    return ControlPaths.for_project(args.project_dir, args.bot_dir)


def _run_command(args: argparse.Namespace) -> int:
    paths = _paths(args)
    settings = load_settings(paths).with_overrides(
        max_retries_per_task=args.max_retries,
        max_consecutive_failures=args.max_consecutive_failures,
        use_worktrees=False if args.no_worktrees else None,
    )
    process = run_process(
        paths.project_root,
        ProcessType(args.process_type),
        bot_root=paths.bot_root,
        task_id=args.task_id,
        continue_mode=bool(args.continue_mode),
        model=args.model,
        description=args.description,
        settings=settings,
    )
    sys.stdout.write(f"{process.id} {process.status.value} tasks_completed={process.tasks_completed}\n")
    return 1 if process.error or process.status == ProcessStatus.FAILED else 0


def _expand_command(args: argparse.Namespace) -> int:
    paths = _paths(args)
    process = run_group_expansion(paths.project_root, bot_root=paths.bot_root, model=args.model)
    sys.stdout.write(f"{process.id} {process.status.value} tasks_created={process.tasks_completed}\n")
    return 0 if process.status == ProcessStatus.COMPLETED else 1


def _status_command(args: argparse.Namespace) -> int:
    paths = _paths(args)
    registry = ProcessRegistry(paths.processes_dir)
    processes = registry.list()
    if args.active:
        processes = [p for p in processes if p.is_active]
    signals = SignalBus(paths.control_dir).active()
    index = FileTaskIndex(paths.tasks_dir, paths.locks_dir)
    counts = {status: len(index.list_tasks(status)) for status in TaskStatus}
    if args.json:
        payload = {
            "project_dir": str(paths.project_root),
            "bot_dir": str(paths.bot_root),
            "signals": signals,
            "tasks": {status.value: count for status, count in counts.items()},
            "processes": [p.to_dict() for p in processes],
        }
        sys.stdout.write(json.dumps(payload, indent=2, sort_keys=True) + "\n")
        return 0
    sys.stdout.write(format_process_table(processes, signals=signals, task_counts=counts))
    return 0


def _stop_command(args: argparse.Namespace) -> int:
    paths = _paths(args)
    registry = ProcessRegistry(paths.processes_dir)
    if args.all:
        SignalBus(paths.control_dir).set(SIGNAL_STOP, "cli")
        sys.stdout.write("Global stop signal raised\n")
        return 0
    if args.process_type:
        stopped = registry.request_stop_by_type(ProcessType(args.process_type))
        sys.stdout.write(f"Stop requested for {len(stopped)} process(es): {', '.join(stopped) or '-'}\n")
        return 0
    if registry.get(args.process_id) is None:
        sys.stderr.write(f"Unknown process: {args.process_id}\n")
        return 1
    registry.request_stop(args.process_id, reason="cli")
    sys.stdout.write(f"Stop requested for {args.process_id}\n")
    return 0


def _signal_command(args: argparse.Namespace) -> int:
    bus = SignalBus(_paths(args).control_dir)
    if args.action == "list":
        sys.stdout.write("\n".join(bus.active()) + ("\n" if bus.active() else ""))
        return 0
    if not args.name:
        sys.stderr.write("A signal name is required\n")
        return 2
    if args.action == "set":
        bus.set(args.name, "cli")
    else:
        bus.clear(args.name)
    sys.stdout.write(f"{args.action} {args.name}\n")
    return 0


def _activity_command(args: argparse.Namespace) -> int:
    registry = ProcessRegistry(_paths(args).processes_dir)
    events, position = registry.read_activity(args.process_id, position=args.position, tail=args.tail)
    if args.json:
        payload = {"position": position, "events": [event.to_dict() for event in events]}
        sys.stdout.write(json.dumps(payload, indent=2) + "\n")
        return 0
    sys.stdout.write(format_activity(events))
    return 0


def _whisper_command(args: argparse.Namespace) -> int:
    registry = ProcessRegistry(_paths(args).processes_dir)
    if registry.get(args.process_id) is None:
        sys.stderr.write(f"Unknown process: {args.process_id}\n")
        return 1
    registry.whisper(args.process_id, args.message, priority="urgent" if args.urgent else "normal")
    sys.stdout.write(f"Queued guidance for {args.process_id}\n")
    return 0


_COMMANDS = {
    "run": (_build_run_parser, _run_command),
    "expand-groups": (_build_expand_parser, _expand_command),
    "status": (_build_status_parser, _status_command),
    "stop": (_build_stop_parser, _stop_command),
    "signal": (_build_signal_parser, _signal_command),
    "activity": (_build_activity_parser, _activity_command),
    "whisper": (_build_whisper_parser, _whisper_command),
}


def _usage() -> str:
    return "usage: task-pipeline {" + ",".join(_COMMANDS) + "} [options]\n"


def main(argv: Optional[list[str]] = None) -> None:
    """Run the `task-pipeline` CLI.

    Args:
        argv: Optional argument list (excluding the executable name). When omitted,
            uses `sys.argv[1:]`.

    Raises:
        SystemExit: Raised to return a process exit code for CLI subcommands.
    """
    argv = list(sys.argv[1:] if argv is None else argv)
    if not argv or argv[0] in {"-h", "--help"}:
        sys.stdout.write(_usage())
        raise SystemExit(0 if argv else 2)
    entry = _COMMANDS.get(argv[0])
    if entry is None:
        sys.stderr.write(f"Unknown command: {argv[0]}\n" + _usage())
        raise SystemExit(2)
    build_parser, command = entry
    args = build_parser().parse_args(argv[1:])
    configure_logging(args.log_level)
    try:
        code = command(args)
    except TaskPipelineError as exc:
        logger.error("{}", exc)
        raise SystemExit(2) from exc
    raise SystemExit(code)


if __name__ == "__main__":
    main()
