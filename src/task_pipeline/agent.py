"""Invoke the external coding agent as a subprocess.

The agent is opaque: it receives a prompt, edits files and moves its task
file between buckets. The orchestrator only sees the exit code, the captured
output and whatever it can read back from the task index afterwards.
"""

from __future__ import annotations

import json
import os
import shlex
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional, Protocol

from loguru import logger

from .constants import DEFAULT_AGENT_COMMAND, DEFAULT_AGENT_TIMEOUT_SECONDS, TIMEOUT_EXIT_CODE
from .errors import AgentCommandError
from .models import TaskContext
from .utils import _now_iso, _sanitize_fragment, _short_id


@dataclass
class AgentResult:
    exit_code: int
    output: str = ""
    stderr: str = ""
    timed_out: bool = False
    runtime_seconds: float = 0.0
    events: list[dict[str, Any]] = field(default_factory=list)
    claude_session_id: Optional[str] = None
    stdout_path: Optional[str] = None
    stderr_path: Optional[str] = None

    @property
    def diagnostics(self) -> str:
        """Text the failure classifiers may inspect.

        Only stderr and failed terminal `result`/`error` events count; tool
        results and other stdout never do.
        """
        parts = [self.stderr.strip(), *_terminal_event_text(self.events)]
        return "\n".join(part for part in parts if part)


class AgentInvoker(Protocol):
    def invoke(
        self,
        prompt: str,
        *,
        model: str,
        session_id: str,
        cwd: Path,
        context: TaskContext,
    ) -> AgentResult: ...


def _stream_pipe(pipe: Any, file_path: Path) -> None:
    with open(file_path, "w", encoding="utf-8") as handle:
        for line in iter(pipe.readline, ""):
            handle.write(line)
            handle.flush()
    try:
        pipe.close()
    except OSError:
        pass


def _parse_stream_events(text: str) -> list[dict[str, Any]]:
    """Parse `--output-format stream-json` lines; non-JSON lines are ignored."""
    events: list[dict[str, Any]] = []
    for line in text.splitlines():
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict):
            events.append(payload)
    return events


def _is_terminal_error(event: dict[str, Any]) -> bool:
    kind = event.get("type")
    if kind == "error":
        return True
    if kind != "result":
        return False
    return bool(event.get("is_error")) or str(event.get("subtype") or "").startswith("error")


def _terminal_event_text(events: list[dict[str, Any]]) -> list[str]:
    """Messages carried by failed `result` events and `error` events, in order."""
    texts: list[str] = []
    for event in events:
        if not _is_terminal_error(event):
            continue
        for key in ("result", "error", "message"):
            value = event.get(key)
            if isinstance(value, dict):
                value = value.get("message")
            if isinstance(value, str) and value.strip():
                texts.append(value.strip())
    return texts


def _session_from_events(events: list[dict[str, Any]]) -> Optional[str]:
    for event in events:
        session = event.get("session_id")
        if isinstance(session, str) and session:
            return session
    return None


def _read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return ""


class SubprocessAgent:
    """Run the configured agent command once per invocation.

    The command may use `{model}`, `{session_id}`, `{prompt_file}`, `{cwd}` and
    `{run_dir}` placeholders. The prompt goes to stdin when the command has a
    bare `-` argument and no prompt placeholder.
    """

    def __init__(
        self,
        runs_dir: Path,
        *,
        command: str = DEFAULT_AGENT_COMMAND,
        timeout_seconds: int = DEFAULT_AGENT_TIMEOUT_SECONDS,
        poll_seconds: float = 5.0,
        on_poll: Optional[Callable[[], None]] = None,
    ):
        self.runs_dir = runs_dir
        self.command = command
        self.timeout_seconds = timeout_seconds
        self.poll_seconds = poll_seconds
        self.on_poll = on_poll

    def _run_dir(self, context: TaskContext) -> Path:
        stamp = _now_iso().replace(":", "").replace("+", "Z")[:17]
        owner = _sanitize_fragment(context.process_id or "adhoc")
        task = _sanitize_fragment(context.task_id or "none")
        run_dir = self.runs_dir / owner / f"{stamp}-{task}-{_short_id(4)}"
        run_dir.mkdir(parents=True, exist_ok=True)
        return run_dir

    def _format(self, prompt_path: Path, *, model: str, session_id: str, cwd: Path, run_dir: Path) -> list[str]:
        try:
            formatted = self.command.format(
                model=model,
                session_id=session_id,
                prompt_file=str(prompt_path),
                cwd=str(cwd),
                run_dir=str(run_dir),
            )
        except (KeyError, IndexError) as exc:
            raise AgentCommandError(f"Unknown placeholder in agent command: {exc}") from exc
        parts = shlex.split(formatted)
        if not parts:
            raise AgentCommandError("Agent command is empty")
        return parts

    def invoke(
        self,
        prompt: str,
        *,
        model: str,
        session_id: str,
        cwd: Path,
        context: TaskContext,
    ) -> AgentResult:
        run_dir = self._run_dir(context)
        prompt_path = run_dir / "prompt.md"
        prompt_path.write_text(prompt, encoding="utf-8")
        command_parts = self._format(prompt_path, model=model, session_id=session_id, cwd=cwd, run_dir=run_dir)
        uses_prompt_placeholder = "{prompt_file}" in self.command
        expects_stdin = "-" in command_parts and not uses_prompt_placeholder

        stdout_path = run_dir / "stdout.log"
        stderr_path = run_dir / "stderr.log"
        env = dict(os.environ)
        env.update(context.as_env())

        start = time.monotonic()
        try:
            process = subprocess.Popen(
                command_parts,
                cwd=cwd,
                env=env,
                stdin=subprocess.PIPE if expects_stdin else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                bufsize=1,
            )
        except FileNotFoundError as exc:
            # Same meaning as a shell's "command not found".
            logger.error("Agent binary not found: {}", command_parts[0])
            message = f"{command_parts[0]}: command not found ({exc})"
            return AgentResult(exit_code=127, output=message, stderr=message)

        stdout_thread = threading.Thread(target=_stream_pipe, args=(process.stdout, stdout_path), daemon=True)
        stderr_thread = threading.Thread(target=_stream_pipe, args=(process.stderr, stderr_path), daemon=True)
        stdout_thread.start()
        stderr_thread.start()

        if expects_stdin and process.stdin:
            try:
                process.stdin.write(prompt)
                process.stdin.flush()
                process.stdin.close()
            except BrokenPipeError:
                pass

        timed_out = False
        while True:
            elapsed = time.monotonic() - start
            if elapsed > self.timeout_seconds:
                timed_out = True
                process.terminate()
                try:
                    process.wait(timeout=5)
                except subprocess.TimeoutExpired:
                    process.kill()
                    process.wait()
                break
            try:
                process.wait(timeout=min(self.poll_seconds, max(0.1, self.timeout_seconds - elapsed)))
                break
            except subprocess.TimeoutExpired:
                if self.on_poll:
                    self.on_poll()

        stdout_thread.join(timeout=5)
        stderr_thread.join(timeout=5)

        exit_code = process.returncode
        if timed_out:
            exit_code = TIMEOUT_EXIT_CODE
        elif exit_code is None:
            exit_code = -1
        stdout = _read_text(stdout_path)
        stderr = _read_text(stderr_path)
        events = _parse_stream_events(stdout)
        runtime = time.monotonic() - start
        logger.debug(
            "Agent exited with {} after {:.1f}s (timed_out={}) logs={}",
            exit_code,
            runtime,
            timed_out,
            run_dir,
        )
        return AgentResult(
            exit_code=exit_code,
            output="\n".join(part for part in (stdout, stderr) if part),
            stderr=stderr,
            timed_out=timed_out,
            runtime_seconds=runtime,
            events=events,
            claude_session_id=_session_from_events(events),
            stdout_path=str(stdout_path),
            stderr_path=str(stderr_path),
        )
