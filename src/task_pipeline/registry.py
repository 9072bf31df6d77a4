"""Durable process records, activity logs, stop requests and heartbeats.

Each process owns three files under `processes/`:

* `<id>.json` - the `Process` record, always replaced atomically so readers
  never observe a partial write;
* `<id>.activity.jsonl` - append-only activity events;
* `<id>.stop` - present while a graceful stop has been requested.
"""

from __future__ import annotations

import os
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional

from loguru import logger

from .constants import DEFAULT_ACTIVITY_WRITE_ATTEMPTS
from .io_utils import _append_jsonl, _atomic_write_json, _load_data_with_error, _read_jsonl
from .models import ActivityEvent, Process, ProcessStatus, ProcessType
from .utils import _now_iso, _pid_is_running, _short_id

_ACTIVITY_SUFFIX = ".activity.jsonl"
_STOP_SUFFIX = ".stop"
_WHISPER_SUFFIX = ".whisper.jsonl"


class ProcessRegistry:
    def __init__(self, processes_dir: Path, *, activity_write_attempts: int = DEFAULT_ACTIVITY_WRITE_ATTEMPTS):
        self.processes_dir = processes_dir
        self.activity_write_attempts = activity_write_attempts

    def record_path(self, process_id: str) -> Path:
        return self.processes_dir / f"{process_id}.json"

    def activity_path(self, process_id: str) -> Path:
        return self.processes_dir / f"{process_id}{_ACTIVITY_SUFFIX}"

    def stop_path(self, process_id: str) -> Path:
        return self.processes_dir / f"{process_id}{_STOP_SUFFIX}"

    def whisper_path(self, process_id: str) -> Path:
        return self.processes_dir / f"{process_id}{_WHISPER_SUFFIX}"

    def new_process(
        self,
        process_type: ProcessType,
        *,
        task_id: Optional[str] = None,
        model: Optional[str] = None,
        continue_mode: bool = False,
        description: Optional[str] = None,
    ) -> Process:
        """Build (but do not persist) a fresh process record for this OS process."""
        now = _now_iso()
        return Process(
            id=f"proc-{_short_id(6)}",
            type=process_type,
            status=ProcessStatus.STARTING,
            task_id=task_id,
            model=model,
            pid=os.getpid(),
            session_id=str(uuid.uuid4()),
            last_heartbeat=now,
            heartbeat_status="Starting",
            started_at=now,
            continue_mode=continue_mode,
            description=description,
        )

    def create(self, process: Process) -> Process:
        path = self.record_path(process.id)
        if path.exists():
            raise FileExistsError(f"Process record already exists: {process.id}")
        _atomic_write_json(path, process.to_dict())
        logger.debug("Registered process {} ({})", process.id, process.type.value)
        return process

    def update(self, process: Process) -> Process:
        _atomic_write_json(self.record_path(process.id), process.to_dict())
        return process

    def get(self, process_id: str) -> Optional[Process]:
        path = self.record_path(process_id)
        if not path.exists():
            return None
        data, err = _load_data_with_error(path, {})
        if err:
            logger.warning("Unreadable process record {}: {}", process_id, err)
            return None
        return Process.from_dict(data)

    def list(
        self,
        *,
        process_type: Optional[ProcessType] = None,
        status: Optional[Iterable[ProcessStatus]] = None,
    ) -> list[Process]:
        if not self.processes_dir.exists():
            return []
        wanted = set(status) if status is not None else None
        processes: list[Process] = []
        for path in sorted(self.processes_dir.glob("*.json")):
            data, err = _load_data_with_error(path, {})
            if err or not data:
                continue
            process = Process.from_dict(data)
            if process_type is not None and process.type != process_type:
                continue
            if wanted is not None and process.status not in wanted:
                continue
            processes.append(process)
        processes.sort(key=lambda p: p.started_at or "", reverse=True)
        return processes

    def heartbeat(
        self,
        process: Process,
        status: Optional[str] = None,
        next_action: Optional[str] = None,
    ) -> Process:
        process.last_heartbeat = _now_iso()
        if status is not None:
            process.heartbeat_status = status
        if next_action is not None:
            process.heartbeat_next_action = next_action
        return self.update(process)

    def is_alive(self, process_id: Optional[str]) -> bool:
        """Return True if the process record is active and its pid still runs."""
        if not process_id:
            return False
        process = self.get(process_id)
        if process is None or not process.is_active:
            return False
        return _pid_is_running(process.pid)

    def append_activity(self, process_id: str, event: ActivityEvent) -> None:
        _append_jsonl(
            self.activity_path(process_id),
            event.to_dict(),
            attempts=self.activity_write_attempts,
        )

    def log(
        self,
        process: Process,
        event_type: str,
        message: str,
        *,
        task_id: Optional[str] = None,
        phase: Optional[str] = None,
    ) -> None:
        """Append an activity event for `process`, defaulting task/phase from it."""
        self.append_activity(
            process.id,
            ActivityEvent(
                type=event_type,
                message=message,
                task_id=task_id if task_id is not None else process.task_id,
                phase=phase if phase is not None else process.type.value,
            ),
        )

    def read_activity(
        self,
        process_id: str,
        *,
        position: int = 0,
        tail: Optional[int] = None,
    ) -> tuple[list[ActivityEvent], int]:
        records, new_position = _read_jsonl(self.activity_path(process_id), position=position, tail=tail)
        return [ActivityEvent.from_dict(record) for record in records], new_position

    def request_stop(self, process_id: str, reason: str = "") -> None:
        path = self.stop_path(process_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(f"{_now_iso()} {reason}".strip() + "\n", encoding="utf-8")

    def is_stop_requested(self, process_id: str) -> bool:
        return self.stop_path(process_id).exists()

    def clear_stop(self, process_id: str) -> None:
        try:
            self.stop_path(process_id).unlink()
        except FileNotFoundError:
            pass

    def request_stop_by_type(self, process_type: ProcessType) -> list[str]:
        stopped: list[str] = []
        for process in self.list(process_type=process_type):
            if not process.is_active:
                continue
            self.request_stop(process.id, reason=f"stop-by-type {process_type.value}")
            stopped.append(process.id)
        return stopped

    def whisper(self, process_id: str, message: str, priority: str = "normal") -> None:
        """Queue operator guidance for the next prompt the process builds."""
        if not message.strip():
            raise ValueError("Whisper message must not be empty")
        _append_jsonl(
            self.whisper_path(process_id),
            {"message": message.strip(), "priority": priority},
            attempts=self.activity_write_attempts,
        )

    def drain_whispers(self, process_id: str) -> list[dict[str, Any]]:
        path = self.whisper_path(process_id)
        if not path.exists():
            return []
        claimed = path.with_name(f"{path.name}.{os.getpid()}.draining")
        try:
            os.replace(path, claimed)
        except FileNotFoundError:
            return []
        records, _ = _read_jsonl(claimed)
        claimed.unlink(missing_ok=True)
        # Urgent guidance first, then arrival order.
        records.sort(key=lambda r: 0 if r.get("priority") == "urgent" else 1)
        return records

    def mark_crashed(self, process: Process, exc: BaseException) -> None:
        """Persist `stopped` with the error so the record never shows a phantom running process."""
        message = f"{exc.__class__.__name__}: {exc}"
        process.status = ProcessStatus.STOPPED
        process.error = message
        process.failed_at = _now_iso()
        process.heartbeat_status = f"Crashed: {message}"
        process.heartbeat_next_action = None
        self.update(process)
        self.log(process, "crash", message)

    @contextmanager
    def crash_trap(self, process: Process) -> Iterator[Process]:
        try:
            yield process
        except BaseException as exc:
            logger.exception("Process {} crashed", process.id)
            try:
                self.mark_crashed(process, exc)
            except OSError as write_exc:
                logger.error("Unable to record crash for {}: {}", process.id, write_exc)
            raise
