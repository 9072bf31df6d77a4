from __future__ import annotations

import json
import os
import time
from pathlib import Path
from typing import Any, Callable, Optional

import yaml
from loguru import logger

from .constants import DEFAULT_ACTIVITY_BACKOFF_SECONDS, DEFAULT_ACTIVITY_WRITE_ATTEMPTS
from .utils import _now_iso


def _atomic_write_json(path: Path, data: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    # Unique per writer so two processes never share a temp file.
    tmp_path = path.with_name(f"{path.name}.{os.getpid()}.tmp")
    with open(tmp_path, "w", encoding="utf-8") as handle:
        json.dump(data, handle, indent=2)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, path)


def _load_data_with_error(
    path: Path,
    default: dict[str, Any],
) -> tuple[dict[str, Any], str | None]:
    """
    Load JSON/YAML and return (data, error_message).

    Parse/IO failures are reported so callers can avoid overwriting
    corrupted durable state files.
    """
    if not path.exists():
        return default, None
    try:
        with open(path, "r", encoding="utf-8") as handle:
            if path.suffix in {".yaml", ".yml"}:
                data = yaml.safe_load(handle)
            else:
                data = json.load(handle)
        if data is None and path.suffix in {".yaml", ".yml"}:
            return default, None
        if not isinstance(data, dict):
            return default, f"{path.name}: expected object, got {type(data).__name__}"
        return data, None
    except OSError as exc:
        return default, f"{path.name}: {exc.__class__.__name__}: {exc}"
    except json.JSONDecodeError as exc:
        return default, f"{path.name}: JSONDecodeError: {exc}"
    except yaml.YAMLError as exc:
        return default, f"{path.name}: YAMLError: {exc}"


def _append_jsonl(
    path: Path,
    record: dict[str, Any],
    *,
    attempts: int = DEFAULT_ACTIVITY_WRITE_ATTEMPTS,
    backoff_seconds: float = DEFAULT_ACTIVITY_BACKOFF_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """Append one JSON line, retrying the open with exponential backoff.

    Several processes may append to the same log; a failed open (for example
    a sharing violation on Windows) is retried before the error propagates.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = dict(record)
    payload.setdefault("timestamp", _now_iso())
    line = json.dumps(payload) + "\n"
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            with open(path, "a", encoding="utf-8") as handle:
                handle.write(line)
                handle.flush()
                os.fsync(handle.fileno())
            return
        except OSError as exc:
            if attempt >= attempts:
                raise
            delay = backoff_seconds * (2 ** (attempt - 1))
            logger.debug("Append to {} failed ({}); retrying in {:.2f}s", path.name, exc, delay)
            sleep(delay)


def _read_jsonl(
    path: Path,
    *,
    position: int = 0,
    tail: Optional[int] = None,
) -> tuple[list[dict[str, Any]], int]:
    """Read JSON lines starting at byte `position`.

    Returns the parsed records and the byte offset to resume from. A trailing
    partial line (a writer mid-append) is left for the next read.
    """
    if not path.exists():
        return [], 0
    try:
        with open(path, "rb") as handle:
            handle.seek(0, os.SEEK_END)
            size = handle.tell()
            if position > size:
                # Log was truncated or replaced; start over.
                position = 0
            handle.seek(position)
            data = handle.read()
    except OSError:
        return [], position

    records: list[dict[str, Any]] = []
    consumed = 0
    for raw_line in data.splitlines(keepends=True):
        if not raw_line.endswith(b"\n"):
            break
        consumed += len(raw_line)
        text = raw_line.decode("utf-8", errors="replace").strip()
        if not text:
            continue
        try:
            obj = json.loads(text)
        except json.JSONDecodeError:
            continue
        if isinstance(obj, dict):
            records.append(obj)
    if tail is not None and tail >= 0:
        records = records[-tail:] if tail else []
    return records, position + consumed

