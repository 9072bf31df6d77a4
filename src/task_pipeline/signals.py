"""File-existence control signals and the clock used by polling loops.

A signal is "set" while `<control_dir>/<name>.signal` exists. Loops never
block on a signal; they poll it at every suspension point, so every sleep in
the pipeline goes through `interruptible_sleep`.
"""

from __future__ import annotations

import math
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Protocol

from loguru import logger

from .constants import DEFAULT_TICK_SECONDS, KNOWN_SIGNALS, SIGNAL_SUFFIX
from .utils import _now_iso


class Clock(Protocol):
    def monotonic(self) -> float: ...

    def sleep(self, seconds: float) -> None: ...

    def now(self) -> datetime: ...


class SystemClock:
    """Wall clock backed by the `time` module."""

    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class SignalBus:
    """Typed access to the `.signal` marker files of a control directory."""

    def __init__(self, control_dir: Path):
        self.control_dir = control_dir

    def path_for(self, name: str) -> Path:
        if not name or "/" in name or "\\" in name:
            raise ValueError(f"Invalid signal name: {name!r}")
        return self.control_dir / f"{name}{SIGNAL_SUFFIX}"

    def is_set(self, name: str) -> bool:
        return self.path_for(name).exists()

    def set(self, name: str, note: str = "") -> None:
        path = self.path_for(name)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(f"{_now_iso()} {note}".strip() + "\n", encoding="utf-8")
        logger.debug("Signal set: {}", name)

    def clear(self, name: str) -> bool:
        path = self.path_for(name)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        logger.debug("Signal cleared: {}", name)
        return True

    def active(self) -> list[str]:
        if not self.control_dir.exists():
            return []
        names = [path.name[: -len(SIGNAL_SUFFIX)] for path in self.control_dir.glob(f"*{SIGNAL_SUFFIX}")]
        return sorted(names)

    @staticmethod
    def is_known(name: str) -> bool:
        return name in KNOWN_SIGNALS


def interruptible_sleep(
    seconds: float,
    should_stop: Callable[[], bool],
    clock: Clock,
    *,
    tick_seconds: float = DEFAULT_TICK_SECONDS,
    on_tick: Callable[[int], None] | None = None,
) -> bool:
    """Sleep in ticks, polling `should_stop` before each one.

    Returns:
        True if the full duration elapsed, False if a stop was observed.
    """
    if seconds <= 0:
        return not should_stop()
    ticks = max(1, int(math.ceil(seconds / tick_seconds)))
    remaining = float(seconds)
    for tick in range(ticks):
        if should_stop():
            return False
        step = min(tick_seconds, remaining)
        clock.sleep(step)
        remaining -= step
        if on_tick:
            on_tick(tick + 1)
    return not should_stop()
