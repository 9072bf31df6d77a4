"""Tests for the file-backed signal bus and interruptible sleep."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from task_pipeline.signals import SignalBus, interruptible_sleep


class FakeClock:
    def __init__(self) -> None:
        self.t = 0.0
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.t

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.t += seconds

    def now(self) -> datetime:
        return datetime(2026, 1, 1, tzinfo=timezone.utc) + timedelta(seconds=self.t)


def test_set_is_set_clear(tmp_path: Path) -> None:
    bus = SignalBus(tmp_path / ".control")
    assert bus.is_set("pause") is False

    bus.set("pause", "operator")
    assert bus.is_set("pause") is True
    assert (tmp_path / ".control" / "pause.signal").exists()
    assert bus.active() == ["pause"]

    assert bus.clear("pause") is True
    assert bus.clear("pause") is False
    assert bus.active() == []


def test_active_lists_sorted_names(tmp_path: Path) -> None:
    bus = SignalBus(tmp_path)
    bus.set("stop")
    bus.set("analysing")
    assert bus.active() == ["analysing", "stop"]


def test_rejects_path_like_names(tmp_path: Path) -> None:
    bus = SignalBus(tmp_path)
    with pytest.raises(ValueError):
        bus.set("../escape")
    with pytest.raises(ValueError):
        bus.is_set("")


def test_is_known() -> None:
    assert SignalBus.is_known("stop-analysis")
    assert not SignalBus.is_known("explode")


def test_interruptible_sleep_runs_full_duration() -> None:
    clock = FakeClock()
    assert interruptible_sleep(3, lambda: False, clock) is True
    assert clock.sleeps == [1, 1, 1]


def test_interruptible_sleep_stops_on_next_tick() -> None:
    clock = FakeClock()
    finished = interruptible_sleep(60, lambda: clock.t >= 2.5, clock)
    assert finished is False
    # Stop is observed before the fourth tick.
    assert clock.t == 3


def test_interruptible_sleep_zero_seconds_checks_stop() -> None:
    clock = FakeClock()
    assert interruptible_sleep(0, lambda: True, clock) is False
    assert interruptible_sleep(0, lambda: False, clock) is True
    assert clock.sleeps == []


def test_on_tick_receives_tick_numbers() -> None:
    clock = FakeClock()
    ticks: list[int] = []
    interruptible_sleep(2.5, lambda: False, clock, on_tick=ticks.append)
    assert ticks == [1, 2, 3]
    assert clock.sleeps == [1, 1, 0.5]
