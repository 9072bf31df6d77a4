"""Detect provider rate limits in agent output and wait them out.

The agent CLI reports throttling in free text. Known shapes:

* ``You've hit your limit · resets 6pm (Europe/Paris)``
* ``You've hit your limit · resets Feb 9 at 6:30pm (America/Toronto)``
* ``Rate limit exceeded, try again in 5 minutes``
* ``429 Too Many Requests ... retry after 120 seconds``
* ``Claude AI usage limit reached|1760000000`` (Unix epoch of the reset)
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Callable, Literal, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from loguru import logger

from .constants import (
    DEFAULT_TICK_SECONDS,
    RATE_LIMIT_FLOOR_SECONDS,
    RATE_LIMIT_MIN_SECONDS,
    RATE_LIMIT_RESET_BUFFER_SECONDS,
)
from .signals import Clock, SystemClock, interruptible_sleep

WaitResult = Literal["resumed", "stop"]

RATE_LIMIT_DETECT_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"you['’]ve hit your (?:usage )?limit", re.IGNORECASE),
    re.compile(r"usage limit reached", re.IGNORECASE),
    re.compile(r"rate[ _-]?limit(?:ed| exceeded| reached)", re.IGNORECASE),
    re.compile(r"\b429\b.*too many requests|too many requests", re.IGNORECASE),
    re.compile(r"rate_limit_error", re.IGNORECASE),
)

MONTH_NAMES = {
    "jan": 1, "january": 1, "feb": 2, "february": 2, "mar": 3, "march": 3,
    "apr": 4, "april": 4, "may": 5, "jun": 6, "june": 6, "jul": 7, "july": 7,
    "aug": 8, "august": 8, "sep": 9, "sept": 9, "september": 9,
    "oct": 10, "october": 10, "nov": 11, "november": 11, "dec": 12, "december": 12,
}

_TIME = r"(\d{1,2})(?::(\d{2}))?\s*(am|pm)"
_TZ = r"(?:\s*\(([A-Za-z_]+(?:/[A-Za-z_\-+0-9]+)*)\))?"

RESET_DATE_PATTERN = re.compile(
    r"resets?\s+(?:on\s+)?([A-Za-z]{3,9})\s+(\d{1,2})(?:,?\s+at)?\s+" + _TIME + _TZ,
    re.IGNORECASE,
)
RESET_TIME_PATTERN = re.compile(r"resets?\s+(?:at\s+)?" + _TIME + _TZ, re.IGNORECASE)
RELATIVE_PATTERN = re.compile(
    r"(?:try again|retry)\s+(?:in|after)\s+(\d+(?:\.\d+)?)\s*(seconds?|secs?|s|minutes?|mins?|m|hours?|hrs?|h)\b",
    re.IGNORECASE,
)
RETRY_AFTER_HEADER_PATTERN = re.compile(r"retry-after:\s*(\d+)", re.IGNORECASE)
EPOCH_PATTERN = re.compile(r"(?:\||reset(?:s|_at)?\s*(?:at\s*)?[:=]?\s*)(\d{10})\b", re.IGNORECASE)

_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600}


def _to_24h(hour: int, ampm: str) -> int:
    ampm = ampm.lower()
    if ampm == "pm" and hour != 12:
        return hour + 12
    if ampm == "am" and hour == 12:
        return 0
    return hour


def _zone(name: Optional[str], fallback: tzinfo) -> tzinfo:
    if not name:
        return fallback
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.debug("Unknown timezone in rate-limit message: {}", name)
        return fallback


def parse_reset_time(message: str, now: datetime) -> Optional[datetime]:
    """Return the absolute reset instant named in `message`, if any."""
    match = RESET_DATE_PATTERN.search(message)
    if match and match.group(1).lower() in MONTH_NAMES:
        tz = _zone(match.group(6), now.tzinfo or timezone.utc)
        local_now = now.astimezone(tz)
        try:
            reset = datetime(
                local_now.year,
                MONTH_NAMES[match.group(1).lower()],
                int(match.group(2)),
                _to_24h(int(match.group(3)), match.group(5)),
                int(match.group(4) or 0),
                tzinfo=tz,
            )
        except ValueError:
            return None
        if reset < local_now:
            reset = reset.replace(year=reset.year + 1)
        return reset

    match = RESET_TIME_PATTERN.search(message)
    if match:
        tz = _zone(match.group(4), now.tzinfo or timezone.utc)
        local_now = now.astimezone(tz)
        try:
            reset = local_now.replace(
                hour=_to_24h(int(match.group(1)), match.group(3)),
                minute=int(match.group(2) or 0),
                second=0,
                microsecond=0,
            )
        except ValueError:
            return None
        if reset <= local_now:
            reset += timedelta(days=1)
        return reset

    match = EPOCH_PATTERN.search(message)
    if match:
        return datetime.fromtimestamp(int(match.group(1)), tz=timezone.utc)
    return None


def parse_relative_wait(message: str) -> Optional[float]:
    match = RELATIVE_PATTERN.search(message)
    if match:
        unit = match.group(2).lower()[0]
        return float(match.group(1)) * _UNIT_SECONDS[unit]
    match = RETRY_AFTER_HEADER_PATTERN.search(message)
    if match:
        return float(match.group(1))
    return None


class RateLimitController:
    def __init__(
        self,
        clock: Optional[Clock] = None,
        *,
        min_seconds: int = RATE_LIMIT_MIN_SECONDS,
        floor_seconds: int = RATE_LIMIT_FLOOR_SECONDS,
        tick_seconds: float = DEFAULT_TICK_SECONDS,
    ):
        self.clock = clock or SystemClock()
        self.min_seconds = min_seconds
        self.floor_seconds = floor_seconds
        self.tick_seconds = tick_seconds

    def detect(self, output: str) -> Optional[str]:
        """Return the line of `output` that reports a rate limit, or None."""
        if not output:
            return None
        for line in output.splitlines():
            for pattern in RATE_LIMIT_DETECT_PATTERNS:
                if pattern.search(line):
                    return line.strip()
        return None

    def compute_reset_window(self, message: str, now: Optional[datetime] = None) -> int:
        """Seconds to wait before retrying after `message`.

        Absolute reset times get a small buffer. Anything unparsable, or
        shorter than `min_seconds`, yields `floor_seconds`.
        """
        now = now or self.clock.now()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        seconds: Optional[float] = parse_relative_wait(message or "")
        if seconds is None:
            reset = parse_reset_time(message or "", now)
            if reset is not None:
                seconds = (reset - now).total_seconds() + RATE_LIMIT_RESET_BUFFER_SECONDS
        if seconds is None or seconds < self.min_seconds:
            return self.floor_seconds
        return int(seconds)

    def wait_cancellable(
        self,
        wait_seconds: float,
        should_stop: Callable[[], bool],
        on_tick: Optional[Callable[[int], None]] = None,
    ) -> WaitResult:
        logger.info("Rate limited; waiting {}s before retrying", int(wait_seconds))
        finished = interruptible_sleep(
            wait_seconds,
            should_stop,
            self.clock,
            tick_seconds=self.tick_seconds,
            on_tick=on_tick,
        )
        return "resumed" if finished else "stop"
