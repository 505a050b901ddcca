"""
Clock capability used for ledger day bucketing and audit timestamps.

The whole engine shares one canonical timezone; vendors do not get their
own day boundaries.
"""

import threading
from datetime import date, datetime, timedelta, timezone
from typing import Protocol
from zoneinfo import ZoneInfo


class Clock(Protocol):
    def now(self) -> datetime: ...

    def today(self) -> date: ...


class SystemClock:
    """Wall clock pinned to a single timezone."""

    def __init__(self, tz_name: str = "UTC"):
        self.tz_name = tz_name
        self.tz = timezone.utc if tz_name == "UTC" else ZoneInfo(tz_name)

    def now(self) -> datetime:
        return datetime.now(self.tz)

    def today(self) -> date:
        return self.now().date()


class FixedClock:
    """Manually driven clock for tests and replays."""

    def __init__(self, current: datetime):
        if current.tzinfo is None:
            current = current.replace(tzinfo=timezone.utc)
        self._current = current
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._current

    def today(self) -> date:
        return self.now().date()

    def advance(self, **kwargs) -> datetime:
        """Move the clock forward by a ``timedelta(**kwargs)``."""
        with self._lock:
            self._current = self._current + timedelta(**kwargs)
            return self._current

    def set(self, current: datetime) -> None:
        if current.tzinfo is None:
            current = current.replace(tzinfo=timezone.utc)
        with self._lock:
            self._current = current
