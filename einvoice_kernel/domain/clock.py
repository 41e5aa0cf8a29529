"""
Clock -- injectable time and waiting.

Responsibility:
    The tracker, the polling engine, the token cache and the consolidation
    scheduler take a Clock instead of calling ``datetime.now()``,
    ``date.today()`` or ``time.sleep()``.  Polling waits go through
    ``sleep(seconds, cancel)`` so an owner can interrupt them by setting
    the ``cancel`` event.

Architecture position:
    Kernel > Domain.  ``SystemClock`` is the only class that touches the
    wall clock or blocks.

Testing relevance:
    ``DeterministicClock.sleep()`` moves virtual time forward instead of
    blocking, so a ten-attempt polling schedule runs instantly and its
    total waiting time can be asserted through ``slept``.
"""

import threading
import time
from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone, tzinfo


class Clock(ABC):
    """
    Source of the current time and of (cancellable) waiting.

    Guarantees:
        - ``now()`` is timezone-aware.
        - ``today(tz)`` is the calendar date in ``tz``; consolidation
          periods are computed in the tenant's zone, not in UTC.
        - ``sleep()`` returns ``False`` if ``cancel`` was set before or
          during the wait, ``True`` if the full duration elapsed.
    """

    @abstractmethod
    def now(self) -> datetime:
        ...

    @abstractmethod
    def sleep(self, seconds: float, cancel: threading.Event | None = None) -> bool:
        ...

    def now_utc(self) -> datetime:
        return self.now().astimezone(timezone.utc)

    def today(self, tz: tzinfo | None = None) -> date:
        current = self.now()
        if tz is not None:
            current = current.astimezone(tz)
        return current.date()


class SystemClock(Clock):
    """Wall-clock time; ``sleep`` really blocks the calling thread."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def sleep(self, seconds: float, cancel: threading.Event | None = None) -> bool:
        if cancel is not None:
            # Event.wait returns True as soon as the event is set.
            return not cancel.wait(timeout=max(seconds, 0))
        if seconds > 0:
            time.sleep(seconds)
        return True


class DeterministicClock(Clock):
    """
    Virtual clock for tests.

    Guarantees:
        - ``now()`` only moves through ``advance()``, ``advance_days()``,
          ``set_time()`` or ``sleep()``.
        - ``sleep()`` never blocks; each call is recorded in ``sleeps``
          and an already-set ``cancel`` event makes it return ``False``
          without advancing.
    """

    DEFAULT_START = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __init__(self, start: datetime | None = None):
        self._now = start or self.DEFAULT_START
        self.sleeps: list[float] = []

    @property
    def slept(self) -> float:
        """Total virtual seconds spent in ``sleep()``."""
        return sum(self.sleeps)

    def now(self) -> datetime:
        return self._now

    def set_time(self, moment: datetime) -> None:
        self._now = moment

    def advance(self, seconds: float = 1) -> None:
        self._now += timedelta(seconds=seconds)

    def advance_days(self, days: int) -> None:
        self._now += timedelta(days=days)

    def sleep(self, seconds: float, cancel: threading.Event | None = None) -> bool:
        if cancel is not None and cancel.is_set():
            return False
        self.sleeps.append(seconds)
        self.advance(seconds)
        return True
