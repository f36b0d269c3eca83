"""
Clock -- injectable time source for the ledger.

Responsibility:
    The event store stamps ``created_at`` and the pipeline measures run
    durations through a Clock, never through ``datetime.now()`` directly.

Architecture position:
    Kernel > Domain -- pure, zero I/O.  SystemClock is the one sanctioned
    boundary to wall time.

Audit relevance:
    A run's events carry the clock's timestamps.  Tests pin them with
    DeterministicClock so ordering assertions never depend on wall time;
    equal timestamps are resolved by stage rank in the store.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone

DEFAULT_TEST_TIME = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class Clock(ABC):
    """
    Time source injected into the event store and pipeline.

    Guarantees:
        - ``now()`` is timezone-aware.
        - ``monotonic_ms`` never goes negative, even if the clock is reset
          backwards mid-run.
    """

    @abstractmethod
    def now(self) -> datetime:
        ...

    def monotonic_ms(self, started: datetime) -> int:
        """Whole milliseconds elapsed since ``started`` on this clock."""
        elapsed = self.now() - started
        return max(0, int(elapsed.total_seconds() * 1000))


class SystemClock(Clock):
    """Wall-clock UTC time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Clock that only moves when told to.

    ``now()`` returns the same instant on every call until ``advance()``,
    ``tick()`` or ``set_time()`` moves it.  Naive datetimes are rejected so
    stored timestamps always compare cleanly.
    """

    def __init__(self, fixed_time: datetime | None = None):
        self._now = self._aware(fixed_time or DEFAULT_TEST_TIME)

    @staticmethod
    def _aware(value: datetime) -> datetime:
        if value.tzinfo is None:
            raise ValueError("DeterministicClock needs a timezone-aware datetime")
        return value

    def now(self) -> datetime:
        return self._now

    def set_time(self, time: datetime) -> None:
        self._now = self._aware(time)

    def advance(self, seconds: float = 0, milliseconds: float = 0) -> datetime:
        """Move forward and return the new time."""
        self._now += timedelta(seconds=seconds, milliseconds=milliseconds)
        return self._now

    def tick(self) -> datetime:
        """Advance by one second."""
        return self.advance(seconds=1)
