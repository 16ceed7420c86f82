"""Time sources for the dispatcher.

The core never calls ``datetime.now`` or ``time.sleep`` directly; it asks a
Clock, so tests can freeze time and observe pacing without waiting.
"""

import time
from datetime import datetime, timedelta
from typing import Protocol

from shared.models import utcnow


class Clock(Protocol):
    def now(self) -> datetime:
        ...

    def sleep(self, seconds: float) -> None:
        ...


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return utcnow()

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)


class ManualClock:
    """
    Clock that only moves when told to.

    ``sleep`` advances the clock instead of blocking and records each
    requested delay in ``sleeps``.
    """

    def __init__(self, start: datetime):
        if start.tzinfo is None:
            raise ValueError("ManualClock needs an aware datetime")
        self._now = start
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self._now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self._now += timedelta(seconds=seconds)

    def advance(self, **kwargs) -> datetime:
        self._now += timedelta(**kwargs)
        return self._now

    def set(self, moment: datetime) -> None:
        self._now = moment
