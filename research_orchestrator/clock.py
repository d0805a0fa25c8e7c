"""
Injectable time sources.

Everything that reads the time (cadence, TTLs, the daily reset, alert
windows, backoff sleeps) goes through a Clock so tests can drive the
orchestrator deterministically.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes, convert aware ones."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Clock:
    """Wall-clock time source used in production."""

    def now(self) -> datetime:
        return utcnow()

    async def sleep(self, seconds: float):
        await asyncio.sleep(seconds)


SystemClock = Clock


class ManualClock(Clock):
    """
    Clock that only moves when told to.

    sleep() advances the clock by the requested amount and yields to the
    event loop once, so backoff delays cost no real time in tests.
    """

    def __init__(self, start: Optional[datetime] = None):
        self._now = ensure_utc(start) or datetime(2024, 1, 1, tzinfo=timezone.utc)
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self._now

    def set(self, value: datetime):
        self._now = ensure_utc(value)

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        """Move forward by seconds and/or timedelta kwargs (minutes=, hours=)."""
        self._now = self._now + timedelta(seconds=seconds, **kwargs)
        return self._now

    async def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.advance(seconds)
        await asyncio.sleep(0)
