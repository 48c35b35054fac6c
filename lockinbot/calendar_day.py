"""Fixed-timezone calendar helpers.

Every "what day is it" question in the bot goes through :class:`CalendarDay`
so that all members share identical day boundaries regardless of where they
are. Naive datetimes are interpreted as UTC.
"""
from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Callable

import pytz

DEFAULT_TIMEZONE = "Asia/Manila"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ensure_aware(instant: datetime) -> datetime:
    if instant.tzinfo is None:
        return instant.replace(tzinfo=timezone.utc)
    return instant


class CalendarDay:
    """Calendar arithmetic against one configured timezone.

    ``clock`` returns the current instant and exists so tests can pin time.
    """

    def __init__(
        self,
        tz_name: str = DEFAULT_TIMEZONE,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.tz = pytz.timezone(tz_name)
        self._clock = clock or _utcnow

    @property
    def tz_name(self) -> str:
        return self.tz.zone

    def now(self) -> datetime:
        """Current instant, expressed in the calendar timezone."""
        return _ensure_aware(self._clock()).astimezone(self.tz)

    def to_date(self, instant: datetime) -> date:
        """Calendar date of *instant* in the configured timezone."""
        return _ensure_aware(instant).astimezone(self.tz).date()

    def today(self) -> date:
        return self.to_date(self._clock())

    def yesterday(self) -> date:
        return self.today() - timedelta(days=1)

    def is_same_day(self, first: datetime, second: datetime) -> bool:
        return self.to_date(first) == self.to_date(second)

    def start_of_day(self, day: date) -> datetime:
        """Aware instant of local midnight opening *day*."""
        return self.tz.localize(datetime(day.year, day.month, day.day))

    def start_of_week(self, day: date) -> datetime:
        """Local midnight of the Monday on or before *day*."""
        return self.start_of_day(day - timedelta(days=day.weekday()))

    def start_of_month(self, day: date) -> datetime:
        return self.start_of_day(day.replace(day=1))
