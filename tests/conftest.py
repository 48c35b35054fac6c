from __future__ import annotations

import asyncio
import sys
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import date, datetime, timedelta, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from lockinbot.calendar_day import CalendarDay
from lockinbot.errors import NotificationDeliveryError, TransientPersistenceError
from lockinbot.infra.config import TrackingConfig
from lockinbot.queries.streaks import StreakRecord

# 10:00 in Manila (UTC+8, no DST)
START = datetime(2026, 3, 10, 2, 0, tzinfo=timezone.utc)
TODAY = date(2026, 3, 10)
YESTERDAY = date(2026, 3, 9)

USER = 111
GUILD = 900
CHANNEL = 5001
OTHER_CHANNEL = 5002
UNTRACKED = 7777


class FakeClock:
    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class MemoryStreakStore:
    """In-memory activity store with the same semantics as the SQL one."""

    def __init__(self) -> None:
        self.records: dict[tuple[int, int], StreakRecord] = {}
        self.sessions: list[dict] = []
        self.totals: dict[tuple[int, int], int] = {}
        self.fail_on: set[str] = set()
        self.calls: list[str] = []
        self._lock = asyncio.Lock()

    def _call(self, name: str) -> None:
        self.calls.append(name)
        if name in self.fail_on:
            raise TransientPersistenceError(f"{name}: connection refused")

    def seed(self, user_id: int = USER, guild_id: int = GUILD, **fields) -> StreakRecord:
        record = StreakRecord(user_id=user_id, guild_id=guild_id, **fields)
        self.records[(user_id, guild_id)] = record
        return record

    def get(self, user_id: int = USER, guild_id: int = GUILD) -> StreakRecord | None:
        return self.records.get((user_id, guild_id))

    @asynccontextmanager
    async def atomic(self):
        self._call("atomic")
        async with self._lock:
            yield self

    async def get_streak(self, user_id, guild_id, *, for_update=False):
        self._call("get_streak")
        return self.records.get((user_id, guild_id))

    async def start_daily_activity(self, user_id, guild_id, day, start_instant):
        self._call("start_daily_activity")
        record = self.records.get((user_id, guild_id))
        if record is None:
            record = StreakRecord(user_id=user_id, guild_id=guild_id)
        elif record.last_activity_date == day:
            return False
        self.records[(user_id, guild_id)] = replace(
            record,
            last_activity_date=day,
            daily_activity_minutes=0,
            activity_start_time=start_instant,
        )
        return True

    async def accumulate_minutes(self, user_id, guild_id, new_total):
        self._call("accumulate_minutes")
        record = self.records[(user_id, guild_id)]
        self.records[(user_id, guild_id)] = replace(record, daily_activity_minutes=new_total)

    async def list_for_evaluation(self, before_date):
        self._call("list_for_evaluation")
        return [
            r
            for _, r in sorted(self.records.items())
            if r.streak_evaluated_date is None or r.streak_evaluated_date < before_date
        ]

    async def list_for_warning(self, today, *, minimum_minutes, warned_before):
        self._call("list_for_warning")
        return [
            r
            for _, r in sorted(self.records.items())
            if r.current_streak_count > 0
            and r.minutes_on(today) < minimum_minutes
            and (r.streak_evaluated_date is None or r.streak_evaluated_date < today)
            and (r.warning_notified_at is None or r.warning_notified_at < warned_before)
        ]

    async def apply_evaluation(self, user_id, guild_id, new_current, new_max, evaluated_date):
        self._call("apply_evaluation")
        record = self.records.get((user_id, guild_id))
        if record is None:
            return False
        if record.streak_evaluated_date is not None and record.streak_evaluated_date >= evaluated_date:
            return False
        self.records[(user_id, guild_id)] = replace(
            record,
            current_streak_count=new_current,
            max_streak_count=max(record.max_streak_count, new_max, new_current),
            streak_evaluated_date=evaluated_date,
        )
        return True

    async def record_warning(self, user_id, guild_id, instant):
        self._call("record_warning")
        record = self.records[(user_id, guild_id)]
        self.records[(user_id, guild_id)] = replace(record, warning_notified_at=instant)

    async def reset_streak(self, user_id, guild_id):
        self._call("reset_streak")
        record = self.records.get((user_id, guild_id))
        if record is None:
            return False
        self.records[(user_id, guild_id)] = replace(record, current_streak_count=0)
        return True

    async def record_session(self, user_id, guild_id, channel_id, start_time, end_time, reason):
        self._call("record_session")
        duration = max(int((end_time - start_time).total_seconds()), 0)
        self.sessions.append(
            {
                "user_id": user_id,
                "guild_id": guild_id,
                "channel_id": channel_id,
                "start_time": start_time,
                "end_time": end_time,
                "duration_seconds": duration,
                "reason": reason,
            }
        )
        key = (user_id, guild_id)
        self.totals[key] = self.totals.get(key, 0) + duration

    async def study_seconds(self, user_id, guild_id, since=None):
        self._call("study_seconds")
        if since is None:
            return self.totals.get((user_id, guild_id), 0)
        return sum(
            s["duration_seconds"]
            for s in self.sessions
            if s["user_id"] == user_id and s["guild_id"] == guild_id and s["start_time"] >= since
        )

    async def delete_sessions_before(self, cutoff):
        self._call("delete_sessions_before")
        keep = [s for s in self.sessions if s["end_time"] >= cutoff]
        deleted = len(self.sessions) - len(keep)
        self.sessions = keep
        return deleted


class RecordingNotifier:
    def __init__(self, fail: bool = False) -> None:
        self.sent: list[tuple[int, object, dict]] = []
        self.fail = fail

    async def notify(self, guild_id, kind, payload):
        if self.fail:
            raise NotificationDeliveryError("channel missing")
        self.sent.append((guild_id, kind, dict(payload)))

    def kinds(self) -> list:
        return [kind for _, kind, _ in self.sent]


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def calendar(clock: FakeClock) -> CalendarDay:
    return CalendarDay("Asia/Manila", clock=clock)


@pytest.fixture()
def store() -> MemoryStreakStore:
    return MemoryStreakStore()


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def tracking() -> TrackingConfig:
    return TrackingConfig(
        tracked_channel_ids=frozenset({CHANNEL, OTHER_CHANNEL}),
        worker_count=2,
        queue_size=16,
    )
