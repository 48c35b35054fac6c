"""Activity store: per-(user, guild) streak records and the study session log.

The streak evaluator and the voice reconciler only talk to the
:class:`StreakStore` protocol. :class:`PostgresStreakStore` is the asyncpg
implementation used in production; every multi-field update for one user is a
single statement, and :meth:`PostgresStreakStore.atomic` gives callers a
transaction with row locks for read-modify-write sequences.
"""
from __future__ import annotations

import asyncio
import functools
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, AsyncIterator, Callable, Mapping, Protocol, TypeVar

import asyncpg

from ..errors import TransientPersistenceError
from ..infra.transactions import transaction
from ..util import rows_from_tag

log = logging.getLogger(f"lockinbot.{__name__}")

F = TypeVar("F", bound=Callable[..., Any])

_TRANSIENT = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)


@dataclass(frozen=True)
class StreakRecord:
    """Persisted streak state for one member of one guild."""

    user_id: int
    guild_id: int
    current_streak_count: int = 0
    max_streak_count: int = 0
    last_activity_date: date | None = None
    daily_activity_minutes: int = 0
    streak_evaluated_date: date | None = None
    warning_notified_at: datetime | None = None
    activity_start_time: datetime | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "StreakRecord":
        return cls(
            user_id=row["user_id"],
            guild_id=row["guild_id"],
            current_streak_count=row["current_streak_count"] or 0,
            max_streak_count=row["max_streak_count"] or 0,
            last_activity_date=row["last_activity_date"],
            daily_activity_minutes=row["daily_activity_minutes"] or 0,
            streak_evaluated_date=row["streak_evaluated_date"],
            warning_notified_at=row["warning_notified_at"],
            activity_start_time=row["activity_start_time"],
        )

    def minutes_on(self, day: date) -> int:
        """Accumulated minutes for *day*; stale counters read as zero."""
        if self.last_activity_date != day:
            return 0
        return self.daily_activity_minutes


class StreakStore(Protocol):
    """Persistence contract consumed by the reconciler and evaluator."""

    def atomic(self) -> Any:
        """Async context manager yielding a store whose calls share one transaction."""
        ...

    async def get_streak(
        self, user_id: int, guild_id: int, *, for_update: bool = False
    ) -> StreakRecord | None: ...

    async def start_daily_activity(
        self, user_id: int, guild_id: int, day: date, start_instant: datetime
    ) -> bool: ...

    async def accumulate_minutes(self, user_id: int, guild_id: int, new_total: int) -> None: ...

    async def list_for_evaluation(self, before_date: date) -> list[StreakRecord]: ...

    async def list_for_warning(
        self, today: date, *, minimum_minutes: int, warned_before: datetime
    ) -> list[StreakRecord]: ...

    async def apply_evaluation(
        self,
        user_id: int,
        guild_id: int,
        new_current: int,
        new_max: int,
        evaluated_date: date,
    ) -> bool: ...

    async def record_warning(self, user_id: int, guild_id: int, instant: datetime) -> None: ...

    async def reset_streak(self, user_id: int, guild_id: int) -> bool: ...

    async def record_session(
        self,
        user_id: int,
        guild_id: int,
        channel_id: int | None,
        start_time: datetime,
        end_time: datetime,
        reason: str,
    ) -> None: ...

    async def study_seconds(
        self, user_id: int, guild_id: int, since: datetime | None = None
    ) -> int: ...

    async def delete_sessions_before(self, cutoff: datetime) -> int: ...


def _transient(fn: F) -> F:
    """Re-raise driver and connectivity errors as TransientPersistenceError."""

    @functools.wraps(fn)
    async def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return await fn(*args, **kwargs)
        except _TRANSIENT as exc:
            raise TransientPersistenceError(f"{fn.__name__}: {exc}") from exc

    return wrapper  # type: ignore[return-value]


_COLUMNS = """
    user_id, guild_id, current_streak_count, max_streak_count,
    last_activity_date, daily_activity_minutes, streak_evaluated_date,
    warning_notified_at, activity_start_time
"""


class PostgresStreakStore:
    """:class:`StreakStore` backed by an asyncpg pool.

    Instances created by :meth:`atomic` are bound to a single connection
    inside an open transaction; the top-level instance runs each call on the
    pool.
    """

    def __init__(self, pool: asyncpg.Pool, conn: asyncpg.Connection | None = None) -> None:
        self._pool = pool
        self._conn = conn

    @property
    def _db(self) -> Any:
        return self._conn if self._conn is not None else self._pool

    @asynccontextmanager
    async def atomic(self) -> AsyncIterator["PostgresStreakStore"]:
        if self._conn is not None:
            yield self
            return
        try:
            async with transaction(self._pool) as conn:
                yield PostgresStreakStore(self._pool, conn)
        except _TRANSIENT as exc:
            raise TransientPersistenceError(f"transaction: {exc}") from exc

    # ── Streak records ─────────────────────────────────────────────────────

    @_transient
    async def get_streak(
        self, user_id: int, guild_id: int, *, for_update: bool = False
    ) -> StreakRecord | None:
        lock = " FOR UPDATE" if for_update else ""
        row = await self._db.fetchrow(
            f"""
            SELECT {_COLUMNS}
            FROM user_streak
            WHERE user_id = $1 AND guild_id = $2{lock}
            """,
            user_id,
            guild_id,
        )
        return StreakRecord.from_row(row) if row else None

    @_transient
    async def start_daily_activity(
        self, user_id: int, guild_id: int, day: date, start_instant: datetime
    ) -> bool:
        """Create the record or roll its daily counters over to *day*.

        Returns True when a row was inserted or re-initialized, False when it
        was already initialized for *day*.
        """
        tag = await self._db.execute(
            """
            INSERT INTO user_streak (
                user_id, guild_id, last_activity_date, daily_activity_minutes,
                activity_start_time
            ) VALUES ($1, $2, $3, 0, $4)
            ON CONFLICT (user_id, guild_id) DO UPDATE SET
                last_activity_date = EXCLUDED.last_activity_date,
                daily_activity_minutes = 0,
                activity_start_time = EXCLUDED.activity_start_time,
                updated_at = now()
            WHERE user_streak.last_activity_date IS DISTINCT FROM EXCLUDED.last_activity_date
            """,
            user_id,
            guild_id,
            day,
            start_instant,
        )
        return rows_from_tag(tag) > 0

    @_transient
    async def accumulate_minutes(self, user_id: int, guild_id: int, new_total: int) -> None:
        await self._db.execute(
            """
            UPDATE user_streak
            SET daily_activity_minutes = $3, updated_at = now()
            WHERE user_id = $1 AND guild_id = $2
            """,
            user_id,
            guild_id,
            new_total,
        )

    @_transient
    async def list_for_evaluation(self, before_date: date) -> list[StreakRecord]:
        rows = await self._db.fetch(
            f"""
            SELECT {_COLUMNS}
            FROM user_streak
            WHERE streak_evaluated_date IS NULL OR streak_evaluated_date < $1
            ORDER BY guild_id, user_id
            """,
            before_date,
        )
        return [StreakRecord.from_row(r) for r in rows]

    @_transient
    async def list_for_warning(
        self, today: date, *, minimum_minutes: int, warned_before: datetime
    ) -> list[StreakRecord]:
        rows = await self._db.fetch(
            f"""
            SELECT {_COLUMNS}
            FROM user_streak
            WHERE current_streak_count > 0
              AND (last_activity_date IS DISTINCT FROM $1 OR daily_activity_minutes < $2)
              AND (streak_evaluated_date IS NULL OR streak_evaluated_date < $1)
              AND (warning_notified_at IS NULL OR warning_notified_at < $3)
            ORDER BY guild_id, user_id
            """,
            today,
            minimum_minutes,
            warned_before,
        )
        return [StreakRecord.from_row(r) for r in rows]

    @_transient
    async def apply_evaluation(
        self,
        user_id: int,
        guild_id: int,
        new_current: int,
        new_max: int,
        evaluated_date: date,
    ) -> bool:
        """Write one evaluation result; refuses dates already evaluated."""
        tag = await self._db.execute(
            """
            UPDATE user_streak
            SET current_streak_count = $3,
                max_streak_count = GREATEST(max_streak_count, $4, $3),
                streak_evaluated_date = $5,
                updated_at = now()
            WHERE user_id = $1 AND guild_id = $2
              AND (streak_evaluated_date IS NULL OR streak_evaluated_date < $5)
            """,
            user_id,
            guild_id,
            new_current,
            new_max,
            evaluated_date,
        )
        return rows_from_tag(tag) > 0

    @_transient
    async def record_warning(self, user_id: int, guild_id: int, instant: datetime) -> None:
        await self._db.execute(
            """
            UPDATE user_streak
            SET warning_notified_at = $3, updated_at = now()
            WHERE user_id = $1 AND guild_id = $2
            """,
            user_id,
            guild_id,
            instant,
        )

    @_transient
    async def reset_streak(self, user_id: int, guild_id: int) -> bool:
        tag = await self._db.execute(
            """
            UPDATE user_streak
            SET current_streak_count = 0, updated_at = now()
            WHERE user_id = $1 AND guild_id = $2
            """,
            user_id,
            guild_id,
        )
        return rows_from_tag(tag) > 0

    # ── Session log ────────────────────────────────────────────────────────

    @_transient
    async def record_session(
        self,
        user_id: int,
        guild_id: int,
        channel_id: int | None,
        start_time: datetime,
        end_time: datetime,
        reason: str,
    ) -> None:
        """Append a closed session and bump the member's all-time total."""
        duration = max(int((end_time - start_time).total_seconds()), 0)
        await self._db.execute(
            """
            WITH logged AS (
                INSERT INTO study_session (
                    user_id, guild_id, channel_id, start_time, end_time,
                    duration_seconds, reason
                ) VALUES ($1, $2, $3, $4, $5, $6, $7)
                RETURNING user_id, guild_id, duration_seconds
            )
            INSERT INTO study_total (user_id, guild_id, total_seconds)
            SELECT user_id, guild_id, duration_seconds FROM logged
            ON CONFLICT (user_id, guild_id) DO UPDATE SET
                total_seconds = study_total.total_seconds + EXCLUDED.total_seconds,
                updated_at = now()
            """,
            user_id,
            guild_id,
            channel_id,
            start_time,
            end_time,
            duration,
            reason,
        )

    @_transient
    async def study_seconds(
        self, user_id: int, guild_id: int, since: datetime | None = None
    ) -> int:
        """Seconds studied since *since*, or all time when omitted."""
        if since is None:
            value = await self._db.fetchval(
                """
                SELECT total_seconds FROM study_total
                WHERE user_id = $1 AND guild_id = $2
                """,
                user_id,
                guild_id,
            )
        else:
            value = await self._db.fetchval(
                """
                SELECT COALESCE(SUM(duration_seconds), 0)
                FROM study_session
                WHERE user_id = $1 AND guild_id = $2 AND start_time >= $3
                """,
                user_id,
                guild_id,
                since,
            )
        return int(value or 0)

    @_transient
    async def delete_sessions_before(self, cutoff: datetime) -> int:
        tag = await self._db.execute(
            "DELETE FROM study_session WHERE end_time < $1",
            cutoff,
        )
        return rows_from_tag(tag)
