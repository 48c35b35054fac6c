"""Streak state machine.

Two independent triggers drive a member's record:

* accumulation (:meth:`StreakEvaluator.accumulate`) adds closed-session
  minutes to today's counter and never touches the streak count;
* the daily batch (:meth:`StreakEvaluator.evaluate_day`) turns "did this
  member reach the threshold today" into started / continued / ended, once per
  calendar day, fenced by ``streak_evaluated_date``.

Notifications are emitted only after the state change they describe has been
committed, and a failed delivery is logged without undoing anything.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Mapping

from .calendar_day import CalendarDay
from .errors import NotificationDeliveryError, TransientPersistenceError
from .infra.logging import structured_log
from .notifier import NotificationKind, Notifier
from .queries.streaks import StreakRecord, StreakStore
from .reconciler import ClosedSession

log = logging.getLogger(f"lockinbot.{__name__}")


class Transition(str, Enum):
    STARTED = "started"
    CONTINUED = "continued"
    ENDED = "ended"
    UNCHANGED = "unchanged"


@dataclass(frozen=True)
class Evaluation:
    transition: Transition
    previous_streak: int
    new_current: int
    new_max: int


def evaluate_record(record: StreakRecord, today: date, minimum_minutes: int) -> Evaluation:
    """Compute the end-of-day outcome for *record* without side effects."""
    qualified = record.minutes_on(today) >= minimum_minutes
    previous = record.current_streak_count
    if qualified:
        new_current = previous + 1
        transition = Transition.STARTED if previous == 0 else Transition.CONTINUED
    elif previous > 0:
        new_current = 0
        transition = Transition.ENDED
    else:
        new_current = 0
        transition = Transition.UNCHANGED
    return Evaluation(
        transition=transition,
        previous_streak=previous,
        new_current=new_current,
        new_max=max(record.max_streak_count, new_current),
    )


@dataclass
class BatchResult:
    evaluated: int = 0
    started: int = 0
    continued: int = 0
    ended: int = 0
    unchanged: int = 0
    skipped: int = 0
    failed: int = 0

    def count(self, transition: Transition) -> None:
        self.evaluated += 1
        setattr(self, transition.value, getattr(self, transition.value) + 1)


@dataclass(frozen=True)
class StudyTotals:
    """Seconds of logged study in each reporting window."""

    today: int
    week: int
    month: int
    all_time: int


_TRANSITION_KINDS = {
    Transition.STARTED: NotificationKind.STREAK_STARTED,
    Transition.CONTINUED: NotificationKind.STREAK_CONTINUED,
    Transition.ENDED: NotificationKind.STREAK_ENDED,
}


class StreakEvaluator:
    """Owns every mutation of streak records."""

    def __init__(
        self,
        store: StreakStore,
        calendar: CalendarDay,
        notifier: Notifier | None = None,
        *,
        minimum_minutes: int = 1,
        warning_cooldown_hours: int = 23,
    ) -> None:
        self.store = store
        self.calendar = calendar
        self.notifier = notifier
        self.minimum_minutes = minimum_minutes
        self.warning_cooldown = timedelta(hours=warning_cooldown_hours)

    async def _emit(self, guild_id: int, kind: NotificationKind, payload: Mapping[str, Any]) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.notify(guild_id, kind, payload)
        except NotificationDeliveryError as exc:
            log.warning("Failed to deliver %s for user %s: %s", kind.value, payload.get("user_id"), exc)
        except Exception:
            log.exception("Unexpected error delivering %s notification", kind.value)

    # ── Accumulation ───────────────────────────────────────────────────────

    async def on_join(self, user_id: int, guild_id: int, started_at: datetime) -> None:
        """Make sure today's counters exist, rolling a stale date over to zero."""
        today = self.calendar.to_date(started_at)
        if await self.store.start_daily_activity(user_id, guild_id, today, started_at):
            log.debug("Initialised daily activity for user %s on %s", user_id, today)

    async def accumulate(
        self,
        user_id: int,
        guild_id: int,
        minutes: int,
        started_at: datetime | None = None,
    ) -> int:
        """Add *minutes* to today's total and return the new total."""
        now = self.calendar.now()
        today = self.calendar.today()
        async with self.store.atomic() as tx:
            await tx.start_daily_activity(user_id, guild_id, today, started_at or now)
            record = await tx.get_streak(user_id, guild_id, for_update=True)
            previous = record.minutes_on(today) if record else 0
            new_total = previous + max(minutes, 0)
            if new_total != previous:
                await tx.accumulate_minutes(user_id, guild_id, new_total)

        structured_log(
            log,
            logging.INFO,
            "Accumulated study minutes",
            user_id=user_id,
            guild_id=guild_id,
            added=minutes,
            total=new_total,
        )
        if previous < self.minimum_minutes <= new_total:
            await self._emit(
                guild_id,
                NotificationKind.ACTIVITY_COMPLETED,
                {"user_id": user_id, "minutes": new_total, "minimum_minutes": self.minimum_minutes},
            )
        return new_total

    async def record_session(self, session: ClosedSession) -> None:
        """Log a closed session and credit its uncredited minutes.

        The log row is best-effort; a failure to credit minutes propagates.
        """
        try:
            await self.store.record_session(
                session.user_id,
                session.guild_id,
                session.channel_id,
                session.started_at,
                session.ended_at,
                session.reason,
            )
        except TransientPersistenceError as exc:
            log.warning("Could not log session for user %s: %s", session.user_id, exc)

        minutes = session.elapsed_minutes
        if minutes > 0:
            await self.accumulate(session.user_id, session.guild_id, minutes, session.started_at)

        duration = session.duration.total_seconds()
        if duration > 0:
            await self._emit(
                session.guild_id,
                NotificationKind.SESSION_CLOSED,
                {
                    "user_id": session.user_id,
                    "channel_id": session.channel_id,
                    "duration_seconds": duration,
                    "reason": session.reason,
                },
            )

    # ── Daily evaluation ───────────────────────────────────────────────────

    async def evaluate_user(self, user_id: int, guild_id: int, today: date) -> Evaluation | None:
        """Evaluate one member for *today*; None when already fenced or missing."""
        async with self.store.atomic() as tx:
            record = await tx.get_streak(user_id, guild_id, for_update=True)
            if record is None:
                return None
            if record.streak_evaluated_date is not None and record.streak_evaluated_date >= today:
                return None
            result = evaluate_record(record, today, self.minimum_minutes)
            applied = await tx.apply_evaluation(
                user_id, guild_id, result.new_current, result.new_max, today
            )
        if not applied:
            return None

        kind = _TRANSITION_KINDS.get(result.transition)
        if kind is not None:
            payload: dict[str, Any] = {"user_id": user_id, "streak": result.new_current}
            if result.transition is Transition.ENDED:
                payload["previous_streak"] = result.previous_streak
            await self._emit(guild_id, kind, payload)
        return result

    async def evaluate_day(self, today: date | None = None) -> BatchResult:
        """Run the end-of-day batch for every member not yet evaluated today.

        Failures for one member are logged and the batch moves on; a failure
        to list candidates propagates.
        """
        today = today or self.calendar.today()
        candidates = await self.store.list_for_evaluation(today)
        log.info("Evaluating streaks for %s: %d candidate(s)", today, len(candidates))

        result = BatchResult()
        for candidate in candidates:
            try:
                outcome = await self.evaluate_user(candidate.user_id, candidate.guild_id, today)
            except TransientPersistenceError as exc:
                result.failed += 1
                log.warning("Evaluation failed for user %s: %s", candidate.user_id, exc)
                continue
            except Exception:
                result.failed += 1
                log.exception("Unexpected error evaluating user %s", candidate.user_id)
                continue
            if outcome is None:
                result.skipped += 1
            else:
                result.count(outcome.transition)

        structured_log(
            log,
            logging.INFO,
            "Streak evaluation finished",
            day=today.isoformat(),
            evaluated=result.evaluated,
            started=result.started,
            continued=result.continued,
            ended=result.ended,
            skipped=result.skipped,
            failed=result.failed,
        )
        return result

    async def send_warnings(self) -> int:
        """Warn members whose streak is at risk today; returns how many were warned."""
        now = self.calendar.now()
        today = self.calendar.to_date(now)
        records = await self.store.list_for_warning(
            today,
            minimum_minutes=self.minimum_minutes,
            warned_before=now - self.warning_cooldown,
        )
        warned = 0
        for record in records:
            try:
                await self.store.record_warning(record.user_id, record.guild_id, now)
            except TransientPersistenceError as exc:
                log.warning("Could not stamp warning for user %s: %s", record.user_id, exc)
                continue
            await self._emit(
                record.guild_id,
                NotificationKind.STREAK_WARNING,
                {
                    "user_id": record.user_id,
                    "streak": record.current_streak_count,
                    "minimum_minutes": self.minimum_minutes,
                },
            )
            warned += 1
        log.info("Sent %d streak warning(s)", warned)
        return warned

    # ── Maintenance and queries ────────────────────────────────────────────

    async def cleanup_sessions(self, retention_days: int) -> int:
        cutoff = self.calendar.now() - timedelta(days=retention_days)
        deleted = await self.store.delete_sessions_before(cutoff)
        log.info("Deleted %d session log row(s) older than %s", deleted, cutoff.isoformat())
        return deleted

    async def reset_streak(self, user_id: int, guild_id: int) -> bool:
        reset = await self.store.reset_streak(user_id, guild_id)
        if reset:
            log.info("Reset streak for user %s in guild %s", user_id, guild_id)
        return reset

    async def status(self, user_id: int, guild_id: int) -> StreakRecord:
        """Return the member's record, or a zero baseline if none exists yet."""
        record = await self.store.get_streak(user_id, guild_id)
        return record or StreakRecord(user_id=user_id, guild_id=guild_id)

    async def study_totals(self, user_id: int, guild_id: int) -> StudyTotals:
        today = self.calendar.today()
        return StudyTotals(
            today=await self.store.study_seconds(user_id, guild_id, self.calendar.start_of_day(today)),
            week=await self.store.study_seconds(user_id, guild_id, self.calendar.start_of_week(today)),
            month=await self.store.study_seconds(user_id, guild_id, self.calendar.start_of_month(today)),
            all_time=await self.store.study_seconds(user_id, guild_id),
        )
