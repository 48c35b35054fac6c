"""Voice-state reconciliation: raw gateway updates -> study sessions.

The reconciler owns two pieces of process-local state:

* ``sessions`` – the open :class:`ActiveSession` per user;
* the dedupe table – last-seen instants of semantically identical events.

Events are deduplicated on arrival, then routed to one of ``worker_count``
bounded queues by ``user_id``. Each queue has exactly one consumer, so events
for one user are handled in arrival order and only ever by the same worker.
Housekeeping that touches sessions (checkpoints, stale sweeps) travels
through the same queues; shutdown drains them before flushing what is left.

Rejoin policy: a join for a user who already has an open session is ignored
when that session is younger than ``rejoin_grace_seconds``; otherwise the old
session is closed at the join instant (reason ``rejoin``) and a new one opens.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Protocol

from .errors import InconsistentStateWarning, TransientPersistenceError
from .infra.config import TrackingConfig
from .infra.logging import structured_log

log = logging.getLogger(f"lockinbot.{__name__}")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class VoiceEvent:
    """One voice-state change as delivered by the gateway."""

    user_id: int
    guild_id: int
    before_channel_id: int | None
    after_channel_id: int | None
    received_at: datetime | None = None
    is_bot: bool = False

    @property
    def left_channel_id(self) -> int | None:
        if self.before_channel_id is not None and self.before_channel_id != self.after_channel_id:
            return self.before_channel_id
        return None

    @property
    def joined_channel_id(self) -> int | None:
        if self.after_channel_id is not None and self.after_channel_id != self.before_channel_id:
            return self.after_channel_id
        return None

    def dedupe_keys(self) -> list[str]:
        keys: list[str] = []
        if self.joined_channel_id is not None:
            keys.append(f"{self.user_id}:join:{self.joined_channel_id}:{self.guild_id}")
            # Catches rapid join/leave/join flapping across channels. A move to
            # an untracked channel inside the window is dropped with it, so that
            # session stays open until the next leave or the stale sweep.
            keys.append(f"{self.user_id}:anyjoin:{self.guild_id}")
        if self.left_channel_id is not None:
            keys.append(f"{self.user_id}:leave:{self.left_channel_id}:{self.guild_id}")
        return keys


@dataclass
class ActiveSession:
    user_id: int
    guild_id: int
    channel_id: int
    start_time: datetime
    # Minutes before this instant are already folded into the store
    credited_from: datetime = field(default=None)  # type: ignore[assignment]

    def __post_init__(self) -> None:
        if self.credited_from is None:
            self.credited_from = self.start_time

    def uncredited_minutes(self, now: datetime) -> int:
        return max(int((now - self.credited_from).total_seconds() // 60), 0)

    def close(self, ended_at: datetime, reason: str) -> "ClosedSession":
        return ClosedSession(
            user_id=self.user_id,
            guild_id=self.guild_id,
            channel_id=self.channel_id,
            started_at=self.start_time,
            credited_from=self.credited_from,
            ended_at=ended_at,
            reason=reason,
        )


@dataclass(frozen=True)
class ClosedSession:
    user_id: int
    guild_id: int
    channel_id: int | None
    started_at: datetime
    credited_from: datetime
    ended_at: datetime
    reason: str

    @property
    def duration(self) -> timedelta:
        return max(self.ended_at - self.started_at, timedelta(0))

    @property
    def elapsed_minutes(self) -> int:
        """Whole minutes not yet credited by an earlier checkpoint."""
        return max(int((self.ended_at - self.credited_from).total_seconds() // 60), 0)


class SessionSink(Protocol):
    """Where the reconciler hands session boundaries (the streak evaluator)."""

    async def on_join(self, user_id: int, guild_id: int, started_at: datetime) -> None: ...

    async def record_session(self, session: ClosedSession) -> None: ...

    async def accumulate(
        self, user_id: int, guild_id: int, minutes: int, started_at: datetime | None = None
    ) -> int: ...


PresenceCheck = Callable[[int, int], bool]


class _Command:
    """Housekeeping routed through a worker queue; resolves a future when done."""

    def __init__(self, run: Callable[[], Awaitable[int]]) -> None:
        self.run = run
        self.done: asyncio.Future[int] = asyncio.get_running_loop().create_future()

    async def execute(self) -> None:
        try:
            result = await self.run()
        except Exception as exc:
            if not self.done.done():
                self.done.set_exception(exc)
            return
        # The caller may have been cancelled while the job was queued
        if not self.done.done():
            self.done.set_result(result)


_STOP = object()


class VoiceEventReconciler:
    """Deduplicate voice events and keep per-user study sessions."""

    def __init__(
        self,
        sink: SessionSink,
        config: TrackingConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.sink = sink
        self.config = config or TrackingConfig()
        self._clock = clock or _utcnow
        self.sessions: dict[int, ActiveSession] = {}
        self._last_seen: dict[str, datetime] = {}
        self._queues: list[asyncio.Queue] = []
        self._workers: list[asyncio.Task] = []
        self._accepting = False

    # ── Lifecycle ──────────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def start(self) -> None:
        """Spawn the worker pool; must be called from a running event loop."""
        if self._workers:
            return
        count = max(self.config.worker_count, 1)
        self._queues = [asyncio.Queue(maxsize=self.config.queue_size) for _ in range(count)]
        self._workers = [
            asyncio.create_task(self._worker(i, q), name=f"voice-worker-{i}")
            for i, q in enumerate(self._queues)
        ]
        self._accepting = True
        log.info("Voice reconciler started with %d workers", count)

    async def drain(self) -> None:
        """Wait until every queued item has been processed."""
        await asyncio.gather(*(q.join() for q in self._queues))

    async def shutdown(self) -> int:
        """Drain the queues, stop the workers and close every open session.

        Open sessions end at the shutdown instant. Returns how many sessions
        were flushed.
        """
        self._accepting = False
        for queue in self._queues:
            await queue.put(_STOP)
        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)
        # Housekeeping queued behind the stop marker runs here instead
        for queue in self._queues:
            while not queue.empty():
                item = queue.get_nowait()
                if isinstance(item, _Command):
                    await item.execute()
        self._workers = []
        self._queues = []

        now = self._clock()
        flushed = 0
        if self.sessions:
            log.info("Closing %d open session(s) on shutdown", len(self.sessions))
        for user_id in list(self.sessions):
            if await self._close(user_id, now, "shutdown") is not None:
                flushed += 1
        return flushed

    # ── Intake ─────────────────────────────────────────────────────────────

    def is_duplicate(self, event: VoiceEvent) -> bool:
        """Return True if an identical event was seen within the dedupe window.

        Non-duplicates are recorded under all their keys and stale keys are
        evicted.
        """
        now = event.received_at or self._clock()
        keys = event.dedupe_keys()
        window = timedelta(seconds=self.config.dedupe_window_seconds)
        for key in keys:
            last = self._last_seen.get(key)
            if last is not None and now - last < window:
                log.debug("Duplicate voice event for key %s (%.3fs apart)", key, (now - last).total_seconds())
                return True
        for key in keys:
            self._last_seen[key] = now
        retention = timedelta(seconds=self.config.dedupe_retention_seconds)
        for key in [k for k, seen in self._last_seen.items() if now - seen > retention]:
            del self._last_seen[key]
        return False

    async def submit(self, event: VoiceEvent, *, dedupe: bool = True) -> bool:
        """Queue *event* for its user's worker. Returns False if it was dropped."""
        if event.is_bot:
            return False
        if event.received_at is None:
            event = VoiceEvent(
                user_id=event.user_id,
                guild_id=event.guild_id,
                before_channel_id=event.before_channel_id,
                after_channel_id=event.after_channel_id,
                received_at=self._clock(),
            )
        if not self._accepting:
            log.warning("Reconciler not accepting events; dropping update for user %s", event.user_id)
            return False
        if dedupe and self.is_duplicate(event):
            log.info("Skipping duplicate voice event for user %s", event.user_id)
            return False
        await self._queue_for(event.user_id).put(event)
        return True

    def _queue_for(self, user_id: int) -> asyncio.Queue:
        return self._queues[user_id % len(self._queues)]

    async def _worker(self, index: int, queue: asyncio.Queue) -> None:
        while True:
            item = await queue.get()
            try:
                if item is _STOP:
                    return
                if isinstance(item, _Command):
                    await item.execute()
                else:
                    await self.handle(item)
            except Exception:
                log.exception("voice-worker-%d failed on %r", index, item)
            finally:
                queue.task_done()

    # ── Event handling ─────────────────────────────────────────────────────

    async def handle(self, event: VoiceEvent) -> None:
        """Apply one (already deduplicated) event to the session map."""
        if event.is_bot:
            return
        left = event.left_channel_id
        joined = event.joined_channel_id
        if left is None and joined is None:
            return  # mute/deafen/stream toggles

        now = event.received_at or self._clock()
        joined_tracked = self.config.is_tracked(joined)

        if event.user_id in self.sessions and (left is not None or not joined_tracked):
            if joined is None:
                reason = "leave"
            elif joined_tracked:
                reason = "move"
            else:
                reason = "untracked"
            await self._close(event.user_id, now, reason)
        elif left is not None and joined is None:
            log.debug("User %s left channel %s without an open session", event.user_id, left)

        if joined is not None and joined_tracked:
            await self._open(event.user_id, event.guild_id, joined, now)

    async def _open(self, user_id: int, guild_id: int, channel_id: int, now: datetime) -> None:
        existing = self.sessions.get(user_id)
        if existing is not None:
            age = now - existing.start_time
            if age < timedelta(seconds=self.config.rejoin_grace_seconds):
                log.info(
                    "User %s already has a session started %.1fs ago; ignoring join",
                    user_id,
                    age.total_seconds(),
                )
                return
            await self._close(user_id, now, "rejoin")

        self.sessions[user_id] = ActiveSession(user_id, guild_id, channel_id, now)
        structured_log(log, logging.INFO, "Session opened", user_id=user_id, guild_id=guild_id, channel_id=channel_id)
        try:
            await self.sink.on_join(user_id, guild_id, now)
        except TransientPersistenceError as exc:
            log.warning("Could not initialise daily activity for user %s: %s", user_id, exc)
        except Exception:
            log.exception("Unexpected error initialising daily activity for user %s", user_id)

    async def _close(self, user_id: int, now: datetime, reason: str) -> ClosedSession | None:
        # Removed before persisting: a failed write must never leave a stale
        # session that double counts on a later leave.
        session = self.sessions.pop(user_id, None)
        if session is None:
            return None
        closed = session.close(now, reason)
        structured_log(
            log,
            logging.INFO,
            "Session closed",
            user_id=user_id,
            guild_id=closed.guild_id,
            minutes=closed.elapsed_minutes,
            reason=reason,
        )
        try:
            await self.sink.record_session(closed)
        except TransientPersistenceError as exc:
            log.warning(
                "Lost %d minute(s) for user %s; persistence failed: %s",
                closed.elapsed_minutes,
                user_id,
                exc,
            )
        except Exception:
            log.exception("Unexpected error recording session for user %s", user_id)
        return closed

    # ── Housekeeping ───────────────────────────────────────────────────────

    async def _run_on_workers(self, job: Callable[[set[int]], Awaitable[int]]) -> int:
        """Run *job* for each worker's users on that worker; sum the results."""
        if not self._workers:
            return await job(set(self.sessions))
        if not self._accepting:
            log.info("Reconciler shutting down; skipping housekeeping")
            return 0
        commands: list[_Command] = []
        for index, queue in enumerate(self._queues):
            if not self._accepting:
                break
            users = {uid for uid in self.sessions if uid % len(self._queues) == index}

            async def run(users: set[int] = users) -> int:
                return await job(users)

            command = _Command(run)
            commands.append(command)
            await queue.put(command)
        results = await asyncio.gather(*(c.done for c in commands))
        return sum(results)

    async def checkpoint(self) -> int:
        """Credit whole elapsed minutes of open sessions without closing them.

        Returns the number of minutes credited across all users.
        """
        now = self._clock()

        async def job(user_ids: set[int]) -> int:
            credited = 0
            for user_id in user_ids:
                session = self.sessions.get(user_id)
                if session is None:
                    continue
                minutes = session.uncredited_minutes(now)
                if minutes <= 0:
                    continue
                try:
                    await self.sink.accumulate(session.user_id, session.guild_id, minutes, session.start_time)
                except TransientPersistenceError as exc:
                    log.warning("Checkpoint failed for user %s: %s", user_id, exc)
                    continue
                session.credited_from += timedelta(minutes=minutes)
                credited += minutes
            return credited

        credited = await self._run_on_workers(job)
        log.info("Checkpointed %d minute(s) from open sessions", credited)
        return credited

    async def sweep(self, is_present: PresenceCheck) -> int:
        """Close sessions past ``max_session_hours`` whose member has left.

        Sessions whose member is not in a tracked channel but are still young
        are only reported. Returns the number of sessions closed.
        """
        now = self._clock()
        max_age = timedelta(hours=self.config.max_session_hours)

        async def job(user_ids: set[int]) -> int:
            closed = 0
            for user_id in user_ids:
                session = self.sessions.get(user_id)
                if session is None:
                    continue
                present = is_present(user_id, session.guild_id)
                if present:
                    continue
                if now - session.start_time > max_age:
                    if await self._close(user_id, now, "timeout") is not None:
                        closed += 1
                else:
                    log.warning(
                        "%s: user %s has an open session but is not in a tracked channel",
                        InconsistentStateWarning.__name__,
                        user_id,
                    )
            return closed

        closed = await self._run_on_workers(job)
        if closed:
            log.info("Swept %d stale session(s)", closed)
        return closed
