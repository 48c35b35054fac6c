"""Voice study tracking and the scheduled streak jobs.

Feeds every voice-state update into the reconciler, recovers sessions for
members already in voice when the bot comes online, sweeps stale sessions and
runs the daily evaluation, warning and cleanup jobs on cron schedules in the
configured streak timezone.
"""
from __future__ import annotations

import logging

import discord
from discord.ext import commands, tasks

from .. import bot_config as cfg
from ..calendar_day import CalendarDay
from ..evaluator import StreakEvaluator
from ..infra import BotConfig, PoolAwareCog, alert_task_failure, get_config, log_errors, require_pool
from ..notifier import DiscordNotifier
from ..queries.streaks import PostgresStreakStore
from ..reconciler import VoiceEvent, VoiceEventReconciler
from ..scheduler import CronScheduler

log = logging.getLogger(f"lockinbot.{__name__}")


class StudyCog(PoolAwareCog):
    """Track time spent in study voice channels and keep daily streaks."""

    def __init__(self, bot: commands.Bot, config: BotConfig | None = None) -> None:
        super().__init__(bot)
        self.config = config or get_config()
        self.calendar = CalendarDay(self.config.streak.timezone)
        self.notifier = DiscordNotifier(
            bot,
            streak_channel_id=cfg.STREAK_CHANNEL_ID,
            log_channel_id=cfg.LOGGING_CHANNEL_ID,
            tz_label=self.calendar.tz_name,
        )
        self.evaluator: StreakEvaluator | None = None
        self.reconciler: VoiceEventReconciler | None = None
        self.scheduler: CronScheduler | None = None
        self._recovered = False

    async def cog_load(self) -> None:
        await super().cog_load()
        if not self.pool:
            log.warning("Study tracking disabled; no database configured")
            return

        streak = self.config.streak
        self.evaluator = StreakEvaluator(
            PostgresStreakStore(self.pool),
            self.calendar,
            self.notifier,
            minimum_minutes=streak.minimum_minutes,
            warning_cooldown_hours=streak.warning_cooldown_hours,
        )
        self.reconciler = VoiceEventReconciler(self.evaluator, self.config.tracking)
        self.reconciler.start()

        self.scheduler = CronScheduler(streak.timezone)
        self.scheduler.on_schedule(streak.evaluation_cron, self._run_evaluation, name="streak_evaluation")
        self.scheduler.on_schedule(streak.warning_cron, self._run_warnings, name="streak_warning")
        self.scheduler.on_schedule(streak.cleanup_cron, self._run_cleanup, name="session_cleanup")
        self.scheduler.start()

        self._sweep_sessions.change_interval(minutes=self.config.tracking.sweep_interval_minutes)
        self._sweep_sessions.start()

        tracked = self.config.tracking.tracked_channel_ids
        log.info(
            "StudyCog loaded; tracking %s",
            f"{len(tracked)} voice channel(s)" if tracked else "all voice channels",
        )

    async def cog_unload(self) -> None:
        self._sweep_sessions.cancel()
        if self.scheduler:
            self.scheduler.shutdown()
            self.scheduler = None
        if self.reconciler:
            flushed = await self.reconciler.shutdown()
            log.info("Flushed %d open session(s) on unload", flushed)
            self.reconciler = None
        self.evaluator = None
        await super().cog_unload()

    # ── Voice events ───────────────────────────────────────────────────────

    @commands.Cog.listener()
    async def on_voice_state_update(
        self,
        member: discord.Member,
        before: discord.VoiceState,
        after: discord.VoiceState,
    ) -> None:
        if self.reconciler is None or member.bot:
            return
        event = VoiceEvent(
            user_id=member.id,
            guild_id=member.guild.id,
            before_channel_id=before.channel.id if before.channel else None,
            after_channel_id=after.channel.id if after.channel else None,
            received_at=discord.utils.utcnow(),
        )
        await self.reconciler.submit(event)

    @commands.Cog.listener()
    async def on_ready(self) -> None:
        if self._recovered or self.reconciler is None:
            return
        self._recovered = True
        recovered = 0
        now = discord.utils.utcnow()
        for guild in self.bot.guilds:
            for channel in [*guild.voice_channels, *guild.stage_channels]:
                if not self.config.tracking.is_tracked(channel.id):
                    continue
                for member in channel.members:
                    if member.bot or member.id in self.reconciler.sessions:
                        continue
                    event = VoiceEvent(member.id, guild.id, None, channel.id, received_at=now)
                    if await self.reconciler.submit(event, dedupe=False):
                        recovered += 1
        if recovered:
            log.info("Recovered %d session(s) for members already in voice", recovered)

    def _is_present(self, user_id: int, guild_id: int) -> bool:
        """Return True if the member is currently in a tracked voice channel."""
        guild = self.bot.get_guild(guild_id)
        member = guild.get_member(user_id) if guild else None
        if member is None or member.voice is None or member.voice.channel is None:
            return False
        return self.config.tracking.is_tracked(member.voice.channel.id)

    @tasks.loop(minutes=10)
    @log_errors("Stale session sweep failed")
    async def _sweep_sessions(self) -> None:
        if self.reconciler is None:
            return
        await self.reconciler.sweep(self._is_present)

    @_sweep_sessions.before_loop
    async def _before_sweep(self) -> None:
        await self.bot.wait_until_ready()

    # ── Scheduled jobs ─────────────────────────────────────────────────────

    async def _run_evaluation(self) -> None:
        if self.evaluator is None or self.reconciler is None:
            return
        today = self.calendar.today()
        try:
            await self.reconciler.checkpoint()
            await self.evaluator.evaluate_day(today)
        except Exception as exc:
            log.exception("Daily streak evaluation failed")
            await alert_task_failure(self.bot, "streak_evaluation", exc, context={"date": today.isoformat()})

    @require_pool
    async def _run_warnings(self) -> None:
        try:
            if self.reconciler is not None:
                # Minutes in sessions still open count toward today
                await self.reconciler.checkpoint()
            await self.evaluator.send_warnings()
        except Exception as exc:
            log.exception("Streak warning run failed")
            await alert_task_failure(self.bot, "streak_warning", exc)

    @require_pool
    async def _run_cleanup(self) -> None:
        try:
            await self.evaluator.cleanup_sessions(self.config.streak.session_retention_days)
        except Exception as exc:
            log.exception("Session cleanup failed")
            await alert_task_failure(self.bot, "session_cleanup", exc)


async def setup(bot: commands.Bot) -> None:
    await bot.add_cog(StudyCog(bot))
