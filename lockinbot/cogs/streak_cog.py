"""Slash commands for study streaks and study time."""
from __future__ import annotations

import logging

import discord
from discord import app_commands
from discord.ext import commands

from ..calendar_day import CalendarDay
from ..errors import TransientPersistenceError
from ..evaluator import StreakEvaluator
from ..infra import BotConfig, PoolAwareCog, get_config
from ..queries.streaks import PostgresStreakStore
from ..util import format_duration, user_name

log = logging.getLogger(f"lockinbot.{__name__}")

DB_UNAVAILABLE = "Study tracking is unavailable right now. Please try again later."


def _streak_emoji(streak: int) -> str:
    """Return emoji based on streak length."""
    if streak >= 100:
        return "\U0001f451"  # Crown
    elif streak >= 30:
        return "\U0001f3c6"  # Trophy
    elif streak >= 7:
        return "\U0001f525"  # Fire
    elif streak >= 1:
        return "\U0001f31f"  # Glowing star
    return "\U0001f331"  # Seedling


class StreakCog(PoolAwareCog):
    """/streak, /stats and /streakreset."""

    def __init__(self, bot: commands.Bot, config: BotConfig | None = None) -> None:
        super().__init__(bot)
        self.config = config or get_config()
        self.calendar = CalendarDay(self.config.streak.timezone)
        self.evaluator: StreakEvaluator | None = None

    async def cog_load(self) -> None:
        await super().cog_load()
        if self.pool:
            self.evaluator = StreakEvaluator(
                PostgresStreakStore(self.pool),
                self.calendar,
                minimum_minutes=self.config.streak.minimum_minutes,
            )

    async def cog_unload(self) -> None:
        self.evaluator = None
        await super().cog_unload()

    def _live_seconds(self, user_id: int) -> float:
        """Seconds in the member's currently open session, if any."""
        study = self.bot.get_cog("StudyCog")
        reconciler = getattr(study, "reconciler", None)
        session = reconciler.sessions.get(user_id) if reconciler else None
        if session is None:
            return 0.0
        return max((discord.utils.utcnow() - session.start_time).total_seconds(), 0.0)

    @app_commands.command(name="streak", description="Check a study streak")
    @app_commands.describe(member="Member to check (defaults to yourself)")
    @app_commands.guild_only()
    async def streak(
        self, interaction: discord.Interaction, member: discord.Member | None = None
    ) -> None:
        target = member or interaction.user
        if self.evaluator is None or interaction.guild_id is None:
            await interaction.response.send_message(DB_UNAVAILABLE, ephemeral=True)
            return
        try:
            record = await self.evaluator.status(target.id, interaction.guild_id)
        except TransientPersistenceError as exc:
            log.warning("/streak lookup failed for %s: %s", user_name(target), exc)
            await interaction.response.send_message(DB_UNAVAILABLE, ephemeral=True)
            return

        today = self.calendar.today()
        minutes = record.minutes_on(today)
        threshold = self.evaluator.minimum_minutes
        current = record.current_streak_count

        embed = discord.Embed(
            title=f"{_streak_emoji(current)} {target.display_name}'s Study Streak",
            color=discord.Color.orange() if current else discord.Color.light_grey(),
        )
        embed.add_field(name="Current", value=f"{current} days", inline=True)
        embed.add_field(name="Best Ever", value=f"{record.max_streak_count} days", inline=True)
        progress = "✅ Done" if minutes >= threshold else f"{minutes}/{threshold} min"
        embed.add_field(name="Today", value=progress, inline=True)
        embed.set_footer(text=f"Days end at midnight {self.calendar.tz_name}")
        await interaction.response.send_message(embed=embed, ephemeral=True)

    @app_commands.command(name="stats", description="Show study time totals")
    @app_commands.describe(member="Member to check (defaults to yourself)")
    @app_commands.guild_only()
    async def stats(
        self, interaction: discord.Interaction, member: discord.Member | None = None
    ) -> None:
        target = member or interaction.user
        if self.evaluator is None or interaction.guild_id is None:
            await interaction.response.send_message(DB_UNAVAILABLE, ephemeral=True)
            return
        await interaction.response.defer(thinking=True, ephemeral=True)
        try:
            totals = await self.evaluator.study_totals(target.id, interaction.guild_id)
        except TransientPersistenceError as exc:
            log.warning("/stats lookup failed for %s: %s", user_name(target), exc)
            await interaction.followup.send(DB_UNAVAILABLE, ephemeral=True)
            return

        embed = discord.Embed(
            title=f"\U0001f4da {target.display_name}'s Study Time",
            color=discord.Color.blurple(),
        )
        embed.add_field(name="Today", value=format_duration(totals.today), inline=True)
        embed.add_field(name="This Week", value=format_duration(totals.week), inline=True)
        embed.add_field(name="This Month", value=format_duration(totals.month), inline=True)
        embed.add_field(name="All Time", value=format_duration(totals.all_time), inline=True)
        live = self._live_seconds(target.id)
        if live:
            embed.add_field(name="Current Session", value=format_duration(live), inline=True)
        embed.set_footer(text="Totals include finished sessions only")
        await interaction.followup.send(embed=embed, ephemeral=True)

    @app_commands.command(name="streakreset", description="Reset a member's study streak")
    @app_commands.describe(member="Member whose streak should be reset")
    @app_commands.guild_only()
    @app_commands.checks.has_permissions(manage_guild=True)
    @app_commands.default_permissions(manage_guild=True)
    async def streakreset(self, interaction: discord.Interaction, member: discord.Member) -> None:
        log.info(
            "/streakreset invoked by %s for %s",
            user_name(interaction.user),
            user_name(member),
        )
        if self.evaluator is None or interaction.guild_id is None:
            await interaction.response.send_message(DB_UNAVAILABLE, ephemeral=True)
            return
        try:
            reset = await self.evaluator.reset_streak(member.id, interaction.guild_id)
        except TransientPersistenceError as exc:
            log.warning("/streakreset failed for %s: %s", user_name(member), exc)
            await interaction.response.send_message(DB_UNAVAILABLE, ephemeral=True)
            return
        if reset:
            message = f"Reset {member.display_name}'s streak to 0."
        else:
            message = f"{member.display_name} has no streak record yet."
        await interaction.response.send_message(message, ephemeral=True)


async def setup(bot: commands.Bot) -> None:
    await bot.add_cog(StreakCog(bot))
