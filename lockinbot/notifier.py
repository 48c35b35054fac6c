"""Outbound streak and session notifications.

The core only calls ``notify(guild_id, kind, payload)``; this module turns
that into a Discord embed or message and delivers it. Delivery is
best-effort: failures surface as :class:`NotificationDeliveryError` and the
caller logs them without touching the state change that triggered them.
"""
from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Mapping, Protocol

import discord
from discord.ext import commands

from .errors import NotificationDeliveryError
from .util import format_duration

log = logging.getLogger(f"lockinbot.{__name__}")


class NotificationKind(str, Enum):
    STREAK_STARTED = "streak_started"
    STREAK_CONTINUED = "streak_continued"
    STREAK_ENDED = "streak_ended"
    STREAK_WARNING = "streak_warning"
    ACTIVITY_COMPLETED = "activity_completed"
    SESSION_CLOSED = "session_closed"


class Notifier(Protocol):
    async def notify(
        self, guild_id: int, kind: NotificationKind, payload: Mapping[str, Any]
    ) -> None: ...


# Streak milestones get a special title on the continued embed
MILESTONES = {
    7: ("\U0001f31f", "Amazing! One week strong!"),
    14: ("\U0001f4ab", "Incredible! Two weeks!"),
    30: ("\U0001f3c6", "Outstanding! One month!"),
    60: ("\U0001f451", "Legendary! Two months!"),
    100: ("\U0001f396️", "PHENOMENAL! 100 days!"),
}


def _days(count: int) -> str:
    return f"{count} day" if count == 1 else f"{count} days"


def render_embed(
    kind: NotificationKind, payload: Mapping[str, Any], tz_label: str = ""
) -> discord.Embed:
    """Build the embed for a streak-channel notification."""
    mention = f"<@{payload['user_id']}>"
    streak = int(payload.get("streak", 0))

    if kind is NotificationKind.STREAK_STARTED:
        embed = discord.Embed(
            title="\U0001f680 New Streak Started! \U0001f680",
            description=(
                f"{mention} has started a new study streak! Currently "
                f"**{_days(streak)}** strong. Keep it up! \U0001f525"
            ),
            color=0x7CFC00,
        )
    elif kind is NotificationKind.STREAK_CONTINUED:
        emoji, extra = MILESTONES.get(streak, ("\U0001f525", ""))
        embed = discord.Embed(
            title=f"{emoji} Day {streak} Complete! {emoji}",
            description=(
                f"{mention} is now on a **{_days(streak)}** study streak!"
                f"{' ' + extra if extra else ''} Keep the momentum going!"
            ),
            color=0x00AAFF,
        )
    elif kind is NotificationKind.STREAK_ENDED:
        previous = int(payload.get("previous_streak", 0))
        embed = discord.Embed(
            title="\U0001f494 Streak Ended \U0001f494",
            description=(
                f"{mention}'s study streak of **{_days(previous)}** has come to an end.\n\n"
                "Join a tracked voice channel today to start a new one! \U0001f4aa"
            ),
            color=0xFF0000,
        )
    elif kind is NotificationKind.STREAK_WARNING:
        minimum = int(payload.get("minimum_minutes", 1))
        embed = discord.Embed(
            title="⏰ Streak Warning! ⏰",
            description=(
                f"{mention}, your **{_days(streak)}** study streak is in danger!\n\n"
                f"Spend at least **{minimum} minute{'s' if minimum != 1 else ''}** in a "
                "tracked voice channel before the end of today to keep it alive."
            ),
            color=0xFFA500,
        )
    elif kind is NotificationKind.ACTIVITY_COMPLETED:
        minutes = int(payload.get("minutes", 0))
        embed = discord.Embed(
            title="✅ Daily Activity Complete! ✅",
            description=(
                f"{mention} has completed **{minutes} minutes** of voice activity today! "
                "Today counts toward the streak. \U0001f3af"
            ),
            color=0x00FF00,
        )
    else:
        raise ValueError(f"No embed for notification kind {kind!r}")

    embed.timestamp = discord.utils.utcnow()
    if tz_label:
        embed.set_footer(text=f"Calendar day in {tz_label}")
    return embed


def render_session_line(payload: Mapping[str, Any]) -> str:
    """Plain-text line for the session log channel."""
    duration = format_duration(float(payload.get("duration_seconds", 0)))
    reason = payload.get("reason", "leave")
    suffix = ""
    if reason == "shutdown":
        suffix = " (bot shutdown)"
    elif reason == "timeout":
        suffix = " (session cleanup)"
    return f"<@{payload['user_id']}> studied for {duration}{suffix}."


class DiscordNotifier:
    """Deliver notifications to configured channels of a discord.py bot."""

    def __init__(
        self,
        bot: commands.Bot,
        streak_channel_id: int = 0,
        log_channel_id: int = 0,
        tz_label: str = "",
    ) -> None:
        self.bot = bot
        self.streak_channel_id = streak_channel_id
        self.log_channel_id = log_channel_id
        self.tz_label = tz_label

    async def notify(
        self, guild_id: int, kind: NotificationKind, payload: Mapping[str, Any]
    ) -> None:
        if kind is NotificationKind.SESSION_CLOSED:
            if not self.log_channel_id:
                return
            await self._send_to(self.log_channel_id, content=render_session_line(payload))
            return

        embed = render_embed(kind, payload, self.tz_label)
        if self.streak_channel_id:
            try:
                await self._send_to(self.streak_channel_id, embed=embed)
                return
            except NotificationDeliveryError as exc:
                log.warning("Streak channel %s unavailable: %s", self.streak_channel_id, exc)
        else:
            log.info("Streak notification channel not configured; using guild fallback")
        await self._send_fallback(guild_id, embed)

    async def _send_to(self, channel_id: int, **kwargs: Any) -> None:
        channel = self.bot.get_channel(channel_id)
        if channel is None:
            try:
                channel = await self.bot.fetch_channel(channel_id)
            except discord.HTTPException as exc:
                raise NotificationDeliveryError(f"channel {channel_id}: {exc}") from exc
        if not isinstance(channel, discord.abc.Messageable):
            raise NotificationDeliveryError(f"channel {channel_id} is not messageable")
        try:
            await channel.send(**kwargs)
        except discord.HTTPException as exc:
            raise NotificationDeliveryError(f"channel {channel_id}: {exc}") from exc

    async def _send_fallback(self, guild_id: int, embed: discord.Embed) -> None:
        """Try each text channel of the guild until one accepts the embed."""
        guild = self.bot.get_guild(guild_id)
        if guild is None:
            raise NotificationDeliveryError(f"guild {guild_id} not available")
        for channel in guild.text_channels:
            try:
                await channel.send(embed=embed)
            except discord.HTTPException:
                continue
            log.info("Sent streak embed to fallback channel %s (%s)", channel.name, channel.id)
            return
        raise NotificationDeliveryError(f"no text channel in guild {guild_id} accepted the message")
