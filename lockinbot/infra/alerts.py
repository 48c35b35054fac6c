"""Operator DMs for failed streak jobs.

The evaluation, warning and cleanup jobs run unattended on cron schedules.
When one of them fails as a whole, the operators in ``ALERT_USER_IDS`` get a
short DM naming the job, the error and any context the job attached (for the
evaluation that is the calendar day it was evaluating).
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Literal, Mapping

import discord
from discord.ext.commands import Bot

from .. import bot_config as cfg
from ..errors import TransientPersistenceError

log = logging.getLogger(f"lockinbot.{__name__}")

Severity = Literal["error", "warning", "info"]

SEVERITY_EMOJI: dict[Severity, str] = {
    "error": "\U0001f6a8",
    "warning": "⚠️",
    "info": "ℹ️",
}

# Discord caps DMs at 2000 characters
MAX_ALERT_LENGTH = 1900


def format_alert(
    title: str,
    message: str,
    severity: Severity = "error",
    *,
    context: Mapping[str, str] | None = None,
    at: datetime | None = None,
) -> str:
    """Render the DM body for an alert."""
    at = at or datetime.now(timezone.utc)
    parts = [f"{SEVERITY_EMOJI.get(severity, SEVERITY_EMOJI['info'])} **{title}**", "", message]
    if context:
        parts += ["", "**Context:**"]
        parts += [f"• {key}: `{value}`" for key, value in context.items()]
    parts += ["", f"*{at.strftime('%Y-%m-%d %H:%M:%S UTC')}*"]
    text = "\n".join(parts)
    if len(text) > MAX_ALERT_LENGTH:
        text = text[:MAX_ALERT_LENGTH] + "\n... (truncated)"
    return text


async def send_alert(
    bot: Bot,
    title: str,
    message: str,
    severity: Severity = "error",
    *,
    context: Mapping[str, str] | None = None,
    recipients: list[int] | None = None,
) -> int:
    """DM the alert to each operator once; returns how many DMs went out."""
    user_ids = list(dict.fromkeys(cfg.ALERT_USER_IDS if recipients is None else recipients))
    if not user_ids:
        log.debug("No alert recipients configured; dropping alert: %s", title)
        return 0

    text = format_alert(title, message, severity, context=context)
    delivered = 0
    for user_id in user_ids:
        try:
            user = await bot.fetch_user(user_id)
            await user.send(text)
        except discord.NotFound:
            log.warning("Alert recipient %s not found", user_id)
        except discord.Forbidden:
            log.warning("Cannot DM alert recipient %s (DMs disabled)", user_id)
        except discord.HTTPException as exc:
            log.warning("Failed to send alert to %s: %s", user_id, exc)
        else:
            delivered += 1

    if not delivered:
        log.warning("Alert reached no operator: %s", title)
    return delivered


async def alert_task_failure(
    bot: Bot,
    job_name: str,
    error: Exception | str,
    *,
    context: Mapping[str, str] | None = None,
    recipients: list[int] | None = None,
) -> int:
    """Alert operators that the scheduled job *job_name* failed."""
    if isinstance(error, Exception):
        detail = f"{type(error).__name__}: {error}"
    else:
        detail = error
    if len(detail) > 500:
        detail = detail[:500] + "..."

    message = f"```\n{detail}\n```"
    if isinstance(error, TransientPersistenceError):
        message += "\nThe database was unreachable; the job runs again on its next schedule."

    return await send_alert(
        bot,
        f"Streak job failed: {job_name}",
        message,
        severity="error",
        context={"job": job_name, **(context or {})},
        recipients=recipients,
    )
