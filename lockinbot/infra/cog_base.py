"""Shared plumbing for the study cogs."""
from __future__ import annotations

import functools
import logging
from typing import TYPE_CHECKING, Any, Callable, TypeVar

import asyncpg
from discord.ext import commands

from ..db import get_pool

if TYPE_CHECKING:
    from discord.ext.commands import Bot

log = logging.getLogger(f"lockinbot.{__name__}")

F = TypeVar("F", bound=Callable[..., Any])


class PoolAwareCog(commands.Cog):
    """Cog that picks up the shared asyncpg pool when it loads.

    Voice tracking and the streak commands both depend on Postgres. Without
    a configured DSN the bot still starts: ``self.pool`` stays ``None`` and
    the cogs leave their tracking, jobs and commands switched off.
    Overrides of ``cog_load``/``cog_unload`` must call the base method.
    """

    pool: asyncpg.Pool | None = None

    def __init__(self, bot: "Bot") -> None:
        self.bot = bot
        self.pool = None

    async def cog_load(self) -> None:
        try:
            self.pool = await get_pool()
        except RuntimeError:
            self.pool = None
            log.warning(
                "%s: no database configured; study tracking stays off",
                self.__class__.__name__,
            )

    async def cog_unload(self) -> None:
        # The pool itself is closed once, by the entry point
        self.pool = None

    @property
    def has_pool(self) -> bool:
        return self.pool is not None


def require_pool(func: F) -> F:
    """Turn a cog coroutine into a no-op while the cog has no pool.

    Used on the scheduled jobs, which APScheduler keeps firing whether or
    not the database came up.
    """

    @functools.wraps(func)
    async def wrapper(self: PoolAwareCog, *args: Any, **kwargs: Any) -> Any:
        if not getattr(self, "pool", None):
            log.debug("%s skipped; no database pool", func.__name__)
            return None
        return await func(self, *args, **kwargs)

    return wrapper  # type: ignore[return-value]


def log_errors(
    message: str = "Operation failed",
    *,
    reraise: bool = False,
    return_value: Any = None,
) -> Callable[[F], F]:
    """Log any exception from the wrapped coroutine as ``"<message> in <name>"``.

    A ``discord.ext.tasks`` loop stops for good on an unhandled exception, so
    the session sweep is wrapped with this to keep it running. ``reraise``
    propagates after logging; otherwise *return_value* is returned.
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            try:
                return await func(*args, **kwargs)
            except Exception:
                logging.getLogger(f"lockinbot.{func.__module__}").exception(
                    "%s in %s", message, func.__name__
                )
                if reraise:
                    raise
                return return_value

        return wrapper  # type: ignore[return-value]

    return decorator
