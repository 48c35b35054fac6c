"""The asyncpg pool shared by the study cogs.

Both cogs call :func:`get_pool` while loading; the first call builds the pool
from ``PG_DSN`` (or the ``PG_*`` parts) and later calls reuse it. A pool
closed by an earlier shutdown is rebuilt on the next call.
"""
from __future__ import annotations

import logging

import asyncpg

from .util import build_db_url, int_env

log = logging.getLogger(f"lockinbot.{__name__}")

POOL_MAX_SIZE = int_env("PG_POOL_MAX_SIZE", 5)
COMMAND_TIMEOUT = 30

_pool: asyncpg.Pool | None = None


async def _init_connection(conn: asyncpg.Connection) -> None:
    # Session and warning timestamps are written and compared in UTC
    await conn.execute("SET TIME ZONE 'UTC'")


async def get_pool() -> asyncpg.Pool:
    """Return the shared pool, creating it on first use.

    Raises ``RuntimeError`` when no database URL is configured.
    """
    global _pool
    if _pool is not None and not _pool.is_closing():
        return _pool
    url = build_db_url()
    if not url:
        raise RuntimeError("PG_DSN is missing")
    _pool = await asyncpg.create_pool(
        url.replace("postgresql+asyncpg://", "postgresql://"),
        min_size=1,
        max_size=POOL_MAX_SIZE,
        command_timeout=COMMAND_TIMEOUT,
        init=_init_connection,
    )
    log.info("Postgres pool ready (max %d connections)", POOL_MAX_SIZE)
    return _pool


async def close_pool() -> None:
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None
