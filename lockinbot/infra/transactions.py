"""Transactions for multi-statement streak updates."""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

import asyncpg


@asynccontextmanager
async def transaction(
    pool: asyncpg.Pool, *, isolation: str = "read_committed"
) -> AsyncIterator[asyncpg.Connection]:
    """Yield a pooled connection inside an open transaction.

    Streak writes lock the member's row with ``SELECT ... FOR UPDATE`` and
    update it on the same connection, so accumulation and the nightly
    evaluation never interleave on one record. The row lock does the
    serializing, which is why read committed is enough here.
    """
    async with pool.acquire() as conn:
        async with conn.transaction(isolation=isolation):
            yield conn
