import asyncio
import logging
from datetime import datetime, timezone

import asyncpg


class PostgresHandler(logging.Handler):
    """Write log records to a Postgres table without blocking the event loop.

    Records are inserted from fire-and-forget tasks; a record emitted with no
    running loop (e.g. during interpreter shutdown) is dropped.
    """

    def __init__(self, dsn: str, table: str = "bot_log") -> None:
        super().__init__()
        self.dsn = dsn
        self.table = table
        self.pool: asyncpg.Pool | None = None
        self._pending: set[asyncio.Task] = set()
        # Ignore DEBUG records so they are not written to the database
        self.setLevel(logging.INFO)

    async def connect(self) -> None:
        url = self.dsn.replace("postgresql+asyncpg://", "postgresql://")
        self.pool = await asyncpg.create_pool(url, min_size=1, max_size=2)
        await self.pool.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {self.table} (
                id BIGSERIAL PRIMARY KEY,
                logger_name TEXT NOT NULL,
                log_level TEXT NOT NULL,
                message TEXT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL DEFAULT now()
            )
            """
        )

    async def aclose(self) -> None:
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        if self.pool:
            await self.pool.close()
            self.pool = None

    def emit(self, record: logging.LogRecord) -> None:
        if not self.pool or record.name.startswith("asyncpg"):
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        ts = datetime.fromtimestamp(record.created, tz=timezone.utc)
        coro = self.pool.execute(
            f"INSERT INTO {self.table} (logger_name, log_level, message, created_at) VALUES ($1, $2, $3, $4)",
            record.name,
            record.levelname,
            record.getMessage(),
            ts,
        )
        task = loop.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._done)

    def _done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled():
            # Mark the failure as retrieved; logging it would recurse here
            task.exception()
