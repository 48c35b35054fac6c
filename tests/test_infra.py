"""Tests for infrastructure modules."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import discord
import pytest

from lockinbot import db, version
from lockinbot.infra import (
    PoolAwareCog,
    alert_task_failure,
    get_logger,
    log_errors,
    require_pool,
    send_alert,
    transaction,
)
from lockinbot.errors import TransientPersistenceError
from lockinbot.infra.alerts import MAX_ALERT_LENGTH, format_alert
from lockinbot.infra.logging import structured_log


# --- Logging Tests ---


def test_get_logger_with_name() -> None:
    """get_logger returns a logger with lockinbot prefix."""
    assert get_logger("reconciler").name == "lockinbot.reconciler"


def test_get_logger_without_name() -> None:
    assert get_logger().name == "lockinbot"


def test_get_logger_avoids_double_prefix() -> None:
    assert get_logger("lockinbot.cogs.study").name == "lockinbot.cogs.study"


def test_structured_log(caplog: pytest.LogCaptureFixture) -> None:
    """structured_log appends key=value pairs to message."""
    logger = get_logger("test_structured")
    with caplog.at_level(logging.INFO):
        structured_log(logger, logging.INFO, "Session closed", user_id=123, minutes=45)
    assert "Session closed user_id=123 minutes=45" in caplog.text


# --- PoolAwareCog Tests ---


class SampleCog(PoolAwareCog):
    @require_pool
    async def method_requiring_pool(self) -> str:
        return "pool available"

    @log_errors("Sample operation failed")
    async def method_with_error(self) -> None:
        raise ValueError("sample error")

    @log_errors("Recoverable error", return_value="fallback")
    async def method_with_fallback(self) -> str:
        raise ValueError("recoverable")

    @log_errors("Fatal error", reraise=True)
    async def method_reraising(self) -> None:
        raise ValueError("fatal")


@pytest.fixture
def mock_bot() -> MagicMock:
    return MagicMock()


@pytest.mark.asyncio
async def test_pool_aware_cog_load_success(mock_bot: MagicMock) -> None:
    cog = SampleCog(mock_bot)
    mock_pool = AsyncMock()
    with patch("lockinbot.infra.cog_base.get_pool", return_value=mock_pool):
        await cog.cog_load()
    assert cog.pool is mock_pool
    assert cog.has_pool is True


@pytest.mark.asyncio
async def test_pool_aware_cog_load_failure(mock_bot: MagicMock) -> None:
    cog = SampleCog(mock_bot)
    with patch("lockinbot.infra.cog_base.get_pool", side_effect=RuntimeError("PG_DSN is missing")):
        await cog.cog_load()
    assert cog.pool is None
    assert await cog.method_requiring_pool() is None


@pytest.mark.asyncio
async def test_pool_aware_cog_unload(mock_bot: MagicMock) -> None:
    cog = SampleCog(mock_bot)
    cog.pool = AsyncMock()
    assert await cog.method_requiring_pool() == "pool available"
    await cog.cog_unload()
    assert cog.pool is None


@pytest.mark.asyncio
async def test_log_errors_variants(mock_bot: MagicMock, caplog: pytest.LogCaptureFixture) -> None:
    cog = SampleCog(mock_bot)
    with caplog.at_level(logging.ERROR):
        assert await cog.method_with_error() is None
        assert await cog.method_with_fallback() == "fallback"
        with pytest.raises(ValueError):
            await cog.method_reraising()
    assert "Sample operation failed in method_with_error" in caplog.text


# --- Transactions ---


@pytest.mark.asyncio
async def test_transaction_acquires_and_begins() -> None:
    events = []
    conn = MagicMock()

    class _Tx:
        async def __aenter__(self):
            events.append("begin")

        async def __aexit__(self, *exc):
            events.append("end")

    conn.transaction = MagicMock(return_value=_Tx())

    class _Acquire:
        async def __aenter__(self):
            events.append("acquire")
            return conn

        async def __aexit__(self, *exc):
            events.append("release")

    pool = MagicMock()
    pool.acquire = MagicMock(return_value=_Acquire())

    async with transaction(pool) as got:
        assert got is conn
    assert events == ["acquire", "begin", "end", "release"]


# --- Alerts ---


@pytest.mark.asyncio
async def test_send_alert_dms_recipients() -> None:
    bot = MagicMock()
    user = MagicMock()
    user.send = AsyncMock()
    bot.fetch_user = AsyncMock(return_value=user)

    sent = await send_alert(bot, "Job down", "details", context={"day": "2026-03-10"}, recipients=[1, 2])

    assert sent == 2
    text = user.send.call_args.args[0]
    assert "**Job down**" in text
    assert "day: `2026-03-10`" in text


@pytest.mark.asyncio
async def test_send_alert_without_recipients() -> None:
    bot = MagicMock()
    bot.fetch_user = AsyncMock()
    assert await send_alert(bot, "x", "y", recipients=[]) == 0
    bot.fetch_user.assert_not_awaited()


@pytest.mark.asyncio
async def test_alert_task_failure_survives_forbidden(caplog: pytest.LogCaptureFixture) -> None:
    bot = MagicMock()
    user = MagicMock()
    response = MagicMock(status=403, reason="Forbidden")
    user.send = AsyncMock(side_effect=discord.Forbidden(response, "dms closed"))
    bot.fetch_user = AsyncMock(return_value=user)
    with caplog.at_level(logging.WARNING):
        sent = await alert_task_failure(bot, "streak_evaluation", RuntimeError("db down"), recipients=[1])
    assert sent == 0
    assert "DMs disabled" in caplog.text


def test_format_alert_lists_context_and_time() -> None:
    text = format_alert(
        "Streak job failed: streak_evaluation",
        "boom",
        context={"job": "streak_evaluation", "day": "2026-03-10"},
        at=datetime(2026, 3, 10, 16, 5, tzinfo=timezone.utc),
    )
    lines = text.splitlines()
    assert lines[0].endswith("**Streak job failed: streak_evaluation**")
    assert "• job: `streak_evaluation`" in lines
    assert "• day: `2026-03-10`" in lines
    assert lines[-1] == "*2026-03-10 16:05:00 UTC*"


def test_format_alert_truncates_long_messages() -> None:
    text = format_alert("Long", "x" * 5000)
    assert text.endswith("\n... (truncated)")
    assert len(text) == MAX_ALERT_LENGTH + len("\n... (truncated)")


@pytest.mark.asyncio
async def test_send_alert_dms_each_operator_once() -> None:
    bot = MagicMock()
    user = MagicMock()
    user.send = AsyncMock()
    bot.fetch_user = AsyncMock(return_value=user)

    assert await send_alert(bot, "Job down", "details", recipients=[7, 7]) == 1
    bot.fetch_user.assert_awaited_once_with(7)


@pytest.mark.asyncio
async def test_alert_task_failure_names_job_and_error() -> None:
    bot = MagicMock()
    user = MagicMock()
    user.send = AsyncMock()
    bot.fetch_user = AsyncMock(return_value=user)

    sent = await alert_task_failure(
        bot,
        "streak_evaluation",
        TransientPersistenceError("connection refused"),
        context={"day": "2026-03-10"},
        recipients=[1],
    )

    assert sent == 1
    text = user.send.call_args.args[0]
    assert "**Streak job failed: streak_evaluation**" in text
    assert "TransientPersistenceError: connection refused" in text
    assert "runs again on its next schedule" in text
    assert "• job: `streak_evaluation`" in text
    assert "• day: `2026-03-10`" in text


@pytest.mark.asyncio
async def test_alert_task_failure_plain_error_has_no_retry_note() -> None:
    bot = MagicMock()
    user = MagicMock()
    user.send = AsyncMock()
    bot.fetch_user = AsyncMock(return_value=user)

    await alert_task_failure(bot, "session_cleanup", ValueError("bad row"), recipients=[1])

    text = user.send.call_args.args[0]
    assert "ValueError: bad row" in text
    assert "next schedule" not in text


# --- Database pool ---


@pytest.mark.asyncio
async def test_get_pool_requires_database_url(monkeypatch: pytest.MonkeyPatch) -> None:
    for var in ("PG_DSN", "DATABASE_URL", "PG_USER", "PG_PASSWORD", "PG_DB"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setattr(db, "_pool", None)
    with pytest.raises(RuntimeError):
        await db.get_pool()


@pytest.mark.asyncio
async def test_get_pool_builds_once_and_strips_driver(monkeypatch: pytest.MonkeyPatch) -> None:
    pool = MagicMock()
    pool.is_closing = MagicMock(return_value=False)
    pool.close = AsyncMock()
    create = AsyncMock(return_value=pool)
    monkeypatch.setenv("PG_DSN", "postgresql+asyncpg://u:p@db:5432/lockin")
    monkeypatch.setattr(db, "_pool", None)
    monkeypatch.setattr(db.asyncpg, "create_pool", create)

    assert await db.get_pool() is pool
    assert await db.get_pool() is pool

    create.assert_awaited_once()
    assert create.call_args.args[0] == "postgresql://u:p@db:5432/lockin"
    assert create.call_args.kwargs["init"] is db._init_connection

    await db.close_pool()
    pool.close.assert_awaited_once()
    assert db._pool is None


@pytest.mark.asyncio
async def test_pool_connections_use_utc() -> None:
    conn = MagicMock()
    conn.execute = AsyncMock()
    await db._init_connection(conn)
    conn.execute.assert_awaited_once_with("SET TIME ZONE 'UTC'")


# --- Version ---


def test_version_override_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LOCKINBOT_VERSION", "2026.10.1")
    assert version.get_version() == "2026.10.1"


def test_version_appends_commit(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("LOCKINBOT_VERSION", raising=False)
    monkeypatch.setattr(version.metadata, "version", lambda name: "0.3.0")
    monkeypatch.setattr(version, "git_commit", lambda: "abc1234")
    assert version.get_version() == "0.3.0+gabc1234"


def test_commit_read_from_detached_head(tmp_path) -> None:
    git_dir = tmp_path / ".git"
    git_dir.mkdir()
    (git_dir / "HEAD").write_text("0123456789abcdef\n")
    assert version._commit_from_head(tmp_path) == "0123456"


def test_commit_read_from_branch_ref(tmp_path) -> None:
    ref = tmp_path / ".git" / "refs" / "heads" / "main"
    ref.parent.mkdir(parents=True)
    (tmp_path / ".git" / "HEAD").write_text("ref: refs/heads/main\n")
    ref.write_text("fedcba9876543210\n")
    assert version._commit_from_head(tmp_path) == "fedcba9"
    assert version._commit_from_head(tmp_path / "missing") is None
