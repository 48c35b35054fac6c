import os
import logging
from datetime import timedelta

import discord


def build_db_url() -> str | None:
    """Return a Postgres DSN built from env vars."""
    url = os.getenv("PG_DSN") or os.getenv("DATABASE_URL")
    if url:
        return url
    user = os.getenv("PG_USER")
    pwd = os.getenv("PG_PASSWORD")
    db = os.getenv("PG_DB")
    if user and pwd and db:
        host = os.getenv("PG_HOST", "db")
        port = os.getenv("PG_PORT", "5432")
        return f"postgresql+asyncpg://{user}:{pwd}@{host}:{port}/{db}"
    return None


def user_name(user: discord.abc.Snowflake | int | None) -> str:
    """Return a user's display name or fallback to their ID."""
    if user is None:
        return "unknown"
    if isinstance(user, int):
        return str(user)
    name = getattr(user, "display_name", None) or getattr(user, "name", None)
    if name:
        return name
    uid = getattr(user, "id", None)
    return str(uid) if uid is not None else "unknown"


def int_env(var: str, default: int = 0) -> int:
    """Return int value from ENV or default if unset or invalid."""
    value = os.getenv(var)
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        logging.getLogger(__name__).warning(
            "Invalid integer for %s: %s; using %s", var, value, default
        )
        return default


def parse_id_list(raw: str | None) -> frozenset[int]:
    """Parse a comma-separated list of Discord snowflakes.

    Blank entries are ignored; entries that are not integers are logged and
    skipped so a single typo does not disable tracking entirely.
    """
    if not raw:
        return frozenset()
    ids: set[int] = set()
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            ids.add(int(part))
        except ValueError:
            logging.getLogger(__name__).warning("Ignoring invalid channel id %r", part)
    return frozenset(ids)


def format_duration(value: timedelta | float | int) -> str:
    """Format a duration as ``2h 15m`` / ``45m 20s`` / ``12s``."""
    seconds = value.total_seconds() if isinstance(value, timedelta) else float(value)
    total = max(int(round(seconds)), 0)
    hours, rem = divmod(total, 3600)
    minutes, secs = divmod(rem, 60)
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def rows_from_tag(tag: str) -> int:
    """Return the affected row count from an asyncpg status tag."""
    try:
        return int(str(tag).split()[-1])
    except (IndexError, ValueError):
        return 0
