"""Centralized configuration for voice tracking and streak evaluation."""
from __future__ import annotations

import os
from dataclasses import dataclass, field

from ..util import parse_id_list


def _int_env(var: str, default: int) -> int:
    """Return int value from environment variable or default."""
    value = os.getenv(var)
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _float_env(var: str, default: float) -> float:
    """Return float value from environment variable or default."""
    value = os.getenv(var)
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class TrackingConfig:
    """Configuration for voice-session tracking."""

    tracked_channel_ids: frozenset[int] = frozenset()
    dedupe_window_seconds: float = 3.0
    dedupe_retention_seconds: float = 15.0
    rejoin_grace_seconds: float = 10.0
    max_session_hours: int = 4
    sweep_interval_minutes: int = 10
    worker_count: int = 4
    queue_size: int = 256

    def is_tracked(self, channel_id: int | None) -> bool:
        """Return True if *channel_id* counts for study time.

        An empty tracked set means every voice channel counts.
        """
        if channel_id is None:
            return False
        if not self.tracked_channel_ids:
            return True
        return channel_id in self.tracked_channel_ids

    @classmethod
    def from_env(cls) -> "TrackingConfig":
        """Create config from environment variables."""
        return cls(
            tracked_channel_ids=parse_id_list(os.getenv("ALLOWED_VOICE_CHANNEL_IDS")),
            dedupe_window_seconds=_float_env("VOICE_DEDUPE_WINDOW_SECONDS", 3.0),
            dedupe_retention_seconds=_float_env("VOICE_DEDUPE_RETENTION_SECONDS", 15.0),
            rejoin_grace_seconds=_float_env("VOICE_REJOIN_GRACE_SECONDS", 10.0),
            max_session_hours=_int_env("MAX_SESSION_HOURS", 4),
            sweep_interval_minutes=_int_env("SESSION_SWEEP_MINUTES", 10),
            worker_count=max(_int_env("VOICE_WORKERS", 4), 1),
            queue_size=max(_int_env("VOICE_QUEUE_SIZE", 256), 1),
        )


@dataclass(frozen=True)
class StreakConfig:
    """Configuration for calendar-day streak evaluation."""

    timezone: str = "Asia/Manila"
    minimum_minutes: int = 1
    evaluation_cron: str = "59 23 * * *"
    warning_cron: str = "0 20 * * *"
    warning_cooldown_hours: int = 23
    cleanup_cron: str = "5 3 * * *"
    session_retention_days: int = 40

    @classmethod
    def from_env(cls) -> "StreakConfig":
        """Create config from environment variables."""
        return cls(
            timezone=os.getenv("STREAK_TIMEZONE", "Asia/Manila"),
            minimum_minutes=max(_int_env("STREAK_MINIMUM_MINUTES", 1), 1),
            evaluation_cron=os.getenv("STREAK_EVALUATION_CRON", "59 23 * * *"),
            warning_cron=os.getenv("STREAK_WARNING_CRON", "0 20 * * *"),
            warning_cooldown_hours=_int_env("STREAK_WARNING_COOLDOWN_HOURS", 23),
            cleanup_cron=os.getenv("SESSION_CLEANUP_CRON", "5 3 * * *"),
            session_retention_days=_int_env("SESSION_RETENTION_DAYS", 40),
        )


@dataclass
class BotConfig:
    """Container for all component configurations.

    Instantiated once and handed to cogs so tests can substitute values
    without touching the environment.
    """

    tracking: TrackingConfig = field(default_factory=TrackingConfig.from_env)
    streak: StreakConfig = field(default_factory=StreakConfig.from_env)

    @classmethod
    def from_env(cls) -> "BotConfig":
        """Create all configs from environment variables."""
        return cls(
            tracking=TrackingConfig.from_env(),
            streak=StreakConfig.from_env(),
        )


# Global default configuration instance
_default_config: BotConfig | None = None


def get_config() -> BotConfig:
    """Return the global configuration instance.

    Creates the configuration on first access. This allows for lazy
    loading of environment variables.
    """
    global _default_config
    if _default_config is None:
        _default_config = BotConfig.from_env()
    return _default_config


def set_config(config: BotConfig) -> None:
    """Set the global configuration instance.

    Useful for testing or when you need to override defaults.
    """
    global _default_config
    _default_config = config


def reset_config() -> None:
    """Reset the global configuration to reload from environment."""
    global _default_config
    _default_config = None
