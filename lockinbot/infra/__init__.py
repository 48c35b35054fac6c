"""Infrastructure utilities for LockIn Bot."""
from .alerts import alert_task_failure, send_alert
from .cog_base import PoolAwareCog, log_errors, require_pool
from .config import (
    BotConfig,
    StreakConfig,
    TrackingConfig,
    get_config,
    reset_config,
    set_config,
)
from .logging import get_logger, structured_log
from .transactions import transaction

__all__ = [
    # Alerts
    "alert_task_failure",
    "send_alert",
    # Cog base classes
    "PoolAwareCog",
    "log_errors",
    "require_pool",
    # Configuration
    "BotConfig",
    "StreakConfig",
    "TrackingConfig",
    "get_config",
    "reset_config",
    "set_config",
    # Logging
    "get_logger",
    "structured_log",
    # Transactions
    "transaction",
]
