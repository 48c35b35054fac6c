"""Error taxonomy for voice tracking and streak evaluation."""
from __future__ import annotations


class StreakError(Exception):
    """Base class for errors raised by the streak subsystem."""


class TransientPersistenceError(StreakError):
    """A read or write against the activity store failed.

    Callers log it and abandon the current event or user; the next event or
    the next daily batch naturally re-attempts.
    """


class NotificationDeliveryError(StreakError):
    """An outbound notification could not be delivered to any channel."""


class InconsistentStateWarning(UserWarning):
    """In-memory session state disagrees with observed voice presence.

    Only used to tag log records; it self-heals on the next leave or sweep.
    """


__all__ = [
    "StreakError",
    "TransientPersistenceError",
    "NotificationDeliveryError",
    "InconsistentStateWarning",
]
