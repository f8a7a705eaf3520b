"""Exception hierarchy for classicmon.

Every error raised by this package derives from :class:`ClassicMonitorError`
so that background tasks (pollers, the discovery listener and its probes)
can catch a single base class, log, and carry on with the next cycle.

Transport-level errors live in :mod:`classicmon.transports.exceptions`.
"""

from __future__ import annotations


class ClassicMonitorError(Exception):
    """Base exception for all classicmon errors."""

    pass


class ClassificationError(ClassicMonitorError):
    """Neither the Classic nor the TriStar probe identified the device."""

    pass


class CacheMiss(ClassicMonitorError):
    """No cached log entry exists for the requested key."""

    def __init__(self, name: str) -> None:
        """Initialize with the cache key that was missing.

        Args:
            name: Cache key that was looked up
        """
        self.name = name
        super().__init__(f"No cached logs for {name}")


class ConfigError(ClassicMonitorError):
    """Configuration could not be parsed or failed validation."""

    pass


__all__ = [
    "CacheMiss",
    "ClassicMonitorError",
    "ClassificationError",
    "ConfigError",
]
