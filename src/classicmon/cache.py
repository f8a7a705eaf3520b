"""Log cache shared by the pollers.

Stores one :class:`~classicmon.devices.logs.LogEntry` per key. Each poller
writes only its own keys; any task may read. Entries are copied in and out
so a cached entry is never mutated behind the cache's back.

With a ``cache_dir`` every entry is also written as JSON
(``<key>.json``) so that a restarted monitor can skip a fresh log read.
Writes go to a temporary file that is then renamed over the target.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path

from classicmon.devices.logs import LogEntry
from classicmon.exceptions import CacheMiss

_LOGGER = logging.getLogger(__name__)


class LogCache:
    """Keyed store of log entries with atomic get/put.

    ``log_date`` never moves backwards for a key: a put carrying an older
    date than the stored entry is ignored.

    Example:
        cache = LogCache(Path("~/.cache/classicmon").expanduser())
        await cache.put("192_168_1_50_502_day", entry)
        entry = await cache.get("192_168_1_50_502_day")
    """

    def __init__(self, cache_dir: Path | str | None = None) -> None:
        """Initialize the cache.

        Args:
            cache_dir: Directory for persisted entries, memory only when None
        """
        self._entries: dict[str, LogEntry] = {}
        self._lock = asyncio.Lock()
        self._cache_dir = Path(cache_dir) if cache_dir is not None else None

    @property
    def cache_dir(self) -> Path | None:
        return self._cache_dir

    def _path(self, name: str) -> Path:
        assert self._cache_dir is not None
        return self._cache_dir / f"{name}.json"

    async def get(self, name: str) -> LogEntry:
        """Return a copy of the cached entry for ``name``.

        Raises:
            CacheMiss: If nothing is cached under ``name``
        """
        async with self._lock:
            entry = self._entries.get(name)
            if entry is None and self._cache_dir is not None:
                entry = await asyncio.to_thread(self._load, name)
                if entry is not None:
                    self._entries[name] = entry
            if entry is None:
                raise CacheMiss(name)
            return entry.copy()

    async def put(self, name: str, entry: LogEntry) -> bool:
        """Store ``entry`` under ``name``.

        Returns:
            False if the entry was older than the cached one and was dropped
        """
        async with self._lock:
            current = self._entries.get(name)
            if (
                current is not None
                and current.log_date is not None
                and (entry.log_date is None or entry.log_date < current.log_date)
            ):
                _LOGGER.debug(
                    "Ignoring stale log entry for %s (%s < %s)",
                    name,
                    entry.log_date,
                    current.log_date,
                )
                return False
            stored = entry.copy()
            self._entries[name] = stored
            if self._cache_dir is not None:
                await asyncio.to_thread(self._save, name, stored)
            return True

    async def invalidate(self, name: str) -> None:
        """Drop the entry for ``name`` from memory and disk."""
        async with self._lock:
            self._entries.pop(name, None)
            if self._cache_dir is not None:
                await asyncio.to_thread(self._remove, name)

    async def contains(self, name: str) -> bool:
        try:
            await self.get(name)
        except CacheMiss:
            return False
        return True

    def _load(self, name: str) -> LogEntry | None:
        path = self._path(name)
        try:
            with path.open(encoding="utf-8") as handle:
                return LogEntry.from_dict(json.load(handle))
        except FileNotFoundError:
            return None
        except (OSError, ValueError, TypeError) as err:
            _LOGGER.warning("Discarding unreadable cache file %s: %s", path, err)
            return None

    def _save(self, name: str, entry: LogEntry) -> None:
        assert self._cache_dir is not None
        path = self._path(name)
        tmp_path = path.with_suffix(".json.tmp")
        try:
            self._cache_dir.mkdir(parents=True, exist_ok=True)
            with tmp_path.open("w", encoding="utf-8") as handle:
                json.dump(entry.to_dict(), handle)
            os.replace(tmp_path, path)
        except OSError as err:
            _LOGGER.warning("Failed to write cache file %s: %s", path, err)

    def _remove(self, name: str) -> None:
        try:
            self._path(name).unlink(missing_ok=True)
        except OSError as err:
            _LOGGER.warning("Failed to remove cache file for %s: %s", name, err)


__all__ = ["LogCache"]
