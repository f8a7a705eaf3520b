"""Unit tests for the log cache."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime
from pathlib import Path

import pytest

from classicmon.cache import LogCache
from classicmon.devices.logs import LogEntry
from classicmon.exceptions import CacheMiss

KEY = "192_168_1_50_502_day"


def _entry(day: int, samples: list[float] | None = None) -> LogEntry:
    return LogEntry(datetime(2024, 6, day, 12, 0), {0: samples or [1.0, 2.0]})


class TestLogCacheMemory:
    """Tests for the in-memory cache."""

    @pytest.mark.asyncio
    async def test_miss(self) -> None:
        """Test a missing key raises CacheMiss."""
        cache = LogCache()
        with pytest.raises(CacheMiss) as exc_info:
            await cache.get(KEY)
        assert exc_info.value.name == KEY
        assert await cache.contains(KEY) is False

    @pytest.mark.asyncio
    async def test_put_get(self) -> None:
        """Test a stored entry is returned."""
        cache = LogCache()
        assert await cache.put(KEY, _entry(15)) is True
        assert await cache.get(KEY) == _entry(15)
        assert await cache.contains(KEY) is True

    @pytest.mark.asyncio
    async def test_copies_in_and_out(self) -> None:
        """Test callers cannot mutate the cached entry."""
        cache = LogCache()
        entry = _entry(15)
        await cache.put(KEY, entry)
        entry.samples[0].append(99.0)
        fetched = await cache.get(KEY)
        fetched.samples[0].clear()

        assert (await cache.get(KEY)).get(0) == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_log_date_never_goes_back(self) -> None:
        """Test an older entry does not replace a newer one."""
        cache = LogCache()
        await cache.put(KEY, _entry(15, [15.0]))

        assert await cache.put(KEY, _entry(14, [14.0])) is False
        assert await cache.put(KEY, LogEntry(None, {0: [0.0]})) is False
        assert (await cache.get(KEY)).get(0) == [15.0]

        assert await cache.put(KEY, _entry(16, [16.0])) is True
        assert (await cache.get(KEY)).get(0) == [16.0]

    @pytest.mark.asyncio
    async def test_invalidate(self) -> None:
        """Test invalidation drops the entry."""
        cache = LogCache()
        await cache.put(KEY, _entry(15))
        await cache.invalidate(KEY)
        await cache.invalidate(KEY)
        assert await cache.contains(KEY) is False

    @pytest.mark.asyncio
    async def test_concurrent_puts(self) -> None:
        """Test concurrent writers leave the newest entry."""
        cache = LogCache()
        await asyncio.gather(*(cache.put(KEY, _entry(day, [float(day)])) for day in range(1, 11)))
        assert (await cache.get(KEY)).get(0) == [10.0]


class TestLogCacheDisk:
    """Tests for the persisted cache."""

    @pytest.mark.asyncio
    async def test_survives_restart(self, tmp_path: Path) -> None:
        """Test a new cache instance reads what the old one wrote."""
        await LogCache(tmp_path).put(KEY, _entry(15))

        assert (tmp_path / f"{KEY}.json").exists()
        assert not (tmp_path / f"{KEY}.json.tmp").exists()
        assert await LogCache(tmp_path).get(KEY) == _entry(15)

    @pytest.mark.asyncio
    async def test_creates_directory(self, tmp_path: Path) -> None:
        """Test the cache directory is created on first write."""
        cache_dir = tmp_path / "nested" / "cache"
        await LogCache(cache_dir).put(KEY, _entry(15))
        assert (cache_dir / f"{KEY}.json").exists()

    @pytest.mark.asyncio
    async def test_invalidate_removes_file(self, tmp_path: Path) -> None:
        """Test invalidation deletes the persisted file."""
        cache = LogCache(tmp_path)
        await cache.put(KEY, _entry(15))
        await cache.invalidate(KEY)

        assert not (tmp_path / f"{KEY}.json").exists()
        with pytest.raises(CacheMiss):
            await LogCache(tmp_path).get(KEY)

    @pytest.mark.asyncio
    async def test_corrupt_file_is_a_miss(self, tmp_path: Path) -> None:
        """Test an unreadable file behaves like no entry."""
        (tmp_path / f"{KEY}.json").write_text("{not json", encoding="utf-8")
        with pytest.raises(CacheMiss):
            await LogCache(tmp_path).get(KEY)

    @pytest.mark.asyncio
    async def test_file_format(self, tmp_path: Path) -> None:
        """Test the JSON layout on disk."""
        await LogCache(tmp_path).put(KEY, _entry(15))
        data = json.loads((tmp_path / f"{KEY}.json").read_text(encoding="utf-8"))
        assert data == {"log_date": "2024-06-15T12:00:00", "samples": {"0": [1.0, 2.0]}}
