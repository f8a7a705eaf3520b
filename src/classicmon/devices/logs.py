"""Historical day and minute logs of the Classic.

The Classic keeps two logs that are streamed with Read File Record (0x14):

- the *dailies* file, one sample per day for the last 365 days, and
- the *minutes* file, one sample per logging interval for roughly the last
  day, with a companion timestamp column.

Each column is a :class:`LogCategory`. The device returns samples most
recent first; after ingestion every array in a :class:`LogEntry` is ordered
oldest first.

Reading stops at the end of the log, which the device signals either by
closing the connection (surfacing as
:class:`~classicmon.transports.exceptions.TransportEOFError`) or by returning
an empty record. The transport is reconnected before the next request.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import IntEnum
from typing import TYPE_CHECKING, Any

from classicmon.constants import (
    DAILIES_FILE,
    DAY_LOG_ENTRIES,
    MINUTE_LOG_ENTRIES,
    MINUTES_FILE,
    MINUTES_PER_DAY,
)
from classicmon.transports.exceptions import TransportEOFError
from classicmon.transports.messages import FILE_TRANSFER_MAX_WORDS

if TYPE_CHECKING:
    from classicmon.transports.modbus_tcp import ModbusTCPTransport

_LOGGER = logging.getLogger(__name__)

LogSample = int | float


class LogCategory(IntEnum):
    """Log columns, numbered as the Classic firmware numbers them."""

    KWHOUR_DAILY = 0
    FLOAT_TIME_DAILY = 1
    HIGH_POWER_DAILY = 2
    HIGH_TEMP_DAILY = 3
    HIGH_PV_VOLT_DAILY = 4
    HIGH_BATTERY_VOLT_DAILY = 5
    TIMESTAMP_HIGH_HOURLY = 16
    POWER_HOURLY = 18
    INPUT_VOLTAGE_HOURLY = 19
    BATTERY_VOLTAGE_HOURLY = 20
    OUTPUT_CURRENT_HOURLY = 21
    ENERGY_HOURLY = 22
    CHARGE_STATE_HOURLY = 23

    @property
    def file(self) -> int:
        """File the column lives in."""
        return DAILIES_FILE if self in DAILY_CATEGORIES else MINUTES_FILE

    @property
    def divisor(self) -> int:
        """Fixed-point divisor applied to raw samples (256 selects the high byte)."""
        return _DIVISORS.get(self, 1)


DAILY_CATEGORIES: tuple[LogCategory, ...] = (
    LogCategory.KWHOUR_DAILY,
    LogCategory.FLOAT_TIME_DAILY,
    LogCategory.HIGH_POWER_DAILY,
    LogCategory.HIGH_TEMP_DAILY,
    LogCategory.HIGH_PV_VOLT_DAILY,
    LogCategory.HIGH_BATTERY_VOLT_DAILY,
)

MINUTE_CATEGORIES: tuple[LogCategory, ...] = (
    LogCategory.POWER_HOURLY,
    LogCategory.INPUT_VOLTAGE_HOURLY,
    LogCategory.BATTERY_VOLTAGE_HOURLY,
    LogCategory.OUTPUT_CURRENT_HOURLY,
    LogCategory.ENERGY_HOURLY,
    LogCategory.CHARGE_STATE_HOURLY,
)

_DIVISORS: dict[LogCategory, int] = {
    LogCategory.KWHOUR_DAILY: 10,
    LogCategory.FLOAT_TIME_DAILY: 1,
    LogCategory.HIGH_POWER_DAILY: 1,
    LogCategory.HIGH_TEMP_DAILY: 10,
    LogCategory.HIGH_PV_VOLT_DAILY: 10,
    LogCategory.HIGH_BATTERY_VOLT_DAILY: 10,
    LogCategory.POWER_HOURLY: 1,
    LogCategory.INPUT_VOLTAGE_HOURLY: 10,
    LogCategory.BATTERY_VOLTAGE_HOURLY: 10,
    LogCategory.OUTPUT_CURRENT_HOURLY: 10,
    LogCategory.ENERGY_HOURLY: 10,
    LogCategory.CHARGE_STATE_HOURLY: 256,
}


def scale_sample(category: LogCategory, raw: int) -> LogSample:
    """Apply a category's divisor to one raw sample.

    Example:
        >>> scale_sample(LogCategory.KWHOUR_DAILY, 37)
        3.7
        >>> scale_sample(LogCategory.CHARGE_STATE_HOURLY, 0x0400)
        4
    """
    divisor = category.divisor
    if divisor == 1:
        return raw
    if divisor == 256:
        return raw >> 8
    return raw / divisor


def minute_of_day(raw: int) -> int:
    """Convert a packed timestamp sample (hour in bits 6-10, minute in bits 0-5)."""
    minute = raw & 0x3F
    hour = (raw >> 6) & 0x1F
    return hour * 60 + minute


def required_entries(timestamps: Sequence[int]) -> int:
    """Number of minute-log records covering the most recent 24 hours.

    ``timestamps`` are minute-of-day values in device order (most recent
    first). The walk accumulates the minutes between consecutive records,
    wrapping at midnight, and stops at the first record that lies more than
    a day before the newest one.

    Example:
        >>> required_entries([600, 300, 0])
        3
        >>> required_entries([600, 0, 900, 500])
        3
    """
    elapsed = 0
    for index in range(1, len(timestamps)):
        delta = timestamps[index - 1] - timestamps[index]
        if delta < 0:
            delta += MINUTES_PER_DAY
        elapsed += delta
        if elapsed > MINUTES_PER_DAY:
            return index
    return len(timestamps)


@dataclass
class LogEntry:
    """Arrays of historical samples keyed by category.

    Attributes:
        log_date: When the arrays were last refreshed from the device
        samples: Oldest-first sample arrays per category
    """

    log_date: datetime | None = None
    samples: dict[int, list[LogSample]] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not any(self.samples.values())

    @property
    def categories(self) -> frozenset[int]:
        return frozenset(self.samples)

    def get(self, category: int) -> list[LogSample]:
        """Samples for ``category`` (empty list when absent)."""
        return list(self.samples.get(category, ()))

    def set(self, category: int, values: Iterable[LogSample]) -> None:
        self.samples[int(category)] = list(values)

    def copy(self) -> LogEntry:
        return LogEntry(
            log_date=self.log_date,
            samples={category: list(values) for category, values in self.samples.items()},
        )

    def hourly_averages(self, category: int, samples_per_hour: int = 60) -> list[float]:
        """Mean of each consecutive group of ``samples_per_hour`` samples.

        A trailing partial group is averaged over the samples it has.
        """
        if samples_per_hour < 1:
            raise ValueError(f"samples_per_hour must be positive, got {samples_per_hour}")
        values = self.samples.get(category, [])
        return [
            sum(values[start : start + samples_per_hour])
            / len(values[start : start + samples_per_hour])
            for start in range(0, len(values), samples_per_hour)
        ]

    def to_dict(self) -> dict[str, Any]:
        return {
            "log_date": self.log_date.isoformat() if self.log_date else None,
            "samples": {str(category): values for category, values in self.samples.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LogEntry:
        log_date = data.get("log_date")
        return cls(
            log_date=datetime.fromisoformat(log_date) if log_date else None,
            samples={
                int(category): list(values)
                for category, values in data.get("samples", {}).items()
            },
        )


async def read_category(
    transport: ModbusTCPTransport,
    category: LogCategory,
    limit: int,
    *,
    scale: bool = True,
) -> list[int | float]:
    """Read up to ``limit`` samples of one column in device order.

    Stops early at the end of the log (EOF or an empty record). When
    ``scale`` is False the raw signed samples are returned.
    """
    samples: list[int | float] = []
    while len(samples) < limit:
        await transport.connect()
        count = min(limit - len(samples), FILE_TRANSFER_MAX_WORDS)
        try:
            record = await transport.read_file_transfer(
                len(samples), int(category), category.file, count
            )
        except TransportEOFError:
            _LOGGER.debug("End of %s log at %d samples", category.name, len(samples))
            break
        words = record.word_count()
        if words == 0:
            _LOGGER.debug("Empty record ends %s log at %d samples", category.name, len(samples))
            break
        for index in range(min(words, count)):
            raw = record.sample(index)
            samples.append(scale_sample(category, raw) if scale else raw)
    return samples


async def read_day_log(transport: ModbusTCPTransport) -> dict[int, list[LogSample]]:
    """Read all six daily columns, each oldest-first and at most 365 long."""
    result: dict[int, list[LogSample]] = {}
    for category in DAILY_CATEGORIES:
        samples = await read_category(transport, category, DAY_LOG_ENTRIES)
        samples.reverse()
        result[int(category)] = samples
        _LOGGER.debug("Read %d %s samples", len(samples), category.name)
    return result


async def read_minute_log(transport: ModbusTCPTransport) -> dict[int, list[LogSample]]:
    """Read the last 24 hours of the minute log.

    The timestamp column is walked first to size the read; every column,
    timestamps included, is then truncated to the same length and ordered
    oldest first. Timestamps are stored as minute-of-day values.
    """
    raw_timestamps = await read_category(
        transport, LogCategory.TIMESTAMP_HIGH_HOURLY, MINUTE_LOG_ENTRIES, scale=False
    )
    timestamps = [minute_of_day(int(raw)) for raw in raw_timestamps]
    entries = required_entries(timestamps)
    _LOGGER.debug("Minute log covers %d of %d records", entries, len(timestamps))

    columns: dict[int, list[LogSample]] = {
        int(LogCategory.TIMESTAMP_HIGH_HOURLY): list(timestamps[:entries]),
    }
    if entries:
        for category in MINUTE_CATEGORIES:
            columns[int(category)] = await read_category(transport, category, entries)
    else:
        for category in MINUTE_CATEGORIES:
            columns[int(category)] = []

    shortest = min(len(values) for values in columns.values())
    for values in columns.values():
        del values[shortest:]
        values.reverse()
    return columns


__all__ = [
    "DAILY_CATEGORIES",
    "MINUTE_CATEGORIES",
    "LogCategory",
    "LogEntry",
    "LogSample",
    "minute_of_day",
    "read_category",
    "read_day_log",
    "read_minute_log",
    "required_entries",
    "scale_sample",
]
