"""Event sink interface and stock implementations.

Pollers and the discovery listener publish through an :class:`EventSink`.
Every method must return promptly: the caller is the polling task and any
blocking would stall its controller.

Two sinks ship with the package:

- :class:`QueueEventSink` turns each call into an event dataclass on an
  ``asyncio.Queue`` for consumers that prefer to pull.
- :class:`LoggingEventSink` logs every event, used by the command line
  front end.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import Protocol, runtime_checkable

from classicmon.devices.logs import LogEntry
from classicmon.devices.models import Endpoint
from classicmon.devices.readings import Readings, RegisterName

_LOGGER = logging.getLogger(__name__)


class ToastMessage(StrEnum):
    """Keys of the short user-visible notifications."""

    DAY_LOGS_UPDATED = "day_logs_updated"
    MINUTE_LOGS_UPDATED = "minute_logs_updated"
    DAY_LOGS_FAILED = "day_logs_failed"
    MINUTE_LOGS_FAILED = "minute_logs_failed"


TOAST_TEXT: dict[str, str] = {
    ToastMessage.DAY_LOGS_UPDATED: "Day logs updated",
    ToastMessage.MINUTE_LOGS_UPDATED: "Minute logs updated",
    ToastMessage.DAY_LOGS_FAILED: "Failed to load day logs, retrying later",
    ToastMessage.MINUTE_LOGS_FAILED: "Failed to load minute logs, retrying later",
}


@runtime_checkable
class EventSink(Protocol):
    """Receiver of everything the monitor observes."""

    def on_readings(self, endpoint: Endpoint, readings: Readings) -> None:
        """A new live readings snapshot."""
        ...

    def on_logs(self, endpoint: Endpoint, categories: frozenset[int], entry: LogEntry) -> None:
        """A log entry for ``categories`` was refreshed or loaded from cache."""
        ...

    def on_toast(self, message_key: str, endpoint: Endpoint | None = None) -> None:
        """A short user-facing notification, see :class:`ToastMessage`."""
        ...

    def on_controller_found(self, endpoint: Endpoint, name: str) -> None:
        """Discovery found and probed a new controller."""
        ...

    def on_reachable(self, endpoint: Endpoint, reachable: bool) -> None:
        """A controller became reachable or unreachable."""
        ...


@dataclass(frozen=True)
class ReadingsEvent:
    endpoint: Endpoint
    readings: Readings


@dataclass(frozen=True)
class LogsEvent:
    endpoint: Endpoint
    categories: frozenset[int]
    entry: LogEntry


@dataclass(frozen=True)
class ToastEvent:
    message_key: str
    endpoint: Endpoint | None = None


@dataclass(frozen=True)
class ControllerFoundEvent:
    endpoint: Endpoint
    name: str


@dataclass(frozen=True)
class ReachableEvent:
    endpoint: Endpoint
    reachable: bool


MonitorEvent = ReadingsEvent | LogsEvent | ToastEvent | ControllerFoundEvent | ReachableEvent


class QueueEventSink:
    """Event sink that enqueues one event object per call.

    The queue is unbounded so publishing never blocks.

    Example:
        sink = QueueEventSink()
        async with Supervisor(sink, config):
            while True:
                event = await sink.queue.get()
                if isinstance(event, ReadingsEvent):
                    print(event.readings[RegisterName.BAT_VOLTAGE])
    """

    def __init__(self, queue: asyncio.Queue[MonitorEvent] | None = None) -> None:
        self.queue: asyncio.Queue[MonitorEvent] = queue if queue is not None else asyncio.Queue()

    def on_readings(self, endpoint: Endpoint, readings: Readings) -> None:
        self.queue.put_nowait(ReadingsEvent(endpoint, readings))

    def on_logs(self, endpoint: Endpoint, categories: frozenset[int], entry: LogEntry) -> None:
        self.queue.put_nowait(LogsEvent(endpoint, categories, entry))

    def on_toast(self, message_key: str, endpoint: Endpoint | None = None) -> None:
        self.queue.put_nowait(ToastEvent(message_key, endpoint))

    def on_controller_found(self, endpoint: Endpoint, name: str) -> None:
        self.queue.put_nowait(ControllerFoundEvent(endpoint, name))

    def on_reachable(self, endpoint: Endpoint, reachable: bool) -> None:
        self.queue.put_nowait(ReachableEvent(endpoint, reachable))


class LoggingEventSink:
    """Event sink that writes a log line per event."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or _LOGGER

    def on_readings(self, endpoint: Endpoint, readings: Readings) -> None:
        if not readings.is_connected:
            self._logger.info("%s: disconnected", endpoint)
            return
        self._logger.info(
            "%s: %.1f V %.1f A %.0f W, PV %.1f V, today %.1f kWh, state %s",
            endpoint,
            readings[RegisterName.BAT_VOLTAGE],
            readings[RegisterName.BAT_CURRENT],
            readings[RegisterName.POWER],
            readings[RegisterName.PV_VOLTAGE],
            readings[RegisterName.ENERGY_TODAY],
            readings[RegisterName.CHARGE_STATE],
        )

    def on_logs(self, endpoint: Endpoint, categories: frozenset[int], entry: LogEntry) -> None:
        lengths = {category: len(entry.get(category)) for category in sorted(categories)}
        self._logger.info(
            "%s: logs from %s, samples per category %s", endpoint, entry.log_date, lengths
        )

    def on_toast(self, message_key: str, endpoint: Endpoint | None = None) -> None:
        text = TOAST_TEXT.get(message_key, message_key)
        if endpoint is None:
            self._logger.info("%s", text)
        else:
            self._logger.info("%s: %s", endpoint, text)

    def on_controller_found(self, endpoint: Endpoint, name: str) -> None:
        self._logger.info("Found controller %r at %s", name, endpoint)

    def on_reachable(self, endpoint: Endpoint, reachable: bool) -> None:
        if reachable:
            self._logger.info("%s: reachable", endpoint)
        else:
            self._logger.warning("%s: not reachable", endpoint)


__all__ = [
    "TOAST_TEXT",
    "ControllerFoundEvent",
    "EventSink",
    "LoggingEventSink",
    "LogsEvent",
    "MonitorEvent",
    "QueueEventSink",
    "ReachableEvent",
    "ReadingsEvent",
    "ToastEvent",
    "ToastMessage",
]
