"""Per-controller polling engine.

A :class:`ControllerPoller` owns one controller: it connects, classifies
the device once per connection, then on every tick reads the live
readings and, for a Classic, refreshes the day and minute logs when they
have gone stale. Everything it learns is published to an
:class:`~classicmon.events.EventSink`.

State machine::

    DISCONNECTED --connect ok--> CLASSIFYING --type known--> POLLING
    DISCONNECTED <----error----- CLASSIFYING
    DISCONNECTED <------------------error------------------- POLLING
    DISCONNECTED/POLLING --stop()--> STOPPED

Any error during a cycle closes the connection, publishes a cleared
readings snapshot (``ConnectionState = 0``) and marks the controller
unreachable; the next tick starts over with a fresh connection. A stopped
poller publishes nothing further.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from enum import StrEnum

from classicmon.cache import LogCache
from classicmon.constants import (
    CLASSIC_READINGS_COUNT,
    DEFAULT_CONNECTION_RETRIES,
    DEFAULT_LOG_RETRY_DELAY,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_READ_TIMEOUT,
    TRISTAR_READINGS_COUNT,
    TRISTAR_REFERENCE,
    WHIZBANG_ADDRESS,
    WHIZBANG_READINGS_COUNT,
)
from classicmon.devices.logs import LogEntry, LogSample, read_day_log, read_minute_log
from classicmon.devices.models import ControllerInfo, Endpoint
from classicmon.devices.readings import (
    ReadingValue,
    Readings,
    RegisterName,
    build_snapshot,
    decode_classic_readings,
    decode_tristar_readings,
    decode_whizbang_readings,
)
from classicmon.events import EventSink, ToastMessage
from classicmon.exceptions import CacheMiss, ClassicMonitorError
from classicmon.transports.discovery import classify_controller, read_classic_info
from classicmon.transports.exceptions import TransportClosedError
from classicmon.transports.modbus_tcp import ModbusTCPTransport

_LOGGER = logging.getLogger(__name__)

MINUTE_LOG_MAX_AGE = timedelta(hours=1)

TransportFactory = Callable[[Endpoint], ModbusTCPTransport]
LogReader = Callable[[ModbusTCPTransport], Awaitable[dict[int, list[LogSample]]]]


class PollerState(StrEnum):
    """Lifecycle state of a :class:`ControllerPoller`."""

    DISCONNECTED = "disconnected"
    CLASSIFYING = "classifying"
    POLLING = "polling"
    STOPPED = "stopped"


def start_of_day(moment: datetime) -> datetime:
    """Midnight at the start of ``moment``'s day."""
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)


class ControllerPoller:
    """Polls one charge controller on a fixed cadence.

    Example:
        poller = ControllerPoller(Endpoint("192.168.1.50"), sink, LogCache())
        await poller.start()
        ...
        await poller.stop()

    Tests and callers that drive the cycle themselves can call
    :meth:`poll_once` instead of :meth:`start`.
    """

    def __init__(
        self,
        endpoint: Endpoint,
        sink: EventSink,
        cache: LogCache | None = None,
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        timeout: float = DEFAULT_READ_TIMEOUT,
        connection_retries: int = DEFAULT_CONNECTION_RETRIES,
        log_retry_delay: float = DEFAULT_LOG_RETRY_DELAY,
        transport_factory: TransportFactory | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the poller.

        Args:
            endpoint: Controller to poll
            sink: Receiver of readings, logs, toasts and reachability
            cache: Log cache shared between pollers (private one if None)
            poll_interval: Seconds between cycles
            timeout: Socket read timeout in seconds
            connection_retries: Connection attempts per cycle
            log_retry_delay: Seconds to wait before retrying a failed log read
            transport_factory: Builds the transport for ``endpoint``
            now: Wall clock, injectable for tests
        """
        self._endpoint = endpoint
        self._sink = sink
        self._cache = cache if cache is not None else LogCache()
        self._poll_interval = poll_interval
        self._timeout = timeout
        self._connection_retries = connection_retries
        self._log_retry_delay = timedelta(seconds=log_retry_delay)
        self._transport_factory = transport_factory or self._create_transport
        self._now = now or datetime.now

        self._state = PollerState.DISCONNECTED
        self._info = ControllerInfo(endpoint)
        self._transport: ModbusTCPTransport | None = None
        self._readings: Readings | None = None
        self._reachable: bool | None = None
        self._day_log = LogEntry()
        self._minute_log = LogEntry()
        self._day_retry_at: datetime | None = None
        self._minute_retry_at: datetime | None = None
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    def _create_transport(self, endpoint: Endpoint) -> ModbusTCPTransport:
        return ModbusTCPTransport.from_endpoint(
            endpoint,
            timeout=self._timeout,
            connection_retries=self._connection_retries,
        )

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def endpoint(self) -> Endpoint:
        return self._endpoint

    @property
    def state(self) -> PollerState:
        return self._state

    @property
    def info(self) -> ControllerInfo:
        """Controller information from the latest classification."""
        return self._info

    @property
    def readings(self) -> Readings | None:
        """Most recently published readings snapshot."""
        return self._readings

    @property
    def reachable(self) -> bool:
        return bool(self._reachable)

    @property
    def day_log(self) -> LogEntry:
        return self._day_log.copy()

    @property
    def minute_log(self) -> LogEntry:
        return self._minute_log.copy()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def day_cache_key(self) -> str:
        return f"{self._endpoint.cache_name}_day"

    @property
    def minute_cache_key(self) -> str:
        return f"{self._endpoint.cache_name}_minute"

    @property
    def _stopped(self) -> bool:
        return self._state is PollerState.STOPPED

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the polling task.

        Raises:
            RuntimeError: If the poller was stopped
        """
        if self._stopped:
            raise RuntimeError(f"Poller for {self._endpoint} has been stopped")
        if self.is_running:
            return
        self._task = asyncio.create_task(self.run(), name=f"classicmon-poller-{self._endpoint}")

    async def stop(self) -> None:
        """Stop polling for good, close the connection and join the task."""
        if self._stopped and self._task is None:
            return
        self._state = PollerState.STOPPED
        self._stop_event.set()

        transport, self._transport = self._transport, None
        if transport is not None:
            await transport.close()

        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        _LOGGER.info("Stopped poller for %s", self._endpoint)

    async def run(self) -> None:
        """Poll until stopped."""
        _LOGGER.info("Starting poller for %s every %.1fs", self._endpoint, self._poll_interval)
        while not self._stopped:
            await self.poll_once()
            if self._stopped:
                break
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._poll_interval)

    async def poll_once(self) -> bool:
        """Run one cycle: (re)connect if needed, read readings, refresh logs.

        Returns:
            True if the cycle completed, False if it failed and disconnected
        """
        if self._stopped:
            return False
        try:
            if self._state is not PollerState.POLLING:
                await self._connect_and_classify()
            await self._poll_readings()
            if self._info.is_classic:
                await self._refresh_logs()
        except ClassicMonitorError as err:
            if self._stopped:
                return False
            _LOGGER.warning("Poll cycle for %s failed: %s", self._endpoint, err)
            await self._disconnect()
            self._set_reachable(False)
            return False
        return True

    # ------------------------------------------------------------------
    # Cycle steps
    # ------------------------------------------------------------------

    def _set_state(self, state: PollerState) -> None:
        if self._stopped or self._state is state:
            return
        _LOGGER.debug("Poller %s: %s -> %s", self._endpoint, self._state, state)
        self._state = state

    def _require_transport(self) -> ModbusTCPTransport:
        if self._transport is None:
            raise TransportClosedError(f"No connection to {self._endpoint}")
        return self._transport

    async def _connect_and_classify(self) -> None:
        if self._transport is None or self._transport.is_closed:
            self._transport = self._transport_factory(self._endpoint)
        transport = self._transport
        await transport.connect()

        self._set_state(PollerState.CLASSIFYING)
        info = ControllerInfo(self._endpoint)
        await classify_controller(transport, info)
        if info.is_classic:
            await read_classic_info(transport, info)

        # Published to other tasks only once fully populated
        self._info = info
        self._set_state(PollerState.POLLING)
        if info.is_classic:
            await self._load_cached_logs()

    async def _poll_readings(self) -> None:
        transport = self._require_transport()
        # End-of-log during the previous cycle drops the socket
        await transport.connect()
        info = self._info
        parts: list[dict[RegisterName, ReadingValue]] = []

        if info.is_tristar:
            assert info.scale is not None
            registers = await transport.read_multiple_registers(
                TRISTAR_REFERENCE, TRISTAR_READINGS_COUNT
            )
            parts.append(decode_tristar_readings(registers, info.scale))
        else:
            registers = await transport.read_multiple_registers(
                info.reference, CLASSIC_READINGS_COUNT
            )
            parts.append(decode_classic_readings(registers, info.reference))
            if info.has_whizbang:
                shunt = await transport.read_multiple_registers(
                    WHIZBANG_ADDRESS, WHIZBANG_READINGS_COUNT
                )
                parts.append(decode_whizbang_readings(shunt))

        self._publish_readings(build_snapshot(*parts, bidirectional=info.has_whizbang))
        self._set_reachable(True)

    async def _refresh_logs(self) -> None:
        now = self._now()
        if self._day_log_stale(now) and self._retry_due(self._day_retry_at, now):
            await self._refresh_day_log()
        now = self._now()
        if self._minute_log_stale(now) and self._retry_due(self._minute_retry_at, now):
            await self._refresh_minute_log()

    def _day_log_stale(self, now: datetime) -> bool:
        entry = self._day_log
        return entry.is_empty or entry.log_date is None or entry.log_date < start_of_day(now)

    def _minute_log_stale(self, now: datetime) -> bool:
        entry = self._minute_log
        return (
            entry.is_empty
            or entry.log_date is None
            or entry.log_date < now - MINUTE_LOG_MAX_AGE
        )

    @staticmethod
    def _retry_due(retry_at: datetime | None, now: datetime) -> bool:
        return retry_at is None or now >= retry_at

    async def _refresh_day_log(self) -> None:
        _LOGGER.info("Reading day logs from %s", self._endpoint)
        try:
            self._day_log = await self._read_log(
                self.day_cache_key,
                read_day_log,
                ToastMessage.DAY_LOGS_UPDATED,
                ToastMessage.DAY_LOGS_FAILED,
            )
        except ClassicMonitorError:
            self._day_log = LogEntry()
            self._day_retry_at = self._now() + self._log_retry_delay
            raise
        # An empty log would otherwise be re-read on every tick
        self._day_retry_at = (
            self._now() + self._log_retry_delay if self._day_log.is_empty else None
        )

    async def _refresh_minute_log(self) -> None:
        _LOGGER.info("Reading minute logs from %s", self._endpoint)
        try:
            self._minute_log = await self._read_log(
                self.minute_cache_key,
                read_minute_log,
                ToastMessage.MINUTE_LOGS_UPDATED,
                ToastMessage.MINUTE_LOGS_FAILED,
            )
        except ClassicMonitorError:
            self._minute_log = LogEntry()
            self._minute_retry_at = self._now() + self._log_retry_delay
            raise
        self._minute_retry_at = (
            self._now() + self._log_retry_delay if self._minute_log.is_empty else None
        )

    async def _read_log(
        self,
        cache_key: str,
        reader: LogReader,
        updated: ToastMessage,
        failed: ToastMessage,
    ) -> LogEntry:
        try:
            samples = await reader(self._require_transport())
        except ClassicMonitorError as err:
            _LOGGER.warning("Log read from %s failed: %s", self._endpoint, err)
            await self._cache.invalidate(cache_key)
            self._publish_toast(failed)
            raise

        entry = LogEntry(log_date=self._now(), samples=samples)
        await self._cache.put(cache_key, entry)
        self._publish_logs(entry)
        self._publish_toast(updated)
        return entry

    async def _load_cached_logs(self) -> None:
        for cache_key, attr in (
            (self.day_cache_key, "_day_log"),
            (self.minute_cache_key, "_minute_log"),
        ):
            try:
                entry = await self._cache.get(cache_key)
            except CacheMiss:
                _LOGGER.debug("No cached logs under %s", cache_key)
                continue
            setattr(self, attr, entry)
            if not entry.is_empty:
                self._publish_logs(entry)

    async def _disconnect(self) -> None:
        """Close the connection and publish the cleared snapshot. Idempotent."""
        transport, self._transport = self._transport, None
        if transport is not None:
            await transport.close()
        if self._stopped:
            return
        self._set_state(PollerState.DISCONNECTED)
        if self._readings is None or self._readings.is_connected:
            self._publish_readings(Readings.cleared())

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def _publish_readings(self, readings: Readings) -> None:
        if self._stopped:
            return
        self._readings = readings
        self._sink.on_readings(self._endpoint, readings)

    def _publish_logs(self, entry: LogEntry) -> None:
        if self._stopped:
            return
        self._sink.on_logs(self._endpoint, entry.categories, entry.copy())

    def _publish_toast(self, message: ToastMessage) -> None:
        if self._stopped:
            return
        self._sink.on_toast(message, self._endpoint)

    def _set_reachable(self, reachable: bool) -> None:
        if self._stopped or self._reachable is reachable:
            return
        self._reachable = reachable
        self._sink.on_reachable(self._endpoint, reachable)


__all__ = [
    "MINUTE_LOG_MAX_AGE",
    "ControllerPoller",
    "PollerState",
    "TransportFactory",
    "start_of_day",
]
