"""UDP discovery of Classic controllers.

Each Classic periodically broadcasts a 6-byte beacon on
:data:`~classicmon.constants.CLASSIC_UDP_PORT`::

    +----+----+----+----+---------+---------+
    | a  | b  | c  | d  | port lo | port hi |
    +----+----+----+----+---------+---------+

The listener turns a beacon into an :class:`~classicmon.devices.models.Endpoint`,
ignores endpoints it has already reported, and probes new ones with a
short-lived connection to learn the unit name before publishing
``on_controller_found``. When a probe fails the endpoint is forgotten so
that the next beacon retries it.
"""

from __future__ import annotations

import asyncio
import contextlib
import ipaddress
import logging
import threading
from collections.abc import Awaitable, Callable, Iterable

from classicmon.constants import (
    CLASSIC_UDP_PORT,
    DEFAULT_CONNECTION_RETRIES,
    DEFAULT_READ_TIMEOUT,
    DISCOVERY_IDLE_SLEEP,
    DISCOVERY_RECEIVE_TIMEOUT,
)
from classicmon.devices.models import Endpoint
from classicmon.events import EventSink
from classicmon.exceptions import ClassicMonitorError
from classicmon.transports.discovery import probe_controller

_LOGGER = logging.getLogger(__name__)

BEACON_LENGTH = 6

# Returns the unit name of the controller at the endpoint
Prober = Callable[[Endpoint], Awaitable[str]]


def parse_beacon(data: bytes, unit_id: int = 1) -> Endpoint | None:
    """Decode a discovery beacon.

    Returns None for datagrams shorter than a beacon.

    Example:
        >>> parse_beacon(bytes([192, 168, 1, 50, 0xF6, 0x01]))
        Endpoint(host='192.168.1.50', port=502, unit_id=1)
    """
    if len(data) < BEACON_LENGTH:
        return None
    host = str(ipaddress.IPv4Address(bytes(data[:4])))
    port = data[4] | (data[5] << 8)
    return Endpoint(host, port, unit_id)


class _BeaconProtocol(asyncio.DatagramProtocol):
    def __init__(self, queue: asyncio.Queue[tuple[bytes, tuple[str, int]]]) -> None:
        self._queue = queue

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        self._queue.put_nowait((data, addr))

    def error_received(self, exc: Exception) -> None:
        _LOGGER.debug("Discovery socket error: %s", exc)


class DiscoveryListener:
    """Listens for controller beacons and reports each new controller once.

    Example:
        listener = DiscoveryListener(sink)
        await listener.start()
        ...
        await listener.stop()
    """

    def __init__(
        self,
        sink: EventSink,
        *,
        port: int = CLASSIC_UDP_PORT,
        host: str = "0.0.0.0",
        timeout: float = DEFAULT_READ_TIMEOUT,
        connection_retries: int = DEFAULT_CONNECTION_RETRIES,
        prober: Prober | None = None,
        known: Iterable[Endpoint] = (),
        receive_timeout: float = DISCOVERY_RECEIVE_TIMEOUT,
        idle_sleep: float = DISCOVERY_IDLE_SLEEP,
    ) -> None:
        """Initialize the listener.

        Args:
            sink: Receiver of ``on_controller_found``
            port: UDP port to bind (0 picks a free port)
            host: Local address to bind
            timeout: Read timeout for probe connections
            connection_retries: Connection attempts per probe
            prober: Replaces the default Modbus identity probe
            known: Controllers already being monitored; their beacons are
                ignored
            receive_timeout: Seconds to wait for a datagram
            idle_sleep: Seconds to sleep after a receive timeout
        """
        self._sink = sink
        self._port = port
        self._host = host
        self._timeout = timeout
        self._connection_retries = connection_retries
        self._prober = prober or self._probe
        self._receive_timeout = receive_timeout
        self._idle_sleep = idle_sleep

        self._found: set[Endpoint] = set(known)
        self._found_lock = threading.Lock()
        self._queue: asyncio.Queue[tuple[bytes, tuple[str, int]]] = asyncio.Queue()
        self._transport: asyncio.DatagramTransport | None = None
        self._task: asyncio.Task[None] | None = None
        self._probes: set[asyncio.Task[None]] = set()
        self._stopping = asyncio.Event()

    @property
    def port(self) -> int:
        """Bound UDP port (the requested port until started)."""
        if self._transport is not None:
            sockname = self._transport.get_extra_info("sockname")
            if sockname:
                return int(sockname[1])
        return self._port

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def found(self) -> frozenset[Endpoint]:
        with self._found_lock:
            return frozenset(self._found)

    def is_found(self, endpoint: Endpoint) -> bool:
        with self._found_lock:
            return endpoint in self._found

    def mark_found(self, endpoint: Endpoint) -> None:
        """Add ``endpoint`` so its beacons are ignored."""
        with self._found_lock:
            self._found.add(endpoint)

    def forget(self, endpoint: Endpoint) -> None:
        """Remove ``endpoint`` so its next beacon is probed again."""
        with self._found_lock:
            self._found.discard(endpoint)

    async def start(self) -> None:
        """Bind the UDP socket and start the receive loop."""
        if self.is_running:
            return
        loop = asyncio.get_running_loop()
        self._stopping.clear()
        transport, _ = await loop.create_datagram_endpoint(
            lambda: _BeaconProtocol(self._queue),
            local_addr=(self._host, self._port),
        )
        self._transport = transport
        self._task = asyncio.create_task(self._run(), name="classicmon-discovery")
        _LOGGER.info("Listening for controller beacons on UDP port %d", self.port)

    async def stop(self) -> None:
        """Close the socket, end the loop and cancel outstanding probes."""
        self._stopping.set()
        transport, self._transport = self._transport, None
        if transport is not None:
            transport.close()

        tasks = [task for task in (self._task, *self._probes) if task is not None]
        self._task = None
        self._probes.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        _LOGGER.info("Discovery listener stopped")

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                data, addr = await asyncio.wait_for(
                    self._queue.get(), timeout=self._receive_timeout
                )
            except TimeoutError:
                await asyncio.sleep(self._idle_sleep)
                continue
            _LOGGER.debug("Beacon from %s: %s", addr, data.hex())
            self.handle_beacon(data)

    def handle_beacon(self, data: bytes) -> Endpoint | None:
        """Process one datagram.

        Returns:
            The endpoint if a probe was started, None if the datagram was
            not a beacon or the endpoint is already known
        """
        endpoint = parse_beacon(data)
        if endpoint is None:
            _LOGGER.debug("Ignoring %d byte datagram", len(data))
            return None

        with self._found_lock:
            if endpoint in self._found:
                return None
            self._found.add(endpoint)

        _LOGGER.info("New controller beacon from %s", endpoint)
        task = asyncio.create_task(
            self._probe_and_report(endpoint), name=f"classicmon-probe-{endpoint}"
        )
        self._probes.add(task)
        task.add_done_callback(self._probes.discard)
        return endpoint

    async def _probe(self, endpoint: Endpoint) -> str:
        identity = await probe_controller(
            endpoint,
            timeout=self._timeout,
            connection_retries=self._connection_retries,
        )
        return identity.name

    async def _probe_and_report(self, endpoint: Endpoint) -> None:
        try:
            name = await self._prober(endpoint)
        except (ClassicMonitorError, OSError) as err:
            _LOGGER.warning("Probe of %s failed, will retry on next beacon: %s", endpoint, err)
            self.forget(endpoint)
            return
        if self._stopping.is_set():
            return
        self._sink.on_controller_found(endpoint, name)


__all__ = [
    "BEACON_LENGTH",
    "DiscoveryListener",
    "Prober",
    "parse_beacon",
]
