"""Supervisor owning the pollers and the discovery listener.

The supervisor starts one :class:`~classicmon.poller.ControllerPoller` per
configured controller, an optional
:class:`~classicmon.listener.DiscoveryListener`, and forwards everything
they publish to the application's event sink. It also keeps the shared
reachability registry.

Example:
    config = MonitorConfig.from_env()
    async with Supervisor(LoggingEventSink(), config) as supervisor:
        await asyncio.Event().wait()
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import threading

from classicmon.cache import LogCache
from classicmon.config import ControllerConfig, MonitorConfig
from classicmon.devices.logs import LogEntry
from classicmon.devices.models import Endpoint
from classicmon.devices.readings import Readings
from classicmon.events import EventSink
from classicmon.listener import DiscoveryListener, Prober
from classicmon.poller import ControllerPoller, TransportFactory

_LOGGER = logging.getLogger(__name__)


class _ForwardingSink:
    """Relays events to the application sink and tracks reachability."""

    def __init__(self, supervisor: Supervisor, target: EventSink) -> None:
        self._supervisor = supervisor
        self._target = target

    def on_readings(self, endpoint: Endpoint, readings: Readings) -> None:
        self._target.on_readings(endpoint, readings)

    def on_logs(self, endpoint: Endpoint, categories: frozenset[int], entry: LogEntry) -> None:
        self._target.on_logs(endpoint, categories, entry)

    def on_toast(self, message_key: str, endpoint: Endpoint | None = None) -> None:
        self._target.on_toast(message_key, endpoint)

    def on_controller_found(self, endpoint: Endpoint, name: str) -> None:
        self._target.on_controller_found(endpoint, name)
        self._supervisor._controller_found(endpoint, name)

    def on_reachable(self, endpoint: Endpoint, reachable: bool) -> None:
        self._supervisor._set_reachable(endpoint, reachable)
        self._target.on_reachable(endpoint, reachable)


class Supervisor:
    """Runs the pollers for a set of controllers.

    Controllers come from the configuration, from :meth:`add_controller`,
    or, when ``auto_add_discovered`` is set, from discovery.
    """

    def __init__(
        self,
        sink: EventSink,
        config: MonitorConfig | None = None,
        *,
        cache: LogCache | None = None,
        transport_factory: TransportFactory | None = None,
        prober: Prober | None = None,
    ) -> None:
        """Initialize the supervisor.

        Args:
            sink: Application event sink
            config: Monitor settings and initial controllers
            cache: Log cache (created from ``config.cache_dir`` if None)
            transport_factory: Passed to every poller
            prober: Passed to the discovery listener
        """
        self._config = config or MonitorConfig()
        self._sink = _ForwardingSink(self, sink)
        self._cache = cache if cache is not None else LogCache(self._config.cache_dir)
        self._transport_factory = transport_factory
        self._prober = prober
        self._pollers: dict[Endpoint, ControllerPoller] = {}
        self._listener: DiscoveryListener | None = None
        self._reachable: dict[Endpoint, bool] = {}
        self._reachable_lock = threading.Lock()
        self._pending: set[asyncio.Task[object]] = set()
        self._running = False
        self._lock = asyncio.Lock()

    @property
    def config(self) -> MonitorConfig:
        return self._config

    @property
    def cache(self) -> LogCache:
        return self._cache

    @property
    def controllers(self) -> list[Endpoint]:
        return list(self._pollers)

    @property
    def listener(self) -> DiscoveryListener | None:
        return self._listener

    @property
    def is_running(self) -> bool:
        return self._running

    def poller(self, endpoint: Endpoint) -> ControllerPoller | None:
        return self._pollers.get(endpoint)

    def is_reachable(self, endpoint: Endpoint) -> bool:
        with self._reachable_lock:
            return self._reachable.get(endpoint, False)

    async def __aenter__(self) -> Supervisor:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    async def start(self) -> None:
        """Start discovery (if enabled) and a poller per configured controller."""
        if self._running:
            return
        self._running = True
        if self._config.discovery_enabled:
            await self._start_listener()
        for controller in self._config.controllers:
            await self.add_controller(controller)
        # Controllers added before start
        for poller in list(self._pollers.values()):
            await poller.start()
        _LOGGER.info("Supervisor started with %d controller(s)", len(self._pollers))

    async def stop(self) -> None:
        """Stop every poller, the listener and pending additions."""
        self._running = False
        pending = list(self._pending)
        self._pending.clear()
        for task in pending:
            task.cancel()
        for task in pending:
            with contextlib.suppress(asyncio.CancelledError):
                await task

        await self._stop_listener()
        async with self._lock:
            pollers = list(self._pollers.values())
            self._pollers.clear()
        await asyncio.gather(*(poller.stop() for poller in pollers))
        with self._reachable_lock:
            self._reachable.clear()
        _LOGGER.info("Supervisor stopped")

    async def add_controller(self, controller: Endpoint | ControllerConfig) -> ControllerPoller:
        """Start polling a controller. Adding a known controller is a no-op.

        Returns:
            The controller's poller
        """
        endpoint = controller.endpoint() if isinstance(controller, ControllerConfig) else controller
        async with self._lock:
            poller = self._pollers.get(endpoint)
            if poller is not None:
                return poller
            poller = ControllerPoller(
                endpoint,
                self._sink,
                self._cache,
                poll_interval=self._config.poll_interval,
                timeout=self._config.timeout,
                connection_retries=self._config.connection_retries,
                log_retry_delay=self._config.log_retry_delay,
                transport_factory=self._transport_factory,
            )
            self._pollers[endpoint] = poller
        if self._listener is not None:
            self._listener.mark_found(endpoint)
        _LOGGER.info("Added controller %s", endpoint)
        if self._running:
            await poller.start()
        return poller

    async def remove_controller(self, endpoint: Endpoint) -> bool:
        """Stop and forget a controller.

        Returns:
            False if the controller was not known
        """
        async with self._lock:
            poller = self._pollers.pop(endpoint, None)
        if poller is None:
            return False
        await poller.stop()
        with self._reachable_lock:
            self._reachable.pop(endpoint, None)
        if self._listener is not None:
            self._listener.forget(endpoint)
        _LOGGER.info("Removed controller %s", endpoint)
        return True

    async def apply_config(self, config: MonitorConfig) -> None:
        """Switch to a new configuration.

        Controllers no longer listed are stopped, new ones started. A change
        of timing settings restarts the remaining pollers; the listener is
        started, stopped or rebound as needed.
        """
        old = self._config
        self._config = config
        wanted = config.endpoints()

        timing_changed = (
            old.poll_interval != config.poll_interval
            or old.timeout != config.timeout
            or old.connection_retries != config.connection_retries
            or old.log_retry_delay != config.log_retry_delay
        )
        for endpoint in list(self._pollers):
            if endpoint not in wanted or timing_changed:
                await self.remove_controller(endpoint)
        for endpoint in wanted:
            await self.add_controller(endpoint)

        if not self._running:
            return
        if not config.discovery_enabled:
            await self._stop_listener()
        elif self._listener is None or old.discovery_port != config.discovery_port:
            await self._stop_listener()
            await self._start_listener()

    async def _start_listener(self) -> None:
        listener = DiscoveryListener(
            self._sink,
            port=self._config.discovery_port,
            timeout=self._config.timeout,
            connection_retries=self._config.connection_retries,
            prober=self._prober,
            known=self._pollers,
        )
        await listener.start()
        self._listener = listener

    async def _stop_listener(self) -> None:
        listener, self._listener = self._listener, None
        if listener is not None:
            await listener.stop()

    def _set_reachable(self, endpoint: Endpoint, reachable: bool) -> None:
        with self._reachable_lock:
            self._reachable[endpoint] = reachable

    def _controller_found(self, endpoint: Endpoint, name: str) -> None:
        if not (self._running and self._config.auto_add_discovered):
            return
        if endpoint in self._pollers:
            return
        _LOGGER.info("Auto-adding discovered controller %r at %s", name, endpoint)
        task: asyncio.Task[object] = asyncio.create_task(self.add_controller(endpoint))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)


__all__ = ["Supervisor"]
