"""Unit tests for the supervisor."""

from __future__ import annotations

import asyncio
import socket
import struct
from collections.abc import Callable

import pytest
from conftest import FakeModbusServer, RecordingSink

from classicmon.config import ControllerConfig, MonitorConfig
from classicmon.devices.models import Endpoint
from classicmon.devices.readings import RegisterName
from classicmon.poller import PollerState
from classicmon.supervisor import Supervisor


def _config(*endpoints: Endpoint, **kwargs: object) -> MonitorConfig:
    data: dict[str, object] = {
        "poll_interval": 0.05,
        "timeout": 1.0,
        "connection_retries": 1,
        "discovery_port": 0,
        "controllers": [{"host": e.host, "port": e.port} for e in endpoints],
    }
    data.update(kwargs)
    return MonitorConfig.from_dict(data)


def _beacon(endpoint: Endpoint) -> bytes:
    return socket.inet_aton(endpoint.host) + struct.pack("<H", endpoint.port)


async def _wait_for(predicate: Callable[[], bool], timeout: float = 3.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)


async def _name_prober(endpoint: Endpoint) -> str:
    return "SOLAR1"


@pytest.fixture
def classic(modbus_server: FakeModbusServer) -> FakeModbusServer:
    """Simulator loaded with a Classic and its logs."""
    modbus_server.load_classic()
    modbus_server.load_classic_logs()
    return modbus_server


class TestSupervisorLifecycle:
    """Tests for starting and stopping."""

    @pytest.mark.asyncio
    async def test_polls_configured_controllers(
        self, classic: FakeModbusServer, sink: RecordingSink
    ) -> None:
        """Test configured controllers are polled and events forwarded."""
        endpoint = classic.endpoint
        async with Supervisor(sink, _config(endpoint)) as supervisor:
            assert supervisor.is_running
            assert supervisor.controllers == [endpoint]
            await _wait_for(lambda: supervisor.is_reachable(endpoint))

            assert sink.readings[-1][0] == endpoint
            assert sink.readings[-1][1][RegisterName.BAT_VOLTAGE] == pytest.approx(24.1)
            assert (endpoint, True) in sink.reachable
            assert supervisor.listener is None
            poller = supervisor.poller(endpoint)

        assert not supervisor.is_running
        assert supervisor.controllers == []
        assert supervisor.is_reachable(endpoint) is False
        assert poller is not None
        assert poller.state is PollerState.STOPPED

    @pytest.mark.asyncio
    async def test_shared_cache(self, classic: FakeModbusServer, sink: RecordingSink) -> None:
        """Test pollers write their logs into the supervisor's cache."""
        endpoint = classic.endpoint
        async with Supervisor(sink, _config(endpoint)) as supervisor:
            await _wait_for(lambda: len(sink.toasts) >= 2)
            assert await supervisor.cache.contains(f"{endpoint.cache_name}_day")

    @pytest.mark.asyncio
    async def test_add_and_remove(self, classic: FakeModbusServer, sink: RecordingSink) -> None:
        """Test adding is idempotent and removing stops the poller."""
        endpoint = classic.endpoint
        async with Supervisor(sink, _config()) as supervisor:
            poller = await supervisor.add_controller(
                ControllerConfig(host=endpoint.host, port=endpoint.port)
            )
            assert await supervisor.add_controller(endpoint) is poller
            await _wait_for(lambda: supervisor.is_reachable(endpoint))

            assert await supervisor.remove_controller(endpoint) is True
            assert await supervisor.remove_controller(endpoint) is False
            assert supervisor.controllers == []
            assert supervisor.is_reachable(endpoint) is False
            assert poller.state is PollerState.STOPPED

    @pytest.mark.asyncio
    async def test_add_before_start(self, classic: FakeModbusServer, sink: RecordingSink) -> None:
        """Test a controller added before start begins polling on start."""
        supervisor = Supervisor(sink, _config())
        poller = await supervisor.add_controller(classic.endpoint)
        assert not poller.is_running

        await supervisor.start()
        try:
            assert poller.is_running
        finally:
            await supervisor.stop()


class TestSupervisorDiscovery:
    """Tests for discovery integration."""

    @pytest.mark.asyncio
    async def test_auto_add(self, classic: FakeModbusServer, sink: RecordingSink) -> None:
        """Test a discovered controller is polled when auto-add is on."""
        config = _config(discovery_enabled=True, auto_add_discovered=True)
        async with Supervisor(sink, config, prober=_name_prober) as supervisor:
            assert supervisor.listener is not None
            supervisor.listener.handle_beacon(_beacon(classic.endpoint))

            await _wait_for(lambda: classic.endpoint in supervisor.controllers)
            assert sink.found == [(classic.endpoint, "SOLAR1")]
            await _wait_for(lambda: supervisor.is_reachable(classic.endpoint))

    @pytest.mark.asyncio
    async def test_found_without_auto_add(
        self, classic: FakeModbusServer, sink: RecordingSink
    ) -> None:
        """Test discovery only reports when auto-add is off."""
        config = _config(discovery_enabled=True)
        async with Supervisor(sink, config, prober=_name_prober) as supervisor:
            assert supervisor.listener is not None
            supervisor.listener.handle_beacon(_beacon(classic.endpoint))
            await _wait_for(lambda: len(sink.found) == 1)
            await asyncio.sleep(0.05)
            assert supervisor.controllers == []


    @pytest.mark.asyncio
    async def test_monitored_controllers_not_probed(
        self, classic: FakeModbusServer, sink: RecordingSink
    ) -> None:
        """Test beacons from configured or added controllers are ignored."""
        probes: list[Endpoint] = []

        async def prober(endpoint: Endpoint) -> str:
            probes.append(endpoint)
            return "SOLAR1"

        added = Endpoint("127.0.0.1", 1)
        config = _config(classic.endpoint, discovery_enabled=True)
        async with Supervisor(sink, config, prober=prober) as supervisor:
            listener = supervisor.listener
            assert listener is not None
            await supervisor.add_controller(added)

            assert listener.handle_beacon(_beacon(classic.endpoint)) is None
            assert listener.handle_beacon(_beacon(added)) is None
            await asyncio.sleep(0.05)

        assert probes == []
        assert sink.found == []


class TestApplyConfig:
    """Tests for live reconfiguration."""

    @pytest.mark.asyncio
    async def test_controllers_added_and_removed(
        self, classic: FakeModbusServer, sink: RecordingSink
    ) -> None:
        """Test controllers follow the new list."""
        other = Endpoint("127.0.0.1", 1)
        async with Supervisor(sink, _config(other)) as supervisor:
            old_poller = supervisor.poller(other)
            await supervisor.apply_config(_config(classic.endpoint))

            assert supervisor.controllers == [classic.endpoint]
            assert old_poller is not None
            assert old_poller.state is PollerState.STOPPED

    @pytest.mark.asyncio
    async def test_timing_change_restarts(
        self, classic: FakeModbusServer, sink: RecordingSink
    ) -> None:
        """Test new timing settings replace the pollers."""
        async with Supervisor(sink, _config(classic.endpoint)) as supervisor:
            before = supervisor.poller(classic.endpoint)
            await supervisor.apply_config(_config(classic.endpoint))
            assert supervisor.poller(classic.endpoint) is before

            await supervisor.apply_config(_config(classic.endpoint, poll_interval=0.1))
            after = supervisor.poller(classic.endpoint)
            assert after is not before
            assert after is not None
            assert after.is_running

    @pytest.mark.asyncio
    async def test_discovery_toggled(self, sink: RecordingSink) -> None:
        """Test the listener follows the discovery setting."""
        async with Supervisor(sink, _config(), prober=_name_prober) as supervisor:
            assert supervisor.listener is None

            await supervisor.apply_config(_config(discovery_enabled=True))
            listener = supervisor.listener
            assert listener is not None
            assert listener.is_running

            await supervisor.apply_config(_config(discovery_enabled=True))
            assert supervisor.listener is listener

            await supervisor.apply_config(_config())
            assert supervisor.listener is None
            assert not listener.is_running
