"""Pytest configuration and fixtures for classicmon tests.

Provides an in-process Modbus/TCP simulator that serves holding registers
and Classic file records over a real localhost socket, plus a recording
event sink.
"""

from __future__ import annotations

import asyncio
import contextlib
import struct
from collections.abc import AsyncGenerator
from datetime import datetime
from typing import Any

import pytest

from classicmon.devices.logs import LogEntry
from classicmon.devices.models import Endpoint
from classicmon.devices.readings import Readings

# Classic identification block: model 5 rev 1, built 2014-12-15
CLASSIC_IDENTIFICATION = [0x0105, 2014, 0x0C0F, 0]

# Classic live block (index -> raw) for a sunny afternoon
CLASSIC_LIVE = {
    14: 241,  # BatV 24.1
    15: 542,  # PVV 54.2
    16: 152,  # BatA 15.2
    17: 37,  # 3.7 kWh today
    18: 450,  # 450 W
    19: 0x0400,  # Bulk MPPT
    20: 83,  # PV 8.3 A
    21: 720,  # VOC 72.0
}


def encode_swapped(sample: int) -> bytes:
    """Encode one log sample the way the Classic puts it in a file record."""
    value = sample & 0xFFFF
    return bytes([value & 0xFF, value >> 8])


class FakeModbusServer:
    """Minimal Modbus/TCP server for tests.

    Unmapped holding registers read as 0. Read requests starting at an
    address in ``rejected`` get exception code 2 (illegal address). File
    records are served from ``file_records[(file, category)]`` in device
    order; a request past the end closes the connection like the Classic.
    """

    def __init__(self) -> None:
        self.registers: dict[int, int] = {}
        self.rejected: set[int] = set()
        self.file_records: dict[tuple[int, int], list[int]] = {}
        self.requests: list[tuple[Any, ...]] = []
        self.connections = 0
        self.stall_responses = 0
        self.transaction_offset = 0
        self.host = "127.0.0.1"
        self.port = 0
        self._server: asyncio.Server | None = None
        self._handlers: set[asyncio.Task[Any]] = set()

    @property
    def endpoint(self) -> Endpoint:
        return Endpoint(self.host, self.port)

    def set_registers(self, start: int, values: list[int]) -> None:
        for index, value in enumerate(values):
            self.registers[start + index] = value & 0xFFFF

    def load_classic(self, *, whizbang: bool = False, name: str = "SOLAR1") -> None:
        """Populate a Classic register map."""
        self.set_registers(4100, CLASSIC_IDENTIFICATION)
        for index, value in CLASSIC_LIVE.items():
            self.registers[4100 + index] = value
        # MAC 00:1A:2B:3C:4D:5E in reverse word order
        self.set_registers(4105, [0x4D5E, 0x2B3C, 0x001A])
        self.set_registers(4110, [0x5678, 0x1234])
        self.registers[4244] = 24
        self.set_registers(16386, [1849, 0, 2079, 0])
        raw = name.encode("ascii").ljust(8, b"\x00")[:8]
        self.set_registers(4209, [raw[i] | (raw[i + 1] << 8) for i in range(0, 8, 2)])
        if whizbang:
            self.set_registers(4364, [1200, 0, 0xFF38, 0xFFFF, 0x03E8, 0])
            self.registers[4370] = 0xFFCC  # -5.2 A
            self.registers[4371] = 75  # 25 degC
            self.registers[4372] = 87
            self.registers[4376] = 300
            self.registers[4380] = 400
        else:
            self.rejected.add(4360)

    def load_classic_logs(self, *, days: int = 300, minute_records: int = 60) -> None:
        """Populate the dailies and minutes files, most recent sample first."""
        for category in range(6):
            self.file_records[(2, category)] = list(range(days, 0, -1))
        # Half-hourly records ending at 14:30
        minutes = [(870 - 30 * i) % 1440 for i in range(minute_records)]
        self.file_records[(3, 16)] = [((m // 60) << 6) | (m % 60) for m in minutes]
        for category in range(18, 24):
            self.file_records[(3, category)] = list(range(minute_records, 0, -1))

    def file_reads(self, file: int) -> int:
        """Number of Read File Record requests made against ``file``."""
        return sum(1 for r in self.requests if r[0] == "file" and r[3] == file)

    def load_tristar(self, v_pu: tuple[int, int] = (96, 0), i_pu: tuple[int, int] = (79, 0)) -> None:
        """Populate a TriStar register map; the Classic block is rejected."""
        self.rejected.add(4100)
        self.set_registers(0, [*v_pu, *i_pu])

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._handle, self.host, 0)
        self.port = self._server.sockets[0].getsockname()[1]

    async def stop(self) -> None:
        if self._server is not None:
            self._server.close()
        handlers = list(self._handlers)
        for task in handlers:
            task.cancel()
        await asyncio.gather(*handlers, return_exceptions=True)
        if self._server is not None:
            await self._server.wait_closed()
            self._server = None

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._handlers.add(task)
        self.connections += 1
        try:
            while True:
                header = await reader.readexactly(7)
                txn, _, length, unit = struct.unpack(">HHHB", header)
                pdu = await reader.readexactly(length - 1)
                response = self._dispatch(pdu)
                if response is None:
                    break
                txn = (txn + self.transaction_offset) & 0xFFFF
                frame = struct.pack(">HHHB", txn, 0, len(response) + 1, unit) + response
                if self.stall_responses:
                    self.stall_responses -= 1
                    writer.write(frame[:6])
                    await writer.drain()
                    await asyncio.sleep(3600)
                writer.write(frame)
                await writer.drain()
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        finally:
            writer.close()
            with contextlib.suppress(Exception):
                await writer.wait_closed()
            if task is not None:
                self._handlers.discard(task)

    def _dispatch(self, pdu: bytes) -> bytes | None:
        function = pdu[0]
        if function == 0x03:
            offset, count = struct.unpack(">HH", pdu[1:5])
            self.requests.append(("read", offset, count))
            if offset in self.rejected:
                return bytes([0x83, 0x02])
            values = [self.registers.get(offset + i, 0) for i in range(count)]
            return bytes([0x03, count * 2]) + struct.pack(f">{count}H", *values)
        if function == 0x14:
            file_number, record, length = struct.unpack(">HHH", pdu[3:9])
            category, file = file_number >> 8, file_number & 0xFF
            self.requests.append(("file", record, category, file, length))
            samples = self.file_records.get((file, category))
            if samples is None:
                return bytes([0x94, 0x02])
            if record >= len(samples):
                return None
            words = b"".join(encode_swapped(s) for s in samples[record : record + length])
            sub_length = len(words) + 1
            return bytes([0x14, sub_length + 1, sub_length, 0x06]) + words
        return bytes([function | 0x80, 0x01])


class RecordingSink:
    """Event sink that records every call."""

    def __init__(self) -> None:
        self.readings: list[tuple[Endpoint, Readings]] = []
        self.logs: list[tuple[Endpoint, frozenset[int], LogEntry]] = []
        self.toasts: list[tuple[str, Endpoint | None]] = []
        self.found: list[tuple[Endpoint, str]] = []
        self.reachable: list[tuple[Endpoint, bool]] = []

    @property
    def event_count(self) -> int:
        return (
            len(self.readings)
            + len(self.logs)
            + len(self.toasts)
            + len(self.found)
            + len(self.reachable)
        )

    def on_readings(self, endpoint: Endpoint, readings: Readings) -> None:
        self.readings.append((endpoint, readings))

    def on_logs(self, endpoint: Endpoint, categories: frozenset[int], entry: LogEntry) -> None:
        self.logs.append((endpoint, categories, entry))

    def on_toast(self, message_key: str, endpoint: Endpoint | None = None) -> None:
        self.toasts.append((message_key, endpoint))

    def on_controller_found(self, endpoint: Endpoint, name: str) -> None:
        self.found.append((endpoint, name))

    def on_reachable(self, endpoint: Endpoint, reachable: bool) -> None:
        self.reachable.append((endpoint, reachable))


class FixedClock:
    """Injectable wall clock."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
async def modbus_server() -> AsyncGenerator[FakeModbusServer, None]:
    """Running Modbus/TCP simulator."""
    server = FakeModbusServer()
    await server.start()
    yield server
    await server.stop()


@pytest.fixture
def sink() -> RecordingSink:
    """Recording event sink."""
    return RecordingSink()


@pytest.fixture
def clock() -> FixedClock:
    """Clock fixed at 2024-06-15 14:30."""
    return FixedClock(datetime(2024, 6, 15, 14, 30))
