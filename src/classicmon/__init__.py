"""Monitor for Classic and TriStar solar charge controllers over Modbus/TCP.

Usage:
    Poll configured controllers and receive events:
        from classicmon import LoggingEventSink, MonitorConfig, Supervisor

        config = MonitorConfig.from_env()
        async with Supervisor(LoggingEventSink(), config):
            await asyncio.Event().wait()

    Talk to one controller directly:
        from classicmon.transports import ModbusTCPTransport
        from classicmon.transports.discovery import get_controller_identity

        async with ModbusTCPTransport("192.168.1.50") as transport:
            identity = await get_controller_identity(transport)
"""

from __future__ import annotations

from .cache import LogCache
from .config import ControllerConfig, MonitorConfig
from .devices import (
    ControllerInfo,
    DeviceType,
    Endpoint,
    LogCategory,
    LogEntry,
    Readings,
    RegisterName,
)
from .events import EventSink, LoggingEventSink, QueueEventSink, ToastMessage
from .exceptions import CacheMiss, ClassicMonitorError, ClassificationError, ConfigError
from .listener import DiscoveryListener
from .poller import ControllerPoller, PollerState
from .supervisor import Supervisor

__version__ = "0.1.0"
__all__ = [
    "CacheMiss",
    "ClassicMonitorError",
    "ClassificationError",
    "ConfigError",
    "ControllerConfig",
    "ControllerInfo",
    "ControllerPoller",
    "DeviceType",
    "DiscoveryListener",
    "Endpoint",
    "EventSink",
    "LogCache",
    "LogCategory",
    "LogEntry",
    "LoggingEventSink",
    "MonitorConfig",
    "PollerState",
    "QueueEventSink",
    "Readings",
    "RegisterName",
    "Supervisor",
    "ToastMessage",
]
