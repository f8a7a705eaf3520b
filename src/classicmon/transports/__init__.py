"""Modbus/TCP transport for Classic and TriStar charge controllers.

This package provides the wire layer of the monitor:

- :mod:`.codec` - big-endian buffer readers/writers and the MBAP header
- :mod:`.messages` - Read Holding Registers and Read File Record PDUs
- :mod:`.modbus_tcp` - the TCP connection and its request/response cycle
- :mod:`.discovery` - device classification and identity probes

Example:
    from classicmon.transports import ModbusTCPTransport

    async with ModbusTCPTransport(host="192.168.1.50") as transport:
        registers = await transport.read_multiple_registers(4100, 4)
"""

from __future__ import annotations

from .codec import MessageReader, MessageWriter, Register
from .exceptions import (
    IOFailure,
    IOFailureKind,
    MalformedResponseError,
    ProtocolException,
    TransportClosedError,
    TransportConnectionError,
    TransportEOFError,
    TransportError,
    TransportTimeoutError,
)
from .messages import ReadFileTransferResponse, ReadMultipleRegistersResponse, RegisterBlock
from .modbus_tcp import ModbusTCPTransport

__all__ = [
    "IOFailure",
    "IOFailureKind",
    "MalformedResponseError",
    "MessageReader",
    "MessageWriter",
    "ModbusTCPTransport",
    "ProtocolException",
    "ReadFileTransferResponse",
    "ReadMultipleRegistersResponse",
    "Register",
    "RegisterBlock",
    "TransportClosedError",
    "TransportConnectionError",
    "TransportEOFError",
    "TransportError",
    "TransportTimeoutError",
]
