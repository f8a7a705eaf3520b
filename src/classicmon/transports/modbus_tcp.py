"""Modbus/TCP transport implementation.

This module provides the ModbusTCPTransport class, which owns exactly one
TCP connection to one charge controller and speaks plain Modbus/TCP
(MBAP header + PDU, big-endian) using asyncio streams.

The transport also exposes the two protocol operations the controllers
need, :meth:`ModbusTCPTransport.read_multiple_registers` and
:meth:`ModbusTCPTransport.read_file_transfer`.

IMPORTANT: One Task Per Transport
---------------------------------
A transport is driven by a single task at a time (its poller, or a
short-lived discovery probe). Requests are serialised with a lock, but the
transaction counter and I/O buffers belong to the connection, so a
transport must never be shared between controllers.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING, TypeVar

from .codec import (
    MAX_MESSAGE_LENGTH,
    MBAP_HEADER_LENGTH,
    MODBUS_PROTOCOL_ID,
    MessageReader,
    MessageWriter,
    decode_mbap_header,
)
from .exceptions import (
    IOFailure,
    IOFailureKind,
    MalformedResponseError,
    ProtocolException,
    TransportClosedError,
    TransportConnectionError,
    TransportEOFError,
    TransportTimeoutError,
)
from .messages import (
    EXCEPTION_FLAG,
    FILE_TRANSFER_MAX_WORDS,
    ModbusRequest,
    ModbusResponse,
    ReadFileTransferRequest,
    ReadFileTransferResponse,
    ReadMultipleRegistersRequest,
    ReadMultipleRegistersResponse,
    RegisterBlock,
    create_response,
)

if TYPE_CHECKING:
    from classicmon.devices.models import Endpoint

_LOGGER = logging.getLogger(__name__)

# Default connection settings
DEFAULT_PORT = 502
DEFAULT_UNIT_ID = 1
DEFAULT_TIMEOUT = 3.0
DEFAULT_CONNECTION_RETRIES = 3

_ResponseT = TypeVar("_ResponseT", bound=ModbusResponse)


class ModbusTCPTransport:
    """Modbus/TCP client connection to a single charge controller.

    Maintains a 16-bit transaction counter, a socket-level read timeout and a
    retry count that applies only to connection establishment. Every socket
    failure is surfaced as an :class:`IOFailure` and drops the connection;
    :meth:`connect` may then be called again. After :meth:`close` the
    transport is finished and every operation raises
    :class:`TransportClosedError`.

    Example:
        transport = ModbusTCPTransport(host="192.168.1.50", port=502)
        await transport.connect()

        registers = await transport.read_multiple_registers(4100, 4)
        print(registers[0].as_unsigned_short())

        await transport.close()
    """

    transport_type: str = "modbus_tcp"

    def __init__(
        self,
        host: str,
        port: int = DEFAULT_PORT,
        unit_id: int = DEFAULT_UNIT_ID,
        timeout: float = DEFAULT_TIMEOUT,
        connection_retries: int = DEFAULT_CONNECTION_RETRIES,
        retry_delay: float = 1.0,
    ) -> None:
        """Initialize Modbus/TCP transport.

        Args:
            host: IP address or hostname of the controller
            port: TCP port (default 502)
            unit_id: Modbus unit ID (default 1)
            timeout: Connect and per-read timeout in seconds
            connection_retries: Number of connection attempts with backoff
            retry_delay: Delay before the first connection retry, doubles
                on each further attempt
        """
        self._host = host
        self._port = port
        self._unit_id = unit_id
        self._timeout = timeout
        self._connection_retries = max(1, connection_retries)
        self._retry_delay = retry_delay
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._lock = asyncio.Lock()
        self._transaction_id = 0
        self._closed = False
        # Per-connection frame buffers
        self._out = MessageWriter(MAX_MESSAGE_LENGTH)
        self._in = bytearray(MAX_MESSAGE_LENGTH)

    @classmethod
    def from_endpoint(cls, endpoint: Endpoint, **kwargs: float | int) -> ModbusTCPTransport:
        """Create a transport for an :class:`~classicmon.devices.models.Endpoint`."""
        return cls(
            host=endpoint.host,
            port=endpoint.port,
            unit_id=endpoint.unit_id,
            **kwargs,  # type: ignore[arg-type]
        )

    @property
    def host(self) -> str:
        """Get the controller host address."""
        return self._host

    @property
    def port(self) -> int:
        """Get the controller TCP port."""
        return self._port

    @property
    def unit_id(self) -> int:
        """Get the Modbus unit ID."""
        return self._unit_id

    @property
    def timeout(self) -> float:
        """Get the read timeout in seconds."""
        return self._timeout

    @timeout.setter
    def timeout(self, value: float) -> None:
        self._timeout = value

    @property
    def transaction_id(self) -> int:
        """Get the transaction ID of the last request sent."""
        return self._transaction_id

    @property
    def is_connected(self) -> bool:
        """Whether a TCP connection is currently open."""
        return self._writer is not None and not self._closed

    @property
    def is_closed(self) -> bool:
        """Whether :meth:`close` has been called."""
        return self._closed

    async def __aenter__(self) -> ModbusTCPTransport:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def connect(self) -> None:
        """Open the TCP connection, retrying with exponential backoff.

        Does nothing when already connected.

        Raises:
            TransportClosedError: If the transport was closed
            TransportConnectionError: If all connection attempts fail
        """
        if self._closed:
            raise TransportClosedError(f"Transport to {self._host}:{self._port} is closed")
        if self.is_connected:
            return

        last_error: Exception | None = None
        retry_delay = self._retry_delay

        for attempt in range(self._connection_retries):
            try:
                if attempt > 0:
                    _LOGGER.info(
                        "Connection retry %d/%d to %s:%s (waiting %.1fs)...",
                        attempt,
                        self._connection_retries - 1,
                        self._host,
                        self._port,
                        retry_delay,
                    )
                    await asyncio.sleep(retry_delay)
                    retry_delay *= 2

                self._reader, self._writer = await asyncio.wait_for(
                    asyncio.open_connection(self._host, self._port),
                    timeout=self._timeout,
                )
                _LOGGER.info(
                    "Modbus transport connected to %s:%s (unit %s)%s",
                    self._host,
                    self._port,
                    self._unit_id,
                    f" after {attempt} retries" if attempt > 0 else "",
                )
                return

            except TimeoutError as err:
                last_error = err
                _LOGGER.warning(
                    "Timeout connecting to %s:%s (attempt %d/%d)",
                    self._host,
                    self._port,
                    attempt + 1,
                    self._connection_retries,
                )
            except OSError as err:
                last_error = err
                _LOGGER.warning(
                    "Connection failed to %s:%s: %s (attempt %d/%d)",
                    self._host,
                    self._port,
                    err,
                    attempt + 1,
                    self._connection_retries,
                )

        if isinstance(last_error, TimeoutError):
            raise TransportConnectionError(
                f"Timeout connecting to {self._host}:{self._port} after "
                f"{self._connection_retries} attempts"
            ) from last_error
        raise TransportConnectionError(
            f"Failed to connect to {self._host}:{self._port} after "
            f"{self._connection_retries} attempts: {last_error}"
        ) from last_error

    async def close(self) -> None:
        """Close the connection for good. Safe to call more than once.

        Uses a timeout on ``wait_closed()`` so a wedged socket cannot hang
        the caller.
        """
        if self._closed:
            return
        self._closed = True
        writer = self._writer
        self._reader = None
        self._writer = None
        if writer is not None:
            writer.close()
            try:
                await asyncio.wait_for(writer.wait_closed(), timeout=self._timeout)
            except TimeoutError:
                _LOGGER.warning(
                    "Timeout waiting for connection close to %s:%s",
                    self._host,
                    self._port,
                )
            except OSError as err:
                _LOGGER.debug("Error closing connection to %s:%s: %s", self._host, self._port, err)
        _LOGGER.debug("Modbus transport closed for %s:%s", self._host, self._port)

    def _drop_connection(self) -> None:
        """Abandon the current socket after an I/O error; connect() may reopen it."""
        writer = self._writer
        self._reader = None
        self._writer = None
        if writer is not None:
            with contextlib.suppress(Exception):
                writer.close()

    def _next_transaction_id(self) -> int:
        self._transaction_id = (self._transaction_id + 1) & 0xFFFF
        return self._transaction_id

    async def write_message(self, request: ModbusRequest) -> None:
        """Frame ``request`` as an ADU and write it atomically.

        Raises:
            TransportClosedError: If not connected
            IOFailure: If the socket write fails
        """
        if self._writer is None:
            raise TransportClosedError(f"Not connected to {self._host}:{self._port}")

        out = self._out
        out.reset()
        out.write_u16(self._next_transaction_id())
        out.write_u16(MODBUS_PROTOCOL_ID)
        out.write_u16(0)  # length, patched below
        out.write_u8(self._unit_id)
        out.write_u8(request.function_code)
        request.encode(out)
        out.patch_u16(4, out.position - MBAP_HEADER_LENGTH)
        frame = bytes(out.view())

        try:
            self._writer.write(frame)
            await self._writer.drain()
        except OSError as err:
            _LOGGER.error("Socket error writing to %s:%s: %s", self._host, self._port, err)
            self._drop_connection()
            raise IOFailure(IOFailureKind.OTHER, f"Failed to write: {err}") from err

        _LOGGER.debug(
            "Sent transaction %d function 0x%02x to %s:%s: %s",
            self._transaction_id,
            request.function_code,
            self._host,
            self._port,
            frame.hex(),
        )

    async def _read_into(self, offset: int, count: int) -> None:
        """Read exactly ``count`` bytes into the input buffer at ``offset``."""
        if self._reader is None:
            raise TransportClosedError(f"Not connected to {self._host}:{self._port}")
        try:
            data = await asyncio.wait_for(self._reader.readexactly(count), timeout=self._timeout)
        except TimeoutError as err:
            _LOGGER.debug("Timeout reading response from %s:%s", self._host, self._port)
            self._drop_connection()
            raise TransportTimeoutError(
                f"Timeout reading response from {self._host}:{self._port}"
            ) from err
        except asyncio.IncompleteReadError as err:
            self._drop_connection()
            raise TransportEOFError(
                f"Premature end of stream from {self._host}:{self._port} "
                f"({len(err.partial)} of {count} bytes)"
            ) from err
        except OSError as err:
            self._drop_connection()
            raise IOFailure(IOFailureKind.OTHER, f"Failed to read: {err}") from err
        self._in[offset : offset + count] = data

    async def read_response(self) -> ModbusResponse:
        """Read one framed response and decode its PDU.

        Raises:
            TransportEOFError: If the stream ends before a full frame
            TransportTimeoutError: If a read exceeds the timeout
            IOFailure: On other socket errors or a transaction ID mismatch
            ProtocolException: If the controller sent an exception response
            MalformedResponseError: If the frame cannot be decoded
        """
        await self._read_into(0, MBAP_HEADER_LENGTH)
        header = decode_mbap_header(self._in)

        if header.protocol_id != MODBUS_PROTOCOL_ID or not (
            2 <= header.length <= MAX_MESSAGE_LENGTH - MBAP_HEADER_LENGTH
        ):
            # Stream framing can no longer be trusted
            self._drop_connection()
            raise MalformedResponseError(
                f"Bad MBAP header from {self._host}:{self._port}: "
                f"protocol={header.protocol_id} length={header.length}"
            )

        await self._read_into(MBAP_HEADER_LENGTH, header.length)
        end = MBAP_HEADER_LENGTH + header.length
        _LOGGER.debug(
            "Read transaction %d from %s:%s: %s",
            header.transaction_id,
            self._host,
            self._port,
            self._in[:end].hex(),
        )

        if header.transaction_id != self._transaction_id:
            self._drop_connection()
            raise IOFailure(
                IOFailureKind.OTHER,
                f"Transaction ID mismatch: expected {self._transaction_id}, "
                f"got {header.transaction_id}",
            )

        reader = MessageReader(self._in, MBAP_HEADER_LENGTH, end)
        reader.read_u8()  # unit id, gateways may rewrite it
        function_code = reader.read_u8()

        if function_code & EXCEPTION_FLAG:
            code = reader.read_u8() if reader.remaining else None
            raise ProtocolException(
                code,
                f"Modbus exception: function=0x{function_code:02x}, code={code}",
            )

        response = create_response(function_code)
        response.decode(reader)
        return response

    async def execute(self, request: ModbusRequest, response_type: type[_ResponseT]) -> _ResponseT:
        """Send ``request`` and return its response.

        Raises:
            TransportClosedError: If the transport is closed or not connected
            MalformedResponseError: If the response is for another function
        """
        if self._closed:
            raise TransportClosedError(f"Transport to {self._host}:{self._port} is closed")

        async with self._lock:
            await self.write_message(request)
            response = await self.read_response()

        if not isinstance(response, response_type):
            self._drop_connection()
            raise MalformedResponseError(
                f"Expected {response_type.__name__} for function "
                f"0x{request.function_code:02x}, got {type(response).__name__}"
            )
        return response

    async def read_multiple_registers(self, offset: int, count: int) -> RegisterBlock:
        """Read ``count`` holding registers starting at ``offset`` (0x03).

        Returns:
            Exactly ``count`` registers in address order; indexing past the
            block raises ``MalformedResponseError``

        Raises:
            MalformedResponseError: If the byte count is not ``2 * count``
        """
        response = await self.execute(
            ReadMultipleRegistersRequest(offset, count),
            ReadMultipleRegistersResponse,
        )
        if response.word_count != count:
            raise MalformedResponseError(
                f"Expected {count} registers at {offset}, got {response.word_count}"
            )
        return response.registers

    async def read_file_transfer(
        self,
        offset: int,
        category: int,
        file: int,
        count: int = FILE_TRANSFER_MAX_WORDS,
    ) -> ReadFileTransferResponse:
        """Read one block of a Classic log column via Read File Record (0x14).

        Args:
            offset: Record number (sample index) to start at
            category: Log column identifier
            file: Log file identifier (dailies or minutes)
            count: Maximum number of words to request

        Raises:
            TransportEOFError: If ``offset`` is past the end of the log and the
                controller closed the stream
        """
        return await self.execute(
            ReadFileTransferRequest(offset, category, file, count),
            ReadFileTransferResponse,
        )


__all__ = [
    "DEFAULT_CONNECTION_RETRIES",
    "DEFAULT_PORT",
    "DEFAULT_TIMEOUT",
    "DEFAULT_UNIT_ID",
    "ModbusTCPTransport",
]
