"""Transport-specific exceptions.

This module provides exception classes for Modbus/TCP transport operations,
allowing the poller and discovery probes to tell apart failures that mean
"the connection is gone" from failures that mean "the device said no".

All transport exceptions inherit from
:class:`~classicmon.exceptions.ClassicMonitorError` so callers can use a
single ``except ClassicMonitorError`` around a whole poll cycle.

Two families exist:

- :class:`IOFailure` - the byte stream failed (timeout, EOF, closed, other).
  Recovered by reconnecting.
- :class:`ProtocolException` - a well-framed reply carried a Modbus exception
  code, or the reply could not be decoded (:class:`MalformedResponseError`).
"""

from __future__ import annotations

from enum import Enum

from classicmon.exceptions import ClassicMonitorError


class IOFailureKind(str, Enum):
    """Why a socket operation failed."""

    TIMEOUT = "timeout"
    EOF = "eof"
    CLOSED = "closed"
    OTHER = "other"


class TransportError(ClassicMonitorError):
    """Base exception for all transport errors."""

    pass


class IOFailure(TransportError):
    """Reading from or writing to the controller socket failed.

    Attributes:
        kind: Failure category, see :class:`IOFailureKind`
    """

    def __init__(self, kind: IOFailureKind, message: str = "") -> None:
        """Initialize with a failure kind.

        Args:
            kind: Failure category
            message: Human readable detail
        """
        self.kind = kind
        super().__init__(message or f"I/O failure ({kind.value})")


class TransportTimeoutError(IOFailure):
    """A socket read did not complete within the read timeout."""

    def __init__(self, message: str = "") -> None:
        super().__init__(IOFailureKind.TIMEOUT, message or "Timeout reading response")


class TransportEOFError(IOFailure):
    """The peer closed the stream before a full frame was read.

    While reading historical logs this is the device's end-of-log marker,
    not a broken connection.
    """

    def __init__(self, message: str = "") -> None:
        super().__init__(IOFailureKind.EOF, message or "Premature end of stream")


class TransportClosedError(IOFailure):
    """An operation was attempted on a closed or never-opened transport."""

    def __init__(self, message: str = "") -> None:
        super().__init__(IOFailureKind.CLOSED, message or "Transport is closed")


class TransportConnectionError(IOFailure):
    """Failed to connect to the device after all retries."""

    def __init__(self, message: str = "") -> None:
        super().__init__(IOFailureKind.OTHER, message or "Connection failed")


class ProtocolException(TransportError):
    """The controller answered with a Modbus exception response.

    Attributes:
        code: Modbus exception code, or None when the reply was malformed
    """

    def __init__(self, code: int | None, message: str = "") -> None:
        """Initialize with the Modbus exception code.

        Args:
            code: Exception code from the response PDU (None if malformed)
            message: Human readable detail
        """
        self.code = code
        super().__init__(message or f"Modbus exception response, code={code}")


class MalformedResponseError(ProtocolException):
    """A response could not be decoded.

    Raised for bad MBAP lengths, byte counts that disagree with the request,
    and register indices outside the returned block.
    """

    def __init__(self, message: str = "") -> None:
        super().__init__(None, message or "Malformed response")


__all__ = [
    "IOFailure",
    "IOFailureKind",
    "MalformedResponseError",
    "ProtocolException",
    "TransportClosedError",
    "TransportConnectionError",
    "TransportEOFError",
    "TransportError",
    "TransportTimeoutError",
]
