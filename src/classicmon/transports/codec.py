"""Byte buffer codec for Modbus/TCP frames.

Pure helpers with no I/O: fixed-size big-endian readers and writers over a
bounded buffer, the MBAP header layout, and the :class:`Register` value type.
All packed byte/word unpacking used elsewhere in the package goes through
this module.

MBAP header (7 bytes including the unit id)::

    +---------+----------+--------+------+
    | txn (2) | proto(2) | len(2) | unit |
    +---------+----------+--------+------+

``len`` counts the unit id, the function code and the PDU data.
"""

from __future__ import annotations

import struct
from typing import NamedTuple

from .exceptions import MalformedResponseError

# MBAP header (6) + unit id (1) + maximum PDU (253)
MAX_MESSAGE_LENGTH = 260
MBAP_HEADER_LENGTH = 6
MODBUS_PROTOCOL_ID = 0

_HEADER = struct.Struct(">HHH")
_U8 = struct.Struct(">B")
_S8 = struct.Struct(">b")
_U16 = struct.Struct(">H")
_S16 = struct.Struct(">h")
_U32 = struct.Struct(">I")
_S32 = struct.Struct(">i")


def signed_short(hi: int, lo: int) -> int:
    """Interpret two bytes (big-endian) as a signed 16-bit integer.

    Args:
        hi: High byte (0-255)
        lo: Low byte (0-255)

    Returns:
        Two's-complement value in -32768..32767
    """
    value = ((hi & 0xFF) << 8) | (lo & 0xFF)
    return value - 0x10000 if value & 0x8000 else value


def unsigned_short(hi: int, lo: int) -> int:
    """Interpret two bytes (big-endian) as an unsigned 16-bit integer."""
    return ((hi & 0xFF) << 8) | (lo & 0xFF)


def to_signed16(value: int) -> int:
    """Reinterpret a 0..65535 register value as signed 16-bit."""
    value &= 0xFFFF
    return value - 0x10000 if value & 0x8000 else value


def to_signed32(value: int) -> int:
    """Reinterpret a 0..2^32-1 value as signed 32-bit."""
    value &= 0xFFFFFFFF
    return value - 0x100000000 if value & 0x80000000 else value


def join_words(hi: int, lo: int) -> int:
    """Assemble a 32-bit value from two 16-bit registers, ``(hi << 16) | lo``."""
    return ((hi & 0xFFFF) << 16) | (lo & 0xFFFF)


class Register:
    """A single 16-bit Modbus register value.

    Registers are stored unsigned; the projections give the signed view and
    the raw wire bytes.

    Example:
        >>> reg = Register(0xFFFE)
        >>> reg.as_unsigned_short()
        65534
        >>> reg.as_signed_short()
        -2
        >>> reg.as_bytes()
        b'\\xff\\xfe'
    """

    __slots__ = ("_value",)

    def __init__(self, value: int) -> None:
        if not 0 <= value <= 0xFFFF:
            raise ValueError(f"Register value out of range: {value}")
        self._value = value

    @classmethod
    def from_bytes(cls, hi: int, lo: int) -> Register:
        """Build a register from its two wire bytes."""
        return cls(unsigned_short(hi, lo))

    def as_unsigned_short(self) -> int:
        """Get the value as 0..65535."""
        return self._value

    def as_signed_short(self) -> int:
        """Get the value as -32768..32767."""
        return to_signed16(self._value)

    def as_bytes(self) -> bytes:
        """Get the two bytes in wire order (high byte first)."""
        return _U16.pack(self._value)

    def as_swapped_short(self) -> int:
        """Get the value with its bytes swapped, as signed 16-bit.

        The Classic stores samples inside file-transfer records low byte
        first.
        """
        hi, lo = self.as_bytes()
        return signed_short(lo, hi)

    def __int__(self) -> int:
        return self._value

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Register):
            return self._value == other._value
        if isinstance(other, int):
            return self._value == other
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._value)

    def __repr__(self) -> str:
        return f"Register(0x{self._value:04X})"


class MBAPHeader(NamedTuple):
    """Decoded Modbus Application Protocol header."""

    transaction_id: int
    protocol_id: int
    length: int


def encode_mbap_header(transaction_id: int, protocol_id: int, length: int) -> bytes:
    """Encode an MBAP header.

    Args:
        transaction_id: 16-bit transaction identifier
        protocol_id: 16-bit protocol identifier (0 for Modbus)
        length: Number of bytes following the header

    Returns:
        The 6 header bytes
    """
    return _HEADER.pack(transaction_id & 0xFFFF, protocol_id & 0xFFFF, length & 0xFFFF)


def decode_mbap_header(data: bytes | bytearray | memoryview) -> MBAPHeader:
    """Decode the first 6 bytes of ``data`` as an MBAP header.

    Raises:
        MalformedResponseError: If fewer than 6 bytes are given
    """
    if len(data) < MBAP_HEADER_LENGTH:
        raise MalformedResponseError(f"MBAP header truncated: {len(data)} bytes")
    return MBAPHeader(*_HEADER.unpack_from(data, 0))


class MessageWriter:
    """Writes big-endian fields into a fixed, reusable buffer.

    One writer belongs to one connection; :meth:`reset` rewinds it for the
    next frame so that writing a request does not allocate.
    """

    def __init__(self, capacity: int = MAX_MESSAGE_LENGTH) -> None:
        self._buffer = bytearray(capacity)
        self._position = 0

    @property
    def position(self) -> int:
        """Number of bytes written since the last reset."""
        return self._position

    def reset(self) -> None:
        """Rewind to the start of the buffer."""
        self._position = 0

    def _pack(self, fmt: struct.Struct, value: int) -> None:
        if self._position + fmt.size > len(self._buffer):
            raise ValueError(
                f"Message exceeds {len(self._buffer)} bytes writing {fmt.size} "
                f"bytes at offset {self._position}"
            )
        fmt.pack_into(self._buffer, self._position, value)
        self._position += fmt.size

    def write_u8(self, value: int) -> None:
        self._pack(_U8, value & 0xFF)

    def write_s8(self, value: int) -> None:
        self._pack(_S8, value)

    def write_u16(self, value: int) -> None:
        self._pack(_U16, value & 0xFFFF)

    def write_s16(self, value: int) -> None:
        self._pack(_S16, value)

    def write_u32(self, value: int) -> None:
        self._pack(_U32, value & 0xFFFFFFFF)

    def write_s32(self, value: int) -> None:
        self._pack(_S32, value)

    def write_bytes(self, data: bytes | bytearray | memoryview) -> None:
        end = self._position + len(data)
        if end > len(self._buffer):
            raise ValueError(f"Message exceeds {len(self._buffer)} bytes")
        self._buffer[self._position : end] = data
        self._position = end

    def patch_u16(self, offset: int, value: int) -> None:
        """Overwrite an already written 16-bit field (e.g. the MBAP length)."""
        _U16.pack_into(self._buffer, offset, value & 0xFFFF)

    def view(self) -> memoryview:
        """Get a view of the bytes written so far."""
        return memoryview(self._buffer)[: self._position]


class MessageReader:
    """Reads big-endian fields from a bounded region of a buffer.

    Reading past the end raises :class:`MalformedResponseError`, which is how
    a short PDU surfaces to callers.
    """

    def __init__(
        self,
        buffer: bytes | bytearray | memoryview,
        start: int = 0,
        end: int | None = None,
    ) -> None:
        self._buffer = buffer
        self._position = start
        self._end = len(buffer) if end is None else end

    @property
    def remaining(self) -> int:
        """Bytes left before the end of the region."""
        return self._end - self._position

    def _unpack(self, fmt: struct.Struct) -> int:
        if self._position + fmt.size > self._end:
            raise MalformedResponseError(
                f"Response truncated: need {fmt.size} bytes at offset "
                f"{self._position}, have {self.remaining}"
            )
        (value,) = fmt.unpack_from(self._buffer, self._position)
        self._position += fmt.size
        return int(value)

    def read_u8(self) -> int:
        return self._unpack(_U8)

    def read_s8(self) -> int:
        return self._unpack(_S8)

    def read_u16(self) -> int:
        return self._unpack(_U16)

    def read_s16(self) -> int:
        return self._unpack(_S16)

    def read_u32(self) -> int:
        return self._unpack(_U32)

    def read_s32(self) -> int:
        return self._unpack(_S32)

    def read_register(self) -> Register:
        return Register(self.read_u16())

    def skip(self, count: int) -> None:
        if self._position + count > self._end:
            raise MalformedResponseError(f"Cannot skip {count} bytes, have {self.remaining}")
        self._position += count


__all__ = [
    "MAX_MESSAGE_LENGTH",
    "MBAP_HEADER_LENGTH",
    "MODBUS_PROTOCOL_ID",
    "MBAPHeader",
    "MessageReader",
    "MessageWriter",
    "Register",
    "decode_mbap_header",
    "encode_mbap_header",
    "join_words",
    "signed_short",
    "to_signed16",
    "to_signed32",
    "unsigned_short",
]
