"""Typed Modbus request/response PDUs.

Only the two function codes the charge controllers need are implemented:

- ``0x03`` Read Holding Registers - live readings and device information.
- ``0x14`` Read File Record - the Classic's historical day/minute logs.

Requests write their PDU data (everything after the function code) into a
:class:`~classicmon.transports.codec.MessageWriter`. Responses are created
by :func:`create_response` from the function code of an incoming frame and
then parse the rest of the PDU from a
:class:`~classicmon.transports.codec.MessageReader`.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable, Iterator, Sequence
from typing import overload

from .codec import MessageReader, MessageWriter, Register
from .exceptions import MalformedResponseError

READ_HOLDING_REGISTERS = 0x03
READ_FILE_RECORD = 0x14
EXCEPTION_FLAG = 0x80

# Modbus caps FC 03 at 125 registers per request
MAX_READ_REGISTERS = 125

FILE_RECORD_REFERENCE_TYPE = 0x06
FILE_RECORD_SUBREQUEST_LENGTH = 7
FILE_TRANSFER_MAX_WORDS = 100


class RegisterBlock(Sequence[Register]):
    """Read-only block of registers returned by one Read Holding Registers.

    Integer indexing outside ``0..len - 1`` raises
    :class:`~classicmon.transports.exceptions.MalformedResponseError`
    instead of ``IndexError``. Slices return plain lists.
    """

    __slots__ = ("_registers",)

    def __init__(self, registers: Iterable[Register] = ()) -> None:
        self._registers = tuple(registers)

    def __len__(self) -> int:
        return len(self._registers)

    def __iter__(self) -> Iterator[Register]:
        return iter(self._registers)

    @overload
    def __getitem__(self, index: int) -> Register: ...

    @overload
    def __getitem__(self, index: slice) -> list[Register]: ...

    def __getitem__(self, index: int | slice) -> Register | list[Register]:
        if isinstance(index, slice):
            return list(self._registers[index])
        if not 0 <= index < len(self._registers):
            raise MalformedResponseError(
                f"Register index {index} outside block of {len(self._registers)}"
            )
        return self._registers[index]

    def __eq__(self, other: object) -> bool:
        if isinstance(other, RegisterBlock):
            return self._registers == other._registers
        if isinstance(other, (list, tuple)):
            return list(self._registers) == list(other)
        return NotImplemented

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return f"RegisterBlock({list(self._registers)!r})"


class ModbusRequest(ABC):
    """A request PDU."""

    function_code: int

    @abstractmethod
    def encode(self, writer: MessageWriter) -> None:
        """Write the PDU data (after the function code)."""


class ModbusResponse(ABC):
    """A response PDU."""

    function_code: int

    @abstractmethod
    def decode(self, reader: MessageReader) -> None:
        """Parse the PDU data (after the function code).

        Raises:
            MalformedResponseError: If the data does not match the layout
        """


class ReadMultipleRegistersRequest(ModbusRequest):
    """Read Holding Registers (0x03).

    PDU: ``[0x03, offset_hi, offset_lo, count_hi, count_lo]``
    """

    function_code = READ_HOLDING_REGISTERS

    def __init__(self, offset: int, count: int) -> None:
        if not 0 <= offset <= 0xFFFF:
            raise ValueError(f"Register offset out of range: {offset}")
        if not 1 <= count <= MAX_READ_REGISTERS:
            raise ValueError(f"Register count must be 1..{MAX_READ_REGISTERS}, got {count}")
        self.offset = offset
        self.count = count

    def encode(self, writer: MessageWriter) -> None:
        writer.write_u16(self.offset)
        writer.write_u16(self.count)

    def __repr__(self) -> str:
        return f"ReadMultipleRegistersRequest(offset={self.offset}, count={self.count})"


class ReadMultipleRegistersResponse(ModbusResponse):
    """Response to Read Holding Registers.

    PDU: ``[0x03, byte_count, reg0_hi, reg0_lo, ...]``
    """

    function_code = READ_HOLDING_REGISTERS

    def __init__(self) -> None:
        self._registers = RegisterBlock()

    def decode(self, reader: MessageReader) -> None:
        byte_count = reader.read_u8()
        if byte_count % 2 or byte_count != reader.remaining:
            raise MalformedResponseError(
                f"Register byte count {byte_count} does not match "
                f"{reader.remaining} data bytes"
            )
        self._registers = RegisterBlock(reader.read_register() for _ in range(byte_count // 2))

    @property
    def word_count(self) -> int:
        """Number of registers returned."""
        return len(self._registers)

    @property
    def registers(self) -> RegisterBlock:
        """All returned registers, in address order."""
        return self._registers

    def register(self, index: int) -> Register:
        """Get the register at ``index`` within the returned block.

        Raises:
            MalformedResponseError: If ``index`` is outside the block
        """
        return self._registers[index]

    def register_value(self, index: int) -> int:
        """Get the unsigned value of the register at ``index``."""
        return self.register(index).as_unsigned_short()


class ReadFileTransferRequest(ModbusRequest):
    """Read File Record (0x14) with a single sub-request.

    The Classic addresses a log column with a (file, category) pair; both
    travel in the file-number word, category in the high byte::

        [0x14, 0x07, 0x06, file_hi, file_lo, rec_hi, rec_lo, len_hi, len_lo]
    """

    function_code = READ_FILE_RECORD

    def __init__(
        self,
        offset: int,
        category: int,
        file: int,
        count: int = FILE_TRANSFER_MAX_WORDS,
    ) -> None:
        if not 0 <= offset <= 0xFFFF:
            raise ValueError(f"Record offset out of range: {offset}")
        if not 1 <= count <= FILE_TRANSFER_MAX_WORDS:
            raise ValueError(f"Record length must be 1..{FILE_TRANSFER_MAX_WORDS}, got {count}")
        self.offset = offset
        self.category = category
        self.file = file
        self.count = count

    @property
    def file_number(self) -> int:
        return ((self.category & 0xFF) << 8) | (self.file & 0xFF)

    def encode(self, writer: MessageWriter) -> None:
        writer.write_u8(FILE_RECORD_SUBREQUEST_LENGTH)
        writer.write_u8(FILE_RECORD_REFERENCE_TYPE)
        writer.write_u16(self.file_number)
        writer.write_u16(self.offset)
        writer.write_u16(self.count)

    def __repr__(self) -> str:
        return (
            f"ReadFileTransferRequest(offset={self.offset}, category={self.category}, "
            f"file={self.file}, count={self.count})"
        )


class ReadFileTransferResponse(ModbusResponse):
    """Response to Read File Record.

    PDU: ``[0x14, data_len, sub_len, 0x06, word0_hi, word0_lo, ...]`` where
    ``data_len == sub_len + 1`` and ``sub_len`` counts the reference type
    byte plus the record words.
    """

    function_code = READ_FILE_RECORD

    def __init__(self) -> None:
        self._registers: list[Register] = []

    def decode(self, reader: MessageReader) -> None:
        data_length = reader.read_u8()
        if data_length != reader.remaining:
            raise MalformedResponseError(
                f"File record data length {data_length} does not match "
                f"{reader.remaining} bytes"
            )
        if data_length == 0:
            self._registers = []
            return
        sub_length = reader.read_u8()
        if sub_length != data_length - 1 or sub_length < 1 or (sub_length - 1) % 2:
            raise MalformedResponseError(f"Bad file record length {sub_length}")
        reference_type = reader.read_u8()
        if reference_type != FILE_RECORD_REFERENCE_TYPE:
            raise MalformedResponseError(f"Bad file record reference type {reference_type}")
        self._registers = [reader.read_register() for _ in range((sub_length - 1) // 2)]

    def word_count(self) -> int:
        """Number of 16-bit words in the record."""
        return len(self._registers)

    def register(self, index: int) -> Register:
        """Get the word at ``index``.

        Raises:
            MalformedResponseError: If ``index`` is outside the record
        """
        if not 0 <= index < len(self._registers):
            raise MalformedResponseError(
                f"Record index {index} outside record of {len(self._registers)} words"
            )
        return self._registers[index]

    def sample(self, index: int) -> int:
        """Get the word at ``index`` decoded as a log sample (byte-swapped, signed)."""
        return self.register(index).as_swapped_short()


_RESPONSE_TYPES: dict[int, type[ModbusResponse]] = {
    READ_HOLDING_REGISTERS: ReadMultipleRegistersResponse,
    READ_FILE_RECORD: ReadFileTransferResponse,
}


def create_response(function_code: int) -> ModbusResponse:
    """Construct an empty response object for ``function_code``.

    Raises:
        MalformedResponseError: If the function code is not supported
    """
    response_type = _RESPONSE_TYPES.get(function_code)
    if response_type is None:
        raise MalformedResponseError(f"Unsupported function code 0x{function_code:02x}")
    return response_type()


__all__ = [
    "EXCEPTION_FLAG",
    "FILE_RECORD_REFERENCE_TYPE",
    "FILE_TRANSFER_MAX_WORDS",
    "MAX_READ_REGISTERS",
    "READ_FILE_RECORD",
    "READ_HOLDING_REGISTERS",
    "ModbusRequest",
    "ModbusResponse",
    "ReadFileTransferRequest",
    "ReadFileTransferResponse",
    "ReadMultipleRegistersRequest",
    "ReadMultipleRegistersResponse",
    "RegisterBlock",
    "create_response",
]
