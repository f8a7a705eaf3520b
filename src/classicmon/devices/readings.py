"""Live readings and their decoders.

A :class:`Readings` snapshot maps every :class:`RegisterName` to one scalar
in a single canonical unit. Snapshots are value objects: the poller builds
a new one per cycle and never mutates a published snapshot.

Decoders take the raw register blocks returned by
:meth:`~classicmon.transports.modbus_tcp.ModbusTCPTransport.read_multiple_registers`
and return plain dictionaries that the poller merges into a snapshot.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping, Sequence
from enum import StrEnum
from types import MappingProxyType

from classicmon.constants import (
    AUX1_FLAG,
    AUX2_FLAG,
    CLASSIC_CHARGE_STATES,
    CLASSIC_REFERENCE,
    REG_BATTERY_CURRENT,
    REG_BATTERY_TEMPERATURE,
    REG_BATTERY_VOLTAGE,
    REG_CHARGE_STATE,
    REG_ENERGY_TODAY,
    REG_FET_TEMPERATURE,
    REG_INFO_FLAGS_HIGH,
    REG_INFO_FLAGS_LOW,
    REG_LAST_VOC,
    REG_PCB_TEMPERATURE,
    REG_POWER,
    REG_PV_CURRENT,
    REG_PV_VOLTAGE,
    REG_TOTAL_ENERGY_HIGH,
    REG_TOTAL_ENERGY_LOW,
    SHUNT_TEMPERATURE_OFFSET,
    TRISTAR_BATTERY_CURRENT,
    TRISTAR_BATTERY_VOLTAGE,
    TRISTAR_CHARGE_STATE,
    TRISTAR_CHARGE_STATES,
    TRISTAR_ENERGY_TODAY,
    TRISTAR_POWER,
    TRISTAR_PV_CURRENT,
    TRISTAR_PV_VOLTAGE,
    TRISTAR_TOTAL_ENERGY,
    WHIZBANG_BATTERY_CURRENT,
    WHIZBANG_NEGATIVE_AH_HIGH,
    WHIZBANG_NEGATIVE_AH_LOW,
    WHIZBANG_NET_AH_HIGH,
    WHIZBANG_NET_AH_LOW,
    WHIZBANG_POSITIVE_AH_HIGH,
    WHIZBANG_POSITIVE_AH_LOW,
    WHIZBANG_REMAINING_AH,
    WHIZBANG_SHUNT_TEMPERATURE,
    WHIZBANG_SOC,
    WHIZBANG_TOTAL_AH,
    offset_for,
)
from classicmon.transports.codec import Register, join_words, to_signed32
from classicmon.transports.exceptions import MalformedResponseError

from .models import DeviceType, PerUnitScale

ReadingValue = float | int | bool


class RegisterName(StrEnum):
    """Names of the values carried by a :class:`Readings` snapshot."""

    POWER = "Power"
    BAT_VOLTAGE = "BatVoltage"
    BAT_CURRENT = "BatCurrent"
    PV_VOLTAGE = "PVVoltage"
    PV_CURRENT = "PVCurrent"
    ENERGY_TODAY = "EnergyToday"
    TOTAL_ENERGY = "TotalEnergy"
    CHARGE_STATE = "ChargeState"
    CONNECTION_STATE = "ConnectionState"
    SOC = "SOC"
    AUX1 = "Aux1"
    AUX2 = "Aux2"
    BAT_TEMPERATURE = "BatTemperature"
    FET_TEMPERATURE = "FETTemperature"
    PCB_TEMPERATURE = "PCBTemperature"
    INFO_FLAGS_BITS = "InfoFlagsBits"
    POSITIVE_AMP_HOURS = "PositiveAmpHours"
    NEGATIVE_AMP_HOURS = "NegativeAmpHours"
    NET_AMP_HOURS = "NetAmpHours"
    SHUNT_TEMPERATURE = "ShuntTemperature"
    WHIZBANG_BAT_CURRENT = "WhizbangBatCurrent"
    REMAINING_AMP_HOURS = "RemainingAmpHours"
    TOTAL_AMP_HOURS = "TotalAmpHours"
    BI_DIRECTIONAL = "BiDirectional"


# Canonical unit of each reading
UNITS: dict[RegisterName, str] = {
    RegisterName.POWER: "W",
    RegisterName.BAT_VOLTAGE: "V",
    RegisterName.BAT_CURRENT: "A",
    RegisterName.PV_VOLTAGE: "V",
    RegisterName.PV_CURRENT: "A",
    RegisterName.ENERGY_TODAY: "kWh",
    RegisterName.TOTAL_ENERGY: "kWh",
    RegisterName.CHARGE_STATE: "",
    RegisterName.CONNECTION_STATE: "",
    RegisterName.SOC: "%",
    RegisterName.AUX1: "",
    RegisterName.AUX2: "",
    RegisterName.BAT_TEMPERATURE: "°C",
    RegisterName.FET_TEMPERATURE: "°C",
    RegisterName.PCB_TEMPERATURE: "°C",
    RegisterName.INFO_FLAGS_BITS: "",
    RegisterName.POSITIVE_AMP_HOURS: "Ah",
    RegisterName.NEGATIVE_AMP_HOURS: "Ah",
    RegisterName.NET_AMP_HOURS: "Ah",
    RegisterName.SHUNT_TEMPERATURE: "°C",
    RegisterName.WHIZBANG_BAT_CURRENT: "A",
    RegisterName.REMAINING_AMP_HOURS: "Ah",
    RegisterName.TOTAL_AMP_HOURS: "Ah",
    RegisterName.BI_DIRECTIONAL: "",
}

# Values published while a controller is not connected
_CLEARED: dict[RegisterName, ReadingValue] = {
    RegisterName.POWER: 0.0,
    RegisterName.BAT_VOLTAGE: 0.0,
    RegisterName.BAT_CURRENT: 0.0,
    RegisterName.PV_VOLTAGE: 0.0,
    RegisterName.PV_CURRENT: 0.0,
    RegisterName.ENERGY_TODAY: 0.0,
    RegisterName.TOTAL_ENERGY: 0.0,
    RegisterName.CHARGE_STATE: -1,
    RegisterName.CONNECTION_STATE: 0,
    RegisterName.SOC: 0,
    RegisterName.AUX1: False,
    RegisterName.AUX2: False,
    RegisterName.BAT_TEMPERATURE: 0.0,
    RegisterName.FET_TEMPERATURE: 0.0,
    RegisterName.PCB_TEMPERATURE: 0.0,
    RegisterName.INFO_FLAGS_BITS: 0,
    RegisterName.POSITIVE_AMP_HOURS: 0,
    RegisterName.NEGATIVE_AMP_HOURS: 0,
    RegisterName.NET_AMP_HOURS: 0,
    RegisterName.SHUNT_TEMPERATURE: 0,
    RegisterName.WHIZBANG_BAT_CURRENT: 0.0,
    RegisterName.REMAINING_AMP_HOURS: 0,
    RegisterName.TOTAL_AMP_HOURS: 0,
    RegisterName.BI_DIRECTIONAL: False,
}


class Readings(Mapping[RegisterName, ReadingValue]):
    """Immutable snapshot of one controller's live values.

    Example:
        >>> readings = Readings({RegisterName.BAT_VOLTAGE: 24.1})
        >>> readings[RegisterName.BAT_VOLTAGE]
        24.1
        >>> readings.get(RegisterName.SOC) is None
        True
    """

    __slots__ = ("_values",)

    def __init__(self, values: Mapping[RegisterName, ReadingValue] | None = None) -> None:
        self._values: Mapping[RegisterName, ReadingValue] = MappingProxyType(
            {RegisterName(name): value for name, value in (values or {}).items()}
        )

    @classmethod
    def cleared(cls) -> Readings:
        """Snapshot published when the controller is disconnected."""
        return cls(_CLEARED)

    @property
    def is_connected(self) -> bool:
        return self._values.get(RegisterName.CONNECTION_STATE) == 1

    def __getitem__(self, name: RegisterName) -> ReadingValue:
        return self._values[name]

    def __iter__(self) -> Iterator[RegisterName]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Readings):
            return dict(self._values) == dict(other._values)
        if isinstance(other, Mapping):
            return dict(self._values) == dict(other)
        return NotImplemented

    def __hash__(self) -> int:
        return hash(frozenset(self._values.items()))

    def __repr__(self) -> str:
        return f"Readings({dict(self._values)!r})"

    def as_dict(self) -> dict[str, ReadingValue]:
        """Plain dictionary keyed by reading name, for serialisation."""
        return {name.value: value for name, value in self._values.items()}


def _require(registers: Sequence[Register], count: int, block: str) -> None:
    if len(registers) < count:
        raise MalformedResponseError(
            f"{block} block needs {count} registers, got {len(registers)}"
        )


def decode_classic_readings(
    registers: Sequence[Register],
    reference: int = CLASSIC_REFERENCE,
) -> dict[RegisterName, ReadingValue]:
    """Decode the Classic live block read at ``reference``.

    Raises:
        MalformedResponseError: If the block is too short
    """
    _require(registers, offset_for(REG_PCB_TEMPERATURE, reference) + 1, "Classic readings")

    def unsigned(register: int) -> int:
        return registers[offset_for(register, reference)].as_unsigned_short()

    def signed(register: int) -> int:
        return registers[offset_for(register, reference)].as_signed_short()

    flags_low = unsigned(REG_INFO_FLAGS_LOW)
    return {
        RegisterName.BAT_VOLTAGE: unsigned(REG_BATTERY_VOLTAGE) / 10.0,
        RegisterName.PV_VOLTAGE: unsigned(REG_PV_VOLTAGE) / 10.0,
        RegisterName.BAT_CURRENT: signed(REG_BATTERY_CURRENT) / 10.0,
        RegisterName.ENERGY_TODAY: unsigned(REG_ENERGY_TODAY) / 10.0,
        RegisterName.POWER: float(unsigned(REG_POWER)),
        RegisterName.CHARGE_STATE: unsigned(REG_CHARGE_STATE) >> 8,
        RegisterName.PV_CURRENT: unsigned(REG_PV_CURRENT) / 10.0,
        RegisterName.TOTAL_ENERGY: join_words(
            unsigned(REG_TOTAL_ENERGY_HIGH), unsigned(REG_TOTAL_ENERGY_LOW)
        )
        / 10.0,
        RegisterName.INFO_FLAGS_BITS: join_words(unsigned(REG_INFO_FLAGS_HIGH), flags_low),
        RegisterName.AUX1: bool(flags_low & AUX1_FLAG),
        RegisterName.AUX2: bool(flags_low & AUX2_FLAG),
        RegisterName.BAT_TEMPERATURE: signed(REG_BATTERY_TEMPERATURE) / 10.0,
        RegisterName.FET_TEMPERATURE: signed(REG_FET_TEMPERATURE) / 10.0,
        RegisterName.PCB_TEMPERATURE: signed(REG_PCB_TEMPERATURE) / 10.0,
    }


def decode_last_voc(registers: Sequence[Register], reference: int = CLASSIC_REFERENCE) -> float:
    """Last PV open-circuit voltage from the Classic live block."""
    _require(registers, offset_for(REG_LAST_VOC, reference) + 1, "Classic readings")
    return registers[offset_for(REG_LAST_VOC, reference)].as_unsigned_short() / 10.0


def decode_whizbang_readings(registers: Sequence[Register]) -> dict[RegisterName, ReadingValue]:
    """Decode the WhizBangJr shunt block.

    The shunt's battery current also replaces ``BatCurrent`` since it
    measures the whole bank rather than the controller output.
    """
    _require(registers, WHIZBANG_TOTAL_AH + 1, "WhizBangJr")

    def pair(high: int, low: int) -> int:
        return join_words(
            registers[high].as_unsigned_short(), registers[low].as_unsigned_short()
        )

    battery_current = registers[WHIZBANG_BATTERY_CURRENT].as_signed_short() / 10.0
    shunt_raw = registers[WHIZBANG_SHUNT_TEMPERATURE].as_signed_short()
    return {
        RegisterName.POSITIVE_AMP_HOURS: pair(WHIZBANG_POSITIVE_AH_HIGH, WHIZBANG_POSITIVE_AH_LOW),
        RegisterName.NEGATIVE_AMP_HOURS: to_signed32(
            pair(WHIZBANG_NEGATIVE_AH_HIGH, WHIZBANG_NEGATIVE_AH_LOW)
        ),
        RegisterName.NET_AMP_HOURS: to_signed32(pair(WHIZBANG_NET_AH_HIGH, WHIZBANG_NET_AH_LOW)),
        RegisterName.WHIZBANG_BAT_CURRENT: battery_current,
        RegisterName.BAT_CURRENT: battery_current,
        RegisterName.SHUNT_TEMPERATURE: (shunt_raw & 0xFF) - SHUNT_TEMPERATURE_OFFSET,
        RegisterName.SOC: registers[WHIZBANG_SOC].as_unsigned_short(),
        RegisterName.REMAINING_AMP_HOURS: registers[WHIZBANG_REMAINING_AH].as_unsigned_short(),
        RegisterName.TOTAL_AMP_HOURS: registers[WHIZBANG_TOTAL_AH].as_unsigned_short(),
    }


def decode_tristar_readings(
    registers: Sequence[Register],
    scale: PerUnitScale,
) -> dict[RegisterName, ReadingValue]:
    """Decode the TriStar live block read at register 0."""
    _require(registers, TRISTAR_ENERGY_TODAY + 1, "TriStar readings")

    def raw(index: int) -> int:
        return registers[index].as_unsigned_short()

    return {
        RegisterName.BAT_VOLTAGE: scale.voltage(raw(TRISTAR_BATTERY_VOLTAGE)),
        RegisterName.PV_VOLTAGE: scale.voltage(raw(TRISTAR_PV_VOLTAGE)),
        RegisterName.BAT_CURRENT: scale.current(
            registers[TRISTAR_BATTERY_CURRENT].as_signed_short()
        ),
        RegisterName.PV_CURRENT: scale.current(raw(TRISTAR_PV_CURRENT)),
        RegisterName.TOTAL_ENERGY: float(raw(TRISTAR_TOTAL_ENERGY)),
        RegisterName.POWER: scale.power(raw(TRISTAR_POWER)),
        RegisterName.ENERGY_TODAY: scale.watt_hours(raw(TRISTAR_ENERGY_TODAY)),
        RegisterName.CHARGE_STATE: raw(TRISTAR_CHARGE_STATE),
    }


def build_snapshot(
    *parts: Mapping[RegisterName, ReadingValue],
    connected: bool = True,
    bidirectional: bool = False,
) -> Readings:
    """Merge decoded parts over the cleared defaults into one snapshot.

    Later parts win, so the WhizBangJr battery current overrides the
    Classic's own.
    """
    values: dict[RegisterName, ReadingValue] = dict(_CLEARED)
    for part in parts:
        values.update(part)
    values[RegisterName.CONNECTION_STATE] = 1 if connected else 0
    values[RegisterName.BI_DIRECTIONAL] = bidirectional
    return Readings(values)


def charge_state_description(device_type: DeviceType | None, code: int) -> str:
    """Human readable text for a charge-state code.

    Example:
        >>> charge_state_description(DeviceType.CLASSIC, 4)
        'Bulk MPPT'
    """
    table = TRISTAR_CHARGE_STATES if device_type is DeviceType.TRISTAR else CLASSIC_CHARGE_STATES
    return table.get(code, f"Unknown ({code})")


__all__ = [
    "UNITS",
    "ReadingValue",
    "Readings",
    "RegisterName",
    "build_snapshot",
    "charge_state_description",
    "decode_classic_readings",
    "decode_last_voc",
    "decode_tristar_readings",
    "decode_whizbang_readings",
]
