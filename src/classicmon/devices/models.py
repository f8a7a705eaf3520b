"""Device descriptors for Classic and TriStar charge controllers.

This module holds the identity side of the device model: where a controller
lives on the network (:class:`Endpoint`), which family it belongs to
(:class:`DeviceType`), the TriStar per-unit scaling constants
(:class:`PerUnitScale`) and the information gathered while classifying a
controller (:class:`ControllerInfo`).
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date
from enum import StrEnum

from classicmon.constants import (
    DEFAULT_MODBUS_PORT,
    INFO_BUILD_MONTH_DAY,
    INFO_BUILD_YEAR,
    INFO_LAST_VOC,
    INFO_MAC_HIGH,
    INFO_MAC_LOW,
    INFO_MAC_MID,
    INFO_MODEL,
    INFO_UNIT_ID_HIGH,
    INFO_UNIT_ID_LOW,
    TRISTAR_I_PU_HI,
    TRISTAR_I_PU_LO,
    TRISTAR_UNIT_NAME,
    TRISTAR_V_PU_HI,
    TRISTAR_V_PU_LO,
)
from classicmon.transports.codec import Register, join_words
from classicmon.transports.exceptions import MalformedResponseError


class DeviceType(StrEnum):
    """Charge controller family."""

    CLASSIC = "classic"
    TRISTAR = "tristar"


@dataclass(frozen=True)
class Endpoint:
    """Network address of one controller.

    Attributes:
        host: IPv4 address in dotted notation
        port: Modbus/TCP port
        unit_id: Modbus unit ID
    """

    host: str
    port: int = DEFAULT_MODBUS_PORT
    unit_id: int = 1

    @property
    def cache_name(self) -> str:
        """Key prefix used for this controller in the log cache."""
        return f"{self.host.replace('.', '_')}_{self.port}"

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class PerUnitScale:
    """TriStar Q16.16 per-unit scaling constants.

    The controller publishes ``v_pu`` in registers 0/1 and ``i_pu`` in
    registers 2/3 (whole part, then fraction over 65536). All voltages,
    currents and powers are scaled by them.
    """

    v_pu: float
    i_pu: float

    @classmethod
    def from_registers(cls, registers: Sequence[Register]) -> PerUnitScale:
        """Build the scale from the first four TriStar registers.

        Raises:
            MalformedResponseError: If fewer than four registers are given
        """
        if len(registers) < 4:
            raise MalformedResponseError(
                f"TriStar scaling needs 4 registers, got {len(registers)}"
            )
        v_pu = (
            registers[TRISTAR_V_PU_HI].as_unsigned_short()
            + registers[TRISTAR_V_PU_LO].as_unsigned_short() / 65536
        )
        i_pu = (
            registers[TRISTAR_I_PU_HI].as_unsigned_short()
            + registers[TRISTAR_I_PU_LO].as_unsigned_short() / 65536
        )
        return cls(v_pu=v_pu, i_pu=i_pu)

    def voltage(self, raw: int) -> float:
        return raw * self.v_pu / 32768

    def current(self, raw: int) -> float:
        return raw * self.i_pu / 32768

    def power(self, raw: int) -> float:
        return raw * self.v_pu * self.i_pu / 131072

    @staticmethod
    def watt_hours(raw: int) -> float:
        return raw / 1000


@dataclass
class ControllerInfo:
    """Information gathered while classifying a controller.

    Filled in by the classifier and treated as read-only once the poller
    enters its polling state. A TriStar never carries a WhizBangJr, model,
    build date, MAC or firmware versions.

    Attributes:
        endpoint: Where the controller lives
        device_type: Family, None until classified
        reference: Base register of the live readings block
        model: Model string, e.g. ``"Classic 150 (rev 2)"``
        build_date: Firmware build date
        mac_address: MAC address, colon separated upper-case hex
        app_version: Application firmware version
        net_version: Network firmware version
        nominal_battery_volts: Nominal battery bank voltage
        last_voc: Last measured PV open-circuit voltage
        has_whizbang: Whether a WhizBangJr shunt is fitted
        unit_id: Controller's 32-bit unit id (0 for a TriStar)
        unit_name: Name configured on the controller
        scale: TriStar per-unit scaling, None for a Classic
    """

    endpoint: Endpoint
    device_type: DeviceType | None = None
    reference: int = 0
    model: str = ""
    build_date: date | None = None
    mac_address: str = ""
    app_version: str = ""
    net_version: str = ""
    nominal_battery_volts: int = 0
    last_voc: float = 0.0
    has_whizbang: bool = False
    unit_id: int = 0
    unit_name: str = ""
    scale: PerUnitScale | None = field(default=None, repr=False)

    @property
    def is_classified(self) -> bool:
        return self.device_type is not None

    @property
    def is_classic(self) -> bool:
        return self.device_type is DeviceType.CLASSIC

    @property
    def is_tristar(self) -> bool:
        return self.device_type is DeviceType.TRISTAR

    def mark_classic(self, reference: int) -> None:
        """Record that the probe identified a Classic."""
        self.device_type = DeviceType.CLASSIC
        self.reference = reference
        self.scale = None

    def mark_tristar(self, scale: PerUnitScale, reference: int) -> None:
        """Record that the probe identified a TriStar, clearing Classic-only fields."""
        self.device_type = DeviceType.TRISTAR
        self.reference = reference
        self.scale = scale
        self.model = ""
        self.build_date = None
        self.mac_address = ""
        self.app_version = ""
        self.net_version = ""
        self.has_whizbang = False
        self.unit_id = 0
        self.unit_name = TRISTAR_UNIT_NAME

    def apply_info_block(self, registers: Sequence[Register]) -> None:
        """Decode the Classic information block read at its reference register.

        Raises:
            MalformedResponseError: If the block is shorter than expected
        """
        if len(registers) <= INFO_LAST_VOC:
            raise MalformedResponseError(
                f"Classic info block needs {INFO_LAST_VOC + 1} registers, got {len(registers)}"
            )
        self.model = decode_model(registers[INFO_MODEL])
        self.build_date = decode_build_date(
            registers[INFO_BUILD_YEAR], registers[INFO_BUILD_MONTH_DAY]
        )
        self.mac_address = decode_mac_address(
            registers[INFO_MAC_HIGH], registers[INFO_MAC_MID], registers[INFO_MAC_LOW]
        )
        self.unit_id = join_words(
            registers[INFO_UNIT_ID_HIGH].as_unsigned_short(),
            registers[INFO_UNIT_ID_LOW].as_unsigned_short(),
        )
        self.last_voc = registers[INFO_LAST_VOC].as_unsigned_short() / 10.0

    def apply_firmware_block(self, registers: Sequence[Register]) -> None:
        """Decode the four firmware registers (app low/high, net low/high)."""
        if len(registers) < 4:
            raise MalformedResponseError(
                f"Firmware block needs 4 registers, got {len(registers)}"
            )
        app = join_words(registers[1].as_unsigned_short(), registers[0].as_unsigned_short())
        net = join_words(registers[3].as_unsigned_short(), registers[2].as_unsigned_short())
        self.app_version = str(app)
        self.net_version = str(net)


def decode_model(register: Register) -> str:
    """Decode the model register: low byte is the model, high byte the revision.

    Example:
        >>> decode_model(Register(0x0105))
        'Classic 5 (rev 1)'
    """
    high, low = register.as_bytes()
    return f"Classic {low} (rev {high})"


def decode_build_date(year: Register, month_day: Register) -> date | None:
    """Decode the build year and packed month (high byte) / day (low byte).

    Returns None when the registers do not form a valid date.
    """
    month, day = month_day.as_bytes()
    try:
        return date(year.as_unsigned_short(), month, day)
    except ValueError:
        return None


def decode_mac_address(high: Register, mid: Register, low: Register) -> str:
    """Decode a MAC address stored in reverse word order."""
    data = high.as_bytes() + mid.as_bytes() + low.as_bytes()
    return ":".join(f"{byte:02X}" for byte in data)


def decode_unit_name(registers: Sequence[Register]) -> str:
    """Decode the unit name: ASCII, low byte first within each register."""
    data = bytearray()
    for register in registers:
        high, low = register.as_bytes()
        data.append(low)
        data.append(high)
    return data.decode("ascii", errors="replace").replace("\x00", "").strip()


__all__ = [
    "ControllerInfo",
    "DeviceType",
    "Endpoint",
    "PerUnitScale",
    "decode_build_date",
    "decode_mac_address",
    "decode_model",
    "decode_unit_name",
]
