"""Device classification and identity probing.

This module tells a Classic from a TriStar and gathers the information the
monitor needs about a controller before it starts polling.

Classification probes the Classic's identification block first:

- ``read_multiple_registers(4100, 4)`` succeeds: the device is a Classic.
- It fails with a Modbus exception: ``read_multiple_registers(0, 4)`` is
  tried; success with a non-zero voltage scale means a TriStar.
- Neither: :class:`~classicmon.exceptions.ClassificationError`.

Socket failures are never treated as "not this family"; they propagate so
the caller reconnects.

Example:
    >>> transport = ModbusTCPTransport(host="192.168.1.50")
    >>> await transport.connect()
    >>> identity = await get_controller_identity(transport)
    >>> print(identity.device_type, identity.name)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from classicmon.constants import (
    CLASSIC_FIRMWARE_ADDRESS,
    CLASSIC_FIRMWARE_COUNT,
    CLASSIC_INFO_COUNT,
    CLASSIC_NOMINAL_BATTERY_ADDRESS,
    CLASSIC_PROBE_COUNT,
    CLASSIC_REFERENCE,
    CLASSIC_UNIT_NAME_ADDRESS,
    CLASSIC_UNIT_NAME_COUNT,
    DEFAULT_CONNECTION_RETRIES,
    DEFAULT_READ_TIMEOUT,
    TRISTAR_PROBE_COUNT,
    TRISTAR_REFERENCE,
    TRISTAR_UNIT_NAME,
    WHIZBANG_ADDRESS,
    WHIZBANG_PRESENT,
    WHIZBANG_PROBE_COUNT,
)
from classicmon.devices.models import (
    ControllerInfo,
    DeviceType,
    Endpoint,
    PerUnitScale,
    decode_unit_name,
)
from classicmon.exceptions import ClassificationError

from .exceptions import MalformedResponseError, ProtocolException
from .messages import RegisterBlock
from .modbus_tcp import ModbusTCPTransport

_LOGGER = logging.getLogger(__name__)


@dataclass
class ControllerIdentity:
    """What a discovery probe learns about a controller.

    Attributes:
        endpoint: Where the controller lives
        device_type: Classic or TriStar
        name: Unit name configured on a Classic, ``"Tristar"`` otherwise
        unit_id: Classic 32-bit unit id, 0 for a TriStar
        has_whizbang: Whether a WhizBangJr shunt is fitted
    """

    endpoint: Endpoint
    device_type: DeviceType
    name: str
    unit_id: int = 0
    has_whizbang: bool = False


async def classify_controller(transport: ModbusTCPTransport, info: ControllerInfo) -> DeviceType:
    """Determine the controller family and record it in ``info``.

    For a TriStar the per-unit scaling is read as part of the probe.

    Raises:
        ClassificationError: If neither probe identifies the device
        IOFailure: If the connection fails during probing
    """
    try:
        await transport.read_multiple_registers(CLASSIC_REFERENCE, CLASSIC_PROBE_COUNT)
    except ProtocolException as err:
        _LOGGER.debug("Classic probe rejected by %s: %s", info.endpoint, err)
    else:
        info.mark_classic(CLASSIC_REFERENCE)
        _LOGGER.info("Classified %s as Classic", info.endpoint)
        return DeviceType.CLASSIC

    try:
        registers = await transport.read_multiple_registers(TRISTAR_REFERENCE, TRISTAR_PROBE_COUNT)
    except ProtocolException as err:
        raise ClassificationError(
            f"{info.endpoint} answered neither the Classic nor the TriStar probe: {err}"
        ) from err

    scale = PerUnitScale.from_registers(registers)
    if scale.v_pu == 0:
        raise ClassificationError(f"{info.endpoint} reported a zero TriStar voltage scale")

    info.mark_tristar(scale, TRISTAR_REFERENCE)
    _LOGGER.info(
        "Classified %s as TriStar (v_pu=%.4f, i_pu=%.4f)",
        info.endpoint,
        scale.v_pu,
        scale.i_pu,
    )
    return DeviceType.TRISTAR


async def detect_whizbang(transport: ModbusTCPTransport) -> bool:
    """Whether a WhizBangJr shunt is fitted to a Classic.

    A Modbus exception on the shunt block means the block is absent.
    """
    try:
        registers = await transport.read_multiple_registers(WHIZBANG_ADDRESS, WHIZBANG_PROBE_COUNT)
    except ProtocolException as err:
        _LOGGER.debug("No WhizBangJr block: %s", err)
        return False
    return registers[WHIZBANG_PRESENT].as_unsigned_short() != 0


async def _read_optional(
    transport: ModbusTCPTransport, address: int, count: int, what: str
) -> RegisterBlock | None:
    """Read a descriptive block, None if the firmware rejects it."""
    try:
        return await transport.read_multiple_registers(address, count)
    except MalformedResponseError:
        raise
    except ProtocolException as err:
        _LOGGER.debug("No %s at %d: %s", what, address, err)
        return None


async def read_unit_name(transport: ModbusTCPTransport) -> str:
    """Read the unit name configured on a Classic.

    Returns an empty string if the firmware rejects the name registers.
    """
    registers = await _read_optional(
        transport, CLASSIC_UNIT_NAME_ADDRESS, CLASSIC_UNIT_NAME_COUNT, "unit name"
    )
    return decode_unit_name(registers) if registers is not None else ""


async def read_classic_info(transport: ModbusTCPTransport, info: ControllerInfo) -> None:
    """Load the descriptive information of a Classic into ``info``.

    Reads the identification block (model, build date, MAC, unit id, last
    VOC), the nominal battery voltage, the firmware versions, the unit name
    and WhizBangJr presence. Only the identification block is required; the
    other fields stay empty when the firmware rejects their registers.
    """
    info.apply_info_block(
        await transport.read_multiple_registers(CLASSIC_REFERENCE, CLASSIC_INFO_COUNT)
    )
    nominal = await _read_optional(
        transport, CLASSIC_NOMINAL_BATTERY_ADDRESS, 1, "nominal battery voltage"
    )
    if nominal is not None:
        info.nominal_battery_volts = nominal[0].as_unsigned_short()
    firmware = await _read_optional(
        transport, CLASSIC_FIRMWARE_ADDRESS, CLASSIC_FIRMWARE_COUNT, "firmware versions"
    )
    if firmware is not None:
        info.apply_firmware_block(firmware)
    info.unit_name = await read_unit_name(transport)
    info.has_whizbang = await detect_whizbang(transport)

    _LOGGER.info(
        "%s: %s %r built %s, MAC %s, app %s, net %s, %dV nominal, WhizBangJr=%s",
        info.endpoint,
        info.model,
        info.unit_name,
        info.build_date,
        info.mac_address,
        info.app_version,
        info.net_version,
        info.nominal_battery_volts,
        info.has_whizbang,
    )


async def get_controller_identity(
    transport: ModbusTCPTransport,
    endpoint: Endpoint | None = None,
) -> ControllerIdentity:
    """Classify a connected controller and read its name and unit id.

    Raises:
        ClassificationError: If the device is neither a Classic nor a TriStar
        IOFailure: If the connection fails
    """
    if endpoint is None:
        endpoint = Endpoint(transport.host, transport.port, transport.unit_id)
    info = ControllerInfo(endpoint)
    device_type = await classify_controller(transport, info)

    if device_type is DeviceType.TRISTAR:
        return ControllerIdentity(endpoint, device_type, TRISTAR_UNIT_NAME)

    info.apply_info_block(
        await transport.read_multiple_registers(CLASSIC_REFERENCE, CLASSIC_INFO_COUNT)
    )
    name = await read_unit_name(transport)
    has_whizbang = await detect_whizbang(transport)
    return ControllerIdentity(endpoint, device_type, name, info.unit_id, has_whizbang)


async def probe_controller(
    endpoint: Endpoint,
    *,
    timeout: float = DEFAULT_READ_TIMEOUT,
    connection_retries: int = DEFAULT_CONNECTION_RETRIES,
) -> ControllerIdentity:
    """Open a short-lived connection to ``endpoint`` and identify it.

    The transport is always closed before returning.
    """
    transport = ModbusTCPTransport.from_endpoint(
        endpoint, timeout=timeout, connection_retries=connection_retries
    )
    try:
        await transport.connect()
        identity = await get_controller_identity(transport, endpoint)
    finally:
        await transport.close()

    _LOGGER.info(
        "Probed %s: %s %r (unit id %d)",
        endpoint,
        identity.device_type,
        identity.name,
        identity.unit_id,
    )
    return identity


__all__ = [
    "ControllerIdentity",
    "classify_controller",
    "detect_whizbang",
    "get_controller_identity",
    "probe_controller",
    "read_classic_info",
    "read_unit_name",
]
