"""Register map and protocol constants for Classic and TriStar controllers.

Classic register numbers follow the controller documentation (1-based
"register numbers"); a value for register ``n`` read in a block starting at
``CLASSIC_REFERENCE`` sits at index ``n - CLASSIC_REFERENCE - 1``, see
:func:`offset_for`.

TriStar registers are 0-based addresses read from ``TRISTAR_REFERENCE``.
"""

from __future__ import annotations

# UDP port the Classic announces itself on
CLASSIC_UDP_PORT = 4626

DEFAULT_MODBUS_PORT = 502

# Default cadence and timeouts (seconds)
DEFAULT_POLL_INTERVAL = 1.0
DEFAULT_READ_TIMEOUT = 3.0
DEFAULT_CONNECTION_RETRIES = 3
DEFAULT_LOG_RETRY_DELAY = 300.0

# Discovery listener timing (seconds)
DISCOVERY_RECEIVE_TIMEOUT = 2.0
DISCOVERY_IDLE_SLEEP = 1.0

# ============================================================================
# Classic register map
# ============================================================================

CLASSIC_REFERENCE = 4100
CLASSIC_PROBE_COUNT = 4
CLASSIC_INFO_COUNT = 22
CLASSIC_READINGS_COUNT = 36

CLASSIC_UNIT_NAME_ADDRESS = 4209
CLASSIC_UNIT_NAME_COUNT = 4
CLASSIC_NOMINAL_BATTERY_ADDRESS = 4244
CLASSIC_FIRMWARE_ADDRESS = 16386
CLASSIC_FIRMWARE_COUNT = 4

# WhizBangJr shunt block
WHIZBANG_ADDRESS = 4360
WHIZBANG_PROBE_COUNT = 12
WHIZBANG_READINGS_COUNT = 22

# Device information, indices into the block read at CLASSIC_REFERENCE
INFO_MODEL = 0
INFO_BUILD_YEAR = 1
INFO_BUILD_MONTH_DAY = 2
INFO_MAC_LOW = 5
INFO_MAC_MID = 6
INFO_MAC_HIGH = 7
INFO_UNIT_ID_LOW = 10
INFO_UNIT_ID_HIGH = 11
INFO_LAST_VOC = 21

# Live readings, register numbers
REG_BATTERY_VOLTAGE = 4115
REG_PV_VOLTAGE = 4116
REG_BATTERY_CURRENT = 4117
REG_ENERGY_TODAY = 4118
REG_POWER = 4119
REG_CHARGE_STATE = 4120
REG_PV_CURRENT = 4121
REG_LAST_VOC = 4122
REG_TOTAL_ENERGY_LOW = 4126
REG_TOTAL_ENERGY_HIGH = 4127
REG_INFO_FLAGS_LOW = 4129
REG_INFO_FLAGS_HIGH = 4130
REG_BATTERY_TEMPERATURE = 4132
REG_FET_TEMPERATURE = 4133
REG_PCB_TEMPERATURE = 4134

AUX1_FLAG = 0x4000
AUX2_FLAG = 0x8000

# WhizBangJr, indices into the block read at WHIZBANG_ADDRESS
WHIZBANG_PRESENT = 10
WHIZBANG_POSITIVE_AH_LOW = 4
WHIZBANG_POSITIVE_AH_HIGH = 5
WHIZBANG_NEGATIVE_AH_LOW = 6
WHIZBANG_NEGATIVE_AH_HIGH = 7
WHIZBANG_NET_AH_LOW = 8
WHIZBANG_NET_AH_HIGH = 9
WHIZBANG_BATTERY_CURRENT = 10
WHIZBANG_SHUNT_TEMPERATURE = 11
WHIZBANG_SOC = 12
WHIZBANG_REMAINING_AH = 16
WHIZBANG_TOTAL_AH = 20

# Shunt temperature is reported with a +50 degC offset in its low byte
SHUNT_TEMPERATURE_OFFSET = 50

# ============================================================================
# TriStar register map
# ============================================================================

TRISTAR_REFERENCE = 0
TRISTAR_PROBE_COUNT = 4
TRISTAR_READINGS_COUNT = 80

TRISTAR_V_PU_HI = 0
TRISTAR_V_PU_LO = 1
TRISTAR_I_PU_HI = 2
TRISTAR_I_PU_LO = 3
TRISTAR_BATTERY_VOLTAGE = 24
TRISTAR_PV_VOLTAGE = 27
TRISTAR_BATTERY_CURRENT = 28
TRISTAR_PV_CURRENT = 29
TRISTAR_CHARGE_STATE = 50
TRISTAR_TOTAL_ENERGY = 57
TRISTAR_POWER = 58
TRISTAR_ENERGY_TODAY = 68

TRISTAR_UNIT_NAME = "Tristar"

# ============================================================================
# Historical logs (Read File Record)
# ============================================================================

DAILIES_FILE = 2
MINUTES_FILE = 3

DAY_LOG_ENTRIES = 365
MINUTES_PER_DAY = 1440
MINUTE_LOG_ENTRIES = MINUTES_PER_DAY

# ============================================================================
# Charge states
# ============================================================================

CLASSIC_CHARGE_STATES: dict[int, str] = {
    -1: "Disconnected",
    0: "Off",
    3: "Absorb",
    4: "Bulk MPPT",
    5: "Float",
    6: "Float MPPT",
    7: "Equalize",
    10: "HyperVOC",
    18: "Equalize MPPT",
}

TRISTAR_CHARGE_STATES: dict[int, str] = {
    -1: "Disconnected",
    0: "Start",
    1: "Night Check",
    2: "Disconnect",
    3: "Night",
    4: "Fault",
    5: "MPPT",
    6: "Absorption",
    7: "Float",
    8: "Equalize",
    9: "Slave",
}


def offset_for(register: int, reference: int = CLASSIC_REFERENCE) -> int:
    """Index of a Classic register number inside a block read at ``reference``.

    Example:
        >>> offset_for(4115)
        14
    """
    return register - reference - 1
