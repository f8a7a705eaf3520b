"""Unit tests for live readings decoding."""

from __future__ import annotations

import pytest
from conftest import CLASSIC_LIVE

from classicmon.devices.models import DeviceType, PerUnitScale
from classicmon.devices.readings import (
    UNITS,
    Readings,
    RegisterName,
    build_snapshot,
    charge_state_description,
    decode_classic_readings,
    decode_last_voc,
    decode_tristar_readings,
    decode_whizbang_readings,
)
from classicmon.transports.codec import Register
from classicmon.transports.exceptions import MalformedResponseError


def _block(size: int, values: dict[int, int]) -> list[Register]:
    return [Register(values.get(index, 0) & 0xFFFF) for index in range(size)]


def _classic_block(**overrides: int) -> list[Register]:
    values = dict(CLASSIC_LIVE)
    values.update({int(k.removeprefix("i")): v for k, v in overrides.items()})
    return _block(36, values)


class TestReadingsMapping:
    """Tests for the Readings snapshot type."""

    def test_cleared(self) -> None:
        """Test the disconnected snapshot."""
        readings = Readings.cleared()
        assert set(readings) == set(RegisterName)
        assert readings[RegisterName.CONNECTION_STATE] == 0
        assert readings[RegisterName.CHARGE_STATE] == -1
        assert readings.is_connected is False

    def test_immutable(self) -> None:
        """Test snapshots cannot be mutated."""
        readings = Readings({RegisterName.SOC: 87})
        with pytest.raises(TypeError):
            readings[RegisterName.SOC] = 50  # type: ignore[index]

    def test_equality(self) -> None:
        """Test value equality with readings and mappings."""
        readings = Readings({RegisterName.SOC: 87})
        assert readings == Readings({RegisterName.SOC: 87})
        assert readings == {RegisterName.SOC: 87}
        assert hash(readings) == hash(Readings({RegisterName.SOC: 87}))

    def test_string_keys_normalised(self) -> None:
        """Test reading names given as strings are accepted."""
        readings = Readings({"BatVoltage": 24.1})  # type: ignore[dict-item]
        assert readings[RegisterName.BAT_VOLTAGE] == 24.1
        assert readings.as_dict() == {"BatVoltage": 24.1}

    def test_every_reading_has_a_unit(self) -> None:
        """Test the unit table covers every name."""
        assert set(UNITS) == set(RegisterName)


class TestClassicReadings:
    """Tests for the Classic live block decoder."""

    def test_scaling(self) -> None:
        """Test the sunny-afternoon block decodes to engineering units."""
        values = decode_classic_readings(_classic_block())
        assert values[RegisterName.BAT_VOLTAGE] == pytest.approx(24.1)
        assert values[RegisterName.PV_VOLTAGE] == pytest.approx(54.2)
        assert values[RegisterName.BAT_CURRENT] == pytest.approx(15.2)
        assert values[RegisterName.ENERGY_TODAY] == pytest.approx(3.7)
        assert values[RegisterName.POWER] == 450.0
        assert values[RegisterName.CHARGE_STATE] == 4
        assert values[RegisterName.PV_CURRENT] == pytest.approx(8.3)

    def test_signed_current_and_temperatures(self) -> None:
        """Test negative current and temperatures."""
        values = decode_classic_readings(_classic_block(i16=-52, i31=-105, i32=412, i33=385))
        assert values[RegisterName.BAT_CURRENT] == pytest.approx(-5.2)
        assert values[RegisterName.BAT_TEMPERATURE] == pytest.approx(-10.5)
        assert values[RegisterName.FET_TEMPERATURE] == pytest.approx(41.2)
        assert values[RegisterName.PCB_TEMPERATURE] == pytest.approx(38.5)

    def test_total_energy_and_flags(self) -> None:
        """Test 32-bit values and aux flags."""
        values = decode_classic_readings(_classic_block(i25=0x86A0, i26=0x0001, i28=0xC001, i29=2))
        assert values[RegisterName.TOTAL_ENERGY] == pytest.approx(10000.0)
        assert values[RegisterName.INFO_FLAGS_BITS] == 0x0002C001
        assert values[RegisterName.AUX1] is True
        assert values[RegisterName.AUX2] is True

    def test_aux_off(self) -> None:
        """Test clear aux bits."""
        values = decode_classic_readings(_classic_block(i28=0x0001))
        assert values[RegisterName.AUX1] is False
        assert values[RegisterName.AUX2] is False

    def test_last_voc(self) -> None:
        """Test last open-circuit voltage."""
        assert decode_last_voc(_classic_block()) == pytest.approx(72.0)

    def test_short_block(self) -> None:
        """Test a short block raises."""
        with pytest.raises(MalformedResponseError):
            decode_classic_readings(_block(20, {}))


class TestWhizbangReadings:
    """Tests for the WhizBangJr decoder."""

    def test_decode(self) -> None:
        """Test amp-hour counters, shunt temperature and SOC."""
        registers = _block(
            22,
            {
                4: 1200,
                5: 0,
                6: 0xFF38,
                7: 0xFFFF,
                8: 1000,
                9: 0,
                10: -52,
                11: 0x1E4B,
                12: 87,
                16: 300,
                20: 400,
            },
        )
        values = decode_whizbang_readings(registers)
        assert values[RegisterName.POSITIVE_AMP_HOURS] == 1200
        assert values[RegisterName.NEGATIVE_AMP_HOURS] == -200
        assert values[RegisterName.NET_AMP_HOURS] == 1000
        assert values[RegisterName.WHIZBANG_BAT_CURRENT] == pytest.approx(-5.2)
        assert values[RegisterName.BAT_CURRENT] == pytest.approx(-5.2)
        assert values[RegisterName.SHUNT_TEMPERATURE] == 25
        assert values[RegisterName.SOC] == 87
        assert values[RegisterName.REMAINING_AMP_HOURS] == 300
        assert values[RegisterName.TOTAL_AMP_HOURS] == 400


class TestTristarReadings:
    """Tests for the TriStar decoder."""

    def test_decode(self) -> None:
        """Test per-unit scaled values."""
        scale = PerUnitScale(v_pu=96.0, i_pu=80.0)
        registers = _block(
            80,
            {24: 8192, 27: 16384, 28: -4096, 29: 2048, 50: 5, 57: 1234, 58: 2000, 68: 3700},
        )
        values = decode_tristar_readings(registers, scale)
        assert values[RegisterName.BAT_VOLTAGE] == pytest.approx(24.0)
        assert values[RegisterName.PV_VOLTAGE] == pytest.approx(48.0)
        assert values[RegisterName.BAT_CURRENT] == pytest.approx(-10.0)
        assert values[RegisterName.PV_CURRENT] == pytest.approx(5.0)
        assert values[RegisterName.CHARGE_STATE] == 5
        assert values[RegisterName.TOTAL_ENERGY] == 1234.0
        assert values[RegisterName.POWER] == pytest.approx(2000 * 96 * 80 / 131072)
        assert values[RegisterName.ENERGY_TODAY] == pytest.approx(3.7)


class TestSnapshot:
    """Tests for snapshot assembly."""

    def test_build_snapshot(self) -> None:
        """Test later parts win and connection state is set."""
        snapshot = build_snapshot(
            {RegisterName.BAT_CURRENT: 15.2},
            {RegisterName.BAT_CURRENT: -5.2},
            bidirectional=True,
        )
        assert set(snapshot) == set(RegisterName)
        assert snapshot[RegisterName.BAT_CURRENT] == -5.2
        assert snapshot[RegisterName.CONNECTION_STATE] == 1
        assert snapshot[RegisterName.BI_DIRECTIONAL] is True
        assert snapshot.is_connected is True

    @pytest.mark.parametrize(
        ("device_type", "code", "expected"),
        [
            (DeviceType.CLASSIC, 4, "Bulk MPPT"),
            (DeviceType.CLASSIC, -1, "Disconnected"),
            (DeviceType.TRISTAR, 5, "MPPT"),
            (DeviceType.CLASSIC, 99, "Unknown (99)"),
        ],
    )
    def test_charge_state_description(
        self, device_type: DeviceType, code: int, expected: str
    ) -> None:
        """Test charge-state text per family."""
        assert charge_state_description(device_type, code) == expected
