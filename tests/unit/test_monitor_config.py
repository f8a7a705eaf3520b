"""Unit tests for monitor configuration."""

from __future__ import annotations

import json
from ipaddress import IPv4Address
from pathlib import Path

import pytest

from classicmon.config import ControllerConfig, MonitorConfig
from classicmon.devices.models import Endpoint
from classicmon.exceptions import ConfigError


class TestControllerConfig:
    """Tests for ControllerConfig."""

    def test_defaults(self) -> None:
        """Test default port and unit id."""
        controller = ControllerConfig(host=IPv4Address("192.168.1.50"))
        assert controller.endpoint() == Endpoint("192.168.1.50", 502, 1)

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("192.168.1.50", Endpoint("192.168.1.50", 502)),
            ("192.168.1.51:503", Endpoint("192.168.1.51", 503)),
            (" 10.0.0.7 ", Endpoint("10.0.0.7", 502)),
        ],
    )
    def test_parse_host(self, value: str, expected: Endpoint) -> None:
        """Test host and host:port forms."""
        assert ControllerConfig.parse_host(value).endpoint() == expected

    @pytest.mark.parametrize("value", ["classic.local", "192.168.1.50:0", "192.168.1.50:x", ""])
    def test_parse_host_invalid(self, value: str) -> None:
        """Test invalid addresses raise ConfigError."""
        with pytest.raises(ConfigError):
            ControllerConfig.parse_host(value)


class TestMonitorConfig:
    """Tests for MonitorConfig."""

    def test_defaults(self) -> None:
        """Test default settings."""
        config = MonitorConfig()
        assert config.poll_interval == 1.0
        assert config.timeout == 3.0
        assert config.log_retry_delay == 300.0
        assert config.discovery_port == 4626
        assert config.discovery_enabled is False
        assert config.endpoints() == []

    def test_from_dict(self) -> None:
        """Test controllers given as mappings."""
        config = MonitorConfig.from_dict(
            {"poll_interval": 5, "controllers": [{"host": "192.168.1.50", "unit_id": 10}]}
        )
        assert config.poll_interval == 5.0
        assert config.endpoints() == [Endpoint("192.168.1.50", 502, 10)]

    @pytest.mark.parametrize(
        "data",
        [
            {"poll_interval": 0},
            {"timeout": -1},
            {"controllers": [{"host": "192.168.1.50", "port": 70000}]},
            {"unknown_setting": True},
        ],
    )
    def test_from_dict_invalid(self, data: dict[str, object]) -> None:
        """Test validation failures raise ConfigError."""
        with pytest.raises(ConfigError):
            MonitorConfig.from_dict(data)

    def test_from_file(self, tmp_path: Path) -> None:
        """Test loading a JSON file."""
        path = tmp_path / "classicmon.json"
        path.write_text(
            json.dumps({"discovery_enabled": True, "cache_dir": str(tmp_path / "cache")}),
            encoding="utf-8",
        )
        config = MonitorConfig.from_file(path)
        assert config.discovery_enabled is True
        assert config.cache_dir == tmp_path / "cache"

    def test_from_file_errors(self, tmp_path: Path) -> None:
        """Test missing, malformed and non-object files."""
        with pytest.raises(ConfigError):
            MonitorConfig.from_file(tmp_path / "missing.json")
        bad = tmp_path / "bad.json"
        bad.write_text("{", encoding="utf-8")
        with pytest.raises(ConfigError):
            MonitorConfig.from_file(bad)
        array = tmp_path / "array.json"
        array.write_text("[]", encoding="utf-8")
        with pytest.raises(ConfigError):
            MonitorConfig.from_file(array)

    def test_from_env(self) -> None:
        """Test environment variables."""
        config = MonitorConfig.from_env(
            {
                "CLASSICMON_HOSTS": "192.168.1.50, 192.168.1.51:503,",
                "CLASSICMON_POLL_INTERVAL": "2.5",
                "CLASSICMON_TIMEOUT": "4",
                "CLASSICMON_DISCOVERY": "Yes",
                "CLASSICMON_CACHE_DIR": "/var/cache/classicmon",
            }
        )
        assert config.endpoints() == [
            Endpoint("192.168.1.50", 502),
            Endpoint("192.168.1.51", 503),
        ]
        assert config.poll_interval == 2.5
        assert config.timeout == 4.0
        assert config.discovery_enabled is True
        assert config.cache_dir == Path("/var/cache/classicmon")

    def test_from_env_overlays_base(self) -> None:
        """Test unset variables keep the base values."""
        base = MonitorConfig.from_dict(
            {"poll_interval": 10, "controllers": [{"host": "10.0.0.7"}]}
        )
        config = MonitorConfig.from_env({"CLASSICMON_DISCOVERY": "off"}, base=base)
        assert config.poll_interval == 10.0
        assert config.endpoints() == [Endpoint("10.0.0.7")]
        assert config.discovery_enabled is False

    def test_from_env_invalid(self) -> None:
        """Test an invalid variable raises ConfigError."""
        with pytest.raises(ConfigError):
            MonitorConfig.from_env({"CLASSICMON_POLL_INTERVAL": "soon"})
