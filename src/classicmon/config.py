"""Monitor configuration.

Configuration is read from a JSON file, from ``CLASSICMON_*`` environment
variables, or built in code. It is validated with pydantic; any invalid
value raises :class:`~classicmon.exceptions.ConfigError`.

Example:
    >>> config = MonitorConfig.from_env({"CLASSICMON_HOSTS": "192.168.1.50,192.168.1.51:503"})
    >>> [str(c.endpoint()) for c in config.controllers]
    ['192.168.1.50:502', '192.168.1.51:503']
"""

from __future__ import annotations

import json
import os
from collections.abc import Mapping
from ipaddress import IPv4Address
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from classicmon.constants import (
    CLASSIC_UDP_PORT,
    DEFAULT_CONNECTION_RETRIES,
    DEFAULT_LOG_RETRY_DELAY,
    DEFAULT_MODBUS_PORT,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_READ_TIMEOUT,
)
from classicmon.devices.models import Endpoint
from classicmon.exceptions import ConfigError

ENV_PREFIX = "CLASSICMON_"
_TRUE_VALUES = {"1", "true", "yes", "on"}


class ControllerConfig(BaseModel):
    """One manually configured controller."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    host: IPv4Address
    port: int = Field(default=DEFAULT_MODBUS_PORT, ge=1, le=65535)
    unit_id: int = Field(default=1, ge=0, le=255)
    name: str | None = None

    def endpoint(self) -> Endpoint:
        return Endpoint(str(self.host), self.port, self.unit_id)

    @classmethod
    def parse_host(cls, value: str) -> ControllerConfig:
        """Build from ``host`` or ``host:port``.

        Raises:
            ConfigError: If the host or port is invalid
        """
        host, sep, port = value.strip().partition(":")
        data: dict[str, Any] = {"host": host}
        if sep:
            data["port"] = port
        try:
            return cls.model_validate(data)
        except ValidationError as err:
            raise ConfigError(f"Invalid controller address {value!r}: {err}") from err


class MonitorConfig(BaseModel):
    """Settings for a :class:`~classicmon.supervisor.Supervisor`."""

    model_config = ConfigDict(extra="forbid")

    poll_interval: float = Field(default=DEFAULT_POLL_INTERVAL, gt=0)
    timeout: float = Field(default=DEFAULT_READ_TIMEOUT, gt=0)
    connection_retries: int = Field(default=DEFAULT_CONNECTION_RETRIES, ge=1)
    log_retry_delay: float = Field(default=DEFAULT_LOG_RETRY_DELAY, ge=0)
    discovery_enabled: bool = False
    discovery_port: int = Field(default=CLASSIC_UDP_PORT, ge=0, le=65535)
    auto_add_discovered: bool = False
    cache_dir: Path | None = None
    controllers: list[ControllerConfig] = Field(default_factory=list)

    def endpoints(self) -> list[Endpoint]:
        return [controller.endpoint() for controller in self.controllers]

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> MonitorConfig:
        """Validate a plain mapping.

        Raises:
            ConfigError: If validation fails
        """
        try:
            return cls.model_validate(dict(data))
        except ValidationError as err:
            raise ConfigError(f"Invalid configuration: {err}") from err

    @classmethod
    def from_file(cls, path: Path | str) -> MonitorConfig:
        """Load a JSON configuration file.

        Raises:
            ConfigError: If the file cannot be read or is invalid
        """
        path = Path(path)
        try:
            with path.open(encoding="utf-8") as handle:
                data = json.load(handle)
        except (OSError, ValueError) as err:
            raise ConfigError(f"Cannot read configuration {path}: {err}") from err
        if not isinstance(data, dict):
            raise ConfigError(f"Configuration {path} must be a JSON object")
        return cls.from_dict(data)

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        base: MonitorConfig | None = None,
    ) -> MonitorConfig:
        """Apply ``CLASSICMON_*`` variables on top of ``base``.

        Recognised variables: ``CLASSICMON_HOSTS`` (comma separated
        ``host[:port]``), ``CLASSICMON_POLL_INTERVAL``, ``CLASSICMON_TIMEOUT``,
        ``CLASSICMON_DISCOVERY`` and ``CLASSICMON_CACHE_DIR``.

        Raises:
            ConfigError: If a variable holds an invalid value
        """
        env = os.environ if environ is None else environ
        data = base.model_dump() if base is not None else {}

        hosts = env.get(f"{ENV_PREFIX}HOSTS", "").strip()
        if hosts:
            data["controllers"] = [
                ControllerConfig.parse_host(host).model_dump()
                for host in hosts.split(",")
                if host.strip()
            ]
        if poll_interval := env.get(f"{ENV_PREFIX}POLL_INTERVAL"):
            data["poll_interval"] = poll_interval
        if timeout := env.get(f"{ENV_PREFIX}TIMEOUT"):
            data["timeout"] = timeout
        if discovery := env.get(f"{ENV_PREFIX}DISCOVERY"):
            data["discovery_enabled"] = discovery.strip().lower() in _TRUE_VALUES
        if cache_dir := env.get(f"{ENV_PREFIX}CACHE_DIR"):
            data["cache_dir"] = cache_dir
        return cls.from_dict(data)


__all__ = ["ENV_PREFIX", "ControllerConfig", "MonitorConfig"]
