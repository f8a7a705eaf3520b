"""Device model for Classic and TriStar charge controllers."""

from __future__ import annotations

from .logs import DAILY_CATEGORIES, MINUTE_CATEGORIES, LogCategory, LogEntry
from .models import ControllerInfo, DeviceType, Endpoint, PerUnitScale
from .readings import Readings, RegisterName, charge_state_description

__all__ = [
    "DAILY_CATEGORIES",
    "MINUTE_CATEGORIES",
    "ControllerInfo",
    "DeviceType",
    "Endpoint",
    "LogCategory",
    "LogEntry",
    "PerUnitScale",
    "Readings",
    "RegisterName",
    "charge_state_description",
]
