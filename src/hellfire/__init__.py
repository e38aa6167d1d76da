"""Hellfire: thermal stress tests with automatic safety stops."""

from .config import ConfigError, load_config
from .hardware import HardwareError, SensorHub, discover_topology
from .load import LoadGeneratorMissing, LoadSupervisor
from .models import StressComponent, TelemetrySample, TestSession, TestStatus, ThermalBand
from .orchestrator import CancellationToken, RunResult, TestOrchestrator
from .rating import ThermalRating, rate_session
from .safety import SafetyError, SafetyMonitor, thresholds_for

__version__ = "0.1.0"

__all__ = [
    "CancellationToken",
    "ConfigError",
    "HardwareError",
    "LoadGeneratorMissing",
    "LoadSupervisor",
    "RunResult",
    "SafetyError",
    "SafetyMonitor",
    "SensorHub",
    "StressComponent",
    "TelemetrySample",
    "TestOrchestrator",
    "TestSession",
    "TestStatus",
    "ThermalBand",
    "ThermalRating",
    "discover_topology",
    "load_config",
    "rate_session",
    "thresholds_for",
]
