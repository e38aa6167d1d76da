"""Data models for Hellfire stress tests."""

import threading
import time
from dataclasses import dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import Dict, Iterator, Optional


class StressComponent(Enum):
    """Hardware component selected for a stress test."""

    CPU = "cpu"
    RAM = "ram"
    GPU = "gpu"
    COMBINED = "furnace"

    def parts(self) -> Iterator["StressComponent"]:
        """Single components stressed by this selection, in start order."""
        if self is StressComponent.COMBINED:
            yield StressComponent.CPU
            yield StressComponent.RAM
            yield StressComponent.GPU
        else:
            yield self

    @property
    def title(self) -> str:
        return {
            StressComponent.CPU: "CPU STRESS TEST",
            StressComponent.RAM: "RAM STRESS TEST",
            StressComponent.GPU: "GPU STRESS TEST",
            StressComponent.COMBINED: "COOLER FURNACE TEST",
        }[self]


class FanUnit(Enum):
    """Unit of a GPU fan reading. Depends on the driver that reported it."""

    RPM = "rpm"
    PERCENT = "percent"


class TestStatus(Enum):
    """Lifecycle status of a test session."""

    RUNNING = "running"
    PASS = "pass"
    ABORTED_SAFETY = "aborted_safety"
    ABORTED_USER = "aborted_user"
    FAILED_EARLY_TERMINATION = "failed_early_termination"

    @property
    def terminal(self) -> bool:
        return self is not TestStatus.RUNNING

    @property
    def aborted(self) -> bool:
        return self in (
            TestStatus.ABORTED_SAFETY,
            TestStatus.ABORTED_USER,
            TestStatus.FAILED_EARLY_TERMINATION,
        )


class ThermalBand(Enum):
    """Classification of a session's peak temperatures."""

    EXCELLENT = "EXCELLENT"
    OK = "OK"
    WARM = "WARM"
    CRITICAL = "CRITICAL"
    UNKNOWN = "UNKNOWN"
    ABORTED = "ABORTED"


class CoolerTier(Enum):
    """Furnace test tier, derived from the worst observed temperature."""

    S = "S-TIER"
    A = "A-TIER"
    B = "B-TIER"
    C = "C-TIER"
    D = "D-TIER"

    @property
    def description(self) -> str:
        return {
            CoolerTier.S: "EXCELLENT",
            CoolerTier.A: "GOOD",
            CoolerTier.B: "WARM",
            CoolerTier.C: "HOT",
            CoolerTier.D: "CRITICAL",
        }[self]


CASE_FAN_SLOTS = 5


@dataclass(frozen=True)
class TelemetrySample:
    """
    One telemetry tick.

    Every field is always written to the log. Absent sensors are None
    (JSON null), never zero: a zero reading is real data.
    """

    timestamp: float  # Unix timestamp

    # CPU
    cpu_temp_c: Optional[float] = None
    cpu_pkg_power_w: Optional[float] = None

    # GPU (°C / W)
    gpu_temp_c: Optional[float] = None  # edge
    gpu_hotspot_c: Optional[float] = None  # junction
    gpu_memtemp_c: Optional[float] = None  # VRAM
    gpu_power_w: Optional[float] = None
    gpu_power_limit_w: Optional[float] = None

    # GPU fan, unit tagged by the reporting backend
    gpu_fan_speed: Optional[float] = None
    gpu_fan_unit: Optional[FanUnit] = None
    gpu_fan_max_rpm: Optional[float] = None

    # Case fans (RPM)
    fan1_rpm: Optional[float] = None
    fan2_rpm: Optional[float] = None
    fan3_rpm: Optional[float] = None
    fan4_rpm: Optional[float] = None
    fan5_rpm: Optional[float] = None

    # Storage device -> °C
    storage_temps: Dict[str, float] = field(default_factory=dict)

    @property
    def gpu_fan_percent(self) -> Optional[float]:
        """GPU fan duty in percent, or None if it cannot be derived."""
        if self.gpu_fan_speed is None or self.gpu_fan_unit is None:
            return None
        if self.gpu_fan_unit is FanUnit.PERCENT:
            return self.gpu_fan_speed
        if self.gpu_fan_max_rpm:
            return self.gpu_fan_speed / self.gpu_fan_max_rpm * 100.0
        return None

    @property
    def storage_max_c(self) -> Optional[float]:
        if not self.storage_temps:
            return None
        return max(self.storage_temps.values())

    def value(self, metric: str) -> Optional[float]:
        """Look up a numeric metric by field or property name."""
        return getattr(self, metric)

    def to_dict(self) -> dict:
        """Convert to dictionary for the JSONL log."""
        d = {}
        for f in fields(self):
            v = getattr(self, f.name)
            if isinstance(v, FanUnit):
                v = v.value
            elif f.name == "storage_temps":
                v = dict(v)
            d[f.name] = v
        return d

    @classmethod
    def from_dict(cls, data: dict) -> "TelemetrySample":
        """Rebuild a sample from a log record. Missing keys are treated as absent."""
        kwargs = {}
        for f in fields(cls):
            if f.name not in data:
                continue
            v = data[f.name]
            if f.name == "gpu_fan_unit" and v is not None:
                v = FanUnit(v)
            elif f.name == "storage_temps":
                v = {str(k): float(t) for k, t in (v or {}).items()}
            kwargs[f.name] = v
        return cls(**kwargs)

    @staticmethod
    def schema() -> list[str]:
        """Keys present in every log record."""
        return [f.name for f in fields(TelemetrySample)]


@dataclass
class TestSession:
    """
    One stress test invocation.

    The status moves from RUNNING to a terminal status exactly once; the
    first caller of finish() decides the outcome.
    """

    __test__ = False

    component: StressComponent
    duration: int
    started_at: float = field(default_factory=time.time)
    status: TestStatus = TestStatus.RUNNING
    reason: Optional[str] = None
    log_path: Optional[Path] = None
    gpu_skipped: bool = False

    def __post_init__(self):
        self._lock = threading.Lock()

    def finish(self, status: TestStatus, reason: Optional[str] = None) -> bool:
        """Record the terminal status. Returns False if already finished."""
        if not status.terminal:
            raise ValueError(f"{status} is not a terminal status")
        with self._lock:
            if self.status.terminal:
                return False
            self.status = status
            self.reason = reason
            return True

    @property
    def finished(self) -> bool:
        return self.status.terminal

    def elapsed(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.time()) - self.started_at
