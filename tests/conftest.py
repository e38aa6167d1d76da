"""
Pytest fixtures and helpers for Hellfire tests.
"""
import copy
import shutil
from typing import List, Optional

import pytest

from hellfire.config import DEFAULT_CONFIG
from hellfire.hardware import CpuReading, GpuReading, SensorHub, SensorSource, SensorTopology
from hellfire.load import LoadController, LoadSupervisor
from hellfire.models import FanUnit, StressComponent, TelemetrySample


class ScriptedCpu(SensorSource):
    """Replays CPU temperatures in order; the last one repeats."""

    name = "scripted-cpu"

    def __init__(self, temps: List[Optional[float]], power: Optional[float] = None):
        self.temps = list(temps)
        self.power = power
        self.calls = 0

    def read_cpu(self) -> CpuReading:
        temp = self.temps[min(self.calls, len(self.temps) - 1)]
        self.calls += 1
        return CpuReading(temp_c=temp, pkg_power_w=self.power)


class ScriptedGpu(SensorSource):
    """Replays GPU readings in order; the last one repeats."""

    name = "scripted-gpu"

    def __init__(self, readings: List[GpuReading]):
        self.readings = list(readings)
        self.calls = 0

    def read_gpu(self) -> GpuReading:
        reading = self.readings[min(self.calls, len(self.readings) - 1)]
        self.calls += 1
        return reading


class SleepLoad(LoadController):
    """Stand-in load generator: a real `sleep` process."""

    tool = "sleep"

    def __init__(self, name: str = "CPU", seconds: Optional[float] = None, component=StressComponent.CPU):
        super().__init__(terminate_grace=2.0)
        self.name = name
        self.component = component
        self.seconds = seconds

    def command(self, duration: int) -> List[str]:
        seconds = duration if self.seconds is None else self.seconds
        return ["sleep", str(seconds)]


requires_sleep = pytest.mark.skipif(shutil.which("sleep") is None, reason="sleep not available")


@pytest.fixture
def config():
    """Default config with a fast telemetry interval and no countdown."""
    cfg = copy.deepcopy(DEFAULT_CONFIG)
    cfg["telemetry"]["interval"] = 0.05
    cfg["orchestrator"]["countdown"] = 0
    return cfg


@pytest.fixture
def make_sample():
    """Build a TelemetrySample with only the given fields set."""

    def _make(timestamp: float = 1000.0, **fields) -> TelemetrySample:
        return TelemetrySample(timestamp=timestamp, **fields)

    return _make


@pytest.fixture
def cpu_hub():
    """Hub whose CPU sensor replays the given temperatures."""

    def _make(temps, power=None) -> SensorHub:
        return SensorHub(SensorTopology(cpu=ScriptedCpu(temps, power)))

    return _make


@pytest.fixture
def gpu_reading():
    def _make(**fields) -> GpuReading:
        fields.setdefault("fan_unit", FanUnit.PERCENT if "fan_speed" in fields else None)
        return GpuReading(**fields)

    return _make


@pytest.fixture
def sleep_supervisor():
    """Supervisor with SleepLoad controllers for every part."""

    def _make(cpu_seconds=None, ram_seconds=None, gpu_seconds=None) -> LoadSupervisor:
        return LoadSupervisor(
            {
                StressComponent.CPU: SleepLoad("CPU", cpu_seconds, StressComponent.CPU),
                StressComponent.RAM: SleepLoad("RAM", ram_seconds, StressComponent.RAM),
                StressComponent.GPU: SleepLoad("GPU", gpu_seconds, StressComponent.GPU),
            }
        )

    return _make
