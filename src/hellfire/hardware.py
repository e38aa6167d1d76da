"""Hardware sensor sources for stress test telemetry."""

import glob
import json
import logging
import os
import re
import shutil
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from .models import CASE_FAN_SLOTS, FanUnit, StressComponent, TelemetrySample

logger = logging.getLogger(__name__)

CPU_CHIPS = ("coretemp", "k10temp", "zenpower")
CPU_LABELS = ("Package id 0", "Package id 1", "Tctl", "Tdie")
GPU_CHIPS = ("amdgpu", "nouveau", "radeon")
SKIP_BLOCK_PREFIXES = ("loop", "ram", "zram", "dm-", "sr", "md", "fd")

NA_VALUES = {"", "n/a", "[n/a]", "[not supported]", "not supported", "null"}


class HardwareError(Exception):
    """Hardware access error."""

    pass


def _round1(value: Optional[float]) -> Optional[float]:
    if value is None:
        return None
    return round(float(value), 1)


def _parse_number(text: str) -> Optional[float]:
    """Parse a number from tool output, treating N/A markers as absent."""
    text = text.strip()
    if text.lower() in NA_VALUES:
        return None
    match = re.search(r"[+-]?\d+\.?\d*", text)
    if not match:
        return None
    return float(match.group(0))


def _read_sysfs_number(path: Path) -> Optional[float]:
    try:
        with open(path, "r") as f:
            return float(f.read().strip())
    except (IOError, ValueError):
        return None


def run_command(cmd: List[str], timeout: float) -> Optional[str]:
    """Run a sensor command, returning stdout or None on any failure."""
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            check=True,
            timeout=timeout,
        )
        return result.stdout
    except (
        subprocess.CalledProcessError,
        FileNotFoundError,
        PermissionError,
        subprocess.TimeoutExpired,
    ):
        return None


def read_sensors_json(timeout: float) -> Dict:
    """Return `sensors -j` output as a dict, empty if unavailable."""
    output = run_command(["sensors", "-j"], timeout)
    if not output:
        return {}
    try:
        data = json.loads(output)
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _feature_value(feature: Dict, suffixes: tuple) -> Optional[float]:
    """First subfeature value ending with one of the suffixes, in suffix order."""
    if not isinstance(feature, dict):
        return None
    for suffix in suffixes:
        for key, value in feature.items():
            if key.endswith(suffix) and isinstance(value, (int, float)):
                return float(value)
    return None


def _find_chip(sensors_data: Dict, prefixes: tuple) -> Optional[Dict]:
    for chip_name, chip in sensors_data.items():
        if chip_name.startswith(prefixes) and isinstance(chip, dict):
            return chip
    return None


def find_hwmon(names: tuple, hwmon_root: str = "/sys/class/hwmon") -> Optional[Path]:
    """Find the first hwmon directory whose name is in `names`."""
    for hwmon_path in sorted(glob.glob(os.path.join(hwmon_root, "hwmon*"))):
        name_file = Path(hwmon_path) / "name"
        try:
            with open(name_file, "r") as f:
                if f.read().strip() in names:
                    return Path(hwmon_path)
        except IOError:
            continue
    return None


@dataclass
class CpuReading:
    temp_c: Optional[float] = None
    pkg_power_w: Optional[float] = None


@dataclass
class GpuReading:
    temp_c: Optional[float] = None
    hotspot_c: Optional[float] = None
    memtemp_c: Optional[float] = None
    power_w: Optional[float] = None
    power_limit_w: Optional[float] = None
    fan_speed: Optional[float] = None
    fan_unit: Optional[FanUnit] = None
    fan_max_rpm: Optional[float] = None


class SensorSource:
    """
    One sensor backend.

    Every capability defaults to an absent reading, so a backend only
    overrides what its hardware actually exposes.
    """

    name = "none"

    def read_cpu(self) -> CpuReading:
        return CpuReading()

    def read_gpu(self) -> GpuReading:
        return GpuReading()

    def read_fans(self) -> List[Optional[float]]:
        return [None] * CASE_FAN_SLOTS

    def read_storage(self) -> Dict[str, float]:
        return {}


class NullSource(SensorSource):
    """Stand-in for a backend that is not present on this machine."""

    name = "none"


class HwmonCpuSource(SensorSource):
    """CPU die temperature from hwmon, with `sensors -j` as fallback."""

    name = "hwmon-cpu"

    def __init__(
        self,
        hwmon_root: str = "/sys/class/hwmon",
        command_timeout: float = 5,
        read_power: Optional[bool] = None,
    ):
        self.command_timeout = command_timeout
        self.hwmon_path = find_hwmon(CPU_CHIPS, hwmon_root)
        if read_power is None:
            read_power = bool(shutil.which("turbostat")) and os.geteuid() == 0
        self.read_power = read_power

    def read_cpu(self) -> CpuReading:
        return CpuReading(temp_c=self.get_cpu_temp(), pkg_power_w=self.get_cpu_power())

    def get_cpu_temp(self) -> Optional[float]:
        if self.hwmon_path is not None:
            millideg = _read_sysfs_number(self.hwmon_path / "temp1_input")
            if millideg is not None and 0 < millideg < 200000:
                return _round1(millideg / 1000)

        chip = _find_chip(read_sensors_json(self.command_timeout), CPU_CHIPS)
        if chip is None:
            return None
        for label in CPU_LABELS:
            temp = _feature_value(chip.get(label), ("_input",))
            if temp is not None and 0 < temp < 200:
                return _round1(temp)
        return None

    def get_cpu_power(self) -> Optional[float]:
        """
        CPU package power via turbostat.
        Requires root permissions.
        """
        if not self.read_power:
            return None
        output = run_command(
            [
                "turbostat",
                "--Summary",
                "--quiet",
                "--num_iterations",
                "1",
                "--interval",
                "0.1",
                "--show",
                "PkgWatt",
            ],
            self.command_timeout,
        )
        if not output:
            return None
        lines = output.strip().split("\n")
        if len(lines) >= 2:
            return _round1(_parse_number(lines[-1]))
        return None


class LmSensorsGpuSource(SensorSource):
    """Discrete GPU exposed through a kernel hwmon driver (amdgpu) via `sensors -j`."""

    name = "lm-sensors-gpu"

    def __init__(self, command_timeout: float = 5):
        self.command_timeout = command_timeout

    def read_gpu(self) -> GpuReading:
        chip = _find_chip(read_sensors_json(self.command_timeout), GPU_CHIPS)
        if chip is None:
            return GpuReading()

        power = chip.get("PPT") or chip.get("power1") or {}
        fan = chip.get("fan1") or {}
        fan_rpm = _feature_value(fan, ("_input",))

        return GpuReading(
            temp_c=_round1(_feature_value(chip.get("edge"), ("_input",))),
            hotspot_c=_round1(
                _feature_value(chip.get("junction") or chip.get("hotspot"), ("_input",))
            ),
            memtemp_c=_round1(_feature_value(chip.get("mem"), ("_input",))),
            power_w=_round1(_feature_value(power, ("_average", "_input"))),
            power_limit_w=_round1(_feature_value(power, ("_cap",))),
            fan_speed=fan_rpm,
            fan_unit=FanUnit.RPM if fan_rpm is not None else None,
            fan_max_rpm=_feature_value(fan, ("_max",)),
        )


class NvidiaSmiGpuSource(SensorSource):
    """GPU behind the proprietary NVIDIA driver, queried through nvidia-smi."""

    name = "nvidia-smi"
    QUERY = "temperature.gpu,temperature.memory,fan.speed,power.draw,power.limit"

    def __init__(self, command_timeout: float = 5):
        self.command_timeout = command_timeout

    def read_gpu(self) -> GpuReading:
        output = run_command(
            [
                "nvidia-smi",
                f"--query-gpu={self.QUERY}",
                "--format=csv,noheader,nounits",
            ],
            self.command_timeout,
        )
        if not output or not output.strip():
            return GpuReading()

        # Multiple GPUs: first one
        cols = output.strip().split("\n")[0].split(",")
        if len(cols) < 5:
            return GpuReading()
        edge, vram, fan, power, limit = (_parse_number(c) for c in cols[:5])

        return GpuReading(
            temp_c=_round1(edge),
            memtemp_c=_round1(vram),
            power_w=_round1(power),
            power_limit_w=_round1(limit),
            fan_speed=fan,
            fan_unit=FanUnit.PERCENT if fan is not None else None,
        )


class HwmonFanSource(SensorSource):
    """Case fans from motherboard hwmon chips (GPU fans excluded)."""

    name = "hwmon-fans"

    def __init__(self, hwmon_root: str = "/sys/class/hwmon"):
        self.fan_paths: List[Path] = []
        for hwmon_path in sorted(glob.glob(os.path.join(hwmon_root, "hwmon*"))):
            chip = Path(hwmon_path)
            try:
                with open(chip / "name", "r") as f:
                    if f.read().strip() in GPU_CHIPS:
                        continue
            except IOError:
                continue
            fans = sorted(
                chip.glob("fan*_input"),
                key=lambda p: int(re.sub(r"\D", "", p.name) or 0),
            )
            self.fan_paths.extend(fans)
        self.fan_paths = self.fan_paths[:CASE_FAN_SLOTS]

    def read_fans(self) -> List[Optional[float]]:
        readings: List[Optional[float]] = [
            _read_sysfs_number(path) for path in self.fan_paths
        ]
        readings.extend([None] * (CASE_FAN_SLOTS - len(readings)))
        return readings


class StorageSource(SensorSource):
    """
    Per-device storage temperature.

    Tries the kernel hwmon node first (nvme, drivetemp) and falls back
    to smartctl, which usually needs root.
    """

    name = "storage"

    def __init__(
        self,
        sys_block_root: str = "/sys/block",
        command_timeout: float = 5,
        use_smartctl: Optional[bool] = None,
    ):
        self.command_timeout = command_timeout
        if use_smartctl is None:
            use_smartctl = bool(shutil.which("smartctl"))
        self.use_smartctl = use_smartctl
        self.devices: Dict[str, Optional[Path]] = {}

        root = Path(sys_block_root)
        try:
            entries = sorted(p.name for p in root.iterdir())
        except OSError:
            entries = []
        for device in entries:
            if device.startswith(SKIP_BLOCK_PREFIXES):
                continue
            self.devices[device] = self._find_hwmon_temp(root / device)

    @staticmethod
    def _find_hwmon_temp(device_dir: Path) -> Optional[Path]:
        for pattern in ("device/hwmon*/temp1_input", "device/hwmon/hwmon*/temp1_input"):
            matches = sorted(device_dir.glob(pattern))
            if matches:
                return matches[0]
        return None

    def read_storage(self) -> Dict[str, float]:
        temps: Dict[str, float] = {}
        for device, hwmon_temp in self.devices.items():
            temp = None
            if hwmon_temp is not None:
                millideg = _read_sysfs_number(hwmon_temp)
                if millideg is not None:
                    temp = millideg / 1000
            if temp is None and self.use_smartctl:
                temp = self._smartctl_temp(device)
            if temp is not None:
                temps[device] = _round1(temp)
        return temps

    def _smartctl_temp(self, device: str) -> Optional[float]:
        for dev_type in (["-d", "sat"], ["-d", "ata"], []):
            output = run_command(
                ["smartctl", *dev_type, "-A", f"/dev/{device}"], self.command_timeout
            )
            if not output:
                continue
            temp = parse_smartctl_temperature(output)
            if temp is not None:
                return temp
        return None


def parse_smartctl_temperature(output: str) -> Optional[float]:
    """Extract a temperature from `smartctl -A` output (ATA attributes or NVMe log)."""
    for line in output.split("\n"):
        match = re.match(r"^Temperature:\s+(\d+)\s+Celsius", line.strip())
        if match:
            return float(match.group(1))

        cols = line.split()
        if len(cols) >= 10 and cols[0] in ("194", "190"):
            value = _parse_number(cols[9])
            if value is not None:
                return value
    return None


def list_display_controllers(command_timeout: float = 5) -> List[str]:
    """lspci lines for VGA / 3D controllers."""
    output = run_command(["lspci", "-nn"], command_timeout)
    if not output:
        return []
    return [
        line
        for line in output.split("\n")
        if re.search(r"VGA compatible controller|3D controller", line, re.IGNORECASE)
    ]


def detect_gpu_vendor(controllers: Optional[List[str]] = None) -> str:
    """Detect the GPU vendor: nvidia, amd, intel or unknown."""
    if controllers is None:
        controllers = list_display_controllers()
    # Discrete vendors win over an integrated Intel GPU
    for pattern, vendor in (
        (r"nvidia|geforce", "nvidia"),
        (r"\bamd\b|\bati\b|radeon", "amd"),
        (r"intel", "intel"),
    ):
        for line in controllers:
            if re.search(pattern, line, re.IGNORECASE):
                return vendor
    return "unknown"


@dataclass
class SensorTopology:
    """Sensor backends discovered once at the start of a run."""

    cpu: SensorSource = field(default_factory=NullSource)
    gpu: SensorSource = field(default_factory=NullSource)
    fans: SensorSource = field(default_factory=NullSource)
    storage: SensorSource = field(default_factory=NullSource)
    gpu_vendor: str = "unknown"
    display_controllers: List[str] = field(default_factory=list)

    @property
    def hybrid_graphics(self) -> bool:
        """Discrete GPU next to an integrated Intel GPU."""
        joined = " ".join(self.display_controllers).lower()
        return "intel" in joined and self.gpu_vendor in ("nvidia", "amd")

    def require_safety_sensors(self, component: StressComponent) -> None:
        """
        Refuse to stress a component nobody can watch.

        Raises:
            HardwareError: If no sensor source covers a stressed component
        """
        parts = set(component.parts())
        if parts & {StressComponent.CPU, StressComponent.RAM} and isinstance(self.cpu, NullSource):
            raise HardwareError("No CPU temperature sensor found (coretemp/k10temp/lm-sensors)")
        if component is StressComponent.GPU and isinstance(self.gpu, NullSource):
            raise HardwareError("No GPU sensor found (amdgpu hwmon or nvidia-smi)")

    def describe(self) -> str:
        storage_devices = getattr(self.storage, "devices", {})
        return (
            f"cpu={self.cpu.name}, gpu={self.gpu.name} ({self.gpu_vendor}), "
            f"fans={self.fans.name}, storage={list(storage_devices) or 'none'}"
        )


def discover_topology(
    command_timeout: float = 5,
    hwmon_root: str = "/sys/class/hwmon",
    sys_block_root: str = "/sys/block",
) -> SensorTopology:
    """
    Detect which sensor sources exist on this machine.

    The topology cannot change during a run, so this is done once.
    """
    controllers = list_display_controllers(command_timeout)
    topology = SensorTopology(
        gpu_vendor=detect_gpu_vendor(controllers),
        display_controllers=controllers,
    )

    if find_hwmon(CPU_CHIPS, hwmon_root) is not None or shutil.which("sensors"):
        topology.cpu = HwmonCpuSource(hwmon_root, command_timeout)

    if shutil.which("nvidia-smi") and NvidiaSmiGpuSource(command_timeout).read_gpu().temp_c is not None:
        topology.gpu = NvidiaSmiGpuSource(command_timeout)
    elif _find_chip(read_sensors_json(command_timeout), GPU_CHIPS) is not None:
        topology.gpu = LmSensorsGpuSource(command_timeout)

    fans = HwmonFanSource(hwmon_root)
    if fans.fan_paths:
        topology.fans = fans

    storage = StorageSource(sys_block_root, command_timeout)
    if storage.devices:
        topology.storage = storage

    logger.info(f"Sensor topology: {topology.describe()}")
    return topology


class SensorHub:
    """Composes the topology's sources into one TelemetrySample per call."""

    def __init__(self, topology: SensorTopology):
        self.topology = topology

    def _safe_read(self, source: SensorSource, method: str, default):
        try:
            return getattr(source, method)()
        except Exception as e:
            logger.debug(f"{source.name}.{method} failed: {e}")
            return default

    def read_cpu_temp(self) -> Optional[float]:
        return self._safe_read(self.topology.cpu, "read_cpu", CpuReading()).temp_c

    def sample(self, timestamp: Optional[float] = None) -> TelemetrySample:
        ts = timestamp if timestamp is not None else time.time()
        cpu = self._safe_read(self.topology.cpu, "read_cpu", CpuReading())
        gpu = self._safe_read(self.topology.gpu, "read_gpu", GpuReading())
        fans = self._safe_read(
            self.topology.fans, "read_fans", [None] * CASE_FAN_SLOTS
        )
        storage = self._safe_read(self.topology.storage, "read_storage", {})

        fans = (list(fans) + [None] * CASE_FAN_SLOTS)[:CASE_FAN_SLOTS]

        return TelemetrySample(
            timestamp=round(ts, 3),
            cpu_temp_c=cpu.temp_c,
            cpu_pkg_power_w=cpu.pkg_power_w,
            gpu_temp_c=gpu.temp_c,
            gpu_hotspot_c=gpu.hotspot_c,
            gpu_memtemp_c=gpu.memtemp_c,
            gpu_power_w=gpu.power_w,
            gpu_power_limit_w=gpu.power_limit_w,
            gpu_fan_speed=gpu.fan_speed,
            gpu_fan_unit=gpu.fan_unit,
            gpu_fan_max_rpm=gpu.fan_max_rpm,
            fan1_rpm=fans[0],
            fan2_rpm=fans[1],
            fan3_rpm=fans[2],
            fan4_rpm=fans[3],
            fan5_rpm=fans[4],
            storage_temps=dict(storage),
        )
