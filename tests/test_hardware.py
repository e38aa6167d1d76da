"""
Unit tests for sensor sources and the sensor hub.
"""
from unittest.mock import patch

import pytest

from hellfire import hardware
from hellfire.hardware import (
    HardwareError,
    HwmonCpuSource,
    HwmonFanSource,
    LmSensorsGpuSource,
    NullSource,
    NvidiaSmiGpuSource,
    SensorHub,
    SensorSource,
    SensorTopology,
    StorageSource,
    detect_gpu_vendor,
    parse_smartctl_temperature,
)
from hellfire.models import FanUnit, StressComponent


def _write(path, text):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)


AMDGPU_SENSORS = {
    "amdgpu-pci-0300": {
        "edge": {"temp1_input": 71.0, "temp1_crit": 100.0},
        "junction": {"temp2_input": 84.5},
        "mem": {"temp3_input": 78.0},
        "PPT": {"power1_average": 212.0, "power1_cap": 250.0},
        "fan1": {"fan1_input": 1650.0, "fan1_max": 3300.0},
    },
    "k10temp-pci-00c3": {"Tctl": {"temp1_input": 68.25}},
}


class TestParsing:
    """Tests for tool output parsing helpers."""

    @pytest.mark.parametrize("text", ["N/A", "[N/A]", "[Not Supported]", ""])
    def test_na_markers_are_absent(self, text):
        assert hardware._parse_number(text) is None

    def test_number_with_unit(self):
        assert hardware._parse_number(" 45.5 W") == 45.5

    def test_smartctl_nvme_line(self):
        output = "SMART/Health Information\nTemperature:                        44 Celsius\n"
        assert parse_smartctl_temperature(output) == 44.0

    def test_smartctl_ata_attribute(self):
        output = (
            "ID# ATTRIBUTE_NAME          FLAG     VALUE WORST THRESH TYPE      UPDATED  WHEN_FAILED RAW_VALUE\n"
            "194 Temperature_Celsius     0x0022   064   045   000    Old_age   Always       -       36\n"
        )
        assert parse_smartctl_temperature(output) == 36.0

    def test_smartctl_no_temperature(self):
        assert parse_smartctl_temperature("nothing here") is None


class TestCpuSource:
    """Tests for the hwmon CPU source."""

    def test_reads_sysfs_millidegrees(self, tmp_path):
        _write(tmp_path / "hwmon0" / "name", "acpitz\n")
        _write(tmp_path / "hwmon1" / "name", "k10temp\n")
        _write(tmp_path / "hwmon1" / "temp1_input", "67125\n")

        source = HwmonCpuSource(str(tmp_path), read_power=False)
        reading = source.read_cpu()

        assert reading.temp_c == 67.1
        assert reading.pkg_power_w is None

    def test_falls_back_to_lm_sensors(self, tmp_path):
        source = HwmonCpuSource(str(tmp_path), read_power=False)
        with patch.object(hardware, "read_sensors_json", return_value=AMDGPU_SENSORS):
            assert source.get_cpu_temp() == 68.2

    def test_absent_when_nothing_available(self, tmp_path):
        source = HwmonCpuSource(str(tmp_path), read_power=False)
        with patch.object(hardware, "read_sensors_json", return_value={}):
            assert source.read_cpu().temp_c is None


class TestGpuSources:
    """Tests for the GPU backends."""

    def test_amdgpu_reading(self):
        with patch.object(hardware, "read_sensors_json", return_value=AMDGPU_SENSORS):
            reading = LmSensorsGpuSource().read_gpu()

        assert reading.temp_c == 71.0
        assert reading.hotspot_c == 84.5
        assert reading.memtemp_c == 78.0
        assert reading.power_w == 212.0
        assert reading.power_limit_w == 250.0
        assert reading.fan_speed == 1650.0
        assert reading.fan_unit is FanUnit.RPM
        assert reading.fan_max_rpm == 3300.0

    def test_nvidia_smi_reading(self):
        output = "66, N/A, 41, 187.25, 220.00\n"
        with patch.object(hardware, "run_command", return_value=output):
            reading = NvidiaSmiGpuSource().read_gpu()

        assert reading.temp_c == 66.0
        assert reading.memtemp_c is None
        assert reading.hotspot_c is None
        assert reading.fan_speed == 41.0
        assert reading.fan_unit is FanUnit.PERCENT
        assert reading.power_w == 187.2
        assert reading.power_limit_w == 220.0

    def test_nvidia_smi_missing(self):
        with patch.object(hardware, "run_command", return_value=None):
            reading = NvidiaSmiGpuSource().read_gpu()
        assert reading.temp_c is None
        assert reading.fan_unit is None


class TestFanAndStorage:
    """Tests for case fan and storage sources."""

    def test_case_fans_skip_gpu_chip(self, tmp_path):
        _write(tmp_path / "hwmon0" / "name", "amdgpu\n")
        _write(tmp_path / "hwmon0" / "fan1_input", "2000\n")
        _write(tmp_path / "hwmon1" / "name", "nct6798\n")
        _write(tmp_path / "hwmon1" / "fan1_input", "850\n")
        _write(tmp_path / "hwmon1" / "fan2_input", "0\n")

        fans = HwmonFanSource(str(tmp_path)).read_fans()

        assert fans == [850.0, 0.0, None, None, None]

    def test_storage_hwmon_and_skips(self, tmp_path):
        _write(tmp_path / "nvme0n1" / "device" / "hwmon3" / "temp1_input", "42900\n")
        (tmp_path / "loop0").mkdir()
        (tmp_path / "zram0").mkdir()

        source = StorageSource(str(tmp_path), use_smartctl=False)

        assert list(source.devices) == ["nvme0n1"]
        assert source.read_storage() == {"nvme0n1": 42.9}

    def test_storage_zero_is_a_reading(self, tmp_path):
        """0°C is suspicious but present; it must not be dropped as absent."""
        _write(tmp_path / "nvme0n1" / "device" / "hwmon2" / "temp1_input", "0\n")
        source = StorageSource(str(tmp_path), use_smartctl=False)

        assert source.read_storage() == {"nvme0n1": 0.0}

    def test_storage_smartctl_zero(self, tmp_path):
        (tmp_path / "sdb").mkdir()
        source = StorageSource(str(tmp_path), use_smartctl=True)

        with patch.object(hardware, "run_command", return_value="Temperature: 0 Celsius\n") as run:
            assert source.read_storage() == {"sdb": 0.0}
        assert run.call_count == 1

    def test_storage_smartctl_fallback(self, tmp_path):
        (tmp_path / "sda").mkdir()
        source = StorageSource(str(tmp_path), use_smartctl=True)

        with patch.object(hardware, "run_command", return_value="Temperature: 39 Celsius\n"):
            assert source.read_storage() == {"sda": 39.0}


class TestTopology:
    """Tests for topology discovery helpers."""

    def test_vendor_prefers_discrete(self):
        controllers = [
            "00:02.0 VGA compatible controller [0300]: Intel Corporation UHD Graphics 630",
            "01:00.0 3D controller [0302]: NVIDIA Corporation TU117M [GeForce GTX 1650 Mobile]",
        ]
        assert detect_gpu_vendor(controllers) == "nvidia"

        topology = SensorTopology(gpu_vendor="nvidia", display_controllers=controllers)
        assert topology.hybrid_graphics

    def test_desktop_amd_is_not_hybrid(self):
        controllers = ["03:00.0 VGA compatible controller [0300]: Advanced Micro Devices, Inc. [AMD/ATI] Navi 21"]
        topology = SensorTopology(gpu_vendor=detect_gpu_vendor(controllers), display_controllers=controllers)
        assert topology.gpu_vendor == "amd"
        assert not topology.hybrid_graphics

    def test_unwatched_component_refused(self):
        with pytest.raises(HardwareError):
            SensorTopology().require_safety_sensors(StressComponent.CPU)
        with pytest.raises(HardwareError):
            SensorTopology(cpu=HwmonCpuSource("/nonexistent", read_power=False)).require_safety_sensors(
                StressComponent.GPU
            )


class _Broken(SensorSource):
    name = "broken"

    def read_gpu(self):
        raise RuntimeError("driver went away")


class TestSensorHub:
    """Tests for composing sources into samples."""

    def test_failing_source_degrades_to_absent(self, tmp_path):
        """One source raising leaves its fields absent; the rest still read."""
        _write(tmp_path / "hwmon0" / "name", "coretemp\n")
        _write(tmp_path / "hwmon0" / "temp1_input", "55000\n")
        topology = SensorTopology(
            cpu=HwmonCpuSource(str(tmp_path), read_power=False),
            gpu=_Broken(),
        )

        sample = SensorHub(topology).sample(timestamp=123.4567)

        assert sample.timestamp == 123.457
        assert sample.cpu_temp_c == 55.0
        assert sample.gpu_temp_c is None
        assert sample.fan1_rpm is None

    def test_null_topology_all_absent(self):
        sample = SensorHub(SensorTopology()).sample(timestamp=1.0)
        record = sample.to_dict()
        assert all(v is None for k, v in record.items() if k not in ("timestamp", "storage_temps"))
        assert isinstance(SensorTopology().cpu, NullSource)
