"""
Unit tests for the data model.
"""
import json
import threading

import pytest

from hellfire import models
from hellfire.models import FanUnit, StressComponent, TelemetrySample


class TestStressComponent:
    """Tests for component selection."""

    def test_furnace_parts_in_start_order(self):
        """The furnace stresses CPU, RAM and GPU, in that order."""
        assert list(StressComponent.COMBINED.parts()) == [
            StressComponent.CPU,
            StressComponent.RAM,
            StressComponent.GPU,
        ]

    def test_single_component_parts(self):
        assert list(StressComponent.GPU.parts()) == [StressComponent.GPU]

    def test_values_match_cli_names(self):
        assert [c.value for c in StressComponent] == ["cpu", "ram", "gpu", "furnace"]


class TestTelemetrySample:
    """Tests for the telemetry record."""

    def test_every_field_present_when_absent(self):
        """A sample with no readings still serializes every key, as null."""
        record = TelemetrySample(timestamp=1.0).to_dict()

        assert list(record) == TelemetrySample.schema()
        assert record["cpu_temp_c"] is None
        assert record["gpu_fan_unit"] is None
        assert record["fan5_rpm"] is None
        assert record["storage_temps"] == {}

    def test_json_round_trip_keeps_absent_and_precision(self):
        """Values, one-decimal temperatures and nulls survive a JSON round trip."""
        sample = TelemetrySample(
            timestamp=1700000000.123,
            cpu_temp_c=64.9,
            gpu_temp_c=None,
            gpu_hotspot_c=88.3,
            gpu_fan_speed=1450.0,
            gpu_fan_unit=FanUnit.RPM,
            gpu_fan_max_rpm=3300.0,
            fan2_rpm=900.0,
            storage_temps={"nvme0n1": 41.9},
        )
        restored = TelemetrySample.from_dict(json.loads(json.dumps(sample.to_dict())))

        assert restored == sample
        assert restored.cpu_temp_c == 64.9
        assert restored.gpu_temp_c is None

    def test_from_dict_missing_keys_are_absent(self):
        sample = TelemetrySample.from_dict({"timestamp": 5.0, "cpu_temp_c": 50.0})
        assert sample.cpu_temp_c == 50.0
        assert sample.gpu_memtemp_c is None

    def test_fan_percent_passes_through(self):
        sample = TelemetrySample(timestamp=0, gpu_fan_speed=35.0, gpu_fan_unit=FanUnit.PERCENT)
        assert sample.gpu_fan_percent == 35.0

    def test_fan_rpm_normalized_by_max(self):
        sample = TelemetrySample(
            timestamp=0, gpu_fan_speed=600.0, gpu_fan_unit=FanUnit.RPM, gpu_fan_max_rpm=3000.0
        )
        assert sample.gpu_fan_percent == pytest.approx(20.0)

    def test_fan_rpm_without_max_is_absent(self):
        """RPM cannot be compared to a percentage limit without the fan's maximum."""
        sample = TelemetrySample(timestamp=0, gpu_fan_speed=600.0, gpu_fan_unit=FanUnit.RPM)
        assert sample.gpu_fan_percent is None

    def test_storage_max(self):
        sample = TelemetrySample(timestamp=0, storage_temps={"sda": 38.0, "nvme0n1": 52.5})
        assert sample.storage_max_c == 52.5
        assert TelemetrySample(timestamp=0).storage_max_c is None


class TestTestSession:
    """Tests for session status ownership."""

    def test_first_terminal_status_wins(self):
        session = models.TestSession(StressComponent.CPU, 60)

        assert session.finish(models.TestStatus.ABORTED_SAFETY, "CPU temperature") is True
        assert session.finish(models.TestStatus.PASS) is False
        assert session.status is models.TestStatus.ABORTED_SAFETY
        assert session.reason == "CPU temperature"

    def test_running_is_not_terminal(self):
        session = models.TestSession(StressComponent.CPU, 60)
        with pytest.raises(ValueError):
            session.finish(models.TestStatus.RUNNING)

    def test_concurrent_finish_only_one_winner(self):
        """Monitor and orchestrator racing to finish: exactly one succeeds."""
        session = models.TestSession(StressComponent.GPU, 60)
        results = []
        statuses = [models.TestStatus.ABORTED_SAFETY, models.TestStatus.PASS] * 10

        threads = [
            threading.Thread(target=lambda s=s: results.append(session.finish(s)))
            for s in statuses
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1

    def test_aborted_statuses(self):
        assert models.TestStatus.ABORTED_USER.aborted
        assert models.TestStatus.FAILED_EARLY_TERMINATION.aborted
        assert not models.TestStatus.PASS.aborted
