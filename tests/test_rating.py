"""
Unit tests for statistics, thermal ratings and the furnace cooler score.
"""
import pytest

from hellfire import models
from hellfire.models import CoolerTier, FanUnit, StressComponent, TelemetrySample, ThermalBand
from hellfire.rating import (
    MetricStats,
    cooler_score,
    cooler_tier,
    cpu_band,
    gpu_band,
    rate_session,
    summarize,
    thermal_status,
)


def _session(component=StressComponent.CPU, status=None, gpu_skipped=False):
    session = models.TestSession(component, 60, gpu_skipped=gpu_skipped)
    session.finish(status or models.TestStatus.PASS)
    return session


def _cpu_samples(*temps):
    return [TelemetrySample(timestamp=float(i), cpu_temp_c=t) for i, t in enumerate(temps)]


def _stats(**maxima):
    return {metric: MetricStats(min=v, avg=v, max=v, count=1) for metric, v in maxima.items()}


class TestStats:
    """Tests for min/avg/max summaries."""

    def test_absent_values_ignored(self):
        stats = MetricStats.from_values([60.0, None, 70.0, None, 80.0])
        assert stats == MetricStats(min=60.0, avg=70.0, max=80.0, count=3)

    def test_no_values(self):
        assert MetricStats.from_values([None, None]) is None

    def test_summarize_only_present_metrics(self):
        samples = [
            TelemetrySample(timestamp=0, cpu_temp_c=50.0, storage_temps={"sda": 30.0, "nvme0n1": 45.0}),
            TelemetrySample(
                timestamp=1,
                cpu_temp_c=52.0,
                gpu_fan_speed=40.0,
                gpu_fan_unit=FanUnit.PERCENT,
            ),
        ]
        stats = summarize(samples)

        assert stats["cpu_temp_c"].avg == 51.0
        assert stats["storage_max_c"].max == 45.0
        assert stats["gpu_fan_percent"].count == 1
        assert "gpu_hotspot_c" not in stats


class TestBands:
    """Tests for the cooling rating bands."""

    @pytest.mark.parametrize(
        "temp,band",
        [
            (64.9, ThermalBand.EXCELLENT),
            (65.0, ThermalBand.OK),
            (74.9, ThermalBand.OK),
            (75.0, ThermalBand.WARM),
            (89.9, ThermalBand.WARM),
            (90.0, ThermalBand.CRITICAL),
        ],
    )
    def test_cpu_bands(self, temp, band):
        assert cpu_band(temp) is band

    def test_ram_warm_ceiling(self):
        assert cpu_band(84.9, StressComponent.RAM) is ThermalBand.WARM
        assert cpu_band(85.0, StressComponent.RAM) is ThermalBand.CRITICAL

    def test_gpu_hotspot_bands(self):
        assert gpu_band(79.9) is ThermalBand.EXCELLENT
        assert gpu_band(85.0) is ThermalBand.OK
        assert gpu_band(94.0) is ThermalBand.WARM
        assert gpu_band(95.0) is ThermalBand.CRITICAL

    def test_vram_forces_critical(self):
        assert gpu_band(60.0, max_vram=90.0) is ThermalBand.CRITICAL

    def test_edge_used_without_hotspot(self):
        """nvidia-smi reports no hotspot: the edge temperature governs."""
        assert gpu_band(None, None, max_edge=82.0) is ThermalBand.OK
        assert gpu_band(None, None, None) is ThermalBand.UNKNOWN

    def test_thermal_status(self):
        assert thermal_status(69.9) == "EXCELLENT"
        assert thermal_status(84.0) == "OK"
        assert thermal_status(70.0, StressComponent.RAM) == "OK"
        assert thermal_status(95.0) == "CRITICAL"
        assert thermal_status(60.0, aborted=True) == "INSUFFICIENT"
        assert thermal_status(None) == "UNKNOWN"


class TestRateSession:
    """Tests for rating a finished session."""

    def test_clean_run_64_9_is_excellent(self):
        rating = rate_session(_session(), _cpu_samples(55.0, 64.9))
        assert rating.bands == {StressComponent.CPU: ThermalBand.EXCELLENT}
        assert rating.band is ThermalBand.EXCELLENT

    def test_clean_run_70_is_ok(self):
        rating = rate_session(_session(), _cpu_samples(65.0, 70.0, 74.9))
        assert rating.band is ThermalBand.OK

    def test_safety_abort_is_aborted_even_when_cool(self):
        session = _session(status=models.TestStatus.ABORTED_SAFETY)
        rating = rate_session(session, _cpu_samples(50.0))
        assert rating.band is ThermalBand.ABORTED

    def test_early_termination_is_aborted(self):
        session = _session(status=models.TestStatus.FAILED_EARLY_TERMINATION)
        assert rate_session(session, _cpu_samples(50.0)).band is ThermalBand.ABORTED

    def test_no_samples_unknown(self):
        assert rate_session(_session(), []).band is ThermalBand.UNKNOWN

    def test_gpu_session(self):
        samples = [TelemetrySample(timestamp=0, gpu_temp_c=70.0, gpu_hotspot_c=88.0, gpu_memtemp_c=80.0)]
        rating = rate_session(_session(StressComponent.GPU), samples)

        assert rating.bands == {StressComponent.GPU: ThermalBand.OK}
        assert rating.thermal_status == "OK"

    def test_furnace_worst_band_and_tier(self):
        samples = [
            TelemetrySample(
                timestamp=0,
                cpu_temp_c=72.0,
                cpu_pkg_power_w=120.0,
                gpu_hotspot_c=85.0,
                gpu_power_w=200.0,
            )
        ]
        rating = rate_session(_session(StressComponent.COMBINED), samples)

        assert rating.bands[StressComponent.CPU] is ThermalBand.OK
        assert rating.bands[StressComponent.RAM] is ThermalBand.OK
        assert rating.bands[StressComponent.GPU] is ThermalBand.OK
        assert rating.worst_temp_c == 85.0
        assert rating.cooler_tier is CoolerTier.B
        # (200 + 120) / 85 = 3.76 W/°C
        assert rating.cooler_score == 100

    def test_furnace_skipped_gpu_not_rated(self):
        rating = rate_session(_session(StressComponent.COMBINED, gpu_skipped=True), _cpu_samples(60.0))
        assert StressComponent.GPU not in rating.bands


class TestCoolerScore:
    """Tests for the furnace cooler score and tier."""

    def test_efficiency_score(self):
        # 150 W over a worst 75°C: 2.0 W/°C * 30
        stats = _stats(cpu_temp_c=75.0, gpu_power_w=100.0, cpu_pkg_power_w=50.0)
        assert cooler_score(stats) == 60

    def test_hot_run_capped_at_20(self):
        stats = _stats(cpu_temp_c=96.0, gpu_power_w=400.0)
        assert cooler_score(stats) == 20

    def test_vram_and_storage_penalties(self):
        stats = _stats(cpu_temp_c=96.0, gpu_memtemp_c=91.0, storage_max_c=86.0, gpu_power_w=400.0)
        assert cooler_score(stats) == 0

    def test_floor_between_88_and_90(self):
        stats = _stats(cpu_temp_c=89.0, gpu_power_w=50.0)
        assert cooler_score(stats) == 45
        assert cooler_score(stats, safety_stop=True) == 17

    def test_no_power_or_temperature(self):
        assert cooler_score(_stats(cpu_temp_c=70.0)) == 0
        assert cooler_score(_stats(gpu_power_w=100.0)) == 0

    @pytest.mark.parametrize(
        "worst,tier",
        [
            (69.9, CoolerTier.S),
            (70.0, CoolerTier.A),
            (80.0, CoolerTier.B),
            (90.0, CoolerTier.C),
            (95.0, CoolerTier.D),
        ],
    )
    def test_tiers(self, worst, tier):
        assert cooler_tier(worst) is tier

    def test_safety_stop_is_d_tier(self):
        assert cooler_tier(60.0, safety_stop=True) is CoolerTier.D
