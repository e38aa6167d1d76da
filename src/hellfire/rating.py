"""Post-run statistics, thermal rating and the furnace cooler score."""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

import numpy as np

from .models import (
    CoolerTier,
    StressComponent,
    TelemetrySample,
    TestSession,
    TestStatus,
    ThermalBand,
)

STAT_METRICS = (
    "cpu_temp_c",
    "cpu_pkg_power_w",
    "gpu_temp_c",
    "gpu_hotspot_c",
    "gpu_memtemp_c",
    "gpu_power_w",
    "gpu_power_limit_w",
    "gpu_fan_speed",
    "gpu_fan_percent",
    "fan1_rpm",
    "fan2_rpm",
    "fan3_rpm",
    "fan4_rpm",
    "fan5_rpm",
    "storage_max_c",
)

GPU_VRAM_CRITICAL = 90.0


@dataclass(frozen=True)
class MetricStats:
    min: float
    avg: float
    max: float
    count: int

    @classmethod
    def from_values(cls, values: Iterable[Optional[float]]) -> Optional["MetricStats"]:
        """Stats over present values, or None when nothing was recorded."""
        arr = np.array([v for v in values if v is not None], dtype=float)
        if arr.size == 0:
            return None
        return cls(
            min=round(float(arr.min()), 1),
            avg=round(float(arr.mean()), 1),
            max=round(float(arr.max()), 1),
            count=int(arr.size),
        )


def summarize(samples: List[TelemetrySample]) -> Dict[str, MetricStats]:
    """Min/avg/max for every metric that was present at least once."""
    stats = {}
    for metric in STAT_METRICS:
        s = MetricStats.from_values(sample.value(metric) for sample in samples)
        if s is not None:
            stats[metric] = s
    return stats


def _max(stats: Dict[str, MetricStats], metric: str) -> Optional[float]:
    s = stats.get(metric)
    return s.max if s else None


def cpu_band(max_temp: Optional[float], component: StressComponent = StressComponent.CPU) -> ThermalBand:
    """Cooling rating from the session's peak CPU temperature."""
    if max_temp is None:
        return ThermalBand.UNKNOWN
    warm_ceiling = 85.0 if component is StressComponent.RAM else 90.0
    if max_temp < 65:
        return ThermalBand.EXCELLENT
    if max_temp < 75:
        return ThermalBand.OK
    if max_temp < warm_ceiling:
        return ThermalBand.WARM
    return ThermalBand.CRITICAL


def gpu_band(
    max_hotspot: Optional[float],
    max_vram: Optional[float] = None,
    max_edge: Optional[float] = None,
) -> ThermalBand:
    """
    Cooling rating from the session's peak GPU hotspot.

    Drivers without a hotspot sensor (nvidia-smi) are rated on the edge
    temperature instead. VRAM at or above 90°C is critical regardless.
    """
    if max_vram is not None and max_vram >= GPU_VRAM_CRITICAL:
        return ThermalBand.CRITICAL
    governing = max_hotspot if max_hotspot is not None else max_edge
    if governing is None:
        return ThermalBand.UNKNOWN
    if governing < 80:
        return ThermalBand.EXCELLENT
    if governing < 90:
        return ThermalBand.OK
    if governing < 95:
        return ThermalBand.WARM
    return ThermalBand.CRITICAL


def thermal_status(
    max_temp: Optional[float],
    component: StressComponent = StressComponent.CPU,
    aborted: bool = False,
) -> str:
    """
    Overall thermal status line (coarser than the rating).

    CPU/GPU bands at 70/85/95°C, RAM at 65/75/85°C.
    """
    if max_temp is None:
        return "UNKNOWN"
    if aborted:
        return "INSUFFICIENT"
    bands = (65, 75, 85) if component is StressComponent.RAM else (70, 85, 95)
    if max_temp < bands[0]:
        return "EXCELLENT"
    if max_temp < bands[1]:
        return "OK"
    if max_temp < bands[2]:
        return "WARM"
    return "CRITICAL"


def worst_temperature(stats: Dict[str, MetricStats]) -> Optional[float]:
    temps = [
        _max(stats, m)
        for m in ("cpu_temp_c", "gpu_hotspot_c", "gpu_temp_c", "gpu_memtemp_c", "storage_max_c")
    ]
    temps = [t for t in temps if t is not None]
    return max(temps) if temps else None


def cooler_score(stats: Dict[str, MetricStats], safety_stop: bool = False) -> int:
    """
    Furnace cooler score, 0-100.

    Heat moved per degree of the hottest component: (GPU + CPU average
    power) / worst temperature, times 30. Penalties for a worst temperature
    of 95°C or more, VRAM at 90°C or more and storage at 85°C or more.
    """
    worst = worst_temperature(stats)
    if not worst:
        return 0

    power = 0.0
    for metric in ("gpu_power_w", "cpu_pkg_power_w"):
        s = stats.get(metric)
        if s is not None and s.avg > 0:
            power += s.avg
    if power == 0:
        return 0

    efficiency = round(power / worst, 2)
    score = int(round(efficiency * 30))

    if worst >= 95:
        score = 20
    vram = _max(stats, "gpu_memtemp_c")
    if vram is not None and vram >= GPU_VRAM_CRITICAL:
        score -= 10
    storage = _max(stats, "storage_max_c")
    if storage is not None and storage >= 85:
        score -= 10

    if not safety_stop and 88 <= worst <= 90:
        score = max(score, 45)

    return max(0, min(100, score))


def cooler_tier(worst_temp: Optional[float], safety_stop: bool = False) -> Optional[CoolerTier]:
    if safety_stop:
        return CoolerTier.D
    if worst_temp is None:
        return None
    if worst_temp >= 95:
        return CoolerTier.D
    if worst_temp >= 90:
        return CoolerTier.C
    if worst_temp >= 80:
        return CoolerTier.B
    if worst_temp >= 70:
        return CoolerTier.A
    return CoolerTier.S


@dataclass
class ThermalRating:
    """Outcome of rating one session."""

    component: StressComponent
    status: TestStatus
    bands: Dict[StressComponent, ThermalBand] = field(default_factory=dict)
    stats: Dict[str, MetricStats] = field(default_factory=dict)
    thermal_status: str = "UNKNOWN"
    gpu_thermal_status: Optional[str] = None
    worst_temp_c: Optional[float] = None
    cooler_score: Optional[int] = None
    cooler_tier: Optional[CoolerTier] = None
    sample_count: int = 0

    @property
    def band(self) -> ThermalBand:
        """Headline band: the worst of the per-component bands."""
        if not self.bands:
            return ThermalBand.UNKNOWN
        order = [
            ThermalBand.ABORTED,
            ThermalBand.CRITICAL,
            ThermalBand.WARM,
            ThermalBand.OK,
            ThermalBand.EXCELLENT,
            ThermalBand.UNKNOWN,
        ]
        return min(self.bands.values(), key=order.index)


def _gpu_thermal_status(stats: Dict[str, MetricStats], aborted: bool) -> str:
    hotspot = _max(stats, "gpu_hotspot_c")
    if hotspot is None:
        hotspot = _max(stats, "gpu_temp_c")
    if hotspot is None:
        return "UNKNOWN"
    if aborted:
        return "CRITICAL"
    vram = _max(stats, "gpu_memtemp_c") or 0
    if hotspot < 80 and vram < 70:
        return "EXCELLENT"
    if hotspot < 90 and vram < 85:
        return "OK"
    if hotspot < 95 and vram < 90:
        return "WARM"
    return "CRITICAL"


def rate_session(session: TestSession, samples: List[TelemetrySample]) -> ThermalRating:
    """Rate a finished session from its telemetry."""
    stats = summarize(samples)
    component = session.component
    aborted = session.status.aborted
    rating = ThermalRating(
        component=component,
        status=session.status,
        stats=stats,
        sample_count=len(samples),
    )

    for part in component.parts():
        if part is StressComponent.GPU and session.gpu_skipped:
            continue
        if aborted:
            band = ThermalBand.ABORTED
        elif not samples:
            band = ThermalBand.UNKNOWN
        elif part is StressComponent.GPU:
            band = gpu_band(
                _max(stats, "gpu_hotspot_c"),
                _max(stats, "gpu_memtemp_c"),
                _max(stats, "gpu_temp_c"),
            )
        else:
            band = cpu_band(_max(stats, "cpu_temp_c"), part)
        rating.bands[part] = band

    if component is not StressComponent.GPU:
        status_component = StressComponent.RAM if component is StressComponent.RAM else StressComponent.CPU
        rating.thermal_status = thermal_status(_max(stats, "cpu_temp_c"), status_component, aborted)
    if StressComponent.GPU in rating.bands:
        rating.gpu_thermal_status = _gpu_thermal_status(stats, aborted)
        if component is StressComponent.GPU:
            rating.thermal_status = rating.gpu_thermal_status

    if component is StressComponent.COMBINED:
        safety_stop = session.status is TestStatus.ABORTED_SAFETY
        rating.worst_temp_c = worst_temperature(stats)
        rating.cooler_score = cooler_score(stats, safety_stop)
        rating.cooler_tier = cooler_tier(rating.worst_temp_c, safety_stop)

    return rating
