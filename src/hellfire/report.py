"""Console summary of a finished stress test."""

from typing import Dict, Optional, Tuple

from .models import CoolerTier, FanUnit, StressComponent, TestStatus, ThermalBand
from .rating import MetricStats, ThermalRating

# (label, metric, unit)
STAT_LINES = {
    StressComponent.CPU: [
        ("CPU temp", "cpu_temp_c", "°C"),
        ("CPU package power", "cpu_pkg_power_w", "W"),
    ],
    StressComponent.RAM: [
        ("CPU temp", "cpu_temp_c", "°C"),
    ],
    StressComponent.GPU: [
        ("GPU edge", "gpu_temp_c", "°C"),
        ("GPU hotspot", "gpu_hotspot_c", "°C"),
        ("GPU VRAM", "gpu_memtemp_c", "°C"),
        ("GPU power", "gpu_power_w", "W"),
    ],
}

COMMON_LINES = [
    ("Case fan 1", "fan1_rpm", "RPM"),
    ("Case fan 2", "fan2_rpm", "RPM"),
    ("Case fan 3", "fan3_rpm", "RPM"),
    ("Case fan 4", "fan4_rpm", "RPM"),
    ("Case fan 5", "fan5_rpm", "RPM"),
    ("Storage (hottest)", "storage_max_c", "°C"),
]

BAND_RANGES = {
    StressComponent.CPU: {
        ThermalBand.EXCELLENT: "max Temp < 65°C",
        ThermalBand.OK: "65–75°C",
        ThermalBand.WARM: "75–90°C",
        ThermalBand.CRITICAL: "≥90°C or safety stop",
    },
    StressComponent.RAM: {
        ThermalBand.EXCELLENT: "max Temp < 65°C",
        ThermalBand.OK: "65–75°C",
        ThermalBand.WARM: "75–85°C",
        ThermalBand.CRITICAL: "≥85°C",
    },
    StressComponent.GPU: {
        ThermalBand.EXCELLENT: "hotspot < 80°C",
        ThermalBand.OK: "hotspot 80–90°C",
        ThermalBand.WARM: "hotspot 90–95°C",
        ThermalBand.CRITICAL: "hotspot ≥95°C or VRAM ≥90°C",
    },
}

FLAVOUR = {
    StressComponent.CPU: {
        ThermalBand.EXCELLENT: "This cooling performance is sick. You were born to overclock.",
        ThermalBand.OK: "Solid. Gaming workout 24h daily, no sweat.",
        ThermalBand.WARM: "You are hot: check airflow, paste, dust and fan curves.",
        ThermalBand.CRITICAL: "Cooling insufficient for Hellfire. This rig will die sooner rather than later.",
    },
    StressComponent.RAM: {
        ThermalBand.EXCELLENT: "Your DIMMs are chilling. Maximum stability achieved.",
        ThermalBand.OK: "Not cold, not hot. Just right for battle.",
        ThermalBand.WARM: "The 'I can continue, but I won't like it' zone. Airflow might help, paste won't.",
        ThermalBand.CRITICAL: "Memory meltdown detected. These bits are going places they shouldn't.",
    },
    StressComponent.GPU: {
        ThermalBand.EXCELLENT: "Your cooler laughs at Hellfire.",
        ThermalBand.OK: "This cooler can handle raids, boss fights and your bad decisions relaxed.",
        ThermalBand.WARM: "Your GPU is preheating the room. Might be time for a cleaning?",
        ThermalBand.CRITICAL: "Your GPU is forging a new planet core. Stop the run... NOW!",
    },
}

TIER_COMMENTS = {
    CoolerTier.S: "Your case is basically a wind tunnel with RGB.",
    CoolerTier.A: "Strong cooling performance. This is how grown-up builds look.",
    CoolerTier.B: "Hot but manageable. Good for gaming, maybe not for overvolting everything.",
    CoolerTier.C: "Airflow is more suggestion than reality. Consider adding fans or cleaning filters.",
    CoolerTier.D: "Congrats, you accidentally built an Easy-Bake Oven.",
}

STATUS_MARKS = {
    "EXCELLENT": "✓",
    "OK": "✓",
    "WARM": "⚠",
    "CRITICAL": "✗",
    "INSUFFICIENT": "✗",
    "UNKNOWN": "?",
}


def _banner(title: str) -> None:
    print(f"\n{'=' * 80}")
    print(title)
    print(f"{'=' * 80}")


def format_stats(label: str, stats: Optional[MetricStats], unit: str, limit: Optional[str] = None) -> str:
    if stats is None:
        return f"  {label + ':':<20} n/a"
    line = (
        f"  {label + ':':<20} min {stats.min:.1f}{unit}  avg {stats.avg:.1f}{unit}  "
        f"max {stats.max:.1f}{unit}  ({stats.count} samples)"
    )
    if limit:
        line += f"  limit {limit}"
    return line


def _limits(config: Optional[dict]) -> Dict[str, str]:
    if not config:
        return {}
    s = config["safety"]
    return {
        "cpu_temp_c": f"{s['cpu_temp_limit']:g}°C",
        "gpu_hotspot_c": f"{s['gpu_hotspot_limit']:g}°C",
        "gpu_memtemp_c": f"{s['gpu_vram_limit']:g}°C",
    }


def _fan_line(rating: ThermalRating, fan_unit: Optional[FanUnit]) -> Optional[str]:
    stats = rating.stats.get("gpu_fan_speed")
    if stats is None:
        return None
    unit = "%" if fan_unit is FanUnit.PERCENT else "RPM"
    line = format_stats("GPU fan", stats, unit)
    pct = rating.stats.get("gpu_fan_percent")
    if fan_unit is FanUnit.RPM and pct is not None:
        line += f"  ({pct.min:.0f}–{pct.max:.0f}%)"
    return line


def print_stats(rating: ThermalRating, config: Optional[dict] = None, fan_unit: Optional[FanUnit] = None) -> None:
    limits = _limits(config)
    seen = set()
    for part in rating.component.parts():
        for label, metric, unit in STAT_LINES[part]:
            if metric in seen:
                continue
            seen.add(metric)
            print(format_stats(label, rating.stats.get(metric), unit, limits.get(metric)))
        if part is StressComponent.GPU:
            fan = _fan_line(rating, fan_unit)
            if fan:
                print(fan)
    for label, metric, unit in COMMON_LINES:
        if metric in rating.stats:
            print(format_stats(label, rating.stats[metric], unit))


def _max_for(rating: ThermalRating, part: StressComponent) -> Optional[float]:
    metrics = ("gpu_hotspot_c", "gpu_temp_c") if part is StressComponent.GPU else ("cpu_temp_c",)
    for metric in metrics:
        if metric in rating.stats:
            return rating.stats[metric].max
    return None


def print_band(part: StressComponent, band: ThermalBand, max_temp: Optional[float]) -> None:
    print(f"\n  Hellfire {part.value.upper()} cooling rating: {band.value}")
    if band is ThermalBand.ABORTED:
        if part is StressComponent.RAM:
            print("  Abort acknowledged. RAM integrity preserved.")
        else:
            print("  Hellfire run aborted: no guts today, no RMA tomorrow.")
        return
    if band is ThermalBand.UNKNOWN:
        print("  Temperature data not available.")
        return
    range_text = BAND_RANGES[part][band]
    if max_temp is not None:
        range_text += f" - your max: {max_temp:.1f}°C"
    print(f"  {range_text}")
    print(f"  {FLAVOUR[part][band]}")


def result_line(status: TestStatus, reason: Optional[str]) -> Tuple[str, str]:
    if status is TestStatus.PASS:
        return "✓", "PASS"
    if status is TestStatus.ABORTED_USER:
        return "✗", "ABORTED by user"
    return "✗", f"FAILED - {reason or status.value}"


def print_summary(result, config: Optional[dict] = None) -> None:
    """Print the end-of-run report for a RunResult."""
    session = result.session
    if session.status is TestStatus.ABORTED_USER:
        print("\nAbort acknowledged. Load stopped, nothing was rated.")
        if result.log_path:
            print(f"Sensor log: {result.log_path}")
        return

    _banner(f"TEST COMPLETE - {session.component.title}")
    print(f"  Duration: {session.duration} seconds")
    if result.log_path:
        print(f"  Sensor log: {result.log_path}")
    if session.gpu_skipped:
        print("  ⚠ GPU load generator missing, ran CPU+RAM only")

    rating = result.rating
    if rating is not None:
        print()
        print_stats(rating, config, result.fan_unit)

        status = rating.thermal_status
        print(f"\n  Overall thermal status: {STATUS_MARKS.get(status, '?')} {status}")
        if rating.gpu_thermal_status and session.component is StressComponent.COMBINED:
            gpu_status = rating.gpu_thermal_status
            print(f"  GPU thermal status:     {STATUS_MARKS.get(gpu_status, '?')} {gpu_status}")

        for part, band in rating.bands.items():
            print_band(part, band, _max_for(rating, part))

        if rating.cooler_tier is not None:
            tier = rating.cooler_tier
            print(f"\n  Cooler score: {rating.cooler_score}/100")
            print(f"  Cooler tier:  {tier.value} ({tier.description})")
            if rating.worst_temp_c is not None:
                print(f"  Worst temperature: {rating.worst_temp_c:.1f}°C")
            print(f"  {TIER_COMMENTS[tier]}")

    mark, text = result_line(session.status, session.reason)
    print(f"\n  Result: {mark} {text}")
    print(f"{'=' * 80}\n")
