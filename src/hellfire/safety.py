"""Safety thresholds and the background safety monitor."""

import logging
import queue
import threading
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Dict, FrozenSet, List, Optional, Tuple

from .config import DEFAULT_CONFIG
from .models import StressComponent, TelemetrySample, TestSession, TestStatus

if TYPE_CHECKING:
    from .load import LoadSupervisor
    from .orchestrator import CancellationToken

logger = logging.getLogger(__name__)

CPU_COMPONENTS = frozenset(
    {StressComponent.CPU, StressComponent.RAM, StressComponent.COMBINED}
)
GPU_COMPONENTS = frozenset({StressComponent.GPU, StressComponent.COMBINED})

TELEMETRY_LOST = "Telemetry lost: sensor sampling stopped during the run"


class SafetyError(Exception):
    """Fatal safety limit exceeded."""

    def __init__(self, trip: "SafetyTrip"):
        self.trip = trip
        super().__init__(trip.reason)


class TripPolicy(Enum):
    IMMEDIATE = "immediate"
    DEBOUNCED = "debounced"
    CONDITIONAL = "conditional"


def _fmt(value: float) -> str:
    return f"{value:g}"


@dataclass(frozen=True)
class SafetyThreshold:
    """
    One row of the safety table.

    `limit` is absolute unless `relative_to` names another metric, in which
    case the effective limit is limit * that metric (e.g. 1.10 x power cap).
    A CONDITIONAL threshold only counts while at least one guard metric is
    at or above its guard value.
    """

    name: str
    metric: str
    limit: float
    policy: TripPolicy = TripPolicy.IMMEDIATE
    debounce: int = 1
    direction: str = "above"
    guards: Tuple[Tuple[str, float], ...] = ()
    relative_to: Optional[str] = None
    unit: str = "°C"
    components: FrozenSet[StressComponent] = CPU_COMPONENTS

    def __post_init__(self):
        if self.direction not in ("above", "below"):
            raise ValueError(f"Invalid direction '{self.direction}' for {self.name}")
        if self.debounce < 1:
            raise ValueError(f"Debounce for {self.name} must be at least 1 sample")

    @property
    def required_samples(self) -> int:
        if self.policy is TripPolicy.IMMEDIATE:
            return 1
        return self.debounce

    def limit_for(self, sample: TelemetrySample) -> Optional[float]:
        if self.relative_to is None:
            return self.limit
        base = sample.value(self.relative_to)
        if base is None:
            return None
        return self.limit * base

    def breached(self, value: float, limit: float) -> bool:
        if self.direction == "above":
            return value > limit
        return value < limit

    def armed(self, sample: TelemetrySample) -> bool:
        if self.policy is not TripPolicy.CONDITIONAL or not self.guards:
            return True
        for metric, guard in self.guards:
            reading = sample.value(metric)
            if reading is not None and reading >= guard:
                return True
        return False

    def applies_to(self, component: StressComponent) -> bool:
        return component in self.components


@dataclass(frozen=True)
class SafetyTrip:
    """A confirmed threshold breach."""

    threshold: SafetyThreshold
    value: float
    limit: float
    samples_over: int
    seconds_over: float
    timestamp: float

    @property
    def metric(self) -> str:
        return self.threshold.metric

    @property
    def reason(self) -> str:
        t = self.threshold
        verb = "exceeded" if t.direction == "above" else "fell below"
        text = f"{t.name} {self.value:.1f}{t.unit} {verb} {_fmt(round(self.limit, 1))}{t.unit}"
        if t.relative_to is not None:
            base = _fmt(round(self.limit / t.limit, 1))
            text += f" ({t.limit:.0%} of {base}{t.unit} power limit)"
        if t.required_samples > 1:
            text += f" for {self.seconds_over:.0f}s"
        return text


class ThresholdTracker:
    """
    Consecutive-breach counter for one threshold.

    Any in-range reading, or an unmet guard, re-arms the counter to zero.
    An absent reading leaves it where it was.
    """

    def __init__(self, threshold: SafetyThreshold, interval: float = 1.0):
        self.threshold = threshold
        self.interval = interval
        self.count = 0

    def update(self, sample: TelemetrySample) -> Optional[SafetyTrip]:
        t = self.threshold
        value = sample.value(t.metric)
        limit = t.limit_for(sample)
        if value is None or limit is None:
            return None

        if not t.armed(sample) or not t.breached(value, limit):
            self.count = 0
            return None

        self.count += 1
        if self.count < t.required_samples:
            return None
        return SafetyTrip(
            threshold=t,
            value=value,
            limit=limit,
            samples_over=self.count,
            seconds_over=self.count * self.interval,
            timestamp=sample.timestamp,
        )

    def reset(self) -> None:
        self.count = 0


def thresholds_for(
    component: StressComponent, config: Optional[dict] = None
) -> List[SafetyThreshold]:
    """Safety table rows that apply to a component selection."""
    cfg = (config or DEFAULT_CONFIG)["safety"]
    table = [
        SafetyThreshold(
            name="CPU temperature",
            metric="cpu_temp_c",
            limit=cfg["cpu_temp_limit"],
            policy=TripPolicy.DEBOUNCED,
            debounce=cfg["cpu_temp_debounce"],
            components=CPU_COMPONENTS,
        ),
        SafetyThreshold(
            name="GPU VRAM temperature",
            metric="gpu_memtemp_c",
            limit=cfg["gpu_vram_limit"],
            policy=TripPolicy.IMMEDIATE,
            components=GPU_COMPONENTS,
        ),
        SafetyThreshold(
            name="GPU hotspot temperature",
            metric="gpu_hotspot_c",
            limit=cfg["gpu_hotspot_limit"],
            policy=TripPolicy.DEBOUNCED,
            debounce=cfg["gpu_hotspot_debounce"],
            components=GPU_COMPONENTS,
        ),
        SafetyThreshold(
            name="GPU power draw",
            metric="gpu_power_w",
            limit=cfg["gpu_power_limit_factor"],
            policy=TripPolicy.IMMEDIATE,
            relative_to="gpu_power_limit_w",
            unit="W",
            components=GPU_COMPONENTS,
        ),
        SafetyThreshold(
            name="GPU fan speed",
            metric="gpu_fan_percent",
            limit=cfg["gpu_fan_min_percent"],
            policy=TripPolicy.CONDITIONAL,
            debounce=cfg["gpu_fan_debounce"],
            direction="below",
            guards=(
                ("gpu_temp_c", cfg["gpu_fan_guard_edge"]),
                ("gpu_hotspot_c", cfg["gpu_fan_guard_hotspot"]),
            ),
            unit="%",
            components=GPU_COMPONENTS,
        ),
    ]
    return [t for t in table if t.applies_to(component)]


@dataclass(frozen=True)
class WarningRule:
    name: str
    metric: str
    limit: float
    inclusive: bool = False
    components: FrozenSet[StressComponent] = CPU_COMPONENTS

    def hit(self, value: float) -> bool:
        return value >= self.limit if self.inclusive else value > self.limit


class ThermalWarnings:
    """Non-fatal high-temperature notices, rate limited per metric."""

    def __init__(self, component: StressComponent, config: Optional[dict] = None):
        cfg = (config or DEFAULT_CONFIG)["safety"]["warnings"]
        self.interval = cfg["interval"]
        rules = [
            WarningRule("CPU temperature", "cpu_temp_c", cfg["cpu_temp"]),
            WarningRule(
                "GPU hotspot", "gpu_hotspot_c", cfg["gpu_hotspot"], components=GPU_COMPONENTS
            ),
            WarningRule(
                "GPU VRAM",
                "gpu_memtemp_c",
                cfg["gpu_vram"],
                inclusive=True,
                components=GPU_COMPONENTS,
            ),
        ]
        self.rules = [r for r in rules if component in r.components]
        self._last: Dict[str, float] = {}

    def check(self, sample: TelemetrySample) -> List[str]:
        messages = []
        for rule in self.rules:
            value = sample.value(rule.metric)
            if value is None or not rule.hit(value):
                continue
            last = self._last.get(rule.metric)
            if last is not None and sample.timestamp - last < self.interval:
                continue
            self._last[rule.metric] = sample.timestamp
            msg = f"{rule.name} high: {value:.1f}°C"
            logger.warning(msg)
            messages.append(msg)
        return messages


class SafetyMonitor(threading.Thread):
    """
    Evaluates every telemetry sample against the safety table.

    On a trip the monitor finishes the session as ABORTED_SAFETY, stops the
    load generators and cancels the run. The sample stream ending while
    the session is still running is handled the same way. A session that
    already reached a terminal status is left untouched.
    """

    def __init__(
        self,
        session: TestSession,
        samples: "queue.Queue[Optional[TelemetrySample]]",
        thresholds: List[SafetyThreshold],
        supervisor: Optional["LoadSupervisor"] = None,
        token: Optional["CancellationToken"] = None,
        interval: float = 1.0,
        warnings: Optional[ThermalWarnings] = None,
    ):
        super().__init__(name="hellfire-monitor", daemon=True)
        self.session = session
        self.samples = samples
        self.trackers = [ThresholdTracker(t, interval) for t in thresholds]
        self.supervisor = supervisor
        self.token = token
        self.warnings = warnings
        self.trip: Optional[SafetyTrip] = None
        self.evaluated = 0
        self._stop_event = threading.Event()

    def evaluate(self, sample: TelemetrySample) -> Optional[SafetyTrip]:
        """Update every tracker with one sample; return the first trip."""
        self.evaluated += 1
        if self.warnings is not None:
            self.warnings.check(sample)
        first = None
        for tracker in self.trackers:
            trip = tracker.update(sample)
            if trip is not None and first is None:
                first = trip
        return first

    def check(self, sample: TelemetrySample) -> None:
        """
        Raises:
            SafetyError: If the sample completes a threshold breach
        """
        trip = self.evaluate(sample)
        if trip is not None:
            raise SafetyError(trip)

    def handle_trip(self, trip: SafetyTrip) -> bool:
        if not self._safety_stop(trip.reason):
            logger.debug(
                f"Ignoring trip after session ended ({self.session.status.value}): {trip.reason}"
            )
            return False
        self.trip = trip
        return True

    def handle_lost_telemetry(self) -> bool:
        """
        The sample stream ended while the session was still running.

        Nothing is watching the load any more, so this is a safety stop.
        """
        return self._safety_stop(TELEMETRY_LOST)

    def _safety_stop(self, reason: str) -> bool:
        if not self.session.finish(TestStatus.ABORTED_SAFETY, reason):
            return False
        logger.critical(f"SAFETY STOP: {reason}")
        if self.supervisor is not None:
            self.supervisor.stop_all()
        if self.token is not None:
            self.token.cancel(reason)
        return True

    def run(self) -> None:
        while not self._stop_event.is_set():
            try:
                sample = self.samples.get(timeout=0.2)
            except queue.Empty:
                continue
            if sample is None:
                if not self._stop_event.is_set():
                    self.handle_lost_telemetry()
                break
            try:
                self.check(sample)
            except SafetyError as e:
                self.handle_trip(e.trip)
                break

    def stop(self, timeout: float = 10.0) -> None:
        self._stop_event.set()
        if self.is_alive():
            self.join(timeout)
