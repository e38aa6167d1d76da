"""Test orchestration: confirmation, run loop and teardown."""

import logging
import signal
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from tqdm import tqdm

from .config import DEFAULT_CONFIG
from .hardware import SensorHub, discover_topology
from .load import LoadSupervisor, build_supervisor
from .models import FanUnit, StressComponent, TestSession, TestStatus
from .rating import ThermalRating, rate_session
from .safety import SafetyMonitor, ThermalWarnings, thresholds_for
from .telemetry import TelemetryLog, TelemetrySampler, log_path_for

logger = logging.getLogger(__name__)


class CancellationToken:
    """Shared stop request for every task of one run. First reason wins."""

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self.reason: Optional[str] = None

    def cancel(self, reason: Optional[str] = None) -> None:
        with self._lock:
            if not self._event.is_set():
                self.reason = reason
                self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)


class OrchestratorState(Enum):
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    DECLINED = "declined"
    PREFLIGHT = "preflight"
    COUNTDOWN = "countdown"
    RUNNING = "running"
    FINISHED = "finished"


@dataclass
class RunResult:
    session: TestSession
    rating: Optional[ThermalRating]
    log_path: Optional[Path]
    sample_count: int = 0
    fan_unit: Optional[FanUnit] = None


class TestOrchestrator:
    """
    Drives one stress test from confirmation to rating.

    The orchestrator owns the session status. The safety monitor and the
    SIGTERM handler only request a stop through the cancellation token (the
    monitor also records its trip on the session first); every exit path
    goes through teardown() exactly once.
    """

    __test__ = False

    def __init__(
        self,
        component: StressComponent,
        duration: int,
        config: Optional[dict] = None,
        hub: Optional[SensorHub] = None,
        supervisor: Optional[LoadSupervisor] = None,
        log_dir: Optional[Path] = None,
        input_fn: Callable[[str], str] = input,
        show_progress: bool = True,
        poll_interval: Optional[float] = None,
    ):
        self.component = component
        self.duration = duration
        self.config = config or DEFAULT_CONFIG
        self.input_fn = input_fn
        self.show_progress = show_progress

        telemetry_cfg = self.config["telemetry"]
        self.interval = telemetry_cfg["interval"]
        self.poll_interval = poll_interval if poll_interval is not None else self.interval
        self.log_dir = Path(log_dir or telemetry_cfg["log_dir"])

        if hub is None:
            hub = SensorHub(discover_topology(telemetry_cfg["command_timeout"]))
        self.hub = hub
        if supervisor is None:
            topology = hub.topology
            supervisor = build_supervisor(
                component,
                self.config,
                gpu_vendor=topology.gpu_vendor,
                hybrid=topology.hybrid_graphics,
            )
        self.supervisor = supervisor

        self.state = OrchestratorState.AWAITING_CONFIRMATION
        self.token = CancellationToken()
        self.session: Optional[TestSession] = None
        self.log: Optional[TelemetryLog] = None
        self.sampler: Optional[TelemetrySampler] = None
        self.monitor: Optional[SafetyMonitor] = None
        self.teardown_count = 0
        self._teardown_lock = threading.Lock()
        self._torn_down = False

    def _set_state(self, state: OrchestratorState) -> None:
        logger.debug(f"Orchestrator: {self.state.value} -> {state.value}")
        self.state = state

    def confirm(self) -> bool:
        """Ask for the confirmation phrase. Anything else declines."""
        phrase = self.config["orchestrator"]["confirmation_phrase"]
        print(f"\n{'=' * 80}")
        print(f"HELLFIRE {self.component.title}")
        print(f"{'=' * 80}")
        print("This test drives your hardware to its thermal limits.")
        print(f"Duration: {self.duration}s. Safety limits stop the run automatically.")
        try:
            answer = self.input_fn(f"Type {phrase} to start: ")
        except EOFError:
            return False
        return answer.strip() == phrase

    def preflight(self) -> None:
        """
        Warn about a hot start, check the safety sensors and the load tools.

        Raises:
            HardwareError: If a stressed component has no sensor
            LoadGeneratorMissing: If a required load tool is missing
        """
        self.hub.topology.require_safety_sensors(self.component)
        missing = self.supervisor.check_tools(self.component)
        for part in missing:
            print(f"⚠ {part.value.upper()} load tool missing, it will be skipped")

        warn_temp = self.config["orchestrator"]["preflight_warn_temp"]
        cpu_temp = self.hub.read_cpu_temp()
        if cpu_temp is not None and cpu_temp >= warn_temp:
            logger.warning(f"CPU is already at {cpu_temp:.1f}°C before the test")
            print(f"⚠ CPU already at {cpu_temp:.1f}°C, consider letting it cool down first")

    def countdown(self) -> None:
        seconds = self.config["orchestrator"]["countdown"]
        for _ in tqdm(
            range(seconds),
            desc="Starting in",
            unit="s",
            disable=not self.show_progress or seconds <= 0,
        ):
            time.sleep(1)

    def _handle_sigterm(self, signum, frame) -> None:
        self.token.cancel(f"Terminated by signal {signal.Signals(signum).name}")

    def run(self) -> Optional[RunResult]:
        """
        Run the test. Returns None if the user declined before any load started.

        Raises:
            LoadGeneratorMissing: If a required load tool is missing
        """
        self._set_state(OrchestratorState.AWAITING_CONFIRMATION)
        if not self.confirm():
            self._set_state(OrchestratorState.DECLINED)
            print("Aborted. Nothing was started.")
            return None

        self._set_state(OrchestratorState.PREFLIGHT)
        self.preflight()

        self._set_state(OrchestratorState.COUNTDOWN)
        try:
            self.countdown()
        except KeyboardInterrupt:
            self._set_state(OrchestratorState.DECLINED)
            print("\nAborted during countdown. Nothing was started.")
            return None

        self._set_state(OrchestratorState.RUNNING)
        log_path = log_path_for(self.log_dir, self.component)
        self.session = TestSession(self.component, self.duration, log_path=log_path)

        previous_handler = None
        in_main_thread = threading.current_thread() is threading.main_thread()
        if in_main_thread:
            previous_handler = signal.signal(signal.SIGTERM, self._handle_sigterm)

        try:
            self._start()
            self._wait()
        except KeyboardInterrupt:
            self.session.finish(TestStatus.ABORTED_USER, "Interrupted by user")
        finally:
            try:
                self.teardown()
            finally:
                if in_main_thread:
                    signal.signal(signal.SIGTERM, previous_handler or signal.SIG_DFL)
                self._set_state(OrchestratorState.FINISHED)

        logger.info(f"Test finished: {self.session.status.value} ({self.session.reason or 'ok'})")
        return self._result()

    def _start(self) -> None:
        self.log = TelemetryLog(self.session.log_path).open()
        self.sampler = TelemetrySampler(self.hub, self.log, self.interval)
        samples = self.sampler.subscribe()
        self.sampler.start()
        logger.info(f"Telemetry logging to {self.session.log_path}")

        self.supervisor.start(self.component, self.duration)
        self.session.gpu_skipped = StressComponent.GPU in self.supervisor.skipped
        self.session.started_at = time.time()

        self.monitor = SafetyMonitor(
            self.session,
            samples,
            thresholds_for(self.component, self.config),
            supervisor=self.supervisor,
            token=self.token,
            interval=self.interval,
            warnings=ThermalWarnings(self.component, self.config),
        )
        self.monitor.start()

    def _wait(self) -> None:
        tolerance = self.config["orchestrator"]["early_exit_tolerance"]
        with tqdm(
            total=self.duration,
            desc=self.component.value.upper(),
            unit="s",
            disable=not self.show_progress,
        ) as bar:
            while True:
                if self.token.wait(self.poll_interval):
                    self.session.finish(TestStatus.ABORTED_USER, self.token.reason)
                    return

                elapsed = self.session.elapsed()
                bar.n = min(int(elapsed), self.duration)
                bar.refresh()

                if self.session.finished:
                    return
                lost = self._telemetry_lost()
                if lost is not None:
                    logger.critical(f"SAFETY STOP: {lost}")
                    self.session.finish(TestStatus.ABORTED_SAFETY, lost)
                    return
                if elapsed >= self.duration:
                    self.session.finish(TestStatus.PASS)
                    return

                early = self.supervisor.check_exits(elapsed, self.duration, tolerance)
                if early is not None:
                    logger.error(early.reason)
                    self.session.finish(TestStatus.FAILED_EARLY_TERMINATION, early.reason)
                    return

    def _telemetry_lost(self) -> Optional[str]:
        """Reason the run is no longer watched, or None while it is."""
        if self.sampler is not None:
            if self.sampler.error is not None:
                return f"Telemetry lost: {self.sampler.error}"
            if not self.sampler.is_alive():
                return "Telemetry lost: sampler stopped"
        if self.monitor is not None and not self.monitor.is_alive():
            return "Telemetry lost: safety monitor stopped"
        return None

    def _defer_interrupt(self, signum, frame) -> None:
        print("\nStopping load generators, please wait...")

    def teardown(self) -> bool:
        """
        Stop load, monitor and sampler, then close the log.

        Runs once per session; later calls return False. Ctrl+C is deferred
        while it runs so the SIGTERM/SIGKILL ladder always completes.
        """
        with self._teardown_lock:
            if self._torn_down:
                return False
            self._torn_down = True
            self.teardown_count += 1

        deferring = threading.current_thread() is threading.main_thread()
        if deferring:
            previous_sigint = signal.signal(signal.SIGINT, self._defer_interrupt)

        steps = [
            ("load generators", self.supervisor.stop_all),
            ("safety monitor", self.monitor.stop if self.monitor else None),
            ("telemetry sampler", self.sampler.stop if self.sampler else None),
            ("telemetry log", self.log.close if self.log else None),
        ]
        try:
            for name, step in steps:
                if step is None:
                    continue
                try:
                    step()
                except KeyboardInterrupt:
                    logger.warning(f"Teardown: interrupted while stopping {name}, continuing")
                except Exception as e:
                    logger.error(f"Teardown: failed to stop {name}: {e}")
        finally:
            if deferring:
                if previous_sigint is None:
                    previous_sigint = signal.default_int_handler
                signal.signal(signal.SIGINT, previous_sigint)
        return True

    def _result(self) -> RunResult:
        samples = []
        if self.log is not None and self.session.log_path.exists():
            samples = TelemetryLog.read_all(self.session.log_path)

        rating = None
        if self.session.status is not TestStatus.ABORTED_USER:
            rating = rate_session(self.session, samples)

        fan_unit = next((s.gpu_fan_unit for s in samples if s.gpu_fan_unit), None)
        return RunResult(
            session=self.session,
            rating=rating,
            log_path=self.session.log_path,
            sample_count=len(samples),
            fan_unit=fan_unit,
        )
