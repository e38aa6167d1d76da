"""Telemetry sampling and the per-run JSONL sensor log."""

import json
import logging
import queue
import threading
import time
from pathlib import Path
from typing import Callable, Iterator, List, Optional

from .hardware import SensorHub
from .models import StressComponent, TelemetrySample
from .utils import drop_privileges, hostname, run_timestamp

logger = logging.getLogger(__name__)


def log_path_for(
    log_dir: Path,
    component: StressComponent,
    host: Optional[str] = None,
    timestamp: Optional[str] = None,
) -> Path:
    """Sensor log path: <timestamp>-<host>-<component>-sensors.jsonl"""
    return Path(log_dir) / (
        f"{timestamp or run_timestamp()}-{host or hostname()}-{component.value}-sensors.jsonl"
    )


def find_latest_log(
    log_dir: Path, component: StressComponent, host: Optional[str] = None
) -> Optional[Path]:
    """Most recent sensor log for a host and component, if any."""
    pattern = f"*-{host or hostname()}-{component.value}-sensors.jsonl"
    matches = sorted(Path(log_dir).glob(pattern), key=lambda p: p.stat().st_mtime)
    return matches[-1] if matches else None


class TelemetryLog:
    """
    Append-only JSONL sensor log for one test run.

    One record per line, every schema key present on every line.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._file = None
        self._lock = threading.Lock()
        self.count = 0

    def open(self) -> "TelemetryLog":
        with drop_privileges():
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._file = open(self.path, "a", encoding="utf-8")
        return self

    def append(self, sample: TelemetrySample) -> None:
        line = json.dumps(sample.to_dict(), separators=(",", ":"))
        with self._lock:
            if self._file is None:
                raise ValueError(f"Telemetry log {self.path} is not open")
            self._file.write(line + "\n")
            self._file.flush()
            self.count += 1

    def close(self) -> None:
        with self._lock:
            if self._file is not None:
                self._file.close()
                self._file = None

    @property
    def closed(self) -> bool:
        return self._file is None

    def __enter__(self) -> "TelemetryLog":
        return self.open()

    def __exit__(self, *exc) -> None:
        self.close()

    @staticmethod
    def read(path: Path) -> Iterator[TelemetrySample]:
        """Read samples back. Malformed lines (e.g. a torn last write) are skipped."""
        with open(path, "r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    yield TelemetrySample.from_dict(json.loads(line))
                except (ValueError, TypeError) as e:
                    logger.warning(f"{path}:{line_num}: skipping bad record ({e})")

    @classmethod
    def read_all(cls, path: Path) -> List[TelemetrySample]:
        return list(cls.read(path))


class TelemetrySampler(threading.Thread):
    """
    Background producer: one TelemetrySample per interval, appended to the log.

    Has no knowledge of thresholds. Consumers subscribe() for a queue that
    receives every sample after it has been written.
    """

    def __init__(
        self,
        hub: SensorHub,
        log: TelemetryLog,
        interval: float = 1.0,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(name="hellfire-sampler", daemon=True)
        self.hub = hub
        self.log = log
        self.interval = interval
        self.clock = clock
        self._stop_event = threading.Event()
        self._first_sample = threading.Event()
        self._subscribers: List[queue.Queue] = []
        self.error: Optional[BaseException] = None

    def subscribe(self) -> queue.Queue:
        q: queue.Queue = queue.Queue()
        self._subscribers.append(q)
        return q

    def start(self, wait_first: bool = True, timeout: float = 30.0) -> None:
        """Start sampling. By default blocks until the first sample is on disk."""
        super().start()
        if wait_first and not self._first_sample.wait(timeout):
            logger.warning(f"No telemetry sample written within {timeout:.0f}s")

    def tick(self) -> TelemetrySample:
        sample = self.hub.sample(self.clock())
        self.log.append(sample)
        for q in self._subscribers:
            q.put(sample)
        return sample

    def run(self) -> None:
        next_tick = time.monotonic()
        try:
            while not self._stop_event.is_set():
                self.tick()
                self._first_sample.set()
                next_tick += self.interval
                delay = next_tick - time.monotonic()
                if delay < 0:
                    # Sensor reads overran the interval; don't try to catch up
                    next_tick = time.monotonic()
                    delay = 0
                self._stop_event.wait(delay)
        except Exception as e:
            self.error = e
            logger.error(f"Telemetry sampler stopped: {e}")
        finally:
            self._first_sample.set()
            for q in self._subscribers:
                q.put(None)

    def stop(self, timeout: float = 10.0) -> None:
        """Request stop; the in-flight sample is finished before the thread exits."""
        self._stop_event.set()
        if self.is_alive():
            self.join(timeout)
            if self.is_alive():
                logger.warning(f"Telemetry sampler did not stop within {timeout:.0f}s")

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()
