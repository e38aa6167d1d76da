"""Load generation for CPU, RAM and GPU stress tests."""

import logging
import os
import shutil
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

import psutil

from .config import parse_resolution
from .models import StressComponent

logger = logging.getLogger(__name__)


class LoadGeneratorMissing(Exception):
    """Required stress tool is not installed."""

    def __init__(self, tool: str, component: StressComponent):
        self.tool = tool
        self.component = component
        super().__init__(f"{tool} not found ({component.value} load generator)")


@dataclass
class EarlyExit:
    """A load generator that ended before its requested duration."""

    name: str
    elapsed: float
    duration: int
    returncode: Optional[int]

    @property
    def reason(self) -> str:
        return (
            f"{self.name} stress terminated early at {self.elapsed:.0f}s "
            f"(before {self.duration}s, exit code {self.returncode})"
        )


class LoadController:
    """
    Base class for load controllers.

    Owns one stress process started in its own session, plus every
    descendant seen while it ran.
    """

    name = "load"
    component = StressComponent.CPU
    tool = ""

    def __init__(self, terminate_grace: float = 5.0):
        self.terminate_grace = terminate_grace
        self.process: Optional[subprocess.Popen] = None
        self.started_at: Optional[float] = None
        self.ended_at: Optional[float] = None
        self.descendants: Dict[int, psutil.Process] = {}
        self._stopped = False
        self._stop_lock = threading.Lock()

    def available(self) -> bool:
        return shutil.which(self.tool) is not None

    def command(self, duration: int) -> List[str]:
        raise NotImplementedError

    def environment(self) -> Optional[Dict[str, str]]:
        return None

    def start(self, duration: int, output_path: Optional[Path] = None) -> None:
        """
        Start the load process.

        Raises:
            LoadGeneratorMissing: If the tool is not on PATH
        """
        if not self.available():
            raise LoadGeneratorMissing(self.tool, self.component)

        cmd = self.command(duration)
        logger.info(f"Starting {self.name} load: {' '.join(cmd)}")

        stdout = subprocess.DEVNULL
        if output_path is not None:
            stdout = open(output_path, "ab")
        try:
            # New session: pgid == pid, so the whole tree can be signalled
            self.process = subprocess.Popen(
                cmd,
                stdout=stdout,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                env=self.environment(),
                start_new_session=True,
            )
        except FileNotFoundError:
            raise LoadGeneratorMissing(self.tool, self.component)
        finally:
            if output_path is not None:
                stdout.close()

        self.started_at = time.time()
        self._stopped = False
        self.refresh_descendants()

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    def refresh_descendants(self) -> None:
        """Record every live descendant; GPU launchers fork their real workers."""
        if self.process is None:
            return
        try:
            parent = psutil.Process(self.process.pid)
            for child in parent.children(recursive=True):
                self.descendants.setdefault(child.pid, child)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass

    def poll(self) -> Optional[int]:
        """Return the exit code if the main process has ended, else None."""
        if self.process is None:
            return None
        returncode = self.process.poll()
        if returncode is None:
            self.refresh_descendants()
        elif self.ended_at is None:
            self.ended_at = time.time()
        return returncode

    def is_running(self) -> bool:
        return self.process is not None and self.poll() is None

    def _live_descendants(self) -> List[psutil.Process]:
        live = []
        for proc in self.descendants.values():
            try:
                if proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE:
                    live.append(proc)
            except psutil.NoSuchProcess:
                continue
        return live

    def _signal_group(self, sig: int) -> None:
        # Started with start_new_session, so the group id is the leader's pid
        # and stays valid after the leader has been reaped.
        try:
            os.killpg(self.process.pid, sig)
        except (ProcessLookupError, PermissionError):
            # Whole group gone; descendants are handled individually
            pass

    def stop(self, grace: Optional[float] = None) -> None:
        """
        Stop the load process and its children.

        SIGTERM to the process group and tracked descendants, wait the grace
        period, then SIGKILL whatever survived. Safe to call repeatedly and
        on a process that already exited on its own.
        """
        with self._stop_lock:
            if self.process is None or self._stopped:
                return
            self._terminate(self.terminate_grace if grace is None else grace)
            self._stopped = True

    def _terminate(self, grace: float) -> None:
        self.refresh_descendants()

        # The group outlives its leader, so signal it even after the leader exited
        self._signal_group(signal.SIGTERM)
        for proc in self._live_descendants():
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                pass

        deadline = time.time() + grace
        try:
            self.process.wait(timeout=grace)
        except subprocess.TimeoutExpired:
            logger.warning(
                f"{self.name} load (PID {self.process.pid}) ignored SIGTERM, sending SIGKILL"
            )
            self._kill()
        except KeyboardInterrupt:
            logger.warning(f"Interrupted while stopping {self.name} load, sending SIGKILL")
            self._kill()
            for proc in self._live_descendants():
                try:
                    proc.kill()
                except psutil.NoSuchProcess:
                    pass
            raise

        survivors = self._live_descendants()
        if survivors:
            _, survivors = psutil.wait_procs(
                survivors, timeout=max(0.0, deadline - time.time())
            )
        for proc in survivors:
            logger.warning(f"Killing leftover {self.name} child PID {proc.pid}")
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                pass
        if survivors:
            psutil.wait_procs(survivors, timeout=grace)

        if self.ended_at is None:
            self.ended_at = time.time()

    def _kill(self) -> None:
        self._signal_group(signal.SIGKILL)
        if self.process.poll() is None:
            self.process.kill()
        self.process.wait()


class CPULoad(LoadController):
    """CPU load using stress-ng matrix, crypt and generic cpu stressors."""

    name = "CPU"
    component = StressComponent.CPU
    tool = "stress-ng"

    def __init__(
        self,
        cores: Optional[int] = None,
        log_file: Optional[Path] = None,
        terminate_grace: float = 5.0,
    ):
        super().__init__(terminate_grace)
        self.cores = cores or os.cpu_count() or 1
        self.log_file = log_file

    def command(self, duration: int) -> List[str]:
        cmd = [
            "stress-ng",
            "--matrix",
            str(self.cores),
            "--crypt",
            str(self.cores),
            "--cpu",
            str(self.cores),
            "--timeout",
            f"{duration}s",
            "--metrics-brief",
        ]
        if self.log_file:
            cmd += ["--log-file", str(self.log_file)]
        return cmd


class RAMLoad(LoadController):
    """Virtual-memory fill using stress-ng vm workers."""

    name = "RAM"
    component = StressComponent.RAM
    tool = "stress-ng"

    def __init__(
        self,
        fraction: float = 0.9,
        workers: Optional[int] = None,
        all_methods: bool = False,
        total_bytes: Optional[int] = None,
        log_file: Optional[Path] = None,
        terminate_grace: float = 5.0,
    ):
        super().__init__(terminate_grace)
        if not 0 < fraction <= 1:
            raise ValueError(f"RAM fraction must be in (0, 1], got {fraction}")
        total = total_bytes or psutil.virtual_memory().total
        self.target_bytes = int(total * fraction)
        self.workers = workers or os.cpu_count() or 1
        self.all_methods = all_methods
        self.log_file = log_file

    def command(self, duration: int) -> List[str]:
        cmd = [
            "stress-ng",
            "--vm",
            str(self.workers),
            "--vm-bytes",
            f"{self.target_bytes // 1024}K",
        ]
        if self.all_methods:
            cmd += ["--vm-method", "all"]
        cmd += [
            "--vm-keep",
            "--timeout",
            f"{duration}s",
            "--metrics-brief",
        ]
        if self.log_file:
            cmd += ["--log-file", str(self.log_file)]
        return cmd


class GPULoad(LoadController):
    """
    GPU render stress using GpuTest FurMark, or stress-ng's gpu stressor.

    GpuTest opens a window and the display stack may fork helper
    processes, so it gets a longer grace period before SIGKILL.
    """

    name = "GPU"
    component = StressComponent.GPU
    tool = "gputest"

    def __init__(
        self,
        width: int = 1920,
        height: int = 1080,
        msaa: int = 0,
        launcher: Optional[List[str]] = None,
        extra_env: Optional[Dict[str, str]] = None,
        terminate_grace: float = 10.0,
    ):
        super().__init__(terminate_grace)
        self.width = width
        self.height = height
        self.msaa = msaa
        self.launcher = launcher or []
        self.extra_env = extra_env or {}
        if shutil.which("gputest"):
            self.tool = "gputest"
        elif shutil.which("stress-ng") and self._stress_ng_has_gpu():
            self.tool = "stress-ng"

    @staticmethod
    def _stress_ng_has_gpu() -> bool:
        try:
            result = subprocess.run(
                ["stress-ng", "--help"],
                capture_output=True,
                text=True,
                timeout=5,
            )
        except (FileNotFoundError, subprocess.TimeoutExpired):
            return False
        return "--gpu " in result.stdout + result.stderr

    def available(self) -> bool:
        if self.launcher and shutil.which(self.launcher[0]) is None:
            return False
        return super().available()

    def command(self, duration: int) -> List[str]:
        if self.tool == "stress-ng":
            return [
                "stress-ng",
                "--gpu",
                "1",
                "--timeout",
                f"{duration}s",
                "--metrics-brief",
            ]
        return self.launcher + [
            "gputest",
            "/test=fur",
            f"/width={self.width}",
            f"/height={self.height}",
            f"/msaa={self.msaa}",
            "/gpumon_terminal",
            "/benchmark",
            f"/run_time={duration}",
        ]

    def environment(self) -> Optional[Dict[str, str]]:
        if not self.extra_env:
            return None
        env = os.environ.copy()
        env.update(self.extra_env)
        return env


def hybrid_gpu_launch(gpu_vendor: str, hybrid: bool) -> tuple[List[str], Dict[str, str]]:
    """
    Launcher prefix and environment to render on the discrete GPU.

    NVIDIA Optimus: prime-run if present. AMD or Nouveau hybrids: DRI_PRIME=1.
    """
    if not hybrid:
        return [], {}
    if gpu_vendor == "nvidia" and shutil.which("prime-run"):
        return ["prime-run"], {}
    return [], {"DRI_PRIME": "1"}


class LoadSupervisor:
    """Start, watch and stop the load generators of one test session."""

    def __init__(self, controllers: Dict[StressComponent, LoadController], output_dir: Optional[Path] = None):
        self.controllers = controllers
        self.output_dir = output_dir
        self.started: List[LoadController] = []
        self.skipped: List[StressComponent] = []

    def check_tools(self, component: StressComponent) -> List[StressComponent]:
        """
        Verify the load tools before anything is started.

        Returns the parts whose tool is missing but optional (furnace GPU).

        Raises:
            LoadGeneratorMissing: If a required tool is missing
        """
        optional_missing = []
        for part in component.parts():
            controller = self.controllers[part]
            if controller.available():
                continue
            if part is StressComponent.GPU and component is StressComponent.COMBINED:
                optional_missing.append(part)
                continue
            raise LoadGeneratorMissing(controller.tool, part)
        return optional_missing

    def start(self, component: StressComponent, duration: int) -> List[LoadController]:
        """
        Start the load generators for a component selection.

        Furnace order is CPU, RAM, GPU. CPU and RAM are required; a missing
        GPU tool downgrades the run to CPU+RAM with a warning.

        Raises:
            LoadGeneratorMissing: If a required tool is missing. Anything
                already started is stopped first.
        """
        for part in component.parts():
            controller = self.controllers[part]
            try:
                controller.start(duration, self._output_path(part))
            except LoadGeneratorMissing as e:
                if part is StressComponent.GPU and component is StressComponent.COMBINED:
                    logger.warning(f"{e} - skipping GPU load, continuing with CPU+RAM")
                    self.skipped.append(part)
                    continue
                self.stop_all()
                raise
            self.started.append(controller)
            logger.info(f"{controller.name} load started (PID {controller.pid})")
        return self.started

    def _output_path(self, part: StressComponent) -> Optional[Path]:
        if self.output_dir is None:
            return None
        return self.output_dir / f"{part.value}-load.out"

    def check_exits(
        self, elapsed: float, duration: int, tolerance: float = 5
    ) -> Optional[EarlyExit]:
        """
        Report the first load generator that ended materially early.

        A process ending within the last `tolerance` seconds of the window
        is normal completion (stress-ng exits on its own --timeout).
        """
        for controller in self.started:
            returncode = controller.poll()
            if returncode is None:
                continue
            ended_after = elapsed
            if controller.ended_at is not None and controller.started_at is not None:
                ended_after = min(elapsed, controller.ended_at - controller.started_at)
            if ended_after < duration - tolerance:
                return EarlyExit(controller.name, ended_after, duration, returncode)
        return None

    def any_running(self) -> bool:
        return any(c.is_running() for c in self.started)

    def stop_all(self) -> None:
        """
        Stop all load generation. Idempotent.

        An interrupt while one generator is stopping does not skip the
        others; it is re-raised once every generator has been stopped.
        """
        interrupted = None
        for controller in reversed(self.started):
            try:
                controller.stop()
            except KeyboardInterrupt as e:
                interrupted = e
            except Exception as e:
                logger.error(f"Failed to stop {controller.name} load: {e}")
        if interrupted is not None:
            raise interrupted


def build_supervisor(
    component: StressComponent,
    config: dict,
    gpu_vendor: str = "unknown",
    hybrid: bool = False,
    output_dir: Optional[Path] = None,
) -> LoadSupervisor:
    """Load controllers configured for a component selection."""
    cfg = config["load"]
    grace = cfg["terminate_grace"]
    cores = os.cpu_count() or 1
    furnace = component is StressComponent.COMBINED

    if furnace:
        ram = RAMLoad(
            fraction=cfg["furnace_ram_fraction"],
            workers=min(cfg["furnace_vm_workers_max"], cores),
            all_methods=True,
            terminate_grace=grace,
        )
        width, height = parse_resolution(cfg["furnace_gpu_resolution"])
    else:
        ram = RAMLoad(fraction=cfg["ram_fraction"], workers=cores, terminate_grace=grace)
        width, height = parse_resolution(cfg["gpu_resolution"])

    launcher, env = hybrid_gpu_launch(gpu_vendor, hybrid)
    controllers: Dict[StressComponent, LoadController] = {
        StressComponent.CPU: CPULoad(cores=cores, terminate_grace=grace),
        StressComponent.RAM: ram,
        StressComponent.GPU: GPULoad(
            width=width,
            height=height,
            msaa=cfg["gpu_msaa"],
            launcher=launcher,
            extra_env=env,
            terminate_grace=cfg["gpu_terminate_grace"],
        ),
    }
    return LoadSupervisor(controllers, output_dir)
