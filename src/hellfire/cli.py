"""Command-line interface for Hellfire stress tests."""

import argparse
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from .config import ConfigError, load_config
from .hardware import HardwareError, SensorHub, discover_topology
from .load import LoadGeneratorMissing
from .models import StressComponent, TestSession, TestStatus
from .orchestrator import RunResult, TestOrchestrator
from .rating import rate_session
from .report import print_summary
from .telemetry import TelemetryLog, find_latest_log

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2

TEST_COMMANDS = {
    "cpu": (StressComponent.CPU, "CPU stress test (stress-ng matrix/crypt/cpu)"),
    "ram": (StressComponent.RAM, "RAM stress test (stress-ng vm, 90% of memory)"),
    "gpu": (StressComponent.GPU, "GPU stress test (GpuTest FurMark)"),
    "furnace": (StressComponent.COMBINED, "Cooler furnace: CPU + RAM + GPU at once"),
}


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def stress_mode(component: StressComponent, duration: int, cfg: Dict[str, Any], log_dir: Optional[str]) -> int:
    """Run one stress test; returns the process exit code."""
    try:
        orchestrator = TestOrchestrator(component, duration, cfg, log_dir=log_dir)
        result = orchestrator.run()
    except HardwareError as e:
        print(f"✗ {e}")
        return EXIT_FAILED
    except LoadGeneratorMissing as e:
        print(f"✗ {e}")
        print("  Install stress-ng (and GpuTest for GPU tests) and try again.")
        return EXIT_FAILED

    if result is None:
        return EXIT_FAILED

    print_summary(result, cfg)
    return EXIT_OK if result.session.status is TestStatus.PASS else EXIT_FAILED


def rate_mode(log: Optional[str], component: StressComponent, cfg: Dict[str, Any], log_dir: Optional[str]) -> int:
    """Re-rate an existing sensor log as if it were a clean run."""
    if log:
        path = Path(log)
    else:
        path = find_latest_log(Path(log_dir or cfg["telemetry"]["log_dir"]), component)
        if path is None:
            print(f"✗ No {component.value} sensor log found")
            return EXIT_FAILED
    if not path.exists():
        print(f"✗ Sensor log not found: {path}")
        return EXIT_FAILED

    samples = TelemetryLog.read_all(path)
    if samples:
        duration = int(round(samples[-1].timestamp - samples[0].timestamp))
        started_at = samples[0].timestamp
    else:
        duration, started_at = 0, 0.0
    session = TestSession(component, duration, started_at=started_at, log_path=path)
    session.finish(TestStatus.PASS)

    result = RunResult(
        session=session,
        rating=rate_session(session, samples),
        log_path=path,
        sample_count=len(samples),
        fan_unit=next((s.gpu_fan_unit for s in samples if s.gpu_fan_unit), None),
    )
    print_summary(result, cfg)
    return EXIT_OK


def sensors_mode(cfg: Dict[str, Any]) -> int:
    """Print the detected sensor topology and one sample."""
    topology = discover_topology(cfg["telemetry"]["command_timeout"])
    print(f"Sensors: {topology.describe()}")
    if topology.display_controllers:
        for controller in topology.display_controllers:
            print(f"  {controller}")
    if topology.hybrid_graphics:
        print("  Hybrid graphics detected")

    sample = SensorHub(topology).sample()
    print()
    for key, value in sample.to_dict().items():
        if key == "timestamp":
            continue
        print(f"  {key + ':':<20} {'n/a' if value is None else value}")
    return EXIT_OK


def duration_arg(value: str) -> int:
    try:
        seconds = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid duration '{value}', expected seconds")
    return seconds


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hellfire",
        description="Hellfire: extreme thermal stress tests with automatic safety stops",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Example usage:
  # 5 minute CPU burn
  sudo hellfire cpu 300

  # Cooler furnace with a custom config
  sudo hellfire furnace 180 --config config.yaml

  # Re-rate the latest GPU log
  hellfire rate --component gpu
        """,
    )
    subparsers = parser.add_subparsers(dest="command", help="Command to run", required=True)

    for name, (_, help_text) in TEST_COMMANDS.items():
        p = subparsers.add_parser(name, help=help_text)
        p.add_argument(
            "duration",
            nargs="?",
            type=duration_arg,
            help="Test duration in seconds (default from config)",
        )
        p.add_argument("--config", help="Path to configuration YAML file")
        p.add_argument("--log-dir", help="Override telemetry log directory")

    rate_parser = subparsers.add_parser("rate", help="Rate an existing sensor log")
    rate_parser.add_argument("log", nargs="?", help="Sensor log (default: latest for component)")
    rate_parser.add_argument(
        "--component",
        choices=[c.value for c in StressComponent],
        default="cpu",
        help="Component the log was recorded for (default: cpu)",
    )
    rate_parser.add_argument("--config", help="Path to configuration YAML file")
    rate_parser.add_argument("--log-dir", help="Directory searched for the latest log")

    sensors_parser = subparsers.add_parser("sensors", help="Show detected sensors and one reading")
    sensors_parser.add_argument("--config", help="Path to configuration YAML file")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        cfg = load_config(args.config)
    except ConfigError as e:
        print(f"✗ {e}")
        return EXIT_USAGE

    setup_logging(cfg["logging"]["level"])

    if args.command in TEST_COMMANDS:
        component = TEST_COMMANDS[args.command][0]
        orch_cfg = cfg["orchestrator"]
        duration = args.duration
        if duration is None:
            duration = orch_cfg["default_duration"][component.value]
        if duration < orch_cfg["min_duration"]:
            parser.print_usage(sys.stderr)
            print(
                f"hellfire: error: duration must be at least {orch_cfg['min_duration']}s",
                file=sys.stderr,
            )
            return EXIT_USAGE
        return stress_mode(component, duration, cfg, args.log_dir)

    if args.command == "rate":
        return rate_mode(args.log, StressComponent(args.component), cfg, args.log_dir)

    return sensors_mode(cfg)


if __name__ == "__main__":
    sys.exit(main())
