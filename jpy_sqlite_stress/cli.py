"""
Command line entry point for the SQLite stress test.

Copyright (c) 2025, Jim Schilling

Please keep this header when you use this code.

This module is licensed under the MIT License.
"""
import argparse
import json
import logging
import signal
import sys
from typing import Any

from jpy_sqlite_stress.config import DEFAULT_CONFIG_FILE, ConfigurationError, WorkloadSpec, load_workload_spec
from jpy_sqlite_stress.models import RunResult
from jpy_sqlite_stress.orchestrator import PhaseOrchestrator
from jpy_sqlite_stress.report import print_summary, write_report

DEFAULT_REPORT_FILE = "sqlite_stress_test_report.md"

EXIT_OK = 0
EXIT_RUN_FAILED = 1
EXIT_CONFIGURATION_ERROR = 2
EXIT_INTERRUPTED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="SQLite load and correctness stress test")
    parser.add_argument("--config", default=DEFAULT_CONFIG_FILE,
                        help=f"Workload configuration file (default: {DEFAULT_CONFIG_FILE})")
    parser.add_argument("--database", help="SQLite database file to create (overrides database.path)")
    parser.add_argument("--workers", type=int, help="Number of concurrent workers")
    parser.add_argument("--operations-per-worker", type=int, help="Iterations each concurrent worker runs")
    parser.add_argument("--test-records", type=int, help="Records written by the insert phase")
    parser.add_argument("--report", default=DEFAULT_REPORT_FILE,
                        help=f"Markdown report path (default: {DEFAULT_REPORT_FILE})")
    parser.add_argument("--json", dest="json_path", help="Also write the raw results as JSON")
    parser.add_argument("--keep-database", action="store_true", help="Leave the database file in place")
    parser.add_argument("--seed", type=int, help="Seed for the synthetic value generator")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return parser


def apply_overrides(spec: WorkloadSpec, args: argparse.Namespace) -> WorkloadSpec:
    overrides: dict[str, dict[str, Any]] = {}
    if args.database:
        overrides["database"] = {"path": args.database}
    if args.workers is not None:
        overrides.setdefault("test_configuration", {})["concurrent_workers"] = args.workers
    if args.test_records is not None:
        overrides.setdefault("test_configuration", {})["test_records"] = args.test_records
    if args.operations_per_worker is not None:
        overrides["concurrency"] = {"operations_per_worker": args.operations_per_worker}
    if not overrides:
        return spec
    return spec.with_overrides(**overrides).validate()


def _raise_keyboard_interrupt(signum: int, frame: Any) -> None:
    raise KeyboardInterrupt(f"Received signal {signum}")


def _write_outputs(result: RunResult, args: argparse.Namespace) -> None:
    try:
        write_report(result, args.report)
        if args.json_path:
            with open(args.json_path, "w", encoding="utf-8") as f:
                json.dump(result.to_dict(), f, indent=2, default=str)
            logging.info(f"JSON results saved to: {args.json_path}")
    except OSError as e:
        logging.error(f"Could not write results: {e}")
    print_summary(result)


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
    )

    try:
        spec = apply_overrides(load_workload_spec(args.config), args)
    except ConfigurationError as e:
        logging.error(f"Invalid configuration: {e}")
        return EXIT_CONFIGURATION_ERROR

    signal.signal(signal.SIGTERM, _raise_keyboard_interrupt)
    orchestrator = PhaseOrchestrator(
        spec,
        seed=args.seed,
        keep_database=args.keep_database,
    )
    try:
        result = orchestrator.run()
    except KeyboardInterrupt:
        if orchestrator.result is not None:
            _write_outputs(orchestrator.result, args)
        return EXIT_INTERRUPTED

    _write_outputs(result, args)
    if result.error:
        logging.error(f"Stress test failed: {result.error}")
        return EXIT_RUN_FAILED
    logging.info("All tests completed successfully!")
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
