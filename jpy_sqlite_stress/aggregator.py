"""
Accumulation of operation outcomes and phase metrics into a RunResult.

Copyright (c) 2025, Jim Schilling

Please keep this header when you use this code.

This module is licensed under the MIT License.
"""
import copy
import logging
import statistics
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any

from jpy_sqlite_stress.db_engine import StorageError
from jpy_sqlite_stress.models import ExecuteResult, OperationOutcome, PhaseMetrics, RunResult, WorkerResult
from jpy_sqlite_stress.timing import TimedOperation, percentage, rate


def measure_operation(
    kind: str, func: Callable[..., Any], *args: Any, **kwargs: Any
) -> tuple[OperationOutcome, Any]:
    """
    Run one storage call and describe how it went.

    A StorageError is converted into a failed outcome; anything else propagates.

    Returns:
        (outcome, result) where result is None for a failed call
    """
    result = None
    error = None
    with TimedOperation() as timer:
        try:
            result = func(*args, **kwargs)
        except StorageError as e:
            error = str(e)

    rows = None
    identifier = None
    if isinstance(result, ExecuteResult):
        rows = result.rows_affected
        identifier = result.last_insert_id
    elif isinstance(result, list):
        rows = len(result)
    outcome = OperationOutcome(
        kind=kind,
        success=error is None,
        elapsed_ms=timer.elapsed_ms,
        rows=rows,
        identifier=identifier,
        error=error,
    )
    return outcome, result


class OperationTally:
    """Running counts for a best-effort loop of single-row operations."""

    def __init__(self) -> None:
        self.attempted = 0
        self.succeeded = 0
        self.failed = 0
        self.rows = 0
        self.elapsed_ms = 0.0
        self.last_error: str | None = None

    def record(self, outcome: OperationOutcome) -> None:
        self.attempted += 1
        self.elapsed_ms += outcome.elapsed_ms
        if outcome.success:
            self.succeeded += 1
            self.rows += outcome.rows or 0
        else:
            self.failed += 1
            self.last_error = outcome.error


def summarize_workers(results: list[WorkerResult]) -> dict[str, Any]:
    """
    Fold per-worker results into the concurrency phase counters.

    total_operations counts completed iterations, total_errors failed ones.
    Success rate is (total_operations - total_errors) / total_operations.
    Success rate and throughput fall back to '0.00%' and 0 when nothing ran.
    """
    total_operations = sum(r.completed for r in results)
    total_errors = sum(r.failed for r in results)
    total_attempted = sum(r.operations for r in results)
    avg_execution_time = statistics.mean(r.elapsed_ms for r in results) if results else 0.0
    return {
        "total_operations": total_operations,
        "total_errors": total_errors,
        "total_attempted": total_attempted,
        "success_rate": percentage(total_operations - total_errors, total_operations),
        "avg_execution_time": avg_execution_time,
        "operations_per_second": rate(total_operations, avg_execution_time),
    }


class ResultAggregator:
    """
    Builds the RunResult one phase at a time.

    record_phase() keeps phases in the order they were first recorded; a second
    call for the same name replaces the earlier entry in place.
    """

    def __init__(self) -> None:
        self._timestamp = datetime.now(timezone.utc).isoformat()
        self._environment: dict[str, Any] = {}
        self._phases: dict[str, PhaseMetrics] = {}
        self._total_time = 0.0
        self._error: str | None = None

    def set_environment(self, environment: dict[str, Any]) -> None:
        self._environment = dict(environment)

    def record_phase(self, name: str, metrics: PhaseMetrics) -> None:
        if name in self._phases:
            logging.warning(f"Phase {name} recorded twice; replacing the earlier entry.")
        self._phases[name] = replace(metrics, name=name)

    def set_error(self, message: str) -> None:
        self._error = message

    def set_total_time(self, elapsed_ms: float) -> None:
        self._total_time = elapsed_ms

    def summarize(self) -> RunResult:
        return RunResult(
            timestamp=self._timestamp,
            environment=copy.deepcopy(self._environment),
            phases={name: copy.deepcopy(metrics) for name, metrics in self._phases.items()},
            total_time=self._total_time,
            error=self._error,
        )
