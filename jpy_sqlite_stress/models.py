"""
Result records shared by the storage adapter, the worker pool and the orchestrator.

Copyright (c) 2025, Jim Schilling

Please keep this header when you use this code.

This module is licensed under the MIT License.
"""
import copy
from dataclasses import asdict, dataclass, field
from typing import Any

INSERT = "insert"
SELECT = "select"
UPDATE = "update"
DELETE = "delete"


@dataclass(frozen=True)
class ExecuteResult:
    last_insert_id: int | None = None
    rows_affected: int = 0


@dataclass(frozen=True)
class OperationOutcome:
    kind: str
    success: bool
    elapsed_ms: float
    rows: int | None = None
    identifier: int | None = None
    error: str | None = None


@dataclass
class PhaseMetrics:
    """
    Measurements of one workload phase.

    timings holds sub-stage durations in milliseconds, rates holds
    operations per second, counters holds everything else the phase reports
    (row counts, ratios, nested per-query or per-worker records).
    """

    name: str
    total_time: float = 0.0
    timings: dict[str, float] = field(default_factory=dict)
    rates: dict[str, int] = field(default_factory=dict)
    counters: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class WorkerResult:
    worker_id: int
    operations: int
    completed: int = 0
    failed: int = 0
    start_time: float = 0.0
    end_time: float = 0.0
    operation_times: dict[str, float] = field(default_factory=dict)
    last_error: str | None = None

    @property
    def elapsed_ms(self) -> float:
        return (self.end_time - self.start_time) * 1000

    def record(self, outcomes: list[OperationOutcome]) -> None:
        """Fold the outcomes of one iteration into the tallies."""
        for outcome in outcomes:
            self.operation_times[outcome.kind] = (
                self.operation_times.get(outcome.kind, 0.0) + outcome.elapsed_ms
            )
        failures = [o for o in outcomes if not o.success]
        if failures:
            self.failed += 1
            self.last_error = failures[0].error
        else:
            self.completed += 1

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["elapsed_ms"] = self.elapsed_ms
        return data


@dataclass(frozen=True)
class RunResult:
    timestamp: str
    environment: dict[str, Any]
    phases: dict[str, PhaseMetrics]
    total_time: float = 0.0
    error: str | None = None

    @property
    def completed_phases(self) -> list[str]:
        return [name for name, metrics in self.phases.items() if not metrics.failed]

    def phase(self, name: str) -> PhaseMetrics | None:
        return self.phases.get(name)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "environment": copy.deepcopy(self.environment),
            "phases": {name: metrics.to_dict() for name, metrics in self.phases.items()},
            "total_time": self.total_time,
            "error": self.error,
        }
