"""
This module contains the PhaseOrchestrator class, which runs the workload
phases in order against one SQLite database and collects their metrics.

Copyright (c) 2025, Jim Schilling

Please keep this header when you use this code.

This module is licensed under the MIT License.
"""
import logging
import os
import platform
import random
from collections.abc import Callable
from concurrent.futures import Executor
from enum import Enum
from typing import Any

import psutil

from jpy_sqlite_stress.aggregator import OperationTally, ResultAggregator, measure_operation, summarize_workers
from jpy_sqlite_stress.config import WorkloadSpec
from jpy_sqlite_stress.db_engine import StorageEngine, StorageError
from jpy_sqlite_stress.generator import ValueGenerator
from jpy_sqlite_stress.models import DELETE, INSERT, SELECT, UPDATE, PhaseMetrics, RunResult
from jpy_sqlite_stress.schema import DATATYPE_TABLE_SQL, SCHEMA_SQL
from jpy_sqlite_stress.timing import TimedOperation, percentage, rate, timed
from jpy_sqlite_stress.worker_pool import ConcurrentWorkerPool, WorkerError

_SQL_INSERT_USER = (
    "INSERT INTO users (username, email, age, salary, is_active, profile_data) "
    "VALUES (:username, :email, :age, :salary, :is_active, :profile_data)"
)
_SQL_INSERT_LOG = "INSERT INTO logs (level, message, metadata) VALUES (:level, :message, :metadata)"
_SQL_INSERT_TRANSACTION = (
    "INSERT INTO transactions (user_id, amount, type, description) "
    "VALUES (:user_id, :amount, :type, :description)"
)
_SQL_INSERT_ROLLBACK_USER = "INSERT INTO users (username, email) VALUES (:username, :email)"
_SQL_INSERT_DATATYPE = "INSERT INTO datatype_test (data_type, test_value) VALUES (:data_type, :test_value)"
_SQL_SELECT_DATATYPES = "SELECT * FROM datatype_test"
_SQL_SINGLE_UPDATE = "UPDATE users SET salary = salary * 1.1 WHERE id = :id"
_SQL_BATCH_UPDATE = "UPDATE users SET is_active = :is_active WHERE id = :id"
_SQL_BULK_UPDATE = "UPDATE users SET age = age + 1 WHERE age < :threshold"
_SQL_SINGLE_DELETE = "DELETE FROM users WHERE id = :id"
_SQL_BULK_DELETE = "DELETE FROM users WHERE id BETWEEN :first_id AND :last_id"
_SQL_COUNT_USERS = "SELECT COUNT(*) AS count FROM users"
_SQL_MAX_USER_ID = "SELECT MAX(id) AS max_id FROM users"

_SELECT_QUERIES = {
    "select_all": "SELECT * FROM users LIMIT :limit",
    "select_with_index": "SELECT * FROM users WHERE email LIKE :pattern",
    "select_without_index": "SELECT * FROM users WHERE salary > :threshold",
    "select_count": _SQL_COUNT_USERS,
    "select_join": """
        SELECT u.username, u.email, COUNT(t.id) AS transaction_count
        FROM users u
        LEFT JOIN transactions t ON u.id = t.user_id
        GROUP BY u.id
        LIMIT :limit
    """,
    "select_aggregate": "SELECT AVG(age) AS avg_age, MIN(age) AS min_age, MAX(age) AS max_age FROM users",
}

_STATISTICS_QUERIES = {
    "total_users": _SQL_COUNT_USERS,
    "total_transactions": "SELECT COUNT(*) AS count FROM transactions",
    "total_logs": "SELECT COUNT(*) AS count FROM logs",
    "avg_user_age": "SELECT AVG(age) AS avg_age FROM users",
    "min_salary": "SELECT MIN(salary) AS min_salary FROM users",
    "max_salary": "SELECT MAX(salary) AS max_salary FROM users",
    "active_users": "SELECT COUNT(*) AS count FROM users WHERE is_active = 1",
    "database_size": "SELECT page_count * page_size AS size FROM pragma_page_count(), pragma_page_size()",
}

# Delete-phase rows get user indexes far above the ones the insert phase uses
_DELETE_BASE_INDEX = 100000
_ROLLBACK_USERS = (
    {"username": "test_rollback", "email": "rollback@test.com"},
    {"username": "test_rollback2", "email": "rollback2@test.com"},
)
_DATABASE_SIDE_FILES = ("", "-wal", "-shm", "-journal")


class RunTerminalError(Exception):
    """
    Exception raised when the run cannot continue with the remaining phases.
    """

    pass


class RunState(Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"
    RUNNING = "running"
    FINALIZED = "finalized"
    CLEANED_UP = "cleaned_up"


def sqlite_url(path: str) -> str:
    return f"sqlite:///{os.path.abspath(path)}"


def report_progress(label: str, index: int, total: int, interval: int) -> None:
    if index % interval == 0 or index == total - 1:
        logging.info(f"     - {label} progress: {index + 1} / {total}")


def remove_database_files(database_path: str) -> list[str]:
    """
    Delete the database file and its WAL, shared-memory and journal files.

    Returns:
        The paths that were removed
    """
    removed = []
    for suffix in _DATABASE_SIDE_FILES:
        path = database_path + suffix
        if not os.path.exists(path):
            continue
        try:
            os.unlink(path)
            removed.append(path)
        except OSError as e:
            logging.warning(f"Could not remove {path}: {e}")
    return removed


def _chunks(items: list[Any], size: int) -> list[list[Any]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


def _first_value(rows: list[dict[str, Any]]) -> Any:
    if not rows:
        return None
    return next(iter(rows[0].values()), None)


def capture_environment(engine: Any, spec: WorkloadSpec, database_path: str) -> dict[str, Any]:
    """Snapshot of the host, the SQLite library and the workload headline."""
    try:
        sqlite_version = engine.get_sqlite_info().get("sqlite_version")
    except StorageError as e:
        logging.warning(f"Could not read SQLite version: {e}")
        sqlite_version = None
    return {
        "python_version": platform.python_version(),
        "platform": platform.system().lower(),
        "arch": platform.machine(),
        "cpus": os.cpu_count(),
        "memory": f"{round(psutil.virtual_memory().total / 1024 / 1024)} MB",
        "sqlite_version": sqlite_version,
        "database_path": database_path,
        "test_records": spec.test_configuration.test_records,
        "transaction_size": spec.test_configuration.transaction_size,
        "concurrent_workers": spec.test_configuration.concurrent_workers,
    }


class PhaseOrchestrator:
    def __init__(
        self,
        spec: WorkloadSpec,
        database_path: str | None = None,
        **kwargs: Any,
    ) -> None:
        """
        Prepare a run; nothing touches the database until run() is called.

        Args:
            spec: Validated workload configuration
            database_path: SQLite file to create (default: spec.database.path)
            **kwargs: Additional configuration options:
                - engine_factory: Callable opening a storage engine from a URL
                  (default: StorageEngine)
                - executor_factory: concurrent.futures executor class for the
                  concurrency phase (default: ProcessPoolExecutor)
                - seed: Seed for the value generator and the workers (default: None)
                - keep_database: Leave the database file in place at cleanup
                  (default: False)
        """
        self.spec = spec.validate()
        self.database_path = os.path.abspath(database_path or spec.database.path)
        self.database_url = sqlite_url(self.database_path)
        self.engine_factory: Callable[[str], Any] = kwargs.get("engine_factory", StorageEngine)
        self.executor_factory: Callable[..., Executor] | None = kwargs.get("executor_factory")
        self.seed: int | None = kwargs.get("seed")
        self.keep_database: bool = kwargs.get("keep_database", False)

        self.generator = ValueGenerator(spec, random.Random(self.seed))
        self.aggregator = ResultAggregator()
        self.engine: Any = None
        self.result: RunResult | None = None
        self.state = RunState.UNINITIALIZED
        self.current_phase: str | None = None
        self.cleanup_count = 0

    @property
    def phases(self) -> list[tuple[str, Callable[[], PhaseMetrics]]]:
        return [
            ("insert", self.run_insert_phase),
            ("select", self.run_select_phase),
            ("update", self.run_update_phase),
            ("delete", self.run_delete_phase),
            ("transaction", self.run_transaction_phase),
            ("datatype", self.run_datatype_phase),
            ("concurrency", self.run_concurrency_phase),
            ("maintenance", self.run_maintenance_phase),
            ("statistics", self.run_statistics_phase),
        ]

    def run(self) -> RunResult:
        """
        Initialize, run every phase, finalize and clean up.

        Cleanup happens on every exit path, including KeyboardInterrupt.
        The returned RunResult carries the terminal error, if any, and the
        phases recorded before it.
        """
        logging.info("Starting comprehensive SQLite stress test...")
        with TimedOperation() as overall:
            try:
                self.initialize()
                self.execute_phases()
            except (RunTerminalError, StorageError) as e:
                logging.error(f"Test failed: {e}")
                self.aggregator.set_error(str(e))
            except KeyboardInterrupt:
                logging.error("Test interrupted.")
                self.aggregator.set_error("Run interrupted")
                raise
            finally:
                self.aggregator.set_total_time(overall.elapsed_ms)
                self.finalize()
                self.cleanup()
        return self.result

    def initialize(self) -> None:
        logging.info("Initializing SQLite Stress Test...")
        remove_database_files(self.database_path)
        self.engine = self.engine_factory(self.database_url)
        logging.info("Creating test tables...")
        self.engine.batch(SCHEMA_SQL)
        self.aggregator.set_environment(capture_environment(self.engine, self.spec, self.database_path))
        self.state = RunState.INITIALIZED
        logging.info("Database initialized")

    def execute_phases(self) -> None:
        self.state = RunState.RUNNING
        for name, phase in self.phases:
            self._run_phase(name, phase)
        self.current_phase = None

    def _run_phase(self, name: str, phase: Callable[[], PhaseMetrics]) -> None:
        self.current_phase = name
        logging.info(f"Running {name} phase...")
        error: Exception | None = None
        fatal = False
        with TimedOperation() as timer:
            try:
                metrics = phase()
            except (StorageError, WorkerError) as e:
                error = e
            except Exception as e:
                error = e
                fatal = True

        if error is None:
            metrics.total_time = timer.elapsed_ms
            self.aggregator.record_phase(name, metrics)
            logging.info(f"{name.capitalize()} phase completed in {timer.elapsed_ms:.0f}ms")
            return

        self.aggregator.record_phase(name, PhaseMetrics(name=name, total_time=timer.elapsed_ms, error=str(error)))
        logging.error(f"{name.capitalize()} phase failed: {error}")
        if fatal or not self._engine_usable():
            raise RunTerminalError(f"{name} phase failed: {error}") from error

    def _engine_usable(self) -> bool:
        if not self.engine.is_usable():
            return False
        if self.engine.in_transaction():
            try:
                self.engine.rollback()
            except StorageError:
                logging.exception("Could not roll back after failed phase.")
                return False
        return True

    def finalize(self) -> RunResult:
        self.result = self.aggregator.summarize()
        self.state = RunState.FINALIZED
        return self.result

    def cleanup(self) -> None:
        """
        Release the storage engine and delete the database files.

        Runs its body once per orchestrator; later calls return immediately.
        """
        if self.state is RunState.CLEANED_UP:
            return
        logging.info("Cleaning up...")
        try:
            if self.engine is not None:
                self.engine.shutdown()
        except Exception:
            logging.exception("Error shutting down storage engine.")
        finally:
            self.engine = None
            if not self.keep_database:
                for path in remove_database_files(self.database_path):
                    logging.info(f"Removed {path}")
            self.state = RunState.CLEANED_UP
            self.cleanup_count += 1

    def run_insert_phase(self) -> PhaseMetrics:
        config = self.spec.insert
        single_inserts = config.single_inserts
        batch_size = config.batch_size
        num_batches = max(self.spec.test_configuration.test_records - single_inserts, 0) // batch_size
        interval = config.progress_report_interval

        singles = OperationTally()
        with TimedOperation() as single_timer:
            for i in range(single_inserts):
                outcome, _ = measure_operation(INSERT, self.engine.execute, _SQL_INSERT_USER, self.generator.user(i))
                singles.record(outcome)
                report_progress("Single inserts", i, single_inserts, interval)

        batch_records = 0
        failed_batches = 0
        with TimedOperation() as batch_timer:
            for batch in range(num_batches):
                first_index = single_inserts + batch * batch_size
                users = [self.generator.user(first_index + i) for i in range(batch_size)]
                try:
                    with self.engine.transaction():
                        self.engine.execute(_SQL_INSERT_USER, users)
                        self.engine.execute(_SQL_INSERT_LOG, self.generator.log())
                except StorageError as e:
                    failed_batches += 1
                    logging.warning(f"Insert batch {batch + 1} rolled back: {e}")
                else:
                    batch_records += batch_size
                report_progress("Batch inserts", batch, num_batches, interval)

        total_inserted = singles.succeeded + batch_records
        return PhaseMetrics(
            name="insert",
            timings={
                "single_insert_time": single_timer.elapsed_ms,
                "batch_insert_time": batch_timer.elapsed_ms,
            },
            rates={
                "records_per_second": rate(total_inserted, single_timer.elapsed_ms + batch_timer.elapsed_ms),
                "single_insert_rate": rate(singles.succeeded, single_timer.elapsed_ms),
                "batch_insert_rate": rate(batch_records, batch_timer.elapsed_ms),
            },
            counters={
                "total_records": total_inserted,
                "single_inserts": singles.succeeded,
                "failed_inserts": singles.failed,
                "batch_records": batch_records,
                "batches": num_batches,
                "failed_batches": failed_batches,
                "log_records": num_batches - failed_batches,
            },
        )

    def run_select_phase(self) -> PhaseMetrics:
        generation = self.spec.data_generation
        params = {
            "select_all": {"limit": self.spec.select.select_all_limit},
            "select_with_index": {"pattern": f"%@{generation.domains[0]}"},
            "select_without_index": {"threshold": generation.salary_range.max / 2},
            "select_join": {"limit": self.spec.select.join_limit},
        }

        metrics = PhaseMetrics(name="select")
        for i, (name, statement) in enumerate(_SELECT_QUERIES.items()):
            logging.info(f"     - Running select test {i + 1}/{len(_SELECT_QUERIES)}: {name}")
            outcome, _ = measure_operation(SELECT, self.engine.query, statement, params.get(name))
            metrics.timings[name] = outcome.elapsed_ms
            if not outcome.success:
                metrics.counters[name] = {"execution_time": outcome.elapsed_ms, "error": outcome.error}
                continue
            rows_returned = outcome.rows or 0
            metrics.rates[name] = rate(rows_returned, outcome.elapsed_ms)
            metrics.counters[name] = {
                "execution_time": outcome.elapsed_ms,
                "rows_returned": rows_returned,
                "rate_per_second": metrics.rates[name],
            }
        return metrics

    def run_update_phase(self) -> PhaseMetrics:
        config = self.spec.update
        single_updates = config.single_updates
        batch_updates = config.batch_updates
        age_threshold = self.spec.data_generation.age_range.min + 12

        singles = OperationTally()
        with TimedOperation() as single_timer:
            for i in range(single_updates):
                outcome, _ = measure_operation(UPDATE, self.engine.execute, _SQL_SINGLE_UPDATE, {"id": i + 1})
                singles.record(outcome)
                report_progress("Single updates", i, single_updates, config.single_update_progress_interval)

        batch_rows = 0
        failed_batches = 0
        params = [
            {"is_active": self.generator.rng.random() > 0.5, "id": i + 1}
            for i in range(single_updates, single_updates + batch_updates)
        ]
        with TimedOperation() as batch_timer:
            try:
                with self.engine.transaction():
                    done = 0
                    for chunk in _chunks(params, config.batch_update_progress_interval):
                        batch_rows += self.engine.execute(_SQL_BATCH_UPDATE, chunk).rows_affected
                        done += len(chunk)
                        logging.info(f"     - Batch updates progress: {done} / {batch_updates}")
            except StorageError as e:
                failed_batches += 1
                batch_rows = 0
                logging.warning(f"Batch update rolled back: {e}")

        bulk, _ = measure_operation(UPDATE, self.engine.execute, _SQL_BULK_UPDATE, {"threshold": age_threshold})
        if not bulk.success:
            logging.warning(f"Bulk update failed: {bulk.error}")

        return PhaseMetrics(
            name="update",
            timings={
                "single_update_time": single_timer.elapsed_ms,
                "batch_update_time": batch_timer.elapsed_ms,
                "bulk_update_time": bulk.elapsed_ms,
            },
            rates={
                "single_update_rate": rate(singles.succeeded, single_timer.elapsed_ms),
                "batch_update_rate": rate(batch_rows, batch_timer.elapsed_ms),
            },
            counters={
                "single_updates": singles.succeeded,
                "single_rows_affected": singles.rows,
                "failed_updates": singles.failed,
                "batch_rows_affected": batch_rows,
                "failed_batches": failed_batches,
                "bulk_rows_affected": bulk.rows if bulk.success else 0,
                "bulk_update_failed": not bulk.success,
            },
        )

    def run_delete_phase(self) -> PhaseMetrics:
        config = self.spec.delete
        test_data_records = config.test_data_records
        single_deletes = min(config.single_deletes, test_data_records)

        ids: list[int] = []
        with TimedOperation() as prepare_timer:
            with self.engine.transaction():
                for i in range(test_data_records):
                    user = self.generator.user(_DELETE_BASE_INDEX + i)
                    ids.append(self.engine.execute(_SQL_INSERT_USER, user).last_insert_id)
                    report_progress("Preparing delete test data", i, test_data_records, config.batch_progress_interval)

        singles = OperationTally()
        with TimedOperation() as single_timer:
            for i, row_id in enumerate(ids[:single_deletes]):
                outcome, _ = measure_operation(DELETE, self.engine.execute, _SQL_SINGLE_DELETE, {"id": row_id})
                singles.record(outcome)
                report_progress("Single deletes", i, single_deletes, config.progress_report_interval)

        remaining = ids[single_deletes:]
        bulk_rows_deleted = 0
        bulk_elapsed = 0.0
        if remaining:
            bulk, _ = measure_operation(
                DELETE,
                self.engine.execute,
                _SQL_BULK_DELETE,
                {"first_id": min(remaining), "last_id": max(remaining)},
            )
            bulk_elapsed = bulk.elapsed_ms
            if bulk.success:
                bulk_rows_deleted = bulk.rows or 0
            else:
                logging.warning(f"Bulk delete failed: {bulk.error}")

        return PhaseMetrics(
            name="delete",
            timings={
                "prepare_time": prepare_timer.elapsed_ms,
                "single_delete_time": single_timer.elapsed_ms,
                "bulk_delete_time": bulk_elapsed,
            },
            rates={"single_delete_rate": rate(singles.succeeded, single_timer.elapsed_ms)},
            counters={
                "prepared_records": len(ids),
                "single_deletes": singles.rows,
                "failed_deletes": singles.failed,
                "bulk_rows_deleted": bulk_rows_deleted,
                "rows_deleted": singles.rows + bulk_rows_deleted,
            },
        )

    def run_transaction_phase(self) -> PhaseMetrics:
        config = self.spec.transaction
        transaction_inserts = config.transaction_inserts
        max_user_id = _first_value(self.engine.query(_SQL_MAX_USER_ID))

        with TimedOperation() as commit_timer:
            with self.engine.transaction():
                for i in range(transaction_inserts):
                    user_id = min(self.generator.user_id(), max_user_id) if max_user_id is not None else None
                    self.engine.execute(_SQL_INSERT_TRANSACTION, self.generator.transaction(user_id))
                    report_progress("Transaction inserts", i, transaction_inserts, config.progress_report_interval)

        rows_before = _first_value(self.engine.query(_SQL_COUNT_USERS))
        with TimedOperation() as rollback_timer:
            self.engine.begin()
            try:
                for user in _ROLLBACK_USERS:
                    self.engine.execute(_SQL_INSERT_ROLLBACK_USER, user)
            finally:
                self.engine.rollback()
        rows_after = _first_value(self.engine.query(_SQL_COUNT_USERS))

        return PhaseMetrics(
            name="transaction",
            timings={
                "batch_insert_time": commit_timer.elapsed_ms,
                "rollback_time": rollback_timer.elapsed_ms,
            },
            rates={"transaction_insert_rate": rate(transaction_inserts, commit_timer.elapsed_ms)},
            counters={
                "committed_rows": transaction_inserts,
                "rollback_writes": len(_ROLLBACK_USERS),
                "rows_before_rollback": rows_before,
                "rows_after_rollback": rows_after,
                "rollback_verified": rows_before == rows_after,
            },
        )

    def run_datatype_phase(self) -> PhaseMetrics:
        self.engine.batch(DATATYPE_TABLE_SQL)
        values = self.generator.typed_values()

        inserts = OperationTally()
        with TimedOperation() as insert_timer:
            for i, typed_value in enumerate(values):
                logging.info(f"     - Inserting data type {i + 1}/{len(values)}: {typed_value.data_type}")
                outcome, _ = measure_operation(
                    INSERT,
                    self.engine.execute,
                    _SQL_INSERT_DATATYPE,
                    {"data_type": typed_value.data_type, "test_value": typed_value.value},
                )
                inserts.record(outcome)

        retrieved = timed(self.engine.query, _SQL_SELECT_DATATYPES)
        return PhaseMetrics(
            name="datatype",
            timings={"insert_time": insert_timer.elapsed_ms, "read_time": retrieved.elapsed_ms},
            counters={
                "total_types": len(values),
                "rows_read": len(retrieved.result),
                "failed_inserts": inserts.failed,
                "verification_passed": len(retrieved.result) == len(values),
                "types": [typed_value.data_type for typed_value in values],
            },
        )

    def run_concurrency_phase(self) -> PhaseMetrics:
        workers = self.spec.test_configuration.concurrent_workers
        operations_per_worker = self.spec.concurrency.operations_per_worker
        pool = ConcurrentWorkerPool(
            self.database_url,
            self.spec,
            engine_factory=self.engine_factory,
            executor_factory=self.executor_factory,
            seed=self.seed,
        )
        results = timed(pool.run, workers, operations_per_worker)

        summary = summarize_workers(results.result)
        return PhaseMetrics(
            name="concurrency",
            timings={
                "avg_execution_time": summary["avg_execution_time"],
                "pool_time": results.elapsed_ms,
            },
            rates={"operations_per_second": summary["operations_per_second"]},
            counters={
                "workers": workers,
                "operations_per_worker": operations_per_worker,
                "total_operations": summary["total_operations"],
                "total_errors": summary["total_errors"],
                "total_attempted": summary["total_attempted"],
                "success_rate": summary["success_rate"],
                "worker_results": [r.to_dict() for r in results.result],
            },
        )

    def run_maintenance_phase(self) -> PhaseMetrics:
        size_before = self.engine.storage_size()
        analyze = timed(self.engine.reindex_statistics)
        vacuum = timed(self.engine.reclaim_space)
        size_after = self.engine.storage_size()
        integrity = timed(self.engine.integrity_check)
        if integrity.result:
            logging.warning(f"Integrity check reported {len(integrity.result)} issue(s): {integrity.result[0]}")

        space_saved = size_before - size_after
        return PhaseMetrics(
            name="maintenance",
            timings={"analyze_time": analyze.elapsed_ms, "vacuum_time": vacuum.elapsed_ms,
                     "integrity_check_time": integrity.elapsed_ms},
            counters={
                "size_before_vacuum": size_before,
                "size_after_vacuum": size_after,
                "space_saved": space_saved,
                "compression_ratio": percentage(space_saved, size_before),
                "integrity_issues": len(integrity.result),
            },
        )

    def run_statistics_phase(self) -> PhaseMetrics:
        metrics = PhaseMetrics(name="statistics")
        for i, (name, statement) in enumerate(_STATISTICS_QUERIES.items()):
            logging.info(f"     - Collecting stat {i + 1}/{len(_STATISTICS_QUERIES)}: {name}")
            result = timed(self.engine.query, statement)
            metrics.timings[name] = result.elapsed_ms
            metrics.counters[name] = _first_value(result.result)
        return metrics
