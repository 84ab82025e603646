"""
Concurrent workers running mixed insert/update/select iterations.

Copyright (c) 2025, Jim Schilling

Please keep this header when you use this code.

This module is licensed under the MIT License.
"""
import logging
import random
import signal
import threading
import time
from collections.abc import Callable
from concurrent.futures import Executor, ProcessPoolExecutor, wait
from typing import Any

from jpy_sqlite_stress.aggregator import measure_operation
from jpy_sqlite_stress.config import WorkloadSpec
from jpy_sqlite_stress.db_engine import StorageEngine
from jpy_sqlite_stress.generator import ValueGenerator
from jpy_sqlite_stress.models import INSERT, SELECT, UPDATE, OperationOutcome, WorkerResult

_SQL_INSERT_USER = (
    "INSERT INTO users (username, email, age, salary, is_active) "
    "VALUES (:username, :email, :age, :salary, :is_active)"
)
_SQL_SCALE_SALARY = "UPDATE users SET salary = salary * 1.05 WHERE username = :username"
_SQL_SELECT_USER = "SELECT * FROM users WHERE username = :username"

_LOG_FORMAT = "%(asctime)s %(processName)s %(levelname)s %(message)s"


class WorkerError(Exception):
    """
    Exception raised when a worker does not return a result.

    Carries the index of the worker so callers can tell which one failed.
    Picklable, so it survives the trip back from a worker process.
    """

    def __init__(self, worker_index: int, message: str) -> None:
        self.worker_index = worker_index
        self.message = message
        super().__init__(worker_index, message)

    def __str__(self) -> str:
        return f"Worker {self.worker_index} failed: {self.message}"


class WorkerStartError(WorkerError):
    """
    Exception raised when a worker cannot open its own storage connection.
    """

    def __str__(self) -> str:
        return f"Worker {self.worker_index} failed to start: {self.message}"


def _init_worker(level: int) -> None:
    logging.basicConfig(level=level, format=_LOG_FORMAT)
    # Worker processes must not inherit the parent's SIGTERM handler.
    if threading.current_thread() is threading.main_thread():
        signal.signal(signal.SIGTERM, signal.SIG_DFL)


def _run_iteration(
    engine: Any, generator: ValueGenerator, worker_id: int, iteration: int
) -> list[OperationOutcome]:
    """Insert a uniquely named user, scale its salary, read it back."""
    user = generator.worker_user(worker_id, iteration)
    key = {"username": user["username"]}

    inserted, _ = measure_operation(INSERT, engine.execute, _SQL_INSERT_USER, user)
    if not inserted.success:
        return [inserted]
    updated, _ = measure_operation(UPDATE, engine.execute, _SQL_SCALE_SALARY, key)
    if not updated.success:
        return [inserted, updated]
    selected, _ = measure_operation(SELECT, engine.query, _SQL_SELECT_USER, key)
    return [inserted, updated, selected]


def run_worker(
    worker_id: int,
    operations: int,
    database_url: str,
    spec: WorkloadSpec,
    engine_factory: Callable[[str], Any] = StorageEngine,
    seed: int | None = None,
) -> WorkerResult:
    """
    Body of one concurrent worker.

    Opens its own connection, runs exactly `operations` iterations and always
    returns a WorkerResult. A failed iteration is counted and the loop goes on.

    Raises:
        WorkerStartError: If the connection cannot be opened
    """
    try:
        engine = engine_factory(database_url)
    except Exception as e:
        logging.error(f"Worker {worker_id} could not connect: {e}")
        raise WorkerStartError(worker_id, str(e)) from e

    generator = ValueGenerator(spec, random.Random(seed))
    interval = spec.concurrency.worker_progress_interval
    result = WorkerResult(worker_id=worker_id, operations=operations, start_time=time.time())
    try:
        for i in range(operations):
            if i % interval == 0 or i == operations - 1:
                logging.info(f"Worker {worker_id} progress: {i + 1} / {operations}")
            result.record(_run_iteration(engine, generator, worker_id, i))
    finally:
        result.end_time = time.time()
        engine.shutdown()

    if result.failed:
        logging.warning(
            f"Worker {worker_id} finished with {result.failed} failed iterations, last error: {result.last_error}"
        )
    return result


class ConcurrentWorkerPool:
    """
    Runs a fixed number of workers at once against one database file.

    Workers run in separate processes by default; pass executor_factory to use
    another concurrent.futures executor. Each worker owns its own connection.
    """

    def __init__(
        self,
        database_url: str,
        spec: WorkloadSpec,
        engine_factory: Callable[[str], Any] = StorageEngine,
        executor_factory: Callable[..., Executor] | None = None,
        seed: int | None = None,
    ) -> None:
        self.database_url = database_url
        self.spec = spec
        self.engine_factory = engine_factory
        self.executor_factory = executor_factory or ProcessPoolExecutor
        self.seed = seed

    def run(self, workers: int | None = None, operations: int | None = None) -> list[WorkerResult]:
        """
        Start every worker, wait for all of them and return their results in
        worker order.

        A worker that fails does not stop its siblings; the error is raised
        once all of them have finished.

        Raises:
            WorkerStartError: If a worker could not open its connection
            WorkerError: If a worker ended without producing a result
        """
        workers = workers if workers is not None else self.spec.test_configuration.concurrent_workers
        operations = operations if operations is not None else self.spec.concurrency.operations_per_worker
        if workers <= 0:
            return []

        logging.info(f"Starting {workers} concurrent workers, {operations} operations each...")
        with self.executor_factory(
            max_workers=workers,
            initializer=_init_worker,
            initargs=(logging.getLogger().getEffectiveLevel(),),
        ) as executor:
            futures = [
                executor.submit(
                    run_worker,
                    worker_id,
                    operations,
                    self.database_url,
                    self.spec,
                    self.engine_factory,
                    None if self.seed is None else self.seed + worker_id,
                )
                for worker_id in range(workers)
            ]
            wait(futures)

        results: list[WorkerResult] = []
        errors: list[WorkerError] = []
        for worker_id, future in enumerate(futures):
            try:
                results.append(future.result())
            except WorkerError as e:
                errors.append(e)
            except Exception as e:
                logging.error(f"Worker {worker_id} ended abnormally: {e}")
                errors.append(WorkerError(worker_id, str(e) or type(e).__name__))

        if errors:
            raise errors[0]
        return results
