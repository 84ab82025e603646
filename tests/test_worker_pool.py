"""
Tests for the concurrent worker pool.

Copyright (c) 2025, Jim Schilling

Please keep this header when you use this code.

This module is licensed under the MIT License.
"""
import logging
import os
import pickle
import signal
import sys
import tempfile
import unittest
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock, patch

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from jpy_sqlite_stress.config import WorkloadSpec
from jpy_sqlite_stress.db_engine import StorageEngine, StorageError
from jpy_sqlite_stress.schema import SCHEMA_SQL
from jpy_sqlite_stress.worker_pool import (
    ConcurrentWorkerPool,
    WorkerError,
    WorkerStartError,
    _init_worker,
    run_worker,
)

_URL = "sqlite:///unused.db"


def _spec(workers=3, operations=4):
    return WorkloadSpec().with_overrides(
        test_configuration={'concurrent_workers': workers},
        concurrency={'operations_per_worker': operations, 'worker_progress_interval': 2},
    )


def _succeeding_factory(url):
    return MagicMock()


def _failing_factory(url):
    raise StorageError("Connect failed: unable to open database file")


class _FlakyEngine:
    """Rejects the salary update on odd iterations."""

    def __init__(self, url):
        self.closed = False

    def execute(self, statement, params=None):
        if statement.startswith("UPDATE") and int(params['username'].rsplit('user', 1)[1]) % 2:
            raise StorageError("database is locked")
        return MagicMock()

    def query(self, statement, params=None):
        return [{'username': params['username']}]

    def shutdown(self):
        self.closed = True


class _CrashingEngine(_FlakyEngine):

    def query(self, statement, params=None):
        raise RuntimeError("segfault in driver")


class TestRunWorker(unittest.TestCase):

    def test_all_iterations_succeed(self):
        result = run_worker(0, 4, _URL, _spec(), _succeeding_factory)
        self.assertEqual(result.worker_id, 0)
        self.assertEqual(result.operations, 4)
        self.assertEqual(result.completed, 4)
        self.assertEqual(result.failed, 0)
        self.assertGreaterEqual(result.end_time, result.start_time)
        self.assertEqual(set(result.operation_times), {'insert', 'update', 'select'})

    def test_failed_iterations_are_counted(self):
        result = run_worker(1, 7, _URL, _spec(), _FlakyEngine)
        self.assertEqual(result.completed, 4)
        self.assertEqual(result.failed, 3)
        self.assertEqual(result.completed + result.failed, result.operations)
        self.assertEqual(result.last_error, "database is locked")

    def test_start_failure_carries_worker_index(self):
        with self.assertRaises(WorkerStartError) as context:
            run_worker(5, 4, _URL, _spec(), _failing_factory)
        self.assertEqual(context.exception.worker_index, 5)
        self.assertIn("Worker 5 failed to start", str(context.exception))

    def test_engine_is_shut_down(self):
        engines = []

        def factory(url):
            engine = _FlakyEngine(url)
            engines.append(engine)
            return engine

        run_worker(0, 2, _URL, _spec(), factory)
        self.assertTrue(engines[0].closed)

    def test_worker_errors_survive_pickling(self):
        error = pickle.loads(pickle.dumps(WorkerStartError(2, "no such file")))
        self.assertIsInstance(error, WorkerStartError)
        self.assertEqual(error.worker_index, 2)
        self.assertEqual(error.message, "no such file")


class TestConcurrentWorkerPool(unittest.TestCase):

    def _pool(self, factory, spec=None):
        return ConcurrentWorkerPool(_URL, spec or _spec(), engine_factory=factory,
                                    executor_factory=ThreadPoolExecutor, seed=1)

    def test_results_for_every_worker(self):
        results = self._pool(_succeeding_factory).run()
        self.assertEqual([r.worker_id for r in results], [0, 1, 2])
        self.assertEqual(sum(r.completed for r in results), 12)
        self.assertEqual(sum(r.failed for r in results), 0)

    def test_explicit_counts_override_spec(self):
        results = self._pool(_succeeding_factory).run(workers=2, operations=5)
        self.assertEqual(len(results), 2)
        self.assertTrue(all(r.operations == 5 for r in results))

    def test_no_workers(self):
        self.assertEqual(self._pool(_succeeding_factory).run(workers=0), [])

    def test_completed_plus_failed_equals_operations(self):
        for result in self._pool(_FlakyEngine).run(workers=4, operations=9):
            self.assertEqual(result.completed + result.failed, 9)

    def test_start_failure_fails_the_pool(self):
        with self.assertRaises(WorkerStartError) as context:
            self._pool(_failing_factory).run()
        self.assertEqual(context.exception.worker_index, 0)

    def test_start_failure_lets_siblings_finish(self):
        engines = []
        calls = []

        def factory(url):
            calls.append(url)
            if len(calls) == 1:
                raise StorageError("Connect failed")
            engine = _FlakyEngine(url)
            engines.append(engine)
            return engine

        with self.assertRaises(WorkerStartError):
            self._pool(factory).run()
        self.assertEqual(len(engines), 2)
        self.assertTrue(all(engine.closed for engine in engines))

    def test_crashed_worker_raises_worker_error(self):
        with self.assertRaises(WorkerError) as context:
            self._pool(_CrashingEngine).run(workers=2, operations=1)
        self.assertNotIsInstance(context.exception, WorkerStartError)
        self.assertIn("segfault", str(context.exception))


class TestWorkerPoolWithDatabase(unittest.TestCase):
    """Workers against a real SQLite file, each with its own connection."""

    def setUp(self):
        self.temp_db_fd, self.temp_db_path = tempfile.mkstemp(suffix='.db')
        os.close(self.temp_db_fd)
        self.database_url = f"sqlite:///{self.temp_db_path}"
        self.engine = StorageEngine(self.database_url)
        self.engine.batch(SCHEMA_SQL)

    def tearDown(self):
        self.engine.shutdown()
        for suffix in ('', '-wal', '-shm'):
            if os.path.exists(self.temp_db_path + suffix):
                os.unlink(self.temp_db_path + suffix)

    def _assert_rows_written(self, results, workers, operations):
        self.assertEqual(len(results), workers)
        self.assertEqual(sum(r.completed + r.failed for r in results), workers * operations)
        completed = sum(r.completed for r in results)
        count = self.engine.query(
            "SELECT COUNT(*) AS count FROM users WHERE email LIKE '%@concurrent.test'"
        )[0]['count']
        self.assertGreaterEqual(count, completed)

    def test_thread_executor(self):
        pool = ConcurrentWorkerPool(self.database_url, _spec(), executor_factory=ThreadPoolExecutor, seed=3)
        results = pool.run()
        self._assert_rows_written(results, 3, 4)
        self.assertEqual(sum(r.failed for r in results), 0)

    def test_process_executor(self):
        pool = ConcurrentWorkerPool(self.database_url, _spec(workers=2, operations=3), seed=3)
        results = pool.run()
        self._assert_rows_written(results, 2, 3)


class TestWorkerInitializer(unittest.TestCase):

    @patch('jpy_sqlite_stress.worker_pool.signal.signal')
    def test_restores_default_sigterm_handler(self, mock_signal):
        _init_worker(logging.INFO)
        mock_signal.assert_called_once_with(signal.SIGTERM, signal.SIG_DFL)

    @patch('jpy_sqlite_stress.worker_pool.signal.signal')
    def test_thread_workers_leave_handlers_alone(self, mock_signal):
        with ThreadPoolExecutor(max_workers=1) as executor:
            executor.submit(_init_worker, logging.INFO).result()
        mock_signal.assert_not_called()


if __name__ == '__main__':
    unittest.main()
