"""
Tests for timing, rate and formatting helpers.

Copyright (c) 2025, Jim Schilling

Please keep this header when you use this code.

This module is licensed under the MIT License.
"""
import os
import sys
import time
import unittest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from jpy_sqlite_stress.db_engine import StorageError
from jpy_sqlite_stress.timing import TimedOperation, format_time, percentage, rate, timed


class TestTimedOperation(unittest.TestCase):

    def test_measures_block(self):
        with TimedOperation() as timer:
            time.sleep(0.01)
        self.assertGreaterEqual(timer.elapsed_ms, 5)

    def test_elapsed_before_start_is_zero(self):
        self.assertEqual(TimedOperation().elapsed_ms, 0.0)

    def test_error_propagates_with_elapsed(self):
        error = StorageError("boom")
        with self.assertRaises(StorageError) as context:
            with TimedOperation():
                raise error
        self.assertIs(context.exception, error)
        self.assertGreaterEqual(context.exception.elapsed_ms, 0)

    def test_timed_returns_result(self):
        result = timed(lambda a, b=0: a + b, 2, b=3)
        self.assertEqual(result.result, 5)
        self.assertGreaterEqual(result.elapsed_ms, 0)

    def test_timed_propagates(self):
        def fail():
            raise StorageError("nope")

        with self.assertRaises(StorageError):
            timed(fail)


class TestRates(unittest.TestCase):

    def test_rate(self):
        self.assertEqual(rate(500, 1000), 500)
        self.assertEqual(rate(1, 4), 250)

    def test_rate_sentinel(self):
        self.assertEqual(rate(0, 1000), 0)
        self.assertEqual(rate(100, 0), 0)
        self.assertEqual(rate(0, 0), 0)

    def test_percentage(self):
        self.assertEqual(percentage(200, 1000), "20.00%")
        self.assertEqual(percentage(12, 12), "100.00%")
        self.assertEqual(percentage(1, 3), "33.33%")

    def test_percentage_empty_whole(self):
        self.assertEqual(percentage(0, 0), "0.00%")


class TestFormatTime(unittest.TestCase):

    def test_format_time(self):
        self.assertEqual(format_time(None), "N/A")
        self.assertEqual(format_time(0), "0ms")
        self.assertEqual(format_time(999), "999ms")
        self.assertEqual(format_time(2003), "2s 3ms")
        self.assertEqual(format_time(62003), "1m 2s 3ms")
        self.assertEqual(format_time(12.6), "13ms")


if __name__ == '__main__':
    unittest.main()
