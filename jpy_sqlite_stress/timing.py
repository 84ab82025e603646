"""
Wall-clock measurement of units of work.

Copyright (c) 2025, Jim Schilling

Please keep this header when you use this code.

This module is licensed under the MIT License.
"""
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class Timed(Generic[T]):
    result: T
    elapsed_ms: float


class TimedOperation:
    """
    Context manager measuring the enclosed block in milliseconds.

    An exception leaving the block is re-raised unchanged, with the time spent
    so far attached as its ``elapsed_ms`` attribute.

    Example:
        with TimedOperation() as timer:
            engine.execute("VACUUM")
        print(timer.elapsed_ms)
    """

    def __init__(self) -> None:
        self._start: float | None = None
        self._end: float | None = None

    def __enter__(self) -> "TimedOperation":
        self._start = time.perf_counter()
        self._end = None
        return self

    def __exit__(self, exc_type: Any, exc: BaseException | None, tb: Any) -> bool:
        self._end = time.perf_counter()
        if exc is not None:
            try:
                exc.elapsed_ms = self.elapsed_ms  # type: ignore[attr-defined]
            except AttributeError:
                pass
        return False

    @property
    def elapsed_ms(self) -> float:
        if self._start is None:
            return 0.0
        end = self._end if self._end is not None else time.perf_counter()
        return (end - self._start) * 1000


def timed(func: Callable[..., T], *args: Any, **kwargs: Any) -> Timed[T]:
    """
    Call func and return its result together with the elapsed milliseconds.

    Raises:
        Whatever func raises, tagged with elapsed_ms
    """
    with TimedOperation() as timer:
        result = func(*args, **kwargs)
    return Timed(result, timer.elapsed_ms)


def rate(count: float, elapsed_ms: float) -> int:
    """
    Operations per second, rounded.

    Zero count or zero elapsed time gives 0 rather than a division error.
    """
    if not count or elapsed_ms <= 0:
        return 0
    return round(count / (elapsed_ms / 1000))


def percentage(part: float, whole: float) -> str:
    """Format part/whole as 'NN.NN%'; an empty whole gives '0.00%'."""
    if not whole:
        return "0.00%"
    return f"{part / whole * 100:.2f}%"


def format_time(milliseconds: float | None) -> str:
    """Render a duration as '1m 2s 3ms', '2s 3ms' or '3ms'; None as 'N/A'."""
    if milliseconds is None:
        return "N/A"
    total = int(round(milliseconds))
    ms = total % 1000
    seconds = (total // 1000) % 60
    minutes = total // (1000 * 60)
    if minutes > 0:
        return f"{minutes}m {seconds}s {ms}ms"
    if seconds > 0:
        return f"{seconds}s {ms}ms"
    return f"{ms}ms"
