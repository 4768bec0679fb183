from collections import deque
from functools import wraps
from threading import RLock
from time import perf_counter
from typing import Any, Callable

METRICS_MAX_SIZE = 1000
DEFAULT_PERCENTILES: tuple[int, ...] = (5, 50, 95, 99)


class Metrics:
    """Store timing samples and calculate percentiles (thread-safe)."""

    def __init__(self, max_size: int = METRICS_MAX_SIZE):
        """Initialize with max number of samples."""
        self._lock = RLock()
        self._samples: deque[float] = deque(maxlen=max_size)

    def add_sample(self, duration: float) -> None:
        """Add a timing sample in milliseconds."""
        with self._lock:
            self._samples.append(duration)

    def get_count(self) -> int:
        """Return number of samples."""
        with self._lock:
            return len(self._samples)

    def get_percentile(self, percentile: float) -> float:
        """Get duration corresponding to the given percentile."""
        if not (0 <= percentile <= 100):
            raise ValueError("Percentile must be between 0 and 100.")
        with self._lock:
            if not self._samples:
                return 0.0
            _values = sorted(self._samples)
            return _values[int((percentile / 100.0) * (len(_values) - 1))]

    def get_stats(self, percentiles: tuple[int, ...] = DEFAULT_PERCENTILES) -> dict:
        """Return count and percentile stats."""
        with self._lock:
            _stats: dict[str, float] = {"count": self.get_count()}
            for _percentile in percentiles:
                _stats[f"p{_percentile}"] = self.get_percentile(_percentile)
            return _stats

    def clear(self):
        """Clear samples."""
        with self._lock:
            self._samples.clear()


def measure_latency_decorator(metrics: Metrics):
    """Decorator to measure execution time and add to metrics object.

    Args:
        metrics: Metrics instance.

    """

    def decorator(func: Callable):
        @wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            start: float = perf_counter()
            try:
                return func(*args, **kwargs)
            finally:
                metrics.add_sample((perf_counter() - start) * 1000)

        return wrapper

    return decorator


def is_init(func):
    """Is service initialized"""

    @wraps(func)
    def wrapper(cls, *args, **kwargs):
        if not getattr(cls, "initialized", False):
            raise RuntimeError("Init first")
        return func(cls, *args, **kwargs)

    return wrapper


def is_running(func):
    """Is service running"""

    @wraps(func)
    def wrapper(cls, *args, **kwargs):
        if not getattr(cls, "running", False):
            raise RuntimeError("Not running")
        return func(cls, *args, **kwargs)

    return wrapper
