"""Module level counters and latency samples shared by the DHCP services."""

from collections import Counter
from threading import RLock

from leasekeeper.libs.libs import Metrics

dhcp_metrics = Metrics()


class DHCPStats:
    """In-memory message counters, e.g. received_discover, sent_offer, received_malformed."""

    _lock = RLock()
    _counters: Counter = Counter()

    @classmethod
    def increment(cls, key: str, count: int = 1):
        with cls._lock:
            cls._counters[key] += count

    @classmethod
    def get(cls, key: str) -> int:
        with cls._lock:
            return cls._counters.get(key, 0)

    @classmethod
    def get_stats(cls) -> dict[str, int]:
        with cls._lock:
            return dict(cls._counters)

    @classmethod
    def clear(cls):
        with cls._lock:
            cls._counters.clear()
