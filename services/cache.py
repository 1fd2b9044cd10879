"""
Process-local caches fronting the read paths.

There is no TTL: entries live until the reconciliation pipeline clears and
repopulates them after a commit. Each slot has a single writer at a time
(the read service on a miss, or the pipeline refresh). The caches live in
process memory, so a multi-process deployment needs an external shared
cache instead.
"""
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict

NETWORK_STATS_RANGES = ('24h', '7d', '30d', 'all')


class _CacheMiss:
    def __repr__(self):
        return "CACHE_MISS"

    def __bool__(self):
        return False


CACHE_MISS = _CacheMiss()


@dataclass(frozen=True)
class CacheEntry:
    data: Any
    timestamp: float


class NodesCache:
    """Single slot holding the formatted full node list and its aggregates."""

    def __init__(self):
        self._entry = None
        self._lock = threading.Lock()

    def get(self):
        entry = self._entry
        return CACHE_MISS if entry is None else entry.data

    def set(self, data):
        with self._lock:
            self._entry = CacheEntry(data=data, timestamp=time.time())

    def clear(self):
        with self._lock:
            self._entry = None

    @property
    def timestamp(self):
        entry = self._entry
        return entry.timestamp if entry else None


class NetworkStatsCache:
    """One independent slot per range label."""

    def __init__(self):
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def get(self, range_label):
        entry = self._entries.get(range_label)
        return CACHE_MISS if entry is None else entry.data

    def set(self, range_label, data):
        with self._lock:
            entries = dict(self._entries)
            entries[range_label] = CacheEntry(data=data, timestamp=time.time())
            self._entries = entries

    def clear(self):
        with self._lock:
            self._entries = {}

    def has(self, range_label):
        return range_label in self._entries


class Caches:
    """The pair of caches a reconciliation cycle refreshes."""

    def __init__(self, nodes=None, network_stats=None):
        self.nodes = nodes or NodesCache()
        self.network_stats = network_stats or NetworkStatsCache()
