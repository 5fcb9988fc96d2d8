"""
Bounded TTL cache

Owned by whichever component needs it (the statistics endpoint keeps one on
``app.state``); there is no module-level cache instance.
"""
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Hashable, Optional


class TTLCache:
    """A bounded cache with LRU eviction and a per-entry time-to-live"""

    def __init__(self, ttl_seconds: float = 30, maxsize: int = 1024, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.maxsize = maxsize
        self._clock = clock
        self._cache: "OrderedDict[Hashable, Any]" = OrderedDict()
        self._timestamps: Dict[Hashable, float] = {}
        self._lock = threading.Lock()

    def get(self, key: Hashable, default: Optional[Any] = None) -> Any:
        with self._lock:
            if key not in self._cache:
                return default
            if self._clock() - self._timestamps[key] > self.ttl_seconds:
                self._remove_key(key)
                return default
            self._cache.move_to_end(key)
            return self._cache[key]

    def set(self, key: Hashable, value: Any) -> None:
        with self._lock:
            if key in self._cache:
                self._cache.move_to_end(key)
            else:
                while len(self._cache) >= self.maxsize:
                    self._remove_key(next(iter(self._cache)))
            self._cache[key] = value
            self._timestamps[key] = self._clock()

    def invalidate(self, key: Hashable) -> None:
        with self._lock:
            self._remove_key(key)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()
            self._timestamps.clear()

    def __len__(self) -> int:
        return len(self._cache)

    def _remove_key(self, key: Hashable) -> None:
        """Remove a key (caller holds the lock)"""
        self._cache.pop(key, None)
        self._timestamps.pop(key, None)
