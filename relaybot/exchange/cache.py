from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Generic, Hashable, Optional, Tuple, TypeVar

T = TypeVar("T")


class TTLCache(Generic[T]):
    """
    Small keyed cache with explicit TTL and invalidation.

    Owned by a connector (or shared between connectors of one exchange);
    keys are (symbol, product_type) tuples for contract specs and prices.
    """

    def __init__(
        self, ttl_seconds: float, *, clock: Callable[[], float] = time.monotonic
    ):
        self.ttl_seconds = float(ttl_seconds)
        self._clock = clock
        self._data: Dict[Hashable, Tuple[float, T]] = {}
        self._lock = threading.Lock()

    def get(self, key: Hashable) -> Optional[T]:
        with self._lock:
            hit = self._data.get(key)
            if hit is None:
                return None
            stored_at, value = hit
            if (self._clock() - stored_at) >= self.ttl_seconds:
                del self._data[key]
                return None
            return value

    def put(self, key: Hashable, value: T) -> None:
        with self._lock:
            self._data[key] = (self._clock(), value)

    def get_or_load(self, key: Hashable, loader: Callable[[], T]) -> T:
        cached = self.get(key)
        if cached is not None:
            return cached
        # load outside the lock; two concurrent misses may both load
        value = loader()
        self.put(key, value)
        return value

    def invalidate(self, key: Optional[Hashable] = None) -> None:
        with self._lock:
            if key is None:
                self._data.clear()
            else:
                self._data.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)
