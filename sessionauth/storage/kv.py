from __future__ import annotations

import math
import threading
import time
from typing import Callable, Dict, Optional, Protocol, Tuple


class KeyValueBackend(Protocol):
    """Async key-value operations the session store relies on.

    TTLs are expressed in seconds and may be fractional; implementations
    round up so a record never expires earlier than requested.
    """

    async def set(
        self, key: str, value: str, ttl: float, *, only_if_absent: bool = False
    ) -> bool: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def delete(self, key: str) -> bool: ...

    async def compare_and_set(
        self, key: str, expected: str, value: str, ttl: float
    ) -> bool: ...

    async def compare_and_delete(self, key: str, expected: str) -> bool: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


def ttl_millis(ttl: float) -> int:
    """Convert a TTL in seconds to whole milliseconds, never below 1."""
    return max(1, int(math.ceil(ttl * 1000)))


class MemoryBackend:
    """In-process backend with native expiry, for tests and single-node dev."""

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.time,
        sweep_interval: float = 60.0,
    ) -> None:
        self._clock = clock
        self.sweep_interval = sweep_interval
        self._last_sweep = clock()
        self._data: Dict[str, Tuple[str, float]] = {}
        # RLock so compound operations can reuse the single-key helpers
        self._lock = threading.RLock()

    def _live(self, key: str) -> Optional[Tuple[str, float]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry[1] <= self._clock():
            self._data.pop(key, None)
            return None
        return entry

    def _maybe_sweep(self) -> None:
        # Entries nobody reads again are only reclaimed here
        if self._clock() - self._last_sweep >= self.sweep_interval:
            self.purge_expired()

    def _deadline(self, ttl: float) -> float:
        return self._clock() + ttl_millis(ttl) / 1000.0

    async def set(
        self, key: str, value: str, ttl: float, *, only_if_absent: bool = False
    ) -> bool:
        with self._lock:
            self._maybe_sweep()
            if only_if_absent and self._live(key) is not None:
                return False
            self._data[key] = (value, self._deadline(ttl))
            return True

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key)
            return entry[0] if entry else None

    async def delete(self, key: str) -> bool:
        with self._lock:
            live = self._live(key) is not None
            self._data.pop(key, None)
            return live

    async def compare_and_set(
        self, key: str, expected: str, value: str, ttl: float
    ) -> bool:
        with self._lock:
            entry = self._live(key)
            if entry is None or entry[0] != expected:
                return False
            self._data[key] = (value, self._deadline(ttl))
            return True

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        with self._lock:
            entry = self._live(key)
            if entry is None or entry[0] != expected:
                return False
            self._data.pop(key, None)
            return True

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        with self._lock:
            self._data.clear()

    def purge_expired(self) -> int:
        """Drop every expired entry; returns how many were removed."""
        with self._lock:
            now = self._clock()
            self._last_sweep = now
            stale = [key for key, (_, deadline) in self._data.items() if deadline <= now]
            for key in stale:
                self._data.pop(key, None)
            return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)
