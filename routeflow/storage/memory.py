from __future__ import annotations

import copy
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple

from routeflow.logging import get_logger


class MemoryTTLCache:
    """In-process key/value cache with per-entry TTL.

    Expired entries are evicted when they are read. Values are deep-copied on
    write and on read, so a caller mutating a returned decision or summary
    never changes what other readers see.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.logger = get_logger(__name__)
        self._clock = clock
        self._entries: Dict[str, Tuple[float, Any]] = {}
        self._lock = threading.RLock()

    @property
    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    async def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                self.logger.debug("cache_entry_expired", key=key)
                return None
            return copy.deepcopy(value)

    async def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        with self._lock:
            self._entries[key] = (self._clock() + ttl_seconds, copy.deepcopy(value))

    async def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    async def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    async def close(self) -> None:
        await self.clear()
