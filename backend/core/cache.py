"""
In-memory LRU cache for aggregate read endpoints.

Keys are scoped by a logical prefix and the caller's tenant/branch so cached
results never cross tenants. Lifecycle mutations invalidate whole prefixes
(``"dashboard"``, ``"analytics"``); each route's TTL bounds staleness.

Sync routes read the cache from the threadpool while effects invalidate it
from the event loop, so every operation holds the lock.
"""
from collections import OrderedDict
from typing import Any, Callable, Optional
import json
import logging
import threading
import time

logger = logging.getLogger(__name__)


class ResponseCache:
    """Capacity-bounded LRU store with per-entry expiry."""

    def __init__(self, max_entries: int = 500, default_ttl: int = 30,
                 clock: Callable[[], float] = time.monotonic):
        self.max_entries = max_entries
        self.default_ttl = default_ttl
        self._clock = clock
        self._store: "OrderedDict[str, tuple[Any, float]]" = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    @staticmethod
    def build_key(prefix: str, tenant_id: Optional[str], branch_id: Optional[str],
                  path: str, params: Optional[dict] = None) -> str:
        scope = f"{tenant_id or 'global'}:{branch_id or 'all'}"
        query = json.dumps(params or {}, sort_keys=True, default=str)
        return f"{prefix}:{scope}:{path}:{query}"

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                self.misses += 1
                return None
            data, expires_at = entry
            if self._clock() >= expires_at:
                self._store.pop(key, None)
                self.misses += 1
                return None
            self._store.move_to_end(key)
            self.hits += 1
            return data

    def set(self, key: str, data: Any, ttl_seconds: Optional[int] = None) -> None:
        ttl = self.default_ttl if ttl_seconds is None else ttl_seconds
        with self._lock:
            if key in self._store:
                del self._store[key]
            elif len(self._store) >= self.max_entries:
                self._store.popitem(last=False)
            self._store[key] = (data, self._clock() + ttl)

    def invalidate(self, pattern: str) -> int:
        """Drop every entry whose key contains ``pattern``."""
        with self._lock:
            doomed = [key for key in list(self._store) if pattern in key]
            for key in doomed:
                self._store.pop(key, None)
        if doomed:
            logger.debug("Cache invalidated: %d entries matching %r", len(doomed), pattern)
        return len(doomed)

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)

    def stats(self) -> dict:
        with self._lock:
            total = self.hits + self.misses
            return {
                "entries": len(self._store),
                "max_entries": self.max_entries,
                "hits": self.hits,
                "misses": self.misses,
                "hit_rate": f"{(self.hits / total) * 100:.1f}%" if total else "0%",
            }
