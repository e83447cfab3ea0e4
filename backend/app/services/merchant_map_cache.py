"""
In-process TTL + LRU cache for merchant mapping lookups.

Keys are (org_id, normalized merchant name). A cached None means "looked up,
no mapping" and is returned as such; MISS means the caller must hit the store.
Writes through MerchantMapService invalidate the affected key, so the cache
is only ever stale for writes made by another process, and then for at most
the TTL.
"""

import threading
import time
from collections import OrderedDict
from typing import Callable, Optional

from app.models.merchant_map import MerchantMapping

MISS = object()

DEFAULT_TTL_SECONDS = 30 * 60
DEFAULT_MAX_SIZE = 1000


class MerchantMapCache:

    def __init__(
        self,
        max_size: int = DEFAULT_MAX_SIZE,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: "OrderedDict[tuple[str, str], tuple[float, Optional[MerchantMapping]]]" = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, org_id: str, merchant_name: str):
        key = (org_id, merchant_name)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return MISS

            stored_at, mapping = entry
            if self._clock() - stored_at > self.ttl_seconds:
                del self._entries[key]
                self.misses += 1
                return MISS

            self._entries.move_to_end(key)
            self.hits += 1
            return mapping

    def set(self, org_id: str, merchant_name: str, mapping: Optional[MerchantMapping]) -> None:
        key = (org_id, merchant_name)
        with self._lock:
            self._entries[key] = (self._clock(), mapping)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)

    def invalidate(self, org_id: str, merchant_name: str) -> None:
        with self._lock:
            self._entries.pop((org_id, merchant_name), None)

    def invalidate_org(self, org_id: str) -> None:
        with self._lock:
            for key in [k for k in self._entries if k[0] == org_id]:
                del self._entries[key]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self.hits = 0
            self.misses = 0

    def stats(self) -> dict:
        total = self.hits + self.misses
        return {
            "entries": len(self._entries),
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hits / total if total else 0.0,
        }
