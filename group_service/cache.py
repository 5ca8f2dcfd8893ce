"""In-process response cache with TTL expiry and LRU eviction.

Entries are invalidated explicitly by the routers after every mutation, so the
TTL only bounds how long an untouched entry may live.
"""
from __future__ import annotations

import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Optional, Tuple


class ResponseCache:
    def __init__(self, max_size: int = 10000, default_ttl: float = 120.0, clock: Callable[[], float] = time.monotonic):
        self.max_size = max_size
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[Any, float]]" = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None

            value, expires_at = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                self.misses += 1
                return None

            self._entries.move_to_end(key)
            self.hits += 1
            return value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        with self._lock:
            if key in self._entries:
                self._entries.move_to_end(key)
            self._entries[key] = (value, self._clock() + ttl)
            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)
                self.evictions += 1

    def invalidate(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def invalidate_prefix(self, prefix: str) -> int:
        with self._lock:
            doomed = [k for k in self._entries if k.startswith(prefix)]
            for k in doomed:
                del self._entries[k]
            return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> dict:
        with self._lock:
            lookups = self.hits + self.misses
            return {
                "hits": self.hits,
                "misses": self.misses,
                "evictions": self.evictions,
                "size": len(self._entries),
                "hit_rate": round(self.hits / lookups * 100, 2) if lookups else 0.0,
            }


def group_key(group_purchase_id: int) -> str:
    return f"group-purchase:{group_purchase_id}"


ACTIVE_GROUPS_PREFIX = "group-purchases:active"


def active_groups_key(skip: int, limit: int) -> str:
    return f"{ACTIVE_GROUPS_PREFIX}:{skip}:{limit}"
