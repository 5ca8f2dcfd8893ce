"""Client query cache with read-your-writes versioning.

After a mutation the caller records the version the server returned. Any
cached or freshly fetched value older than that version is stale and must be
fetched again, so a user never sees the state from before their own write.
"""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional


@dataclass
class CacheEntry:
    value: Any
    version: Optional[int]
    fetched_at: float


class QueryCache:
    def __init__(self, stale_after: float = 30.0, clock: Callable[[], float] = time.monotonic):
        self.stale_after = stale_after
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._min_versions: Dict[str, int] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._clock() - entry.fetched_at > self.stale_after:
                del self._entries[key]
                return None
            if not self._satisfies(key, entry.version):
                del self._entries[key]
                return None
            return entry.value

    def set(self, key: str, value: Any, version: Optional[int] = None) -> None:
        with self._lock:
            self._entries[key] = CacheEntry(value=value, version=version, fetched_at=self._clock())

    def is_fresh_enough(self, key: str, version: Optional[int]) -> bool:
        with self._lock:
            return self._satisfies(key, version)

    def _satisfies(self, key: str, version: Optional[int]) -> bool:
        minimum = self._min_versions.get(key)
        if minimum is None:
            return True
        return version is not None and version >= minimum

    def record_write(self, key: str, version: int) -> None:
        """Remember that ``key`` must be read at ``version`` or later."""
        with self._lock:
            self._min_versions[key] = max(version, self._min_versions.get(key, version))
            entry = self._entries.get(key)
            if entry is not None and not self._satisfies(key, entry.version):
                del self._entries[key]

    def min_version(self, key: str) -> Optional[int]:
        return self._min_versions.get(key)

    def invalidate(self, *keys: str) -> None:
        with self._lock:
            for key in keys:
                self._entries.pop(key, None)

    def invalidate_prefix(self, prefixes: Iterable[str]) -> None:
        with self._lock:
            for key in [k for k in self._entries if any(k.startswith(p) for p in prefixes)]:
                del self._entries[key]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._min_versions.clear()

    def __contains__(self, key: str) -> bool:
        return key in self._entries


NOTIFICATIONS_KEY = "/notifications"
UNREAD_COUNT_KEY = "/notifications/unread-count"
ACTIVE_GROUPS_KEY = "/group-purchases"


def group_key(group_purchase_id: int) -> str:
    return f"/group-purchases/{group_purchase_id}"


def notifications_key(limit: int) -> str:
    return f"{NOTIFICATIONS_KEY}?limit={limit}"
