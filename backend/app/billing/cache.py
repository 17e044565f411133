"""Short-lived per-customer cache that throttles reconciliation passes."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Callable, Dict, Optional, Protocol

from .models import SyncResult


class SyncResultCache(Protocol):
    """Cache operations used by the reconciliation service."""

    def get(self, customer_id: str) -> Optional[SyncResult]:
        ...

    def set(self, customer_id: str, result: SyncResult) -> None:
        ...

    def invalidate(self, customer_id: str) -> None:
        ...

    def clear(self) -> None:
        ...


@dataclass
class SyncCacheEntry:
    result: SyncResult
    cached_at: datetime

    def is_fresh(self, now: datetime, ttl: timedelta) -> bool:
        return now - self.cached_at < ttl


class InMemorySyncCache:
    """Process-local cache; only throttles a single instance."""

    def __init__(
        self,
        *,
        ttl_seconds: float = 300,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._entries: Dict[str, SyncCacheEntry] = {}
        self._lock = Lock()

    def get(self, customer_id: str) -> Optional[SyncResult]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(customer_id)
            if entry is None:
                return None
            if not entry.is_fresh(now, self._ttl):
                self._entries.pop(customer_id, None)
                return None
            return entry.result

    def set(self, customer_id: str, result: SyncResult) -> None:
        if self._ttl <= timedelta(0):
            return
        with self._lock:
            self._entries[customer_id] = SyncCacheEntry(result=result, cached_at=self._clock())

    def invalidate(self, customer_id: str) -> None:
        with self._lock:
            self._entries.pop(customer_id, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


__all__ = ["InMemorySyncCache", "SyncCacheEntry", "SyncResultCache"]
