"""
In-process cache of resolved permission maps keyed by (person, tenant).

Mutations invalidate synchronously. A resolution that started before an
invalidation is not stored, so a stale map cannot outlive the mutation.
"""
import time
from typing import Callable, Dict, Optional, Tuple

CacheKey = Tuple[str, Optional[str]]


class ResolvedPermissionCache:
    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[CacheKey, Tuple[float, Dict[str, bool]]] = {}
        self._generation = 0
        self._next_sweep = 0.0

    def __len__(self) -> int:
        self._prune(self._clock())
        return len(self._entries)

    @property
    def generation(self) -> int:
        return self._generation

    def get(self, subject_id: str, tenant_id: Optional[str]) -> Optional[Dict[str, bool]]:
        if self.ttl_seconds <= 0:
            return None
        key = (subject_id, tenant_id)
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at <= self._clock():
            del self._entries[key]
            return None
        return dict(value)

    def put(self, subject_id: str, tenant_id: Optional[str], value: Dict[str, bool], generation: int) -> bool:
        """Store ``value`` unless an invalidation happened since ``generation`` was read."""
        if self.ttl_seconds <= 0 or generation != self._generation:
            return False
        now = self._clock()
        # Expired entries are swept at most once per TTL
        if now >= self._next_sweep:
            self._prune(now)
            self._next_sweep = now + self.ttl_seconds
        self._entries[(subject_id, tenant_id)] = (now + self.ttl_seconds, dict(value))
        return True

    def _prune(self, now: float) -> None:
        for key in [key for key, (expires_at, _) in self._entries.items() if expires_at <= now]:
            del self._entries[key]

    def invalidate(self, subject_id: str, tenant_id: Optional[str] = None) -> None:
        """Drop one (subject, tenant) entry, or every entry of the subject when ``tenant_id`` is None."""
        self._generation += 1
        if tenant_id is not None:
            self._entries.pop((subject_id, tenant_id), None)
            return
        for key in [key for key in self._entries if key[0] == subject_id]:
            del self._entries[key]

    def invalidate_tenant(self, tenant_id: str) -> None:
        self._generation += 1
        for key in [key for key in self._entries if key[1] == tenant_id]:
            del self._entries[key]

    def clear(self) -> None:
        self._generation += 1
        self._entries.clear()
