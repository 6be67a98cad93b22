"""TTL cache with explicit invalidation and generation guards"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict

from ..clock import Clock, system_clock


class CacheEntry(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    value: Any
    generation: int
    expires_at: float


class TTLCache:
    """Key to versioned-entry cache.

    ``invalidate`` bumps the key's generation. A loader that read the
    backing store before an invalidation passes its older generation to
    ``set`` and is ignored, so a stale value can never be cached after a
    write.
    """

    def __init__(self, ttl_seconds: float, clock: Optional[Clock] = None):
        self.ttl_seconds = ttl_seconds
        self.clock = clock or system_clock
        self._entries: Dict[str, CacheEntry] = {}
        self._generations: Dict[str, int] = {}
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None

        if self.clock.now() >= entry.expires_at:
            self._entries.pop(key, None)
            self.misses += 1
            return None

        self.hits += 1
        return entry

    def generation(self, key: str) -> int:
        return self._generations.get(key, 0)

    def set(self, key: str, value: Any, generation: Optional[int] = None) -> bool:
        """Store ``value``; refused when ``generation`` predates an invalidation"""
        current = self.generation(key)
        if generation is not None and generation < current:
            return False

        self._entries[key] = CacheEntry(
            value=value,
            generation=current,
            expires_at=self.clock.now() + self.ttl_seconds,
        )
        return True

    def invalidate(self, key: str):
        self._generations[key] = self.generation(key) + 1
        self._entries.pop(key, None)

    def stats(self) -> Dict[str, Any]:
        total = self.hits + self.misses
        return {
            "entries": len(self._entries),
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hits / total if total else 0.0,
        }
