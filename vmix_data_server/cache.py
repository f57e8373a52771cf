"""Time-bounded cache of rendered /api/data responses."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, NamedTuple, Optional

log = logging.getLogger(__name__)

DEFAULT_EXPIRY_SECONDS = 300.0


class CacheKey(NamedTuple):
    path: str
    format: str
    include: str
    exclude: str


@dataclass
class CacheEntry:
    body: str
    content_type: str
    timestamp: float  # wall-clock seconds, used for the ETag
    stored_at: float  # cache clock, used for expiry


class ProfileCache:
    def __init__(self, expiry_seconds: float = DEFAULT_EXPIRY_SECONDS,
                 clock: Callable[[], float] = time.monotonic):
        self.expiry_seconds = float(expiry_seconds)
        self._clock = clock
        self._entries: Dict[CacheKey, CacheEntry] = {}
        self._generations: Dict[str, int] = {}
        self._last_sweep = clock()

    def __len__(self) -> int:
        return len(self._entries)

    def generation(self, path: str) -> int:
        return self._generations.get(path, 0)

    def get(self, key: CacheKey) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry.stored_at >= self.expiry_seconds:
            del self._entries[key]
            return None
        return entry

    def put(self, key: CacheKey, body: str, content_type: str,
            generation: Optional[int] = None) -> Optional[CacheEntry]:
        # A write invalidated the path while this body was being produced.
        if generation is not None and generation != self.generation(key.path):
            log.debug("Cache put dropped (stale generation) for %s", key.path)
            return None
        now = self._clock()
        if now - self._last_sweep >= self.expiry_seconds:
            self._sweep(now)
        entry = CacheEntry(body=body, content_type=content_type,
                           timestamp=time.time(), stored_at=now)
        self._entries[key] = entry
        return entry

    def _sweep(self, now: float) -> int:
        """Evict every expired entry, not only the ones read again."""
        self._last_sweep = now
        expired = [k for k, e in self._entries.items() if now - e.stored_at >= self.expiry_seconds]
        for k in expired:
            del self._entries[k]
        if expired:
            log.debug("Cache sweep evicted %d expired entries", len(expired))
        return len(expired)

    def invalidate(self, path: str) -> int:
        """Drop every entry derived from path, whatever its format or filters."""
        self._generations[path] = self.generation(path) + 1
        stale = [k for k in self._entries if k.path == path]
        for k in stale:
            del self._entries[k]
        return len(stale)

    def clear(self) -> None:
        for path in {k.path for k in self._entries}:
            self._generations[path] = self.generation(path) + 1
        self._entries.clear()
