"""
CacheManager - in-process key/value cache with per-entry TTL.

Entries are immutable; set() swaps the whole entry in one dict assignment
so a concurrent get() sees either the old or the new entry, never a mix.
Expired entries are dropped lazily on access. There is no size bound:
keys are limited to the report/dimension combinations the API exposes.
"""

import re
import time
from typing import Any, Callable, Dict, Optional

from crowdstats.core.constants import CACHE_DEFAULT_TTL, STALE_FRACTION
from crowdstats.domain import CacheEntry, CacheHit, CacheStats
from crowdstats.utils.log_utils import get_logger

logger = get_logger(__name__)


class CacheManager:

    def __init__(
        self,
        default_ttl: float = CACHE_DEFAULT_TTL,
        stale_fraction: float = STALE_FRACTION,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.default_ttl = default_ttl
        self.stale_fraction = stale_fraction
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}

    @staticmethod
    def generate_key(prefix: str, *args: Any) -> str:
        return ":".join([prefix] + [str(a) for a in args])

    def get(self, key: str) -> Optional[CacheHit]:
        entry = self._entries.get(key)
        if entry is None:
            return None

        now = self._clock()
        if entry.is_expired(now):
            # Only drop the entry we inspected; a concurrent set() may have replaced it.
            if self._entries.get(key) is entry:
                self._entries.pop(key, None)
            return None

        return CacheHit(
            data=entry.data,
            is_stale=entry.is_stale(now, self.stale_fraction),
            age=entry.age(now),
            ttl=entry.ttl,
        )

    def set(self, key: str, data: Any, ttl: Optional[float] = None) -> CacheEntry:
        entry = CacheEntry(
            key=key,
            data=data,
            written_at=self._clock(),
            ttl=ttl if ttl is not None else self.default_ttl,
        )
        self._entries[key] = entry
        logger.debug(f"[CacheManager] Cached {key} (ttl={entry.ttl}s)")
        return entry

    def delete(self, key: str):
        self._entries.pop(key, None)

    def clear_pattern(self, pattern: str) -> int:
        regex = re.compile(pattern)
        matched = [k for k in list(self._entries) if regex.search(k)]
        for key in matched:
            self._entries.pop(key, None)
        return len(matched)

    def clear(self):
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def get_stats(self) -> CacheStats:
        now = self._clock()
        stats = CacheStats()
        for entry in list(self._entries.values()):
            stats.total += 1
            if entry.is_expired(now):
                stats.expired += 1
            elif entry.is_stale(now, self.stale_fraction):
                stats.stale += 1
            else:
                stats.fresh += 1
        return stats
