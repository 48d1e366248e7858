"""
In-memory response cache for the diagnostic query path.

Each (domain, record type) key holds one CacheEntry whose TTL is the minimum
answer TTL at capture time. Entries are checked for staleness on every read
and additionally removed by a periodic CacheSweeper thread. Capacity is bounded
with least-recently-used eviction.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from cachetools import LRUCache

from .wire import DEFAULT_TTL, Answer, normalize_name

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 10000
DEFAULT_SWEEP_INTERVAL = 60.0


@dataclass(frozen=True)
class CacheEntry:
    domain: str
    type: str
    answers: Tuple[Answer, ...]
    ttl: int
    created_at: float

    def age(self, now: float) -> float:
        return max(0.0, now - self.created_at)

    def is_stale(self, now: float) -> bool:
        return self.age(now) > self.ttl


class _CountingLRU(LRUCache):
    """LRUCache that reports capacity evictions back to its owner."""

    def __init__(self, maxsize: int, on_evict: Callable[[], None]) -> None:
        super().__init__(maxsize=maxsize)
        self._on_evict = on_evict

    def popitem(self):
        key, value = super().popitem()
        self._on_evict()
        return key, value


class ResponseCache:
    """Thread-safe TTL cache of decoded answers keyed by (domain, type).

    Brief:
      get() performs the freshness check and evicts stale entries on read;
      set() always replaces the slot; clear() drops everything;
      purge_expired() is the sweep used by CacheSweeper.

    Inputs:
      - max_entries: LRU capacity bound (default 10000).
      - default_ttl: TTL applied when the caller supplies none (default 300).
      - clock: Optional time source returning epoch seconds (tests).

    Outputs:
      - ResponseCache instance.

    Example:
      >>> cache = ResponseCache()
      >>> _ = cache.set("Example.com", "A", [Answer("example.com", "A", 60, "1.2.3.4")], 60)
      >>> cache.get("example.com", "A").ttl
      60
    """

    def __init__(
        self,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        default_ttl: int = DEFAULT_TTL,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.default_ttl = int(default_ttl) if default_ttl and default_ttl > 0 else DEFAULT_TTL
        self._clock = clock or time.time
        self._lock = threading.RLock()

        self.cache_hits: int = 0
        self.cache_misses: int = 0
        self.evictions_ttl: int = 0
        self.evictions_capacity: int = 0

        self._entries: LRUCache = _CountingLRU(
            max(1, int(max_entries or DEFAULT_MAX_ENTRIES)), self._count_capacity_eviction
        )

    def _count_capacity_eviction(self) -> None:
        self.evictions_capacity += 1

    @staticmethod
    def _key(domain: str, rtype: str) -> Tuple[str, str]:
        return normalize_name(domain), str(rtype).upper()

    def get(self, domain: str, rtype: str) -> Optional[CacheEntry]:
        """Brief: Return the fresh entry for (domain, type), else None.

        Inputs:
          - domain: Query name (any case).
          - rtype: Record type name.

        Outputs:
          - CacheEntry or None. A stale entry is removed before returning None.
        """

        key = self._key(domain, rtype)
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.cache_misses += 1
                return None
            if entry.is_stale(now):
                self._entries.pop(key, None)
                self.evictions_ttl += 1
                self.cache_misses += 1
                logger.debug("Cache entry expired on read: %s/%s", key[0], key[1])
                return None
            self.cache_hits += 1
            return entry

    def set(
        self,
        domain: str,
        rtype: str,
        answers: List[Answer],
        ttl: Optional[int] = None,
    ) -> CacheEntry:
        """Brief: Store answers for (domain, type), replacing any existing entry.

        Inputs:
          - domain: Query name.
          - rtype: Record type name.
          - answers: Decoded answers.
          - ttl: Effective TTL in seconds; falsy or non-positive uses default_ttl.

        Outputs:
          - The CacheEntry that now occupies the slot.
        """

        key = self._key(domain, rtype)
        eff_ttl = int(ttl) if ttl and int(ttl) > 0 else self.default_ttl
        entry = CacheEntry(
            domain=key[0],
            type=key[1],
            answers=tuple(answers),
            ttl=eff_ttl,
            created_at=self._clock(),
        )
        with self._lock:
            self._entries[key] = entry
        return entry

    def clear(self) -> None:
        with self._lock:
            # MutableMapping.clear() goes through popitem(), which would count
            # every entry as a capacity eviction.
            self._entries = _CountingLRU(self._entries.maxsize, self._count_capacity_eviction)

    def purge_expired(self) -> int:
        """Brief: Remove every stale entry.

        Inputs:
          - None.

        Outputs:
          - int: Number of entries removed.
        """

        now = self._clock()
        with self._lock:
            stale = [k for k, e in list(self._entries.items()) if e.is_stale(now)]
            for k in stale:
                self._entries.pop(k, None)
            self.evictions_ttl += len(stale)
        if stale:
            logger.debug("Cache sweep removed %d expired entries", len(stale))
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def snapshot(self) -> Dict[str, Any]:
        """Brief: Summarize cache contents for the stats endpoint.

        Outputs:
          - dict with size, maxsize, counters and per-entry {domain, type, age, ttl}.
        """

        now = self._clock()
        with self._lock:
            entries = [
                {
                    "domain": e.domain,
                    "type": e.type,
                    "age": int(e.age(now)),
                    "ttl": e.ttl,
                }
                for e in self._entries.values()
            ]
            return {
                "size": len(entries),
                "maxSize": int(self._entries.maxsize),
                "hits": self.cache_hits,
                "misses": self.cache_misses,
                "evictionsTtl": self.evictions_ttl,
                "evictionsCapacity": self.evictions_capacity,
                "entries": entries,
            }


class CacheSweeper(threading.Thread):
    """
    Background daemon thread that purges stale cache entries at a fixed interval.

    Inputs (constructor):
        cache: ResponseCache to sweep
        interval_seconds: Seconds between sweeps (default 60)

    Outputs:
        CacheSweeper thread instance (call start() to begin)

    Example:
        >>> sweeper = CacheSweeper(ResponseCache(), interval_seconds=60)
        >>> sweeper.start()
        >>> sweeper.stop()
    """

    def __init__(self, cache: ResponseCache, interval_seconds: float = DEFAULT_SWEEP_INTERVAL) -> None:
        super().__init__(daemon=True, name="CacheSweeper")
        self.cache = cache
        self.interval_seconds = max(0.01, float(interval_seconds))
        self._stop_event = threading.Event()

    def run(self) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            try:
                self.cache.purge_expired()
            except Exception:  # pragma: no cover
                logger.exception("CacheSweeper error")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self.is_alive():
            self.join(timeout=timeout)
