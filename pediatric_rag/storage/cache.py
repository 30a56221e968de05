import hashlib
import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Optional, TypeVar

logger = logging.getLogger("PediatricRAG")

V = TypeVar("V")

RETRIEVAL_CACHE_TTL = 5 * 60
RESPONSE_CACHE_TTL = 10 * 60
DEFAULT_MAX_ENTRIES = 1000


@dataclass
class CacheEntry(Generic[V]):
    key: str
    value: V
    inserted_at: float


def normalize_query(text: str) -> str:
    return re.sub(r"\s+", " ", text.strip().lower())


def make_key(query: str, context: Any = None) -> str:
    """
    Build a cache key from the normalized query and a hash of the serialized context.

    ``context`` may be any JSON-serializable value; sets should be converted to
    sorted lists first so equal contexts hash identically.
    """
    serialized = json.dumps(context, sort_keys=True, default=str)
    digest = hashlib.sha256(serialized.encode("utf-8")).hexdigest()[:32]
    return f"{normalize_query(query)}::{digest}"


class ResultCache(Generic[V]):
    """
    In-memory TTL cache with a bounded number of entries.

    Entries are kept in insertion order, so the oldest entry is always first.
    Every write drops expired entries and, when the cache is full, evicts the
    oldest ones. There is no locking; concurrent writers for the same key
    simply race.
    """

    def __init__(
        self,
        ttl_seconds: float = RETRIEVAL_CACHE_TTL,
        clock: Callable[[], float] = time.monotonic,
        name: str = "cache",
        max_entries: int = DEFAULT_MAX_ENTRIES,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self.name = name
        self.max_entries = max_entries
        self._entries: Dict[str, CacheEntry[V]] = {}
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def _is_fresh(self, entry: CacheEntry[V], now: float) -> bool:
        return now - entry.inserted_at < self.ttl_seconds

    def get(self, key: str) -> Optional[V]:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        if not self._is_fresh(entry, self.clock()):
            self._entries.pop(key, None)
            self.misses += 1
            logger.debug(f"{self.name}: entry expired")
            return None
        self.hits += 1
        return entry.value

    def set(self, key: str, value: V) -> None:
        now = self.clock()
        # Re-inserting moves the key to the end, keeping the dict ordered by age.
        self._entries.pop(key, None)
        self._prune_expired(now)
        while len(self._entries) >= self.max_entries:
            oldest = next(iter(self._entries))
            del self._entries[oldest]
            self.evictions += 1
        self._entries[key] = CacheEntry(key=key, value=value, inserted_at=now)

    def clear(self) -> None:
        self._entries.clear()
        logger.info(f"{self.name}: cleared")

    def _prune_expired(self, now: float) -> int:
        removed = 0
        for key, entry in list(self._entries.items()):
            if self._is_fresh(entry, now):
                break
            del self._entries[key]
            removed += 1
        if removed:
            logger.debug(f"{self.name}: pruned {removed} expired entries")
        return removed

    def prune(self) -> int:
        """Drop every expired entry and return how many were removed."""
        return self._prune_expired(self.clock())

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and self._is_fresh(entry, self.clock())
