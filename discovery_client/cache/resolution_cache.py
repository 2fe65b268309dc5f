"""
Resolution Cache

In-memory map from service name to the freshest known replica set.

Cache Strategy:
- Key: service name (one entry per name; tag filters and region selection
  are applied on read, never stored)
- Fresh while now < fetched_at + ttl, stale afterwards
- Stale entries stay servable for degraded reads; they leave only through
  invalidate() or LRU pressure at the capacity bound
- Last-writer-wins on the registry's updated_at
"""
import asyncio
from dataclasses import dataclass
from threading import Lock
from typing import Awaitable, Callable, Dict, Optional, Sequence, Tuple, TypeVar

import structlog
from cachetools import LRUCache

from discovery_client.service_discovery.models import ServiceRecord
from discovery_client.utils.clock import Clock

logger = structlog.get_logger("resolution-cache")

T = TypeVar("T")


@dataclass(frozen=True)
class CacheEntry:
    """Replica set for one service name plus its freshness window"""
    records: Tuple[ServiceRecord, ...]
    fetched_at: float
    ttl: float

    def is_fresh(self, now: float) -> bool:
        return now < self.fetched_at + self.ttl

    @property
    def high_water_mark(self) -> float:
        return max((r.updated_at for r in self.records), default=float("-inf"))


class _CountingLRU(LRUCache):
    def __init__(self, maxsize: int, on_evict: Callable[[str], None]):
        super().__init__(maxsize=maxsize)
        self._on_evict = on_evict

    def popitem(self):
        key, value = super().popitem()
        self._on_evict(key)
        return key, value


class ResolutionCache:
    """
    Service name -> CacheEntry with TTL freshness and an LRU capacity bound.

    Reads never touch the network; the facade decides what to do on a miss.
    """

    def __init__(self, capacity: int = 1024, default_ttl: float = 30.0, clock: Optional[Clock] = None):
        self.default_ttl = default_ttl
        self.clock = clock or Clock()
        self._entries: LRUCache = _CountingLRU(capacity, self._record_eviction)
        self._lock = Lock()

        # Metrics
        self.hits = 0
        self.stale_hits = 0
        self.misses = 0
        self.evictions = 0

    def _record_eviction(self, name: str) -> None:
        self.evictions += 1
        logger.debug("Evicted under capacity pressure", service=name)

    def get(self, name: str) -> Optional[CacheEntry]:
        with self._lock:
            entry = self._entries.get(name)
            if entry is None:
                self.misses += 1
            elif entry.is_fresh(self.clock.now()):
                self.hits += 1
            else:
                self.stale_hits += 1
            return entry

    def store(self, name: str, records: Sequence[ServiceRecord], ttl: Optional[float] = None) -> CacheEntry:
        """
        Store a freshly fetched replica set.

        If the held entry is already newer than everything fetched (a watch
        push beat the fetch), its records are kept and only the freshness
        window restarts.
        """
        now = self.clock.now()
        ttl = self.default_ttl if ttl is None else ttl
        incoming = CacheEntry(records=tuple(records), fetched_at=now, ttl=ttl)

        with self._lock:
            current = self._entries.get(name)
            if current is not None and incoming.high_water_mark < current.high_water_mark:
                logger.debug(
                    "Fetched set older than cached entry; keeping cached records",
                    service=name,
                    fetched=incoming.high_water_mark,
                    cached=current.high_water_mark
                )
                incoming = CacheEntry(records=current.records, fetched_at=now, ttl=ttl)
            self._entries[name] = incoming
            return incoming

    def apply_update(self, record: ServiceRecord) -> bool:
        """
        Merge one pushed record into its service's entry.

        The replica with the same URL is replaced. Updates not strictly newer
        than the entry's high-water mark are dropped. Returns True if applied.
        """
        with self._lock:
            current = self._entries.get(record.name)
            if current is None:
                # Partial view of the replica set: servable, but never fresh
                self._entries[record.name] = CacheEntry(
                    records=(record,), fetched_at=self.clock.now(), ttl=0.0
                )
                return True

            if record.updated_at <= current.high_water_mark:
                return False

            replicas = tuple(r for r in current.records if r.url != record.url) + (record,)
            self._entries[record.name] = CacheEntry(
                records=replicas, fetched_at=current.fetched_at, ttl=current.ttl
            )
            return True

    def expire(self, name: str) -> None:
        """Mark an entry stale without dropping it."""
        with self._lock:
            current = self._entries.get(name)
            if current is not None:
                self._entries[name] = CacheEntry(
                    records=current.records, fetched_at=current.fetched_at, ttl=0.0
                )

    def invalidate(self, name: str) -> bool:
        with self._lock:
            return self._entries.pop(name, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, name: str) -> bool:
        return name in self._entries

    def stats(self) -> Dict[str, int]:
        return {
            "hits": self.hits,
            "stale_hits": self.stale_hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "size": len(self._entries),
        }


class SingleFlight:
    """
    Coalesce concurrent calls for the same key into one in-flight task.

    Every caller awaits the same task through asyncio.shield, so one caller
    timing out or being cancelled does not cancel the shared work.
    """

    def __init__(self):
        self._inflight: Dict[str, asyncio.Task] = {}

    def in_flight(self, key: str) -> bool:
        return key in self._inflight

    async def do(self, key: str, func: Callable[[], Awaitable[T]]) -> T:
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(func())
            self._inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._release(k, t))
        return await asyncio.shield(task)

    def _release(self, key: str, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        # Retrieve the outcome so an unawaited failure is not reported as lost
        if not task.cancelled():
            task.exception()

    def cancel_all(self) -> None:
        for task in list(self._inflight.values()):
            task.cancel()
        self._inflight.clear()
