"""
Merchant Map Cache - In-process cache for learned merchant mappings

Fronts the merchant_map table so a burst of receipts from the same merchant
costs one database round-trip instead of one per receipt.

Cache Strategy:
1. get() → HIT (mapping), NEGATIVE (store already said "no mapping") or MISS
2. MISS → caller notes the tenant generation, queries the store, then set()
   with the mapping or None (dropped if the tenant was invalidated meanwhile)
3. Any write to the store → invalidate tenant + set() (write-through)

Bounds:
- TTL: entries older than ttl_seconds are dropped on read and by a periodic sweep
- Size: at capacity, inserting a new key evicts the coldest entry
  (lowest hit count, oldest insertion among ties)

Not durable: rebuilt from the store after a restart.
"""
import asyncio
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Any

import structlog
from pydantic import BaseModel, Field

from packages.common.merchant_names import normalize_merchant_name
from packages.common.schemas.merchant_mapping import MerchantMapping

logger = structlog.get_logger()

DEFAULT_MAX_SIZE = 1000
DEFAULT_TTL_SECONDS = 30 * 60
DEFAULT_SWEEP_INTERVAL_SECONDS = 5 * 60

# Rough per-entry footprint for stats(); not a measurement
AVG_KEY_BYTES = 50
AVG_VALUE_BYTES = 200

CacheKey = Tuple[str, str]


class LookupStatus(str, Enum):
    """Outcome of a cache lookup"""
    HIT = "hit"              # Mapping cached
    NEGATIVE = "negative"    # Cached "no mapping exists"
    MISS = "miss"            # Not cached (or expired) - consult the store


@dataclass(frozen=True)
class CacheLookup:
    """Three-valued cache lookup result"""
    status: LookupStatus
    mapping: Optional[MerchantMapping] = None

    @property
    def found(self) -> bool:
        """True for HIT and NEGATIVE - the store need not be asked"""
        return self.status != LookupStatus.MISS


MISS = CacheLookup(LookupStatus.MISS)
NEGATIVE = CacheLookup(LookupStatus.NEGATIVE)


@dataclass
class CacheEntry:
    mapping: Optional[MerchantMapping]
    inserted_at: float
    hit_count: int = 0


class CacheStats(BaseModel):
    """Cache statistics for monitoring"""
    total_requests: int = 0
    hits: int = 0
    misses: int = 0
    hit_rate: float = Field(0.0, ge=0.0, le=100.0, description="Percent, two decimals")
    entry_count: int = 0
    estimated_memory_bytes: int = 0


class MerchantMapCache:
    """
    Bounded TTL cache of (tenant, merchant) → mapping lookups.

    Thread-safe: one lock guards the table and counters. No I/O happens under
    the lock; store queries on a miss run outside it. Two concurrent misses
    for the same key may both hit the store.

    Each tenant carries a generation number that invalidate() and
    invalidate_tenant() advance. A caller that read the store on a miss passes
    the generation it saw before the query to set(), and the write is dropped
    if a store write for that tenant landed in between. A stale "no mapping"
    read can therefore never replace a fresh correction.

    Merchant names are normalized internally, so raw and normalized names
    share one key.

    Usage:
        cache = MerchantMapCache(max_size=1000, ttl_seconds=1800)
        await cache.start()          # periodic expiry sweep
        result = cache.get("org_1", "Target Corp")
        if result.status == LookupStatus.MISS:
            generation = cache.generation("org_1")
            mapping = await repository.find(...)
            cache.set("org_1", "Target Corp", mapping, generation=generation)
        await cache.stop()
    """

    def __init__(
        self,
        max_size: int = DEFAULT_MAX_SIZE,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        sweep_interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        if ttl_seconds <= 0 or sweep_interval_seconds <= 0:
            raise ValueError("ttl_seconds and sweep_interval_seconds must be positive")

        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock

        self._entries: Dict[CacheKey, CacheEntry] = {}
        self._lock = threading.Lock()
        self._total_requests = 0
        self._hits = 0
        self._misses = 0

        # tenant_id -> generation; survives clear() so in-flight reads still see a change
        self._generations: Dict[str, int] = {}

        self._sweep_task: Optional[asyncio.Task] = None

    @staticmethod
    def _key(tenant_id: str, merchant_name: str) -> CacheKey:
        return (tenant_id, normalize_merchant_name(merchant_name))

    def _is_expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.inserted_at > self.ttl_seconds

    def _eviction_key(self, entry: CacheEntry) -> Tuple[int, float]:
        """
        Eviction priority - the entry with the smallest key goes first.

        Default: lowest hit count, then oldest insertion. Override in a
        subclass to tune the policy.
        """
        return (entry.hit_count, entry.inserted_at)

    def _bump_generation(self, tenant_id: str) -> None:
        # Caller holds the lock
        self._generations[tenant_id] = self._generations.get(tenant_id, 0) + 1

    def generation(self, tenant_id: str) -> int:
        """Current invalidation generation for a tenant"""
        with self._lock:
            return self._generations.get(tenant_id, 0)

    def get(self, tenant_id: str, merchant_name: str) -> CacheLookup:
        """
        Look up a cached mapping.

        Returns:
            CacheLookup with status HIT (mapping set), NEGATIVE (store has no
            mapping) or MISS (consult the store)
        """
        key = self._key(tenant_id, merchant_name)
        expired = False
        mapping = None

        with self._lock:
            self._total_requests += 1
            entry = self._entries.get(key)

            if entry is None:
                self._misses += 1
                return MISS

            if self._is_expired(entry, self._clock()):
                del self._entries[key]
                self._misses += 1
                expired = True
            else:
                entry.hit_count += 1
                self._hits += 1
                mapping = entry.mapping

        if expired:
            logger.debug("merchant_map_cache_expired",
                        tenant_id=tenant_id,
                        merchant=key[1])
            return MISS

        if mapping is None:
            return NEGATIVE
        return CacheLookup(LookupStatus.HIT, mapping)

    def set(
        self,
        tenant_id: str,
        merchant_name: str,
        mapping: Optional[MerchantMapping],
        generation: Optional[int] = None,
    ) -> bool:
        """
        Insert or replace an entry; None caches a negative result.

        Resets the entry's timestamp and hit count. Evicts one entry first when
        the cache is full and the key is new.

        Args:
            generation: Tenant generation read before the store query that
                produced ``mapping``. When given and the tenant has been
                invalidated since, nothing is written.

        Returns:
            True if the entry was written
        """
        key = self._key(tenant_id, merchant_name)
        evicted: Optional[Tuple[CacheKey, int]] = None

        with self._lock:
            if generation is not None and self._generations.get(tenant_id, 0) != generation:
                return False

            if key not in self._entries and len(self._entries) >= self.max_size:
                evicted = self._evict_one()

            # Re-insert so dict order tracks insertion time
            self._entries.pop(key, None)
            self._entries[key] = CacheEntry(mapping=mapping, inserted_at=self._clock())

        if evicted is not None:
            victim_key, hit_count = evicted
            logger.debug("merchant_map_cache_evicted",
                        tenant_id=victim_key[0],
                        merchant=victim_key[1],
                        hit_count=hit_count)
        return True

    def _evict_one(self) -> Optional[Tuple[CacheKey, int]]:
        # Caller holds the lock
        if not self._entries:
            return None

        victim_key, victim = min(
            self._entries.items(),
            key=lambda item: self._eviction_key(item[1]),
        )
        del self._entries[victim_key]
        return victim_key, victim.hit_count

    def invalidate(self, tenant_id: str, merchant_name: str) -> None:
        """Remove one entry if present"""
        key = self._key(tenant_id, merchant_name)
        with self._lock:
            self._entries.pop(key, None)
            self._bump_generation(tenant_id)

    def invalidate_tenant(self, tenant_id: str) -> int:
        """
        Remove every entry belonging to a tenant.

        Returns:
            Number of entries removed
        """
        with self._lock:
            keys = [key for key in self._entries if key[0] == tenant_id]
            for key in keys:
                del self._entries[key]
            self._bump_generation(tenant_id)

        if keys:
            logger.debug("merchant_map_cache_tenant_invalidated",
                        tenant_id=tenant_id,
                        removed=len(keys))
        return len(keys)

    def clear(self) -> None:
        """Remove all entries and reset counters"""
        with self._lock:
            self._entries.clear()
            self._total_requests = 0
            self._hits = 0
            self._misses = 0
            for tenant_id in list(self._generations):
                self._bump_generation(tenant_id)

    def purge_expired(self) -> int:
        """
        Remove all entries older than the TTL, accessed or not.

        Returns:
            Number of entries removed
        """
        with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._entries.items() if self._is_expired(entry, now)]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def stats(self) -> CacheStats:
        """Get cache statistics"""
        with self._lock:
            total = self._total_requests
            hits = self._hits
            misses = self._misses
            entry_count = len(self._entries)

        hit_rate = round(100 * hits / total, 2) if total > 0 else 0.0

        return CacheStats(
            total_requests=total,
            hits=hits,
            misses=misses,
            hit_rate=hit_rate,
            entry_count=entry_count,
            estimated_memory_bytes=entry_count * (AVG_KEY_BYTES + AVG_VALUE_BYTES),
        )

    def top_merchants(self, limit: int = 10) -> List[Dict[str, Any]]:
        """
        Get most frequently hit merchants (for analytics).

        Args:
            limit: Number of merchants to return

        Returns:
            List of dicts with tenant_id, merchant_name, hit_count, cached_at
        """
        with self._lock:
            now = self._clock()
            items = [
                (key, entry.hit_count, entry.inserted_at)
                for key, entry in self._entries.items()
            ]

        items.sort(key=lambda item: item[1], reverse=True)
        wall_now = datetime.now(timezone.utc)

        return [
            {
                "tenant_id": key[0],
                "merchant_name": key[1],
                "hit_count": hit_count,
                "cached_at": wall_now - timedelta(seconds=now - inserted_at),
            }
            for key, hit_count, inserted_at in items[:limit]
        ]

    def warm(
        self,
        entries: Iterable[Tuple[str, str, Optional[MerchantMapping]]],
        generation: Optional[int] = None,
    ) -> int:
        """
        Preload the cache with (tenant_id, merchant_name, mapping) triples.

        Args:
            generation: As for set(); applied to every entry

        Returns:
            Number of entries written
        """
        count = 0
        for tenant_id, merchant_name, mapping in entries:
            if self.set(tenant_id, merchant_name, mapping, generation=generation):
                count += 1
        return count

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: CacheKey) -> bool:
        tenant_id, merchant_name = key
        with self._lock:
            return self._key(tenant_id, merchant_name) in self._entries

    # ---- Background expiry sweep ---------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    async def start(self) -> None:
        """Start the periodic expiry sweep on the running event loop"""
        if self.running:
            return
        self._sweep_task = asyncio.create_task(self._sweep_loop(), name="merchant-map-cache-sweep")
        logger.info("merchant_map_cache_sweep_started",
                   interval_seconds=self.sweep_interval_seconds,
                   ttl_seconds=self.ttl_seconds,
                   max_size=self.max_size)

    async def stop(self) -> None:
        """Cancel the expiry sweep and wait for it to finish"""
        task = self._sweep_task
        self._sweep_task = None
        if task is None:
            return

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("merchant_map_cache_sweep_stopped")

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            try:
                removed = self.purge_expired()
            except Exception as e:
                logger.error("merchant_map_cache_sweep_failed",
                            error=str(e),
                            exc_info=True)
                continue

            if removed:
                logger.debug("merchant_map_cache_swept",
                            removed=removed,
                            remaining=len(self))
