"""
Merchant Map Service - Learning from user category corrections

Flow for each incoming receipt:
1. Normalize merchant name ("TARGET CORPORATION" → "target")
2. Cache lookup (tenant + merchant)
3. Cache miss → merchant_map query, result cached (including "no mapping")
4. Mapping found → merge rule overrides AI category, boosts confidence

Flow for a user correction:
1. Upsert merchant_map row (tenant + normalized merchant)
2. Invalidate the tenant's cached entries, then cache the fresh row (write-through)

Failure policy:
- Lookup failures degrade: logged, treated as "no mapping", receipt keeps AI category
- Write failures propagate as MappingWriteError; cache is left untouched
- A saved correction whose returned row is invalid raises MalformedMappingError
  after the tenant's cached entries are dropped
"""
import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import structlog
from prometheus_client import Counter, Gauge
from sqlalchemy.ext.asyncio import AsyncSession

from packages.common.config import Settings, get_settings
from packages.common.errors import (
    MalformedMappingError,
    MappingStoreError,
    MappingWriteError,
)
from packages.common.merchant_map_cache import CacheStats, MerchantMapCache
from packages.common.merchant_map_repository import MerchantMapRepository
from packages.common.merchant_names import normalize_merchant_name
from packages.common.schemas.merchant_mapping import MerchantMapping
from packages.domain.merchant_map.merge import apply_mapping
from packages.domain.merchant_map.schemas import (
    CategoryCount,
    MappingStats,
    ReceiptCategorization,
)

logger = structlog.get_logger()

# Store failures that count as "no mapping" on the lookup path
STORE_FAILURES = (MappingStoreError, OSError, asyncio.TimeoutError)

RECENT_MAPPING_WINDOW = timedelta(days=30)
TOP_CATEGORY_LIMIT = 5

LOOKUPS = Counter(
    "merchant_map_lookups_total",
    "Merchant mapping lookups by outcome",
    ["outcome"],
)
CORRECTIONS = Counter(
    "merchant_map_corrections_total",
    "User category corrections saved",
)

CACHE_ENTRIES = Gauge(
    "merchant_map_cache_entries",
    "Entries currently held in the merchant map cache",
)
CACHE_HIT_RATE = Gauge(
    "merchant_map_cache_hit_rate_percent",
    "Merchant map cache hit rate since the last clear",
)
CACHE_MEMORY = Gauge(
    "merchant_map_cache_estimated_memory_bytes",
    "Rough merchant map cache footprint",
)


class MerchantMapService:
    """
    Cache-then-store lookups, write-through corrections and the merge rule.

    Owns its cache; whoever constructs the service controls the cache sweep
    via start()/stop().

    Usage:
        service = MerchantMapService(MerchantMapRepository(), MerchantMapCache())
        await service.start()
        receipt = await service.apply_learned_mapping(receipt, tenant_id="org_1", db=db)
        await service.stop()
    """

    def __init__(
        self,
        repository: Optional[MerchantMapRepository] = None,
        cache: Optional[MerchantMapCache] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.repository = repository or MerchantMapRepository()
        self.cache = cache or MerchantMapCache(
            max_size=self.settings.merchant_map_cache_max_size,
            ttl_seconds=self.settings.merchant_map_cache_ttl_minutes * 60,
            sweep_interval_seconds=self.settings.merchant_map_cache_sweep_minutes * 60,
        )

        # Scrapes read the most recently constructed service's cache
        CACHE_ENTRIES.set_function(lambda: len(self.cache))
        CACHE_HIT_RATE.set_function(lambda: self.cache.stats().hit_rate)
        CACHE_MEMORY.set_function(lambda: self.cache.stats().estimated_memory_bytes)

    async def start(self) -> None:
        await self.cache.start()

    async def stop(self) -> None:
        await self.cache.stop()

    async def lookup(
        self,
        tenant_id: str,
        merchant_name: str,
        db: AsyncSession,
    ) -> Optional[MerchantMapping]:
        """
        Look up the learned mapping for a merchant (cache first, then store).

        Args:
            tenant_id: Owning tenant
            merchant_name: Raw or normalized merchant name
            db: Database session (used only on cache miss)

        Returns:
            MerchantMapping, or None if no mapping exists or the store failed
        """
        normalized = normalize_merchant_name(merchant_name)
        if not normalized:
            return None

        cached = self.cache.get(tenant_id, normalized)
        if cached.found:
            LOOKUPS.labels(outcome=cached.status.value).inc()
            return cached.mapping

        generation = self.cache.generation(tenant_id)

        try:
            mapping = await self.repository.find(tenant_id, normalized, db)
        except STORE_FAILURES as e:
            # Not cached: the next receipt retries the store
            LOOKUPS.labels(outcome="error").inc()
            logger.warning("merchant_map_lookup_failed",
                          tenant_id=tenant_id,
                          merchant=normalized,
                          error=str(e))
            return None

        LOOKUPS.labels(outcome="miss").inc()
        # A correction saved while the query ran wins over this read
        stored = self.cache.set(tenant_id, normalized, mapping, generation=generation)

        logger.debug("merchant_map_lookup_stored",
                    tenant_id=tenant_id,
                    merchant=normalized,
                    found=mapping is not None,
                    cached=stored)

        return mapping

    async def apply_learned_mapping(
        self,
        receipt: ReceiptCategorization,
        tenant_id: str,
        db: AsyncSession,
    ) -> ReceiptCategorization:
        """
        Apply the tenant's learned mapping for the receipt's merchant, if any.

        Never raises: on any failure the original receipt is returned.
        """
        try:
            mapping = await self.lookup(tenant_id, receipt.merchant, db)
            result = apply_mapping(receipt, mapping)
        except Exception as e:
            logger.error("merchant_map_apply_failed",
                        tenant_id=tenant_id,
                        merchant=normalize_merchant_name(receipt.merchant),
                        error=str(e),
                        exc_info=True)
            return receipt

        if mapping is not None:
            logger.info("learned_mapping_applied",
                       tenant_id=tenant_id,
                       merchant=mapping.merchant_name,
                       ai_category=receipt.category,
                       category=result.category,
                       subcategory=result.subcategory,
                       confidence=result.confidence)

        return result

    async def update_mapping(
        self,
        tenant_id: str,
        merchant_name: str,
        category: str,
        subcategory: Optional[str],
        user_id: Optional[str],
        db: AsyncSession,
    ) -> MerchantMapping:
        """
        Save a user correction and cache it (write-through).

        Raises:
            ValueError: empty category or merchant name
            MappingWriteError: store write failed; cache not updated
            MalformedMappingError: row saved but the stored row is invalid;
                the tenant's cached entries are dropped
        """
        normalized = normalize_merchant_name(merchant_name)
        if not normalized:
            raise ValueError("Merchant name is required")
        if not category or not category.strip():
            raise ValueError("Category is required")

        try:
            mapping = await self.repository.upsert(
                tenant_id=tenant_id,
                merchant_name=normalized,
                category=category,
                subcategory=subcategory,
                user_id=user_id,
                db=db,
            )
        except MalformedMappingError as e:
            # Committed, so cached entries for the tenant may be stale
            self.cache.invalidate_tenant(tenant_id)
            logger.error("merchant_map_update_unreadable",
                        tenant_id=tenant_id,
                        merchant=normalized,
                        error=str(e))
            raise
        except STORE_FAILURES as e:
            logger.error("merchant_map_update_failed",
                        tenant_id=tenant_id,
                        merchant=normalized,
                        error=str(e))
            raise MappingWriteError(
                f"Failed to save merchant mapping: {e}",
                tenant_id=tenant_id,
                merchant_name=normalized,
            ) from e

        self.cache.invalidate_tenant(tenant_id)
        self.cache.set(tenant_id, normalized, mapping)
        CORRECTIONS.inc()

        logger.info("merchant_mapping_learned",
                   tenant_id=tenant_id,
                   merchant=normalized,
                   category=category,
                   subcategory=subcategory,
                   user_id=user_id)

        return mapping

    async def delete_mapping(
        self,
        tenant_id: str,
        merchant_name: str,
        db: AsyncSession,
    ) -> bool:
        """
        Delete a learned mapping and drop it from the cache.

        Returns:
            True if a mapping was deleted

        Raises:
            MappingWriteError: store delete failed; cache not updated
        """
        normalized = normalize_merchant_name(merchant_name)

        try:
            deleted = await self.repository.delete(tenant_id, normalized, db)
        except STORE_FAILURES as e:
            logger.error("merchant_map_delete_failed",
                        tenant_id=tenant_id,
                        merchant=normalized,
                        error=str(e))
            raise MappingWriteError(
                f"Failed to delete merchant mapping: {e}",
                tenant_id=tenant_id,
                merchant_name=normalized,
            ) from e

        self.cache.invalidate(tenant_id, normalized)
        return deleted

    async def list_mappings(self, tenant_id: str, db: AsyncSession) -> List[MerchantMapping]:
        """All of a tenant's mappings, most recently updated first"""
        return await self.repository.list_for_tenant(tenant_id, db)

    async def mapping_stats(self, tenant_id: str, db: AsyncSession) -> MappingStats:
        """
        Learned mapping statistics for a tenant.

        Returns:
            Total mappings, mappings updated in the last 30 days and the five
            most used categories
        """
        since = datetime.now(timezone.utc) - RECENT_MAPPING_WINDOW

        total = await self.repository.count_for_tenant(tenant_id, db)
        recent = await self.repository.count_updated_since(tenant_id, since, db)
        top = await self.repository.category_counts(tenant_id, db, limit=TOP_CATEGORY_LIMIT)

        return MappingStats(
            total_mappings=total,
            recent_mappings=recent,
            top_categories=[CategoryCount(**row) for row in top],
        )

    async def warm_cache(
        self,
        tenant_id: str,
        db: AsyncSession,
        limit: Optional[int] = None,
    ) -> int:
        """
        Preload a tenant's most recently updated mappings into the cache.

        Best effort: a store failure is logged and nothing is cached.

        Returns:
            Number of mappings cached
        """
        if limit is None:
            limit = self.settings.merchant_map_warm_limit

        generation = self.cache.generation(tenant_id)
        try:
            mappings = await self.repository.list_for_tenant(tenant_id, db, limit=limit)
        except STORE_FAILURES as e:
            logger.warning("merchant_map_warm_failed",
                          tenant_id=tenant_id,
                          error=str(e))
            return 0

        count = self.cache.warm(
            ((tenant_id, mapping.merchant_name, mapping) for mapping in mappings),
            generation=generation,
        )

        logger.info("merchant_map_cache_warmed",
                   tenant_id=tenant_id,
                   entries=count)

        return count

    def cache_stats(self) -> CacheStats:
        return self.cache.stats()

    def top_merchants(self, limit: int = 10) -> List[Dict[str, Any]]:
        """Most frequently hit cached merchants across tenants"""
        return self.cache.top_merchants(limit)

    def clear_cache(self) -> int:
        """
        Drop every cached entry and reset hit/miss counters.

        Returns:
            Number of entries dropped
        """
        removed = len(self.cache)
        self.cache.clear()
        logger.info("merchant_map_cache_cleared", removed=removed)
        return removed
