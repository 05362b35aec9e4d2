"""Shared fixtures: a controllable clock and an in-memory mapping store.

The service only talks to the store through MerchantMapRepository's async
methods, so tests swap in ``FakeMerchantMapRepository`` and pass ``db=None``.
"""

from __future__ import annotations

from collections import Counter
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

import pytest

from packages.common.config import Settings
from packages.common.errors import MappingStoreError
from packages.common.merchant_map_cache import MerchantMapCache
from packages.common.schemas.merchant_mapping import MerchantMapping
from packages.domain.merchant_map.merchant_map_service import MerchantMapService


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeMerchantMapRepository:
    """Dict-backed stand-in for the merchant_map table."""

    def __init__(self) -> None:
        self.rows: Dict[Tuple[str, str], MerchantMapping] = {}
        self.find_calls = 0
        self.upsert_calls = 0
        self.fail_reads = False
        self.fail_writes = False

    async def find(self, tenant_id: str, merchant_name: str, db: Any) -> Optional[MerchantMapping]:
        self.find_calls += 1
        if self.fail_reads:
            raise MappingStoreError("connection refused")
        return self.rows.get((tenant_id, merchant_name))

    async def upsert(
        self,
        tenant_id: str,
        merchant_name: str,
        category: str,
        subcategory: Optional[str],
        user_id: Optional[str],
        db: Any,
    ) -> MerchantMapping:
        self.upsert_calls += 1
        if self.fail_writes:
            raise MappingStoreError("connection refused")
        now = datetime.now(timezone.utc)
        existing = self.rows.get((tenant_id, merchant_name))
        mapping = MerchantMapping(
            id=existing.id if existing else uuid4(),
            tenant_id=tenant_id,
            merchant_name=merchant_name,
            category=category,
            subcategory=subcategory,
            created_by=user_id,
            created_at=existing.created_at if existing else now,
            updated_at=now,
        )
        self.rows[(tenant_id, merchant_name)] = mapping
        return mapping

    async def delete(self, tenant_id: str, merchant_name: str, db: Any) -> bool:
        if self.fail_writes:
            raise MappingStoreError("connection refused")
        return self.rows.pop((tenant_id, merchant_name), None) is not None

    async def list_for_tenant(self, tenant_id: str, db: Any, limit: Optional[int] = None) -> List[MerchantMapping]:
        if self.fail_reads:
            raise MappingStoreError("connection refused")
        rows = [m for (t, _), m in self.rows.items() if t == tenant_id]
        rows.sort(key=lambda m: m.updated_at, reverse=True)
        return rows if limit is None else rows[:limit]

    async def count_for_tenant(self, tenant_id: str, db: Any) -> int:
        return len(await self.list_for_tenant(tenant_id, db))

    async def count_updated_since(self, tenant_id: str, since: datetime, db: Any) -> int:
        rows = await self.list_for_tenant(tenant_id, db)
        return sum(1 for m in rows if m.updated_at >= since)

    async def category_counts(self, tenant_id: str, db: Any, limit: int = 5) -> List[Dict[str, Any]]:
        rows = await self.list_for_tenant(tenant_id, db)
        counts = Counter(m.category for m in rows)
        ordered = sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))
        return [{"category": c, "count": n} for c, n in ordered[:limit]]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(clock: FakeClock) -> MerchantMapCache:
    return MerchantMapCache(max_size=1000, ttl_seconds=30 * 60, clock=clock)


@pytest.fixture
def repository() -> FakeMerchantMapRepository:
    return FakeMerchantMapRepository()


@pytest.fixture
def settings() -> Settings:
    return Settings(ENVIRONMENT="test")


@pytest.fixture
def service(
    repository: FakeMerchantMapRepository,
    cache: MerchantMapCache,
    settings: Settings,
) -> MerchantMapService:
    return MerchantMapService(repository=repository, cache=cache, settings=settings)
