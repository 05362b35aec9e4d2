"""
Merchant map API - learned merchant → category corrections

Used by the "edit category" correction flow (write) and the receipt
processing pipeline (lookup/apply). Tenant scoping comes from tenant_id on
every request; authentication sits in front of this router.
"""
from datetime import datetime
from typing import List, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from packages.common.database import get_db_session
from packages.common.errors import MalformedMappingError, MappingStoreError, MappingWriteError
from packages.common.merchant_map_cache import CacheStats
from packages.common.schemas.merchant_mapping import MerchantMapping
from packages.domain.merchant_map.merchant_map_service import MerchantMapService
from packages.domain.merchant_map.schemas import (
    ApplyMappingRequest,
    MappingStats,
    ReceiptCategorization,
    UpdateMappingRequest,
)

logger = structlog.get_logger()
router = APIRouter()


class MappingListResponse(BaseModel):
    mappings: List[MerchantMapping]
    stats: MappingStats


class LookupResponse(BaseModel):
    merchant_name: str
    mapping: Optional[MerchantMapping] = None


class DeleteResponse(BaseModel):
    deleted: bool


class WarmResponse(BaseModel):
    warmed: int


class TopMerchant(BaseModel):
    tenant_id: str
    merchant_name: str
    hit_count: int
    cached_at: datetime


class ClearResponse(BaseModel):
    cleared: int


def get_merchant_map_service(request: Request) -> MerchantMapService:
    """Service instance created by the application lifespan"""
    return request.app.state.merchant_map_service


@router.get("", response_model=MappingListResponse)
async def list_mappings(
    tenant_id: str = Query(..., min_length=1, description="Tenant (organization) id"),
    service: MerchantMapService = Depends(get_merchant_map_service),
    db: AsyncSession = Depends(get_db_session),
) -> MappingListResponse:
    """Get all learned mappings for a tenant, with statistics"""
    try:
        mappings = await service.list_mappings(tenant_id, db)
        stats = await service.mapping_stats(tenant_id, db)
    except MappingStoreError as e:
        logger.error("merchant_map_list_failed", tenant_id=tenant_id, error=str(e))
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                            detail="Merchant mappings are temporarily unavailable")

    return MappingListResponse(mappings=mappings, stats=stats)


@router.get("/lookup", response_model=LookupResponse)
async def lookup_mapping(
    tenant_id: str = Query(..., min_length=1),
    merchant_name: str = Query(..., min_length=1),
    service: MerchantMapService = Depends(get_merchant_map_service),
    db: AsyncSession = Depends(get_db_session),
) -> LookupResponse:
    """Look up the learned mapping for one merchant"""
    mapping = await service.lookup(tenant_id, merchant_name, db)
    return LookupResponse(merchant_name=merchant_name, mapping=mapping)


@router.post("", response_model=MerchantMapping)
async def update_mapping(
    body: UpdateMappingRequest,
    service: MerchantMapService = Depends(get_merchant_map_service),
    db: AsyncSession = Depends(get_db_session),
) -> MerchantMapping:
    """Create or update a mapping from a user correction"""
    try:
        return await service.update_mapping(
            tenant_id=body.tenant_id,
            merchant_name=body.merchant_name,
            category=body.category,
            subcategory=body.subcategory or None,
            user_id=body.user_id,
            db=db,
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except MalformedMappingError:
        # Row was committed
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Correction was saved but the stored mapping could not be read back",
        )
    except MappingWriteError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Correction was not saved, please retry",
        )


@router.delete("", response_model=DeleteResponse)
async def delete_mapping(
    tenant_id: str = Query(..., min_length=1),
    merchant_name: str = Query(..., min_length=1),
    service: MerchantMapService = Depends(get_merchant_map_service),
    db: AsyncSession = Depends(get_db_session),
) -> DeleteResponse:
    """Delete a learned mapping"""
    try:
        deleted = await service.delete_mapping(tenant_id, merchant_name, db)
    except MappingWriteError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Mapping was not deleted, please retry",
        )

    if not deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Mapping not found")
    return DeleteResponse(deleted=True)


@router.post("/apply", response_model=ReceiptCategorization)
async def apply_learned_mapping(
    body: ApplyMappingRequest,
    service: MerchantMapService = Depends(get_merchant_map_service),
    db: AsyncSession = Depends(get_db_session),
) -> ReceiptCategorization:
    """Run an AI categorization through the tenant's learned mappings"""
    return await service.apply_learned_mapping(body.receipt, body.tenant_id, db)


@router.get("/cache/stats", response_model=CacheStats)
async def cache_stats(
    service: MerchantMapService = Depends(get_merchant_map_service),
) -> CacheStats:
    """In-process cache statistics"""
    return service.cache_stats()


@router.post("/cache/warm", response_model=WarmResponse)
async def warm_cache(
    tenant_id: str = Query(..., min_length=1),
    limit: Optional[int] = Query(None, ge=1, le=5000),
    service: MerchantMapService = Depends(get_merchant_map_service),
    db: AsyncSession = Depends(get_db_session),
) -> WarmResponse:
    """Preload a tenant's recent mappings into the cache"""
    warmed = await service.warm_cache(tenant_id, db, limit=limit)
    return WarmResponse(warmed=warmed)


@router.get("/cache/top", response_model=List[TopMerchant])
async def top_cached_merchants(
    limit: int = Query(10, ge=1, le=100),
    service: MerchantMapService = Depends(get_merchant_map_service),
) -> List[TopMerchant]:
    """Most frequently hit merchants in the cache"""
    return [TopMerchant(**row) for row in service.top_merchants(limit)]


@router.post("/cache/clear", response_model=ClearResponse)
async def clear_cache(
    service: MerchantMapService = Depends(get_merchant_map_service),
) -> ClearResponse:
    """Drop all cached entries; the next lookups go to the database"""
    return ClearResponse(cleared=service.clear_cache())
