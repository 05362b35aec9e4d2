"""
Merchant Map Repository - Tenant-scoped persistence for learned mappings

Table: merchant_map (unique on org_id + merchant_name)

Every query filters on org_id; rows from other tenants are never read or
written. Merchant names passed here are already normalized.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

import structlog
from pydantic import ValidationError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from packages.common.errors import MalformedMappingError, MappingStoreError
from packages.common.schemas.merchant_mapping import MerchantMapping

logger = structlog.get_logger()

_COLUMNS = """
    id,
    org_id,
    merchant_name,
    category,
    subcategory,
    created_by,
    created_at,
    updated_at
"""


class MerchantMapRepository:
    """
    Repository for merchant_map table operations.

    Raises MappingStoreError for database failures and MalformedMappingError
    for rows that fail validation.
    """

    @staticmethod
    def _to_mapping(row: Any) -> MerchantMapping:
        data = dict(row._mapping)
        try:
            return MerchantMapping(
                id=data.get("id"),
                tenant_id=data.get("org_id"),
                merchant_name=data.get("merchant_name"),
                category=data.get("category"),
                subcategory=data.get("subcategory"),
                created_by=data.get("created_by"),
                created_at=data.get("created_at"),
                updated_at=data.get("updated_at"),
            )
        except ValidationError as e:
            raise MalformedMappingError(f"Malformed merchant_map row: {e}") from e

    async def find(
        self,
        tenant_id: str,
        merchant_name: str,
        db: AsyncSession,
    ) -> Optional[MerchantMapping]:
        """
        Look up the mapping for a tenant's merchant.

        Args:
            tenant_id: Owning tenant
            merchant_name: Normalized merchant name
            db: Database session

        Returns:
            MerchantMapping or None if no mapping exists
        """
        query = text(f"""
            SELECT {_COLUMNS}
            FROM merchant_map
            WHERE org_id = :org_id
              AND merchant_name = :merchant_name
        """)

        try:
            result = await db.execute(query, {"org_id": tenant_id, "merchant_name": merchant_name})
            row = result.fetchone()
        except SQLAlchemyError as e:
            raise MappingStoreError(f"merchant_map lookup failed: {e}") from e

        if row is None:
            return None
        return self._to_mapping(row)

    async def upsert(
        self,
        tenant_id: str,
        merchant_name: str,
        category: str,
        subcategory: Optional[str],
        user_id: Optional[str],
        db: AsyncSession,
    ) -> MerchantMapping:
        """
        Create or update a mapping; idempotent on (org_id, merchant_name).

        updated_at is refreshed on every call. On conflict created_at keeps its
        original value; created_by follows the latest correction.

        Returns:
            The stored mapping
        """
        now = datetime.now(timezone.utc)
        query = text(f"""
            INSERT INTO merchant_map (
                id,
                org_id,
                merchant_name,
                category,
                subcategory,
                created_by,
                created_at,
                updated_at
            ) VALUES (
                :id,
                :org_id,
                :merchant_name,
                :category,
                :subcategory,
                :created_by,
                :now,
                :now
            )
            ON CONFLICT (org_id, merchant_name) DO UPDATE SET
                category = EXCLUDED.category,
                subcategory = EXCLUDED.subcategory,
                created_by = EXCLUDED.created_by,
                updated_at = EXCLUDED.updated_at
            RETURNING {_COLUMNS}
        """)

        try:
            result = await db.execute(query, {
                "id": uuid4(),
                "org_id": tenant_id,
                "merchant_name": merchant_name,
                "category": category,
                "subcategory": subcategory,
                "created_by": user_id,
                "now": now,
            })
            row = result.fetchone()
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            raise MappingStoreError(f"merchant_map upsert failed: {e}") from e

        mapping = self._to_mapping(row)

        logger.info("merchant_mapping_upserted",
                   tenant_id=tenant_id,
                   merchant=merchant_name,
                   category=category,
                   subcategory=subcategory)

        return mapping

    async def delete(
        self,
        tenant_id: str,
        merchant_name: str,
        db: AsyncSession,
    ) -> bool:
        """
        Delete a tenant's mapping.

        Returns:
            True if a row was deleted
        """
        query = text("""
            DELETE FROM merchant_map
            WHERE org_id = :org_id
              AND merchant_name = :merchant_name
        """)

        try:
            result = await db.execute(query, {"org_id": tenant_id, "merchant_name": merchant_name})
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            raise MappingStoreError(f"merchant_map delete failed: {e}") from e

        deleted = result.rowcount > 0

        logger.info("merchant_mapping_deleted",
                   tenant_id=tenant_id,
                   merchant=merchant_name,
                   deleted=deleted)

        return deleted

    async def list_for_tenant(
        self,
        tenant_id: str,
        db: AsyncSession,
        limit: Optional[int] = None,
    ) -> List[MerchantMapping]:
        """
        Get a tenant's mappings, most recently updated first.

        Args:
            tenant_id: Owning tenant
            db: Database session
            limit: Maximum rows to return (None for all)
        """
        params: Dict[str, Any] = {"org_id": tenant_id}
        limit_sql = ""
        if limit is not None:
            limit_sql = "LIMIT :limit"
            params["limit"] = limit

        query = text(f"""
            SELECT {_COLUMNS}
            FROM merchant_map
            WHERE org_id = :org_id
            ORDER BY updated_at DESC
            {limit_sql}
        """)

        try:
            result = await db.execute(query, params)
            rows = result.fetchall()
        except SQLAlchemyError as e:
            raise MappingStoreError(f"merchant_map list failed: {e}") from e

        return [self._to_mapping(row) for row in rows]

    async def count_for_tenant(self, tenant_id: str, db: AsyncSession) -> int:
        """Total mappings for a tenant"""
        query = text("SELECT COUNT(*) FROM merchant_map WHERE org_id = :org_id")
        try:
            result = await db.execute(query, {"org_id": tenant_id})
        except SQLAlchemyError as e:
            raise MappingStoreError(f"merchant_map count failed: {e}") from e
        return result.scalar() or 0

    async def count_updated_since(
        self,
        tenant_id: str,
        since: datetime,
        db: AsyncSession,
    ) -> int:
        """Mappings for a tenant updated at or after `since`"""
        query = text("""
            SELECT COUNT(*)
            FROM merchant_map
            WHERE org_id = :org_id
              AND updated_at >= :since
        """)
        try:
            result = await db.execute(query, {"org_id": tenant_id, "since": since})
        except SQLAlchemyError as e:
            raise MappingStoreError(f"merchant_map count failed: {e}") from e
        return result.scalar() or 0

    async def category_counts(
        self,
        tenant_id: str,
        db: AsyncSession,
        limit: int = 5,
    ) -> List[Dict[str, Any]]:
        """
        Most used categories for a tenant.

        Returns:
            List of {"category": str, "count": int}, largest first
        """
        query = text("""
            SELECT category, COUNT(*) AS mapping_count
            FROM merchant_map
            WHERE org_id = :org_id
            GROUP BY category
            ORDER BY mapping_count DESC, category ASC
            LIMIT :limit
        """)
        try:
            result = await db.execute(query, {"org_id": tenant_id, "limit": limit})
            rows = result.fetchall()
        except SQLAlchemyError as e:
            raise MappingStoreError(f"merchant_map category counts failed: {e}") from e

        return [{"category": row.category, "count": row.mapping_count} for row in rows]
