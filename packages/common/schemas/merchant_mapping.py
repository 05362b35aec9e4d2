"""
Merchant mapping schema (Pydantic models)

A merchant mapping is a learned "merchant → category/subcategory" correction,
scoped to one tenant (organization). Unique per (tenant_id, merchant_name).
"""
from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class MerchantMapping(BaseModel):
    """Durable merchant → category mapping learned from a user correction"""

    model_config = ConfigDict(
        frozen=True,
        json_schema_extra={
            "example": {
                "id": "2b1f4c9e-7a53-4d0e-9d7e-3f0c2f8c1a11",
                "tenant_id": "org_123",
                "merchant_name": "target",
                "category": "Shopping",
                "subcategory": "Department Stores",
                "created_by": "user_456",
                "created_at": "2025-01-15T14:00:00Z",
                "updated_at": "2025-01-15T14:00:00Z",
            }
        },
    )

    id: Optional[UUID] = Field(None, description="Store-assigned row id")
    tenant_id: str = Field(..., min_length=1, description="Owning tenant (organization)")
    merchant_name: str = Field(..., description="Normalized merchant name")
    category: str = Field(..., min_length=1, description="User-corrected category")
    subcategory: Optional[str] = Field(None, description="User-corrected subcategory (None means no subcategory)")
    created_by: Optional[str] = Field(None, description="User whose correction produced this mapping")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
