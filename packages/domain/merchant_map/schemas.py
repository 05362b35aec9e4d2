"""
Data schemas for merchant map learning
"""
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ReceiptCategorization(BaseModel):
    """
    Categorization of one receipt, produced by the AI extraction step.

    The learned-mapping merge rule may replace it once with an adjusted copy
    before it is persisted.
    """
    model_config = ConfigDict(
        frozen=True,
        json_schema_extra={
            "example": {
                "merchant": "TARGET CORPORATION",
                "category": "Shopping",
                "subcategory": "General Merchandise",
                "confidence": 80,
                "explanation": "Merchant name suggests a retail store",
            }
        },
    )

    merchant: str = Field(..., description="Raw merchant string from receipt text")
    category: str = Field(..., description="Current best category")
    subcategory: Optional[str] = Field(None, description="Current best subcategory")
    confidence: int = Field(..., ge=0, le=100, description="Confidence score 0-100")
    explanation: str = Field("", description="How the categorization was derived")


class CategoryCount(BaseModel):
    category: str
    count: int


class MappingStats(BaseModel):
    """Learned mapping statistics for a tenant"""
    total_mappings: int = 0
    recent_mappings: int = Field(0, description="Mappings updated in the last 30 days")
    top_categories: List[CategoryCount] = Field(default_factory=list)


class UpdateMappingRequest(BaseModel):
    """User correction: remember this merchant's category for the tenant"""
    tenant_id: str = Field(..., min_length=1)
    merchant_name: str = Field(..., min_length=1, description="Merchant name (raw or normalized)")
    category: str = Field(..., min_length=1)
    subcategory: Optional[str] = None
    user_id: Optional[str] = Field(None, description="User making the correction")


class ApplyMappingRequest(BaseModel):
    """Receipt categorization to run through learned mappings"""
    tenant_id: str = Field(..., min_length=1)
    receipt: ReceiptCategorization
