"""
Merchant Map Module - Learning categorizations from user corrections

When a user corrects a receipt's category, the correction is stored per
tenant under the normalized merchant name. Later receipts from the same
merchant pick it up and override the AI's suggestion.

Example flow:
- User corrects "Target Corp" → Shopping > Department Stores
- Stored as tenant T, merchant "target"
- New receipt "TARGET CORPORATION" (AI: Shopping > General @ 80)
  → normalized "target" → cache/store hit → Shopping > Department Stores @ 95
"""

from packages.domain.merchant_map.merge import (
    LEARNED_MAPPING_CONFIDENCE_BOOST,
    apply_mapping,
)
from packages.domain.merchant_map.merchant_map_service import MerchantMapService
from packages.domain.merchant_map.schemas import (
    MappingStats,
    ReceiptCategorization,
)

__all__ = [
    'LEARNED_MAPPING_CONFIDENCE_BOOST',
    'apply_mapping',
    'MerchantMapService',
    'MappingStats',
    'ReceiptCategorization',
]
