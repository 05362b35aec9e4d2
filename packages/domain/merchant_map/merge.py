"""
Categorization merge rule - apply a learned mapping to an AI categorization

A learned mapping always wins over the AI: the user already corrected this
merchant once. Confidence is boosted by a fixed amount and the explanation
records both the AI's suggestion and the user's correction.

Example:
- AI: "Shopping > General Merchandise" @ 80
- Learned: "Shopping > Department Stores"
- Result: "Shopping > Department Stores" @ 95
"""
from typing import Optional

from packages.common.schemas.merchant_mapping import MerchantMapping
from packages.domain.merchant_map.schemas import ReceiptCategorization

# Tunable; chosen without data, revisit against real correction rates
LEARNED_MAPPING_CONFIDENCE_BOOST = 15
MAX_CONFIDENCE = 100


def _format_category(category: str, subcategory: Optional[str]) -> str:
    if subcategory:
        return f"{category} > {subcategory}"
    return category


def build_explanation(receipt: ReceiptCategorization, mapping: MerchantMapping) -> str:
    """Explanation for a receipt whose category came from a learned mapping."""
    explanation = (
        "Applied learned categorization from previous user correction. "
        f"Original AI suggestion: {_format_category(receipt.category, receipt.subcategory)}. "
        f"User-corrected category: {_format_category(mapping.category, mapping.subcategory)}."
    )
    if receipt.explanation:
        explanation += f" AI explanation: {receipt.explanation}"
    return explanation


def apply_mapping(
    receipt: ReceiptCategorization,
    mapping: Optional[MerchantMapping],
    boost: int = LEARNED_MAPPING_CONFIDENCE_BOOST,
) -> ReceiptCategorization:
    """
    Merge a learned mapping into an AI categorization.

    Args:
        receipt: AI-produced categorization
        mapping: Learned mapping for the receipt's merchant, or None
        boost: Confidence points added when a mapping applies

    Returns:
        The same receipt object when there is no mapping, otherwise a new
        receipt with the mapping's category/subcategory (subcategory may be
        None, replacing the AI's), boosted confidence capped at 100 and an
        explanation that references the AI's original suggestion
    """
    if mapping is None:
        return receipt

    return receipt.model_copy(update={
        "category": mapping.category,
        "subcategory": mapping.subcategory,
        "confidence": min(MAX_CONFIDENCE, receipt.confidence + boost),
        "explanation": build_explanation(receipt, mapping),
    })
