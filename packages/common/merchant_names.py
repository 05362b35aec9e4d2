"""
Merchant name normalization - canonical lookup keys for learned mappings

Collapses superficially different spellings of one merchant into a single key:
- "Starbucks Inc."         → "starbucks"
- "STARBUCKS CORPORATION"  → "starbucks"
- "starbucks corp"         → "starbucks"

Order matters: lowercase → trim → strip corporate-entity tokens →
collapse whitespace → trim.
"""
import re
from typing import Optional

# Corporate-entity tokens, matched as whole words with an optional trailing period
CORPORATE_SUFFIXES = ("inc", "llc", "ltd", "corp", "corporation", "company", "co")

_SUFFIX_RE = re.compile(
    r"\b(?:" + "|".join(CORPORATE_SUFFIXES) + r")\b\.?",
    re.IGNORECASE,
)
_WHITESPACE_RE = re.compile(r"\s+")


def normalize_merchant_name(merchant_name: Optional[str]) -> str:
    """
    Normalize a raw merchant string for consistent lookup and storage.

    Pure and total: never raises, None or empty input yields "".
    Idempotent: normalize(normalize(s)) == normalize(s).

    Args:
        merchant_name: Raw merchant name as extracted from the receipt

    Returns:
        Normalized merchant name
    """
    if not merchant_name:
        return ""

    normalized = merchant_name.lower().strip()
    normalized = _SUFFIX_RE.sub("", normalized)
    normalized = _WHITESPACE_RE.sub(" ", normalized)
    return normalized.strip()
