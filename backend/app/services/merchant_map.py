"""
Merchant map: learned merchant -> category associations per organization.

When a user corrects the category of a transaction, the correction is stored
against the normalized merchant name. Later receipts from the same merchant
in the same organization take the learned category, with a fixed confidence
bonus and an explanation that keeps the model's original reasoning.

Organizations never share mappings: every read and write goes through the
org-scoped store.
"""

import logging
import re
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from app.models.merchant_map import CategoryCount, MappingStats, MerchantMapping
from app.models.receipt import ReceiptData
from app.services.merchant_map_cache import MISS, MerchantMapCache
from app.services.store import DataStore

logger = logging.getLogger(__name__)

LEARNED_MAPPING_CONFIDENCE_BONUS = 15
MAX_CONFIDENCE = 100

RECENT_MAPPING_DAYS = 30
TOP_CATEGORY_COUNT = 5

_CORPORATE_SUFFIX = re.compile(
    r"\b(inc|llc|ltd|corp|corporation|company|co)\b\.?",
    re.IGNORECASE,
)


def normalize_merchant_name(name: str) -> str:
    """
    Canonical form used as the mapping key.

    Lowercase, corporate suffixes removed, whitespace collapsed. Applying it
    twice gives the same result as applying it once.
    """
    normalized = (name or "").lower().strip()
    normalized = _CORPORATE_SUFFIX.sub("", normalized)
    return re.sub(r"\s+", " ", normalized).strip()


def fuse_confidence(confidence: int) -> int:
    return min(confidence + LEARNED_MAPPING_CONFIDENCE_BONUS, MAX_CONFIDENCE)


def _format_category(category: str, subcategory: Optional[str]) -> str:
    return f"{category} > {subcategory}" if subcategory else category


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class MerchantMapService:

    def __init__(
        self,
        store: DataStore,
        cache: Optional[MerchantMapCache] = None,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.cache = cache if cache is not None else MerchantMapCache()
        self._now = now

    def lookup(self, merchant_name: str, org_id: str) -> Optional[MerchantMapping]:
        normalized = normalize_merchant_name(merchant_name)
        if not normalized:
            return None

        cached = self.cache.get(org_id, normalized)
        if cached is not MISS:
            return cached

        row = self.store.for_org(org_id).get_merchant_mapping(normalized)
        mapping = MerchantMapping(**row) if row else None
        self.cache.set(org_id, normalized, mapping)
        return mapping

    def update(
        self,
        merchant_name: str,
        category: str,
        subcategory: Optional[str],
        org_id: str,
        user_id: str,
    ) -> MerchantMapping:
        """
        Create or overwrite the mapping for (org_id, merchant).

        Repeated calls for the same merchant keep a single row; the latest
        call's category wins and updated_at moves forward every time.
        """
        normalized = normalize_merchant_name(merchant_name)
        if not normalized:
            raise ValueError("merchant_name is empty after normalization")

        scope = self.store.for_org(org_id)
        timestamp = self._now()

        existing = scope.get_merchant_mapping(normalized)
        if existing and existing.get("updated_at"):
            previous = _parse_timestamp(existing["updated_at"])
            if timestamp <= previous:
                timestamp = previous + timedelta(microseconds=1)

        row = {
            "merchant_name": normalized,
            "category": category,
            "subcategory": subcategory,
            "created_by": user_id,
            "updated_at": timestamp.isoformat(),
        }
        if not existing:
            row["created_at"] = timestamp.isoformat()

        mapping = MerchantMapping(**scope.upsert_merchant_mapping(row))
        self.cache.set(org_id, normalized, mapping)

        logger.info(
            f"Merchant mapping {'updated' if existing else 'created'} for org {org_id}: "
            f"{normalized!r} -> {_format_category(category, subcategory)}"
        )
        return mapping

    def apply_mapping(self, receipt: ReceiptData, org_id: str) -> ReceiptData:
        """
        Fuse a learned mapping into freshly extracted receipt data.

        Returns `receipt` itself when the merchant is empty or unmapped.
        """
        if not receipt.merchant or not receipt.merchant.strip():
            return receipt

        try:
            mapping = self.lookup(receipt.merchant, org_id)
        except Exception as e:
            logger.warning(f"Merchant mapping lookup failed for org {org_id}, keeping AI category: {e}")
            return receipt

        if mapping is None:
            return receipt

        segment = (
            "Applied learned categorization from previous user correction. "
            f"Original AI suggestion: {_format_category(receipt.category, receipt.subcategory)}. "
            f"User-corrected category: {_format_category(mapping.category, mapping.subcategory)}."
        )
        explanation = f"{receipt.explanation} {segment}" if receipt.explanation else segment

        return receipt.model_copy(update={
            "category": mapping.category,
            "subcategory": mapping.subcategory,
            "confidence": fuse_confidence(receipt.confidence),
            "explanation": explanation,
        })

    def list_mappings(self, org_id: str) -> list[MerchantMapping]:
        return [MerchantMapping(**row) for row in self.store.for_org(org_id).list_merchant_mappings()]

    def delete_mapping(self, merchant_name: str, org_id: str) -> bool:
        normalized = normalize_merchant_name(merchant_name)
        deleted = self.store.for_org(org_id).delete_merchant_mapping(normalized)
        self.cache.invalidate(org_id, normalized)
        return deleted

    def get_mapping_stats(self, org_id: str) -> MappingStats:
        mappings = self.list_mappings(org_id)
        cutoff = self._now() - timedelta(days=RECENT_MAPPING_DAYS)

        recent = sum(1 for m in mappings if _parse_timestamp(m.updated_at) >= cutoff)
        counts = Counter(m.category for m in mappings)

        return MappingStats(
            total_mappings=len(mappings),
            recent_mappings=recent,
            top_categories=[
                CategoryCount(category=category, count=count)
                for category, count in counts.most_common(TOP_CATEGORY_COUNT)
            ],
        )
