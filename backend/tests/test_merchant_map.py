"""
Merchant map service tests.

Covers merchant-name normalization, lookup caching, upsert semantics,
confidence fusion, statistics and per-organization isolation.
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from app.services.merchant_map import (
    LEARNED_MAPPING_CONFIDENCE_BONUS,
    MAX_CONFIDENCE,
    MerchantMapService,
    fuse_confidence,
    normalize_merchant_name,
)
from app.services.merchant_map_cache import MISS, MerchantMapCache

from conftest import ORG_A, ORG_B, make_receipt


class FrozenClock:
    """Clock that only moves when told to (or never, to test tie-breaking)."""

    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

class TestNormalizeMerchantName:

    @pytest.mark.parametrize("raw", ["STARBUCKS CORP.", "starbucks corp", "  Starbucks Company  "])
    def test_corporate_variants_converge(self, raw):
        assert normalize_merchant_name(raw) == "starbucks"

    @pytest.mark.parametrize("raw", [
        "Acme Inc.",
        "ACME   LLC",
        "Blue Bottle Coffee Co.",
        "Target Corporation",
        "  whole   foods  market ",
        "",
    ])
    def test_idempotent(self, raw):
        once = normalize_merchant_name(raw)
        assert normalize_merchant_name(once) == once

    def test_suffix_only_removed_as_whole_word(self):
        assert normalize_merchant_name("Costco Wholesale") == "costco wholesale"
        assert normalize_merchant_name("Incline Bakery") == "incline bakery"

    def test_collapses_whitespace(self):
        assert normalize_merchant_name("Whole   Foods\tMarket") == "whole foods market"


# ---------------------------------------------------------------------------
# Confidence fusion
# ---------------------------------------------------------------------------

class TestApplyMapping:

    def test_constants(self):
        assert LEARNED_MAPPING_CONFIDENCE_BONUS == 15
        assert MAX_CONFIDENCE == 100

    @pytest.mark.parametrize("confidence", range(0, 101))
    def test_fused_confidence_is_capped(self, merchant_map, confidence):
        merchant_map.update("Starbucks", "Business", "Client meals", ORG_A, "user-1")
        result = merchant_map.apply_mapping(make_receipt(confidence=confidence), ORG_A)
        assert result.confidence == min(confidence + 15, 100)
        assert result.confidence >= confidence

    def test_high_confidence_hits_ceiling(self, merchant_map):
        merchant_map.update("Starbucks", "Business", None, ORG_A, "user-1")
        assert merchant_map.apply_mapping(make_receipt(confidence=92), ORG_A).confidence == 100
        assert fuse_confidence(92) == 100

    def test_overrides_category_and_keeps_other_fields(self, merchant_map):
        merchant_map.update("Starbucks", "Business", "Client meals", ORG_A, "user-1")
        receipt = make_receipt(notes="latte")
        result = merchant_map.apply_mapping(receipt, ORG_A)

        assert result.category == "Business"
        assert result.subcategory == "Client meals"
        for field in ("date", "amount", "currency", "merchant", "last4", "notes"):
            assert getattr(result, field) == getattr(receipt, field)

    def test_explanation_is_appended(self, merchant_map):
        merchant_map.update("Starbucks", "Business", "Client meals", ORG_A, "user-1")
        result = merchant_map.apply_mapping(make_receipt(explanation="Coffee shop receipt."), ORG_A)

        assert result.explanation.startswith("Coffee shop receipt. ")
        assert "Applied learned categorization from previous user correction" in result.explanation
        assert "Original AI suggestion: Food & Dining > Coffee" in result.explanation
        assert "User-corrected category: Business > Client meals" in result.explanation

    def test_explanation_without_prior_text(self, merchant_map):
        merchant_map.update("Starbucks", "Business", None, ORG_A, "user-1")
        result = merchant_map.apply_mapping(make_receipt(explanation=""), ORG_A)
        assert result.explanation.startswith("Applied learned categorization")
        assert result.explanation.endswith("User-corrected category: Business.")

    def test_no_mapping_is_identity(self, merchant_map):
        receipt = make_receipt(explanation="Original reasoning, verbatim.")
        result = merchant_map.apply_mapping(receipt, ORG_A)
        assert result == receipt
        assert result.explanation == "Original reasoning, verbatim."

    @pytest.mark.parametrize("merchant", ["", "   "])
    def test_empty_merchant_is_identity(self, merchant_map, store, merchant):
        merchant_map.update("Starbucks", "Business", None, ORG_A, "user-1")
        receipt = make_receipt(merchant=merchant)
        reads_before = store.mapping_reads
        assert merchant_map.apply_mapping(receipt, ORG_A) == receipt
        assert store.mapping_reads == reads_before

    def test_mapping_matches_any_spelling(self, merchant_map):
        merchant_map.update("STARBUCKS CORP.", "Business", None, ORG_A, "user-1")
        result = merchant_map.apply_mapping(make_receipt(merchant="  Starbucks Company  "), ORG_A)
        assert result.category == "Business"

    def test_lookup_failure_keeps_ai_category(self):
        class BrokenStore:
            def for_org(self, org_id):
                raise RuntimeError("database unavailable")

        service = MerchantMapService(BrokenStore(), cache=MerchantMapCache())
        receipt = make_receipt()
        assert service.apply_mapping(receipt, ORG_A) == receipt


# ---------------------------------------------------------------------------
# Update / lookup
# ---------------------------------------------------------------------------

class TestUpdate:

    def test_upsert_keeps_single_row(self, store):
        clock = FrozenClock(datetime(2025, 3, 1, tzinfo=timezone.utc))
        service = MerchantMapService(store, cache=MerchantMapCache(), now=clock)

        first = service.update("Starbucks", "Food & Dining", "Coffee", ORG_A, "user-1")
        clock.advance(minutes=5)
        second = service.update("starbucks corp", "Business", None, ORG_A, "user-2")

        rows = store.rows("merchant_map", ORG_A)
        assert len(rows) == 1
        assert rows[0]["category"] == "Business"
        assert rows[0]["subcategory"] is None
        assert second.id == first.id
        assert second.updated_at > first.updated_at
        assert second.created_at == first.created_at

    def test_updated_at_strictly_increases_even_without_clock_movement(self, store):
        clock = FrozenClock(datetime(2025, 3, 1, tzinfo=timezone.utc))
        service = MerchantMapService(store, cache=MerchantMapCache(), now=clock)

        first = service.update("Starbucks", "Food & Dining", None, ORG_A, "user-1")
        second = service.update("Starbucks", "Business", None, ORG_A, "user-1")

        assert datetime.fromisoformat(second.updated_at) > datetime.fromisoformat(first.updated_at)

    def test_stores_normalized_name(self, merchant_map, store):
        merchant_map.update("Blue Bottle Coffee Co.", "Food & Dining", None, ORG_A, "user-1")
        assert store.rows("merchant_map", ORG_A)[0]["merchant_name"] == "blue bottle coffee"

    def test_rejects_name_that_normalizes_to_nothing(self, merchant_map):
        with pytest.raises(ValueError):
            merchant_map.update("Inc.", "Business", None, ORG_A, "user-1")

    def test_lookup_uses_cache(self, merchant_map, store):
        merchant_map.update("Starbucks", "Business", None, ORG_A, "user-1")
        reads_before = store.mapping_reads
        merchant_map.lookup("Starbucks", ORG_A)
        merchant_map.lookup("STARBUCKS CORP", ORG_A)
        # update() populated the cache, so neither lookup hit the store
        assert store.mapping_reads == reads_before

    def test_lookup_caches_misses(self, merchant_map, store):
        assert merchant_map.lookup("Unknown Merchant", ORG_A) is None
        reads_before = store.mapping_reads
        assert merchant_map.lookup("Unknown Merchant", ORG_A) is None
        assert store.mapping_reads == reads_before

    def test_update_replaces_cached_miss(self, merchant_map):
        assert merchant_map.lookup("Starbucks", ORG_A) is None
        merchant_map.update("Starbucks", "Business", None, ORG_A, "user-1")
        assert merchant_map.lookup("Starbucks", ORG_A).category == "Business"

    def test_delete(self, merchant_map, store):
        merchant_map.update("Starbucks", "Business", None, ORG_A, "user-1")
        assert merchant_map.delete_mapping("STARBUCKS CORP.", ORG_A) is True
        assert merchant_map.lookup("Starbucks", ORG_A) is None
        assert store.rows("merchant_map") == []
        assert merchant_map.delete_mapping("Starbucks", ORG_A) is False

    def test_concurrent_updates_converge_to_one_row(self, merchant_map, store):
        categories = [f"Category {i}" for i in range(16)]
        spellings = ["Starbucks Corp.", "STARBUCKS", "starbucks inc", "Starbucks"]

        def correct(i):
            return merchant_map.update(spellings[i % len(spellings)], categories[i], None, ORG_A, f"user-{i}")

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(correct, range(len(categories))))

        rows = store.rows("merchant_map", ORG_A)
        assert len(rows) == 1
        assert rows[0]["merchant_name"] == "starbucks"
        assert rows[0]["category"] in categories
        assert {r.id for r in results} == {rows[0]["id"]}
        assert store.rows("merchant_map", ORG_B) == []


# ---------------------------------------------------------------------------
# Isolation and stats
# ---------------------------------------------------------------------------

class TestIsolation:

    def test_mapping_is_invisible_to_other_org(self, merchant_map):
        merchant_map.update("Starbucks", "Business", None, ORG_A, "user-1")

        receipt = make_receipt()
        assert merchant_map.lookup("Starbucks", ORG_B) is None
        assert merchant_map.apply_mapping(receipt, ORG_B) == receipt
        assert merchant_map.list_mappings(ORG_B) == []

    def test_same_merchant_maps_independently_per_org(self, merchant_map, store):
        merchant_map.update("Starbucks", "Business", None, ORG_A, "user-1")
        merchant_map.update("Starbucks", "Personal", None, ORG_B, "user-2")

        assert merchant_map.lookup("Starbucks", ORG_A).category == "Business"
        assert merchant_map.lookup("Starbucks", ORG_B).category == "Personal"
        assert len(store.rows("merchant_map")) == 2

    def test_delete_does_not_touch_other_org(self, merchant_map):
        merchant_map.update("Starbucks", "Business", None, ORG_A, "user-1")
        merchant_map.update("Starbucks", "Personal", None, ORG_B, "user-2")
        merchant_map.delete_mapping("Starbucks", ORG_A)
        assert merchant_map.lookup("Starbucks", ORG_B).category == "Personal"


def test_mapping_stats(store):
    now = datetime(2025, 6, 1, tzinfo=timezone.utc)
    clock = FrozenClock(now - timedelta(days=60))
    service = MerchantMapService(store, cache=MerchantMapCache(), now=clock)

    service.update("Old Diner", "Food & Dining", None, ORG_A, "u")
    clock.current = now - timedelta(days=2)
    service.update("Starbucks", "Food & Dining", None, ORG_A, "u")
    service.update("Uber", "Transportation", None, ORG_A, "u")
    service.update("Lyft", "Transportation", None, ORG_A, "u")
    service.update("Chevron", "Transportation", None, ORG_A, "u")
    service.update("Other org merchant", "Travel", None, ORG_B, "u")
    clock.current = now

    stats = service.get_mapping_stats(ORG_A)

    assert stats.total_mappings == 5
    assert stats.recent_mappings == 4
    assert [(c.category, c.count) for c in stats.top_categories] == [
        ("Transportation", 3),
        ("Food & Dining", 2),
    ]


def test_stats_top_categories_limited_to_five(merchant_map):
    for i, category in enumerate(["A", "B", "C", "D", "E", "F", "G"]):
        merchant_map.update(f"merchant {i}", category, None, ORG_A, "u")
    assert len(merchant_map.get_mapping_stats(ORG_A).top_categories) == 5


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------

class TestMerchantMapCache:

    def test_expires_after_ttl(self):
        now = [0.0]
        cache = MerchantMapCache(ttl_seconds=60, clock=lambda: now[0])
        cache.set(ORG_A, "starbucks", None)
        assert cache.get(ORG_A, "starbucks") is None
        now[0] = 61
        assert cache.get(ORG_A, "starbucks") is MISS

    def test_evicts_least_recently_used(self):
        cache = MerchantMapCache(max_size=2)
        cache.set(ORG_A, "a", None)
        cache.set(ORG_A, "b", None)
        cache.get(ORG_A, "a")
        cache.set(ORG_A, "c", None)
        assert cache.get(ORG_A, "b") is MISS
        assert cache.get(ORG_A, "a") is None

    def test_keys_are_per_org(self):
        cache = MerchantMapCache()
        cache.set(ORG_A, "starbucks", None)
        assert cache.get(ORG_B, "starbucks") is MISS

    def test_invalidate_org(self):
        cache = MerchantMapCache()
        cache.set(ORG_A, "a", None)
        cache.set(ORG_B, "a", None)
        cache.invalidate_org(ORG_A)
        assert cache.get(ORG_A, "a") is MISS
        assert cache.get(ORG_B, "a") is None

    def test_stats(self):
        cache = MerchantMapCache()
        cache.get(ORG_A, "x")
        cache.set(ORG_A, "x", None)
        cache.get(ORG_A, "x")
        assert cache.stats() == {"entries": 1, "hits": 1, "misses": 1, "hit_rate": 0.5}
