import asyncio
import random
import threading

import pytest

import packages.common.merchant_map_cache as merchant_map_cache
from packages.common.merchant_map_cache import LookupStatus, MerchantMapCache
from packages.common.schemas.merchant_mapping import MerchantMapping

TTL = 30 * 60


def make_mapping(tenant_id="org_1", merchant="starbucks", category="Food & Dining", subcategory="Coffee Shops"):
    return MerchantMapping(
        tenant_id=tenant_id,
        merchant_name=merchant,
        category=category,
        subcategory=subcategory,
    )


def test_get_on_empty_cache_is_miss(cache):
    result = cache.get("org_1", "starbucks")
    assert result.status == LookupStatus.MISS
    assert result.mapping is None
    assert not result.found


def test_set_then_get_returns_mapping(cache):
    mapping = make_mapping()
    cache.set("org_1", "starbucks", mapping)

    result = cache.get("org_1", "starbucks")
    assert result.status == LookupStatus.HIT
    assert result.mapping == mapping


def test_none_is_cached_as_negative_result(cache):
    cache.set("org_1", "unknown cafe", None)

    result = cache.get("org_1", "unknown cafe")
    assert result.status == LookupStatus.NEGATIVE
    assert result.mapping is None
    assert result.found


def test_keys_are_normalized(cache):
    mapping = make_mapping()
    cache.set("org_1", "Starbucks Inc.", mapping)

    assert cache.get("org_1", "STARBUCKS CORPORATION").mapping == mapping
    assert cache.get("org_1", "starbucks").mapping == mapping
    assert len(cache) == 1


def test_entry_expires_after_ttl(cache, clock):
    cache.set("org_1", "starbucks", make_mapping())
    clock.advance(TTL - 1)
    assert cache.get("org_1", "starbucks").status == LookupStatus.HIT

    clock.advance(2)
    assert cache.get("org_1", "starbucks").status == LookupStatus.MISS
    assert ("org_1", "starbucks") not in cache

    stats = cache.stats()
    assert stats.hits == 1
    assert stats.misses == 1


def test_set_resets_timestamp(cache, clock):
    cache.set("org_1", "starbucks", None)
    clock.advance(TTL - 10)
    cache.set("org_1", "starbucks", make_mapping())
    clock.advance(20)

    assert cache.get("org_1", "starbucks").status == LookupStatus.HIT


def test_purge_expired_removes_unread_entries(cache, clock):
    cache.set("org_1", "old", None)
    clock.advance(TTL / 2)
    cache.set("org_1", "new", None)
    clock.advance(TTL / 2 + 1)

    assert cache.purge_expired() == 1
    assert ("org_1", "old") not in cache
    assert ("org_1", "new") in cache
    # Sweeping does not count as requests
    assert cache.stats().total_requests == 0


def test_invalidate_removes_only_that_key(cache):
    cache.set("org_1", "starbucks", make_mapping())
    cache.set("org_1", "target", None)
    cache.set("org_2", "starbucks", make_mapping(tenant_id="org_2"))

    cache.invalidate("org_1", "Starbucks Inc.")

    assert ("org_1", "starbucks") not in cache
    assert ("org_1", "target") in cache
    assert ("org_2", "starbucks") in cache


def test_invalidate_missing_key_is_noop(cache):
    cache.invalidate("org_1", "nothing here")
    assert len(cache) == 0


def test_invalidate_tenant_leaves_other_tenants(cache):
    cache.set("org_1", "starbucks", make_mapping())
    cache.set("org_1", "target", None)
    cache.set("org_10", "starbucks", None)
    cache.set("org_2", "target", None)

    assert cache.invalidate_tenant("org_1") == 2

    assert ("org_1", "starbucks") not in cache
    assert ("org_1", "target") not in cache
    assert ("org_10", "starbucks") in cache
    assert ("org_2", "target") in cache


def test_clear_resets_entries_and_counters(cache):
    cache.set("org_1", "starbucks", None)
    cache.get("org_1", "starbucks")
    cache.get("org_1", "target")

    cache.clear()

    stats = cache.stats()
    assert stats.entry_count == 0
    assert stats.total_requests == 0
    assert stats.hits == 0
    assert stats.misses == 0
    assert stats.hit_rate == 0


def test_stats_with_no_requests(cache):
    stats = cache.stats()
    assert stats.total_requests == 0
    assert stats.hit_rate == 0


def test_stats_hit_rate(cache):
    cache.set("org_1", "starbucks", make_mapping())
    cache.set("org_1", "target", None)

    # 2 hits (one positive, one negative) and 1 miss
    cache.get("org_1", "starbucks")
    cache.get("org_1", "target")
    cache.get("org_1", "walmart")

    stats = cache.stats()
    assert stats.total_requests == 3
    assert stats.hits == 2
    assert stats.misses == 1
    assert stats.hit_rate == round(100 * 2 / 3, 2) == 66.67
    assert stats.entry_count == 2
    assert stats.estimated_memory_bytes == 2 * 250


def test_eviction_removes_lowest_hit_count(clock):
    cache = MerchantMapCache(max_size=3, ttl_seconds=TTL, clock=clock)
    for name in ("a", "b", "c"):
        cache.set("org_1", name, None)
        clock.advance(1)

    cache.get("org_1", "a")
    cache.get("org_1", "c")

    cache.set("org_1", "d", None)

    assert len(cache) == 3
    assert ("org_1", "b") not in cache
    for name in ("a", "c", "d"):
        assert ("org_1", name) in cache


def test_eviction_ties_break_on_oldest(clock):
    cache = MerchantMapCache(max_size=3, ttl_seconds=TTL, clock=clock)
    for name in ("a", "b", "c"):
        cache.set("org_1", name, None)
        clock.advance(1)

    cache.set("org_1", "d", None)

    assert len(cache) == 3
    assert ("org_1", "a") not in cache


def test_overwriting_existing_key_at_capacity_does_not_evict(clock):
    cache = MerchantMapCache(max_size=2, ttl_seconds=TTL, clock=clock)
    cache.set("org_1", "a", None)
    cache.set("org_1", "b", None)

    cache.set("org_1", "a", make_mapping(merchant="a"))

    assert len(cache) == 2
    assert cache.get("org_1", "a").status == LookupStatus.HIT
    assert ("org_1", "b") in cache


def test_set_resets_hit_count(clock):
    cache = MerchantMapCache(max_size=2, ttl_seconds=TTL, clock=clock)
    cache.set("org_1", "a", None)
    clock.advance(1)
    cache.set("org_1", "b", None)
    for _ in range(3):
        cache.get("org_1", "a")
    clock.advance(1)

    # Re-setting "a" resets its hit count and timestamp, so "b" (older) goes
    cache.set("org_1", "a", None)
    clock.advance(1)
    cache.set("org_1", "c", None)

    assert ("org_1", "a") in cache
    assert ("org_1", "b") not in cache


def test_eviction_policy_can_be_overridden(clock):
    class NewestFirstCache(MerchantMapCache):
        def _eviction_key(self, entry):
            return -entry.inserted_at

    cache = NewestFirstCache(max_size=2, ttl_seconds=TTL, clock=clock)
    cache.set("org_1", "a", None)
    clock.advance(1)
    cache.set("org_1", "b", None)
    clock.advance(1)
    cache.set("org_1", "c", None)

    assert ("org_1", "a") in cache
    assert ("org_1", "b") not in cache


def test_top_merchants_sorted_by_hits(cache):
    cache.set("org_1", "a", None)
    cache.set("org_1", "b", None)
    cache.get("org_1", "b")
    cache.get("org_1", "b")
    cache.get("org_1", "a")

    top = cache.top_merchants(limit=1)
    assert len(top) == 1
    assert top[0]["merchant_name"] == "b"
    assert top[0]["hit_count"] == 2


def test_warm_loads_entries(cache):
    count = cache.warm([
        ("org_1", "starbucks", make_mapping()),
        ("org_1", "target", None),
    ])

    assert count == 2
    assert cache.get("org_1", "starbucks").status == LookupStatus.HIT
    assert cache.get("org_1", "target").status == LookupStatus.NEGATIVE


@pytest.mark.parametrize("kwargs", [{"max_size": 0}, {"ttl_seconds": 0}, {"sweep_interval_seconds": -1}])
def test_invalid_configuration_rejected(kwargs):
    with pytest.raises(ValueError):
        MerchantMapCache(**kwargs)


@pytest.mark.asyncio
async def test_sweep_task_purges_and_stops(clock):
    cache = MerchantMapCache(ttl_seconds=10, sweep_interval_seconds=0.01, clock=clock)
    cache.set("org_1", "starbucks", None)
    clock.advance(11)

    await cache.start()
    assert cache.running
    for _ in range(100):
        if len(cache) == 0:
            break
        await asyncio.sleep(0.01)

    assert len(cache) == 0

    await cache.stop()
    assert not cache.running


@pytest.mark.asyncio
async def test_start_and_stop_are_idempotent(cache):
    await cache.stop()
    await cache.start()
    task = cache._sweep_task
    await cache.start()
    assert cache._sweep_task is task

    await cache.stop()
    await cache.stop()
    assert task.cancelled()


def test_set_with_current_generation_is_written(cache):
    generation = cache.generation("org_1")

    assert cache.set("org_1", "target", None, generation=generation) is True
    assert cache.get("org_1", "target").status == LookupStatus.NEGATIVE


def test_set_after_tenant_invalidation_is_dropped(cache):
    generation = cache.generation("org_1")
    cache.invalidate_tenant("org_1")
    cache.set("org_1", "target", make_mapping(merchant="target", category="Shopping"))

    assert cache.set("org_1", "target", None, generation=generation) is False
    assert cache.get("org_1", "target").mapping.category == "Shopping"


def test_generation_is_per_tenant(cache):
    generation = cache.generation("org_2")
    cache.invalidate("org_1", "target")
    cache.invalidate_tenant("org_1")

    assert cache.generation("org_2") == generation
    assert cache.set("org_2", "target", None, generation=generation) is True


def test_clear_advances_known_generations(cache):
    cache.invalidate_tenant("org_1")
    generation = cache.generation("org_1")
    cache.clear()

    assert cache.set("org_1", "target", None, generation=generation) is False
    assert len(cache) == 0


def test_warm_skips_entries_after_invalidation(cache):
    generation = cache.generation("org_1")
    cache.invalidate_tenant("org_1")

    assert cache.warm([("org_1", "starbucks", make_mapping())], generation=generation) == 0
    assert ("org_1", "starbucks") not in cache


class LockCheckingLogger:
    """Records debug events and whether the cache lock was held at the time."""

    def __init__(self, cache):
        self.cache = cache
        self.events = []

    def debug(self, event, **kwargs):
        self.events.append((event, self.cache._lock.locked()))

    info = warning = error = debug


def test_expiry_and_eviction_log_outside_the_lock(clock, monkeypatch):
    cache = MerchantMapCache(max_size=1, ttl_seconds=TTL, clock=clock)
    log = LockCheckingLogger(cache)
    monkeypatch.setattr(merchant_map_cache, "logger", log)

    cache.set("org_1", "a", None)
    cache.set("org_1", "b", None)
    clock.advance(TTL + 1)
    cache.get("org_1", "b")

    assert [event for event, _ in log.events] == [
        "merchant_map_cache_evicted",
        "merchant_map_cache_expired",
    ]
    assert not any(locked for _, locked in log.events)


def test_concurrent_access_keeps_counters_and_size_consistent():
    cache = MerchantMapCache(max_size=50, ttl_seconds=0.005)
    tenants = ["org_1", "org_2", "org_3"]
    merchants = [f"merchant {i}" for i in range(200)]
    errors = []

    def worker(seed):
        rng = random.Random(seed)
        try:
            for _ in range(5000):
                tenant = rng.choice(tenants)
                merchant = rng.choice(merchants)
                op = rng.random()
                if op < 0.5:
                    cache.get(tenant, merchant)
                elif op < 0.8:
                    mapping = make_mapping(tenant_id=tenant) if rng.random() < 0.5 else None
                    cache.set(tenant, merchant, mapping, generation=cache.generation(tenant))
                elif op < 0.9:
                    cache.invalidate(tenant, merchant)
                elif op < 0.97:
                    cache.purge_expired()
                else:
                    cache.invalidate_tenant(tenant)
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(seed,)) for seed in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    stats = cache.stats()
    assert stats.total_requests == stats.hits + stats.misses
    assert stats.total_requests > 0
    assert stats.entry_count <= cache.max_size
