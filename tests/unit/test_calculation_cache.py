"""
Calculation Cache Tests.

Tests for:
- Read-through behaviour and call counts
- Tag invalidation (tariff, plan, service, factors, patient, statistics)
- Generation checks against invalidations overlapping a computation
- Subscriptions, LRU eviction, TTL and statistics
"""

import asyncio

import pytest

from tariff_engine.core.enums import CacheBucket, InvalidationType
from tariff_engine.schemas.calculation import CacheKey
from tariff_engine.services.calculation_cache import (
    CalculationCache,
    factors_tag,
    patient_tag,
    plan_tag,
    service_tag,
    tariff_tag,
)


class CountingCompute:
    """Compute function that counts calls."""

    def __init__(self, value="value"):
        self.calls = 0
        self.value = value

    def __call__(self):
        self.calls += 1
        return f"{self.value}-{self.calls}"


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def key(*parts) -> CacheKey:
    return CacheKey.build(CacheBucket.TARIFF, *parts)


@pytest.mark.unit
class TestReadThrough:
    """Test get_or_compute read-through"""

    @pytest.mark.asyncio
    async def test_second_call_is_served_from_cache(self, cache):
        compute = CountingCompute()

        first = await cache.get_or_compute(key(1), compute)
        second = await cache.get_or_compute(key(1), compute)

        assert first == second == "value-1"
        assert compute.calls == 1

    @pytest.mark.asyncio
    async def test_async_compute_function(self, cache):
        calls = []

        async def compute():
            calls.append(1)
            return 42

        assert await cache.get_or_compute(key("a"), compute) == 42
        assert await cache.get_or_compute(key("a"), compute) == 42
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_none_values_are_cached(self, cache):
        calls = []

        def compute():
            calls.append(1)
            return None

        await cache.get_or_compute(key("none"), compute)
        await cache.get_or_compute(key("none"), compute)

        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_use_cache_false_bypasses(self, cache):
        compute = CountingCompute()

        await cache.get_or_compute(key(1), compute, use_cache=False)
        await cache.get_or_compute(key(1), compute, use_cache=False)

        assert compute.calls == 2
        assert cache.size() == 0

    @pytest.mark.asyncio
    async def test_disabled_cache_always_computes(self):
        cache = CalculationCache(enabled=False)
        compute = CountingCompute()

        await cache.get_or_compute(key(1), compute)
        await cache.get_or_compute(key(1), compute)

        assert compute.calls == 2

    @pytest.mark.asyncio
    async def test_keys_are_normalized(self, cache):
        compute = CountingCompute()

        await cache.get_or_compute(CacheKey.build(CacheBucket.FACTOR, 2025, "technical"), compute)
        await cache.get_or_compute(CacheKey.build(CacheBucket.FACTOR, "2025", "technical"), compute)

        assert compute.calls == 1

    @pytest.mark.asyncio
    async def test_compute_errors_are_not_cached(self, cache):
        attempts = []

        def compute():
            attempts.append(1)
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await cache.get_or_compute(key(1), compute)
        with pytest.raises(RuntimeError):
            await cache.get_or_compute(key(1), compute)

        assert len(attempts) == 2


@pytest.mark.unit
class TestInvalidation:
    """Test that invalidation always forces recomputation"""

    @pytest.mark.asyncio
    async def test_invalidate_tariff_forces_recompute(self, cache):
        compute = CountingCompute()

        await cache.get_or_compute(key(1), compute, tags=[tariff_tag(5)])
        cache.invalidate_tariff(5)
        value = await cache.get_or_compute(key(1), compute, tags=[tariff_tag(5)])

        assert compute.calls == 2
        assert value == "value-2"

    @pytest.mark.asyncio
    async def test_unrelated_tariff_keeps_entry(self, cache):
        compute = CountingCompute()

        await cache.get_or_compute(key(1), compute, tags=[tariff_tag(5)])
        cache.invalidate_tariff(6)
        await cache.get_or_compute(key(1), compute, tags=[tariff_tag(5)])

        assert compute.calls == 1

    @pytest.mark.asyncio
    async def test_tags_from_result(self, cache):
        compute = CountingCompute()

        await cache.get_or_compute(
            key(1), compute, tags_from_result=lambda value: [plan_tag(3)]
        )
        cache.invalidate_by_plan(3)
        await cache.get_or_compute(key(1), compute)

        assert compute.calls == 2

    @pytest.mark.asyncio
    async def test_invalidate_by_service_clears_every_plan(self, cache):
        compute_a, compute_b = CountingCompute("a"), CountingCompute("b")
        await cache.get_or_compute(key(1, 101), compute_a, tags=[plan_tag(1), service_tag(101)])
        await cache.get_or_compute(key(2, 101), compute_b, tags=[plan_tag(2), service_tag(101)])

        dropped = cache.invalidate_by_service(101)

        assert dropped >= 2
        await cache.get_or_compute(key(1, 101), compute_a, tags=[plan_tag(1), service_tag(101)])
        await cache.get_or_compute(key(2, 101), compute_b, tags=[plan_tag(2), service_tag(101)])
        assert compute_a.calls == 2
        assert compute_b.calls == 2

    @pytest.mark.asyncio
    async def test_invalidate_all(self, cache):
        compute = CountingCompute()
        await cache.get_or_compute(key(1), compute)

        cache.invalidate_all()

        assert cache.size() == 0
        await cache.get_or_compute(key(1), compute)
        assert compute.calls == 2

    @pytest.mark.asyncio
    async def test_tariff_invalidation_also_clears_statistics(self, cache):
        compute = CountingCompute()
        stats_key = CacheKey.build(CacheBucket.STATISTICS, 1)
        await cache.get_or_compute(stats_key, compute)

        cache.invalidate_tariff(99)
        await cache.get_or_compute(stats_key, compute)

        assert compute.calls == 2

    @pytest.mark.asyncio
    async def test_invalidate_statistics_keeps_tariff_bucket(self, cache):
        compute = CountingCompute()
        await cache.get_or_compute(key(1), compute)

        cache.invalidate_statistics()
        await cache.get_or_compute(key(1), compute)

        assert compute.calls == 1

    @pytest.mark.asyncio
    async def test_invalidate_factors_for_year(self, cache):
        compute_2024, compute_2025 = CountingCompute(), CountingCompute()
        await cache.get_or_compute(key(2024), compute_2024, tags=[factors_tag(2024)])
        await cache.get_or_compute(key(2025), compute_2025, tags=[factors_tag(2025)])

        cache.invalidate_factors(2025)
        await cache.get_or_compute(key(2024), compute_2024, tags=[factors_tag(2024)])
        await cache.get_or_compute(key(2025), compute_2025, tags=[factors_tag(2025)])

        assert compute_2024.calls == 1
        assert compute_2025.calls == 2

    @pytest.mark.asyncio
    async def test_invalidate_factors_all_years(self, cache):
        compute_2024, compute_2025 = CountingCompute(), CountingCompute()
        await cache.get_or_compute(key(2024), compute_2024, tags=[factors_tag(2024)])
        await cache.get_or_compute(key(2025), compute_2025, tags=[factors_tag(2025)])

        cache.invalidate_factors()
        await cache.get_or_compute(key(2024), compute_2024, tags=[factors_tag(2024)])
        await cache.get_or_compute(key(2025), compute_2025, tags=[factors_tag(2025)])

        assert compute_2024.calls == 2
        assert compute_2025.calls == 2

    @pytest.mark.asyncio
    async def test_invalidate_by_patient(self, cache):
        compute = CountingCompute()
        await cache.get_or_compute(key("p"), compute, tags=[patient_tag(1)])

        cache.invalidate_by_patient(1)
        await cache.get_or_compute(key("p"), compute, tags=[patient_tag(1)])

        assert compute.calls == 2


@pytest.mark.unit
class TestConcurrentInvalidation:
    """Test computations that overlap an invalidation"""

    @pytest.mark.asyncio
    async def test_overlapping_invalidation_is_not_stored_stale(self, cache):
        versions = iter(["stale", "fresh"])

        def compute():
            value = next(versions)
            if value == "stale":
                # Data changes while the first computation is running
                cache.invalidate_tariff(5)
            return value

        value = await cache.get_or_compute(key(1), compute, tags=[tariff_tag(5)])

        assert value == "fresh"
        follow_up = CountingCompute()
        assert await cache.get_or_compute(key(1), follow_up, tags=[tariff_tag(5)]) == "fresh"
        assert follow_up.calls == 0

    @pytest.mark.asyncio
    async def test_persistent_invalidation_returns_uncached(self):
        cache = CalculationCache(max_compute_attempts=2)
        calls = []

        def compute():
            calls.append(1)
            cache.invalidate_all()
            return len(calls)

        value = await cache.get_or_compute(key(1), compute)

        assert value == 2
        assert len(calls) == 2
        assert cache.size() == 0

    @pytest.mark.asyncio
    async def test_concurrent_readers_during_invalidation(self, cache):
        started = asyncio.Event()
        release = asyncio.Event()
        calls = []

        async def slow_compute():
            calls.append(1)
            if len(calls) == 1:
                started.set()
                await release.wait()
                return "old"
            return "new"

        task = asyncio.create_task(
            cache.get_or_compute(key(1), slow_compute, tags=[tariff_tag(5)])
        )
        await started.wait()
        cache.invalidate_tariff(5)
        release.set()

        assert await task == "new"
        assert await cache.get_or_compute(key(1), slow_compute, tags=[tariff_tag(5)]) == "new"
        assert len(calls) == 2


@pytest.mark.unit
class TestSubscriptions:
    """Test invalidation events"""

    def test_listener_receives_events(self, cache):
        events = []
        cache.subscribe(events.append)

        cache.invalidate_by_plan(3, reason="plan edited")

        assert [e.invalidation_type for e in events] == [
            InvalidationType.PLAN,
            InvalidationType.STATISTICS,
        ]
        assert events[0].target_id == 3
        assert events[0].reason == "plan edited"
        assert events[1].epoch > events[0].epoch

    def test_unsubscribe(self, cache):
        events = []
        unsubscribe = cache.subscribe(events.append)
        unsubscribe()

        cache.invalidate_all()

        assert events == []

    def test_generation_is_incremented_before_broadcast(self, cache):
        seen = []
        cache.subscribe(lambda event: seen.append(cache.epoch == event.epoch))

        cache.invalidate_statistics()

        assert seen == [True]

    def test_listener_errors_propagate(self, cache):
        def failing(event):
            raise RuntimeError("listener failed")

        cache.subscribe(failing)

        with pytest.raises(RuntimeError):
            cache.invalidate_all()


@pytest.mark.unit
class TestBoundsAndStats:
    """Test LRU, TTL and statistics"""

    @pytest.mark.asyncio
    async def test_lru_eviction(self):
        cache = CalculationCache(max_entries=2)
        computes = {i: CountingCompute() for i in range(3)}

        await cache.get_or_compute(key(0), computes[0])
        await cache.get_or_compute(key(1), computes[1])
        await cache.get_or_compute(key(0), computes[0])  # 0 becomes most recent
        await cache.get_or_compute(key(2), computes[2])  # evicts 1

        await cache.get_or_compute(key(0), computes[0])
        await cache.get_or_compute(key(1), computes[1])

        assert computes[0].calls == 1
        assert computes[1].calls == 2
        assert cache.get_stats().evictions >= 1

    @pytest.mark.asyncio
    async def test_ttl_expiry(self):
        clock = FakeClock()
        cache = CalculationCache(ttl_seconds=10, clock=clock)
        compute = CountingCompute()

        await cache.get_or_compute(key(1), compute)
        clock.now += 5
        await cache.get_or_compute(key(1), compute)
        clock.now += 10
        await cache.get_or_compute(key(1), compute)

        assert compute.calls == 2

    @pytest.mark.asyncio
    async def test_stats(self, cache):
        compute = CountingCompute()
        await cache.get_or_compute(key(1), compute)
        await cache.get_or_compute(key(1), compute)
        cache.invalidate_all()

        stats = cache.get_stats()

        assert stats.hits == 1
        assert stats.misses == 1
        assert stats.invalidations == 1
        assert stats.entries == 0
        assert stats.hit_rate == 0.5

    @pytest.mark.asyncio
    async def test_reset_stats(self, cache):
        await cache.get_or_compute(key(1), CountingCompute())
        cache.reset_stats()

        assert cache.get_stats().misses == 0
