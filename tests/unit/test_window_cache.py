import asyncio
from datetime import UTC, datetime

import pytest

from calendar_metrics.models.domain.calendar_domain import TimeWindow
from calendar_metrics.services.metrics.window_cache import CacheKey, EntryState, WindowCache

START = datetime(2024, 1, 1, tzinfo=UTC)
END = datetime(2024, 1, 8, tzinfo=UTC)
KEY = CacheKey("user-1", START, END)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def counting_compute():
    calls = {"count": 0}

    async def compute():
        calls["count"] += 1
        return calls["count"]

    return compute, calls


def test_cache_key_collapses_windows_within_the_same_minute():
    a = TimeWindow(start=START.replace(second=5), end=END.replace(second=59, microsecond=10))
    b = TimeWindow(start=START.replace(second=40), end=END.replace(second=1))

    assert CacheKey.for_window("user-1", a) == CacheKey.for_window("user-1", b)
    assert CacheKey.for_window("user-1", a) != CacheKey.for_window("user-2", a)


def test_cache_key_for_sub_minute_window_covers_the_whole_minute():
    window = TimeWindow(start=START.replace(second=10), end=START.replace(second=50))

    key = CacheKey.for_window("user-1", window)

    assert key.start == START
    assert key.end == START.replace(minute=1)


@pytest.mark.asyncio
async def test_concurrent_requests_share_one_computation():
    cache = WindowCache()
    release = asyncio.Event()
    calls = {"count": 0}

    async def compute():
        calls["count"] += 1
        await release.wait()
        return {"total_meetings": 4}

    tasks = [asyncio.create_task(cache.get_or_compute(KEY, 300, compute)) for _ in range(10)]
    await asyncio.sleep(0)
    assert cache.state_of(KEY) is EntryState.PENDING

    release.set()
    lookups = await asyncio.gather(*tasks)

    assert calls["count"] == 1
    assert all(lookup.value == {"total_meetings": 4} for lookup in lookups)
    assert all(lookup.value is lookups[0].value for lookup in lookups)
    assert [lookup.source for lookup in lookups].count("miss") == 1
    assert [lookup.source for lookup in lookups].count("coalesced") == 9
    assert cache.state_of(KEY) is EntryState.READY


@pytest.mark.asyncio
async def test_entry_is_served_until_ttl_then_recomputed():
    clock = FakeClock()
    cache = WindowCache(clock=clock)
    compute, calls = counting_compute()

    first = await cache.get_or_compute(KEY, 300, compute)
    clock.now += 299
    second = await cache.get_or_compute(KEY, 300, compute)
    clock.now += 2
    third = await cache.get_or_compute(KEY, 300, compute)

    assert (first.source, first.value) == ("miss", 1)
    assert (second.source, second.value) == ("hit", 1)
    assert (third.source, third.value) == ("miss", 2)
    assert calls["count"] == 2


@pytest.mark.asyncio
async def test_ttl_can_depend_on_the_computed_value():
    clock = FakeClock()
    cache = WindowCache(clock=clock)
    compute, calls = counting_compute()

    def ttl(value):
        return 10 if value == 1 else 300

    await cache.get_or_compute(KEY, ttl, compute)
    clock.now += 11
    await cache.get_or_compute(KEY, ttl, compute)

    assert calls["count"] == 2


@pytest.mark.asyncio
async def test_failure_reaches_every_waiter_and_is_not_cached():
    cache = WindowCache()
    release = asyncio.Event()
    boom = RuntimeError("upstream down")

    async def failing():
        await release.wait()
        raise boom

    tasks = [asyncio.create_task(cache.get_or_compute(KEY, 300, failing)) for _ in range(3)]
    await asyncio.sleep(0)
    release.set()
    results = await asyncio.gather(*tasks, return_exceptions=True)

    assert all(result is boom for result in results)
    assert cache.state_of(KEY) is EntryState.EMPTY
    assert cache.stats()["failures"] == 1

    compute, calls = counting_compute()
    retry = await cache.get_or_compute(KEY, 300, compute)
    assert retry.value == 1
    assert calls["count"] == 1


@pytest.mark.asyncio
async def test_waiter_timeout_does_not_cancel_computation():
    cache = WindowCache()
    release = asyncio.Event()
    calls = {"count": 0}

    async def slow():
        calls["count"] += 1
        await release.wait()
        return "done"

    with pytest.raises(asyncio.TimeoutError):
        await cache.get_or_compute(KEY, 300, slow, timeout=0.01)

    assert cache.state_of(KEY) is EntryState.PENDING

    patient = asyncio.create_task(cache.get_or_compute(KEY, 300, slow))
    await asyncio.sleep(0)
    release.set()
    lookup = await patient

    assert lookup.value == "done"
    assert lookup.source == "coalesced"
    assert calls["count"] == 1
    assert cache.state_of(KEY) is EntryState.READY


@pytest.mark.asyncio
async def test_lru_bound_evicts_least_recently_used_ready_entry():
    cache = WindowCache(max_entries=2)
    k1, k2, k3 = (CacheKey(f"user-{i}", START, END) for i in range(3))
    compute, _ = counting_compute()

    await cache.get_or_compute(k1, 300, compute)
    await cache.get_or_compute(k2, 300, compute)
    await cache.get_or_compute(k1, 300, compute)  # k2 becomes least recent
    await cache.get_or_compute(k3, 300, compute)

    assert cache.state_of(k1) is EntryState.READY
    assert cache.state_of(k2) is EntryState.EMPTY
    assert cache.state_of(k3) is EntryState.READY
    assert cache.stats()["evictions"] == 1


@pytest.mark.asyncio
async def test_lru_bound_never_evicts_pending_entries():
    cache = WindowCache(max_entries=1)
    k1, k2 = CacheKey("user-1", START, END), CacheKey("user-2", START, END)
    release = asyncio.Event()
    calls = {"count": 0}

    async def slow():
        calls["count"] += 1
        await release.wait()
        return calls["count"]

    first = asyncio.create_task(cache.get_or_compute(k1, 300, slow))
    await asyncio.sleep(0)
    second = asyncio.create_task(cache.get_or_compute(k2, 300, slow))
    joiner = asyncio.create_task(cache.get_or_compute(k1, 300, slow))
    await asyncio.sleep(0)

    assert cache.state_of(k1) is EntryState.PENDING
    release.set()
    await asyncio.gather(first, second, joiner)

    assert calls["count"] == 2
    assert joiner.result().source == "coalesced"


@pytest.mark.asyncio
async def test_expired_value_is_available_as_stale_within_grace():
    clock = FakeClock()
    cache = WindowCache(clock=clock)

    async def ok():
        return "old"

    async def failing():
        raise ConnectionError("down")

    await cache.get_or_compute(KEY, 10, ok)
    clock.now += 15
    with pytest.raises(ConnectionError):
        await cache.get_or_compute(KEY, 10, failing)

    stale = cache.get_stale(KEY, grace_seconds=60)
    assert stale is not None
    assert stale.value == "old"
    assert stale.source == "stale"
    assert stale.computed_at is not None
    assert cache.get_stale(KEY, grace_seconds=1) is None


@pytest.mark.asyncio
async def test_invalidating_pending_key_still_resolves_waiters():
    cache = WindowCache()
    release = asyncio.Event()
    calls = {"count": 0}

    async def slow():
        calls["count"] += 1
        await release.wait()
        return calls["count"]

    waiter = asyncio.create_task(cache.get_or_compute(KEY, 300, slow))
    await asyncio.sleep(0)
    cache.invalidate(KEY)
    release.set()

    assert (await waiter).value == 1
    assert cache.state_of(KEY) is EntryState.EMPTY

    again = await cache.get_or_compute(KEY, 300, slow)
    assert again.value == 2
