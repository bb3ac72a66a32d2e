import asyncio

import pytest

from quotebroker.services.memory_cache import ExpiringCache, PermanentCache, VariableExpiryCache
from quotebroker.services.single_flight import SingleFlight


async def test_concurrent_callers_share_result():
    flight = SingleFlight("test")
    calls = []

    async def work():
        calls.append(1)
        await asyncio.sleep(0.01)
        return "done"

    results = await asyncio.gather(*[flight.do("key", work) for _ in range(5)])

    assert results == ["done"] * 5
    assert len(calls) == 1
    assert len(flight) == 0


async def test_failure_is_shared_and_cleared():
    flight = SingleFlight("test")
    calls = []

    async def work():
        calls.append(1)
        await asyncio.sleep(0.01)
        raise RuntimeError("boom")

    results = await asyncio.gather(*[flight.do("key", work) for _ in range(3)], return_exceptions=True)

    assert all(isinstance(r, RuntimeError) for r in results)
    assert len(calls) == 1
    assert not flight.in_flight("key")

    with pytest.raises(RuntimeError):
        await flight.do("key", work)
    assert len(calls) == 2


async def test_cancelled_waiter_does_not_cancel_shared_work():
    flight = SingleFlight("test")
    release = asyncio.Event()

    async def work():
        await release.wait()
        return 42

    first = asyncio.ensure_future(flight.do("key", work))
    second = asyncio.ensure_future(flight.do("key", work))
    await asyncio.sleep(0)
    first.cancel()
    release.set()

    assert await second == 42


def test_expiring_cache_honours_ttl():
    now = [0.0]
    cache = ExpiringCache(ttl=10, clock=lambda: now[0])
    cache.set("a", 1)

    now[0] = 9
    assert cache.get("a") == 1
    now[0] = 11
    assert cache.get("a") is None
    assert len(cache) == 0


def test_variable_expiry_cache_uses_per_entry_ttl():
    now = [0.0]
    cache = VariableExpiryCache(clock=lambda: now[0])
    cache.set("short", "a", ttl=10)
    cache.set("long", "b", ttl=30)
    cache.set("forever", "c")

    now[0] = 11
    assert cache.get("short") is None
    assert cache.get("long") == "b"
    assert "long" in cache

    now[0] = 1000
    assert cache.get("long") is None
    assert cache.get("forever") == "c"
    assert len(cache) == 1


def test_permanent_cache_snapshot():
    cache = PermanentCache()
    cache.update({"AAPL": {"symbol_id": 8049}})
    cache.set("MSFT", {"symbol_id": 27426})
    cache.delete("AAPL")

    assert cache.snapshot() == {"MSFT": {"symbol_id": 27426}}
    assert len(cache) == 1
