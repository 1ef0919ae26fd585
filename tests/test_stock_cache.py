from datetime import datetime, timedelta, timezone

import pytest

from app.services.cache_service import InMemoryCache, StockCache


@pytest.fixture
def backend():
    return InMemoryCache()


@pytest.fixture
def cache(backend):
    return StockCache(backend, stock_ttl=300, item_ttl=3600, enabled=True)


async def test_stock_roundtrip_is_branch_isolated(cache):
    await cache.set_stock(1, "ABC0100001", 12.0)

    assert await cache.get_stock(1, "ABC0100001") == 12.0
    assert await cache.get_stock(2, "ABC0100001") is None
    assert await cache.get_stock(1, "ABC0100001", almacen=2) is None


async def test_get_multiple_splits_hits_and_misses(cache):
    await cache.set_multiple(1, {"A": 1.0, "B": 0.0})

    hits, misses = await cache.get_multiple(1, ["A", "B", "C"])

    assert hits == {"A": 1.0, "B": 0.0}
    assert misses == ["C"]


async def test_invalidate_item_keeps_similar_codes(cache):
    await cache.set_stock(1, "ABC", 1.0)
    await cache.set_stock(1, "ABC", 2.0, almacen=2)
    await cache.set_stock(1, "ABC01", 3.0)
    await cache.set_item(1, "ABC", {"item_code": "ABC"})

    removed = await cache.invalidate(1, "ABC")

    assert removed == 3
    assert await cache.get_stock(1, "ABC") is None
    assert await cache.get_item(1, "ABC") is None
    assert await cache.get_stock(1, "ABC01") == 3.0


async def test_invalidate_branch_leaves_other_branches(cache):
    await cache.set_stock(1, "A", 1.0)
    await cache.set_listing(1, "lines", None, ["ABC01"])
    await cache.set_stock(10, "A", 5.0)

    removed = await cache.invalidate(1)

    assert removed == 2
    assert await cache.get_listing(1, "lines") is None
    assert await cache.get_stock(10, "A") == 5.0


async def test_listing_keyed_by_filters(cache):
    await cache.set_listing(1, "items", {"search": "tor", "limit": 50}, [{"item_code": "TOR01"}])

    assert await cache.get_listing(1, "items", {"limit": 50, "search": "tor"}) == [{"item_code": "TOR01"}]
    assert await cache.get_listing(1, "items", {"search": "tor", "limit": 20}) is None


async def test_disabled_cache_never_hits(backend):
    cache = StockCache(backend, enabled=False)

    assert await cache.set_stock(1, "A", 1.0) is False
    assert await cache.get_stock(1, "A") is None


async def test_expired_entries_are_misses_and_swept(backend):
    await backend.set("inv:1:stock:A:1", 4.0, ttl=300)
    value, _ = backend._cache["inv:1:stock:A:1"]
    backend._cache["inv:1:stock:A:1"] = (value, datetime.now(timezone.utc) - timedelta(seconds=1))
    await backend.set("inv:1:stock:B:1", 2.0, ttl=300)
    backend._cache["inv:1:stock:B:1"] = (2.0, datetime.now(timezone.utc) - timedelta(seconds=1))

    assert await backend.get("inv:1:stock:A:1") is None
    assert await backend.cleanup_expired() == 1
    assert (await backend.stats())["keys"] == 0


async def test_flush_all(cache):
    await cache.set_stock(1, "A", 1.0)
    await cache.set_item(2, "B", {"item_code": "B"})

    assert await cache.flush_all() == 2
