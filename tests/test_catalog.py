from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from services.order.app import catalog
from services.order.app.cache import TenantCache


def _session(rows=None, rowcount=1, returning=None) -> AsyncMock:
    result = MagicMock()
    result.fetchall.return_value = rows or []
    result.fetchone.return_value = returning
    result.rowcount = rowcount
    session = AsyncMock()
    session.execute.return_value = result
    return session


def _restaurant(name: str) -> SimpleNamespace:
    return SimpleNamespace(
        id=f"r-{name}",
        tenant_id="T1",
        name=name,
        cuisine="japanese",
        description=None,
        is_active=True,
        delivery_fee=2.5,
    )


def _menu_item(name: str) -> SimpleNamespace:
    return SimpleNamespace(
        id=f"m-{name}",
        restaurant_id="r-1",
        name=name,
        description=None,
        category="main",
        price=9.0,
        is_available=True,
    )


def test_restaurants_cache_key_is_stable_for_equal_filters():
    a = catalog.restaurants_cache_key({"cuisine": "thai", "x": 1}, 2, 20)
    b = catalog.restaurants_cache_key({"x": 1, "cuisine": "thai"}, 2, 20)

    assert a == b
    assert a.startswith("restaurants:") and a.endswith(":2:20")


async def test_list_restaurants_reads_through_the_cache(redis):
    cache = TenantCache(redis)
    session = _session(rows=[_restaurant("Sushi")])

    first = await catalog.list_restaurants(session, cache, "T1", {"cuisine": "japanese"})
    second = await catalog.list_restaurants(session, cache, "T1", {"cuisine": "japanese"})

    assert first["cached"] is False
    assert second["cached"] is True
    assert second["data"] == first["data"]
    assert session.execute.await_count == 1

    key = catalog.restaurants_cache_key({"cuisine": "japanese"}, 1, 10)
    assert 0 < await redis.ttl(f"tenant:T1:{key}") <= 1800


async def test_cross_tenant_listing_is_not_cached(redis):
    cache = TenantCache(redis)
    session = _session(rows=[_restaurant("Sushi")])

    await catalog.list_restaurants(session, cache, None)
    await catalog.list_restaurants(session, cache, None)

    assert session.execute.await_count == 2


async def test_get_menu_reads_through_the_cache(redis):
    cache = TenantCache(redis)
    session = _session(rows=[_menu_item("Ramen"), _menu_item("Gyoza")])

    first = await catalog.get_menu(session, cache, "T1", "r-1")
    second = await catalog.get_menu(session, cache, "T1", "r-1")

    assert first["count"] == 2 and first["cached"] is False
    assert second["cached"] is True
    assert session.execute.await_count == 1


async def test_restaurant_write_clears_every_entry_of_the_tenant(redis):
    cache = TenantCache(redis)
    await cache.cache_menu("T1", "r-1", [])
    await cache.cache_menu("T1", "r-2", [])
    await cache.cache_menu("T2", "r-9", [])

    updated = await catalog.update_restaurant(
        _session(), cache, "T1", "r-1", {"name": "New name"}
    )

    assert updated
    assert [k async for k in redis.scan_iter(match="tenant:T1:*")] == []
    assert await cache.get_cached_menu("T2", "r-9") == []


async def test_restaurant_update_of_unknown_row_keeps_cache(redis):
    cache = TenantCache(redis)
    await cache.cache_menu("T1", "r-1", [])

    updated = await catalog.update_restaurant(
        _session(rowcount=0), cache, "T1", "r-404", {"name": "x"}
    )

    assert not updated
    assert await cache.get_cached_menu("T1", "r-1") == []


async def test_restaurant_update_rejects_unknown_columns(redis):
    with pytest.raises(ValueError):
        await catalog.update_restaurant(
            _session(), TenantCache(redis), "T1", "r-1", {"tenant_id": "T2"}
        )


async def test_menu_item_write_clears_only_that_restaurants_menu(redis):
    cache = TenantCache(redis)
    await cache.cache_menu("T1", "r-1", ["old"])
    await cache.cache_menu("T1", "r-2", ["keep"])
    await cache.set_tenant_cache("T1", "restaurants:abc:1:10", {"data": []})

    session = _session(returning=SimpleNamespace(restaurant_id="r-1"))
    assert await catalog.update_menu_item(session, cache, "T1", "m-1", {"price": 11})

    assert await cache.get_cached_menu("T1", "r-1") is None
    assert await cache.get_cached_menu("T1", "r-2") == ["keep"]
    assert await cache.get_tenant_cache("T1", "restaurants:abc:1:10") == {"data": []}


async def test_create_and_delete_menu_item_invalidate_menu(redis):
    cache = TenantCache(redis)
    await cache.cache_menu("T1", "r-1", ["old"])

    await catalog.create_menu_item(
        _session(), cache, "T1", "r-1", "m-1", {"name": "Udon", "price": 8}
    )
    assert await cache.get_cached_menu("T1", "r-1") is None

    await cache.cache_menu("T1", "r-1", ["again"])
    session = _session(returning=SimpleNamespace(restaurant_id="r-1"))
    assert await catalog.delete_menu_item(session, cache, "T1", "m-1")
    assert await cache.get_cached_menu("T1", "r-1") is None


async def test_get_restaurant_by_id():
    session = _session(returning=_restaurant("Sushi"))

    restaurant = await catalog.get_restaurant(session, "r-Sushi")

    assert restaurant["id"] == "r-Sushi"
    assert restaurant["delivery_fee"] == 2.5
    assert session.execute.await_args.args[1] == {"id": "r-Sushi"}


async def test_get_restaurant_by_tenant_missing():
    session = _session(returning=None)

    assert await catalog.get_restaurant_by_tenant(session, "T9") is None
    assert session.execute.await_args.args[1] == {"tenant_id": "T9"}
