import asyncio
import json
from decimal import Decimal

import pytest
from fastapi import HTTPException
from starlette.requests import Request

from quickserve.app import main as agent_main
from quickserve.app.db import LocalStore
from quickserve.app.deps import PosRuntime, get_runtime, get_tenant_id, set_runtime
from quickserve.app.errors import StorageError
from quickserve.app.remote import RemoteClient
from quickserve.app.routers import billing as billing_router
from quickserve.app.routers import cache as cache_router
from quickserve.app.routers import orders as orders_router
from quickserve.app.routers import sync as sync_router


class _FakeRemote:
    """Answers the handful of endpoints the agent talks to."""

    def __init__(self):
        self.urls: list[str] = []

    def __call__(self, method, url, body, headers, timeout):
        self.urls.append(url)
        if "rpc/submit_order" in url:
            payload = json.loads(body)
            order = {"id": f"srv-{payload['p_order']['table_id']}", **payload["p_order"]}
            return 200, json.dumps({"success": True, "order": order}).encode("utf-8")
        if "store_settings" in url:
            row = {"restaurant_id": "r1", "gst_percentage": "5", "gst_mode": "exclusive"}
            return 200, json.dumps([row]).encode("utf-8")
        return 200, b"[]"


def _runtime():
    remote = _FakeRemote()
    rt = PosRuntime(LocalStore.open_sync(":memory:"), RemoteClient("https://api.example.test", transport=remote))
    return rt, remote


def test_quote_uses_tenant_config_unless_overridden():
    rt, _ = _runtime()

    async def main():
        body = billing_router.QuoteIn(items=[{"price": 94, "quantity": 2}], discount=12)
        out = await billing_router.quote_bill(body, rt=rt)
        assert out["quote"]["total"] == Decimal("176.00")
        assert out["config_ready"] is False

        await billing_router.set_tenant(billing_router.TenantIn(tenant_id="r1"), rt=rt)
        out = await billing_router.quote_bill(body, rt=rt)
        assert out["quote"]["total"] == Decimal("184.80")
        assert out["config_ready"] is True

        body = billing_router.QuoteIn(items=[{"price": 94, "quantity": 2}], discount=12, tax_mode="inclusive")
        out = await billing_router.quote_bill(body, rt=rt)
        assert out["quote"]["total"] == Decimal("176.00")

        cfg = await billing_router.get_billing_config(rt=rt)
        assert cfg["tenant_id"] == "r1"
        assert cfg["tax_mode"] == "exclusive"

        await billing_router.clear_tenant(rt=rt)
        assert (await billing_router.get_billing_config(rt=rt))["tenant_id"] is None

    asyncio.run(main())


def test_set_tenant_requires_an_id():
    rt, _ = _runtime()
    with pytest.raises(HTTPException) as ei:
        asyncio.run(billing_router.set_tenant(billing_router.TenantIn(tenant_id="  "), rt=rt))
    assert ei.value.status_code == 400


def test_orders_queue_offline_and_sync_on_push():
    rt, remote = _runtime()

    async def main():
        body = orders_router.OrderIn(items=[{"menu_item_id": "m1", "price": 10, "quantity": 1}], table_id="t1")
        out = await orders_router.submit_order(body, rt=rt, tenant_id="r1")
        assert out["status"] == "queued"
        assert out["ephemeral_id"] == 1

        pending = await orders_router.list_pending_orders(rt=rt)
        assert [e["ephemeral_id"] for e in pending["pending"]] == [1]
        assert pending["pending"][0]["payload"]["restaurant_id"] == "r1"

        status = await sync_router.sync_status(rt=rt)
        assert status == {"online": False, "draining": False, "pending": 1, "rejected": 0}

        out = await sync_router.sync_push(rt=rt)
        assert out["processed"] == 1
        assert out["promoted"] == {"1": "srv-t1"}
        assert (await rt.store.get("orders", "srv-t1"))["restaurant_id"] == "r1"

        rt.online = True
        out = await orders_router.submit_order(body.model_copy(update={"table_id": "t2"}), rt=rt, tenant_id="r1")
        assert out["status"] == "created"
        assert out["order"]["id"] == "srv-t2"

    asyncio.run(main())
    assert any("rpc/submit_order" in u for u in remote.urls)


def test_order_without_items_is_refused():
    rt, _ = _runtime()
    with pytest.raises(HTTPException) as ei:
        asyncio.run(orders_router.submit_order(orders_router.OrderIn(items=[]), rt=rt, tenant_id="r1"))
    assert ei.value.status_code == 400


def test_requeue_unknown_entry_is_404():
    rt, _ = _runtime()
    with pytest.raises(HTTPException) as ei:
        asyncio.run(orders_router.requeue_pending_order(42, rt=rt))
    assert ei.value.status_code == 404


def test_cache_listing_is_tenant_scoped():
    rt, _ = _runtime()

    async def main():
        await rt.store.bulk_put(
            "menu_items",
            [{"id": "a", "restaurant_id": "r1"}, {"id": "b", "restaurant_id": "r2"}],
        )
        out = await cache_router.list_cached("menu_items", x_tenant_id="r2", rt=rt)
        assert [r["id"] for r in out["rows"]] == ["b"]

        with pytest.raises(HTTPException) as ei:
            await cache_router.list_cached("menu_items", x_tenant_id=None, rt=rt)
        assert ei.value.status_code == 400

        await rt.queue.enqueue({"restaurant_id": "r1", "table_id": "t1"})
        await rt.queue.enqueue({"restaurant_id": "r2", "table_id": "t9"})
        out = await cache_router.list_cached("pending_orders", x_tenant_id="r1", rt=rt)
        assert [r["ephemeral_id"] for r in out["rows"]] == [1]

        await rt.store.bulk_put(
            "settings",
            [
                {"unique_key": "settings_r1", "restaurant_id": "r1", "gst_percentage": "5"},
                {"unique_key": "settings_r2", "restaurant_id": "r2", "gst_percentage": "18"},
            ],
        )
        out = await cache_router.list_cached("settings", x_tenant_id="r1", rt=rt)
        assert [r["unique_key"] for r in out["rows"]] == ["settings_r1"]

    asyncio.run(main())


def test_cache_point_reads_stay_inside_the_active_tenant():
    rt, _ = _runtime()
    rt.billing_config.tenant_id = "r1"

    async def main():
        await rt.store.bulk_put(
            "customers",
            [{"id": "c1", "restaurant_id": "r1", "mobile": "111"}, {"id": "c9", "restaurant_id": "r2", "mobile": "555"}],
        )
        await rt.store.put("settings", {"unique_key": "settings_r2", "restaurant_id": "r2"})
        await rt.queue.enqueue({"restaurant_id": "r2", "table_id": "t9"})

        out = await cache_router.get_cached("customers", "c1", x_tenant_id=None, rt=rt)
        assert out["row"]["mobile"] == "111"

        for collection, key in (("customers", "c9"), ("customers", "zzz"), ("settings", "settings_r2"), ("pending_orders", "1")):
            with pytest.raises(HTTPException) as ei:
                await cache_router.get_cached(collection, key, x_tenant_id=None, rt=rt)
            assert ei.value.status_code == 404

        out = await cache_router.get_cached("customers", "c9", x_tenant_id="r2", rt=rt)
        assert out["row"]["id"] == "c9"

    asyncio.run(main())


def test_malformed_cache_key_is_not_found():
    rt, _ = _runtime()
    with pytest.raises(HTTPException) as ei:
        asyncio.run(cache_router.get_cached("pending_orders", "abc", x_tenant_id="r1", rt=rt))
    assert ei.value.status_code == 404


def test_sync_pull_refreshes_cache():
    rt, remote = _runtime()
    out = asyncio.run(sync_router.sync_pull(rt=rt, tenant_id="r1"))
    assert out["ok"] is True
    assert any("menu_categories" in u for u in remote.urls)


def test_stock_check_route():
    rt, _ = _runtime()
    body = orders_router.StockCheckIn(
        items=[{"menu_item_id": "burger", "quantity": 1}],
        mappings=[{"menu_item_id": "burger", "inventory_item_id": "bun", "quantity_used": 1}],
    )
    out = asyncio.run(orders_router.stock_check(body, rt=rt, tenant_id="r1"))
    assert out["passed"] is False


def test_tenant_dependency():
    rt, _ = _runtime()
    assert get_tenant_id(x_tenant_id=" r9 ", rt=rt) == "r9"
    with pytest.raises(HTTPException) as ei:
        get_tenant_id(x_tenant_id=None, rt=rt)
    assert ei.value.status_code == 400
    rt.billing_config.tenant_id = "r1"
    assert get_tenant_id(x_tenant_id=None, rt=rt) == "r1"


def test_runtime_dependency_and_health():
    set_runtime(None)
    with pytest.raises(HTTPException) as ei:
        get_runtime()
    assert ei.value.status_code == 503
    ok, _, err = asyncio.run(agent_main._store_health())
    assert not ok and err

    rt, _ = _runtime()
    set_runtime(rt)
    try:
        assert get_runtime() is rt
        ok, info, _ = asyncio.run(agent_main._store_health())
        assert ok
        assert info["pending"] == 0
        assert info["store_id"] == rt.store.store_id
    finally:
        set_runtime(None)


def test_storage_errors_map_to_503():
    req = Request({"type": "http", "method": "GET", "path": "/cache/orders", "headers": []})
    resp = agent_main._storage_error(req, StorageError("disk I/O error", collection="orders", op="get_all"))
    assert resp.status_code == 503
    assert json.loads(resp.body)["kind"] == "storage"
