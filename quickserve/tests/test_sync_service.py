import asyncio
import json
import urllib.error

from quickserve.app.db import LocalStore
from quickserve.app.deps import PosRuntime
from quickserve.app.remote import RemoteClient
from quickserve.workers import sync_service


class _Remote:
    def __init__(self):
        self.down = False
        self.urls: list[str] = []

    def __call__(self, method, url, body, headers, timeout):
        self.urls.append(url)
        if self.down:
            raise urllib.error.URLError("network is unreachable")
        if "rpc/submit_order" in url:
            order = {"id": "srv-1", **json.loads(body)["p_order"]}
            return 200, json.dumps({"success": True, "order": order}).encode("utf-8")
        return 200, b"[]"


def _runtime(remote):
    return PosRuntime(LocalStore.open_sync(":memory:"), RemoteClient("https://api.example.test", transport=remote))


def test_offline_tick_does_not_drain():
    remote = _Remote()
    remote.down = True
    rt = _runtime(remote)

    async def main():
        await rt.queue.enqueue({"restaurant_id": "r1", "table_id": "t1"})
        summary = await sync_service.run_sync_once(rt)
        assert summary["online"] is False
        assert summary["sync"] is None
        assert await rt.queue.count() == 1

    asyncio.run(main())
    assert rt.online is False


def test_reconnect_drains_queue_and_refreshes_cache():
    remote = _Remote()
    rt = _runtime(remote)
    rt.billing_config.tenant_id = "r1"

    async def main():
        await rt.queue.enqueue({"restaurant_id": "r1", "table_id": "t1"})
        summary = await sync_service.run_sync_once(rt, was_online=False)
        assert summary["online"] is True
        assert summary["reconnected"] is True
        assert summary["sync"]["processed"] == 1
        assert summary["pull"] is not None
        assert await rt.queue.count() == 0

        # Still online: the next tick only drains.
        summary = await sync_service.run_sync_once(rt, was_online=True)
        assert summary["reconnected"] is False
        assert summary["pull"] is None
        assert summary["sync"]["processed"] == 0

    asyncio.run(main())
    assert rt.online is True
    assert any("store_settings" in u for u in remote.urls)


def test_run_forever_once_survives_errors(monkeypatch):
    rt = _runtime(_Remote())

    async def boom(*_args, **_kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(sync_service, "run_sync_once", boom)
    asyncio.run(sync_service.run_forever(rt, interval=0.01, once=True))
