#!/usr/bin/env python3
"""
Long-running sync worker for a POS device.

Probes connectivity on an interval and drains the pending-order queue through the
remote order API whenever the device is online (immediately on reconnect, then
every interval). On reconnect it also refreshes the tenant's billing settings and
the local read cache.

Optionally serves the local HTTP agent from the same process (`--serve`), so the
POS UI and the worker share one store connection.
"""

import argparse
import asyncio
import sys
import traceback
from typing import Optional

import uvicorn

try:
    from ..app.config import settings
    from ..app.deps import PosRuntime, set_runtime
    from ..app.logs import json_log
    from ..app.main import app
except ImportError:  # pragma: no cover
    # Allow running as a script: `python3 quickserve/workers/sync_service.py`
    import os

    sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "..")))
    from quickserve.app.config import settings
    from quickserve.app.deps import PosRuntime, set_runtime
    from quickserve.app.logs import json_log
    from quickserve.app.main import app

WORKER_NAME = "pos-sync"


async def run_sync_once(rt: PosRuntime, was_online: bool = False, pull: bool = True) -> dict:
    """One probe + (if online) one reconciliation pass. Returns a summary for logging."""
    online = await rt.client.ping()
    rt.online = online
    summary = {"online": online, "reconnected": online and not was_online, "sync": None, "pull": None}
    if not online:
        if was_online:
            json_log("warning", "worker.sync.offline", worker=WORKER_NAME)
        return summary

    if summary["reconnected"]:
        json_log("info", "worker.sync.online", worker=WORKER_NAME)
        tenant_id = rt.billing_config.tenant_id
        if tenant_id:
            await rt.billing_config.refresh()
            if pull:
                results = await rt.cache.refresh_all(tenant_id)
                summary["pull"] = [r.as_dict() for r in results]

    if rt.orders.reconciler.running:
        # A pass triggered from the order path is already draining the queue.
        return summary
    res = await rt.orders.reconcile_pending_orders()
    summary["sync"] = res.as_dict()
    return summary


async def run_forever(rt: PosRuntime, interval: float, once: bool = False, pull: bool = True):
    was_online = False
    while True:
        did_work = False
        try:
            summary = await run_sync_once(rt, was_online, pull=pull)
            was_online = summary["online"]
            sync = summary["sync"] or {}
            did_work = bool(sync.get("processed")) and not sync.get("last_error")
        except Exception as ex:
            # Never crash the worker loop; the queue is durable and the next tick retries.
            json_log("error", "worker.sync.error", worker=WORKER_NAME, error=str(ex))
            traceback.print_exc(file=sys.stderr)

        if once:
            break

        # If we drained something, loop again quickly; otherwise back off.
        await asyncio.sleep(0 if did_work else interval)


async def _serve(rt: PosRuntime, host: str, port: int):
    server = uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_level="warning"))
    await server.serve()


async def _main(args) -> None:
    rt = await PosRuntime.open(args.db)
    set_runtime(rt)
    json_log(
        "info",
        "worker.start",
        worker=WORKER_NAME,
        device_id=settings.device_id,
        store_id=rt.store.store_id,
        interval=args.interval,
        remote_configured=rt.client.configured,
    )
    try:
        tenant_id: Optional[str] = args.tenant or settings.tenant_id
        if tenant_id:
            await rt.billing_config.set_tenant(tenant_id)
        loop = run_forever(rt, args.interval, once=args.once, pull=not args.no_pull)
        if args.serve and not args.once:
            await asyncio.gather(loop, _serve(rt, args.host, args.port))
        else:
            await loop
    finally:
        set_runtime(None)
        rt.close()


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--db", default=settings.db_path)
    parser.add_argument("--tenant", default=None, help="Tenant (restaurant) id; defaults to POS_TENANT_ID")
    parser.add_argument("--interval", type=float, default=settings.sync_interval)
    parser.add_argument("--no-pull", action="store_true", help="Skip the cache refresh on reconnect")
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    parser.add_argument("--serve", action="store_true", help="Also serve the local HTTP agent")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8765)
    args = parser.parse_args()
    asyncio.run(_main(args))


if __name__ == "__main__":
    main()
