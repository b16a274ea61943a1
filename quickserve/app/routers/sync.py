from fastapi import APIRouter, Depends

from ..deps import PosRuntime, get_runtime, get_tenant_id

router = APIRouter(prefix="/sync", tags=["sync"])


@router.post("/push")
async def sync_push(rt: PosRuntime = Depends(get_runtime)):
    res = await rt.orders.reconcile_pending_orders()
    return res.as_dict()


@router.post("/pull")
async def sync_pull(rt: PosRuntime = Depends(get_runtime), tenant_id: str = Depends(get_tenant_id)):
    results = await rt.cache.refresh_all(tenant_id)
    return {"tenant_id": tenant_id, "ok": all(r.ok for r in results), "collections": [r.as_dict() for r in results]}


@router.get("/status")
async def sync_status(rt: PosRuntime = Depends(get_runtime)):
    return {
        "online": rt.online,
        "draining": rt.orders.reconciler.running,
        "pending": await rt.queue.count(),
        "rejected": len(await rt.queue.list_rejected()),
    }
