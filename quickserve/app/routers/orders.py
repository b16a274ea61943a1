from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict

from ..db import TENANT_FIELD
from ..deps import PosRuntime, get_runtime, get_tenant_id
from ..stock import check_stock_availability

router = APIRouter(tags=["orders"])


class OrderIn(BaseModel):
    # Order fields pass through to the remote as-is; only the basics are typed.
    model_config = ConfigDict(extra="allow")

    items: list[dict] = []
    status: str = "NEW"
    table_id: Optional[str] = None
    customer_name: Optional[str] = None
    customer_mobile: Optional[str] = None


@router.post("/orders")
async def submit_order(
    data: OrderIn,
    rt: PosRuntime = Depends(get_runtime),
    tenant_id: str = Depends(get_tenant_id),
):
    if not data.items:
        raise HTTPException(status_code=400, detail="order has no items")
    draft = {**data.model_dump(exclude_none=True), TENANT_FIELD: tenant_id}
    res = await rt.orders.submit_order(draft, online=rt.online)
    return res.as_dict()


@router.get("/pending-orders")
async def list_pending_orders(rt: PosRuntime = Depends(get_runtime)):
    return {"pending": await rt.queue.list(), "rejected": await rt.queue.list_rejected()}


@router.post("/pending-orders/{ephemeral_id}/requeue")
async def requeue_pending_order(ephemeral_id: int, rt: PosRuntime = Depends(get_runtime)):
    row = await rt.queue.requeue(ephemeral_id)
    if row is None:
        raise HTTPException(status_code=404, detail="pending order not found")
    return {"pending_order": row}


class StockCheckIn(BaseModel):
    items: list[dict] = []
    # menu_ingredients rows for the ordered menu items
    mappings: list[dict] = []


@router.post("/stock/check")
async def stock_check(
    data: StockCheckIn,
    rt: PosRuntime = Depends(get_runtime),
    tenant_id: str = Depends(get_tenant_id),
):
    return await check_stock_availability(rt.store, tenant_id, data.items, data.mappings)
