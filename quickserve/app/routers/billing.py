from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from ..billing import calculate_bill
from ..deps import PosRuntime, get_runtime

router = APIRouter(tags=["billing"])


class QuoteIn(BaseModel):
    # Untyped on purpose: calculate_bill clamps malformed numbers to 0.
    items: list[dict] = []
    discount: Any = 0
    tax_rate: Optional[Any] = None
    tax_mode: Optional[str] = None


class TenantIn(BaseModel):
    tenant_id: str


@router.post("/bill/quote")
async def quote_bill(data: QuoteIn, rt: PosRuntime = Depends(get_runtime)):
    cfg = rt.billing_config.get_billing_config()
    rate = data.tax_rate if data.tax_rate is not None else cfg.tax_rate
    mode = data.tax_mode or cfg.tax_mode
    quote = calculate_bill(data.items, data.discount, rate, mode)
    return {"quote": quote.as_dict(), "config_ready": cfg.ready}


@router.get("/config/billing")
async def get_billing_config(rt: PosRuntime = Depends(get_runtime)):
    cfg = rt.billing_config.get_billing_config()
    return {"tenant_id": rt.billing_config.tenant_id, **cfg.model_dump()}


@router.post("/config/tenant")
async def set_tenant(data: TenantIn, rt: PosRuntime = Depends(get_runtime)):
    tenant_id = (data.tenant_id or "").strip()
    if not tenant_id:
        raise HTTPException(status_code=400, detail="tenant_id is required")
    cfg = await rt.billing_config.set_tenant(tenant_id)
    out = {"tenant_id": tenant_id, **cfg.model_dump()}
    if rt.billing_config.last_error is not None:
        out["warning"] = rt.billing_config.last_error.as_dict()
    return out


@router.delete("/config/tenant")
async def clear_tenant(rt: PosRuntime = Depends(get_runtime)):
    rt.billing_config.clear()
    return {"ok": True}
