from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException

from ..db import TENANT_FIELD, normalize_key
from ..deps import PosRuntime, get_runtime
from ..errors import StorageError
from ..tenant_config import SETTINGS_COLLECTION, settings_key
from ..validation import CollectionName

router = APIRouter(prefix="/cache", tags=["cache"])


def _tenant(rt: PosRuntime, x_tenant_id: Optional[str]) -> str:
    tenant_id = (x_tenant_id or "").strip() or rt.billing_config.tenant_id
    if not tenant_id:
        raise HTTPException(status_code=400, detail="missing tenant context")
    return tenant_id


def _owned_by(collection: str, row: dict, tenant_id: str) -> bool:
    if collection == SETTINGS_COLLECTION:
        return row.get("unique_key") == settings_key(tenant_id)
    if collection == "pending_orders":
        return str(row.get("tenant_id")) == tenant_id
    return str(row.get(TENANT_FIELD)) == tenant_id


@router.get("/{collection}")
async def list_cached(
    collection: CollectionName,
    x_tenant_id: Optional[str] = Header(None, alias="X-Tenant-Id"),
    rt: PosRuntime = Depends(get_runtime),
):
    tenant_id = _tenant(rt, x_tenant_id)
    if rt.store.spec(collection).tenant_indexed:
        rows = await rt.store.get_by_tenant(collection, tenant_id)
    else:
        rows = [r for r in await rt.store.get_all(collection) if _owned_by(collection, r, tenant_id)]
    return {"collection": collection, "tenant_id": tenant_id, "rows": rows}


@router.get("/{collection}/{key}")
async def get_cached(
    collection: CollectionName,
    key: str,
    x_tenant_id: Optional[str] = Header(None, alias="X-Tenant-Id"),
    rt: PosRuntime = Depends(get_runtime),
):
    tenant_id = _tenant(rt, x_tenant_id)
    try:
        normalize_key(rt.store.spec(collection), key)
    except StorageError:
        raise HTTPException(status_code=404, detail="not found")
    row = await rt.store.get(collection, key)
    # Another tenant's row is reported exactly like a missing one.
    if row is None or not _owned_by(collection, row, tenant_id):
        raise HTTPException(status_code=404, detail="not found")
    return {"collection": collection, "tenant_id": tenant_id, "row": row}
