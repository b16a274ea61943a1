from __future__ import annotations

from typing import Optional

from fastapi import Depends, Header, HTTPException

from .cache_sync import CacheSync
from .config import settings
from .db import LocalStore
from .order_service import OrderService
from .remote import RemoteClient, RemoteDataSource, RemoteOrderApi
from .tenant_config import TenantBillingConfig


class PosRuntime:
    """Everything one device needs, wired around a single local store."""

    def __init__(self, store: LocalStore, client: RemoteClient):
        self.store = store
        self.client = client
        self.data_source = RemoteDataSource(client)
        self.order_api = RemoteOrderApi(client)
        self.orders = OrderService(store, self.order_api)
        self.billing_config = TenantBillingConfig(self.data_source, store)
        self.cache = CacheSync(store, self.data_source)
        # Last connectivity probe result; maintained by the sync worker.
        self.online = False

    @property
    def queue(self):
        return self.orders.queue

    @classmethod
    async def open(cls, db_path: Optional[str] = None, client: Optional[RemoteClient] = None) -> "PosRuntime":
        store = await LocalStore.open(db_path or settings.db_path)
        client = client or RemoteClient(settings.api_base_url, settings.api_key, settings.remote_timeout)
        return cls(store, client)

    def close(self) -> None:
        self.store.close()


_runtime: Optional[PosRuntime] = None


def set_runtime(rt: Optional[PosRuntime]) -> None:
    global _runtime
    _runtime = rt


def current_runtime() -> Optional[PosRuntime]:
    return _runtime


def get_runtime() -> PosRuntime:
    if _runtime is None:
        raise HTTPException(status_code=503, detail="local store not ready")
    return _runtime


def get_tenant_id(
    x_tenant_id: Optional[str] = Header(None, alias="X-Tenant-Id"),
    rt: PosRuntime = Depends(get_runtime),
) -> str:
    if x_tenant_id and x_tenant_id.strip():
        return x_tenant_id.strip()
    if rt.billing_config.tenant_id:
        return rt.billing_config.tenant_id
    raise HTTPException(status_code=400, detail="missing tenant context")
