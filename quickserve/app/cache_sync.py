"""
Local-first cache refresh: pull a tenant's rows from the remote and swap them in.

A failed remote read leaves the cached rows exactly as they were; a successful
one replaces the tenant's rows atomically (readers see the old set or the new
set, never a mix).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .db import LocalStore, TENANT_COLLECTIONS
from .errors import StorageError
from .logs import json_log
from .remote import RemoteDataSource

# Local collection -> remote table, where the names differ.
REMOTE_TABLES = {
    "categories": "menu_categories",
}

# `orders` is written by the order path (and reconciliation), not refreshed wholesale.
REFRESHABLE = tuple(c for c in TENANT_COLLECTIONS if c != "orders")


@dataclass
class RefreshResult:
    collection: str
    ok: bool
    count: int = 0
    error: Optional[str] = None
    kind: Optional[str] = None

    def as_dict(self) -> dict:
        return {"collection": self.collection, "ok": self.ok, "count": self.count, "error": self.error, "kind": self.kind}


class CacheSync:
    def __init__(self, store: LocalStore, data_source: RemoteDataSource):
        self.store = store
        self.data_source = data_source

    async def refresh(self, collection: str, tenant_id) -> RefreshResult:
        self.store.tenant_spec(collection)
        table = REMOTE_TABLES.get(collection, collection)
        res = await self.data_source.select(table, tenant_id)
        if not res.ok:
            json_log("warning", "cache.refresh_failed", collection=collection, tenant_id=tenant_id, error=res.error)
            return RefreshResult(collection, ok=False, error=res.error, kind=res.kind)
        rows = [r for r in res.rows if str(r.get(self.data_source.tenant_field)) == str(tenant_id)]
        try:
            count = await self.store.replace_tenant_rows(collection, tenant_id, rows)
        except StorageError as ex:
            json_log("error", "cache.write_failed", collection=collection, tenant_id=tenant_id, error=ex.message)
            return RefreshResult(collection, ok=False, error=ex.message, kind=ex.kind)
        return RefreshResult(collection, ok=True, count=count)

    async def refresh_all(self, tenant_id, collections=None) -> list[RefreshResult]:
        out = []
        for collection in collections or REFRESHABLE:
            out.append(await self.refresh(collection, tenant_id))
        return out
