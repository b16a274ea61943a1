"""
Drain offline drafts into the remote order API, strictly oldest first.

Per draft:
- confirmed: write the server order into `orders`, then drop the draft. A crash
  between the two leaves a draft that is safe to resend (same idempotency token).
- transient failure: stop the pass. Later drafts must not overtake an unresolved
  earlier one (table/sequence numbering depends on order).
- rejected: flag the draft for an operator and move on.

At most one pass runs at a time per reconciler; the lock covers a single pass only.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Optional

from .db import LocalStore, TENANT_FIELD
from .errors import RemoteRejected, StorageError, TransientRemoteError
from .logs import json_log
from .pending_orders import PendingOrderQueue
from .remote import RemoteOrderApi


@dataclass
class SyncError:
    kind: str
    message: str
    ephemeral_id: Optional[int] = None


@dataclass
class ReconcileResult:
    processed: int = 0
    remaining: int = 0
    last_error: Optional[SyncError] = None
    rejected: list[int] = field(default_factory=list)
    # ephemeral id -> server order id, for drafts confirmed in this pass
    promoted: dict[int, str] = field(default_factory=dict)

    def as_dict(self) -> dict:
        return {
            "processed": self.processed,
            "remaining": self.remaining,
            "last_error": (
                {"kind": self.last_error.kind, "error": self.last_error.message, "ephemeral_id": self.last_error.ephemeral_id}
                if self.last_error
                else None
            ),
            "rejected": list(self.rejected),
            "promoted": {str(k): v for k, v in self.promoted.items()},
        }


def idempotency_token(store_id: str, ephemeral_id: int) -> str:
    return f"pending-order:{store_id}:{int(ephemeral_id)}"


def promote_order(confirmed: dict, draft: dict) -> dict:
    order = dict(confirmed)
    if order.get(TENANT_FIELD) is None and draft.get(TENANT_FIELD) is not None:
        order[TENANT_FIELD] = draft.get(TENANT_FIELD)
    if "items" not in order and draft.get("items") is not None:
        order["items"] = draft.get("items")
    order["is_synced"] = True
    return order


class Reconciler:
    def __init__(self, store: LocalStore, queue: PendingOrderQueue, order_api: RemoteOrderApi):
        self.store = store
        self.queue = queue
        self.order_api = order_api
        self._lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._lock.locked()

    async def reconcile_pending_orders(self) -> ReconcileResult:
        async with self._lock:
            return await self._drain()

    async def _remaining(self, result: ReconcileResult) -> ReconcileResult:
        try:
            result.remaining = await self.queue.count()
        except StorageError as ex:
            result.last_error = result.last_error or SyncError(ex.kind, ex.message)
        return result

    async def _drain(self) -> ReconcileResult:
        result = ReconcileResult()
        try:
            entries = await self.queue.list()
        except StorageError as ex:
            json_log("error", "sync.queue_read_failed", error=ex.message)
            result.last_error = SyncError(ex.kind, ex.message)
            return result

        for entry in entries:
            eid = int(entry["ephemeral_id"])
            draft = entry.get("payload") or {}
            token = idempotency_token(self.store.store_id, eid)
            try:
                confirmed = await self.order_api.create_order(draft, token)
            except TransientRemoteError as ex:
                json_log("warning", "sync.transient_failure", ephemeral_id=eid, error=ex.message)
                result.last_error = SyncError(ex.kind, ex.message, eid)
                try:
                    await self.queue.record_attempt(eid, ex.message)
                except StorageError as sex:
                    json_log("error", "sync.record_attempt_failed", ephemeral_id=eid, error=sex.message)
                break
            except RemoteRejected as ex:
                json_log("warning", "sync.rejected", ephemeral_id=eid, error=ex.message)
                result.last_error = SyncError(ex.kind, ex.message, eid)
                result.rejected.append(eid)
                try:
                    await self.queue.mark_rejected(eid, ex.message)
                except StorageError as sex:
                    json_log("error", "sync.mark_rejected_failed", ephemeral_id=eid, error=sex.message)
                    result.last_error = SyncError(sex.kind, sex.message, eid)
                    break
                continue

            try:
                await self.store.put("orders", promote_order(confirmed, draft))
                await self.queue.remove(eid)
            except StorageError as ex:
                # The remote order exists; the draft stays queued and its token dedupes the resend.
                json_log("error", "sync.promote_failed", ephemeral_id=eid, order_id=confirmed.get("id"), error=ex.message)
                result.last_error = SyncError(ex.kind, ex.message, eid)
                break
            result.processed += 1
            result.promoted[eid] = str(confirmed.get("id"))

        result = await self._remaining(result)
        json_log(
            "info",
            "sync.pass",
            processed=result.processed,
            remaining=result.remaining,
            rejected=len(result.rejected),
            error=result.last_error.message if result.last_error else None,
        )
        return result
