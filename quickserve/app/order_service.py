from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .db import LocalStore, TENANT_FIELD
from .errors import RemoteRejected
from .pending_orders import PendingOrderQueue
from .reconcile import Reconciler, ReconcileResult
from .remote import RemoteOrderApi


@dataclass
class SubmitResult:
    status: str  # "created" | "queued"
    ephemeral_id: int
    order: Optional[dict] = None
    sync: Optional[ReconcileResult] = None

    def as_dict(self) -> dict:
        return {
            "status": self.status,
            "ephemeral_id": self.ephemeral_id,
            "order": self.order,
            "sync": self.sync.as_dict() if self.sync else None,
        }


def _require_tenant(draft: Optional[dict]) -> dict:
    if not (draft or {}).get(TENANT_FIELD):
        raise ValueError(f"{TENANT_FIELD} is required")
    return dict(draft)


class OrderService:
    """
    Order submission for the POS.

    Every order enters the pending queue first. Online, a reconciliation pass runs
    right away, so the new order is sent behind any older drafts (never ahead of
    them) and carries the same idempotency token on every resend. Offline, the
    order simply waits; from the operator's side it has succeeded either way.
    """

    def __init__(self, store: LocalStore, order_api: RemoteOrderApi, queue: Optional[PendingOrderQueue] = None):
        self.store = store
        self.order_api = order_api
        self.queue = queue or PendingOrderQueue(store)
        self.reconciler = Reconciler(store, self.queue, order_api)

    async def enqueue_offline_order(self, draft: dict) -> int:
        return await self.queue.enqueue(_require_tenant(draft))

    async def reconcile_pending_orders(self) -> ReconcileResult:
        return await self.reconciler.reconcile_pending_orders()

    async def submit_order(self, draft: dict, online: bool) -> SubmitResult:
        eid = await self.queue.enqueue(_require_tenant(draft))
        if not online:
            return SubmitResult(status="queued", ephemeral_id=eid)

        result = await self.reconcile_pending_orders()
        if eid in result.rejected:
            err = result.last_error
            raise RemoteRejected(err.message if err and err.ephemeral_id == eid else "order rejected")
        order_id = result.promoted.get(eid)
        if order_id is None:
            return SubmitResult(status="queued", ephemeral_id=eid, sync=result)
        order = await self.store.get("orders", order_id)
        return SubmitResult(status="created", ephemeral_id=eid, order=order, sync=result)
