"""
Offline write-buffer for orders created without connectivity.

Each draft gets an ephemeral id from a counter persisted in the same SQLite
database as the queue (so ids keep growing across restarts and only reset on a
full local wipe). Enqueueing never touches the network.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from .db import LocalStore, TENANT_FIELD, Transaction

COLLECTION = "pending_orders"
COUNTER = "pending_orders"

STATUS_PENDING = "pending"
STATUS_REJECTED = "rejected"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class PendingOrderQueue:
    def __init__(self, store: LocalStore):
        self.store = store

    async def enqueue(self, draft: dict) -> int:
        payload = dict(draft or {})

        def _enqueue(tx: Transaction) -> int:
            # Counter bump and row insert commit together: an id is never handed out twice.
            ephemeral_id = tx.next_counter(COUNTER)
            tx.put(
                COLLECTION,
                {
                    "ephemeral_id": ephemeral_id,
                    "tenant_id": payload.get(TENANT_FIELD),
                    "payload": payload,
                    "status": STATUS_PENDING,
                    "attempts": 0,
                    "last_error": None,
                    "created_at": _now_iso(),
                },
            )
            return ephemeral_id

        return await self.store.run(_enqueue, collection=COLLECTION, op="enqueue")

    async def entries(self) -> list[dict]:
        return await self.store.get_all(COLLECTION)

    async def list(self) -> list[dict]:
        """Pending entries, oldest first. Rejected entries wait for an operator instead."""
        return [e for e in await self.entries() if e.get("status") != STATUS_REJECTED]

    async def list_rejected(self) -> list[dict]:
        return [e for e in await self.entries() if e.get("status") == STATUS_REJECTED]

    async def get(self, ephemeral_id: int) -> Optional[dict]:
        return await self.store.get(COLLECTION, ephemeral_id)

    async def count(self) -> int:
        return len(await self.list())

    async def remove(self, ephemeral_id: int) -> None:
        # Removing an absent id is a no-op.
        await self.store.delete(COLLECTION, ephemeral_id)

    async def _update(self, ephemeral_id: int, op: str, **changes) -> Optional[dict]:
        def _apply(tx: Transaction):
            row = tx.get(COLLECTION, ephemeral_id)
            if row is None:
                return None
            row.update(changes)
            if op == "record_attempt":
                row["attempts"] = int(row.get("attempts") or 0) + 1
            tx.put(COLLECTION, row)
            return row

        return await self.store.run(_apply, collection=COLLECTION, op=op)

    async def record_attempt(self, ephemeral_id: int, error: Optional[str] = None) -> Optional[dict]:
        return await self._update(
            ephemeral_id, "record_attempt", last_error=error, last_attempt_at=_now_iso()
        )

    async def mark_rejected(self, ephemeral_id: int, error: str) -> Optional[dict]:
        return await self._update(
            ephemeral_id, "mark_rejected", status=STATUS_REJECTED, last_error=error, rejected_at=_now_iso()
        )

    async def requeue(self, ephemeral_id: int) -> Optional[dict]:
        """Operator override: put a rejected draft back in line (keeps its original position)."""
        return await self._update(ephemeral_id, "requeue", status=STATUS_PENDING, last_error=None)
