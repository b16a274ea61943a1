"""
Clients for the remote source of truth (PostgREST-style REST + RPC + edge functions).

Blocking urllib calls run in a worker thread, each with a hard timeout, so a
remote that never answers only ever stalls the one task that is waiting on it.

Failures are classified once, here:
- connection errors, timeouts, 408/429/5xx -> TransientRemoteError (retry later)
- any other 4xx, or an explicit `success: false` -> RemoteRejected (do not retry)
"""

from __future__ import annotations

import asyncio
import http.client
import json
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from typing import Any, Callable, Optional
from urllib.parse import quote

from .db import json_default
from .errors import RemoteError, RemoteRejected, TransientRemoteError

TRANSIENT_STATUS = {408, 425, 429}

# (method, url, body, headers, timeout) -> (status, body bytes)
Transport = Callable[[str, str, Optional[bytes], dict, float], "tuple[int, bytes]"]


def urllib_transport(method: str, url: str, body: Optional[bytes], headers: dict, timeout: float) -> tuple[int, bytes]:
    req = urllib.request.Request(url, data=body, headers=headers, method=method)
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            return resp.status, resp.read()
    except urllib.error.HTTPError as ex:
        # Non-2xx still carries a body worth surfacing (validation messages etc).
        try:
            payload = ex.read()
        except Exception:
            payload = b""
        return ex.code, payload


def is_transient_status(status: int) -> bool:
    return status >= 500 or status in TRANSIENT_STATUS


def _decode(body: bytes):
    if not body:
        return None
    text = body.decode("utf-8", errors="replace")
    try:
        return json.loads(text)
    except ValueError:
        return {"raw": text}


def _error_message(status: int, data) -> str:
    msg = f"http {status}"
    if isinstance(data, dict):
        detail = data.get("message") or data.get("error") or data.get("detail") or data.get("raw")
        if detail:
            msg = f"{msg}: {str(detail)[:500]}"
    return msg


class RemoteClient:
    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 10.0,
        transport: Optional[Transport] = None,
    ):
        self.base_url = (base_url or "").strip().rstrip("/")
        self.api_key = api_key or ""
        self.timeout = max(0.2, float(timeout or 10.0))
        self._transport = transport or urllib_transport

    @property
    def configured(self) -> bool:
        return bool(self.base_url)

    def _headers(self, extra: Optional[dict] = None) -> dict:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.api_key:
            headers["apikey"] = self.api_key
            headers["Authorization"] = f"Bearer {self.api_key}"
        headers.update(extra or {})
        return headers

    def request_sync(self, method: str, path: str, payload: Any = None, headers: Optional[dict] = None):
        if not self.configured:
            raise TransientRemoteError("remote api is not configured")
        url = f"{self.base_url}/{path.lstrip('/')}"
        body = json.dumps(payload, default=json_default).encode("utf-8") if payload is not None else None
        try:
            status, raw = self._transport(method, url, body, self._headers(headers), self.timeout)
        except (urllib.error.URLError, TimeoutError, OSError, http.client.HTTPException) as ex:
            # Includes a response cut off mid-body (IncompleteRead); the request may have landed.
            raise TransientRemoteError(f"network error: {ex!r}") from ex
        except ValueError as ex:
            # urlopen rejects a malformed base URL before sending anything.
            raise TransientRemoteError(f"invalid remote url: {ex}") from ex
        data = _decode(raw)
        if 200 <= status < 300:
            return data
        if is_transient_status(status):
            raise TransientRemoteError(_error_message(status, data), status=status)
        raise RemoteRejected(_error_message(status, data), status=status)

    async def request(self, method: str, path: str, payload: Any = None, headers: Optional[dict] = None):
        return await asyncio.to_thread(self.request_sync, method, path, payload, headers)

    async def ping(self) -> bool:
        try:
            await self.request("GET", "rest/v1/")
            return True
        except RemoteRejected:
            # Reachable; it just did not like the bare request.
            return True
        except TransientRemoteError:
            return False


@dataclass
class RemoteResult:
    ok: bool
    rows: list[dict] = field(default_factory=list)
    error: Optional[str] = None
    kind: Optional[str] = None

    @classmethod
    def failed(cls, ex: RemoteError) -> "RemoteResult":
        return cls(ok=False, error=ex.message, kind=ex.kind)


def _eq_filters(filters: dict) -> str:
    parts = [f"{quote(str(k))}=eq.{quote(str(v))}" for k, v in filters.items() if v is not None]
    return "&".join(parts)


def _rows(data) -> list[dict]:
    if isinstance(data, list):
        return [r for r in data if isinstance(r, dict)]
    if isinstance(data, dict):
        return [data]
    return []


class RemoteDataSource:
    """Per-table reads/writes, tenant-filtered. Never raises for remote failures."""

    def __init__(self, client: RemoteClient, tenant_field: str = "restaurant_id"):
        self.client = client
        self.tenant_field = tenant_field

    async def _call(self, method: str, path: str, payload=None, headers=None) -> RemoteResult:
        try:
            data = await self.client.request(method, path, payload, headers)
        except RemoteError as ex:
            return RemoteResult.failed(ex)
        return RemoteResult(ok=True, rows=_rows(data))

    async def select(self, table: str, tenant_id, **filters) -> RemoteResult:
        qs = _eq_filters({self.tenant_field: tenant_id, **filters})
        return await self._call("GET", f"rest/v1/{table}?select=*&{qs}")

    async def insert(self, table: str, rows) -> RemoteResult:
        return await self._call("POST", f"rest/v1/{table}", rows, {"Prefer": "return=representation"})

    async def update(self, table: str, values: dict, **filters) -> RemoteResult:
        if not filters:
            # An unfiltered PATCH would rewrite the whole table.
            return RemoteResult(ok=False, error="update requires at least one filter", kind=RemoteRejected.kind)
        return await self._call(
            "PATCH", f"rest/v1/{table}?{_eq_filters(filters)}", values, {"Prefer": "return=representation"}
        )

    async def upsert(self, table: str, rows) -> RemoteResult:
        return await self._call(
            "POST",
            f"rest/v1/{table}",
            rows,
            {"Prefer": "resolution=merge-duplicates,return=representation"},
        )


# Local bookkeeping fields that never leave the device.
LOCAL_ONLY_FIELDS = {"is_synced", "ephemeral_id", "order_items", "menu_items"}
LOCAL_ONLY_ITEM_FIELDS = {"menu_items", "menu_item_name", "name"}


def clean_for_sync(draft: dict) -> tuple[dict, list[dict]]:
    order = {k: v for k, v in (draft or {}).items() if k not in LOCAL_ONLY_FIELDS and k != "items"}
    items = [
        {k: v for k, v in (it or {}).items() if k not in LOCAL_ONLY_ITEM_FIELDS}
        for it in (draft or {}).get("items") or []
    ]
    return order, items


class RemoteOrderApi:
    """Remote order creation through the `submit_order` RPC (one remote transaction)."""

    def __init__(self, client: RemoteClient, rpc_name: str = "submit_order"):
        self.client = client
        self.rpc_name = rpc_name

    async def create_order(self, draft: dict, idempotency_token: str) -> dict:
        order, items = clean_for_sync(draft)
        payload = {"p_order": order, "p_items": items, "p_idempotency_key": idempotency_token}
        data = await self.client.request(
            "POST", f"rest/v1/rpc/{self.rpc_name}", payload, {"Idempotency-Key": idempotency_token}
        )
        if isinstance(data, dict) and data.get("success") is False:
            raise RemoteRejected(str(data.get("error") or "order rejected"))
        confirmed = None
        if isinstance(data, dict):
            confirmed = data.get("order") or data.get("data")
            if confirmed is None and data.get("id") is not None:
                confirmed = data
        if not isinstance(confirmed, dict) or confirmed.get("id") in (None, ""):
            raise RemoteRejected("order confirmation is missing a server id")
        return confirmed


@dataclass
class FunctionResult:
    success: bool
    data: Any = None
    error: Optional[str] = None
    kind: Optional[str] = None


class FunctionsClient:
    """Privileged edge-function calls; the core only depends on the `{success, data | error}` shape."""

    def __init__(self, client: RemoteClient):
        self.client = client

    async def invoke(self, name: str, payload: Optional[dict] = None) -> FunctionResult:
        try:
            data = await self.client.request("POST", f"functions/v1/{quote(name)}", payload or {})
        except RemoteError as ex:
            return FunctionResult(success=False, error=ex.message, kind=ex.kind)
        if isinstance(data, dict) and "success" in data:
            if data.get("success"):
                return FunctionResult(success=True, data=data.get("data"))
            return FunctionResult(success=False, error=str(data.get("error") or "function failed"), kind=RemoteRejected.kind)
        return FunctionResult(success=True, data=data)
