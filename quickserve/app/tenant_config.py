"""
Per-tenant billing settings (GST rate + mode) with a guaranteed fallback.

Until the active tenant's settings are confirmed, consumers get the documented
defaults (or the last cached copy) with `ready=False`. A load that finishes after
the tenant has changed again is dropped: each load carries the generation it was
started for and is applied only if that generation is still current.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel

from .billing import BillQuote, calculate_bill, non_negative, normalize_tax_mode
from .config import settings
from .db import LocalStore
from .errors import ConfigUnavailable, StorageError
from .logs import json_log
from .remote import RemoteDataSource
from .validation import TaxMode

SETTINGS_TABLE = "store_settings"
SETTINGS_COLLECTION = "settings"


class BillingConfig(BaseModel):
    tax_rate: Decimal
    tax_mode: TaxMode
    ready: bool = False


def default_billing_config() -> BillingConfig:
    return BillingConfig(
        tax_rate=non_negative(settings.default_tax_rate),
        tax_mode=normalize_tax_mode(settings.default_tax_mode),
        ready=False,
    )


def settings_key(tenant_id) -> str:
    return f"settings_{tenant_id}"


def config_from_row(row: Optional[dict], ready: bool) -> BillingConfig:
    base = default_billing_config()
    if not row:
        return base.model_copy(update={"ready": ready})
    raw_rate = row.get("gst_percentage")
    return BillingConfig(
        tax_rate=non_negative(raw_rate) if raw_rate is not None else base.tax_rate,
        tax_mode=normalize_tax_mode(row.get("gst_mode") or base.tax_mode),
        ready=ready,
    )


class TenantBillingConfig:
    def __init__(self, data_source: Optional[RemoteDataSource], store: Optional[LocalStore] = None):
        self.data_source = data_source
        self.store = store
        self.tenant_id: Optional[str] = None
        self._generation = 0
        self._config = default_billing_config()
        self.last_error: Optional[ConfigUnavailable] = None

    @property
    def generation(self) -> int:
        return self._generation

    def get_billing_config(self) -> BillingConfig:
        return self._config

    def _apply(self, generation: int, config: BillingConfig) -> bool:
        if generation != self._generation:
            return False
        self._config = config
        return True

    async def set_tenant(self, tenant_id: Any) -> BillingConfig:
        tid = str(tenant_id).strip() if tenant_id is not None else ""
        self._generation += 1
        generation = self._generation
        self.tenant_id = tid or None
        self._config = default_billing_config()
        self.last_error = None
        if not tid:
            return self._config

        await self._apply_cached(generation, tid)
        try:
            row = await self._fetch(tid)
        except ConfigUnavailable as ex:
            if generation == self._generation:
                self.last_error = ex
                json_log("warning", "billing_config.load_failed", tenant_id=tid, error=ex.message)
            return self.get_billing_config()

        config = config_from_row(row, ready=True)
        if not self._apply(generation, config):
            json_log("info", "billing_config.stale_load_discarded", tenant_id=tid)
            return self.get_billing_config()
        await self._cache(tid, row)
        return config

    async def refresh(self) -> BillingConfig:
        if not self.tenant_id:
            return self.get_billing_config()
        return await self.set_tenant(self.tenant_id)

    def clear(self) -> None:
        """Tenant context torn down."""
        self._generation += 1
        self.tenant_id = None
        self._config = default_billing_config()
        self.last_error = None

    def calculate(self, items, discount: Any = 0) -> BillQuote:
        cfg = self.get_billing_config()
        return calculate_bill(items, discount, cfg.tax_rate, cfg.tax_mode)

    async def _fetch(self, tenant_id: str) -> Optional[dict]:
        if self.data_source is None:
            raise ConfigUnavailable("no remote data source")
        res = await self.data_source.select(SETTINGS_TABLE, tenant_id)
        if not res.ok:
            raise ConfigUnavailable(res.error or "settings load failed", detail={"kind": res.kind})
        return res.rows[0] if res.rows else None

    async def _apply_cached(self, generation: int, tenant_id: str) -> None:
        if self.store is None:
            return
        try:
            cached = await self.store.get(SETTINGS_COLLECTION, settings_key(tenant_id))
        except StorageError as ex:
            json_log("warning", "billing_config.cache_read_failed", tenant_id=tenant_id, error=ex.message)
            return
        if cached:
            # Cached values are better than hard defaults, but still unconfirmed.
            self._apply(generation, config_from_row(cached, ready=False))

    async def _cache(self, tenant_id: str, row: Optional[dict]) -> None:
        if self.store is None:
            return
        try:
            if row:
                await self.store.put(SETTINGS_COLLECTION, {**row, "unique_key": settings_key(tenant_id)})
            else:
                # Confirmed: the tenant has no settings row, so an older cached copy is stale.
                await self.store.delete(SETTINGS_COLLECTION, settings_key(tenant_id))
        except StorageError as ex:
            json_log("warning", "billing_config.cache_write_failed", tenant_id=tenant_id, error=ex.message)
