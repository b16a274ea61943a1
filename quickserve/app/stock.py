from __future__ import annotations

from decimal import Decimal
from typing import Iterable

from .billing import non_negative, to_decimal
from .db import LocalStore


def calculate_stock_requirements(order_items: Iterable[dict], mappings: Iterable[dict]) -> dict[str, dict]:
    """
    Aggregate ingredient needs for an order.

    `mappings` are menu_ingredients rows: {menu_item_id, inventory_item_id, quantity_used,
    inventory_item: {name, unit, current_stock}}. Returns inventory_item_id -> requirement.
    """
    items = [it for it in (order_items or []) if it and it.get("menu_item_id")]
    if not items:
        return {}

    qty_by_menu_item: dict[str, Decimal] = {}
    for it in items:
        mid = str(it["menu_item_id"])
        qty_by_menu_item[mid] = qty_by_menu_item.get(mid, Decimal("0")) + non_negative(it.get("quantity"))

    requirements: dict[str, dict] = {}
    for m in mappings or []:
        mid = str(m.get("menu_item_id") or "")
        inv_id = str(m.get("inventory_item_id") or "")
        if not inv_id or mid not in qty_by_menu_item:
            continue
        inv = m.get("inventory_item") or {}
        req = requirements.setdefault(
            inv_id,
            {
                "inventory_item_id": inv_id,
                "name": inv.get("name"),
                "unit": inv.get("unit"),
                "current_stock": to_decimal(inv.get("current_stock")) if inv.get("current_stock") is not None else None,
                "required": Decimal("0"),
            },
        )
        req["required"] += non_negative(m.get("quantity_used")) * qty_by_menu_item[mid]
    return requirements


async def check_stock_availability(store: LocalStore, tenant_id, order_items, mappings) -> dict:
    """Compare requirements with the cached `inventory_items` stock for the tenant."""
    requirements = calculate_stock_requirements(order_items, mappings)
    cached = {str(r.get("id")): r for r in await store.get_by_tenant("inventory_items", tenant_id)}
    missing = []
    for inv_id, req in requirements.items():
        row = cached.get(inv_id)
        if row is not None:
            req["current_stock"] = to_decimal(row.get("current_stock"))
            req["name"] = req["name"] or row.get("name")
            req["unit"] = req["unit"] or row.get("unit")
        stock = req["current_stock"] if req["current_stock"] is not None else Decimal("0")
        if stock < req["required"]:
            missing.append(req)
    return {"passed": not missing, "missing_items": missing}
