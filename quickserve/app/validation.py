from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BeforeValidator


def _to_lower_str(v):
    if v is None:
        return v
    return str(v).strip().lower()


TaxMode = Annotated[Literal["inclusive", "exclusive"], BeforeValidator(_to_lower_str)]

# Local collection names mirror `quickserve/app/db.py::COLLECTIONS`.
CollectionName = Annotated[
    Literal[
        "menu_items",
        "categories",
        "customers",
        "orders",
        "pending_orders",
        "settings",
        "inventory_items",
        "restaurant_tables",
    ],
    BeforeValidator(_to_lower_str),
]
