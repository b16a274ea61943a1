"""
Bill calculation: gross, discount, GST (inclusive/exclusive) and the tax split.

`calculate_bill` is pure and never raises: malformed numbers (negative,
non-numeric, non-finite, an over-large discount) are clamped to safe values so
checkout is never interrupted. Validating operator input is the caller's job.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_DOWN, ROUND_HALF_UP, localcontext
from typing import Any, Iterable, Literal, Optional

from pydantic import BaseModel

MONEY_Q = Decimal("0.01")
ZERO = Decimal("0")
HUNDRED = Decimal("100")
DEFAULT_TAX_RATE = Decimal("5")
DEFAULT_TAX_MODE = "inclusive"
# Anything at or above this magnitude is treated as garbage input, not money.
MAX_AMOUNT = Decimal("1e15")


def q2(v: Decimal) -> Decimal:
    return (v or ZERO).quantize(MONEY_Q, rounding=ROUND_HALF_UP)


def to_decimal(v: Any) -> Decimal:
    """Parse a number leniently; anything unusable (including NaN/inf) becomes 0."""
    if v is None or isinstance(v, bool):
        return ZERO
    try:
        d = v if isinstance(v, Decimal) else Decimal(str(v).strip())
    except (InvalidOperation, ValueError, TypeError):
        return ZERO
    if not d.is_finite() or abs(d) >= MAX_AMOUNT:
        return ZERO
    return d


def non_negative(v: Any) -> Decimal:
    d = to_decimal(v)
    return d if d > 0 else ZERO


def normalize_tax_mode(mode: Any) -> str:
    return "exclusive" if str(mode or "").strip().lower() == "exclusive" else "inclusive"


def _field(item: Any, name: str):
    if isinstance(item, dict):
        return item.get(name)
    return getattr(item, name, None)


def line_amount(item: Any) -> Decimal:
    price = non_negative(_field(item, "price"))
    if price == ZERO:
        price = non_negative(_field(item, "menu_item_price"))
    # Quantities are whole units; fractional input is truncated.
    qty = non_negative(_field(item, "quantity")).to_integral_value(rounding=ROUND_DOWN)
    return price * qty


class BillQuote(BaseModel):
    gross_total: Decimal
    discount: Decimal
    taxable_value: Decimal
    net_payable: Optional[Decimal] = None
    tax_amount: Decimal
    tax_part_a: Decimal
    tax_part_b: Decimal
    total: Decimal
    tax_rate: Decimal
    tax_mode: Literal["inclusive", "exclusive"]

    def as_dict(self) -> dict:
        return self.model_dump()


def split_tax(tax_amount: Decimal) -> tuple[Decimal, Decimal]:
    # Second half absorbs the odd cent so the parts always sum to the rounded total.
    rounded = q2(tax_amount)
    part_a = q2(rounded / 2)
    return part_a, rounded - part_a


def calculate_bill(
    items: Optional[Iterable[Any]],
    discount: Any = 0,
    tax_rate: Any = DEFAULT_TAX_RATE,
    tax_mode: Any = DEFAULT_TAX_MODE,
) -> BillQuote:
    with localcontext() as ctx:
        # Wide enough that large carts never trip quantize().
        ctx.prec = 60
        return _calculate(items, discount, tax_rate, tax_mode)


def _calculate(items, discount, tax_rate, tax_mode) -> BillQuote:
    try:
        rows = list(items or [])
    except TypeError:
        rows = []
    gross = sum((line_amount(it) for it in rows), ZERO)

    valid_discount = min(non_negative(discount), gross)
    rate = non_negative(tax_rate)
    mode = normalize_tax_mode(tax_mode)

    net_payable: Optional[Decimal] = None
    if mode == "exclusive":
        taxable = gross - valid_discount
        tax = taxable * rate / HUNDRED
        total = taxable + tax
    else:
        net_payable = gross - valid_discount
        taxable = net_payable * HUNDRED / (HUNDRED + rate)
        tax = net_payable - taxable
        total = net_payable

    tax_amount = q2(tax)
    part_a, part_b = split_tax(tax_amount)

    return BillQuote(
        gross_total=q2(gross),
        discount=q2(valid_discount),
        taxable_value=q2(taxable),
        net_payable=q2(net_payable) if net_payable is not None else None,
        tax_amount=tax_amount,
        tax_part_a=part_a,
        tax_part_b=part_b,
        total=q2(total),
        tax_rate=rate,
        tax_mode=mode,
    )
