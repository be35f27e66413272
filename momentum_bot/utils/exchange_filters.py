"""Lot size and price filter helpers from exchange info. Decimal in, Decimal out."""

from __future__ import annotations
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP
from typing import Optional

ZERO = Decimal("0")


def parse_symbol_filters(symbol_info: Optional[dict]) -> tuple[Decimal, Decimal, Decimal]:
    """
    Extract min_qty, step_size (lot_step), tick_size from symbol filters.
    Returns (min_qty, lot_step, price_tick). Uses defaults if symbol_info is None.
    """
    min_qty = Decimal("0.001")
    lot_step = Decimal("0.001")
    price_tick = Decimal("0.01")
    if not symbol_info:
        return min_qty, lot_step, price_tick
    for f in symbol_info.get("filters", []):
        if f.get("filterType") == "LOT_SIZE":
            min_qty = Decimal(str(f.get("minQty", min_qty)))
            lot_step = Decimal(str(f.get("stepSize", lot_step)))
        if f.get("filterType") == "PRICE_FILTER":
            price_tick = Decimal(str(f.get("tickSize", price_tick)))
    return min_qty, lot_step, price_tick


def round_quantity(qty: Decimal, min_qty: Decimal, step_size: Decimal) -> Decimal:
    """Round down to step size; return 0 if below min_qty."""
    if qty <= 0 or step_size <= 0:
        return ZERO
    rounded = (qty / step_size).to_integral_value(rounding=ROUND_DOWN) * step_size
    if rounded < min_qty:
        return ZERO
    return rounded.normalize()


def round_price(price: Decimal, tick_size: Decimal) -> Decimal:
    """Round price to the nearest exchange tick."""
    if tick_size <= 0:
        return price
    return ((price / tick_size).to_integral_value(rounding=ROUND_HALF_UP) * tick_size).normalize()
