from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Optional


def to_price(value: Any) -> Optional[float]:
    """Parse stored/AI price values ("12,99", 12.99, "12.99 ден") into floats."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        cleaned = value.strip().replace(",", ".")
        number = ""
        for ch in cleaned:
            if ch.isdigit() or (ch == "." and "." not in number):
                number += ch
            elif number:
                break
        try:
            return float(number) if number else None
        except ValueError:
            return None
    return None


def round_money(value: float) -> float:
    return float(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def apply_discount_percentage(price: float, discount_percentage: float) -> float:
    """Price after a percentage discount; out of range inputs leave it unchanged."""
    if price <= 0 or discount_percentage <= 0 or discount_percentage >= 100:
        return price
    return round_money(price * (1 - discount_percentage / 100))


def calculate_discount_percentage(old_price: Optional[float], new_price: Optional[float]) -> int:
    if not old_price or not new_price or old_price <= 0 or new_price <= 0:
        return 0
    return int(Decimal(str((old_price - new_price) / old_price * 100)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
