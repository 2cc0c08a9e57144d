from __future__ import annotations

import json
import math
from dataclasses import dataclass
from typing import Any, Optional

from ..domain.pricing import round_money
from ..errors import FlyerPipelineError, truncate_raw
from ..logging import get_logger
from ..vision.jsonparse import clean_json_text

LOG = get_logger("discount-calculator")

CALCULATION_PROMPT = """
Calculate the final price of a product after applying a discount. Handle every discount format.

ORIGINAL PRICE: {original_price}
DISCOUNT DESCRIPTION: "{discount_text}"

DISCOUNT FORMATS:
- Percentage off, e.g. "20% off", "-15%": reduce the original price by that percentage
- Fixed amount off, e.g. "100 den off", "save 50": subtract the amount from the original price
- Multi-buy, e.g. "buy 2 get 1 free", "3 for 2": return the effective price of a single item
- Fixed final price, e.g. "now only 199": that number is the new price

Respond with a JSON object in this exact format:
{{
  "newPrice": number,
  "calculationDetails": "short explanation of how the price was calculated"
}}

If the discount description is unclear, set newPrice to the original price and explain why.
Return ONLY valid JSON with no additional text.
""".strip()


@dataclass(frozen=True)
class DiscountCalculation:
    new_price: float
    details: str
    # False when the original price was kept because the model gave no usable answer
    calculated: bool = True


def build_calculation_prompt(original_price: float, discount_text: str) -> str:
    return CALCULATION_PROMPT.format(original_price=original_price, discount_text=discount_text)


def parse_calculation(text: str) -> Optional[DiscountCalculation]:
    """Validated price from a model reply, or None when the reply is unusable."""
    try:
        payload = json.loads(clean_json_text(text or ""))
    except ValueError:
        return None
    if not isinstance(payload, dict):
        return None
    price = payload.get("newPrice")
    details = payload.get("calculationDetails")
    if isinstance(price, bool) or not isinstance(price, (int, float)) or not math.isfinite(price) or price < 0:
        return None
    if not isinstance(details, str) or not details.strip():
        return None
    return DiscountCalculation(round_money(float(price)), details.strip())


class DiscountCalculator:
    """Turn free-form flyer discount wording into a concrete price."""

    def __init__(self, language_client: Any) -> None:
        self.llm = language_client

    def calculate(self, original_price: float, discount_text: str) -> DiscountCalculation:
        prompt = build_calculation_prompt(original_price, discount_text)
        try:
            text = self.llm.complete(prompt, operation="discount-calculation", max_tokens=500)
        except FlyerPipelineError as exc:
            LOG.error("Discount calculation failed for %r: %s", discount_text, exc)
            return self._fallback(original_price, str(exc))

        calculation = parse_calculation(text)
        if calculation is None:
            LOG.error("Unusable discount calculation reply (first 500 chars: %r)", truncate_raw(text))
            return self._fallback(original_price, "unusable response")
        LOG.info("Calculated %s -> %s from %r", original_price, calculation.new_price, discount_text)
        return calculation

    @staticmethod
    def _fallback(original_price: float, reason: str) -> DiscountCalculation:
        return DiscountCalculation(
            original_price,
            f"AI calculation failed: {reason}. Using original price.",
            calculated=False,
        )
