from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, List, Optional

from ..domain.models import ParsedItem
from ..domain.names import normalize_prefixes
from ..domain.pricing import to_price
from ..errors import FlyerParseError
from ..logging import get_logger
from ..vision.jsonparse import clean_json_text

LOG = get_logger("flyer-parser")

PARSE_PROMPT = """
You are an expert at analyzing retail store flyers and extracting individual product offers with MULTILINGUAL SUPPORT.

Analyze this flyer image and identify DISTINCT PRODUCTS, extracting both English AND Macedonian text when present:

1. Only extract products that have a clear product image, pricing near the image and a matching product name.
2. When several related products share a single price, combine their names with " + " and add "(COMBO)".
3. Do NOT extract category headers, text-only mentions or several entries for the same visual product.
4. Extract Macedonian product names when visible in Cyrillic script.

Return a JSON array with this exact structure for each DISTINCT VISUAL PRODUCT:

[
  {
    "product_name": "Vero Jam Strawberry 500g",
    "product_name_mk": "Веро Џем Јагода 500г",
    "product_name_prefixes": ["V", "Ve", "Ver", "Vero", "Vero ", "Vero J", "...", "Vero Jam Strawberry 500g"],
    "discount_price": 2.99,
    "discount_text": "40% OFF",
    "discount_start_date": "2024-01-15",
    "discount_end_date": "2024-01-31",
    "old_price": 4.99,
    "currency": "MKD",
    "additional_info": ["500g jar", "Strawberry flavor"],
    "additional_info_mk": ["500г тегла", "Вкус на јагода"]
  }
]

Schema requirements:
- product_name: string (required)
- product_name_mk: string (optional)
- product_name_prefixes: string[] (required) - growing character prefixes of product_name ending with the full name
- discount_price: number (optional) - sale price if different from regular price
- discount_text: string (optional) - raw discount text from the flyer
- discount_start_date / discount_end_date: string (optional) - YYYY-MM-DD
- old_price: number (required) - regular/original price
- currency: string (required) - 3-letter code (MKD, EUR, USD, ...); "ден" means MKD
- additional_info / additional_info_mk: string[] (optional)

IF NO PRODUCTS CAN BE EXTRACTED return:
{"error": "NO_PRODUCTS_FOUND", "reason": "Brief explanation"}

RETURN ONLY VALID JSON. NO comments, NO trailing commas.
""".strip()


@dataclass(frozen=True)
class FlyerRecord:
    product_name: str
    old_price: float
    currency: str
    product_name_prefixes: List[str] = field(default_factory=list)
    product_name_mk: Optional[str] = None
    discount_price: Optional[float] = None
    discount_text: Optional[str] = None
    discount_start_date: Optional[str] = None
    discount_end_date: Optional[str] = None
    additional_info: List[str] = field(default_factory=list)
    additional_info_mk: List[str] = field(default_factory=list)

    def to_parsed_item(self, item_id: str, flyer_image_id: str) -> ParsedItem:
        return ParsedItem(
            id=item_id,
            flyer_image_id=flyer_image_id,
            product_name=self.product_name,
            product_name_mk=self.product_name_mk,
            product_name_prefixes=list(self.product_name_prefixes),
            old_price=self.old_price,
            discount_price=self.discount_price,
            discount_text=self.discount_text,
            currency=self.currency,
            discount_start_date=self.discount_start_date,
            discount_end_date=self.discount_end_date,
            additional_info=list(self.additional_info),
            additional_info_mk=list(self.additional_info_mk),
        )


def _positive_price(value: Any, field_name: str, index: int) -> float:
    price = to_price(value)
    if price is None or price <= 0:
        raise FlyerParseError(f"Invalid {field_name} for item {index}: received {value!r}")
    return price


def _string_list(value: Any, field_name: str, index: int) -> List[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise FlyerParseError(f"Invalid {field_name} for item {index}")
    return [str(v).strip() for v in value if v is not None and str(v).strip()]


def _optional_text(value: Any, field_name: str, index: int) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise FlyerParseError(f"Invalid {field_name} for item {index}")
    return value.strip() or None


def validate_record(raw: Any, index: int) -> FlyerRecord:
    if not isinstance(raw, dict):
        raise FlyerParseError(f"Item {index} is not an object")
    name = raw.get("product_name")
    if not isinstance(name, str) or not name.strip():
        raise FlyerParseError(f"Invalid product_name for item {index}")
    name = name.strip()

    if raw.get("old_price") is None:
        raise FlyerParseError(f"Missing old_price for item {index}")
    old_price = _positive_price(raw.get("old_price"), "old_price", index)
    discount_price = None
    if raw.get("discount_price") is not None:
        discount_price = _positive_price(raw.get("discount_price"), "discount_price", index)

    currency = raw.get("currency")
    if not isinstance(currency, str) or not currency.strip():
        raise FlyerParseError(f"Invalid or missing currency for item {index}")

    prefixes = raw.get("product_name_prefixes")
    if prefixes is not None and not isinstance(prefixes, list):
        raise FlyerParseError(f"Invalid product_name_prefixes for item {index}")
    checked = normalize_prefixes(name, prefixes)
    if prefixes and prefixes[-1] != name:
        LOG.debug("Prefix sequence for item %d does not end with the full name; regenerated", index)

    return FlyerRecord(
        product_name=name,
        old_price=old_price,
        currency=currency.strip().upper(),
        product_name_prefixes=checked,
        product_name_mk=_optional_text(raw.get("product_name_mk"), "product_name_mk", index),
        discount_price=discount_price,
        discount_text=_optional_text(raw.get("discount_text"), "discount_text", index),
        discount_start_date=_optional_text(raw.get("discount_start_date"), "discount_start_date", index),
        discount_end_date=_optional_text(raw.get("discount_end_date"), "discount_end_date", index),
        additional_info=_string_list(raw.get("additional_info"), "additional_info", index),
        additional_info_mk=_string_list(raw.get("additional_info_mk"), "additional_info_mk", index),
    )


def parse_flyer_response(text: str) -> List[FlyerRecord]:
    """Validate a flyer-parse response; raises FlyerParseError with the raw text attached."""
    cleaned = clean_json_text(text or "")
    if not cleaned.startswith(("[", "{")):
        raise FlyerParseError("Response does not appear to be valid JSON", raw=text)
    try:
        payload = json.loads(cleaned)
    except ValueError as exc:
        raise FlyerParseError(f"Response is not valid JSON: {exc}", raw=text) from exc

    if isinstance(payload, dict) and "error" in payload:
        raise FlyerParseError(f"{payload['error']}: {payload.get('reason') or 'No specific reason provided'}", raw=text)
    if isinstance(payload, dict):
        payload = [payload]

    try:
        return [validate_record(entry, index) for index, entry in enumerate(payload, start=1)]
    except FlyerParseError as exc:
        raise FlyerParseError(str(exc), raw=text) from exc


class FlyerParser:
    def __init__(self, language_client: Any) -> None:
        self.llm = language_client

    def parse(self, image_bytes: bytes) -> List[FlyerRecord]:
        text = self.llm.complete_with_image(PARSE_PROMPT, image_bytes, operation="flyer-parse", max_tokens=16000)
        LOG.info("Raw flyer-parse response length: %d", len(text or ""))
        records = parse_flyer_response(text)
        LOG.info("Parsed %d products from flyer", len(records))
        return records
