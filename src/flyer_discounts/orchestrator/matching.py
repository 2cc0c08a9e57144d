from __future__ import annotations

import json
import math
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Sequence, Tuple, Union

from ..catalog.db import FlyerDatabase, utc_now
from ..domain.models import CatalogProduct, MatchedProduct, ParsedItem
from ..domain.status import MatchingStatus
from ..errors import MatchParseError, truncate_raw
from ..logging import get_logger
from ..vision.jsonparse import clean_json_text

LOG = get_logger("matching-scorer")

DEFAULT_REASON = "No reason provided"

MATCH_PROMPT = """
You are an expert retail product matcher that specializes in determining the relevance between a flyer product and database products.

TASK: Score how well a FLYER PRODUCT matches potential DATABASE PRODUCTS on a scale from 0.0 to 1.0.

FLYER PRODUCT:
- Name: {name}
- Name (Macedonian): {name_mk}
- Additional Info: {info}
- Additional Info (Macedonian): {info_mk}

POTENTIAL DATABASE MATCHES:
{candidates}

SCORING GUIDELINES:
- 0.0-0.2: No match or extremely weak connection (different product categories)
- 0.3-0.5: Partial match (same category but different products)
- 0.6-0.7: Good match (likely the same product with some differences)
- 0.8-0.9: Strong match (almost certainly the same product)
- 1.0: Perfect match (identical products)

MATCHING FACTORS (in order of importance):
1. Product name similarity (accounting for brand, type, variant)
2. Product category alignment
3. Size/weight/quantity match
4. Brand match
5. Flavor/variant match

MULTILINGUAL MATCHING:
- Consider both English and Macedonian text when available
- Match across languages (e.g., "Apple" in English matches "Јаболко" in Macedonian)

OUTPUT FORMAT:
Return a JSON array with each potential match scored:
[
  {{"productId": "id1", "relevanceScore": 0.85, "matchReason": "Strong name similarity and matching brand"}},
  {{"productId": "id2", "relevanceScore": 0.45, "matchReason": "Same category but different brand and size"}}
]

IMPORTANT RULES:
- Score EACH database product individually
- Be conservative - only give high scores (0.8+) for very confident matches
- Return ONLY valid JSON with no additional text
""".strip()


@dataclass(frozen=True)
class ParsedMatches:
    matches: Tuple[MatchedProduct, ...]
    dropped: int = 0


@dataclass(frozen=True)
class MatchParseFailure:
    reason: str
    raw: str


def _format_candidate(index: int, product: CatalogProduct) -> str:
    return (
        f"PRODUCT {index}:\n"
        f"- ID: {product.product_id}\n"
        f"- Name: {product.name or ''}\n"
        f"- Name (Macedonian): {product.name_mk or ''}\n"
        f"- Description: {product.description or ''}\n"
        f"- Category: {product.category or ''}\n"
    )


def build_match_prompt(item: ParsedItem, candidates: Sequence[CatalogProduct]) -> str:
    return MATCH_PROMPT.format(
        name=item.product_name or "",
        name_mk=item.product_name_mk or "",
        info=", ".join(item.additional_info),
        info_mk=", ".join(item.additional_info_mk),
        candidates="\n".join(_format_candidate(i, p) for i, p in enumerate(candidates, start=1)),
    )


def parse_match_response(
    text: str, candidate_ids: Optional[Iterable[str]] = None
) -> Union[ParsedMatches, MatchParseFailure]:
    """Parse and validate a ranked relevance list; never raises."""
    raw = truncate_raw(text)
    cleaned = clean_json_text(text or "")
    try:
        payload = json.loads(cleaned)
    except ValueError as exc:
        return MatchParseFailure(f"Response is not valid JSON: {exc}", raw)
    if not isinstance(payload, list):
        return MatchParseFailure("Response is not an array", raw)

    allowed = set(candidate_ids) if candidate_ids is not None else None
    matches: List[MatchedProduct] = []
    dropped = 0
    for entry in payload:
        if not isinstance(entry, dict):
            return MatchParseFailure(f"Invalid match entry: {entry!r}", raw)
        product_id = entry.get("productId")
        if not isinstance(product_id, str) or not product_id:
            return MatchParseFailure(f"Invalid productId: {json.dumps(entry, ensure_ascii=False)}", raw)
        score = entry.get("relevanceScore")
        if isinstance(score, bool) or not isinstance(score, (int, float)) or not math.isfinite(score):
            return MatchParseFailure(f"Invalid relevanceScore for product {product_id}", raw)
        if allowed is not None and product_id not in allowed:
            dropped += 1
            continue
        reason = entry.get("matchReason")
        matches.append(
            MatchedProduct(
                product_id=product_id,
                relevance_score=max(0.0, min(1.0, float(score))),
                match_reason=reason if isinstance(reason, str) and reason else DEFAULT_REASON,
            )
        )

    matches.sort(key=lambda m: m.relevance_score, reverse=True)
    return ParsedMatches(matches=tuple(matches), dropped=dropped)


class MatchingScorer:
    """Rank catalog candidates for one flyer item with a single model call."""

    def __init__(self, language_client: Any) -> None:
        self.llm = language_client

    def score_matches(self, flyer_item: ParsedItem, candidates: Sequence[CatalogProduct]) -> List[MatchedProduct]:
        if not candidates:
            LOG.info("No catalog candidates for %s", flyer_item.product_name)
            return []
        prompt = build_match_prompt(flyer_item, candidates)
        text = self.llm.complete(prompt, operation="product-match")
        LOG.debug("Raw match response length: %d", len(text or ""))

        parsed = parse_match_response(text, [c.product_id for c in candidates])
        if isinstance(parsed, MatchParseFailure):
            LOG.error("Failed to parse match response: %s (first 500 chars: %r)", parsed.reason, parsed.raw)
            raise MatchParseError(f"Failed to parse AI response: {parsed.reason}", raw=text)
        if parsed.dropped:
            LOG.warning("Dropped %d matches naming products that were not offered", parsed.dropped)
        return list(parsed.matches)


def run_matching_stage(
    db: FlyerDatabase,
    scorer: MatchingScorer,
    item: ParsedItem,
    candidates: Sequence[CatalogProduct],
) -> List[MatchedProduct]:
    """Score an item and persist the outcome; failures are recorded and re-raised."""
    current = db.require_parsed_item(item.id)
    if current.matching_status != MatchingStatus.PROCESSING:
        # a redelivered event may find the item still in processing
        db.set_matching_status(item.id, MatchingStatus.PROCESSING)
    try:
        matches = scorer.score_matches(item, candidates)
    except Exception as exc:
        db.set_matching_status(item.id, MatchingStatus.FAILED, error=str(exc) or type(exc).__name__)
        raise
    now = utc_now()
    stamped = [
        MatchedProduct(m.product_id, m.relevance_score, m.match_reason, matched_at=now) for m in matches
    ]
    db.set_matching_status(
        item.id, MatchingStatus.COMPLETED, matches=[m.as_dict() for m in stamped]
    )
    LOG.info("Matched %s against %d candidates -> %d scored", item.product_name, len(candidates), len(stamped))
    return stamped
