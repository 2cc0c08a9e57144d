from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from ..catalog.db import FlyerDatabase, utc_now
from ..catalog.discounts import DiscountResult, DiscountTransactionManager
from ..domain.models import CatalogProduct, ParsedItem
from ..domain.pricing import calculate_discount_percentage
from ..errors import FlyerPipelineError, InvalidInput, NotFound, TransactionConflict, truncate_raw
from ..logging import get_logger
from ..vision.jsonparse import clean_json_text
from .calculator import DiscountCalculator

LOG = get_logger("auto-approval")

AUTO_APPLIED_BY = "auto-approval"
NO_RULE_REASON = "No active auto-approval rule configured"

APPROVAL_PROMPT = """
You are an AI assistant that determines whether to automatically approve product matches based on specific criteria.

FLYER PRODUCT:
Name: {flyer_name}
Macedonian Name: {flyer_name_mk}
Additional Info: {flyer_info}
Additional Info (Macedonian): {flyer_info_mk}

DATABASE PRODUCT:
Name: {db_name}
Macedonian Name: {db_name_mk}
Description: {db_description}
Category: {db_category}

AUTO-APPROVAL CRITERIA:
Match relevance score from the ranking step: {relevance:.2f}

CUSTOM INSTRUCTIONS:
{instructions}

Based on the above criteria and instructions, analyze the match between the flyer product and database product.

Respond with a JSON object in this exact format:
{{
  "shouldAutoApprove": boolean,
  "confidence": number (0.0 to 1.0),
  "reasoning": "detailed explanation of your decision",
  "matchedFields": ["array", "of", "field", "names", "that", "matched", "criteria"]
}}

Be strict with the criteria. Only auto-approve if the match clearly meets the specified requirements.
""".strip()


@dataclass(frozen=True)
class ApprovalDecision:
    should_auto_approve: bool
    confidence: float
    reasoning: str
    matched_fields: List[str] = field(default_factory=list)

    @classmethod
    def rejected(cls, reasoning: str) -> "ApprovalDecision":
        return cls(False, 0.0, reasoning, [])

    def as_dict(self) -> Dict[str, Any]:
        return {
            "shouldAutoApprove": self.should_auto_approve,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
            "matchedFields": list(self.matched_fields),
        }


def parse_decision(text: str) -> ApprovalDecision:
    """Validate the model's verdict; malformed output becomes a rejection."""
    cleaned = clean_json_text(text or "")
    try:
        payload = json.loads(cleaned)
    except ValueError as exc:
        LOG.error("Auto-approval JSON parsing error: %s (first 500 chars: %r)", exc, truncate_raw(text))
        return ApprovalDecision.rejected(f"Failed to parse AI response: {exc}")
    if not isinstance(payload, dict):
        return ApprovalDecision.rejected("Failed to parse AI response: not an object")

    approve = payload.get("shouldAutoApprove")
    confidence = payload.get("confidence")
    reasoning = payload.get("reasoning")
    fields = payload.get("matchedFields")
    problem = None
    if not isinstance(approve, bool):
        problem = "Invalid shouldAutoApprove value"
    elif isinstance(confidence, bool) or not isinstance(confidence, (int, float)) or not 0 <= confidence <= 1:
        problem = "Invalid confidence value"
    elif not isinstance(reasoning, str) or not reasoning.strip():
        problem = "Invalid reasoning value"
    elif not isinstance(fields, list):
        problem = "Invalid matchedFields value"
    if problem:
        LOG.error("Auto-approval response rejected: %s", problem)
        return ApprovalDecision.rejected(f"Failed to parse AI response: {problem}")
    return ApprovalDecision(approve, float(confidence), reasoning.strip(), [str(f) for f in fields])


def build_approval_prompt(
    item: ParsedItem, product: CatalogProduct, relevance: float, instructions: str
) -> str:
    return APPROVAL_PROMPT.format(
        flyer_name=item.product_name or "",
        flyer_name_mk=item.product_name_mk or "",
        flyer_info=", ".join(item.additional_info),
        flyer_info_mk=", ".join(item.additional_info_mk),
        db_name=product.name or "",
        db_name_mk=product.name_mk or "",
        db_description=product.description or "",
        db_category=product.category or "",
        relevance=relevance,
        instructions=instructions,
    )


class AutoApprovalEvaluator:
    """Ask the model whether the top match may be discounted without an operator."""

    def __init__(
        self,
        language_client: Any,
        db: FlyerDatabase,
        *,
        manager: Optional[DiscountTransactionManager] = None,
        calculator: Optional[DiscountCalculator] = None,
        min_confidence: float = 0.8,
    ) -> None:
        self.llm = language_client
        self.db = db
        self.manager = manager or DiscountTransactionManager(db)
        self.calculator = calculator or DiscountCalculator(language_client)
        self.min_confidence = min_confidence

    def evaluate(self, item: ParsedItem, product: CatalogProduct, relevance: float) -> ApprovalDecision:
        rule = self.db.active_auto_approval_rule()
        if not rule:
            LOG.info("No active auto-approval rule found")
            return ApprovalDecision.rejected(NO_RULE_REASON)
        LOG.info("Using auto-approval rule %r", rule["name"])
        prompt = build_approval_prompt(item, product, relevance, rule["prompt"])
        try:
            text = self.llm.complete(prompt, operation="auto-approval")
        except FlyerPipelineError as exc:
            LOG.error("Auto-approval evaluation failed: %s", exc)
            return ApprovalDecision.rejected(f"Auto-approval evaluation failed: {exc}")
        decision = parse_decision(text)
        LOG.info(
            "Auto-approval decision: %s (confidence %.2f)",
            "APPROVE" if decision.should_auto_approve else "REJECT",
            decision.confidence,
        )
        return decision

    def review(self, item: ParsedItem) -> Optional[DiscountResult]:
        """Evaluate the item's best match, record the verdict, apply the discount if approved."""
        if item.verified or not item.matched_products:
            return None
        top = item.matched_products[0]
        product = self.db.get_product(top.product_id)
        if product is None:
            LOG.warning("Top match %s for %s is not in the catalog", top.product_id, item.product_name)
            return None

        decision = self.evaluate(item, product, top.relevance_score)
        approved = decision.should_auto_approve and decision.confidence >= self.min_confidence
        record: Dict[str, Any] = dict(decision.as_dict(), productId=product.product_id, evaluatedAt=utc_now())
        if not approved:
            record["outcome"] = "rejected"
            self.db.record_auto_approval(item.id, record)
            return None

        pct, details = self._discount_for(item, product)
        result = None
        if pct <= 0:
            record["outcome"] = "no-discount"
            LOG.info("%s auto-matched but the flyer shows no discount", item.product_name)
        else:
            try:
                result = self.manager.apply_discount(
                    item.id,
                    product.product_id,
                    pct,
                    applied_by=AUTO_APPLIED_BY,
                    auto=True,
                    confidence=top.relevance_score,
                    calculation_details=details,
                    keep_better_existing=True,
                )
            except TransactionConflict as exc:
                LOG.warning("Auto-approval of %s lost to another item: %s", item.product_name, exc)
                record["outcome"] = "conflict"
            except (InvalidInput, NotFound) as exc:
                LOG.warning("Auto-approval of %s could not be applied: %s", item.product_name, exc)
                record["outcome"] = "invalid"
                record["error"] = str(exc)
            else:
                record["outcome"] = "existing-better" if result.kept_existing else "applied"
                record["discountPercentage"] = pct
        if details:
            record["calculationDetails"] = details

        self.db.record_auto_approval(item.id, record)
        return result

    def _discount_for(self, item: ParsedItem, product: CatalogProduct) -> Tuple[float, Optional[str]]:
        """Percentage to apply, from the flyer prices or else from the discount wording."""
        if item.has_structured_discount:
            pct = calculate_discount_percentage(item.old_price, item.discount_price)
            return pct, f"Calculated from flyer's old price ({item.old_price}) and discount price ({item.discount_price})."
        if item.discount_text and product.old_price:
            calculation = self.calculator.calculate(product.old_price, item.discount_text)
            return calculate_discount_percentage(product.old_price, calculation.new_price), calculation.details
        return 0, None
