import json

import pytest

from conftest import FakeLLM

from flyer_discounts.domain.models import MatchedProduct
from flyer_discounts.domain.status import MatchingStatus
from flyer_discounts.errors import UpstreamQuotaExceeded, UpstreamServerError
from flyer_discounts.orchestrator.approval import (
    NO_RULE_REASON,
    AutoApprovalEvaluator,
    build_approval_prompt,
    parse_decision,
)
from flyer_discounts.orchestrator.calculator import DiscountCalculator, parse_calculation


def _verdict(approve=True, confidence=0.9, **extra):
    body = {"shouldAutoApprove": approve, "confidence": confidence, "reasoning": "Brand and size match", "matchedFields": ["name"]}
    body.update(extra)
    return json.dumps(body)


def _matched(db, item, product_id, score=0.9):
    db.set_matching_status(item.id, MatchingStatus.PROCESSING)
    db.set_matching_status(
        item.id, MatchingStatus.COMPLETED, matches=[MatchedProduct(product_id, score, "same").as_dict()]
    )
    return db.require_parsed_item(item.id)


@pytest.fixture
def rule(db):
    return db.add_auto_approval_rule("strict", "Approve only identical brand and size.")


def test_parse_decision_accepts_valid_verdict():
    decision = parse_decision("```json\n" + _verdict() + "\n```")
    assert decision.should_auto_approve
    assert decision.confidence == 0.9
    assert decision.matched_fields == ["name"]


@pytest.mark.parametrize(
    "text",
    [
        "maybe?",
        "[]",
        _verdict(approve="yes"),
        _verdict(confidence=1.5),
        _verdict(confidence=True),
        _verdict(reasoning=""),
        _verdict(matchedFields="name"),
    ],
)
def test_parse_decision_rejects_malformed_output(text):
    decision = parse_decision(text)
    assert not decision.should_auto_approve
    assert decision.confidence == 0.0
    assert decision.reasoning.startswith("Failed to parse AI response")


def test_prompt_carries_rule_and_score(make_item, make_product):
    item = make_item("Milk 1L", additional_info=["1 liter"])
    prompt = build_approval_prompt(item, make_product("P", "Fresh Milk 1L", category="Dairy"), 0.874, "Be strict")
    assert "Match relevance score from the ranking step: 0.87" in prompt
    assert "Category: Dairy" in prompt
    assert "Be strict" in prompt


def test_without_rule_nothing_is_asked(db, make_item, make_product):
    item = make_item("Milk")
    product = make_product("P", "Milk")
    llm = FakeLLM(lambda _: _verdict())
    decision = AutoApprovalEvaluator(llm, db).evaluate(item, product, 0.9)
    assert decision.reasoning == NO_RULE_REASON
    assert llm.prompts == []


def test_upstream_failure_becomes_rejection(db, rule, make_item, make_product):
    def fail(_):
        raise UpstreamServerError("Server error for auto-approval: 503", status_code=503)

    decision = AutoApprovalEvaluator(FakeLLM(fail), db).evaluate(make_item("Milk"), make_product("P", "Milk"), 0.9)
    assert not decision.should_auto_approve
    assert decision.reasoning.startswith("Auto-approval evaluation failed")


def test_confident_approval_applies_flyer_discount(db, rule, make_item, make_product):
    make_product("P", "Milk", old_price=120.0)
    item = _matched(db, make_item("Milk", old_price=100.0, discount_price=75.0), "P")

    result = AutoApprovalEvaluator(FakeLLM(lambda _: _verdict()), db).review(item)

    assert result is not None and result.discount_percentage == 25
    stored = db.require_parsed_item(item.id)
    assert stored.auto_discount_applied
    assert stored.auto_approval["outcome"] == "applied"
    assert stored.auto_approval["productId"] == "P"
    assert db.get_product("P").new_price == 90.0


def test_low_confidence_is_recorded_but_not_applied(db, rule, make_item, make_product):
    make_product("P", "Milk")
    item = _matched(db, make_item("Milk"), "P")

    result = AutoApprovalEvaluator(FakeLLM(lambda _: _verdict(confidence=0.6)), db).review(item)

    assert result is None
    stored = db.require_parsed_item(item.id)
    assert stored.auto_approval["outcome"] == "rejected"
    assert stored.auto_approval["confidence"] == 0.6
    assert not db.get_product("P").has_active_discount


def test_conflict_is_recorded(db, rule, make_item, make_product):
    make_product("P", "Milk")
    holder, late = make_item("Milk"), make_item("Milk promo")
    evaluator = AutoApprovalEvaluator(FakeLLM(lambda _: _verdict()), db)
    evaluator.manager.apply_discount(holder.id, "P", 10)

    assert evaluator.review(_matched(db, late, "P")) is None
    assert db.require_parsed_item(late.id).auto_approval["outcome"] == "conflict"
    assert db.get_product("P").discount_source.parsed_item_id == holder.id


def test_verified_items_are_not_reviewed(db, rule, make_item, make_product):
    make_product("P", "Milk")
    item = _matched(db, make_item("Milk"), "P")
    db.set_verified(item.id)
    llm = FakeLLM(lambda _: _verdict())
    assert AutoApprovalEvaluator(llm, db).review(db.require_parsed_item(item.id)) is None
    assert llm.prompts == []


def test_applied_discount_records_match_confidence(db, rule, make_item, make_product):
    make_product("P", "Milk", old_price=120.0)
    item = _matched(db, make_item("Milk", old_price=100.0, discount_price=75.0), "P", score=0.87)

    AutoApprovalEvaluator(FakeLLM(lambda _: _verdict()), db).review(item)

    source = db.get_product("P").discount_source
    assert source.confidence == 0.87
    assert source.applied_by == "auto-approval"
    assert "old price (100.0)" in source.calculation_details


def test_existing_better_discount_is_left_in_place(db, rule, make_item, make_product):
    make_product("P", "Milk", old_price=100.0)
    holder, late = make_item("Milk"), make_item("Milk promo", old_price=100.0, discount_price=90.0)
    evaluator = AutoApprovalEvaluator(FakeLLM(lambda _: _verdict()), db)
    evaluator.manager.apply_discount(holder.id, "P", 30)

    evaluator.review(_matched(db, late, "P"))

    stored = db.require_parsed_item(late.id)
    assert stored.auto_approval["outcome"] == "existing-better"
    assert not stored.discount_applied
    assert db.get_product("P").discount_percentage == 30


def test_unappliable_discount_is_recorded_not_raised(db, rule, make_item, make_product):
    make_product("P", "Milk", old_price=None)
    item = _matched(db, make_item("Milk"), "P")

    assert AutoApprovalEvaluator(FakeLLM(lambda _: _verdict()), db).review(item) is None

    record = db.require_parsed_item(item.id).auto_approval
    assert record["outcome"] == "invalid"
    assert "no base price" in record["error"]


def _verdict_or_price(price_reply):
    def respond(prompt):
        if prompt.startswith("Calculate the final price"):
            return price_reply
        return _verdict()

    return respond


def test_discount_wording_is_priced_by_the_model(db, rule, make_item, make_product):
    make_product("P", "Milk", old_price=200.0)
    item = _matched(db, make_item("Milk", old_price=None, discount_price=None, discount_text="-25%"), "P")
    llm = FakeLLM(_verdict_or_price('{"newPrice": 150, "calculationDetails": "25% off 200"}'))

    result = AutoApprovalEvaluator(llm, db).review(item)

    assert result is not None and result.discount_percentage == 25
    assert llm.operations == ["auto-approval", "discount-calculation"]
    assert 'DISCOUNT DESCRIPTION: "-25%"' in llm.prompts[1]
    product = db.get_product("P")
    assert product.new_price == 150.0
    assert product.discount_source.calculation_details == "25% off 200"
    assert db.require_parsed_item(item.id).auto_approval["calculationDetails"] == "25% off 200"


def test_unusable_price_reply_applies_nothing(db, rule, make_item, make_product):
    make_product("P", "Milk", old_price=200.0)
    item = _matched(db, make_item("Milk", old_price=None, discount_price=None, discount_text="great deal"), "P")

    result = AutoApprovalEvaluator(FakeLLM(_verdict_or_price("no idea")), db).review(item)

    assert result is None
    record = db.require_parsed_item(item.id).auto_approval
    assert record["outcome"] == "no-discount"
    assert record["calculationDetails"].startswith("AI calculation failed")
    assert not db.get_product("P").has_active_discount


def test_structured_prices_take_precedence_over_wording(db, rule, make_item, make_product):
    make_product("P", "Milk", old_price=120.0)
    item = _matched(db, make_item("Milk", old_price=100.0, discount_price=80.0, discount_text="2 for 1"), "P")
    llm = FakeLLM(lambda _: _verdict())

    result = AutoApprovalEvaluator(llm, db).review(item)

    assert result.discount_percentage == 20
    assert llm.operations == ["auto-approval"]


@pytest.mark.parametrize(
    "text,price",
    [
        ('{"newPrice": 79.999, "calculationDetails": "20% off"}', 80.0),
        ('Sure!\n```json\n{"newPrice": 50, "calculationDetails": "buy 2 get 1",}\n```', 50.0),
    ],
)
def test_parse_calculation_accepts_valid_replies(text, price):
    calculation = parse_calculation(text)
    assert calculation.new_price == price
    assert calculation.calculated


@pytest.mark.parametrize(
    "text",
    [
        "",
        "[]",
        '{"newPrice": "cheap", "calculationDetails": "x"}',
        '{"newPrice": -5, "calculationDetails": "x"}',
        '{"newPrice": NaN, "calculationDetails": "x"}',
        '{"newPrice": true, "calculationDetails": "x"}',
        '{"newPrice": 10, "calculationDetails": ""}',
    ],
)
def test_parse_calculation_rejects_unusable_replies(text):
    assert parse_calculation(text) is None


def test_calculator_falls_back_to_original_price_on_upstream_error():
    def fail(_):
        raise UpstreamQuotaExceeded("Rate limited", status_code=429)

    calculation = DiscountCalculator(FakeLLM(fail)).calculate(120.0, "-10%")
    assert calculation.new_price == 120.0
    assert not calculation.calculated
    assert calculation.details.startswith("AI calculation failed: Rate limited")
