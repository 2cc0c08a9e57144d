import json

import pytest

from conftest import FakeLLM

from flyer_discounts.domain.status import MatchingStatus
from flyer_discounts.errors import MatchParseError
from flyer_discounts.orchestrator.matching import (
    DEFAULT_REASON,
    MatchingScorer,
    MatchParseFailure,
    ParsedMatches,
    build_match_prompt,
    parse_match_response,
    run_matching_stage,
)


def test_parses_fenced_response_with_prose_and_trailing_commas():
    text = """Sure! Here are the scores:
```json
[
  {"productId": "p1", "relevanceScore": 0.4, "matchReason": "same category"},
  {"productId": "p2", "relevanceScore": 0.9, "matchReason": "same brand and size"},
]
```
Let me know if you need more."""
    parsed = parse_match_response(text)

    assert isinstance(parsed, ParsedMatches)
    assert [m.product_id for m in parsed.matches] == ["p2", "p1"]
    assert parsed.matches[0].match_reason == "same brand and size"


def test_scores_are_clamped_and_reason_defaults():
    text = json.dumps(
        [
            {"productId": "p1", "relevanceScore": 1.7},
            {"productId": "p2", "relevanceScore": -0.3, "matchReason": ""},
        ]
    )
    parsed = parse_match_response(text)
    assert [(m.product_id, m.relevance_score) for m in parsed.matches] == [("p1", 1.0), ("p2", 0.0)]
    assert all(m.match_reason == DEFAULT_REASON for m in parsed.matches)


def test_ids_not_offered_are_dropped():
    text = json.dumps(
        [
            {"productId": "p1", "relevanceScore": 0.8},
            {"productId": "invented", "relevanceScore": 0.95},
        ]
    )
    parsed = parse_match_response(text, ["p1", "p2"])
    assert [m.product_id for m in parsed.matches] == ["p1"]
    assert parsed.dropped == 1


@pytest.mark.parametrize(
    "text",
    [
        "I could not find any matches.",
        '{"productId": "p1", "relevanceScore": 0.5}',
        '[{"productId": "", "relevanceScore": 0.5}]',
        '[{"productId": "p1", "relevanceScore": "high"}]',
        '[{"productId": "p1", "relevanceScore": true}]',
        '[{"productId": 7, "relevanceScore": 0.5}]',
        '[{"productId": "p1", "relevanceScore": 0.9}, {"productId": "p2", "relevanceScore": NaN}]',
        '[{"productId": "p1", "relevanceScore": Infinity}]',
    ],
)
def test_invalid_responses_become_failures(text):
    assert isinstance(parse_match_response(text), MatchParseFailure)


def test_prompt_lists_every_candidate(make_item, make_product):
    item = make_item("Milk 1L", additional_info=["1 liter", "3.2% fat"])
    candidates = [make_product("p1", "Fresh Milk 1L"), make_product("p2", "Chocolate Milk")]
    prompt = build_match_prompt(item, candidates)
    assert "- ID: p1" in prompt and "- ID: p2" in prompt
    assert "Additional Info: 1 liter, 3.2% fat" in prompt


def test_scorer_calls_model_once_and_ranks(make_item, make_product):
    item = make_item("Milk 1L")
    candidates = [make_product("p1", "Fresh Milk 1L"), make_product("p2", "Chocolate Milk")]
    llm = FakeLLM(
        lambda _: '[{"productId": "p2", "relevanceScore": 0.3}, {"productId": "p1", "relevanceScore": 0.92, "matchReason": "same"}]'
    )
    matches = MatchingScorer(llm).score_matches(item, candidates)

    assert len(llm.prompts) == 1
    assert llm.operations == ["product-match"]
    assert [m.product_id for m in matches] == ["p1", "p2"]


def test_scorer_skips_model_without_candidates(make_item):
    llm = FakeLLM(lambda _: "[]")
    assert MatchingScorer(llm).score_matches(make_item("Milk"), []) == []
    assert llm.prompts == []


def test_parse_error_carries_truncated_raw(make_item, make_product):
    garbage = "no json here " * 100
    llm = FakeLLM(lambda _: garbage)
    with pytest.raises(MatchParseError) as info:
        MatchingScorer(llm).score_matches(make_item("Milk"), [make_product("p1", "Milk")])
    assert info.value.raw.startswith("no json here")
    assert len(info.value.raw) == 503


def test_matching_stage_persists_ranked_matches(db, make_item, make_product):
    item = make_item("Milk 1L")
    candidates = [make_product("p1", "Fresh Milk 1L")]
    llm = FakeLLM(lambda _: '[{"productId": "p1", "relevanceScore": 0.9, "matchReason": "same"}]')

    run_matching_stage(db, MatchingScorer(llm), item, candidates)

    stored = db.require_parsed_item(item.id)
    assert stored.matching_status == MatchingStatus.COMPLETED
    assert stored.matched_products[0].product_id == "p1"
    assert stored.matched_products[0].matched_at


def test_matching_stage_records_failure_and_reraises(db, make_item, make_product):
    item = make_item("Milk 1L")
    llm = FakeLLM(lambda _: "sorry")
    with pytest.raises(MatchParseError):
        run_matching_stage(db, MatchingScorer(llm), item, [make_product("p1", "Milk")])

    stored = db.require_parsed_item(item.id)
    assert stored.matching_status == MatchingStatus.FAILED
    assert "Failed to parse AI response" in stored.matching_error


def test_failed_matching_can_run_again(db, make_item, make_product):
    item = make_item("Milk 1L")
    product = make_product("p1", "Milk")
    with pytest.raises(MatchParseError):
        run_matching_stage(db, MatchingScorer(FakeLLM(lambda _: "sorry")), item, [product])

    ok = FakeLLM(lambda _: '[{"productId": "p1", "relevanceScore": 0.7}]')
    run_matching_stage(db, MatchingScorer(ok), db.require_parsed_item(item.id), [product])
    assert db.require_parsed_item(item.id).matching_status == MatchingStatus.COMPLETED
