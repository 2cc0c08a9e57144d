import json

import pytest

from conftest import FakeLLM

from flyer_discounts.errors import FlyerParseError
from flyer_discounts.orchestrator.parsing import FlyerParser, parse_flyer_response


def _record(**overrides):
    base = {
        "product_name": "Vero Jam Strawberry 500g",
        "product_name_mk": "Веро Џем Јагода 500г",
        "product_name_prefixes": ["V", "Ve", "Vero Jam Strawberry 500g"],
        "discount_price": 2.99,
        "discount_text": "40% OFF",
        "discount_start_date": "2024-01-15",
        "discount_end_date": "2024-01-31",
        "old_price": 4.99,
        "currency": "mkd",
        "additional_info": ["500g jar", None, "  "],
    }
    base.update(overrides)
    return base


def test_parses_array_of_records():
    records = parse_flyer_response("```json\n" + json.dumps([_record(), _record(product_name="Bread")]) + "\n```")

    assert len(records) == 2
    jam = records[0]
    assert jam.old_price == 4.99
    assert jam.discount_price == 2.99
    assert jam.currency == "MKD"
    assert jam.product_name_prefixes == ["V", "Ve", "Vero Jam Strawberry 500g"]
    assert jam.additional_info == ["500g jar"]
    assert jam.product_name_mk == "Веро Џем Јагода 500г"


def test_single_object_is_wrapped():
    records = parse_flyer_response(json.dumps(_record()))
    assert len(records) == 1


def test_prefixes_regenerated_when_not_ending_with_full_name():
    records = parse_flyer_response(json.dumps([_record(product_name="Bread", product_name_prefixes=["X", "Y"])]))
    assert records[0].product_name_prefixes == ["B", "Br", "Bre", "Brea", "Bread"]


def test_prices_may_arrive_as_text():
    records = parse_flyer_response(json.dumps([_record(old_price="129,90 ден", discount_price=None)]))
    assert records[0].old_price == 129.9
    assert records[0].discount_price is None


def test_error_object_raises_with_reason():
    with pytest.raises(FlyerParseError) as info:
        parse_flyer_response('{"error": "NO_PRODUCTS_FOUND", "reason": "Image is a store logo"}')
    assert "NO_PRODUCTS_FOUND: Image is a store logo" in str(info.value)


@pytest.mark.parametrize(
    "record",
    [
        _record(product_name=""),
        _record(old_price=None),
        _record(old_price=0),
        _record(discount_price=-1),
        _record(currency=None),
        _record(additional_info="not a list"),
    ],
)
def test_invalid_records_raise(record):
    with pytest.raises(FlyerParseError) as info:
        parse_flyer_response(json.dumps([record]))
    assert info.value.raw


def test_non_json_raises():
    with pytest.raises(FlyerParseError):
        parse_flyer_response("I see a flyer with milk on it.")


def test_records_become_parsed_items():
    record = parse_flyer_response(json.dumps([_record()]))[0]
    item = record.to_parsed_item("f1-001", "f1")
    assert item.flyer_image_id == "f1"
    assert item.has_structured_discount


def test_parser_sends_image_with_prompt():
    llm = FakeLLM(lambda _: json.dumps([_record()]))
    records = FlyerParser(llm).parse(b"\x89PNG....")
    assert len(records) == 1
    assert llm.operations == ["flyer-parse"]
    assert "RETURN ONLY VALID JSON" in llm.prompts[0]
