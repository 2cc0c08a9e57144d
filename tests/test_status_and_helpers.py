import pytest

from flyer_discounts.domain.names import extract_keywords, name_prefixes, normalize_prefixes
from flyer_discounts.domain.pricing import apply_discount_percentage, calculate_discount_percentage, to_price
from flyer_discounts.domain.status import (
    ImageExtractionStatus,
    MatchingStatus,
    ProcessingStatus,
    can_transition,
    coerce,
    ensure_transition,
)
from flyer_discounts.errors import InvalidTransition


@pytest.mark.parametrize(
    "current,target,allowed",
    [
        (ProcessingStatus.PENDING, ProcessingStatus.PROCESSING, True),
        (ProcessingStatus.PENDING, ProcessingStatus.COMPLETED, False),
        (ProcessingStatus.FAILED, ProcessingStatus.PROCESSING, True),
        (ProcessingStatus.COMPLETED, ProcessingStatus.PROCESSING, False),
        (ImageExtractionStatus.PROCESSING, ImageExtractionStatus.MANUAL_REVIEW, True),
        (ImageExtractionStatus.MANUAL_REVIEW, ImageExtractionStatus.PROCESSING, False),
        (ImageExtractionStatus.FAILED, ImageExtractionStatus.PROCESSING, True),
        (ImageExtractionStatus.COMPLETED, ImageExtractionStatus.FAILED, False),
        (MatchingStatus.COMPLETED, MatchingStatus.PROCESSING, True),
        (MatchingStatus.PENDING, MatchingStatus.COMPLETED, False),
    ],
)
def test_transition_tables(current, target, allowed):
    assert can_transition(current, target) is allowed


def test_illegal_transition_raises():
    with pytest.raises(InvalidTransition):
        ensure_transition(ProcessingStatus.COMPLETED, ProcessingStatus.FAILED, entity="flyer f1")


def test_db_rejects_illegal_status_moves(db, flyer, make_item):
    with pytest.raises(InvalidTransition):
        db.set_flyer_status(flyer.id, ProcessingStatus.COMPLETED)
    item = make_item("Milk")
    with pytest.raises(InvalidTransition):
        db.set_extraction_status(item.id, ImageExtractionStatus.COMPLETED)


def test_coerce_maps_unknown_values_to_default():
    assert coerce(MatchingStatus, "completed", MatchingStatus.PENDING) == MatchingStatus.COMPLETED
    assert coerce(MatchingStatus, "weird", MatchingStatus.PENDING) == MatchingStatus.PENDING
    assert coerce(MatchingStatus, None, MatchingStatus.PENDING) == MatchingStatus.PENDING


def test_discount_percentage_helpers():
    assert apply_discount_percentage(100.0, 15) == 85.0
    assert apply_discount_percentage(19.99, 33) == 13.39
    assert apply_discount_percentage(0, 20) == 0
    assert apply_discount_percentage(50.0, 0) == 50.0
    assert apply_discount_percentage(50.0, 100) == 50.0
    assert calculate_discount_percentage(100, 80) == 20
    assert calculate_discount_percentage(3.0, 2.0) == 33
    assert calculate_discount_percentage(None, 2.0) == 0


def test_to_price_reads_common_formats():
    assert to_price("12,99") == 12.99
    assert to_price("ден 89") == 89.0
    assert to_price(True) is None
    assert to_price("n/a") is None


def test_prefix_index_helpers():
    assert name_prefixes("Milk") == ["M", "Mi", "Mil", "Milk"]
    assert name_prefixes(None) == []
    assert normalize_prefixes("Milk", ["M", "Milk"]) == ["M", "Milk"]
    assert normalize_prefixes("Milk", ["M", "Mi"]) == ["M", "Mi", "Mil", "Milk"]


def test_keywords_drop_stop_words_and_duplicates():
    assert extract_keywords("The Milk and the Honey, 1L!", ["Milk"]) == ["milk", "honey", "1l"]
