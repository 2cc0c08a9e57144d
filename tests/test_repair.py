import pytest

from flyer_discounts.catalog.repair import repair_all_completed, repair_extracted_images
from flyer_discounts.domain.status import ImageExtractionStatus
from flyer_discounts.errors import NotFound

CURRENT = {
    "clean": {"original": "o.png", "optimized": "o.webp", "thumbnail": "t.webp"},
    "resolutions": {"1x": "1.webp", "2x": "2.webp", "3x": "3.webp", "custom": "c.webp"},
    "extractionMetadata": {"confidence": 0.9, "qualityScore": 1.0, "processingMethod": "imagen4"},
}

LEGACY = {"urls": {"original": "legacy.png", "optimized": "legacy.webp", "thumbnail": "legacy-t.webp"}}


def _completed(db, make_item, name, extracted):
    item = make_item(name)
    db.set_extraction_status(item.id, ImageExtractionStatus.PROCESSING)
    db.set_extraction_status(item.id, ImageExtractionStatus.COMPLETED, extracted_images=extracted, quality_score=0.8)
    return item


def test_legacy_shape_is_normalized(db, make_item):
    item = _completed(db, make_item, "Milk", LEGACY)

    outcome = repair_extracted_images(db, item.id)

    assert outcome.success and outcome.fixed
    fixed = db.require_parsed_item(item.id).extracted_images
    assert fixed["clean"]["original"] == "legacy.png"
    assert fixed["resolutions"] == {"1x": "legacy.png", "2x": "legacy.png", "3x": "legacy.png", "custom": "legacy.png"}
    assert fixed["extractionMetadata"]["processingMethod"] == "imagen4"
    assert fixed["extractionMetadata"]["qualityScore"] == 0.8


def test_partial_legacy_shape_is_fixed_once(db, make_item):
    item = _completed(db, make_item, "Milk", {"urls": {"original": "a.png"}})

    first = repair_extracted_images(db, item.id)
    second = repair_extracted_images(db, item.id)

    assert first.success and first.fixed
    assert second.success and not second.fixed
    clean = db.require_parsed_item(item.id).extracted_images["clean"]
    assert clean == {"original": "a.png", "optimized": "a.png", "thumbnail": "a.png"}


def test_current_shape_is_left_untouched(db, make_item):
    item = _completed(db, make_item, "Milk", CURRENT)
    outcome = repair_extracted_images(db, item.id)
    assert outcome.success and not outcome.fixed
    assert outcome.message == "Item already has correct structure"
    assert db.require_parsed_item(item.id).extracted_images == CURRENT


def test_unknown_shape_is_reported(db, make_item):
    item = _completed(db, make_item, "Milk", {"something": "else"})
    outcome = repair_extracted_images(db, item.id)
    assert not outcome.success
    assert outcome.error == "Unknown structure"


def test_missing_item_raises(db):
    with pytest.raises(NotFound):
        repair_extracted_images(db, "ghost")


def test_fix_all_counts_outcomes(db, make_item):
    _completed(db, make_item, "A", LEGACY)
    _completed(db, make_item, "B", CURRENT)
    _completed(db, make_item, "C", {"odd": True})
    make_item("D")  # pending items are not inspected

    summary = repair_all_completed(db)

    assert summary.as_dict() == {"total": 3, "fixed": 1, "alreadyCorrect": 1, "errors": 1}
    assert summary.message == "Fixed 1 items, 1 already correct, 1 errors"
    assert repair_all_completed(db).fixed == 0
