import json
import re

import pytest

from conftest import FakeLLM, FakeVision, png_bytes

from flyer_discounts.catalog.events import FLYER_PARSE, FLYER_PRODUCT_MATCH, EventQueue, EventWorker
from flyer_discounts.domain.status import ImageExtractionStatus, MatchingStatus, ProcessingStatus
from flyer_discounts.errors import InvalidInput
from flyer_discounts.orchestrator.approval import AutoApprovalEvaluator
from flyer_discounts.orchestrator.extraction import ImageExtractionOrchestrator
from flyer_discounts.orchestrator.flow import FlyerPipeline, item_id_for, upload_flyer
from flyer_discounts.orchestrator.matching import MatchingScorer
from flyer_discounts.orchestrator.parsing import FlyerParser

FLYER_RECORDS = [
    {
        "product_name": "Fresh Milk 1L",
        "product_name_prefixes": ["F", "Fresh Milk 1L"],
        "old_price": 120,
        "discount_price": 96,
        "currency": "MKD",
    },
    {
        "product_name": "Bread",
        "product_name_prefixes": ["B", "Bread"],
        "old_price": 50,
        "discount_price": None,
        "currency": "MKD",
    },
]

APPROVE = {"shouldAutoApprove": True, "confidence": 0.95, "reasoning": "Same product", "matchedFields": ["name"]}


def _respond(prompt):
    if "AUTO-APPROVAL CRITERIA" in prompt:
        return json.dumps(APPROVE)
    ids = re.findall(r"- ID: (\S+)", prompt)
    if ids:
        return json.dumps([{"productId": pid, "relevanceScore": 0.9, "matchReason": "name"} for pid in ids])
    return json.dumps(FLYER_RECORDS)


@pytest.fixture
def pipeline(db, storage):
    llm = FakeLLM(_respond)
    vision = FakeVision()
    queue = EventQueue(db)
    pipe = FlyerPipeline(
        db,
        storage,
        queue,
        parser=FlyerParser(llm),
        extractor=ImageExtractionOrchestrator(db, vision, storage, sleep=lambda _: None),
        scorer=MatchingScorer(llm),
        approver=AutoApprovalEvaluator(llm, db),
    )
    pipe.llm = llm
    return pipe


def _drain(worker):
    handled = 0
    while worker.run_once():
        handled += 1
    return handled


def _upload(pipeline, tmp_path):
    source = tmp_path / "weekly.png"
    source.write_bytes(png_bytes(96))
    return upload_flyer(pipeline.db, pipeline.storage, pipeline.queue, str(source), uploaded_by="ops")


def test_upload_rejects_missing_file(pipeline, tmp_path):
    with pytest.raises(InvalidInput):
        upload_flyer(pipeline.db, pipeline.storage, pipeline.queue, str(tmp_path / "missing.png"))


def test_full_pipeline_parses_extracts_matches_and_discounts(db, pipeline, tmp_path, make_product):
    make_product("milk-1", "Fresh Milk 1L", old_price=120.0)
    make_product("bread-1", "White Bread", old_price=50.0)
    db.add_auto_approval_rule("same product", "Approve when the product name and size match.")
    flyer = _upload(pipeline, tmp_path)
    worker = EventWorker(pipeline.queue, pipeline.handlers())

    assert _drain(worker) == 4
    assert pipeline.queue.counts() == {"done": 4}

    assert db.get_flyer(flyer.id).processing_status == ProcessingStatus.COMPLETED
    milk, bread = db.list_parsed_items(flyer.id)
    assert milk.id == item_id_for(flyer.id, 1)
    for item in (milk, bread):
        assert item.image_extraction_status == ImageExtractionStatus.COMPLETED
        assert item.matching_status == MatchingStatus.COMPLETED

    assert milk.matched_products[0].product_id == "milk-1"
    assert milk.auto_discount_applied and milk.discount_percentage == 20
    assert milk.auto_approval["outcome"] == "applied"
    product = db.get_product("milk-1")
    assert product.new_price == 96.0
    assert product.discount_source.applied_by == "auto-approval"
    assert product.discount_source.confidence == 0.9

    assert bread.auto_approval["outcome"] == "no-discount"
    assert not db.get_product("bread-1").has_active_discount


def test_redelivered_events_do_not_duplicate_work(db, pipeline, tmp_path, make_product):
    make_product("milk-1", "Fresh Milk 1L", old_price=120.0)
    flyer = _upload(pipeline, tmp_path)
    worker = EventWorker(pipeline.queue, pipeline.handlers())
    _drain(worker)
    calls = len(pipeline.llm.prompts)
    items = db.list_parsed_items(flyer.id)

    pipeline.queue.send(FLYER_PARSE, {"flyerImageId": flyer.id, "storageReference": flyer.storage_reference})
    pipeline.queue.send(FLYER_PRODUCT_MATCH, {"parsedItemId": items[0].id})
    _drain(worker)

    assert len(pipeline.llm.prompts) == calls
    assert [i.id for i in db.list_parsed_items(flyer.id)] == [i.id for i in items]


def test_parse_failure_marks_flyer_failed_and_retries(db, storage, tmp_path):
    queue = EventQueue(db)
    llm = FakeLLM(lambda _: "There are no prices on this page.")
    pipe = FlyerPipeline(
        db,
        storage,
        queue,
        parser=FlyerParser(llm),
        extractor=ImageExtractionOrchestrator(db, FakeVision(), storage, sleep=lambda _: None),
        scorer=MatchingScorer(llm),
    )
    source = tmp_path / "weekly.png"
    source.write_bytes(png_bytes())
    flyer = upload_flyer(db, storage, queue, str(source))
    worker = EventWorker(queue, pipe.handlers(), max_attempts=2)

    assert worker.run_once()
    failed = db.get_flyer(flyer.id)
    assert failed.processing_status == ProcessingStatus.FAILED
    assert failed.failure_reason
    assert queue.counts() == {"pending": 1}

    assert worker.run_once()
    assert queue.counts() == {"failed": 1}
    assert len(llm.prompts) == 2


def test_unknown_event_is_failed_without_retry(db):
    queue = EventQueue(db)
    queue.send("flyer/unknown", {})
    worker = EventWorker(queue, {})
    assert worker.run_once()
    assert queue.counts() == {"failed": 1}
    assert not worker.run_once()


def test_unexpected_handler_errors_are_recorded(db):
    queue = EventQueue(db)
    queue.send("boom", {"x": 1})
    seen = []

    def explode(data):
        seen.append(data)
        raise RuntimeError("disk on fire")

    worker = EventWorker(queue, {"boom": explode}, max_attempts=3)
    _drain(worker)

    assert seen == [{"x": 1}] * 3
    assert queue.counts() == {"failed": 1}


def test_stale_processing_events_are_requeued(db):
    queue = EventQueue(db)
    queue.send("noop", {})
    assert queue.claim_next() is not None
    assert queue.requeue_stale() == 1
    assert queue.counts() == {"pending": 1}
