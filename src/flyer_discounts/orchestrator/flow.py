"""Event handlers that wire the pipeline stages together."""

from __future__ import annotations

import mimetypes
import os
from typing import Any, Dict, List, Mapping, Optional

from ..catalog.db import FlyerDatabase
from ..catalog.events import FLYER_EXTRACT_IMAGES, FLYER_PARSE, FLYER_PRODUCT_MATCH, EventQueue, Handler
from ..catalog.storage import ImageStorage
from ..config import Settings
from ..domain.models import FlyerImage, ParsedItem
from ..domain.names import extract_keywords
from ..domain.status import MatchingStatus, ProcessingStatus
from ..errors import InvalidInput, NotFound
from ..logging import get_logger
from ..vision.client import VisionClient
from ..vision.language import LanguageClient
from .approval import AutoApprovalEvaluator
from .calculator import DiscountCalculator
from .extraction import ExtractionConfig, ExtractionReport, ImageExtractionOrchestrator
from .matching import MatchingScorer, run_matching_stage
from .parsing import FlyerParser
from .regions import RegionDetector


LOG = get_logger("orchestrator-flow")


def _require(data: Mapping[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise InvalidInput(f"Event payload is missing {key}")
    return value


def item_id_for(flyer_id: str, index: int) -> str:
    """Stable per-record id so a redelivered parse event does not duplicate items."""
    return f"{flyer_id}-{index:03d}"


def upload_flyer(
    db: FlyerDatabase,
    storage: ImageStorage,
    queue: EventQueue,
    source_path: str,
    *,
    uploaded_by: Optional[str] = None,
) -> FlyerImage:
    """Copy a flyer into storage, register it and queue the parse event."""
    if not os.path.isfile(source_path):
        raise InvalidInput(f"Flyer file not found: {source_path}")
    reference, size = storage.store_flyer(source_path)
    flyer = db.insert_flyer(
        storage_reference=reference,
        filename=os.path.basename(reference),
        original_name=os.path.basename(source_path),
        file_size=size,
        file_type=mimetypes.guess_type(source_path)[0],
        uploaded_by=uploaded_by,
    )
    queue.send(FLYER_PARSE, {"flyerImageId": flyer.id, "storageReference": flyer.storage_reference})
    return flyer


class FlyerPipeline:
    """High-level orchestrator: one handler per event name, each safe to re-run."""

    def __init__(
        self,
        db: FlyerDatabase,
        storage: ImageStorage,
        queue: EventQueue,
        *,
        parser: FlyerParser,
        extractor: ImageExtractionOrchestrator,
        scorer: MatchingScorer,
        approver: Optional[AutoApprovalEvaluator] = None,
        candidate_limit: int = 10,
    ) -> None:
        self.db = db
        self.storage = storage
        self.queue = queue
        self.parser = parser
        self.extractor = extractor
        self.scorer = scorer
        self.approver = approver
        self.candidate_limit = candidate_limit

    @classmethod
    def from_settings(cls, settings: Settings, db: Optional[FlyerDatabase] = None) -> "FlyerPipeline":
        db = db or FlyerDatabase(settings.root_dir)
        storage = ImageStorage(settings.root_dir, public_base_url=settings.public_base_url)
        vision = VisionClient.from_settings(settings)
        llm = LanguageClient.from_settings(settings)
        extractor = ImageExtractionOrchestrator(
            db,
            vision,
            storage,
            config=ExtractionConfig(
                direct_generation=settings.direct_generation,
                inter_call_delay=settings.inter_call_delay,
            ),
            region_detector=RegionDetector(vision, timeout=settings.detection_timeout),
        )
        LOG.info("Pipeline ready (direct generation: %s)", settings.direct_generation)
        return cls(
            db,
            storage,
            EventQueue(db),
            parser=FlyerParser(llm),
            extractor=extractor,
            scorer=MatchingScorer(llm),
            approver=AutoApprovalEvaluator(
                llm,
                db,
                calculator=DiscountCalculator(llm),
                min_confidence=settings.auto_approval_min_confidence,
            ),
            candidate_limit=settings.match_candidate_limit,
        )

    def handlers(self) -> Dict[str, Handler]:
        return {
            FLYER_PARSE: self.handle_flyer_uploaded,
            FLYER_EXTRACT_IMAGES: self.handle_extract_images,
            FLYER_PRODUCT_MATCH: self.handle_product_match,
        }

    # ------------------------------------------------------------------
    # Stage 1: parse the flyer into items
    # ------------------------------------------------------------------
    def handle_flyer_uploaded(self, data: Mapping[str, Any]) -> List[ParsedItem]:
        flyer_id = _require(data, "flyerImageId")
        flyer = self.db.get_flyer(flyer_id)
        if flyer is None:
            raise NotFound(f"Flyer {flyer_id} not found")
        if flyer.processing_status == ProcessingStatus.COMPLETED:
            LOG.info("Flyer %s already parsed; skipping", flyer_id)
            return []
        if flyer.processing_status != ProcessingStatus.PROCESSING:
            self.db.set_flyer_status(flyer_id, ProcessingStatus.PROCESSING)

        try:
            image_bytes = self.storage.read_bytes(data.get("storageReference") or flyer.storage_reference)
            records = self.parser.parse(image_bytes)
        except Exception as exc:
            self.db.set_flyer_status(flyer_id, ProcessingStatus.FAILED, failure_reason=str(exc) or type(exc).__name__)
            raise

        created: List[ParsedItem] = []
        for index, record in enumerate(records, start=1):
            item_id = item_id_for(flyer_id, index)
            if self.db.get_parsed_item(item_id) is not None:
                continue
            created.append(self.db.insert_parsed_item(record.to_parsed_item(item_id, flyer_id)))
        self.db.set_flyer_status(flyer_id, ProcessingStatus.COMPLETED)
        LOG.info("Flyer %s: %d records, %d new items", flyer_id, len(records), len(created))

        self.queue.send(FLYER_EXTRACT_IMAGES, {"flyerImageId": flyer_id})
        for item in self.db.list_parsed_items(flyer_id):
            if item.matching_status == MatchingStatus.PENDING:
                self.queue.send(FLYER_PRODUCT_MATCH, {"parsedItemId": item.id})
        return created

    # ------------------------------------------------------------------
    # Stage 2: clean product images
    # ------------------------------------------------------------------
    def handle_extract_images(self, data: Mapping[str, Any]) -> ExtractionReport:
        flyer_id = _require(data, "flyerImageId")
        flyer = self.db.get_flyer(flyer_id)
        if flyer is None:
            raise NotFound(f"Flyer {flyer_id} not found")
        items = self.db.list_parsed_items(flyer_id)
        image_bytes = self.storage.read_bytes(flyer.storage_reference)
        return self.extractor.extract_batch(image_bytes, items)

    # ------------------------------------------------------------------
    # Stage 3: catalog matching and auto-approval
    # ------------------------------------------------------------------
    def find_candidates(self, item: ParsedItem):
        keywords = extract_keywords(item.product_name, [item.product_name_mk] if item.product_name_mk else None)
        return self.db.search_products(keywords, limit=self.candidate_limit)

    def handle_product_match(self, data: Mapping[str, Any]) -> Optional[ParsedItem]:
        item = self.db.require_parsed_item(_require(data, "parsedItemId"))
        if item.verified:
            LOG.info("Item %s is verified; skipping matching", item.id)
            return item
        if item.matching_status == MatchingStatus.COMPLETED and not data.get("rematch"):
            LOG.info("Item %s already matched; skipping", item.id)
            return item

        candidates = self.find_candidates(item)
        LOG.info("Found %d catalog candidates for %s", len(candidates), item.product_name)
        run_matching_stage(self.db, self.scorer, item, candidates)

        item = self.db.require_parsed_item(item.id)
        if self.approver is not None and item.matched_products:
            self.approver.review(item)
            item = self.db.require_parsed_item(item.id)
        return item
