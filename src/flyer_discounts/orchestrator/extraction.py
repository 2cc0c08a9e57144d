from __future__ import annotations

import base64
import binascii
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..catalog.db import FlyerDatabase
from ..catalog.storage import ImageStorage
from ..domain.models import (
    BoundingBox,
    DetectedRegion,
    ExpectedItem,
    ExtractedImages,
    ExtractionMetadata,
    ParsedItem,
)
from ..domain.status import ImageExtractionStatus, ProcessingMethod
from ..errors import ContentPolicyViolation, FlyerPipelineError, UpstreamServerError
from ..logging import get_logger
from .regions import RegionDetector, heuristic_regions

LOG = get_logger("image-extraction")

DIRECT_CONFIDENCE = 0.9
SKIP_STATUSES = (ImageExtractionStatus.COMPLETED, ImageExtractionStatus.MANUAL_REVIEW)


@dataclass(frozen=True)
class ExtractionConfig:
    remove_text: bool = True
    remove_promotional_elements: bool = True
    background_style: str = "white"
    product_centering: bool = True
    quality_enhancement: bool = True
    direct_generation: bool = True
    inter_call_delay: float = 3.0
    min_quality: float = 0.7


def quality_score(config: ExtractionConfig) -> float:
    """Deterministic rubric over the processing steps that were requested."""
    score = 0.5
    if config.remove_text:
        score += 0.1
    if config.remove_promotional_elements:
        score += 0.1
    if config.background_style == "white":
        score += 0.1
    if config.product_centering:
        score += 0.1
    if config.quality_enhancement:
        score += 0.1
    return round(min(score, 1.0), 2)


def build_direct_prompt(item: ParsedItem) -> str:
    name = item.product_name
    prompt = (
        f'Look at this grocery flyer image and find the product that matches "{name}". '
        "Extract ONLY that specific product and clean it up.\n\n"
        "VISUAL EXTRACTION TASK:\n"
        f'1. SCAN the flyer image to locate the product labeled or matching "{name}"\n'
        "2. EXTRACT only that specific product from the image\n"
        "3. REMOVE all text, price tags, promotional stickers, discount badges\n"
        "4. REMOVE the flyer background completely\n"
        "5. PLACE the extracted product on a clean white background\n"
        "6. KEEP the exact same product appearance - same colors, same packaging, same shape, same size\n"
        "7. DO NOT change the product itself - only remove text and background\n"
        "8. DO NOT generate a different product - use exactly what's shown in the flyer\n\n"
        "The result should be the SAME EXACT PRODUCT from the flyer but cleaned up for e-commerce use. "
        "Professional studio lighting, white background, no text visible."
    )
    if item.product_name_mk and item.product_name_mk != name:
        prompt += f"\n- Alternative product name: {item.product_name_mk}"
    return prompt


def build_region_prompt(box: BoundingBox, product_name: Optional[str] = None) -> str:
    hint = f"\nThe product in that area should be: {product_name}\n" if product_name else ""
    return (
        "CREATIVE PRODUCT GENERATION TASK:\n\n"
        "You are looking at a grocery flyer/advertisement. Focus on the product located in this approximate area:\n"
        f"- Horizontal position: {round(box.x * 100)}% from the left edge\n"
        f"- Vertical position: {round(box.y * 100)}% from the top edge\n"
        f"- Area size: {round(box.width * 100)}% wide by {round(box.height * 100)}% tall\n"
        f"{hint}\n"
        "YOUR MISSION:\n"
        "1. IDENTIFY what product is in that region\n"
        "2. RECREATE that exact product as a clean, professional e-commerce photo\n"
        "3. IGNORE everything else in the flyer - prices, text, other products, backgrounds, promotional elements\n\n"
        "REQUIREMENTS:\n"
        "- Pure white background, no flyer elements\n"
        "- Product centered and properly sized in frame\n"
        "- No text, prices, logos, or promotional elements anywhere\n"
        "- Single product only"
    )


def decode_generated_image(result: Any) -> bytes:
    predictions = result.get("predictions") if isinstance(result, dict) else None
    first = predictions[0] if predictions else None
    data = first.get("bytesBase64Encoded") if isinstance(first, dict) else None
    if not data:
        raise UpstreamServerError("No image data returned from API")
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise UpstreamServerError(f"Invalid base64 image data received: {exc}") from exc


@dataclass
class ExtractionReport:
    completed: List[str] = field(default_factory=list)
    manual_review: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "completed": list(self.completed),
            "manualReview": list(self.manual_review),
            "failed": dict(self.failed),
            "skipped": list(self.skipped),
        }


class ImageExtractionOrchestrator:
    """Generate a clean product photo per parsed item of one flyer.

    Items run one after another with a fixed delay between external calls.
    A content-policy refusal stops the batch; any other failure is recorded
    on the item and the batch moves on.
    """

    def __init__(
        self,
        db: FlyerDatabase,
        vision_client: Any,
        storage: ImageStorage,
        *,
        config: Optional[ExtractionConfig] = None,
        region_detector: Optional[RegionDetector] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.db = db
        self.vision = vision_client
        self.storage = storage
        self.config = config or ExtractionConfig()
        self.region_detector = region_detector or RegionDetector(vision_client)
        self._sleep = sleep

    def extract_batch(self, flyer_image: Any, items: Sequence[ParsedItem]) -> ExtractionReport:
        report = ExtractionReport()
        pending: List[ParsedItem] = []
        for item in items:
            if item.verified or item.image_extraction_status in SKIP_STATUSES:
                report.skipped.append(item.id)
            else:
                pending.append(item)
        if report.skipped:
            LOG.info("Skipping %d items already extracted or verified", len(report.skipped))
        if not pending:
            LOG.info("No items need image extraction")
            return report

        regions: Dict[str, DetectedRegion] = {}
        if not self.config.direct_generation:
            regions = self._resolve_regions(flyer_image, pending)
            self._pause()

        LOG.info("Starting image extraction for %d items (direct=%s)", len(pending), self.config.direct_generation)
        for index, item in enumerate(pending):
            try:
                status = self._extract_one(flyer_image, item, regions.get(item.id))
            except ContentPolicyViolation as exc:
                LOG.error("Content policy violation on %s; stopping the batch", item.product_name)
                self._mark_failed(item, f"Content policy violation: {exc}")
                report.failed[item.id] = str(exc)
                raise
            except Exception as exc:
                if isinstance(exc, FlyerPipelineError):
                    LOG.error("Failed to generate image for %s: %s", item.product_name, exc)
                else:
                    LOG.exception("Unexpected error generating image for %s", item.product_name)
                self._mark_failed(item, str(exc) or type(exc).__name__)
                report.failed[item.id] = str(exc)
            else:
                if status == ImageExtractionStatus.COMPLETED:
                    report.completed.append(item.id)
                else:
                    report.manual_review.append(item.id)

            if index < len(pending) - 1:
                self._pause()

        LOG.info(
            "Extraction summary: %d completed, %d manual review, %d failed",
            len(report.completed),
            len(report.manual_review),
            len(report.failed),
        )
        return report

    def _pause(self) -> None:
        if self.config.inter_call_delay > 0:
            LOG.debug("Rate limiting: waiting %.1fs before next API call", self.config.inter_call_delay)
            self._sleep(self.config.inter_call_delay)

    def _resolve_regions(self, flyer_image: Any, items: Sequence[ParsedItem]) -> Dict[str, DetectedRegion]:
        expected = [ExpectedItem(id=i.id, name=i.product_name) for i in items]
        found = {r.item_id: r for r in self.region_detector.detect_regions(flyer_image, expected)}
        # Items the AI did not locate get their grid cell.
        for region in heuristic_regions(expected):
            found.setdefault(region.item_id, region)
        return found

    def _mark_failed(self, item: ParsedItem, reason: str) -> None:
        current = self.db.require_parsed_item(item.id)
        if current.image_extraction_status != ImageExtractionStatus.PROCESSING:
            self.db.set_extraction_status(item.id, ImageExtractionStatus.PROCESSING)
        self.db.set_extraction_status(item.id, ImageExtractionStatus.FAILED, error=reason)

    def _extract_one(
        self, flyer_image: Any, item: ParsedItem, region: Optional[DetectedRegion]
    ) -> ImageExtractionStatus:
        if item.image_extraction_status != ImageExtractionStatus.PROCESSING:
            self.db.set_extraction_status(item.id, ImageExtractionStatus.PROCESSING)

        if region is None:
            prompt = build_direct_prompt(item)
            tag = "direct-creative-generation"
            method = ProcessingMethod.IMAGEN4
            confidence = DIRECT_CONFIDENCE
        else:
            prompt = build_region_prompt(region.bounding_box, item.product_name)
            tag = "creative-product-generation"
            method = ProcessingMethod.FALLBACK if region.heuristic else ProcessingMethod.VISION_API
            confidence = region.confidence

        LOG.info("Generating clean image for %s (%s)", item.product_name, tag)
        result = self.vision.call_vision_api(prompt, flyer_image, tag)
        image_bytes = decode_generated_image(result)
        clean, resolutions = self.storage.save_product_renditions(item.id, image_bytes)

        score = quality_score(self.config)
        needs_review = score < self.config.min_quality
        metadata = ExtractionMetadata(
            confidence=confidence,
            background_removed=self.config.background_style == "white",
            text_removed=self.config.remove_text,
            quality_score=score,
            processing_method=method,
            manual_review_required=needs_review,
        )
        extracted = ExtractedImages(clean=clean, resolutions=resolutions, metadata=metadata)
        target = ImageExtractionStatus.MANUAL_REVIEW if needs_review else ImageExtractionStatus.COMPLETED
        self.db.set_extraction_status(
            item.id, target, extracted_images=extracted.as_dict(), quality_score=score
        )
        LOG.info("Item %s -> %s (quality %.2f)", item.product_name, target.value, score)
        return target
