from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..domain.models import ExtractionMetadata
from ..domain.status import ImageExtractionStatus, ProcessingMethod
from ..errors import NotFound
from ..logging import get_logger
from .db import FlyerDatabase

LOG = get_logger("image-repair")

RESOLUTION_KEYS = ("1x", "2x", "3x", "custom")

LEGACY_METADATA = ExtractionMetadata(
    confidence=0.85,
    background_removed=True,
    text_removed=True,
    quality_score=0.8,
    processing_method=ProcessingMethod.IMAGEN4,
    manual_review_required=False,
)


@dataclass(frozen=True)
class RepairOutcome:
    item_id: str
    success: bool
    fixed: bool
    error: Optional[str] = None

    @property
    def message(self) -> str:
        if not self.success:
            return f"Error: {self.error}"
        return "Item structure fixed" if self.fixed else "Item already has correct structure"

    def as_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"itemId": self.item_id, "success": self.success, "fixed": self.fixed}
        if self.error:
            out["error"] = self.error
        return out


@dataclass(frozen=True)
class RepairSummary:
    total: int
    fixed: int
    already_correct: int
    errors: int

    @property
    def message(self) -> str:
        return f"Fixed {self.fixed} items, {self.already_correct} already correct, {self.errors} errors"

    def as_dict(self) -> Dict[str, int]:
        return {"total": self.total, "fixed": self.fixed, "alreadyCorrect": self.already_correct, "errors": self.errors}


def needs_repair(extracted: Dict[str, Any]) -> bool:
    clean = extracted.get("clean")
    return not isinstance(clean, dict) or not clean.get("original") or not clean.get("optimized")


def normalize_legacy_shape(extracted: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Current-schema copy of a legacy `{"urls": {...}}` record, or None if unrecognised."""
    urls = extracted.get("urls")
    if not isinstance(urls, dict) or not urls.get("original"):
        return None
    original = urls["original"]
    # missing renditions point at the original so the result passes needs_repair
    clean = {
        "original": original,
        "optimized": urls.get("optimized") or original,
        "thumbnail": urls.get("thumbnail") or original,
    }
    if urls.get("transparent"):
        clean["transparent"] = urls["transparent"]
    resolutions = urls.get("resolutions")
    if not isinstance(resolutions, dict) or not resolutions:
        resolutions = {key: original for key in RESOLUTION_KEYS}
    return {
        "clean": clean,
        "resolutions": dict(resolutions),
        "extractionMetadata": LEGACY_METADATA.as_dict(),
    }


def repair_extracted_images(db: FlyerDatabase, item_id: str) -> RepairOutcome:
    item = db.get_parsed_item(item_id)
    if item is None:
        raise NotFound(f"Parsed item {item_id} not found")

    extracted = item.extracted_images
    if item.image_extraction_status != ImageExtractionStatus.COMPLETED or not isinstance(extracted, dict):
        LOG.debug("Item %s does not need fixing (status=%s)", item_id, item.image_extraction_status.value)
        return RepairOutcome(item_id, success=True, fixed=False)

    if not needs_repair(extracted):
        return RepairOutcome(item_id, success=True, fixed=False)

    fixed = normalize_legacy_shape(extracted)
    if fixed is None:
        LOG.warning("Cannot fix item %s: unknown extractedImages structure %s", item_id, sorted(extracted))
        return RepairOutcome(item_id, success=False, fixed=False, error="Unknown structure")

    db.replace_extracted_images(item_id, fixed)
    LOG.info("Fixed extractedImages structure for item %s", item_id)
    return RepairOutcome(item_id, success=True, fixed=True)


def repair_all_completed(db: FlyerDatabase) -> RepairSummary:
    items = db.list_items_by_extraction_status(ImageExtractionStatus.COMPLETED)
    LOG.info("Checking %d completed items", len(items))
    fixed = correct = errors = 0
    for item in items:
        outcome = repair_extracted_images(db, item.id)
        if not outcome.success:
            errors += 1
        elif outcome.fixed:
            fixed += 1
        else:
            correct += 1
    summary = RepairSummary(total=len(items), fixed=fixed, already_correct=correct, errors=errors)
    LOG.info("Bulk repair finished: %s", summary.message)
    return summary
