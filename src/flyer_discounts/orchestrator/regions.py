from __future__ import annotations

import json
import math
import re
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Dict, List, Optional, Sequence

from ..domain.models import BoundingBox, DetectedRegion, ExpectedItem
from ..domain.names import word_overlap_similarity
from ..errors import FlyerPipelineError
from ..logging import get_logger

LOG = get_logger("region-detector")

SIMILARITY_THRESHOLD = 0.3
DEFAULT_DETECTION_CONFIDENCE = 0.8
HEURISTIC_CONFIDENCE = 0.6
GRID_PADDING = 0.05
CELL_INSET = 0.1
MAX_ITEMS_PER_ROW = 3

DETECTION_PROMPT = """
CRITICAL TASK: Analyze this flyer image and identify the locations of individual product images that can be extracted and converted into clean e-commerce product photos.

WHAT TO DETECT:
- Actual product photos/images (food items, beverages, consumer goods, etc.)
- Physical products with clear visual details
- Product packaging, containers, or items with distinct shapes

WHAT TO IGNORE:
- Price tags, discount percentages, promotional text
- Store logos, decorative elements, backgrounds
- Product names or descriptions (text only)
- Products that are too small, blurry, or partially obscured

COORDINATE SYSTEM:
- x: horizontal position from left edge (0 = left, 1 = right)
- y: vertical position from top edge (0 = top, 1 = bottom)
- width: horizontal span as a fraction of total width
- height: vertical span as a fraction of total height

RETURN EXACTLY THIS JSON FORMAT:
{
  "detectedProducts": [
    {
      "productName": "inferred or detected product name",
      "boundingBox": {"x": 0.1, "y": 0.2, "width": 0.25, "height": 0.3},
      "confidence": 0.95
    }
  ]
}
""".strip()


def build_detection_prompt(expected_items: Sequence[ExpectedItem]) -> str:
    names = ", ".join(item.name for item in expected_items)
    return (
        f"{DETECTION_PROMPT}\n\n"
        f"CONTEXT: This flyer contains these products (use for matching): {names}\n\n"
        "Analyze the image and detect the exact locations where these products appear as actual product images/photos."
    )


def _clamp(value: Any, low: float, high: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        number = low
    if math.isnan(number):
        number = low
    return max(low, min(high, number))


def heuristic_regions(expected_items: Sequence[ExpectedItem]) -> List[DetectedRegion]:
    """Deterministic grid layout: up to three items per row, 80% of each cell."""
    n = len(expected_items)
    if n == 0:
        return []
    per_row = min(MAX_ITEMS_PER_ROW, math.ceil(math.sqrt(n)))
    rows = math.ceil(n / per_row)
    cell_w = (1 - 2 * GRID_PADDING) / per_row
    cell_h = (1 - 2 * GRID_PADDING) / rows

    regions = []
    for index, item in enumerate(expected_items):
        row, col = divmod(index, per_row)
        box = BoundingBox(
            x=GRID_PADDING + col * cell_w + cell_w * CELL_INSET,
            y=GRID_PADDING + row * cell_h + cell_h * CELL_INSET,
            width=cell_w * (1 - 2 * CELL_INSET),
            height=cell_h * (1 - 2 * CELL_INSET),
        )
        regions.append(
            DetectedRegion(
                item_id=item.id,
                bounding_box=box,
                confidence=HEURISTIC_CONFIDENCE,
                product_name=item.name,
                heuristic=True,
            )
        )
    LOG.info("Heuristic detection created %d regions (%d per row, %d rows)", n, per_row, rows)
    return regions


def best_matching_item(detected_name: Optional[str], expected_items: Sequence[ExpectedItem]) -> Optional[ExpectedItem]:
    if not detected_name:
        return None
    best: Optional[ExpectedItem] = None
    best_score = 0.0
    for item in expected_items:
        score = word_overlap_similarity(detected_name, item.name)
        if score > best_score and score > SIMILARITY_THRESHOLD:
            best, best_score = item, score
    return best


def _detections_from_response(result: Any) -> Optional[List[Dict[str, Any]]]:
    """Pull the detectedProducts list out of a predict response, or None."""
    predictions = (result or {}).get("predictions") if isinstance(result, dict) else None
    if not isinstance(predictions, list) or not predictions:
        return None
    prediction = predictions[0]
    if isinstance(prediction, str):
        match = re.search(r"\{[\s\S]*\}", prediction)
        if not match:
            return None
        try:
            payload = json.loads(match.group(0))
        except ValueError:
            return None
    elif isinstance(prediction, dict):
        if prediction.get("bytesBase64Encoded"):
            LOG.warning("Got image response instead of JSON, using heuristic detection")
            return None
        payload = prediction
    else:
        return None
    detections = payload.get("detectedProducts") if isinstance(payload, dict) else None
    return detections if isinstance(detections, list) else None


def regions_from_detections(
    detections: Sequence[Any], expected_items: Sequence[ExpectedItem]
) -> List[DetectedRegion]:
    """Map AI detections onto expected items, keeping the most confident per item."""
    by_item: Dict[str, DetectedRegion] = {}
    for detection in detections:
        if not isinstance(detection, dict):
            continue
        box = detection.get("boundingBox")
        item = best_matching_item(detection.get("productName"), expected_items)
        if item is None or not isinstance(box, dict):
            LOG.warning("Could not match detected product: %r", detection.get("productName"))
            continue
        confidence = detection.get("confidence")
        if (
            isinstance(confidence, bool)
            or not isinstance(confidence, (int, float))
            or not confidence
            or not math.isfinite(confidence)
        ):
            confidence = DEFAULT_DETECTION_CONFIDENCE
        region = DetectedRegion(
            item_id=item.id,
            bounding_box=BoundingBox(
                x=_clamp(box.get("x"), 0.0, 1.0),
                y=_clamp(box.get("y"), 0.0, 1.0),
                width=_clamp(box.get("width"), 0.05, 0.8),
                height=_clamp(box.get("height"), 0.05, 0.8),
            ),
            confidence=float(confidence),
            product_name=item.name,
        )
        current = by_item.get(item.id)
        if current is None or region.confidence > current.confidence:
            by_item[item.id] = region

    order = {item.id: index for index, item in enumerate(expected_items)}
    return sorted(by_item.values(), key=lambda r: order[r.item_id])


class RegionDetector:
    """Locate one product region per expected item, AI first, grid heuristic second."""

    def __init__(self, vision_client: Any, *, timeout: float = 120.0) -> None:
        self.vision = vision_client
        self.timeout = timeout

    def detect_regions(self, image: Any, expected_items: Sequence[ExpectedItem]) -> List[DetectedRegion]:
        if not expected_items:
            LOG.warning("No expected items provided for detection")
            return []

        prompt = build_detection_prompt(expected_items)
        try:
            result = self._call_with_timeout(prompt, image)
        except FutureTimeout:
            LOG.warning("Product detection timed out after %.0fs; using heuristic layout", self.timeout)
            return heuristic_regions(expected_items)
        except FlyerPipelineError as exc:
            LOG.error("AI product detection failed: %s", exc)
            return heuristic_regions(expected_items)
        except Exception:
            LOG.exception("AI product detection crashed; using heuristic layout")
            return heuristic_regions(expected_items)

        detections = _detections_from_response(result)
        if detections:
            LOG.info("AI detected %d product regions", len(detections))
            regions = regions_from_detections(detections, expected_items)
            if regions:
                return regions

        LOG.warning("AI detection unusable, falling back to heuristic detection")
        return heuristic_regions(expected_items)

    def _call_with_timeout(self, prompt: str, image: Any) -> Any:
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="region-detect")
        try:
            future = executor.submit(self.vision.call_vision_api, prompt, image, "product-detection")
            return future.result(timeout=self.timeout)
        finally:
            # a timed out call keeps running in its thread; its result is discarded
            executor.shutdown(wait=False)
