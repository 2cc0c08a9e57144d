"""Typed records, status machines and pure helpers shared by all stages."""

from .models import (
    BoundingBox,
    CatalogProduct,
    DetectedRegion,
    DiscountSource,
    ExpectedItem,
    ExtractedImages,
    ExtractionMetadata,
    FlyerImage,
    MatchedProduct,
    ParsedItem,
)
from .status import (
    DiscountSourceType,
    ImageExtractionStatus,
    MatchingStatus,
    ProcessingMethod,
    ProcessingStatus,
)

__all__ = [
    "BoundingBox",
    "CatalogProduct",
    "DetectedRegion",
    "DiscountSource",
    "DiscountSourceType",
    "ExpectedItem",
    "ExtractedImages",
    "ExtractionMetadata",
    "FlyerImage",
    "ImageExtractionStatus",
    "MatchedProduct",
    "MatchingStatus",
    "ParsedItem",
    "ProcessingMethod",
    "ProcessingStatus",
]
