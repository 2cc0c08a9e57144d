from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from .status import (
    DiscountSourceType,
    ImageExtractionStatus,
    MatchingStatus,
    ProcessingMethod,
    ProcessingStatus,
    coerce,
)


def _load_json(value: Any, default: Any) -> Any:
    if value is None or value == "":
        return default
    if isinstance(value, (dict, list)):
        return value
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class BoundingBox:
    """Fractions of the image dimensions."""

    x: float
    y: float
    width: float
    height: float

    def as_dict(self) -> Dict[str, float]:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}


@dataclass(frozen=True)
class DetectedRegion:
    item_id: str
    bounding_box: BoundingBox
    confidence: float
    product_name: str
    heuristic: bool = False


@dataclass(frozen=True)
class ExpectedItem:
    id: str
    name: str


@dataclass(frozen=True)
class ExtractionMetadata:
    confidence: float
    background_removed: bool
    text_removed: bool
    quality_score: float
    processing_method: ProcessingMethod
    manual_review_required: bool

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ExtractionMetadata":
        return cls(
            confidence=float(data.get("confidence") or 0.0),
            background_removed=bool(data.get("backgroundRemoved")),
            text_removed=bool(data.get("textRemoved")),
            quality_score=float(data.get("qualityScore") or 0.0),
            processing_method=coerce(ProcessingMethod, data.get("processingMethod"), ProcessingMethod.FALLBACK),
            manual_review_required=bool(data.get("manualReviewRequired")),
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "confidence": self.confidence,
            "backgroundRemoved": self.background_removed,
            "textRemoved": self.text_removed,
            "qualityScore": self.quality_score,
            "processingMethod": self.processing_method.value,
            "manualReviewRequired": self.manual_review_required,
        }


@dataclass(frozen=True)
class ExtractedImages:
    clean: Dict[str, str]
    resolutions: Dict[str, str]
    metadata: ExtractionMetadata

    def as_dict(self) -> Dict[str, Any]:
        return {
            "clean": dict(self.clean),
            "resolutions": dict(self.resolutions),
            "extractionMetadata": self.metadata.as_dict(),
        }


@dataclass(frozen=True)
class MatchedProduct:
    product_id: str
    relevance_score: float
    match_reason: str
    matched_at: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MatchedProduct":
        return cls(
            product_id=str(data.get("productId")),
            relevance_score=float(data.get("relevanceScore") or 0.0),
            match_reason=str(data.get("matchReason") or ""),
            matched_at=data.get("matchedAt"),
        )

    def as_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "productId": self.product_id,
            "relevanceScore": self.relevance_score,
            "matchReason": self.match_reason,
        }
        if self.matched_at:
            out["matchedAt"] = self.matched_at
        return out


@dataclass(frozen=True)
class DiscountSource:
    type: DiscountSourceType
    parsed_item_id: Optional[str]
    original_price: float
    applied_at: str
    applied_by: str = "admin"
    confidence: float = 1.0
    calculation_details: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> Optional["DiscountSource"]:
        if not data:
            return None
        return cls(
            type=coerce(DiscountSourceType, data.get("type"), DiscountSourceType.MANUAL),
            parsed_item_id=data.get("parsedItemId"),
            original_price=float(data.get("originalPrice") or 0.0),
            applied_at=str(data.get("appliedAt") or ""),
            applied_by=str(data.get("appliedBy") or "admin"),
            confidence=float(data.get("confidence") if data.get("confidence") is not None else 1.0),
            calculation_details=data.get("calculationDetails"),
        )

    def as_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "type": self.type.value,
            "parsedItemId": self.parsed_item_id,
            "originalPrice": self.original_price,
            "appliedAt": self.applied_at,
            "appliedBy": self.applied_by,
            "confidence": self.confidence,
        }
        if self.calculation_details:
            out["calculationDetails"] = self.calculation_details
        return out


@dataclass
class FlyerImage:
    id: str
    storage_reference: str
    filename: str
    original_name: Optional[str] = None
    file_size: Optional[int] = None
    file_type: Optional[str] = None
    uploaded_by: Optional[str] = None
    uploaded_at: Optional[str] = None
    processing_status: ProcessingStatus = ProcessingStatus.PENDING
    failure_reason: Optional[str] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "FlyerImage":
        return cls(
            id=row["id"],
            storage_reference=row["storage_reference"],
            filename=row["filename"],
            original_name=row["original_name"],
            file_size=row["file_size"],
            file_type=row["file_type"],
            uploaded_by=row["uploaded_by"],
            uploaded_at=row["uploaded_at"],
            processing_status=coerce(ProcessingStatus, row["processing_status"], ProcessingStatus.PENDING),
            failure_reason=row["failure_reason"],
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "storageReference": self.storage_reference,
            "filename": self.filename,
            "originalName": self.original_name,
            "fileSize": self.file_size,
            "fileType": self.file_type,
            "uploadedBy": self.uploaded_by,
            "uploadedAt": self.uploaded_at,
            "processingStatus": self.processing_status.value,
            "failureReason": self.failure_reason,
        }


@dataclass
class ParsedItem:
    id: str
    flyer_image_id: str
    product_name: str
    old_price: Optional[float]
    currency: str = "MKD"
    product_name_mk: Optional[str] = None
    product_name_prefixes: List[str] = field(default_factory=list)
    discount_price: Optional[float] = None
    discount_text: Optional[str] = None
    discount_start_date: Optional[str] = None
    discount_end_date: Optional[str] = None
    additional_info: List[str] = field(default_factory=list)
    additional_info_mk: List[str] = field(default_factory=list)
    confidence: float = 0.85
    verified: bool = False
    image_extraction_status: ImageExtractionStatus = ImageExtractionStatus.PENDING
    image_extraction_error: Optional[str] = None
    extracted_images: Optional[Dict[str, Any]] = None
    image_extracted_at: Optional[str] = None
    image_quality_score: Optional[float] = None
    matching_status: MatchingStatus = MatchingStatus.PENDING
    matching_error: Optional[str] = None
    matched_products: List[MatchedProduct] = field(default_factory=list)
    selected_product_id: Optional[str] = None
    discount_applied: bool = False
    discount_percentage: Optional[float] = None
    discount_applied_at: Optional[str] = None
    auto_discount_applied: bool = False
    auto_approval: Optional[Dict[str, Any]] = None
    created_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "ParsedItem":
        return cls(
            id=row["id"],
            flyer_image_id=row["flyer_image_id"],
            product_name=row["product_name"],
            old_price=row["old_price"],
            currency=row["currency"],
            product_name_mk=row["product_name_mk"],
            product_name_prefixes=_load_json(row["product_name_prefixes"], []),
            discount_price=row["discount_price"],
            discount_text=row["discount_text"],
            discount_start_date=row["discount_start_date"],
            discount_end_date=row["discount_end_date"],
            additional_info=_load_json(row["additional_info"], []),
            additional_info_mk=_load_json(row["additional_info_mk"], []),
            confidence=row["confidence"],
            verified=bool(row["verified"]),
            image_extraction_status=coerce(
                ImageExtractionStatus, row["image_extraction_status"], ImageExtractionStatus.PENDING
            ),
            image_extraction_error=row["image_extraction_error"],
            extracted_images=_load_json(row["extracted_images"], None),
            image_extracted_at=row["image_extracted_at"],
            image_quality_score=row["image_quality_score"],
            matching_status=coerce(MatchingStatus, row["matching_status"], MatchingStatus.PENDING),
            matching_error=row["matching_error"],
            matched_products=[MatchedProduct.from_dict(m) for m in _load_json(row["matched_products"], [])],
            selected_product_id=row["selected_product_id"],
            discount_applied=bool(row["discount_applied"]),
            discount_percentage=row["discount_percentage"],
            discount_applied_at=row["discount_applied_at"],
            auto_discount_applied=bool(row["auto_discount_applied"]),
            auto_approval=_load_json(row["auto_approval"], None),
            created_at=row["created_at"],
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "flyerImageId": self.flyer_image_id,
            "productName": self.product_name,
            "productNameMk": self.product_name_mk,
            "productNamePrefixes": list(self.product_name_prefixes),
            "oldPrice": self.old_price,
            "discountPrice": self.discount_price,
            "discountText": self.discount_text,
            "discountStartDate": self.discount_start_date,
            "discountEndDate": self.discount_end_date,
            "currency": self.currency,
            "additionalInfo": list(self.additional_info),
            "additionalInfoMk": list(self.additional_info_mk),
            "confidence": self.confidence,
            "verified": self.verified,
            "imageExtractionStatus": self.image_extraction_status.value,
            "imageExtractionError": self.image_extraction_error,
            "extractedImages": self.extracted_images,
            "imageExtractedAt": self.image_extracted_at,
            "imageQualityScore": self.image_quality_score,
            "matchingStatus": self.matching_status.value,
            "matchingError": self.matching_error,
            "matchedProducts": [m.as_dict() for m in self.matched_products],
            "selectedProductId": self.selected_product_id,
            "discountApplied": self.discount_applied,
            "discountPercentage": self.discount_percentage,
            "discountAppliedAt": self.discount_applied_at,
            "autoDiscountApplied": self.auto_discount_applied,
            "autoApproval": self.auto_approval,
            "createdAt": self.created_at,
        }

    @property
    def has_structured_discount(self) -> bool:
        return (
            self.old_price is not None
            and self.discount_price is not None
            and 0 < self.discount_price < self.old_price
        )


@dataclass
class CatalogProduct:
    id: str
    product_id: str
    name: str
    old_price: Optional[float] = None
    name_mk: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    new_price: Optional[float] = None
    discount_percentage: Optional[float] = None
    has_active_discount: bool = False
    discount_source: Optional[DiscountSource] = None
    valid_from: Optional[str] = None
    valid_to: Optional[str] = None
    name_prefixes: List[str] = field(default_factory=list)
    version: int = 0

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "CatalogProduct":
        return cls(
            id=row["id"],
            product_id=row["product_id"],
            name=row["name"],
            old_price=row["old_price"],
            name_mk=row["name_mk"],
            description=row["description"],
            category=row["category"],
            new_price=row["new_price"],
            discount_percentage=row["discount_percentage"],
            has_active_discount=bool(row["has_active_discount"]),
            discount_source=DiscountSource.from_dict(_load_json(row["discount_source"], None)),
            valid_from=row["valid_from"],
            valid_to=row["valid_to"],
            name_prefixes=_load_json(row["name_prefixes"], []),
            version=int(row["version"] or 0),
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "productId": self.product_id,
            "name": self.name,
            "nameMk": self.name_mk,
            "description": self.description,
            "category": self.category,
            "oldPrice": self.old_price,
            "newPrice": self.new_price,
            "discountPercentage": self.discount_percentage,
            "hasActiveDiscount": self.has_active_discount,
            "discountSource": self.discount_source.as_dict() if self.discount_source else None,
            "validFrom": self.valid_from,
            "validTo": self.valid_to,
        }
