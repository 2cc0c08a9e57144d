from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, Type, TypeVar

from ..errors import InvalidTransition


class ProcessingStatus(str, Enum):
    """FlyerImage.processingStatus"""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ImageExtractionStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    MANUAL_REVIEW = "manual-review"


class MatchingStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ProcessingMethod(str, Enum):
    IMAGEN4 = "imagen4"
    VISION_API = "vision-api"
    FALLBACK = "fallback"


class DiscountSourceType(str, Enum):
    MANUAL = "manual"
    FLYER = "flyer"


FLYER_TRANSITIONS: Dict[ProcessingStatus, FrozenSet[ProcessingStatus]] = {
    ProcessingStatus.PENDING: frozenset({ProcessingStatus.PROCESSING}),
    ProcessingStatus.PROCESSING: frozenset({ProcessingStatus.COMPLETED, ProcessingStatus.FAILED}),
    ProcessingStatus.COMPLETED: frozenset(),
    # manual re-trigger from the UI
    ProcessingStatus.FAILED: frozenset({ProcessingStatus.PROCESSING}),
}

EXTRACTION_TRANSITIONS: Dict[ImageExtractionStatus, FrozenSet[ImageExtractionStatus]] = {
    ImageExtractionStatus.PENDING: frozenset({ImageExtractionStatus.PROCESSING}),
    ImageExtractionStatus.PROCESSING: frozenset(
        {
            ImageExtractionStatus.COMPLETED,
            ImageExtractionStatus.FAILED,
            ImageExtractionStatus.MANUAL_REVIEW,
        }
    ),
    ImageExtractionStatus.COMPLETED: frozenset(),
    ImageExtractionStatus.FAILED: frozenset({ImageExtractionStatus.PROCESSING}),
    ImageExtractionStatus.MANUAL_REVIEW: frozenset(),
}

MATCHING_TRANSITIONS: Dict[MatchingStatus, FrozenSet[MatchingStatus]] = {
    MatchingStatus.PENDING: frozenset({MatchingStatus.PROCESSING}),
    MatchingStatus.PROCESSING: frozenset({MatchingStatus.COMPLETED, MatchingStatus.FAILED}),
    MatchingStatus.COMPLETED: frozenset({MatchingStatus.PROCESSING}),
    MatchingStatus.FAILED: frozenset({MatchingStatus.PROCESSING}),
}

_TABLES = {
    ProcessingStatus: FLYER_TRANSITIONS,
    ImageExtractionStatus: EXTRACTION_TRANSITIONS,
    MatchingStatus: MATCHING_TRANSITIONS,
}

S = TypeVar("S", ProcessingStatus, ImageExtractionStatus, MatchingStatus)
E = TypeVar("E", bound=Enum)


def can_transition(current: S, target: S) -> bool:
    table = _TABLES[type(current)]
    return target in table[current]


def ensure_transition(current: S, target: S, *, entity: str) -> S:
    """Return target if current -> target is legal, else raise InvalidTransition."""
    if not can_transition(current, target):
        raise InvalidTransition(f"{entity}: {current.value} -> {target.value} is not allowed")
    return target


def coerce(enum_cls: Type[E], value: object, default: E) -> E:
    """Read a stored status string; unknown or missing values map to default."""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        return default
