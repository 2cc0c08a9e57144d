"""Pipeline stages: parsing, region detection, image extraction, matching and approval."""

from .approval import AutoApprovalEvaluator, parse_decision
from .calculator import DiscountCalculator, parse_calculation
from .extraction import ExtractionConfig, ImageExtractionOrchestrator, quality_score
from .flow import FlyerPipeline, upload_flyer
from .matching import MatchingScorer, parse_match_response, run_matching_stage
from .parsing import FlyerParser, parse_flyer_response
from .regions import RegionDetector, heuristic_regions

__all__ = [
    "AutoApprovalEvaluator",
    "DiscountCalculator",
    "ExtractionConfig",
    "FlyerParser",
    "FlyerPipeline",
    "ImageExtractionOrchestrator",
    "MatchingScorer",
    "RegionDetector",
    "heuristic_regions",
    "parse_calculation",
    "parse_decision",
    "parse_flyer_response",
    "parse_match_response",
    "quality_score",
    "run_matching_stage",
    "upload_flyer",
]
