"""Extraction pipeline: parsing, identity resolution, conflicts, routing and orchestration."""

from .conflicts import ConflictDetector, explain_conflict, merge_model_conflicts, same_object, summarize_conflicts
from .identity import IdentityResolver, ResolvedPerson, calculate_duplicate_confidence
from .orchestrator import (
    ExtractionError,
    ExtractionInProgressError,
    ExtractionOrchestrator,
    ReviewError,
    StoryAlreadyProcessedError,
    StoryNotFoundError,
    estimate_extraction_cost,
)
from .parser import extract_json_payload, parse_extraction_response
from .router import AcceptanceRouter, RiskClass, RoutingDecision, RoutingOutcome, find_duplicate, should_auto_accept

__all__ = [
    "ConflictDetector",
    "explain_conflict",
    "merge_model_conflicts",
    "same_object",
    "summarize_conflicts",
    "IdentityResolver",
    "ResolvedPerson",
    "calculate_duplicate_confidence",
    "ExtractionError",
    "ExtractionInProgressError",
    "ExtractionOrchestrator",
    "ReviewError",
    "StoryAlreadyProcessedError",
    "StoryNotFoundError",
    "estimate_extraction_cost",
    "extract_json_payload",
    "parse_extraction_response",
    "AcceptanceRouter",
    "RiskClass",
    "RoutingDecision",
    "RoutingOutcome",
    "find_duplicate",
    "should_auto_accept",
]
