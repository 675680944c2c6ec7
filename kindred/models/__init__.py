"""Data models for Kindred."""

from .entities import (
    Fact,
    FactSource,
    FactStatus,
    Intensity,
    PendingExtraction,
    Person,
    PersonStatus,
    PersonType,
    RelationType,
    ReviewStatus,
    RosterEntry,
    Story,
    StoryState,
    new_id,
)
from .extraction import (
    AmbiguousCandidate,
    AmbiguousMatch,
    ConflictSeverity,
    ConflictType,
    DetectedConflict,
    DroppedEntry,
    ExtractedPerson,
    ExtractedRelation,
    ExtractionResult,
    ExtractionSummary,
    ModelConflict,
    StoryExtractionOutcome,
    SuggestedResolution,
)

__all__ = [
    "Fact",
    "FactSource",
    "FactStatus",
    "Intensity",
    "PendingExtraction",
    "Person",
    "PersonStatus",
    "PersonType",
    "RelationType",
    "ReviewStatus",
    "RosterEntry",
    "Story",
    "StoryState",
    "new_id",
    "AmbiguousCandidate",
    "AmbiguousMatch",
    "ConflictSeverity",
    "ConflictType",
    "DetectedConflict",
    "DroppedEntry",
    "ExtractedPerson",
    "ExtractedRelation",
    "ExtractionResult",
    "ExtractionSummary",
    "ModelConflict",
    "StoryExtractionOutcome",
    "SuggestedResolution",
]
