"""
Extraction models for Kindred.

This module defines the validated shape of one model response (the
extraction result) along with the conflict and summary records the pipeline
produces while reconciling it against the existing graph. Field aliases follow
the camelCase names used in the model's JSON.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .entities import FactStatus, Intensity, PersonType, RelationType


class CamelModel(BaseModel):
    """Base for models exchanged with the language model as camelCase JSON."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True
    )


class ExtractedPerson(CamelModel):
    """
    A person mention as proposed by the model.
    """

    id: str = Field(
        ...,
        min_length=1,
        description="Existing person id, or a temporary id for a new person"
    )

    name: str = Field(..., min_length=1)

    is_new: bool = Field(
        True,
        strict=True,
        description="Whether the model believes this is a new person"
    )

    potential_duplicate_of: Optional[str] = None

    person_type: PersonType = PersonType.MENTIONED

    confidence: float = Field(0.5, ge=0.0, le=1.0, strict=True)

    @field_validator("person_type", mode="before")
    @classmethod
    def _default_person_type(cls, value: Any) -> Any:
        return PersonType.MENTIONED if value in (None, "") else value


class ExtractedRelation(CamelModel):
    """
    A fact about a person as proposed by the model.
    """

    subject_id: str = Field(..., min_length=1)
    subject_name: Optional[str] = None
    relation_type: RelationType
    object_label: str = Field(..., min_length=1)
    object_type: Optional[str] = None
    intensity: Optional[Intensity] = None
    confidence: float = Field(..., ge=0.0, le=1.0, strict=True)
    category: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    status: FactStatus = FactStatus.CURRENT
    source: str = "ai_extraction"

    @field_validator("object_type", "intensity", "category", "metadata", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        return None if value == "" else value

    @field_validator("status", mode="before")
    @classmethod
    def _default_status(cls, value: Any) -> Any:
        return FactStatus.CURRENT if value in (None, "") else value


class ModelConflict(CamelModel):
    """
    A conflict the model itself reported.
    """
    type: str = "logical_implication"
    description: str = ""
    reasoning: Optional[str] = None
    existing_relation_id: Optional[str] = None
    new_relation: Optional[Dict[str, Any]] = None


class AmbiguousCandidate(CamelModel):
    id: str = Field(..., min_length=1)
    name: str
    reason: str = "Name match"
    score: Optional[float] = Field(None, ge=0.0, le=1.0)


class AmbiguousMatch(CamelModel):
    """
    A name from the story that could be any of several existing people.
    """
    name_in_story: str = Field(..., min_length=1)
    possible_matches: List[AmbiguousCandidate] = Field(default_factory=list)


class DroppedEntry(CamelModel):
    """
    An entry removed from a model response because it failed validation.
    """
    section: str
    index: int
    reason: str
    entry: Any = None


class ExtractionResult(CamelModel):
    """
    The validated output of one model call. Never persisted as-is.
    """

    people: List[ExtractedPerson] = Field(default_factory=list)
    relations: List[ExtractedRelation] = Field(default_factory=list)
    conflicts: List[ModelConflict] = Field(default_factory=list)
    ambiguous_matches: List[AmbiguousMatch] = Field(default_factory=list)

    dropped: List[DroppedEntry] = Field(
        default_factory=list,
        description="Entries discarded during validation, with reasons"
    )

    @property
    def warnings(self) -> List[str]:
        return [f"Dropped {d.section}[{d.index}]: {d.reason}" for d in self.dropped]


class ConflictType(str, Enum):
    DIRECT_CONTRADICTION = "direct_contradiction"
    INGREDIENT_CONFLICT = "ingredient_conflict"
    DIETARY_CONFLICT = "dietary_conflict"
    LOGICAL_IMPLICATION = "logical_implication"
    TEMPORAL_UPDATE = "temporal_update"


class ConflictSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class SuggestedResolution(str, Enum):
    REJECT_NEW = "reject_new"
    REPLACE_OLD = "replace_old"
    MARK_OLD_AS_PAST = "mark_old_as_past"
    ADD_BOTH_WITH_CONTEXT = "add_both_with_context"
    USER_REVIEW_REQUIRED = "user_review_required"


class DetectedConflict(BaseModel):
    """
    A tension between a new fact and what is already known about the subject.
    """

    conflict_type: ConflictType
    severity: ConflictSeverity
    description: str

    reasoning: str = Field(
        ...,
        description="Derivation chain a reviewer can audit without re-deriving it"
    )

    existing_fact_id: Optional[str] = None
    existing_relation_type: Optional[RelationType] = None
    existing_object_label: Optional[str] = None
    new_relation_type: Optional[RelationType] = None
    new_object_label: Optional[str] = None
    suggested_resolution: SuggestedResolution = SuggestedResolution.USER_REVIEW_REQUIRED
    auto_resolvable: bool = False

    source: str = Field(
        "local",
        description="\"local\" when found by the detector, \"model\" when reported by the model"
    )


class ExtractionSummary(BaseModel):
    """
    Statistics returned to the caller after one extraction run.
    """

    story_id: str
    new_people_count: int = 0
    auto_accepted_count: int = 0
    pending_review_count: int = 0
    rejected_count: int = 0
    conflicts_count: int = 0
    superseded_count: int = 0
    held_for_disambiguation_count: int = 0
    tokens_used: Optional[int] = None
    processing_time_ms: int = 0
    ambiguous_matches: List[AmbiguousMatch] = Field(default_factory=list)
    conflicts: List[DetectedConflict] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class StoryExtractionOutcome(BaseModel):
    """
    Result of saving a story and extracting from it in one step.

    The two halves are reported separately so the caller can offer a retry
    of the extraction alone when the story was saved but extraction failed.
    """

    story_id: Optional[str] = None
    story_saved: bool = False
    extraction_succeeded: bool = False
    summary: Optional[ExtractionSummary] = None
    error_type: Optional[str] = None
    error_message: Optional[str] = None
    user_message: Optional[str] = None
    retryable: bool = False
