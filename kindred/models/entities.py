"""
Entity models for Kindred.

This module defines the records the journal persists: people, the typed facts
known about them, facts waiting for review, and the stories they came from.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def new_id() -> str:
    """Generate a stable identifier for a new record."""
    return str(uuid.uuid4())


class RelationType(str, Enum):
    """The fixed relation-type vocabulary. Values are case-sensitive."""
    KNOWS = "KNOWS"
    LIKES = "LIKES"
    DISLIKES = "DISLIKES"
    ASSOCIATED_WITH = "ASSOCIATED_WITH"
    EXPERIENCED = "EXPERIENCED"
    HAS_SKILL = "HAS_SKILL"
    OWNS = "OWNS"
    HAS_IMPORTANT_DATE = "HAS_IMPORTANT_DATE"
    IS = "IS"
    BELIEVES = "BELIEVES"
    FEARS = "FEARS"
    WANTS_TO_ACHIEVE = "WANTS_TO_ACHIEVE"
    STRUGGLES_WITH = "STRUGGLES_WITH"
    CARES_FOR = "CARES_FOR"
    DEPENDS_ON = "DEPENDS_ON"
    REGULARLY_DOES = "REGULARLY_DOES"
    PREFERS_OVER = "PREFERS_OVER"
    USED_TO_BE = "USED_TO_BE"
    SENSITIVE_TO = "SENSITIVE_TO"
    UNCOMFORTABLE_WITH = "UNCOMFORTABLE_WITH"


class Intensity(str, Enum):
    WEAK = "weak"
    MEDIUM = "medium"
    STRONG = "strong"
    VERY_STRONG = "very_strong"


class FactStatus(str, Enum):
    CURRENT = "current"
    PAST = "past"
    FUTURE = "future"
    ASPIRATION = "aspiration"


class FactSource(str, Enum):
    MANUAL = "manual"
    AI_EXTRACTION = "ai_extraction"
    QUESTION_MODE = "question_mode"
    VOICE_NOTE = "voice_note"
    IMPORT = "import"


class PersonType(str, Enum):
    PRIMARY = "primary"
    MENTIONED = "mentioned"
    PLACEHOLDER = "placeholder"


class PersonStatus(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"
    DECEASED = "deceased"
    PLACEHOLDER = "placeholder"
    MERGED = "merged"


class ReviewStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EDITED = "edited"


class StoryState(str, Enum):
    """
    Extraction lifecycle of a story. Only PROCESSED is terminal.
    """
    UNPROCESSED = "unprocessed"
    EXTRACTING = "extracting"
    PARSING = "parsing"
    RESOLVING = "resolving"
    ROUTING = "routing"
    PROCESSED = "processed"


class Person(BaseModel):
    """
    A human referenced in the user's stories.
    """

    id: str = Field(
        default_factory=new_id,
        description="Stable unique identifier, never reassigned"
    )

    user_id: str = Field(
        ...,
        description="Owner of the record"
    )

    name: str = Field(
        ...,
        description="Display name"
    )

    nickname: Optional[str] = Field(
        None,
        description="Optional nickname used in stories"
    )

    person_type: PersonType = Field(
        PersonType.MENTIONED,
        description="primary, mentioned or placeholder"
    )

    status: PersonStatus = Field(
        PersonStatus.ACTIVE,
        description="Lifecycle status"
    )

    added_by: FactSource = Field(
        FactSource.MANUAL,
        description="How the person entered the graph"
    )

    extraction_context: Optional[str] = Field(
        None,
        description="Free-text disambiguation context (e.g. \"Mike's sister\")"
    )

    potential_duplicates: List[str] = Field(
        default_factory=list,
        description="Ids of existing people this one may duplicate"
    )

    canonical_id: Optional[str] = Field(
        None,
        description="Person this record was merged into"
    )

    mention_count: int = Field(
        0,
        description="Number of stories mentioning this person"
    )

    deleted_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)


class RosterEntry(BaseModel):
    """
    The slice of a Person the extraction pipeline needs for matching.
    """
    id: str
    name: str
    nickname: Optional[str] = None


class Fact(BaseModel):
    """
    A typed statement about a person, e.g. LIKES "coffee".
    """

    id: str = Field(default_factory=new_id)

    user_id: str = Field(..., description="Owner of the record")

    subject_id: str = Field(..., description="Id of the person the fact is about")

    relation_type: RelationType = Field(..., description="Relation type from the fixed vocabulary")

    object_label: str = Field(..., description="What is liked, feared, true, etc.")

    object_type: Optional[str] = None

    intensity: Optional[Intensity] = None

    confidence: float = Field(
        1.0,
        ge=0.0,
        le=1.0,
        description="Confidence score in [0, 1]"
    )

    category: Optional[str] = Field(None, description="Free category tag (food, occupation, ...)")

    metadata: Optional[Dict[str, Any]] = None

    status: FactStatus = Field(FactStatus.CURRENT, description="Temporal status")

    source: FactSource = Field(FactSource.MANUAL, description="Provenance")

    story_id: Optional[str] = Field(None, description="Story the fact was extracted from")

    valid_from: Optional[datetime] = None
    valid_to: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)


class PendingExtraction(BaseModel):
    """
    A fact-shaped record waiting for a human to approve, edit or reject it.
    """

    id: str = Field(default_factory=new_id)
    user_id: str
    story_id: Optional[str] = None
    subject_id: str
    subject_name: Optional[str] = None
    relation_type: RelationType
    object_label: str
    object_type: Optional[str] = None
    intensity: Optional[Intensity] = None
    confidence: float = Field(..., ge=0.0, le=1.0)
    category: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    status: FactStatus = FactStatus.CURRENT

    extraction_reason: str = Field(
        ...,
        description="Why the fact was queued instead of accepted"
    )

    review_status: ReviewStatus = ReviewStatus.PENDING
    reviewed_at: Optional[datetime] = None
    review_notes: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.now)


class Story(BaseModel):
    """
    A free-text journal entry. The content is immutable once saved.
    """

    id: str = Field(default_factory=new_id)
    user_id: str
    title: Optional[str] = None
    content: str = Field(..., min_length=1)
    story_date: Optional[datetime] = None

    state: StoryState = Field(
        StoryState.UNPROCESSED,
        description="Extraction lifecycle state"
    )

    ai_processed_at: Optional[datetime] = None

    extracted_data: Optional[Dict[str, Any]] = Field(
        None,
        description="Validated extraction output and summary, stored once processed"
    )

    last_error: Optional[str] = Field(
        None,
        description="Message of the most recent failed extraction attempt"
    )

    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    @property
    def ai_processed(self) -> bool:
        return self.state == StoryState.PROCESSED
