"""
Acceptance routing for extracted facts.

Each fact is auto-accepted, queued for human review, or rejected. The
decision is a pure function of the fact, its relation-type risk class and the
conflicts found for it; applying the decision is a separate step that writes
to the database.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from ..database import DatabaseManager
from ..models import (
    ConflictSeverity,
    ConflictType,
    DetectedConflict,
    ExtractedRelation,
    Fact,
    FactSource,
    PendingExtraction,
    RelationType,
    new_id,
)
from .conflicts import FactLike, same_object


class RiskClass(str, Enum):
    LOW = "low"
    SENSITIVE = "sensitive"
    DEPENDENCY = "dependency"
    BELIEF = "belief"
    GENERAL = "general"


RISK_CLASSES = {
    RelationType.LIKES: RiskClass.LOW,
    RelationType.DISLIKES: RiskClass.LOW,
    RelationType.KNOWS: RiskClass.LOW,
    RelationType.ASSOCIATED_WITH: RiskClass.LOW,
    RelationType.EXPERIENCED: RiskClass.LOW,
    RelationType.FEARS: RiskClass.SENSITIVE,
    RelationType.STRUGGLES_WITH: RiskClass.SENSITIVE,
    RelationType.UNCOMFORTABLE_WITH: RiskClass.SENSITIVE,
    RelationType.SENSITIVE_TO: RiskClass.SENSITIVE,
    RelationType.CARES_FOR: RiskClass.DEPENDENCY,
    RelationType.DEPENDS_ON: RiskClass.DEPENDENCY,
    RelationType.BELIEVES: RiskClass.BELIEF,
}

# None means the class is never auto-accepted
AUTO_ACCEPT_THRESHOLDS = {
    RiskClass.LOW: 0.85,
    RiskClass.SENSITIVE: 0.90,
    RiskClass.DEPENDENCY: 0.95,
    RiskClass.BELIEF: None,
    RiskClass.GENERAL: 0.90,
}

REVIEW_SEVERITIES = {ConflictSeverity.MEDIUM, ConflictSeverity.HIGH}


def risk_class(relation_type: RelationType) -> RiskClass:
    return RISK_CLASSES.get(relation_type, RiskClass.GENERAL)


def auto_accept_threshold(relation_type: RelationType) -> Optional[float]:
    """Minimum confidence for automatic acceptance, or None if never automatic."""
    return AUTO_ACCEPT_THRESHOLDS[risk_class(relation_type)]


def find_duplicate(fact: FactLike, existing_facts: Optional[List[Fact]]) -> Optional[Fact]:
    """Return the existing fact with the same relation, status and folded object, if any."""
    for existing in existing_facts or []:
        if (existing.relation_type == fact.relation_type
                and existing.status == fact.status
                and same_object(existing.object_label, fact.object_label)):
            return existing
    return None


def should_auto_accept(relation_type: RelationType, confidence: float) -> bool:
    """
    Check whether a fact clears its risk-class threshold.

    Args:
        relation_type: The fact's relation type
        confidence: The model's confidence in [0, 1]

    Returns:
        True if the confidence alone allows automatic acceptance
    """
    threshold = auto_accept_threshold(relation_type)
    return threshold is not None and confidence >= threshold


class RoutingOutcome(str, Enum):
    ACCEPT = "accept"
    QUEUE = "queue"
    REJECT = "reject"


@dataclass
class RoutingDecision:
    """
    What to do with one extracted fact, and why.
    """
    outcome: RoutingOutcome
    reason: str
    conflicts: List[DetectedConflict] = field(default_factory=list)
    supersedes: List[str] = field(default_factory=list)
    fact_id: str = field(default_factory=new_id)


@dataclass
class AppliedDecision:
    decision: RoutingDecision
    fact: Optional[Fact] = None
    pending: Optional[PendingExtraction] = None
    superseded: List[str] = field(default_factory=list)


class AcceptanceRouter:
    """
    Decides the fate of extracted facts and applies it.
    """

    def route(self, relation: ExtractedRelation, conflicts: List[DetectedConflict],
              existing_facts: Optional[List[Fact]] = None) -> RoutingDecision:
        """
        Decide whether a fact is accepted, queued or rejected.

        Args:
            relation: The extracted fact
            conflicts: Conflicts found for it, local and model-reported
            existing_facts: The subject's current facts

        Returns:
            RoutingDecision; accepted decisions list the fact ids to supersede
        """
        duplicate = find_duplicate(relation, existing_facts)
        if duplicate:
            return RoutingDecision(
                outcome=RoutingOutcome.REJECT,
                reason=f"Already recorded as fact {duplicate.id}",
                conflicts=conflicts
            )

        blocking = [c for c in conflicts if c.severity in REVIEW_SEVERITIES]
        if blocking:
            kinds = ", ".join(sorted({c.conflict_type.value for c in blocking}))
            return RoutingDecision(
                outcome=RoutingOutcome.QUEUE,
                reason=f"Conflicts with existing facts ({kinds})",
                conflicts=conflicts
            )

        threshold = auto_accept_threshold(relation.relation_type)
        if threshold is None:
            return RoutingDecision(
                outcome=RoutingOutcome.QUEUE,
                reason=f"{relation.relation_type.value} facts always require review",
                conflicts=conflicts
            )
        if relation.confidence < threshold:
            return RoutingDecision(
                outcome=RoutingOutcome.QUEUE,
                reason=(f"Confidence {relation.confidence:.2f} below {threshold:.2f} "
                        f"auto-accept threshold for {relation.relation_type.value}"),
                conflicts=conflicts
            )

        supersedes = [
            c.existing_fact_id for c in conflicts
            if c.conflict_type == ConflictType.TEMPORAL_UPDATE and c.existing_fact_id
        ]
        return RoutingDecision(
            outcome=RoutingOutcome.ACCEPT,
            reason=f"Confidence {relation.confidence:.2f} meets {threshold:.2f} threshold",
            conflicts=conflicts,
            supersedes=supersedes
        )

    def apply(
        self,
        db: DatabaseManager,
        decision: RoutingDecision,
        relation: ExtractedRelation,
        user_id: str,
        subject_id: str,
        subject_name: Optional[str] = None,
        story_id: Optional[str] = None
    ) -> AppliedDecision:
        """
        Write a routing decision to the database.

        Accepted facts supersede the facts named in the decision and are
        inserted as current; queued facts become pending extractions;
        rejected facts write nothing.

        Args:
            db: Database manager, normally inside a transaction
            decision: Result of route()
            relation: The extracted fact
            user_id: Owner of the records
            subject_id: Resolved person id
            subject_name: Display name stored on pending extractions
            story_id: Story the fact came from

        Returns:
            AppliedDecision with whatever was written
        """
        applied = AppliedDecision(decision=decision)

        if decision.outcome == RoutingOutcome.ACCEPT:
            for fact_id in decision.supersedes:
                if db.supersede_fact(fact_id):
                    applied.superseded.append(fact_id)
            applied.fact = db.insert_fact(Fact(
                id=decision.fact_id,
                user_id=user_id,
                subject_id=subject_id,
                relation_type=relation.relation_type,
                object_label=relation.object_label,
                object_type=relation.object_type,
                intensity=relation.intensity,
                confidence=relation.confidence,
                category=relation.category,
                metadata=relation.metadata,
                status=relation.status,
                source=FactSource.AI_EXTRACTION,
                story_id=story_id
            ))
            logging.info(f"Accepted {relation.relation_type.value} {relation.object_label!r} for {subject_id}")

        elif decision.outcome == RoutingOutcome.QUEUE:
            metadata = dict(relation.metadata or {})
            if decision.conflicts:
                metadata["conflicts"] = [c.model_dump(mode="json") for c in decision.conflicts]
            applied.pending = db.insert_pending_extraction(PendingExtraction(
                user_id=user_id,
                story_id=story_id,
                subject_id=subject_id,
                subject_name=subject_name,
                relation_type=relation.relation_type,
                object_label=relation.object_label,
                object_type=relation.object_type,
                intensity=relation.intensity,
                confidence=relation.confidence,
                category=relation.category,
                metadata=metadata or None,
                status=relation.status,
                extraction_reason=decision.reason
            ))
            logging.info(f"Queued {relation.relation_type.value} {relation.object_label!r} for review: {decision.reason}")

        else:
            logging.info(f"Rejected {relation.relation_type.value} {relation.object_label!r}: {decision.reason}")

        return applied
