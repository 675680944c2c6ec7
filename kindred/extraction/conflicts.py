"""
Conflict detection between a newly extracted fact and a person's known facts.

Checks run per existing fact in a fixed order and the first match wins:
direct contradiction, ingredient conflict, dietary conflict, temporal update,
logical implication. Every conflict carries a reasoning string with the
derivation a reviewer needs to audit it.
"""

import logging
from collections import Counter
from typing import Any, Dict, Iterable, List, Optional, Union

from ..knowledge import (
    check_dietary_compatibility,
    fold_food_name,
    lookup_dietary_restriction,
    normalize_food_name,
    trace_ingredient,
)
from ..models import (
    ConflictSeverity,
    ConflictType,
    DetectedConflict,
    ExtractedRelation,
    Fact,
    FactStatus,
    ModelConflict,
    RelationType,
    SuggestedResolution,
)

FactLike = Union[Fact, ExtractedRelation]

DIRECT_OPPOSITES = {
    RelationType.LIKES: {RelationType.DISLIKES, RelationType.UNCOMFORTABLE_WITH},
    RelationType.DISLIKES: {RelationType.LIKES},
    RelationType.UNCOMFORTABLE_WITH: {RelationType.LIKES},
}

CONSUMPTION_TYPES = {RelationType.LIKES, RelationType.EXPERIENCED, RelationType.REGULARLY_DOES}
DIET_CHECKED_TYPES = {RelationType.LIKES, RelationType.REGULARLY_DOES, RelationType.PREFERS_OVER}

# Categories that rule out a food reading of a liked or experienced object
NON_FOOD_CATEGORIES = {
    "poker", "game", "games", "gaming", "card game", "board game", "music", "band", "song", "sport",
    "sports", "exercise", "fitness", "activity", "hobby", "movie", "film", "tv", "show", "book",
    "reading", "art", "technology", "software", "travel", "place", "person", "pet", "animal", "work",
}

# Categories where a person holds one value at a time
SINGLE_VALUED_CATEGORIES = {
    "occupation", "job", "employer", "profession", "residence", "location", "home",
    "relationship_status", "diet", "school", "role",
}

EXCLUSIVE_IDENTITIES = {
    "vegan": ["vegetarian", "pescatarian", "meat-eater"],
    "vegetarian": ["vegan", "pescatarian", "meat-eater"],
    "atheist": ["christian", "muslim", "jewish", "hindu", "buddhist"],
    "democrat": ["republican"],
    "cat person": ["dog person"],
}

NEGATION_WORDS = {"not", "don't", "dont", "never", "against", "anti"}

SEVERITY = {
    ConflictType.DIRECT_CONTRADICTION: ConflictSeverity.MEDIUM,
    ConflictType.INGREDIENT_CONFLICT: ConflictSeverity.HIGH,
    ConflictType.DIETARY_CONFLICT: ConflictSeverity.HIGH,
    ConflictType.LOGICAL_IMPLICATION: ConflictSeverity.MEDIUM,
    ConflictType.TEMPORAL_UPDATE: ConflictSeverity.LOW,
}


def same_object(first: str, second: str) -> bool:
    """Compare two object labels after case, article and plural folding."""
    return fold_food_name(first) == fold_food_name(second)


def _identity(label: str) -> str:
    return normalize_food_name(label).replace("meat eater", "meat-eater")


def _category(fact: FactLike) -> Optional[str]:
    return fact.category.strip().lower() if fact.category else None


def _is_food_context(fact: FactLike) -> bool:
    """A liked or eaten object counts as food unless its category rules it out."""
    return _category(fact) not in NON_FOOD_CATEGORIES


def _negation(label: str) -> tuple:
    words = label.lower().replace("’", "'").split()
    negated = any(word in NEGATION_WORDS for word in words)
    core = [word for word in words if word not in NEGATION_WORDS and word not in ("believe", "in")]
    return negated, " ".join(core)


def _conflict(conflict_type: ConflictType, new: FactLike, existing: Fact, description: str,
              reasoning: str, resolution: SuggestedResolution) -> DetectedConflict:
    return DetectedConflict(
        conflict_type=conflict_type,
        severity=SEVERITY[conflict_type],
        description=description,
        reasoning=reasoning,
        existing_fact_id=existing.id,
        existing_relation_type=existing.relation_type,
        existing_object_label=existing.object_label,
        new_relation_type=new.relation_type,
        new_object_label=new.object_label,
        suggested_resolution=resolution,
        auto_resolvable=conflict_type == ConflictType.TEMPORAL_UPDATE
    )


class ConflictDetector:
    """
    Finds tensions between a new fact and the subject's current facts.
    """

    def __init__(self, single_valued_categories: Optional[Iterable[str]] = None):
        self.single_valued_categories = set(single_valued_categories or SINGLE_VALUED_CATEGORIES)

    def detect(self, new: FactLike, existing_facts: Iterable[Fact]) -> List[DetectedConflict]:
        """
        Check one new fact against a list of existing current facts.

        Args:
            new: The newly extracted fact
            existing_facts: The subject's current facts, including facts
                accepted earlier in the same extraction

        Returns:
            One conflict per existing fact that clashes with the new one
        """
        conflicts = []
        for existing in existing_facts:
            if existing.status != FactStatus.CURRENT:
                continue
            conflict = self.check_pair(new, existing)
            if conflict:
                conflicts.append(conflict)

        if conflicts:
            logging.debug(f"{len(conflicts)} conflict(s) for {new.relation_type.value} {new.object_label!r}")
        return conflicts

    def check_pair(self, new: FactLike, existing: Fact) -> Optional[DetectedConflict]:
        """
        Check a new fact against one existing fact.

        Args:
            new: The newly extracted fact
            existing: A current fact about the same subject

        Returns:
            The first conflict found, or None
        """
        if new.status != FactStatus.PAST:
            for check in (self._check_direct, self._check_ingredient, self._check_dietary):
                conflict = check(new, existing)
                if conflict:
                    return conflict

        conflict = self._check_temporal(new, existing)
        if conflict:
            return conflict

        if new.status != FactStatus.PAST:
            return self._check_logical(new, existing)
        return None

    def _check_direct(self, new: FactLike, existing: Fact) -> Optional[DetectedConflict]:
        opposites = DIRECT_OPPOSITES.get(new.relation_type, set())
        if existing.relation_type not in opposites or not same_object(new.object_label, existing.object_label):
            return None

        return _conflict(
            ConflictType.DIRECT_CONTRADICTION, new, existing,
            description=(f"{new.relation_type.value} {new.object_label} contradicts existing "
                         f"{existing.relation_type.value} {existing.object_label}"),
            reasoning=(f"The same object is already recorded with the opposite relation "
                       f"{existing.relation_type.value}"),
            resolution=SuggestedResolution.USER_REVIEW_REQUIRED
        )

    def _check_ingredient(self, new: FactLike, existing: Fact) -> Optional[DetectedConflict]:
        if new.relation_type in CONSUMPTION_TYPES and existing.relation_type == RelationType.SENSITIVE_TO:
            food_fact, sensitivity, resolution = new, existing, SuggestedResolution.REJECT_NEW
        elif new.relation_type == RelationType.SENSITIVE_TO and existing.relation_type in CONSUMPTION_TYPES:
            food_fact, sensitivity, resolution = existing, new, SuggestedResolution.USER_REVIEW_REQUIRED
        else:
            return None

        if not _is_food_context(food_fact):
            return None

        link = trace_ingredient(food_fact.object_label, sensitivity.object_label)
        if not link:
            return None

        return _conflict(
            ConflictType.INGREDIENT_CONFLICT, new, existing,
            description=(f"SENSITIVE_TO {sensitivity.object_label} conflicts with "
                         f"{food_fact.relation_type.value} {food_fact.object_label}"),
            reasoning=f"{food_fact.object_label} is derived from {sensitivity.object_label}: {link.explanation}",
            resolution=resolution
        )

    def _check_dietary(self, new: FactLike, existing: Fact) -> Optional[DetectedConflict]:
        if new.relation_type in DIET_CHECKED_TYPES and existing.relation_type == RelationType.IS:
            food_fact, diet_fact, resolution = new, existing, SuggestedResolution.REJECT_NEW
        elif new.relation_type == RelationType.IS and existing.relation_type in DIET_CHECKED_TYPES:
            food_fact, diet_fact, resolution = existing, new, SuggestedResolution.USER_REVIEW_REQUIRED
        else:
            return None

        if not _is_food_context(food_fact) or not lookup_dietary_restriction(diet_fact.object_label):
            return None

        check = check_dietary_compatibility(food_fact.object_label, diet_fact.object_label)
        if check.compatible:
            return None

        return _conflict(
            ConflictType.DIETARY_CONFLICT, new, existing,
            description=(f"IS {diet_fact.object_label} conflicts with "
                         f"{food_fact.relation_type.value} {food_fact.object_label}"),
            reasoning=check.reason,
            resolution=resolution
        )

    def _check_temporal(self, new: FactLike, existing: Fact) -> Optional[DetectedConflict]:
        reasoning = None

        if (new.relation_type == RelationType.USED_TO_BE and existing.relation_type == RelationType.IS
                and same_object(new.object_label, existing.object_label)):
            reasoning = f"Now described as USED_TO_BE {new.object_label}, so IS {existing.object_label} is past"
        elif new.relation_type == existing.relation_type:
            if new.status == FactStatus.PAST and same_object(new.object_label, existing.object_label):
                reasoning = f"{existing.object_label} is now reported as past"
            elif (_category(new) and _category(new) == _category(existing)
                  and _category(new) in self.single_valued_categories
                  and not same_object(new.object_label, existing.object_label)):
                reasoning = (f"{_category(new)} holds one value at a time: "
                             f"{new.object_label} replaces {existing.object_label}")

        if reasoning is None:
            return None

        return _conflict(
            ConflictType.TEMPORAL_UPDATE, new, existing,
            description=(f"{new.relation_type.value} {new.object_label} supersedes "
                         f"{existing.relation_type.value} {existing.object_label}"),
            reasoning=reasoning,
            resolution=SuggestedResolution.MARK_OLD_AS_PAST
        )

    def _check_logical(self, new: FactLike, existing: Fact) -> Optional[DetectedConflict]:
        identity_types = {RelationType.IS, RelationType.BELIEVES}
        if new.relation_type not in identity_types or existing.relation_type not in identity_types:
            return None

        new_label = _identity(new.object_label)
        old_label = _identity(existing.object_label)
        reasoning = None

        if old_label in EXCLUSIVE_IDENTITIES.get(new_label, []) or new_label in EXCLUSIVE_IDENTITIES.get(old_label, []):
            reasoning = f"'{new_label}' and '{old_label}' are mutually exclusive"
        elif new.relation_type == existing.relation_type == RelationType.BELIEVES:
            new_negated, new_core = _negation(new.object_label)
            old_negated, old_core = _negation(existing.object_label)
            if new_core and new_core == old_core and new_negated != old_negated:
                reasoning = f"'{new.object_label}' negates the existing belief '{existing.object_label}'"

        if reasoning is None:
            return None

        return _conflict(
            ConflictType.LOGICAL_IMPLICATION, new, existing,
            description=(f"{new.relation_type.value} {new.object_label} is incompatible with "
                         f"{existing.relation_type.value} {existing.object_label}"),
            reasoning=reasoning,
            resolution=SuggestedResolution.USER_REVIEW_REQUIRED
        )


def model_conflicts_for(relation: ExtractedRelation, model_conflicts: Iterable[ModelConflict]) -> List[ModelConflict]:
    """
    Select the model-reported conflicts that concern a given relation.

    Args:
        relation: An extracted relation
        model_conflicts: Conflicts from the model response

    Returns:
        Model conflicts whose newRelation names the same object (and type, if given)
    """
    matches = []
    for conflict in model_conflicts:
        new_relation = conflict.new_relation or {}
        label = new_relation.get("objectLabel") or new_relation.get("object_label")
        relation_type = new_relation.get("relationType") or new_relation.get("relation_type")
        if not label or not same_object(label, relation.object_label):
            continue
        if relation_type and relation_type != relation.relation_type.value:
            continue
        matches.append(conflict)
    return matches


def merge_model_conflicts(local: List[DetectedConflict], relation: ExtractedRelation,
                          model_conflicts: Iterable[ModelConflict]) -> List[DetectedConflict]:
    """
    Add model-reported conflicts that local detection did not find.

    Model conflicts cannot be verified locally, so they are kept as high
    severity and always need review.

    Args:
        local: Conflicts found by the detector for this relation
        relation: The extracted relation
        model_conflicts: Conflicts from the model response

    Returns:
        The local conflicts followed by any unmatched model conflicts
    """
    merged = list(local)
    known_ids = {c.existing_fact_id for c in local if c.existing_fact_id}

    for conflict in model_conflicts_for(relation, model_conflicts):
        if conflict.existing_relation_id and conflict.existing_relation_id in known_ids:
            continue
        try:
            conflict_type = ConflictType(conflict.type)
        except ValueError:
            conflict_type = ConflictType.LOGICAL_IMPLICATION

        merged.append(DetectedConflict(
            conflict_type=conflict_type,
            severity=ConflictSeverity.HIGH,
            description=conflict.description or f"Model reported a {conflict.type} conflict",
            reasoning=conflict.reasoning or conflict.description or "Reported by the model",
            existing_fact_id=conflict.existing_relation_id,
            new_relation_type=relation.relation_type,
            new_object_label=relation.object_label,
            suggested_resolution=SuggestedResolution.USER_REVIEW_REQUIRED,
            source="model"
        ))

    return merged


def explain_conflict(conflict: DetectedConflict) -> str:
    """
    Render a conflict for a human reviewer.

    Args:
        conflict: A detected conflict

    Returns:
        Multi-line explanation with severity, reasoning and suggested resolution
    """
    lines = [
        f"[{conflict.severity.value.upper()}] {conflict.conflict_type.value}: {conflict.description}",
        f"  Reasoning: {conflict.reasoning}",
        f"  Suggested: {conflict.suggested_resolution.value}",
    ]
    if conflict.auto_resolvable:
        lines.append("  Can be resolved automatically")
    if conflict.source != "local":
        lines.append(f"  Reported by: {conflict.source}")
    return "\n".join(lines)


def summarize_conflicts(conflicts: Iterable[DetectedConflict]) -> Dict[str, Any]:
    """
    Count conflicts by type and severity.

    Returns:
        Dictionary with total, by_type, by_severity, auto_resolvable and
        requires_review counts
    """
    conflicts = list(conflicts)
    return {
        "total": len(conflicts),
        "by_type": dict(Counter(c.conflict_type.value for c in conflicts)),
        "by_severity": dict(Counter(c.severity.value for c in conflicts)),
        "auto_resolvable": sum(1 for c in conflicts if c.auto_resolvable),
        "requires_review": sum(1 for c in conflicts if c.severity != ConflictSeverity.LOW),
    }
