"""
Identity resolution for extracted person mentions.

The resolver decides, for every person the model mentioned, whether it is an
existing person, a new one, or an ambiguous name the user has to settle. It
never binds a bare first name to an existing person on its own, and it never
merges people; duplicate scores are only surfaced for review.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

from ..models import (
    AmbiguousCandidate,
    AmbiguousMatch,
    ExtractedPerson,
    ExtractedRelation,
    ExtractionResult,
    PersonType,
    RosterEntry,
)

EXACT_MATCH_SCORE = 0.5
NICKNAME_MATCH_SCORE = 0.4
SUBSTRING_MATCH_SCORE = 0.3
FIRST_NAME_MATCH_SCORE = 0.2

# Minimum score for an existing person to be recorded as a potential duplicate
DUPLICATE_THRESHOLD = 0.5

MENTION_PATTERN = re.compile(r"@(\+?)([^\W\d_][\w'-]*)", re.UNICODE)


def clean_name(name: str) -> str:
    """Strip whitespace and any leading @ or @+ from a mentioned name."""
    return re.sub(r"^@\+?", "", (name or "").strip()).strip()


def _first(name: str) -> str:
    parts = name.lower().split()
    return parts[0] if parts else ""


def calculate_duplicate_confidence(new_name: str, existing_name: str,
                                   existing_nickname: Optional[str] = None) -> float:
    """
    Score how likely a mentioned name refers to an existing person.

    Four additive signals, capped at 1.0: exact case-insensitive name match
    (+0.5), nickname match (+0.4), substring containment either way (+0.3)
    and first-name match (+0.2).

    Args:
        new_name: Name as it appeared in the story
        existing_name: Existing person's name
        existing_nickname: Existing person's nickname, if any

    Returns:
        Score between 0.0 and 1.0
    """
    new = clean_name(new_name).lower()
    existing = (existing_name or "").strip().lower()
    if not new or not existing:
        return 0.0

    score = 0.0
    if new == existing:
        score += EXACT_MATCH_SCORE
    if existing_nickname and new == existing_nickname.strip().lower():
        score += NICKNAME_MATCH_SCORE
    if new in existing or existing in new:
        score += SUBSTRING_MATCH_SCORE
    if _first(new) == _first(existing):
        score += FIRST_NAME_MATCH_SCORE

    return min(score, 1.0)


@dataclass
class Candidate:
    """
    An existing person a mentioned name could refer to.
    """
    person: RosterEntry
    score: float
    reasons: List[str]

    @property
    def exact(self) -> bool:
        return "Exact name match" in self.reasons or "Nickname match" in self.reasons

    @property
    def plausible(self) -> bool:
        """Whether the match is strong enough to make a bare name ambiguous."""
        return self.exact or "First name match" in self.reasons

    def to_ambiguous(self) -> AmbiguousCandidate:
        return AmbiguousCandidate(id=self.person.id, name=self.person.name,
                                  reason=", ".join(self.reasons), score=self.score)


@dataclass
class ResolvedPerson:
    """
    A mention with its identity decided.

    person_id is the existing person's id, or None for a person to create.
    """
    mention_id: str
    name: str
    is_new: bool
    person_id: Optional[str] = None
    person_type: PersonType = PersonType.MENTIONED
    confidence: float = 0.5
    potential_duplicates: List[str] = field(default_factory=list)
    reason: str = ""


@dataclass
class SubjectResolution:
    person: Optional[ResolvedPerson] = None
    held_name: Optional[str] = None


class IdentityResolver:
    """
    Matches extracted mentions against the user's roster.
    """

    def __init__(
        self,
        roster: Iterable[RosterEntry],
        story_text: str = "",
        confirmed_present: Optional[Iterable[RosterEntry]] = None,
        confirmed_new: Optional[Iterable[str]] = None
    ):
        """
        Initialize the resolver.

        Args:
            roster: Existing people (neither deleted nor merged)
            story_text: The story, scanned for @Name and @+Name mentions
            confirmed_present: People the caller tagged as present
            confirmed_new: Names the caller confirmed are new people
        """
        self.roster: Dict[str, RosterEntry] = {p.id: p for p in roster}
        self.confirmed_present: List[RosterEntry] = list(confirmed_present or [])
        for person in self.confirmed_present:
            self.roster.setdefault(person.id, person)
        self.confirmed_new: Set[str] = {clean_name(n).lower() for n in (confirmed_new or []) if clean_name(n)}

        self.link_mentions: Set[str] = set()
        self.new_mentions: Set[str] = set()
        for plus, name in MENTION_PATTERN.findall(story_text or ""):
            (self.new_mentions if plus else self.link_mentions).add(name.lower())

        self.people: Dict[str, ResolvedPerson] = {}
        self.held: Dict[str, str] = {}
        self.warnings: List[str] = []
        self._ambiguous: Dict[str, AmbiguousMatch] = {}
        self._new_by_name: Dict[str, ResolvedPerson] = {}

    @property
    def ambiguous_matches(self) -> List[AmbiguousMatch]:
        return list(self._ambiguous.values())

    def find_candidates(self, name: str) -> List[Candidate]:
        """
        Rank the existing people a name could refer to.

        Args:
            name: Name as it appeared in the story

        Returns:
            Candidates with a non-zero score, best first
        """
        mention = clean_name(name).lower()
        candidates = []
        for person in self.roster.values():
            score = calculate_duplicate_confidence(mention, person.name, person.nickname)
            if score <= 0:
                continue

            existing = person.name.strip().lower()
            reasons = []
            if mention == existing:
                reasons.append("Exact name match")
            if person.nickname and mention == person.nickname.strip().lower():
                reasons.append("Nickname match")
            if mention != existing and (mention in existing or existing in mention):
                reasons.append("Partial name match")
            if _first(mention) == _first(existing) and mention != existing:
                reasons.append("First name match")
            candidates.append(Candidate(person=person, score=score, reasons=reasons or ["Name match"]))

        candidates.sort(key=lambda c: c.score, reverse=True)
        return candidates

    def resolve(self, result: ExtractionResult) -> "IdentityResolver":
        """
        Resolve every person mention and ambiguous match in a result.

        Args:
            result: Validated model output

        Returns:
            The resolver itself, populated with people, held mentions and
            ambiguous matches
        """
        for mention in result.people:
            self._resolve_mention(mention)

        for match in result.ambiguous_matches:
            self._merge_model_ambiguity(match)

        return self

    def resolve_subject(self, relation: ExtractedRelation) -> SubjectResolution:
        """
        Find the resolved person a relation is about.

        Args:
            relation: An extracted relation

        Returns:
            SubjectResolution with the person, or the held name when the
            subject is ambiguous; both empty when the subject is unknown
        """
        subject_id = relation.subject_id
        if subject_id in self.people:
            return SubjectResolution(person=self.people[subject_id])
        if subject_id in self.held:
            return SubjectResolution(held_name=self.held[subject_id])

        subject_name = clean_name(relation.subject_name or "")
        if subject_name and subject_name.lower() in self._ambiguous:
            return SubjectResolution(held_name=self._ambiguous[subject_name.lower()].name_in_story)

        for match in self._ambiguous.values():
            if any(candidate.id == subject_id for candidate in match.possible_matches):
                return SubjectResolution(held_name=match.name_in_story)

        if subject_id in self.roster:
            # The model referred to an existing person without listing them
            existing = self.roster[subject_id]
            self._resolve_mention(ExtractedPerson(
                id=subject_id, name=subject_name or existing.name, is_new=False, confidence=relation.confidence
            ))
            return self.resolve_subject(relation)

        if subject_name:
            for person in self.people.values():
                if person.name.lower() == subject_name.lower():
                    return SubjectResolution(person=person)

        return SubjectResolution()

    def _resolve_mention(self, mention: ExtractedPerson) -> None:
        name = clean_name(mention.name)
        key = name.lower()
        first = _first(name)
        candidates = self.find_candidates(name)
        duplicates = [c.person.id for c in candidates if c.score >= DUPLICATE_THRESHOLD]
        if mention.potential_duplicate_of in self.roster and mention.potential_duplicate_of not in duplicates:
            duplicates.append(mention.potential_duplicate_of)

        if key in self.confirmed_new or first in self.new_mentions or key in self.new_mentions:
            self._add_new(mention, name, duplicates, "Confirmed new person")
            return

        confirmed_ids = {p.id for p in self.confirmed_present}
        if mention.id in confirmed_ids:
            self._link(mention, name, mention.id, "Confirmed present")
            return
        confirmed = [c for c in candidates if c.person.id in confirmed_ids and c.plausible]
        if len(confirmed) == 1:
            self._link(mention, name, confirmed[0].person.id, "Confirmed present")
            return

        plausible = [c for c in candidates if c.plausible]

        if first in self.link_mentions or key in self.link_mentions:
            exact = [c for c in plausible if c.exact]
            if len(plausible) == 1:
                self._link(mention, name, plausible[0].person.id, "@mention")
            elif len(exact) == 1:
                self._link(mention, name, exact[0].person.id, "@mention")
            elif plausible:
                self._hold(mention, name, plausible)
            else:
                self._add_new(mention, name, duplicates, "@mention with no existing match")
            return

        exact = [c for c in plausible if c.exact]
        claimed = self.roster.get(mention.id) if not mention.is_new else None

        if claimed is not None:
            if len(exact) == 1 and exact[0].person.id == claimed.id:
                self._link(mention, name, claimed.id, "Exact name match")
            else:
                if not any(c.person.id == claimed.id for c in plausible):
                    plausible.append(Candidate(person=claimed, score=calculate_duplicate_confidence(
                        name, claimed.name, claimed.nickname), reasons=["Proposed by model"]))
                self._hold(mention, name, plausible)
            return

        if not mention.is_new and mention.id not in self.roster:
            self.warnings.append(f"Unknown person id {mention.id!r} for {name!r}; treated as a name only")

        if len(exact) == 1 and len(name.split()) > 1:
            self._link(mention, name, exact[0].person.id, "Exact full name match")
        elif plausible and len(name.split()) == 1:
            self._hold(mention, name, plausible)
        elif len(exact) > 1:
            self._hold(mention, name, exact)
        else:
            self._add_new(mention, name, duplicates, "No matching person")

    def _link(self, mention: ExtractedPerson, name: str, person_id: str, reason: str) -> None:
        self.people[mention.id] = ResolvedPerson(
            mention_id=mention.id,
            name=self.roster[person_id].name,
            is_new=False,
            person_id=person_id,
            person_type=mention.person_type,
            confidence=mention.confidence,
            reason=reason
        )
        logging.debug(f"Linked mention {name!r} to existing person {person_id} ({reason})")

    def _add_new(self, mention: ExtractedPerson, name: str, duplicates: List[str], reason: str) -> None:
        key = name.lower()
        if key in self._new_by_name:
            self.people[mention.id] = self._new_by_name[key]
            return
        person = ResolvedPerson(
            mention_id=mention.id,
            name=name,
            is_new=True,
            person_type=mention.person_type,
            confidence=mention.confidence,
            potential_duplicates=duplicates,
            reason=reason
        )
        self.people[mention.id] = person
        self._new_by_name[key] = person

    def _hold(self, mention: ExtractedPerson, name: str, candidates: List[Candidate]) -> None:
        self.held[mention.id] = name
        self._add_ambiguity(name, [c.to_ambiguous() for c in candidates])
        logging.info(f"Mention {name!r} is ambiguous between {len(candidates)} existing people")

    def _add_ambiguity(self, name: str, candidates: List[AmbiguousCandidate]) -> None:
        key = name.lower()
        match = self._ambiguous.get(key)
        if match is None:
            match = AmbiguousMatch(name_in_story=name, possible_matches=[])
            self._ambiguous[key] = match
        known = {c.id for c in match.possible_matches}
        for candidate in candidates:
            if candidate.id not in known:
                match.possible_matches.append(candidate)
                known.add(candidate.id)

    def _merge_model_ambiguity(self, match: AmbiguousMatch) -> None:
        name = clean_name(match.name_in_story)
        key = name.lower()
        if not name:
            return
        if key in self.confirmed_new or _first(name) in self.new_mentions:
            return
        if any(p.name.lower() == key for p in self.people.values() if not p.is_new):
            return

        candidates = []
        for candidate in match.possible_matches:
            person = self.roster.get(candidate.id)
            if person is None:
                self.warnings.append(f"Ambiguous match for {name!r} names unknown person id {candidate.id!r}")
                continue
            candidates.append(AmbiguousCandidate(
                id=person.id, name=person.name, reason=candidate.reason,
                score=calculate_duplicate_confidence(name, person.name, person.nickname)
            ))

        if not candidates:
            candidates = [c.to_ambiguous() for c in self.find_candidates(name) if c.plausible]
        if not candidates:
            self.warnings.append(f"Ambiguous name {name!r} matches nobody; ignored")
            return

        self._add_ambiguity(name, candidates)
