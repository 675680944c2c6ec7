"""
Extraction orchestrator for Kindred.

This module drives one story through the extraction state machine
(unprocessed, extracting, parsing, resolving, routing, processed) and exposes
the review actions that act on queued facts and ambiguous names afterwards.
Nothing is written to the people or relations tables until the full model
response has been validated, and all of those writes share one transaction.
"""

import logging
import re
import time
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from ..agents.errors import classify_exception
from ..agents.gateway import Credentials, ModelGateway
from ..agents.prompts import ExtractionContext, PromptBuilder, select_roster_for_story
from ..database import DatabaseManager
from ..models import (
    ExtractedRelation,
    ExtractionResult,
    ExtractionSummary,
    Fact,
    FactSource,
    ModelConflict,
    PendingExtraction,
    Person,
    ReviewStatus,
    RosterEntry,
    Story,
    StoryExtractionOutcome,
    StoryState,
    new_id,
)
from .conflicts import ConflictDetector, merge_model_conflicts
from .identity import IdentityResolver, ResolvedPerson
from .parser import parse_extraction_response
from .router import AcceptanceRouter, RoutingDecision, RoutingOutcome, find_duplicate

# Token estimate inputs and per-million-token prices in USD
BASE_PROMPT_TOKENS = 500
TOKENS_PER_PERSON = 10
CHARS_PER_TOKEN = 4
ESTIMATED_OUTPUT_TOKENS = 1000
INPUT_PRICE_PER_MILLION = 3.0
OUTPUT_PRICE_PER_MILLION = 15.0

EDITABLE_FIELDS = {"relation_type", "object_label", "object_type", "intensity", "category", "status"}


class ExtractionError(Exception):
    """
    Base class for orchestration failures that are not model errors.
    """

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.message = message
        self.retryable = retryable


class StoryNotFoundError(ExtractionError):
    pass


class StoryAlreadyProcessedError(ExtractionError):
    """Raised when extraction is requested for a story that is already processed."""
    pass


class ExtractionInProgressError(ExtractionError):
    """Raised when the same story is already being extracted in this process."""

    def __init__(self, message: str):
        super().__init__(message, retryable=True)


class ReviewError(ExtractionError):
    """Raised when a review action targets a missing or already reviewed item."""
    pass


def estimate_extraction_cost(story_length: int, people_count: int) -> Dict[str, Any]:
    """
    Estimate the token usage and price of extracting one story.

    Args:
        story_length: Story length in characters
        people_count: Number of roster entries sent with the prompt

    Returns:
        Dictionary with input_tokens, output_tokens and estimated_cost_usd
    """
    input_tokens = BASE_PROMPT_TOKENS + story_length // CHARS_PER_TOKEN + people_count * TOKENS_PER_PERSON
    output_tokens = ESTIMATED_OUTPUT_TOKENS
    cost = (input_tokens / 1_000_000) * INPUT_PRICE_PER_MILLION + (output_tokens / 1_000_000) * OUTPUT_PRICE_PER_MILLION
    return {
        "input_tokens": input_tokens,
        "output_tokens": output_tokens,
        "estimated_cost_usd": round(cost, 6),
    }


def _context_snippet(story_text: str, name: str, limit: int = 200) -> str:
    """The first sentence of a story that mentions a name, for disambiguation later."""
    for sentence in re.split(r"(?<=[.!?])\s+", story_text):
        if name.lower() in sentence.lower():
            return sentence.strip()[:limit]
    return story_text.strip()[:limit]


def _people_in_story(roster: Iterable[RosterEntry], story_text: str) -> List[RosterEntry]:
    words = set(re.findall(r"[\w'-]+", story_text.lower()))
    mentioned = []
    for person in roster:
        first = person.name.split()[0].lower() if person.name.split() else ""
        nickname = (person.nickname or "").lower()
        if first in words or (nickname and nickname in words):
            mentioned.append(person)
    return mentioned


class ExtractionOrchestrator:
    """
    Runs extractions and review actions against one database.
    """

    def __init__(
        self,
        db: DatabaseManager,
        gateway: ModelGateway,
        prompt_builder: Optional[PromptBuilder] = None,
        detector: Optional[ConflictDetector] = None,
        router: Optional[AcceptanceRouter] = None,
        user_id: str = "local-user",
        roster_limit: int = 200,
        strategy: str = "standard",
        min_story_length: int = 10
    ):
        """
        Initialize the orchestrator.

        Args:
            db: Connected database manager
            gateway: Model gateway used for extraction calls
            prompt_builder: Prompt builder (default strategies if omitted)
            detector: Conflict detector
            router: Acceptance router
            user_id: Owner of every record written
            roster_limit: Maximum number of people sent with a prompt
            strategy: Default prompt strategy name
            min_story_length: Shortest story, in characters, worth extracting
        """
        self.db = db
        self.gateway = gateway
        self.prompt_builder = prompt_builder or PromptBuilder()
        self.detector = detector or ConflictDetector()
        self.router = router or AcceptanceRouter()
        self.user_id = user_id
        self.roster_limit = roster_limit
        self.strategy = strategy
        self.min_story_length = min_story_length
        self._in_flight: Set[str] = set()

    # Stories

    def save_story(self, content: str, title: Optional[str] = None,
                   story_date: Optional[datetime] = None) -> Story:
        """
        Persist a story before any model call is made.

        Args:
            content: The story text
            title: Optional title
            story_date: When the story happened

        Returns:
            The saved story, in the unprocessed state

        Raises:
            ValueError: If the content is empty
        """
        if not content or not content.strip():
            raise ValueError("Story content cannot be empty")
        story = self.db.save_story(Story(user_id=self.user_id, title=title, content=content, story_date=story_date))
        logging.info(f"Saved story {story.id} ({len(content)} characters)")
        return story

    async def save_story_and_extract(
        self,
        content: str,
        credentials: Credentials,
        title: Optional[str] = None,
        story_date: Optional[datetime] = None,
        confirmed_present: Optional[List[str]] = None,
        confirmed_new: Optional[List[str]] = None,
        strategy: Optional[str] = None
    ) -> StoryExtractionOutcome:
        """
        Save a story, then extract from it.

        The two halves are reported separately: a failed extraction still
        leaves the story saved, and the outcome says whether retrying the
        extraction alone makes sense.

        Returns:
            StoryExtractionOutcome
        """
        try:
            story = self.save_story(content, title, story_date)
        except ValueError as e:
            return StoryExtractionOutcome(
                story_saved=False,
                error_type="VALIDATION_ERROR",
                error_message=str(e),
                user_message=f"The story could not be saved: {e}"
            )

        outcome = StoryExtractionOutcome(story_id=story.id, story_saved=True)
        try:
            outcome.summary = await self.extract(
                story.id, credentials,
                confirmed_present=confirmed_present,
                confirmed_new=confirmed_new,
                strategy=strategy
            )
            outcome.extraction_succeeded = True
        except ExtractionError as e:
            outcome.error_type = type(e).__name__
            outcome.error_message = e.message
            outcome.user_message = f"Your story was saved, but extraction failed: {e.message}"
            outcome.retryable = e.retryable
        except Exception as e:
            error = classify_exception(e)
            outcome.error_type = error.error_type.value
            outcome.error_message = error.message
            outcome.user_message = f"Your story was saved, but extraction failed. {error.user_message}"
            outcome.retryable = error.retryable

        return outcome

    # Extraction

    async def extract(
        self,
        story_id: str,
        credentials: Credentials,
        confirmed_present: Optional[List[str]] = None,
        confirmed_new: Optional[List[str]] = None,
        strategy: Optional[str] = None
    ) -> ExtractionSummary:
        """
        Extract people and facts from a saved story.

        Args:
            story_id: The story to extract from
            credentials: Backend selector and API key for this call
            confirmed_present: Ids of people the caller tagged as present
            confirmed_new: Names the caller confirmed are new people
            strategy: Prompt strategy (defaults to the orchestrator's)

        Returns:
            ExtractionSummary with counts, conflicts and ambiguous matches

        Raises:
            StoryNotFoundError: If the story does not exist
            StoryAlreadyProcessedError: If the story was already processed
            ExtractionInProgressError: If the story is being extracted right now
            AIError: If the model call or response parsing fails
        """
        story = self.db.get_story(story_id)
        if story is None:
            raise StoryNotFoundError(f"Story {story_id} not found")
        if story.state == StoryState.PROCESSED:
            raise StoryAlreadyProcessedError(f"Story {story_id} has already been processed")
        if story_id in self._in_flight:
            raise ExtractionInProgressError(f"Story {story_id} is already being extracted")
        if len(story.content.strip()) < self.min_story_length:
            raise ExtractionError(f"Story is shorter than {self.min_story_length} characters")

        self._in_flight.add(story_id)
        start_time = time.time()
        try:
            summary = await self._run(story, credentials, confirmed_present or [],
                                      confirmed_new or [], strategy or self.strategy)
        except Exception as e:
            logging.error(f"Extraction failed for story {story_id}: {e}")
            self.db.set_story_state(story_id, StoryState.UNPROCESSED, last_error=str(e))
            raise
        finally:
            self._in_flight.discard(story_id)

        summary.processing_time_ms = int((time.time() - start_time) * 1000)
        logging.info(
            f"Story {story_id} processed: {summary.new_people_count} new people, "
            f"{summary.auto_accepted_count} accepted, {summary.pending_review_count} pending, "
            f"{summary.rejected_count} rejected, {summary.conflicts_count} conflicts"
        )
        return summary

    async def _run(self, story: Story, credentials: Credentials, confirmed_present: List[str],
                   confirmed_new: List[str], strategy: str) -> ExtractionSummary:
        self.db.set_story_state(story.id, StoryState.EXTRACTING)
        roster = self.db.find_people_by_roster(self.user_id)
        by_id = {person.id: person for person in roster}

        present = [by_id[person_id] for person_id in confirmed_present if person_id in by_id]
        warnings = [f"Confirmed person {person_id!r} not found" for person_id in confirmed_present
                    if person_id not in by_id]

        relevant = {p.id: p for p in _people_in_story(roster, story.content)}
        relevant.update({p.id: p for p in present})
        existing_facts = [fact for person_id in relevant for fact in self.db.find_current_facts(person_id)]

        context = ExtractionContext(
            story_text=story.content,
            existing_people=select_roster_for_story(roster, story.content, self.roster_limit),
            existing_facts=existing_facts,
            confirmed_present=present,
            confirmed_new=confirmed_new
        )
        prompt = self.prompt_builder.build(context, strategy)
        response = await self.gateway.generate(prompt, credentials, agent_name="extraction", story_id=story.id)

        self.db.set_story_state(story.id, StoryState.PARSING)
        result = parse_extraction_response(response.text)
        self.db.record_parsed_response(story.id, result.model_dump_json(by_alias=True))

        self.db.set_story_state(story.id, StoryState.RESOLVING)
        resolver = IdentityResolver(roster, story.content, present, confirmed_new).resolve(result)
        summary = ExtractionSummary(story_id=story.id, tokens_used=response.tokens_used)
        summary.warnings = warnings + result.warnings

        # Subjects resolve first since a relation can introduce a new person
        subjects = [(relation, resolver.resolve_subject(relation)) for relation in result.relations]
        new_people = self._new_people(resolver.people.values())
        subject_ids = {id(person): person_id for person, person_id in new_people}
        working: Dict[str, List[Fact]] = {}
        plans: List[Tuple[ExtractedRelation, str, str, RoutingDecision]] = []
        held: List[Dict[str, Any]] = []

        for relation, subject in subjects:
            if subject.held_name:
                held.append({
                    "nameInStory": subject.held_name,
                    "relation": relation.model_dump(mode="json", by_alias=True),
                })
                continue
            if subject.person is None:
                summary.warnings.append(
                    f"Dropped {relation.relation_type.value} {relation.object_label!r}: "
                    f"unknown subject {relation.subject_id!r}"
                )
                continue

            person = subject.person
            subject_id = person.person_id or subject_ids[id(person)]
            decision = self._plan(relation, subject_id, working, result.conflicts)
            plans.append((relation, subject_id, person.name, decision))

        summary.warnings.extend(resolver.warnings)
        for warning in summary.warnings:
            logging.warning(f"Story {story.id}: {warning}")

        self.db.set_story_state(story.id, StoryState.ROUTING)
        with self.db.transaction():
            for person, person_id in new_people:
                self.db.insert_person(Person(
                    id=person_id,
                    user_id=self.user_id,
                    name=person.name,
                    person_type=person.person_type,
                    added_by=FactSource.AI_EXTRACTION,
                    extraction_context=_context_snippet(story.content, person.name),
                    potential_duplicates=person.potential_duplicates,
                    mention_count=1
                ))
            for person_id in {p.person_id for p in resolver.people.values() if p.person_id}:
                self.db.increment_mention_count(person_id)

            for relation, subject_id, subject_name, decision in plans:
                self._apply(decision, relation, subject_id, subject_name, story.id, summary)

            summary.new_people_count = len(new_people)
            summary.held_for_disambiguation_count = len(held)
            summary.ambiguous_matches = resolver.ambiguous_matches
            summary.conflicts_count = len(summary.conflicts)

            self.db.mark_story_processed(
                story.id,
                summary.model_dump(mode="json", exclude={"ambiguous_matches", "conflicts"}),
                extracted_data={
                    "result": result.model_dump(mode="json", by_alias=True),
                    "ambiguousMatches": [m.model_dump(mode="json", by_alias=True)
                                         for m in resolver.ambiguous_matches],
                    "heldRelations": held,
                }
            )

        return summary

    def _new_people(self, people: Iterable[ResolvedPerson]) -> List[Tuple[ResolvedPerson, str]]:
        """Assign ids to new people, once per distinct resolved person."""
        seen = set()
        new_people = []
        for person in people:
            if person.is_new and id(person) not in seen:
                seen.add(id(person))
                new_people.append((person, new_id()))
        return new_people

    def _plan(self, relation: ExtractedRelation, subject_id: str, working: Dict[str, List[Fact]],
              model_conflicts: Optional[List[ModelConflict]] = None) -> RoutingDecision:
        """
        Decide the fate of one relation against the subject's working fact list.

        The working list starts as the subject's current facts and follows the
        decisions made so far, so later facts in a batch see earlier ones.
        """
        if subject_id not in working:
            working[subject_id] = self.db.find_current_facts(subject_id)
        facts = working[subject_id]

        conflicts = self.detector.detect(relation, facts)
        if model_conflicts:
            conflicts = merge_model_conflicts(conflicts, relation, model_conflicts)
        decision = self.router.route(relation, conflicts, facts)

        if decision.outcome == RoutingOutcome.ACCEPT:
            facts[:] = [fact for fact in facts if fact.id not in decision.supersedes]
            facts.append(Fact(
                id=decision.fact_id,
                user_id=self.user_id,
                subject_id=subject_id,
                relation_type=relation.relation_type,
                object_label=relation.object_label,
                category=relation.category,
                confidence=relation.confidence,
                status=relation.status,
                source=FactSource.AI_EXTRACTION
            ))
        return decision

    def _apply(self, decision: RoutingDecision, relation: ExtractedRelation, subject_id: str,
               subject_name: str, story_id: str, summary: ExtractionSummary) -> None:
        applied = self.router.apply(self.db, decision, relation, self.user_id, subject_id,
                                    subject_name=subject_name, story_id=story_id)
        summary.conflicts.extend(decision.conflicts)
        summary.superseded_count += len(applied.superseded)
        if decision.outcome == RoutingOutcome.ACCEPT:
            summary.auto_accepted_count += 1
        elif decision.outcome == RoutingOutcome.QUEUE:
            summary.pending_review_count += 1
        else:
            summary.rejected_count += 1

    # Review actions

    def _pending_or_raise(self, pending_id: str) -> PendingExtraction:
        pending = self.db.get_pending_extraction(pending_id)
        if pending is None:
            raise ReviewError(f"Pending extraction {pending_id} not found")
        if pending.review_status != ReviewStatus.PENDING:
            raise ReviewError(f"Pending extraction {pending_id} was already {pending.review_status.value}")
        return pending

    def _accept_reviewed(self, pending: PendingExtraction, confidence: float) -> Fact:
        """
        Insert a reviewed fact, moving any fact it supersedes to the past.

        A fact already recorded for the subject is returned instead of
        being written a second time.
        """
        person = self.db.get_person(pending.subject_id)
        if person is None or person.deleted_at is not None:
            raise ReviewError(f"Person {pending.subject_id} no longer exists")

        metadata = {k: v for k, v in (pending.metadata or {}).items() if k != "conflicts"}
        fact = Fact(
            user_id=pending.user_id,
            subject_id=pending.subject_id,
            relation_type=pending.relation_type,
            object_label=pending.object_label,
            object_type=pending.object_type,
            intensity=pending.intensity,
            confidence=confidence,
            category=pending.category,
            metadata=metadata or None,
            status=pending.status,
            source=FactSource.AI_EXTRACTION,
            story_id=pending.story_id
        )

        current = self.db.find_current_facts(pending.subject_id)
        duplicate = find_duplicate(fact, current)
        if duplicate:
            logging.info(f"Pending extraction {pending.id} is already recorded as fact {duplicate.id}")
            return duplicate

        for conflict in self.detector.detect(fact, current):
            if conflict.auto_resolvable and conflict.existing_fact_id:
                self.db.supersede_fact(conflict.existing_fact_id)

        return self.db.insert_fact(fact)

    def approve(self, pending_id: str) -> Fact:
        """
        Approve a queued fact as extracted.

        Args:
            pending_id: The review item

        Returns:
            The fact that was written

        Raises:
            ReviewError: If the item is missing, already reviewed, or its
                subject no longer exists
        """
        pending = self._pending_or_raise(pending_id)
        with self.db.transaction():
            fact = self._accept_reviewed(pending, pending.confidence)
            self.db.update_pending_review(pending_id, ReviewStatus.APPROVED)
        logging.info(f"Approved pending extraction {pending_id} as fact {fact.id}")
        return fact

    def reject(self, pending_id: str, reason: Optional[str] = None) -> PendingExtraction:
        """
        Reject a queued fact. Nothing is written to the facts table.

        Args:
            pending_id: The review item
            reason: Optional note kept with the review

        Returns:
            The updated review item
        """
        self._pending_or_raise(pending_id)
        self.db.update_pending_review(pending_id, ReviewStatus.REJECTED, review_notes=reason)
        logging.info(f"Rejected pending extraction {pending_id}")
        return self.db.get_pending_extraction(pending_id)

    def edit_and_approve(self, pending_id: str, overrides: Dict[str, Any]) -> Fact:
        """
        Apply the user's corrections to a queued fact and approve it.

        Args:
            pending_id: The review item
            overrides: New values for relation_type, object_label, object_type,
                intensity, category or status

        Returns:
            The fact that was written, with confidence 1.0

        Raises:
            ReviewError: If an override names a field that cannot be edited
        """
        pending = self._pending_or_raise(pending_id)
        unknown = set(overrides) - EDITABLE_FIELDS
        if unknown:
            raise ReviewError(f"Cannot edit fields: {', '.join(sorted(unknown))}")

        edited = PendingExtraction.model_validate({**pending.model_dump(), **overrides})
        with self.db.transaction():
            fact = self._accept_reviewed(edited, 1.0)
            self.db.update_pending_review(pending_id, ReviewStatus.EDITED,
                                          review_notes="User edited before approving")
        logging.info(f"Edited and approved pending extraction {pending_id} as fact {fact.id}")
        return fact

    def resolve_ambiguity(self, story_id: str, name_in_story: str,
                          person_id: Optional[str] = None) -> ExtractionSummary:
        """
        Bind an ambiguous name from a processed story to a person.

        The relations held for that name are routed like freshly extracted
        ones.

        Args:
            story_id: The processed story
            name_in_story: The ambiguous name as it appeared in the story
            person_id: The existing person it refers to, or None for a new person

        Returns:
            ExtractionSummary covering the routed relations

        Raises:
            StoryNotFoundError: If the story does not exist
            ReviewError: If the name was not ambiguous in the story, or the
                chosen person does not exist
        """
        story = self.db.get_story(story_id)
        if story is None:
            raise StoryNotFoundError(f"Story {story_id} not found")

        data = dict(story.extracted_data or {})
        key = name_in_story.strip().lower()
        held = data.get("heldRelations", [])
        ambiguous = data.get("ambiguousMatches", [])
        matching = [h for h in held if h.get("nameInStory", "").lower() == key]
        is_ambiguous = any(m.get("nameInStory", "").lower() == key for m in ambiguous)
        if not matching and not is_ambiguous:
            raise ReviewError(f"{name_in_story!r} is not an unresolved name in story {story_id}")

        summary = ExtractionSummary(story_id=story_id, held_for_disambiguation_count=len(matching))
        model_conflicts = ExtractionResult.model_validate(data.get("result", {})).conflicts

        with self.db.transaction():
            if person_id:
                person = self.db.get_person(person_id)
                if person is None or person.deleted_at is not None:
                    raise ReviewError(f"Person {person_id} not found")
                self.db.increment_mention_count(person_id)
            else:
                person = self.db.insert_person(Person(
                    user_id=self.user_id,
                    name=name_in_story.strip(),
                    added_by=FactSource.AI_EXTRACTION,
                    extraction_context=_context_snippet(story.content, name_in_story),
                    mention_count=1
                ))
                summary.new_people_count = 1

            working: Dict[str, List[Fact]] = {}
            for item in matching:
                relation = ExtractedRelation.model_validate(item["relation"])
                decision = self._plan(relation, person.id, working, model_conflicts)
                self._apply(decision, relation, person.id, person.name, story_id, summary)

            data["heldRelations"] = [h for h in held if h.get("nameInStory", "").lower() != key]
            data["ambiguousMatches"] = [m for m in ambiguous if m.get("nameInStory", "").lower() != key]
            self.db.update_story_extracted_data(story_id, data)

        summary.conflicts_count = len(summary.conflicts)
        logging.info(f"Resolved {name_in_story!r} in story {story_id} to {person.id}")
        return summary
