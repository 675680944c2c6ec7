"""
Tests for the extraction pipeline stages.

Covers response parsing, identity resolution, conflict detection and
acceptance routing, each in isolation from the model and from each other.
"""

import unittest

from kindred.agents import AIError, AIErrorType
from kindred.database import DatabaseManager
from kindred.extraction import (
    AcceptanceRouter,
    ConflictDetector,
    IdentityResolver,
    RoutingOutcome,
    calculate_duplicate_confidence,
    explain_conflict,
    merge_model_conflicts,
    parse_extraction_response,
    should_auto_accept,
    summarize_conflicts,
)
from kindred.models import (
    AmbiguousCandidate,
    AmbiguousMatch,
    ConflictSeverity,
    ConflictType,
    ExtractedPerson,
    ExtractedRelation,
    ExtractionResult,
    Fact,
    FactStatus,
    ModelConflict,
    Person,
    RelationType,
    ReviewStatus,
    RosterEntry,
    SuggestedResolution,
)


def make_fact(fact_id, relation_type, label, category=None, status=FactStatus.CURRENT, subject_id="p1"):
    return Fact(id=fact_id, user_id="u", subject_id=subject_id, relation_type=relation_type,
                object_label=label, category=category, status=status)


def make_relation(relation_type, label, confidence=0.95, category=None, status=FactStatus.CURRENT,
                  subject_id="p1"):
    return ExtractedRelation(subject_id=subject_id, subject_name="Mike", relation_type=relation_type,
                             object_label=label, confidence=confidence, category=category, status=status)


class TestResponseParser(unittest.TestCase):
    """Test parsing and validating raw model output."""

    VALID = """{
        "people": [{"id": "new-mike", "name": "Mike", "isNew": true, "personType": "mentioned", "confidence": 0.9}],
        "relations": [
            {"subjectId": "new-mike", "subjectName": "Mike", "relationType": "LIKES",
             "objectLabel": "carrots", "confidence": 0.9, "category": "food"}
        ]
    }"""

    def test_bare_json(self):
        """Test a plain JSON object is parsed with missing sections defaulted."""
        result = parse_extraction_response(self.VALID)

        self.assertEqual(len(result.people), 1)
        self.assertEqual(result.people[0].id, "new-mike")
        self.assertEqual(result.relations[0].relation_type, RelationType.LIKES)
        self.assertEqual(result.conflicts, [])
        self.assertEqual(result.ambiguous_matches, [])
        self.assertEqual(result.dropped, [])

    def test_fenced_json_in_prose(self):
        """Test JSON inside a fenced block surrounded by prose is found."""
        raw = f"Sure! Here is what I found:\n```json\n{self.VALID}\n```\nLet me know if you need more."

        result = parse_extraction_response(raw)

        self.assertEqual(result.relations[0].object_label, "carrots")

    def test_invalid_entries_are_dropped_individually(self):
        """Test one bad entry never discards the rest of the batch."""
        raw = """{
            "people": [{"id": "p", "name": "Mike", "isNew": "yes"}],
            "relations": [
                {"subjectId": "p", "relationType": "LIKES", "objectLabel": "tea", "confidence": 0.9},
                {"subjectId": "p", "relationType": "LOVES", "objectLabel": "coffee", "confidence": 0.9},
                {"subjectId": "p", "relationType": "LIKES", "objectLabel": "cake", "confidence": 1.7},
                "not an object"
            ],
            "conflicts": {"oops": true}
        }"""

        result = parse_extraction_response(raw)

        self.assertEqual(result.people, [])
        self.assertEqual([r.object_label for r in result.relations], ["tea"])
        dropped = [(d.section, d.index) for d in result.dropped]
        self.assertEqual(dropped, [("people", 0), ("relations", 1), ("relations", 2),
                                   ("relations", 3), ("conflicts", -1)])
        self.assertTrue(result.warnings[0].startswith("Dropped people[0]:"))

    def test_no_json_found(self):
        """Test prose without JSON is an invalid response."""
        with self.assertRaises(AIError) as ctx:
            parse_extraction_response("I'm sorry, I can't help with that.")

        self.assertEqual(ctx.exception.error_type, AIErrorType.INVALID_RESPONSE)
        self.assertFalse(ctx.exception.retryable)

    def test_empty_response_is_retryable(self):
        """Test an empty response may be retried."""
        with self.assertRaises(AIError) as ctx:
            parse_extraction_response("   ")

        self.assertEqual(ctx.exception.error_type, AIErrorType.INVALID_RESPONSE)
        self.assertTrue(ctx.exception.retryable)

    def test_non_object_is_validation_error(self):
        """Test a JSON array is rejected as the wrong shape."""
        with self.assertRaises(AIError) as ctx:
            parse_extraction_response('[{"name": "Mike"}]')

        self.assertEqual(ctx.exception.error_type, AIErrorType.VALIDATION_ERROR)


class TestIdentityResolver(unittest.TestCase):
    """Test matching mentions against the roster."""

    def setUp(self):
        """Set up test fixtures."""
        self.roster = [
            RosterEntry(id="d1", name="David Smith"),
            RosterEntry(id="d2", name="David Jones"),
            RosterEntry(id="o1", name="Ola Kowalska"),
        ]

    def _resolve(self, people, story_text="", **kwargs):
        resolver = IdentityResolver(self.roster, story_text=story_text, **kwargs)
        return resolver.resolve(ExtractionResult(people=people))

    def test_bare_first_name_with_two_candidates_is_held(self):
        """Test 'David' is never guessed between two Davids."""
        resolver = self._resolve([ExtractedPerson(id="tmp-david", name="David")])

        self.assertEqual(resolver.people, {})
        self.assertEqual(resolver.held, {"tmp-david": "David"})
        match = resolver.ambiguous_matches[0]
        self.assertEqual(match.name_in_story, "David")
        self.assertEqual({c.id for c in match.possible_matches}, {"d1", "d2"})

    def test_bare_first_name_with_one_candidate_is_held(self):
        """Test 'Ola' is held even with a single plausible match."""
        resolver = self._resolve([ExtractedPerson(id="tmp-ola", name="Ola")])

        self.assertIn("tmp-ola", resolver.held)
        self.assertEqual([c.id for c in resolver.ambiguous_matches[0].possible_matches], ["o1"])

    def test_model_claimed_id_needs_exact_match(self):
        """Test the model's claim of an existing id is not trusted for a first name."""
        resolver = self._resolve([ExtractedPerson(id="o1", name="Ola", is_new=False)])

        self.assertNotIn("o1", resolver.people)
        self.assertEqual(resolver.held, {"o1": "Ola"})

    def test_full_name_links(self):
        """Test an exact, unique full name links to the existing person."""
        resolver = self._resolve([ExtractedPerson(id="tmp-1", name="Ola Kowalska", is_new=True)])

        person = resolver.people["tmp-1"]
        self.assertFalse(person.is_new)
        self.assertEqual(person.person_id, "o1")

    def test_unknown_name_is_new(self):
        """Test a name with no match becomes a new person."""
        resolver = self._resolve([ExtractedPerson(id="tmp-falko", name="Falko")])

        person = resolver.people["tmp-falko"]
        self.assertTrue(person.is_new)
        self.assertIsNone(person.person_id)
        self.assertEqual(resolver.ambiguous_matches, [])

    def test_new_people_deduplicated_by_name(self):
        """Test two mentions of the same new name create one person."""
        resolver = self._resolve([
            ExtractedPerson(id="tmp-1", name="Falko"),
            ExtractedPerson(id="tmp-2", name="falko"),
        ])

        self.assertIs(resolver.people["tmp-1"], resolver.people["tmp-2"])

    def test_at_mention_links(self):
        """Test @Name links a unique candidate."""
        resolver = self._resolve([ExtractedPerson(id="tmp-ola", name="@Ola")], story_text="Lunch with @Ola")

        self.assertEqual(resolver.people["tmp-ola"].person_id, "o1")

    def test_at_plus_mention_forces_new(self):
        """Test @+Name creates a new person and records possible duplicates."""
        resolver = self._resolve([ExtractedPerson(id="tmp-david", name="David")],
                                 story_text="Met @+David at the gym")

        person = resolver.people["tmp-david"]
        self.assertTrue(person.is_new)
        self.assertEqual(sorted(person.potential_duplicates), ["d1", "d2"])

    def test_confirmations(self):
        """Test caller confirmations override matching."""
        present = self._resolve([ExtractedPerson(id="tmp-david", name="David")],
                                confirmed_present=[self.roster[0]])
        self.assertEqual(present.people["tmp-david"].person_id, "d1")

        new = self._resolve([ExtractedPerson(id="tmp-david", name="David")], confirmed_new=["David"])
        self.assertTrue(new.people["tmp-david"].is_new)

    def test_resolve_subject(self):
        """Test relations are tied to resolved, held or unknown subjects."""
        resolver = self._resolve([
            ExtractedPerson(id="tmp-david", name="David"),
            ExtractedPerson(id="tmp-falko", name="Falko"),
        ])

        held = resolver.resolve_subject(make_relation(RelationType.LIKES, "tennis", subject_id="tmp-david"))
        self.assertEqual(held.held_name, "David")

        found = resolver.resolve_subject(make_relation(RelationType.LIKES, "chess", subject_id="tmp-falko"))
        self.assertEqual(found.person.name, "Falko")

        relation = ExtractedRelation(subject_id="ghost", relation_type=RelationType.LIKES,
                                     object_label="tea", confidence=0.9)
        unknown = resolver.resolve_subject(relation)
        self.assertIsNone(unknown.person)
        self.assertIsNone(unknown.held_name)

    def test_model_ambiguity_with_unknown_ids(self):
        """Test candidate ids not on the roster are replaced by local candidates."""
        resolver = IdentityResolver(self.roster).resolve(ExtractionResult(ambiguous_matches=[
            AmbiguousMatch(name_in_story="David",
                           possible_matches=[AmbiguousCandidate(id="zzz", name="David X")]),
            AmbiguousMatch(name_in_story="Zygmunt", possible_matches=[]),
        ]))

        self.assertEqual(len(resolver.ambiguous_matches), 1)
        self.assertEqual({c.id for c in resolver.ambiguous_matches[0].possible_matches}, {"d1", "d2"})
        self.assertEqual(len(resolver.warnings), 2)

    def test_duplicate_confidence(self):
        """Test the additive duplicate score and its cap."""
        self.assertEqual(calculate_duplicate_confidence("Ola Kowalska", "ola kowalska"), 1.0)
        self.assertAlmostEqual(calculate_duplicate_confidence("Mikey", "Mike", "Mikey"), 0.7)
        self.assertAlmostEqual(calculate_duplicate_confidence("@David", "David Smith"), 0.5)
        self.assertEqual(calculate_duplicate_confidence("Falko", "David Smith"), 0.0)
        self.assertEqual(calculate_duplicate_confidence("", "David Smith"), 0.0)


class TestConflictDetector(unittest.TestCase):
    """Test local conflict detection."""

    def setUp(self):
        """Set up test fixtures."""
        self.detector = ConflictDetector()

    def test_ingredient_conflict(self):
        """Test loving fries conflicts with a potato sensitivity."""
        existing = make_fact("f1", RelationType.SENSITIVE_TO, "potatoes")
        new = make_relation(RelationType.LIKES, "french fries", category="food")

        conflicts = self.detector.detect(new, [existing])

        self.assertEqual(len(conflicts), 1)
        conflict = conflicts[0]
        self.assertEqual(conflict.conflict_type, ConflictType.INGREDIENT_CONFLICT)
        self.assertEqual(conflict.severity, ConflictSeverity.HIGH)
        self.assertEqual(conflict.existing_fact_id, "f1")
        self.assertEqual(conflict.suggested_resolution, SuggestedResolution.REJECT_NEW)
        self.assertEqual(conflict.description, "SENSITIVE_TO potatoes conflicts with LIKES french fries")
        self.assertIn("french fries → potato", conflict.reasoning)

    def test_ingredient_conflict_from_new_sensitivity(self):
        """Test a new sensitivity is checked against liked foods."""
        existing = make_fact("f1", RelationType.LIKES, "french fries")
        new = make_relation(RelationType.SENSITIVE_TO, "potatoes")

        conflict = self.detector.detect(new, [existing])[0]

        self.assertEqual(conflict.conflict_type, ConflictType.INGREDIENT_CONFLICT)
        self.assertEqual(conflict.suggested_resolution, SuggestedResolution.USER_REVIEW_REQUIRED)

    def test_non_food_category_is_ignored(self):
        """Test a non-food fact never triggers an ingredient check."""
        existing = make_fact("f1", RelationType.SENSITIVE_TO, "potatoes")
        new = make_relation(RelationType.LIKES, "chips", category="poker")

        self.assertEqual(self.detector.detect(new, [existing]), [])

    def test_sensitivity_category_never_hides_conflict(self):
        """Test allergies filed under health categories still reach food facts."""
        new = make_relation(RelationType.LIKES, "french fries", category="food")
        for category in ("allergy", "health", "medical"):
            with self.subTest(category=category):
                existing = make_fact("f1", RelationType.SENSITIVE_TO, "potatoes", category=category)
                conflicts = self.detector.detect(new, [existing])
                self.assertEqual([c.conflict_type for c in conflicts], [ConflictType.INGREDIENT_CONFLICT])

        new_sensitivity = make_relation(RelationType.SENSITIVE_TO, "potatoes", category="allergy")
        conflicts = self.detector.detect(new_sensitivity, [make_fact("f2", RelationType.LIKES, "french fries")])
        self.assertEqual(conflicts[0].conflict_type, ConflictType.INGREDIENT_CONFLICT)

    def test_unlisted_food_categories_are_checked(self):
        """Test food facts with free-form categories are still traced."""
        existing = make_fact("f1", RelationType.SENSITIVE_TO, "potatoes")
        for category in ("fast food", "snacks"):
            with self.subTest(category=category):
                new = make_relation(RelationType.LIKES, "french fries", category=category)
                self.assertEqual(len(self.detector.detect(new, [existing])), 1)

        diet = make_fact("f2", RelationType.IS, "vegan", category="diet")
        conflict = self.detector.detect(make_relation(RelationType.LIKES, "cheese pizza", category="fast food"),
                                        [diet])[0]
        self.assertEqual(conflict.conflict_type, ConflictType.DIETARY_CONFLICT)

    def test_dietary_conflict(self):
        """Test a vegan who likes cheese pizza is flagged."""
        existing = make_fact("f1", RelationType.IS, "vegan")
        new = make_relation(RelationType.LIKES, "cheese pizza")

        conflict = self.detector.detect(new, [existing])[0]

        self.assertEqual(conflict.conflict_type, ConflictType.DIETARY_CONFLICT)
        self.assertEqual(conflict.description, "IS vegan conflicts with LIKES cheese pizza")
        self.assertIn("dairy", conflict.reasoning)

        self.assertEqual(self.detector.detect(make_relation(RelationType.LIKES, "black beans"), [existing]), [])

    def test_direct_contradiction(self):
        """Test liking and disliking the same thing."""
        existing = make_fact("f1", RelationType.LIKES, "broccoli")
        new = make_relation(RelationType.DISLIKES, "Broccoli")

        conflict = self.detector.detect(new, [existing])[0]

        self.assertEqual(conflict.conflict_type, ConflictType.DIRECT_CONTRADICTION)
        self.assertEqual(conflict.severity, ConflictSeverity.MEDIUM)

    def test_temporal_update_for_single_valued_category(self):
        """Test a new job supersedes the old one."""
        existing = make_fact("f1", RelationType.IS, "teacher", category="occupation")
        new = make_relation(RelationType.IS, "engineer", category="occupation")

        conflict = self.detector.detect(new, [existing])[0]

        self.assertEqual(conflict.conflict_type, ConflictType.TEMPORAL_UPDATE)
        self.assertEqual(conflict.severity, ConflictSeverity.LOW)
        self.assertTrue(conflict.auto_resolvable)
        self.assertEqual(conflict.suggested_resolution, SuggestedResolution.MARK_OLD_AS_PAST)

    def test_temporal_update_for_used_to_be_and_past(self):
        """Test USED_TO_BE and past-status facts end the current fact."""
        existing = make_fact("f1", RelationType.IS, "teacher")
        conflict = self.detector.detect(make_relation(RelationType.USED_TO_BE, "teacher"), [existing])[0]
        self.assertEqual(conflict.conflict_type, ConflictType.TEMPORAL_UPDATE)

        existing = make_fact("f2", RelationType.LIKES, "coffee")
        past = make_relation(RelationType.LIKES, "coffee", status=FactStatus.PAST)
        conflict = self.detector.detect(past, [existing])[0]
        self.assertEqual(conflict.conflict_type, ConflictType.TEMPORAL_UPDATE)

    def test_logical_implication(self):
        """Test mutually exclusive identities and negated beliefs."""
        conflict = self.detector.detect(make_relation(RelationType.IS, "vegetarian"),
                                        [make_fact("f1", RelationType.IS, "vegan")])[0]
        self.assertEqual(conflict.conflict_type, ConflictType.LOGICAL_IMPLICATION)

        conflict = self.detector.detect(make_relation(RelationType.BELIEVES, "not in ghosts"),
                                        [make_fact("f2", RelationType.BELIEVES, "in ghosts")])[0]
        self.assertEqual(conflict.conflict_type, ConflictType.LOGICAL_IMPLICATION)

    def test_only_current_facts_are_checked(self):
        """Test past facts never conflict."""
        existing = make_fact("f1", RelationType.LIKES, "broccoli", status=FactStatus.PAST)
        self.assertEqual(self.detector.detect(make_relation(RelationType.DISLIKES, "broccoli"), [existing]), [])

    def test_merge_model_conflicts(self):
        """Test model-reported conflicts are added as high severity."""
        relation = make_relation(RelationType.LIKES, "cheese pizza")
        local = self.detector.detect(relation, [make_fact("f1", RelationType.IS, "vegan")])
        model_conflicts = [
            ModelConflict.model_validate({"type": "dietary_conflict", "description": "Vegan eats cheese",
                                          "existingRelationId": "f1",
                                          "newRelation": {"objectLabel": "Cheese Pizza", "relationType": "LIKES"}}),
            ModelConflict.model_validate({"type": "weird", "description": "Something else",
                                          "newRelation": {"objectLabel": "cheese pizza"}}),
            ModelConflict.model_validate({"type": "direct_contradiction", "description": "Other fact",
                                          "newRelation": {"objectLabel": "cheese pizza", "relationType": "DISLIKES"}}),
        ]

        merged = merge_model_conflicts(local, relation, model_conflicts)

        self.assertEqual(len(merged), 2)
        self.assertEqual(merged[1].source, "model")
        self.assertEqual(merged[1].severity, ConflictSeverity.HIGH)
        self.assertEqual(merged[1].conflict_type, ConflictType.LOGICAL_IMPLICATION)

    def test_explain_and_summarize(self):
        """Test human-readable output and counts."""
        conflicts = self.detector.detect(
            make_relation(RelationType.IS, "engineer", category="occupation"),
            [make_fact("f1", RelationType.IS, "teacher", category="occupation")]
        )
        conflicts += self.detector.detect(make_relation(RelationType.LIKES, "french fries"),
                                          [make_fact("f2", RelationType.SENSITIVE_TO, "potatoes")])

        text = explain_conflict(conflicts[1])
        self.assertTrue(text.startswith("[HIGH] ingredient_conflict: "))
        self.assertIn("  Reasoning: ", text)

        summary = summarize_conflicts(conflicts)
        self.assertEqual(summary["total"], 2)
        self.assertEqual(summary["by_type"], {"temporal_update": 1, "ingredient_conflict": 1})
        self.assertEqual(summary["auto_resolvable"], 1)
        self.assertEqual(summary["requires_review"], 1)


class TestAcceptanceRouter(unittest.TestCase):
    """Test routing extracted facts to accept, queue or reject."""

    def setUp(self):
        """Set up test fixtures."""
        self.router = AcceptanceRouter()
        self.detector = ConflictDetector()

    def test_thresholds(self):
        """Test auto-accept thresholds per risk class."""
        self.assertTrue(should_auto_accept(RelationType.LIKES, 0.85))
        self.assertFalse(should_auto_accept(RelationType.LIKES, 0.84))
        self.assertFalse(should_auto_accept(RelationType.SENSITIVE_TO, 0.89))
        self.assertTrue(should_auto_accept(RelationType.SENSITIVE_TO, 0.90))
        self.assertFalse(should_auto_accept(RelationType.DEPENDS_ON, 0.94))
        self.assertTrue(should_auto_accept(RelationType.CARES_FOR, 0.95))
        self.assertTrue(should_auto_accept(RelationType.IS, 0.90))
        self.assertFalse(should_auto_accept(RelationType.BELIEVES, 1.0))

    def test_beliefs_always_queued(self):
        """Test BELIEVES is queued at any confidence."""
        decision = self.router.route(make_relation(RelationType.BELIEVES, "in ghosts", confidence=1.0), [])

        self.assertEqual(decision.outcome, RoutingOutcome.QUEUE)
        self.assertEqual(decision.reason, "BELIEVES facts always require review")

    def test_low_confidence_queued(self):
        """Test facts below threshold are queued with the reason."""
        decision = self.router.route(make_relation(RelationType.LIKES, "tea", confidence=0.8), [])

        self.assertEqual(decision.outcome, RoutingOutcome.QUEUE)
        self.assertEqual(decision.reason, "Confidence 0.80 below 0.85 auto-accept threshold for LIKES")

    def test_duplicate_rejected(self):
        """Test a fact already recorded is rejected."""
        existing = [make_fact("f1", RelationType.LIKES, "carrots")]
        decision = self.router.route(make_relation(RelationType.LIKES, "Carrots"), [], existing)

        self.assertEqual(decision.outcome, RoutingOutcome.REJECT)
        self.assertEqual(decision.reason, "Already recorded as fact f1")

    def test_conflicts_queue_confident_facts(self):
        """Test medium and high severity conflicts override confidence."""
        existing = [make_fact("f1", RelationType.SENSITIVE_TO, "potatoes")]
        relation = make_relation(RelationType.LIKES, "french fries", confidence=0.99)

        decision = self.router.route(relation, self.detector.detect(relation, existing), existing)

        self.assertEqual(decision.outcome, RoutingOutcome.QUEUE)
        self.assertEqual(decision.reason, "Conflicts with existing facts (ingredient_conflict)")

    def test_temporal_update_accepted_with_supersession(self):
        """Test a low severity update is accepted and names the fact it replaces."""
        existing = [make_fact("f1", RelationType.IS, "teacher", category="occupation")]
        relation = make_relation(RelationType.IS, "engineer", category="occupation")

        decision = self.router.route(relation, self.detector.detect(relation, existing), existing)

        self.assertEqual(decision.outcome, RoutingOutcome.ACCEPT)
        self.assertEqual(decision.supersedes, ["f1"])

    def test_apply_writes_decisions(self):
        """Test accepted, queued and rejected facts are written accordingly."""
        with DatabaseManager(":memory:") as db:
            db.initialize_database()
            person = db.insert_person(Person(user_id="u", name="Mike"))
            old = db.insert_fact(Fact(user_id="u", subject_id=person.id, relation_type=RelationType.IS,
                                      object_label="teacher", category="occupation"))

            relation = make_relation(RelationType.IS, "engineer", category="occupation", subject_id=person.id)
            decision = self.router.route(relation, self.detector.detect(relation, [old]), [old])
            applied = self.router.apply(db, decision, relation, "u", person.id, story_id="s1")

            self.assertEqual(applied.fact.id, decision.fact_id)
            self.assertEqual(applied.superseded, [old.id])
            current = db.find_current_facts(person.id)
            self.assertEqual([f.object_label for f in current], ["engineer"])
            self.assertEqual(current[0].story_id, "s1")

            belief = make_relation(RelationType.BELIEVES, "in ghosts", subject_id=person.id)
            queued = self.router.apply(db, self.router.route(belief, []), belief, "u", person.id, "Mike")
            pending = db.get_pending_extraction(queued.pending.id)
            self.assertEqual(pending.review_status, ReviewStatus.PENDING)
            self.assertEqual(pending.subject_name, "Mike")
            self.assertEqual(pending.extraction_reason, "BELIEVES facts always require review")

            duplicate = make_relation(RelationType.IS, "engineer", subject_id=person.id)
            rejected = self.router.apply(db, self.router.route(duplicate, [], current), duplicate, "u", person.id)
            self.assertIsNone(rejected.fact)
            self.assertIsNone(rejected.pending)
            self.assertEqual(len(db.find_current_facts(person.id)), 1)


if __name__ == '__main__':
    unittest.main()
