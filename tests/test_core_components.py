"""
Unit tests for core Kindred components.

Tests non-AI components like configuration management, database operations
and data models.
"""

import os
import tempfile
import unittest
from pathlib import Path

from pydantic import ValidationError

from kindred.config import ConfigManager
from kindred.database import DatabaseManager
from kindred.models import (
    ExtractedRelation,
    Fact,
    FactStatus,
    PendingExtraction,
    Person,
    PersonStatus,
    RelationType,
    ReviewStatus,
    Story,
    StoryState,
)


class TestConfigManager(unittest.TestCase):
    """Test configuration management functionality."""

    def setUp(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp()
        self.config_path = Path(self.temp_dir) / "test_config.yaml"

    def tearDown(self):
        """Clean up test fixtures."""
        if self.config_path.exists():
            self.config_path.unlink()
        os.rmdir(self.temp_dir)

    def test_config_creation_with_defaults(self):
        """Test config manager falls back to defaults when file missing."""
        config = ConfigManager(str(self.config_path))

        self.assertEqual(config.backend, "anthropic")
        self.assertEqual(config.ai_timeout, 60.0)
        self.assertEqual(config.database_filename, "kindred.db")
        self.assertEqual(config.roster_limit, 200)
        self.assertEqual(config.get("ai.max_attempts"), 3)

    def test_config_loading_from_file(self):
        """Test loading configuration from YAML file."""
        test_config = """
ai:
  backend: "gemini"
  timeout: 30.0

rate_limits:
  per_minute: 2

extraction:
  user_id: "someone"
  roster_limit: 50
"""
        with open(self.config_path, 'w') as f:
            f.write(test_config)

        config = ConfigManager(str(self.config_path))

        self.assertEqual(config.backend, "gemini")
        self.assertEqual(config.ai_timeout, 30.0)
        self.assertEqual(config.get("rate_limits.per_minute"), 2)
        self.assertEqual(config.user_id, "someone")
        self.assertEqual(config.roster_limit, 50)
        # Keys missing from the file fall back to property defaults
        self.assertEqual(config.prompt_strategy, "standard")

    def test_dot_notation_access(self):
        """Test accessing config values with dot notation."""
        config = ConfigManager(str(self.config_path))

        self.assertEqual(config.get("ai.models.gemini"), "gemini-2.0-flash-lite")
        self.assertEqual(config.get("rate_limits.per_day"), 500)
        self.assertIsNone(config.get("nonexistent.key"))
        self.assertEqual(config.get("nonexistent.key", "default"), "default")

    def test_get_section(self):
        """Test getting an entire configuration section."""
        config = ConfigManager(str(self.config_path))

        limits = config.get_section("rate_limits")
        self.assertEqual(limits, {"per_minute": 10, "per_hour": 100, "per_day": 500})
        self.assertEqual(config.get_section("missing"), {})

    def test_reload_picks_up_new_file(self):
        """Test reload re-reads the file."""
        config = ConfigManager(str(self.config_path))
        self.assertEqual(config.backend, "anthropic")

        with open(self.config_path, 'w') as f:
            f.write("ai:\n  backend: ollama\n")
        config.reload()

        self.assertEqual(config.backend, "ollama")


class TestDataModels(unittest.TestCase):
    """Test pydantic data models."""

    def test_fact_defaults(self):
        """Test a fact starts current, manual and fully confident."""
        fact = Fact(user_id="u", subject_id="p1", relation_type=RelationType.LIKES, object_label="coffee")

        self.assertEqual(fact.status, FactStatus.CURRENT)
        self.assertEqual(fact.confidence, 1.0)
        self.assertTrue(fact.id)

    def test_fact_confidence_bounds(self):
        """Test confidence outside [0, 1] is rejected."""
        with self.assertRaises(ValidationError):
            Fact(user_id="u", subject_id="p1", relation_type="LIKES", object_label="tea", confidence=1.5)

    def test_relation_type_is_case_sensitive(self):
        """Test relation types must match the vocabulary exactly."""
        with self.assertRaises(ValidationError):
            Fact(user_id="u", subject_id="p1", relation_type="likes", object_label="tea")

    def test_extracted_relation_from_camel_case(self):
        """Test model JSON keys are accepted as camelCase aliases."""
        relation = ExtractedRelation.model_validate({
            "subjectId": "p1",
            "subjectName": "Mike",
            "relationType": "DISLIKES",
            "objectLabel": "broccoli",
            "confidence": 0.9,
            "intensity": "",
        })

        self.assertEqual(relation.subject_id, "p1")
        self.assertEqual(relation.relation_type, RelationType.DISLIKES)
        self.assertIsNone(relation.intensity)
        self.assertEqual(relation.status, FactStatus.CURRENT)

    def test_story_requires_content(self):
        """Test empty stories are rejected."""
        with self.assertRaises(ValidationError):
            Story(user_id="u", content="")

    def test_story_processed_flag(self):
        """Test ai_processed follows the state."""
        story = Story(user_id="u", content="Some text here")
        self.assertFalse(story.ai_processed)
        story.state = StoryState.PROCESSED
        self.assertTrue(story.ai_processed)


class TestDatabaseManager(unittest.TestCase):
    """Test database operations."""

    def setUp(self):
        """Set up test fixtures."""
        self.db = DatabaseManager(":memory:")
        self.db.connect()
        self.db.initialize_database()

    def tearDown(self):
        """Clean up test fixtures."""
        self.db.disconnect()

    def _person(self, name, **kwargs):
        return self.db.insert_person(Person(user_id="u", name=name, **kwargs))

    def _fact(self, subject_id, relation_type, label, **kwargs):
        return self.db.insert_fact(Fact(user_id="u", subject_id=subject_id,
                                        relation_type=relation_type, object_label=label, **kwargs))

    def test_requires_connection(self):
        """Test operations fail clearly without a connection."""
        db = DatabaseManager(":memory:")
        with self.assertRaises(RuntimeError):
            db.initialize_database()

    def test_context_manager(self):
        """Test the database manager as a context manager."""
        with DatabaseManager(":memory:") as db:
            self.assertIsNotNone(db.connection)
            db.initialize_database()
        self.assertIsNone(db.connection)

    def test_person_round_trip(self):
        """Test storing and reading back a person."""
        person = self._person("Mike", nickname="Mikey", potential_duplicates=["x1"])

        stored = self.db.get_person(person.id)
        self.assertEqual(stored.name, "Mike")
        self.assertEqual(stored.nickname, "Mikey")
        self.assertEqual(stored.potential_duplicates, ["x1"])
        self.assertEqual(stored.status, PersonStatus.ACTIVE)

    def test_roster_excludes_deleted_and_merged(self):
        """Test the roster only holds live people."""
        keep = self._person("Ola Kowalska")
        deleted = self._person("David Smith")
        duplicate = self._person("Ola K.")

        self.assertTrue(self.db.soft_delete_person(deleted.id))
        self.assertTrue(self.db.merge_people(duplicate.id, keep.id))

        roster_ids = [entry.id for entry in self.db.find_people_by_roster("u")]
        self.assertEqual(roster_ids, [keep.id])

        # Records are flagged, never removed
        self.assertIsNotNone(self.db.get_person(deleted.id).deleted_at)
        merged = self.db.get_person(duplicate.id)
        self.assertEqual(merged.status, PersonStatus.MERGED)
        self.assertEqual(merged.canonical_id, keep.id)

    def test_merge_moves_facts(self):
        """Test a merge moves the duplicate's facts to the kept person."""
        keep = self._person("Sarah")
        duplicate = self._person("Sara")
        fact = self._fact(duplicate.id, RelationType.LIKES, "tea")

        self.db.merge_people(duplicate.id, keep.id)

        self.assertEqual(self.db.get_fact(fact.id).subject_id, keep.id)
        self.assertFalse(self.db.merge_people(keep.id, keep.id))

    def test_increment_mention_count(self):
        """Test mention counts increase by one."""
        person = self._person("Mike", mention_count=1)
        self.db.increment_mention_count(person.id)
        self.assertEqual(self.db.get_person(person.id).mention_count, 2)

    def test_supersede_fact(self):
        """Test superseding moves a current fact to the past and keeps it."""
        person = self._person("Mike")
        fact = self._fact(person.id, RelationType.IS, "teacher", category="occupation")

        self.assertTrue(self.db.supersede_fact(fact.id))
        self.assertFalse(self.db.supersede_fact(fact.id))

        self.assertEqual(self.db.find_current_facts(person.id), [])
        history = self.db.find_facts(person.id)
        self.assertEqual(len(history), 1)
        self.assertEqual(history[0].status, FactStatus.PAST)
        self.assertIsNotNone(history[0].valid_to)

    def test_soft_deleted_facts_are_hidden(self):
        """Test deleted facts never appear in fact queries."""
        person = self._person("Mike")
        fact = self._fact(person.id, RelationType.LIKES, "carrots")

        self.assertTrue(self.db.soft_delete_fact(fact.id))
        self.assertEqual(self.db.find_current_facts(person.id), [])
        self.assertEqual(self.db.find_facts(person.id), [])

    def test_fact_metadata_round_trip(self):
        """Test JSON metadata survives storage."""
        person = self._person("Mike")
        fact = self._fact(person.id, RelationType.LIKES, "coffee", metadata={"when": "mornings"})

        self.assertEqual(self.db.get_fact(fact.id).metadata, {"when": "mornings"})

    def test_story_state_transitions(self):
        """Test story state and error tracking."""
        story = self.db.save_story(Story(user_id="u", content="Mike loves carrots"))

        self.db.set_story_state(story.id, StoryState.EXTRACTING)
        self.assertEqual(self.db.get_story(story.id).state, StoryState.EXTRACTING)

        self.db.set_story_state(story.id, StoryState.UNPROCESSED, last_error="TIMEOUT: slow")
        stored = self.db.get_story(story.id)
        self.assertEqual(stored.state, StoryState.UNPROCESSED)
        self.assertEqual(stored.last_error, "TIMEOUT: slow")
        self.assertEqual(stored.content, "Mike loves carrots")

        self.db.mark_story_processed(story.id, {"new_people_count": 1}, {"heldRelations": []})
        stored = self.db.get_story(story.id)
        self.assertTrue(stored.ai_processed)
        self.assertIsNone(stored.last_error)
        self.assertIsNotNone(stored.ai_processed_at)
        self.assertEqual(stored.extracted_data["summary"], {"new_people_count": 1})
        self.assertEqual(stored.extracted_data["heldRelations"], [])

    def test_pending_extractions(self):
        """Test queueing and reviewing facts."""
        person = self._person("Mike")
        pending = self.db.insert_pending_extraction(PendingExtraction(
            user_id="u", subject_id=person.id, subject_name="Mike",
            relation_type=RelationType.BELIEVES, object_label="in ghosts",
            confidence=0.99, extraction_reason="BELIEVES facts always require review"
        ))

        self.assertEqual([p.id for p in self.db.list_pending_extractions("u")], [pending.id])
        self.assertEqual(self.db.list_pending_extractions("u", subject_id="other"), [])

        self.db.update_pending_review(pending.id, ReviewStatus.REJECTED, review_notes="Not true")

        self.assertEqual(self.db.list_pending_extractions("u"), [])
        stored = self.db.get_pending_extraction(pending.id)
        self.assertEqual(stored.review_status, ReviewStatus.REJECTED)
        self.assertEqual(stored.review_notes, "Not true")
        self.assertIsNotNone(stored.reviewed_at)
        self.assertEqual(len(self.db.list_pending_extractions("u", review_status=None)), 1)

    def test_transaction_rolls_back(self):
        """Test a failing block leaves no partial writes."""
        person = Person(user_id="u", name="Ghost")

        with self.assertRaises(ValueError):
            with self.db.transaction():
                self.db.insert_person(person)
                raise ValueError("boom")

        self.assertIsNone(self.db.get_person(person.id))

    def test_ai_agent_call_logging(self):
        """Test model calls are logged and parsed output attached."""
        call_id = self.db.log_ai_agent_call(
            agent_name="extraction",
            input_data="{}",
            system_prompt=None,
            user_prompt="prompt",
            model_name="gemma3",
            raw_response="{\"people\": []}",
            execution_time_ms=12,
            story_id="s1"
        )
        self.assertIsNotNone(call_id)

        self.db.record_parsed_response("s1", "{\"people\": []}")

        calls = self.db.get_ai_agent_calls(story_id="s1")
        self.assertEqual(len(calls), 1)
        self.assertEqual(calls[0]["agent_name"], "extraction")
        self.assertEqual(calls[0]["parsed_response"], "{\"people\": []}")
        self.assertTrue(calls[0]["success"])


if __name__ == '__main__':
    unittest.main()
