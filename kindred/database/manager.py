"""
Database manager for Kindred.

This module handles all database operations using DuckDB: people, facts,
stories, facts waiting for review, and the log of model calls. Records are
never physically removed; deletion and merging only flag them.
"""

import json
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

import duckdb

from ..models import (
    Fact,
    FactStatus,
    PendingExtraction,
    Person,
    PersonStatus,
    ReviewStatus,
    RosterEntry,
    Story,
    StoryState,
)

PERSON_COLUMNS = """id, user_id, name, nickname, person_type, status, added_by, extraction_context,
    potential_duplicates, canonical_id, mention_count, deleted_at, created_at, updated_at"""

FACT_COLUMNS = """id, user_id, subject_id, relation_type, object_label, object_type, intensity,
    confidence, category, metadata, status, source, story_id, valid_from, valid_to,
    deleted_at, created_at, updated_at"""

STORY_COLUMNS = """id, user_id, title, content, story_date, state, ai_processed_at,
    extracted_data, last_error, created_at, updated_at"""

PENDING_COLUMNS = """id, user_id, story_id, subject_id, subject_name, relation_type, object_label,
    object_type, intensity, confidence, category, metadata, status, extraction_reason,
    review_status, reviewed_at, review_notes, created_at"""


def _dump_json(value: Any) -> Optional[str]:
    return json.dumps(value) if value is not None else None


def _load_json(value: Optional[str]) -> Any:
    return json.loads(value) if value else None


def _value(enum_or_none: Any) -> Optional[str]:
    return enum_or_none.value if enum_or_none is not None else None


class DatabaseManager:
    """
    Manages the DuckDB database holding the user's people and facts.
    """

    def __init__(self, db_path: str = "kindred.db"):
        """
        Initialize the database manager.

        Args:
            db_path: Path to the DuckDB database file, or ":memory:"
        """
        self.db_path = db_path
        self.connection = None

    def connect(self):
        """Establish connection to the database."""
        self.connection = duckdb.connect(self.db_path)

    def disconnect(self):
        """Close the database connection."""
        if self.connection:
            self.connection.close()
            self.connection = None

    def __enter__(self):
        """Context manager entry."""
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.disconnect()

    def _require_connection(self):
        if not self.connection:
            raise RuntimeError("Database connection not established")
        return self.connection

    @contextmanager
    def transaction(self) -> Iterator["DatabaseManager"]:
        """
        Run a block of writes atomically; any exception rolls them all back.
        """
        connection = self._require_connection()
        connection.begin()
        try:
            yield self
        except Exception:
            connection.rollback()
            raise
        else:
            connection.commit()

    def initialize_database(self):
        """
        Create all necessary tables if they don't exist.
        """
        connection = self._require_connection()

        connection.execute("""
            CREATE TABLE IF NOT EXISTS people (
                id VARCHAR PRIMARY KEY,
                user_id VARCHAR NOT NULL,
                name VARCHAR NOT NULL,
                nickname VARCHAR,
                person_type VARCHAR NOT NULL,
                status VARCHAR NOT NULL,
                added_by VARCHAR NOT NULL,
                extraction_context TEXT,
                potential_duplicates TEXT,
                canonical_id VARCHAR,
                mention_count INTEGER DEFAULT 0,
                deleted_at TIMESTAMP,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        connection.execute("""
            CREATE TABLE IF NOT EXISTS relations (
                id VARCHAR PRIMARY KEY,
                user_id VARCHAR NOT NULL,
                subject_id VARCHAR NOT NULL,
                relation_type VARCHAR NOT NULL,
                object_label TEXT NOT NULL,
                object_type VARCHAR,
                intensity VARCHAR,
                confidence DOUBLE NOT NULL,
                category VARCHAR,
                metadata TEXT,
                status VARCHAR NOT NULL,
                source VARCHAR NOT NULL,
                story_id VARCHAR,
                valid_from TIMESTAMP,
                valid_to TIMESTAMP,
                deleted_at TIMESTAMP,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        connection.execute("""
            CREATE TABLE IF NOT EXISTS stories (
                id VARCHAR PRIMARY KEY,
                user_id VARCHAR NOT NULL,
                title VARCHAR,
                content TEXT NOT NULL,
                story_date TIMESTAMP,
                state VARCHAR NOT NULL,
                ai_processed_at TIMESTAMP,
                extracted_data TEXT,
                last_error TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        connection.execute("""
            CREATE TABLE IF NOT EXISTS pending_extractions (
                id VARCHAR PRIMARY KEY,
                user_id VARCHAR NOT NULL,
                story_id VARCHAR,
                subject_id VARCHAR NOT NULL,
                subject_name VARCHAR,
                relation_type VARCHAR NOT NULL,
                object_label TEXT NOT NULL,
                object_type VARCHAR,
                intensity VARCHAR,
                confidence DOUBLE NOT NULL,
                category VARCHAR,
                metadata TEXT,
                status VARCHAR NOT NULL,
                extraction_reason TEXT NOT NULL,
                review_status VARCHAR NOT NULL,
                reviewed_at TIMESTAMP,
                review_notes TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        # Create sequence for auto-incrementing call_id in ai_agent_calls
        connection.execute("CREATE SEQUENCE IF NOT EXISTS call_id_seq;")
        connection.execute("""
            CREATE TABLE IF NOT EXISTS ai_agent_calls (
                call_id BIGINT PRIMARY KEY DEFAULT nextval('call_id_seq'),
                agent_name VARCHAR NOT NULL,
                input_data TEXT NOT NULL,
                system_prompt TEXT,
                user_prompt TEXT NOT NULL,
                model_name VARCHAR NOT NULL,
                raw_response TEXT NOT NULL,
                parsed_response TEXT,
                success BOOLEAN NOT NULL,
                error_message TEXT,
                execution_time_ms INTEGER,
                story_id VARCHAR,
                called_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

    # People

    def insert_person(self, person: Person) -> Person:
        """
        Add a new person.

        Args:
            person: The person to add

        Returns:
            The stored person

        Raises:
            duckdb.ConstraintException: If a person with the same id exists
        """
        connection = self._require_connection()
        connection.execute(f"""
            INSERT INTO people ({PERSON_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, [
            person.id, person.user_id, person.name, person.nickname,
            person.person_type.value, person.status.value, person.added_by.value,
            person.extraction_context, json.dumps(person.potential_duplicates),
            person.canonical_id, person.mention_count, person.deleted_at,
            person.created_at, person.updated_at
        ])
        return person

    def get_person(self, person_id: str) -> Optional[Person]:
        """
        Retrieve a person by id, including soft-deleted ones.

        Args:
            person_id: The person's id

        Returns:
            The person if found, None otherwise
        """
        connection = self._require_connection()
        row = connection.execute(
            f"SELECT {PERSON_COLUMNS} FROM people WHERE id = ?", [person_id]
        ).fetchone()
        return self._row_to_person(row) if row else None

    def list_people(self, user_id: str) -> List[Person]:
        """List a user's people that are neither deleted nor merged."""
        connection = self._require_connection()
        rows = connection.execute(f"""
            SELECT {PERSON_COLUMNS} FROM people
            WHERE user_id = ? AND deleted_at IS NULL AND status != ?
            ORDER BY name
        """, [user_id, PersonStatus.MERGED.value]).fetchall()
        return [self._row_to_person(row) for row in rows]

    def find_people_by_roster(self, user_id: str) -> List[RosterEntry]:
        """
        Get the roster used for identity matching.

        Args:
            user_id: Owner of the people

        Returns:
            Id, name and nickname of every person that is neither deleted
            nor merged into someone else
        """
        return [RosterEntry(id=p.id, name=p.name, nickname=p.nickname) for p in self.list_people(user_id)]

    def increment_mention_count(self, person_id: str) -> None:
        connection = self._require_connection()
        connection.execute("""
            UPDATE people SET mention_count = mention_count + 1, updated_at = ?
            WHERE id = ?
        """, [datetime.now(), person_id])

    def soft_delete_person(self, person_id: str) -> bool:
        """
        Flag a person as deleted. The record is kept.

        Returns:
            True if a live person was flagged
        """
        connection = self._require_connection()
        rows = connection.execute("""
            UPDATE people SET deleted_at = ?, updated_at = ?
            WHERE id = ? AND deleted_at IS NULL
            RETURNING id
        """, [datetime.now(), datetime.now(), person_id]).fetchall()
        return bool(rows)

    def merge_people(self, source_id: str, target_id: str) -> bool:
        """
        Merge one person into another at the user's request.

        The source keeps its record with status "merged" and a pointer to the
        target; its facts and review items move to the target.

        Args:
            source_id: The duplicate person
            target_id: The person to keep

        Returns:
            True if the merge happened
        """
        if source_id == target_id:
            return False

        source = self.get_person(source_id)
        target = self.get_person(target_id)
        if not source or not target or source.status == PersonStatus.MERGED:
            return False

        connection = self._require_connection()
        now = datetime.now()
        connection.execute("""
            UPDATE people SET status = ?, canonical_id = ?, updated_at = ?
            WHERE id = ?
        """, [PersonStatus.MERGED.value, target_id, now, source_id])
        connection.execute("""
            UPDATE people SET mention_count = mention_count + ?, updated_at = ?
            WHERE id = ?
        """, [source.mention_count, now, target_id])
        connection.execute(
            "UPDATE relations SET subject_id = ?, updated_at = ? WHERE subject_id = ?",
            [target_id, now, source_id]
        )
        connection.execute(
            "UPDATE pending_extractions SET subject_id = ?, subject_name = ? WHERE subject_id = ?",
            [target_id, target.name, source_id]
        )
        logging.info(f"Merged person {source_id} into {target_id}")
        return True

    # Facts

    def insert_fact(self, fact: Fact) -> Fact:
        """
        Add a new fact.

        Args:
            fact: The fact to add

        Returns:
            The stored fact
        """
        connection = self._require_connection()
        connection.execute(f"""
            INSERT INTO relations ({FACT_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, [
            fact.id, fact.user_id, fact.subject_id, fact.relation_type.value,
            fact.object_label, fact.object_type, _value(fact.intensity), fact.confidence,
            fact.category, _dump_json(fact.metadata), fact.status.value, fact.source.value,
            fact.story_id, fact.valid_from, fact.valid_to, fact.deleted_at,
            fact.created_at, fact.updated_at
        ])
        return fact

    def get_fact(self, fact_id: str) -> Optional[Fact]:
        connection = self._require_connection()
        row = connection.execute(
            f"SELECT {FACT_COLUMNS} FROM relations WHERE id = ?", [fact_id]
        ).fetchone()
        return self._row_to_fact(row) if row else None

    def find_current_facts(self, person_id: str) -> List[Fact]:
        """
        Get a person's current, non-deleted facts.

        Args:
            person_id: The subject of the facts

        Returns:
            Facts with status "current", oldest first
        """
        connection = self._require_connection()
        rows = connection.execute(f"""
            SELECT {FACT_COLUMNS} FROM relations
            WHERE subject_id = ? AND status = ? AND deleted_at IS NULL
            ORDER BY created_at
        """, [person_id, FactStatus.CURRENT.value]).fetchall()
        return [self._row_to_fact(row) for row in rows]

    def find_facts(self, person_id: str, include_past: bool = True) -> List[Fact]:
        """
        Get a person's non-deleted facts.

        Args:
            person_id: The subject of the facts
            include_past: Whether superseded facts are included

        Returns:
            Matching facts, oldest first
        """
        if not include_past:
            return self.find_current_facts(person_id)

        connection = self._require_connection()
        rows = connection.execute(f"""
            SELECT {FACT_COLUMNS} FROM relations
            WHERE subject_id = ? AND deleted_at IS NULL
            ORDER BY created_at
        """, [person_id]).fetchall()
        return [self._row_to_fact(row) for row in rows]

    def supersede_fact(self, old_id: str) -> bool:
        """
        Move a current fact to the past. The record itself is kept.

        Args:
            old_id: Id of the fact being replaced

        Returns:
            True if a current fact was moved to the past
        """
        connection = self._require_connection()
        now = datetime.now()
        rows = connection.execute("""
            UPDATE relations SET status = ?, valid_to = ?, updated_at = ?
            WHERE id = ? AND status = ? AND deleted_at IS NULL
            RETURNING id
        """, [FactStatus.PAST.value, now, now, old_id, FactStatus.CURRENT.value]).fetchall()
        return bool(rows)

    def soft_delete_fact(self, fact_id: str) -> bool:
        connection = self._require_connection()
        rows = connection.execute("""
            UPDATE relations SET deleted_at = ?, updated_at = ?
            WHERE id = ? AND deleted_at IS NULL
            RETURNING id
        """, [datetime.now(), datetime.now(), fact_id]).fetchall()
        return bool(rows)

    # Stories

    def save_story(self, story: Story) -> Story:
        """
        Persist a story.

        Args:
            story: The story to store

        Returns:
            The stored story
        """
        connection = self._require_connection()
        connection.execute(f"""
            INSERT INTO stories ({STORY_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, [
            story.id, story.user_id, story.title, story.content, story.story_date,
            story.state.value, story.ai_processed_at, _dump_json(story.extracted_data),
            story.last_error, story.created_at, story.updated_at
        ])
        return story

    def get_story(self, story_id: str) -> Optional[Story]:
        connection = self._require_connection()
        row = connection.execute(
            f"SELECT {STORY_COLUMNS} FROM stories WHERE id = ?", [story_id]
        ).fetchone()
        return self._row_to_story(row) if row else None

    def list_stories(self, user_id: str) -> List[Story]:
        connection = self._require_connection()
        rows = connection.execute(f"""
            SELECT {STORY_COLUMNS} FROM stories
            WHERE user_id = ?
            ORDER BY created_at DESC
        """, [user_id]).fetchall()
        return [self._row_to_story(row) for row in rows]

    def set_story_state(self, story_id: str, state: StoryState, last_error: Optional[str] = None) -> None:
        """
        Record a story's extraction state.

        Args:
            story_id: The story
            state: The new state
            last_error: Failure message to keep alongside an unprocessed story
        """
        connection = self._require_connection()
        connection.execute("""
            UPDATE stories SET state = ?, last_error = ?, updated_at = ?
            WHERE id = ?
        """, [state.value, last_error, datetime.now(), story_id])

    def mark_story_processed(self, story_id: str, summary: Dict[str, Any],
                             extracted_data: Optional[Dict[str, Any]] = None) -> None:
        """
        Mark a story as processed and store what was extracted from it.

        Args:
            story_id: The story
            summary: The extraction summary
            extracted_data: The validated extraction result and held relations
        """
        data = dict(extracted_data or {})
        data["summary"] = summary

        connection = self._require_connection()
        now = datetime.now()
        connection.execute("""
            UPDATE stories SET state = ?, ai_processed_at = ?, extracted_data = ?,
                last_error = NULL, updated_at = ?
            WHERE id = ?
        """, [StoryState.PROCESSED.value, now, json.dumps(data, default=str), now, story_id])

    def update_story_extracted_data(self, story_id: str, extracted_data: Dict[str, Any]) -> None:
        connection = self._require_connection()
        connection.execute("""
            UPDATE stories SET extracted_data = ?, updated_at = ?
            WHERE id = ?
        """, [json.dumps(extracted_data, default=str), datetime.now(), story_id])

    # Pending extractions

    def insert_pending_extraction(self, pending: PendingExtraction) -> PendingExtraction:
        """
        Queue a fact for human review.

        Args:
            pending: The pending extraction to store

        Returns:
            The stored pending extraction
        """
        connection = self._require_connection()
        connection.execute(f"""
            INSERT INTO pending_extractions ({PENDING_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, [
            pending.id, pending.user_id, pending.story_id, pending.subject_id,
            pending.subject_name, pending.relation_type.value, pending.object_label,
            pending.object_type, _value(pending.intensity), pending.confidence,
            pending.category, _dump_json(pending.metadata), pending.status.value,
            pending.extraction_reason, pending.review_status.value, pending.reviewed_at,
            pending.review_notes, pending.created_at
        ])
        return pending

    def get_pending_extraction(self, pending_id: str) -> Optional[PendingExtraction]:
        connection = self._require_connection()
        row = connection.execute(
            f"SELECT {PENDING_COLUMNS} FROM pending_extractions WHERE id = ?", [pending_id]
        ).fetchone()
        return self._row_to_pending(row) if row else None

    def list_pending_extractions(
        self,
        user_id: str,
        review_status: Optional[ReviewStatus] = ReviewStatus.PENDING,
        subject_id: Optional[str] = None,
        story_id: Optional[str] = None
    ) -> List[PendingExtraction]:
        """
        List review items.

        Args:
            user_id: Owner of the items
            review_status: Filter by review status (None for all)
            subject_id: Filter by subject (optional)
            story_id: Filter by originating story (optional)

        Returns:
            Matching items, oldest first
        """
        connection = self._require_connection()
        query = f"SELECT {PENDING_COLUMNS} FROM pending_extractions WHERE user_id = ?"
        params: List[Any] = [user_id]

        if review_status is not None:
            query += " AND review_status = ?"
            params.append(review_status.value)

        if subject_id:
            query += " AND subject_id = ?"
            params.append(subject_id)

        if story_id:
            query += " AND story_id = ?"
            params.append(story_id)

        query += " ORDER BY created_at"

        rows = connection.execute(query, params).fetchall()
        return [self._row_to_pending(row) for row in rows]

    def update_pending_review(self, pending_id: str, review_status: ReviewStatus,
                              review_notes: Optional[str] = None) -> None:
        """
        Record the outcome of a review.

        Args:
            pending_id: The review item
            review_status: approved, rejected or edited
            review_notes: Optional reviewer note
        """
        connection = self._require_connection()
        connection.execute("""
            UPDATE pending_extractions SET review_status = ?, reviewed_at = ?, review_notes = ?
            WHERE id = ?
        """, [review_status.value, datetime.now(), review_notes, pending_id])

    # AI call log

    def log_ai_agent_call(
        self,
        agent_name: str,
        input_data: str,
        system_prompt: Optional[str],
        user_prompt: str,
        model_name: str,
        raw_response: str,
        parsed_response: Optional[str] = None,
        success: bool = True,
        error_message: Optional[str] = None,
        execution_time_ms: Optional[int] = None,
        story_id: Optional[str] = None
    ) -> Optional[int]:
        """
        Log a model call to the database for reproducibility.

        Returns:
            The new call id
        """
        connection = self._require_connection()
        result = connection.execute("""
            INSERT INTO ai_agent_calls (
                agent_name, input_data, system_prompt, user_prompt, model_name,
                raw_response, parsed_response, success, error_message,
                execution_time_ms, story_id
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            RETURNING call_id
        """, [
            agent_name, input_data, system_prompt, user_prompt, model_name,
            raw_response, parsed_response, success, error_message,
            execution_time_ms, story_id
        ]).fetchone()
        return result[0] if result else None

    def record_parsed_response(self, story_id: str, parsed_response: str) -> None:
        """Attach the validated output to the latest successful call for a story."""
        connection = self._require_connection()
        connection.execute("""
            UPDATE ai_agent_calls SET parsed_response = ?
            WHERE call_id = (
                SELECT max(call_id) FROM ai_agent_calls WHERE story_id = ? AND success = true
            )
        """, [parsed_response, story_id])

    def get_ai_agent_calls(
        self,
        agent_name: Optional[str] = None,
        story_id: Optional[str] = None,
        success_only: bool = False,
        limit: Optional[int] = None
    ) -> List[Dict]:
        """
        Retrieve logged model calls.

        Args:
            agent_name: Filter by agent name (optional)
            story_id: Filter by story id (optional)
            success_only: Only return successful calls
            limit: Limit number of results

        Returns:
            List of call records, newest first
        """
        connection = self._require_connection()

        query = """
            SELECT call_id, agent_name, input_data, system_prompt, user_prompt,
                   model_name, raw_response, parsed_response, success, error_message,
                   execution_time_ms, story_id, called_at
            FROM ai_agent_calls
            WHERE 1=1
        """
        params: List[Any] = []

        if agent_name:
            query += " AND agent_name = ?"
            params.append(agent_name)

        if story_id:
            query += " AND story_id = ?"
            params.append(story_id)

        if success_only:
            query += " AND success = true"

        query += " ORDER BY call_id DESC"

        if limit:
            query += f" LIMIT {int(limit)}"

        results = connection.execute(query, params).fetchall()

        return [
            {
                "call_id": row[0],
                "agent_name": row[1],
                "input_data": row[2],
                "system_prompt": row[3],
                "user_prompt": row[4],
                "model_name": row[5],
                "raw_response": row[6],
                "parsed_response": row[7],
                "success": row[8],
                "error_message": row[9],
                "execution_time_ms": row[10],
                "story_id": row[11],
                "called_at": row[12]
            }
            for row in results
        ]

    # Row conversion

    @staticmethod
    def _row_to_person(row) -> Person:
        return Person(
            id=row[0], user_id=row[1], name=row[2], nickname=row[3],
            person_type=row[4], status=row[5], added_by=row[6],
            extraction_context=row[7], potential_duplicates=_load_json(row[8]) or [],
            canonical_id=row[9], mention_count=row[10] or 0, deleted_at=row[11],
            created_at=row[12], updated_at=row[13]
        )

    @staticmethod
    def _row_to_fact(row) -> Fact:
        return Fact(
            id=row[0], user_id=row[1], subject_id=row[2], relation_type=row[3],
            object_label=row[4], object_type=row[5], intensity=row[6],
            confidence=row[7], category=row[8], metadata=_load_json(row[9]),
            status=row[10], source=row[11], story_id=row[12], valid_from=row[13],
            valid_to=row[14], deleted_at=row[15], created_at=row[16], updated_at=row[17]
        )

    @staticmethod
    def _row_to_story(row) -> Story:
        return Story(
            id=row[0], user_id=row[1], title=row[2], content=row[3], story_date=row[4],
            state=row[5], ai_processed_at=row[6], extracted_data=_load_json(row[7]),
            last_error=row[8], created_at=row[9], updated_at=row[10]
        )

    @staticmethod
    def _row_to_pending(row) -> PendingExtraction:
        return PendingExtraction(
            id=row[0], user_id=row[1], story_id=row[2], subject_id=row[3],
            subject_name=row[4], relation_type=row[5], object_label=row[6],
            object_type=row[7], intensity=row[8], confidence=row[9], category=row[10],
            metadata=_load_json(row[11]), status=row[12], extraction_reason=row[13],
            review_status=row[14], reviewed_at=row[15], review_notes=row[16],
            created_at=row[17]
        )
