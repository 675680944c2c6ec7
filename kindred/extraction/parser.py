"""
Response parser and validator for model output.

The parser turns raw model text into a validated ExtractionResult. It
accepts a bare JSON object or one wrapped in a fenced code block inside
prose. Invalid entries are dropped one by one with a recorded reason, so a
single malformed fact never discards the rest of the batch.
"""

import json
import logging
import re
from typing import Any, Dict, List, Tuple, Type

from pydantic import BaseModel, ValidationError

from ..agents.errors import AIError, AIErrorType
from ..models import (
    AmbiguousMatch,
    DroppedEntry,
    ExtractedPerson,
    ExtractedRelation,
    ExtractionResult,
    ModelConflict,
)

FENCED_JSON = re.compile(r"```(?:json)?\s*(\{[\s\S]*\})\s*```", re.IGNORECASE)

SECTIONS: List[Tuple[str, str, Type[BaseModel]]] = [
    ("people", "people", ExtractedPerson),
    ("relations", "relations", ExtractedRelation),
    ("conflicts", "conflicts", ModelConflict),
    ("ambiguousMatches", "ambiguous_matches", AmbiguousMatch),
]


def extract_json_payload(raw: str) -> Any:
    """
    Locate and decode the JSON document in a model response.

    Args:
        raw: Raw model output

    Returns:
        The decoded JSON value

    Raises:
        AIError: INVALID_RESPONSE if the text is empty or holds no parsable JSON
    """
    text = (raw or "").strip()
    if not text:
        raise AIError(AIErrorType.INVALID_RESPONSE, "Model returned an empty response", retryable=True)

    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    match = FENCED_JSON.search(text)
    if match:
        try:
            return json.loads(match.group(1))
        except json.JSONDecodeError as e:
            raise AIError(AIErrorType.INVALID_RESPONSE,
                          f"Fenced JSON block could not be parsed: {e}", retryable=False)

    raise AIError(AIErrorType.INVALID_RESPONSE, "No JSON object found in model response", retryable=False)


def _describe(error: ValidationError) -> str:
    problems = []
    for detail in error.errors():
        location = ".".join(str(part) for part in detail.get("loc", ())) or "entry"
        problems.append(f"{location}: {detail.get('msg')}")
    return "; ".join(problems)


def parse_extraction_response(raw: str) -> ExtractionResult:
    """
    Parse and validate a model response.

    Args:
        raw: Raw model output

    Returns:
        ExtractionResult holding every valid entry and a DroppedEntry for
        each invalid one

    Raises:
        AIError: INVALID_RESPONSE when no JSON can be found, VALIDATION_ERROR
            when the JSON is not an object
    """
    payload = extract_json_payload(raw)
    if not isinstance(payload, dict):
        raise AIError(AIErrorType.VALIDATION_ERROR,
                      f"Expected a JSON object, got {type(payload).__name__}", retryable=False)

    sections: Dict[str, List[BaseModel]] = {}
    dropped: List[DroppedEntry] = []

    for key, field_name, model in SECTIONS:
        entries = payload.get(key)
        if entries is None:
            entries = payload.get(field_name, [])
        if entries is None:
            entries = []

        if not isinstance(entries, list):
            dropped.append(DroppedEntry(section=key, index=-1, reason="Section is not a list", entry=entries))
            sections[field_name] = []
            continue

        valid = []
        for index, entry in enumerate(entries):
            if not isinstance(entry, dict):
                dropped.append(DroppedEntry(section=key, index=index, reason="Entry is not an object", entry=entry))
                continue
            try:
                valid.append(model.model_validate(entry))
            except ValidationError as e:
                dropped.append(DroppedEntry(section=key, index=index, reason=_describe(e), entry=entry))
        sections[field_name] = valid

    for entry in dropped:
        logging.warning(f"Dropped invalid {entry.section} entry {entry.index}: {entry.reason}")

    return ExtractionResult(
        people=sections["people"],
        relations=sections["relations"],
        conflicts=sections["conflicts"],
        ambiguous_matches=sections["ambiguous_matches"],
        dropped=dropped
    )
