"""
Prompt construction for Kindred.

This module holds the registry of prompt strategies and the builder that
turns a story plus the user's existing people and facts into the single
instruction string sent to the model. All strategies share the same
vocabulary, response schema and person-matching rules; they only differ in
preamble, reasoning guidance and worked examples.
"""

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from ..models import Fact, RelationType, RosterEntry


RELATION_DESCRIPTIONS: Dict[RelationType, str] = {
    RelationType.KNOWS: "knows a person/place/thing",
    RelationType.LIKES: "enjoys, prefers, loves",
    RelationType.DISLIKES: "dislikes, hates, avoids",
    RelationType.ASSOCIATED_WITH: "connected to a place, group, organization",
    RelationType.EXPERIENCED: "went through an event or experience",
    RelationType.HAS_SKILL: "has ability or skill",
    RelationType.OWNS: "possesses something",
    RelationType.HAS_IMPORTANT_DATE: "birthday, anniversary, etc.",
    RelationType.IS: "identity, role, profession, trait (e.g. \"vegan\", \"lactose intolerant\")",
    RelationType.BELIEVES: "holds belief, opinion, value",
    RelationType.FEARS: "afraid of, anxious about",
    RelationType.WANTS_TO_ACHIEVE: "goal, aspiration, dream",
    RelationType.STRUGGLES_WITH: "difficulty, challenge, problem",
    RelationType.CARES_FOR: "looks after, supports (person or cause)",
    RelationType.DEPENDS_ON: "relies on (person, thing, or activity)",
    RelationType.REGULARLY_DOES: "habit, routine, regular activity",
    RelationType.PREFERS_OVER: "prefers X over Y",
    RelationType.USED_TO_BE: "past identity, role, or habit",
    RelationType.SENSITIVE_TO: "allergic to, sensitive to (e.g. SENSITIVE_TO \"potatoes\")",
    RelationType.UNCOMFORTABLE_WITH: "makes them uncomfortable",
}

RESPONSE_SCHEMA = """{
  "people": [
    {"id": "existing-id-or-new-temporary-id", "name": "Full Name", "isNew": true,
     "potentialDuplicateOf": null, "personType": "primary|mentioned|placeholder", "confidence": 0.0}
  ],
  "relations": [
    {"subjectId": "person-id", "subjectName": "Person Name", "relationType": "LIKES",
     "objectLabel": "what they like/dislike/etc", "objectType": "food|activity|person|place|...",
     "intensity": "weak|medium|strong|very_strong", "confidence": 0.0, "category": "food|sport|music|...",
     "metadata": {}, "status": "current|past|future|aspiration", "source": "ai_extraction"}
  ],
  "conflicts": [
    {"type": "ingredient_conflict|dietary_conflict|direct_contradiction|logical_implication",
     "description": "Clear description", "reasoning": "Why this is a conflict",
     "existingRelationId": "relation-id-if-known", "newRelation": {"subjectId": "...", "relationType": "...", "objectLabel": "..."}}
  ],
  "ambiguousMatches": [
    {"nameInStory": "David", "possibleMatches": [{"id": "existing-id", "name": "David Smith", "reason": "First name match"}]}
  ]
}"""

PERSON_MATCHING_RULES = """PERSON MATCHING RULES (apply in order):
1. CONFIRMED PRESENT people: use the given id with full confidence, even for pronouns that clearly refer to them.
2. CONFIRMED NEW people: create a new person with isNew: true. Do not link them to an existing person with the same name.
3. @Name in the story is an explicit instruction to link to the existing person with that name. @+Name means a new person. The @ is not part of the name.
4. A plain name that matches an existing person only counts as that person when the match is certain: the full name matches exactly, or the name is unique and not a common first name.
   A bare common first name ("David", "Sarah", "Ola", "Mike") that matches one or more existing people is AMBIGUOUS: do NOT add it to "people"; add it to "ambiguousMatches" listing every plausible existing person with a reason.
   Still extract its relations, with subjectId "ambiguous-<name>" and the name exactly as written in the story as subjectName; they are held until the user picks the person.
5. A name that matches no existing person is a new person with isNew: true. Never put it in "ambiguousMatches".
6. If a new person might duplicate an existing one, keep isNew: true and set potentialDuplicateOf to that person's id."""

CONFLICT_GUIDANCE = """CONFLICT DETECTION:
- Compare every new relation with the EXISTING FACTS for the same person.
- Think through ingredients: someone SENSITIVE_TO "potatoes" who LIKES "french fries" is a conflict, because fries are made from potatoes.
- Think through diets: someone who IS "vegan" and LIKES "cheese pizza" is a conflict, because cheese is dairy.
- A fact that replaces an older one (new job, moved house, USED_TO_BE) is an update, not a conflict: set "status" on the new relation instead.
- Report each conflict in "conflicts" with reasoning that names the ingredient or rule involved."""

OUTPUT_RULES = """OUTPUT RULES:
- Use only the relation types listed above, spelled exactly as shown.
- confidence is a number between 0.0 and 1.0.
- Output only valid JSON matching the response format. No prose before or after it."""


@dataclass
class PromptStrategy:
    """
    Configuration for one way of prompting the extraction model.
    """
    name: str
    description: str
    preamble: str
    reasoning_steps: List[str] = field(default_factory=list)
    examples: List[str] = field(default_factory=list)
    include_conflict_guidance: bool = True


class PromptRegistry:
    """
    Registry of available prompt strategies.
    """

    def __init__(self):
        """Initialize the registry with the built-in strategies."""
        self._strategies: Dict[str, PromptStrategy] = {}
        self._register_default_strategies()

    def _register_default_strategies(self):
        """Register the strategies that ship with Kindred."""

        self.register_strategy(PromptStrategy(
            name="standard",
            description="Full instructions with conflict guidance",
            preamble="You are an assistant that extracts structured relationship data from stories about people."
        ))

        self.register_strategy(PromptStrategy(
            name="concise",
            description="Short instructions for fast, cheap models",
            preamble="Extract people and facts about them from the story as JSON.",
            include_conflict_guidance=False
        ))

        self.register_strategy(PromptStrategy(
            name="chain_of_thought",
            description="Asks the model to reason through the story before answering",
            preamble="You are a careful analyst who extracts structured relationship data from stories about people.",
            reasoning_steps=[
                "List every person mentioned and decide, using the matching rules, whether each is existing, new or ambiguous.",
                "For each person, ambiguous ones included, list what the story says they like, dislike, do, are, fear or believe.",
                "Compare each candidate fact with the person's existing facts and note ingredient, dietary or direct conflicts.",
                "Assign a confidence to every fact: explicit statements score high, inferences score lower.",
                "Write the final JSON only; do not include your reasoning in the output.",
            ]
        ))

        self.register_strategy(PromptStrategy(
            name="few_shot",
            description="Adds worked examples of matching and extraction",
            preamble="You are an assistant that extracts structured relationship data from stories about people.",
            examples=[
                """Story: "Went shopping with Ola, she loves pierogi"
Existing people: Ola Kowalska (ID: ola-1)
Answer: {"people": [], "conflicts": [],
 "relations": [{"subjectId": "ambiguous-ola", "subjectName": "Ola", "relationType": "LIKES", "objectLabel": "pierogi",
 "objectType": "food", "confidence": 0.9, "category": "food", "status": "current", "source": "ai_extraction"}],
 "ambiguousMatches": [{"nameInStory": "Ola", "possibleMatches": [{"id": "ola-1", "name": "Ola Kowalska", "reason": "First name match"}]}]}""",
                """Story: "Played tennis with Falko. He loves clay courts."
Existing people: none
Answer: {"people": [{"id": "new-falko", "name": "Falko", "isNew": true, "personType": "mentioned", "confidence": 0.95}],
 "relations": [{"subjectId": "new-falko", "subjectName": "Falko", "relationType": "LIKES", "objectLabel": "clay courts",
 "objectType": "activity", "intensity": "strong", "confidence": 0.9, "category": "sport", "status": "current", "source": "ai_extraction"}],
 "conflicts": [], "ambiguousMatches": []}""",
            ]
        ))

    def register_strategy(self, strategy: PromptStrategy) -> None:
        """
        Register a new prompt strategy.

        Args:
            strategy: The strategy to register
        """
        self._strategies[strategy.name] = strategy

    def get_strategy(self, name: str) -> Optional[PromptStrategy]:
        """
        Get a strategy by name.

        Args:
            name: The strategy name

        Returns:
            The strategy, or None if not found
        """
        return self._strategies.get(name)

    def list_strategies(self) -> List[str]:
        return list(self._strategies.keys())


# Global registry instance
prompt_registry = PromptRegistry()


class ExtractionContext(BaseModel):
    """
    Everything the builder needs to describe one extraction task.
    """

    story_text: str = Field(..., min_length=1)

    existing_people: List[RosterEntry] = Field(
        default_factory=list,
        description="Roster of active people, already pre-filtered"
    )

    existing_facts: List[Fact] = Field(
        default_factory=list,
        description="Current facts about roster people, for conflict context"
    )

    confirmed_present: List[RosterEntry] = Field(
        default_factory=list,
        description="People the caller explicitly tagged as present in the story"
    )

    confirmed_new: List[str] = Field(
        default_factory=list,
        description="Names the caller confirmed are new people"
    )


def _first_name(name: str) -> str:
    parts = name.split()
    return parts[0].lower() if parts else ""


def select_roster_for_story(roster: List[RosterEntry], story_text: str, limit: int = 200) -> List[RosterEntry]:
    """
    Pick the roster entries worth sending with a story.

    People whose name, first name or nickname appears in the story come first;
    the rest fill the remaining slots in roster order.

    Args:
        roster: Active people for the user
        story_text: The story being extracted
        limit: Maximum number of entries to return

    Returns:
        The selected roster entries
    """
    words = set(re.findall(r"[\w'-]+", story_text.lower()))
    text = story_text.lower()

    def mentioned(person: RosterEntry) -> bool:
        if person.name.lower() in text or _first_name(person.name) in words:
            return True
        return bool(person.nickname) and person.nickname.lower() in words

    mentioned_people = [p for p in roster if mentioned(p)]
    others = [p for p in roster if not mentioned(p)]
    return (mentioned_people + others)[:limit]


class PromptBuilder:
    """
    Builds the instruction string for one extraction.
    """

    def __init__(self, registry: Optional[PromptRegistry] = None):
        self.registry = registry or prompt_registry

    def build(self, context: ExtractionContext, strategy: str = "standard") -> str:
        """
        Build the extraction prompt.

        Args:
            context: Story text plus roster, facts and caller confirmations
            strategy: Name of a registered PromptStrategy

        Returns:
            The complete prompt text

        Raises:
            ValueError: If the strategy is not registered
        """
        prompt_strategy = self.registry.get_strategy(strategy)
        if not prompt_strategy:
            raise ValueError(f"Unknown prompt strategy: {strategy}")

        sections = [
            prompt_strategy.preamble,
            self._format_vocabulary(),
            PERSON_MATCHING_RULES,
        ]

        if prompt_strategy.include_conflict_guidance:
            sections.append(CONFLICT_GUIDANCE)

        if prompt_strategy.reasoning_steps:
            steps = "\n".join(f"{i}. {step}" for i, step in enumerate(prompt_strategy.reasoning_steps, 1))
            sections.append(f"WORK THROUGH THESE STEPS:\n{steps}")

        sections.append(f"RESPONSE FORMAT (JSON):\n{RESPONSE_SCHEMA}")

        if prompt_strategy.examples:
            examples = "\n\n".join(prompt_strategy.examples)
            sections.append(f"EXAMPLES:\n{examples}")

        sections.append(OUTPUT_RULES)
        sections.append(self._format_context(context))
        sections.append(f"STORY:\n\"\"\"\n{context.story_text}\n\"\"\"")

        return "\n\n".join(sections)

    def _format_vocabulary(self) -> str:
        lines = [f"- {relation_type.value}: {description}"
                 for relation_type, description in RELATION_DESCRIPTIONS.items()]
        return "RELATION TYPES (use exactly these):\n" + "\n".join(lines)

    def _format_context(self, context: ExtractionContext) -> str:
        parts = []

        if context.existing_people:
            people = "\n".join(self._format_person(p) for p in context.existing_people)
        else:
            people = "None"
        parts.append(f"EXISTING PEOPLE:\n{people}")

        if context.confirmed_present:
            tagged = "\n".join(f"{self._format_person(p)} [CONFIRMED PRESENT]" for p in context.confirmed_present)
            parts.append(f"EXPLICITLY TAGGED PEOPLE:\n{tagged}")

        if context.confirmed_new:
            new_people = "\n".join(f"- {name} [CONFIRMED NEW PERSON]" for name in context.confirmed_new)
            parts.append(f"CONFIRMED NEW PEOPLE:\n{new_people}")

        if context.existing_facts:
            names = {p.id: p.name for p in context.existing_people}
            facts = "\n".join(
                f"- {names.get(f.subject_id, f.subject_id)} {f.relation_type.value} \"{f.object_label}\" (ID: {f.id})"
                for f in context.existing_facts
            )
            parts.append(f"EXISTING FACTS:\n{facts}")

        return "\n\n".join(parts)

    @staticmethod
    def _format_person(person: RosterEntry) -> str:
        nickname = f" \"{person.nickname}\"" if person.nickname else ""
        return f"- {person.name}{nickname} (ID: {person.id})"


def build_extraction_prompt(context: ExtractionContext, strategy: str = "standard") -> str:
    """
    Build an extraction prompt with the global registry.

    Args:
        context: The extraction context
        strategy: Name of a registered strategy

    Returns:
        The prompt text
    """
    return PromptBuilder().build(context, strategy)
