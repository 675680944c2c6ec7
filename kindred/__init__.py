"""
Kindred: AI extraction and reconciliation for a personal-relationship journal.

Turns free-text stories into people and typed facts, checks them against what
is already known, and routes each fact to acceptance, review or rejection.
"""

__version__ = "0.1.0"
__author__ = "Kindred Project"

# Import main components
from .database import DatabaseManager
from .models import ExtractionResult, ExtractionSummary, Fact, Person, Story
from .agents import Credentials, ModelGateway, PromptBuilder
from .extraction import ExtractionOrchestrator

__all__ = [
    "DatabaseManager",
    "ExtractionResult",
    "ExtractionSummary",
    "Fact",
    "Person",
    "Story",
    "Credentials",
    "ModelGateway",
    "PromptBuilder",
    "ExtractionOrchestrator"
]
