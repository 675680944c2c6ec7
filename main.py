#!/usr/bin/env python3
"""
Kindred - Relationship Journal Extraction Pipeline

Main entry point for Kindred. Stories are saved to the local database and
sent through the extraction pipeline, which turns them into people and facts,
queues uncertain facts for review, and leaves ambiguous names for the user.
"""

import asyncio
import logging
import os
import sys
import argparse
from typing import List, Optional

from kindred.agents import Credentials, GatewaySettings, ModelBackend, ModelGateway, get_rate_limiter
from kindred.config import config
from kindred.database import DatabaseManager
from kindred.extraction import (
    ExtractionError,
    ExtractionOrchestrator,
    estimate_extraction_cost,
    explain_conflict,
)
from kindred.models import ExtractionSummary, ReviewStatus

API_KEY_VARIABLES = {
    ModelBackend.ANTHROPIC: "ANTHROPIC_API_KEY",
    ModelBackend.GEMINI: "GEMINI_API_KEY",
}


def setup_logging():
    """Configure logging for the application."""
    level = getattr(logging, config.get("logging.level", "INFO").upper())
    format_str = config.get("logging.format", "%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    log_file = config.log_filename

    logging.basicConfig(
        level=level,
        format=format_str,
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(log_file)
        ]
    )


def load_credentials(backend_name: Optional[str] = None) -> Credentials:
    """
    Build credentials for a backend from the environment.

    Args:
        backend_name: Backend to use (defaults to the configured one)

    Returns:
        Credentials; the key is empty if its environment variable is unset
    """
    backend = ModelBackend(backend_name or config.backend)
    variable = API_KEY_VARIABLES.get(backend)
    api_key = os.environ.get(variable, "") if variable else ""
    if variable and not api_key:
        logging.warning(f"{variable} is not set; {backend.value} calls will fail")
    return Credentials(backend=backend, api_key=api_key)


def build_orchestrator(db: DatabaseManager, gateway: ModelGateway) -> ExtractionOrchestrator:
    """Create an orchestrator from configuration."""
    return ExtractionOrchestrator(
        db,
        gateway,
        user_id=config.user_id,
        roster_limit=config.roster_limit,
        strategy=config.prompt_strategy,
        min_story_length=config.min_story_length
    )


def build_gateway(db: DatabaseManager) -> ModelGateway:
    return ModelGateway(
        settings=GatewaySettings.from_config(config),
        rate_limiter=get_rate_limiter(config),
        database_manager=db
    )


def print_summary(summary: ExtractionSummary):
    """Print an extraction summary for the user."""
    print("\n" + "=" * 60)
    print(f"Story {summary.story_id} processed")
    print("=" * 60)
    print(f"- New people:        {summary.new_people_count}")
    print(f"- Facts accepted:    {summary.auto_accepted_count}")
    print(f"- Pending review:    {summary.pending_review_count}")
    print(f"- Already known:     {summary.rejected_count}")
    print(f"- Facts superseded:  {summary.superseded_count}")
    print(f"- Conflicts:         {summary.conflicts_count}")
    if summary.tokens_used is not None:
        print(f"- Tokens used:       {summary.tokens_used}")
    print(f"- Processing time:   {summary.processing_time_ms} ms")

    for conflict in summary.conflicts:
        print("\n" + explain_conflict(conflict))

    for match in summary.ambiguous_matches:
        candidates = ", ".join(f"{c.name} ({c.id})" for c in match.possible_matches)
        print(f"\n? '{match.name_in_story}' could be: {candidates}")
    if summary.held_for_disambiguation_count:
        print(f"\n{summary.held_for_disambiguation_count} fact(s) are waiting for these names to be resolved.")
        print("Use: python main.py resolve STORY_ID NAME [--person-id ID]")

    for warning in summary.warnings:
        print(f"! {warning}")


async def run_add_story(text: str, title: Optional[str], extract: bool, backend: Optional[str]):
    with DatabaseManager(config.database_filename) as db:
        db.initialize_database()
        async with build_gateway(db) as gateway:
            orchestrator = build_orchestrator(db, gateway)

            if not extract:
                story = orchestrator.save_story(text, title)
                print(f"Saved story {story.id}")
                return

            outcome = await orchestrator.save_story_and_extract(text, load_credentials(backend), title=title)
            if not outcome.story_saved:
                print(f"Story not saved: {outcome.user_message}")
                sys.exit(1)
            if outcome.extraction_succeeded:
                print_summary(outcome.summary)
            else:
                print(f"Saved story {outcome.story_id}")
                print(outcome.user_message)
                if outcome.retryable:
                    print(f"Retry with: python main.py extract {outcome.story_id}")
                sys.exit(1)


async def run_extract(story_id: str, backend: Optional[str], strategy: Optional[str],
                      confirm_present: List[str], confirm_new: List[str]):
    with DatabaseManager(config.database_filename) as db:
        db.initialize_database()
        async with build_gateway(db) as gateway:
            orchestrator = build_orchestrator(db, gateway)
            summary = await orchestrator.extract(
                story_id,
                load_credentials(backend),
                confirmed_present=confirm_present,
                confirmed_new=confirm_new,
                strategy=strategy
            )
            print_summary(summary)


def run_review_command(args):
    """Run one of the review subcommands against the database."""
    with DatabaseManager(config.database_filename) as db:
        db.initialize_database()
        orchestrator = ExtractionOrchestrator(db, gateway=None, user_id=config.user_id)

        if args.command == "pending":
            items = db.list_pending_extractions(config.user_id, review_status=ReviewStatus.PENDING)
            if not items:
                print("Nothing to review.")
            for item in items:
                print(f"{item.id}  {item.subject_name or item.subject_id} {item.relation_type.value} "
                      f"{item.object_label!r} (confidence {item.confidence:.2f})")
                print(f"    {item.extraction_reason}")

        elif args.command == "approve":
            fact = orchestrator.approve(args.pending_id)
            print(f"Approved as fact {fact.id}")

        elif args.command == "reject":
            orchestrator.reject(args.pending_id, reason=args.reason)
            print(f"Rejected {args.pending_id}")

        elif args.command == "edit":
            overrides = {
                key: value for key, value in {
                    "relation_type": args.relation_type,
                    "object_label": args.object_label,
                    "intensity": args.intensity,
                    "category": args.category,
                    "status": args.status,
                }.items() if value is not None
            }
            fact = orchestrator.edit_and_approve(args.pending_id, overrides)
            print(f"Edited and approved as fact {fact.id}")

        elif args.command == "resolve":
            summary = orchestrator.resolve_ambiguity(args.story_id, args.name, person_id=args.person_id)
            print_summary(summary)


def parse_arguments(argv: Optional[List[str]] = None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Kindred - Relationship Journal Extraction Pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py init-db
  python main.py add-story "Mike loves carrots but hates broccoli" --extract
  python main.py extract STORY_ID --backend gemini --confirm-new Falko
  python main.py pending
  python main.py approve PENDING_ID
  python main.py resolve STORY_ID David --person-id PERSON_ID
        """
    )

    parser.add_argument(
        "--version",
        action="version",
        version="Kindred 0.1.0"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init-db", help="Create the database tables")

    add_story = subparsers.add_parser("add-story", help="Save a story")
    add_story.add_argument("text", help="Story text")
    add_story.add_argument("--title", help="Story title")
    add_story.add_argument("--extract", action="store_true", help="Extract facts right after saving")
    add_story.add_argument("--backend", choices=[b.value for b in ModelBackend], help="Model backend")

    extract = subparsers.add_parser("extract", help="Extract facts from a saved story")
    extract.add_argument("story_id", help="Story id")
    extract.add_argument("--backend", choices=[b.value for b in ModelBackend], help="Model backend")
    extract.add_argument("--strategy", help="Prompt strategy")
    extract.add_argument("--confirm-present", nargs="*", default=[], metavar="PERSON_ID",
                         help="Ids of people known to be in the story")
    extract.add_argument("--confirm-new", nargs="*", default=[], metavar="NAME",
                         help="Names that are new people")

    subparsers.add_parser("pending", help="List facts waiting for review")

    approve = subparsers.add_parser("approve", help="Approve a pending fact")
    approve.add_argument("pending_id")

    reject = subparsers.add_parser("reject", help="Reject a pending fact")
    reject.add_argument("pending_id")
    reject.add_argument("--reason", help="Why the fact is wrong")

    edit = subparsers.add_parser("edit", help="Correct a pending fact and approve it")
    edit.add_argument("pending_id")
    edit.add_argument("--relation-type")
    edit.add_argument("--object-label")
    edit.add_argument("--intensity")
    edit.add_argument("--category")
    edit.add_argument("--status")

    resolve = subparsers.add_parser("resolve", help="Resolve an ambiguous name from a story")
    resolve.add_argument("story_id")
    resolve.add_argument("name", help="The name as it appeared in the story")
    resolve.add_argument("--person-id", help="Existing person it refers to (omit to create a new person)")

    estimate = subparsers.add_parser("estimate", help="Estimate the cost of extracting a story")
    estimate.add_argument("text", help="Story text")
    estimate.add_argument("--people", type=int, help="Roster size (defaults to the database roster)")

    return parser.parse_args(argv)


def main():
    """Main entry point."""
    args = parse_arguments()
    setup_logging()

    try:
        if args.command == "init-db":
            with DatabaseManager(config.database_filename) as db:
                db.initialize_database()
            print(f"Database ready: {config.database_filename}")

        elif args.command == "add-story":
            asyncio.run(run_add_story(args.text, args.title, args.extract, args.backend))

        elif args.command == "extract":
            asyncio.run(run_extract(args.story_id, args.backend, args.strategy,
                                    args.confirm_present, args.confirm_new))

        elif args.command == "estimate":
            people = args.people
            if people is None:
                with DatabaseManager(config.database_filename) as db:
                    db.initialize_database()
                    people = min(len(db.find_people_by_roster(config.user_id)), config.roster_limit)
            estimate = estimate_extraction_cost(len(args.text), people)
            print(f"Input tokens:  ~{estimate['input_tokens']}")
            print(f"Output tokens: ~{estimate['output_tokens']}")
            print(f"Cost:          ~${estimate['estimated_cost_usd']:.4f}")

        else:
            run_review_command(args)

    except KeyboardInterrupt:
        logging.info("Interrupted by user")
        print("\nInterrupted.")

    except ExtractionError as e:
        logging.error(f"{args.command} failed: {e}")
        print(f"\n{e.message}")
        sys.exit(1)

    except Exception as e:
        logging.error(f"{args.command} failed: {e}")
        print(f"\n{args.command} failed: {getattr(e, 'user_message', e)}")
        sys.exit(1)


if __name__ == "__main__":
    main()
