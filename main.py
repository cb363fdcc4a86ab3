"""Command-line entry point for operating the feedback RAG core."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any

from feedback_rag.collaborators import InMemoryFeedbackStore, InMemoryProfileStore
from feedback_rag.config import config
from feedback_rag.errors import FeedbackRAGError
from feedback_rag.service import FeedbackRAGService
from feedback_rag.streaming import TokenReceived

if TYPE_CHECKING:
    from collections.abc import Sequence
    from logging import Logger


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Build the CLI parser and read command-line arguments."""  # noqa: DOC201
    parser = argparse.ArgumentParser(
        description="Index customer feedback and chat with it.",
    )
    parser.add_argument(
        "--org",
        required=True,
        help="Organization id the command operates on.",
    )
    parser.add_argument(
        "--feedback",
        type=Path,
        help="JSON file with the organization's feedback items.",
    )
    parser.add_argument(
        "--profile",
        type=Path,
        help="JSON file with the organization profile.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    ingest = subparsers.add_parser("ingest", help="Embed feedback items.")
    ingest.add_argument(
        "ids",
        nargs="*",
        help="Feedback ids to index (default: every item in --feedback).",
    )
    ingest.add_argument(
        "--refresh",
        action="store_true",
        help="Re-embed records made with a different embedding model.",
    )

    search = subparsers.add_parser("search", help="Search indexed feedback.")
    search.add_argument("query")
    search.add_argument("-k", type=int, default=config.SEARCH_TOP_K)
    search.add_argument("--category", action="append", dest="categories")
    search.add_argument("--sentiment", action="append", dest="sentiments")
    search.add_argument(
        "--mmr",
        type=float,
        metavar="LAMBDA",
        help="Diversify results with MMR using this lambda (0-1).",
    )

    chat = subparsers.add_parser("chat", help="Ask a question about the feedback.")
    chat.add_argument("message")
    chat.add_argument("--user", default="cli")
    chat.add_argument("--session", help="Continue an existing session.")
    chat.add_argument(
        "--stream",
        action="store_true",
        help="Print tokens as they are generated.",
    )

    sessions = subparsers.add_parser("sessions", help="List active chat sessions.")
    sessions.add_argument("--user", default="cli")
    sessions.add_argument("--archive", metavar="SESSION_ID")

    health = subparsers.add_parser("health", help="Check dependency health.")
    health.add_argument("--detailed", action="store_true")

    return parser.parse_args(argv)


def build_service(args: argparse.Namespace) -> FeedbackRAGService:
    """Create the service backed by the JSON collaborator files."""  # noqa: DOC201
    feedback_store = (
        InMemoryFeedbackStore.from_json(args.org, args.feedback)
        if args.feedback
        else InMemoryFeedbackStore()
    )
    profile_store = (
        InMemoryProfileStore.from_json(args.org, args.profile)
        if args.profile
        else InMemoryProfileStore()
    )
    return FeedbackRAGService(feedback_store, profile_store)


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))  # noqa: T201


async def run_command(args: argparse.Namespace, service: FeedbackRAGService) -> int:  # noqa: C901
    """Dispatch one subcommand and print its result as JSON."""  # noqa: DOC201
    if args.command == "ingest":
        if args.refresh:
            _print_json(await service.refresh_embeddings(args.org))
            return 0
        ids = args.ids or service.pipeline.feedback_store.item_ids(args.org)
        result = await service.ingest_embeddings(args.org, ids)
        _print_json(result)
        return 1 if result["failed"] else 0

    if args.command == "search":
        filters = {
            key: value
            for key, value in (
                ("categories", args.categories),
                ("sentiments", args.sentiments),
            )
            if value
        }
        if args.mmr is not None:
            passages = await service.diversified_search(
                args.org, args.query, args.k, lambda_mult=args.mmr, filters=filters
            )
        else:
            passages = await service.search(args.org, args.query, args.k, filters)
        _print_json(
            [
                {
                    "source_item_id": p.source_item_id,
                    "title": p.title,
                    "similarity": round(p.similarity_score, 4),
                    "metadata": p.metadata,
                }
                for p in passages
            ]
        )
        return 0

    if args.command == "chat":
        session_id = args.session
        if args.stream:
            if session_id is None:
                session = await service.create_session(args.org, args.user)
                session_id = session.id
            response = await _stream_chat(service, args, session_id)
        else:
            response = await service.chat(
                args.org, args.user, args.message, session_id
            )
        _print_json(response.to_dict())
        return 0

    if args.command == "sessions":
        if args.archive:
            await service.delete_session(args.archive, args.user)
        sessions = await service.list_sessions(args.org, args.user)
        _print_json(
            [
                {
                    "id": s.id,
                    "title": s.title,
                    "messages": len(s.messages),
                    "last_message_at": s.last_message_at,
                }
                for s in sessions
            ]
        )
        return 0

    report = await service.health(detailed=args.detailed, force_refresh=True)
    _print_json(report)
    healthy = report.get("status") == "healthy" or report.get("available", False)
    return 0 if healthy else 1


async def _stream_chat(
    service: FeedbackRAGService, args: argparse.Namespace, session_id: str
) -> Any:
    subscription = service.subscribe(session_id)

    async def print_tokens() -> None:
        async for event in subscription:
            if isinstance(event, TokenReceived):
                sys.stdout.write(event.token)
                sys.stdout.flush()

    printer = asyncio.create_task(print_tokens())
    try:
        return await service.chat(
            args.org, args.user, args.message, session_id, enable_streaming=True
        )
    finally:
        subscription.close()
        await printer
        sys.stdout.write("\n")


def main(argv: Sequence[str] | None = None) -> int:
    """Validate configuration and run the requested command."""  # noqa: DOC201
    args = parse_args(argv)

    config.setup_logging()
    logger: Logger = config.get_logger(__name__)

    try:
        config.validate()
    except ValueError:
        logger.exception("Configuration invalid")
        return 1

    try:
        service = build_service(args)
        return asyncio.run(run_command(args, service))
    except FeedbackRAGError as exc:
        logger.error("%s failed: %s", args.command, exc)  # noqa: TRY400
        _print_json(exc.to_dict())
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130


if __name__ == "__main__":
    sys.exit(main())
