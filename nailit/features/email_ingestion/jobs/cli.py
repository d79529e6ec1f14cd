"""
Command-line entrypoint for operators.

    python -m nailit.features.email_ingestion.jobs.cli discover --project P --start 2024-01-01 --end 2024-03-31
    python -m nailit.features.email_ingestion.jobs.cli import --project P --start 2024-01-01 --end 2024-03-31
    python -m nailit.features.email_ingestion.jobs.cli validate-threads --project P
    python -m nailit.features.email_ingestion.jobs.cli renew-watches
    python -m nailit.features.email_ingestion.jobs.cli init-db

Every command prints a JSON summary to stdout. Exit codes: 0 success, 1 a
failed or aborted run, 2 invalid arguments.
"""

import argparse
import asyncio
import json
import sys
from datetime import date

from nailit.config import settings
from nailit.db.helpers import DatabaseError
from nailit.db.pool import db_pool
from nailit.features.email_ingestion.domain.errors import IngestionError
from nailit.features.email_ingestion.domain.models import DiscoveryRequest
from nailit.features.email_ingestion.jobs.runtime import ingestion_runtime
from nailit.features.email_ingestion.jobs.watch_renewal_job import run_watch_renewal
from nailit.features.email_ingestion.repository.message_repository import MessageRepository
from nailit.features.email_ingestion.repository.team_repository import TeamRepository
from nailit.features.email_ingestion.services.batch_import_service import BatchImportService
from nailit.features.email_ingestion.services.discovery_service import DiscoveryService
from nailit.features.email_ingestion.services.thread_reconstruction import (
    ThreadReconstructionEngine,
    build_role_directory,
    summarize,
)
from nailit.infrastructure.observability.logging import get_logger, setup_logging

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="nailit-ingest", description="NailIt mail ingestion")
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_range(sub: argparse.ArgumentParser) -> None:
        sub.add_argument("--project", required=True, help="Project ID")
        sub.add_argument("--start", required=True, type=date.fromisoformat, help="YYYY-MM-DD")
        sub.add_argument("--end", required=True, type=date.fromisoformat, help="YYYY-MM-DD")
        sub.add_argument("--keyword", action="append", default=[], help="Search term (repeatable)")
        sub.add_argument("--max-results", type=int, default=settings.DISCOVERY_MAX_RESULTS)

    add_range(subparsers.add_parser("discover", help="List candidate message IDs"))

    import_parser = subparsers.add_parser("import", help="Discover and import messages")
    add_range(import_parser)
    import_parser.add_argument("--batch-size", type=int, default=None)
    import_parser.add_argument("--delay", type=float, default=None, help="Seconds between batches")
    import_parser.add_argument("--concurrency", type=int, default=None)

    validate_parser = subparsers.add_parser("validate-threads", help="Reconstruct and validate threads")
    validate_parser.add_argument("--project", required=True, help="Project ID")

    subparsers.add_parser("renew-watches", help="Renew Gmail watches for monitored mailboxes")
    subparsers.add_parser("init-db", help="Create ingestion tables and indexes")
    return parser


def _discovery_request(args: argparse.Namespace) -> DiscoveryRequest:
    return DiscoveryRequest(
        start_date=args.start,
        end_date=args.end,
        keywords=args.keyword,
        max_results=args.max_results,
    )


async def run_command(args: argparse.Namespace) -> dict:
    if args.command == "init-db":
        await db_pool.initialize()
        try:
            await db_pool.apply_schema()
        finally:
            await db_pool.close()
        return {"schema": "applied"}

    if args.command == "validate-threads":
        async with ingestion_runtime(with_redis=False):
            messages = await MessageRepository.list_project_messages(args.project)
            team_members = await TeamRepository.get_team_members(args.project)
            mailbox = await TeamRepository.get_mailbox(args.project)
        engine = ThreadReconstructionEngine(
            build_role_directory(team_members, mailbox.owner_email if mailbox else None)
        )
        threads = engine.reconstruct(messages)
        return {
            "project_id": args.project,
            "report": summarize(threads).to_dict(),
            "threads": [
                {
                    "thread_key": t.thread_key,
                    "subject": t.subject,
                    "message_count": t.message_count,
                    "is_valid": t.is_valid,
                    "validation_errors": t.validation_errors,
                    "warnings": [w.code for w in t.warnings],
                }
                for t in threads
            ],
        }

    if args.command == "renew-watches":
        async with ingestion_runtime() as resources:
            return await run_watch_renewal(resources)

    async with ingestion_runtime(with_redis=False) as resources:
        context = await resources.context_for_project(args.project)
        if args.command == "discover":
            result = await DiscoveryService(
                context.provider, page_size=settings.DISCOVERY_PAGE_SIZE
            ).discover(_discovery_request(args))
            return {
                "project_id": args.project,
                "query": result.query,
                "pages": result.pages,
                "total": result.total,
                "message_ids": result.message_ids,
            }

        service = BatchImportService(
            context,
            batch_size=args.batch_size,
            inter_batch_delay=args.delay,
            max_concurrency=args.concurrency,
        )
        summary = await service.import_range(_discovery_request(args))
        return summary.to_dict()


def _print_error(error_type: str, detail: str) -> None:
    print(json.dumps({"error": error_type, "detail": detail}))


def main(argv: list[str] | None = None) -> int:
    setup_logging(log_level=settings.LOG_LEVEL)
    args = build_parser().parse_args(argv)
    if args.command in ("discover", "import"):
        try:
            _discovery_request(args)
        except ValueError as e:
            _print_error("InvalidArguments", str(e))
            return 2

    try:
        output = asyncio.run(run_command(args))
    except (IngestionError, DatabaseError) as e:
        logger.error("Command failed", command=args.command, error_type=type(e).__name__, error=str(e))
        _print_error(type(e).__name__, str(e))
        return 1

    print(json.dumps(output, indent=2, default=str))
    return 1 if output.get("aborted") else 0


if __name__ == "__main__":
    sys.exit(main())
