"""CLI command for re-enqueueing generation tasks that lost their poll job.

Only DATABASE_URL (and optional DB/logging settings) is needed.

A task stays queued/running forever if the process died between handling a
poll job and scheduling its successor. This command finds those tasks and
schedules a fresh poll for each; the poll budget still counts from the task's
creation time, so long-lost tasks time out on their first poll.

Usage:
    python -m forge3d.cli.resume_polls [OPTIONS]

Examples:
    # Re-enqueue every orphaned task
    python -m forge3d.cli.resume_polls

    # Limit to 100 tasks
    python -m forge3d.cli.resume_polls --limit 100

    # Dry run (no database writes)
    python -m forge3d.cli.resume_polls --dry-run

    # Verbose logging
    python -m forge3d.cli.resume_polls -v
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace

import structlog

from forge3d.core import timezone  # noqa: F401
from forge3d.core.config import DatabaseSettings, configure_logging
from forge3d.core.database import setup_db_session
from forge3d.services.model_tasks.service import ModelTaskService
from forge3d.uow import create_uow_factory

logger = structlog.get_logger()


def parse_args(argv: list[str] | None = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(
        description="Re-enqueue active generation tasks that have no scheduled poll",
        epilog="Tasks keep their original poll budget (counted from creation time)",
    )

    parser.add_argument(
        "--limit",
        type=int,
        help="Maximum number of tasks to re-enqueue (default: unlimited)",
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List orphaned tasks without database writes",
    )

    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )

    return parser.parse_args(argv)


async def async_main(argv: list[str] | None = None) -> int:
    """Main CLI entry point (async).

    Returns:
        Exit code: 0 (success), 1 (error)
    """
    args = parse_args(argv)

    settings = DatabaseSettings()  # type: ignore[call-arg]
    if args.verbose:
        settings.log_level = "DEBUG"
    configure_logging(settings)

    logger.info("cli.started", limit=args.limit, dry_run=args.dry_run)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    # Recovery only reads tasks and schedules polls: no provider or storage clients
    service = ModelTaskService(
        create_uow_factory(session_factory),
        provider=None,  # type: ignore[arg-type]
        relocator=None,  # type: ignore[arg-type]
    )

    try:
        tasks = await service.resume_orphaned_polls(limit=args.limit, dry_run=args.dry_run)

        print("\n" + "=" * 60)
        print("Poll Resume Summary")
        print("=" * 60)
        print(f"Orphaned active tasks found: {len(tasks)}")
        for task in tasks[:10]:
            print(f"  - {task.id} ({task.status.value}, provider task {task.provider_task_id})")
        if len(tasks) > 10:
            print(f"  ... and {len(tasks) - 10} more")

        if args.dry_run:
            print("\n[DRY RUN] No poll jobs were scheduled")
        else:
            print(f"Poll jobs scheduled: {len(tasks)}")
        print("=" * 60 + "\n")

        logger.info("cli.success", tasks=len(tasks), dry_run=args.dry_run)
        return 0

    except KeyboardInterrupt:
        logger.info("cli.interrupted")
        print("\nResume interrupted by user", file=sys.stderr)
        return 130

    except Exception as e:
        logger.error(
            "cli.unexpected_error",
            error=str(e),
            error_type=type(e).__name__,
        )
        print(f"\nUnexpected error: {e}", file=sys.stderr)
        return 1

    finally:
        await session_factory.kw["bind"].dispose()


def main() -> None:
    """Synchronous entry point for CLI."""
    sys.exit(asyncio.run(async_main()))


if __name__ == "__main__":
    main()
