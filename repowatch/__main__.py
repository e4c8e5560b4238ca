"""Repowatch process entry-point.

Usage:
    python -m repowatch [--log-level LEVEL] [--log-format FORMAT] [--workers N] [COMMAND]

Commands:
    run                  Start the worker pool and stale sweep (default).
    drain                Process due jobs until none is due, then exit.
    enqueue-bookmark URL Record a bookmark and queue its update job.
    status               Print job counts by state.

The module is deliberately thin: it configures logging first, loads
:class:`~repowatch.core.settings.Settings`, and hands off to the
orchestrator.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from pydantic import ValidationError

from repowatch.core import configure_logging
from repowatch.core.exceptions import ConfigError, RepowatchError
from repowatch.core.settings import Settings

logger = logging.getLogger("repowatch")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="repowatch",
        description="Enrich bookmarks with repository statistics in the background.",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        metavar="LEVEL",
        help="Override LOG_LEVEL env var (DEBUG|INFO|WARNING|ERROR).",
    )
    parser.add_argument(
        "--log-format",
        default=None,
        metavar="FORMAT",
        help="Override LOG_FORMAT env var (text|json).",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=None,
        metavar="N",
        help="Override WORKER_COUNT env var.",
    )

    sub = parser.add_subparsers(dest="command")
    sub.add_parser("run", help="Run workers and the stale sweep until SIGTERM/SIGINT.")
    sub.add_parser("drain", help="Process every due job, then exit.")
    enqueue = sub.add_parser("enqueue-bookmark", help="Record a bookmark and queue its update.")
    enqueue.add_argument("url", help="Bookmark URL, e.g. https://github.com/acme/widget")
    sub.add_parser("status", help="Print job counts by state.")
    return parser


async def _cmd_run(settings: Settings) -> int:
    from repowatch.orchestrator import open_runtime, run_continuous  # noqa: PLC0415

    async with open_runtime(settings) as runtime:
        await run_continuous(runtime)
    return 0


async def _cmd_drain(settings: Settings) -> int:
    from repowatch.orchestrator import open_runtime  # noqa: PLC0415

    async with open_runtime(settings) as runtime:
        await runtime.dispatcher.recover()
        processed = await runtime.dispatcher.drain()
        logger.info("Drained %d job(s).\n%s", processed, runtime.dispatcher.stats.format_summary())
    return 0


async def _cmd_enqueue_bookmark(settings: Settings, url: str) -> int:
    from repowatch.jobs import BookmarkUpdatedJob  # noqa: PLC0415
    from repowatch.orchestrator import open_runtime  # noqa: PLC0415

    async with open_runtime(settings) as runtime:
        bookmark = await runtime.bookmarks.create(url)
        record, _ = await runtime.dispatcher.enqueue(BookmarkUpdatedJob(bookmark.id))
    print(f"bookmark {bookmark.id} queued as job {record.id}")  # noqa: T201
    return 0


async def _cmd_status(settings: Settings) -> int:
    from repowatch.orchestrator import open_runtime  # noqa: PLC0415

    async with open_runtime(settings) as runtime:
        counts = await runtime.jobs.counts()
    for state, count in counts.items():
        print(f"{state:<10} {count}")  # noqa: T201
    return 0


def main(argv: list[str] | None = None) -> None:
    """CLI entry-point registered in ``pyproject.toml``."""
    args = _build_parser().parse_args(argv)

    try:
        configure_logging(level=args.log_level, fmt=args.log_format)
    except ValueError as exc:
        print(f"repowatch: configuration error: {exc}", file=sys.stderr)  # noqa: T201
        sys.exit(1)

    try:
        overrides = {"worker_count": args.workers} if args.workers is not None else {}
        settings = Settings(**overrides)
    except ValidationError as exc:
        logger.critical("Configuration error: %s", exc)
        sys.exit(1)

    command = args.command or "run"
    logger.info("Repowatch starting (%s).", command)

    try:
        if command == "run":
            code = asyncio.run(_cmd_run(settings))
        elif command == "drain":
            code = asyncio.run(_cmd_drain(settings))
        elif command == "enqueue-bookmark":
            code = asyncio.run(_cmd_enqueue_bookmark(settings, args.url))
        else:
            code = asyncio.run(_cmd_status(settings))
    except ConfigError as exc:
        logger.critical("Configuration error: %s", exc)
        sys.exit(1)
    except RepowatchError as exc:
        logger.critical("%s", exc)
        sys.exit(2)
    except KeyboardInterrupt:
        logger.info("Interrupted; exiting.")
        sys.exit(0)
    sys.exit(code)


if __name__ == "__main__":
    main()
