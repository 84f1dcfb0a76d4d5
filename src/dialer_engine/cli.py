#!/usr/bin/env python3
"""Operator CLI for the Dialer Engine.

Usage:
    dialer-engine serve                               # Run the HTTP API
    dialer-engine init-db                             # Create the engine tables
    dialer-engine run-job signature_cleanup --dry-run # Run one job batch
    dialer-engine run-job null_queue_backfill --all   # Follow next_offset to the end
    dialer-engine emergency-transition 42 --from unsigned_users --to none \\
        --reason "Duplicate account merged" --operator ops-1
    dialer-engine leak-scan --recover                 # Recover missed conversions
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from datetime import timedelta
from typing import Any

from dialer_engine.config import get_settings
from dialer_engine.core.exceptions import DialerEngineError
from dialer_engine.core.log import get_logger, setup_logging
from dialer_engine.db import close_db, init_db
from dialer_engine.dependencies import build_container
from dialer_engine.services.jobs import JOBS, JobRequest

log = get_logger(__name__)


def _print(data: dict[str, Any]) -> None:
    print(json.dumps(data, indent=2, default=str))


def serve(args: argparse.Namespace) -> int:
    """Run the API with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "dialer_engine.main:create_app",
        factory=True,
        host=args.host or settings.api_host,
        port=args.port or settings.api_port,
        log_level=settings.log_level.lower(),
    )
    return 0


def init_database(args: argparse.Namespace) -> int:
    """Create the score, conversion and audit tables."""

    async def _run() -> None:
        try:
            await init_db()
        finally:
            await close_db()

    asyncio.run(_run())
    print("[OK] Database initialized")
    return 0


def run_job(args: argparse.Namespace) -> int:
    """Run a discovery / backfill job, optionally following next_offset."""

    async def _run() -> int:
        container = build_container()
        job = container.job(args.name)
        offset = args.offset
        failures = 0
        try:
            while True:
                result = await job.run(
                    JobRequest(offset=offset, batch_size=args.batch_size, dry_run=args.dry_run)
                )
                _print(result.to_dict())
                failures += len(result.errors)
                if not args.all or result.next_offset is None:
                    break
                offset = result.next_offset
        finally:
            await close_db()
        return 1 if failures else 0

    return asyncio.run(_run())


def emergency_transition(args: argparse.Namespace) -> int:
    """Force a queue change without the conversion check."""

    async def _run() -> int:
        container = build_container()
        try:
            result = await container.transitions.emergency_transition(
                args.user_id,
                args.from_category,
                args.to_category,
                args.reason,
                operator_id=args.operator,
            )
        finally:
            await close_db()
        _print(result.to_dict())
        return 0 if result.success else 1

    return asyncio.run(_run())


def leak_scan(args: argparse.Namespace) -> int:
    """Report queue exits with no conversion, and optionally recover them."""

    async def _run() -> int:
        container = build_container()
        lookback = timedelta(minutes=args.lookback_minutes) if args.lookback_minutes else None
        try:
            report = await container.leak_monitor.recover(lookback, dry_run=not args.recover)
            health = await container.leak_monitor.health(args.health_hours)
        finally:
            await close_db()
        _print({"recovery": report.to_dict(), "health": health})
        return 1 if report.failed else 0

    return asyncio.run(_run())


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Dialer Engine CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", type=str, default=None)
    serve_parser.add_argument("--port", type=int, default=None)

    # init-db
    subparsers.add_parser("init-db", help="Create the engine tables")

    # run-job
    job_parser = subparsers.add_parser("run-job", help="Run a discovery / backfill job")
    job_parser.add_argument("name", choices=sorted(JOBS), help="Job name")
    job_parser.add_argument("--offset", type=int, default=None, help="Resume after this user_id")
    job_parser.add_argument("--batch-size", type=int, default=None, help="Rows per batch")
    job_parser.add_argument("--dry-run", action="store_true", help="Analyse without writing")
    job_parser.add_argument("--all", action="store_true", help="Keep going until no next_offset")

    # emergency-transition
    emergency_parser = subparsers.add_parser(
        "emergency-transition", help="Operator queue correction (bypasses conversion check)"
    )
    emergency_parser.add_argument("user_id", type=int)
    emergency_parser.add_argument("--from", dest="from_category", default=None)
    emergency_parser.add_argument("--to", dest="to_category", default=None)
    emergency_parser.add_argument("--reason", required=True)
    emergency_parser.add_argument("--operator", required=True, help="Operator ID")

    # leak-scan
    leak_parser = subparsers.add_parser("leak-scan", help="Find queue exits with no conversion")
    leak_parser.add_argument("--lookback-minutes", type=int, default=None)
    leak_parser.add_argument("--recover", action="store_true", help="Log the missing conversions")
    leak_parser.add_argument("--health-hours", type=int, default=24)

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 1

    settings = get_settings()
    setup_logging(
        level=settings.log_level,
        json_output=settings.log_json,
        service_name=settings.service_name,
    )

    commands = {
        "serve": serve,
        "init-db": init_database,
        "run-job": run_job,
        "emergency-transition": emergency_transition,
        "leak-scan": leak_scan,
    }

    try:
        return commands[args.command](args)
    except DialerEngineError as e:
        log.error("Command failed", command=args.command, error=str(e))
        _print(e.to_dict())
        return 2


if __name__ == "__main__":
    sys.exit(main())
