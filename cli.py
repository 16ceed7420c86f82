#!/usr/bin/env python3
"""
Command-line interface for the alert dispatcher.

Usage:
    uv run python cli.py [command] [options]

Commands:
    dispatch      Run one dispatch pass against the configured store
    dead-letters  List unresolved dead letters
    requeue       Requeue a dead letter
    test          Run the test suite
    serve         Start the API server

Examples:
    uv run python cli.py dispatch --limit 20
    uv run python cli.py dispatch --event-id 42
    uv run python cli.py requeue 3
    uv run python cli.py serve
"""

import argparse
import logging
import subprocess
import sys
from typing import Optional


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(name)-24s | %(levelname)-5s | %(message)s",
        datefmt="%H:%M:%S",
    )


def _store(settings):
    from shared.data_store import DataStore
    from shared.sql_store import SqlStore

    if settings.database_url:
        return SqlStore(settings.database_url)
    return DataStore(settings.data_dir)


def run_dispatch(limit: Optional[int], event_id: Optional[int], sweep: bool) -> None:
    """Run one dispatch pass and print the report."""
    from dispatch.dispatcher import Dispatcher
    from shared.channels import NotificationChannels
    from shared.config import get_settings

    settings = get_settings()
    _configure_logging(settings.log_level)
    dispatcher = Dispatcher(_store(settings), NotificationChannels(), settings=settings)
    report = dispatcher.run_dispatch(limit, event_id=event_id, sweep_digests=sweep)
    print(report.model_dump_json(indent=2))


def run_list_dead_letters() -> None:
    from shared.config import get_settings

    settings = get_settings()
    records = _store(settings).list_dead_letters()
    if not records:
        print("No unresolved dead letters")
        return
    for record in records:
        subject = f"anchor {record.anchor_id}" if record.subject_type == "digest" else f"event {record.event_id}"
        print(f"#{record.id} {record.subject_type:<6} {subject:<12} {record.error[:80]}")


def run_requeue(dead_letter_id: int) -> None:
    from dispatch.dead_letters import AlreadyResolvedError, requeue_dead_letter
    from shared.config import get_settings
    from shared.models import utcnow
    from shared.store import NotFoundError

    settings = get_settings()
    _configure_logging(settings.log_level)
    try:
        count = requeue_dead_letter(_store(settings), dead_letter_id, utcnow())
    except (NotFoundError, AlreadyResolvedError) as e:
        print(e)
        sys.exit(1)
    print(f"Requeued {count} row(s) from dead letter {dead_letter_id}")


def run_tests(args: list[str]) -> None:
    """Run the test suite."""
    cmd = ["uv", "run", "pytest"] + args
    subprocess.run(cmd)


def run_server(host: str, port: int, reload: bool) -> None:
    """Start the API server."""
    cmd = ["uv", "run", "uvicorn", "api.main:app", f"--host={host}", f"--port={port}"]
    if reload:
        cmd.append("--reload")

    print(f"Starting server at http://{host}:{port}")
    print(f"API docs available at http://{host}:{port}/docs")
    subprocess.run(cmd)


def main() -> None:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Alert Dispatch CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s dispatch --limit 20
  %(prog)s dispatch --event-id 42
  %(prog)s dispatch --sweep-digests
  %(prog)s dead-letters
  %(prog)s requeue 3
  %(prog)s test -v
  %(prog)s serve --reload
        """,
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # Dispatch command
    dispatch_parser = subparsers.add_parser("dispatch", help="Run one dispatch pass")
    dispatch_parser.add_argument("--limit", type=int, default=None, help="Maximum events to fetch")
    dispatch_parser.add_argument("--event-id", type=int, default=None, help="Reprocess a single event")
    dispatch_parser.add_argument(
        "--sweep-digests",
        action="store_true",
        help="Flush every digest anchor with queued deliveries",
    )

    # Dead letter commands
    subparsers.add_parser("dead-letters", help="List unresolved dead letters")
    requeue_parser = subparsers.add_parser("requeue", help="Requeue a dead letter")
    requeue_parser.add_argument("dead_letter_id", type=int)

    # Test command
    test_parser = subparsers.add_parser("test", help="Run the test suite")
    test_parser.add_argument(
        "pytest_args",
        nargs="*",
        default=[],
        help="Arguments to pass to pytest",
    )

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Start the API server")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind to")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port to bind to")
    serve_parser.add_argument("--reload", action="store_true", help="Enable auto-reload")

    args = parser.parse_args()

    if args.command == "dispatch":
        run_dispatch(args.limit, args.event_id, args.sweep_digests)
    elif args.command == "dead-letters":
        run_list_dead_letters()
    elif args.command == "requeue":
        run_requeue(args.dead_letter_id)
    elif args.command == "test":
        run_tests(args.pytest_args)
    elif args.command == "serve":
        run_server(args.host, args.port, args.reload)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
