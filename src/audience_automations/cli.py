"""Command-line interface for Audience Automations.

This module provides the main entry point for the CLI application.
"""

from __future__ import annotations

import argparse
import logging
import sys

import structlog
from sqlalchemy import create_engine

from audience_automations import __version__
from audience_automations.automations import AutomationEngine, build_engine
from audience_automations.config import Settings, get_settings
from audience_automations.models import StepSubtype
from audience_automations.models.automation import SUBTYPES_BY_TYPE, StepType
from audience_automations.queue import SqlJobQueue
from audience_automations.stores import (
    SqlAutomationStore,
    SqlContactStore,
    SqlLedgerStore,
    ensure_schema,
)

logger = structlog.get_logger()

_EVENTS = sorted(s.value for s in SUBTYPES_BY_TYPE[StepType.TRIGGER])


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="automations", description="Audience Automations")
    parser.add_argument(
        "--database-url",
        default=None,
        help="SQLAlchemy database URL (default: settings database_url)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init-db", help="Create the automation tables")

    trigger_parser = subparsers.add_parser("trigger", help="Publish a contact event")
    trigger_parser.add_argument("contact_id", help="Contact the event happened to")
    trigger_parser.add_argument("event", choices=_EVENTS, help="Trigger subtype of the event")

    start_parser = subparsers.add_parser("start", help="Start an automation for one contact")
    start_parser.add_argument("automation_id")
    start_parser.add_argument("contact_id")

    sweep_parser = subparsers.add_parser("sweep", help="Queue every contact pending at a step")
    sweep_parser.add_argument("step_id")

    work_parser = subparsers.add_parser("work", help="Run queued jobs")
    work_parser.add_argument(
        "--once",
        action="store_true",
        help="Process the jobs that are due now and exit",
    )

    return parser


def _engine_for(settings: Settings, database_url: str | None) -> AutomationEngine:
    db = create_engine(database_url or settings.database_url)
    ensure_schema(db)
    return build_engine(
        contacts=SqlContactStore(db),
        automations=SqlAutomationStore(db),
        ledger=SqlLedgerStore(db),
        queue=SqlJobQueue(db),
        settings=settings,
    )


def _cmd_init_db(args: argparse.Namespace, settings: Settings) -> int:
    url = args.database_url or settings.database_url
    ensure_schema(create_engine(url))
    print(f"Schema ready at {url}")
    return 0


def _cmd_trigger(args: argparse.Namespace, settings: Settings) -> int:
    engine = _engine_for(settings, args.database_url)
    job_id = engine.publish_event(args.contact_id, StepSubtype(args.event))
    print(f"Queued event job {job_id}")
    return 0


def _cmd_start(args: argparse.Namespace, settings: Settings) -> int:
    engine = _engine_for(settings, args.database_url)
    outcome = engine.dispatcher.start(args.automation_id, args.contact_id)
    print(outcome.value)
    return 0


def _cmd_sweep(args: argparse.Namespace, settings: Settings) -> int:
    engine = _engine_for(settings, args.database_url)
    enqueued = engine.scheduler.sweep(args.step_id)
    print(f"Queued {enqueued} contact jobs for step {args.step_id}")
    return 0


def _cmd_work(args: argparse.Namespace, settings: Settings) -> int:
    engine = _engine_for(settings, args.database_url)
    if args.once:
        handled = engine.worker.run_pending()
        print(f"Processed {handled} jobs")
        return 0

    try:
        engine.worker.run_forever()
    except KeyboardInterrupt:
        logger.info("job_worker_interrupted")
    return 0


_COMMANDS = {
    "init-db": _cmd_init_db,
    "trigger": _cmd_trigger,
    "start": _cmd_start,
    "sweep": _cmd_sweep,
    "work": _cmd_work,
}


def main(args: list[str] | None = None) -> int:
    """Main entry point for the Audience Automations CLI.

    Args:
        args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    if args is None:
        args = sys.argv[1:]

    settings = get_settings()

    # Configure logging
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, settings.log_level.upper(), logging.INFO)
        ),
    )

    parser = _build_parser()
    parsed = parser.parse_args(args)

    logger.info("audience_automations_started", version=__version__, debug=settings.debug)

    command = _COMMANDS.get(parsed.command)
    if command is None:
        logger.error("unknown_command", command=parsed.command)
        return 2
    return command(parsed, settings)


if __name__ == "__main__":
    sys.exit(main())
