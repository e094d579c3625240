"""
INFERNO command line.

Examples:
  python -m inferno run                  Run both schedules
  python -m inferno run --only buyback   Run the buyback schedule only
  python -m inferno init-db              Create tables and seed milestones
  python -m inferno status               Print burn and milestone status
  python -m inferno pending              Show in-flight operations
  python -m inferno pending verify       Verify in-flight references
  python -m inferno pending clear        Drop in-flight operations
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Optional, Sequence

from inferno.config import Settings, format_market_cap, format_token_amount
from inferno.errors import ConfigurationError
from inferno.ledger.models import OperationClass
from inferno.ledger.store import OperationLedger
from inferno.logging_config import setup_logging
from inferno.operations.milestone import build_threshold_definitions
from inferno.operations.recovery import client_verifier, plan_recovery, references_to_verify

logger = logging.getLogger(__name__)


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def cmd_init_db(settings: Settings) -> int:
    ledger = OperationLedger(settings.database_path)
    definitions = build_threshold_definitions(settings.burn_schedule, settings.token_decimals)
    inserted = ledger.seed_thresholds(definitions)
    print(f"Database ready at {settings.database_path} ({inserted} new milestones)")
    for definition in ledger.list_thresholds():
        mark = "x" if definition.completed else " "
        print(
            f"  [{mark}] {format_market_cap(definition.trigger_value):>8}  "
            f"{format_token_amount(definition.action_quantity, settings.token_decimals):>8} tokens  "
            f"{definition.share_of_total:.2f}%"
        )
    return 0


async def cmd_run(settings: Settings, only: Optional[str]) -> int:
    from inferno.app import InfernoApp

    app = InfernoApp.from_settings(settings)
    await app.run(only=[only] if only else None)
    return 0


async def cmd_status(settings: Settings) -> int:
    from inferno.app import InfernoApp

    app = InfernoApp.from_settings(settings)
    try:
        _print_json({
            "aggregate": app.status.get_aggregate_stats(),
            "thresholds": await app.status.get_threshold_status(),
            "pending": app.status.describe_pending(),
        })
    finally:
        await app.close()
    return 0


async def cmd_pending(settings: Settings, action: Optional[str]) -> int:
    from inferno.app import InfernoApp

    app = InfernoApp.from_settings(settings)
    try:
        pending = app.status.describe_pending()
        _print_json(pending)

        if action == "verify":
            verify = client_verifier(app.client)
            for operation_class in OperationClass:
                slot = app.ledger.read_slot(operation_class)
                if slot is None:
                    continue
                for reference in references_to_verify(slot):
                    outcome = await verify(reference)
                    print(f"{operation_class.value}: {reference} -> {outcome.value}")
                plan = await plan_recovery(slot, verify)
                print(f"{operation_class.value}: recovery plan {plan.kind.value} ({plan.reason})")

        elif action == "clear":
            for operation_class in OperationClass:
                if pending.get(operation_class.value):
                    app.ledger.clear_slot(operation_class)
                    logger.warning(f"Cleared {operation_class.value} slot by operator request")
                    print(f"Cleared {operation_class.value} slot")
    finally:
        await app.close()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="inferno",
        description="INFERNO buyback and milestone burner",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose logging")
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    run_parser = subparsers.add_parser("run", help="Run the schedules (default)")
    run_parser.add_argument(
        "--only",
        choices=[c.value for c in OperationClass],
        help="Run a single operation class",
    )

    subparsers.add_parser("init-db", help="Create tables and seed milestones")
    subparsers.add_parser("status", help="Print burn and milestone status")

    pending_parser = subparsers.add_parser("pending", help="Inspect in-flight operations")
    pending_parser.add_argument("action", nargs="?", choices=["verify", "clear"])
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = Settings.from_env()
    except ConfigurationError as exc:
        print(f"Configuration error: {exc.message}", file=sys.stderr)
        return 2

    setup_logging(
        log_dir=settings.log_dir,
        level="DEBUG" if args.verbose else settings.log_level,
        console_output=args.command in (None, "run"),
    )

    if args.command == "init-db":
        return cmd_init_db(settings)
    if args.command == "status":
        return asyncio.run(cmd_status(settings))
    if args.command == "pending":
        return asyncio.run(cmd_pending(settings, args.action))
    return asyncio.run(cmd_run(settings, getattr(args, "only", None)))


if __name__ == "__main__":
    sys.exit(main())
