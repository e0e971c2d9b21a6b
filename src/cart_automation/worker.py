"""Run a processing or checkout pass for one run in the current process.

The HTTP service runs passes as background tasks; this command does the same
work from a shell or a process supervisor, sharing the JSON run store.

    cart-automation-worker create milk bread --process
    cart-automation-worker process run_18f3c2a1b40_4be1c0a9d2f3
    cart-automation-worker checkout run_18f3c2a1b40_4be1c0a9d2f3
"""

from __future__ import annotations

import argparse
import asyncio
from pathlib import Path

import structlog

from common import setup_logging

from cart_automation.agents.simulated import create_automation_factory
from cart_automation.config import Settings, get_settings
from cart_automation.models import RunStatus
from cart_automation.orchestrator.checkout import (
    CheckoutNotReadyError,
    CheckoutProcess,
    ensure_checkout_ready,
)
from cart_automation.orchestrator.processing import ItemProcessor
from cart_automation.protocols.slack_client import SlackNotifier
from cart_automation.runs.lifecycle import RunLifecycle, RunValidationError
from cart_automation.runs.store import JsonFileRunStore

logger = structlog.get_logger(__name__)


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Cart automation worker.")
    parser.add_argument(
        "--state-file",
        type=Path,
        default=None,
        help="Run state document (defaults to the STATE_FILE setting).",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    create = commands.add_parser("create", help="Create a run from item names.")
    create.add_argument("items", nargs="+", help="Search terms, one per item.")
    create.add_argument(
        "--process",
        action="store_true",
        help="Process the new run immediately.",
    )

    process = commands.add_parser("process", help="Fill the cart for a run.")
    process.add_argument("run_id")

    checkout = commands.add_parser("checkout", help="Check out a run whose cart is ready.")
    checkout.add_argument("run_id")

    return parser.parse_args(argv)


async def _process(settings: Settings, lifecycle: RunLifecycle, run_id: str) -> int:
    notifier = SlackNotifier(settings)
    try:
        processor = ItemProcessor(
            lifecycle,
            notifier,
            create_automation_factory(settings),
            credentials=settings.retailer_credentials(),
        )
        report = await processor.run(run_id)
    finally:
        await notifier.close()

    if report is None:
        return 1
    print(f"Run {run_id}: {report.status.value}")
    print(f"Added {report.summary.added}/{report.summary.total} items.")
    return 0 if report.status == RunStatus.CART_READY else 1


async def _checkout(settings: Settings, lifecycle: RunLifecycle, run_id: str) -> int:
    run = lifecycle.get_run(run_id)
    if run is None:
        logger.error("checkout_run_not_found", run_id=run_id)
        return 1
    try:
        ensure_checkout_ready(run)
    except CheckoutNotReadyError as exc:
        logger.error("checkout_rejected", run_id=run_id, reason=str(exc))
        return 1

    notifier = SlackNotifier(settings)
    try:
        process = CheckoutProcess(
            lifecycle,
            notifier,
            create_automation_factory(settings),
            settings,
        )
        status = await process.run(run_id)
    finally:
        await notifier.close()

    print(f"Run {run_id}: {status.value if status else 'not found'}")
    return 0 if status == RunStatus.CHECKOUT_COMPLETE else 1


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    settings = get_settings()
    setup_logging(settings.log_level, settings.json_logs)

    lifecycle = RunLifecycle(JsonFileRunStore(args.state_file or settings.state_file))

    if args.command == "create":
        try:
            run_id = lifecycle.create_run([{"name": name} for name in args.items])
        except RunValidationError as exc:
            logger.error("run_rejected", reason=str(exc))
            return 1
        print(run_id)
        if not args.process:
            return 0
        return asyncio.run(_process(settings, lifecycle, run_id))

    if args.command == "process":
        return asyncio.run(_process(settings, lifecycle, args.run_id))

    return asyncio.run(_checkout(settings, lifecycle, args.run_id))


if __name__ == "__main__":
    raise SystemExit(main())
