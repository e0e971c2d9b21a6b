"""Item processing pass: walk a run's shopping list and fill the cart.

Items are handled strictly one at a time because the automation drives a
single browser page.  A single item's failure is recorded and the pass moves
on; only an exception escaping the automation ends the pass early, marking
the run ``processing_failed``.
"""

from __future__ import annotations

import structlog

from cart_automation.agents.base import AutomationFactory, ProductAutomation, automation_session
from cart_automation.models import (
    ItemOutcome,
    ItemStatus,
    NotificationKind,
    ProcessingReport,
    RunStatus,
)
from cart_automation.orchestrator.shopping_list import ShoppingList
from cart_automation.protocols.notifier import Notifier
from cart_automation.runs.lifecycle import RunLifecycle

logger = structlog.get_logger(__name__)

UNKNOWN_ERROR = "Unknown error"

# A pass only starts on a fresh run or resumes one left in `running`
PROCESSABLE_STATUSES = frozenset({RunStatus.PENDING, RunStatus.RUNNING})


class FatalProcessingError(RuntimeError):
    """Raised when the processing machinery itself cannot continue."""


class ItemProcessor:
    """Runs the shopping pass for one run at a time."""

    def __init__(
        self,
        lifecycle: RunLifecycle,
        notifier: Notifier,
        automation_factory: AutomationFactory,
        credentials: tuple[str, str] | None = None,
    ) -> None:
        self._lifecycle = lifecycle
        self._notifier = notifier
        self._automation_factory = automation_factory
        self._credentials = credentials

    async def run(
        self,
        run_id: str,
        shopping_list: ShoppingList | None = None,
    ) -> ProcessingReport | None:
        """Process every pending item of *run_id*.

        Returns ``None`` when the run does not exist or is past processing
        (any status other than ``pending`` or ``running``); such runs are left
        untouched.  Otherwise returns a report for the ``cart_ready`` or
        ``processing_failed`` outcome.
        """
        run = self._lifecycle.get_run(run_id)
        if run is None:
            logger.error("processing_run_not_found", run_id=run_id)
            return None

        if run.status not in PROCESSABLE_STATUSES:
            logger.warning(
                "processing_refused",
                run_id=run_id,
                status=run.status.value,
            )
            return None

        if run.status == RunStatus.PENDING:
            self._lifecycle.update_status(run_id, RunStatus.RUNNING)

        if shopping_list is None:
            shopping_list = ShoppingList.from_run_items(run.items)

        await self._notifier.notify(
            NotificationKind.RUN_STARTED,
            run_id,
            {"item_count": len(shopping_list)},
        )

        try:
            async with automation_session(self._automation_factory, run_id) as automation:
                await self._prepare_session(run_id, automation)
                await self._process_items(run_id, shopping_list, automation)
        except Exception as exc:
            logger.exception("processing_failed", run_id=run_id)
            self._lifecycle.update_status(run_id, RunStatus.PROCESSING_FAILED)
            await self._notifier.notify(
                NotificationKind.ERROR,
                run_id,
                {"message": f"Processing error: {exc}"},
            )
            return ProcessingReport(
                run_id=run_id,
                status=RunStatus.PROCESSING_FAILED,
                summary=shopping_list.summary(),
                items=shopping_list.all_items(),
                error=str(exc),
            )

        summary = shopping_list.summary()
        self._lifecycle.update_status(run_id, RunStatus.CART_READY)
        logger.info(
            "processing_complete",
            run_id=run_id,
            added=summary.added,
            failed=summary.failed,
            total=summary.total,
        )
        logger.debug("shopping_list_final", run_id=run_id, shopping_list=shopping_list.render())
        await self._notifier.notify(
            NotificationKind.CART_READY,
            run_id,
            {"success_count": summary.added, "total_count": summary.total},
        )
        return ProcessingReport(
            run_id=run_id,
            status=RunStatus.CART_READY,
            summary=summary,
            items=shopping_list.all_items(),
        )

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _prepare_session(self, run_id: str, automation: ProductAutomation) -> None:
        if automation.session_id:
            self._lifecycle.update_session_ref(run_id, automation.session_id)

        if self._credentials:
            username, password = self._credentials
            logged_in = await automation.login(username, password)
            logger.info("retailer_login", run_id=run_id, success=logged_in)

    async def _process_items(
        self,
        run_id: str,
        shopping_list: ShoppingList,
        automation: ProductAutomation,
    ) -> None:
        items = shopping_list.all_items()
        total = len(items)

        for index, item in enumerate(items):
            if item.status != ItemStatus.PENDING:
                continue

            logger.info(
                "processing_item",
                run_id=run_id,
                position=index + 1,
                total=total,
                item=item.name,
            )
            outcome = await automation.search_and_add_to_cart(item.name)
            if not isinstance(outcome, ItemOutcome):
                raise FatalProcessingError(
                    f"Automation returned {type(outcome).__name__} for {item.name!r}"
                )

            shopping_list.update_status(index, outcome.status, outcome.message)

            if outcome.status == ItemStatus.ADDED:
                self._lifecycle.record_success(run_id)
                await self._notifier.notify(
                    NotificationKind.ITEM_ADDED,
                    run_id,
                    {"item": item.name, "position": index + 1, "total": total},
                )
            else:
                reason = outcome.message or UNKNOWN_ERROR
                self._lifecycle.record_failure(run_id, reason)
                await self._notifier.notify(
                    NotificationKind.ITEM_FAILED,
                    run_id,
                    {"item": item.name, "reason": reason, "status": outcome.status.value},
                )

            logger.info(
                "item_processed",
                run_id=run_id,
                item=item.name,
                status=outcome.status.value,
            )
