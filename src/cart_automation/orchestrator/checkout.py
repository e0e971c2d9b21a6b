"""Checkout pass as a LangGraph StateGraph.

Nodes
-----
navigate_to_cart -- open the cart page
select_shipping  -- switch the order from pickup to shipping
open_checkout    -- reach the checkout page via ordered fallback strategies
select_payment   -- choose card payment
fill_payment     -- enter card number, expiration, CVV and name
clear_save_card  -- untick the "save card" checkboxes
confirm          -- save and continue to the order review
place_order      -- place the order (only when ``complete_order`` is set)
complete         -- success terminal
fail             -- failure terminal

Every step routes to ``fail`` as soon as it records an error.  Checkout is
all-or-nothing per attempt: no step is retried.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any

import structlog
from langgraph.graph import END, StateGraph

from cart_automation.agents.base import AutomationFactory, ProductAutomation, automation_session
from cart_automation.config import Settings
from cart_automation.models import (
    CHECKOUT_READY_STATUSES,
    NotificationKind,
    RunRecord,
    RunStatus,
)
from cart_automation.orchestrator.state import CheckoutGraphState
from cart_automation.protocols.notifier import Notifier
from cart_automation.runs.lifecycle import RunLifecycle

logger = structlog.get_logger(__name__)


class CheckoutStepError(RuntimeError):
    """Raised when a checkout step fails; the whole attempt is abandoned."""


class CheckoutNotReadyError(RuntimeError):
    """Raised when checkout is requested for a run that has no ready cart."""


def ensure_checkout_ready(run: RunRecord) -> None:
    """Reject runs whose status does not allow a checkout attempt."""
    if run.status not in CHECKOUT_READY_STATUSES:
        raise CheckoutNotReadyError(
            f"Run {run.id} is not ready for checkout (current state: {run.status.value})."
        )


# ---------------------------------------------------------------------------
# Fallback strategies
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FallbackStrategy:
    """One way of reaching a page state, tried in order with its siblings."""

    name: str
    attempt: Callable[[], Awaitable[None]]


async def run_fallback_strategies(
    strategies: Sequence[FallbackStrategy],
    check: Callable[[], Awaitable[bool]],
    step: str,
) -> str:
    """Try *strategies* in order until *check* holds.

    An attempt that raises counts as not satisfying the check.

    Returns
    -------
    str
        Name of the strategy after which the check held.

    Raises
    ------
    CheckoutStepError
        When every strategy has been tried without success.
    """
    for strategy in strategies:
        try:
            await strategy.attempt()
        except Exception as exc:
            logger.warning("fallback_attempt_failed", step=step, strategy=strategy.name, error=str(exc))
            continue
        if await check():
            logger.info("fallback_attempt_succeeded", step=step, strategy=strategy.name)
            return strategy.name
        logger.info("fallback_attempt_unsatisfied", step=step, strategy=strategy.name)

    tried = ", ".join(s.name for s in strategies)
    raise CheckoutStepError(f"{step} failed after trying: {tried}")


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------

StepAction = Callable[[ProductAutomation, CheckoutGraphState], Awaitable[dict[str, Any] | None]]


def _checkout_steps(
    settings: Settings,
    notifier: Notifier,
) -> dict[str, StepAction]:
    """Return the ordered checkout step actions keyed by node name."""

    async def navigate_to_cart(automation: ProductAutomation, state: CheckoutGraphState) -> None:
        await automation.goto(settings.cart_url)

    async def select_shipping(automation: ProductAutomation, state: CheckoutGraphState) -> None:
        await automation.act(
            "Look for shipping and pickup options. If pickup is selected, "
            "click on shipping to switch to shipping option."
        )

    async def open_checkout(
        automation: ProductAutomation, state: CheckoutGraphState
    ) -> dict[str, Any]:
        async def on_checkout_page() -> bool:
            return "/checkout" in await automation.current_url()

        strategies = [
            FallbackStrategy(
                "checkout_button",
                lambda: automation.act("Find and click the 'Checkout' button"),
            ),
            FallbackStrategy(
                "cart_summary_link",
                lambda: automation.act(
                    "Find and click the 'Proceed to checkout' link in the cart summary"
                ),
            ),
            FallbackStrategy(
                "direct_navigation",
                lambda: automation.goto(settings.checkout_url),
            ),
        ]
        strategy = await run_fallback_strategies(strategies, on_checkout_page, "open_checkout")
        return {"checkout_strategy": strategy}

    async def select_payment(automation: ProductAutomation, state: CheckoutGraphState) -> None:
        await automation.act(
            "Find the 'Pay with Credit Card' option and click on the circle button to select it"
        )

    async def fill_payment(automation: ProductAutomation, state: CheckoutGraphState) -> None:
        payment = state["payment"]
        await automation.act(
            f'Find the credit card number field and enter "{payment.card_number}"'
        )
        await automation.act(
            f'Find the card expiration date field and enter "{payment.card_expiration}"'
        )
        await automation.act(f'Find the CVV/security code field and enter "{payment.card_cvv}"')
        if payment.card_name:
            await automation.act(f"Find the 'Name on card' field and enter \"{payment.card_name}\"")

    async def clear_save_card(automation: ProductAutomation, state: CheckoutGraphState) -> None:
        await automation.act(
            "If 'Save payment card to account' checkbox is checked, click it to uncheck"
        )
        await automation.act(
            "If 'Save as default payment card' checkbox is checked, click it to uncheck"
        )

    async def confirm(automation: ProductAutomation, state: CheckoutGraphState) -> None:
        await automation.act("Find and click the 'Save and continue' button")

    async def place_order(
        automation: ProductAutomation, state: CheckoutGraphState
    ) -> dict[str, Any]:
        await notifier.notify(
            NotificationKind.CHECKOUT_UPDATE,
            state["run_id"],
            {"message": "Order ready for final confirmation. Placing the order..."},
        )
        await automation.act("Find and click the 'Place your order' button")
        return {"order_placed": True}

    return {
        "navigate_to_cart": navigate_to_cart,
        "select_shipping": select_shipping,
        "open_checkout": open_checkout,
        "select_payment": select_payment,
        "fill_payment": fill_payment,
        "clear_save_card": clear_save_card,
        "confirm": confirm,
        "place_order": place_order,
    }


# ---------------------------------------------------------------------------
# Node factories
# ---------------------------------------------------------------------------


def _make_step_node(name: str, action: StepAction, automation: ProductAutomation):
    """Wrap a step action so failures are recorded on the state."""

    async def step_node(state: CheckoutGraphState) -> CheckoutGraphState:
        run_id = state.get("run_id", "")
        logger.info("checkout_step_started", run_id=run_id, step=name)
        try:
            update = await action(automation, state) or {}
        except Exception as exc:
            logger.exception("checkout_step_failed", run_id=run_id, step=name)
            return {**state, "failed_step": name, "error": str(exc) or type(exc).__name__}
        return {
            **state,
            **update,
            "completed_steps": state.get("completed_steps", []) + [name],
        }

    return step_node


async def _complete_node(state: CheckoutGraphState) -> CheckoutGraphState:
    """Terminal success node."""
    return {**state, "error": None}


async def _fail_node(state: CheckoutGraphState) -> CheckoutGraphState:
    """Terminal failure node."""
    return state


# ---------------------------------------------------------------------------
# Conditional routing functions
# ---------------------------------------------------------------------------


def _route_to(next_node: str):
    def route(state: CheckoutGraphState) -> str:
        if state.get("error"):
            return "fail"
        return next_node

    return route


def _after_confirm(state: CheckoutGraphState) -> str:
    """Place the order only when the payment details ask for it."""
    if state.get("error"):
        return "fail"
    if state["payment"].complete_order:
        return "place_order"
    return "complete"


# ---------------------------------------------------------------------------
# Graph builder
# ---------------------------------------------------------------------------

_STEP_ORDER = [
    "navigate_to_cart",
    "select_shipping",
    "open_checkout",
    "select_payment",
    "fill_payment",
    "clear_save_card",
    "confirm",
]


def build_checkout_graph(
    automation: ProductAutomation,
    settings: Settings,
    notifier: Notifier,
) -> StateGraph:
    """Construct the checkout workflow for one automation session.

    Returns
    -------
    StateGraph
        An uncompiled graph.  Call ``.compile()`` before invoking.
    """
    steps = _checkout_steps(settings, notifier)
    graph = StateGraph(CheckoutGraphState)

    for name, action in steps.items():
        graph.add_node(name, _make_step_node(name, action, automation))
    graph.add_node("complete", _complete_node)
    graph.add_node("fail", _fail_node)

    graph.set_entry_point(_STEP_ORDER[0])

    for current, following in zip(_STEP_ORDER, _STEP_ORDER[1:]):
        graph.add_conditional_edges(
            current,
            _route_to(following),
            {following: following, "fail": "fail"},
        )

    graph.add_conditional_edges(
        "confirm",
        _after_confirm,
        {"place_order": "place_order", "complete": "complete", "fail": "fail"},
    )
    graph.add_conditional_edges(
        "place_order",
        _route_to("complete"),
        {"complete": "complete", "fail": "fail"},
    )

    graph.add_edge("complete", END)
    graph.add_edge("fail", END)

    return graph


# ---------------------------------------------------------------------------
# Checkout process
# ---------------------------------------------------------------------------


class CheckoutProcess:
    """Drives one checkout attempt for a run and records its terminal status."""

    def __init__(
        self,
        lifecycle: RunLifecycle,
        notifier: Notifier,
        automation_factory: AutomationFactory,
        settings: Settings,
    ) -> None:
        self._lifecycle = lifecycle
        self._notifier = notifier
        self._automation_factory = automation_factory
        self._settings = settings

    async def run(self, run_id: str) -> RunStatus | None:
        """Attempt checkout for *run_id*.

        The caller is responsible for only invoking this on runs in
        ``cart_ready`` or ``checkout_started`` (see :func:`ensure_checkout_ready`).

        Returns the terminal status, or ``None`` when the run does not exist.
        """
        run = self._lifecycle.get_run(run_id)
        if run is None:
            logger.error("checkout_run_not_found", run_id=run_id)
            return None

        if run.status not in CHECKOUT_READY_STATUSES:
            logger.warning(
                "checkout_precondition_not_met",
                run_id=run_id,
                status=run.status.value,
            )
        if run.status != RunStatus.CHECKOUT_STARTED:
            self._lifecycle.update_status(run_id, RunStatus.CHECKOUT_STARTED)

        await self._notifier.notify(NotificationKind.CHECKOUT_STARTED, run_id)

        payment = self._settings.payment_details()
        if not payment.is_complete:
            return await self._fail(run_id, "Payment details are incomplete.")

        try:
            async with automation_session(self._automation_factory, run_id) as automation:
                credentials = self._settings.retailer_credentials()
                if credentials:
                    logged_in = await automation.login(*credentials)
                    logger.info("retailer_login", run_id=run_id, success=logged_in)

                compiled = build_checkout_graph(automation, self._settings, self._notifier).compile()
                initial: CheckoutGraphState = {
                    "run_id": run_id,
                    "payment": payment,
                    "completed_steps": [],
                    "checkout_strategy": None,
                    "order_placed": False,
                    "failed_step": None,
                    "error": None,
                }
                result = await compiled.ainvoke(initial)

            if result.get("error"):
                raise CheckoutStepError(f"{result.get('failed_step')}: {result['error']}")
        except Exception as exc:
            logger.error("checkout_failed", run_id=run_id, error=str(exc))
            return await self._fail(run_id, str(exc))

        self._lifecycle.update_status(run_id, RunStatus.CHECKOUT_COMPLETE)
        logger.info(
            "checkout_complete",
            run_id=run_id,
            order_placed=result.get("order_placed", False),
            strategy=result.get("checkout_strategy"),
        )
        await self._notifier.notify(
            NotificationKind.CHECKOUT_COMPLETE,
            run_id,
            {
                "order_placed": result.get("order_placed", False),
                "completed_steps": result.get("completed_steps", []),
            },
        )
        return RunStatus.CHECKOUT_COMPLETE

    async def _fail(self, run_id: str, message: str) -> RunStatus:
        self._lifecycle.update_status(run_id, RunStatus.CHECKOUT_FAILED)
        await self._notifier.notify(
            NotificationKind.ERROR,
            run_id,
            {"message": f"Checkout failed: {message}"},
        )
        return RunStatus.CHECKOUT_FAILED
