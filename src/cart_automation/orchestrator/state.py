"""LangGraph state schema for the checkout workflow.

The ``CheckoutGraphState`` TypedDict describes every piece of data that flows
through the checkout graph.  Nodes read from and write to this shared state.
"""

from __future__ import annotations

from typing import TypedDict

from cart_automation.models import PaymentDetails


class CheckoutGraphState(TypedDict, total=False):
    """Typed dictionary describing the full state flowing through the graph."""

    # --- Input ----------------------------------------------------------------
    run_id: str
    payment: PaymentDetails

    # --- Progress -------------------------------------------------------------
    completed_steps: list[str]
    checkout_strategy: str | None
    order_placed: bool

    # --- Error handling -------------------------------------------------------
    failed_step: str | None
    error: str | None
