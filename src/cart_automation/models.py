"""Pydantic models for the cart automation service.

Covers the durable run record and its status graph, the per-item shopping
list projection, automation outcomes, payment details, and run events.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


# ---------------------------------------------------------------------------
# Run status graph
# ---------------------------------------------------------------------------


class RunStatus(str, enum.Enum):
    """Lifecycle states of a run."""

    PENDING = "pending"
    RUNNING = "running"
    CART_READY = "cart_ready"
    PROCESSING_FAILED = "processing_failed"
    CHECKOUT_STARTED = "checkout_started"
    CHECKOUT_COMPLETE = "checkout_complete"
    CHECKOUT_FAILED = "checkout_failed"


ALLOWED_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.PENDING: frozenset({RunStatus.RUNNING}),
    RunStatus.RUNNING: frozenset({RunStatus.CART_READY, RunStatus.PROCESSING_FAILED}),
    RunStatus.CART_READY: frozenset({RunStatus.CHECKOUT_STARTED}),
    # Rollback to cart_ready when the checkout executor could not be launched
    RunStatus.CHECKOUT_STARTED: frozenset(
        {
            RunStatus.CHECKOUT_COMPLETE,
            RunStatus.CHECKOUT_FAILED,
            RunStatus.CART_READY,
        }
    ),
    RunStatus.PROCESSING_FAILED: frozenset(),
    RunStatus.CHECKOUT_COMPLETE: frozenset(),
    RunStatus.CHECKOUT_FAILED: frozenset(),
}

TERMINAL_STATUSES = frozenset(
    {
        RunStatus.PROCESSING_FAILED,
        RunStatus.CHECKOUT_COMPLETE,
        RunStatus.CHECKOUT_FAILED,
    }
)

CHECKOUT_READY_STATUSES = frozenset({RunStatus.CART_READY, RunStatus.CHECKOUT_STARTED})


def is_legal_transition(current: RunStatus, new: RunStatus) -> bool:
    """Return ``True`` if *new* is a successor of *current* in the status graph."""
    return new in ALLOWED_TRANSITIONS.get(current, frozenset())


# ---------------------------------------------------------------------------
# Run records
# ---------------------------------------------------------------------------


class RunItem(BaseModel):
    """One line of the shopping list as snapshotted at run creation."""

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    name: str = Field(min_length=1)
    quantity: int = Field(default=1, ge=1)
    source_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices("source_url", "sourceUrl", "url"),
    )

    @field_validator("name", mode="before")
    @classmethod
    def _strip_name(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip()
        return value


class RunRecord(BaseModel):
    """Durable state of a single run."""

    id: str
    items: list[RunItem]
    status: RunStatus = RunStatus.PENDING
    created_at: datetime = Field(default_factory=lambda: datetime.now(tz=timezone.utc))
    session_ref: str | None = None
    success_count: int = Field(default=0, ge=0)
    failure_count: int = Field(default=0, ge=0)
    failure_reasons: list[str] = Field(default_factory=list)

    @property
    def processed_count(self) -> int:
        """Number of items with a recorded outcome."""
        return self.success_count + self.failure_count


# ---------------------------------------------------------------------------
# Shopping list projection
# ---------------------------------------------------------------------------


class ItemStatus(str, enum.Enum):
    """Per-item outcome while walking a shopping list."""

    PENDING = "pending"
    ADDED = "added"
    NOT_FOUND = "not_found"
    OUT_OF_STOCK = "out_of_stock"
    ERROR = "error"


FAILED_ITEM_STATUSES = frozenset(
    {ItemStatus.NOT_FOUND, ItemStatus.OUT_OF_STOCK, ItemStatus.ERROR}
)


class ShoppingItem(BaseModel):
    """Mutable working copy of a run item inside one processing pass."""

    name: str
    quantity: int = 1
    status: ItemStatus = ItemStatus.PENDING
    notes: str | None = None


class ShoppingListSummary(BaseModel):
    """Counts over a shopping list."""

    total: int = 0
    added: int = 0
    failed: int = 0
    pending: int = 0


class ItemOutcome(BaseModel):
    """Result of one search-and-add attempt reported by the automation."""

    status: ItemStatus
    message: str | None = None

    @property
    def added(self) -> bool:
        return self.status == ItemStatus.ADDED


class ProcessingReport(BaseModel):
    """What a processing pass did to a run."""

    run_id: str
    status: RunStatus
    summary: ShoppingListSummary
    items: list[ShoppingItem] = Field(default_factory=list)
    error: str | None = None


# ---------------------------------------------------------------------------
# Checkout
# ---------------------------------------------------------------------------


class PaymentDetails(BaseModel):
    """Card details entered during checkout."""

    card_number: str = Field(default="", repr=False)
    card_expiration: str = ""
    card_cvv: str = Field(default="", repr=False)
    card_name: str = ""
    complete_order: bool = False

    @property
    def is_complete(self) -> bool:
        return bool(self.card_number and self.card_expiration and self.card_cvv)


# ---------------------------------------------------------------------------
# Notifications and SSE events
# ---------------------------------------------------------------------------


class NotificationKind(str, enum.Enum):
    """Kinds of status broadcast emitted during a run."""

    RUN_STARTED = "run_started"
    ITEM_ADDED = "item_added"
    ITEM_FAILED = "item_failed"
    CART_READY = "cart_ready"
    CHECKOUT_STARTED = "checkout_started"
    CHECKOUT_UPDATE = "checkout_update"
    CHECKOUT_COMPLETE = "checkout_complete"
    ERROR = "error"


class RunEvent(BaseModel):
    """Server-Sent Event pushed while a run is processed or checked out."""

    event_type: NotificationKind
    run_id: str
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(tz=timezone.utc))
