"""In-memory shopping list used by one processing pass."""

from __future__ import annotations

from collections.abc import Iterable

from cart_automation.models import (
    FAILED_ITEM_STATUSES,
    ItemStatus,
    RunItem,
    ShoppingItem,
    ShoppingListSummary,
)

_STATUS_MARKERS = {
    ItemStatus.ADDED: "✅",
    ItemStatus.NOT_FOUND: "❓",
    ItemStatus.ERROR: "❌",
    ItemStatus.OUT_OF_STOCK: "⚠️",
    ItemStatus.PENDING: "⏳",
}


class ShoppingList:
    """Ordered items with a per-item status.

    Readers get copies; the only way to change an item is
    :meth:`update_status`.
    """

    def __init__(self, items: Iterable[ShoppingItem] = ()) -> None:
        self._items: list[ShoppingItem] = [item.model_copy() for item in items]

    @classmethod
    def from_run_items(cls, items: Iterable[RunItem]) -> ShoppingList:
        """Build a fresh all-pending list from a run's item snapshot."""
        shopping_list = cls()
        for item in items:
            shopping_list.add_item(item.name, item.quantity)
        return shopping_list

    def __len__(self) -> int:
        return len(self._items)

    def add_item(self, name: str, quantity: int = 1) -> None:
        self._items.append(ShoppingItem(name=name, quantity=quantity))

    def all_items(self) -> list[ShoppingItem]:
        return [item.model_copy() for item in self._items]

    def update_status(self, index: int, status: ItemStatus, notes: str | None = None) -> None:
        """Set an item's status.  Out-of-range indexes are ignored."""
        if not 0 <= index < len(self._items):
            return
        item = self._items[index]
        item.status = ItemStatus(status)
        if notes:
            item.notes = notes

    def pending_items(self) -> list[ShoppingItem]:
        return [item.model_copy() for item in self._items if item.status == ItemStatus.PENDING]

    def added_items(self) -> list[ShoppingItem]:
        return [item.model_copy() for item in self._items if item.status == ItemStatus.ADDED]

    def problem_items(self) -> list[ShoppingItem]:
        """Items that were not found, out of stock, or errored."""
        return [item.model_copy() for item in self._items if item.status in FAILED_ITEM_STATUSES]

    def summary(self) -> ShoppingListSummary:
        return ShoppingListSummary(
            total=len(self._items),
            added=sum(1 for item in self._items if item.status == ItemStatus.ADDED),
            failed=sum(1 for item in self._items if item.status in FAILED_ITEM_STATUSES),
            pending=sum(1 for item in self._items if item.status == ItemStatus.PENDING),
        )

    def render(self) -> str:
        summary = self.summary()
        lines = [
            f"Shopping List ({summary.added}/{summary.total} added)",
            "-" * 40,
        ]
        for position, item in enumerate(self._items, start=1):
            marker = _STATUS_MARKERS.get(item.status, "")
            lines.append(f"{position}. {marker} {item.name} (Qty: {item.quantity})")
            if item.notes:
                lines.append(f"   Note: {item.notes}")
        return "\n".join(lines)

    __str__ = render
