"""Tests for the in-memory shopping list."""

from cart_automation.models import ItemStatus, RunItem
from cart_automation.orchestrator.shopping_list import ShoppingList


def _list(*names):
    shopping_list = ShoppingList()
    for name in names:
        shopping_list.add_item(name)
    return shopping_list


class TestShoppingList:
    def test_new_items_are_pending(self):
        shopping_list = _list("milk", "bread")
        assert [item.status for item in shopping_list.all_items()] == [ItemStatus.PENDING] * 2
        assert len(shopping_list) == 2

    def test_from_run_items_keeps_order_and_quantity(self):
        shopping_list = ShoppingList.from_run_items(
            [RunItem(name="milk", quantity=2), RunItem(name="bread")]
        )
        items = shopping_list.all_items()
        assert [(item.name, item.quantity) for item in items] == [("milk", 2), ("bread", 1)]

    def test_update_status_and_notes(self):
        shopping_list = _list("milk", "bread", "eggs")
        shopping_list.update_status(0, ItemStatus.ADDED)
        shopping_list.update_status(2, ItemStatus.OUT_OF_STOCK, "Item out of stock")

        assert [item.name for item in shopping_list.added_items()] == ["milk"]
        assert [item.name for item in shopping_list.pending_items()] == ["bread"]
        problems = shopping_list.problem_items()
        assert [item.name for item in problems] == ["eggs"]
        assert problems[0].notes == "Item out of stock"

    def test_out_of_range_update_is_ignored(self):
        shopping_list = _list("milk")
        shopping_list.update_status(5, ItemStatus.ADDED)
        shopping_list.update_status(-1, ItemStatus.ADDED)
        assert shopping_list.summary().pending == 1

    def test_readers_get_copies(self):
        shopping_list = _list("milk")
        shopping_list.all_items()[0].status = ItemStatus.ADDED
        assert shopping_list.summary().added == 0

    def test_summary_counts(self):
        shopping_list = _list("milk", "bread", "eggs", "butter")
        shopping_list.update_status(0, ItemStatus.ADDED)
        shopping_list.update_status(1, ItemStatus.NOT_FOUND)
        shopping_list.update_status(2, ItemStatus.ERROR)

        summary = shopping_list.summary()
        assert (summary.total, summary.added, summary.failed, summary.pending) == (4, 1, 2, 1)

    def test_render(self):
        shopping_list = _list("milk", "bread")
        shopping_list.update_status(0, ItemStatus.ADDED)
        shopping_list.update_status(1, ItemStatus.NOT_FOUND, "No results")

        text = str(shopping_list)
        assert text.startswith("Shopping List (1/2 added)")
        assert "1. ✅ milk (Qty: 1)" in text
        assert "2. ❓ bread (Qty: 1)" in text
        assert "Note: No results" in text
