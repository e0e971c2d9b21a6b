"""Shared test fixtures for the cart automation service."""

from __future__ import annotations

from typing import Any

import pytest

from cart_automation.agents.base import ProductAutomation
from cart_automation.config import Settings
from cart_automation.models import ItemOutcome, ItemStatus, NotificationKind
from cart_automation.protocols.notifier import Notifier
from cart_automation.runs.lifecycle import RunLifecycle
from cart_automation.runs.store import InMemoryRunStore


class RecordingNotifier(Notifier):
    """Keeps every notification in memory."""

    def __init__(self) -> None:
        self.sent: list[tuple[NotificationKind, str, dict[str, Any]]] = []
        self.closed = False

    async def _deliver(self, kind, run_id, payload) -> None:
        self.sent.append((kind, run_id, payload))

    async def close(self) -> None:
        self.closed = True

    def kinds(self) -> list[NotificationKind]:
        return [kind for kind, _, _ in self.sent]

    def payloads(self, kind: NotificationKind) -> list[dict[str, Any]]:
        return [payload for sent_kind, _, payload in self.sent if sent_kind == kind]


class ScriptedAutomation(ProductAutomation):
    """Automation double whose behaviour is set per test.

    ``outcomes`` maps a search term to the outcome to report, or to an
    exception to raise; unknown terms are added.  Instructions containing any
    of ``fail_actions`` raise, as do navigations to URLs containing any of
    ``fail_gotos``.
    """

    def __init__(self) -> None:
        self.outcomes: dict[str, Any] = {}
        self.fail_actions: set[str] = set()
        self.fail_gotos: set[str] = set()
        self.checkout_clicks_work = True
        self.checkout_url = "https://shop.test/checkout"
        self.fail_close = False

        self.url = "https://shop.test/"
        self.searched: list[str] = []
        self.actions: list[str] = []
        self.visited: list[str] = []
        self.logins: list[tuple[str, str]] = []
        self.close_calls = 0

    @property
    def session_id(self) -> str | None:
        return "session-123"

    async def search_and_add_to_cart(self, term: str) -> Any:
        self.searched.append(term)
        outcome = self.outcomes.get(term, ItemOutcome(status=ItemStatus.ADDED))
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def login(self, username: str, password: str) -> bool:
        self.logins.append((username, password))
        return True

    async def goto(self, url: str) -> None:
        if any(fragment in url for fragment in self.fail_gotos):
            raise RuntimeError(f"Navigation to {url} timed out")
        self.visited.append(url)
        self.url = url

    async def act(self, instruction: str) -> None:
        if any(fragment in instruction for fragment in self.fail_actions):
            raise RuntimeError(f"Could not perform: {instruction}")
        self.actions.append(instruction)
        lowered = instruction.lower()
        if self.checkout_clicks_work and "click" in lowered and "checkout" in lowered:
            self.url = self.checkout_url

    async def current_url(self) -> str:
        return self.url

    async def close(self) -> None:
        self.close_calls += 1
        if self.fail_close:
            raise RuntimeError("browser already gone")


@pytest.fixture
def settings(tmp_path):
    """Create test settings."""
    return Settings(
        _env_file=None,
        environment="testing",
        state_file=tmp_path / "runs.json",
        slack_bot_token="",
        slack_channel_id="",
        retailer_username="",
        retailer_password="",
        cart_url="https://shop.test/cart",
        checkout_url="https://shop.test/checkout",
        card_number="4111111111111111",
        card_expiration="12/30",
        card_cvv="123",
        card_name="Test Shopper",
        complete_order=False,
        simulated_min_delay=0.0,
        simulated_max_delay=0.0,
    )


@pytest.fixture
def store():
    return InMemoryRunStore()


@pytest.fixture
def lifecycle(store):
    return RunLifecycle(store)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def automation():
    return ScriptedAutomation()


@pytest.fixture
def automation_factory(automation):
    """Factory handing out the shared ``automation`` fixture, counting calls."""

    async def factory() -> ProductAutomation:
        factory.calls += 1
        return automation

    factory.calls = 0
    return factory
