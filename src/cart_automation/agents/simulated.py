"""Simulated retailer automation.

Stands in for a real browser backend during development and demos: every
search succeeds with a configurable probability, otherwise it reports one of
the failure outcomes a real storefront produces.  Page navigation is tracked
so the checkout pass can check where it landed.
"""

from __future__ import annotations

import asyncio
import random
import uuid

import structlog

from cart_automation.agents.base import AutomationError, AutomationFactory, ProductAutomation
from cart_automation.config import Settings
from cart_automation.models import ItemOutcome, ItemStatus

logger = structlog.get_logger(__name__)

_FAILURES: list[tuple[ItemStatus, str]] = [
    (ItemStatus.OUT_OF_STOCK, "Item out of stock"),
    (ItemStatus.NOT_FOUND, "Could not find exact product match"),
    (ItemStatus.ERROR, "Price has increased significantly"),
    (ItemStatus.ERROR, "Product page did not load correctly"),
    (ItemStatus.ERROR, "Add to cart button not found"),
]


class SimulatedAutomation(ProductAutomation):
    """In-process fake of the retailer's storefront."""

    def __init__(
        self,
        success_rate: float = 0.8,
        min_delay: float = 0.0,
        max_delay: float = 0.0,
        seed: int | None = None,
        base_url: str = "https://www.target.com/",
        checkout_url: str = "https://www.target.com/checkout",
    ) -> None:
        self._success_rate = success_rate
        self._min_delay = min_delay
        self._max_delay = max(max_delay, min_delay)
        self._rng = random.Random(seed)
        self._checkout_url = checkout_url
        self._url = base_url
        self._session_id = str(uuid.uuid4())
        self._closed = False
        self.cart: list[str] = []

    @property
    def session_id(self) -> str | None:
        return self._session_id

    async def _pause(self) -> None:
        if self._max_delay > 0:
            await asyncio.sleep(self._rng.uniform(self._min_delay, self._max_delay))

    def _ensure_open(self) -> None:
        if self._closed:
            raise AutomationError("Browser session is closed.")

    async def search_and_add_to_cart(self, term: str) -> ItemOutcome:
        self._ensure_open()
        await self._pause()

        if self._rng.random() < self._success_rate:
            self.cart.append(term)
            logger.debug("simulated_item_added", term=term, cart_size=len(self.cart))
            return ItemOutcome(status=ItemStatus.ADDED)

        status, reason = self._rng.choice(_FAILURES)
        logger.debug("simulated_item_failed", term=term, status=status.value, reason=reason)
        return ItemOutcome(status=status, message=reason)

    async def login(self, username: str, password: str) -> bool:
        self._ensure_open()
        await self._pause()
        return bool(username and password)

    async def goto(self, url: str) -> None:
        self._ensure_open()
        self._url = url

    async def act(self, instruction: str) -> None:
        self._ensure_open()
        await self._pause()
        lowered = instruction.lower()
        if "checkout" in lowered and "click" in lowered:
            self._url = self._checkout_url

    async def current_url(self) -> str:
        return self._url

    async def close(self) -> None:
        self._closed = True


def create_automation_factory(settings: Settings) -> AutomationFactory:
    """Return an async factory for the configured automation backend."""
    backend = settings.automation_backend.lower()
    if backend != "simulated":
        raise ValueError(f"Unknown automation backend: {settings.automation_backend!r}")

    async def factory() -> ProductAutomation:
        return SimulatedAutomation(
            success_rate=settings.simulated_success_rate,
            min_delay=settings.simulated_min_delay,
            max_delay=settings.simulated_max_delay,
            seed=settings.simulated_seed,
            base_url=settings.retailer_base_url,
            checkout_url=settings.checkout_url,
        )

    return factory
