"""Browser automation capability consumed by the processing and checkout passes.

A :class:`ProductAutomation` drives a single browser page against the
retailer.  It is not safe to call concurrently; each pass acquires one
instance, uses it sequentially, and closes it exactly once.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

import structlog

from cart_automation.models import ItemOutcome

logger = structlog.get_logger(__name__)


class AutomationError(RuntimeError):
    """Raised when the automation session itself is broken or unusable."""


class ProductAutomation(ABC):
    """Interface for a retailer-facing browser automation session."""

    @property
    def session_id(self) -> str | None:
        """Opaque reference to the underlying browser session, if any."""
        return None

    @abstractmethod
    async def search_and_add_to_cart(self, term: str) -> ItemOutcome:
        """Search for *term*, inspect availability, and add it to the cart.

        "No results" and "out of stock" are ordinary outcomes; so is a failure
        confined to this one item, reported as ``ItemStatus.ERROR``.  Raising
        means the session can no longer be used.
        """

    @abstractmethod
    async def login(self, username: str, password: str) -> bool:
        """Sign in to the retailer account.  Best effort."""

    @abstractmethod
    async def goto(self, url: str) -> None:
        """Navigate the page to *url*."""

    @abstractmethod
    async def act(self, instruction: str) -> None:
        """Perform a natural-language page action, e.g. "click Checkout"."""

    @abstractmethod
    async def current_url(self) -> str:
        """Return the URL the page is currently on."""

    @abstractmethod
    async def close(self) -> None:
        """Release the browser.  Must not raise on a degraded session."""


AutomationFactory = Callable[[], Awaitable[ProductAutomation]]


@asynccontextmanager
async def automation_session(
    factory: AutomationFactory,
    run_id: str = "",
) -> AsyncIterator[ProductAutomation]:
    """Acquire an automation from *factory* and close it on every exit path.

    Acquisition failures surface as :class:`AutomationError`.  A failing
    ``close()`` is logged and never replaces the error that ended the block.
    """
    try:
        automation = await factory()
    except Exception as exc:
        raise AutomationError(f"Failed to initialize browser automation: {exc}") from exc

    logger.info("automation_acquired", run_id=run_id, session_id=automation.session_id)
    try:
        yield automation
    finally:
        try:
            await automation.close()
        except Exception as exc:
            logger.warning("automation_close_failed", run_id=run_id, error=str(exc))
        else:
            logger.info("automation_closed", run_id=run_id)
