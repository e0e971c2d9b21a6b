"""Best-effort status broadcasting.

``Notifier.notify`` always returns normally: delivery errors are logged and
dropped, never retried, so the processing and checkout passes call it without
guarding against failures.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable
from typing import Any

import structlog

from cart_automation.models import NotificationKind

logger = structlog.get_logger(__name__)


class Notifier(ABC):
    """Fire-and-forget sink for run status broadcasts."""

    async def notify(
        self,
        kind: NotificationKind,
        run_id: str,
        payload: dict[str, Any] | None = None,
    ) -> None:
        """Deliver one notification; failures are logged and swallowed."""
        try:
            await self._deliver(NotificationKind(kind), run_id, payload or {})
        except Exception as exc:
            logger.warning(
                "notification_failed",
                notifier=type(self).__name__,
                kind=str(kind),
                run_id=run_id,
                error=str(exc),
            )

    @abstractmethod
    async def _deliver(
        self,
        kind: NotificationKind,
        run_id: str,
        payload: dict[str, Any],
    ) -> None:
        """Send the notification.  May raise."""

    async def close(self) -> None:
        """Release any held resources."""


class NullNotifier(Notifier):
    """Drops every notification."""

    async def _deliver(
        self,
        kind: NotificationKind,
        run_id: str,
        payload: dict[str, Any],
    ) -> None:
        return None


class FanoutNotifier(Notifier):
    """Forwards each notification to several notifiers independently."""

    def __init__(self, notifiers: Iterable[Notifier]) -> None:
        self._notifiers = list(notifiers)

    async def _deliver(
        self,
        kind: NotificationKind,
        run_id: str,
        payload: dict[str, Any],
    ) -> None:
        for notifier in self._notifiers:
            await notifier.notify(kind, run_id, payload)

    async def close(self) -> None:
        for notifier in self._notifiers:
            try:
                await notifier.close()
            except Exception as exc:
                logger.warning(
                    "notifier_close_failed",
                    notifier=type(notifier).__name__,
                    error=str(exc),
                )
