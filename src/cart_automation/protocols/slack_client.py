"""Slack notifier posting run progress to a channel via ``chat.postMessage``."""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from cart_automation.config import Settings
from cart_automation.models import NotificationKind
from cart_automation.protocols.notifier import Notifier

logger = structlog.get_logger(__name__)


def format_message(kind: NotificationKind, run_id: str, payload: dict[str, Any]) -> str:
    """Render the channel text for one notification."""
    if kind == NotificationKind.RUN_STARTED:
        return f"🛒 Started shopping run *{run_id}* with {payload.get('item_count', 0)} items"
    if kind == NotificationKind.ITEM_ADDED:
        return (
            f"✅ Added *{payload.get('item', '?')}* to cart "
            f"({payload.get('position', '?')}/{payload.get('total', '?')}) for run *{run_id}*"
        )
    if kind == NotificationKind.ITEM_FAILED:
        return (
            f"❌ Failed to add *{payload.get('item', '?')}* to cart for run *{run_id}*: "
            f"{payload.get('reason', 'Unknown error')}"
        )
    if kind == NotificationKind.CART_READY:
        return (
            f"🛍️ Shopping complete for run *{run_id}*! Added {payload.get('success_count', 0)} "
            f"out of {payload.get('total_count', 0)} items. Ready for checkout."
        )
    if kind == NotificationKind.CHECKOUT_STARTED:
        return f"[Run *{run_id}*] Checkout started."
    if kind == NotificationKind.CHECKOUT_COMPLETE:
        if payload.get("order_placed"):
            return f"[Run *{run_id}*] ✅ Checkout completed successfully! Order placed."
        return f"[Run *{run_id}*] ✅ Checkout completed. Order was not placed (complete_order is off)."
    if kind == NotificationKind.ERROR:
        return f"⚠️ Error in run *{run_id}*: {payload.get('message', 'Unknown error')}"
    return f"[Run *{run_id}*] {payload.get('message', kind.value)}"


class SlackNotifier(Notifier):
    """Posts notifications to a Slack channel with a bot token."""

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._token = settings.slack_bot_token
        self._channel = settings.slack_channel_id
        self._url = settings.slack_api_url
        self._timeout = settings.notification_timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def configured(self) -> bool:
        return bool(self._token and self._channel)

    async def _get_client(self) -> httpx.AsyncClient:
        """Lazy-initialise the shared ``httpx.AsyncClient``."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Shut down the underlying HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def _deliver(
        self,
        kind: NotificationKind,
        run_id: str,
        payload: dict[str, Any],
    ) -> None:
        text = format_message(kind, run_id, payload)
        if not self.configured:
            logger.info("slack_message_not_sent", run_id=run_id, kind=kind.value, text=text)
            return

        client = await self._get_client()
        response = await client.post(
            self._url,
            headers={"Authorization": f"Bearer {self._token}"},
            json={"channel": self._channel, "text": text},
        )
        response.raise_for_status()
        data = response.json()
        if not data.get("ok"):
            logger.error(
                "slack_message_rejected",
                run_id=run_id,
                kind=kind.value,
                error=data.get("error", "unknown"),
            )
            return
        logger.debug("slack_message_sent", run_id=run_id, kind=kind.value)
