"""SSE streaming manager for real-time run updates.

``RunEventStream`` is a notifier: the processing and checkout passes publish
to it like any other channel, and API endpoints consume it via ``async for``.
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict, deque
from collections.abc import AsyncIterator
from datetime import datetime, timezone
from typing import Any

import structlog

from cart_automation.models import NotificationKind, RunEvent
from cart_automation.protocols.notifier import Notifier

logger = structlog.get_logger(__name__)

# A subscriber stops iterating after one of these
TERMINAL_EVENTS = frozenset(
    {
        NotificationKind.CART_READY,
        NotificationKind.CHECKOUT_COMPLETE,
        NotificationKind.ERROR,
    }
)


class RunEventStream(Notifier):
    """In-memory pub/sub for run SSE events.

    Each subscriber gets its own ``asyncio.Queue`` so that multiple SSE
    clients can consume events independently.

    History is kept for at most ``max_runs`` runs (oldest dropped first) and
    ``max_history`` events per run.
    """

    def __init__(
        self,
        max_queue_size: int = 256,
        max_runs: int = 1024,
        max_history: int = 512,
    ) -> None:
        self._queues: dict[str, list[asyncio.Queue[RunEvent | None]]] = {}
        self._max_queue_size = max_queue_size
        self._history: OrderedDict[str, deque[RunEvent]] = OrderedDict()
        self._max_runs = max_runs
        self._max_history = max_history

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    async def _deliver(
        self,
        kind: NotificationKind,
        run_id: str,
        payload: dict[str, Any],
    ) -> None:
        await self.emit(run_id, kind, payload)

    async def emit(
        self,
        run_id: str,
        event_type: NotificationKind,
        data: dict[str, Any] | None = None,
    ) -> RunEvent:
        """Push an event to all subscribers of *run_id*."""
        event = RunEvent(
            event_type=event_type,
            run_id=run_id,
            data=data or {},
            timestamp=datetime.now(tz=timezone.utc),
        )

        self._record(run_id, event)

        queues = self._queues.get(run_id, [])
        for queue in queues:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    "event_queue_full",
                    run_id=run_id,
                    event_type=event_type.value,
                )

        logger.debug(
            "event_emitted",
            run_id=run_id,
            event_type=event_type.value,
            subscribers=len(queues),
        )
        return event

    # ------------------------------------------------------------------
    # Subscribing
    # ------------------------------------------------------------------

    async def subscribe(self, run_id: str) -> AsyncIterator[RunEvent]:
        """Yield events for *run_id* as they arrive.

        Past events are replayed first; if the last of them is terminal the
        iterator stops there.  Otherwise it terminates after a live terminal
        event or when ``close_run(run_id)`` is called.
        """
        history = list(self._history.get(run_id, []))
        queue: asyncio.Queue[RunEvent | None] = asyncio.Queue(maxsize=self._max_queue_size)
        self._queues.setdefault(run_id, []).append(queue)

        try:
            for past_event in history:
                yield past_event
            if history and history[-1].event_type in TERMINAL_EVENTS:
                return

            while True:
                event = await queue.get()
                if event is None:
                    break
                yield event
                if event.event_type in TERMINAL_EVENTS:
                    break
        finally:
            run_queues = self._queues.get(run_id, [])
            if queue in run_queues:
                run_queues.remove(queue)

    # ------------------------------------------------------------------
    # Lifecycle helpers
    # ------------------------------------------------------------------

    def close_run(self, run_id: str) -> None:
        """Signal all subscribers of *run_id* to stop iterating and drop its history."""
        for queue in self._queues.get(run_id, []):
            try:
                queue.put_nowait(None)
            except asyncio.QueueFull:
                logger.warning("event_queue_full_on_close", run_id=run_id)
        self._queues.pop(run_id, None)
        self._history.pop(run_id, None)

    def get_history(self, run_id: str) -> list[RunEvent]:
        """Return the retained events for a given run."""
        return list(self._history.get(run_id, []))

    def _record(self, run_id: str, event: RunEvent) -> None:
        history = self._history.get(run_id)
        if history is None:
            history = self._history[run_id] = deque(maxlen=self._max_history)
            while len(self._history) > self._max_runs:
                evicted, _ = self._history.popitem(last=False)
                logger.debug("event_history_evicted", run_id=evicted)
        else:
            self._history.move_to_end(run_id)
        history.append(event)
