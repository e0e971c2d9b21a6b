"""Typed run operations layered on a :class:`RunStore`.

Every mutating call is one locked read-modify-write of the store, so each
operation is durable by the time it returns.  Operations against an unknown
run id are a normal condition: they return ``None``/``False`` and never
create a record.
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Iterable, Mapping
from datetime import datetime, timezone
from typing import Any

import structlog
from pydantic import ValidationError

from cart_automation.models import (
    RunItem,
    RunRecord,
    RunStatus,
    is_legal_transition,
)
from cart_automation.runs.store import RunStore

logger = structlog.get_logger(__name__)


class RunValidationError(ValueError):
    """Raised when a run is requested with an unusable item list."""


def parse_items(items: Iterable[RunItem | Mapping[str, Any]] | None) -> list[RunItem]:
    """Validate raw item entries into immutable :class:`RunItem` models.

    Raises
    ------
    RunValidationError
        If the list is empty or any entry is malformed.
    """
    if items is None:
        raise RunValidationError("A run needs at least one item.")

    parsed: list[RunItem] = []
    for index, entry in enumerate(items):
        if isinstance(entry, RunItem):
            parsed.append(entry)
            continue
        if not isinstance(entry, Mapping):
            raise RunValidationError(
                f"Item {index} must be an object with a name, got {type(entry).__name__}."
            )
        try:
            parsed.append(RunItem.model_validate(entry))
        except ValidationError as exc:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'item'}: {err['msg']}"
                for err in exc.errors()
            )
            raise RunValidationError(f"Item {index} is invalid: {problems}") from exc

    if not parsed:
        raise RunValidationError("A run needs at least one item.")
    return parsed


def new_run_id() -> str:
    """Return a fresh run id: creation time in hex plus 48 random bits."""
    return f"run_{int(time.time() * 1000):x}_{uuid.uuid4().hex[:12]}"


class RunLifecycle:
    """Create, inspect, and advance runs."""

    def __init__(self, store: RunStore) -> None:
        self._store = store
        self._store.ensure_initialized()

    # ------------------------------------------------------------------
    # Creation and lookup
    # ------------------------------------------------------------------

    def create_run(self, items: Iterable[RunItem | Mapping[str, Any]]) -> str:
        """Persist a new ``pending`` run and return its id."""
        run_items = parse_items(items)

        with self._store.transaction() as runs:
            run_id = new_run_id()
            while run_id in runs:
                run_id = new_run_id()
            runs[run_id] = RunRecord(
                id=run_id,
                items=run_items,
                status=RunStatus.PENDING,
                created_at=datetime.now(tz=timezone.utc),
            )

        logger.info("run_created", run_id=run_id, items=len(run_items))
        return run_id

    def get_run(self, run_id: str) -> RunRecord | None:
        """Return the run, or ``None`` if it does not exist."""
        return self._store.read_all().get(run_id)

    def list_runs(self) -> list[RunRecord]:
        """Return all runs, newest first."""
        runs = self._store.read_all().values()
        return sorted(runs, key=lambda run: run.created_at, reverse=True)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def update_status(self, run_id: str, status: RunStatus) -> bool:
        """Set the run's status.  Returns ``False`` if the run is unknown.

        The transition is not validated; callers only request edges of the
        status graph.  Anything else is logged and applied anyway.
        """
        status = RunStatus(status)
        with self._store.transaction() as runs:
            run = runs.get(run_id)
            if run is None:
                logger.warning("run_status_update_unknown_run", run_id=run_id, status=status.value)
                return False
            previous = run.status
            if previous != status and not is_legal_transition(previous, status):
                logger.warning(
                    "run_status_unexpected_transition",
                    run_id=run_id,
                    previous=previous.value,
                    status=status.value,
                )
            run.status = status

        logger.info(
            "run_status_changed",
            run_id=run_id,
            previous=previous.value,
            status=status.value,
        )
        return True

    def update_session_ref(self, run_id: str, session_ref: str) -> bool:
        """Attach an automation session reference (last write wins)."""
        with self._store.transaction() as runs:
            run = runs.get(run_id)
            if run is None:
                logger.warning("run_session_update_unknown_run", run_id=run_id)
                return False
            run.session_ref = session_ref
        return True

    def record_success(self, run_id: str) -> None:
        """Count one item as added to the cart."""
        with self._store.transaction() as runs:
            run = runs.get(run_id)
            if run is None or not self._has_room(run):
                return
            run.success_count += 1

    def record_failure(self, run_id: str, reason: str) -> None:
        """Count one item as failed and remember why."""
        with self._store.transaction() as runs:
            run = runs.get(run_id)
            if run is None or not self._has_room(run):
                return
            run.failure_count += 1
            if reason:
                run.failure_reasons.append(reason)

    @staticmethod
    def _has_room(run: RunRecord) -> bool:
        if run.processed_count < len(run.items):
            return True
        logger.warning(
            "run_outcome_over_limit",
            run_id=run.id,
            items=len(run.items),
            success_count=run.success_count,
            failure_count=run.failure_count,
        )
        return False
