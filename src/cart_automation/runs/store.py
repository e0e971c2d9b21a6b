"""Durable storage of run records.

Every backend persists the *whole* collection of runs on each mutation.
``transaction()`` wraps the read-modify-write cycle in an exclusive lock so
that concurrent writers never lose each other's updates.
"""

from __future__ import annotations

import fcntl
import json
import os
import shutil
import tempfile
import threading
from collections.abc import Iterator
from contextlib import AbstractContextManager, contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

import structlog
from pydantic import ValidationError

from cart_automation.models import RunRecord

logger = structlog.get_logger(__name__)


class RunStore(Protocol):
    def ensure_initialized(self) -> None: ...

    def read_all(self) -> dict[str, RunRecord]: ...

    def write(self, records: dict[str, RunRecord]) -> None: ...

    def transaction(self) -> AbstractContextManager[dict[str, RunRecord]]: ...


def _dump(records: dict[str, RunRecord]) -> dict[str, dict[str, Any]]:
    return {run_id: record.model_dump(mode="json") for run_id, record in records.items()}


def _is_document(text: str) -> bool:
    try:
        return isinstance(json.loads(text), dict)
    except json.JSONDecodeError:
        return False


def _load(raw: dict[str, Any], source: str) -> dict[str, RunRecord]:
    records: dict[str, RunRecord] = {}
    for run_id, payload in raw.items():
        try:
            records[run_id] = RunRecord.model_validate(payload)
        except ValidationError as exc:
            logger.warning(
                "run_record_invalid",
                run_id=run_id,
                source=source,
                error=str(exc),
            )
    return records


class InMemoryRunStore:
    """Process-local store for tests and single-process deployments.

    Records are kept in serialized form so callers never share mutable
    objects with the store.
    """

    def __init__(self) -> None:
        self._data: dict[str, dict[str, Any]] = {}
        self._lock = threading.RLock()

    def ensure_initialized(self) -> None:
        return None

    def read_all(self) -> dict[str, RunRecord]:
        with self._lock:
            return _load(self._data, "memory")

    def write(self, records: dict[str, RunRecord]) -> None:
        with self._lock:
            self._data = _dump(records)

    @contextmanager
    def transaction(self) -> Iterator[dict[str, RunRecord]]:
        with self._lock:
            records = self.read_all()
            before = _dump(records)
            yield records
            after = _dump(records)
            if after != before:
                self._data = after


class JsonFileRunStore:
    """Single JSON document on disk, keyed by run id.

    The document is pretty-printed so operators can inspect and repair it by
    hand.  Writes go through a temporary file and an atomic rename; writers in
    this process serialize on an ``RLock`` and writers in other processes on
    an ``flock`` held on a sidecar ``.lock`` file.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock_path = self.path.with_name(self.path.name + ".lock")
        self._thread_lock = threading.RLock()
        self._local = threading.local()
        self._quarantined: set[tuple[int, int]] = set()

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        """Hold the thread lock and the cross-process file lock (re-entrant)."""
        with self._thread_lock:
            depth = getattr(self._local, "depth", 0)
            if depth:
                self._local.depth = depth + 1
                try:
                    yield
                finally:
                    self._local.depth -= 1
                return

            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._lock_path, "a") as lock_file:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
                self._local.depth = 1
                try:
                    yield
                finally:
                    self._local.depth = 0
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    # ------------------------------------------------------------------
    # Store contract
    # ------------------------------------------------------------------

    def ensure_initialized(self) -> None:
        """Leave a valid document on disk, creating an empty one if needed.

        A missing or blank file becomes ``{}``.  An unparseable one is
        quarantined first and then replaced with ``{}``.
        """
        with self._exclusive():
            try:
                text = self.path.read_text(encoding="utf-8")
            except FileNotFoundError:
                text = ""

            if text.strip():
                if _is_document(text):
                    return
                logger.error("run_store_corrupt", path=str(self.path), error="replacing on startup")
                if not self._quarantine():
                    return

            logger.info("run_store_initialized", path=str(self.path))
            self._write_raw({})

    def read_all(self) -> dict[str, RunRecord]:
        """Return every stored run, or ``{}`` when the document is unusable."""
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as exc:
            logger.error("run_store_read_failed", path=str(self.path), error=str(exc))
            return {}

        if not text.strip():
            return {}

        try:
            raw = json.loads(text)
        except json.JSONDecodeError as exc:
            logger.error("run_store_corrupt", path=str(self.path), error=str(exc))
            self._quarantine()
            return {}

        if not isinstance(raw, dict):
            logger.error(
                "run_store_corrupt",
                path=str(self.path),
                error=f"expected an object, got {type(raw).__name__}",
            )
            self._quarantine()
            return {}

        return _load(raw, str(self.path))

    def write(self, records: dict[str, RunRecord]) -> None:
        """Replace the whole document with *records*."""
        with self._exclusive():
            self._write_raw(_dump(records))

    @contextmanager
    def transaction(self) -> Iterator[dict[str, RunRecord]]:
        """Yield all records under the exclusive lock and write them back.

        Nothing is written if the block raises or leaves the records unchanged.
        """
        with self._exclusive():
            records = self.read_all()
            before = _dump(records)
            yield records
            after = _dump(records)
            if after != before:
                self._write_raw(after)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _write_raw(self, payload: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as tmp:
                json.dump(payload, tmp, indent=2)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _quarantine(self) -> bool:
        """Copy an unreadable document aside so it survives the next write.

        Each distinct corrupt version is copied once, however often it is read.
        Returns ``True`` when a copy of the current version exists.
        """
        try:
            stat = self.path.stat()
        except OSError:
            return False
        fingerprint = (stat.st_mtime_ns, stat.st_size)
        if fingerprint in self._quarantined:
            return True

        stamp = datetime.now(tz=timezone.utc).strftime("%Y%m%dT%H%M%S%f")
        target = self.path.with_name(f"{self.path.name}.corrupt-{stamp}")
        try:
            shutil.copy2(self.path, target)
        except OSError as exc:
            logger.error("run_store_quarantine_failed", path=str(self.path), error=str(exc))
            return False
        self._quarantined.add(fingerprint)
        logger.warning("run_store_quarantined", path=str(self.path), copy=str(target))
        return True
