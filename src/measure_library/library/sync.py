"""
Pending remote sync bookkeeping.

Local mutations are applied first; the matching remote call runs afterwards
through a ``SyncDispatcher``. Only failures leave a trace here: one
``PendingSyncEntry`` per component, retried on demand with exponential
backoff until it has failed ``max_sync_retries`` times.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from dataclasses import dataclass, field
from typing import Any

from measure_library.api.resilience import compute_backoff_delay
from measure_library.core.config import SyncConfig
from measure_library.core.constants import SYNC_OPERATIONS
from measure_library.core.exceptions import RemoteStoreError
from measure_library.library.models import (
    AtomicComponent,
    CompositeComponent,
    LibraryComponent,
    PendingSyncEntry,
    SyncState,
)
from measure_library.library.transformers import component_to_atomic_dto, component_to_composite_dto

logger = logging.getLogger(__name__)

# (pending operation, new local operation) -> operation to send; None drops the entry
_COALESCE: dict[tuple[str, str], str | None] = {
    ("create", "update"): "create",
    ("create", "delete"): None,
    ("update", "delete"): "delete",
    ("delete", "create"): "update",
    ("delete", "update"): "update",
}


@dataclass
class RetrySummary:
    """Outcome of one ``retry_pending_sync`` pass."""

    synced: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    cleared: list[str] = field(default_factory=list)
    abandoned: list[str] = field(default_factory=list)
    deferred: list[str] = field(default_factory=list)
    already_running: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "synced": list(self.synced),
            "failed": list(self.failed),
            "cleared": list(self.cleared),
            "abandoned": list(self.abandoned),
            "deferred": list(self.deferred),
            "alreadyRunning": self.already_running,
        }


class SyncQueue:
    """Failed remote operations keyed by component id."""

    def __init__(
        self,
        config: SyncConfig | None = None,
        logger: logging.Logger | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or SyncConfig()
        self.logger = logger or logging.getLogger(__name__)
        self.clock = clock
        self._entries: dict[str, PendingSyncEntry] = {}
        self._lock = threading.Lock()
        self._is_syncing = False

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, component_id: object) -> bool:
        return component_id in self._entries

    def get(self, component_id: str) -> PendingSyncEntry | None:
        return self._entries.get(component_id)

    def entries(self) -> list[PendingSyncEntry]:
        with self._lock:
            return list(self._entries.values())

    @property
    def is_syncing(self) -> bool:
        return self._is_syncing

    def state(self, entry: PendingSyncEntry) -> SyncState:
        return entry.state(self.config.max_sync_retries)

    def is_abandoned(self, entry: PendingSyncEntry) -> bool:
        return self.state(entry) == SyncState.ABANDONED

    # ==================== MUTATIONS ====================

    def note_local_mutation(self, component_id: str, operation: str) -> str | None:
        """Fold a new local mutation into any pending entry.

        Returns the operation the remote store now needs, or None when nothing
        has to be sent (a never-synced create followed by a delete). The retry
        counter of an existing entry restarts because the component changed.
        """
        with self._lock:
            entry = self._entries.get(component_id)
            if entry is None:
                return operation
            effective = _COALESCE.get((entry.operation, operation), operation)
            if effective is None:
                del self._entries[component_id]
                self.logger.debug(f"Dropped pending create for {component_id}: deleted before it reached the server")
                return None
            entry.operation = effective
            entry.retry_count = 0
            entry.timestamp = self.clock()
            return effective

    def record_failure(self, component_id: str, operation: str, error: str) -> PendingSyncEntry:
        """Create or bump the entry for a failed remote call."""
        with self._lock:
            entry = self._entries.get(component_id)
            if entry is None:
                entry = PendingSyncEntry(component_id=component_id, operation=operation)
                self._entries[component_id] = entry
            entry.operation = operation
            entry.retry_count += 1
            entry.last_error = error
            entry.timestamp = self.clock()

        if self.is_abandoned(entry):
            self.logger.warning(
                f"Sync of {component_id} ({operation}) failed {entry.retry_count} time(s); "
                f"no further automatic retries until it changes again: {error}"
            )
        else:
            self.logger.warning(
                f"Sync of {component_id} ({operation}) failed "
                f"(attempt {entry.retry_count}/{self.config.max_sync_retries}): {error}"
            )
        return entry

    def clear(self, component_id: str) -> bool:
        with self._lock:
            return self._entries.pop(component_id, None) is not None

    def load(self, entries: list[PendingSyncEntry]) -> None:
        with self._lock:
            self._entries = {e.component_id: e for e in entries}

    # ==================== RETRY SCHEDULING ====================

    def backoff_delay(self, entry: PendingSyncEntry) -> float:
        """Seconds to wait after the entry's last failure before retrying it."""
        if entry.retry_count <= 0:
            return 0.0
        return compute_backoff_delay(
            entry.retry_count - 1, self.config.backoff_base_delay, self.config.backoff_max_delay
        )

    def is_due(self, entry: PendingSyncEntry) -> bool:
        return self.clock() - entry.timestamp >= self.backoff_delay(entry)

    def begin_retry_pass(self) -> bool:
        """Claim the busy flag; False when a pass is already running."""
        with self._lock:
            if self._is_syncing:
                return False
            self._is_syncing = True
            return True

    def end_retry_pass(self) -> None:
        with self._lock:
            self._is_syncing = False

    def status(self) -> dict[str, Any]:
        entries = self.entries()
        abandoned = [e.component_id for e in entries if self.is_abandoned(e)]
        return {
            "is_synced": not entries,
            "pending_count": len(entries),
            "pending_ids": [e.component_id for e in entries],
            "abandoned_ids": abandoned,
            "is_syncing": self._is_syncing,
        }


def push_component(client, operation: str, component_id: str, component: LibraryComponent | None) -> None:
    """Send one queued operation to the remote store.

    Archived components are persisted through ``update`` followed by an
    explicit archive call.
    A delete answered with 404 counts as done: the remote store never had
    the component.
    """
    if operation not in SYNC_OPERATIONS:
        raise ValueError(f"Unknown sync operation '{operation}' for component {component_id}")
    if operation == "delete":
        try:
            client.delete_component(component_id)
        except RemoteStoreError as e:
            if e.status_code != 404:
                raise
            logger.info(f"Component {component_id} was not on the remote store; nothing to delete")
        return
    if component is None:
        raise ValueError(f"Cannot {operation} component {component_id}: not present locally")

    if operation == "create":
        if isinstance(component, CompositeComponent):
            client.create_composite_component(component_to_composite_dto(component))
        else:
            client.create_atomic_component(component_to_atomic_dto(component))
        return

    if isinstance(component, AtomicComponent):
        client.update_component(component_id, component_to_atomic_dto(component))
    else:
        client.update_component(component_id, component_to_composite_dto(component))
    if component.is_archived:
        client.archive_component(component_id)


class SyncDispatcher:
    """Runs remote sync tasks without blocking the caller.

    With ``background=True`` tasks run in submission order on a single worker
    thread; otherwise they run inline, which keeps tests and CLI runs
    deterministic.
    """

    def __init__(self, background: bool = True, logger: logging.Logger | None = None):
        self.background = background
        self.logger = logger or logging.getLogger(__name__)
        self._executor: ThreadPoolExecutor | None = None
        self._futures: list[Future] = []
        self._lock = threading.Lock()

    def submit(self, task: Callable[[], None]) -> None:
        if not self.background:
            task()
            return
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="measure-library-sync")
            self._futures = [f for f in self._futures if not f.done()]
            self._futures.append(self._executor.submit(task))

    def wait(self, timeout: float | None = None) -> bool:
        """Block until submitted tasks finish. Returns False on timeout."""
        with self._lock:
            pending = list(self._futures)
        if not pending:
            return True
        _, not_done = wait_futures(pending, timeout=timeout)
        for future in pending:
            if future.done() and future.exception() is not None:
                self.logger.error(f"Sync task raised unexpectedly: {future.exception()}")
        return not not_done

    def shutdown(self) -> None:
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=True)
