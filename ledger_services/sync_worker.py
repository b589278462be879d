"""
SyncWorker -- background replay of the sync queue against the remote store.

Contract:
    Picks the next replayable entry (``SyncQueueService.select_next``),
    marks it Sending, calls the remote outside any local transaction, then
    records the outcome: Applied (entry deleted), Pending with a backoff
    deadline (NetworkError) or Failed (every other typed error).

Architecture: ledger_services.  Uses the kernel sync queue for state and a
    RemoteBackend for delivery; publishes outcomes on a SyncEventBus.

Invariants enforced:
    - One entry in flight at a time, in queue order.
    - Backoff delay = min(base * 2 ** (attempts - 1), max); after the
      ceiling the entry keeps retrying at the ceiling delay until it is
      cancelled or connectivity returns.
    - While the head entry waits in backoff nothing behind it is sent; once
      ``RemoteBackend.is_available()`` answers again every deadline is
      cleared and replay resumes.
    - All timestamps come from the injected Clock.
    - The stop signal is honoured between entries; the entry in flight
      completes.
    - On start, entries left Sending by a crash return to Pending (replay is
      idempotent).
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import timedelta
from typing import Any
from uuid import UUID

from ledger_config.schema import SyncPolicy
from ledger_kernel.db.engine import Database
from ledger_kernel.domain.clock import Clock
from ledger_kernel.domain.enums import SyncAction
from ledger_kernel.exceptions import LedgerKernelError, RemoteCallError
from ledger_kernel.logging_config import LogContext, get_logger
from ledger_kernel.models.app_state import APP_STATE_ID, AppState
from ledger_kernel.services.sync_queue import SyncQueueService
from ledger_services.events import SyncEvent, SyncEventBus, SyncEventKind
from ledger_services.remote import RemoteBackend

logger = get_logger("services.sync_worker")


def backoff_delay(attempts: int, base: float, maximum: float) -> float:
    """Seconds to wait before attempt ``attempts + 1``."""
    if attempts < 1:
        return 0.0
    return min(base * 2 ** (attempts - 1), maximum)


@dataclass(frozen=True)
class _Dispatch:
    """Detached copy of an entry, usable after its session closed."""

    entry_id: UUID
    seq: int
    action: SyncAction
    table_name: str
    record_id: UUID | None
    payload: dict
    correlation_id: str | None
    attempts: int


class SyncWorker:
    """Replays the local sync queue.

    Contract:
        - ``tick()`` replays every ready entry and returns how many were
          applied; it is public so tests drive the worker without threads.
        - ``start()`` / ``stop()`` run ``tick()`` on a background thread.
        - ``wake()`` shortens the wait after a new local write.

    Non-goals:
        - No parallel delivery; ordering is the queue's only guarantee.
        - No cancellation of a remote call already in progress.
    """

    def __init__(
        self,
        database: Database,
        remote: RemoteBackend,
        clock: Clock,
        *,
        bus: SyncEventBus | None = None,
        policy: SyncPolicy | None = None,
    ):
        self._database = database
        self._remote = remote
        self._clock = clock
        self._bus = bus or SyncEventBus()
        self._policy = policy or SyncPolicy()
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()
        self._thread: threading.Thread | None = None
        self.device_id: str | None = None

    @property
    def bus(self) -> SyncEventBus:
        return self._bus

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def recover(self) -> int:
        """Return entries left Sending by a previous run to Pending."""
        with self._database.session_scope() as session:
            return SyncQueueService(session, self._clock).reset_in_flight()

    def tick(self) -> int:
        """Replay ready entries until the queue is empty, paused or stopped."""
        applied = 0
        probed = False
        with LogContext.bind(device_id=self.device_id):
            while not self._stop_event.is_set():
                dispatch, wait_until = self._claim_next()
                if dispatch is None:
                    if wait_until is None or probed:
                        break
                    # Head is in backoff: resume early if the remote answers.
                    probed = True
                    if not self._remote.is_available():
                        break
                    with self._database.session_scope() as session:
                        cleared = SyncQueueService(session, self._clock).clear_backoff()
                    logger.info("sync_connectivity_restored", extra={"cleared": cleared})
                    continue
                if self._deliver(dispatch):
                    applied += 1
        return applied

    def start(self) -> None:
        """Start replaying on a background thread."""
        if self._thread is not None and self._thread.is_alive():
            return

        self.recover()
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="ledger-sync-worker",
            daemon=True,
        )
        self._thread.start()
        logger.info(
            "sync_worker_started",
            extra={"poll_interval": self._policy.poll_interval_seconds},
        )

    def stop(self, timeout: float = 30.0) -> None:
        """Signal stop and wait for the entry in flight to finish.

        Args:
            timeout: Max seconds to wait for the thread to finish.
        """
        self._stop_event.set()
        self._wake_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info("sync_worker_stopped")

    def wake(self) -> None:
        self._wake_event.set()

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _run_loop(self) -> None:
        # Context variables do not cross into a new thread.
        LogContext.set(device_id=self.device_id)
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("sync_tick_exception")
            self._wake_event.wait(timeout=self._policy.poll_interval_seconds)
            self._wake_event.clear()

    def _claim_next(self) -> tuple[_Dispatch | None, Any]:
        with self._database.session_scope() as session:
            queue = SyncQueueService(session, self._clock)
            selection = queue.select_next()
            entry = selection.entry
            if entry is None:
                return None, selection.wait_until
            queue.mark_sending(entry)
            return (
                _Dispatch(
                    entry_id=entry.id,
                    seq=entry.seq,
                    action=SyncAction(entry.action),
                    table_name=entry.table_name,
                    record_id=entry.record_id,
                    payload=dict(entry.payload),
                    correlation_id=entry.correlation_id,
                    attempts=entry.attempts,
                ),
                None,
            )

    def _call_remote(self, dispatch: _Dispatch) -> Any:
        payload = dispatch.payload
        table = dispatch.table_name
        if dispatch.action is SyncAction.CREATE:
            return self._remote.create(table, payload["record"])
        if dispatch.action is SyncAction.UPDATE:
            return self._remote.update(table, dispatch.record_id, payload["patch"])
        if dispatch.action is SyncAction.SOFT_DELETE:
            return self._remote.soft_delete(table, dispatch.record_id, payload.get("deleted_at"))
        if dispatch.action is SyncAction.RESTORE:
            return self._remote.restore(table, dispatch.record_id, payload.get("record"))
        if dispatch.action is SyncAction.PURGE:
            return self._remote.purge(table, dispatch.record_id)
        if dispatch.action is SyncAction.ALLOCATE_PAYMENT:
            return self._remote.allocate_payment(dispatch.entry_id, payload)
        if dispatch.action is SyncAction.APPLY_CREDIT:
            return self._remote.apply_credit(dispatch.entry_id, payload)
        raise ValueError(f"Unknown sync action: {dispatch.action}")

    def _deliver(self, dispatch: _Dispatch) -> bool:
        """Send one entry and record the outcome. True when applied."""
        with LogContext.bind(
            queue_entry_id=str(dispatch.entry_id),
            correlation_id=dispatch.correlation_id,
            record_id=str(dispatch.record_id) if dispatch.record_id else None,
        ):
            error: LedgerKernelError | None = None
            result: Any = None
            try:
                result = self._call_remote(dispatch)
            except LedgerKernelError as exc:
                error = exc
            except Exception as exc:
                logger.exception(
                    "sync_remote_call_crashed",
                    extra={"action": dispatch.action.value, "table_name": dispatch.table_name},
                )
                error = RemoteCallError(str(dispatch.entry_id), str(exc)[:500])

            with self._database.session_scope() as session:
                queue = SyncQueueService(session, self._clock)
                entry = queue.get(dispatch.entry_id)
                if error is None:
                    queue.mark_applied(entry)
                    state = session.get(AppState, APP_STATE_ID)
                    if state is not None:
                        state.last_sync_at = self._clock.now()
                elif error.retryable:
                    delay = backoff_delay(
                        entry.attempts,
                        self._policy.backoff_base_seconds,
                        self._policy.backoff_max_seconds,
                    )
                    queue.mark_retry(entry, error, self._clock.now() + timedelta(seconds=delay))
                else:
                    queue.mark_failed(entry, error)
                remaining = queue.stats().total

        if error is None:
            self._bus.publish(SyncEvent(
                kind=SyncEventKind.ENTRY_APPLIED,
                entry_id=dispatch.entry_id,
                correlation_id=dispatch.correlation_id,
                action=dispatch.action.value,
                table_name=dispatch.table_name,
                result=result,
            ))
        elif not error.retryable:
            self._bus.publish(SyncEvent(
                kind=SyncEventKind.ENTRY_FAILED,
                entry_id=dispatch.entry_id,
                correlation_id=dispatch.correlation_id,
                action=dispatch.action.value,
                table_name=dispatch.table_name,
                error=error,
            ))
        self._bus.publish(SyncEvent(kind=SyncEventKind.QUEUE_CHANGED, queue_size=remaining))
        return error is None
