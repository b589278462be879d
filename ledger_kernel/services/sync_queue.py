"""
SyncQueueService -- durable, ordered log of pending remote mutations.

Responsibility:
    Enqueue mutations produced by local writes, pick the next entry that may
    be replayed, and record the outcome of each replay attempt.  The replay
    itself (remote calls, backoff timing, threading) lives in
    ``ledger_services.sync_worker``.

Architecture position:
    Kernel > Services -- imperative shell.  Called by LocalStore (enqueue),
    the action facade (composite enqueue, cancel) and the replay worker.

Invariants enforced:
    - Strict enqueue order: entries are considered in ``seq`` order, ``seq``
      coming from SequenceService.
    - State machine: Pending -> Sending -> {Applied | Failed}, plus
      Sending -> Pending (transient failure) and Failed -> Pending (user
      retry).  Applied entries are deleted.
    - Transient failure pauses the queue: while the head Pending entry is in
      backoff, nothing behind it is replayed.
    - A Failed entry does not block later entries unless they reference a
      record it writes; such entries stay Pending, and their own writes
      block their dependants in turn.
    - Only Pending (or Failed) entries can be cancelled.

Failure modes:
    - QueueEntryNotFoundError for unknown ids.
    - QueueEntryInFlightError when cancelling a Sending entry.
    - ValueError on an illegal status transition (programming error).

Audit relevance:
    Every enqueue, transition and cancellation is logged with the entry id,
    seq, action and table.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ledger_kernel.domain.clock import Clock
from ledger_kernel.domain.enums import QueueStatus, SyncAction
from ledger_kernel.exceptions import (
    LedgerKernelError,
    QueueEntryInFlightError,
    QueueEntryNotFoundError,
)
from ledger_kernel.logging_config import get_logger
from ledger_kernel.models.sync_queue import SyncQueueEntry
from ledger_kernel.services.base import BaseService
from ledger_kernel.services.sequence_service import SequenceService

logger = get_logger("services.sync_queue")


VALID_TRANSITIONS: dict[QueueStatus, frozenset[QueueStatus]] = {
    QueueStatus.PENDING: frozenset({QueueStatus.SENDING}),
    QueueStatus.SENDING: frozenset({
        QueueStatus.APPLIED, QueueStatus.FAILED, QueueStatus.PENDING,
    }),
    QueueStatus.FAILED: frozenset({QueueStatus.PENDING}),
    QueueStatus.APPLIED: frozenset(),
}


@dataclass(frozen=True)
class QueueSelection:
    """
    Result of looking for the next entry to replay.

    ``entry`` is None when nothing is ready.  ``wait_until`` is set when the
    head of the queue is in backoff; ``blocked`` lists ids of Pending entries
    held behind a Failed dependency.
    """

    entry: SyncQueueEntry | None
    wait_until: datetime | None = None
    blocked: tuple[UUID, ...] = ()


@dataclass(frozen=True)
class QueueStats:
    pending: int
    sending: int
    failed: int

    @property
    def total(self) -> int:
        return self.pending + self.sending + self.failed


class SyncQueueService(BaseService):
    """
    The sync queue.

    Contract:
        Flush-only, like every service; the caller commits.  ``enqueue`` is
        normally called in the same transaction as the local write it
        mirrors, so a record never exists locally without its queue entry.

    Non-goals:
        - Does not talk to the remote store.
        - Does not compute backoff delays (the worker passes the deadline).
    """

    def __init__(self, session: Session, clock: Clock):
        super().__init__(session)
        self._clock = clock
        self._sequences = SequenceService(session)

    # =========================================================================
    # Enqueue
    # =========================================================================

    def enqueue(
        self,
        action: SyncAction,
        table_name: str,
        record_id: UUID | None,
        payload: dict,
        *,
        depends_on: Iterable[str] = (),
        writes: Iterable[str] = (),
        correlation_id: str | None = None,
        entry_id: UUID | None = None,
    ) -> SyncQueueEntry:
        """
        Append an entry at the tail of the queue.

        Args:
            action: Remote operation to replay.
            table_name: Target table.
            record_id: Primary key of the target record (None for composite
                actions that write several records).
            payload: JSON-safe action payload.
            depends_on: Record ids this entry references.
            writes: Record ids this entry writes besides ``record_id``.
            correlation_id: Groups the entries of one user action.
            entry_id: Client-generated entry id (generated when omitted).

        Returns:
            The new Pending entry.
        """
        written = [str(record_id)] if record_id is not None else []
        written.extend(str(w) for w in writes if str(w) not in written)

        entry = SyncQueueEntry(
            id=entry_id or uuid4(),
            seq=self._sequences.next_value(SequenceService.SYNC_QUEUE),
            action=action.value,
            table_name=table_name,
            record_id=record_id,
            payload=payload,
            depends_on=sorted({str(d) for d in depends_on}),
            writes=written,
            correlation_id=correlation_id,
            status=QueueStatus.PENDING.value,
            attempts=0,
            created_at=self._clock.now(),
        )
        self.session.add(entry)
        self.session.flush()

        logger.info(
            "sync_entry_enqueued",
            extra={
                "entry_id": str(entry.id),
                "seq": entry.seq,
                "action": entry.action,
                "table_name": table_name,
                "record_id": str(record_id) if record_id else None,
            },
        )
        return entry

    # =========================================================================
    # Queries
    # =========================================================================

    def get(self, entry_id: UUID) -> SyncQueueEntry:
        entry = self.session.get(SyncQueueEntry, entry_id)
        if entry is None:
            raise QueueEntryNotFoundError(str(entry_id))
        return entry

    def entries(self, status: QueueStatus | None = None) -> list[SyncQueueEntry]:
        """Entries in enqueue order, optionally filtered by status."""
        stmt = select(SyncQueueEntry).order_by(SyncQueueEntry.seq)
        if status is not None:
            stmt = stmt.where(SyncQueueEntry.status == status.value)
        return list(self.session.execute(stmt).scalars())

    def pending_for_record(self, record_id: UUID) -> list[SyncQueueEntry]:
        """Pending entries whose target is ``record_id``, in enqueue order."""
        return list(
            self.session.execute(
                select(SyncQueueEntry)
                .where(
                    SyncQueueEntry.record_id == record_id,
                    SyncQueueEntry.status == QueueStatus.PENDING.value,
                )
                .order_by(SyncQueueEntry.seq)
            ).scalars()
        )

    def stats(self) -> QueueStats:
        rows = self.session.execute(
            select(SyncQueueEntry.status, func.count()).group_by(SyncQueueEntry.status)
        ).all()
        counts = {status: count for status, count in rows}
        return QueueStats(
            pending=counts.get(QueueStatus.PENDING.value, 0),
            sending=counts.get(QueueStatus.SENDING.value, 0),
            failed=counts.get(QueueStatus.FAILED.value, 0),
        )

    def select_next(self, now: datetime | None = None) -> QueueSelection:
        """
        Find the next entry to replay.

        Walks the queue in seq order.  Failed entries, and Pending entries
        that depend on something an unresolved entry writes, add their own
        writes to the unresolved set and are skipped.  The first remaining
        Pending entry is returned unless it is still in backoff, in which
        case the whole queue waits.
        """
        now = now or self._clock.now()
        unresolved: set[str] = set()
        blocked: list[UUID] = []

        for entry in self.entries():
            status = QueueStatus(entry.status)
            if status in (QueueStatus.FAILED, QueueStatus.SENDING):
                unresolved.update(entry.writes)
                continue
            if unresolved.intersection(entry.depends_on):
                unresolved.update(entry.writes)
                blocked.append(entry.id)
                continue
            if entry.next_attempt_at is not None and entry.next_attempt_at > now:
                return QueueSelection(None, entry.next_attempt_at, tuple(blocked))
            return QueueSelection(entry, None, tuple(blocked))

        return QueueSelection(None, None, tuple(blocked))

    # =========================================================================
    # Transitions
    # =========================================================================

    def _transition(self, entry: SyncQueueEntry, target: QueueStatus) -> None:
        current = QueueStatus(entry.status)
        if target not in VALID_TRANSITIONS[current]:
            raise ValueError(
                f"Invalid sync entry transition: {current.value} -> {target.value}"
            )
        entry.status = target.value
        entry.updated_at = self._clock.now()

    def mark_sending(self, entry: SyncQueueEntry) -> None:
        self._transition(entry, QueueStatus.SENDING)
        entry.attempts += 1
        self.session.flush()
        logger.debug(
            "sync_entry_sending",
            extra={"entry_id": str(entry.id), "seq": entry.seq, "attempt": entry.attempts},
        )

    def mark_applied(self, entry: SyncQueueEntry) -> None:
        """Applied entries leave the queue."""
        self._transition(entry, QueueStatus.APPLIED)
        self.session.delete(entry)
        self.session.flush()
        logger.info(
            "sync_entry_applied",
            extra={
                "entry_id": str(entry.id),
                "seq": entry.seq,
                "action": entry.action,
                "attempts": entry.attempts,
            },
        )

    def mark_retry(
        self, entry: SyncQueueEntry, error: LedgerKernelError, next_attempt_at: datetime
    ) -> None:
        """Transient failure: back to Pending with a backoff deadline."""
        self._transition(entry, QueueStatus.PENDING)
        entry.next_attempt_at = next_attempt_at
        entry.last_error_code = error.code
        entry.last_error = str(error)[:1000]
        self.session.flush()
        logger.warning(
            "sync_entry_retry_scheduled",
            extra={
                "entry_id": str(entry.id),
                "seq": entry.seq,
                "attempts": entry.attempts,
                "next_attempt_at": next_attempt_at.isoformat(),
                "error_code": error.code,
            },
        )

    def mark_failed(self, entry: SyncQueueEntry, error: LedgerKernelError) -> None:
        """Non-retryable failure: parked until the user retries or cancels."""
        self._transition(entry, QueueStatus.FAILED)
        entry.last_error_code = error.code
        entry.last_error = str(error)[:1000]
        self.session.flush()
        logger.error(
            "sync_entry_failed",
            extra={
                "entry_id": str(entry.id),
                "seq": entry.seq,
                "action": entry.action,
                "table_name": entry.table_name,
                "error_code": error.code,
            },
        )

    def retry_failed(self, entry_id: UUID) -> SyncQueueEntry:
        """Return a Failed entry to Pending after the user refreshed."""
        entry = self.get(entry_id)
        self._transition(entry, QueueStatus.PENDING)
        entry.attempts = 0
        entry.next_attempt_at = None
        self.session.flush()
        logger.info("sync_entry_requeued", extra={"entry_id": str(entry.id), "seq": entry.seq})
        return entry

    def clear_backoff(self) -> int:
        """Make every Pending entry due now (connectivity came back)."""
        entries = [
            e for e in self.entries(QueueStatus.PENDING) if e.next_attempt_at is not None
        ]
        for entry in entries:
            entry.next_attempt_at = None
        self.session.flush()
        return len(entries)

    def reset_in_flight(self) -> int:
        """
        Startup recovery: an entry left Sending by a crash goes back to
        Pending.  Replay is idempotent, so resending it is safe.
        """
        entries = self.entries(QueueStatus.SENDING)
        for entry in entries:
            self._transition(entry, QueueStatus.PENDING)
        self.session.flush()
        if entries:
            logger.warning("sync_in_flight_reset", extra={"count": len(entries)})
        return len(entries)

    # =========================================================================
    # Cancellation
    # =========================================================================

    def cancel(self, entry_id: UUID) -> SyncQueueEntry:
        """
        Remove a not-yet-sent entry.

        Raises:
            QueueEntryNotFoundError: Unknown id (already applied or cancelled).
            QueueEntryInFlightError: Entry is Sending.
        """
        entry = self.get(entry_id)
        if entry.status == QueueStatus.SENDING.value:
            raise QueueEntryInFlightError(str(entry_id), entry.status)
        self.session.delete(entry)
        self.session.flush()
        logger.info(
            "sync_entry_cancelled",
            extra={"entry_id": str(entry.id), "seq": entry.seq, "status": entry.status},
        )
        return entry

    def drop_pending_for_record(self, record_id: UUID) -> int:
        """Delete every Pending entry targeting ``record_id``."""
        entries = self.pending_for_record(record_id)
        for entry in entries:
            self.session.delete(entry)
        self.session.flush()
        return len(entries)
