"""
Module: ledger_kernel.models.sync_queue
Responsibility: The durable sync queue and the sequence counter that orders it.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - seq is allocated from the locked ``sequence_counters`` row, never as
      max(seq) + 1, and is UNIQUE: it is the enqueue order replay follows.
    - id is client-generated and travels to the remote as the idempotency
      key for composite actions; record_id is reused as the remote primary key.
    - Applied entries are deleted; only pending, sending and failed rows exist.
    - depends_on lists the record ids this entry references and writes lists
      the ids it creates or changes; an entry is blocked while an earlier
      Failed (or itself blocked) entry writes one of its dependencies.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import JSON, BigInteger, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from ledger_kernel.db.base import Base, TrackedBase, UTCDateTime, UUIDString


class SequenceCounter(Base):
    """
    Sequence counter table.

    Each row represents a named sequence with its current value.
    """

    __tablename__ = "sequence_counters"

    name: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    current_value: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)


class SyncQueueEntry(TrackedBase):
    """
    One pending mutation awaiting confirmed remote application.

    Contract:
        Status moves Pending -> Sending -> (deleted on Applied | Failed),
        with Sending -> Pending on transient failure and Failed -> Pending
        on explicit user retry.
    """

    __tablename__ = "sync_queue"

    __table_args__ = (
        Index("idx_sync_queue_status_seq", "status", "seq"),
        Index("idx_sync_queue_record", "record_id"),
    )

    seq: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)

    # domain.enums.SyncAction
    action: Mapped[str] = mapped_column(String(20), nullable=False)

    table_name: Mapped[str] = mapped_column(String(50), nullable=False)

    record_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    # list[str] of record ids this entry writes (record_id plus composite outputs)
    writes: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    # list[str] of record ids this entry references
    depends_on: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    # Correlates the entries produced by one user action
    correlation_id: Mapped[str | None] = mapped_column(String(36), nullable=True)

    # domain.enums.QueueStatus
    status: Mapped[str] = mapped_column(String(10), nullable=False, default="pending")

    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    next_attempt_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    last_error_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    last_error: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<SyncQueueEntry #{self.seq} {self.action} {self.table_name} "
            f"{self.record_id} [{self.status}]>"
        )


class AppliedOperation(TrackedBase):
    """
    Remote-side record of an applied composite action.

    ``id`` is the queue entry id of an ALLOCATE_PAYMENT or APPLY_CREDIT
    entry.  Replaying the entry again finds this row and returns the stored
    result instead of allocating twice.
    """

    __tablename__ = "applied_operations"

    action: Mapped[str] = mapped_column(String(20), nullable=False)
    result: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
