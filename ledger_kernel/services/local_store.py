"""
LocalStore -- the embedded record store every user action writes to first.

Responsibility:
    Create, update, soft-delete, restore, purge and query records of the
    synced tables.  Every mutation made on the device appends the matching
    Sync Queue entry in the same transaction; mutations replayed from the
    remote store do not.

Architecture position:
    Kernel > Services -- imperative shell.  Used by the action facade and
    the replay worker on the device, and by SqlRemoteBackend on the server
    side (with a queue-less store), so both ends apply identical rules.

Invariants enforced:
    - Admin-only writes: a viewer store raises AuthorizationError before
      touching anything.
    - difference = actual_amount - expected_amount on every create/update.
    - Lifecycle transitions follow domain.lifecycle: purge only from
      DELETED, restore only from DELETED, soft delete only from ACTIVE.
    - Queries exclude DELETED rows unless the recycle-bin view is requested.
    - A record whose CREATE entry is still Pending (never synced, nothing
      else depending on it) is deleted without enqueueing: its pending
      entries are dropped instead.
    - Dated writes pass through the registered DatedWriteGuard before the
      row changes (snapshot backdating policy).

Failure modes:
    - RecordNotFoundError for unknown ids or tables.
    - ValidationError for unknown columns or missing required columns.
    - InvalidLifecycleTransitionError for illegal lifecycle moves.
    - AuthorizationError for writes by a viewer.
    - LedgerIntegrityError / OverpaymentError for ledger entries outside
      0 <= paid_amount <= amount, and for any update of an installment.
"""

from __future__ import annotations

import datetime as dt
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Protocol
from uuid import UUID, uuid4

from sqlalchemy import Date, inspect, select
from sqlalchemy.orm import Session

from ledger_kernel.db.base import Base
from ledger_kernel.db.serialization import coerce_values, record_to_dict, referenced_ids
from ledger_kernel.domain.clock import Clock
from ledger_kernel.domain.enums import LedgerKind, QueueStatus, Role, SyncAction
from ledger_kernel.domain.lifecycle import LifecycleState, can_transition
from ledger_kernel.exceptions import (
    AuthorizationError,
    InvalidLifecycleTransitionError,
    LedgerIntegrityError,
    OverpaymentError,
    RecordNotFoundError,
    ValidationError,
)
from ledger_kernel.logging_config import get_logger
from ledger_kernel.models import SOFT_DELETE_TABLES, SYNCED_TABLES, TABLE_MODELS
from ledger_kernel.services.base import BaseService
from ledger_kernel.services.sync_queue import SyncQueueService

logger = get_logger("services.local_store")


class WriteOrigin(str, Enum):
    """Where a mutation came from. REPLAY writes are never re-enqueued."""

    LOCAL = "local"
    REPLAY = "replay"


class DatedWriteGuard(Protocol):
    """Called with every business date a mutation touches, before it happens."""

    def check(self, table: str, record_id: UUID, dates: Sequence[dt.date]) -> None: ...


@dataclass(frozen=True)
class PurgeResult:
    """Outcome of emptying the recycle bin: purged ids per table."""

    purged: dict[str, tuple[UUID, ...]] = field(default_factory=dict)

    @property
    def count(self) -> int:
        return sum(len(ids) for ids in self.purged.values())


def model_for(table: str) -> type[Base]:
    model = TABLE_MODELS.get(table)
    if model is None:
        raise RecordNotFoundError("tables", table)
    return model


def _date_columns(model: type[Base]) -> list[str]:
    """Business-date columns (Date, not timestamps)."""
    return [c.key for c in inspect(model).columns if isinstance(c.type, Date)]


# Installments record money that already moved; corrections go through a new payment.
IMMUTABLE_TABLES = frozenset({"payment_installments"})


def _check_ledger_amounts(
    record_id: UUID, kind: str, amount: Decimal, paid_amount: Decimal
) -> None:
    try:
        kind = LedgerKind(kind)
    except ValueError:
        raise ValidationError("kind", "unknown ledger kind", kind) from None
    if kind is LedgerKind.ADVANCE:
        if amount > 0 or paid_amount != 0:
            raise LedgerIntegrityError(
                "advance amount <= 0 and paid_amount = 0",
                f"ledger entry {record_id}: amount {amount}, paid {paid_amount}",
            )
        return
    if amount < 0 or paid_amount < 0:
        raise LedgerIntegrityError(
            "0 <= paid_amount",
            f"ledger entry {record_id}: amount {amount}, paid {paid_amount}",
        )
    if paid_amount > amount:
        raise OverpaymentError(str(record_id), amount, paid_amount)


class LocalStore(BaseService):
    """
    Record store with queue-coupled mutations.

    Contract:
        Flush-only; the caller's session_scope commits the record change and
        its queue entry together.

    Guarantees:
        - Every LOCAL mutation with a queue produces exactly one queue entry
          (or drops pending ones for never-synced deletes).
        - REPLAY mutations never produce queue entries.

    Non-goals:
        - Domain rules (allocation, costing, transfer pairing) live in the
          services that call the store.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock,
        queue: SyncQueueService | None = None,
        *,
        role: Role = Role.ADMIN,
        guard: DatedWriteGuard | None = None,
        correlation_id: str | None = None,
    ):
        super().__init__(session)
        self._clock = clock
        self._queue = queue
        self._role = role
        self._guard = guard
        self._correlation_id = correlation_id

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def queue(self) -> SyncQueueService | None:
        return self._queue

    # =========================================================================
    # Helpers
    # =========================================================================

    def _require_admin(self, operation: str) -> None:
        if self._role != Role.ADMIN:
            logger.warning(
                "store_write_denied",
                extra={"role": self._role.value, "operation": operation},
            )
            raise AuthorizationError(self._role.value, operation)

    def _check_dates(self, table: str, record: Base, extra: Iterable[Any] = ()) -> None:
        if self._guard is None:
            return
        dates = [getattr(record, key) for key in _date_columns(type(record))]
        dates.extend(extra)
        dates = [d for d in dates if isinstance(d, dt.date)]
        if dates:
            self._guard.check(table, record.id, dates)

    def _enqueue(
        self,
        origin: WriteOrigin,
        action: SyncAction,
        table: str,
        record_id: UUID,
        payload: dict,
        depends_on: Iterable[str] = (),
    ) -> None:
        if origin is WriteOrigin.REPLAY or self._queue is None:
            return
        self._queue.enqueue(
            action,
            table,
            record_id,
            payload,
            depends_on=depends_on,
            correlation_id=self._correlation_id,
        )

    @staticmethod
    def _sync_difference(record: Base) -> None:
        if hasattr(record, "difference"):
            record.difference = record.actual_amount - record.expected_amount

    def get(self, table: str, record_id: UUID, *, include_deleted: bool = True) -> Base:
        """
        Load one record.

        Raises:
            RecordNotFoundError: Unknown id, or a DELETED record when
                ``include_deleted`` is False.
        """
        record = self.session.get(model_for(table), record_id)
        if record is None:
            raise RecordNotFoundError(table, str(record_id))
        if (
            not include_deleted
            and getattr(record, "lifecycle_state", LifecycleState.ACTIVE.value)
            != LifecycleState.ACTIVE.value
        ):
            raise RecordNotFoundError(table, str(record_id))
        return record

    def _lifecycle_move(
        self, table: str, record: Base, target: LifecycleState
    ) -> LifecycleState:
        if table not in SOFT_DELETE_TABLES:
            raise ValidationError("table", f"{table} has no recycle bin", table)
        current = LifecycleState(record.lifecycle_state)
        if not can_transition(current, target):
            raise InvalidLifecycleTransitionError(
                table, str(record.id), current.value, target.value
            )
        return current

    # =========================================================================
    # Mutations
    # =========================================================================

    def create(
        self,
        table: str,
        values: dict[str, Any],
        *,
        origin: WriteOrigin = WriteOrigin.LOCAL,
    ) -> Base:
        """
        Insert a record and enqueue its CREATE.

        ``values`` may hold Python or JSON-safe values; an ``id`` is
        generated client-side when absent and reused remotely.

        Raises:
            ValidationError: Unknown or missing required columns.
            AuthorizationError: Viewer role.
        """
        self._require_admin(f"create {table}")
        model = model_for(table)
        data = coerce_values(model, values)
        data.setdefault("id", uuid4())
        if "created_at" in inspect(model).columns.keys():
            data.setdefault("created_at", self._clock.now())

        missing = [
            column.key
            for column in inspect(model).columns
            if not column.nullable
            and column.default is None
            and column.server_default is None
            and column.key not in data
            and column.key != "difference"
        ]
        if missing:
            raise ValidationError(missing[0], "required", None)
        if table == "ledger_transactions":
            _check_ledger_amounts(
                data["id"], data["kind"], data["amount"], data["paid_amount"]
            )

        record = model(**data)
        self._sync_difference(record)
        self._check_dates(table, record)
        self.session.add(record)
        self.session.flush()

        payload = {"record": record_to_dict(record)}
        self._enqueue(
            origin, SyncAction.CREATE, table, record.id, payload,
            depends_on=referenced_ids(model, payload["record"]),
        )
        logger.info(
            "record_created",
            extra={"table": table, "record_id": str(record.id), "origin": origin.value},
        )
        return record

    def update(
        self,
        table: str,
        record_id: UUID,
        patch: dict[str, Any],
        *,
        origin: WriteOrigin = WriteOrigin.LOCAL,
    ) -> Base:
        """
        Apply a partial update and enqueue it.

        ``id``, ``created_at`` and lifecycle columns cannot be patched; use
        soft_delete/restore for lifecycle changes.

        Raises:
            LedgerIntegrityError: Installments are immutable, or a ledger
                entry's amounts would break 0 <= paid_amount <= amount.
            OverpaymentError: paid_amount would exceed amount.
        """
        self._require_admin(f"update {table}")
        if table in IMMUTABLE_TABLES:
            raise LedgerIntegrityError(
                "installments are immutable", f"{table} {record_id} cannot be updated"
            )
        model = model_for(table)
        record = self.get(table, record_id)
        protected = {"id", "created_at", "lifecycle_state", "deleted_at"}
        if protected.intersection(patch):
            key = sorted(protected.intersection(patch))[0]
            raise ValidationError(key, "cannot be changed by update", patch[key])

        values = coerce_values(model, patch)
        if table == "ledger_transactions":
            _check_ledger_amounts(
                record.id,
                *(values.get(key, getattr(record, key)) for key in ("kind", "amount", "paid_amount")),
            )
        old_dates = [getattr(record, key) for key in _date_columns(model)]
        for key, value in values.items():
            setattr(record, key, value)
        self._sync_difference(record)
        record.updated_at = self._clock.now()
        self._check_dates(table, record, old_dates)
        self.session.flush()

        current = record_to_dict(record)
        sent_patch = {key: current[key] for key in values}
        if "difference" in current:
            sent_patch["difference"] = current["difference"]
        self._enqueue(
            origin, SyncAction.UPDATE, table, record.id, {"patch": sent_patch},
            depends_on=[str(record.id), *referenced_ids(model, sent_patch)],
        )
        logger.info(
            "record_updated",
            extra={
                "table": table,
                "record_id": str(record.id),
                "fields": sorted(values),
                "origin": origin.value,
            },
        )
        return record

    def _never_synced(self, record_id: UUID) -> bool:
        """True when the record's CREATE is still Pending and nothing else needs it."""
        if self._queue is None:
            return False
        own = self._queue.pending_for_record(record_id)
        if not own or own[0].action != SyncAction.CREATE.value:
            return False
        key = str(record_id)
        own_ids = {e.id for e in own}
        for entry in self._queue.entries():
            if entry.id in own_ids:
                continue
            if key in entry.depends_on:
                return False
        return True

    def soft_delete(
        self,
        table: str,
        record_id: UUID,
        *,
        origin: WriteOrigin = WriteOrigin.LOCAL,
    ) -> Base:
        """ACTIVE -> DELETED. The record moves to the recycle bin."""
        self._require_admin(f"delete {table}")
        record = self.get(table, record_id)
        self._lifecycle_move(table, record, LifecycleState.DELETED)
        self._check_dates(table, record)

        record.lifecycle_state = LifecycleState.DELETED.value
        record.deleted_at = self._clock.now()
        self.session.flush()

        if origin is WriteOrigin.LOCAL and self._never_synced(record.id):
            dropped = self._queue.drop_pending_for_record(record.id)
            logger.info(
                "unsynced_record_deleted",
                extra={"table": table, "record_id": str(record.id), "dropped_entries": dropped},
            )
            return record

        self._enqueue(
            origin, SyncAction.SOFT_DELETE, table, record.id,
            {"deleted_at": record.deleted_at.isoformat()},
            depends_on=[str(record.id)],
        )
        logger.info(
            "record_soft_deleted",
            extra={"table": table, "record_id": str(record.id), "origin": origin.value},
        )
        return record

    def restore(
        self,
        table: str,
        record_id: UUID,
        *,
        origin: WriteOrigin = WriteOrigin.LOCAL,
    ) -> Base:
        """
        DELETED -> ACTIVE.

        The queued RESTORE carries the full record so the remote can
        recreate a record whose CREATE was dropped before it was ever sent.
        """
        self._require_admin(f"restore {table}")
        model = model_for(table)
        record = self.get(table, record_id)
        self._lifecycle_move(table, record, LifecycleState.ACTIVE)
        self._check_dates(table, record)

        record.lifecycle_state = LifecycleState.ACTIVE.value
        record.deleted_at = None
        self.session.flush()

        snapshot = record_to_dict(record)
        self._enqueue(
            origin, SyncAction.RESTORE, table, record.id, {"record": snapshot},
            depends_on=referenced_ids(model, snapshot),
        )
        logger.info(
            "record_restored",
            extra={"table": table, "record_id": str(record.id), "origin": origin.value},
        )
        return record

    def purge(
        self,
        table: str,
        record_id: UUID,
        *,
        origin: WriteOrigin = WriteOrigin.LOCAL,
    ) -> LifecycleState:
        """
        DELETED -> PURGED.  Irreversible hard delete, admin only.

        Installments cascade with their ledger entry; links on other rows
        are nulled by the foreign keys.
        """
        self._require_admin(f"purge {table}")
        record = self.get(table, record_id)
        self._lifecycle_move(table, record, LifecycleState.PURGED)

        self.session.delete(record)
        self.session.flush()
        # ON DELETE cascades ran in the database; drop stale identities.
        self.session.expire_all()

        self._enqueue(
            origin, SyncAction.PURGE, table, record_id, {}, depends_on=[str(record_id)]
        )
        logger.warning(
            "record_purged",
            extra={"table": table, "record_id": str(record_id), "origin": origin.value},
        )
        return LifecycleState.PURGED

    def empty_recycle_bin(self, *, origin: WriteOrigin = WriteOrigin.LOCAL) -> PurgeResult:
        """Purge every DELETED record, children before parents."""
        self._require_admin("empty recycle bin")
        purged: dict[str, tuple[UUID, ...]] = {}
        for table in reversed(SYNCED_TABLES):
            if table not in SOFT_DELETE_TABLES:
                continue
            ids = [r.id for r in self.query(table, recycle_bin=True)]
            for record_id in ids:
                self.purge(table, record_id, origin=origin)
            if ids:
                purged[table] = tuple(ids)
        result = PurgeResult(purged)
        logger.info("recycle_bin_emptied", extra={"purged_count": result.count})
        return result

    def upsert(self, table: str, values: dict[str, Any]) -> Base:
        """
        Write a record exactly as the remote store holds it.  REPLAY only:
        used when reconciling with the remote and by backup import.
        """
        model = model_for(table)
        data = coerce_values(model, values)
        record = self.session.get(model, data["id"])
        if record is None:
            record = model(**data)
            self.session.add(record)
        else:
            for key, value in data.items():
                setattr(record, key, value)
        self.session.flush()
        return record

    # =========================================================================
    # Queries
    # =========================================================================

    def query(
        self,
        table: str,
        filters: dict[str, Any] | None = None,
        *,
        order_by: Sequence[str] | None = None,
        recycle_bin: bool = False,
        date_from: dt.date | None = None,
        date_to: dt.date | None = None,
    ) -> list[Base]:
        """
        Records of ``table`` matching equality ``filters``.

        Args:
            table: Table name.
            filters: Column -> value equality filters (values may be JSON-safe).
            order_by: Column names; defaults to (date, created_at, id) when
                the table has a ``date`` column, else (created_at, id).
            recycle_bin: If True, return only DELETED rows; otherwise only
                ACTIVE rows (soft-deletable tables).
            date_from / date_to: Inclusive bounds on ``date``.
        """
        model = model_for(table)
        columns = inspect(model).columns.keys()
        stmt = select(model)

        for key, value in coerce_values(model, filters or {}).items():
            stmt = stmt.where(getattr(model, key) == value)

        if table in SOFT_DELETE_TABLES:
            state = LifecycleState.DELETED if recycle_bin else LifecycleState.ACTIVE
            stmt = stmt.where(model.lifecycle_state == state.value)

        if date_from is not None:
            stmt = stmt.where(model.date >= date_from)
        if date_to is not None:
            stmt = stmt.where(model.date <= date_to)

        if order_by is None:
            order_by = ["date", "created_at", "id"] if "date" in columns else ["created_at", "id"]
        for key in order_by:
            descending = key.startswith("-")
            name = key.lstrip("-")
            if name not in columns:
                raise ValidationError("order_by", f"not a column of {table}", name)
            column = getattr(model, name)
            stmt = stmt.order_by(column.desc() if descending else column.asc())

        return list(self.session.execute(stmt).scalars())
