"""
ledger_services.remote -- The remote ledger backend contract.

Responsibility:
    ``RemoteBackend`` is what the replay worker talks to: role-scoped record
    writes, the atomic composite actions (payment allocation, advance
    consumption, snapshot creation) and bulk export/import.
    ``SqlRemoteBackend`` implements it over a shared SQLAlchemy database,
    reusing the kernel's Local Store, Payment Allocator and Snapshot
    Service so both ends enforce identical rules.

Architecture position:
    Services -- the boundary between the device and the server.  Everything
    crossing it is a JSON-safe dict.

Invariants enforced:
    - Idempotent replay: creating an existing id returns the existing
      record; deleting a deleted record, restoring an active one and purging
      a missing one are no-ops; composite actions are recorded under their
      queue entry id and a second delivery returns the stored result.
    - Every call runs in one remote transaction.
    - Writes require the admin role; expired credentials fail every call.

Failure modes (all typed, see ledger_kernel.exceptions):
    - NetworkError for driver-level connectivity failures (retryable).
    - ConflictError for integrity violations, AllocationConflictError for
      stale allocation plans, BackdatedWriteError under the REJECT policy.
    - AuthorizationError / SessionExpiredError for role and credential
      failures.
    - ValidationError / RecordNotFoundError for malformed payloads.
"""

from __future__ import annotations

import datetime as dt
from abc import ABC, abstractmethod
from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.exc import (
    DisconnectionError,
    IntegrityError,
    InterfaceError,
    OperationalError,
)
from sqlalchemy.orm import Session

from ledger_engines.costing import InventoryCostingEngine
from ledger_kernel.db.engine import Database
from ledger_kernel.db.serialization import coerce_values, record_to_dict
from ledger_kernel.domain.clock import Clock
from ledger_kernel.domain.enums import BackdatePolicy, LedgerKind, PaymentMethod, Role
from ledger_kernel.domain.lifecycle import LifecycleState
from ledger_kernel.exceptions import (
    AuthorizationError,
    ConflictError,
    NetworkError,
    SessionExpiredError,
)
from ledger_kernel.logging_config import get_logger
from ledger_kernel.models.sync_queue import AppliedOperation
from ledger_kernel.services.local_store import LocalStore, WriteOrigin, model_for
from ledger_services.backup import ImportReport, export_tables, import_tables
from ledger_services.payment_allocator import PaymentAllocator
from ledger_services.snapshot_service import SnapshotService

logger = get_logger("services.remote")


@dataclass(frozen=True)
class RemoteCredentials:
    """A remote session: who is calling and until when."""

    role: Role
    expires_at: dt.datetime | None = None

    def expired(self, now: dt.datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class RemoteBackend(ABC):
    """
    Remote ledger backend.

    Contract:
        Every method either applies completely or raises a typed
        LedgerKernelError.  Methods are safe to call again with the same
        arguments (idempotent).
    """

    @abstractmethod
    def create(self, table: str, record: dict[str, Any]) -> dict[str, Any]: ...

    @abstractmethod
    def update(self, table: str, record_id: UUID, patch: dict[str, Any]) -> dict[str, Any]: ...

    @abstractmethod
    def soft_delete(self, table: str, record_id: UUID, deleted_at: str | None = None) -> None: ...

    @abstractmethod
    def restore(
        self, table: str, record_id: UUID, record: dict[str, Any] | None = None
    ) -> dict[str, Any]: ...

    @abstractmethod
    def purge(self, table: str, record_id: UUID) -> None: ...

    @abstractmethod
    def query(
        self, table: str, filters: dict[str, Any] | None = None, *, recycle_bin: bool = False
    ) -> list[dict[str, Any]]: ...

    @abstractmethod
    def allocate_payment(self, operation_id: UUID, payload: dict[str, Any]) -> dict[str, Any]: ...

    @abstractmethod
    def apply_credit(self, operation_id: UUID, payload: dict[str, Any]) -> dict[str, Any]: ...

    @abstractmethod
    def get_or_create_snapshot(self, month: dt.date) -> dict[str, Any]: ...

    @abstractmethod
    def export_all(self) -> dict[str, Any]: ...

    @abstractmethod
    def import_all(self, payload: dict[str, Any]) -> ImportReport: ...

    @abstractmethod
    def is_available(self) -> bool:
        """Cheap connectivity probe used to resume a paused queue."""


class SqlRemoteBackend(RemoteBackend):
    """
    RemoteBackend over a shared SQL database.

    Contract:
        Owns its transactions: each public call is one session_scope on the
        remote Database.  Sessions never outlive a call.

    Non-goals:
        - Token formats and login flows; the caller supplies
          RemoteCredentials.
    """

    def __init__(
        self,
        database: Database,
        clock: Clock,
        *,
        credentials: RemoteCredentials | None = None,
        backdate_policy: BackdatePolicy = BackdatePolicy.INVALIDATE,
        costing_engine: InventoryCostingEngine | None = None,
    ):
        self.database = database
        self._clock = clock
        self.credentials = credentials or RemoteCredentials(Role.ADMIN)
        self._backdate_policy = backdate_policy
        self._costing = costing_engine or InventoryCostingEngine()

    # =========================================================================
    # Plumbing
    # =========================================================================

    def _authorize(self, operation: str, *, write: bool) -> None:
        if self.credentials.expired(self._clock.now()):
            raise SessionExpiredError(operation)
        if write and self.credentials.role != Role.ADMIN:
            raise AuthorizationError(self.credentials.role.value, operation)

    @contextmanager
    def _scope(self, operation: str, *, write: bool = True) -> Generator[Session, None, None]:
        """Authorize, open a remote transaction and translate driver errors."""
        self._authorize(operation, write=write)
        try:
            with self.database.session_scope() as session:
                yield session
        except (OperationalError, InterfaceError, DisconnectionError) as exc:
            logger.warning(
                "remote_unavailable",
                extra={"operation": operation, "error": str(exc.orig or exc)[:200]},
            )
            raise NetworkError(operation, str(exc.orig or exc)[:200]) from exc
        except IntegrityError as exc:
            raise ConflictError("remote", None, str(exc.orig or exc)[:200]) from exc

    def _snapshots(self, session: Session) -> SnapshotService:
        return SnapshotService(
            session,
            self._clock,
            role=self.credentials.role,
            backdate_policy=self._backdate_policy,
            costing_engine=self._costing,
        )

    def _store(self, session: Session) -> LocalStore:
        return LocalStore(
            session,
            self._clock,
            None,
            role=self.credentials.role,
            guard=self._snapshots(session),
        )

    # =========================================================================
    # Record writes
    # =========================================================================

    def create(self, table: str, record: dict[str, Any]) -> dict[str, Any]:
        with self._scope(f"create {table}") as session:
            model = model_for(table)
            record_id = coerce_values(model, {"id": record["id"]})["id"]
            existing = session.get(model, record_id)
            if existing is not None:
                logger.info(
                    "remote_create_already_applied",
                    extra={"table": table, "record_id": str(record_id)},
                )
                return record_to_dict(existing)
            created = self._store(session).create(table, record, origin=WriteOrigin.REPLAY)
            return record_to_dict(created)

    def update(self, table: str, record_id: UUID, patch: dict[str, Any]) -> dict[str, Any]:
        with self._scope(f"update {table}") as session:
            updated = self._store(session).update(
                table, record_id, patch, origin=WriteOrigin.REPLAY
            )
            return record_to_dict(updated)

    def soft_delete(self, table: str, record_id: UUID, deleted_at: str | None = None) -> None:
        with self._scope(f"delete {table}") as session:
            store = self._store(session)
            record = store.get(table, record_id)
            if record.lifecycle_state == LifecycleState.DELETED.value:
                return
            store.soft_delete(table, record_id, origin=WriteOrigin.REPLAY)
            if deleted_at:
                record.deleted_at = dt.datetime.fromisoformat(deleted_at)
            session.flush()

    def restore(
        self, table: str, record_id: UUID, record: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        with self._scope(f"restore {table}") as session:
            model = model_for(table)
            store = self._store(session)
            existing = session.get(model, record_id)
            if existing is None:
                if record is None:
                    store.get(table, record_id)
                values = dict(record)
                values["lifecycle_state"] = LifecycleState.ACTIVE.value
                values["deleted_at"] = None
                return record_to_dict(store.create(table, values, origin=WriteOrigin.REPLAY))
            if existing.lifecycle_state == LifecycleState.ACTIVE.value:
                return record_to_dict(existing)
            return record_to_dict(store.restore(table, record_id, origin=WriteOrigin.REPLAY))

    def purge(self, table: str, record_id: UUID) -> None:
        with self._scope(f"purge {table}") as session:
            if session.get(model_for(table), record_id) is None:
                return
            self._store(session).purge(table, record_id, origin=WriteOrigin.REPLAY)

    def query(
        self, table: str, filters: dict[str, Any] | None = None, *, recycle_bin: bool = False
    ) -> list[dict[str, Any]]:
        with self._scope(f"query {table}", write=False) as session:
            rows = self._store(session).query(table, filters, recycle_bin=recycle_bin)
            return [record_to_dict(row) for row in rows]

    # =========================================================================
    # Composite actions
    # =========================================================================

    def _already_applied(self, session: Session, operation_id: UUID) -> dict[str, Any] | None:
        applied = session.get(AppliedOperation, operation_id)
        if applied is None:
            return None
        logger.info(
            "remote_operation_already_applied",
            extra={"operation_id": str(operation_id), "action": applied.action},
        )
        return dict(applied.result)

    def allocate_payment(self, operation_id: UUID, payload: dict[str, Any]) -> dict[str, Any]:
        """
        Re-derive and apply a FIFO allocation under the device's ids.

        Raises:
            AllocationConflictError: The remote plan differs from
                ``payload["plan"]`` (stale device state).
        """
        with self._scope("allocate payment") as session:
            previous = self._already_applied(session, operation_id)
            if previous is not None:
                return previous

            allocator = PaymentAllocator(
                session,
                self._clock,
                role=self.credentials.role,
                guard=self._snapshots(session),
            )
            result = allocator.allocate(
                UUID(payload["contact_id"]),
                Decimal(payload["amount"]),
                dt.date.fromisoformat(payload["date"]),
                PaymentMethod(payload["method"]),
                kind=LedgerKind(payload["kind"]),
                bank_id=UUID(payload["bank_id"]) if payload.get("bank_id") else None,
                description=payload.get("description", ""),
                installment_ids={
                    UUID(k): UUID(v) for k, v in payload.get("installment_ids", {}).items()
                },
                advance_id=UUID(payload["advance_id"]) if payload.get("advance_id") else None,
                financial_transaction_id=(
                    UUID(payload["financial_transaction_id"])
                    if payload.get("financial_transaction_id")
                    else None
                ),
                record_money_movement=payload.get("record_money_movement", True),
                expected_plan=payload.get("plan"),
            )
            outcome = {
                "plan": result.plan.as_mapping(),
                "advance_amount": str(result.plan.advance_amount),
                "installment_ids": {str(k): str(v) for k, v in result.installment_ids.items()},
                "advance_id": str(result.advance_id) if result.advance_id else None,
                "financial_transaction_id": (
                    str(result.financial_transaction_id)
                    if result.financial_transaction_id
                    else None
                ),
            }
            session.add(
                AppliedOperation(
                    id=operation_id,
                    action="allocate_payment",
                    result=outcome,
                    created_at=self._clock.now(),
                )
            )
            return outcome

    def apply_credit(self, operation_id: UUID, payload: dict[str, Any]) -> dict[str, Any]:
        with self._scope("apply credit") as session:
            previous = self._already_applied(session, operation_id)
            if previous is not None:
                return previous

            allocator = PaymentAllocator(
                session,
                self._clock,
                role=self.credentials.role,
                guard=self._snapshots(session),
            )
            result = allocator.apply_credit_against_advance(
                UUID(payload["contact_id"]),
                Decimal(payload["obligation"]),
                kind=LedgerKind(payload["kind"]),
                date=dt.date.fromisoformat(payload["date"]),
                description=payload.get("description", ""),
                entry_id=UUID(payload["entry_id"]) if payload.get("entry_id") else None,
                expected_plan=payload.get("plan"),
            )
            outcome = {
                "plan": result.plan.as_mapping(),
                "remainder": str(result.plan.remainder),
                "entry_id": str(result.entry_id) if result.entry_id else None,
            }
            session.add(
                AppliedOperation(
                    id=operation_id,
                    action="apply_credit",
                    result=outcome,
                    created_at=self._clock.now(),
                )
            )
            return outcome

    def get_or_create_snapshot(self, month: dt.date) -> dict[str, Any]:
        with self._scope("get snapshot", write=False) as session:
            return record_to_dict(self._snapshots(session).get_or_create_snapshot(month))

    # =========================================================================
    # Bulk
    # =========================================================================

    def export_all(self) -> dict[str, Any]:
        with self._scope("export", write=False) as session:
            return export_tables(session)

    def import_all(self, payload: dict[str, Any]) -> ImportReport:
        self._authorize("import", write=True)
        return import_tables(self.database, payload)

    def is_available(self) -> bool:
        try:
            with self.database.session_scope() as session:
                session.execute(text("SELECT 1"))
        except (OperationalError, InterfaceError, DisconnectionError):
            return False
        return True
