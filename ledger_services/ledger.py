"""
ledger_services.ledger -- The application object.

Responsibility:
    Wire the local database, the remote backend, the sync worker, the event
    bus and the action facade together from explicit dependencies, and
    expose the read side (balances, positions, snapshots, records).

Architecture position:
    Services -- the composition root.  Nothing below it holds global state:
    two Ledger objects in one process (two devices in a test) never share
    anything but what they are given.

Invariants enforced:
    - ``init()`` creates the local tables, loads or creates the AppState
      row, recovers entries left Sending and starts the worker.
    - ``shutdown()`` stops the worker (finishing the entry in flight)
      before disposing the engines it owns.
    - Pipeline: local write -> durable queue -> replay worker -> SyncEventBus
      -> futures and subscribers.

Usage:
    ledger = Ledger.from_settings(get_active_config())
    ledger.init()
    try:
        ledger.actions.add_contact("Acme", ContactKind.VENDOR).result(timeout=30)
    finally:
        ledger.shutdown()
"""

from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from ledger_config.schema import LedgerSettings, SyncPolicy
from ledger_engines.costing import InventoryCostingEngine, StockPosition
from ledger_kernel.db.engine import Database
from ledger_kernel.db.serialization import record_to_dict
from ledger_kernel.domain.clock import Clock, SystemClock
from ledger_kernel.domain.dtos import OpenItem
from ledger_kernel.domain.enums import BackdatePolicy, LedgerKind, Role
from ledger_kernel.logging_config import get_logger
from ledger_kernel.models.app_state import APP_STATE_ID, AppState
from ledger_kernel.selectors.ledger_selector import LedgerSelector
from ledger_kernel.services.local_store import LocalStore
from ledger_services.actions import LedgerActions, PendingActions
from ledger_services.balance_calculator import BalanceCalculator, BalanceStatement, Position
from ledger_services.events import SyncEventBus
from ledger_services.remote import RemoteBackend, RemoteCredentials, SqlRemoteBackend
from ledger_services.snapshot_service import SnapshotService
from ledger_services.sync_worker import SyncWorker

logger = get_logger("services.ledger")


class Ledger:
    """
    One device's ledger.

    Contract:
        Construct, ``init()``, use, ``shutdown()``.  Also usable as a
        context manager that does the last three.

    Non-goals:
        - Login flows; the remote backend arrives already authenticated.
    """

    def __init__(
        self,
        database: Database,
        *,
        clock: Clock | None = None,
        remote: RemoteBackend | None = None,
        role: Role = Role.ADMIN,
        currency: str = "BDT",
        costing_engine: InventoryCostingEngine | None = None,
        backdate_policy: BackdatePolicy = BackdatePolicy.INVALIDATE,
        sync_policy: SyncPolicy | None = None,
        bus: SyncEventBus | None = None,
        owned_databases: tuple[Database, ...] = (),
    ):
        self.database = database
        self.clock = clock or SystemClock()
        self.remote = remote
        self.role = role
        self.currency = currency
        self.costing_engine = costing_engine or InventoryCostingEngine()
        self.backdate_policy = backdate_policy
        self.sync_policy = sync_policy or SyncPolicy()
        self.bus = bus or SyncEventBus()
        self._owned = owned_databases
        self.device_id: UUID | None = None

        self.worker = (
            SyncWorker(database, remote, self.clock, bus=self.bus, policy=self.sync_policy)
            if remote is not None
            else None
        )
        self.pending = PendingActions(self.bus)
        self.actions = LedgerActions(
            database,
            self.clock,
            pending=self.pending,
            role=role,
            costing_engine=self.costing_engine,
            snapshot_options={"backdate_policy": backdate_policy},
            remote=remote,
            on_enqueue=self.worker.wake if self.worker is not None else None,
        )

    @classmethod
    def from_settings(
        cls,
        settings: LedgerSettings,
        *,
        clock: Clock | None = None,
        credentials: RemoteCredentials | None = None,
    ) -> Ledger:
        """Build a ledger, and its SqlRemoteBackend when configured, from settings."""
        clock = clock or SystemClock()
        local = Database(
            settings.local_database.url,
            echo=settings.local_database.echo,
            pool_size=settings.local_database.pool_size,
            max_overflow=settings.local_database.max_overflow,
        )
        costing = InventoryCostingEngine(
            settings.inventory.oversell_policy, settings.inventory.wastage_percentage
        )
        owned = [local]
        remote = None
        if settings.remote_database is not None:
            remote_db = Database(
                settings.remote_database.url,
                echo=settings.remote_database.echo,
                pool_size=settings.remote_database.pool_size,
                max_overflow=settings.remote_database.max_overflow,
            )
            owned.append(remote_db)
            remote = SqlRemoteBackend(
                remote_db,
                clock,
                credentials=credentials or RemoteCredentials(settings.role),
                backdate_policy=settings.snapshot.backdate_policy,
                costing_engine=costing,
            )
        return cls(
            local,
            clock=clock,
            remote=remote,
            role=settings.role,
            currency=settings.currency,
            costing_engine=costing,
            backdate_policy=settings.snapshot.backdate_policy,
            sync_policy=settings.sync,
            owned_databases=tuple(owned),
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def init(self, *, start_worker: bool | None = None) -> None:
        """Create tables, load device state and start replaying the queue."""
        for database in self._owned:
            database.create_tables()
        if self.database not in self._owned:
            self.database.create_tables()

        with self.database.session_scope() as session:
            state = session.get(AppState, APP_STATE_ID)
            if state is None:
                state = AppState(
                    id=APP_STATE_ID,
                    currency=self.currency,
                    wastage_percentage=self.costing_engine.wastage_percentage,
                    device_id=uuid4(),
                )
                session.add(state)
                session.flush()
                logger.info("device_state_created", extra={"device_id": str(state.device_id)})
            self.device_id = state.device_id
            self.currency = state.currency

        self.actions.device_id = str(self.device_id)
        if self.worker is not None:
            self.worker.device_id = str(self.device_id)

        if self.worker is None:
            return
        if start_worker is None:
            start_worker = self.sync_policy.auto_start
        if start_worker:
            self.worker.start()
        else:
            self.worker.recover()

    def shutdown(self) -> None:
        if self.worker is not None:
            self.worker.stop()
        for database in self._owned:
            database.dispose()
        logger.info("ledger_shutdown", extra={"device_id": str(self.device_id)})

    def __enter__(self) -> Ledger:
        self.init()
        return self

    def __exit__(self, *exc: Any) -> None:
        self.shutdown()

    def sync_now(self) -> int:
        """Replay ready entries on the calling thread; returns how many were applied."""
        if self.worker is None:
            return 0
        return self.worker.tick()

    # =========================================================================
    # Reads
    # =========================================================================

    def _snapshots(self, session) -> SnapshotService:
        return SnapshotService(
            session,
            self.clock,
            role=self.role,
            backdate_policy=self.backdate_policy,
            costing_engine=self.costing_engine,
        )

    def _calculator(self, session) -> BalanceCalculator:
        return BalanceCalculator(
            session,
            self.clock,
            snapshots=self._snapshots(session),
            costing_engine=self.costing_engine,
        )

    def running_balances(
        self,
        account: str | UUID,
        date_from: dt.date | None = None,
        date_to: dt.date | None = None,
    ) -> BalanceStatement:
        with self.database.session_scope() as session:
            return self._calculator(session).running_balances(account, date_from, date_to)

    def balance_as_of(self, account: str | UUID, day: dt.date) -> Decimal:
        with self.database.session_scope() as session:
            return self._calculator(session).balance_as_of(account, day)

    def current_position(self, as_of: dt.date | None = None) -> Position:
        with self.database.session_scope() as session:
            return self._calculator(session).current_position(as_of)

    def stock_positions(self, as_of: dt.date | None = None) -> dict[str, StockPosition]:
        with self.database.session_scope() as session:
            return self._calculator(session).stock_positions(as_of)

    def get_or_create_snapshot(self, month: dt.date) -> dict[str, Any]:
        with self.database.session_scope() as session:
            return record_to_dict(self._snapshots(session).get_or_create_snapshot(month))

    def regenerate_snapshot(self, month: dt.date) -> dict[str, Any]:
        with self.database.session_scope() as session:
            return record_to_dict(self._snapshots(session).regenerate(month))

    def query(
        self,
        table: str,
        filters: dict[str, Any] | None = None,
        *,
        recycle_bin: bool = False,
        date_from: dt.date | None = None,
        date_to: dt.date | None = None,
    ) -> list[dict[str, Any]]:
        with self.database.session_scope() as session:
            store = LocalStore(session, self.clock, role=self.role)
            rows = store.query(
                table, filters, recycle_bin=recycle_bin, date_from=date_from, date_to=date_to
            )
            return [record_to_dict(row) for row in rows]

    def get(self, table: str, record_id: UUID) -> dict[str, Any]:
        with self.database.session_scope() as session:
            return record_to_dict(LocalStore(session, self.clock, role=self.role).get(table, record_id))

    def open_items(self, contact_id: UUID, kind: LedgerKind) -> list[OpenItem]:
        with self.database.session_scope() as session:
            return LedgerSelector(session).open_items(contact_id, kind)

    def available_credit(self, contact_id: UUID) -> Decimal:
        with self.database.session_scope() as session:
            return LedgerSelector(session).available_credit(contact_id)
