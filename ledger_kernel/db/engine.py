"""
Module: ledger_kernel.db.engine
Responsibility: SQLAlchemy engine initialization, session factory management,
    and transactional scope utilities for one database.
Architecture position: Kernel > DB.  May import from db/base.py.  Imports
    models only inside create_tables() so Base.metadata is complete.

Invariants enforced:
    - Each Database instance owns exactly one Engine.  There is no
      module-level engine: a device process holds the local store and, in
      tests and server deployments, a second Database for the remote store.
    - SQLite connections run with foreign keys ON and with SQLAlchemy-managed
      BEGIN so that SAVEPOINT (begin_nested) works for atomic allocation and
      snapshot creation.
    - In-memory SQLite uses a StaticPool so every session sees the same data.
    - File SQLite transactions start with BEGIN IMMEDIATE; writers queue on
      the busy timeout instead of failing a lock upgrade.

Failure modes:
    - OperationalError when the database file cannot be opened.
    - Connection pool exhaustion on server dialects if pool_size +
      max_overflow is exceeded.

Audit relevance:
    All writes flow through sessions created here.  session_scope() gives
    atomic commit-or-rollback semantics: a local action either writes its
    records and its queue entries together or writes nothing.
"""

from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ledger_kernel.logging_config import get_logger

logger = get_logger("db.engine")


def _install_sqlite_listeners(engine: Engine, begin: str = "BEGIN") -> None:
    """Enable foreign keys and let SQLAlchemy own transaction BEGIN."""

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # Disable pysqlite's implicit transaction handling; emitted below.
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql(begin)


class Database:
    """
    One database: engine, session factory and transactional scope.

    Contract:
        Constructed from a URL; ``dispose()`` releases all pooled connections.

    Guarantees:
        - ``session_scope()`` commits on normal exit and rolls back on any
          exception, which is re-raised to the caller.
        - Sessions use expire_on_commit=False so DTOs built from committed
          rows remain readable after the scope closes.
    """

    def __init__(
        self,
        database_url: str,
        echo: bool = False,
        pool_size: int = 5,
        max_overflow: int = 10,
        pool_pre_ping: bool = True,
    ):
        self.url = database_url
        is_sqlite = database_url.startswith("sqlite")
        is_memory = is_sqlite and (
            database_url in ("sqlite://", "sqlite:///:memory:")
            or "mode=memory" in database_url
        )

        if is_memory:
            self.engine = create_engine(
                database_url,
                echo=echo,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
            )
        elif is_sqlite:
            self.engine = create_engine(
                database_url,
                echo=echo,
                connect_args={"check_same_thread": False},
            )
        else:
            self.engine = create_engine(
                database_url,
                echo=echo,
                pool_size=pool_size,
                max_overflow=max_overflow,
                pool_pre_ping=pool_pre_ping,
            )

        if is_sqlite:
            # Caller and replay thread share file stores; writers serialize at BEGIN.
            _install_sqlite_listeners(self.engine, "BEGIN" if is_memory else "BEGIN IMMEDIATE")

        self._session_factory: sessionmaker[Session] = sessionmaker(
            bind=self.engine, expire_on_commit=False
        )

        logger.info(
            "engine_initialized",
            extra={
                "dialect": self.engine.dialect.name,
                "in_memory": is_memory,
                "echo": echo,
            },
        )

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    def session(self) -> Session:
        """Get a new session instance. Caller owns commit/close."""
        return self._session_factory()

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """
        Provide a transactional scope around a series of operations.

        Postconditions: On normal exit, session is committed and closed.
            On exception, session is rolled back and closed.  The exception
            is re-raised to the caller.

        Usage:
            with database.session_scope() as session:
                store.create("contacts", {...})
        """
        session = self.session()
        logger.debug("transaction_started")
        try:
            yield session
            session.commit()
            logger.debug("transaction_committed")
        except Exception:
            session.rollback()
            logger.warning("transaction_rolled_back", exc_info=True)
            raise
        finally:
            session.close()

    def create_tables(self) -> None:
        """Create all tables defined in ledger_kernel.models."""
        from ledger_kernel.db.base import Base
        import ledger_kernel.models  # noqa: F401

        Base.metadata.create_all(self.engine)
        logger.info(
            "tables_created",
            extra={"table_count": len(Base.metadata.tables)},
        )

    def drop_tables(self) -> None:
        """Drop all tables. Use with caution - primarily for testing."""
        from ledger_kernel.db.base import Base

        Base.metadata.drop_all(self.engine)

    def dispose(self) -> None:
        """Release pooled connections."""
        self.engine.dispose()
        logger.info("engine_disposed", extra={"dialect": self.dialect})
