"""
Module: ledger_kernel.db.base
Responsibility: Declarative base classes for all SQLAlchemy ORM models.  Provides
    the client-generated UUID primary key convention, portable column types for
    decimals and timestamps, and the mixins for creation time and soft delete.
Architecture position: Kernel > DB.  This is the lowest-level import target
    within the kernel.  ALL model files import from here.  This module MUST NOT
    import from models/, services/, selectors/, domain/, or outer layers.

Invariants enforced:
    - Client-generated UUID primary keys: the same id is reused as the remote
      record's primary key, which is what makes queue replay idempotent.
    - Decimal precision: type_annotation_map maps Decimal to DecimalString,
      which stores exact decimal text on SQLite and Numeric(38, 9) elsewhere.
      NEVER use float for monetary amounts or weights.
    - Timezone-aware timestamps on every dialect (UTCDateTime).

Failure modes:
    - IntegrityError if a model attempts to INSERT a duplicate UUID.  The remote
      backend treats that as an already-applied replay, not as an error.
"""

from datetime import UTC, datetime
from decimal import Decimal
from typing import ClassVar
from uuid import UUID as PyUUID, uuid4

from sqlalchemy import BigInteger, DateTime, Numeric, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

MONEY_QUANTUM = Decimal("0.000000001")


class UUIDString(TypeDecorator):
    """
    UUID type stored as String(36) for cross-database portability.

    Guarantees:
        - process_bind_param: UUID -> str on INSERT/UPDATE.
        - process_result_value: str -> UUID on SELECT.
    """

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None:
            return str(value)
        return None

    def process_result_value(self, value, dialect):
        if value is not None:
            return PyUUID(value)
        return None


class DecimalString(TypeDecorator):
    """
    Exact decimal column.

    Contract:
        SQLite has no native decimal type and would round-trip Numeric values
        through binary floats.  On SQLite the value is stored as its decimal
        text; on other dialects Numeric(38, 9) is used unchanged.

    Guarantees:
        - Values are quantized to 9 decimal places on write, on every dialect.
        - Values are always returned as ``Decimal``.
    """

    impl = Numeric(38, 9)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "sqlite":
            return dialect.type_descriptor(String(64))
        return dialect.type_descriptor(Numeric(38, 9))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        quantized = Decimal(value).quantize(MONEY_QUANTUM)
        if dialect.name == "sqlite":
            return str(quantized)
        return quantized

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return Decimal(value)


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware timestamp on every dialect.

    SQLite drops tzinfo; values are normalized to UTC on write and tagged
    with UTC on read.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        value = value.astimezone(UTC)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


def utcnow() -> datetime:
    """Column default for rows created outside a clock-aware service."""
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """
    Declarative base for all SQLAlchemy models.

    Guarantees:
        - id is a UUID stored as String(36); services always supply the
          client-generated id explicitly, uuid4 is only a fallback.
        - Decimal maps to DecimalString, datetime to UTCDateTime.
        - int maps to BigInteger -- safe for monotonic sequences.
    """

    type_annotation_map: ClassVar[dict] = {
        Decimal: DecimalString(),
        datetime: UTCDateTime(),
        PyUUID: UUIDString(),
        int: BigInteger,
    }

    id: Mapped[PyUUID] = mapped_column(
        UUIDString(),
        primary_key=True,
        default=uuid4,
    )


class TrackedBase(Base):
    """
    Abstract base with client-side creation and modification times.

    Contract:
        created_at is stamped by the service from the injected Clock, not by
        the database server, so the (date, created_at) ordering used by the
        balance fold and FIFO allocation is identical locally and remotely.
    """

    __abstract__ = True

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        default=utcnow,
    )

    updated_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )


class SoftDeleteMixin:
    """
    Lifecycle columns for records that go through the recycle bin.

    ``lifecycle_state`` is the tagged state (see domain.lifecycle);
    ``deleted_at`` records when the record entered the DELETED state.
    PURGED rows do not exist physically.
    """

    lifecycle_state: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        default="active",
    )

    deleted_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )


# Re-export UUID for convenience
UUID = PyUUID
