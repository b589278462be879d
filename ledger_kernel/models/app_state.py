"""
Module: ledger_kernel.models.app_state
Responsibility: The singleton settings record of a device.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from ledger_kernel.db.base import Base, DecimalString, UTCDateTime, UUIDString

# Fixed primary key of the singleton row
APP_STATE_ID = UUID("00000000-0000-0000-0000-000000000001")


class AppState(Base):
    """Device-local settings. Exactly one row, id APP_STATE_ID. Never synced."""

    __tablename__ = "app_state"

    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="BDT")
    wastage_percentage: Mapped[Decimal] = mapped_column(
        DecimalString(), nullable=False, default=Decimal("0")
    )
    device_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    last_sync_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
