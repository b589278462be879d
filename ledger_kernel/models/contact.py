"""
Module: ledger_kernel.models.contact
Responsibility: Contacts (vendors and clients) and bank accounts.

Invariants enforced:
    - Purging a contact nulls contact_id on every referencing row
      (ON DELETE SET NULL); history is kept, only the link is cut.
"""

from __future__ import annotations

from sqlalchemy import Index, String
from sqlalchemy.orm import Mapped, mapped_column

from ledger_kernel.db.base import SoftDeleteMixin, TrackedBase


class Contact(SoftDeleteMixin, TrackedBase):
    """A vendor, a client, or both."""

    __tablename__ = "contacts"

    __table_args__ = (
        Index("idx_contact_name", "name"),
    )

    name: Mapped[str] = mapped_column(String(200), nullable=False)

    # vendor | client | both (domain.enums.ContactKind)
    kind: Mapped[str] = mapped_column(String(10), nullable=False)

    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    address: Mapped[str | None] = mapped_column(String(500), nullable=True)

    def __repr__(self) -> str:
        return f"<Contact {self.id}: {self.name} ({self.kind})>"


class Bank(TrackedBase):
    """A bank account. Balances are derived, never stored."""

    __tablename__ = "banks"

    name: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)

    def __repr__(self) -> str:
        return f"<Bank {self.id}: {self.name}>"
