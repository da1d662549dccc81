"""
Module: inventory_kernel.models.ledger
Responsibility: ORM persistence for the append-only quantity and location
    ledgers.
Architecture position: Kernel > Models. May import from db/base.py and
    domain/ only.

Invariants enforced:
    - (item_id, seq) is unique in each ledger.
    - Rows are never updated or deleted (db/immutability.py).
    - For one item, ordered by seq: pre[n] == post[n-1] and
      post[n] == pre[n] + delta[n]. LedgerService writes rows that satisfy
      this; LedgerSelector.verify_item_ledger checks it.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from inventory_kernel.db.base import Base, UTCDateTime, UUIDString
from inventory_kernel.domain.dtos import LedgerEntryView, LocationEntryView
from inventory_kernel.domain.values import LedgerReason, LedgerSource


class QuantityLedgerEntry(Base):
    """One immutable change to an item's available quantity."""

    __tablename__ = "inventory_quantity_ledger"

    __table_args__ = (
        UniqueConstraint("item_id", "seq", name="uq_quantity_ledger_item_seq"),
        Index("idx_quantity_ledger_business_account", "business_account_id"),
        Index("idx_quantity_ledger_correlation", "correlation_id"),
    )

    item_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("inventory_items.id"),
        nullable=False,
    )
    business_account_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    seq: Mapped[int] = mapped_column(Integer, nullable=False)

    pre_available: Mapped[int] = mapped_column(Integer, nullable=False)
    post_available: Mapped[int] = mapped_column(Integer, nullable=False)
    delta_available: Mapped[int] = mapped_column(Integer, nullable=False)

    reason: Mapped[str] = mapped_column(String(30), nullable=False)
    source: Mapped[str] = mapped_column(String(20), nullable=False)

    actor_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    order_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    correlation_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Display/audit only; seq is the ordering key
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    def __repr__(self) -> str:
        return (
            f"<QuantityLedgerEntry item={self.item_id} seq={self.seq} "
            f"{self.pre_available}{self.delta_available:+d}={self.post_available}>"
        )

    def to_dto(self) -> LedgerEntryView:
        return LedgerEntryView(
            id=self.id,
            item_id=self.item_id,
            business_account_id=self.business_account_id,
            seq=self.seq,
            pre_available=self.pre_available,
            post_available=self.post_available,
            delta_available=self.delta_available,
            reason=LedgerReason(self.reason),
            source=LedgerSource(self.source),
            created_at=self.created_at,
            actor_id=self.actor_id,
            order_id=self.order_id,
            correlation_id=self.correlation_id,
        )


class LocationLedgerEntry(Base):
    """One immutable location transition. No balance arithmetic."""

    __tablename__ = "inventory_location_ledger"

    __table_args__ = (
        UniqueConstraint("item_id", "seq", name="uq_location_ledger_item_seq"),
    )

    item_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("inventory_items.id"),
        nullable=False,
    )
    business_account_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    seq: Mapped[int] = mapped_column(Integer, nullable=False)

    from_location: Mapped[str | None] = mapped_column(String(200), nullable=True)
    to_location: Mapped[str] = mapped_column(String(200), nullable=False)

    reason: Mapped[str] = mapped_column(String(100), nullable=False)
    source: Mapped[str] = mapped_column(String(20), nullable=False)

    actor_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    correlation_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    def __repr__(self) -> str:
        return (
            f"<LocationLedgerEntry item={self.item_id} seq={self.seq} "
            f"{self.from_location!r}->{self.to_location!r}>"
        )

    def to_dto(self) -> LocationEntryView:
        return LocationEntryView(
            id=self.id,
            item_id=self.item_id,
            seq=self.seq,
            from_location=self.from_location,
            to_location=self.to_location,
            reason=self.reason,
            source=LedgerSource(self.source),
            created_at=self.created_at,
            actor_id=self.actor_id,
            correlation_id=self.correlation_id,
        )
