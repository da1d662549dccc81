"""
Module: inventory_kernel.models.item
Responsibility: ORM persistence for inventory items and their per-provider
    marketplace sync state.
Architecture position: Kernel > Models. May import from db/base.py and
    domain/ only.

Invariants enforced:
    - quantity_available is denormalized from the quantity ledger; only
      LedgerService writes it.
    - last_ledger_seq / last_location_seq are the per-item sequence
      counters. They are read and advanced under a row lock on the item.
    - version is the optimistic-lock column; a write against a stale
      version fails instead of silently overwriting.
    - ItemSyncState rows are written by mutations (status -> pending) and
      by the outbox worker (everything else). One row per item and provider.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import Boolean, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from inventory_kernel.db.base import Base, TrackedBase, UTCDateTime, UUIDString
from inventory_kernel.domain.dtos import ItemSnapshot, ProviderSyncState
from inventory_kernel.domain.values import ItemCondition, Provider, SyncStatus


class InventoryItem(TrackedBase):
    """
    Current denormalized state of one inventory lot.

    Contract:
        Mutated only through InventoryService / UndoService (which write the
        ledgers and change log in the same transaction). Never hard-deleted;
        deletion archives the row.
    """

    __tablename__ = "inventory_items"

    __table_args__ = (
        Index("idx_item_business_account", "business_account_id"),
        Index("idx_item_part_color", "part_number", "color_id"),
    )

    business_account_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    part_number: Mapped[str] = mapped_column(String(100), nullable=False)
    color_id: Mapped[str] = mapped_column(String(50), nullable=False)
    location: Mapped[str] = mapped_column(String(200), nullable=False)

    quantity_available: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    quantity_reserved: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    condition: Mapped[str] = mapped_column(String(10), nullable=False)
    price: Mapped[Decimal | None] = mapped_column(nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_by_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    is_archived: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    deleted_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    # Per-item sequence counters (locked counter row pattern)
    last_ledger_seq: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_location_seq: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    sync_states: Mapped[list["ItemSyncState"]] = relationship(
        back_populates="item",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="ItemSyncState.provider",
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return (
            f"<InventoryItem {self.id} {self.part_number}/{self.color_id} "
            f"qty={self.quantity_available} archived={self.is_archived}>"
        )

    def snapshot(self) -> ItemSnapshot:
        return ItemSnapshot(
            name=self.name,
            part_number=self.part_number,
            color_id=self.color_id,
            location=self.location,
            quantity_available=self.quantity_available,
            quantity_reserved=self.quantity_reserved,
            condition=ItemCondition(self.condition),
            price=self.price,
            notes=self.notes,
            is_archived=self.is_archived,
        )

    @property
    def marketplace_sync(self) -> dict[Provider, ProviderSyncState]:
        """The per-provider sync map, as frozen DTOs."""
        return {Provider(s.provider): s.to_dto() for s in self.sync_states}


class ItemSyncState(Base):
    """
    One provider's sync block for one item.

    Guarantees:
        - last_synced_seq only moves forward (enforced by the worker).
        - remote_lot_id survives status changes made by mutations.
    """

    __tablename__ = "inventory_item_sync"

    __table_args__ = (
        UniqueConstraint("item_id", "provider", name="uq_item_sync_provider"),
    )

    item_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("inventory_items.id"),
        nullable=False,
    )
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        default=SyncStatus.PENDING.value,
    )
    remote_lot_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    last_sync_attempt_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    last_synced_seq: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_synced_available: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    item: Mapped[InventoryItem] = relationship(back_populates="sync_states")

    def to_dto(self) -> ProviderSyncState:
        return ProviderSyncState(
            provider=Provider(self.provider),
            status=SyncStatus(self.status),
            remote_lot_id=self.remote_lot_id,
            last_sync_attempt_at=self.last_sync_attempt_at,
            last_synced_seq=self.last_synced_seq,
            last_synced_available=self.last_synced_available,
            error=self.error,
        )
