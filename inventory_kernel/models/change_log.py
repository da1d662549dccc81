"""
Module: inventory_kernel.models.change_log
Responsibility: ORM persistence for the generalized change log that backs
    undo/redo.
Architecture position: Kernel > Models. May import from db/base.py and
    domain/ only.

Invariants enforced:
    - Written once per mutation, in the mutation's transaction.
    - undone_by_change_id goes from NULL to a value exactly once
      (conditional UPDATE in ChangeLogService plus the ORM listener).
    - undoes_change_id is unique: at most one undo per original change,
      enforced by the database.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import JSON, Boolean, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from inventory_kernel.db.base import Base, UTCDateTime, UUIDString
from inventory_kernel.domain.dtos import ChangeView
from inventory_kernel.domain.values import ChangeType


class ChangeLogEntry(Base):
    """
    Record of one create/update/delete applied to an inventory item.

    previous_data / new_data hold JSON snapshots: full snapshots for create
    and delete, changed fields only for update.
    """

    __tablename__ = "inventory_change_log"

    __table_args__ = (
        UniqueConstraint("undoes_change_id", name="uq_change_log_undoes"),
        Index("idx_change_log_item", "item_id", "created_at"),
        Index("idx_change_log_correlation", "correlation_id"),
    )

    business_account_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    item_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("inventory_items.id"),
        nullable=False,
    )
    change_type: Mapped[str] = mapped_column(String(10), nullable=False)

    previous_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    new_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    actor_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    is_undo: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    undoes_change_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("inventory_change_log.id"),
        nullable=True,
    )
    undone_by_change_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("inventory_change_log.id"),
        nullable=True,
    )

    # Sync state at write time: "pending" when outbox entries were queued
    sync_status: Mapped[str | None] = mapped_column(String(10), nullable=True)
    ledger_seq: Mapped[int | None] = mapped_column(Integer, nullable=True)
    correlation_id: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    def __repr__(self) -> str:
        return (
            f"<ChangeLogEntry {self.id} {self.change_type} item={self.item_id} "
            f"undo={self.is_undo}>"
        )

    @property
    def is_undone(self) -> bool:
        return self.undone_by_change_id is not None

    def to_dto(self) -> ChangeView:
        return ChangeView(
            id=self.id,
            item_id=self.item_id,
            business_account_id=self.business_account_id,
            change_type=ChangeType(self.change_type),
            previous_data=self.previous_data,
            new_data=self.new_data,
            actor_id=self.actor_id,
            reason=self.reason,
            is_undo=self.is_undo,
            undoes_change_id=self.undoes_change_id,
            undone_by_change_id=self.undone_by_change_id,
            correlation_id=self.correlation_id,
            created_at=self.created_at,
            ledger_seq=self.ledger_seq,
        )
