"""
Module: inventory_kernel.models.outbox
Responsibility: ORM persistence for the marketplace sync outbox.
Architecture position: Kernel > Models. May import from db/base.py and
    domain/ only.

Invariants enforced:
    - idempotency_key is unique; it is derived from item, provider, kind and
      window and stays stable across retries.
    - Status moves pending -> inflight only through a compare-and-swap
      UPDATE on (status, attempt), so a second claim is a no-op.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from inventory_kernel.db.base import Base, UTCDateTime, UUIDString
from inventory_kernel.domain.dtos import OutboxEntryView, SeqWindow
from inventory_kernel.domain.values import OutboxKind, OutboxStatus, Provider


class OutboxEntry(Base):
    """One pending marketplace operation covering a ledger seq window."""

    __tablename__ = "marketplace_outbox"

    __table_args__ = (
        Index("idx_outbox_due", "status", "next_attempt_at"),
        Index("idx_outbox_item_provider", "item_id", "provider", "to_seq_inclusive"),
    )

    business_account_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    item_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("inventory_items.id"),
        nullable=False,
    )
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    kind: Mapped[str] = mapped_column(String(10), nullable=False)

    from_seq_exclusive: Mapped[int] = mapped_column(Integer, nullable=False)
    to_seq_inclusive: Mapped[int] = mapped_column(Integer, nullable=False)

    idempotency_key: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)

    status: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        default=OutboxStatus.PENDING.value,
    )
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_attempt_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    correlation_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    claimed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<OutboxEntry {self.id} {self.provider}/{self.kind} "
            f"({self.from_seq_exclusive},{self.to_seq_inclusive}] {self.status}>"
        )

    @property
    def window(self) -> SeqWindow:
        return SeqWindow(self.from_seq_exclusive, self.to_seq_inclusive)

    def to_dto(self) -> OutboxEntryView:
        return OutboxEntryView(
            id=self.id,
            item_id=self.item_id,
            business_account_id=self.business_account_id,
            provider=Provider(self.provider),
            kind=OutboxKind(self.kind),
            window=self.window,
            idempotency_key=self.idempotency_key,
            status=OutboxStatus(self.status),
            attempt=self.attempt,
            next_attempt_at=self.next_attempt_at,
            created_at=self.created_at,
            last_error=self.last_error,
            correlation_id=self.correlation_id,
        )
