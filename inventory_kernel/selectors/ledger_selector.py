"""
Module: inventory_kernel.selectors.ledger_selector
Responsibility: Read-only queries over the quantity and location ledgers:
    ordered history, balances and locations at a seq, window deltas and a
    replay check of the denormalized quantity.
Architecture position: Kernel > Selectors.

Invariants checked by verify_item_ledger():
    - seqs run 1..n with no gaps,
    - pre[n] == post[n-1] and post == pre + delta on every row,
    - the last post equals the item's quantity_available.
"""

from uuid import UUID

from sqlalchemy import func, select

from inventory_kernel.domain.dtos import (
    LedgerEntryView,
    LedgerVerification,
    LocationEntryView,
    SeqWindow,
)
from inventory_kernel.exceptions import ItemNotFoundError
from inventory_kernel.models.item import InventoryItem
from inventory_kernel.models.ledger import LocationLedgerEntry, QuantityLedgerEntry
from inventory_kernel.selectors.base import BaseSelector


class LedgerSelector(BaseSelector[QuantityLedgerEntry]):
    """
    Ledger reads, ordered by seq.

    Contract:
        seq is the only ordering key; created_at is never used to order.
    """

    def get_item_quantity_ledger(
        self,
        item_id: UUID,
        since_seq: int | None = None,
    ) -> list[LedgerEntryView]:
        """Quantity entries in seq order, optionally only those after ``since_seq``."""
        query = select(QuantityLedgerEntry).where(QuantityLedgerEntry.item_id == item_id)
        if since_seq is not None:
            query = query.where(QuantityLedgerEntry.seq > since_seq)
        rows = self.session.execute(query.order_by(QuantityLedgerEntry.seq)).scalars()
        return [row.to_dto() for row in rows]

    def get_item_location_ledger(self, item_id: UUID) -> list[LocationEntryView]:
        rows = self.session.execute(
            select(LocationLedgerEntry)
            .where(LocationLedgerEntry.item_id == item_id)
            .order_by(LocationLedgerEntry.seq)
        ).scalars()
        return [row.to_dto() for row in rows]

    def calculate_on_hand_quantity(self, item_id: UUID) -> int:
        """Sum of all deltas; what the ledger says the item should hold."""
        total = self.session.execute(
            select(func.coalesce(func.sum(QuantityLedgerEntry.delta_available), 0)).where(
                QuantityLedgerEntry.item_id == item_id
            )
        ).scalar_one()
        return int(total)

    def current_balance(self, item_id: UUID) -> int:
        """post_available of the highest seq, 0 for an item with no entries."""
        return self.balance_at_seq(item_id, None)

    def balance_at_seq(self, item_id: UUID, seq: int | None) -> int:
        """
        post_available of the last entry with seq <= ``seq``.

        ``seq=None`` means the latest entry. Returns 0 when no entry
        qualifies.
        """
        query = select(QuantityLedgerEntry.post_available).where(
            QuantityLedgerEntry.item_id == item_id
        )
        if seq is not None:
            query = query.where(QuantityLedgerEntry.seq <= seq)
        value = self.session.execute(
            query.order_by(QuantityLedgerEntry.seq.desc()).limit(1)
        ).scalar_one_or_none()
        return value if value is not None else 0

    def location_at_seq(self, item_id: UUID, seq: int) -> str | None:
        """
        Location the item had once quantity entry ``seq`` was written.

        Every move is written by the same mutation, under the same
        correlation id, as a quantity entry; the answer is the last move
        belonging to a quantity entry at or before ``seq``. None when no
        move qualifies.
        """
        mutations = select(QuantityLedgerEntry.correlation_id).where(
            QuantityLedgerEntry.item_id == item_id,
            QuantityLedgerEntry.seq <= seq,
            QuantityLedgerEntry.correlation_id.is_not(None),
        )
        return self.session.execute(
            select(LocationLedgerEntry.to_location)
            .where(
                LocationLedgerEntry.item_id == item_id,
                LocationLedgerEntry.correlation_id.in_(mutations),
            )
            .order_by(LocationLedgerEntry.seq.desc())
            .limit(1)
        ).scalar_one_or_none()

    def window_delta(self, item_id: UUID, window: SeqWindow) -> int:
        """Net quantity change over (from_seq_exclusive, to_seq_inclusive]."""
        total = self.session.execute(
            select(func.coalesce(func.sum(QuantityLedgerEntry.delta_available), 0)).where(
                QuantityLedgerEntry.item_id == item_id,
                QuantityLedgerEntry.seq > window.from_seq_exclusive,
                QuantityLedgerEntry.seq <= window.to_seq_inclusive,
            )
        ).scalar_one()
        return int(total)

    def verify_item_ledger(self, item_id: UUID) -> LedgerVerification:
        """
        Replay the quantity ledger and compare with the item row.

        Raises:
            ItemNotFoundError: No such item.
        """
        item = self.session.get(InventoryItem, item_id)
        if item is None:
            raise ItemNotFoundError(str(item_id))

        entries = self.get_item_quantity_ledger(item_id)
        problems: list[str] = []
        gapless = True
        chained = True
        running = 0

        for expected_seq, entry in enumerate(entries, start=1):
            if entry.seq != expected_seq:
                gapless = False
                problems.append(f"seq {entry.seq} found where {expected_seq} expected")
            if entry.pre_available != running:
                chained = False
                problems.append(
                    f"seq {entry.seq}: pre_available {entry.pre_available} != previous post {running}"
                )
            if entry.pre_available + entry.delta_available != entry.post_available:
                chained = False
                problems.append(f"seq {entry.seq}: pre + delta != post")
            running = entry.post_available

        if running != item.quantity_available:
            problems.append(
                f"replayed {running} != denormalized {item.quantity_available}"
            )

        return LedgerVerification(
            item_id=item_id,
            entry_count=len(entries),
            replayed_available=running,
            denormalized_available=item.quantity_available,
            gapless=gapless,
            chained=chained,
            problems=tuple(problems),
        )
