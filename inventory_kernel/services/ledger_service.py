"""
LedgerService -- append-only quantity and location ledgers.

Responsibility:
    Appends ledger rows and keeps the item's denormalized
    ``quantity_available`` / ``location`` in step with them, in the caller's
    transaction.

Architecture position:
    Kernel > Services. Used by InventoryService and UndoService; never calls
    commit.

Invariants enforced:
    - seq = last seq of the item + 1, allocated from the counter column on the
      item row while that row is locked (SELECT ... FOR UPDATE). Never
      MAX(seq) + 1.
    - pre == current denormalized quantity, post == pre + delta, and the
      item's quantity is patched to post in the same flush.
    - A negative post balance is rejected unless the caller opts in.

Failure modes:
    - ItemNotFoundError: the item row does not exist.
    - NegativeBalanceError: the append would leave a negative balance.
    - OptimisticLockError: a concurrent writer changed the item first.
"""

from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from inventory_kernel.domain.clock import Clock, SystemClock
from inventory_kernel.domain.dtos import LedgerEntryView, LocationEntryView
from inventory_kernel.domain.values import LedgerReason, LedgerSource
from inventory_kernel.exceptions import (
    ItemNotFoundError,
    NegativeBalanceError,
    OptimisticLockError,
)
from inventory_kernel.logging_config import get_logger
from inventory_kernel.models.item import InventoryItem
from inventory_kernel.models.ledger import LocationLedgerEntry, QuantityLedgerEntry

logger = get_logger("services.ledger")


class LedgerService:
    """
    Writes the quantity and location ledgers.

    Contract:
        Every write happens inside the caller's transaction. If the caller
        rolls back, no seq is consumed and no ledger row survives.

    Non-goals:
        - Does not enqueue marketplace sync; callers do that with the
          returned seq.
        - Does not check authorization.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self.session = session
        self._clock = clock or SystemClock()

    def lock_item(self, item_id: UUID) -> InventoryItem:
        """
        Load the item under a row lock, flushing pending changes first.

        Postconditions: The returned instance reflects the database row and
            the row is locked until the transaction ends.

        Raises:
            ItemNotFoundError: No such item.
        """
        self.session.flush()
        item = self.session.get(
            InventoryItem,
            item_id,
            with_for_update=True,
            populate_existing=True,
        )
        if item is None:
            raise ItemNotFoundError(str(item_id))
        return item

    def append(
        self,
        item_id: UUID,
        delta: int,
        reason: LedgerReason,
        source: LedgerSource = LedgerSource.USER,
        actor_id: UUID | None = None,
        correlation_id: str | None = None,
        order_id: str | None = None,
        allow_negative: bool = False,
    ) -> LedgerEntryView:
        """
        Append one quantity ledger entry.

        Preconditions: item exists (archived items are allowed; deletion
            itself writes an entry after archiving).
        Postconditions: One new row with seq = previous seq + 1; the item's
            quantity_available equals the row's post_available.

        Args:
            item_id: Item to adjust.
            delta: Signed change to available quantity. Zero is allowed and
                records a sync-relevant change that moved no stock.
            reason: Why the quantity changed.
            source: Who originated the change.
            actor_id: User behind the change, if any.
            correlation_id: Shared with the change log and outbox rows.
            order_id: External order reference for order_sale entries.
            allow_negative: Permit a negative resulting balance.

        Raises:
            NegativeBalanceError: post would be < 0 and allow_negative is False.
            OptimisticLockError: concurrent modification of the item.
        """
        item = self.lock_item(item_id)

        pre = item.quantity_available
        post = pre + delta
        if post < 0 and not allow_negative:
            logger.warning(
                "ledger_negative_balance_rejected",
                extra={
                    "item_id": str(item.id),
                    "pre_available": pre,
                    "delta": delta,
                    "reason": reason.value,
                },
            )
            raise NegativeBalanceError(str(item.id), pre, delta, reason.value)

        seq = item.last_ledger_seq + 1
        item.last_ledger_seq = seq
        item.quantity_available = post

        entry = QuantityLedgerEntry(
            item_id=item.id,
            business_account_id=item.business_account_id,
            seq=seq,
            pre_available=pre,
            post_available=post,
            delta_available=delta,
            reason=reason.value,
            source=source.value,
            actor_id=actor_id,
            order_id=order_id,
            correlation_id=correlation_id,
            created_at=self._clock.now(),
        )
        self.session.add(entry)
        self._flush(item)

        logger.info(
            "ledger_entry_appended",
            extra={
                "item_id": str(item.id),
                "seq": seq,
                "pre_available": pre,
                "post_available": post,
                "delta": delta,
                "reason": reason.value,
                "source": source.value,
            },
        )
        return entry.to_dto()

    def set_available(
        self,
        item_id: UUID,
        target: int,
        reason: LedgerReason,
        **kwargs,
    ) -> LedgerEntryView:
        """Append whatever delta brings the item to ``target``."""
        item = self.lock_item(item_id)
        return self.append(item.id, target - item.quantity_available, reason, **kwargs)

    def append_location(
        self,
        item_id: UUID,
        to_location: str,
        reason: str,
        source: LedgerSource = LedgerSource.USER,
        actor_id: UUID | None = None,
        correlation_id: str | None = None,
        from_location: str | None = None,
    ) -> LocationEntryView:
        """
        Append one location ledger entry and move the item.

        ``from_location`` defaults to the item's current location; pass it
        explicitly for the first entry of a new item (where it is None).
        """
        item = self.lock_item(item_id)

        if from_location is None and item.last_location_seq > 0:
            from_location = item.location

        seq = item.last_location_seq + 1
        item.last_location_seq = seq
        item.location = to_location

        entry = LocationLedgerEntry(
            item_id=item.id,
            business_account_id=item.business_account_id,
            seq=seq,
            from_location=from_location,
            to_location=to_location,
            reason=reason,
            source=source.value,
            actor_id=actor_id,
            correlation_id=correlation_id,
            created_at=self._clock.now(),
        )
        self.session.add(entry)
        self._flush(item)

        logger.info(
            "location_entry_appended",
            extra={
                "item_id": str(item.id),
                "seq": seq,
                "from_location": from_location,
                "to_location": to_location,
                "reason": reason,
            },
        )
        return entry.to_dto()

    def _flush(self, item: InventoryItem) -> None:
        try:
            self.session.flush()
        except (StaleDataError, IntegrityError) as exc:
            logger.warning(
                "ledger_concurrent_write_detected",
                extra={"item_id": str(item.id), "error": type(exc).__name__},
            )
            raise OptimisticLockError("InventoryItem", str(item.id)) from exc
