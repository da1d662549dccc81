"""
ChangeLogService -- writes the change log and links undo pairs.

Responsibility:
    Records one ChangeLogEntry per mutation and sets an original entry's
    ``undone_by_change_id`` exactly once.

Architecture position:
    Kernel > Services. Used by InventoryService and UndoService.

Invariants enforced:
    - The undo link is a conditional UPDATE
      (``WHERE undone_by_change_id IS NULL``). Zero affected rows means a
      competing undo won; the caller gets ChangeAlreadyUndoneError and its
      transaction rolls back.
    - ``undoes_change_id`` is unique at the database level, so two undo
      entries can never point at the same original.
"""

from typing import Any
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.orm import Session

from inventory_kernel.domain.clock import Clock, SystemClock
from inventory_kernel.domain.values import ChangeType, SyncStatus
from inventory_kernel.exceptions import ChangeAlreadyUndoneError, ChangeNotFoundError
from inventory_kernel.logging_config import get_logger
from inventory_kernel.models.change_log import ChangeLogEntry

logger = get_logger("services.change_log")


class ChangeLogService:
    """Append and link change log entries inside the caller's transaction."""

    def __init__(self, session: Session, clock: Clock | None = None):
        self.session = session
        self._clock = clock or SystemClock()

    def record(
        self,
        *,
        item_id: UUID,
        business_account_id: UUID,
        change_type: ChangeType,
        actor_id: UUID,
        correlation_id: str,
        previous_data: dict[str, Any] | None = None,
        new_data: dict[str, Any] | None = None,
        reason: str | None = None,
        ledger_seq: int | None = None,
        sync_queued: bool = False,
        undoes_change_id: UUID | None = None,
    ) -> ChangeLogEntry:
        """Insert one change log entry. ``undoes_change_id`` marks it as an undo."""
        entry = ChangeLogEntry(
            item_id=item_id,
            business_account_id=business_account_id,
            change_type=change_type.value,
            previous_data=previous_data,
            new_data=new_data,
            actor_id=actor_id,
            reason=reason,
            is_undo=undoes_change_id is not None,
            undoes_change_id=undoes_change_id,
            sync_status=SyncStatus.PENDING.value if sync_queued else None,
            ledger_seq=ledger_seq,
            correlation_id=correlation_id,
            created_at=self._clock.now(),
        )
        self.session.add(entry)
        self.session.flush()

        logger.info(
            "change_recorded",
            extra={
                "change_id": str(entry.id),
                "item_id": str(item_id),
                "change_type": change_type.value,
                "is_undo": entry.is_undo,
                "ledger_seq": ledger_seq,
            },
        )
        return entry

    def get(self, change_id: UUID, for_update: bool = False) -> ChangeLogEntry:
        """
        Load a change log entry.

        Raises:
            ChangeNotFoundError: No such change.
        """
        entry = self.session.get(
            ChangeLogEntry,
            change_id,
            with_for_update=for_update,
            populate_existing=for_update,
        )
        if entry is None:
            raise ChangeNotFoundError(str(change_id))
        return entry

    def link_undo(self, original_id: UUID, undo_id: UUID) -> None:
        """
        Set ``original.undone_by_change_id = undo_id``, once.

        Raises:
            ChangeAlreadyUndoneError: The original already carries a link.
        """
        result = self.session.execute(
            update(ChangeLogEntry)
            .where(
                ChangeLogEntry.id == original_id,
                ChangeLogEntry.undone_by_change_id.is_(None),
            )
            .values(undone_by_change_id=undo_id)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            current = self.get(original_id, for_update=True)
            raise ChangeAlreadyUndoneError(
                str(original_id),
                str(current.undone_by_change_id) if current.undone_by_change_id else None,
            )

        # Keep the identity map in step with the row we just updated
        self.session.expire(self.get(original_id), ["undone_by_change_id"])
        logger.info(
            "change_undo_linked",
            extra={"change_id": str(original_id), "undone_by_change_id": str(undo_id)},
        )
