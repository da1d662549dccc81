"""
UndoService -- compensating changes for change log entries.

An undo never deletes or edits history. It writes a new change entry with
``is_undo=True`` that points at the original, performs the inverse
mutation through the same building blocks InventoryService uses (so ledger
rows and outbox entries are written exactly as for a normal mutation) and
links the original's ``undone_by_change_id``.

Inverse actions:
    create -> archive the item (change type ``delete``)
    update -> restore the changed fields from ``previous_data``
    delete -> un-archive and restore the pre-delete fields (``create``)

Undoing an undo is allowed; it is just another change entry, which gives
redo.
"""

from uuid import UUID

from sqlalchemy.exc import IntegrityError

from inventory_kernel.domain.dtos import Actor, UndoResult
from inventory_kernel.domain.values import ChangeType
from inventory_kernel.exceptions import (
    ChangeAlreadyUndoneError,
    ConsistencyError,
    ItemNotFoundError,
    UndoTargetMissingError,
)
from inventory_kernel.logging_config import LogContext, get_logger
from inventory_kernel.services.inventory_service import InventoryService
from inventory_kernel.utils.idempotency import new_correlation_id

logger = get_logger("services.undo")

_INVERSE = {
    ChangeType.CREATE: ChangeType.DELETE,
    ChangeType.UPDATE: ChangeType.UPDATE,
    ChangeType.DELETE: ChangeType.CREATE,
}


class UndoService:
    """Applies compensating changes in the caller's transaction."""

    def __init__(self, inventory: InventoryService):
        self._inventory = inventory
        self.session = inventory.session

    def undo(
        self,
        change_id: UUID,
        actor: Actor,
        reason: str | None = None,
        correlation_id: str | None = None,
    ) -> UndoResult:
        """
        Undo one change log entry. Owner only.

        Preconditions: the change exists and has not been undone.
        Postconditions: a new change entry with ``undoes_change_id`` set,
            the original's ``undone_by_change_id`` set to it, and the item
            returned to the state the original replaced.

        Raises:
            ChangeNotFoundError: No such change.
            ChangeAlreadyUndoneError: The change was undone already, either
                before this call or by a concurrent undo.
            UndoTargetMissingError: The item no longer exists (or is
                archived) where the inverse needs it.
            AuthorizationError: Actor is not an owner of the account.
        """
        inv = self._inventory
        correlation_id = correlation_id or new_correlation_id()

        with LogContext.bind(correlation_id=correlation_id, actor_id=actor.actor_id):
            original = inv.changes.get(change_id, for_update=True)
            inv.authorizer.require_owner(actor, original.business_account_id)
            if original.is_undone:
                raise ChangeAlreadyUndoneError(str(change_id), str(original.undone_by_change_id))

            try:
                item = inv.ledger.lock_item(original.item_id)
            except ItemNotFoundError:
                raise UndoTargetMissingError(str(change_id), str(original.item_id)) from None

            change_type = ChangeType(original.change_type)
            before = item.snapshot()
            common = dict(actor_id=actor.actor_id, correlation_id=correlation_id)

            if change_type is ChangeType.CREATE:
                if item.is_archived:
                    raise UndoTargetMissingError(str(change_id), str(item.id))
                written = inv.apply_archive(item, location_reason="undo_create", **common)
                previous_data, new_data = before.to_dict(), item.snapshot().to_dict()

            elif change_type is ChangeType.UPDATE:
                if item.is_archived:
                    raise UndoTargetMissingError(str(change_id), str(item.id))
                restore = dict(original.previous_data or {})
                target = before.with_changes(restore)
                written = inv.apply_update(item, target, location_reason="undo_update", **common)
                previous_data = before.to_dict(only=set(restore))
                new_data = target.to_dict(only=set(restore))

            else:
                if not item.is_archived:
                    raise ConsistencyError(
                        f"Cannot undo delete {change_id}: item {item.id} is not archived"
                    )
                target = before.with_changes(dict(original.previous_data or {}))
                written = inv.apply_restore(item, target, location_reason="undo_delete", **common)
                previous_data, new_data = before.to_dict(), item.snapshot().to_dict()

            try:
                undo_entry = inv.changes.record(
                    item_id=item.id,
                    business_account_id=item.business_account_id,
                    change_type=_INVERSE[change_type],
                    actor_id=actor.actor_id,
                    correlation_id=correlation_id,
                    previous_data=previous_data,
                    new_data=new_data,
                    reason=reason or f"undo {change_type.value}",
                    ledger_seq=written.ledger_seq,
                    sync_queued=bool(written.outbox_entries),
                    undoes_change_id=original.id,
                )
            except IntegrityError as exc:
                # Another transaction inserted its undo entry first
                raise ChangeAlreadyUndoneError(str(change_id), None) from exc

            inv.changes.link_undo(original.id, undo_entry.id)

            logger.info(
                "change_undone",
                extra={
                    "change_id": str(original.id),
                    "undo_change_id": str(undo_entry.id),
                    "item_id": str(item.id),
                    "compensating_action": _INVERSE[change_type].value,
                },
            )
        return UndoResult(
            original_change_id=original.id,
            undo_change_id=undo_entry.id,
            item_id=item.id,
            compensating_action=_INVERSE[change_type],
            ledger_seq=written.ledger_seq,
            outbox_entries=written.outbox_entries,
        )
