"""
ORM-level append-only enforcement.

SQLAlchemy fires ``before_update`` / ``before_delete`` before SQL reaches
the database. The listeners registered here reject:

Entity                  | Rule
------------------------|---------------------------------------------------
QuantityLedgerEntry     | never updated, never deleted
LocationLedgerEntry     | never updated, never deleted
ChangeLogEntry          | only undone_by_change_id may change, and only from
                        | NULL to a value; never deleted

Bulk Core statements bypass mapper events. The one bulk write against the
change log (linking an undo) carries ``undone_by_change_id IS NULL`` in its
WHERE clause, so the same rule holds there.
"""

from sqlalchemy import event, inspect

from inventory_kernel.exceptions import ImmutabilityViolationError
from inventory_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

_CHANGE_LOG_MUTABLE_FIELDS = frozenset({"undone_by_change_id"})


def _reject(entity_type: str, target, operation: str, reason: str) -> None:
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(target.id),
            "operation": operation,
        },
    )
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(target.id),
        reason=reason,
    )


def _check_ledger_update(mapper, connection, target):
    _reject(
        type(target).__name__,
        target,
        "UPDATE",
        "Ledger entries are append-only and cannot be modified",
    )


def _check_ledger_delete(mapper, connection, target):
    _reject(
        type(target).__name__,
        target,
        "DELETE",
        "Ledger entries are append-only and cannot be deleted",
    )


def _check_change_log_update(mapper, connection, target):
    state = inspect(target)
    changed = {
        attr.key for attr in state.attrs if attr.history.has_changes()
    }
    illegal = changed - _CHANGE_LOG_MUTABLE_FIELDS
    if illegal:
        _reject(
            "ChangeLogEntry",
            target,
            "UPDATE",
            f"Change log fields are immutable: {sorted(illegal)}",
        )
    if "undone_by_change_id" in changed:
        deleted = state.attrs.undone_by_change_id.history.deleted
        if deleted and deleted[0] is not None:
            _reject(
                "ChangeLogEntry",
                target,
                "UPDATE",
                "undone_by_change_id can only be set once",
            )


def _check_change_log_delete(mapper, connection, target):
    _reject(
        "ChangeLogEntry",
        target,
        "DELETE",
        "Change log entries cannot be deleted",
    )


def _listeners():
    from inventory_kernel.models.change_log import ChangeLogEntry
    from inventory_kernel.models.ledger import LocationLedgerEntry, QuantityLedgerEntry

    return [
        (QuantityLedgerEntry, "before_update", _check_ledger_update),
        (QuantityLedgerEntry, "before_delete", _check_ledger_delete),
        (LocationLedgerEntry, "before_update", _check_ledger_update),
        (LocationLedgerEntry, "before_delete", _check_ledger_delete),
        (ChangeLogEntry, "before_update", _check_change_log_update),
        (ChangeLogEntry, "before_delete", _check_change_log_delete),
    ]


def register_immutability_listeners() -> None:
    """Register all append-only listeners. Safe to call more than once."""
    for target, name, fn in _listeners():
        if not event.contains(target, name, fn):
            event.listen(target, name, fn)
