"""
InventoryService -- mutation entry points for inventory items.

Responsibility:
    add / update / delete an item, and record marketplace order sales. Each
    call, in one transaction:
      1. writes the item row,
      2. appends quantity (and location) ledger entries,
      3. writes a ChangeLogEntry (user mutations only),
      4. enqueues one outbox entry per enabled provider and flips that
         provider's sync status to pending.

Architecture position:
    Kernel > Services -- imperative shell over LedgerService,
    ChangeLogService, OutboxService, SyncStateService and
    MarketplaceSettingsService. UndoService reuses the ``apply_*`` methods
    so a compensation writes exactly what a normal mutation would.

Invariants enforced:
    - No partial writes: every step runs in the caller's transaction and
      any error propagates before commit.
    - All rows written by one call share a correlation id.
    - Marketplace-visible changes always get a ledger seq (a zero-delta
      entry when the quantity did not move) so they have a sync window.

Failure modes:
    - ValidationError: bad field values, negative quantities, unknown
      fields, archived item.
    - AuthorizationError: update/delete by a non-owner.
    - ItemNotFoundError, NegativeBalanceError, OptimisticLockError.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from inventory_kernel.domain.clock import Clock, SystemClock
from inventory_kernel.domain.dtos import (
    MARKETPLACE_FIELDS,
    SNAPSHOT_FIELDS,
    Actor,
    EnqueueResult,
    ItemSnapshot,
    MutationResult,
    SeqWindow,
)
from inventory_kernel.domain.policies import OutboxPolicy
from inventory_kernel.domain.values import (
    DELETED_LOCATION,
    ChangeType,
    ItemCondition,
    LedgerReason,
    LedgerSource,
    OutboxKind,
    Provider,
)
from inventory_kernel.exceptions import ValidationError
from inventory_kernel.logging_config import LogContext, get_logger
from inventory_kernel.models.item import InventoryItem
from inventory_kernel.services.authorization import Authorizer, OwnerAuthorizer
from inventory_kernel.services.change_log_service import ChangeLogService
from inventory_kernel.services.ledger_service import LedgerService
from inventory_kernel.services.marketplace_settings_service import MarketplaceSettingsService
from inventory_kernel.services.outbox_service import OutboxService
from inventory_kernel.services.sync_state_service import SyncStateService
from inventory_kernel.utils.idempotency import new_correlation_id

logger = get_logger("services.inventory")

UPDATABLE_FIELDS = frozenset(SNAPSHOT_FIELDS) - {"is_archived"}

# Columns copied straight from a snapshot onto the item; quantity and
# location go through the ledgers instead
_PLAIN_FIELDS = ("name", "part_number", "color_id", "quantity_reserved", "condition", "price", "notes")


@dataclass(frozen=True)
class _Written:
    """What one apply_* step wrote, before the change log entry exists."""

    ledger_seq: int | None
    outbox_entries: tuple[EnqueueResult, ...]


class InventoryService:
    """
    Mutation entry points.

    Contract:
        Callers own the transaction (use ``session_scope()``). Nothing is
        committed here.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        authorizer: Authorizer | None = None,
        settings: MarketplaceSettingsService | None = None,
        outbox_policy: OutboxPolicy | None = None,
    ):
        self.session = session
        self._clock = clock or SystemClock()
        self._authorizer = authorizer or OwnerAuthorizer()
        self.settings = settings or MarketplaceSettingsService(session)
        self.ledger = LedgerService(session, self._clock)
        self.changes = ChangeLogService(session, self._clock)
        self.outbox = OutboxService(session, self._clock, outbox_policy)
        self.sync_states = SyncStateService(session, self._clock)

    @property
    def authorizer(self) -> Authorizer:
        return self._authorizer

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    def add_inventory_item(
        self,
        actor: Actor,
        *,
        name: str,
        part_number: str,
        color_id: str,
        location: str,
        quantity_available: int,
        condition: ItemCondition | str = ItemCondition.NEW,
        quantity_reserved: int = 0,
        price: Decimal | str | None = None,
        notes: str | None = None,
        correlation_id: str | None = None,
    ) -> MutationResult:
        """
        Create an item in the actor's business account.

        Postconditions: ledger seq 1 (initial_stock), location seq 1
            (None -> location), one ``create`` change entry, and a
            ``create`` outbox entry for window (0, 1] per enabled provider.
        """
        snapshot = _validated_snapshot(
            name=name,
            part_number=part_number,
            color_id=color_id,
            location=location,
            quantity_available=quantity_available,
            quantity_reserved=quantity_reserved,
            condition=condition,
            price=price,
            notes=notes,
        )
        correlation_id = correlation_id or new_correlation_id()
        now = self._clock.now()

        with LogContext.bind(correlation_id=correlation_id, actor_id=actor.actor_id):
            item = InventoryItem(
                business_account_id=actor.business_account_id,
                name=snapshot.name,
                part_number=snapshot.part_number,
                color_id=snapshot.color_id,
                location=snapshot.location,
                quantity_available=0,
                quantity_reserved=snapshot.quantity_reserved,
                condition=snapshot.condition.value,
                price=snapshot.price,
                notes=snapshot.notes,
                created_by_id=actor.actor_id,
                is_archived=False,
                last_ledger_seq=0,
                last_location_seq=0,
                created_at=now,
                updated_at=now,
            )
            self.session.add(item)
            self.session.flush()

            entry = self.ledger.append(
                item.id,
                snapshot.quantity_available,
                LedgerReason.INITIAL_STOCK,
                LedgerSource.USER,
                actor_id=actor.actor_id,
                correlation_id=correlation_id,
            )
            self.ledger.append_location(
                item.id,
                snapshot.location,
                reason="initial_stock",
                actor_id=actor.actor_id,
                correlation_id=correlation_id,
            )
            queued = self._enqueue_sync(item, OutboxKind.CREATE, entry.seq, correlation_id)

            change = self.changes.record(
                item_id=item.id,
                business_account_id=item.business_account_id,
                change_type=ChangeType.CREATE,
                actor_id=actor.actor_id,
                correlation_id=correlation_id,
                previous_data=None,
                new_data=item.snapshot().to_dict(),
                ledger_seq=entry.seq,
                sync_queued=bool(queued),
            )

            logger.info(
                "inventory_item_added",
                extra={
                    "item_id": str(item.id),
                    "quantity_available": snapshot.quantity_available,
                    "providers_queued": [q.entry.provider.value for q in queued],
                },
            )
        return MutationResult(
            item_id=item.id,
            change_id=change.id,
            correlation_id=correlation_id,
            ledger_seq=entry.seq,
            outbox_entries=queued,
        )

    def update_inventory_item(
        self,
        actor: Actor,
        item_id: UUID,
        *,
        reason: str | None = None,
        location_reason: str | None = None,
        correlation_id: str | None = None,
        **changes: Any,
    ) -> MutationResult:
        """
        Patch the supplied fields of an item. Owner only.

        Args:
            actor: Must be an owner of the item's business account.
            item_id: Item to update.
            reason: Free-text reason stored on the change entry.
            location_reason: Reason stored on the location ledger entry
                (default ``manual_move``).
            correlation_id: Optional caller-supplied correlation id.
            **changes: Any of name, part_number, color_id, location,
                quantity_available, quantity_reserved, condition, price,
                notes.

        Returns:
            MutationResult; ``change_id`` is None when nothing changed.
        """
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown or read-only fields: {sorted(unknown)}")

        correlation_id = correlation_id or new_correlation_id()
        with LogContext.bind(correlation_id=correlation_id, actor_id=actor.actor_id, item_id=item_id):
            item = self.ledger.lock_item(item_id)
            self._authorizer.require_owner(actor, item.business_account_id)
            if item.is_archived:
                raise ValidationError(f"Item {item_id} is archived", field="is_archived")

            before = item.snapshot()
            target = _validated_snapshot(**{**before.to_dict(), **_jsonable(changes)})
            changed = before.diff(target)
            if not changed:
                logger.info("inventory_item_unchanged", extra={"item_id": str(item_id)})
                return MutationResult(item_id=item.id, change_id=None, correlation_id=correlation_id)

            written = self.apply_update(
                item,
                target,
                actor_id=actor.actor_id,
                correlation_id=correlation_id,
                location_reason=location_reason or "manual_move",
            )
            change = self.changes.record(
                item_id=item.id,
                business_account_id=item.business_account_id,
                change_type=ChangeType.UPDATE,
                actor_id=actor.actor_id,
                correlation_id=correlation_id,
                previous_data=before.to_dict(only=changed),
                new_data=target.to_dict(only=changed),
                reason=reason,
                ledger_seq=written.ledger_seq,
                sync_queued=bool(written.outbox_entries),
            )
            logger.info(
                "inventory_item_updated",
                extra={"item_id": str(item.id), "changed_fields": sorted(changed)},
            )
        return MutationResult(
            item_id=item.id,
            change_id=change.id,
            correlation_id=correlation_id,
            ledger_seq=written.ledger_seq,
            outbox_entries=written.outbox_entries,
        )

    def delete_inventory_item(
        self,
        actor: Actor,
        item_id: UUID,
        *,
        reason: str | None = None,
        correlation_id: str | None = None,
    ) -> MutationResult:
        """
        Archive an item. Owner only.

        Postconditions: is_archived, quantity 0 (item_deleted ledger entry),
            location DELETED, ``delete`` change entry, ``delete`` outbox
            entries.
        """
        correlation_id = correlation_id or new_correlation_id()
        with LogContext.bind(correlation_id=correlation_id, actor_id=actor.actor_id, item_id=item_id):
            item = self.ledger.lock_item(item_id)
            self._authorizer.require_owner(actor, item.business_account_id)
            if item.is_archived:
                raise ValidationError(f"Item {item_id} is already archived", field="is_archived")

            before = item.snapshot()
            written = self.apply_archive(
                item,
                actor_id=actor.actor_id,
                correlation_id=correlation_id,
                location_reason=reason or "item_deleted",
            )
            change = self.changes.record(
                item_id=item.id,
                business_account_id=item.business_account_id,
                change_type=ChangeType.DELETE,
                actor_id=actor.actor_id,
                correlation_id=correlation_id,
                previous_data=before.to_dict(),
                new_data=item.snapshot().to_dict(),
                reason=reason,
                ledger_seq=written.ledger_seq,
                sync_queued=bool(written.outbox_entries),
            )
            logger.info("inventory_item_deleted", extra={"item_id": str(item.id)})
        return MutationResult(
            item_id=item.id,
            change_id=change.id,
            correlation_id=correlation_id,
            ledger_seq=written.ledger_seq,
            outbox_entries=written.outbox_entries,
        )

    def record_order_sale(
        self,
        item_id: UUID,
        quantity: int,
        source: Provider,
        order_id: str,
        *,
        allow_negative: bool = False,
        correlation_id: str | None = None,
    ) -> MutationResult:
        """
        Decrement stock for an order placed on a marketplace.

        The selling marketplace already reduced its own lot, so it is not
        sent an update; its known quantity is shifted instead. Every other
        enabled provider gets an ``update`` window, unless the item is
        archived: the sale is still booked in the ledger, but an archived
        item has no lots to update and must not be listed again.

        Raises:
            ValidationError: quantity is not positive.
            NegativeBalanceError: stock would go negative and
                ``allow_negative`` is False.
        """
        if quantity <= 0:
            raise ValidationError("Order quantity must be positive", field="quantity")

        correlation_id = correlation_id or new_correlation_id()
        with LogContext.bind(correlation_id=correlation_id, item_id=item_id):
            item = self.ledger.lock_item(item_id)
            entry = self.ledger.append(
                item.id,
                -quantity,
                LedgerReason.ORDER_SALE,
                LedgerSource.for_provider(source),
                correlation_id=correlation_id,
                order_id=order_id,
                allow_negative=allow_negative,
            )
            self.sync_states.shift_anchor(item.id, source, -quantity)
            if item.is_archived:
                queued = ()
            else:
                queued = self._enqueue_sync(
                    item, OutboxKind.UPDATE, entry.seq, correlation_id, exclude=source
                )
            logger.info(
                "order_sale_recorded",
                extra={
                    "item_id": str(item.id),
                    "order_id": order_id,
                    "quantity": quantity,
                    "source": source.value,
                    "archived": item.is_archived,
                },
            )
        return MutationResult(
            item_id=item.id,
            change_id=None,
            correlation_id=correlation_id,
            ledger_seq=entry.seq,
            outbox_entries=queued,
        )

    # ------------------------------------------------------------------
    # Building blocks shared with UndoService
    # ------------------------------------------------------------------

    def apply_update(
        self,
        item: InventoryItem,
        target: ItemSnapshot,
        *,
        actor_id: UUID,
        correlation_id: str,
        location_reason: str,
    ) -> _Written:
        """Bring a locked, active item to ``target`` through the ledgers."""
        before = item.snapshot()
        changed = before.diff(target)

        for name in _PLAIN_FIELDS:
            if name in changed:
                value = getattr(target, name)
                setattr(item, name, value.value if isinstance(value, ItemCondition) else value)
        item.updated_at = self._clock.now()

        if "location" in changed:
            self.ledger.append_location(
                item.id,
                target.location,
                reason=location_reason,
                actor_id=actor_id,
                correlation_id=correlation_id,
            )

        if not changed & MARKETPLACE_FIELDS:
            self.session.flush()
            return _Written(ledger_seq=None, outbox_entries=())

        entry = self.ledger.append(
            item.id,
            target.quantity_available - before.quantity_available,
            LedgerReason.MANUAL_ADJUSTMENT,
            LedgerSource.USER,
            actor_id=actor_id,
            correlation_id=correlation_id,
        )
        queued = self._enqueue_sync(item, OutboxKind.UPDATE, entry.seq, correlation_id)
        return _Written(ledger_seq=entry.seq, outbox_entries=queued)

    def apply_archive(
        self,
        item: InventoryItem,
        *,
        actor_id: UUID,
        correlation_id: str,
        location_reason: str,
    ) -> _Written:
        """Archive a locked, active item: quantity to 0, location DELETED."""
        now = self._clock.now()
        item.is_archived = True
        item.deleted_at = now
        item.updated_at = now

        entry = self.ledger.append(
            item.id,
            -item.quantity_available,
            LedgerReason.ITEM_DELETED,
            LedgerSource.USER,
            actor_id=actor_id,
            correlation_id=correlation_id,
        )
        self.ledger.append_location(
            item.id,
            DELETED_LOCATION,
            reason=location_reason,
            actor_id=actor_id,
            correlation_id=correlation_id,
        )
        queued = self._enqueue_sync(item, OutboxKind.DELETE, entry.seq, correlation_id)
        return _Written(ledger_seq=entry.seq, outbox_entries=queued)

    def apply_restore(
        self,
        item: InventoryItem,
        target: ItemSnapshot,
        *,
        actor_id: UUID,
        correlation_id: str,
        location_reason: str,
    ) -> _Written:
        """Un-archive a locked item and restore its pre-delete fields."""
        before = item.snapshot()
        item.is_archived = False
        item.deleted_at = None
        for name in _PLAIN_FIELDS:
            value = getattr(target, name)
            setattr(item, name, value.value if isinstance(value, ItemCondition) else value)
        item.updated_at = self._clock.now()

        if before.location != target.location:
            self.ledger.append_location(
                item.id,
                target.location,
                reason=location_reason,
                actor_id=actor_id,
                correlation_id=correlation_id,
            )
        entry = self.ledger.append(
            item.id,
            target.quantity_available - before.quantity_available,
            LedgerReason.MANUAL_ADJUSTMENT,
            LedgerSource.USER,
            actor_id=actor_id,
            correlation_id=correlation_id,
        )
        # The remote lot was deleted (or is about to be); list it again
        queued = self._enqueue_sync(item, OutboxKind.CREATE, entry.seq, correlation_id)
        return _Written(ledger_seq=entry.seq, outbox_entries=queued)

    def _enqueue_sync(
        self,
        item: InventoryItem,
        kind: OutboxKind,
        to_seq: int,
        correlation_id: str,
        exclude: Provider | None = None,
    ) -> tuple[EnqueueResult, ...]:
        results: list[EnqueueResult] = []
        for provider in self.settings.enabled_providers(item.business_account_id):
            if provider == exclude:
                continue
            state = self.sync_states.get(item.id, provider)
            start = self.outbox.next_window_start(
                item.id, provider, state.last_synced_seq if state else 0
            )
            if start >= to_seq:
                continue
            result = self.outbox.enqueue(
                item_id=item.id,
                business_account_id=item.business_account_id,
                provider=provider,
                kind=kind,
                window=SeqWindow(start, to_seq),
                correlation_id=correlation_id,
            )
            self.sync_states.mark_pending(item.id, provider)
            results.append(result)
        return tuple(results)


def _jsonable(changes: dict[str, Any]) -> dict[str, Any]:
    out = {}
    for key, value in changes.items():
        if isinstance(value, ItemCondition):
            value = value.value
        elif isinstance(value, Decimal):
            value = str(value)
        out[key] = value
    return out


def _validated_snapshot(
    *,
    name: str,
    part_number: str,
    color_id: str,
    location: str,
    quantity_available: int,
    quantity_reserved: int = 0,
    condition: ItemCondition | str = ItemCondition.NEW,
    price: Decimal | str | float | None = None,
    notes: str | None = None,
    is_archived: bool = False,
) -> ItemSnapshot:
    """Validate raw field values and build an ItemSnapshot."""
    for field_name, value in (
        ("name", name),
        ("part_number", part_number),
        ("color_id", color_id),
        ("location", location),
    ):
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(f"{field_name} is required", field=field_name)
    if location == DELETED_LOCATION:
        raise ValidationError(f"'{DELETED_LOCATION}' is a reserved location", field="location")

    for field_name, value in (
        ("quantity_available", quantity_available),
        ("quantity_reserved", quantity_reserved),
    ):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValidationError(f"{field_name} must be an integer", field=field_name)
        if value < 0:
            raise ValidationError(f"{field_name} cannot be negative", field=field_name)

    try:
        condition = ItemCondition(condition)
    except ValueError:
        raise ValidationError(f"Unknown condition: {condition!r}", field="condition") from None

    if price is not None:
        try:
            price = Decimal(str(price))
        except InvalidOperation:
            raise ValidationError(f"Invalid price: {price!r}", field="price") from None
        if price < 0:
            raise ValidationError("price cannot be negative", field="price")

    return ItemSnapshot(
        name=name,
        part_number=str(part_number),
        color_id=str(color_id),
        location=location,
        quantity_available=quantity_available,
        quantity_reserved=quantity_reserved,
        condition=condition,
        price=price,
        notes=notes,
        is_archived=is_archived,
    )
