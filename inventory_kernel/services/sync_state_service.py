"""
SyncStateService -- per-provider sync blocks on inventory items.

Mutations flip a provider to ``pending``; the outbox worker moves it through
``syncing`` to ``synced`` or ``failed`` and advances the sync cursor.
``last_synced_seq`` only moves forward.
"""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from inventory_kernel.domain.clock import Clock, SystemClock
from inventory_kernel.domain.dtos import ProviderSyncState
from inventory_kernel.domain.values import Provider, SyncStatus
from inventory_kernel.logging_config import get_logger
from inventory_kernel.models.item import InventoryItem, ItemSyncState

logger = get_logger("services.sync_state")


class SyncStateService:
    """Reads and patches ItemSyncState rows in the caller's transaction."""

    def __init__(self, session: Session, clock: Clock | None = None):
        self.session = session
        self._clock = clock or SystemClock()

    def _load(self, item_id: UUID, provider: Provider, create: bool = False) -> ItemSyncState | None:
        state = self.session.execute(
            select(ItemSyncState)
            .where(
                ItemSyncState.item_id == item_id,
                ItemSyncState.provider == provider.value,
            )
            .with_for_update()
        ).scalar_one_or_none()
        if state is None and create:
            item = self.session.get(InventoryItem, item_id)
            state = ItemSyncState(
                provider=provider.value,
                status=SyncStatus.PENDING.value,
                last_synced_seq=0,
            )
            # Through the relationship so item.marketplace_sync sees the row
            item.sync_states.append(state)
        return state

    def get(self, item_id: UUID, provider: Provider) -> ProviderSyncState | None:
        state = self._load(item_id, provider)
        return state.to_dto() if state else None

    def mark_pending(self, item_id: UUID, provider: Provider) -> ProviderSyncState:
        """Flag a provider as needing sync. Keeps remote id, cursor and anchor."""
        state = self._load(item_id, provider, create=True)
        state.status = SyncStatus.PENDING.value
        self.session.flush()
        return state.to_dto()

    def mark_syncing(self, item_id: UUID, provider: Provider) -> None:
        state = self._load(item_id, provider, create=True)
        state.status = SyncStatus.SYNCING.value
        state.last_sync_attempt_at = self._clock.now()
        self.session.flush()

    def mark_synced(
        self,
        item_id: UUID,
        provider: Provider,
        *,
        synced_seq: int,
        synced_available: int,
        remote_lot_id: str | None,
        more_pending: bool = False,
    ) -> ProviderSyncState:
        """
        Record a successful window.

        Args:
            synced_seq: The window's to_seq_inclusive.
            synced_available: post_available at synced_seq.
            remote_lot_id: Lot id the marketplace now holds (None after a
                delete).
            more_pending: Later windows are still queued, so the provider
                stays ``pending`` instead of ``synced``.
        """
        state = self._load(item_id, provider, create=True)
        if synced_seq > state.last_synced_seq:
            state.last_synced_seq = synced_seq
            state.last_synced_available = synced_available
        state.remote_lot_id = remote_lot_id
        state.status = (SyncStatus.PENDING if more_pending else SyncStatus.SYNCED).value
        state.error = None
        state.last_sync_attempt_at = self._clock.now()
        self.session.flush()

        logger.info(
            "sync_state_synced",
            extra={
                "item_id": str(item_id),
                "provider": provider.value,
                "last_synced_seq": state.last_synced_seq,
                "remote_lot_id": remote_lot_id,
            },
        )
        return state.to_dto()

    def mark_error(
        self,
        item_id: UUID,
        provider: Provider,
        error: str,
        terminal: bool,
    ) -> ProviderSyncState:
        """Record a failed attempt. Only terminal failures show ``failed``."""
        state = self._load(item_id, provider, create=True)
        state.status = (SyncStatus.FAILED if terminal else SyncStatus.PENDING).value
        state.error = error
        state.last_sync_attempt_at = self._clock.now()
        self.session.flush()
        return state.to_dto()

    def shift_anchor(self, item_id: UUID, provider: Provider, delta: int) -> None:
        """
        Move the provider's last-known quantity by ``delta``.

        Used when the marketplace itself applied a change (an order sale),
        so relative updates computed later stay correct.
        """
        state = self._load(item_id, provider)
        if state is None or state.last_synced_available is None:
            return
        state.last_synced_available += delta
        self.session.flush()
