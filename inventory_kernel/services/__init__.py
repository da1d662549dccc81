"""Kernel services: the write side of the inventory kernel."""

from inventory_kernel.services.authorization import Authorizer, OwnerAuthorizer
from inventory_kernel.services.change_log_service import ChangeLogService
from inventory_kernel.services.inventory_service import InventoryService
from inventory_kernel.services.ledger_service import LedgerService
from inventory_kernel.services.marketplace_settings_service import MarketplaceSettingsService
from inventory_kernel.services.outbox_service import OutboxService
from inventory_kernel.services.sync_state_service import SyncStateService
from inventory_kernel.services.undo_service import UndoService

__all__ = [
    "Authorizer",
    "ChangeLogService",
    "InventoryService",
    "LedgerService",
    "MarketplaceSettingsService",
    "OutboxService",
    "OwnerAuthorizer",
    "SyncStateService",
    "UndoService",
]
