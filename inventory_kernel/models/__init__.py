"""ORM models for the inventory kernel."""

from inventory_kernel.models.change_log import ChangeLogEntry
from inventory_kernel.models.credentials import MarketplaceCredential
from inventory_kernel.models.item import InventoryItem, ItemSyncState
from inventory_kernel.models.ledger import LocationLedgerEntry, QuantityLedgerEntry
from inventory_kernel.models.outbox import OutboxEntry
from inventory_kernel.models.rate_limit import RateLimitRecord

__all__ = [
    "InventoryItem",
    "ItemSyncState",
    "QuantityLedgerEntry",
    "LocationLedgerEntry",
    "ChangeLogEntry",
    "OutboxEntry",
    "RateLimitRecord",
    "MarketplaceCredential",
]
