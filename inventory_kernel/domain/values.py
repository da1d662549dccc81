"""Value enums shared by models, services and marketplace clients."""

from enum import Enum

# Location recorded when an item is archived
DELETED_LOCATION = "DELETED"


class Provider(str, Enum):
    """Marketplaces the outbox syncs to. Closed set."""

    BRICKLINK = "bricklink"
    BRICKOWL = "brickowl"


class SyncStatus(str, Enum):
    """Per-provider sync state stored on an inventory item."""

    PENDING = "pending"
    SYNCING = "syncing"
    SYNCED = "synced"
    FAILED = "failed"


class OutboxStatus(str, Enum):
    """Outbox entry lifecycle.

    Transitions: PENDING -> INFLIGHT -> (SUCCEEDED | PENDING | FAILED).
    FAILED -> PENDING only through an explicit operator re-arm.
    """

    PENDING = "pending"
    INFLIGHT = "inflight"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class OutboxKind(str, Enum):
    """Marketplace operation an outbox entry performs."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class LedgerReason(str, Enum):
    INITIAL_STOCK = "initial_stock"
    MANUAL_ADJUSTMENT = "manual_adjustment"
    ORDER_SALE = "order_sale"
    ITEM_DELETED = "item_deleted"


class LedgerSource(str, Enum):
    USER = "user"
    BRICKLINK = "bricklink"
    BRICKOWL = "brickowl"

    @classmethod
    def for_provider(cls, provider: Provider) -> "LedgerSource":
        return cls(provider.value)


class ChangeType(str, Enum):
    """Kind of mutation a change log entry records."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class ItemCondition(str, Enum):
    NEW = "new"
    USED = "used"


class Role(str, Enum):
    OWNER = "owner"
    MEMBER = "member"
