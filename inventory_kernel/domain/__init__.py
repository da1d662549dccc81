"""
Pure domain layer.

Value enums, frozen DTOs and the clock abstraction. Nothing here touches
the ORM, the database or the network.
"""

from inventory_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from inventory_kernel.domain.dtos import (
    Actor,
    ChangeView,
    EnqueueResult,
    ItemSnapshot,
    LedgerEntryView,
    LedgerVerification,
    LocationEntryView,
    LotPayload,
    MutationResult,
    OutboxEntryView,
    ProviderSyncState,
    SeqWindow,
    SyncSettings,
    UndoResult,
)
from inventory_kernel.domain.policies import OutboxPolicy
from inventory_kernel.domain.values import (
    DELETED_LOCATION,
    ChangeType,
    ItemCondition,
    LedgerReason,
    LedgerSource,
    OutboxKind,
    OutboxStatus,
    Provider,
    Role,
    SyncStatus,
)

__all__ = [
    "Clock",
    "OutboxPolicy",
    "SystemClock",
    "DeterministicClock",
    "Actor",
    "ChangeView",
    "EnqueueResult",
    "ItemSnapshot",
    "LedgerEntryView",
    "LedgerVerification",
    "LocationEntryView",
    "LotPayload",
    "MutationResult",
    "OutboxEntryView",
    "ProviderSyncState",
    "SeqWindow",
    "SyncSettings",
    "UndoResult",
    "DELETED_LOCATION",
    "ChangeType",
    "ItemCondition",
    "LedgerReason",
    "LedgerSource",
    "OutboxKind",
    "OutboxStatus",
    "Provider",
    "Role",
    "SyncStatus",
]
