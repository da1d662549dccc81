"""
Frozen data transfer objects.

Selectors and services return these instead of ORM rows, and the outbox
worker hands ``LotPayload`` to the marketplace clients. All of them are
immutable; snapshots round-trip through JSON for the change log.
"""

from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from inventory_kernel.domain.values import (
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


@dataclass(frozen=True)
class Actor:
    """Who is performing a mutation, and in which business account."""

    actor_id: UUID
    business_account_id: UUID
    role: Role = Role.MEMBER

    @property
    def is_owner(self) -> bool:
        return self.role == Role.OWNER


@dataclass(frozen=True)
class SeqWindow:
    """
    Ledger sequence window ``(from_seq_exclusive, to_seq_inclusive]``.

    A window with ``from == to`` is empty and never enqueued.
    """

    from_seq_exclusive: int
    to_seq_inclusive: int

    def __post_init__(self) -> None:
        if self.from_seq_exclusive < 0:
            raise ValueError("from_seq_exclusive must be >= 0")
        if self.to_seq_inclusive < self.from_seq_exclusive:
            raise ValueError(
                f"Window end {self.to_seq_inclusive} precedes start "
                f"{self.from_seq_exclusive}"
            )

    @property
    def is_empty(self) -> bool:
        return self.to_seq_inclusive == self.from_seq_exclusive

    def overlaps(self, other: "SeqWindow") -> bool:
        """True when the two half-open windows share at least one seq."""
        return (
            self.from_seq_exclusive < other.to_seq_inclusive
            and other.from_seq_exclusive < self.to_seq_inclusive
        )

    def __str__(self) -> str:
        return f"{self.from_seq_exclusive}-{self.to_seq_inclusive}"


# Fields captured in change log snapshots, in display order
SNAPSHOT_FIELDS = (
    "name",
    "part_number",
    "color_id",
    "location",
    "quantity_available",
    "quantity_reserved",
    "condition",
    "price",
    "notes",
    "is_archived",
)

# Fields whose change must reach the marketplaces
MARKETPLACE_FIELDS = frozenset(
    {"part_number", "color_id", "location", "quantity_available", "condition", "price", "notes"}
)


@dataclass(frozen=True)
class ItemSnapshot:
    """Point-in-time copy of an item's user-visible fields."""

    name: str
    part_number: str
    color_id: str
    location: str
    quantity_available: int
    quantity_reserved: int
    condition: ItemCondition
    price: Decimal | None = None
    notes: str | None = None
    is_archived: bool = False

    def to_dict(self, only: frozenset[str] | set[str] | None = None) -> dict[str, Any]:
        """JSON-safe dict, optionally restricted to ``only`` field names."""
        out: dict[str, Any] = {}
        for name in SNAPSHOT_FIELDS:
            if only is not None and name not in only:
                continue
            value = getattr(self, name)
            if isinstance(value, Decimal):
                value = str(value)
            elif isinstance(value, ItemCondition):
                value = value.value
            out[name] = value
        return out

    def diff(self, other: "ItemSnapshot") -> set[str]:
        """Names of fields whose values differ between the snapshots."""
        return {
            f.name for f in fields(self) if getattr(self, f.name) != getattr(other, f.name)
        }

    def with_changes(self, changes: dict[str, Any]) -> "ItemSnapshot":
        """Apply a (possibly partial) JSON-style dict on top of this snapshot."""
        coerced = {k: _coerce_snapshot_value(k, v) for k, v in changes.items()}
        return replace(self, **coerced)


def _coerce_snapshot_value(name: str, value: Any) -> Any:
    if name not in SNAPSHOT_FIELDS:
        raise ValueError(f"Unknown snapshot field: {name}")
    if value is None:
        return None
    if name == "price":
        return Decimal(str(value))
    if name == "condition":
        return ItemCondition(value)
    if name in ("quantity_available", "quantity_reserved"):
        return int(value)
    return value


@dataclass(frozen=True)
class ProviderSyncState:
    """One provider's entry in an item's ``marketplace_sync`` map."""

    provider: Provider
    status: SyncStatus
    remote_lot_id: str | None = None
    last_sync_attempt_at: datetime | None = None
    last_synced_seq: int = 0
    last_synced_available: int | None = None
    error: str | None = None


@dataclass(frozen=True)
class LedgerEntryView:
    """A quantity ledger row."""

    id: UUID
    item_id: UUID
    business_account_id: UUID
    seq: int
    pre_available: int
    post_available: int
    delta_available: int
    reason: LedgerReason
    source: LedgerSource
    created_at: datetime
    actor_id: UUID | None = None
    order_id: str | None = None
    correlation_id: str | None = None


@dataclass(frozen=True)
class LocationEntryView:
    """A location ledger row."""

    id: UUID
    item_id: UUID
    seq: int
    from_location: str | None
    to_location: str
    reason: str
    source: LedgerSource
    created_at: datetime
    actor_id: UUID | None = None
    correlation_id: str | None = None


@dataclass(frozen=True)
class LedgerVerification:
    """Result of replaying one item's quantity ledger."""

    item_id: UUID
    entry_count: int
    replayed_available: int
    denormalized_available: int
    gapless: bool
    chained: bool
    problems: tuple[str, ...] = ()

    @property
    def is_consistent(self) -> bool:
        return (
            self.gapless
            and self.chained
            and self.replayed_available == self.denormalized_available
        )


@dataclass(frozen=True)
class ChangeView:
    """A change log row."""

    id: UUID
    item_id: UUID
    business_account_id: UUID
    change_type: ChangeType
    previous_data: dict[str, Any] | None
    new_data: dict[str, Any] | None
    actor_id: UUID
    reason: str | None
    is_undo: bool
    undoes_change_id: UUID | None
    undone_by_change_id: UUID | None
    correlation_id: str
    created_at: datetime
    ledger_seq: int | None = None


@dataclass(frozen=True)
class OutboxEntryView:
    """An outbox row."""

    id: UUID
    item_id: UUID
    business_account_id: UUID
    provider: Provider
    kind: OutboxKind
    window: SeqWindow
    idempotency_key: str
    status: OutboxStatus
    attempt: int
    next_attempt_at: datetime
    created_at: datetime
    last_error: str | None = None
    correlation_id: str | None = None


@dataclass(frozen=True)
class EnqueueResult:
    """Outcome of an enqueue call. ``created`` is False for "already queued"."""

    entry: OutboxEntryView
    created: bool

    @property
    def already_queued(self) -> bool:
        return not self.created


@dataclass(frozen=True)
class MutationResult:
    """What an inventory mutation wrote."""

    item_id: UUID
    change_id: UUID | None
    correlation_id: str
    ledger_seq: int | None = None
    outbox_entries: tuple[EnqueueResult, ...] = ()


@dataclass(frozen=True)
class UndoResult:
    """Outcome of undoing one change."""

    original_change_id: UUID
    undo_change_id: UUID
    item_id: UUID
    compensating_action: ChangeType
    ledger_seq: int | None = None
    outbox_entries: tuple[EnqueueResult, ...] = ()


@dataclass(frozen=True)
class SyncSettings:
    """Per-provider enablement. Disabled until explicitly turned on."""

    provider: Provider
    enabled: bool = False
    credentials_active: bool = False

    @property
    def should_sync(self) -> bool:
        return self.enabled and self.credentials_active


@dataclass(frozen=True)
class LotPayload:
    """
    Provider-neutral description of one inventory lot.

    ``quantity`` is the absolute target as of the end of the sync window.
    ``previous_quantity`` is the last quantity the marketplace is known to
    hold, so providers that only accept relative changes can send the
    difference.
    """

    item_id: UUID
    part_number: str
    color_id: str
    condition: ItemCondition
    quantity: int
    name: str | None = None
    price: Decimal | None = None
    location: str | None = None
    notes: str | None = None
    remote_id: str | None = None
    previous_quantity: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def quantity_delta(self) -> int:
        if self.previous_quantity is None:
            return self.quantity
        return self.quantity - self.previous_quantity
