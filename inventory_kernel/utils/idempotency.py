"""
Idempotency key and correlation id utilities.

An outbox key names one marketplace operation over one ledger window. It is
stable across retries, so a re-sent window is recognized by the client's
request-scoped cache and by the unique constraint on the outbox table.
"""

from uuid import UUID, uuid4

from inventory_kernel.domain.dtos import SeqWindow
from inventory_kernel.domain.values import OutboxKind, Provider


def generate_outbox_key(
    item_id: UUID | str,
    provider: Provider,
    kind: OutboxKind,
    window: SeqWindow,
) -> str:
    """
    Generate the idempotency key for an outbox entry.

    Format: item_id:provider:kind:from-to

    Example:
        >>> generate_outbox_key(item_id, Provider.BRICKLINK, OutboxKind.UPDATE, SeqWindow(3, 5))
        "550e8400-e29b-41d4-a716-446655440000:bricklink:update:3-5"
    """
    return (
        f"{item_id}:{provider.value}:{kind.value}:"
        f"{window.from_seq_exclusive}-{window.to_seq_inclusive}"
    )


def parse_outbox_key(key: str) -> tuple[str, Provider, OutboxKind, SeqWindow]:
    """
    Parse an outbox idempotency key into its components.

    Raises:
        ValueError: If key format is invalid.
    """
    parts = key.split(":")
    if len(parts) != 4:
        raise ValueError(f"Invalid outbox key format: {key}")
    item_id, provider, kind, window = parts
    start, sep, end = window.partition("-")
    if not sep:
        raise ValueError(f"Invalid outbox key window: {key}")
    return item_id, Provider(provider), OutboxKind(kind), SeqWindow(int(start), int(end))


def new_correlation_id() -> str:
    """Fresh correlation id shared by every row one mutation writes."""
    return uuid4().hex
