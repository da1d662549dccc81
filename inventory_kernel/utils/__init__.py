"""Utility modules for the inventory kernel."""

from inventory_kernel.utils.idempotency import (
    generate_outbox_key,
    new_correlation_id,
    parse_outbox_key,
)

__all__ = [
    "generate_outbox_key",
    "parse_outbox_key",
    "new_correlation_id",
]
