"""Read-only selectors over the inventory kernel tables."""

from inventory_kernel.selectors.base import BaseSelector
from inventory_kernel.selectors.change_log_selector import ChangeLogSelector
from inventory_kernel.selectors.ledger_selector import LedgerSelector
from inventory_kernel.selectors.outbox_selector import OutboxSelector

__all__ = [
    "BaseSelector",
    "ChangeLogSelector",
    "LedgerSelector",
    "OutboxSelector",
]
