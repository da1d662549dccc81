"""Processes that run outside request transactions: the outbox worker."""

from inventory_services.outbox_worker import (
    CredentialClientFactory,
    DrainReport,
    EntryOutcome,
    EntryOutcomeStatus,
    OutboxWorker,
)

__all__ = [
    "CredentialClientFactory",
    "DrainReport",
    "EntryOutcome",
    "EntryOutcomeStatus",
    "OutboxWorker",
]
