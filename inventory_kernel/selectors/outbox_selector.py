"""Read-only queries over the marketplace outbox."""

from datetime import datetime
from uuid import UUID

from sqlalchemy import func, select

from inventory_kernel.domain.dtos import OutboxEntryView
from inventory_kernel.domain.values import OutboxStatus, Provider
from inventory_kernel.models.outbox import OutboxEntry
from inventory_kernel.selectors.base import BaseSelector


class OutboxSelector(BaseSelector[OutboxEntry]):
    """Outbox inspection for the worker and operators."""

    def list_item_entries(
        self,
        item_id: UUID,
        provider: Provider | None = None,
        status: OutboxStatus | None = None,
    ) -> list[OutboxEntryView]:
        """Entries for one item ordered by window end."""
        query = select(OutboxEntry).where(OutboxEntry.item_id == item_id)
        if provider is not None:
            query = query.where(OutboxEntry.provider == provider.value)
        if status is not None:
            query = query.where(OutboxEntry.status == status.value)
        query = query.order_by(OutboxEntry.provider, OutboxEntry.to_seq_inclusive)
        return [row.to_dto() for row in self.session.execute(query).scalars()]

    def due_entries(self, now: datetime, limit: int = 50) -> list[OutboxEntryView]:
        """Pending entries whose next_attempt_at has passed, oldest window first."""
        rows = self.session.execute(
            select(OutboxEntry)
            .where(
                OutboxEntry.status == OutboxStatus.PENDING.value,
                OutboxEntry.next_attempt_at <= now,
            )
            .order_by(OutboxEntry.next_attempt_at, OutboxEntry.to_seq_inclusive)
            .limit(limit)
        ).scalars()
        return [row.to_dto() for row in rows]

    def counts_by_status(self) -> dict[OutboxStatus, int]:
        rows = self.session.execute(
            select(OutboxEntry.status, func.count()).group_by(OutboxEntry.status)
        ).all()
        counts = {status: 0 for status in OutboxStatus}
        for status, count in rows:
            counts[OutboxStatus(status)] = count
        return counts
