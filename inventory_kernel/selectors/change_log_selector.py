"""Read-only queries over the change log."""

from uuid import UUID

from sqlalchemy import select

from inventory_kernel.domain.dtos import ChangeView
from inventory_kernel.exceptions import ChangeNotFoundError
from inventory_kernel.models.change_log import ChangeLogEntry
from inventory_kernel.selectors.base import BaseSelector


class ChangeLogSelector(BaseSelector[ChangeLogEntry]):
    """Change history for items."""

    def list_item_changes(
        self,
        item_id: UUID,
        limit: int | None = None,
        include_undos: bool = True,
    ) -> list[ChangeView]:
        """Newest first."""
        query = select(ChangeLogEntry).where(ChangeLogEntry.item_id == item_id)
        if not include_undos:
            query = query.where(ChangeLogEntry.is_undo.is_(False))
        query = query.order_by(ChangeLogEntry.created_at.desc())
        if limit is not None:
            query = query.limit(limit)
        return [row.to_dto() for row in self.session.execute(query).scalars()]

    def get_change(self, change_id: UUID) -> ChangeView:
        entry = self.session.get(ChangeLogEntry, change_id)
        if entry is None:
            raise ChangeNotFoundError(str(change_id))
        return entry.to_dto()

    def undo_chain(self, change_id: UUID) -> list[ChangeView]:
        """
        The change followed by its undo, the undo's undo, and so on.

        Walks ``undone_by_change_id`` links, so the order does not depend on
        timestamps.
        """
        chain = [self.get_change(change_id)]
        while chain[-1].undone_by_change_id is not None:
            chain.append(self.get_change(chain[-1].undone_by_change_id))
        return chain
