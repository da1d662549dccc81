"""
OutboxService -- durable queue of marketplace sync operations.

Responsibility:
    Enqueues one entry per (item, provider, kind, seq window), claims entries
    for processing, and records their outcome.

Architecture position:
    Kernel > Services. Mutation services enqueue inside their transaction;
    the outbox worker claims and completes entries in short transactions of
    its own.

Invariants enforced:
    - Enqueue is idempotent: the same idempotency key, or any pending/inflight
      entry whose window overlaps the requested one, yields "already queued".
    - Windows per (item, provider) are contiguous; next_window_start()
      continues from the highest queued or synced seq.
    - Claim is a compare-and-swap on (status='pending', attempt); a second
      claim of the same entry affects zero rows and returns False.
    - An entry for window N+1 is not claimable while an earlier window for
      the same item and provider is pending or inflight.

Failure modes:
    - OutboxEntryNotFoundError: unknown entry id.
    - InvalidOutboxTransitionError: status change not allowed from the
      entry's current status.
    - ValidationError: empty window.
"""

import random
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from inventory_kernel.domain.clock import Clock, SystemClock
from inventory_kernel.domain.dtos import EnqueueResult, OutboxEntryView, SeqWindow
from inventory_kernel.domain.policies import OutboxPolicy
from inventory_kernel.domain.values import OutboxKind, OutboxStatus, Provider
from inventory_kernel.exceptions import (
    InvalidOutboxTransitionError,
    OutboxEntryNotFoundError,
    ValidationError,
)
from inventory_kernel.logging_config import get_logger
from inventory_kernel.models.outbox import OutboxEntry
from inventory_kernel.utils.idempotency import generate_outbox_key

logger = get_logger("services.outbox")

_OPEN_STATUSES = (OutboxStatus.PENDING.value, OutboxStatus.INFLIGHT.value)
_TERMINAL_STATUSES = (OutboxStatus.SUCCEEDED.value, OutboxStatus.FAILED.value)


class OutboxService:
    """
    Writes and transitions outbox entries in the caller's transaction.

    Contract:
        Never commits. The worker wraps claim, and later completion, in
        separate session_scope() blocks so no transaction is held open
        across network I/O.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        policy: OutboxPolicy | None = None,
        rng: random.Random | None = None,
    ):
        self.session = session
        self._clock = clock or SystemClock()
        self._policy = policy or OutboxPolicy()
        self._rng = rng or random.Random()

    @property
    def policy(self) -> OutboxPolicy:
        return self._policy

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    def next_window_start(self, item_id: UUID, provider: Provider, last_synced_seq: int) -> int:
        """
        Exclusive start of the next window for (item, provider).

        Failed windows are skipped over: payloads carry absolute state, so a
        later window still converges the marketplace.
        """
        highest = self.session.execute(
            select(func.max(OutboxEntry.to_seq_inclusive)).where(
                OutboxEntry.item_id == item_id,
                OutboxEntry.provider == provider.value,
            )
        ).scalar_one_or_none()
        return max(last_synced_seq, highest or 0)

    def enqueue(
        self,
        *,
        item_id: UUID,
        business_account_id: UUID,
        provider: Provider,
        kind: OutboxKind,
        window: SeqWindow,
        correlation_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> EnqueueResult:
        """
        Queue one marketplace operation.

        Postconditions: Exactly one pending/inflight entry covers the window;
            ``created`` tells whether this call inserted it.

        Raises:
            ValidationError: The window is empty.
        """
        if window.is_empty:
            raise ValidationError(f"Cannot enqueue empty window {window}", field="window")

        key = idempotency_key or generate_outbox_key(item_id, provider, kind, window)

        existing = self._find_duplicate(item_id, provider, window, key)
        if existing is not None:
            logger.info(
                "outbox_entry_already_queued",
                extra={
                    "outbox_entry_id": str(existing.id),
                    "idempotency_key": existing.idempotency_key,
                    "requested_window": str(window),
                },
            )
            return EnqueueResult(entry=existing.to_dto(), created=False)

        now = self._clock.now()
        entry = OutboxEntry(
            business_account_id=business_account_id,
            item_id=item_id,
            provider=provider.value,
            kind=kind.value,
            from_seq_exclusive=window.from_seq_exclusive,
            to_seq_inclusive=window.to_seq_inclusive,
            idempotency_key=key,
            status=OutboxStatus.PENDING.value,
            attempt=0,
            next_attempt_at=now,
            correlation_id=correlation_id,
            created_at=now,
        )

        # Savepoint so a racing insert of the same key only undoes this row
        savepoint = self.session.begin_nested()
        try:
            self.session.add(entry)
            self.session.flush()
            savepoint.commit()
        except IntegrityError:
            savepoint.rollback()
            logger.debug("outbox_enqueue_race_retry", extra={"idempotency_key": key})
            existing = self.session.execute(
                select(OutboxEntry).where(OutboxEntry.idempotency_key == key)
            ).scalar_one()
            return EnqueueResult(entry=existing.to_dto(), created=False)

        logger.info(
            "outbox_entry_enqueued",
            extra={
                "outbox_entry_id": str(entry.id),
                "item_id": str(item_id),
                "provider": provider.value,
                "kind": kind.value,
                "window": str(window),
                "idempotency_key": key,
            },
        )
        return EnqueueResult(entry=entry.to_dto(), created=True)

    def _find_duplicate(
        self,
        item_id: UUID,
        provider: Provider,
        window: SeqWindow,
        key: str,
    ) -> OutboxEntry | None:
        by_key = self.session.execute(
            select(OutboxEntry).where(OutboxEntry.idempotency_key == key)
        ).scalar_one_or_none()
        if by_key is not None:
            return by_key

        return self.session.execute(
            select(OutboxEntry)
            .where(
                OutboxEntry.item_id == item_id,
                OutboxEntry.provider == provider.value,
                OutboxEntry.status.in_(_OPEN_STATUSES),
                OutboxEntry.from_seq_exclusive < window.to_seq_inclusive,
                OutboxEntry.to_seq_inclusive > window.from_seq_exclusive,
            )
            .order_by(OutboxEntry.to_seq_inclusive)
            .limit(1)
        ).scalar_one_or_none()

    # ------------------------------------------------------------------
    # Claim
    # ------------------------------------------------------------------

    def get(self, entry_id: UUID, for_update: bool = False) -> OutboxEntry:
        """
        Raises:
            OutboxEntryNotFoundError: Unknown entry id.
        """
        entry = self.session.get(
            OutboxEntry,
            entry_id,
            with_for_update=for_update,
            populate_existing=True,
        )
        if entry is None:
            raise OutboxEntryNotFoundError(str(entry_id))
        return entry

    def has_open_predecessor(self, entry: OutboxEntry | OutboxEntryView) -> bool:
        """True while an earlier window for the same item/provider is not terminal."""
        if isinstance(entry, OutboxEntryView):
            provider, to_seq = entry.provider.value, entry.window.to_seq_inclusive
        else:
            provider, to_seq = entry.provider, entry.to_seq_inclusive
        blocking = self.session.execute(
            select(func.count())
            .select_from(OutboxEntry)
            .where(
                OutboxEntry.item_id == entry.item_id,
                OutboxEntry.provider == provider,
                OutboxEntry.id != entry.id,
                OutboxEntry.status.in_(_OPEN_STATUSES),
                OutboxEntry.to_seq_inclusive < to_seq,
            )
        ).scalar_one()
        return blocking > 0

    def has_later_open_entries(self, entry: OutboxEntry) -> bool:
        """True when a later window for the same item/provider is still queued."""
        count = self.session.execute(
            select(func.count())
            .select_from(OutboxEntry)
            .where(
                OutboxEntry.item_id == entry.item_id,
                OutboxEntry.provider == entry.provider,
                OutboxEntry.id != entry.id,
                OutboxEntry.status.in_(_OPEN_STATUSES),
                OutboxEntry.to_seq_inclusive > entry.to_seq_inclusive,
            )
        ).scalar_one()
        return count > 0

    def claim(self, entry_id: UUID, expected_attempt: int) -> bool:
        """
        Atomically move a due entry from pending to inflight.

        Returns:
            True if this caller now owns the entry; False if another claim
            won, the attempt counter moved, or the entry is not pending.
        """
        now = self._clock.now()
        result = self.session.execute(
            update(OutboxEntry)
            .where(
                OutboxEntry.id == entry_id,
                OutboxEntry.status == OutboxStatus.PENDING.value,
                OutboxEntry.attempt == expected_attempt,
            )
            .values(status=OutboxStatus.INFLIGHT.value, claimed_at=now)
            .execution_options(synchronize_session=False)
        )
        claimed = result.rowcount == 1
        logger.debug(
            "outbox_entry_claimed" if claimed else "outbox_claim_lost",
            extra={"outbox_entry_id": str(entry_id), "attempt": expected_attempt},
        )
        return claimed

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    def _require_status(self, entry: OutboxEntry, allowed: tuple[str, ...], target: OutboxStatus) -> None:
        if entry.status not in allowed:
            raise InvalidOutboxTransitionError(str(entry.id), entry.status, target.value)

    def mark_succeeded(self, entry_id: UUID) -> OutboxEntryView:
        entry = self.get(entry_id, for_update=True)
        self._require_status(entry, (OutboxStatus.INFLIGHT.value,), OutboxStatus.SUCCEEDED)
        entry.status = OutboxStatus.SUCCEEDED.value
        entry.completed_at = self._clock.now()
        entry.last_error = None
        self.session.flush()

        logger.info(
            "outbox_entry_succeeded",
            extra={"outbox_entry_id": str(entry.id), "attempt": entry.attempt},
        )
        return entry.to_dto()

    def reschedule(
        self,
        entry_id: UUID,
        error: str,
        *,
        delay_ms: int | None = None,
        count_attempt: bool = True,
    ) -> OutboxEntryView:
        """
        Return an inflight entry to pending after a retryable failure.

        With ``count_attempt`` the attempt counter is incremented, and
        reaching the policy's ceiling fails the entry instead. Rate-limit
        deferrals pass ``count_attempt=False`` and an explicit delay.
        """
        entry = self.get(entry_id, for_update=True)
        self._require_status(entry, (OutboxStatus.INFLIGHT.value,), OutboxStatus.PENDING)

        if count_attempt:
            entry.attempt += 1
            if entry.attempt >= self._policy.max_attempts:
                return self._fail(entry, f"{error} (gave up after {entry.attempt} attempts)")

        if delay_ms is None:
            delay_ms = self._policy.backoff_ms(entry.attempt, self._rng)

        entry.status = OutboxStatus.PENDING.value
        entry.next_attempt_at = self._clock.now() + timedelta(milliseconds=delay_ms)
        entry.last_error = error
        self.session.flush()

        logger.warning(
            "outbox_entry_rescheduled",
            extra={
                "outbox_entry_id": str(entry.id),
                "attempt": entry.attempt,
                "delay_ms": delay_ms,
                "error": error,
            },
        )
        return entry.to_dto()

    def mark_failed(self, entry_id: UUID, error: str) -> OutboxEntryView:
        entry = self.get(entry_id, for_update=True)
        self._require_status(entry, _OPEN_STATUSES, OutboxStatus.FAILED)
        return self._fail(entry, error)

    def _fail(self, entry: OutboxEntry, error: str) -> OutboxEntryView:
        entry.status = OutboxStatus.FAILED.value
        entry.completed_at = self._clock.now()
        entry.last_error = error
        self.session.flush()

        logger.error(
            "outbox_entry_failed",
            extra={
                "outbox_entry_id": str(entry.id),
                "attempt": entry.attempt,
                "error": error,
            },
        )
        return entry.to_dto()

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    def rearm(self, entry_id: UUID) -> OutboxEntryView:
        """
        Put a failed entry back in the queue, e.g. after fixing credentials.

        Attempt count resets to 0 and the entry is due immediately. The
        previous error stays on the row until the next attempt.
        """
        entry = self.get(entry_id, for_update=True)
        self._require_status(entry, (OutboxStatus.FAILED.value,), OutboxStatus.PENDING)
        entry.status = OutboxStatus.PENDING.value
        entry.attempt = 0
        entry.next_attempt_at = self._clock.now()
        entry.completed_at = None
        self.session.flush()

        logger.info("outbox_entry_rearmed", extra={"outbox_entry_id": str(entry.id)})
        return entry.to_dto()

    def release_stale_inflight(self, stale_after_seconds: int) -> int:
        """
        Return entries stuck inflight (worker crashed mid-call) to pending.

        The interrupted call counts as an attempt. Re-sending is safe
        because the idempotency key is unchanged.
        """
        cutoff = self._clock.now() - timedelta(seconds=stale_after_seconds)
        result = self.session.execute(
            update(OutboxEntry)
            .where(
                OutboxEntry.status == OutboxStatus.INFLIGHT.value,
                OutboxEntry.claimed_at < cutoff,
            )
            .values(
                status=OutboxStatus.PENDING.value,
                attempt=OutboxEntry.attempt + 1,
                next_attempt_at=self._clock.now(),
                last_error="released after stale claim",
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.warning(
                "outbox_stale_inflight_released",
                extra={"count": result.rowcount, "stale_after_seconds": stale_after_seconds},
            )
        return result.rowcount

    def purge_terminal(self, older_than: datetime | None = None) -> int:
        """Delete succeeded/failed entries completed before the cutoff."""
        cutoff = older_than or (
            self._clock.now() - timedelta(days=self._policy.retention_days)
        )
        result = self.session.execute(
            delete(OutboxEntry)
            .where(
                OutboxEntry.status.in_(_TERMINAL_STATUSES),
                OutboxEntry.completed_at < cutoff,
            )
            .execution_options(synchronize_session=False)
        )
        logger.info(
            "outbox_purged",
            extra={"count": result.rowcount, "cutoff": cutoff.isoformat()},
        )
        return result.rowcount
