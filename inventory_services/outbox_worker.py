"""
OutboxWorker -- drains the marketplace outbox.

Contract:
    ``drain()`` fetches due entries, groups them by (item, provider), runs
    groups concurrently under a semaphore and the windows of one group
    strictly in order. ``process_one()`` claims one entry, builds its payload
    as of the end of its window, calls the provider client and records the
    outcome. ``run_forever()`` polls until stopped.

Architecture: inventory_services. Imports kernel services/selectors and the
    marketplaces layer.

Invariants enforced:
    - Claim is a compare-and-swap; an entry claimed elsewhere is skipped.
    - Window N+1 is never claimed while an earlier window for the same item
      and provider is pending or inflight, so last_synced_seq only moves
      forward.
    - No database transaction is open across an ``await``: claim, payload
      build and result write are separate short session_scope() blocks.
    - One entry's failure is recorded on that entry and never stops the
      drain.
"""

import asyncio
import random
import time
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy.orm import Session, sessionmaker

from inventory_kernel.db.engine import session_scope
from inventory_kernel.domain.clock import Clock, SystemClock
from inventory_kernel.domain.dtos import LotPayload, OutboxEntryView, ProviderSyncState
from inventory_kernel.domain.policies import OutboxPolicy
from inventory_kernel.domain.values import (
    DELETED_LOCATION,
    ItemCondition,
    OutboxKind,
    OutboxStatus,
    Provider,
)
from inventory_kernel.exceptions import (
    AccessError,
    QuotaExhaustedError,
    RateLimitExceededError,
    TerminalUpstreamError,
    UpstreamError,
)
from inventory_kernel.logging_config import LogContext, get_logger
from inventory_kernel.models.item import InventoryItem
from inventory_kernel.selectors.ledger_selector import LedgerSelector
from inventory_kernel.selectors.outbox_selector import OutboxSelector
from inventory_kernel.services.marketplace_settings_service import MarketplaceSettingsService
from inventory_kernel.services.outbox_service import OutboxService
from inventory_kernel.services.sync_state_service import SyncStateService
from inventory_marketplaces.catalog import CatalogLookup
from inventory_marketplaces.clients import (
    CallOptions,
    ClientResult,
    MarketplaceClient,
    RequestCache,
    build_client,
)
from inventory_marketplaces.executor import RetryPolicy, UpstreamExecutor

logger = get_logger("services.outbox_worker")

ClientFactory = Callable[[Provider, UUID], MarketplaceClient]


class EntryOutcomeStatus(str, Enum):
    SUCCEEDED = "succeeded"
    SUPERSEDED = "superseded"
    DEFERRED = "deferred"
    RESCHEDULED = "rescheduled"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def lets_group_continue(self) -> bool:
        return self in (EntryOutcomeStatus.SUCCEEDED, EntryOutcomeStatus.SUPERSEDED)


@dataclass(frozen=True)
class EntryOutcome:
    entry_id: UUID
    item_id: UUID
    provider: Provider
    status: EntryOutcomeStatus
    remote_id: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class DrainReport:
    started_at: datetime
    completed_at: datetime
    duration_ms: int
    outcomes: tuple[EntryOutcome, ...] = ()

    def count(self, status: EntryOutcomeStatus) -> int:
        return sum(1 for o in self.outcomes if o.status is status)

    @property
    def processed(self) -> int:
        return sum(1 for o in self.outcomes if o.status is not EntryOutcomeStatus.SKIPPED)


class CredentialClientFactory:
    """
    Builds provider clients from stored credentials.

    Credential lookup runs in its own short transaction. The rate-limit
    bucket is the business account id.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        executor: UpstreamExecutor,
        base_urls: dict[Provider, str] | None = None,
        retry: RetryPolicy | None = None,
        catalog: CatalogLookup | None = None,
        decrypt: Callable[[dict], dict] | None = None,
    ):
        self._session_factory = session_factory
        self._executor = executor
        self._base_urls = base_urls or {}
        self._retry = retry
        self._catalog = catalog
        self._decrypt = decrypt

    def __call__(self, provider: Provider, business_account_id: UUID) -> MarketplaceClient:
        with session_scope(self._session_factory) as session:
            secret = MarketplaceSettingsService(session, decrypt=self._decrypt).get_credentials(
                business_account_id, provider
            )
        return build_client(
            provider,
            self._executor,
            secret,
            bucket=str(business_account_id),
            base_url=self._base_urls.get(provider),
            retry=self._retry,
            catalog=self._catalog,
        )


@dataclass(frozen=True)
class _Prepared:
    payload: LotPayload
    kind: OutboxKind


class OutboxWorker:
    """Asynchronous outbox processor."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        client_factory: ClientFactory,
        clock: Clock | None = None,
        policy: OutboxPolicy | None = None,
        concurrency: int = 4,
        batch_size: int = 100,
        rng: random.Random | None = None,
    ):
        if concurrency <= 0:
            raise ValueError("concurrency must be positive")
        self._session_factory = session_factory
        self._client_factory = client_factory
        self._clock = clock or SystemClock()
        self._policy = policy or OutboxPolicy()
        self._concurrency = concurrency
        self._batch_size = batch_size
        self._rng = rng or random.Random()

    def _outbox(self, session: Session) -> OutboxService:
        return OutboxService(session, self._clock, self._policy, self._rng)

    # ------------------------------------------------------------------
    # Drain
    # ------------------------------------------------------------------

    async def drain(self, limit: int | None = None) -> DrainReport:
        """Process every entry due now, up to ``limit`` (default batch size)."""
        started_at = self._clock.now()
        started = time.monotonic()

        with session_scope(self._session_factory) as session:
            due = OutboxSelector(session).due_entries(started_at, limit or self._batch_size)

        groups: dict[tuple[UUID, Provider], list[OutboxEntryView]] = defaultdict(list)
        for entry in due:
            groups[(entry.item_id, entry.provider)].append(entry)

        cache = RequestCache()
        semaphore = asyncio.Semaphore(self._concurrency)

        async def run_group(entries: list[OutboxEntryView]) -> list[EntryOutcome]:
            outcomes = []
            async with semaphore:
                for entry in sorted(entries, key=lambda e: e.window.to_seq_inclusive):
                    outcome = await self.process_one(entry, cache)
                    outcomes.append(outcome)
                    if not outcome.status.lets_group_continue:
                        break
            return outcomes

        results = await asyncio.gather(*(run_group(g) for g in groups.values()))
        outcomes = tuple(o for group in results for o in group)

        report = DrainReport(
            started_at=started_at,
            completed_at=self._clock.now(),
            duration_ms=int((time.monotonic() - started) * 1000),
            outcomes=outcomes,
        )
        logger.info(
            "outbox_drain_completed",
            extra={
                "due": len(due),
                "groups": len(groups),
                **{s.value: report.count(s) for s in EntryOutcomeStatus},
                "duration_ms": report.duration_ms,
            },
        )
        return report

    async def run_forever(
        self,
        poll_interval_s: float = 5.0,
        stop_event: asyncio.Event | None = None,
        stale_after_s: int = 600,
    ) -> None:
        """Drain repeatedly until ``stop_event`` is set."""
        stop_event = stop_event or asyncio.Event()
        logger.info("outbox_worker_started", extra={"poll_interval_s": poll_interval_s})
        while not stop_event.is_set():
            with session_scope(self._session_factory) as session:
                self._outbox(session).release_stale_inflight(stale_after_s)
            await self.drain()
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=poll_interval_s)
            except asyncio.TimeoutError:
                continue
        logger.info("outbox_worker_stopped")

    # ------------------------------------------------------------------
    # One entry
    # ------------------------------------------------------------------

    async def process_one(
        self,
        entry: OutboxEntryView,
        cache: RequestCache | None = None,
    ) -> EntryOutcome:
        """
        Claim and process one entry. Never raises for upstream or data
        errors; they are recorded on the entry and returned as the outcome.
        """
        with LogContext.bind(
            item_id=entry.item_id,
            provider=entry.provider.value,
            outbox_entry_id=entry.id,
            correlation_id=entry.correlation_id,
        ):
            try:
                return await self._process(entry, cache)
            except Exception as exc:
                logger.exception(
                    "outbox_entry_unhandled_error",
                    extra={"error": f"{type(exc).__name__}: {exc}"},
                )
                return self._release_after_crash(entry, exc)

    async def _process(self, entry: OutboxEntryView, cache: RequestCache | None) -> EntryOutcome:
        prepared = self._claim_and_prepare(entry)
        if isinstance(prepared, EntryOutcome):
            return prepared

        if prepared.kind is OutboxKind.DELETE and not prepared.payload.remote_id:
            logger.info("outbox_delete_without_remote_lot", extra={"window": str(entry.window)})
            result = ClientResult(success=True)
        else:
            result = await self._call(entry, prepared, cache)

        return self._record(entry, prepared, result)

    def _claim_and_prepare(self, entry: OutboxEntryView) -> _Prepared | EntryOutcome:
        with session_scope(self._session_factory) as session:
            outbox = self._outbox(session)
            if outbox.has_open_predecessor(entry):
                logger.debug("outbox_entry_blocked_by_predecessor")
                return self._outcome(entry, EntryOutcomeStatus.SKIPPED, error="earlier window open")
            if not outbox.claim(entry.id, entry.attempt):
                return self._outcome(entry, EntryOutcomeStatus.SKIPPED, error="claimed elsewhere")

            sync = SyncStateService(session, self._clock)
            state = sync.get(entry.item_id, entry.provider)
            if state is not None and state.last_synced_seq >= entry.window.to_seq_inclusive:
                outbox.mark_succeeded(entry.id)
                logger.info(
                    "outbox_entry_superseded",
                    extra={"last_synced_seq": state.last_synced_seq, "window": str(entry.window)},
                )
                return self._outcome(entry, EntryOutcomeStatus.SUPERSEDED)

            item = session.get(InventoryItem, entry.item_id)
            if item.is_archived and entry.kind is not OutboxKind.DELETE:
                # Only the delete window may reach the marketplace for an archived item
                outbox.mark_succeeded(entry.id)
                logger.info(
                    "outbox_entry_superseded",
                    extra={"reason": "item_archived", "window": str(entry.window)},
                )
                return self._outcome(entry, EntryOutcomeStatus.SUPERSEDED)

            sync.mark_syncing(entry.item_id, entry.provider)
            payload = self._build_payload(session, item, entry, state)

        kind = entry.kind
        if kind is OutboxKind.UPDATE and not payload.remote_id:
            kind = OutboxKind.CREATE
        elif kind is OutboxKind.CREATE and payload.remote_id:
            kind = OutboxKind.UPDATE
        if kind is not entry.kind:
            logger.info("outbox_kind_adjusted", extra={"from": entry.kind.value, "to": kind.value})
        return _Prepared(payload=payload, kind=kind)

    def _build_payload(
        self,
        session: Session,
        item: InventoryItem,
        entry: OutboxEntryView,
        state: ProviderSyncState | None,
    ) -> LotPayload:
        """
        The lot as of the window's last seq.

        Quantity and location are replayed from the ledgers up to
        ``to_seq_inclusive``. Price, condition, notes, part and colour have
        no ledger and come from the item row; every change to them opens
        its own later window, so the marketplace converges once that window
        is sent.
        """
        ledger = LedgerSelector(session)
        to_seq = entry.window.to_seq_inclusive
        quantity = ledger.balance_at_seq(entry.item_id, to_seq)
        location = ledger.location_at_seq(entry.item_id, to_seq) or item.location
        return LotPayload(
            item_id=item.id,
            part_number=item.part_number,
            color_id=item.color_id,
            condition=ItemCondition(item.condition),
            quantity=quantity,
            name=item.name,
            price=item.price,
            location=None if location == DELETED_LOCATION else location,
            notes=item.notes,
            remote_id=state.remote_lot_id if state else None,
            previous_quantity=state.last_synced_available if state else None,
        )

    async def _call(
        self,
        entry: OutboxEntryView,
        prepared: _Prepared,
        cache: RequestCache | None,
    ) -> ClientResult:
        try:
            client = self._client_factory(entry.provider, entry.business_account_id)
        except AccessError as exc:
            # Missing or inactive credentials: nothing to retry until an operator re-arms
            error = TerminalUpstreamError(str(exc), provider=entry.provider.value, upstream_code=exc.code)
            return ClientResult(success=False, error=error)

        opts = CallOptions(
            idempotency_key=entry.idempotency_key,
            correlation_id=entry.correlation_id,
            cache=cache,
        )
        return await getattr(client, prepared.kind.value)(prepared.payload, opts)

    def _record(self, entry: OutboxEntryView, prepared: _Prepared, result: ClientResult) -> EntryOutcome:
        with session_scope(self._session_factory) as session:
            outbox = self._outbox(session)
            sync = SyncStateService(session, self._clock)

            if result.success:
                outbox.mark_succeeded(entry.id)
                model = outbox.get(entry.id)
                remote_id = None if prepared.kind is OutboxKind.DELETE else result.remote_id
                sync.mark_synced(
                    entry.item_id,
                    entry.provider,
                    synced_seq=entry.window.to_seq_inclusive,
                    synced_available=prepared.payload.quantity,
                    remote_lot_id=remote_id,
                    more_pending=outbox.has_later_open_entries(model),
                )
                return self._outcome(entry, EntryOutcomeStatus.SUCCEEDED, remote_id=remote_id)

            error = result.error or TerminalUpstreamError("unknown failure", provider=entry.provider.value)
            message = f"{error.code}: {error}"

            if isinstance(error, (RateLimitExceededError, QuotaExhaustedError)):
                outbox.reschedule(
                    entry.id,
                    message,
                    delay_ms=self._defer_ms(error),
                    count_attempt=False,
                )
                sync.mark_error(entry.item_id, entry.provider, message, terminal=False)
                return self._outcome(entry, EntryOutcomeStatus.DEFERRED, error=message)

            if error.retryable:
                view = outbox.reschedule(entry.id, message)
                terminal = view.status is OutboxStatus.FAILED
                sync.mark_error(entry.item_id, entry.provider, view.last_error or message, terminal=terminal)
                status = EntryOutcomeStatus.FAILED if terminal else EntryOutcomeStatus.RESCHEDULED
                return self._outcome(entry, status, error=message)

            outbox.mark_failed(entry.id, message)
            sync.mark_error(entry.item_id, entry.provider, message, terminal=True)
            return self._outcome(entry, EntryOutcomeStatus.FAILED, error=message)

    def _defer_ms(self, error: UpstreamError) -> int:
        if isinstance(error, RateLimitExceededError):
            return max(error.retry_after_ms, 0)
        blocked = error.blocked_until - self._clock.now()
        return max(int(blocked.total_seconds() * 1000), 0)

    def _release_after_crash(self, entry: OutboxEntryView, exc: Exception) -> EntryOutcome:
        message = f"UNHANDLED: {type(exc).__name__}: {exc}"
        with session_scope(self._session_factory) as session:
            outbox = self._outbox(session)
            if outbox.get(entry.id).status != OutboxStatus.INFLIGHT.value:
                return self._outcome(entry, EntryOutcomeStatus.SKIPPED, error=message)
            view = outbox.reschedule(entry.id, message)
            terminal = view.status is OutboxStatus.FAILED
            SyncStateService(session, self._clock).mark_error(
                entry.item_id, entry.provider, message, terminal=terminal
            )
        status = EntryOutcomeStatus.FAILED if terminal else EntryOutcomeStatus.RESCHEDULED
        return self._outcome(entry, status, error=message)

    @staticmethod
    def _outcome(
        entry: OutboxEntryView,
        status: EntryOutcomeStatus,
        remote_id: str | None = None,
        error: str | None = None,
    ) -> EntryOutcome:
        return EntryOutcome(
            entry_id=entry.id,
            item_id=entry.item_id,
            provider=entry.provider,
            status=status,
            remote_id=remote_id,
            error=error,
        )
