"""
OutboxWorker tests.

The worker runs against the per-test SQLite database through its own
session_scope() blocks, so test setup commits through session_scope too.
Marketplace calls go to in-process fakes, except in the end-to-end class
which wires the real clients to an httpx.MockTransport.
"""

import asyncio
import json
import random
from datetime import timedelta
from urllib.parse import parse_qs

import httpx
import pytest

from inventory_kernel.db.engine import session_scope
from inventory_kernel.domain.policies import OutboxPolicy
from inventory_kernel.domain.values import OutboxKind, OutboxStatus, Provider, SyncStatus
from inventory_kernel.exceptions import (
    QuotaExhaustedError,
    RateLimitExceededError,
    TerminalUpstreamError,
    TransientUpstreamError,
)
from inventory_kernel.selectors.outbox_selector import OutboxSelector
from inventory_kernel.services.inventory_service import InventoryService
from inventory_kernel.services.marketplace_settings_service import MarketplaceSettingsService
from inventory_kernel.services.sync_state_service import SyncStateService
from inventory_marketplaces.clients import ClientResult
from inventory_marketplaces.executor import RetryPolicy, UpstreamExecutor
from inventory_marketplaces.rate_limiter import RateLimiter, RateLimitPolicy
from inventory_services.outbox_worker import (
    CredentialClientFactory,
    EntryOutcomeStatus,
    OutboxWorker,
)


class FakeMarketplace:
    """
    Records calls and answers from a script.

    Each script item is a ClientResult to return or an exception to raise;
    with an empty script creates succeed with a fresh lot id and updates and
    deletes succeed.
    """

    def __init__(self, provider: Provider):
        self.provider = provider
        self.calls = []
        self.script = []
        self._lots = 0

    async def _answer(self, kind, payload, opts):
        await asyncio.sleep(0)
        self.calls.append((kind, payload, opts))
        if self.script:
            answer = self.script.pop(0)
            if isinstance(answer, Exception):
                raise answer
            return answer
        if kind == "create":
            self._lots += 1
            return ClientResult(success=True, remote_id=f"{self.provider.value}-lot-{self._lots}")
        if kind == "delete":
            return ClientResult(success=True)
        return ClientResult(success=True, remote_id=payload.remote_id)

    async def create(self, payload, opts):
        return await self._answer("create", payload, opts)

    async def update(self, payload, opts):
        return await self._answer("update", payload, opts)

    async def delete(self, payload, opts):
        return await self._answer("delete", payload, opts)

    @property
    def kinds(self):
        return [kind for kind, _, _ in self.calls]


@pytest.fixture
def marketplaces():
    return {provider: FakeMarketplace(provider) for provider in Provider}


@pytest.fixture
def bricklink(marketplaces):
    return marketplaces[Provider.BRICKLINK]


@pytest.fixture
def worker(session_factory, marketplaces, clock, outbox_policy):
    return OutboxWorker(
        session_factory,
        lambda provider, account_id: marketplaces[provider],
        clock=clock,
        policy=outbox_policy,
        rng=random.Random(7),
    )


@pytest.fixture
def tx(session_factory, clock, outbox_policy):
    """Run ``fn(InventoryService)`` in a committed transaction."""

    def _tx(fn):
        with session_scope(session_factory) as session:
            return fn(InventoryService(session, clock, outbox_policy=outbox_policy))

    return _tx


@pytest.fixture
def seed(tx, enable_providers, owner):
    """Enable providers and add one item; returns its id."""

    def _seed(providers=(Provider.BRICKLINK,), **fields):
        values = {
            "name": "Plate 1 x 2",
            "part_number": "3023",
            "color_id": "11",
            "location": "D4",
            "quantity_available": 10,
        }
        values.update(fields)

        def _do(inventory):
            enable_providers(inventory.session, providers=providers)
            return inventory.add_inventory_item(owner, **values).item_id

        return tx(_do)

    return _seed


@pytest.fixture
def read_state(session_factory, clock):
    def _read(item_id, provider=Provider.BRICKLINK):
        with session_scope(session_factory) as session:
            return SyncStateService(session, clock).get(item_id, provider)

    return _read


@pytest.fixture
def read_entries(session_factory):
    def _read(item_id, provider=Provider.BRICKLINK):
        with session_scope(session_factory) as session:
            return OutboxSelector(session).list_item_entries(item_id, provider)

    return _read


def _transient():
    return ClientResult(
        success=False,
        status=503,
        error=TransientUpstreamError("bricklink responded 503", provider="bricklink", status=503),
    )


def _terminal():
    return ClientResult(
        success=False,
        status=400,
        error=TerminalUpstreamError("bricklink responded 400", provider="bricklink", status=400),
    )


class TestSuccessfulSync:
    @pytest.mark.asyncio
    async def test_create_records_remote_lot(self, seed, worker, bricklink, read_state, read_entries):
        item_id = seed(quantity_available=10, price="0.15")

        report = await worker.drain()

        assert report.count(EntryOutcomeStatus.SUCCEEDED) == 1
        assert report.processed == 1
        [(kind, payload, opts)] = bricklink.calls
        assert kind == "create"
        assert payload.quantity == 10
        assert payload.part_number == "3023"
        assert payload.location == "D4"
        assert payload.remote_id is None
        assert opts.idempotency_key == f"{item_id}:bricklink:create:0-1"
        assert opts.cache is not None

        state = read_state(item_id)
        assert state.status == SyncStatus.SYNCED
        assert state.remote_lot_id == "bricklink-lot-1"
        assert state.last_synced_seq == 1
        assert state.last_synced_available == 10
        assert state.error is None
        assert [e.status for e in read_entries(item_id)] == [OutboxStatus.SUCCEEDED]

    @pytest.mark.asyncio
    async def test_update_uses_remote_lot_and_previous_quantity(
        self, seed, tx, owner, worker, bricklink, read_state
    ):
        item_id = seed(quantity_available=10)
        await worker.drain()
        tx(lambda inv: inv.update_inventory_item(owner, item_id, quantity_available=12))

        await worker.drain()

        kind, payload, _ = bricklink.calls[-1]
        assert kind == "update"
        assert payload.remote_id == "bricklink-lot-1"
        assert payload.previous_quantity == 10
        assert payload.quantity == 12
        assert payload.quantity_delta == 2
        assert read_state(item_id).last_synced_seq == 2

    @pytest.mark.asyncio
    async def test_both_providers_sync_independently(self, seed, worker, marketplaces, read_state):
        item_id = seed(providers=tuple(Provider))

        report = await worker.drain()

        assert report.count(EntryOutcomeStatus.SUCCEEDED) == 2
        for provider in Provider:
            assert marketplaces[provider].kinds == ["create"]
            assert read_state(item_id, provider).remote_lot_id == f"{provider.value}-lot-1"

    @pytest.mark.asyncio
    async def test_windows_drain_in_seq_order(self, seed, tx, owner, worker, bricklink, read_state):
        item_id = seed(quantity_available=10)
        await worker.drain()
        tx(lambda inv: inv.update_inventory_item(owner, item_id, quantity_available=11))
        tx(lambda inv: inv.update_inventory_item(owner, item_id, quantity_available=15))

        report = await worker.drain()

        assert report.count(EntryOutcomeStatus.SUCCEEDED) == 2
        assert [p.quantity for _, p, _ in bricklink.calls[1:]] == [11, 15]
        assert [p.previous_quantity for _, p, _ in bricklink.calls[1:]] == [10, 11]
        state = read_state(item_id)
        assert state.last_synced_seq == 3
        assert state.status == SyncStatus.SYNCED

    @pytest.mark.asyncio
    async def test_nothing_due(self, worker, bricklink):
        report = await worker.drain()
        assert report.outcomes == ()
        assert bricklink.calls == []


class TestFailures:
    @pytest.mark.asyncio
    async def test_retryable_error_reschedules(
        self, seed, worker, bricklink, clock, read_state, read_entries
    ):
        item_id = seed()
        bricklink.script = [_transient()]

        report = await worker.drain()

        assert report.count(EntryOutcomeStatus.RESCHEDULED) == 1
        [entry] = read_entries(item_id)
        assert entry.status == OutboxStatus.PENDING
        assert entry.attempt == 1
        assert entry.next_attempt_at == clock.now() + timedelta(seconds=2)
        assert entry.last_error.startswith("UPSTREAM_TRANSIENT: ")
        state = read_state(item_id)
        assert state.status == SyncStatus.PENDING
        assert "503" in state.error

        # not due yet
        assert (await worker.drain()).processed == 0
        assert len(bricklink.calls) == 1

        clock.advance(2)
        report = await worker.drain()
        assert report.count(EntryOutcomeStatus.SUCCEEDED) == 1
        assert read_state(item_id).status == SyncStatus.SYNCED

    @pytest.mark.asyncio
    async def test_terminal_error_fails(self, seed, worker, bricklink, read_state, read_entries):
        item_id = seed()
        bricklink.script = [_terminal()]

        report = await worker.drain()

        assert report.count(EntryOutcomeStatus.FAILED) == 1
        [entry] = read_entries(item_id)
        assert entry.status == OutboxStatus.FAILED
        assert entry.last_error.startswith("UPSTREAM_TERMINAL: ")
        assert read_state(item_id).status == SyncStatus.FAILED
        assert (await worker.drain()).outcomes == ()

    @pytest.mark.asyncio
    async def test_attempt_ceiling(self, seed, session_factory, marketplaces, bricklink, clock, read_state):
        item_id = seed()
        worker = OutboxWorker(
            session_factory,
            lambda provider, account_id: marketplaces[provider],
            clock=clock,
            policy=OutboxPolicy(max_attempts=2, jitter_ms=0),
        )
        bricklink.script = [_transient(), _transient()]

        first = await worker.drain()
        clock.advance(10)
        second = await worker.drain()

        assert first.count(EntryOutcomeStatus.RESCHEDULED) == 1
        assert second.count(EntryOutcomeStatus.FAILED) == 1
        state = read_state(item_id)
        assert state.status == SyncStatus.FAILED
        assert "gave up after 2 attempts" in state.error

    @pytest.mark.asyncio
    async def test_rate_limit_defers_without_counting_attempt(
        self, seed, worker, bricklink, clock, read_entries, read_state
    ):
        item_id = seed()
        bricklink.script = [
            ClientResult(
                success=False,
                status=429,
                error=RateLimitExceededError("bricklink", "acct", retry_after_ms=30_000, status=429),
            )
        ]

        report = await worker.drain()

        assert report.count(EntryOutcomeStatus.DEFERRED) == 1
        [entry] = read_entries(item_id)
        assert entry.attempt == 0
        assert entry.status == OutboxStatus.PENDING
        assert entry.next_attempt_at == clock.now() + timedelta(seconds=30)
        assert entry.last_error.startswith("RATE_LIMITED: ")
        assert read_state(item_id).status == SyncStatus.PENDING

    @pytest.mark.asyncio
    async def test_open_breaker_defers_until_it_closes(self, seed, worker, bricklink, clock, read_entries):
        item_id = seed()
        blocked_until = clock.now() + timedelta(seconds=45)
        bricklink.script = [
            ClientResult(
                success=False,
                error=QuotaExhaustedError("bricklink", "acct", blocked_until, "circuit_open"),
            )
        ]

        report = await worker.drain()

        assert report.count(EntryOutcomeStatus.DEFERRED) == 1
        [entry] = read_entries(item_id)
        assert entry.attempt == 0
        assert entry.next_attempt_at == blocked_until

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_contained(
        self, seed, worker, bricklink, read_entries, captured_logs
    ):
        item_id = seed()
        bricklink.script = [RuntimeError("socket on fire")]

        report = await worker.drain()

        [outcome] = report.outcomes
        assert outcome.status == EntryOutcomeStatus.RESCHEDULED
        assert outcome.error == "UNHANDLED: RuntimeError: socket on fire"
        [entry] = read_entries(item_id)
        assert entry.status == OutboxStatus.PENDING
        assert entry.attempt == 1

        [record] = [r for r in captured_logs() if r["message"] == "outbox_entry_unhandled_error"]
        assert record["exc_type"] == "RuntimeError"
        assert record["item_id"] == str(item_id)
        assert record["provider"] == "bricklink"

    @pytest.mark.asyncio
    async def test_group_stops_after_failure(self, seed, tx, owner, worker, bricklink, read_entries):
        item_id = seed()
        await worker.drain()
        tx(lambda inv: inv.update_inventory_item(owner, item_id, quantity_available=11))
        tx(lambda inv: inv.update_inventory_item(owner, item_id, quantity_available=12))
        bricklink.script = [_transient()]

        report = await worker.drain()

        assert len(report.outcomes) == 1
        assert report.outcomes[0].status == EntryOutcomeStatus.RESCHEDULED
        assert len(bricklink.calls) == 2
        statuses = [e.status for e in read_entries(item_id)]
        assert statuses == [OutboxStatus.SUCCEEDED, OutboxStatus.PENDING, OutboxStatus.PENDING]


class TestWindowOrdering:
    @pytest.mark.asyncio
    async def test_later_window_waits_for_open_predecessor(
        self, seed, tx, owner, worker, bricklink, clock, read_state
    ):
        item_id = seed(quantity_available=10)
        await worker.drain()
        tx(lambda inv: inv.update_inventory_item(owner, item_id, quantity_available=11))
        bricklink.script = [_transient()]
        await worker.drain()
        tx(lambda inv: inv.update_inventory_item(owner, item_id, quantity_available=12))

        blocked = await worker.drain()

        assert [o.status for o in blocked.outcomes] == [EntryOutcomeStatus.SKIPPED]
        assert blocked.processed == 0
        assert blocked.outcomes[0].error == "earlier window open"

        clock.advance(2)
        report = await worker.drain()

        assert report.count(EntryOutcomeStatus.SUCCEEDED) == 2
        assert [p.quantity for _, p, _ in bricklink.calls[-2:]] == [11, 12]
        assert read_state(item_id).last_synced_seq == 3

    @pytest.mark.asyncio
    async def test_already_synced_window_is_superseded(
        self, seed, session_factory, clock, worker, bricklink, read_entries
    ):
        item_id = seed()
        with session_scope(session_factory) as session:
            SyncStateService(session, clock).mark_synced(
                item_id, Provider.BRICKLINK, synced_seq=1, synced_available=10, remote_lot_id="L-9"
            )

        report = await worker.drain()

        assert report.count(EntryOutcomeStatus.SUPERSEDED) == 1
        assert bricklink.calls == []
        assert read_entries(item_id)[0].status == OutboxStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_stale_view_loses_the_claim(self, seed, worker, bricklink, read_entries):
        item_id = seed()
        [view] = read_entries(item_id)

        first = await worker.process_one(view)
        second = await worker.process_one(view)

        assert first.status == EntryOutcomeStatus.SUCCEEDED
        assert second.status == EntryOutcomeStatus.SKIPPED
        assert second.error == "claimed elsewhere"
        assert len(bricklink.calls) == 1


class TestKindAdjustment:
    @pytest.mark.asyncio
    async def test_update_without_remote_lot_is_sent_as_create(
        self, seed, tx, owner, worker, bricklink, read_state
    ):
        item_id = seed(quantity_available=10)
        bricklink.script = [_terminal()]
        await worker.drain()
        tx(lambda inv: inv.update_inventory_item(owner, item_id, quantity_available=12))

        await worker.drain()

        kind, payload, opts = bricklink.calls[-1]
        assert kind == "create"
        assert payload.quantity == 12
        assert opts.idempotency_key.endswith(":update:1-2")
        assert read_state(item_id).remote_lot_id == "bricklink-lot-1"

    @pytest.mark.asyncio
    async def test_delete_without_remote_lot_makes_no_call(
        self, seed, tx, owner, worker, bricklink, read_state, read_entries
    ):
        item_id = seed()
        bricklink.script = [_terminal()]
        await worker.drain()
        tx(lambda inv: inv.delete_inventory_item(owner, item_id))

        report = await worker.drain()

        assert report.count(EntryOutcomeStatus.SUCCEEDED) == 1
        assert bricklink.kinds == ["create"]
        state = read_state(item_id)
        assert state.status == SyncStatus.SYNCED
        assert state.remote_lot_id is None
        assert read_entries(item_id)[-1].kind == OutboxKind.DELETE

    @pytest.mark.asyncio
    async def test_delete_clears_remote_lot(self, seed, tx, owner, worker, bricklink, read_state):
        item_id = seed()
        await worker.drain()
        tx(lambda inv: inv.delete_inventory_item(owner, item_id))

        await worker.drain()

        kind, payload, _ = bricklink.calls[-1]
        assert kind == "delete"
        assert payload.remote_id == "bricklink-lot-1"
        assert payload.quantity == 0
        assert payload.location is None
        assert read_state(item_id).remote_lot_id is None


class TestArchivedItems:
    @pytest.mark.asyncio
    async def test_sale_after_delete_is_not_listed_again(
        self, seed, tx, owner, worker, marketplaces, bricklink, read_state
    ):
        item_id = seed(providers=(Provider.BRICKLINK, Provider.BRICKOWL))
        await worker.drain()
        tx(lambda inv: inv.delete_inventory_item(owner, item_id))
        await worker.drain()

        tx(
            lambda inv: inv.record_order_sale(
                item_id, 1, Provider.BRICKOWL, "o1", allow_negative=True
            )
        )
        report = await worker.drain()

        assert report.outcomes == ()
        assert bricklink.kinds == ["create", "delete"]
        assert marketplaces[Provider.BRICKOWL].kinds == ["create", "delete"]
        assert read_state(item_id).remote_lot_id is None

    @pytest.mark.asyncio
    async def test_queued_update_of_archived_item_is_superseded(
        self, seed, tx, owner, worker, bricklink, read_state, read_entries
    ):
        item_id = seed()
        await worker.drain()
        tx(lambda inv: inv.update_inventory_item(owner, item_id, quantity_available=7))
        tx(lambda inv: inv.delete_inventory_item(owner, item_id))

        report = await worker.drain()

        assert [o.status for o in report.outcomes] == [
            EntryOutcomeStatus.SUPERSEDED,
            EntryOutcomeStatus.SUCCEEDED,
        ]
        assert bricklink.kinds == ["create", "delete"]
        assert [e.status for e in read_entries(item_id)] == [OutboxStatus.SUCCEEDED] * 3
        assert read_state(item_id).remote_lot_id is None

    @pytest.mark.asyncio
    async def test_queued_update_never_becomes_a_create(
        self, seed, tx, owner, worker, bricklink, read_state
    ):
        item_id = seed()
        bricklink.script = [_terminal()]
        await worker.drain()
        tx(lambda inv: inv.update_inventory_item(owner, item_id, quantity_available=7))
        tx(lambda inv: inv.delete_inventory_item(owner, item_id))

        await worker.drain()

        assert bricklink.kinds == ["create"]
        assert read_state(item_id).remote_lot_id is None


class TestPayloadHistory:
    @pytest.mark.asyncio
    async def test_location_is_taken_as_of_the_window(
        self, seed, tx, owner, worker, bricklink, clock
    ):
        item_id = seed(location="D4")
        bricklink.script = [_transient()]
        await worker.drain()
        tx(lambda inv: inv.update_inventory_item(owner, item_id, location="E5", quantity_available=4))

        clock.advance(2)
        await worker.drain()

        assert [(k, p.location, p.quantity) for k, p, _ in bricklink.calls] == [
            ("create", "D4", 10),
            ("create", "D4", 10),
            ("update", "E5", 4),
        ]


class TestRunForever:
    @pytest.mark.asyncio
    async def test_stops_when_event_set(self, seed, worker, bricklink, captured_logs):
        seed()
        stop = asyncio.Event()

        async def stop_after_first_call():
            while not bricklink.calls:
                await asyncio.sleep(0)
            stop.set()

        await asyncio.wait_for(
            asyncio.gather(
                worker.run_forever(poll_interval_s=0.01, stop_event=stop),
                stop_after_first_call(),
            ),
            timeout=5,
        )

        messages = [r["message"] for r in captured_logs()]
        assert "outbox_worker_started" in messages
        assert "outbox_worker_stopped" in messages
        assert bricklink.kinds == ["create"]

    def test_concurrency_must_be_positive(self, session_factory, marketplaces):
        with pytest.raises(ValueError):
            OutboxWorker(session_factory, lambda p, a: marketplaces[p], concurrency=0)


class TestEndToEnd:
    """Real clients, executor and limiter against a mock HTTP transport."""

    @pytest.fixture
    def requests_seen(self):
        return []

    @pytest.fixture
    def transport(self, requests_seen):
        def handler(request: httpx.Request) -> httpx.Response:
            requests_seen.append(request)
            if request.url.host == "api.bricklink.com":
                return httpx.Response(
                    200,
                    json={"meta": {"code": 201, "message": "OK"}, "data": {"inventory_id": 555}},
                )
            return httpx.Response(200, json={"lot_id": "BO-9"})

        return httpx.MockTransport(handler)

    @pytest.mark.asyncio
    async def test_drain_through_real_clients(
        self, seed, session_factory, clock, outbox_policy, transport, requests_seen, read_state, account_id
    ):
        item_id = seed(providers=tuple(Provider), price="0.25")
        limiter = RateLimiter(
            session_factory,
            {p: RateLimitPolicy(capacity=10, window_ms=60_000) for p in Provider},
            clock=clock,
        )
        async with httpx.AsyncClient(transport=transport) as http:
            executor = UpstreamExecutor(client=http, rate_limiter=limiter, clock=clock)
            factory = CredentialClientFactory(
                session_factory, executor, retry=RetryPolicy(attempts=1)
            )
            worker = OutboxWorker(session_factory, factory, clock=clock, policy=outbox_policy)

            report = await worker.drain()

        assert report.count(EntryOutcomeStatus.SUCCEEDED) == 2
        assert read_state(item_id, Provider.BRICKLINK).remote_lot_id == "555"
        assert read_state(item_id, Provider.BRICKOWL).remote_lot_id == "BO-9"

        by_host = {r.url.host: r for r in requests_seen}
        bricklink = by_host["api.bricklink.com"]
        assert bricklink.method == "POST"
        assert bricklink.url.path == "/api/store/v1/inventories"
        assert bricklink.headers["Authorization"].startswith("OAuth ")
        body = json.loads(bricklink.content)
        assert body["item"] == {"no": "3023", "type": "PART"}
        assert body["color_id"] == 11
        assert body["unit_price"] == "0.2500"

        brickowl = by_host["api.brickowl.com"]
        assert brickowl.url.path == "/v1/inventory/create"
        form = parse_qs(brickowl.content.decode())
        assert form["key"] == ["owl-key"]
        assert form["boid"] == ["3023"]
        assert form["quantity"] == ["10"]

        snapshot = limiter.snapshot(Provider.BRICKLINK, str(account_id))
        assert snapshot.remaining == 9

    @pytest.mark.asyncio
    async def test_missing_credentials_fail_terminally(
        self, seed, session_factory, clock, outbox_policy, transport, requests_seen, account_id, owner, read_entries
    ):
        item_id = seed()
        with session_scope(session_factory) as session:
            MarketplaceSettingsService(session).store_credentials(
                account_id, Provider.BRICKLINK, {"consumer_key": "x"}, owner.actor_id, is_active=False
            )
        async with httpx.AsyncClient(transport=transport) as http:
            factory = CredentialClientFactory(session_factory, UpstreamExecutor(client=http))
            worker = OutboxWorker(session_factory, factory, clock=clock, policy=outbox_policy)
            report = await worker.drain()

        assert report.count(EntryOutcomeStatus.FAILED) == 1
        [entry] = read_entries(item_id)
        assert entry.status == OutboxStatus.FAILED
        assert entry.last_error.startswith("UPSTREAM_TERMINAL: ")
        assert requests_seen == []
