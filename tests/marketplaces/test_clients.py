"""
BrickLink and BrickOwl clients: wire bodies, envelopes and error mapping.

Clients run on a real UpstreamExecutor over httpx.MockTransport with a
single-attempt retry policy, so each test sees exactly one HTTP exchange
per call.
"""

import json
from decimal import Decimal
from urllib.parse import parse_qs
from uuid import uuid4

import httpx
import pytest

from inventory_kernel.domain.dtos import LotPayload
from inventory_kernel.domain.values import ItemCondition, Provider
from inventory_kernel.exceptions import (
    RateLimitExceededError,
    TerminalUpstreamError,
    TransientUpstreamError,
)
from inventory_marketplaces.catalog import StaticCatalog
from inventory_marketplaces.clients import (
    BrickLinkClient,
    BrickOwlClient,
    CallOptions,
    RequestCache,
    build_client,
)
from inventory_marketplaces.clients.bricklink import build_create_body, build_update_body
from inventory_marketplaces.executor import RetryPolicy, UpstreamExecutor

BRICKLINK_SECRET = {"consumer_key": "ck", "consumer_secret": "cs", "token": "tok", "token_secret": "ts"}
BRICKOWL_SECRET = {"api_key": "owl-key"}

SINGLE = RetryPolicy(attempts=1)


def _payload(**overrides) -> LotPayload:
    values = {
        "item_id": uuid4(),
        "part_number": "3001",
        "color_id": "5",
        "condition": ItemCondition.NEW,
        "quantity": 12,
        "price": Decimal("13.75"),
        "location": "A1",
        "notes": "sorted",
    }
    values.update(overrides)
    return LotPayload(**values)


class Recorder:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]


@pytest.fixture
def client_for():
    def _client_for(provider, recorder, **kwargs):
        http = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
        executor = UpstreamExecutor(client=http)
        secret = BRICKLINK_SECRET if provider is Provider.BRICKLINK else BRICKOWL_SECRET
        return build_client(provider, executor, secret, bucket="acct-1", retry=SINGLE, **kwargs)

    return _client_for


def _bricklink_ok(data=None, code=200):
    return httpx.Response(200, json={"meta": {"code": code, "message": "OK"}, "data": data or {}})


class TestBrickLinkBodies:
    def test_create_body(self):
        body = build_create_body(_payload(condition=ItemCondition.USED))

        assert body["item"] == {"no": "3001", "type": "PART"}
        assert body["color_id"] == 5
        assert body["quantity"] == 12
        assert body["unit_price"] == "13.7500"
        assert body["new_or_used"] == "U"
        assert body["remarks"] == "A1"
        assert body["description"] == "sorted"

    def test_create_body_rejects_non_numeric_colour(self):
        with pytest.raises(TerminalUpstreamError) as exc_info:
            build_create_body(_payload(color_id="dark-red"))
        assert exc_info.value.upstream_code == "VALIDATION"

    def test_update_sends_signed_delta(self):
        body = build_update_body(_payload(quantity=12, previous_quantity=10))
        assert body["quantity"] == "+2"

        body = build_update_body(_payload(quantity=7, previous_quantity=10))
        assert body["quantity"] == "-3"

    def test_update_omits_quantity_without_known_delta(self):
        assert "quantity" not in build_update_body(_payload(previous_quantity=None))
        assert "quantity" not in build_update_body(_payload(quantity=10, previous_quantity=10))

    def test_missing_price_is_zero(self):
        assert build_create_body(_payload(price=None))["unit_price"] == "0.0000"


class TestBrickLinkClient:
    @pytest.mark.asyncio
    async def test_create(self, client_for):
        recorder = Recorder(_bricklink_ok({"inventory_id": 98765}, code=201))
        client = client_for(Provider.BRICKLINK, recorder)

        result = await client.create(_payload(), CallOptions(correlation_id="corr-1"))

        assert result.success
        assert result.remote_id == "98765"
        sent = recorder.requests[0]
        assert sent.method == "POST"
        assert str(sent.url) == "https://api.bricklink.com/api/store/v1/inventories"
        assert sent.headers["Authorization"].startswith("OAuth ")
        assert 'oauth_consumer_key="ck"' in sent.headers["Authorization"]
        assert sent.headers["User-Agent"] == "BrickOps/1.0"
        assert sent.headers["X-Correlation-Id"] == "corr-1"
        assert json.loads(sent.content)["quantity"] == 12

    @pytest.mark.asyncio
    async def test_update_and_delete_address_the_lot(self, client_for):
        recorder = Recorder(_bricklink_ok())
        client = client_for(Provider.BRICKLINK, recorder)

        updated = await client.update(_payload(remote_id="42", previous_quantity=10))
        deleted = await client.delete(_payload(remote_id="42"))

        assert updated.success and updated.remote_id == "42"
        assert deleted.success and deleted.remote_id is None
        put, delete = recorder.requests
        assert put.method == "PUT"
        assert put.url.path == "/api/store/v1/inventories/42"
        assert json.loads(put.content)["quantity"] == "+2"
        assert delete.method == "DELETE"
        assert delete.url.path == "/api/store/v1/inventories/42"

    @pytest.mark.asyncio
    async def test_update_without_lot_is_terminal(self, client_for):
        recorder = Recorder(_bricklink_ok())
        result = await client_for(Provider.BRICKLINK, recorder).update(_payload())

        assert not result.success
        assert isinstance(result.error, TerminalUpstreamError)
        assert recorder.requests == []

    @pytest.mark.asyncio
    async def test_delete_without_lot_is_a_no_op(self, client_for):
        recorder = Recorder(_bricklink_ok())
        result = await client_for(Provider.BRICKLINK, recorder).delete(_payload())

        assert result.success
        assert recorder.requests == []

    @pytest.mark.asyncio
    async def test_envelope_error_with_http_200(self, client_for):
        recorder = Recorder(
            httpx.Response(
                200,
                json={"meta": {"code": 400, "message": "BAD_REQUEST", "description": "bad color"}},
            )
        )

        result = await client_for(Provider.BRICKLINK, recorder).create(_payload())

        assert not result.success
        assert result.status == 400
        assert isinstance(result.error, TerminalUpstreamError)
        assert "bad color" in str(result.error)

    @pytest.mark.asyncio
    async def test_missing_envelope(self, client_for):
        recorder = Recorder(httpx.Response(200, json={"data": {}}))

        result = await client_for(Provider.BRICKLINK, recorder).create(_payload())

        assert result.error.upstream_code == "INVALID_RESPONSE"

    @pytest.mark.asyncio
    async def test_create_without_inventory_id(self, client_for):
        recorder = Recorder(_bricklink_ok({}))

        result = await client_for(Provider.BRICKLINK, recorder).create(_payload())

        assert not result.success
        assert result.error.upstream_code == "INVALID_RESPONSE"

    @pytest.mark.asyncio
    async def test_custom_base_url(self, client_for):
        recorder = Recorder(_bricklink_ok({"inventory_id": 1}))
        client = client_for(Provider.BRICKLINK, recorder, base_url="https://sandbox.test/api")

        await client.create(_payload())

        assert str(recorder.requests[0].url) == "https://sandbox.test/api/inventories"


class TestErrorMapping:
    @pytest.mark.asyncio
    async def test_429_is_rate_limited(self, client_for):
        recorder = Recorder(httpx.Response(429, headers={"Retry-After": "7"}, json={}))

        result = await client_for(Provider.BRICKOWL, recorder).create(_payload())

        assert isinstance(result.error, RateLimitExceededError)
        assert result.error.retry_after_ms == 7000
        assert result.error.bucket == "acct-1"

    @pytest.mark.asyncio
    async def test_429_without_retry_after(self, client_for):
        recorder = Recorder(httpx.Response(429, json={}))

        result = await client_for(Provider.BRICKOWL, recorder).create(_payload())

        assert result.error.retry_after_ms == 60_000

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status, upstream_code",
        [(401, "AUTH"), (403, "AUTH"), (404, "NOT_FOUND"), (422, "VALIDATION")],
    )
    async def test_client_errors_are_terminal(self, client_for, status, upstream_code):
        recorder = Recorder(httpx.Response(status, json={"error": "nope"}))

        result = await client_for(Provider.BRICKOWL, recorder).create(_payload())

        assert isinstance(result.error, TerminalUpstreamError)
        assert result.error.upstream_code == upstream_code
        assert result.status == status
        assert not result.error.retryable

    @pytest.mark.asyncio
    async def test_server_errors_are_transient(self, client_for):
        recorder = Recorder(httpx.Response(503, json={"error": "maintenance"}))

        result = await client_for(Provider.BRICKOWL, recorder).create(_payload())

        assert isinstance(result.error, TransientUpstreamError)
        assert result.error.retryable
        assert "maintenance" in str(result.error)

    @pytest.mark.asyncio
    async def test_failures_are_logged(self, client_for, captured_logs):
        recorder = Recorder(httpx.Response(404, json={"error": "gone"}))
        payload = _payload()

        await client_for(Provider.BRICKOWL, recorder).create(payload)

        [record] = [r for r in captured_logs() if r["message"] == "marketplace_call_failed"]
        assert record["provider"] == "brickowl"
        assert record["operation"] == "create"
        assert record["error_code"] == "UPSTREAM_TERMINAL"
        assert record["item_id"] == str(payload.item_id)


class TestRequestCache:
    @pytest.mark.asyncio
    async def test_success_is_reused_for_same_key(self, client_for):
        recorder = Recorder(httpx.Response(200, json={"lot_id": "L1"}))
        client = client_for(Provider.BRICKOWL, recorder)
        cache = RequestCache()
        opts = CallOptions(idempotency_key="item:brickowl:create:0-1", cache=cache)

        first = await client.create(_payload(), opts)
        second = await client.create(_payload(), opts)

        assert first == second
        assert len(recorder.requests) == 1
        assert len(cache) == 1

    @pytest.mark.asyncio
    async def test_failures_are_not_cached(self, client_for):
        recorder = Recorder(httpx.Response(503, json={}), httpx.Response(200, json={"lot_id": "L1"}))
        client = client_for(Provider.BRICKOWL, recorder)
        opts = CallOptions(idempotency_key="k", cache=RequestCache())

        first = await client.create(_payload(), opts)
        second = await client.create(_payload(), opts)

        assert not first.success
        assert second.success
        assert len(recorder.requests) == 2

    @pytest.mark.asyncio
    async def test_other_operation_is_not_reused(self, client_for):
        recorder = Recorder(httpx.Response(200, json={"lot_id": "L1"}))
        client = client_for(Provider.BRICKOWL, recorder)
        opts = CallOptions(idempotency_key="k", cache=RequestCache())

        await client.create(_payload(), opts)
        await client.update(_payload(remote_id="L1"), opts)

        assert len(recorder.requests) == 2


class TestBrickOwlClient:
    @pytest.mark.asyncio
    async def test_create_form(self, client_for):
        recorder = Recorder(httpx.Response(200, json={"lot_id": 555}))
        payload = _payload(condition=ItemCondition.USED)

        result = await client_for(Provider.BRICKOWL, recorder).create(payload)

        assert result.remote_id == "555"
        sent = recorder.requests[0]
        assert sent.url.path == "/v1/inventory/create"
        assert "key" not in sent.url.params
        form = parse_qs(sent.content.decode())
        assert form["key"] == ["owl-key"]
        assert form["boid"] == ["3001"]
        assert form["price"] == ["13.750"]
        assert form["condition"] == ["usedn"]
        assert form["external_id"] == [str(payload.item_id)]
        assert form["personal_note"] == ["A1"]
        assert form["color_id"] == ["5"]

    def test_catalog_enrichment(self):
        client = BrickOwlClient.from_secret(
            None,
            BRICKOWL_SECRET,
            bucket="acct-1",
            catalog=StaticCatalog(
                brickowl_ids={("3001", "5"): "771344-24"},
                brickowl_colors={"5": 38},
            ),
        )

        body = client.build_create_body(_payload())

        assert body["boid"] == "771344-24"
        assert body["color_id"] == 38

    def test_catalog_part_fallback(self):
        catalog = StaticCatalog(brickowl_ids={("3001", ""): "771344"})
        assert catalog.brickowl_id("3001", "99") == "771344"
        assert catalog.brickowl_color("99") is None

    def test_update_body_quantities(self):
        absolute = BrickOwlClient.build_update_body(_payload(remote_id="L1", quantity=4))
        assert absolute["absolute_quantity"] == 4
        assert "relative_quantity" not in absolute

        relative = BrickOwlClient.build_update_body(
            _payload(remote_id="L1", quantity=4, previous_quantity=6)
        )
        assert relative["relative_quantity"] == -2
        assert relative["lot_id"] == "L1"

        unchanged = BrickOwlClient.build_update_body(
            _payload(remote_id="L1", quantity=6, previous_quantity=6)
        )
        assert "relative_quantity" not in unchanged
        assert "absolute_quantity" not in unchanged

    @pytest.mark.asyncio
    async def test_error_body_with_http_200(self, client_for):
        recorder = Recorder(httpx.Response(200, json={"error": "Invalid BOID"}))

        result = await client_for(Provider.BRICKOWL, recorder).create(_payload())

        assert not result.success
        assert isinstance(result.error, TerminalUpstreamError)
        assert "Invalid BOID" in str(result.error)

    @pytest.mark.asyncio
    async def test_delete_posts_lot_id(self, client_for):
        recorder = Recorder(httpx.Response(200, json={}))

        result = await client_for(Provider.BRICKOWL, recorder).delete(_payload(remote_id="L9"))

        assert result.success
        form = parse_qs(recorder.requests[0].content.decode())
        assert form == {"lot_id": ["L9"], "key": ["owl-key"]}


def test_build_client_dispatches_on_provider():
    executor = None
    assert isinstance(build_client(Provider.BRICKLINK, executor, BRICKLINK_SECRET, bucket="b"), BrickLinkClient)
    assert isinstance(build_client(Provider.BRICKOWL, executor, BRICKOWL_SECRET, bucket="b"), BrickOwlClient)
