"""
BrickLink store inventory client.

Wire format: JSON bodies, OAuth 1.0a signed requests, and a response
envelope ``{"meta": {"code", "message", "description"}, "data": ...}``
whose ``meta.code`` is authoritative even when the HTTP status is 200.
Updates send quantity as a signed delta string ("+2", "-3").
"""

from decimal import Decimal

from inventory_kernel.domain.dtos import LotPayload
from inventory_kernel.domain.values import ItemCondition, Provider
from inventory_kernel.exceptions import TerminalUpstreamError
from inventory_marketplaces.auth import OAuth1Auth
from inventory_marketplaces.clients.base import CallOptions, ClientResult, MarketplaceClient
from inventory_marketplaces.executor import UpstreamResponse
from inventory_marketplaces.oauth import OAuthCredentials


def _unit_price(price: Decimal | None) -> str:
    return f"{(price or Decimal('0')):.4f}"


def _new_or_used(condition: ItemCondition) -> str:
    return "N" if condition is ItemCondition.NEW else "U"


def build_create_body(payload: LotPayload) -> dict:
    try:
        color_id = int(payload.color_id)
    except ValueError:
        raise TerminalUpstreamError(
            f"BrickLink colour ids are numeric, got {payload.color_id!r}",
            provider=Provider.BRICKLINK.value,
            upstream_code="VALIDATION",
        ) from None
    return {
        "item": {"no": payload.part_number, "type": "PART"},
        "color_id": color_id,
        "quantity": payload.quantity,
        "unit_price": _unit_price(payload.price),
        "new_or_used": _new_or_used(payload.condition),
        "remarks": payload.location or "",
        "description": payload.notes or "",
        "bulk": 1,
        "is_retain": False,
        "is_stock_room": False,
    }


def build_update_body(payload: LotPayload) -> dict:
    body = {
        "unit_price": _unit_price(payload.price),
        "new_or_used": _new_or_used(payload.condition),
        "remarks": payload.location or "",
        "description": payload.notes or "",
    }
    # Without a known marketplace quantity there is no safe delta to send
    if payload.previous_quantity is not None and payload.quantity_delta != 0:
        body["quantity"] = f"{payload.quantity_delta:+d}"
    return body


class BrickLinkClient(MarketplaceClient):
    provider = Provider.BRICKLINK
    default_base_url = "https://api.bricklink.com/api/store/v1"

    @classmethod
    def from_secret(cls, executor, secret: dict, **kwargs) -> "BrickLinkClient":
        """Build from a stored credential dict (consumer key/secret, token/secret)."""
        credentials = OAuthCredentials(
            consumer_key=secret["consumer_key"],
            consumer_secret=secret["consumer_secret"],
            token=secret.get("token"),
            token_secret=secret.get("token_secret"),
        )
        return cls(executor, OAuth1Auth(credentials), **kwargs)

    async def _create(self, payload: LotPayload, opts: CallOptions) -> ClientResult:
        response = await self.executor.send(
            self._request("POST", "/inventories", opts, body=build_create_body(payload))
        )
        failure = self._check(response)
        if failure is not None:
            return failure
        data = response.data.get("data") or {}
        inventory_id = data.get("inventory_id")
        if inventory_id is None:
            return ClientResult(
                success=False,
                status=response.status,
                error=TerminalUpstreamError(
                    "BrickLink create response has no inventory_id",
                    provider=self.provider.value,
                    status=response.status,
                    upstream_code="INVALID_RESPONSE",
                ),
            )
        return ClientResult(success=True, remote_id=str(inventory_id), status=response.status)

    async def _update(self, payload: LotPayload, opts: CallOptions) -> ClientResult:
        if not payload.remote_id:
            raise TerminalUpstreamError(
                "BrickLink update needs an inventory id",
                provider=self.provider.value,
                upstream_code="VALIDATION",
            )
        response = await self.executor.send(
            self._request(
                "PUT",
                f"/inventories/{payload.remote_id}",
                opts,
                body=build_update_body(payload),
            )
        )
        failure = self._check(response)
        if failure is not None:
            return failure
        return ClientResult(success=True, remote_id=payload.remote_id, status=response.status)

    async def _delete(self, payload: LotPayload, opts: CallOptions) -> ClientResult:
        if not payload.remote_id:
            return ClientResult(success=True)
        response = await self.executor.send(
            self._request("DELETE", f"/inventories/{payload.remote_id}", opts)
        )
        failure = self._check(response)
        if failure is not None:
            return failure
        return ClientResult(success=True, remote_id=None, status=response.status)

    def _check(self, response: UpstreamResponse) -> ClientResult | None:
        """Failure result for a bad HTTP status or a bad envelope, else None."""
        meta = response.data.get("meta") if isinstance(response.data, dict) else None
        if not response.ok:
            message = None
            if meta:
                message = meta.get("description") or meta.get("message")
            return self._failure(response, message)
        if meta is None:
            return ClientResult(
                success=False,
                status=response.status,
                error=TerminalUpstreamError(
                    "BrickLink response is missing the meta envelope",
                    provider=self.provider.value,
                    status=response.status,
                    upstream_code="INVALID_RESPONSE",
                ),
            )
        code = int(meta.get("code", response.status))
        if not 200 <= code < 300:
            error = self._error_for(code, meta.get("description") or meta.get("message"))
            return ClientResult(success=False, error=error, status=code)
        return None
