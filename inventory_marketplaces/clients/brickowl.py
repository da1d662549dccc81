"""
BrickOwl store inventory client.

Wire format: form-encoded POST bodies, API key in the query for GET and as
a ``key`` form field for POST. Items are addressed by BOID; the catalog is
asked for the BOID and BrickOwl colour of a part, and a miss passes the
part number / colour through.
"""

from decimal import Decimal

from inventory_kernel.domain.dtos import LotPayload
from inventory_kernel.domain.values import ItemCondition, Provider
from inventory_kernel.exceptions import TerminalUpstreamError
from inventory_kernel.logging_config import get_logger
from inventory_marketplaces.auth import ApiKeyAuth, placement
from inventory_marketplaces.clients.base import CallOptions, ClientResult, MarketplaceClient
from inventory_marketplaces.executor import UpstreamResponse

logger = get_logger("marketplaces.brickowl")


def _price(price: Decimal | None) -> str:
    return f"{(price or Decimal('0')):.3f}"


class BrickOwlClient(MarketplaceClient):
    provider = Provider.BRICKOWL
    default_base_url = "https://api.brickowl.com/v1"

    @classmethod
    def from_secret(cls, executor, secret: dict, **kwargs) -> "BrickOwlClient":
        auth = ApiKeyAuth(
            secret["api_key"],
            query=placement("key", ["GET"]),
            form_field=placement("key", ["POST"]),
        )
        return cls(executor, auth, **kwargs)

    def build_create_body(self, payload: LotPayload) -> dict:
        boid = self.catalog.brickowl_id(payload.part_number, payload.color_id)
        color = self.catalog.brickowl_color(payload.color_id)
        if boid is None or color is None:
            logger.info(
                "catalog_enrichment_missing",
                extra={
                    "item_id": str(payload.item_id),
                    "part_number": payload.part_number,
                    "color_id": payload.color_id,
                    "missing": [n for n, v in (("boid", boid), ("color", color)) if v is None],
                },
            )
        body = {
            "boid": boid or payload.part_number,
            "quantity": payload.quantity,
            "price": _price(payload.price),
            "condition": "new" if payload.condition is ItemCondition.NEW else "usedn",
            "external_id": str(payload.item_id),
            "personal_note": payload.location or None,
            "public_note": payload.notes or None,
        }
        if color is not None:
            body["color_id"] = color
        elif payload.color_id.isdigit():
            body["color_id"] = int(payload.color_id)
        return body

    @staticmethod
    def build_update_body(payload: LotPayload) -> dict:
        body = {
            "lot_id": payload.remote_id,
            "price": _price(payload.price),
            "personal_note": payload.location or None,
            "public_note": payload.notes or None,
        }
        if payload.previous_quantity is None:
            body["absolute_quantity"] = payload.quantity
        elif payload.quantity_delta != 0:
            body["relative_quantity"] = payload.quantity_delta
        return body

    async def _create(self, payload: LotPayload, opts: CallOptions) -> ClientResult:
        response = await self.executor.send(
            self._request(
                "POST", "/inventory/create", opts,
                body=self.build_create_body(payload), form_encoded=True,
            )
        )
        failure = self._check(response)
        if failure is not None:
            return failure
        lot_id = response.data.get("lot_id") if isinstance(response.data, dict) else None
        if not lot_id:
            return ClientResult(
                success=False,
                status=response.status,
                error=TerminalUpstreamError(
                    "BrickOwl create response has no lot_id",
                    provider=self.provider.value,
                    status=response.status,
                    upstream_code="INVALID_RESPONSE",
                ),
            )
        return ClientResult(success=True, remote_id=str(lot_id), status=response.status)

    async def _update(self, payload: LotPayload, opts: CallOptions) -> ClientResult:
        if not payload.remote_id:
            raise TerminalUpstreamError(
                "BrickOwl update needs a lot id",
                provider=self.provider.value,
                upstream_code="VALIDATION",
            )
        response = await self.executor.send(
            self._request(
                "POST", "/inventory/update", opts,
                body=self.build_update_body(payload), form_encoded=True,
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
            self._request(
                "POST", "/inventory/delete", opts,
                body={"lot_id": payload.remote_id}, form_encoded=True,
            )
        )
        failure = self._check(response)
        if failure is not None:
            return failure
        return ClientResult(success=True, remote_id=None, status=response.status)

    def _check(self, response: UpstreamResponse) -> ClientResult | None:
        data = response.data if isinstance(response.data, dict) else {}
        if not response.ok:
            return self._failure(response, data.get("error"))
        if data.get("error"):
            # BrickOwl reports some validation failures with a 200
            return ClientResult(
                success=False,
                status=response.status,
                error=TerminalUpstreamError(
                    f"brickowl rejected the request: {data['error']}",
                    provider=self.provider.value,
                    status=response.status,
                    upstream_code="VALIDATION",
                ),
            )
        return None
