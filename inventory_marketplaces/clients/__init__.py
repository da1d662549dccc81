"""Provider clients behind the MarketplaceClient interface."""

from inventory_kernel.domain.values import Provider
from inventory_marketplaces.clients.base import (
    CallOptions,
    ClientResult,
    MarketplaceClient,
    RequestCache,
)
from inventory_marketplaces.clients.bricklink import BrickLinkClient
from inventory_marketplaces.clients.brickowl import BrickOwlClient

CLIENT_CLASSES: dict[Provider, type[MarketplaceClient]] = {
    Provider.BRICKLINK: BrickLinkClient,
    Provider.BRICKOWL: BrickOwlClient,
}


def build_client(provider: Provider, executor, secret: dict, **kwargs) -> MarketplaceClient:
    """Instantiate the client for ``provider`` from its stored credential secret."""
    return CLIENT_CLASSES[provider].from_secret(executor, secret, **kwargs)


__all__ = [
    "BrickLinkClient",
    "BrickOwlClient",
    "CLIENT_CLASSES",
    "CallOptions",
    "ClientResult",
    "MarketplaceClient",
    "RequestCache",
    "build_client",
]
