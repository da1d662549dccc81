"""
Outbound marketplace integration: rate limiting, auth, the upstream request
executor and the BrickLink / BrickOwl clients.
"""

from inventory_marketplaces.auth import ApiKeyAuth, AuthStrategy, NoAuth, OAuth1Auth, placement
from inventory_marketplaces.catalog import CatalogLookup, NullCatalog, StaticCatalog
from inventory_marketplaces.clients import (
    BrickLinkClient,
    BrickOwlClient,
    CallOptions,
    ClientResult,
    MarketplaceClient,
    RequestCache,
    build_client,
)
from inventory_marketplaces.executor import (
    AttemptTelemetry,
    RateLimitKey,
    RetryPolicy,
    UpstreamExecutor,
    UpstreamRequest,
    UpstreamResponse,
)
from inventory_marketplaces.oauth import OAuthCredentials, sign_request
from inventory_marketplaces.rate_limiter import (
    BucketSnapshot,
    ConsumeResult,
    RateLimitAlert,
    RateLimiter,
    RateLimitPolicy,
)

__all__ = [
    "ApiKeyAuth",
    "AttemptTelemetry",
    "AuthStrategy",
    "BrickLinkClient",
    "BrickOwlClient",
    "BucketSnapshot",
    "CallOptions",
    "CatalogLookup",
    "ClientResult",
    "ConsumeResult",
    "MarketplaceClient",
    "NoAuth",
    "NullCatalog",
    "OAuth1Auth",
    "OAuthCredentials",
    "RateLimitAlert",
    "RateLimitKey",
    "RateLimitPolicy",
    "RateLimiter",
    "RequestCache",
    "RetryPolicy",
    "StaticCatalog",
    "UpstreamExecutor",
    "UpstreamRequest",
    "UpstreamResponse",
    "build_client",
    "placement",
    "sign_request",
]
