"""
MarketplaceClient -- one interface over the supported marketplaces.

Responsibility:
    Turn a provider-neutral LotPayload into the provider's wire request,
    send it through the UpstreamExecutor, and map the response to a
    ClientResult. Failures are returned as typed UpstreamErrors on the
    result; the caller decides whether to retry.

Invariants enforced:
    - Clients never retry; the executor owns retries and rate limiting.
    - With an idempotency key and a RequestCache, a key that already
      succeeded returns the cached result without a network call. The cache
      lives for one drain of the outbox worker, not across processes.
"""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, ClassVar

from inventory_kernel.domain.dtos import LotPayload
from inventory_kernel.domain.values import Provider
from inventory_kernel.exceptions import (
    RateLimitExceededError,
    TerminalUpstreamError,
    TransientUpstreamError,
    UpstreamError,
)
from inventory_kernel.logging_config import get_logger
from inventory_kernel.utils.idempotency import new_correlation_id
from inventory_marketplaces.auth import AuthStrategy
from inventory_marketplaces.catalog import CatalogLookup, NullCatalog
from inventory_marketplaces.executor import (
    RateLimitKey,
    RetryPolicy,
    UpstreamExecutor,
    UpstreamRequest,
    UpstreamResponse,
)

logger = get_logger("marketplaces.client")

USER_AGENT = "BrickOps/1.0"
CORRELATION_HEADER = "X-Correlation-Id"

# Retry hint for a marketplace 429 without a usable Retry-After header
DEFAULT_UPSTREAM_RETRY_AFTER_MS = 60_000


@dataclass(frozen=True)
class ClientResult:
    success: bool
    remote_id: str | None = None
    error: UpstreamError | None = None
    status: int | None = None


class RequestCache:
    """Idempotency-key -> successful ClientResult, for one logical sync session."""

    def __init__(self) -> None:
        self._results: dict[tuple[str, str, str], ClientResult] = {}

    def get(self, key: tuple[str, str, str]) -> ClientResult | None:
        return self._results.get(key)

    def put(self, key: tuple[str, str, str], result: ClientResult) -> None:
        self._results[key] = result

    def __len__(self) -> int:
        return len(self._results)


@dataclass(frozen=True)
class CallOptions:
    idempotency_key: str | None = None
    correlation_id: str | None = None
    cache: RequestCache | None = field(default=None, compare=False)


class MarketplaceClient(ABC):
    """
    Base for provider clients.

    Args:
        executor: Shared executor (rate limiting, auth, retries).
        auth: The provider's auth strategy, built from stored credentials.
        bucket: Rate-limit bucket, normally the business account id.
        base_url: Override of the provider's API root.
        retry: Retry policy for this client's requests.
        catalog: Optional catalog for payload enrichment.
    """

    provider: ClassVar[Provider]
    default_base_url: ClassVar[str]

    def __init__(
        self,
        executor: UpstreamExecutor,
        auth: AuthStrategy,
        *,
        bucket: str,
        base_url: str | None = None,
        retry: RetryPolicy | None = None,
        catalog: CatalogLookup | None = None,
    ):
        self.executor = executor
        self.auth = auth
        self.bucket = bucket
        self.base_url = base_url or self.default_base_url
        self.retry = retry
        self.catalog = catalog or NullCatalog()

    async def create(self, payload: LotPayload, opts: CallOptions | None = None) -> ClientResult:
        return await self._run("create", payload, opts, self._create)

    async def update(self, payload: LotPayload, opts: CallOptions | None = None) -> ClientResult:
        return await self._run("update", payload, opts, self._update)

    async def delete(self, payload: LotPayload, opts: CallOptions | None = None) -> ClientResult:
        return await self._run("delete", payload, opts, self._delete)

    @abstractmethod
    async def _create(self, payload: LotPayload, opts: CallOptions) -> ClientResult: ...

    @abstractmethod
    async def _update(self, payload: LotPayload, opts: CallOptions) -> ClientResult: ...

    @abstractmethod
    async def _delete(self, payload: LotPayload, opts: CallOptions) -> ClientResult: ...

    async def _run(
        self,
        operation: str,
        payload: LotPayload,
        opts: CallOptions | None,
        call: Callable[[LotPayload, CallOptions], Awaitable[ClientResult]],
    ) -> ClientResult:
        opts = opts or CallOptions()
        cache_key = None
        if opts.cache is not None and opts.idempotency_key:
            cache_key = (self.provider.value, operation, opts.idempotency_key)
            cached = opts.cache.get(cache_key)
            if cached is not None:
                logger.info(
                    "idempotent_response_reused",
                    extra={"provider": self.provider.value, "idempotency_key": opts.idempotency_key},
                )
                return cached

        try:
            result = await call(payload, opts)
        except UpstreamError as exc:
            result = ClientResult(success=False, error=exc, status=exc.status)

        if not result.success:
            logger.warning(
                "marketplace_call_failed",
                extra={
                    "provider": self.provider.value,
                    "operation": operation,
                    "item_id": str(payload.item_id),
                    "status": result.status,
                    "error_code": result.error.code if result.error else None,
                    "error": str(result.error) if result.error else None,
                },
            )
        elif cache_key is not None:
            opts.cache.put(cache_key, result)
        return result

    # ------------------------------------------------------------------
    # Request/response helpers
    # ------------------------------------------------------------------

    def _request(
        self,
        method: str,
        path: str,
        opts: CallOptions,
        *,
        query: dict[str, Any] | None = None,
        body: Any = None,
        form_encoded: bool = False,
    ) -> UpstreamRequest:
        return UpstreamRequest(
            method=method,
            base_url=self.base_url,
            path=path,
            query=query,
            body=body,
            form_encoded=form_encoded,
            headers={
                "User-Agent": USER_AGENT,
                CORRELATION_HEADER: opts.correlation_id or new_correlation_id(),
            },
            auth=self.auth,
            rate_limit=RateLimitKey(self.provider, self.bucket),
            retry=self.retry,
        )

    def _error_for(
        self,
        status: int,
        message: str | None,
        retry_after: str | None = None,
    ) -> UpstreamError:
        """Map a failed status to the error taxonomy."""
        provider = self.provider.value
        text = f"{provider} responded {status}: {message or 'no details'}"
        if status == 429:
            retry_ms = DEFAULT_UPSTREAM_RETRY_AFTER_MS
            if retry_after and retry_after.strip().isdigit():
                retry_ms = int(retry_after.strip()) * 1000
            return RateLimitExceededError(provider, self.bucket, retry_after_ms=retry_ms, status=status)
        if status in (401, 403):
            return TerminalUpstreamError(text, provider=provider, status=status, upstream_code="AUTH")
        if status == 404:
            return TerminalUpstreamError(text, provider=provider, status=status, upstream_code="NOT_FOUND")
        if 400 <= status < 500:
            return TerminalUpstreamError(text, provider=provider, status=status, upstream_code="VALIDATION")
        return TransientUpstreamError(text, provider=provider, status=status, upstream_code="SERVER")

    def _failure(self, response: UpstreamResponse, message: str | None = None) -> ClientResult:
        error = self._error_for(
            response.status,
            message or response.error,
            response.headers.get("retry-after") or response.headers.get("Retry-After"),
        )
        return ClientResult(success=False, error=error, status=response.status)
