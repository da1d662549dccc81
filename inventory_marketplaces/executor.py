"""
UpstreamExecutor -- the single path for outbound marketplace HTTP calls.

Responsibility:
    For each attempt: take a token from the rate limiter, apply the auth
    strategy, issue the call through an ``httpx.AsyncClient``, and retry
    retryable statuses and network errors with capped exponential backoff.
    Every attempt is reported to an optional observer.

Architecture position:
    Marketplaces layer, below the provider clients. Clients never retry on
    their own.

Failure modes:
    - RateLimitExceededError: the local bucket denied the call (unless the
      retry policy opts into waiting for the reset).
    - QuotaExhaustedError: the bucket's circuit breaker is open.
    - TransientUpstreamError: network errors outlived the retry policy.
    - TerminalUpstreamError: a 2xx response whose body is not valid JSON.
    Non-2xx responses are returned, not raised; callers classify them.
"""

import asyncio
import json
import random
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import timezone
from email.utils import parsedate_to_datetime
from typing import Any

import httpx

from inventory_kernel.domain.clock import Clock, SystemClock
from inventory_kernel.domain.values import Provider
from inventory_kernel.exceptions import (
    RateLimitExceededError,
    TerminalUpstreamError,
    TransientUpstreamError,
    UpstreamError,
)
from inventory_kernel.logging_config import get_logger
from inventory_marketplaces.auth import AuthStrategy, AuthTarget
from inventory_marketplaces.oauth import OAuthSignature
from inventory_marketplaces.rate_limiter import ConsumeResult, RateLimiter

logger = get_logger("marketplaces.executor")

RETRYABLE_STATUSES = frozenset({408, 425, 429, 500, 502, 503, 504})

# Limiter denials waited out per attempt when retry_on_rate_limit is set
MAX_LIMITER_WAITS = 3


@dataclass(frozen=True)
class RetryPolicy:
    """
    Attempt ceiling and backoff for one request.

    delay(n) = min(base_delay_ms * multiplier ** (n - 1) + jitter, max_delay_ms)
    for the wait after attempt n, jitter uniform in [0, jitter_ms].
    """

    attempts: int = 3
    base_delay_ms: int = 250
    multiplier: float = 2.0
    max_delay_ms: int = 5000
    jitter_ms: int = 100
    retry_statuses: frozenset[int] = RETRYABLE_STATUSES
    retry_on_rate_limit: bool = False

    def delay_ms(self, attempt: int, rng: random.Random | None = None) -> int:
        exponential = self.base_delay_ms * self.multiplier ** (attempt - 1)
        jitter = (rng or random).uniform(0, self.jitter_ms) if self.jitter_ms else 0
        return int(min(exponential + jitter, self.max_delay_ms))


@dataclass(frozen=True)
class RateLimitKey:
    provider: Provider
    bucket: str


@dataclass
class UpstreamRequest:
    """
    One logical call. ``body`` dicts are sent as JSON unless
    ``form_encoded`` is set (or the auth strategy adds a form field), in
    which case nested values are JSON-stringified form fields.
    """

    method: str
    base_url: str
    path: str
    query: dict[str, Any] | None = None
    body: Any = None
    form_encoded: bool = False
    headers: dict[str, str] = field(default_factory=dict)
    auth: AuthStrategy | None = None
    rate_limit: RateLimitKey | None = None
    retry: RetryPolicy | None = None
    expect_json: bool = True
    timeout_s: float | None = None

    @property
    def url(self) -> str:
        return f"{self.base_url.rstrip('/')}/{self.path.lstrip('/')}"


@dataclass(frozen=True)
class AttemptTelemetry:
    attempt: int
    method: str
    url: str
    status: int | None = None
    error: str | None = None
    duration_ms: int | None = None
    retry_in_ms: int | None = None
    rate_limit: ConsumeResult | None = None


@dataclass(frozen=True)
class UpstreamResponse:
    ok: bool
    status: int
    data: Any
    error: str | None
    attempts: int
    duration_ms: int
    headers: Mapping[str, str] = field(default_factory=dict)
    raw_body: str | None = None
    throttle: ConsumeResult | None = None
    oauth: OAuthSignature | None = None


class UpstreamExecutor:
    """
    Sends UpstreamRequests.

    Args:
        client: Shared ``httpx.AsyncClient``; one is created (and owned) if
            omitted.
        rate_limiter: Consulted before every attempt of a request that
            carries a ``rate_limit`` key.
        default_retry: Policy for requests without their own.
        observer: Called with an AttemptTelemetry for every attempt.
        sleep: Awaitable sleep taking seconds; injectable for tests.
        rng: Jitter source.
        clock: Used to interpret HTTP-date Retry-After headers.
        timeout_s: Default per-attempt timeout.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        rate_limiter: RateLimiter | None = None,
        default_retry: RetryPolicy | None = None,
        observer: Callable[[AttemptTelemetry], None] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
        clock: Clock | None = None,
        timeout_s: float = 30.0,
    ):
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout_s)
        self._limiter = rate_limiter
        self._default_retry = default_retry or RetryPolicy()
        self._observer = observer
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._clock = clock or SystemClock()
        self._timeout_s = timeout_s

    @property
    def rate_limiter(self) -> RateLimiter | None:
        return self._limiter

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "UpstreamExecutor":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def send(self, request: UpstreamRequest) -> UpstreamResponse:
        """
        Execute ``request`` with rate limiting, auth and retries.

        Returns:
            UpstreamResponse for the final attempt (2xx or not).
        """
        policy = request.retry or self._default_retry
        method = request.method.upper()
        started = time.monotonic()
        throttle: ConsumeResult | None = None
        oauth: OAuthSignature | None = None
        last_network_error: httpx.TransportError | None = None

        for attempt in range(1, policy.attempts + 1):
            if request.rate_limit is not None and self._limiter is not None:
                throttle = await self._acquire(request, policy, attempt)

            target = self._build_target(request, method)
            if request.auth is not None:
                request.auth.apply(target)
                oauth = target.oauth or oauth

            attempt_started = time.monotonic()
            try:
                response = await self._client.request(
                    method,
                    request.url,
                    params=target.query or None,
                    headers=target.headers,
                    timeout=request.timeout_s or self._timeout_s,
                    **self._body_kwargs(request, target),
                )
            except httpx.TransportError as exc:
                last_network_error = exc
                duration = _elapsed_ms(attempt_started)
                retry_in = policy.delay_ms(attempt, self._rng) if attempt < policy.attempts else None
                self._report(
                    AttemptTelemetry(
                        attempt=attempt,
                        method=method,
                        url=target.url,
                        error=f"{type(exc).__name__}: {exc}",
                        duration_ms=duration,
                        retry_in_ms=retry_in,
                        rate_limit=throttle,
                    )
                )
                if retry_in is None:
                    break
                await self._wait(retry_in, request, attempt, reason=type(exc).__name__)
                continue

            duration = _elapsed_ms(attempt_started)
            raw = response.text
            retry_in = self._retry_delay(response, policy, attempt)
            self._report(
                AttemptTelemetry(
                    attempt=attempt,
                    method=method,
                    url=target.url,
                    status=response.status_code,
                    duration_ms=duration,
                    retry_in_ms=retry_in,
                    rate_limit=throttle,
                )
            )
            if retry_in is not None:
                await self._wait(retry_in, request, attempt, reason=str(response.status_code))
                continue

            ok = response.is_success
            data = self._parse(raw, request, ok, response.status_code)
            self._feed_breaker(request, healthy=response.status_code < 500 and response.status_code != 429)
            return UpstreamResponse(
                ok=ok,
                status=response.status_code,
                data=data,
                error=None if ok else (raw or response.reason_phrase),
                attempts=attempt,
                duration_ms=_elapsed_ms(started),
                headers=dict(response.headers),
                raw_body=raw or None,
                throttle=throttle,
                oauth=oauth,
            )

        self._feed_breaker(request, healthy=False)
        provider = request.rate_limit.provider.value if request.rate_limit else None
        logger.error(
            "upstream_request_exhausted",
            extra={
                "method": method,
                "url": request.url,
                "attempts": policy.attempts,
                "error": str(last_network_error),
            },
        )
        raise TransientUpstreamError(
            f"{method} {request.url} failed after {policy.attempts} attempts: {last_network_error}",
            provider=provider,
        )

    # ------------------------------------------------------------------
    # Attempt helpers
    # ------------------------------------------------------------------

    async def _acquire(
        self,
        request: UpstreamRequest,
        policy: RetryPolicy,
        attempt: int,
    ) -> ConsumeResult:
        key = request.rate_limit
        for _ in range(MAX_LIMITER_WAITS):
            result = self._limiter.consume(key.provider, key.bucket)
            if result.granted:
                return result

            self._report(
                AttemptTelemetry(
                    attempt=attempt,
                    method=request.method.upper(),
                    url=request.url,
                    retry_in_ms=result.retry_after_ms,
                    rate_limit=result,
                )
            )
            if not policy.retry_on_rate_limit or result.retry_after_ms > policy.max_delay_ms:
                break
            await self._sleep(result.retry_after_ms / 1000)

        raise RateLimitExceededError(
            key.provider.value,
            key.bucket,
            retry_after_ms=result.retry_after_ms,
            reset_at=result.reset_at,
        )

    @staticmethod
    def _build_target(request: UpstreamRequest, method: str) -> AuthTarget:
        headers = {"Accept": "application/json"}
        headers.update(request.headers)
        query = {k: _scalar(v) for k, v in (request.query or {}).items() if v is not None}
        url = str(httpx.URL(request.url, params=query)) if query else request.url
        form = None
        if request.form_encoded and request.body is not None:
            form = _form_fields(request.body)
        return AuthTarget(method=method, url=url, headers=headers, query=query, form=form)

    @staticmethod
    def _body_kwargs(request: UpstreamRequest, target: AuthTarget) -> dict[str, Any]:
        if target.form is not None:
            # Auth may have asked for a form field on a JSON-shaped body
            if not request.form_encoded and isinstance(request.body, Mapping):
                return {"data": {**_form_fields(request.body), **target.form}}
            return {"data": target.form}
        if request.body is None:
            return {}
        if isinstance(request.body, (str, bytes)):
            return {"content": request.body}
        return {"json": request.body}

    def _retry_delay(self, response: httpx.Response, policy: RetryPolicy, attempt: int) -> int | None:
        if attempt >= policy.attempts or response.status_code not in policy.retry_statuses:
            return None
        retry_after = self._parse_retry_after(response.headers.get("Retry-After"))
        if retry_after is not None:
            return min(retry_after, policy.max_delay_ms)
        return policy.delay_ms(attempt, self._rng)

    def _parse_retry_after(self, value: str | None) -> int | None:
        if not value:
            return None
        value = value.strip()
        if value.isdigit():
            return int(value) * 1000
        try:
            moment = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        return max(0, int((moment - self._clock.now()).total_seconds() * 1000))

    async def _wait(self, delay_ms: int, request: UpstreamRequest, attempt: int, reason: str) -> None:
        logger.info(
            "upstream_retry_scheduled",
            extra={
                "method": request.method.upper(),
                "url": request.url,
                "attempt": attempt,
                "retry_in_ms": delay_ms,
                "reason": reason,
            },
        )
        await self._sleep(delay_ms / 1000)

    @staticmethod
    def _parse(raw: str, request: UpstreamRequest, ok: bool, status: int) -> Any:
        if not raw:
            return None
        if not request.expect_json:
            return raw
        try:
            return json.loads(raw)
        except ValueError as exc:
            if not ok:
                return None
            provider = request.rate_limit.provider.value if request.rate_limit else None
            raise TerminalUpstreamError(
                f"Malformed JSON from {request.url}: {exc}",
                provider=provider,
                status=status,
                upstream_code="INVALID_JSON",
            ) from exc

    def _report(self, telemetry: AttemptTelemetry) -> None:
        logger.debug(
            "upstream_attempt",
            extra={
                "attempt": telemetry.attempt,
                "method": telemetry.method,
                "url": telemetry.url,
                "status": telemetry.status,
                "error": telemetry.error,
                "duration_ms": telemetry.duration_ms,
                "retry_in_ms": telemetry.retry_in_ms,
            },
        )
        if self._observer is not None:
            self._observer(telemetry)

    def _feed_breaker(self, request: UpstreamRequest, healthy: bool) -> None:
        if request.rate_limit is None or self._limiter is None:
            return
        key = request.rate_limit
        if healthy:
            self._limiter.record_success(key.provider, key.bucket)
        else:
            self._limiter.record_failure(key.provider, key.bucket)


def _scalar(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _form_fields(body: Any) -> dict[str, str]:
    if not isinstance(body, Mapping):
        raise UpstreamError("Form-encoded bodies must be mappings")
    fields: dict[str, str] = {}
    for key, value in body.items():
        if value is None:
            continue
        if isinstance(value, (dict, list)):
            fields[key] = json.dumps(value, separators=(",", ":"))
        else:
            fields[key] = _scalar(value)
    return fields


def _elapsed_ms(since: float) -> int:
    return int((time.monotonic() - since) * 1000)
