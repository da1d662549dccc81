"""
Config -> runtime bridges.

Functions that turn a loaded ``SyncConfig`` into the policy objects the
kernel and the marketplaces layer take as constructor arguments. They live
here because the kernel never imports inventory_config.

Usage:
    config = load_config()
    limiter = RateLimiter(factory, build_rate_limit_policies(config))
    executor = UpstreamExecutor(rate_limiter=limiter,
                                default_retry=build_retry_policy(config))
"""

from __future__ import annotations

from inventory_config.schema import SyncConfig
from inventory_kernel.domain.policies import OutboxPolicy
from inventory_kernel.domain.values import Provider
from inventory_marketplaces.executor import RetryPolicy
from inventory_marketplaces.rate_limiter import RateLimitPolicy


def build_outbox_policy(config: SyncConfig) -> OutboxPolicy:
    o = config.outbox
    return OutboxPolicy(
        max_attempts=o.max_attempts,
        base_delay_ms=o.base_delay_ms,
        max_delay_ms=o.max_delay_ms,
        jitter_ms=o.jitter_ms,
        retention_days=o.retention_days,
    )


def build_rate_limit_policies(config: SyncConfig) -> dict[Provider, RateLimitPolicy]:
    """One policy per configured provider; the breaker settings are shared."""
    breaker = config.circuit_breaker
    return {
        p.provider: RateLimitPolicy(
            capacity=p.rate_limit.capacity,
            window_ms=p.rate_limit.window_seconds * 1000,
            alert_threshold=p.rate_limit.alert_threshold,
            failure_threshold=breaker.failure_threshold,
            open_ms=breaker.open_seconds * 1000,
        )
        for p in config.providers
    }


def build_retry_policy(config: SyncConfig) -> RetryPolicy:
    r = config.retry
    return RetryPolicy(
        attempts=r.attempts,
        base_delay_ms=r.base_delay_ms,
        multiplier=r.multiplier,
        max_delay_ms=r.max_delay_ms,
        jitter_ms=r.jitter_ms,
        retry_statuses=frozenset(r.retry_statuses),
    )


def build_base_urls(config: SyncConfig) -> dict[Provider, str]:
    return {p.provider: p.base_url for p in config.providers}
