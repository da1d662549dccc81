"""
SyncConfig schema.

Frozen dataclasses the loader parses ``defaults.yaml`` (plus any override
file) into. Values here are plain data; ``inventory_config.bridges`` turns
them into the policy objects the kernel and marketplaces layer consume.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from inventory_kernel.domain.values import Provider


@dataclass(frozen=True)
class DatabaseConfig:
    url: str = "sqlite://"
    echo: bool = False
    pool_size: int = 10
    max_overflow: int = 5


@dataclass(frozen=True)
class RateLimitConfig:
    """Fixed-window quota for one provider."""

    capacity: int
    window_seconds: int
    alert_threshold: float = 0.8


@dataclass(frozen=True)
class ProviderConfig:
    provider: Provider
    base_url: str
    rate_limit: RateLimitConfig


@dataclass(frozen=True)
class RetryPolicyConfig:
    """Executor retries for one upstream request."""

    attempts: int = 3
    base_delay_ms: int = 250
    multiplier: float = 2.0
    max_delay_ms: int = 5000
    jitter_ms: int = 100
    retry_statuses: tuple[int, ...] = (408, 425, 429, 500, 502, 503, 504)
    timeout_seconds: float = 30.0


@dataclass(frozen=True)
class OutboxConfig:
    max_attempts: int = 5
    base_delay_ms: int = 1000
    max_delay_ms: int = 300_000
    jitter_ms: int = 5000
    retention_days: int = 7
    concurrency: int = 4
    batch_size: int = 100
    poll_interval_seconds: float = 5.0
    stale_inflight_seconds: int = 600


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = 5
    open_seconds: int = 300


@dataclass(frozen=True)
class SyncConfig:
    """Root of the loaded configuration."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    providers: tuple[ProviderConfig, ...] = ()
    retry: RetryPolicyConfig = field(default_factory=RetryPolicyConfig)
    outbox: OutboxConfig = field(default_factory=OutboxConfig)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    log_level: str = "INFO"

    def provider(self, provider: Provider) -> ProviderConfig:
        for cfg in self.providers:
            if cfg.provider is provider:
                return cfg
        raise KeyError(provider.value)
