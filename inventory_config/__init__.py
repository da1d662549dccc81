"""
inventory_config -- YAML configuration for the sync system.

``load_config()`` is the single entry point: packaged defaults, an optional
override file and environment overrides, parsed into frozen dataclasses.
``bridges`` converts the result into kernel and marketplace policy objects;
the kernel itself never imports this package.
"""

from inventory_config.bridges import (
    build_base_urls,
    build_outbox_policy,
    build_rate_limit_policies,
    build_retry_policy,
)
from inventory_config.loader import deep_merge, load_config, parse_config
from inventory_config.schema import (
    CircuitBreakerConfig,
    DatabaseConfig,
    OutboxConfig,
    ProviderConfig,
    RateLimitConfig,
    RetryPolicyConfig,
    SyncConfig,
)

__all__ = [
    "CircuitBreakerConfig",
    "DatabaseConfig",
    "OutboxConfig",
    "ProviderConfig",
    "RateLimitConfig",
    "RetryPolicyConfig",
    "SyncConfig",
    "build_base_urls",
    "build_outbox_policy",
    "build_rate_limit_policies",
    "build_retry_policy",
    "deep_merge",
    "load_config",
    "parse_config",
]
