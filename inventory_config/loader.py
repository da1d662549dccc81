"""
Configuration loader (``inventory_config.loader``).

Responsibility
--------------
Reads the packaged ``defaults.yaml``, deep-merges an optional override file
on top, applies environment overrides and parses the result into the
frozen ``inventory_config.schema`` dataclasses.

Invariants enforced
-------------------
* Every parsed object is a frozen dataclass from ``schema.py``.
* Unknown providers, wrong types and out-of-range values raise
  ``ConfigurationError`` naming the offending key path; nothing is silently
  defaulted once a key is present.

Failure modes
-------------
* Missing override file -> ``ConfigurationError``.
* Malformed YAML -> ``ConfigurationError`` wrapping ``yaml.YAMLError``.
"""

from __future__ import annotations

import copy
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from inventory_config.schema import (
    CircuitBreakerConfig,
    DatabaseConfig,
    OutboxConfig,
    ProviderConfig,
    RateLimitConfig,
    RetryPolicyConfig,
    SyncConfig,
)
from inventory_kernel.domain.values import Provider
from inventory_kernel.exceptions import ConfigurationError
from inventory_kernel.logging_config import get_logger

logger = get_logger("config.loader")

DEFAULTS_PATH = Path(__file__).parent / "defaults.yaml"
CONFIG_ENV_VAR = "INVENTORY_SYNC_CONFIG"
DATABASE_URL_ENV_VAR = "DATABASE_URL"

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file as a dict (empty file -> empty dict).

    Raises:
        ConfigurationError: Missing file, invalid YAML, or a top level that
            is not a mapping.
    """
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError as exc:
        raise ConfigurationError(f"Config file not found: {path}", path=str(path)) from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in {path}: {exc}", path=str(path)) from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"Top level of {path} must be a mapping", path=str(path))
    return data


def deep_merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    """Recursively merge ``override`` into a copy of ``base``. Lists are replaced."""
    merged = copy.deepcopy(dict(base))
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def load_config(
    path: str | Path | None = None,
    env: Mapping[str, str] | None = None,
) -> SyncConfig:
    """
    Load the effective configuration.

    Order: packaged defaults, then ``path`` (or the file named by
    ``INVENTORY_SYNC_CONFIG``), then ``DATABASE_URL``.
    """
    env = os.environ if env is None else env
    data = load_yaml_file(DEFAULTS_PATH)

    override_path = path or env.get(CONFIG_ENV_VAR)
    if override_path:
        data = deep_merge(data, load_yaml_file(Path(override_path)))

    database_url = env.get(DATABASE_URL_ENV_VAR)
    if database_url:
        data = deep_merge(data, {"database": {"url": database_url}})

    config = parse_config(data)
    logger.info(
        "config_loaded",
        extra={
            "override": str(override_path) if override_path else None,
            "providers": [p.provider.value for p in config.providers],
            "database_dialect": config.database.url.split(":", 1)[0],
        },
    )
    return config


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def parse_config(data: Mapping[str, Any]) -> SyncConfig:
    """Parse a merged dict into a ``SyncConfig``."""
    log_level = str(data.get("log_level", "INFO")).upper()
    if log_level not in _LOG_LEVELS:
        raise ConfigurationError(f"Unknown log level {log_level!r}", path="log_level")

    providers_raw = _section(data, "providers")
    providers = tuple(
        parse_provider(name, _mapping(raw, f"providers.{name}"))
        for name, raw in providers_raw.items()
    )

    return SyncConfig(
        database=parse_database(_section(data, "database")),
        providers=providers,
        retry=parse_retry(_section(data, "retry")),
        outbox=parse_outbox(_section(data, "outbox")),
        circuit_breaker=parse_circuit_breaker(_section(data, "circuit_breaker")),
        log_level=log_level,
    )


def parse_database(data: Mapping[str, Any]) -> DatabaseConfig:
    url = data.get("url", DatabaseConfig.url)
    if not isinstance(url, str) or not url:
        raise ConfigurationError("database.url must be a non-empty string", path="database.url")
    return DatabaseConfig(
        url=url,
        echo=bool(data.get("echo", False)),
        pool_size=_positive_int(data, "pool_size", "database", DatabaseConfig.pool_size),
        max_overflow=_non_negative_int(data, "max_overflow", "database", DatabaseConfig.max_overflow),
    )


def parse_provider(name: str, data: Mapping[str, Any]) -> ProviderConfig:
    try:
        provider = Provider(name)
    except ValueError:
        raise ConfigurationError(f"Unknown provider {name!r}", path=f"providers.{name}") from None

    prefix = f"providers.{name}"
    base_url = data.get("base_url")
    if not isinstance(base_url, str) or not base_url.startswith(("http://", "https://")):
        raise ConfigurationError(f"{prefix}.base_url must be an http(s) URL", path=f"{prefix}.base_url")

    rate = _mapping(data.get("rate_limit"), f"{prefix}.rate_limit")
    rate_prefix = f"{prefix}.rate_limit"
    threshold = _number(rate, "alert_threshold", rate_prefix, 0.8)
    if not 0 < threshold <= 1:
        raise ConfigurationError(
            f"{rate_prefix}.alert_threshold must be in (0, 1]", path=f"{rate_prefix}.alert_threshold"
        )
    return ProviderConfig(
        provider=provider,
        base_url=base_url.rstrip("/"),
        rate_limit=RateLimitConfig(
            capacity=_positive_int(rate, "capacity", rate_prefix),
            window_seconds=_positive_int(rate, "window_seconds", rate_prefix),
            alert_threshold=float(threshold),
        ),
    )


def parse_retry(data: Mapping[str, Any]) -> RetryPolicyConfig:
    d = RetryPolicyConfig()
    statuses = data.get("retry_statuses", list(d.retry_statuses))
    if not isinstance(statuses, list) or not all(
        isinstance(s, int) and 100 <= s <= 599 for s in statuses
    ):
        raise ConfigurationError("retry.retry_statuses must be a list of HTTP statuses", path="retry.retry_statuses")
    config = RetryPolicyConfig(
        attempts=_positive_int(data, "attempts", "retry", d.attempts),
        base_delay_ms=_non_negative_int(data, "base_delay_ms", "retry", d.base_delay_ms),
        multiplier=float(_number(data, "multiplier", "retry", d.multiplier)),
        max_delay_ms=_non_negative_int(data, "max_delay_ms", "retry", d.max_delay_ms),
        jitter_ms=_non_negative_int(data, "jitter_ms", "retry", d.jitter_ms),
        retry_statuses=tuple(statuses),
        timeout_seconds=float(_number(data, "timeout_seconds", "retry", d.timeout_seconds)),
    )
    if config.multiplier < 1:
        raise ConfigurationError("retry.multiplier must be >= 1", path="retry.multiplier")
    _check_delays(config.base_delay_ms, config.max_delay_ms, "retry")
    return config


def parse_outbox(data: Mapping[str, Any]) -> OutboxConfig:
    d = OutboxConfig()
    config = OutboxConfig(
        max_attempts=_positive_int(data, "max_attempts", "outbox", d.max_attempts),
        base_delay_ms=_non_negative_int(data, "base_delay_ms", "outbox", d.base_delay_ms),
        max_delay_ms=_non_negative_int(data, "max_delay_ms", "outbox", d.max_delay_ms),
        jitter_ms=_non_negative_int(data, "jitter_ms", "outbox", d.jitter_ms),
        retention_days=_positive_int(data, "retention_days", "outbox", d.retention_days),
        concurrency=_positive_int(data, "concurrency", "outbox", d.concurrency),
        batch_size=_positive_int(data, "batch_size", "outbox", d.batch_size),
        poll_interval_seconds=float(
            _number(data, "poll_interval_seconds", "outbox", d.poll_interval_seconds)
        ),
        stale_inflight_seconds=_positive_int(
            data, "stale_inflight_seconds", "outbox", d.stale_inflight_seconds
        ),
    )
    _check_delays(config.base_delay_ms, config.max_delay_ms, "outbox")
    return config


def parse_circuit_breaker(data: Mapping[str, Any]) -> CircuitBreakerConfig:
    d = CircuitBreakerConfig()
    return CircuitBreakerConfig(
        failure_threshold=_positive_int(data, "failure_threshold", "circuit_breaker", d.failure_threshold),
        open_seconds=_positive_int(data, "open_seconds", "circuit_breaker", d.open_seconds),
    )


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------

_MISSING = object()


def _section(data: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    return _mapping(data.get(key) or {}, key)


def _mapping(value: Any, path: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise ConfigurationError(f"{path} must be a mapping", path=path)
    return value


def _number(data: Mapping[str, Any], key: str, prefix: str, default: Any = _MISSING) -> float:
    value = data.get(key, default)
    if value is _MISSING:
        raise ConfigurationError(f"{prefix}.{key} is required", path=f"{prefix}.{key}")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigurationError(f"{prefix}.{key} must be a number", path=f"{prefix}.{key}")
    return value


def _non_negative_int(data: Mapping[str, Any], key: str, prefix: str, default: Any = _MISSING) -> int:
    value = _number(data, key, prefix, default)
    if not isinstance(value, int) or value < 0:
        raise ConfigurationError(f"{prefix}.{key} must be a non-negative integer", path=f"{prefix}.{key}")
    return value


def _positive_int(data: Mapping[str, Any], key: str, prefix: str, default: Any = _MISSING) -> int:
    value = _non_negative_int(data, key, prefix, default)
    if value == 0:
        raise ConfigurationError(f"{prefix}.{key} must be positive", path=f"{prefix}.{key}")
    return value


def _check_delays(base_ms: int, max_ms: int, prefix: str) -> None:
    if max_ms < base_ms:
        raise ConfigurationError(
            f"{prefix}.max_delay_ms must be >= {prefix}.base_delay_ms",
            path=f"{prefix}.max_delay_ms",
        )
