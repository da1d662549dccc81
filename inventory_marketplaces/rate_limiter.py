"""
RateLimiter -- persistent fixed-window token buckets per (provider, bucket).

Responsibility:
    Grants or denies outbound marketplace calls against each marketplace's
    published quota, emits one alert per window when usage crosses the alert
    threshold, and trips a circuit breaker after repeated upstream failures.

Architecture position:
    Marketplaces layer. Each operation runs in its own short transaction
    (session_scope) and read-modify-writes exactly one RateLimitRecord under
    a row lock. No transaction spans a bucket and any other table.

Invariants enforced:
    - Fixed window: when now >= reset_at, remaining = capacity and
      reset_at = now + window before the request is considered.
    - A denial never changes the bucket; the existing reset_at is the retry
      hint.
    - The alert fires at most once per window (alert_emitted, reset with the
      window).
    - While the breaker is open, consume() and check_quota() raise
      QuotaExhaustedError without touching tokens.
"""

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from inventory_kernel.db.engine import session_scope
from inventory_kernel.domain.clock import Clock, SystemClock
from inventory_kernel.domain.values import Provider
from inventory_kernel.exceptions import QuotaExhaustedError, ValidationError
from inventory_kernel.logging_config import get_logger
from inventory_kernel.models.rate_limit import RateLimitRecord

logger = get_logger("marketplaces.rate_limiter")


@dataclass(frozen=True)
class RateLimitPolicy:
    """Quota and breaker settings for one provider."""

    capacity: int
    window_ms: int
    alert_threshold: float = 0.8
    failure_threshold: int = 5
    open_ms: int = 300_000

    def __post_init__(self) -> None:
        if self.capacity <= 0:
            raise ValidationError("capacity must be positive", field="capacity")
        if self.window_ms <= 0:
            raise ValidationError("window_ms must be positive", field="window_ms")
        if not 0 < self.alert_threshold <= 1:
            raise ValidationError("alert_threshold must be in (0, 1]", field="alert_threshold")
        if self.failure_threshold <= 0:
            raise ValidationError("failure_threshold must be positive", field="failure_threshold")


@dataclass(frozen=True)
class ConsumeResult:
    granted: bool
    remaining: int
    reset_at: datetime
    retry_after_ms: int = 0


@dataclass(frozen=True)
class RateLimitAlert:
    """Passed to the alert callback when a window crosses its threshold."""

    provider: Provider
    bucket: str
    capacity: int
    remaining: int
    reset_at: datetime


@dataclass(frozen=True)
class BucketSnapshot:
    provider: Provider
    bucket: str
    capacity: int
    remaining: int
    reset_at: datetime
    alert_emitted: bool
    consecutive_failures: int
    circuit_open_until: datetime | None


class RateLimiter:
    """
    Token buckets backed by the rate_limit_buckets table.

    Args:
        session_factory: Factory for the short per-call transactions.
        policies: Quota per provider.
        clock: Time source.
        on_alert: Optional callback receiving a RateLimitAlert, called after
            the transaction that set ``alert_emitted`` committed.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        policies: Mapping[Provider, RateLimitPolicy],
        clock: Clock | None = None,
        on_alert: Callable[[RateLimitAlert], None] | None = None,
    ):
        self._session_factory = session_factory
        self._policies = dict(policies)
        self._clock = clock or SystemClock()
        self._on_alert = on_alert

    def policy_for(self, provider: Provider) -> RateLimitPolicy:
        try:
            return self._policies[provider]
        except KeyError:
            raise ValidationError(
                f"No rate limit policy for provider {provider.value}", field="provider"
            ) from None

    # ------------------------------------------------------------------
    # Token operations
    # ------------------------------------------------------------------

    def consume(self, provider: Provider, bucket: str, tokens: int = 1) -> ConsumeResult:
        """
        Take ``tokens`` from the bucket if available.

        Returns:
            ConsumeResult; on denial ``remaining`` is what is left (0 when
            empty) and ``reset_at`` / ``retry_after_ms`` say when to retry.

        Raises:
            QuotaExhaustedError: The bucket's circuit breaker is open.
        """
        if tokens <= 0:
            raise ValidationError("tokens must be positive", field="tokens")
        policy = self.policy_for(provider)
        alert: RateLimitAlert | None = None
        blocked_until: datetime | None = None

        with session_scope(self._session_factory) as session:
            record = self._load(session, provider, bucket, policy)
            now = self._clock.now()

            if self._circuit_open(record, now):
                blocked_until = record.circuit_open_until
                result = None
            else:
                self._roll_window(record, policy, now)
                if record.remaining >= tokens:
                    record.remaining -= tokens
                    result = ConsumeResult(True, record.remaining, record.reset_at)
                    alert = self._check_alert(record, provider, bucket)
                else:
                    result = ConsumeResult(
                        False,
                        record.remaining,
                        record.reset_at,
                        retry_after_ms=_ms_until(record.reset_at, now),
                    )
                record.updated_at = now

        if blocked_until is not None:
            logger.warning(
                "rate_limit_circuit_open",
                extra={
                    "provider": provider.value,
                    "bucket": bucket,
                    "blocked_until": blocked_until.isoformat(),
                },
            )
            raise QuotaExhaustedError(provider.value, bucket, blocked_until, "circuit_open")

        if result.granted:
            logger.debug(
                "rate_limit_granted",
                extra={"provider": provider.value, "bucket": bucket, "remaining": result.remaining},
            )
        else:
            logger.warning(
                "rate_limit_denied",
                extra={
                    "provider": provider.value,
                    "bucket": bucket,
                    "retry_after_ms": result.retry_after_ms,
                    "reset_at": result.reset_at.isoformat(),
                },
            )
        if alert is not None:
            self._emit_alert(alert)
        return result

    def check_quota(self, provider: Provider, bucket: str) -> ConsumeResult:
        """
        Non-consuming probe for health-check style calls.

        Raises:
            QuotaExhaustedError: Breaker open, or no token left this window.
        """
        policy = self.policy_for(provider)
        with session_scope(self._session_factory) as session:
            record = self._load(session, provider, bucket, policy)
            now = self._clock.now()
            if self._circuit_open(record, now):
                blocked_until, reason = record.circuit_open_until, "circuit_open"
            else:
                self._roll_window(record, policy, now)
                record.updated_at = now
                blocked_until = record.reset_at if record.remaining < 1 else None
                reason = "window_exhausted"
            result = ConsumeResult(
                blocked_until is None,
                record.remaining,
                record.reset_at,
                retry_after_ms=_ms_until(blocked_until, now) if blocked_until else 0,
            )

        if blocked_until is not None:
            raise QuotaExhaustedError(provider.value, bucket, blocked_until, reason)
        return result

    # ------------------------------------------------------------------
    # Circuit breaker
    # ------------------------------------------------------------------

    def record_failure(self, provider: Provider, bucket: str) -> bool:
        """Count a failed upstream call. Returns True if this opened the breaker."""
        policy = self.policy_for(provider)
        with session_scope(self._session_factory) as session:
            record = self._load(session, provider, bucket, policy)
            now = self._clock.now()
            record.consecutive_failures += 1
            opened = (
                record.consecutive_failures >= policy.failure_threshold
                and not self._circuit_open(record, now)
            )
            if opened:
                record.circuit_open_until = now + timedelta(milliseconds=policy.open_ms)
                open_until = record.circuit_open_until
                failures = record.consecutive_failures
            record.updated_at = now

        if opened:
            logger.error(
                "circuit_breaker_opened",
                extra={
                    "provider": provider.value,
                    "bucket": bucket,
                    "consecutive_failures": failures,
                    "open_until": open_until.isoformat(),
                },
            )
        return opened

    def record_success(self, provider: Provider, bucket: str) -> None:
        policy = self.policy_for(provider)
        with session_scope(self._session_factory) as session:
            record = self._load(session, provider, bucket, policy)
            was_open = record.circuit_open_until is not None
            record.consecutive_failures = 0
            record.circuit_open_until = None
            record.updated_at = self._clock.now()
        if was_open:
            logger.info(
                "circuit_breaker_closed",
                extra={"provider": provider.value, "bucket": bucket},
            )

    def snapshot(self, provider: Provider, bucket: str) -> BucketSnapshot | None:
        """Current bucket state, or None if the bucket was never used."""
        with session_scope(self._session_factory) as session:
            record = session.execute(
                select(RateLimitRecord).where(
                    RateLimitRecord.provider == provider.value,
                    RateLimitRecord.bucket == bucket,
                )
            ).scalar_one_or_none()
            if record is None:
                return None
            return BucketSnapshot(
                provider=provider,
                bucket=bucket,
                capacity=record.capacity,
                remaining=record.remaining,
                reset_at=record.reset_at,
                alert_emitted=record.alert_emitted,
                consecutive_failures=record.consecutive_failures,
                circuit_open_until=record.circuit_open_until,
            )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _load(
        self,
        session: Session,
        provider: Provider,
        bucket: str,
        policy: RateLimitPolicy,
    ) -> RateLimitRecord:
        query = (
            select(RateLimitRecord)
            .where(
                RateLimitRecord.provider == provider.value,
                RateLimitRecord.bucket == bucket,
            )
            .with_for_update()
        )
        record = session.execute(query).scalar_one_or_none()
        if record is not None:
            return record

        now = self._clock.now()
        record = RateLimitRecord(
            provider=provider.value,
            bucket=bucket,
            capacity=policy.capacity,
            window_ms=policy.window_ms,
            remaining=policy.capacity,
            reset_at=now + timedelta(milliseconds=policy.window_ms),
            alert_threshold=policy.alert_threshold,
            alert_emitted=False,
            consecutive_failures=0,
            created_at=now,
            updated_at=now,
        )
        savepoint = session.begin_nested()
        try:
            session.add(record)
            session.flush()
            savepoint.commit()
        except IntegrityError:
            # Another worker created the bucket first
            savepoint.rollback()
            record = session.execute(query).scalar_one()
        return record

    @staticmethod
    def _circuit_open(record: RateLimitRecord, now: datetime) -> bool:
        return record.circuit_open_until is not None and now < record.circuit_open_until

    @staticmethod
    def _roll_window(record: RateLimitRecord, policy: RateLimitPolicy, now: datetime) -> None:
        # Config changes take effect at the next window
        if now >= record.reset_at:
            record.capacity = policy.capacity
            record.window_ms = policy.window_ms
            record.alert_threshold = policy.alert_threshold
            record.remaining = policy.capacity
            record.reset_at = now + timedelta(milliseconds=policy.window_ms)
            record.alert_emitted = False

    @staticmethod
    def _check_alert(
        record: RateLimitRecord,
        provider: Provider,
        bucket: str,
    ) -> RateLimitAlert | None:
        if record.alert_emitted:
            return None
        if record.capacity - record.remaining < record.capacity * record.alert_threshold:
            return None
        record.alert_emitted = True
        return RateLimitAlert(
            provider=provider,
            bucket=bucket,
            capacity=record.capacity,
            remaining=record.remaining,
            reset_at=record.reset_at,
        )

    def _emit_alert(self, alert: RateLimitAlert) -> None:
        logger.warning(
            "rate_limit_alert",
            extra={
                "provider": alert.provider.value,
                "bucket": alert.bucket,
                "capacity": alert.capacity,
                "remaining": alert.remaining,
                "reset_at": alert.reset_at.isoformat(),
            },
        )
        if self._on_alert is not None:
            self._on_alert(alert)


def _ms_until(moment: datetime, now: datetime) -> int:
    return max(0, int((moment - now).total_seconds() * 1000))
