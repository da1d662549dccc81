"""
Typed exception hierarchy for the inventory kernel.

Every error carries a stable ``code`` class attribute and structured
attributes, so callers catch by type and APIs report by code instead of
parsing messages:

    try:
        undo.undo(change_id, reason="mistake", actor=actor)
    except ChangeAlreadyUndoneError as e:
        respond(code=e.code, change_id=e.change_id)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    InventoryKernelError (base)
    |
    +-- ValidationError
    |   +-- NegativeBalanceError
    |
    +-- ItemNotFoundError
    +-- ChangeNotFoundError
    |
    +-- AccessError
    |   +-- AuthorizationError
    |   +-- CredentialsNotFoundError
    |
    +-- ConsistencyError
    |   +-- ChangeAlreadyUndoneError
    |   +-- UndoTargetMissingError
    |
    +-- ConcurrencyError
    |   +-- OptimisticLockError
    |
    +-- ImmutabilityViolationError
    |
    +-- OutboxError
    |   +-- OutboxEntryNotFoundError
    |   +-- InvalidOutboxTransitionError
    |
    +-- UpstreamError
    |   +-- RateLimitExceededError
    |   +-- QuotaExhaustedError
    |   +-- TransientUpstreamError
    |   +-- TerminalUpstreamError
    |
    +-- ConfigurationError

===============================================================================
RETRY SEMANTICS
===============================================================================

Code                    | Retried by executor | Outbox outcome
------------------------|---------------------|------------------------------
VALIDATION_ERROR        | never               | n/a (mutation aborted)
RATE_LIMITED            | only with a policy  | rescheduled, attempt kept
QUOTA_EXHAUSTED         | never               | rescheduled, attempt kept
UPSTREAM_TRANSIENT      | up to policy limit  | rescheduled, attempt + 1
UPSTREAM_TERMINAL       | never               | failed
CONSISTENCY_ERROR       | never               | n/a (undo aborted)
"""

from datetime import datetime


class InventoryKernelError(Exception):
    """
    Base exception for all inventory kernel errors.

    All subclasses have a ``code`` class attribute for machine-readable
    error identification.
    """

    code: str = "INVENTORY_KERNEL_ERROR"


# Input validation


class ValidationError(InventoryKernelError):
    """Bad input. Surfaced to the caller and never retried."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class NegativeBalanceError(ValidationError):
    """A ledger append would leave available quantity below zero."""

    code: str = "NEGATIVE_BALANCE"

    def __init__(self, item_id: str, current: int, delta: int, reason: str):
        self.item_id = item_id
        self.current = current
        self.delta = delta
        self.reason = reason
        super().__init__(
            f"Item {item_id}: applying {delta:+d} to {current} would leave a "
            f"negative balance (reason={reason})",
            field="quantity_available",
        )


# Lookup


class ItemNotFoundError(InventoryKernelError):
    """Inventory item with given ID does not exist."""

    code: str = "ITEM_NOT_FOUND"

    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__(f"Inventory item not found: {item_id}")


class ChangeNotFoundError(InventoryKernelError):
    """Change log entry with given ID does not exist."""

    code: str = "CHANGE_NOT_FOUND"

    def __init__(self, change_id: str):
        self.change_id = change_id
        super().__init__(f"Change not found: {change_id}")


# Access


class AccessError(InventoryKernelError):
    """Base exception for authorization and credential errors."""

    code: str = "ACCESS_ERROR"


class AuthorizationError(AccessError):
    """Actor lacks the privilege required for the operation."""

    code: str = "NOT_AUTHORIZED"

    def __init__(self, actor_id: str, required_role: str, reason: str | None = None):
        self.actor_id = actor_id
        self.required_role = required_role
        detail = f": {reason}" if reason else ""
        super().__init__(
            f"Actor {actor_id} requires role '{required_role}'{detail}"
        )


class CredentialsNotFoundError(AccessError):
    """No usable marketplace credentials for the business account."""

    code: str = "CREDENTIALS_NOT_FOUND"

    def __init__(self, business_account_id: str, provider: str):
        self.business_account_id = business_account_id
        self.provider = provider
        super().__init__(
            f"No active {provider} credentials for business account "
            f"{business_account_id}"
        )


# Undo consistency


class ConsistencyError(InventoryKernelError):
    """Terminal undo failure. Surfaced verbatim and never auto-retried."""

    code: str = "CONSISTENCY_ERROR"


class ChangeAlreadyUndoneError(ConsistencyError):
    """The change already has an undo linked to it."""

    code: str = "CHANGE_ALREADY_UNDONE"

    def __init__(self, change_id: str, undone_by_change_id: str | None):
        self.change_id = change_id
        self.undone_by_change_id = undone_by_change_id
        super().__init__(
            f"Change {change_id} has already been undone"
            + (f" by {undone_by_change_id}" if undone_by_change_id else "")
        )


class UndoTargetMissingError(ConsistencyError):
    """The item a compensation would act on no longer exists."""

    code: str = "UNDO_TARGET_MISSING"

    def __init__(self, change_id: str, item_id: str):
        self.change_id = change_id
        self.item_id = item_id
        super().__init__(
            f"Cannot undo change {change_id}: item {item_id} no longer exists"
        )


# Concurrency


class ConcurrencyError(InventoryKernelError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class OptimisticLockError(ConcurrencyError):
    """Optimistic locking conflict detected."""

    code: str = "OPTIMISTIC_LOCK_FAILURE"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(
            f"Optimistic lock conflict on {entity_type} {entity_id}: "
            "entity was modified by another transaction"
        )


class ImmutabilityViolationError(InventoryKernelError):
    """Attempted to modify or delete an append-only record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


# Outbox


class OutboxError(InventoryKernelError):
    """Base exception for outbox errors."""

    code: str = "OUTBOX_ERROR"


class OutboxEntryNotFoundError(OutboxError):
    """Outbox entry with given ID does not exist."""

    code: str = "OUTBOX_ENTRY_NOT_FOUND"

    def __init__(self, entry_id: str):
        self.entry_id = entry_id
        super().__init__(f"Outbox entry not found: {entry_id}")


class InvalidOutboxTransitionError(OutboxError):
    """Requested status change is not allowed from the entry's current status."""

    code: str = "INVALID_OUTBOX_TRANSITION"

    def __init__(self, entry_id: str, from_status: str, to_status: str):
        self.entry_id = entry_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Outbox entry {entry_id} cannot move from {from_status} to {to_status}"
        )


# Upstream


class UpstreamError(InventoryKernelError):
    """
    Base exception for marketplace call failures.

    ``retryable`` tells the outbox worker whether to reschedule the entry
    or fail it.
    """

    code: str = "UPSTREAM_ERROR"
    retryable: bool = False

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        status: int | None = None,
        upstream_code: str | None = None,
    ):
        self.provider = provider
        self.status = status
        self.upstream_code = upstream_code
        super().__init__(message)


class RateLimitExceededError(UpstreamError):
    """The local token bucket or the marketplace denied the call."""

    code: str = "RATE_LIMITED"
    retryable: bool = True

    def __init__(
        self,
        provider: str,
        bucket: str,
        retry_after_ms: int,
        reset_at: datetime | None = None,
        status: int | None = None,
    ):
        self.bucket = bucket
        self.retry_after_ms = retry_after_ms
        self.reset_at = reset_at
        super().__init__(
            f"Rate limit exceeded for {provider}/{bucket}; "
            f"retry after {retry_after_ms} ms",
            provider=provider,
            status=status,
            upstream_code="RATE_LIMITED",
        )


class QuotaExhaustedError(UpstreamError):
    """The bucket is closed until its window resets or its breaker closes."""

    code: str = "QUOTA_EXHAUSTED"
    retryable: bool = True

    def __init__(self, provider: str, bucket: str, blocked_until: datetime, reason: str):
        self.bucket = bucket
        self.blocked_until = blocked_until
        self.reason = reason
        super().__init__(
            f"Quota exhausted for {provider}/{bucket} until "
            f"{blocked_until.isoformat()}: {reason}",
            provider=provider,
            upstream_code="QUOTA_EXHAUSTED",
        )


class TransientUpstreamError(UpstreamError):
    """5xx, 429 or network failure that outlived the executor's retries."""

    code: str = "UPSTREAM_TRANSIENT"
    retryable: bool = True


class TerminalUpstreamError(UpstreamError):
    """4xx (other than 429) or a malformed payload. Never retried."""

    code: str = "UPSTREAM_TERMINAL"
    retryable: bool = False


class ConfigurationError(InventoryKernelError):
    """Configuration file or value is invalid."""

    code: str = "CONFIGURATION_ERROR"

    def __init__(self, message: str, path: str | None = None):
        self.path = path
        super().__init__(message)
