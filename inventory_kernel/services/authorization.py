"""
Authorization port.

User authentication and membership live outside the kernel. Mutation
services consult an ``Authorizer`` as a precondition; ``OwnerAuthorizer``
decides from the role carried on the Actor.
"""

from typing import Protocol, runtime_checkable
from uuid import UUID

from inventory_kernel.domain.dtos import Actor
from inventory_kernel.domain.values import Role
from inventory_kernel.exceptions import AuthorizationError
from inventory_kernel.logging_config import get_logger

logger = get_logger("services.authorization")


@runtime_checkable
class Authorizer(Protocol):
    """Grants or refuses owner-level privilege for a business account."""

    def require_owner(self, actor: Actor, business_account_id: UUID) -> None:
        """Return normally if allowed; raise AuthorizationError otherwise."""
        ...


class OwnerAuthorizer:
    """Owner check based on the actor's role and account membership."""

    def require_owner(self, actor: Actor, business_account_id: UUID) -> None:
        if actor.business_account_id != business_account_id:
            logger.warning(
                "authorization_denied",
                extra={"actor_id": str(actor.actor_id), "reason": "account_mismatch"},
            )
            raise AuthorizationError(
                str(actor.actor_id),
                Role.OWNER.value,
                reason="actor does not belong to this business account",
            )
        if not actor.is_owner:
            logger.warning(
                "authorization_denied",
                extra={"actor_id": str(actor.actor_id), "reason": "not_owner"},
            )
            raise AuthorizationError(str(actor.actor_id), Role.OWNER.value)
