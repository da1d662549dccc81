"""
MarketplaceSettingsService -- credentials and per-provider sync switches.

Sync is disabled for every provider until explicitly turned on, and only
runs for providers whose credentials are active. Secrets are stored as an
opaque document; ``decrypt`` turns the stored document into what the
marketplace client needs.
"""

from typing import Any, Callable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from inventory_kernel.domain.dtos import SyncSettings
from inventory_kernel.domain.values import Provider
from inventory_kernel.exceptions import CredentialsNotFoundError
from inventory_kernel.logging_config import get_logger
from inventory_kernel.models.credentials import MarketplaceCredential

logger = get_logger("services.marketplace_settings")

SecretDecoder = Callable[[dict[str, Any]], dict[str, Any]]


def _identity(secret: dict[str, Any]) -> dict[str, Any]:
    return dict(secret)


class MarketplaceSettingsService:
    """Reads and writes marketplace_credentials rows."""

    def __init__(self, session: Session, decrypt: SecretDecoder | None = None):
        self.session = session
        self._decrypt = decrypt or _identity

    def _row(self, business_account_id: UUID, provider: Provider) -> MarketplaceCredential | None:
        return self.session.execute(
            select(MarketplaceCredential).where(
                MarketplaceCredential.business_account_id == business_account_id,
                MarketplaceCredential.provider == provider.value,
            )
        ).scalar_one_or_none()

    def get_sync_settings(self, business_account_id: UUID) -> dict[Provider, SyncSettings]:
        """Enablement for every provider; providers with no row are disabled."""
        rows = {
            row.provider: row
            for row in self.session.execute(
                select(MarketplaceCredential).where(
                    MarketplaceCredential.business_account_id == business_account_id
                )
            ).scalars()
        }
        settings: dict[Provider, SyncSettings] = {}
        for provider in Provider:
            row = rows.get(provider.value)
            settings[provider] = SyncSettings(
                provider=provider,
                enabled=bool(row and row.sync_enabled),
                credentials_active=bool(row and row.is_active),
            )
        return settings

    def enabled_providers(self, business_account_id: UUID) -> list[Provider]:
        """Providers a mutation should enqueue for, in declaration order."""
        return [
            provider
            for provider, s in self.get_sync_settings(business_account_id).items()
            if s.should_sync
        ]

    def store_credentials(
        self,
        business_account_id: UUID,
        provider: Provider,
        secret: dict[str, Any],
        created_by_id: UUID,
        is_active: bool = True,
    ) -> None:
        """Create or replace credentials. Does not change the sync switch."""
        row = self._row(business_account_id, provider)
        if row is None:
            row = MarketplaceCredential(
                business_account_id=business_account_id,
                provider=provider.value,
                sync_enabled=False,
                created_by_id=created_by_id,
            )
            self.session.add(row)
        row.secret = secret
        row.is_active = is_active
        row.updated_by_id = created_by_id
        self.session.flush()
        logger.info(
            "marketplace_credentials_stored",
            extra={
                "business_account_id": str(business_account_id),
                "provider": provider.value,
                "is_active": is_active,
            },
        )

    def set_sync_enabled(self, business_account_id: UUID, provider: Provider, enabled: bool) -> SyncSettings:
        """
        Raises:
            CredentialsNotFoundError: No credentials stored for the provider.
        """
        row = self._row(business_account_id, provider)
        if row is None:
            raise CredentialsNotFoundError(str(business_account_id), provider.value)
        row.sync_enabled = enabled
        self.session.flush()
        logger.info(
            "marketplace_sync_toggled",
            extra={
                "business_account_id": str(business_account_id),
                "provider": provider.value,
                "enabled": enabled,
            },
        )
        return SyncSettings(provider=provider, enabled=enabled, credentials_active=row.is_active)

    def get_credentials(self, business_account_id: UUID, provider: Provider) -> dict[str, Any]:
        """
        Decrypted secret for the provider.

        Raises:
            CredentialsNotFoundError: No row, or the credentials are inactive.
        """
        row = self._row(business_account_id, provider)
        if row is None or not row.is_active:
            raise CredentialsNotFoundError(str(business_account_id), provider.value)
        return self._decrypt(row.secret)
