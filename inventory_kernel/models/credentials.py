"""
Module: inventory_kernel.models.credentials
Responsibility: Per-business-account marketplace credentials and sync
    enablement.
Architecture position: Kernel > Models. May import from db/base.py only.

Secrets are stored as an opaque JSON document; encryption at rest is the
job of the decrypt hook given to MarketplaceSettingsService.
"""

from uuid import UUID

from sqlalchemy import JSON, Boolean, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from inventory_kernel.db.base import TrackedBase, UUIDString


class MarketplaceCredential(TrackedBase):
    """Credentials and sync switch for one (business account, provider)."""

    __tablename__ = "marketplace_credentials"

    __table_args__ = (
        UniqueConstraint(
            "business_account_id", "provider", name="uq_credentials_account_provider"
        ),
    )

    business_account_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    sync_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    secret: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    created_by_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    updated_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<MarketplaceCredential {self.business_account_id}/{self.provider} "
            f"active={self.is_active} sync={self.sync_enabled}>"
        )
