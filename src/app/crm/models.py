"""CRM sync persistence models.

Five SQLAlchemy models on the shared declarative Base:
- IntegrationModel: One OAuth connection per (user, provider), with tokens and sync config
- StageMappingModel: Ordered internal-status <-> CRM-stage pairs per integration
- DealLinkModel: Proposal <-> external deal association per integration
- WebhookLogModel: Append-only audit trail of inbound webhook events
- CrmContactModel: Contacts imported from a CRM and kept in sync by webhooks

Column types are the dialect-neutral ``Uuid`` and ``JSON`` so the same
models run on PostgreSQL in production and SQLite in tests. Primary keys
are generated client-side for the same reason.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.app.core.database import Base


class IntegrationModel(Base):
    """OAuth connection between one user and one CRM provider.

    Soft-disabled on disconnect (is_active=false, refresh_token cleared);
    never hard-deleted so deal links and mappings survive reconnection.
    """

    __tablename__ = "crm_integrations"
    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_crm_integration_user_provider"),
        Index("ix_crm_integration_account", "provider", "account_identifier"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    token_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean, default=True, server_default=text("true")
    )
    account_name: Mapped[str | None] = mapped_column(String(300), nullable=True)
    account_identifier: Mapped[str | None] = mapped_column(String(300), nullable=True)
    account_metadata: Mapped[dict] = mapped_column(JSON, default=dict)
    sync_config: Mapped[dict] = mapped_column(JSON, default=dict)
    last_synced_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )

    stage_mappings: Mapped[list[StageMappingModel]] = relationship(
        back_populates="integration",
        order_by="StageMappingModel.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class StageMappingModel(Base):
    """Internal proposal status <-> CRM pipeline stage for one integration."""

    __tablename__ = "crm_stage_mappings"
    __table_args__ = (
        UniqueConstraint(
            "integration_id",
            "internal_status",
            name="uq_crm_stage_mapping_status",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    integration_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("crm_integrations.id", ondelete="CASCADE"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, default=0)
    internal_status: Mapped[str] = mapped_column(String(30), nullable=False)
    crm_stage_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    crm_stage_name: Mapped[str | None] = mapped_column(String(300), nullable=True)

    integration: Mapped[IntegrationModel] = relationship(back_populates="stage_mappings")


class DealLinkModel(Base):
    """Which external deal mirrors which proposal, per integration."""

    __tablename__ = "crm_deal_links"
    __table_args__ = (
        UniqueConstraint(
            "integration_id",
            "proposal_id",
            name="uq_crm_deal_link_integration_proposal",
        ),
        Index("ix_crm_deal_link_external", "provider", "external_deal_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    integration_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("crm_integrations.id"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(100), nullable=False)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    proposal_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    external_deal_id: Mapped[str] = mapped_column(String(200), nullable=False)
    sync_direction: Mapped[str] = mapped_column(
        String(20), default="bidirectional", server_default=text("'bidirectional'")
    )
    last_synced_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class WebhookLogModel(Base):
    """Append-only audit record of an inbound webhook event."""

    __tablename__ = "crm_webhook_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    integration_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("crm_integrations.id"), nullable=True, index=True
    )
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    event: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[Any] = mapped_column(JSON, nullable=True)
    processed: Mapped[bool] = mapped_column(Boolean, default=False)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class CrmContactModel(Base):
    """A CRM contact imported into the platform."""

    __tablename__ = "crm_contacts"
    __table_args__ = (
        UniqueConstraint(
            "user_id",
            "provider",
            "external_id",
            name="uq_crm_contact_user_provider_external",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(100), nullable=False)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    external_id: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    first_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    company: Mapped[str | None] = mapped_column(String(300), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(100), nullable=True)
    raw_data: Mapped[dict] = mapped_column(JSON, default=dict)
    last_synced_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
