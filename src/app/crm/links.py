"""Deal link registry -- which external deal mirrors which proposal, per provider.

A proposal links to at most one deal per integration (enforced by the
(integration, proposal) unique constraint and by link() being an upsert)
but may be linked to several providers at once. Both sync directions use
the registry: outbound looks links up by proposal, inbound by
(provider, external deal id).
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

import structlog
from sqlalchemy import delete, select

from src.app.crm.errors import ValidationError
from src.app.crm.models import DealLinkModel, IntegrationModel
from src.app.crm.repository import SessionFactory
from src.app.crm.schemas import CrmProvider, DealLinkRead, SyncDirection

logger = structlog.get_logger(__name__)


def _model_to_link(model: DealLinkModel) -> DealLinkRead:
    return DealLinkRead(
        id=str(model.id),
        integration_id=str(model.integration_id),
        user_id=model.user_id,
        provider=CrmProvider(model.provider),
        proposal_id=model.proposal_id,
        external_deal_id=model.external_deal_id,
        sync_direction=SyncDirection(model.sync_direction),
        last_synced_at=model.last_synced_at,
        created_at=model.created_at,
    )


class DealLinkRegistry:
    """Async registry of proposal <-> external deal links.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def link(
        self,
        proposal_id: str,
        provider: CrmProvider,
        external_deal_id: str,
        user_id: str,
    ) -> DealLinkRead:
        """Link a proposal to an external deal, replacing any existing link.

        The link inherits the integration's current sync direction.

        Raises:
            ValidationError: If the user has no integration for the provider.
        """
        async for session in self._session_factory():
            result = await session.execute(
                select(IntegrationModel).where(
                    IntegrationModel.user_id == user_id,
                    IntegrationModel.provider == provider.value,
                )
            )
            integration = result.scalar_one_or_none()
            if integration is None:
                raise ValidationError(
                    f"No {provider.value} integration for user {user_id}",
                    provider=provider.value,
                )
            direction = (integration.sync_config or {}).get(
                "direction", SyncDirection.BIDIRECTIONAL.value
            )

            result = await session.execute(
                select(DealLinkModel).where(
                    DealLinkModel.integration_id == integration.id,
                    DealLinkModel.proposal_id == proposal_id,
                )
            )
            model = result.scalar_one_or_none()
            if model is None:
                model = DealLinkModel(
                    integration_id=integration.id,
                    user_id=user_id,
                    provider=provider.value,
                    proposal_id=proposal_id,
                )
                session.add(model)
            elif model.external_deal_id != external_deal_id:
                logger.info(
                    "crm.deal_link_replaced",
                    proposal_id=proposal_id,
                    provider=provider.value,
                    previous_deal_id=model.external_deal_id,
                    external_deal_id=external_deal_id,
                )
            model.external_deal_id = external_deal_id
            model.sync_direction = direction
            await session.commit()
            await session.refresh(model)

            logger.info(
                "crm.deal_linked",
                proposal_id=proposal_id,
                provider=provider.value,
                external_deal_id=external_deal_id,
            )
            return _model_to_link(model)

    async def find_by_proposal(self, proposal_id: str) -> list[DealLinkRead]:
        """All links of a proposal, across providers."""
        async for session in self._session_factory():
            result = await session.execute(
                select(DealLinkModel)
                .where(DealLinkModel.proposal_id == proposal_id)
                .order_by(DealLinkModel.provider)
            )
            return [_model_to_link(m) for m in result.scalars().all()]

    async def find_by_external_deal(
        self,
        provider: CrmProvider,
        external_deal_id: str,
        integration_id: str | None = None,
    ) -> DealLinkRead | None:
        """Find the link for an external deal.

        Scoping by integration_id keeps two users who connected the same CRM
        account from resolving each other's links.
        """
        async for session in self._session_factory():
            stmt = select(DealLinkModel).where(
                DealLinkModel.provider == provider.value,
                DealLinkModel.external_deal_id == external_deal_id,
            )
            if integration_id is not None:
                stmt = stmt.where(DealLinkModel.integration_id == uuid.UUID(integration_id))
            result = await session.execute(stmt)
            model = result.scalars().first()
            if model is None:
                return None
            return _model_to_link(model)

    async def unlink(
        self,
        provider: CrmProvider,
        external_deal_id: str,
        integration_id: str | None = None,
    ) -> int:
        """Remove links to an external deal. Returns the number removed."""
        async for session in self._session_factory():
            stmt = delete(DealLinkModel).where(
                DealLinkModel.provider == provider.value,
                DealLinkModel.external_deal_id == external_deal_id,
            )
            if integration_id is not None:
                stmt = stmt.where(DealLinkModel.integration_id == uuid.UUID(integration_id))
            result = await session.execute(stmt)
            await session.commit()
            removed = result.rowcount or 0
            if removed:
                logger.info(
                    "crm.deal_unlinked",
                    provider=provider.value,
                    external_deal_id=external_deal_id,
                    removed=removed,
                )
            return removed

    async def unlink_integration(self, integration_id: str) -> int:
        """Remove every link of an integration."""
        async for session in self._session_factory():
            result = await session.execute(
                delete(DealLinkModel).where(
                    DealLinkModel.integration_id == uuid.UUID(integration_id)
                )
            )
            await session.commit()
            return result.rowcount or 0

    async def mark_synced(self, link_id: str, when: datetime | None = None) -> None:
        async for session in self._session_factory():
            result = await session.execute(
                select(DealLinkModel).where(DealLinkModel.id == uuid.UUID(link_id))
            )
            model = result.scalar_one_or_none()
            if model is None:
                return
            model.last_synced_at = when or datetime.now(timezone.utc)
            await session.commit()
