"""CRM sync repositories -- async persistence for integrations, webhook logs, contacts.

Provides session_factory-based repositories (same pattern as DealLinkRegistry):
- IntegrationRepository: integrations, their token fields, sync config and stage mappings
- WebhookLogRepository: append-only webhook audit trail
- ContactRepository: mirrored CRM contacts

Records cross the boundary as pydantic schemas; JSON columns are written with
model_dump(mode="json") and read back with model_validate().
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.crm.models import (
    CrmContactModel,
    DealLinkModel,
    IntegrationModel,
    StageMappingModel,
    WebhookLogModel,
)
from src.app.crm.schemas import (
    Contact,
    CrmContactRead,
    CrmProvider,
    IntegrationRecord,
    ProposalStatus,
    StageMappingData,
    SyncConfig,
    TokenSet,
    WebhookLogRead,
    parse_metadata,
)

logger = structlog.get_logger(__name__)

SessionFactory = Callable[..., AsyncGenerator[AsyncSession, None]]

UNKNOWN_ACCOUNT_NAME = "Unknown Account"

# Mirrored contact columns an inbound webhook may overwrite
CONTACT_FIELDS = ("email", "first_name", "last_name", "company", "phone")


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_integration(model: IntegrationModel) -> IntegrationRecord:
    """Convert IntegrationModel to IntegrationRecord."""
    provider = CrmProvider(model.provider)
    return IntegrationRecord(
        id=str(model.id),
        user_id=model.user_id,
        provider=provider,
        access_token=model.access_token,
        refresh_token=model.refresh_token,
        token_expires_at=model.token_expires_at,
        is_active=bool(model.is_active),
        account_name=model.account_name,
        account_identifier=model.account_identifier,
        metadata=parse_metadata(provider, model.account_metadata),
        sync_config=SyncConfig.model_validate(model.sync_config or {}),
        stage_mappings=[
            StageMappingData(
                internal_status=ProposalStatus(m.internal_status),
                crm_stage_id=m.crm_stage_id,
                crm_stage_name=m.crm_stage_name,
            )
            for m in model.stage_mappings
        ],
        last_synced_at=model.last_synced_at,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _model_to_contact(model: CrmContactModel) -> CrmContactRead:
    return CrmContactRead(
        id=str(model.id),
        user_id=model.user_id,
        provider=CrmProvider(model.provider),
        external_id=model.external_id,
        email=model.email,
        first_name=model.first_name,
        last_name=model.last_name,
        company=model.company,
        phone=model.phone,
        last_synced_at=model.last_synced_at,
    )


def _model_to_webhook_log(model: WebhookLogModel) -> WebhookLogRead:
    return WebhookLogRead(
        id=str(model.id),
        provider=CrmProvider(model.provider),
        event=model.event,
        payload=model.payload,
        processed=bool(model.processed),
        integration_id=str(model.integration_id) if model.integration_id else None,
        error=model.error,
        created_at=model.created_at,
    )


def _dedupe_mappings(mappings: list[StageMappingData]) -> list[StageMappingData]:
    """Keep one mapping per internal status; the last one listed wins."""
    by_status: dict[ProposalStatus, StageMappingData] = {}
    for mapping in mappings:
        by_status[mapping.internal_status] = mapping
    return list(by_status.values())


# ── Integration Repository ──────────────────────────────────────────────────


class IntegrationRepository:
    """Async persistence for integrations and their stage mappings.

    Token columns are only written through store_tokens/update_tokens/
    mark_disconnected, which the CredentialStore owns.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    @staticmethod
    async def _load(session: AsyncSession, integration_id: uuid.UUID) -> IntegrationModel:
        """Re-select an integration with its mappings freshly loaded."""
        stmt = (
            select(IntegrationModel)
            .where(IntegrationModel.id == integration_id)
            .execution_options(populate_existing=True)
        )
        result = await session.execute(stmt)
        return result.scalar_one()

    @staticmethod
    async def _find(
        session: AsyncSession, user_id: str, provider: CrmProvider
    ) -> IntegrationModel | None:
        stmt = select(IntegrationModel).where(
            IntegrationModel.user_id == user_id,
            IntegrationModel.provider == provider.value,
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    # ── Reads ───────────────────────────────────────────────────────────────

    async def get(self, user_id: str, provider: CrmProvider) -> IntegrationRecord | None:
        """Get the integration for (user, provider), active or not."""
        async for session in self._session_factory():
            model = await self._find(session, user_id, provider)
            if model is None:
                return None
            return _model_to_integration(model)

    async def get_by_id(self, integration_id: str) -> IntegrationRecord | None:
        async for session in self._session_factory():
            stmt = select(IntegrationModel).where(
                IntegrationModel.id == uuid.UUID(integration_id)
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_integration(model)

    async def find_by_account(
        self, provider: CrmProvider, account_identifier: str
    ) -> IntegrationRecord | None:
        """Resolve the integration a webhook belongs to by provider account id.

        Prefers an active integration when the same CRM account was connected
        by more than one user.
        """
        async for session in self._session_factory():
            stmt = (
                select(IntegrationModel)
                .where(
                    IntegrationModel.provider == provider.value,
                    IntegrationModel.account_identifier == account_identifier,
                )
                .order_by(IntegrationModel.is_active.desc(), IntegrationModel.created_at.desc())
            )
            result = await session.execute(stmt)
            model = result.scalars().first()
            if model is None:
                return None
            return _model_to_integration(model)

    async def list_for_user(self, user_id: str) -> list[IntegrationRecord]:
        async for session in self._session_factory():
            stmt = (
                select(IntegrationModel)
                .where(IntegrationModel.user_id == user_id)
                .order_by(IntegrationModel.provider)
            )
            result = await session.execute(stmt)
            return [_model_to_integration(m) for m in result.scalars().all()]

    # ── Token Writes ────────────────────────────────────────────────────────

    async def store_tokens(
        self, user_id: str, provider: CrmProvider, tokens: TokenSet
    ) -> IntegrationRecord:
        """Create or reactivate the integration from a fresh OAuth exchange."""
        metadata = tokens.metadata
        async for session in self._session_factory():
            model = await self._find(session, user_id, provider)
            if model is None:
                model = IntegrationModel(
                    user_id=user_id,
                    provider=provider.value,
                    sync_config=SyncConfig().model_dump(mode="json"),
                )
                session.add(model)

            model.access_token = tokens.access_token
            model.refresh_token = tokens.refresh_token
            model.token_expires_at = tokens.expires_at
            model.is_active = True
            model.account_name = tokens.account_name or UNKNOWN_ACCOUNT_NAME
            model.account_identifier = metadata.account_identifier
            model.account_metadata = metadata.model_dump(mode="json", exclude={"provider"})
            await session.commit()

            model = await self._load(session, model.id)
            logger.info(
                "crm.integration_stored",
                user_id=user_id,
                provider=provider.value,
                account_identifier=model.account_identifier,
            )
            return _model_to_integration(model)

    async def update_tokens(self, integration_id: str, tokens: TokenSet) -> IntegrationRecord:
        """Persist a refreshed token set.

        A refresh response without a refresh token keeps the stored one
        (only some providers rotate it). Metadata fields returned by the
        refresh, such as a moved Salesforce instance URL, are merged in.
        """
        async for session in self._session_factory():
            model = await self._load(session, uuid.UUID(integration_id))
            model.access_token = tokens.access_token
            if tokens.refresh_token:
                model.refresh_token = tokens.refresh_token
            model.token_expires_at = tokens.expires_at

            refreshed = tokens.metadata.model_dump(mode="json", exclude={"provider"}, exclude_none=True)
            if refreshed:
                model.account_metadata = {**(model.account_metadata or {}), **refreshed}
            await session.commit()

            model = await self._load(session, model.id)
            return _model_to_integration(model)

    async def mark_disconnected(self, user_id: str, provider: CrmProvider) -> bool:
        """Soft-disable: clear the refresh token and set is_active=false.

        Returns:
            True if an integration existed.
        """
        async for session in self._session_factory():
            model = await self._find(session, user_id, provider)
            if model is None:
                return False
            model.is_active = False
            model.refresh_token = None
            await session.commit()
            return True

    # ── Configuration ───────────────────────────────────────────────────────

    async def update_sync_config(
        self, user_id: str, provider: CrmProvider, config: SyncConfig
    ) -> IntegrationRecord | None:
        """Store the sync config; existing deal links follow the new direction."""
        async for session in self._session_factory():
            model = await self._find(session, user_id, provider)
            if model is None:
                return None
            model.sync_config = config.model_dump(mode="json")
            await session.execute(
                update(DealLinkModel)
                .where(DealLinkModel.integration_id == model.id)
                .values(sync_direction=config.direction.value)
            )
            await session.commit()
            model = await self._load(session, model.id)
            return _model_to_integration(model)

    async def replace_stage_mappings(
        self,
        user_id: str,
        provider: CrmProvider,
        mappings: list[StageMappingData],
    ) -> IntegrationRecord | None:
        """Replace the whole mapping list for an integration.

        Old rows are deleted and flushed before the new ones are inserted so
        the per-status unique constraint never sees both generations.
        """
        async for session in self._session_factory():
            model = await self._find(session, user_id, provider)
            if model is None:
                return None

            await session.execute(
                delete(StageMappingModel).where(StageMappingModel.integration_id == model.id)
            )
            await session.flush()

            for position, mapping in enumerate(_dedupe_mappings(mappings)):
                session.add(
                    StageMappingModel(
                        integration_id=model.id,
                        position=position,
                        internal_status=mapping.internal_status.value,
                        crm_stage_id=mapping.crm_stage_id,
                        crm_stage_name=mapping.crm_stage_name,
                    )
                )
            await session.commit()

            model = await self._load(session, model.id)
            return _model_to_integration(model)

    async def touch_synced(self, integration_id: str, when: datetime | None = None) -> None:
        async for session in self._session_factory():
            model = await self._load(session, uuid.UUID(integration_id))
            model.last_synced_at = when or datetime.now(timezone.utc)
            await session.commit()


# ── Webhook Log Repository ──────────────────────────────────────────────────


class WebhookLogRepository:
    """Append-only webhook audit trail. Entries are never updated."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def append(
        self,
        provider: CrmProvider,
        event: str,
        payload: Any,
        processed: bool,
        integration_id: str | None = None,
        error: str | None = None,
    ) -> WebhookLogRead:
        async for session in self._session_factory():
            model = WebhookLogModel(
                provider=provider.value,
                event=event or "unknown",
                payload=payload,
                processed=processed,
                integration_id=uuid.UUID(integration_id) if integration_id else None,
                error=error,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_webhook_log(model)

    async def list_recent(
        self,
        provider: CrmProvider | None = None,
        integration_id: str | None = None,
        limit: int = 50,
    ) -> list[WebhookLogRead]:
        async for session in self._session_factory():
            stmt = select(WebhookLogModel)
            if provider is not None:
                stmt = stmt.where(WebhookLogModel.provider == provider.value)
            if integration_id is not None:
                stmt = stmt.where(WebhookLogModel.integration_id == uuid.UUID(integration_id))
            stmt = stmt.order_by(WebhookLogModel.created_at.desc()).limit(limit)
            result = await session.execute(stmt)
            return [_model_to_webhook_log(m) for m in result.scalars().all()]


# ── Contact Repository ──────────────────────────────────────────────────────


class ContactRepository:
    """Contacts imported from a CRM, keyed by (user, provider, external id)."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    @staticmethod
    async def _find(
        session: AsyncSession, user_id: str, provider: CrmProvider, external_id: str
    ) -> CrmContactModel | None:
        stmt = select(CrmContactModel).where(
            CrmContactModel.user_id == user_id,
            CrmContactModel.provider == provider.value,
            CrmContactModel.external_id == external_id,
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def upsert(
        self, user_id: str, provider: CrmProvider, contact: Contact
    ) -> CrmContactRead:
        async for session in self._session_factory():
            model = await self._find(session, user_id, provider, contact.id)
            if model is None:
                model = CrmContactModel(
                    user_id=user_id,
                    provider=provider.value,
                    external_id=contact.id,
                )
                session.add(model)
            for field in CONTACT_FIELDS:
                setattr(model, field, getattr(contact, field))
            model.raw_data = contact.model_dump(mode="json")
            model.last_synced_at = datetime.now(timezone.utc)
            await session.commit()
            await session.refresh(model)
            return _model_to_contact(model)

    async def get(
        self, user_id: str, provider: CrmProvider, external_id: str
    ) -> CrmContactRead | None:
        async for session in self._session_factory():
            model = await self._find(session, user_id, provider, external_id)
            if model is None:
                return None
            return _model_to_contact(model)

    async def apply_changes(
        self,
        user_id: str,
        provider: CrmProvider,
        external_id: str,
        changes: dict[str, Any],
    ) -> bool:
        """Overwrite mirrored fields of an existing contact.

        Unknown field names are ignored. Returns False when the contact was
        never imported or nothing applicable changed.
        """
        applicable = {k: v for k, v in changes.items() if k in CONTACT_FIELDS}
        if not applicable:
            return False
        async for session in self._session_factory():
            model = await self._find(session, user_id, provider, external_id)
            if model is None:
                return False
            for field, value in applicable.items():
                setattr(model, field, value)
            model.last_synced_at = datetime.now(timezone.utc)
            await session.commit()
            return True
