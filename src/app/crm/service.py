"""CRM integration service -- the management facade behind the /crm API.

Composes the credential store, adapters, repositories, link registry and
outbound coordinator into the operations a user performs from the
integrations settings page: connect, disconnect, configure, browse CRM
contacts and deals, create or link deals, and trigger a manual sync.
"""

from __future__ import annotations

import httpx
import structlog

from src.app.config import Settings
from src.app.crm.credentials import CredentialStore, ProviderFactory
from src.app.crm.errors import CrmError, ValidationError
from src.app.crm.links import DealLinkRegistry
from src.app.crm.outbound import OutboundSyncCoordinator
from src.app.crm.proposals import ProposalAccessor
from src.app.crm.repository import ContactRepository, IntegrationRepository, WebhookLogRepository
from src.app.crm.schemas import (
    Contact,
    CrmContactRead,
    CrmCredentials,
    CrmProvider,
    Deal,
    DealCreate,
    DealLinkRead,
    IntegrationRecord,
    ProposalSnapshot,
    Stage,
    StageMappingData,
    SyncConfig,
    SyncResult,
    WebhookLogRead,
)

logger = structlog.get_logger(__name__)

PROPOSAL_ID_FIELD = "syncquote_proposal_id"
PROPOSAL_URL_FIELD = "syncquote_proposal_url"


class CrmIntegrationService:
    """Management operations for a user's CRM integrations.

    Args:
        settings: Application settings (frontend URL).
        credentials: Credential store.
        integrations: Integration persistence.
        links: Deal link registry.
        contacts: Mirrored contacts.
        webhook_logs: Webhook audit trail.
        proposals: Proposal platform accessor.
        outbound: Outbound sync coordinator.
        provider_factory: Returns the adapter for a provider.
    """

    def __init__(
        self,
        settings: Settings,
        credentials: CredentialStore,
        integrations: IntegrationRepository,
        links: DealLinkRegistry,
        contacts: ContactRepository,
        webhook_logs: WebhookLogRepository,
        proposals: ProposalAccessor,
        outbound: OutboundSyncCoordinator,
        provider_factory: ProviderFactory,
    ) -> None:
        self._settings = settings
        self._credentials = credentials
        self._integrations = integrations
        self._links = links
        self._contacts = contacts
        self._webhook_logs = webhook_logs
        self._proposals = proposals
        self._outbound = outbound
        self._provider_factory = provider_factory

    # ── Helpers ─────────────────────────────────────────────────────────────

    async def _require_integration(self, user_id: str, provider: CrmProvider) -> IntegrationRecord:
        integration = await self._integrations.get(user_id, provider)
        if integration is None:
            raise ValidationError(f"No {provider.value} integration found", provider=provider.value)
        return integration

    async def _require_proposal(self, user_id: str, proposal_id: str) -> ProposalSnapshot:
        proposal = await self._proposals.get_proposal(proposal_id)
        if proposal is None or proposal.user_id != user_id:
            raise ValidationError(f"Proposal {proposal_id} not found")
        return proposal

    async def _session(self, user_id: str, provider: CrmProvider) -> CrmCredentials:
        return await self._credentials.get_valid_credentials(user_id, provider)

    def _redirect(self, **params: str) -> str:
        return str(httpx.URL(f"{self._settings.FRONTEND_URL.rstrip('/')}/settings/integrations", params=params))

    # ── Connection Lifecycle ────────────────────────────────────────────────

    async def list_integrations(self, user_id: str) -> list[IntegrationRecord]:
        """All of the user's integrations, disconnected ones included (shown as inactive)."""
        return await self._integrations.list_for_user(user_id)

    def authorization_url(self, user_id: str, provider: CrmProvider) -> str:
        return self._provider_factory(provider).authorization_url(user_id)

    async def handle_callback(self, provider: CrmProvider, code: str | None, state: str | None) -> str:
        """Complete the OAuth flow and return the frontend URL to redirect to.

        ``state`` carries the user id set in authorization_url(). Failures
        redirect with ``error=<provider>`` instead of raising.
        """
        if not code or not state:
            logger.warning("crm.oauth_callback_incomplete", provider=provider.value)
            return self._redirect(error=provider.value)
        try:
            tokens = await self._provider_factory(provider).exchange_code(code)
            await self._credentials.store_tokens(state, provider, tokens)
        except CrmError as exc:
            logger.warning(
                "crm.oauth_callback_failed",
                provider=provider.value,
                user_id=state,
                classification=exc.classification,
                error=exc.message,
            )
            return self._redirect(error=provider.value)
        logger.info("crm.connected", provider=provider.value, user_id=state)
        return self._redirect(connected=provider.value)

    async def disconnect(self, user_id: str, provider: CrmProvider, remove_links: bool = False) -> None:
        """Revoke at the provider (best effort), then soft-disable.

        Deal links and stage mappings are kept unless ``remove_links``.
        """
        integration = await self._require_integration(user_id, provider)
        credentials = CrmCredentials(
            provider=provider,
            access_token=integration.access_token,
            metadata=integration.metadata,
        )
        await self._provider_factory(provider).disconnect(credentials, integration.refresh_token)
        await self._credentials.mark_disconnected(user_id, provider)
        if remove_links:
            removed = await self._links.unlink_integration(integration.id)
            logger.info("crm.links_removed", provider=provider.value, user_id=user_id, removed=removed)

    # ── Configuration ───────────────────────────────────────────────────────

    async def configure_sync(self, user_id: str, provider: CrmProvider, config: SyncConfig) -> IntegrationRecord:
        updated = await self._integrations.update_sync_config(user_id, provider, config)
        if updated is None:
            raise ValidationError(f"No {provider.value} integration found", provider=provider.value)
        logger.info("crm.sync_configured", provider=provider.value, user_id=user_id, direction=config.direction.value)
        return updated

    async def configure_stage_mappings(
        self, user_id: str, provider: CrmProvider, mappings: list[StageMappingData]
    ) -> IntegrationRecord:
        updated = await self._integrations.replace_stage_mappings(user_id, provider, mappings)
        if updated is None:
            raise ValidationError(f"No {provider.value} integration found", provider=provider.value)
        logger.info("crm.stage_mappings_configured", provider=provider.value, user_id=user_id, count=len(updated.stage_mappings))
        return updated

    async def list_stages(self, user_id: str, provider: CrmProvider) -> list[Stage]:
        credentials = await self._session(user_id, provider)
        return await self._provider_factory(provider).list_stages(credentials)

    # ── Contacts ────────────────────────────────────────────────────────────

    async def list_contacts(
        self, user_id: str, provider: CrmProvider, limit: int = 100, offset: int = 0
    ) -> list[Contact]:
        credentials = await self._session(user_id, provider)
        return await self._provider_factory(provider).get_contacts(credentials, limit, offset)

    async def import_contact(self, user_id: str, provider: CrmProvider, contact_id: str) -> CrmContactRead:
        credentials = await self._session(user_id, provider)
        contact = await self._provider_factory(provider).get_contact(credentials, contact_id)
        if contact is None:
            raise ValidationError(f"{provider.value} contact {contact_id} not found", provider=provider.value)
        imported = await self._contacts.upsert(user_id, provider, contact)
        logger.info("crm.contact_imported", provider=provider.value, user_id=user_id, external_id=contact_id)
        return imported

    # ── Deals ───────────────────────────────────────────────────────────────

    async def list_deals(
        self, user_id: str, provider: CrmProvider, limit: int = 100, offset: int = 0
    ) -> list[Deal]:
        credentials = await self._session(user_id, provider)
        return await self._provider_factory(provider).list_deals(credentials, limit, offset)

    async def create_deal_from_proposal(self, user_id: str, provider: CrmProvider, proposal_id: str) -> Deal:
        """Create a CRM deal mirroring the proposal and link the two."""
        proposal = await self._require_proposal(user_id, proposal_id)
        credentials = await self._session(user_id, provider)

        custom_fields: dict[str, str] = {PROPOSAL_ID_FIELD: proposal.id}
        if proposal.slug:
            custom_fields[PROPOSAL_URL_FIELD] = f"{self._settings.FRONTEND_URL.rstrip('/')}/p/{proposal.slug}"

        deal = await self._provider_factory(provider).create_deal(
            credentials,
            DealCreate(
                name=proposal.title,
                amount=proposal.deal_amount(),
                custom_fields=custom_fields,
            ),
        )
        await self._links.link(proposal.id, provider, deal.id, user_id)
        logger.info(
            "crm.deal_created_from_proposal",
            provider=provider.value,
            proposal_id=proposal.id,
            external_deal_id=deal.id,
        )
        return deal

    async def link_proposal_to_deal(
        self, user_id: str, provider: CrmProvider, deal_id: str, proposal_id: str
    ) -> DealLinkRead:
        await self._require_proposal(user_id, proposal_id)
        return await self._links.link(proposal_id, provider, deal_id, user_id)

    async def sync_proposal_status(self, user_id: str, proposal_id: str) -> list[SyncResult]:
        """Manual outbound sync of one proposal to all its linked deals."""
        await self._require_proposal(user_id, proposal_id)
        return await self._outbound.sync_proposal_to_all_linked_deals(proposal_id)

    # ── Diagnostics ─────────────────────────────────────────────────────────

    async def list_webhook_log(self, user_id: str, provider: CrmProvider, limit: int = 50) -> list[WebhookLogRead]:
        integration = await self._require_integration(user_id, provider)
        return await self._webhook_logs.list_recent(provider, integration.id, limit)
