"""Inbound webhook processor -- verified CRM events into proposal, link and contact updates.

Each delivery goes received -> signature_verified -> classified -> routed,
or is discarded:

- bad or missing signature, unparsable body: discarded, nothing logged to
  the webhook audit trail
- every classified event: one WebhookLogEntry, ``processed`` true when it
  was routed to a handler

Routing:
- deal_stage_changed: reverse-map the stage, update the linked proposal
- deal_deleted: unlink the deal
- contact_changed: refresh the mirrored contact, if imported
- deal_created / unrecognized: logged only

process() never raises; the HTTP layer always acknowledges the delivery.
"""

from __future__ import annotations

import json
from collections.abc import Mapping

import structlog

from src.app.config import Settings
from src.app.core.monitoring import crm_webhooks_total
from src.app.crm.credentials import ProviderFactory
from src.app.crm.errors import SignatureInvalid
from src.app.crm.links import DealLinkRegistry
from src.app.crm.mapping import reverse_lookup
from src.app.crm.proposals import ProposalAccessor
from src.app.crm.repository import ContactRepository, IntegrationRepository, WebhookLogRepository
from src.app.crm.schemas import (
    CrmProvider,
    IntegrationRecord,
    ProposalStatus,
    WebhookEvent,
    WebhookEventKind,
    WebhookOutcome,
)
from src.app.crm.signatures import verify_signature

logger = structlog.get_logger(__name__)


class InboundWebhookProcessor:
    """Verifies, classifies and routes CRM webhook deliveries.

    Args:
        settings: Holds the webhook signing secrets.
        integrations: Resolves the integration from the account identifier.
        links: Deal link registry.
        contacts: Mirrored contacts.
        webhook_logs: Append-only audit trail.
        proposals: Proposal platform accessor.
        provider_factory: Returns the adapter (classifier) for a provider.
    """

    def __init__(
        self,
        settings: Settings,
        integrations: IntegrationRepository,
        links: DealLinkRegistry,
        contacts: ContactRepository,
        webhook_logs: WebhookLogRepository,
        proposals: ProposalAccessor,
        provider_factory: ProviderFactory,
    ) -> None:
        self._settings = settings
        self._integrations = integrations
        self._links = links
        self._contacts = contacts
        self._webhook_logs = webhook_logs
        self._proposals = proposals
        self._provider_factory = provider_factory

    async def process(
        self,
        provider: CrmProvider,
        raw_body: bytes,
        headers: Mapping[str, str],
    ) -> WebhookOutcome:
        """Handle one webhook delivery."""
        try:
            verify_signature(provider, raw_body, headers, self._settings)
        except SignatureInvalid as exc:
            crm_webhooks_total.labels(provider=provider.value, outcome="signature_invalid").inc()
            logger.warning("webhook.signature_invalid", provider=provider.value, reason=exc.message)
            return WebhookOutcome(
                provider=provider, verified=False, discarded_reason="signature_invalid"
            )

        try:
            payload = json.loads(raw_body)
            events = self._provider_factory(provider).classify_webhook(payload)
        except ValueError as exc:
            crm_webhooks_total.labels(provider=provider.value, outcome="malformed").inc()
            logger.warning("webhook.payload_malformed", provider=provider.value, error=str(exc))
            return WebhookOutcome(
                provider=provider, verified=True, discarded_reason="malformed_payload"
            )

        processed = 0
        for event in events:
            if await self._handle(event):
                processed += 1

        crm_webhooks_total.labels(provider=provider.value, outcome="accepted").inc()
        logger.info(
            "webhook.processed",
            provider=provider.value,
            events=len(events),
            processed=processed,
        )
        return WebhookOutcome(
            provider=provider, verified=True, events=len(events), processed=processed
        )

    # ── Per-event Handling ──────────────────────────────────────────────────

    async def _handle(self, event: WebhookEvent) -> bool:
        provider = event.provider
        integration: IntegrationRecord | None = None
        processed = False
        error: str | None = None
        try:
            if event.account_identifier:
                integration = await self._integrations.find_by_account(
                    provider, event.account_identifier
                )
            if integration is None:
                logger.warning(
                    "webhook.integration_not_found",
                    provider=provider.value,
                    account_identifier=event.account_identifier,
                )
            elif not integration.is_active:
                logger.info(
                    "webhook.integration_inactive",
                    provider=provider.value,
                    integration_id=integration.id,
                )
            else:
                processed = await self._route(event, integration)
        except Exception as exc:
            # One failing event must not stop the rest of the batch
            logger.exception(
                "webhook.event_failed",
                provider=provider.value,
                event_type=event.event_type,
                object_id=event.object_id,
            )
            error = str(exc) or exc.__class__.__name__

        try:
            await self._webhook_logs.append(
                provider=provider,
                event=event.event_type,
                payload=event.raw,
                processed=processed,
                integration_id=integration.id if integration else None,
                error=error,
            )
        except Exception:
            logger.exception("webhook.log_write_failed", provider=provider.value)
        return processed

    async def _route(self, event: WebhookEvent, integration: IntegrationRecord) -> bool:
        match event.kind:
            case WebhookEventKind.DEAL_STAGE_CHANGED:
                return await self._apply_stage_change(event, integration)
            case WebhookEventKind.DEAL_DELETED:
                return await self._unlink_deleted_deal(event, integration)
            case WebhookEventKind.CONTACT_CHANGED:
                return await self._apply_contact_change(event, integration)
            case _:
                logger.info(
                    "webhook.event_ignored",
                    provider=event.provider.value,
                    kind=event.kind.value,
                    event_type=event.event_type,
                )
                return False

    async def _apply_stage_change(self, event: WebhookEvent, integration: IntegrationRecord) -> bool:
        provider = event.provider
        if not event.object_id or not integration.sync_config.direction.allows_inbound:
            return False

        link = await self._links.find_by_external_deal(provider, event.object_id, integration.id)
        if link is None:
            logger.debug("webhook.deal_not_linked", provider=provider.value, deal_id=event.object_id)
            return False
        if not link.sync_direction.allows_inbound:
            return False

        status = reverse_lookup(
            integration.stage_mappings, stage_id=event.stage_id, stage_name=event.stage_name
        )
        if status is None:
            logger.info(
                "webhook.stage_unmapped",
                provider=provider.value,
                stage_id=event.stage_id,
                stage_name=event.stage_name,
            )
            return False

        proposal = await self._proposals.get_proposal(link.proposal_id)
        if proposal is None:
            logger.warning("webhook.proposal_not_found", proposal_id=link.proposal_id)
            return False
        if proposal.status == status:
            # Echo of our own outbound push
            logger.debug("webhook.status_unchanged", proposal_id=proposal.id, status=status.value)
            return True
        if proposal.status == ProposalStatus.SIGNED and integration.sync_config.protect_signed_status:
            logger.info(
                "webhook.signed_status_protected",
                proposal_id=proposal.id,
                requested_status=status.value,
            )
            return True

        await self._proposals.update_status(proposal.id, status)
        logger.info(
            "webhook.proposal_status_updated",
            provider=provider.value,
            proposal_id=proposal.id,
            previous_status=proposal.status.value,
            status=status.value,
        )
        return True

    async def _unlink_deleted_deal(self, event: WebhookEvent, integration: IntegrationRecord) -> bool:
        if not event.object_id:
            return False
        await self._links.unlink(event.provider, event.object_id, integration.id)
        return True

    async def _apply_contact_change(self, event: WebhookEvent, integration: IntegrationRecord) -> bool:
        if not event.object_id:
            return False
        return await self._contacts.apply_changes(
            integration.user_id, event.provider, event.object_id, event.properties
        )
