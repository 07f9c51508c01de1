"""Outbound sync coordinator -- pushes proposal lifecycle changes to linked CRM deals.

For every deal linked to a proposal (and allowed to sync outbound) the
coordinator runs, in order:

1. update_stage: the mapped CRM stage (closed-won default for signed)
2. add_note: a human-readable status note on the deal
3. attach_document: the signed PDF, only when signed and a PDF exists

Links are processed concurrently; the actions of one link run sequentially
and independently, so a failed stage update does not prevent the note.
Failures are collected into SyncResult entries and never raised.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone

import structlog

from src.app.core.monitoring import crm_sync_actions_total
from src.app.crm.credentials import CredentialStore, ProviderFactory
from src.app.crm.errors import CrmError, ValidationError
from src.app.crm.links import DealLinkRegistry
from src.app.crm.mapping import resolve_target_stage
from src.app.crm.proposals import ProposalAccessor
from src.app.crm.repository import IntegrationRepository
from src.app.crm.schemas import (
    ActionOutcome,
    CrmCredentials,
    DealLinkRead,
    DealStatusUpdate,
    IntegrationRecord,
    ProposalSnapshot,
    ProposalStatus,
    SyncResult,
)

logger = structlog.get_logger(__name__)

INTERNAL_ERROR = "internal_error"

# Proposal events that trigger an outbound sync
SYNC_EVENTS = frozenset({
    ProposalStatus.SENT.value,
    ProposalStatus.APPROVED.value,
    ProposalStatus.SIGNED.value,
})


def build_note(proposal: ProposalSnapshot) -> str:
    """Note text added to the deal for a status change."""
    if proposal.status == ProposalStatus.SIGNED:
        text = f'Proposal "{proposal.title}" was signed by {proposal.signer_name or "client"}'
        if proposal.signed_at:
            text += f" on {proposal.signed_at.date().isoformat()}"
        return text
    return f'Proposal "{proposal.title}" status updated to {proposal.status.value}'


def document_filename(proposal: ProposalSnapshot) -> str:
    slug = re.sub(r"[^A-Za-z0-9_-]+", "-", proposal.title).strip("-") or proposal.id
    return f"proposal-{slug}-signed.pdf"


class _Document:
    """The signed PDF, downloaded at most once per sync and shared by all links."""

    def __init__(self, fetch: Callable[[], Awaitable[bytes]]) -> None:
        self._fetch = fetch
        self._lock = asyncio.Lock()
        self._content: bytes | None = None
        self._error: Exception | None = None

    async def get(self) -> bytes:
        async with self._lock:
            if self._content is None and self._error is None:
                try:
                    self._content = await self._fetch()
                except Exception as exc:
                    self._error = exc
            if self._content is not None:
                return self._content
        raise self._error


class OutboundSyncCoordinator:
    """Fans one proposal's state out to every linked CRM deal.

    Args:
        links: Deal link registry.
        integrations: Integration persistence (mappings, active flag, config).
        credentials: Credential store for valid tokens.
        proposals: Proposal platform accessor.
        provider_factory: Returns the adapter for a provider.
    """

    def __init__(
        self,
        links: DealLinkRegistry,
        integrations: IntegrationRepository,
        credentials: CredentialStore,
        proposals: ProposalAccessor,
        provider_factory: ProviderFactory,
    ) -> None:
        self._links = links
        self._integrations = integrations
        self._credentials = credentials
        self._proposals = proposals
        self._provider_factory = provider_factory

    async def trigger_on_event(self, proposal_id: str, event: str) -> list[SyncResult]:
        """Sync after a proposal lifecycle event; other events are ignored."""
        if event not in SYNC_EVENTS:
            logger.debug("crm.sync_event_ignored", proposal_id=proposal_id, lifecycle_event=event)
            return []
        return await self._sync(proposal_id, trigger=event)

    async def sync_proposal_to_all_linked_deals(self, proposal_id: str) -> list[SyncResult]:
        """Push the proposal's current state to all linked deals. Never raises."""
        return await self._sync(proposal_id, trigger=None)

    async def _sync(self, proposal_id: str, trigger: str | None) -> list[SyncResult]:
        try:
            proposal = await self._proposals.get_proposal(proposal_id)
        except CrmError as exc:
            logger.warning("crm.sync_proposal_unavailable", proposal_id=proposal_id, error=exc.message)
            return []
        if proposal is None:
            logger.warning("crm.sync_proposal_not_found", proposal_id=proposal_id)
            return []

        links = [
            link
            for link in await self._links.find_by_proposal(proposal_id)
            if link.sync_direction.allows_outbound
        ]
        if not links:
            logger.debug("crm.sync_no_links", proposal_id=proposal_id)
            return []

        document = None
        if proposal.status == ProposalStatus.SIGNED and proposal.pdf_url:
            pdf_url = proposal.pdf_url
            document = _Document(lambda: self._proposals.fetch_document(pdf_url))

        outcomes = await asyncio.gather(
            *(self._sync_link(proposal, link, trigger, document) for link in links),
            return_exceptions=True,
        )

        results: list[SyncResult] = []
        for link, outcome in zip(links, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(
                    "crm.sync_link_crashed",
                    proposal_id=proposal_id,
                    provider=link.provider.value,
                    external_deal_id=link.external_deal_id,
                    exc_info=outcome,
                )
                results.append(SyncResult(
                    provider=link.provider,
                    proposal_id=proposal_id,
                    external_deal_id=link.external_deal_id,
                    success=False,
                    error=str(outcome),
                    classification=INTERNAL_ERROR,
                ))
            elif outcome is not None:
                results.append(outcome)

        logger.info(
            "crm.sync_completed",
            proposal_id=proposal_id,
            status=proposal.status.value,
            links=len(results),
            succeeded=sum(1 for r in results if r.success),
        )
        return results

    async def _sync_link(
        self,
        proposal: ProposalSnapshot,
        link: DealLinkRead,
        trigger: str | None,
        document: _Document | None,
    ) -> SyncResult | None:
        provider = link.provider
        integration = await self._integrations.get_by_id(link.integration_id)
        if integration is None or not integration.is_active:
            logger.warning(
                "crm.sync_integration_inactive",
                proposal_id=proposal.id,
                provider=provider.value,
            )
            return self._failed(link, ValidationError(
                f"{provider.value} integration is not active", provider=provider.value
            ))

        config = integration.sync_config
        if not config.direction.allows_outbound:
            return None
        if trigger is not None and trigger not in config.sync_triggers:
            logger.debug("crm.sync_trigger_disabled", provider=provider.value, trigger=trigger)
            return None

        try:
            credentials = await self._credentials.get_valid_credentials(link.user_id, provider)
        except CrmError as exc:
            logger.warning(
                "crm.sync_credentials_unavailable",
                proposal_id=proposal.id,
                provider=provider.value,
                classification=exc.classification,
            )
            return self._failed(link, exc)

        deal_id = link.external_deal_id
        adapter = self._provider_factory(provider)

        stage_outcome = await self._update_stage(integration, credentials, proposal, deal_id)
        actions = [stage_outcome]

        actions.append(await self._attempt(
            "add_note", integration, lambda: adapter.add_note(credentials, deal_id, build_note(proposal))
        ))

        if document is not None:
            async def attach() -> None:
                content = await document.get()
                await adapter.attach_document(credentials, deal_id, document_filename(proposal), content)

            actions.append(await self._attempt("attach_document", integration, attach))
        else:
            actions.append(ActionOutcome(action="attach_document", ok=True, skipped=True))

        if stage_outcome.ok and not stage_outcome.skipped:
            now = datetime.now(timezone.utc)
            await self._links.mark_synced(link.id, now)
            await self._integrations.touch_synced(integration.id, now)

        failed = next((a for a in actions if not a.ok), None)
        return SyncResult(
            provider=provider,
            proposal_id=proposal.id,
            external_deal_id=deal_id,
            success=failed is None,
            actions=actions,
            error=failed.error if failed else None,
            classification=failed.classification if failed else None,
        )

    async def _update_stage(
        self,
        integration: IntegrationRecord,
        credentials: CrmCredentials,
        proposal: ProposalSnapshot,
        deal_id: str,
    ) -> ActionOutcome:
        provider = integration.provider
        if not integration.sync_config.sync_proposal_status:
            return ActionOutcome(action="update_stage", ok=True, skipped=True)

        target = resolve_target_stage(integration.stage_mappings, proposal.status, provider)
        if target is None:
            logger.warning(
                "crm.sync_stage_unmapped",
                provider=provider.value,
                status=proposal.status.value,
            )
            crm_sync_actions_total.labels(
                provider=provider.value, action="update_stage", outcome="skipped"
            ).inc()
            return ActionOutcome(
                action="update_stage",
                ok=True,
                skipped=True,
                classification=ValidationError.classification,
            )

        won = proposal.status == ProposalStatus.SIGNED
        update = DealStatusUpdate(
            stage=target,
            won=won,
            close_date=(proposal.signed_at or datetime.now(timezone.utc)).date() if won else None,
            amount=proposal.deal_amount() if won else None,
        )
        adapter = self._provider_factory(provider)
        return await self._attempt(
            "update_stage", integration, lambda: adapter.push_status(credentials, deal_id, update)
        )

    async def _attempt(
        self,
        action: str,
        integration: IntegrationRecord,
        call: Callable[[], Awaitable[None]],
    ) -> ActionOutcome:
        provider = integration.provider.value
        try:
            await call()
        except CrmError as exc:
            crm_sync_actions_total.labels(provider=provider, action=action, outcome="error").inc()
            logger.warning(
                "crm.sync_action_failed",
                provider=provider,
                action=action,
                classification=exc.classification,
                error=exc.message,
            )
            return ActionOutcome(
                action=action,  # type: ignore[arg-type]
                ok=False,
                error=exc.message,
                classification=exc.classification,
            )
        except Exception as exc:
            # Unexpected adapter failures (malformed responses) stay scoped to this action
            crm_sync_actions_total.labels(provider=provider, action=action, outcome="error").inc()
            logger.error(
                "crm.sync_action_crashed",
                provider=provider,
                action=action,
                exc_info=exc,
            )
            return ActionOutcome(
                action=action,  # type: ignore[arg-type]
                ok=False,
                error=str(exc) or exc.__class__.__name__,
                classification=INTERNAL_ERROR,
            )
        crm_sync_actions_total.labels(provider=provider, action=action, outcome="success").inc()
        return ActionOutcome(action=action, ok=True)  # type: ignore[arg-type]

    @staticmethod
    def _failed(link: DealLinkRead, exc: CrmError) -> SyncResult:
        return SyncResult(
            provider=link.provider,
            proposal_id=link.proposal_id,
            external_deal_id=link.external_deal_id,
            success=False,
            error=exc.message,
            classification=exc.classification,
        )
