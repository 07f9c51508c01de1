"""Credential store -- hands out valid access tokens, refreshing them on demand.

The only component that writes token fields. Callers ask for a token (or
the full CrmCredentials an adapter needs) and never see a stale one: a
token within ``skew_seconds`` of expiry is refreshed first.

Refresh is single-flighted per (user, provider): concurrent callers in one
process await the same asyncio task, and an optional RefreshLock extends
the exclusion across workers. A refresh the provider rejects disconnects
the integration; a transient failure leaves it connected.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import structlog

from src.app.core.monitoring import crm_token_refresh_total
from src.app.core.redis import RefreshLock
from src.app.crm.errors import AuthError, CrmError
from src.app.crm.providers.base import CRMProvider
from src.app.crm.repository import IntegrationRepository
from src.app.crm.schemas import CrmCredentials, CrmProvider, IntegrationRecord, TokenSet

logger = structlog.get_logger(__name__)

ProviderFactory = Callable[[CrmProvider], CRMProvider]


class CredentialStore:
    """Per-user, per-provider OAuth credentials.

    Args:
        integrations: Integration persistence.
        provider_factory: Returns the adapter for a provider.
        skew_seconds: Refresh tokens expiring within this many seconds.
        refresh_lock: Optional cross-process lock (Redis).
    """

    def __init__(
        self,
        integrations: IntegrationRepository,
        provider_factory: ProviderFactory,
        skew_seconds: int = 120,
        refresh_lock: RefreshLock | None = None,
    ) -> None:
        self._integrations = integrations
        self._provider_factory = provider_factory
        self._skew = skew_seconds
        self._refresh_lock = refresh_lock
        self._inflight: dict[tuple[str, CrmProvider], asyncio.Task[IntegrationRecord]] = {}

    async def get_valid_token(self, user_id: str, provider: CrmProvider) -> str:
        """Return an access token valid for at least the skew window.

        Raises:
            AuthError: No active integration, no refresh token, or the
                provider rejected the refresh.
            ProviderUnavailable: The refresh call failed transiently.
        """
        record = await self._fresh_record(user_id, provider)
        return record.access_token

    async def get_valid_credentials(self, user_id: str, provider: CrmProvider) -> CrmCredentials:
        """Like get_valid_token, plus the metadata adapters route calls with."""
        record = await self._fresh_record(user_id, provider)
        return CrmCredentials(
            provider=provider,
            access_token=record.access_token,
            metadata=record.metadata,
        )

    async def store_tokens(self, user_id: str, provider: CrmProvider, tokens: TokenSet) -> IntegrationRecord:
        return await self._integrations.store_tokens(user_id, provider, tokens)

    async def mark_disconnected(self, user_id: str, provider: CrmProvider) -> bool:
        """Clear the refresh token and deactivate. Links and mappings are kept."""
        existed = await self._integrations.mark_disconnected(user_id, provider)
        if existed:
            logger.info("crm.integration_disconnected", user_id=user_id, provider=provider.value)
        return existed

    # ── Refresh ─────────────────────────────────────────────────────────────

    async def _active_record(self, user_id: str, provider: CrmProvider) -> IntegrationRecord:
        record = await self._integrations.get(user_id, provider)
        if record is None or not record.is_active:
            raise AuthError(
                f"{provider.value} is not connected for this user",
                provider=provider.value,
            )
        return record

    async def _fresh_record(self, user_id: str, provider: CrmProvider) -> IntegrationRecord:
        record = await self._active_record(user_id, provider)
        if record.token_is_fresh(self._skew):
            return record

        key = (user_id, provider)
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.create_task(self._refresh(user_id, provider))
            self._inflight[key] = task

            def _forget(done: asyncio.Task[IntegrationRecord]) -> None:
                if self._inflight.get(key) is done:
                    del self._inflight[key]

            task.add_done_callback(_forget)
        else:
            logger.debug("crm.token_refresh_joined", user_id=user_id, provider=provider.value)
        # A cancelled caller must not cancel the refresh other callers await
        return await asyncio.shield(task)

    async def _refresh(self, user_id: str, provider: CrmProvider) -> IntegrationRecord:
        if self._refresh_lock is None:
            return await self._refresh_unlocked(user_id, provider)
        async with self._refresh_lock.hold(user_id, provider.value):
            return await self._refresh_unlocked(user_id, provider)

    async def _refresh_unlocked(self, user_id: str, provider: CrmProvider) -> IntegrationRecord:
        # Re-read: another worker may have refreshed while this one waited
        record = await self._active_record(user_id, provider)
        if record.token_is_fresh(self._skew):
            return record
        if not record.refresh_token:
            raise AuthError(
                f"{provider.value} token expired and no refresh token is stored",
                provider=provider.value,
            )

        adapter = self._provider_factory(provider)
        try:
            tokens = await adapter.refresh(record.refresh_token, record.metadata)
        except AuthError as exc:
            crm_token_refresh_total.labels(provider=provider.value, outcome="rejected").inc()
            logger.warning(
                "crm.token_refresh_rejected",
                user_id=user_id,
                provider=provider.value,
                error=exc.message,
            )
            await self.mark_disconnected(user_id, provider)
            raise
        except CrmError as exc:
            crm_token_refresh_total.labels(provider=provider.value, outcome="error").inc()
            logger.warning(
                "crm.token_refresh_failed",
                user_id=user_id,
                provider=provider.value,
                classification=exc.classification,
                error=exc.message,
            )
            raise

        updated = await self._integrations.update_tokens(record.id, tokens)
        crm_token_refresh_total.labels(provider=provider.value, outcome="success").inc()
        logger.info(
            "crm.token_refreshed",
            user_id=user_id,
            provider=provider.value,
            expires_at=updated.token_expires_at.isoformat() if updated.token_expires_at else None,
        )
        return updated
