"""Tests for CredentialStore: freshness check, single-flight refresh, refresh failures."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager

import pytest

from src.app.crm.credentials import CredentialStore
from src.app.crm.errors import AuthError, ProviderRequestError, ProviderUnavailable
from src.app.crm.schemas import CrmProvider


class RecordingLock:
    """Stand-in for RefreshLock that records acquisitions."""

    def __init__(self) -> None:
        self.held: list[tuple[str, str]] = []

    @asynccontextmanager
    async def hold(self, user_id: str, provider: str):
        self.held.append((user_id, provider))
        yield


class TestGetValidToken:
    async def test_fresh_token_returned_without_refresh(self, credential_store, connect, fake_providers):
        await connect(CrmProvider.HUBSPOT, expires_in=3600)

        token = await credential_store.get_valid_token("user-1", CrmProvider.HUBSPOT)

        assert token == "access-1"
        assert fake_providers[CrmProvider.HUBSPOT].refresh_calls == 0

    async def test_token_without_expiry_is_fresh(self, credential_store, connect, fake_providers):
        await connect(CrmProvider.HUBSPOT, expires_in=None)

        assert await credential_store.get_valid_token("user-1", CrmProvider.HUBSPOT) == "access-1"
        assert fake_providers[CrmProvider.HUBSPOT].refresh_calls == 0

    async def test_token_inside_skew_window_is_refreshed(self, credential_store, connect, integrations, fake_providers):
        await connect(CrmProvider.PIPEDRIVE, expires_in=60)

        token = await credential_store.get_valid_token("user-1", CrmProvider.PIPEDRIVE)

        assert token == "access-2"
        assert fake_providers[CrmProvider.PIPEDRIVE].calls_to("refresh") == [("refresh", "refresh-1")]
        stored = await integrations.get("user-1", CrmProvider.PIPEDRIVE)
        assert stored.access_token == "access-2"
        assert stored.refresh_token == "refresh-2"

    async def test_expired_token_is_refreshed(self, credential_store, connect, fake_providers):
        await connect(CrmProvider.ZOHO, expires_in=-600)

        assert await credential_store.get_valid_token("user-1", CrmProvider.ZOHO) == "access-2"
        assert fake_providers[CrmProvider.ZOHO].refresh_calls == 1

    async def test_credentials_carry_metadata(self, credential_store, connect):
        await connect(CrmProvider.SALESFORCE)

        credentials = await credential_store.get_valid_credentials("user-1", CrmProvider.SALESFORCE)

        assert credentials.access_token == "access-1"
        assert credentials.metadata.instance_url == "https://acme.my.salesforce.com"

    async def test_not_connected(self, credential_store):
        with pytest.raises(AuthError) as exc_info:
            await credential_store.get_valid_token("user-1", CrmProvider.HUBSPOT)
        assert exc_info.value.reason == AuthError.UNAUTHENTICATED

    async def test_disconnected_integration_rejected(self, credential_store, connect):
        await connect(CrmProvider.HUBSPOT)
        await credential_store.mark_disconnected("user-1", CrmProvider.HUBSPOT)

        with pytest.raises(AuthError):
            await credential_store.get_valid_token("user-1", CrmProvider.HUBSPOT)

    async def test_expired_without_refresh_token(self, credential_store, connect, fake_providers):
        await connect(CrmProvider.HUBSPOT, refresh_token=None, expires_in=-10)

        with pytest.raises(AuthError):
            await credential_store.get_valid_token("user-1", CrmProvider.HUBSPOT)
        assert fake_providers[CrmProvider.HUBSPOT].refresh_calls == 0


class TestSingleFlightRefresh:
    async def test_concurrent_callers_share_one_refresh(self, credential_store, connect, fake_providers):
        await connect(CrmProvider.HUBSPOT, expires_in=30)
        provider = fake_providers[CrmProvider.HUBSPOT]
        provider.refresh_delay = 0.05

        tokens = await asyncio.gather(
            *(credential_store.get_valid_token("user-1", CrmProvider.HUBSPOT) for _ in range(5))
        )

        assert tokens == ["access-2"] * 5
        assert provider.refresh_calls == 1

    async def test_refresh_per_user_is_independent(self, credential_store, connect, fake_providers):
        await connect(CrmProvider.HUBSPOT, user_id="user-1", expires_in=30)
        await connect(CrmProvider.HUBSPOT, user_id="user-2", expires_in=30)
        fake_providers[CrmProvider.HUBSPOT].refresh_delay = 0.01

        await asyncio.gather(
            credential_store.get_valid_token("user-1", CrmProvider.HUBSPOT),
            credential_store.get_valid_token("user-2", CrmProvider.HUBSPOT),
        )

        assert fake_providers[CrmProvider.HUBSPOT].refresh_calls == 2

    async def test_after_refresh_next_call_uses_stored_token(self, credential_store, connect, fake_providers):
        await connect(CrmProvider.ZOHO, expires_in=30)

        await credential_store.get_valid_token("user-1", CrmProvider.ZOHO)
        await credential_store.get_valid_token("user-1", CrmProvider.ZOHO)

        assert fake_providers[CrmProvider.ZOHO].refresh_calls == 1

    async def test_refresh_lock_is_held(self, integrations, provider_factory, connect):
        lock = RecordingLock()
        credential_store = CredentialStore(integrations, provider_factory, skew_seconds=120, refresh_lock=lock)
        await connect(CrmProvider.PIPEDRIVE, expires_in=30)

        await credential_store.get_valid_token("user-1", CrmProvider.PIPEDRIVE)

        assert lock.held == [("user-1", "pipedrive")]


class TestRefreshFailures:
    async def test_rejected_refresh_disconnects(self, credential_store, connect, integrations, fake_providers):
        await connect(CrmProvider.SALESFORCE, expires_in=30)
        fake_providers[CrmProvider.SALESFORCE].failures["refresh"] = ProviderRequestError(
            "invalid_grant", provider="salesforce", status_code=400
        )

        with pytest.raises(AuthError) as exc_info:
            await credential_store.get_valid_token("user-1", CrmProvider.SALESFORCE)

        assert exc_info.value.reason == AuthError.REFRESH_FAILED
        assert exc_info.value.classification == "auth_error.refresh_failed"
        stored = await integrations.get("user-1", CrmProvider.SALESFORCE)
        assert stored.is_active is False
        assert stored.refresh_token is None

    async def test_transient_failure_keeps_integration(self, credential_store, connect, integrations, fake_providers):
        await connect(CrmProvider.HUBSPOT, expires_in=30)
        fake_providers[CrmProvider.HUBSPOT].failures["refresh"] = ProviderUnavailable(
            "hubspot request timed out", provider="hubspot"
        )

        with pytest.raises(ProviderUnavailable):
            await credential_store.get_valid_token("user-1", CrmProvider.HUBSPOT)

        stored = await integrations.get("user-1", CrmProvider.HUBSPOT)
        assert stored.is_active is True
        assert stored.refresh_token == "refresh-1"

    async def test_failed_refresh_is_retried_on_next_call(self, credential_store, connect, fake_providers):
        await connect(CrmProvider.HUBSPOT, expires_in=30)
        provider = fake_providers[CrmProvider.HUBSPOT]
        provider.failures["refresh"] = ProviderUnavailable("down", provider="hubspot")

        with pytest.raises(ProviderUnavailable):
            await credential_store.get_valid_token("user-1", CrmProvider.HUBSPOT)
        del provider.failures["refresh"]

        assert await credential_store.get_valid_token("user-1", CrmProvider.HUBSPOT) == "access-2"
        assert provider.refresh_calls == 2

    async def test_concurrent_callers_all_see_failure(self, credential_store, connect, fake_providers):
        await connect(CrmProvider.ZOHO, expires_in=30)
        provider = fake_providers[CrmProvider.ZOHO]
        provider.refresh_delay = 0.05
        provider.failures["refresh"] = AuthError("revoked", provider="zoho")

        results = await asyncio.gather(
            *(credential_store.get_valid_token("user-1", CrmProvider.ZOHO) for _ in range(3)),
            return_exceptions=True,
        )

        assert all(isinstance(r, AuthError) for r in results)
        assert provider.refresh_calls == 1
