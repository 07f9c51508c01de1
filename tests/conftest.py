"""Shared fixtures for CRM sync tests.

Provides:
- settings: Settings with webhook secrets and OAuth client config, no .env
- engine / session_factory: file-backed aiosqlite database with all CRM tables
- integrations, webhook_logs, contacts, links: real repositories on that database
- proposals: InMemoryProposalAccessor (proposal platform test double)
- fake_providers / provider_factory: scriptable FakeProvider per CRM
- credential_store, outbound, service: sync engine components wired to the above
- connect: helper that stores an active integration for a user
- signed_headers: valid webhook signature headers for a body
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine

from src.app.config import Settings
from src.app.core.database import Base
from src.app.crm import models  # noqa: F401
from src.app.crm.credentials import CredentialStore
from src.app.crm.errors import CrmError
from src.app.crm.links import DealLinkRegistry
from src.app.crm.outbound import OutboundSyncCoordinator
from src.app.crm.providers.base import CRMProvider
from src.app.crm.proposals import ProposalAccessor
from src.app.crm.repository import ContactRepository, IntegrationRepository, WebhookLogRepository
from src.app.crm.schemas import (
    Contact,
    ContactCreate,
    ContactUpdate,
    CrmCredentials,
    CrmProvider,
    Deal,
    DealCreate,
    DealStatusUpdate,
    DealUpdate,
    IntegrationRecord,
    ProposalSnapshot,
    ProposalStatus,
    ProviderMetadata,
    Stage,
    TokenSet,
    WebhookEvent,
    parse_metadata,
)
from src.app.crm.service import CrmIntegrationService
from src.app.crm.signatures import SIGNATURE_HEADERS, hmac_hex

# Account identifiers the providers put into webhooks
ACCOUNT_IDS = {
    CrmProvider.HUBSPOT: "12345",
    CrmProvider.SALESFORCE: "00D000000000001",
    CrmProvider.PIPEDRIVE: "777",
    CrmProvider.ZOHO: "acme.zohocrm.com",
}

WEBHOOK_SECRETS = {
    CrmProvider.HUBSPOT: "hubspot-client-secret",
    CrmProvider.SALESFORCE: "salesforce-webhook-secret",
    CrmProvider.PIPEDRIVE: "pipedrive-webhook-secret",
    CrmProvider.ZOHO: "zoho-webhook-secret",
}


def metadata_for(provider: CrmProvider) -> ProviderMetadata:
    """Metadata whose account_identifier matches ACCOUNT_IDS."""
    account = ACCOUNT_IDS[provider]
    match provider:
        case CrmProvider.HUBSPOT:
            data = {"portal_id": account}
        case CrmProvider.SALESFORCE:
            data = {"organization_id": account, "instance_url": "https://acme.my.salesforce.com"}
        case CrmProvider.PIPEDRIVE:
            data = {"company_id": account, "api_domain": "https://acme.pipedrive.com"}
        case CrmProvider.ZOHO:
            data = {"account_domain": account, "api_domain": "https://www.zohoapis.com"}
    return parse_metadata(provider, data)


def make_tokens(
    provider: CrmProvider,
    access_token: str = "access-1",
    refresh_token: str | None = "refresh-1",
    expires_in: int | None = 3600,
) -> TokenSet:
    return TokenSet(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=(
            datetime.now(timezone.utc) + timedelta(seconds=expires_in)
            if expires_in is not None
            else None
        ),
        metadata=metadata_for(provider),
        account_name="Acme Inc",
    )


def make_proposal(**overrides: Any) -> ProposalSnapshot:
    defaults: dict[str, Any] = {
        "id": "prop-1",
        "user_id": "user-1",
        "title": "Website Redesign",
        "status": ProposalStatus.SENT,
        "slug": "website-redesign",
        "total_amount": 12000.0,
    }
    defaults.update(overrides)
    return ProposalSnapshot(**defaults)


def signed_headers(provider: CrmProvider, body: bytes, timestamp: str = "1760000000") -> dict[str, str]:
    """Headers carrying a valid signature for ``body``."""
    secret = WEBHOOK_SECRETS[provider]
    header = SIGNATURE_HEADERS[provider]
    if provider is CrmProvider.HUBSPOT:
        return {header: f"t={timestamp};v={hmac_hex(secret, body + timestamp.encode())}"}
    return {header: hmac_hex(secret, body)}


# ── Test Doubles ─────────────────────────────────────────────────────────────


class InMemoryProposalAccessor(ProposalAccessor):
    """In-memory proposal platform."""

    def __init__(self) -> None:
        self.proposals: dict[str, ProposalSnapshot] = {}
        self.documents: dict[str, bytes] = {}
        self.status_updates: list[tuple[str, ProposalStatus]] = []
        self.document_fetches = 0

    def add(self, proposal: ProposalSnapshot) -> ProposalSnapshot:
        self.proposals[proposal.id] = proposal
        return proposal

    async def get_proposal(self, proposal_id: str) -> ProposalSnapshot | None:
        return self.proposals.get(proposal_id)

    async def update_status(self, proposal_id: str, status: ProposalStatus) -> None:
        self.status_updates.append((proposal_id, status))
        proposal = self.proposals[proposal_id]
        self.proposals[proposal_id] = proposal.model_copy(update={"status": status})

    async def fetch_document(self, url: str) -> bytes:
        self.document_fetches += 1
        return self.documents[url]


class FakeProvider(CRMProvider):
    """Scriptable CRMProvider that records every call.

    ``failures`` maps a method name to the CrmError it raises.
    """

    def __init__(self, settings: Settings, provider: CrmProvider) -> None:
        super().__init__(settings)
        self.provider = provider
        self.calls: list[tuple[Any, ...]] = []
        self.failures: dict[str, CrmError] = {}
        self.refresh_calls = 0
        self.refresh_delay = 0.0
        self.refresh_tokens = make_tokens(provider, access_token="access-2", refresh_token="refresh-2")
        self.stages: list[Stage] = []
        self.deals: dict[str, Deal] = {}
        self.contacts: dict[str, Contact] = {}

    def _maybe_fail(self, name: str) -> None:
        if name in self.failures:
            raise self.failures[name]

    def calls_to(self, name: str) -> list[tuple[Any, ...]]:
        return [c for c in self.calls if c[0] == name]

    def authorization_url(self, user_id: str) -> str:
        return f"https://crm.example/{self.provider.value}/authorize?state={user_id}"

    async def exchange_code(self, code: str) -> TokenSet:
        self.calls.append(("exchange_code", code))
        self._maybe_fail("exchange_code")
        return make_tokens(self.provider)

    async def _refresh(self, refresh_token: str, metadata: ProviderMetadata) -> TokenSet:
        self.refresh_calls += 1
        self.calls.append(("refresh", refresh_token))
        if self.refresh_delay:
            await asyncio.sleep(self.refresh_delay)
        self._maybe_fail("refresh")
        return self.refresh_tokens

    async def _revoke(self, credentials: CrmCredentials, refresh_token: str | None) -> None:
        self.calls.append(("revoke", refresh_token))
        self._maybe_fail("revoke")

    async def _fetch_stages(self, credentials: CrmCredentials) -> list[Stage]:
        self._maybe_fail("list_stages")
        return list(self.stages)

    async def list_deals(self, credentials: CrmCredentials, limit: int = 100, offset: int = 0) -> list[Deal]:
        self._maybe_fail("list_deals")
        return list(self.deals.values())[offset:offset + limit]

    async def get_deal(self, credentials: CrmCredentials, deal_id: str) -> Deal | None:
        return self.deals.get(deal_id)

    async def create_deal(self, credentials: CrmCredentials, deal: DealCreate) -> Deal:
        self.calls.append(("create_deal", deal))
        self._maybe_fail("create_deal")
        created = Deal(id=f"deal-{len(self.deals) + 1}", **deal.model_dump())
        self.deals[created.id] = created
        return created

    async def update_deal(self, credentials: CrmCredentials, deal_id: str, data: DealUpdate) -> Deal:
        self.calls.append(("update_deal", deal_id, data))
        return self.deals[deal_id]

    async def get_contacts(self, credentials: CrmCredentials, limit: int = 100, offset: int = 0) -> list[Contact]:
        return list(self.contacts.values())[offset:offset + limit]

    async def get_contact(self, credentials: CrmCredentials, contact_id: str) -> Contact | None:
        return self.contacts.get(contact_id)

    async def create_contact(self, credentials: CrmCredentials, contact: ContactCreate) -> Contact:
        created = Contact(id=f"contact-{len(self.contacts) + 1}", **contact.model_dump())
        self.contacts[created.id] = created
        return created

    async def update_contact(self, credentials: CrmCredentials, contact_id: str, data: ContactUpdate) -> Contact:
        return self.contacts[contact_id]

    async def push_status(self, credentials: CrmCredentials, deal_id: str, update: DealStatusUpdate) -> None:
        self.calls.append(("push_status", deal_id, update))
        self._maybe_fail("push_status")

    async def add_note(self, credentials: CrmCredentials, deal_id: str, text: str) -> None:
        self.calls.append(("add_note", deal_id, text))
        self._maybe_fail("add_note")

    async def attach_document(
        self, credentials: CrmCredentials, deal_id: str, filename: str, content: bytes
    ) -> None:
        self.calls.append(("attach_document", deal_id, filename, content))
        self._maybe_fail("attach_document")

    def classify_webhook(self, payload: Any) -> list[WebhookEvent]:
        raise NotImplementedError


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        DATABASE_URL="sqlite+aiosqlite:///:memory:",
        REDIS_URL="",
        JWT_SECRET_KEY="test-secret-key",
        FRONTEND_URL="https://app.example.com",
        API_BASE_URL="https://api.example.com",
        HUBSPOT_CLIENT_ID="hubspot-client",
        HUBSPOT_CLIENT_SECRET=WEBHOOK_SECRETS[CrmProvider.HUBSPOT],
        SALESFORCE_CLIENT_ID="salesforce-client",
        SALESFORCE_CLIENT_SECRET="salesforce-client-secret",
        SALESFORCE_WEBHOOK_SECRET=WEBHOOK_SECRETS[CrmProvider.SALESFORCE],
        PIPEDRIVE_CLIENT_ID="pipedrive-client",
        PIPEDRIVE_CLIENT_SECRET="pipedrive-client-secret",
        PIPEDRIVE_WEBHOOK_SECRET=WEBHOOK_SECRETS[CrmProvider.PIPEDRIVE],
        ZOHO_CLIENT_ID="zoho-client",
        ZOHO_CLIENT_SECRET="zoho-client-secret",
        ZOHO_WEBHOOK_SECRET=WEBHOOK_SECRETS[CrmProvider.ZOHO],
    )


@pytest_asyncio.fixture
async def engine(tmp_path):
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'crm_sync.db'}", echo=False)
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    async def factory() -> AsyncGenerator[AsyncSession, None]:
        async with AsyncSession(engine, expire_on_commit=False) as session:
            yield session

    return factory


@pytest.fixture
def integrations(session_factory) -> IntegrationRepository:
    return IntegrationRepository(session_factory=session_factory)


@pytest.fixture
def webhook_logs(session_factory) -> WebhookLogRepository:
    return WebhookLogRepository(session_factory=session_factory)


@pytest.fixture
def contacts(session_factory) -> ContactRepository:
    return ContactRepository(session_factory=session_factory)


@pytest.fixture
def links(session_factory) -> DealLinkRegistry:
    return DealLinkRegistry(session_factory=session_factory)


@pytest.fixture
def proposals() -> InMemoryProposalAccessor:
    return InMemoryProposalAccessor()


@pytest.fixture
def fake_providers(settings) -> dict[CrmProvider, FakeProvider]:
    return {p: FakeProvider(settings, p) for p in CrmProvider}


@pytest.fixture
def provider_factory(fake_providers) -> Callable[[CrmProvider], CRMProvider]:
    return lambda provider: fake_providers[provider]


@pytest.fixture
def connect(integrations) -> Callable[..., Awaitable[IntegrationRecord]]:
    """Store an active integration: ``await connect(provider, user_id=..., expires_in=...)``."""

    async def _connect(
        provider: CrmProvider,
        user_id: str = "user-1",
        access_token: str = "access-1",
        refresh_token: str | None = "refresh-1",
        expires_in: int | None = 3600,
    ) -> IntegrationRecord:
        tokens = make_tokens(provider, access_token, refresh_token, expires_in)
        return await integrations.store_tokens(user_id, provider, tokens)

    return _connect


@pytest.fixture
def credential_store(integrations, provider_factory) -> CredentialStore:
    return CredentialStore(integrations=integrations, provider_factory=provider_factory, skew_seconds=120)


@pytest.fixture
def outbound(links, integrations, credential_store, proposals, provider_factory) -> OutboundSyncCoordinator:
    return OutboundSyncCoordinator(
        links=links,
        integrations=integrations,
        credentials=credential_store,
        proposals=proposals,
        provider_factory=provider_factory,
    )


@pytest.fixture
def service(
    settings, credential_store, integrations, links, contacts, webhook_logs, proposals, outbound, provider_factory
) -> CrmIntegrationService:
    return CrmIntegrationService(
        settings=settings,
        credentials=credential_store,
        integrations=integrations,
        links=links,
        contacts=contacts,
        webhook_logs=webhook_logs,
        proposals=proposals,
        outbound=outbound,
        provider_factory=provider_factory,
    )
