"""Tests for CrmIntegrationService and the HTTP proposal accessor."""

from __future__ import annotations

import json

import httpx
import pytest

from conftest import make_proposal
from src.app.crm.errors import AuthError, ProposalServiceError, ProviderRequestError, ProviderUnavailable, ValidationError
from src.app.crm.proposals import HttpProposalAccessor
from src.app.crm.schemas import (
    Contact,
    CrmProvider,
    ProposalStatus,
    Stage,
    StageMappingData,
    SyncConfig,
    SyncDirection,
)
from src.app.crm.service import PROPOSAL_ID_FIELD, PROPOSAL_URL_FIELD

SETTINGS_PAGE = "https://app.example.com/settings/integrations"


class TestConnect:
    def test_authorization_url_uses_adapter(self, service):
        url = service.authorization_url("user-1", CrmProvider.ZOHO)
        assert url == "https://crm.example/zoho/authorize?state=user-1"

    async def test_callback_stores_integration(self, service, integrations, fake_providers):
        redirect = await service.handle_callback(CrmProvider.HUBSPOT, "code-1", "user-1")

        assert redirect == f"{SETTINGS_PAGE}?connected=hubspot"
        assert fake_providers[CrmProvider.HUBSPOT].calls_to("exchange_code") == [("exchange_code", "code-1")]
        stored = await integrations.get("user-1", CrmProvider.HUBSPOT)
        assert stored.is_active is True
        assert stored.access_token == "access-1"
        assert stored.account_name == "Acme Inc"

    @pytest.mark.parametrize("code, state", [(None, "user-1"), ("code-1", None), ("", "")])
    async def test_incomplete_callback_redirects_with_error(self, code, state, service, fake_providers):
        redirect = await service.handle_callback(CrmProvider.PIPEDRIVE, code, state)

        assert redirect == f"{SETTINGS_PAGE}?error=pipedrive"
        assert fake_providers[CrmProvider.PIPEDRIVE].calls == []

    async def test_failed_exchange_redirects_with_error(self, service, integrations, fake_providers):
        fake_providers[CrmProvider.SALESFORCE].failures["exchange_code"] = ProviderRequestError(
            "invalid_grant", provider="salesforce", status_code=400
        )

        redirect = await service.handle_callback(CrmProvider.SALESFORCE, "bad", "user-1")

        assert redirect == f"{SETTINGS_PAGE}?error=salesforce"
        assert await integrations.get("user-1", CrmProvider.SALESFORCE) is None

    def test_redirect_query_values_are_encoded(self, service):
        redirect = httpx.URL(service._redirect(error="token expired & revoked", next="/a?b=c"))

        assert str(redirect).startswith(f"{SETTINGS_PAGE}?")
        assert dict(redirect.params) == {"error": "token expired & revoked", "next": "/a?b=c"}

    async def test_list_integrations_includes_disconnected(self, service, connect, integrations):
        await connect(CrmProvider.HUBSPOT)
        await connect(CrmProvider.ZOHO)
        await integrations.mark_disconnected("user-1", CrmProvider.ZOHO)

        records = await service.list_integrations("user-1")

        assert {(r.provider, r.is_active) for r in records} == {
            (CrmProvider.HUBSPOT, True),
            (CrmProvider.ZOHO, False),
        }


class TestDisconnect:
    async def test_revokes_and_keeps_links(self, service, connect, links, integrations, fake_providers):
        await connect(CrmProvider.HUBSPOT)
        await links.link("prop-1", CrmProvider.HUBSPOT, "d-1", "user-1")

        await service.disconnect("user-1", CrmProvider.HUBSPOT)

        assert fake_providers[CrmProvider.HUBSPOT].calls_to("revoke") == [("revoke", "refresh-1")]
        stored = await integrations.get("user-1", CrmProvider.HUBSPOT)
        assert stored.is_active is False
        assert len(await links.find_by_proposal("prop-1")) == 1

    async def test_remove_links(self, service, connect, links):
        await connect(CrmProvider.HUBSPOT)
        await links.link("prop-1", CrmProvider.HUBSPOT, "d-1", "user-1")

        await service.disconnect("user-1", CrmProvider.HUBSPOT, remove_links=True)

        assert await links.find_by_proposal("prop-1") == []

    async def test_revocation_failure_still_disconnects(self, service, connect, integrations, fake_providers):
        await connect(CrmProvider.PIPEDRIVE)
        fake_providers[CrmProvider.PIPEDRIVE].failures["revoke"] = ProviderUnavailable(
            "pipedrive request timed out", provider="pipedrive"
        )

        await service.disconnect("user-1", CrmProvider.PIPEDRIVE)

        assert (await integrations.get("user-1", CrmProvider.PIPEDRIVE)).is_active is False

    async def test_unknown_integration(self, service):
        with pytest.raises(ValidationError):
            await service.disconnect("user-1", CrmProvider.HUBSPOT)


class TestConfiguration:
    async def test_configure_sync(self, service, connect):
        await connect(CrmProvider.ZOHO)

        updated = await service.configure_sync(
            "user-1", CrmProvider.ZOHO, SyncConfig(direction=SyncDirection.OUTBOUND, sync_triggers=["signed"])
        )

        assert updated.sync_config.direction == SyncDirection.OUTBOUND
        assert updated.sync_config.sync_triggers == ["signed"]

    async def test_configure_stage_mappings(self, service, connect):
        await connect(CrmProvider.HUBSPOT)

        updated = await service.configure_stage_mappings("user-1", CrmProvider.HUBSPOT, [
            StageMappingData(internal_status=ProposalStatus.SENT, crm_stage_id="appointmentscheduled"),
            StageMappingData(internal_status=ProposalStatus.SIGNED, crm_stage_id="closedwon"),
        ])

        assert [m.internal_status for m in updated.stage_mappings] == [ProposalStatus.SENT, ProposalStatus.SIGNED]

    async def test_configuration_requires_integration(self, service):
        with pytest.raises(ValidationError):
            await service.configure_sync("user-1", CrmProvider.HUBSPOT, SyncConfig())
        with pytest.raises(ValidationError):
            await service.configure_stage_mappings("user-1", CrmProvider.HUBSPOT, [])

    async def test_list_stages(self, service, connect, fake_providers):
        await connect(CrmProvider.HUBSPOT)
        fake_providers[CrmProvider.HUBSPOT].stages = [Stage(id="closedwon", name="Sales - Closed Won")]

        assert await service.list_stages("user-1", CrmProvider.HUBSPOT) == [
            Stage(id="closedwon", name="Sales - Closed Won")
        ]

    async def test_list_stages_provider_error_is_empty(self, service, connect, fake_providers):
        await connect(CrmProvider.HUBSPOT)
        fake_providers[CrmProvider.HUBSPOT].failures["list_stages"] = ProviderUnavailable("down", provider="hubspot")

        assert await service.list_stages("user-1", CrmProvider.HUBSPOT) == []

    async def test_list_stages_requires_connection(self, service):
        with pytest.raises(AuthError):
            await service.list_stages("user-1", CrmProvider.HUBSPOT)


class TestContacts:
    async def test_import_contact(self, service, connect, contacts, fake_providers):
        await connect(CrmProvider.SALESFORCE)
        fake_providers[CrmProvider.SALESFORCE].contacts["003A"] = Contact(
            id="003A", email="ada@example.com", first_name="Ada", last_name="Lovelace", company="Analytical"
        )

        imported = await service.import_contact("user-1", CrmProvider.SALESFORCE, "003A")

        assert imported.external_id == "003A"
        assert imported.company == "Analytical"
        stored = await contacts.get("user-1", CrmProvider.SALESFORCE, "003A")
        assert stored.email == "ada@example.com"

    async def test_import_missing_contact(self, service, connect):
        await connect(CrmProvider.SALESFORCE)
        with pytest.raises(ValidationError):
            await service.import_contact("user-1", CrmProvider.SALESFORCE, "003Z")

    async def test_list_contacts_paginates(self, service, connect, fake_providers):
        await connect(CrmProvider.ZOHO)
        fake = fake_providers[CrmProvider.ZOHO]
        for i in range(3):
            fake.contacts[f"c-{i}"] = Contact(id=f"c-{i}")

        page = await service.list_contacts("user-1", CrmProvider.ZOHO, limit=2, offset=1)

        assert [c.id for c in page] == ["c-1", "c-2"]


class TestDeals:
    async def test_create_deal_from_proposal_links_it(self, service, connect, proposals, links, fake_providers):
        await connect(CrmProvider.HUBSPOT)
        proposals.add(make_proposal())

        deal = await service.create_deal_from_proposal("user-1", CrmProvider.HUBSPOT, "prop-1")

        _, created = fake_providers[CrmProvider.HUBSPOT].calls_to("create_deal")[0]
        assert created.name == "Website Redesign"
        assert created.amount == 12000.0
        assert created.custom_fields == {
            PROPOSAL_ID_FIELD: "prop-1",
            PROPOSAL_URL_FIELD: "https://app.example.com/p/website-redesign",
        }
        (link,) = await links.find_by_proposal("prop-1")
        assert link.external_deal_id == deal.id == "deal-1"

    async def test_create_deal_for_foreign_proposal(self, service, connect, proposals, fake_providers):
        await connect(CrmProvider.HUBSPOT)
        proposals.add(make_proposal(user_id="user-2"))

        with pytest.raises(ValidationError):
            await service.create_deal_from_proposal("user-1", CrmProvider.HUBSPOT, "prop-1")
        assert fake_providers[CrmProvider.HUBSPOT].calls_to("create_deal") == []

    async def test_create_deal_requires_connection(self, service, proposals):
        proposals.add(make_proposal())
        with pytest.raises(AuthError):
            await service.create_deal_from_proposal("user-1", CrmProvider.PIPEDRIVE, "prop-1")

    async def test_link_existing_deal(self, service, connect, proposals):
        await connect(CrmProvider.PIPEDRIVE)
        proposals.add(make_proposal())

        link = await service.link_proposal_to_deal("user-1", CrmProvider.PIPEDRIVE, "42", "prop-1")

        assert link.proposal_id == "prop-1"
        assert link.external_deal_id == "42"
        assert link.provider == CrmProvider.PIPEDRIVE

    async def test_link_requires_integration(self, service, proposals):
        proposals.add(make_proposal())
        with pytest.raises(ValidationError):
            await service.link_proposal_to_deal("user-1", CrmProvider.PIPEDRIVE, "42", "prop-1")

    async def test_manual_sync(self, service, connect, proposals, links, fake_providers):
        await connect(CrmProvider.HUBSPOT)
        proposals.add(make_proposal(status=ProposalStatus.SIGNED))
        await links.link("prop-1", CrmProvider.HUBSPOT, "d-1", "user-1")

        results = await service.sync_proposal_status("user-1", "prop-1")

        assert len(results) == 1
        assert results[0].success is True
        assert fake_providers[CrmProvider.HUBSPOT].calls_to("push_status")[0][2].stage == "closedwon"

    async def test_manual_sync_of_unknown_proposal(self, service):
        with pytest.raises(ValidationError):
            await service.sync_proposal_status("user-1", "missing")


class TestWebhookLog:
    async def test_scoped_to_users_integration(self, service, connect, webhook_logs):
        integration = await connect(CrmProvider.HUBSPOT)
        await webhook_logs.append(CrmProvider.HUBSPOT, "deal.creation", {"objectId": 1}, False, integration.id)
        await webhook_logs.append(CrmProvider.HUBSPOT, "deal.creation", {"objectId": 2}, False, None)

        entries = await service.list_webhook_log("user-1", CrmProvider.HUBSPOT)

        assert [e.payload for e in entries] == [{"objectId": 1}]

    async def test_requires_integration(self, service):
        with pytest.raises(ValidationError):
            await service.list_webhook_log("user-1", CrmProvider.HUBSPOT)


# ── HTTP Proposal Accessor ──────────────────────────────────────────────────


class TestHttpProposalAccessor:
    @staticmethod
    def _accessor(handler) -> HttpProposalAccessor:
        return HttpProposalAccessor(
            base_url="https://proposals.example.com/api/",
            token="svc-token",
            transport=httpx.MockTransport(handler),
        )

    async def test_get_proposal(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/api/proposals/prop-1"
            assert request.headers["authorization"] == "Bearer svc-token"
            return httpx.Response(200, json=make_proposal().model_dump(mode="json"))

        proposal = await self._accessor(handler).get_proposal("prop-1")

        assert proposal == make_proposal()

    async def test_missing_proposal(self):
        accessor = self._accessor(lambda request: httpx.Response(404))
        assert await accessor.get_proposal("nope") is None

    async def test_server_error(self):
        accessor = self._accessor(lambda request: httpx.Response(500))
        with pytest.raises(ProposalServiceError):
            await accessor.get_proposal("prop-1")

    async def test_update_status(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"ok": True})

        await self._accessor(handler).update_status("prop-1", ProposalStatus.APPROVED)

        (request,) = seen
        assert request.method == "PATCH"
        assert request.url.path == "/api/proposals/prop-1/status"
        assert json.loads(request.content) == {"status": "approved", "source": "crm_sync"}

    async def test_update_status_rejected(self):
        accessor = self._accessor(lambda request: httpx.Response(409))
        with pytest.raises(ProposalServiceError):
            await accessor.update_status("prop-1", ProposalStatus.SIGNED)

    async def test_fetch_document(self):
        accessor = self._accessor(lambda request: httpx.Response(200, content=b"%PDF-1.7"))
        assert await accessor.fetch_document("https://files.example.com/p.pdf") == b"%PDF-1.7"
