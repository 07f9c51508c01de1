"""Tests for the CRM webhook receiver endpoint.

The receiver always acknowledges with 200 {"received": true}; what
happened to the delivery is only visible through side effects.
"""

from __future__ import annotations

import json

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from conftest import make_proposal, signed_headers
from src.app.crm.inbound import InboundWebhookProcessor
from src.app.crm.providers import get_provider
from src.app.crm.schemas import CrmProvider, ProposalStatus, StageMappingData

WEBHOOK_URL = "/api/v1/webhooks/crm/pipedrive"

STAGE_CHANGE = json.dumps({
    "event": "updated.deal",
    "meta": {"action": "updated", "object": "deal", "id": 9, "company_id": 777},
    "current": {"id": 9, "stage_id": 5},
}).encode()


def _make_app(processor=None) -> FastAPI:
    from src.app.api.v1.webhooks import router

    app = FastAPI()
    app.include_router(router, prefix="/api/v1")
    if processor is not None:
        app.state.webhook_processor = processor
    return app


@pytest.fixture
def processor(settings, integrations, links, contacts, webhook_logs, proposals) -> InboundWebhookProcessor:
    return InboundWebhookProcessor(
        settings=settings,
        integrations=integrations,
        links=links,
        contacts=contacts,
        webhook_logs=webhook_logs,
        proposals=proposals,
        provider_factory=lambda provider: get_provider(provider, settings),
    )


@pytest_asyncio.fixture
async def client(processor):
    transport = ASGITransport(app=_make_app(processor))
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
async def linked_pipedrive_deal(connect, integrations, links, proposals):
    await connect(CrmProvider.PIPEDRIVE)
    await integrations.replace_stage_mappings(
        "user-1",
        CrmProvider.PIPEDRIVE,
        [StageMappingData(internal_status=ProposalStatus.APPROVED, crm_stage_id="5")],
    )
    await links.link("prop-1", CrmProvider.PIPEDRIVE, "9", "user-1")
    proposals.add(make_proposal())


@pytest.mark.usefixtures("linked_pipedrive_deal")
class TestWebhookReceiver:
    async def test_signed_delivery_updates_proposal(self, client, proposals):
        resp = await client.post(
            WEBHOOK_URL,
            content=STAGE_CHANGE,
            headers={"Content-Type": "application/json", **signed_headers(CrmProvider.PIPEDRIVE, STAGE_CHANGE)},
        )

        assert resp.status_code == 200
        assert resp.json() == {"received": True}
        assert proposals.status_updates == [("prop-1", ProposalStatus.APPROVED)]

    async def test_invalid_signature_acknowledged_without_effect(self, client, proposals):
        resp = await client.post(
            WEBHOOK_URL,
            content=STAGE_CHANGE,
            headers={"x-pipedrive-signature": "0" * 64},
        )

        assert resp.status_code == 200
        assert resp.json() == {"received": True}
        assert proposals.status_updates == []

    async def test_malformed_body_acknowledged(self, client, proposals):
        body = b"not json"
        resp = await client.post(WEBHOOK_URL, content=body, headers=signed_headers(CrmProvider.PIPEDRIVE, body))

        assert resp.status_code == 200
        assert proposals.status_updates == []


class TestReceiverResilience:
    async def test_processor_not_initialized(self):
        transport = ASGITransport(app=_make_app())
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            resp = await ac.post(WEBHOOK_URL, content=STAGE_CHANGE)

        assert resp.status_code == 200
        assert resp.json() == {"received": True}

    async def test_processor_crash_still_acknowledged(self):
        class CrashingProcessor:
            async def process(self, provider, raw_body, headers):
                raise RuntimeError("database gone")

        transport = ASGITransport(app=_make_app(CrashingProcessor()))
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            resp = await ac.post(WEBHOOK_URL, content=STAGE_CHANGE)

        assert resp.status_code == 200
        assert resp.json() == {"received": True}

    async def test_unknown_provider_rejected(self, processor):
        transport = ASGITransport(app=_make_app(processor))
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            resp = await ac.post("/api/v1/webhooks/crm/freshsales", content=b"{}")

        assert resp.status_code == 422
