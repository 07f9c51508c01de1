"""Unit tests for observability: request middleware, CRM metrics and Sentry.

Tests cover:
- LoggingMiddleware request id propagation
- MetricsMiddleware request counting and /metrics exposition
- CRM counters incremented by the sync engine
- init_sentry header scrubbing
"""

from __future__ import annotations

from unittest.mock import patch

from fastapi import FastAPI
from fastapi.requests import Request
from fastapi.responses import Response
from httpx import ASGITransport, AsyncClient

from conftest import make_proposal
from src.app.api.middleware.logging import LoggingMiddleware
from src.app.api.v1 import health
from src.app.core.monitoring import (
    MetricsMiddleware,
    crm_sync_actions_total,
    crm_webhooks_total,
    get_metrics_response,
    http_requests_total,
    init_sentry,
)
from src.app.crm.inbound import InboundWebhookProcessor
from src.app.crm.schemas import CrmProvider, ProposalStatus


def _make_app() -> FastAPI:
    app = FastAPI()
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(MetricsMiddleware)
    app.include_router(health.router)

    @app.get("/metrics")
    async def metrics(request: Request) -> Response:
        return get_metrics_response()

    return app


async def _get(path: str, headers: dict[str, str] | None = None):
    transport = ASGITransport(app=_make_app())
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        return await ac.get(path, headers=headers)


class TestRequestMiddleware:
    async def test_request_id_echoed(self):
        resp = await _get("/health", headers={"X-Request-ID": "req-123"})
        assert resp.headers["X-Request-ID"] == "req-123"

    async def test_request_id_generated(self):
        resp = await _get("/health")
        assert len(resp.headers["X-Request-ID"]) == 36

    async def test_request_counted(self):
        labels = {"method": "GET", "endpoint": "/health", "status_code": "200"}
        before = http_requests_total.labels(**labels)._value.get()

        await _get("/health")

        assert http_requests_total.labels(**labels)._value.get() == before + 1

    async def test_metrics_exposition(self):
        resp = await _get("/metrics")

        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/plain")
        assert "crm_webhooks_total" in resp.text


class TestCrmMetrics:
    async def test_rejected_webhook_counted(
        self, settings, integrations, links, contacts, webhook_logs, proposals, provider_factory
    ):
        processor = InboundWebhookProcessor(
            settings=settings,
            integrations=integrations,
            links=links,
            contacts=contacts,
            webhook_logs=webhook_logs,
            proposals=proposals,
            provider_factory=provider_factory,
        )
        counter = crm_webhooks_total.labels(provider="zoho", outcome="signature_invalid")
        before = counter._value.get()

        await processor.process(CrmProvider.ZOHO, b"{}", {})

        assert counter._value.get() == before + 1

    async def test_outbound_actions_counted(self, outbound, connect, links, proposals):
        await connect(CrmProvider.SALESFORCE)
        await links.link("prop-1", CrmProvider.SALESFORCE, "006A1", "user-1")
        proposals.add(make_proposal(status=ProposalStatus.SIGNED))
        counter = crm_sync_actions_total.labels(provider="salesforce", action="update_stage", outcome="success")
        before = counter._value.get()

        await outbound.sync_proposal_to_all_linked_deals("prop-1")

        assert counter._value.get() == before + 1


class TestSentry:
    def test_authorization_header_scrubbed(self):
        with patch("src.app.core.monitoring.sentry_sdk.init") as mock_init:
            init_sentry(dsn="https://key@sentry.example.com/1", environment="production")

        kwargs = mock_init.call_args.kwargs
        assert kwargs["send_default_pii"] is False
        assert kwargs["traces_sample_rate"] == 0.1

        event = {"request": {"headers": {"Authorization": "Bearer secret", "Accept": "*/*"}}}
        scrubbed = kwargs["before_send"](event, {})
        assert scrubbed["request"]["headers"] == {"Authorization": "[Filtered]", "Accept": "*/*"}
