"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, Sentry,
lifespan events for database initialization and CRM sync engine wiring,
and the v1 API router.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.app.config import Settings, get_settings
from src.app.core.database import close_db, get_session, init_db
from src.app.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.app.core.redis import RefreshLock, close_redis, get_redis_pool
from src.app.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.app.api.v1 import health
from src.app.api.v1.router import router as v1_router
from src.app.crm.credentials import CredentialStore
from src.app.crm.inbound import InboundWebhookProcessor
from src.app.crm.links import DealLinkRegistry
from src.app.crm.outbound import OutboundSyncCoordinator
from src.app.crm.proposals import HttpProposalAccessor
from src.app.crm.providers import get_provider
from src.app.crm.repository import ContactRepository, IntegrationRepository, WebhookLogRepository
from src.app.crm.schemas import CrmProvider
from src.app.crm.service import CrmIntegrationService


def build_crm_engine(app: FastAPI, settings: Settings) -> None:
    """Construct the CRM sync components and place them on app.state."""

    def provider_factory(provider: CrmProvider):
        return get_provider(provider, settings)

    integrations = IntegrationRepository(session_factory=get_session)
    webhook_logs = WebhookLogRepository(session_factory=get_session)
    contacts = ContactRepository(session_factory=get_session)
    links = DealLinkRegistry(session_factory=get_session)

    redis_client = get_redis_pool()
    refresh_lock = (
        RefreshLock(redis_client, timeout_seconds=settings.CRM_REFRESH_LOCK_TIMEOUT_SECONDS)
        if redis_client is not None
        else None
    )
    credentials = CredentialStore(
        integrations=integrations,
        provider_factory=provider_factory,
        skew_seconds=settings.CRM_TOKEN_REFRESH_SKEW_SECONDS,
        refresh_lock=refresh_lock,
    )
    proposals = HttpProposalAccessor(
        base_url=settings.PROPOSAL_SERVICE_URL,
        token=settings.PROPOSAL_SERVICE_TOKEN,
        timeout=settings.CRM_HTTP_TIMEOUT_SECONDS,
    )
    outbound = OutboundSyncCoordinator(
        links=links,
        integrations=integrations,
        credentials=credentials,
        proposals=proposals,
        provider_factory=provider_factory,
    )

    app.state.credential_store = credentials
    app.state.deal_links = links
    app.state.outbound_sync = outbound
    app.state.webhook_processor = InboundWebhookProcessor(
        settings=settings,
        integrations=integrations,
        links=links,
        contacts=contacts,
        webhook_logs=webhook_logs,
        proposals=proposals,
        provider_factory=provider_factory,
    )
    app.state.crm_service = CrmIntegrationService(
        settings=settings,
        credentials=credentials,
        integrations=integrations,
        links=links,
        contacts=contacts,
        webhook_logs=webhook_logs,
        proposals=proposals,
        outbound=outbound,
        provider_factory=provider_factory,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB, Sentry and the sync engine on startup, close on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    await init_db()

    # Initialize Sentry if DSN is configured
    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    build_crm_engine(app, settings)
    log.info(
        "crm.sync_engine_initialized",
        refresh_lock=get_redis_pool() is not None,
        providers=[p.value for p in CrmProvider],
    )

    yield

    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="CRM Sync API",
        version="0.1.0",
        description="Keeps proposals and CRM deals in sync across HubSpot, Salesforce, Pipedrive and Zoho",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    # CORS middleware
    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    # Health probes at the root; CRM and webhook routes under /api/v1
    app.include_router(health.router)
    app.include_router(v1_router, prefix="/api/v1")

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
