"""REST API endpoints for CRM integration management.

Connect/disconnect, sync configuration, stage mappings, CRM browsing
(stages, contacts, deals), deal creation/linking from proposals and a
manual status sync. All endpoints require a Bearer JWT except the OAuth
callback, which the CRM redirects the browser to and which identifies the
user through the ``state`` parameter.

Errors from the sync engine map onto HTTP as:
AuthError -> 401 (reconnect required), ValidationError -> 404,
ProviderRequestError -> 400, ProviderUnavailable and others -> 502.
"""

from __future__ import annotations

from datetime import datetime
from typing import NoReturn

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, Field

from src.app.api.deps import AuthenticatedUser, get_current_user
from src.app.crm.errors import AuthError, CrmError, ProviderRequestError, ValidationError
from src.app.crm.schemas import (
    Contact,
    CrmContactRead,
    CrmProvider,
    Deal,
    DealLinkRead,
    IntegrationRecord,
    Stage,
    StageMappingData,
    SyncConfig,
    SyncResult,
    WebhookLogRead,
)
from src.app.crm.service import CrmIntegrationService

router = APIRouter(prefix="/crm", tags=["crm"])


# ── Response Schemas ─────────────────────────────────────────────────────────


class IntegrationResponse(BaseModel):
    """An integration without its token fields."""

    id: str
    provider: CrmProvider
    is_active: bool
    needs_reconnect: bool
    account_name: str | None = None
    last_synced_at: datetime | None = None
    sync_config: SyncConfig
    stage_mappings: list[StageMappingData] = Field(default_factory=list)
    created_at: datetime | None = None


class AuthorizationUrlResponse(BaseModel):
    authorization_url: str


class DisconnectResponse(BaseModel):
    provider: CrmProvider
    disconnected: bool = True


class SyncStatusResponse(BaseModel):
    """Per-link outcome of a manual status sync."""

    proposal_id: str
    success: bool
    synced: int
    results: list[SyncResult] = Field(default_factory=list)


# ── Request Schemas ──────────────────────────────────────────────────────────


class StageMappingsRequest(BaseModel):
    """Request body replacing an integration's stage mappings."""

    mappings: list[StageMappingData]


# ── Helpers ──────────────────────────────────────────────────────────────────


def _get_crm_service(request: Request) -> CrmIntegrationService:
    """Retrieve CrmIntegrationService from app.state, 503 if not available."""
    service = getattr(request.app.state, "crm_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="CRM integration service not initialized",
        )
    return service


def _raise_http(exc: CrmError) -> NoReturn:
    """Translate a sync engine error into an HTTPException."""
    if isinstance(exc, AuthError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"{exc.message}. Reconnect the integration.",
        ) from exc
    if isinstance(exc, ValidationError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=exc.message) from exc
    if isinstance(exc, ProviderRequestError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message) from exc
    raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=exc.message) from exc


def _integration_to_response(record: IntegrationRecord) -> IntegrationResponse:
    return IntegrationResponse(
        id=record.id,
        provider=record.provider,
        is_active=record.is_active,
        needs_reconnect=not record.is_active,
        account_name=record.account_name,
        last_synced_at=record.last_synced_at,
        sync_config=record.sync_config,
        stage_mappings=record.stage_mappings,
        created_at=record.created_at,
    )


# ── Connection Endpoints ─────────────────────────────────────────────────────


@router.get("/integrations", response_model=list[IntegrationResponse])
async def list_integrations(
    request: Request,
    user: AuthenticatedUser = Depends(get_current_user),
) -> list[IntegrationResponse]:
    """List the user's integrations; disconnected ones show needs_reconnect."""
    service = _get_crm_service(request)
    records = await service.list_integrations(user.id)
    return [_integration_to_response(r) for r in records]


@router.get("/connect/{provider}", response_model=AuthorizationUrlResponse)
async def connect(
    provider: CrmProvider,
    request: Request,
    user: AuthenticatedUser = Depends(get_current_user),
) -> AuthorizationUrlResponse:
    """Get the provider consent URL to start the OAuth flow."""
    service = _get_crm_service(request)
    return AuthorizationUrlResponse(authorization_url=service.authorization_url(user.id, provider))


@router.get("/callback/{provider}")
async def oauth_callback(
    provider: CrmProvider,
    request: Request,
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
) -> RedirectResponse:
    """OAuth redirect target; always answers with a redirect to the frontend."""
    service = _get_crm_service(request)
    url = await service.handle_callback(provider, code, state)
    return RedirectResponse(url=url, status_code=status.HTTP_302_FOUND)


@router.delete("/disconnect/{provider}", response_model=DisconnectResponse)
async def disconnect(
    provider: CrmProvider,
    request: Request,
    remove_links: bool = Query(default=False),
    user: AuthenticatedUser = Depends(get_current_user),
) -> DisconnectResponse:
    """Revoke and deactivate an integration. Deal links are kept unless remove_links."""
    service = _get_crm_service(request)
    try:
        await service.disconnect(user.id, provider, remove_links=remove_links)
    except CrmError as exc:
        _raise_http(exc)
    return DisconnectResponse(provider=provider)


# ── Configuration Endpoints ──────────────────────────────────────────────────


@router.put("/{provider}/sync-config", response_model=IntegrationResponse)
async def configure_sync(
    provider: CrmProvider,
    body: SyncConfig,
    request: Request,
    user: AuthenticatedUser = Depends(get_current_user),
) -> IntegrationResponse:
    service = _get_crm_service(request)
    try:
        record = await service.configure_sync(user.id, provider, body)
    except CrmError as exc:
        _raise_http(exc)
    return _integration_to_response(record)


@router.put("/{provider}/stage-mappings", response_model=IntegrationResponse)
async def configure_stage_mappings(
    provider: CrmProvider,
    body: StageMappingsRequest,
    request: Request,
    user: AuthenticatedUser = Depends(get_current_user),
) -> IntegrationResponse:
    """Replace the stage mapping list; a repeated status keeps the last entry."""
    service = _get_crm_service(request)
    try:
        record = await service.configure_stage_mappings(user.id, provider, body.mappings)
    except CrmError as exc:
        _raise_http(exc)
    return _integration_to_response(record)


@router.get("/{provider}/stages", response_model=list[Stage])
async def list_stages(
    provider: CrmProvider,
    request: Request,
    user: AuthenticatedUser = Depends(get_current_user),
) -> list[Stage]:
    service = _get_crm_service(request)
    try:
        return await service.list_stages(user.id, provider)
    except CrmError as exc:
        _raise_http(exc)


# ── Contact Endpoints ────────────────────────────────────────────────────────


@router.get("/{provider}/contacts", response_model=list[Contact])
async def list_contacts(
    provider: CrmProvider,
    request: Request,
    limit: int = Query(default=100, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    user: AuthenticatedUser = Depends(get_current_user),
) -> list[Contact]:
    service = _get_crm_service(request)
    try:
        return await service.list_contacts(user.id, provider, limit, offset)
    except CrmError as exc:
        _raise_http(exc)


@router.post("/{provider}/contacts/{contact_id}/import", response_model=CrmContactRead)
async def import_contact(
    provider: CrmProvider,
    contact_id: str,
    request: Request,
    user: AuthenticatedUser = Depends(get_current_user),
) -> CrmContactRead:
    service = _get_crm_service(request)
    try:
        return await service.import_contact(user.id, provider, contact_id)
    except CrmError as exc:
        _raise_http(exc)


# ── Deal Endpoints ───────────────────────────────────────────────────────────


@router.get("/{provider}/deals", response_model=list[Deal])
async def list_deals(
    provider: CrmProvider,
    request: Request,
    limit: int = Query(default=100, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    user: AuthenticatedUser = Depends(get_current_user),
) -> list[Deal]:
    service = _get_crm_service(request)
    try:
        return await service.list_deals(user.id, provider, limit, offset)
    except CrmError as exc:
        _raise_http(exc)


@router.post(
    "/{provider}/deals/from-proposal/{proposal_id}",
    response_model=Deal,
    status_code=status.HTTP_201_CREATED,
)
async def create_deal_from_proposal(
    provider: CrmProvider,
    proposal_id: str,
    request: Request,
    user: AuthenticatedUser = Depends(get_current_user),
) -> Deal:
    """Create a CRM deal from a proposal and link them."""
    service = _get_crm_service(request)
    try:
        return await service.create_deal_from_proposal(user.id, provider, proposal_id)
    except CrmError as exc:
        _raise_http(exc)


@router.post("/{provider}/deals/{deal_id}/link/{proposal_id}", response_model=DealLinkRead)
async def link_proposal_to_deal(
    provider: CrmProvider,
    deal_id: str,
    proposal_id: str,
    request: Request,
    user: AuthenticatedUser = Depends(get_current_user),
) -> DealLinkRead:
    service = _get_crm_service(request)
    try:
        return await service.link_proposal_to_deal(user.id, provider, deal_id, proposal_id)
    except CrmError as exc:
        _raise_http(exc)


@router.post("/proposals/{proposal_id}/sync-status", response_model=SyncStatusResponse)
async def sync_proposal_status(
    proposal_id: str,
    request: Request,
    user: AuthenticatedUser = Depends(get_current_user),
) -> SyncStatusResponse:
    """Push the proposal's current status to every linked deal now."""
    service = _get_crm_service(request)
    try:
        results = await service.sync_proposal_status(user.id, proposal_id)
    except CrmError as exc:
        _raise_http(exc)
    return SyncStatusResponse(
        proposal_id=proposal_id,
        success=bool(results) and all(r.success for r in results),
        synced=sum(1 for r in results if r.success),
        results=results,
    )


# ── Diagnostics ──────────────────────────────────────────────────────────────


@router.get("/{provider}/webhook-log", response_model=list[WebhookLogRead])
async def webhook_log(
    provider: CrmProvider,
    request: Request,
    limit: int = Query(default=50, ge=1, le=500),
    user: AuthenticatedUser = Depends(get_current_user),
) -> list[WebhookLogRead]:
    """Recent webhook deliveries routed to this integration."""
    service = _get_crm_service(request)
    try:
        return await service.list_webhook_log(user.id, provider, limit)
    except CrmError as exc:
        _raise_http(exc)
