"""Pydantic schemas for CRM synchronization.

Defines all structured types shared by the sync engine:
- Enums: CrmProvider, ProposalStatus, SyncDirection, WebhookEventKind
- Provider metadata: HubSpotMetadata, SalesforceMetadata, PipedriveMetadata, ZohoMetadata
- Credentials: TokenSet, CrmCredentials
- CRM payloads: Stage, Deal/DealCreate/DealUpdate, Contact/ContactCreate/ContactUpdate,
  DealStatusUpdate
- Configuration: FieldMapping, SyncConfig, StageMappingData
- Records: IntegrationRecord, DealLinkRead, CrmContactRead, WebhookLogRead
- Proposal collaborator: PricingItem, ProposalSnapshot
- Results: ActionOutcome, SyncResult, WebhookEvent, WebhookOutcome
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter


# ── Enums ───────────────────────────────────────────────────────────────────


class CrmProvider(str, Enum):
    """Supported external CRM systems."""

    HUBSPOT = "hubspot"
    SALESFORCE = "salesforce"
    PIPEDRIVE = "pipedrive"
    ZOHO = "zoho"


class ProposalStatus(str, Enum):
    """Proposal lifecycle status as owned by the proposal platform."""

    DRAFT = "draft"
    SENT = "sent"
    VIEWED = "viewed"
    APPROVED = "approved"
    DECLINED = "declined"
    SIGNED = "signed"


class SyncDirection(str, Enum):
    """Which way proposal state is allowed to flow for an integration."""

    INBOUND = "inbound"  # CRM -> proposals only
    OUTBOUND = "outbound"  # proposals -> CRM only
    BIDIRECTIONAL = "bidirectional"

    @property
    def allows_outbound(self) -> bool:
        return self is not SyncDirection.INBOUND

    @property
    def allows_inbound(self) -> bool:
        return self is not SyncDirection.OUTBOUND


class WebhookEventKind(str, Enum):
    """Routing category of a classified inbound webhook event."""

    DEAL_STAGE_CHANGED = "deal_stage_changed"
    DEAL_DELETED = "deal_deleted"
    DEAL_CREATED = "deal_created"
    CONTACT_CHANGED = "contact_changed"
    UNRECOGNIZED = "unrecognized"


# ── Provider Metadata ───────────────────────────────────────────────────────
#
# Each variant's ``account_identifier`` is the value the provider sends in
# webhooks to identify the connected account.


class HubSpotMetadata(BaseModel):
    """HubSpot portal identity."""

    provider: Literal["hubspot"] = "hubspot"
    portal_id: str | None = None
    hub_domain: str | None = None

    @property
    def account_identifier(self) -> str | None:
        return self.portal_id


class SalesforceMetadata(BaseModel):
    """Salesforce org identity and REST instance."""

    provider: Literal["salesforce"] = "salesforce"
    instance_url: str | None = None
    organization_id: str | None = None
    user_id: str | None = None

    @property
    def account_identifier(self) -> str | None:
        return self.organization_id


class PipedriveMetadata(BaseModel):
    """Pipedrive company identity and API domain."""

    provider: Literal["pipedrive"] = "pipedrive"
    api_domain: str | None = None
    company_id: str | None = None
    company_domain: str | None = None

    @property
    def account_identifier(self) -> str | None:
        return self.company_id


class ZohoMetadata(BaseModel):
    """Zoho CRM data-center domain and org identity."""

    provider: Literal["zoho"] = "zoho"
    api_domain: str | None = None
    account_domain: str | None = None
    organization_id: str | None = None

    @property
    def account_identifier(self) -> str | None:
        return self.account_domain


ProviderMetadata = Annotated[
    Union[HubSpotMetadata, SalesforceMetadata, PipedriveMetadata, ZohoMetadata],
    Field(discriminator="provider"),
]

_metadata_adapter: TypeAdapter = TypeAdapter(ProviderMetadata)


def parse_metadata(provider: CrmProvider, data: dict[str, Any] | None) -> ProviderMetadata:
    """Validate a stored metadata blob into the provider's typed variant."""
    payload = dict(data or {})
    payload["provider"] = provider.value
    return _metadata_adapter.validate_python(payload)


# ── Credentials ─────────────────────────────────────────────────────────────


class TokenSet(BaseModel):
    """Result of an OAuth code exchange or refresh."""

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    metadata: ProviderMetadata
    account_name: str | None = None


class CrmCredentials(BaseModel):
    """A valid access token plus the metadata an adapter needs to call the API."""

    provider: CrmProvider
    access_token: str
    metadata: ProviderMetadata


# ── CRM Payloads ────────────────────────────────────────────────────────────


class Stage(BaseModel):
    """A pipeline stage as offered by the CRM."""

    id: str
    name: str


class Deal(BaseModel):
    """Provider-neutral deal shape."""

    id: str
    name: str
    stage: str | None = None
    amount: float | None = None
    contact_id: str | None = None
    custom_fields: dict[str, Any] = Field(default_factory=dict)


class DealCreate(BaseModel):
    name: str
    stage: str | None = None
    amount: float | None = None
    contact_id: str | None = None
    custom_fields: dict[str, Any] = Field(default_factory=dict)


class DealUpdate(BaseModel):
    name: str | None = None
    stage: str | None = None
    amount: float | None = None
    contact_id: str | None = None
    custom_fields: dict[str, Any] = Field(default_factory=dict)


class DealStatusUpdate(BaseModel):
    """Outbound stage push derived from a proposal status.

    ``won`` is set when the proposal reached its signed state; adapters add
    their provider's closing fields (close date, amount, won status) then.
    """

    stage: str | None = None
    won: bool = False
    close_date: date | None = None
    amount: float | None = None


class Contact(BaseModel):
    """Provider-neutral contact shape."""

    id: str
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    company: str | None = None
    phone: str | None = None


class ContactCreate(BaseModel):
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    company: str | None = None
    phone: str | None = None


class ContactUpdate(ContactCreate):
    pass


# ── Configuration ───────────────────────────────────────────────────────────


DEFAULT_SYNC_TRIGGERS = [
    ProposalStatus.SENT.value,
    ProposalStatus.APPROVED.value,
    ProposalStatus.SIGNED.value,
]


class FieldMapping(BaseModel):
    """Maps an internal proposal field onto a CRM deal field."""

    internal_field: str
    crm_field: str
    transform: str | None = None


class SyncConfig(BaseModel):
    """Per-integration sync settings.

    Changing ``direction`` also updates every existing deal link of the
    integration. ``field_mappings`` and ``auto_sync_contacts`` are stored and
    returned for the settings UI only; no sync path reads them yet.
    """

    direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    field_mappings: list[FieldMapping] = Field(default_factory=list)
    auto_sync_contacts: bool = False
    sync_proposal_status: bool = True
    sync_triggers: list[str] = Field(default_factory=lambda: list(DEFAULT_SYNC_TRIGGERS))
    # Inbound stage changes never move a signed proposal back
    protect_signed_status: bool = True


class StageMappingData(BaseModel):
    """One internal status <-> CRM stage correspondence."""

    internal_status: ProposalStatus
    crm_stage_id: str | None = None
    crm_stage_name: str | None = None


# ── Records ─────────────────────────────────────────────────────────────────


class IntegrationRecord(BaseModel):
    """A stored integration including its token fields.

    Only the credential store reads the token fields; API responses are
    built from the non-secret attributes.
    """

    id: str
    user_id: str
    provider: CrmProvider
    access_token: str
    refresh_token: str | None = None
    token_expires_at: datetime | None = None
    is_active: bool = True
    account_name: str | None = None
    account_identifier: str | None = None
    metadata: ProviderMetadata
    sync_config: SyncConfig = Field(default_factory=SyncConfig)
    stage_mappings: list[StageMappingData] = Field(default_factory=list)
    last_synced_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def token_is_fresh(self, skew_seconds: int, now: datetime | None = None) -> bool:
        """True when the access token is valid for at least ``skew_seconds`` more."""
        if self.token_expires_at is None:
            # Providers without expiry (HubSpot private apps) never need a refresh
            return True
        now = now or datetime.now(timezone.utc)
        expires_at = self.token_expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return now.timestamp() < expires_at.timestamp() - skew_seconds


class DealLinkRead(BaseModel):
    id: str
    integration_id: str
    user_id: str
    provider: CrmProvider
    proposal_id: str
    external_deal_id: str
    sync_direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    last_synced_at: datetime | None = None
    created_at: datetime | None = None


class CrmContactRead(BaseModel):
    id: str
    user_id: str
    provider: CrmProvider
    external_id: str
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    company: str | None = None
    phone: str | None = None
    last_synced_at: datetime | None = None


class WebhookLogRead(BaseModel):
    id: str
    provider: CrmProvider
    event: str
    payload: Any = None
    processed: bool = False
    integration_id: str | None = None
    error: str | None = None
    created_at: datetime | None = None


# ── Proposal Collaborator ───────────────────────────────────────────────────


class PricingItem(BaseModel):
    name: str = ""
    amount: float = 0.0
    optional: bool = False


class ProposalSnapshot(BaseModel):
    """Read-only view of a proposal, as served by the proposal platform."""

    id: str
    user_id: str
    title: str
    status: ProposalStatus
    slug: str | None = None
    total_amount: float | None = None
    signed_at: datetime | None = None
    pdf_url: str | None = None
    signer_name: str | None = None
    signer_email: str | None = None
    pricing_items: list[PricingItem] = Field(default_factory=list)

    def deal_amount(self) -> float:
        """Sum of non-optional pricing items, falling back to the stored total."""
        if self.pricing_items:
            return sum(item.amount for item in self.pricing_items if not item.optional)
        return self.total_amount or 0.0


# ── Results ─────────────────────────────────────────────────────────────────


class ActionOutcome(BaseModel):
    """Outcome of one outbound action (stage update, note, attachment)."""

    action: Literal["update_stage", "add_note", "attach_document"]
    ok: bool
    skipped: bool = False
    error: str | None = None
    classification: str | None = None


class SyncResult(BaseModel):
    """Per-link outcome of an outbound sync.

    ``success`` is true when every attempted action succeeded. A skipped
    action (no stage to push, no PDF) does not count as a failure.
    """

    provider: CrmProvider
    proposal_id: str
    external_deal_id: str
    success: bool
    actions: list[ActionOutcome] = Field(default_factory=list)
    error: str | None = None
    classification: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class WebhookEvent(BaseModel):
    """A signature-verified, classified inbound event."""

    provider: CrmProvider
    kind: WebhookEventKind
    event_type: str
    object_id: str | None = None
    account_identifier: str | None = None
    stage_id: str | None = None
    stage_name: str | None = None
    properties: dict[str, Any] = Field(default_factory=dict)
    raw: Any = None


class WebhookOutcome(BaseModel):
    """What happened to one webhook delivery."""

    provider: CrmProvider
    verified: bool
    events: int = 0
    processed: int = 0
    discarded_reason: str | None = None
