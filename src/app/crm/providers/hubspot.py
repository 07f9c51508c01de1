"""HubSpot CRM adapter.

OAuth 2.0 against app.hubspot.com / api.hubapi.com, CRM v3 objects API for
deals and contacts, pipelines API for stages, v3 files API for signed PDFs.

Field translation:
- Deal: name <-> dealname, stage <-> dealstage, amount <-> amount
- Contact: first_name <-> firstname, last_name <-> lastname, email/company/phone as-is

Webhooks arrive as a JSON list of subscription events, each carrying
``portalId`` (the account identifier stored at connect time).
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

import httpx
import structlog

from src.app.crm.providers.base import CRMProvider, expiry_from
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
    HubSpotMetadata,
    ProviderMetadata,
    Stage,
    TokenSet,
    WebhookEvent,
    WebhookEventKind,
)

logger = structlog.get_logger(__name__)

AUTHORIZE_URL = "https://app.hubspot.com/oauth/authorize"
API_BASE = "https://api.hubapi.com"
TOKEN_URL = f"{API_BASE}/oauth/v1/token"

SCOPES = [
    "crm.objects.contacts.read",
    "crm.objects.contacts.write",
    "crm.objects.deals.read",
    "crm.objects.deals.write",
    "crm.schemas.deals.read",
    "files",
]

DEAL_PROPERTIES = "dealname,dealstage,amount,closedate"
CONTACT_PROPERTIES = "firstname,lastname,email,company,phone"

# HUBSPOT_DEFINED association type ids
NOTE_TO_DEAL = 214
DEAL_TO_CONTACT = 3

# Contact property name -> mirrored contact field
CONTACT_PROPERTY_MAP = {
    "email": "email",
    "firstname": "first_name",
    "lastname": "last_name",
    "company": "company",
    "phone": "phone",
}


def _to_deal(item: dict[str, Any]) -> Deal:
    props = item.get("properties") or {}
    amount = props.get("amount")
    contacts = ((item.get("associations") or {}).get("contacts") or {}).get("results") or []
    return Deal(
        id=str(item["id"]),
        name=props.get("dealname") or "",
        stage=props.get("dealstage"),
        amount=float(amount) if amount not in (None, "") else None,
        contact_id=str(contacts[0]["id"]) if contacts else None,
        custom_fields={
            k: v for k, v in props.items()
            if k not in ("dealname", "dealstage", "amount", "hs_object_id", "createdate", "hs_lastmodifieddate")
        },
    )


def _to_contact(item: dict[str, Any]) -> Contact:
    props = item.get("properties") or {}
    return Contact(
        id=str(item["id"]),
        email=props.get("email"),
        first_name=props.get("firstname"),
        last_name=props.get("lastname"),
        company=props.get("company"),
        phone=props.get("phone"),
    )


def _contact_properties(data: ContactCreate) -> dict[str, Any]:
    props = {
        "email": data.email,
        "firstname": data.first_name,
        "lastname": data.last_name,
        "company": data.company,
        "phone": data.phone,
    }
    return {k: v for k, v in props.items() if v is not None}


class HubSpotProvider(CRMProvider):
    """HubSpot adapter."""

    provider = CrmProvider.HUBSPOT

    # ── OAuth ───────────────────────────────────────────────────────────────

    def authorization_url(self, user_id: str) -> str:
        params = {
            "client_id": self._settings.HUBSPOT_CLIENT_ID,
            "redirect_uri": self.redirect_uri,
            "scope": " ".join(SCOPES),
            "state": user_id,
        }
        return str(httpx.URL(AUTHORIZE_URL, params=params))

    async def _token_call(self, form: dict[str, str]) -> dict[str, Any]:
        response = await self._request(
            "POST",
            TOKEN_URL,
            data={
                "client_id": self._settings.HUBSPOT_CLIENT_ID,
                "client_secret": self._settings.HUBSPOT_CLIENT_SECRET,
                **form,
            },
        )
        return response.json()

    async def exchange_code(self, code: str) -> TokenSet:
        data = await self._token_call({
            "grant_type": "authorization_code",
            "redirect_uri": self.redirect_uri,
            "code": code,
        })
        access_token = data["access_token"]

        # Token introspection carries the portal (hub) id used to route webhooks
        info = await self._get_json(f"{API_BASE}/oauth/v1/access-tokens/{access_token}", access_token)
        hub_id = info.get("hub_id")
        return TokenSet(
            access_token=access_token,
            refresh_token=data.get("refresh_token"),
            expires_at=expiry_from(data.get("expires_in")),
            metadata=HubSpotMetadata(
                portal_id=str(hub_id) if hub_id is not None else None,
                hub_domain=info.get("hub_domain"),
            ),
            account_name=info.get("hub_domain"),
        )

    async def _refresh(self, refresh_token: str, metadata: ProviderMetadata) -> TokenSet:
        data = await self._token_call({
            "grant_type": "refresh_token",
            "redirect_uri": self.redirect_uri,
            "refresh_token": refresh_token,
        })
        return TokenSet(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=expiry_from(data.get("expires_in")),
            metadata=HubSpotMetadata(),
        )

    async def _revoke(self, credentials: CrmCredentials, refresh_token: str | None) -> None:
        if not refresh_token:
            logger.info("hubspot.revoke_skipped_no_refresh_token")
            return
        await self._request("DELETE", f"{API_BASE}/oauth/v1/refresh-tokens/{refresh_token}")

    # ── Stages ──────────────────────────────────────────────────────────────

    async def _fetch_stages(self, credentials: CrmCredentials) -> list[Stage]:
        data = await self._get_json(f"{API_BASE}/crm/v3/pipelines/deals", credentials.access_token)
        stages: list[Stage] = []
        for pipeline in data.get("results", []):
            for stage in pipeline.get("stages", []):
                stages.append(Stage(
                    id=str(stage["id"]),
                    name=f"{pipeline.get('label', '')} - {stage.get('label', '')}",
                ))
        return stages

    # ── Deals ───────────────────────────────────────────────────────────────

    async def list_deals(self, credentials: CrmCredentials, limit: int = 100, offset: int = 0) -> list[Deal]:
        params: dict[str, Any] = {"limit": limit, "properties": DEAL_PROPERTIES}
        if offset:
            params["after"] = offset
        data = await self._get_json(
            f"{API_BASE}/crm/v3/objects/deals", credentials.access_token, params=params
        )
        return [_to_deal(item) for item in data.get("results", [])]

    async def get_deal(self, credentials: CrmCredentials, deal_id: str) -> Deal | None:
        data = await self._get_or_none(
            f"{API_BASE}/crm/v3/objects/deals/{deal_id}",
            credentials.access_token,
            params={"properties": DEAL_PROPERTIES, "associations": "contacts"},
        )
        return _to_deal(data) if data else None

    async def create_deal(self, credentials: CrmCredentials, deal: DealCreate) -> Deal:
        properties: dict[str, Any] = {"dealname": deal.name, **deal.custom_fields}
        if deal.stage:
            properties["dealstage"] = deal.stage
        if deal.amount is not None:
            properties["amount"] = str(deal.amount)
        body: dict[str, Any] = {"properties": properties}
        if deal.contact_id:
            body["associations"] = [{
                "to": {"id": deal.contact_id},
                "types": [{"associationCategory": "HUBSPOT_DEFINED", "associationTypeId": DEAL_TO_CONTACT}],
            }]
        response = await self._request(
            "POST", f"{API_BASE}/crm/v3/objects/deals", token=credentials.access_token, json=body
        )
        created = _to_deal(response.json())
        logger.info("hubspot.deal_created", deal_id=created.id)
        return created.model_copy(update={"contact_id": deal.contact_id})

    async def update_deal(self, credentials: CrmCredentials, deal_id: str, data: DealUpdate) -> Deal:
        properties: dict[str, Any] = dict(data.custom_fields)
        if data.name is not None:
            properties["dealname"] = data.name
        if data.stage is not None:
            properties["dealstage"] = data.stage
        if data.amount is not None:
            properties["amount"] = str(data.amount)
        response = await self._request(
            "PATCH",
            f"{API_BASE}/crm/v3/objects/deals/{deal_id}",
            token=credentials.access_token,
            json={"properties": properties},
        )
        return _to_deal(response.json())

    # ── Contacts ────────────────────────────────────────────────────────────

    async def get_contacts(self, credentials: CrmCredentials, limit: int = 100, offset: int = 0) -> list[Contact]:
        params: dict[str, Any] = {"limit": limit, "properties": CONTACT_PROPERTIES}
        if offset:
            params["after"] = offset
        data = await self._get_json(
            f"{API_BASE}/crm/v3/objects/contacts", credentials.access_token, params=params
        )
        return [_to_contact(item) for item in data.get("results", [])]

    async def get_contact(self, credentials: CrmCredentials, contact_id: str) -> Contact | None:
        data = await self._get_or_none(
            f"{API_BASE}/crm/v3/objects/contacts/{contact_id}",
            credentials.access_token,
            params={"properties": CONTACT_PROPERTIES},
        )
        return _to_contact(data) if data else None

    async def create_contact(self, credentials: CrmCredentials, contact: ContactCreate) -> Contact:
        response = await self._request(
            "POST",
            f"{API_BASE}/crm/v3/objects/contacts",
            token=credentials.access_token,
            json={"properties": _contact_properties(contact)},
        )
        return _to_contact(response.json())

    async def update_contact(self, credentials: CrmCredentials, contact_id: str, data: ContactUpdate) -> Contact:
        response = await self._request(
            "PATCH",
            f"{API_BASE}/crm/v3/objects/contacts/{contact_id}",
            token=credentials.access_token,
            json={"properties": _contact_properties(data)},
        )
        return _to_contact(response.json())

    # ── Outbound Sync ───────────────────────────────────────────────────────

    async def push_status(self, credentials: CrmCredentials, deal_id: str, update: DealStatusUpdate) -> None:
        properties: dict[str, Any] = {}
        if update.stage:
            properties["dealstage"] = update.stage
        if update.won:
            if update.close_date:
                properties["closedate"] = update.close_date.isoformat()
            if update.amount is not None:
                properties["amount"] = str(update.amount)
        if not properties:
            return
        await self._request(
            "PATCH",
            f"{API_BASE}/crm/v3/objects/deals/{deal_id}",
            token=credentials.access_token,
            json={"properties": properties},
        )
        logger.info("hubspot.deal_stage_updated", deal_id=deal_id, stage=update.stage)

    async def _create_note(self, token: str, deal_id: str, body: str, attachment_id: str | None = None) -> None:
        properties: dict[str, Any] = {
            "hs_note_body": body,
            "hs_timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if attachment_id:
            properties["hs_attachment_ids"] = attachment_id
        await self._request(
            "POST",
            f"{API_BASE}/crm/v3/objects/notes",
            token=token,
            json={
                "properties": properties,
                "associations": [{
                    "to": {"id": deal_id},
                    "types": [{"associationCategory": "HUBSPOT_DEFINED", "associationTypeId": NOTE_TO_DEAL}],
                }],
            },
        )

    async def add_note(self, credentials: CrmCredentials, deal_id: str, text: str) -> None:
        await self._create_note(credentials.access_token, deal_id, text)

    async def attach_document(
        self, credentials: CrmCredentials, deal_id: str, filename: str, content: bytes
    ) -> None:
        options = {"access": "PRIVATE", "ttl": "P3M", "duplicateValidationStrategy": "NONE"}
        response = await self._request(
            "POST",
            f"{API_BASE}/files/v3/files",
            token=credentials.access_token,
            files={"file": (filename, content, "application/pdf")},
            data={"options": json.dumps(options), "folderPath": "/signed-proposals"},
        )
        file_id = str(response.json()["id"])
        # Files attach to CRM records through a note referencing the file
        await self._create_note(credentials.access_token, deal_id, filename, attachment_id=file_id)
        logger.info("hubspot.document_attached", deal_id=deal_id, file_id=file_id)

    # ── Inbound Webhooks ────────────────────────────────────────────────────

    def classify_webhook(self, payload: Any) -> list[WebhookEvent]:
        if isinstance(payload, dict):
            payload = [payload]
        if not isinstance(payload, list):
            raise ValueError("HubSpot webhook payload must be a list of events")

        events: list[WebhookEvent] = []
        for item in payload:
            if not isinstance(item, dict):
                raise ValueError("HubSpot webhook event must be an object")
            subscription = str(item.get("subscriptionType") or "")
            object_id = item.get("objectId")
            portal_id = item.get("portalId")
            property_name = item.get("propertyName")
            property_value = item.get("propertyValue")

            kind = WebhookEventKind.UNRECOGNIZED
            stage_id = None
            properties: dict[str, Any] = {}
            if subscription == "deal.propertyChange":
                if property_name == "dealstage":
                    kind = WebhookEventKind.DEAL_STAGE_CHANGED
                    stage_id = str(property_value) if property_value is not None else None
            elif subscription == "deal.deletion":
                kind = WebhookEventKind.DEAL_DELETED
            elif subscription == "deal.creation":
                kind = WebhookEventKind.DEAL_CREATED
            elif subscription == "contact.propertyChange":
                field = CONTACT_PROPERTY_MAP.get(str(property_name))
                if field:
                    kind = WebhookEventKind.CONTACT_CHANGED
                    properties = {field: property_value}

            events.append(WebhookEvent(
                provider=self.provider,
                kind=kind,
                event_type=subscription or "unknown",
                object_id=str(object_id) if object_id is not None else None,
                account_identifier=str(portal_id) if portal_id is not None else None,
                stage_id=stage_id,
                properties=properties,
                raw=item,
            ))
        return events
