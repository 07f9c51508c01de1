"""Salesforce CRM adapter.

OAuth 2.0 web server flow against the login host; REST API v58.0 on the
org's instance URL. Deals are Opportunities, contacts are Contacts.

Field translation:
- Deal: name <-> Name, stage <-> StageName, amount <-> Amount, contact_id <-> ContactId
- Contact: first_name <-> FirstName, last_name <-> LastName, email <-> Email,
  phone <-> Phone, company <-> Account.Name (read only)

Salesforce access tokens carry no expires_in; sessions default to two hours.
Outbound webhooks (Apex callouts / Platform Events relays) identify the org
with ``organizationId``.
"""

from __future__ import annotations

import base64
from datetime import date, timedelta
from typing import Any

import httpx
import structlog

from src.app.crm.errors import ValidationError
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
    ProviderMetadata,
    SalesforceMetadata,
    Stage,
    TokenSet,
    WebhookEvent,
    WebhookEventKind,
)

logger = structlog.get_logger(__name__)

API_VERSION = "v58.0"
SESSION_SECONDS = 2 * 60 * 60
DEFAULT_STAGE = "Prospecting"
DEFAULT_CLOSE_DAYS = 30

OPPORTUNITY_FIELDS = "Id, Name, StageName, Amount, CloseDate, ContactId"
CONTACT_FIELDS = "Id, FirstName, LastName, Email, Phone, Account.Name"


def _to_deal(record: dict[str, Any]) -> Deal:
    amount = record.get("Amount")
    return Deal(
        id=str(record.get("Id") or record.get("id")),
        name=record.get("Name") or "",
        stage=record.get("StageName"),
        amount=float(amount) if amount is not None else None,
        contact_id=record.get("ContactId"),
        custom_fields={k: v for k, v in record.items() if k.endswith("__c")},
    )


def _to_contact(record: dict[str, Any]) -> Contact:
    account = record.get("Account") or {}
    return Contact(
        id=str(record.get("Id") or record.get("id")),
        email=record.get("Email"),
        first_name=record.get("FirstName"),
        last_name=record.get("LastName"),
        company=account.get("Name"),
        phone=record.get("Phone"),
    )


def _contact_fields(data: ContactCreate) -> dict[str, Any]:
    fields = {
        "FirstName": data.first_name,
        "LastName": data.last_name,
        "Email": data.email,
        "Phone": data.phone,
    }
    return {k: v for k, v in fields.items() if v is not None}


def _custom_fields(custom: dict[str, Any]) -> dict[str, Any]:
    """Salesforce rejects unknown fields; only ``__c`` custom fields pass through."""
    return {k: v for k, v in custom.items() if k.endswith("__c")}


def _description(custom: dict[str, Any]) -> str | None:
    extra = {k: v for k, v in custom.items() if not k.endswith("__c")}
    if not extra:
        return None
    return "\n".join(f"{k}: {v}" for k, v in extra.items())


class SalesforceProvider(CRMProvider):
    """Salesforce adapter."""

    provider = CrmProvider.SALESFORCE

    @property
    def _login_url(self) -> str:
        return self._settings.SALESFORCE_LOGIN_URL.rstrip("/")

    @staticmethod
    def _api(credentials: CrmCredentials) -> str:
        metadata = credentials.metadata
        instance_url = getattr(metadata, "instance_url", None)
        if not instance_url:
            raise ValidationError("Salesforce instance URL not found", provider="salesforce")
        return f"{instance_url.rstrip('/')}/services/data/{API_VERSION}"

    async def _query(self, credentials: CrmCredentials, soql: str) -> list[dict[str, Any]]:
        data = await self._get_json(
            f"{self._api(credentials)}/query", credentials.access_token, params={"q": soql}
        )
        return data.get("records", [])

    # ── OAuth ───────────────────────────────────────────────────────────────

    def authorization_url(self, user_id: str) -> str:
        params = {
            "response_type": "code",
            "client_id": self._settings.SALESFORCE_CLIENT_ID,
            "redirect_uri": self.redirect_uri,
            "scope": "api refresh_token id",
            "state": user_id,
        }
        return str(httpx.URL(f"{self._login_url}/services/oauth2/authorize", params=params))

    async def _token_call(self, form: dict[str, str]) -> dict[str, Any]:
        response = await self._request(
            "POST",
            f"{self._login_url}/services/oauth2/token",
            data={
                "client_id": self._settings.SALESFORCE_CLIENT_ID,
                "client_secret": self._settings.SALESFORCE_CLIENT_SECRET,
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

        identity: dict[str, Any] = {}
        if data.get("id"):
            identity = await self._get_json(data["id"], access_token)

        return TokenSet(
            access_token=access_token,
            refresh_token=data.get("refresh_token"),
            expires_at=expiry_from(data.get("expires_in"), default_seconds=SESSION_SECONDS),
            metadata=SalesforceMetadata(
                instance_url=data.get("instance_url"),
                organization_id=identity.get("organization_id"),
                user_id=identity.get("user_id"),
            ),
            account_name=identity.get("display_name") or identity.get("username"),
        )

    async def _refresh(self, refresh_token: str, metadata: ProviderMetadata) -> TokenSet:
        data = await self._token_call({
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        })
        return TokenSet(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=expiry_from(data.get("expires_in"), default_seconds=SESSION_SECONDS),
            metadata=SalesforceMetadata(instance_url=data.get("instance_url")),
        )

    async def _revoke(self, credentials: CrmCredentials, refresh_token: str | None) -> None:
        await self._request(
            "POST",
            f"{self._login_url}/services/oauth2/revoke",
            data={"token": refresh_token or credentials.access_token},
        )

    # ── Stages ──────────────────────────────────────────────────────────────

    async def _fetch_stages(self, credentials: CrmCredentials) -> list[Stage]:
        data = await self._get_json(
            f"{self._api(credentials)}/sobjects/Opportunity/describe", credentials.access_token
        )
        for field in data.get("fields", []):
            if field.get("name") == "StageName":
                return [
                    Stage(id=value["value"], name=value.get("label") or value["value"])
                    for value in field.get("picklistValues", [])
                    if value.get("active")
                ]
        return []

    # ── Deals ───────────────────────────────────────────────────────────────

    async def list_deals(self, credentials: CrmCredentials, limit: int = 100, offset: int = 0) -> list[Deal]:
        records = await self._query(
            credentials,
            f"SELECT {OPPORTUNITY_FIELDS} FROM Opportunity "
            f"ORDER BY CreatedDate DESC LIMIT {int(limit)} OFFSET {int(offset)}",
        )
        return [_to_deal(r) for r in records]

    async def get_deal(self, credentials: CrmCredentials, deal_id: str) -> Deal | None:
        data = await self._get_or_none(
            f"{self._api(credentials)}/sobjects/Opportunity/{deal_id}", credentials.access_token
        )
        return _to_deal(data) if data else None

    async def create_deal(self, credentials: CrmCredentials, deal: DealCreate) -> Deal:
        close_date = date.today() + timedelta(days=DEFAULT_CLOSE_DAYS)
        fields: dict[str, Any] = {
            "Name": deal.name,
            "StageName": deal.stage or DEFAULT_STAGE,
            "CloseDate": close_date.isoformat(),
            **_custom_fields(deal.custom_fields),
        }
        if deal.amount is not None:
            fields["Amount"] = deal.amount
        if deal.contact_id:
            fields["ContactId"] = deal.contact_id
        description = _description(deal.custom_fields)
        if description:
            fields["Description"] = description

        response = await self._request(
            "POST",
            f"{self._api(credentials)}/sobjects/Opportunity",
            token=credentials.access_token,
            json=fields,
        )
        deal_id = str(response.json()["id"])
        logger.info("salesforce.opportunity_created", deal_id=deal_id)
        return Deal(
            id=deal_id,
            name=deal.name,
            stage=fields["StageName"],
            amount=deal.amount,
            contact_id=deal.contact_id,
            custom_fields=deal.custom_fields,
        )

    async def update_deal(self, credentials: CrmCredentials, deal_id: str, data: DealUpdate) -> Deal:
        fields: dict[str, Any] = _custom_fields(data.custom_fields)
        if data.name is not None:
            fields["Name"] = data.name
        if data.stage is not None:
            fields["StageName"] = data.stage
        if data.amount is not None:
            fields["Amount"] = data.amount
        if data.contact_id is not None:
            fields["ContactId"] = data.contact_id
        await self._request(
            "PATCH",
            f"{self._api(credentials)}/sobjects/Opportunity/{deal_id}",
            token=credentials.access_token,
            json=fields,
        )
        updated = await self.get_deal(credentials, deal_id)
        return updated or Deal(id=deal_id, name=data.name or "", stage=data.stage, amount=data.amount)

    # ── Contacts ────────────────────────────────────────────────────────────

    async def get_contacts(self, credentials: CrmCredentials, limit: int = 100, offset: int = 0) -> list[Contact]:
        records = await self._query(
            credentials,
            f"SELECT {CONTACT_FIELDS} FROM Contact "
            f"ORDER BY CreatedDate DESC LIMIT {int(limit)} OFFSET {int(offset)}",
        )
        return [_to_contact(r) for r in records]

    async def get_contact(self, credentials: CrmCredentials, contact_id: str) -> Contact | None:
        data = await self._get_or_none(
            f"{self._api(credentials)}/sobjects/Contact/{contact_id}", credentials.access_token
        )
        return _to_contact(data) if data else None

    async def create_contact(self, credentials: CrmCredentials, contact: ContactCreate) -> Contact:
        fields = _contact_fields(contact)
        # LastName is required on Contact
        fields.setdefault("LastName", contact.email or "Unknown")
        response = await self._request(
            "POST",
            f"{self._api(credentials)}/sobjects/Contact",
            token=credentials.access_token,
            json=fields,
        )
        return Contact(id=str(response.json()["id"]), **contact.model_dump())

    async def update_contact(self, credentials: CrmCredentials, contact_id: str, data: ContactUpdate) -> Contact:
        await self._request(
            "PATCH",
            f"{self._api(credentials)}/sobjects/Contact/{contact_id}",
            token=credentials.access_token,
            json=_contact_fields(data),
        )
        updated = await self.get_contact(credentials, contact_id)
        return updated or Contact(id=contact_id, **data.model_dump())

    # ── Outbound Sync ───────────────────────────────────────────────────────

    async def push_status(self, credentials: CrmCredentials, deal_id: str, update: DealStatusUpdate) -> None:
        fields: dict[str, Any] = {}
        if update.stage:
            fields["StageName"] = update.stage
        if update.won:
            if update.close_date:
                fields["CloseDate"] = update.close_date.isoformat()
            if update.amount is not None:
                fields["Amount"] = update.amount
        if not fields:
            return
        await self._request(
            "PATCH",
            f"{self._api(credentials)}/sobjects/Opportunity/{deal_id}",
            token=credentials.access_token,
            json=fields,
        )
        logger.info("salesforce.opportunity_stage_updated", deal_id=deal_id, stage=update.stage)

    async def add_note(self, credentials: CrmCredentials, deal_id: str, text: str) -> None:
        await self._request(
            "POST",
            f"{self._api(credentials)}/sobjects/Task",
            token=credentials.access_token,
            json={
                "WhatId": deal_id,
                "Subject": "Proposal Update",
                "Description": text,
                "Status": "Completed",
                "ActivityDate": date.today().isoformat(),
            },
        )

    async def attach_document(
        self, credentials: CrmCredentials, deal_id: str, filename: str, content: bytes
    ) -> None:
        api = self._api(credentials)
        token = credentials.access_token
        version = await self._request(
            "POST",
            f"{api}/sobjects/ContentVersion",
            token=token,
            json={
                "Title": filename.rsplit(".", 1)[0],
                "PathOnClient": filename,
                "VersionData": base64.b64encode(content).decode("ascii"),
            },
        )
        version_id = version.json()["id"]
        detail = await self._get_json(
            f"{api}/sobjects/ContentVersion/{version_id}",
            token,
            params={"fields": "ContentDocumentId"},
        )
        await self._request(
            "POST",
            f"{api}/sobjects/ContentDocumentLink",
            token=token,
            json={
                "ContentDocumentId": detail["ContentDocumentId"],
                "LinkedEntityId": deal_id,
                "ShareType": "V",
            },
        )
        logger.info("salesforce.document_attached", deal_id=deal_id, content_version_id=version_id)

    # ── Inbound Webhooks ────────────────────────────────────────────────────

    def classify_webhook(self, payload: Any) -> list[WebhookEvent]:
        if not isinstance(payload, dict):
            raise ValueError("Salesforce webhook payload must be an object")
        event = payload.get("event") or {}
        sobject = payload.get("sobject") or {}
        if not isinstance(event, dict) or not isinstance(sobject, dict):
            raise ValueError("Salesforce webhook event and sobject must be objects")
        event_type = str(event.get("type") or "")
        record_id = sobject.get("Id")
        org_id = payload.get("organizationId")

        kind = WebhookEventKind.UNRECOGNIZED
        stage_name = None
        if event_type == "updated" and sobject.get("StageName"):
            kind = WebhookEventKind.DEAL_STAGE_CHANGED
            stage_name = str(sobject["StageName"])
        elif event_type == "deleted":
            kind = WebhookEventKind.DEAL_DELETED
        elif event_type == "created":
            kind = WebhookEventKind.DEAL_CREATED

        return [WebhookEvent(
            provider=self.provider,
            kind=kind,
            event_type=event_type or "unknown",
            object_id=str(record_id) if record_id is not None else None,
            account_identifier=str(org_id) if org_id is not None else None,
            # The reported value is also the value stages are written with
            stage_id=stage_name,
            stage_name=stage_name,
            raw=payload,
        )]
