"""Zoho CRM adapter.

OAuth 2.0 against the configured Zoho accounts server (data-center specific);
REST API v5 on the ``api_domain`` returned with the token. Zoho uses its own
authorization scheme: ``Authorization: Zoho-oauthtoken <token>``.

Field translation:
- Deal: name <-> Deal_Name, stage <-> Stage, amount <-> Amount,
  contact_id <-> Contact_Name.id
- Contact: email <-> Email, first_name <-> First_Name, last_name <-> Last_Name,
  company <-> Account_Name.name, phone <-> Phone

Zoho pages by page number, not offset, and answers an empty module with
204 No Content.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from src.app.crm.errors import ProviderRequestError
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
    Stage,
    TokenSet,
    WebhookEvent,
    WebhookEventKind,
    ZohoMetadata,
)

logger = structlog.get_logger(__name__)

DEFAULT_API_DOMAIN = "https://www.zohoapis.com"
DEFAULT_STAGE = "Qualification"
SCOPES = "ZohoCRM.modules.ALL,ZohoCRM.settings.ALL,ZohoCRM.org.READ"
DEAL_MODULES = ("Deals", "Potentials")


def _to_deal(record: dict[str, Any]) -> Deal:
    contact = record.get("Contact_Name") or {}
    amount = record.get("Amount")
    return Deal(
        id=str(record["id"]),
        name=record.get("Deal_Name") or "",
        stage=record.get("Stage"),
        amount=float(amount) if amount is not None else None,
        contact_id=contact.get("id") if isinstance(contact, dict) else None,
    )


def _to_contact(record: dict[str, Any]) -> Contact:
    account = record.get("Account_Name") or {}
    return Contact(
        id=str(record["id"]),
        email=record.get("Email"),
        first_name=record.get("First_Name"),
        last_name=record.get("Last_Name"),
        company=account.get("name") if isinstance(account, dict) else None,
        phone=record.get("Phone"),
    )


def _contact_fields(data: ContactCreate) -> dict[str, Any]:
    fields = {
        "Email": data.email,
        "First_Name": data.first_name,
        "Last_Name": data.last_name,
        "Phone": data.phone,
    }
    return {k: v for k, v in fields.items() if v is not None}


def _page(limit: int, offset: int) -> int:
    return offset // max(limit, 1) + 1


def _created_id(response: httpx.Response) -> str:
    return str(response.json()["data"][0]["details"]["id"])


class ZohoProvider(CRMProvider):
    """Zoho CRM adapter."""

    provider = CrmProvider.ZOHO

    @property
    def _accounts_url(self) -> str:
        return self._settings.ZOHO_ACCOUNTS_URL.rstrip("/")

    def _auth_headers(self, access_token: str) -> dict[str, str]:
        return {"Authorization": f"Zoho-oauthtoken {access_token}"}

    @staticmethod
    def _api(credentials: CrmCredentials) -> str:
        api_domain = getattr(credentials.metadata, "api_domain", None) or DEFAULT_API_DOMAIN
        return f"{api_domain.rstrip('/')}/crm/v5"

    async def _records(self, url: str, token: str, **kwargs: Any) -> list[dict[str, Any]]:
        payload = await self._get_json(url, token, **kwargs)
        return payload.get("data") or []

    async def _record_or_none(self, url: str, token: str) -> dict[str, Any] | None:
        payload = await self._get_or_none(url, token)
        records = (payload or {}).get("data") or []
        return records[0] if records else None

    # ── OAuth ───────────────────────────────────────────────────────────────

    def authorization_url(self, user_id: str) -> str:
        params = {
            "scope": SCOPES,
            "client_id": self._settings.ZOHO_CLIENT_ID,
            "response_type": "code",
            "access_type": "offline",
            "prompt": "consent",
            "redirect_uri": self.redirect_uri,
            "state": user_id,
        }
        return str(httpx.URL(f"{self._accounts_url}/oauth/v2/auth", params=params))

    async def _token_call(self, params: dict[str, str]) -> dict[str, Any]:
        response = await self._request(
            "POST",
            f"{self._accounts_url}/oauth/v2/token",
            params={
                "client_id": self._settings.ZOHO_CLIENT_ID,
                "client_secret": self._settings.ZOHO_CLIENT_SECRET,
                **params,
            },
        )
        data = response.json()
        # Zoho reports some token errors with a 200 status
        if "error" in data and "access_token" not in data:
            raise ProviderRequestError(
                f"zoho token error: {data['error']}", provider=self.provider.value, status_code=400
            )
        return data

    async def exchange_code(self, code: str) -> TokenSet:
        data = await self._token_call({
            "grant_type": "authorization_code",
            "redirect_uri": self.redirect_uri,
            "code": code,
        })
        access_token = data["access_token"]
        api_domain = data.get("api_domain") or DEFAULT_API_DOMAIN

        try:
            payload = await self._get_json(f"{api_domain.rstrip('/')}/crm/v5/org", access_token)
        except ProviderRequestError as exc:
            # Missing org scope: connect anyway, webhooks cannot be routed until reconnect
            logger.warning("zoho.org_lookup_failed", error=exc.message)
            payload = {}
        org = (payload.get("org") or [{}])[0]
        org_id = org.get("id")

        return TokenSet(
            access_token=access_token,
            refresh_token=data.get("refresh_token"),
            expires_at=expiry_from(data.get("expires_in")),
            metadata=ZohoMetadata(
                api_domain=api_domain,
                account_domain=org.get("domain_name") or org.get("domain"),
                organization_id=str(org_id) if org_id is not None else None,
            ),
            account_name=org.get("company_name"),
        )

    async def _refresh(self, refresh_token: str, metadata: ProviderMetadata) -> TokenSet:
        data = await self._token_call({
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        })
        return TokenSet(
            access_token=data["access_token"],
            # Zoho refresh tokens do not rotate
            refresh_token=data.get("refresh_token"),
            expires_at=expiry_from(data.get("expires_in")),
            metadata=ZohoMetadata(api_domain=data.get("api_domain")),
        )

    async def _revoke(self, credentials: CrmCredentials, refresh_token: str | None) -> None:
        await self._request(
            "POST",
            f"{self._accounts_url}/oauth/v2/token/revoke",
            params={"token": refresh_token or credentials.access_token},
        )

    # ── Stages ──────────────────────────────────────────────────────────────

    async def _fetch_stages(self, credentials: CrmCredentials) -> list[Stage]:
        payload = await self._get_json(
            f"{self._api(credentials)}/settings/pipeline",
            credentials.access_token,
            params={"module": "Deals"},
        )
        stages: list[Stage] = []
        for pipeline in payload.get("pipeline") or []:
            for stage in pipeline.get("maps") or []:
                # Zoho writes Stage by display value, not by id
                stages.append(Stage(
                    id=stage["display_value"],
                    name=f"{pipeline.get('display_value')} - {stage['display_value']}",
                ))
        return stages

    # ── Deals ───────────────────────────────────────────────────────────────

    async def list_deals(self, credentials: CrmCredentials, limit: int = 100, offset: int = 0) -> list[Deal]:
        records = await self._records(
            f"{self._api(credentials)}/Deals",
            credentials.access_token,
            params={
                "per_page": limit,
                "page": _page(limit, offset),
                "fields": "Deal_Name,Stage,Amount,Contact_Name",
            },
        )
        return [_to_deal(r) for r in records]

    async def get_deal(self, credentials: CrmCredentials, deal_id: str) -> Deal | None:
        record = await self._record_or_none(
            f"{self._api(credentials)}/Deals/{deal_id}", credentials.access_token
        )
        return _to_deal(record) if record else None

    async def create_deal(self, credentials: CrmCredentials, deal: DealCreate) -> Deal:
        fields: dict[str, Any] = {
            "Deal_Name": deal.name,
            "Stage": deal.stage or DEFAULT_STAGE,
            **deal.custom_fields,
        }
        if deal.amount is not None:
            fields["Amount"] = deal.amount
        if deal.contact_id:
            fields["Contact_Name"] = {"id": deal.contact_id}

        response = await self._request(
            "POST",
            f"{self._api(credentials)}/Deals",
            token=credentials.access_token,
            json={"data": [fields]},
        )
        deal_id = _created_id(response)
        logger.info("zoho.deal_created", deal_id=deal_id)
        return Deal(
            id=deal_id,
            name=deal.name,
            stage=fields["Stage"],
            amount=deal.amount,
            contact_id=deal.contact_id,
            custom_fields=deal.custom_fields,
        )

    async def update_deal(self, credentials: CrmCredentials, deal_id: str, data: DealUpdate) -> Deal:
        fields: dict[str, Any] = {"id": deal_id, **data.custom_fields}
        if data.name is not None:
            fields["Deal_Name"] = data.name
        if data.stage is not None:
            fields["Stage"] = data.stage
        if data.amount is not None:
            fields["Amount"] = data.amount
        if data.contact_id is not None:
            fields["Contact_Name"] = {"id": data.contact_id}
        await self._request(
            "PUT",
            f"{self._api(credentials)}/Deals",
            token=credentials.access_token,
            json={"data": [fields]},
        )
        updated = await self.get_deal(credentials, deal_id)
        return updated or Deal(id=deal_id, name=data.name or "", stage=data.stage, amount=data.amount)

    # ── Contacts ────────────────────────────────────────────────────────────

    async def get_contacts(self, credentials: CrmCredentials, limit: int = 100, offset: int = 0) -> list[Contact]:
        records = await self._records(
            f"{self._api(credentials)}/Contacts",
            credentials.access_token,
            params={
                "per_page": limit,
                "page": _page(limit, offset),
                "fields": "Email,First_Name,Last_Name,Account_Name,Phone",
            },
        )
        return [_to_contact(r) for r in records]

    async def get_contact(self, credentials: CrmCredentials, contact_id: str) -> Contact | None:
        record = await self._record_or_none(
            f"{self._api(credentials)}/Contacts/{contact_id}", credentials.access_token
        )
        return _to_contact(record) if record else None

    async def create_contact(self, credentials: CrmCredentials, contact: ContactCreate) -> Contact:
        fields = _contact_fields(contact)
        fields.setdefault("Last_Name", "Unknown")
        response = await self._request(
            "POST",
            f"{self._api(credentials)}/Contacts",
            token=credentials.access_token,
            json={"data": [fields]},
        )
        return Contact(id=_created_id(response), **contact.model_dump())

    async def update_contact(self, credentials: CrmCredentials, contact_id: str, data: ContactUpdate) -> Contact:
        await self._request(
            "PUT",
            f"{self._api(credentials)}/Contacts",
            token=credentials.access_token,
            json={"data": [{"id": contact_id, **_contact_fields(data)}]},
        )
        updated = await self.get_contact(credentials, contact_id)
        return updated or Contact(id=contact_id, **data.model_dump())

    # ── Outbound Sync ───────────────────────────────────────────────────────

    async def push_status(self, credentials: CrmCredentials, deal_id: str, update: DealStatusUpdate) -> None:
        fields: dict[str, Any] = {}
        if update.stage:
            fields["Stage"] = update.stage
        if update.won:
            if update.close_date:
                fields["Closing_Date"] = update.close_date.isoformat()
            if update.amount is not None:
                fields["Amount"] = update.amount
        if not fields:
            return
        await self._request(
            "PUT",
            f"{self._api(credentials)}/Deals",
            token=credentials.access_token,
            json={"data": [{"id": deal_id, **fields}]},
        )
        logger.info("zoho.deal_stage_updated", deal_id=deal_id, stage=update.stage)

    async def add_note(self, credentials: CrmCredentials, deal_id: str, text: str) -> None:
        await self._request(
            "POST",
            f"{self._api(credentials)}/Deals/{deal_id}/Notes",
            token=credentials.access_token,
            json={"data": [{"Note_Title": "Proposal Update", "Note_Content": text}]},
        )

    async def attach_document(
        self, credentials: CrmCredentials, deal_id: str, filename: str, content: bytes
    ) -> None:
        await self._request(
            "POST",
            f"{self._api(credentials)}/Deals/{deal_id}/Attachments",
            token=credentials.access_token,
            files={"file": (filename, content, "application/pdf")},
        )
        logger.info("zoho.document_attached", deal_id=deal_id)

    # ── Inbound Webhooks ────────────────────────────────────────────────────

    def classify_webhook(self, payload: Any) -> list[WebhookEvent]:
        if not isinstance(payload, dict):
            raise ValueError("Zoho webhook payload must be an object")
        operation = str(payload.get("operation") or "")
        module = str(payload.get("module") or "")
        account_domain = payload.get("account_domain")
        data = payload.get("data")
        if data is None:
            data = payload.get("ids")
        items = data if isinstance(data, list) else [data]

        events: list[WebhookEvent] = []
        for item in items:
            record = item if isinstance(item, dict) else {"id": item}
            record_id = record.get("id")

            kind = WebhookEventKind.UNRECOGNIZED
            stage_name = None
            if module in DEAL_MODULES:
                if operation == "update" and record.get("Stage"):
                    kind = WebhookEventKind.DEAL_STAGE_CHANGED
                    stage_name = str(record["Stage"])
                elif operation == "delete":
                    kind = WebhookEventKind.DEAL_DELETED
                elif operation in ("create", "insert"):
                    kind = WebhookEventKind.DEAL_CREATED

            events.append(WebhookEvent(
                provider=self.provider,
                kind=kind,
                event_type=f"{module}.{operation}" if module else operation or "unknown",
                object_id=str(record_id) if record_id is not None else None,
                account_identifier=str(account_domain) if account_domain is not None else None,
                stage_id=stage_name,
                stage_name=stage_name,
                raw=payload,
            ))
        return events
