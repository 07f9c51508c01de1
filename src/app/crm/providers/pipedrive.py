"""Pipedrive CRM adapter.

OAuth 2.0 against oauth.pipedrive.com with HTTP Basic client authentication.
The token response names the company's ``api_domain``; every API call goes
to ``{api_domain}/api/v1``.

Field translation:
- Deal: name <-> title, stage <-> stage_id (int), amount <-> value,
  contact_id <-> person_id
- Contact (person): email <-> email[primary].value, phone <-> phone[primary].value,
  first_name/last_name <-> first_name/last_name, company <-> org_name (read only)

A deal is won through ``status=won``, not through a stage. The built-in
signed target "won" therefore sets the status; numeric targets set stage_id.
"""

from __future__ import annotations

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
    PipedriveMetadata,
    ProviderMetadata,
    Stage,
    TokenSet,
    WebhookEvent,
    WebhookEventKind,
)

logger = structlog.get_logger(__name__)

OAUTH_BASE = "https://oauth.pipedrive.com/oauth"
WON_STATUS = "won"

# Standard deal columns. Custom fields are keyed by 40-character hashes.
DEAL_COLUMNS = {
    "id", "title", "value", "currency", "stage_id", "status", "person_id",
    "org_id", "user_id", "pipeline_id", "add_time", "update_time", "won_time",
    "lost_time", "close_time", "expected_close_date",
}


def _primary(values: Any) -> str | None:
    """Primary value of a Pipedrive email/phone list."""
    if not isinstance(values, list) or not values:
        return None
    for item in values:
        if isinstance(item, dict) and item.get("primary"):
            return item.get("value") or None
    first = values[0]
    return first.get("value") if isinstance(first, dict) else None


def _ref_id(value: Any) -> str | None:
    """person_id/org_id come back either as an int or as an expanded object."""
    if value is None:
        return None
    if isinstance(value, dict):
        value = value.get("value")
    return str(value) if value is not None else None


def _to_deal(record: dict[str, Any]) -> Deal:
    value = record.get("value")
    stage_id = record.get("stage_id")
    return Deal(
        id=str(record["id"]),
        name=record.get("title") or "",
        stage=str(stage_id) if stage_id is not None else None,
        amount=float(value) if value is not None else None,
        contact_id=_ref_id(record.get("person_id")),
        custom_fields={k: v for k, v in record.items() if k not in DEAL_COLUMNS and len(k) == 40},
    )


def _to_contact(record: dict[str, Any]) -> Contact:
    return Contact(
        id=str(record["id"]),
        email=_primary(record.get("email")),
        first_name=record.get("first_name"),
        last_name=record.get("last_name"),
        company=record.get("org_name"),
        phone=_primary(record.get("phone")),
    )


def _person_fields(data: ContactCreate) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    name = " ".join(p for p in (data.first_name, data.last_name) if p)
    if name:
        fields["name"] = name
    if data.email:
        fields["email"] = [{"value": data.email, "primary": True}]
    if data.phone:
        fields["phone"] = [{"value": data.phone, "primary": True}]
    return fields


def _numeric(value: str) -> int | str:
    return int(value) if value.isdigit() else value


class PipedriveProvider(CRMProvider):
    """Pipedrive adapter."""

    provider = CrmProvider.PIPEDRIVE

    @property
    def _basic_auth(self) -> httpx.BasicAuth:
        return httpx.BasicAuth(
            self._settings.PIPEDRIVE_CLIENT_ID, self._settings.PIPEDRIVE_CLIENT_SECRET
        )

    @staticmethod
    def _api(credentials: CrmCredentials) -> str:
        api_domain = getattr(credentials.metadata, "api_domain", None)
        if not api_domain:
            raise ValidationError("Pipedrive API domain not found", provider="pipedrive")
        return f"{api_domain.rstrip('/')}/api/v1"

    async def _data(self, url: str, token: str, **kwargs: Any) -> Any:
        payload = await self._get_json(url, token, **kwargs)
        return payload.get("data") if isinstance(payload, dict) else None

    # ── OAuth ───────────────────────────────────────────────────────────────

    def authorization_url(self, user_id: str) -> str:
        params = {
            "client_id": self._settings.PIPEDRIVE_CLIENT_ID,
            "redirect_uri": self.redirect_uri,
            "state": user_id,
        }
        return str(httpx.URL(f"{OAUTH_BASE}/authorize", params=params))

    async def _token_call(self, form: dict[str, str]) -> dict[str, Any]:
        response = await self._request(
            "POST", f"{OAUTH_BASE}/token", data=form, auth=self._basic_auth
        )
        return response.json()

    async def exchange_code(self, code: str) -> TokenSet:
        data = await self._token_call({
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.redirect_uri,
        })
        access_token = data["access_token"]
        api_domain = data.get("api_domain")

        me: dict[str, Any] = {}
        if api_domain:
            me = await self._data(f"{api_domain.rstrip('/')}/api/v1/users/me", access_token) or {}
        company_id = me.get("company_id")

        return TokenSet(
            access_token=access_token,
            refresh_token=data.get("refresh_token"),
            expires_at=expiry_from(data.get("expires_in")),
            metadata=PipedriveMetadata(
                api_domain=api_domain,
                company_id=str(company_id) if company_id is not None else None,
                company_domain=me.get("company_domain"),
            ),
            account_name=me.get("company_name"),
        )

    async def _refresh(self, refresh_token: str, metadata: ProviderMetadata) -> TokenSet:
        data = await self._token_call({
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        })
        return TokenSet(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=expiry_from(data.get("expires_in")),
            metadata=PipedriveMetadata(api_domain=data.get("api_domain")),
        )

    async def _revoke(self, credentials: CrmCredentials, refresh_token: str | None) -> None:
        form = {"token": refresh_token or credentials.access_token}
        if refresh_token:
            form["token_type_hint"] = "refresh_token"
        await self._request("POST", f"{OAUTH_BASE}/revoke", data=form, auth=self._basic_auth)

    # ── Stages ──────────────────────────────────────────────────────────────

    async def _fetch_stages(self, credentials: CrmCredentials) -> list[Stage]:
        records = await self._data(f"{self._api(credentials)}/stages", credentials.access_token) or []
        return [
            Stage(
                id=str(s["id"]),
                name=f"{s['pipeline_name']} - {s['name']}" if s.get("pipeline_name") else s["name"],
            )
            for s in records
        ]

    # ── Deals ───────────────────────────────────────────────────────────────

    async def list_deals(self, credentials: CrmCredentials, limit: int = 100, offset: int = 0) -> list[Deal]:
        records = await self._data(
            f"{self._api(credentials)}/deals",
            credentials.access_token,
            params={"limit": limit, "start": offset, "sort": "add_time DESC"},
        )
        return [_to_deal(r) for r in records or []]

    async def get_deal(self, credentials: CrmCredentials, deal_id: str) -> Deal | None:
        payload = await self._get_or_none(
            f"{self._api(credentials)}/deals/{deal_id}", credentials.access_token
        )
        record = (payload or {}).get("data")
        return _to_deal(record) if record else None

    def _deal_fields(self, name: str | None, stage: str | None, amount: float | None,
                     contact_id: str | None, custom: dict[str, Any]) -> dict[str, Any]:
        fields: dict[str, Any] = dict(custom)
        if name is not None:
            fields["title"] = name
        if stage is not None:
            fields["stage_id"] = _numeric(stage)
        if amount is not None:
            fields["value"] = amount
        if contact_id is not None:
            fields["person_id"] = _numeric(contact_id)
        return fields

    async def create_deal(self, credentials: CrmCredentials, deal: DealCreate) -> Deal:
        response = await self._request(
            "POST",
            f"{self._api(credentials)}/deals",
            token=credentials.access_token,
            json=self._deal_fields(deal.name, deal.stage, deal.amount, deal.contact_id, deal.custom_fields),
        )
        created = _to_deal(response.json()["data"])
        logger.info("pipedrive.deal_created", deal_id=created.id)
        return created

    async def update_deal(self, credentials: CrmCredentials, deal_id: str, data: DealUpdate) -> Deal:
        response = await self._request(
            "PUT",
            f"{self._api(credentials)}/deals/{deal_id}",
            token=credentials.access_token,
            json=self._deal_fields(data.name, data.stage, data.amount, data.contact_id, data.custom_fields),
        )
        return _to_deal(response.json()["data"])

    # ── Contacts ────────────────────────────────────────────────────────────

    async def get_contacts(self, credentials: CrmCredentials, limit: int = 100, offset: int = 0) -> list[Contact]:
        records = await self._data(
            f"{self._api(credentials)}/persons",
            credentials.access_token,
            params={"limit": limit, "start": offset},
        )
        return [_to_contact(r) for r in records or []]

    async def get_contact(self, credentials: CrmCredentials, contact_id: str) -> Contact | None:
        payload = await self._get_or_none(
            f"{self._api(credentials)}/persons/{contact_id}", credentials.access_token
        )
        record = (payload or {}).get("data")
        return _to_contact(record) if record else None

    async def create_contact(self, credentials: CrmCredentials, contact: ContactCreate) -> Contact:
        fields = _person_fields(contact)
        fields.setdefault("name", contact.email or "Unknown")
        response = await self._request(
            "POST",
            f"{self._api(credentials)}/persons",
            token=credentials.access_token,
            json=fields,
        )
        return _to_contact(response.json()["data"])

    async def update_contact(self, credentials: CrmCredentials, contact_id: str, data: ContactUpdate) -> Contact:
        response = await self._request(
            "PUT",
            f"{self._api(credentials)}/persons/{contact_id}",
            token=credentials.access_token,
            json=_person_fields(data),
        )
        return _to_contact(response.json()["data"])

    # ── Outbound Sync ───────────────────────────────────────────────────────

    async def push_status(self, credentials: CrmCredentials, deal_id: str, update: DealStatusUpdate) -> None:
        fields: dict[str, Any] = {}
        if update.stage == WON_STATUS:
            fields["status"] = WON_STATUS
        elif update.stage:
            fields["stage_id"] = _numeric(update.stage)
        if update.won:
            fields["status"] = WON_STATUS
            if update.close_date:
                fields["won_time"] = f"{update.close_date.isoformat()} 00:00:00"
            if update.amount is not None:
                fields["value"] = update.amount
        if not fields:
            return
        await self._request(
            "PUT",
            f"{self._api(credentials)}/deals/{deal_id}",
            token=credentials.access_token,
            json=fields,
        )
        logger.info("pipedrive.deal_stage_updated", deal_id=deal_id, stage=update.stage)

    async def add_note(self, credentials: CrmCredentials, deal_id: str, text: str) -> None:
        await self._request(
            "POST",
            f"{self._api(credentials)}/notes",
            token=credentials.access_token,
            json={"content": text, "deal_id": _numeric(deal_id)},
        )

    async def attach_document(
        self, credentials: CrmCredentials, deal_id: str, filename: str, content: bytes
    ) -> None:
        await self._request(
            "POST",
            f"{self._api(credentials)}/files",
            token=credentials.access_token,
            files={"file": (filename, content, "application/pdf")},
            data={"deal_id": deal_id},
        )
        logger.info("pipedrive.document_attached", deal_id=deal_id)

    # ── Inbound Webhooks ────────────────────────────────────────────────────

    def classify_webhook(self, payload: Any) -> list[WebhookEvent]:
        if not isinstance(payload, dict):
            raise ValueError("Pipedrive webhook payload must be an object")
        meta = payload.get("meta")
        if not isinstance(meta, dict):
            raise ValueError("Pipedrive webhook payload has no meta object")

        event_type = str(payload.get("event") or f"{meta.get('action')}.{meta.get('object')}")
        action, _, obj = event_type.partition(".")
        obj = str(meta.get("object") or obj)
        company_id = meta.get("company_id")
        current = payload.get("current") or payload.get("data") or {}
        if not isinstance(current, dict):
            raise ValueError("Pipedrive webhook data must be an object")
        object_id = meta.get("id") or meta.get("entity_id") or current.get("id")

        kind = WebhookEventKind.UNRECOGNIZED
        stage_id = None
        if obj == "deal":
            if action in ("updated", "change") and current.get("stage_id") is not None:
                kind = WebhookEventKind.DEAL_STAGE_CHANGED
                stage_id = str(current["stage_id"])
            elif action in ("deleted", "delete"):
                kind = WebhookEventKind.DEAL_DELETED
            elif action in ("added", "create"):
                kind = WebhookEventKind.DEAL_CREATED

        return [WebhookEvent(
            provider=self.provider,
            kind=kind,
            event_type=event_type,
            object_id=str(object_id) if object_id is not None else None,
            account_identifier=str(company_id) if company_id is not None else None,
            stage_id=stage_id,
            raw=payload,
        )]
