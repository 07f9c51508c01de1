"""CRM provider abstract base class -- the uniform interface all four CRM adapters implement.

Every provider (HubSpot, Salesforce, Pipedrive, Zoho) implements this ABC.
The credential store, the outbound coordinator, the inbound webhook
processor and the management service only ever talk to providers through
it. Provider-specific field names, endpoints and payload shapes live in the
concrete adapters; nothing here assumes a field name.

Shared behaviour kept in the base:
- HTTP plumbing: one httpx.AsyncClient per call with the configured timeout,
  tenacity retry on transport errors for reads, httpx errors translated into
  the CrmError taxonomy
- refresh(): rejected refresh tokens become AuthError(refresh_failed)
- list_stages(): best effort, empty list on provider error
- disconnect(): best-effort revocation, failures logged and swallowed
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.app.config import Settings
from src.app.crm.errors import (
    AuthError,
    CrmError,
    ProviderRequestError,
    translate_http_error,
)
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
)

logger = structlog.get_logger(__name__)

# Reads are retried on transport failures only. Writes are never retried:
# a retried note or file upload would be duplicated in the CRM.
_read_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type((httpx.ConnectError, httpx.TimeoutException)),
    reraise=True,
)


def expiry_from(expires_in: Any, default_seconds: int | None = None) -> datetime | None:
    """Absolute expiry from an ``expires_in`` seconds value."""
    seconds = expires_in if expires_in is not None else default_seconds
    if seconds is None:
        return None
    return datetime.now(timezone.utc) + timedelta(seconds=int(seconds))


class CRMProvider(ABC):
    """Abstract interface for one external CRM.

    Args:
        settings: Application settings (client ids, secrets, redirect URIs, timeout).
        transport: Optional httpx transport, used by tests to mock the CRM API.
    """

    provider: CrmProvider

    def __init__(
        self,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._timeout = settings.CRM_HTTP_TIMEOUT_SECONDS
        self._transport = transport

    @property
    def redirect_uri(self) -> str:
        return self._settings.redirect_uri(self.provider.value)

    # ── HTTP Plumbing ───────────────────────────────────────────────────────

    def _client(self) -> httpx.AsyncClient:
        """Create a new httpx client with the fixed CRM timeout."""
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    def _auth_headers(self, access_token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {access_token}"}

    @_read_retry
    async def _send_read(self, client: httpx.AsyncClient, method: str, url: str, **kwargs: Any) -> httpx.Response:
        response = await client.request(method, url, **kwargs)
        response.raise_for_status()
        return response

    async def _send_write(self, client: httpx.AsyncClient, method: str, url: str, **kwargs: Any) -> httpx.Response:
        response = await client.request(method, url, **kwargs)
        response.raise_for_status()
        return response

    async def _request(
        self,
        method: str,
        url: str,
        *,
        token: str | None = None,
        headers: dict[str, str] | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Perform one API call and translate failures into CrmError subclasses."""
        merged = dict(headers or {})
        if token is not None:
            merged.update(self._auth_headers(token))
        send = self._send_read if method.upper() == "GET" else self._send_write
        try:
            async with self._client() as client:
                return await send(client, method, url, headers=merged, **kwargs)
        except httpx.HTTPError as exc:
            raise translate_http_error(exc, self.provider.value) from exc

    async def _get_json(self, url: str, token: str, **kwargs: Any) -> Any:
        response = await self._request("GET", url, token=token, **kwargs)
        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    async def _get_or_none(self, url: str, token: str, **kwargs: Any) -> Any | None:
        """GET that maps 404 to None."""
        try:
            return await self._get_json(url, token, **kwargs)
        except ProviderRequestError as exc:
            if exc.status_code == 404:
                return None
            raise

    # ── OAuth ───────────────────────────────────────────────────────────────

    @abstractmethod
    def authorization_url(self, user_id: str) -> str:
        """Build the consent URL, carrying user_id as the opaque state."""
        ...

    @abstractmethod
    async def exchange_code(self, code: str) -> TokenSet:
        """Exchange an authorization code; metadata includes the webhook routing id."""
        ...

    @abstractmethod
    async def _refresh(self, refresh_token: str, metadata: ProviderMetadata) -> TokenSet:
        """Provider-specific refresh call."""
        ...

    async def refresh(self, refresh_token: str, metadata: ProviderMetadata) -> TokenSet:
        """Refresh the access token.

        Raises:
            AuthError(refresh_failed): The provider rejected the refresh token.
            ProviderUnavailable: Transient failure; the integration stays connected.
        """
        try:
            return await self._refresh(refresh_token, metadata)
        except (AuthError, ProviderRequestError) as exc:
            raise AuthError(
                f"{self.provider.value} rejected the refresh token: {exc.message}",
                provider=self.provider.value,
                reason=AuthError.REFRESH_FAILED,
            ) from exc

    @abstractmethod
    async def _revoke(self, credentials: CrmCredentials, refresh_token: str | None) -> None:
        """Provider-specific token revocation."""
        ...

    async def disconnect(self, credentials: CrmCredentials, refresh_token: str | None = None) -> None:
        """Revoke tokens at the provider. Never raises."""
        try:
            await self._revoke(credentials, refresh_token)
            logger.info("crm.token_revoked", provider=self.provider.value)
        except CrmError as exc:
            logger.warning(
                "crm.token_revoke_failed",
                provider=self.provider.value,
                error=exc.message,
            )

    # ── Stages ──────────────────────────────────────────────────────────────

    @abstractmethod
    async def _fetch_stages(self, credentials: CrmCredentials) -> list[Stage]:
        """Provider-specific stage listing.

        Stage.id is the value the provider accepts when writing a deal's stage.
        """
        ...

    async def list_stages(self, credentials: CrmCredentials) -> list[Stage]:
        """Pipeline stages for the mapping UI; empty list on provider error."""
        try:
            return await self._fetch_stages(credentials)
        except CrmError as exc:
            logger.warning(
                "crm.list_stages_failed",
                provider=self.provider.value,
                error=exc.message,
            )
            return []

    # ── Deals ───────────────────────────────────────────────────────────────

    @abstractmethod
    async def list_deals(self, credentials: CrmCredentials, limit: int = 100, offset: int = 0) -> list[Deal]:
        """List deals, newest first where the API allows."""
        ...

    @abstractmethod
    async def get_deal(self, credentials: CrmCredentials, deal_id: str) -> Deal | None:
        """Fetch a deal by external ID, None if it does not exist."""
        ...

    @abstractmethod
    async def create_deal(self, credentials: CrmCredentials, deal: DealCreate) -> Deal:
        """Create a deal, return it with its external ID."""
        ...

    @abstractmethod
    async def update_deal(self, credentials: CrmCredentials, deal_id: str, data: DealUpdate) -> Deal:
        """Update deal fields by external ID."""
        ...

    # ── Contacts ────────────────────────────────────────────────────────────

    @abstractmethod
    async def get_contacts(self, credentials: CrmCredentials, limit: int = 100, offset: int = 0) -> list[Contact]:
        """List contacts."""
        ...

    @abstractmethod
    async def get_contact(self, credentials: CrmCredentials, contact_id: str) -> Contact | None:
        """Fetch a contact by external ID, None if it does not exist."""
        ...

    @abstractmethod
    async def create_contact(self, credentials: CrmCredentials, contact: ContactCreate) -> Contact:
        """Create a contact, return it with its external ID."""
        ...

    @abstractmethod
    async def update_contact(self, credentials: CrmCredentials, contact_id: str, data: ContactUpdate) -> Contact:
        """Update contact fields by external ID."""
        ...

    # ── Outbound Sync ───────────────────────────────────────────────────────

    @abstractmethod
    async def push_status(self, credentials: CrmCredentials, deal_id: str, update: DealStatusUpdate) -> None:
        """Write the stage (and closing fields when won) onto a deal."""
        ...

    @abstractmethod
    async def add_note(self, credentials: CrmCredentials, deal_id: str, text: str) -> None:
        """Append a note/activity to a deal."""
        ...

    @abstractmethod
    async def attach_document(
        self, credentials: CrmCredentials, deal_id: str, filename: str, content: bytes
    ) -> None:
        """Upload a file and attach it to a deal."""
        ...

    # ── Inbound Webhooks ────────────────────────────────────────────────────

    @abstractmethod
    def classify_webhook(self, payload: Any) -> list[WebhookEvent]:
        """Split a verified webhook payload into classified events.

        Raises:
            ValueError: The payload does not have the provider's shape.
        """
        ...
