"""Inbound webhook signature verification.

- HubSpot: ``x-hubspot-signature-v3: t=<unix ts>;v=<hex>``, HMAC-SHA256 over
  ``raw_body + ts`` keyed with the app's client secret.
- Salesforce / Pipedrive / Zoho: hex HMAC-SHA256 of the raw body keyed with
  the provider's webhook secret, in ``x-sfdc-signature``,
  ``x-pipedrive-signature`` and ``x-zoho-signature`` respectively.

A provider without a configured secret rejects every delivery.
"""

from __future__ import annotations

import hashlib
import hmac
from collections.abc import Mapping

import structlog

from src.app.config import Settings
from src.app.crm.errors import SignatureInvalid
from src.app.crm.schemas import CrmProvider

logger = structlog.get_logger(__name__)

SIGNATURE_HEADERS: dict[CrmProvider, str] = {
    CrmProvider.HUBSPOT: "x-hubspot-signature-v3",
    CrmProvider.SALESFORCE: "x-sfdc-signature",
    CrmProvider.PIPEDRIVE: "x-pipedrive-signature",
    CrmProvider.ZOHO: "x-zoho-signature",
}


def hmac_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def _secret_for(provider: CrmProvider, settings: Settings) -> str:
    match provider:
        case CrmProvider.HUBSPOT:
            return settings.HUBSPOT_CLIENT_SECRET
        case CrmProvider.SALESFORCE:
            return settings.SALESFORCE_WEBHOOK_SECRET
        case CrmProvider.PIPEDRIVE:
            return settings.PIPEDRIVE_WEBHOOK_SECRET
        case CrmProvider.ZOHO:
            return settings.ZOHO_WEBHOOK_SECRET


def _parse_hubspot_header(value: str) -> tuple[str, str]:
    """Split ``t=<ts>;v=<sig>`` into (timestamp, signature)."""
    parts: dict[str, str] = {}
    for chunk in value.split(";"):
        key, sep, val = chunk.strip().partition("=")
        if sep:
            parts[key.strip()] = val.strip()
    return parts.get("t", ""), parts.get("v", "")


def verify_signature(
    provider: CrmProvider,
    raw_body: bytes,
    headers: Mapping[str, str],
    settings: Settings,
) -> None:
    """Check a webhook delivery's signature.

    Args:
        provider: Which CRM sent the delivery.
        raw_body: The request body exactly as received.
        headers: Request headers; names are matched case-insensitively.
        settings: Holds the signing secrets.

    Raises:
        SignatureInvalid: Secret not configured, header missing, or mismatch.
    """
    secret = _secret_for(provider, settings)
    if not secret:
        logger.warning("webhook.secret_not_configured", provider=provider.value)
        raise SignatureInvalid("No webhook secret configured", provider=provider.value)

    lowered = {k.lower(): v for k, v in headers.items()}
    provided = lowered.get(SIGNATURE_HEADERS[provider], "").strip()
    if not provided:
        raise SignatureInvalid("Missing signature header", provider=provider.value)

    if provider is CrmProvider.HUBSPOT:
        timestamp, signature = _parse_hubspot_header(provided)
        if not timestamp or not signature:
            raise SignatureInvalid("Malformed HubSpot signature header", provider=provider.value)
        expected = hmac_hex(secret, raw_body + timestamp.encode("utf-8"))
        provided = signature
    else:
        expected = hmac_hex(secret, raw_body)

    if not hmac.compare_digest(provided.lower().encode("utf-8"), expected.encode("utf-8")):
        raise SignatureInvalid("Signature mismatch", provider=provider.value)
