"""Tests for per-provider webhook signature verification."""

from __future__ import annotations

import pytest

from conftest import WEBHOOK_SECRETS, signed_headers
from src.app.crm.errors import SignatureInvalid
from src.app.crm.schemas import CrmProvider
from src.app.crm.signatures import SIGNATURE_HEADERS, hmac_hex, verify_signature

BODY = b'{"event":"updated.deal","meta":{"id":1}}'


@pytest.mark.parametrize("provider", list(CrmProvider))
class TestVerifySignature:
    def test_valid_signature_accepted(self, provider, settings):
        verify_signature(provider, BODY, signed_headers(provider, BODY), settings)

    def test_header_name_is_case_insensitive(self, provider, settings):
        headers = {k.upper(): v for k, v in signed_headers(provider, BODY).items()}
        verify_signature(provider, BODY, headers, settings)

    def test_missing_header_rejected(self, provider, settings):
        with pytest.raises(SignatureInvalid, match="Missing signature header"):
            verify_signature(provider, BODY, {}, settings)

    def test_tampered_body_rejected(self, provider, settings):
        headers = signed_headers(provider, BODY)
        with pytest.raises(SignatureInvalid, match="Signature mismatch"):
            verify_signature(provider, BODY + b" ", headers, settings)

    def test_unconfigured_secret_rejects_everything(self, provider, settings):
        blank = settings.model_copy(update={
            "HUBSPOT_CLIENT_SECRET": "",
            "SALESFORCE_WEBHOOK_SECRET": "",
            "PIPEDRIVE_WEBHOOK_SECRET": "",
            "ZOHO_WEBHOOK_SECRET": "",
        })
        with pytest.raises(SignatureInvalid, match="No webhook secret configured"):
            verify_signature(provider, BODY, signed_headers(provider, BODY), blank)

    def test_non_ascii_signature_rejected(self, provider, settings):
        header = SIGNATURE_HEADERS[provider]
        value = "t=1;v=é" if provider is CrmProvider.HUBSPOT else "é" * 64
        with pytest.raises(SignatureInvalid):
            verify_signature(provider, BODY, {header: value}, settings)


class TestHubSpotHeader:
    def test_timestamp_is_part_of_signed_message(self, settings):
        signature = hmac_hex(WEBHOOK_SECRETS[CrmProvider.HUBSPOT], BODY)
        headers = {"x-hubspot-signature-v3": f"t=1760000000;v={signature}"}
        with pytest.raises(SignatureInvalid):
            verify_signature(CrmProvider.HUBSPOT, BODY, headers, settings)

    def test_malformed_header(self, settings):
        with pytest.raises(SignatureInvalid, match="Malformed"):
            verify_signature(CrmProvider.HUBSPOT, BODY, {"x-hubspot-signature-v3": "abc"}, settings)

    def test_uppercase_hex_accepted(self, settings):
        secret = WEBHOOK_SECRETS[CrmProvider.HUBSPOT]
        signature = hmac_hex(secret, BODY + b"1760000000").upper()
        headers = {"x-hubspot-signature-v3": f"t=1760000000; v={signature}"}
        verify_signature(CrmProvider.HUBSPOT, BODY, headers, settings)


def test_providers_do_not_share_secrets(settings):
    headers = {"x-zoho-signature": hmac_hex(WEBHOOK_SECRETS[CrmProvider.PIPEDRIVE], BODY)}
    with pytest.raises(SignatureInvalid):
        verify_signature(CrmProvider.ZOHO, BODY, headers, settings)
