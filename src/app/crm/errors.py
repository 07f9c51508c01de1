"""CRM sync error taxonomy.

- AuthError: no usable credentials (``unauthenticated``) or the provider
  rejected the refresh token (``refresh_failed``). The latter disconnects
  the integration.
- ProviderUnavailable: timeout, connection failure or 5xx.
- ProviderRequestError: the provider rejected the request (4xx).
- ValidationError: missing/inactive integration or missing mapping.
- SignatureInvalid: inbound webhook failed verification.
- ProposalServiceError: the proposal platform call failed.

``classification`` is the stable string carried into SyncResult entries.
"""

from __future__ import annotations

import httpx


class CrmError(Exception):
    """Base class for CRM sync errors."""

    classification = "crm_error"

    def __init__(self, message: str, provider: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.provider = provider


class AuthError(CrmError):
    """Credentials are missing or could not be refreshed."""

    UNAUTHENTICATED = "unauthenticated"
    REFRESH_FAILED = "refresh_failed"

    def __init__(self, message: str, provider: str | None = None, reason: str = UNAUTHENTICATED) -> None:
        super().__init__(message, provider)
        self.reason = reason

    @property
    def classification(self) -> str:  # type: ignore[override]
        return f"auth_error.{self.reason}"


class ProviderUnavailable(CrmError):
    """The provider timed out, refused the connection, or returned 5xx."""

    classification = "provider_unavailable"


class ProviderRequestError(CrmError):
    """The provider rejected the request with a 4xx status."""

    classification = "provider_request_error"

    def __init__(self, message: str, provider: str | None = None, status_code: int | None = None) -> None:
        super().__init__(message, provider)
        self.status_code = status_code


class ValidationError(CrmError):
    """A precondition for the operation is not met (nothing was attempted)."""

    classification = "validation_error"


class SignatureInvalid(CrmError):
    """Webhook signature missing or not matching."""

    classification = "signature_invalid"


def translate_http_error(exc: Exception, provider: str) -> CrmError:
    """Map an httpx exception onto the taxonomy.

    401/403 become AuthError(unauthenticated), other 4xx ProviderRequestError,
    5xx and transport failures ProviderUnavailable.
    """
    if isinstance(exc, CrmError):
        return exc
    if isinstance(exc, httpx.HTTPStatusError):
        code = exc.response.status_code
        detail = f"{provider} returned HTTP {code} for {exc.request.method} {exc.request.url.path}"
        if code in (401, 403):
            return AuthError(detail, provider=provider)
        if code >= 500 or code == 429:
            return ProviderUnavailable(detail, provider=provider)
        return ProviderRequestError(detail, provider=provider, status_code=code)
    if isinstance(exc, httpx.TimeoutException):
        return ProviderUnavailable(f"{provider} request timed out", provider=provider)
    if isinstance(exc, httpx.TransportError):
        return ProviderUnavailable(f"{provider} connection failed: {exc}", provider=provider)
    return CrmError(str(exc), provider=provider)


class ProposalServiceError(CrmError):
    """The proposal platform could not be read or updated."""

    classification = "proposal_service_error"
