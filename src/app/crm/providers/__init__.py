"""CRM provider adapters -- one concrete CRMProvider per supported CRM.

- HubSpotProvider: CRM v3 objects API, portal id routing
- SalesforceProvider: REST v58.0 on the org instance, org id routing
- PipedriveProvider: api/v1 on the company api_domain, company id routing
- ZohoProvider: CRM v5 on the data-center api_domain, account domain routing

get_provider() is the single dispatch point from a CrmProvider value to an
adapter instance.
"""

from __future__ import annotations

from typing import assert_never

import httpx

from src.app.config import Settings
from src.app.crm.providers.base import CRMProvider
from src.app.crm.providers.hubspot import HubSpotProvider
from src.app.crm.providers.pipedrive import PipedriveProvider
from src.app.crm.providers.salesforce import SalesforceProvider
from src.app.crm.providers.zoho import ZohoProvider
from src.app.crm.schemas import CrmProvider


def get_provider(
    provider: CrmProvider,
    settings: Settings,
    transport: httpx.AsyncBaseTransport | None = None,
) -> CRMProvider:
    """Instantiate the adapter for ``provider``."""
    match provider:
        case CrmProvider.HUBSPOT:
            return HubSpotProvider(settings, transport=transport)
        case CrmProvider.SALESFORCE:
            return SalesforceProvider(settings, transport=transport)
        case CrmProvider.PIPEDRIVE:
            return PipedriveProvider(settings, transport=transport)
        case CrmProvider.ZOHO:
            return ZohoProvider(settings, transport=transport)
        case _:
            assert_never(provider)


__all__ = [
    "CRMProvider",
    "HubSpotProvider",
    "SalesforceProvider",
    "PipedriveProvider",
    "ZohoProvider",
    "get_provider",
]
