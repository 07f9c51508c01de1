"""CRM sync engine -- keeps proposals and CRM deals in step across four providers.

Provides:
- CredentialStore: valid OAuth tokens per (user, provider), single-flight refresh
- CRMProvider adapters (providers/): HubSpot, Salesforce, Pipedrive, Zoho
- Stage mapping (mapping.py): internal status <-> CRM stage in both directions
- DealLinkRegistry: proposal <-> external deal links
- OutboundSyncCoordinator: proposal lifecycle changes pushed to linked deals
- InboundWebhookProcessor: signed CRM webhooks routed to proposals, links, contacts
- CrmIntegrationService: the management facade used by the API

Architecture: the proposal platform owns proposals and is reached through
ProposalAccessor; this package owns integrations, mappings, links, mirrored
contacts and the webhook audit trail.
"""
