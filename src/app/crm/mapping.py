"""Stage mapping lookup in both directions.

Mappings are directionless (internal status, CRM stage id, CRM stage name)
triples. Outbound sync looks them up by internal status; inbound sync looks
them up by the stage id or name the CRM reports.

DEFAULT_SIGNED_STAGES is the only built-in fallback: when a proposal is
signed and the user mapped nothing for ``signed``, each provider's
closed-won stage is used. No other status has a default.
"""

from __future__ import annotations

from src.app.crm.schemas import CrmProvider, ProposalStatus, StageMappingData

DEFAULT_SIGNED_STAGES: dict[CrmProvider, str] = {
    CrmProvider.HUBSPOT: "closedwon",
    CrmProvider.SALESFORCE: "Closed Won",
    CrmProvider.PIPEDRIVE: "won",
    CrmProvider.ZOHO: "Closed Won",
}


def resolve_target_stage(
    mappings: list[StageMappingData],
    status: ProposalStatus,
    provider: CrmProvider,
) -> str | None:
    """Return the CRM stage to push for a proposal status.

    The configured stage id wins over the stage name. Falls back to
    DEFAULT_SIGNED_STAGES for ``signed`` only; returns None otherwise.
    """
    for mapping in mappings:
        if mapping.internal_status == status:
            target = mapping.crm_stage_id or mapping.crm_stage_name
            if target:
                return target
    if status == ProposalStatus.SIGNED:
        return DEFAULT_SIGNED_STAGES[provider]
    return None


def reverse_lookup(
    mappings: list[StageMappingData],
    *,
    stage_id: str | None = None,
    stage_name: str | None = None,
) -> ProposalStatus | None:
    """Return the internal status mapped to a CRM stage.

    HubSpot and Pipedrive report stage ids; Salesforce and Zoho report
    stage names. Ids are compared as strings since Pipedrive sends ints.
    """
    if stage_id is not None:
        wanted = str(stage_id)
        for mapping in mappings:
            if mapping.crm_stage_id is not None and mapping.crm_stage_id == wanted:
                return mapping.internal_status
    if stage_name is not None:
        for mapping in mappings:
            if mapping.crm_stage_name is not None and mapping.crm_stage_name == stage_name:
                return mapping.internal_status
    return None
