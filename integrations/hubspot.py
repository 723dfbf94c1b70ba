"""
HubSpotIntegration — creates a CRM ticket for new feedback.
"""

from __future__ import annotations

from typing import Any, Dict

from integrations.base import (
    ArchiveContext,
    BaseIntegration,
    IntegrationContext,
    archive_failure,
    failure_from_response,
)
from integrations.formatting import issue_description, truncate
from utils.schemas import (
    EVENT_POST_CREATED,
    ArchiveResult,
    ConnectionTestResult,
    EventData,
    HookResult,
    TokenGrant,
)

_HUBSPOT_API = "https://api.hubapi.com"


class HubSpotIntegration(BaseIntegration):
    integration_type = "hubspot"
    display_name = "HubSpot"
    supported_events = [EVENT_POST_CREATED]
    scopes = ["tickets", "oauth"]
    authorize_url = "https://app.hubspot.com/oauth/authorize"
    token_url = f"{_HUBSPOT_API}/oauth/v1/token"

    def _headers(self, access_token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {access_token}", "Content-Type": "application/json"}

    async def _enrich_grant(
        self,
        grant: TokenGrant,
        payload: Dict[str, Any],
        pre_auth_fields: Dict[str, str],
    ) -> TokenGrant:
        async with self._client() as client:
            resp = await client.get(f"{_HUBSPOT_API}/oauth/v1/access-tokens/{grant.access_token}")
        if resp.is_success:
            info = resp.json()
            grant.external_workspace_id = str(info.get("hub_id")) if info.get("hub_id") else None
            grant.external_workspace_name = info.get("hub_domain")
            grant.config = {"hubId": grant.external_workspace_id}
        return grant

    async def _deliver(self, event: EventData, target: Dict[str, Any], ctx: IntegrationContext) -> HookResult:
        properties = {
            "subject": truncate(event.post.get("title") or "Untitled feedback", 250),
            "content": issue_description(event),
            "hs_pipeline": str(target.get("pipelineId", "0")),
            "hs_pipeline_stage": str(target.get("pipelineStageId", "1")),
        }
        async with self._client() as client:
            resp = await client.post(
                f"{_HUBSPOT_API}/crm/v3/objects/tickets",
                headers=self._headers(ctx.access_token),
                json={"properties": properties},
            )
        if not resp.is_success:
            return failure_from_response(resp, "HubSpot")

        ticket_id = resp.json().get("id")
        hub_id = ctx.config.get("hubId") or ctx.external_workspace_id
        url = f"https://app.hubspot.com/contacts/{hub_id}/ticket/{ticket_id}" if hub_id else None
        return HookResult.ok(external_id=ticket_id, external_url=url)

    async def test_connection(self, ctx: IntegrationContext) -> ConnectionTestResult:
        return await self._test_get(f"{_HUBSPOT_API}/oauth/v1/access-tokens/{ctx.access_token}", {})

    async def archive(self, ctx: ArchiveContext) -> ArchiveResult:
        async with self._client() as client:
            resp = await client.delete(
                f"{_HUBSPOT_API}/crm/v3/objects/tickets/{ctx.external_id}",
                headers=self._headers(ctx.access_token),
            )
        if resp.status_code == 404:
            return ArchiveResult(success=True, action="archived")
        if not resp.is_success:
            return archive_failure(resp, "HubSpot")
        return ArchiveResult(success=True, action="archived")
