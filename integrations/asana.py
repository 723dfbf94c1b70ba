"""
AsanaIntegration — adds a task to an Asana project for new feedback.

Asana wraps every request and response body in a ``data`` envelope.
Archiving a linked record marks the task completed.
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
from integrations.formatting import issue_description
from utils.schemas import (
    EVENT_POST_CREATED,
    ArchiveResult,
    ConnectionTestResult,
    EventData,
    HookResult,
    TokenGrant,
)

_ASANA_API = "https://app.asana.com/api/1.0"


class AsanaIntegration(BaseIntegration):
    integration_type = "asana"
    display_name = "Asana"
    supported_events = [EVENT_POST_CREATED]
    scopes = ["default"]
    authorize_url = "https://app.asana.com/-/oauth_authorize"
    token_url = "https://app.asana.com/-/oauth_token"

    def _headers(self, access_token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def _enrich_grant(
        self,
        grant: TokenGrant,
        payload: Dict[str, Any],
        pre_auth_fields: Dict[str, str],
    ) -> TokenGrant:
        async with self._client() as client:
            resp = await client.get(f"{_ASANA_API}/users/me", headers=self._headers(grant.access_token))
        if resp.is_success:
            workspaces = (resp.json().get("data") or {}).get("workspaces") or []
            if workspaces:
                grant.external_workspace_id = workspaces[0].get("gid")
                grant.external_workspace_name = workspaces[0].get("name")
        return grant

    async def _deliver(self, event: EventData, target: Dict[str, Any], ctx: IntegrationContext) -> HookResult:
        project_id = target.get("projectId") or ctx.config.get("projectId")
        if not project_id:
            return HookResult.failed("No Asana project configured", should_retry=False)

        async with self._client() as client:
            resp = await client.post(
                f"{_ASANA_API}/tasks",
                headers=self._headers(ctx.access_token),
                json={
                    "data": {
                        "name": event.post.get("title") or "Untitled feedback",
                        "notes": issue_description(event),
                        "projects": [project_id],
                    }
                },
            )
        if not resp.is_success:
            return failure_from_response(resp, "Asana")
        task = resp.json().get("data") or {}
        return HookResult.ok(external_id=task.get("gid"), external_url=task.get("permalink_url"))

    async def test_connection(self, ctx: IntegrationContext) -> ConnectionTestResult:
        return await self._test_get(f"{_ASANA_API}/users/me", self._headers(ctx.access_token))

    async def archive(self, ctx: ArchiveContext) -> ArchiveResult:
        async with self._client() as client:
            resp = await client.put(
                f"{_ASANA_API}/tasks/{ctx.external_id}",
                headers=self._headers(ctx.access_token),
                json={"data": {"completed": True}},
            )
        if resp.status_code == 404:
            return ArchiveResult(success=True, action="closed")
        if not resp.is_success:
            return archive_failure(resp, "Asana")
        return ArchiveResult(success=True, action="closed")
