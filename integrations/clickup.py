"""
ClickUpIntegration — creates a task in a ClickUp list for new feedback.

ClickUp OAuth tokens don't expire and there is no refresh grant.
"""

from __future__ import annotations

from typing import Any, Dict, Optional
from urllib.parse import urlencode

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

_CLICKUP_API = "https://api.clickup.com/api/v2"


class ClickUpIntegration(BaseIntegration):
    integration_type = "clickup"
    display_name = "ClickUp"
    supported_events = [EVENT_POST_CREATED]
    scopes = []
    authorize_url = "https://app.clickup.com/api"
    token_url = f"{_CLICKUP_API}/oauth/token"

    def _headers(self, access_token: str) -> Dict[str, str]:
        return {"Authorization": access_token, "Content-Type": "application/json"}

    def build_auth_url(
        self,
        state: str,
        redirect_uri: str,
        credentials: Dict[str, str],
        pre_auth_fields: Optional[Dict[str, str]] = None,
        code_challenge: Optional[str] = None,
    ) -> str:
        # ClickUp takes only client_id, redirect_uri and state.
        params = {"client_id": credentials["clientId"], "redirect_uri": redirect_uri, "state": state}
        return f"{self.authorize_url}?{urlencode(params)}"

    async def _enrich_grant(
        self,
        grant: TokenGrant,
        payload: Dict[str, Any],
        pre_auth_fields: Dict[str, str],
    ) -> TokenGrant:
        async with self._client() as client:
            resp = await client.get(f"{_CLICKUP_API}/team", headers=self._headers(grant.access_token))
        if resp.is_success:
            teams = resp.json().get("teams") or []
            if teams:
                grant.external_workspace_id = str(teams[0].get("id"))
                grant.external_workspace_name = teams[0].get("name")
        return grant

    async def _deliver(self, event: EventData, target: Dict[str, Any], ctx: IntegrationContext) -> HookResult:
        list_id = target.get("listId") or ctx.config.get("listId")
        if not list_id:
            return HookResult.failed("No ClickUp list configured", should_retry=False)

        async with self._client() as client:
            resp = await client.post(
                f"{_CLICKUP_API}/list/{list_id}/task",
                headers=self._headers(ctx.access_token),
                json={
                    "name": event.post.get("title") or "Untitled feedback",
                    "description": issue_description(event),
                },
            )
        if not resp.is_success:
            return failure_from_response(resp, "ClickUp")
        task = resp.json()
        return HookResult.ok(external_id=task.get("id"), external_url=task.get("url"))

    async def test_connection(self, ctx: IntegrationContext) -> ConnectionTestResult:
        return await self._test_get(f"{_CLICKUP_API}/user", self._headers(ctx.access_token))

    async def archive(self, ctx: ArchiveContext) -> ArchiveResult:
        async with self._client() as client:
            resp = await client.put(
                f"{_CLICKUP_API}/task/{ctx.external_id}",
                headers=self._headers(ctx.access_token),
                json={"status": "closed"},
            )
        if resp.status_code == 404:
            return ArchiveResult(success=True, action="closed")
        if not resp.is_success:
            return archive_failure(resp, "ClickUp")
        return ArchiveResult(success=True, action="closed")
