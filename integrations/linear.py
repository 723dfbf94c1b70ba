"""
LinearIntegration — files a Linear issue for new feedback.

Linear only speaks GraphQL; every call is a POST to one endpoint and
application errors come back as a 200 with an ``errors`` list.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

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

logger = logging.getLogger(__name__)

_LINEAR_GRAPHQL = "https://api.linear.app/graphql"

_ISSUE_CREATE = """
mutation IssueCreate($input: IssueCreateInput!) {
  issueCreate(input: $input) { success issue { id identifier url } }
}
"""

_ISSUE_ARCHIVE = """
mutation IssueArchive($id: String!) {
  issueArchive(id: $id) { success }
}
"""

_VIEWER = "query { viewer { id } organization { id name } }"


def _graphql_error(body: Dict[str, Any]) -> Optional[str]:
    errors = body.get("errors") or []
    if errors:
        return errors[0].get("message") or "Linear GraphQL error"
    return None


class LinearIntegration(BaseIntegration):
    integration_type = "linear"
    display_name = "Linear"
    supported_events = [EVENT_POST_CREATED]
    scopes = ["read", "write"]
    scope_separator = ","
    authorize_url = "https://linear.app/oauth/authorize"
    token_url = "https://api.linear.app/oauth/token"

    def _headers(self, access_token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {access_token}", "Content-Type": "application/json"}

    async def _graphql(
        self, access_token: str, query: str, variables: Optional[Dict[str, Any]] = None
    ) -> httpx.Response:
        async with self._client() as client:
            return await client.post(
                _LINEAR_GRAPHQL,
                headers=self._headers(access_token),
                json={"query": query, "variables": variables or {}},
            )

    async def _enrich_grant(
        self,
        grant: TokenGrant,
        payload: Dict[str, Any],
        pre_auth_fields: Dict[str, str],
    ) -> TokenGrant:
        resp = await self._graphql(grant.access_token, _VIEWER)
        if resp.is_success:
            org = (resp.json().get("data") or {}).get("organization") or {}
            grant.external_workspace_id = org.get("id")
            grant.external_workspace_name = org.get("name")
        return grant

    async def _deliver(self, event: EventData, target: Dict[str, Any], ctx: IntegrationContext) -> HookResult:
        team_id = target.get("teamId") or ctx.config.get("teamId")
        if not team_id:
            return HookResult.failed("No Linear team configured", should_retry=False)

        issue_input = {
            "teamId": team_id,
            "title": truncate(event.post.get("title") or "Untitled feedback", 255),
            "description": issue_description(event),
        }
        if target.get("labelIds"):
            issue_input["labelIds"] = list(target["labelIds"])

        resp = await self._graphql(ctx.access_token, _ISSUE_CREATE, {"input": issue_input})
        if not resp.is_success:
            return failure_from_response(resp, "Linear")
        body = resp.json()
        error = _graphql_error(body)
        if error:
            return HookResult.failed(f"Linear: {error}", should_retry=False)

        issue = ((body.get("data") or {}).get("issueCreate") or {}).get("issue") or {}
        logger.info("Created Linear issue %s for post %s", issue.get("identifier"), event.primary_id)
        return HookResult.ok(external_id=issue.get("id"), external_url=issue.get("url"))

    async def test_connection(self, ctx: IntegrationContext) -> ConnectionTestResult:
        try:
            resp = await self._graphql(ctx.access_token, _VIEWER)
        except httpx.HTTPError as exc:
            return ConnectionTestResult(ok=False, error=str(exc) or "Connection failed")
        if not resp.is_success:
            return ConnectionTestResult(ok=False, error=f"Linear API {resp.status_code}")
        error = _graphql_error(resp.json())
        if error:
            return ConnectionTestResult(ok=False, error=error)
        return ConnectionTestResult(ok=True)

    async def archive(self, ctx: ArchiveContext) -> ArchiveResult:
        resp = await self._graphql(ctx.access_token, _ISSUE_ARCHIVE, {"id": ctx.external_id})
        if resp.status_code == 404:
            return ArchiveResult(success=True, action="archived")
        if not resp.is_success:
            return archive_failure(resp, "Linear")
        error = _graphql_error(resp.json())
        if error:
            return ArchiveResult(success=False, error=error)
        return ArchiveResult(success=True, action="archived")
