"""
JiraIntegration — creates a Jira issue for new feedback and closes it on
cascade delete.

Atlassian's OAuth 2.0 (3LO) tokens address a site through its *cloud id*,
discovered from ``accessible-resources`` after the code exchange.  Refresh
tokens rotate on every refresh.
"""

from __future__ import annotations

import logging
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

logger = logging.getLogger(__name__)

_ATLASSIAN_API = "https://api.atlassian.com"


def _api_base(cloud_id: str) -> str:
    return f"{_ATLASSIAN_API}/ex/jira/{cloud_id}/rest/api/3"


def _adf(text: str) -> Dict[str, Any]:
    """Wrap plain text in an Atlassian Document Format document."""
    return {
        "type": "doc",
        "version": 1,
        "content": [
            {"type": "paragraph", "content": [{"type": "text", "text": line}]}
            for line in text.splitlines()
            if line.strip()
        ],
    }


class JiraIntegration(BaseIntegration):
    integration_type = "jira"
    display_name = "Jira"
    supported_events = [EVENT_POST_CREATED]
    scopes = ["read:jira-work", "write:jira-work", "read:jira-user", "offline_access"]
    authorize_url = "https://auth.atlassian.com/authorize"
    token_url = "https://auth.atlassian.com/oauth/token"
    timeout = 15.0

    def _extra_auth_params(self) -> Dict[str, str]:
        return {"audience": "api.atlassian.com", "prompt": "consent"}

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
            resp = await client.get(
                f"{_ATLASSIAN_API}/oauth/token/accessible-resources",
                headers=self._headers(grant.access_token),
            )
        resp.raise_for_status()
        sites = resp.json()
        if sites:
            site = sites[0]
            grant.external_workspace_id = site.get("id")
            grant.external_workspace_name = site.get("name")
            grant.config = {"cloudId": site.get("id"), "siteUrl": site.get("url")}
        return grant

    async def _deliver(self, event: EventData, target: Dict[str, Any], ctx: IntegrationContext) -> HookResult:
        cloud_id = ctx.config.get("cloudId")
        project_key = target.get("projectKey") or ctx.config.get("projectKey")
        if not (cloud_id and project_key):
            return HookResult.failed("Missing Jira cloudId or project", should_retry=False)

        issue_type = target.get("issueTypeId")
        fields: Dict[str, Any] = {
            "project": {"key": project_key},
            "summary": truncate(event.post.get("title", "") or "Untitled feedback", 250),
            "description": _adf(issue_description(event)),
            "issuetype": {"id": issue_type} if issue_type else {"name": target.get("issueTypeName", "Task")},
        }
        async with self._client() as client:
            resp = await client.post(
                f"{_api_base(cloud_id)}/issue",
                headers=self._headers(ctx.access_token),
                json={"fields": fields},
            )
        if not resp.is_success:
            return failure_from_response(resp, "Jira")

        issue = resp.json()
        site_url = ctx.config.get("siteUrl", "")
        browse_url = f"{site_url}/browse/{issue.get('key')}" if site_url else None
        logger.info("Created Jira issue %s for post %s", issue.get("key"), event.primary_id)
        return HookResult.ok(external_id=issue.get("id"), external_url=browse_url)

    async def test_connection(self, ctx: IntegrationContext) -> ConnectionTestResult:
        cloud_id = ctx.config.get("cloudId")
        if not cloud_id:
            return ConnectionTestResult(ok=False, error="Missing Jira cloudId")
        return await self._test_get(f"{_api_base(cloud_id)}/myself", self._headers(ctx.access_token))

    async def archive(self, ctx: ArchiveContext) -> ArchiveResult:
        cloud_id = ctx.config.get("cloudId")
        if not cloud_id:
            return ArchiveResult(success=False, error="Missing Jira cloudId")

        url = f"{_api_base(cloud_id)}/issue/{ctx.external_id}/transitions"
        headers = self._headers(ctx.access_token)
        async with self._client() as client:
            trans_resp = await client.get(url, headers=headers)
            if trans_resp.status_code == 404:
                return ArchiveResult(success=True, action="closed")
            if not trans_resp.is_success:
                return archive_failure(trans_resp, "Jira transitions")

            transitions = trans_resp.json().get("transitions", [])
            terminal = next(
                (t for t in transitions if t.get("to", {}).get("statusCategory", {}).get("key") == "done"),
                None,
            )
            if terminal is None:
                return ArchiveResult(success=False, error="No terminal transition found (Done/Closed)")

            exec_resp = await client.post(url, headers=headers, json={"transition": {"id": terminal["id"]}})
        if not exec_resp.is_success:
            return archive_failure(exec_resp, "Jira transition")
        return ArchiveResult(success=True, action="closed")
