"""
GitLabIntegration — opens a GitLab issue for new feedback.
"""

from __future__ import annotations

import re
from typing import Any, Dict, Optional
from urllib.parse import quote

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

_GITLAB_BASE = "https://gitlab.com"
_GITLAB_API = f"{_GITLAB_BASE}/api/v4"
# https://gitlab.com/group/project/-/issues/123
_ISSUE_URL_RE = re.compile(r"gitlab\.com/(.+?)/-/issues")


def project_path_from_url(url: Optional[str]) -> Optional[str]:
    match = _ISSUE_URL_RE.search(url or "")
    return match.group(1) if match else None


def _project_ref(project: str) -> str:
    return quote(str(project), safe="")


class GitLabIntegration(BaseIntegration):
    integration_type = "gitlab"
    display_name = "GitLab"
    supported_events = [EVENT_POST_CREATED]
    scopes = ["api"]
    authorize_url = f"{_GITLAB_BASE}/oauth/authorize"
    token_url = f"{_GITLAB_BASE}/oauth/token"

    def _headers(self, access_token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {access_token}", "Content-Type": "application/json"}

    async def _enrich_grant(
        self,
        grant: TokenGrant,
        payload: Dict[str, Any],
        pre_auth_fields: Dict[str, str],
    ) -> TokenGrant:
        async with self._client() as client:
            resp = await client.get(f"{_GITLAB_API}/user", headers=self._headers(grant.access_token))
        if resp.is_success:
            user = resp.json()
            grant.external_workspace_id = str(user.get("id")) if user.get("id") is not None else None
            grant.external_workspace_name = user.get("username")
        return grant

    async def _deliver(self, event: EventData, target: Dict[str, Any], ctx: IntegrationContext) -> HookResult:
        project = target.get("projectId") or ctx.config.get("projectId")
        if not project:
            return HookResult.failed("No GitLab project configured", should_retry=False)

        issue: Dict[str, Any] = {
            "title": truncate(event.post.get("title") or "Untitled feedback", 255),
            "description": issue_description(event),
        }
        if target.get("labels"):
            issue["labels"] = ",".join(target["labels"])

        async with self._client() as client:
            resp = await client.post(
                f"{_GITLAB_API}/projects/{_project_ref(project)}/issues",
                headers=self._headers(ctx.access_token),
                json=issue,
            )
        if not resp.is_success:
            return failure_from_response(resp, "GitLab")
        created = resp.json()
        return HookResult.ok(external_id=str(created.get("iid")), external_url=created.get("web_url"))

    async def test_connection(self, ctx: IntegrationContext) -> ConnectionTestResult:
        return await self._test_get(f"{_GITLAB_API}/user", self._headers(ctx.access_token))

    async def archive(self, ctx: ArchiveContext) -> ArchiveResult:
        project = project_path_from_url(ctx.external_url)
        if not project:
            return ArchiveResult(success=False, error="Cannot determine project from external URL")
        async with self._client() as client:
            resp = await client.put(
                f"{_GITLAB_API}/projects/{_project_ref(project)}/issues/{ctx.external_id}",
                headers=self._headers(ctx.access_token),
                json={"state_event": "close"},
            )
        if resp.status_code == 404:
            return ArchiveResult(success=True, action="closed")
        if not resp.is_success:
            return archive_failure(resp, "GitLab")
        return ArchiveResult(success=True, action="closed")
