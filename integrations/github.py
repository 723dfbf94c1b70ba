"""
GitHubIntegration — opens a GitHub issue for new feedback.

OAuth app tokens don't expire.  The issue number is the external id; the
repository is recovered from the issue's html URL when closing it.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, Optional

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

_GITHUB_API = "https://api.github.com"
_ISSUE_URL_RE = re.compile(r"github\.com/([^/]+/[^/]+)/issues")


def owner_repo_from_url(url: Optional[str]) -> Optional[str]:
    match = _ISSUE_URL_RE.search(url or "")
    return match.group(1) if match else None


class GitHubIntegration(BaseIntegration):
    integration_type = "github"
    display_name = "GitHub"
    supported_events = [EVENT_POST_CREATED]
    scopes = ["repo"]
    authorize_url = "https://github.com/login/oauth/authorize"
    token_url = "https://github.com/login/oauth/access_token"

    def _headers(self, access_token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    async def _enrich_grant(
        self,
        grant: TokenGrant,
        payload: Dict[str, Any],
        pre_auth_fields: Dict[str, str],
    ) -> TokenGrant:
        async with self._client() as client:
            resp = await client.get(f"{_GITHUB_API}/user", headers=self._headers(grant.access_token))
        if resp.is_success:
            user = resp.json()
            grant.external_workspace_id = str(user.get("id")) if user.get("id") is not None else None
            grant.external_workspace_name = user.get("login")
        return grant

    async def _deliver(self, event: EventData, target: Dict[str, Any], ctx: IntegrationContext) -> HookResult:
        repo = target.get("repo") or ctx.config.get("repo")
        if not repo or "/" not in repo:
            return HookResult.failed("No GitHub repository configured", should_retry=False)

        issue: Dict[str, Any] = {
            "title": truncate(event.post.get("title") or "Untitled feedback", 256),
            "body": issue_description(event),
        }
        if target.get("labels"):
            issue["labels"] = list(target["labels"])

        async with self._client() as client:
            resp = await client.post(
                f"{_GITHUB_API}/repos/{repo}/issues", headers=self._headers(ctx.access_token), json=issue
            )
        if not resp.is_success:
            return failure_from_response(resp, "GitHub")
        created = resp.json()
        logger.info("Created GitHub issue %s#%s for post %s", repo, created.get("number"), event.primary_id)
        return HookResult.ok(external_id=str(created.get("number")), external_url=created.get("html_url"))

    async def test_connection(self, ctx: IntegrationContext) -> ConnectionTestResult:
        return await self._test_get(f"{_GITHUB_API}/user", self._headers(ctx.access_token))

    async def archive(self, ctx: ArchiveContext) -> ArchiveResult:
        repo = owner_repo_from_url(ctx.external_url)
        if not repo:
            return ArchiveResult(success=False, error="Cannot determine repo from external URL")
        async with self._client() as client:
            resp = await client.patch(
                f"{_GITHUB_API}/repos/{repo}/issues/{ctx.external_id}",
                headers=self._headers(ctx.access_token),
                json={"state": "closed"},
            )
        # 422: already closed or locked
        if resp.status_code in (404, 422):
            return ArchiveResult(success=True, action="closed")
        if not resp.is_success:
            return archive_failure(resp, "GitHub")
        return ArchiveResult(success=True, action="closed")
