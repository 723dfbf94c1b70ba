"""
ZendeskIntegration — files a support ticket for new feedback.

Every Zendesk account lives on its own subdomain, so the subdomain is
collected before the OAuth redirect and drives both the authorize/token
URLs and every API call afterwards.
"""

from __future__ import annotations

import re
from typing import Any, Dict, Optional

from integrations.base import (
    ArchiveContext,
    BaseIntegration,
    IntegrationContext,
    archive_failure,
    failure_from_response,
)
from integrations.errors import ConfigurationError
from integrations.formatting import issue_description, truncate
from utils.schemas import (
    EVENT_POST_CREATED,
    ArchiveResult,
    ConnectionTestResult,
    EventData,
    HookResult,
    TokenGrant,
)

_SUBDOMAIN_RE = re.compile(r"^[a-z0-9][a-z0-9-]{0,62}$")


def normalize_subdomain(value: Optional[str]) -> str:
    """Accept ``acme`` or ``acme.zendesk.com``; reject anything else."""
    sub = (value or "").strip().lower()
    if sub.endswith(".zendesk.com"):
        sub = sub[: -len(".zendesk.com")]
    if not _SUBDOMAIN_RE.match(sub):
        raise ConfigurationError(f"Invalid Zendesk subdomain: {value!r}")
    return sub


def _base(subdomain: str) -> str:
    return f"https://{subdomain}.zendesk.com"


class ZendeskIntegration(BaseIntegration):
    integration_type = "zendesk"
    display_name = "Zendesk"
    supported_events = [EVENT_POST_CREATED]
    scopes = ["read", "write"]
    pre_auth_fields = ["subdomain"]

    def _headers(self, access_token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {access_token}", "Content-Type": "application/json"}

    def _authorize_url(self, pre_auth_fields: Optional[Dict[str, str]]) -> str:
        sub = normalize_subdomain((pre_auth_fields or {}).get("subdomain"))
        return f"{_base(sub)}/oauth/authorizations/new"

    def _token_url(self, pre_auth_fields: Optional[Dict[str, str]]) -> str:
        sub = normalize_subdomain((pre_auth_fields or {}).get("subdomain"))
        return f"{_base(sub)}/oauth/tokens"

    def _refresh_url(self, config: Dict[str, Any]) -> str:
        return f"{_base(normalize_subdomain(config.get('subdomain')))}/oauth/tokens"

    async def _enrich_grant(
        self,
        grant: TokenGrant,
        payload: Dict[str, Any],
        pre_auth_fields: Dict[str, str],
    ) -> TokenGrant:
        sub = normalize_subdomain(pre_auth_fields.get("subdomain"))
        grant.external_workspace_id = sub
        grant.external_workspace_name = f"{sub}.zendesk.com"
        grant.config = {"subdomain": sub}
        return grant

    async def _deliver(self, event: EventData, target: Dict[str, Any], ctx: IntegrationContext) -> HookResult:
        sub = ctx.config.get("subdomain")
        if not sub:
            return HookResult.failed("Missing Zendesk subdomain", should_retry=False)

        ticket: Dict[str, Any] = {
            "subject": truncate(event.post.get("title") or "Untitled feedback", 250),
            "comment": {"body": issue_description(event)},
        }
        if target.get("groupId"):
            ticket["group_id"] = target["groupId"]
        if target.get("tags"):
            ticket["tags"] = list(target["tags"])

        async with self._client() as client:
            resp = await client.post(
                f"{_base(sub)}/api/v2/tickets.json",
                headers=self._headers(ctx.access_token),
                json={"ticket": ticket},
            )
        if not resp.is_success:
            return failure_from_response(resp, "Zendesk")
        ticket_id = str(resp.json().get("ticket", {}).get("id"))
        return HookResult.ok(external_id=ticket_id, external_url=f"{_base(sub)}/agent/tickets/{ticket_id}")

    async def test_connection(self, ctx: IntegrationContext) -> ConnectionTestResult:
        sub = ctx.config.get("subdomain")
        if not sub:
            return ConnectionTestResult(ok=False, error="Missing Zendesk subdomain")
        return await self._test_get(f"{_base(sub)}/api/v2/users/me.json", self._headers(ctx.access_token))

    async def archive(self, ctx: ArchiveContext) -> ArchiveResult:
        sub = ctx.config.get("subdomain")
        if not sub:
            return ArchiveResult(success=False, error="Missing Zendesk subdomain")
        async with self._client() as client:
            resp = await client.put(
                f"{_base(sub)}/api/v2/tickets/{ctx.external_id}.json",
                headers=self._headers(ctx.access_token),
                json={"ticket": {"status": "solved"}},
            )
        if resp.status_code == 404:
            return ArchiveResult(success=True, action="closed")
        if not resp.is_success:
            return archive_failure(resp, "Zendesk")
        return ArchiveResult(success=True, action="closed")
