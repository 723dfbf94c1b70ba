"""
TeamsIntegration — posts domain events to a Microsoft Teams channel via
Microsoft Graph.
"""

from __future__ import annotations

import html
import logging
from typing import Any, Dict

from integrations.base import BaseIntegration, IntegrationContext, failure_from_response
from integrations.formatting import summarize
from utils.schemas import ALL_EVENT_TYPES, ConnectionTestResult, EventData, HookResult, TokenGrant

logger = logging.getLogger(__name__)

_LOGIN_BASE = "https://login.microsoftonline.com/common/oauth2/v2.0"
_GRAPH_API = "https://graph.microsoft.com/v1.0"


class TeamsIntegration(BaseIntegration):
    integration_type = "teams"
    display_name = "Microsoft Teams"
    supported_events = list(ALL_EVENT_TYPES)
    scopes = [
        "offline_access",
        "User.Read",
        "Team.ReadBasic.All",
        "Channel.ReadBasic.All",
        "ChannelMessage.Send",
    ]
    authorize_url = f"{_LOGIN_BASE}/authorize"
    token_url = f"{_LOGIN_BASE}/token"
    timeout = 15.0

    def _extra_auth_params(self) -> Dict[str, str]:
        return {"response_mode": "query"}

    async def _enrich_grant(
        self,
        grant: TokenGrant,
        payload: Dict[str, Any],
        pre_auth_fields: Dict[str, str],
    ) -> TokenGrant:
        async with self._client() as client:
            resp = await client.get(
                f"{_GRAPH_API}/organization",
                headers={"Authorization": f"Bearer {grant.access_token}"},
            )
        if resp.is_success:
            orgs = resp.json().get("value") or []
            if orgs:
                grant.external_workspace_id = orgs[0].get("id")
                grant.external_workspace_name = orgs[0].get("displayName")
        return grant

    async def _deliver(self, event: EventData, target: Dict[str, Any], ctx: IntegrationContext) -> HookResult:
        team_id = target.get("teamId") or ctx.config.get("teamId")
        channel_id = target.get("channelId") or ctx.config.get("channelId")
        if not (team_id and channel_id):
            return HookResult.failed("No team/channel configured", should_retry=False)

        summary = summarize(event, ctx.config.get("portalUrl", ""))
        content = (
            f"<p><strong>{html.escape(summary['title'])}</strong></p>"
            f"<p>{html.escape(summary['body'])}</p>"
            f"<p><a href=\"{html.escape(summary['url'])}\">View</a></p>"
        )
        async with self._client() as client:
            resp = await client.post(
                f"{_GRAPH_API}/teams/{team_id}/channels/{channel_id}/messages",
                headers={"Authorization": f"Bearer {ctx.access_token}"},
                json={"body": {"contentType": "html", "content": content}},
            )
        if not resp.is_success:
            return failure_from_response(resp, "Teams")
        message = resp.json()
        return HookResult.ok(external_id=message.get("id"), external_url=message.get("webUrl"))

    async def test_connection(self, ctx: IntegrationContext) -> ConnectionTestResult:
        return await self._test_get(f"{_GRAPH_API}/me", {"Authorization": f"Bearer {ctx.access_token}"})
