"""
SlackIntegration — posts domain events to a Slack channel.

Slack's Web API answers HTTP 200 with ``{"ok": false, "error": ...}`` for
most failures, so classification looks at the error code as well as the
status.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from integrations.base import BaseIntegration, IntegrationContext, failure_from_response
from integrations.errors import OAuthExchangeError
from integrations.formatting import (
    capitalize_status,
    escape_slack,
    post_url,
    status_emoji,
    strip_html,
    truncate,
)
from utils.schemas import (
    ALL_EVENT_TYPES,
    EVENT_CHANGELOG_PUBLISHED,
    EVENT_COMMENT_CREATED,
    EVENT_POST_CREATED,
    EVENT_POST_STATUS_CHANGED,
    ConnectionTestResult,
    EventData,
    HookResult,
    TokenGrant,
)

logger = logging.getLogger(__name__)

_SLACK_API = "https://slack.com/api"

# Error codes meaning the credential is dead; the workspace must reconnect.
_TERMINAL_ERRORS = {"invalid_auth", "token_revoked", "account_inactive", "not_authed", "token_expired"}
_RETRYABLE_ERRORS = {"ratelimited", "internal_error", "fatal_error", "service_unavailable", "request_timeout"}


class SlackIntegration(BaseIntegration):
    integration_type = "slack"
    display_name = "Slack"
    supported_events = list(ALL_EVENT_TYPES)
    scopes = ["chat:write", "channels:read", "groups:read", "team:read"]
    authorize_url = "https://slack.com/oauth/v2/authorize"
    token_url = f"{_SLACK_API}/oauth.v2.access"
    timeout = 10.0

    def _headers(self, ctx: IntegrationContext) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {ctx.access_token}",
            "Content-Type": "application/json; charset=utf-8",
        }

    async def _post_token(self, url: str, data: Dict[str, str]) -> Dict[str, Any]:
        async with self._client() as client:
            resp = await client.post(url, data=data)
        payload = resp.json() if resp.content else {}
        if resp.status_code >= 400 or not payload.get("ok"):
            raise OAuthExchangeError(f"Slack OAuth error: {payload.get('error', resp.status_code)}")
        return payload

    async def _enrich_grant(
        self,
        grant: TokenGrant,
        payload: Dict[str, Any],
        pre_auth_fields: Dict[str, str],
    ) -> TokenGrant:
        team = payload.get("team") or {}
        grant.external_workspace_id = team.get("id")
        grant.external_workspace_name = team.get("name")
        grant.config = {"botUserId": payload.get("bot_user_id")}
        return grant

    async def revoke_token(self, access_token: str, credentials: Optional[Dict[str, str]] = None) -> bool:
        async with self._client() as client:
            resp = await client.post(
                f"{_SLACK_API}/auth.revoke",
                headers={"Authorization": f"Bearer {access_token}"},
            )
        return resp.is_success and bool(resp.json().get("revoked"))

    # ── Hook handler ────────────────────────────────────────────────────

    async def _deliver(self, event: EventData, target: Dict[str, Any], ctx: IntegrationContext) -> HookResult:
        channel_id = (
            target.get("channelId")
            or target.get("channel_id")
            or ctx.config.get("channelId")
            or ctx.config.get("default_channel_id")
        )
        if not channel_id:
            return HookResult.failed("No channel configured", should_retry=False)

        message = self._build_message(event, ctx.config.get("portalUrl", ""))
        async with self._client() as client:
            resp = await client.post(
                f"{_SLACK_API}/chat.postMessage",
                headers=self._headers(ctx),
                json={"channel": channel_id, **message},
            )

        if not resp.is_success:
            return failure_from_response(resp, "Slack")
        payload = resp.json()
        if payload.get("ok"):
            logger.info("Slack message posted to %s for %s", channel_id, event.type)
            return HookResult.ok(external_id=payload.get("ts"))

        error = payload.get("error", "unknown_error")
        if error in _TERMINAL_ERRORS:
            return HookResult.failed(f"Slack auth error: {error}", should_retry=False)
        return HookResult.failed(f"Slack error: {error}", should_retry=error in _RETRYABLE_ERRORS)

    def _build_message(self, event: EventData, base_url: str) -> Dict[str, Any]:
        post = event.post
        url = post_url(event, base_url)
        title = escape_slack(post.get("title", ""))

        if event.type == EVENT_POST_CREATED:
            content = truncate(strip_html(post.get("content", "")), 280)
            return {
                "text": f"New feedback: {post.get('title', '')}",
                "blocks": [
                    _section(f"📬 *New Feedback*\n\n*<{url}|{title}>*"),
                    _section(escape_slack(content)),
                    {
                        "type": "context",
                        "elements": [
                            {
                                "type": "mrkdwn",
                                "text": f"📋 {post.get('boardSlug', '')}  •  👤 {post.get('authorEmail') or 'Anonymous'}",
                            }
                        ],
                    },
                ],
            }

        if event.type == EVENT_POST_STATUS_CHANGED:
            previous = event.data.get("previousStatus", "")
            new = event.data.get("newStatus", "")
            return {
                "text": f"Status updated: {post.get('title', '')}",
                "blocks": [
                    _section(f"{status_emoji(new)} *Status Updated*\n\n*<{url}|{title}>*"),
                    _section(f"{capitalize_status(previous)} → *{capitalize_status(new)}*"),
                ],
            }

        if event.type == EVENT_COMMENT_CREATED:
            comment = event.data.get("comment") or {}
            content = truncate(strip_html(comment.get("content", "")), 200)
            return {
                "text": f"New comment on: {post.get('title', '')}",
                "blocks": [
                    _section(f"💬 *New Comment*\n\nOn *<{url}|{title}>*"),
                    _section(f"> {escape_slack(content)}"),
                    {
                        "type": "context",
                        "elements": [{"type": "mrkdwn", "text": f"👤 {comment.get('authorEmail') or 'Anonymous'}"}],
                    },
                ],
            }

        if event.type == EVENT_CHANGELOG_PUBLISHED:
            changelog = event.data.get("changelog") or {}
            changelog_url = changelog.get("url") or f"{base_url.rstrip('/')}/changelog/{changelog.get('slug', '')}"
            content = truncate(strip_html(changelog.get("content", "")), 300)
            return {
                "text": f"New changelog: {changelog.get('title', '')}",
                "blocks": [
                    _section(
                        f"📢 *New Update Published*\n\n*<{changelog_url}|{escape_slack(changelog.get('title', ''))}>*"
                    ),
                    _section(escape_slack(content)),
                ],
            }

        return {"text": f"Event: {event.type}"}

    async def test_connection(self, ctx: IntegrationContext) -> ConnectionTestResult:
        try:
            async with self._client() as client:
                resp = await client.post(f"{_SLACK_API}/auth.test", headers=self._headers(ctx))
            payload = resp.json() if resp.content else {}
        except (httpx.HTTPError, ValueError) as exc:
            return ConnectionTestResult(ok=False, error=str(exc) or "Connection failed")
        return ConnectionTestResult(ok=bool(payload.get("ok")), error=payload.get("error"))


def _section(text: str) -> Dict[str, Any]:
    return {"type": "section", "text": {"type": "mrkdwn", "text": text}}
