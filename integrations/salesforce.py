"""
SalesforceIntegration — opens a Case for new feedback.

Uses the authorization-code flow with PKCE.  Every REST call goes to the
org's ``instance_url`` returned by the token endpoint, which is kept in the
connection config.
"""

from __future__ import annotations

import logging
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

_LOGIN_BASE = "https://login.salesforce.com/services/oauth2"
_API_VERSION = "v59.0"
# Salesforce omits expires_in; sessions default to two hours.
_DEFAULT_SESSION_SECONDS = 7200


class SalesforceIntegration(BaseIntegration):
    integration_type = "salesforce"
    display_name = "Salesforce"
    supported_events = [EVENT_POST_CREATED]
    scopes = ["api", "refresh_token"]
    authorize_url = f"{_LOGIN_BASE}/authorize"
    token_url = f"{_LOGIN_BASE}/token"
    uses_pkce = True
    timeout = 15.0

    def _headers(self, access_token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {access_token}", "Content-Type": "application/json"}

    def _sobjects(self, config: Dict[str, Any]) -> str:
        return f"{config['instanceUrl'].rstrip('/')}/services/data/{_API_VERSION}/sobjects"

    async def _enrich_grant(
        self,
        grant: TokenGrant,
        payload: Dict[str, Any],
        pre_auth_fields: Dict[str, str],
    ) -> TokenGrant:
        instance_url = payload.get("instance_url", "")
        # identity URL looks like https://login.salesforce.com/id/<orgId>/<userId>
        identity = (payload.get("id") or "").rstrip("/").split("/")
        grant.external_workspace_id = identity[-2] if len(identity) >= 2 else None
        grant.external_workspace_name = instance_url.replace("https://", "") or None
        grant.config = {"instanceUrl": instance_url}
        if grant.expires_in is None:
            grant.expires_in = _DEFAULT_SESSION_SECONDS
        return grant

    async def refresh_access_token(
        self,
        refresh_token: str,
        credentials: Dict[str, str],
        config: Optional[Dict[str, Any]] = None,
    ) -> TokenGrant:
        grant = await super().refresh_access_token(refresh_token, credentials, config)
        if grant.expires_in is None:
            grant.expires_in = _DEFAULT_SESSION_SECONDS
        return grant

    async def revoke_token(self, access_token: str, credentials: Optional[Dict[str, str]] = None) -> bool:
        async with self._client() as client:
            resp = await client.post(f"{_LOGIN_BASE}/revoke", data={"token": access_token})
        return resp.is_success

    async def _deliver(self, event: EventData, target: Dict[str, Any], ctx: IntegrationContext) -> HookResult:
        if not ctx.config.get("instanceUrl"):
            return HookResult.failed("Missing Salesforce instance URL", should_retry=False)

        case = {
            "Subject": truncate(event.post.get("title") or "Untitled feedback", 255),
            "Description": issue_description(event),
            "Origin": target.get("origin", "Web"),
        }
        if target.get("priority"):
            case["Priority"] = target["priority"]

        async with self._client() as client:
            resp = await client.post(
                f"{self._sobjects(ctx.config)}/Case",
                headers=self._headers(ctx.access_token),
                json=case,
            )
        if not resp.is_success:
            return failure_from_response(resp, "Salesforce")
        case_id = resp.json().get("id")
        return HookResult.ok(
            external_id=case_id,
            external_url=f"{ctx.config['instanceUrl'].rstrip('/')}/lightning/r/Case/{case_id}/view",
        )

    async def test_connection(self, ctx: IntegrationContext) -> ConnectionTestResult:
        instance_url = ctx.config.get("instanceUrl")
        if not instance_url:
            return ConnectionTestResult(ok=False, error="Missing Salesforce instance URL")
        return await self._test_get(
            f"{instance_url.rstrip('/')}/services/oauth2/userinfo",
            self._headers(ctx.access_token),
        )

    async def archive(self, ctx: ArchiveContext) -> ArchiveResult:
        if not ctx.config.get("instanceUrl"):
            return ArchiveResult(success=False, error="Missing Salesforce instance URL")
        async with self._client() as client:
            resp = await client.patch(
                f"{self._sobjects(ctx.config)}/Case/{ctx.external_id}",
                headers=self._headers(ctx.access_token),
                json={"Status": "Closed"},
            )
        if resp.status_code == 404:
            return ArchiveResult(success=True, action="closed")
        if not resp.is_success:
            return archive_failure(resp, "Salesforce")
        return ArchiveResult(success=True, action="closed")
