"""
BaseIntegration — abstract interface for every integration type.

Each provider (Slack, Jira, Teams, …) subclasses this and implements:

  • the OAuth2 flow  — ``build_auth_url`` / ``exchange_code`` / ``refresh_access_token``
  • the hook handler — ``run`` (deliver one event) and ``test_connection``
  • optionally       — ``archive`` (cascade close of a linked record)

Failure classification is shared: HTTP 429 / 5xx and transport errors are
retryable, 401 / 403 / other 4xx are terminal.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx

from integrations.errors import OAuthExchangeError, TokenRefreshError
from utils.schemas import ArchiveResult, ConnectionTestResult, EventData, HookResult, TokenGrant

logger = logging.getLogger(__name__)


@dataclass
class IntegrationContext:
    """What a handler needs to call the provider on behalf of one connection."""

    access_token: str
    config: Dict[str, Any] = field(default_factory=dict)
    external_workspace_id: Optional[str] = None
    workspace_id: Optional[str] = None


@dataclass
class ArchiveContext:
    external_id: str
    access_token: str
    external_url: Optional[str] = None
    config: Dict[str, Any] = field(default_factory=dict)


# ── Classification helpers ──────────────────────────────────────────────


def is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


def is_retryable_error(exc: BaseException) -> bool:
    """Network errors and timeouts are transient; everything else is not."""
    return isinstance(exc, (httpx.TransportError, TimeoutError))


def failure_from_response(response: httpx.Response, label: str) -> HookResult:
    text = response.text[:200] if response.content else ""
    return HookResult.failed(
        f"{label} API {response.status_code}: {text}".rstrip(": "),
        should_retry=is_retryable_status(response.status_code),
    )


def failure_from_exception(exc: BaseException) -> HookResult:
    if isinstance(exc, httpx.TimeoutException):
        message = "Request timeout"
    else:
        message = str(exc) or exc.__class__.__name__
    return HookResult.failed(message, should_retry=is_retryable_error(exc))


def archive_failure(response: httpx.Response, label: str) -> ArchiveResult:
    if response.status_code == 401:
        return ArchiveResult(success=False, error="Auth expired")
    text = response.text[:200] if response.content else ""
    return ArchiveResult(success=False, error=f"{label} API {response.status_code}: {text}".rstrip(": "))


# ── Base class ──────────────────────────────────────────────────────────


class BaseIntegration(ABC):
    """Abstract base for all integrations."""

    # ── Identity ────────────────────────────────────────────────────────
    integration_type: str = ""
    display_name: str = ""
    supported_events: List[str] = []
    scopes: List[str] = []
    scope_separator: str = " "

    # ── OAuth endpoints ─────────────────────────────────────────────────
    authorize_url: str = ""
    token_url: str = ""
    uses_pkce: bool = False
    pre_auth_fields: List[str] = []
    platform_credential_fields: List[str] = ["clientId", "clientSecret"]

    # seconds, per outbound call
    timeout: float = 10.0

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._transport = transport

    def _client(self, **kwargs: Any) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport, **kwargs)

    # ── OAuth flow ──────────────────────────────────────────────────────

    def build_auth_url(
        self,
        state: str,
        redirect_uri: str,
        credentials: Dict[str, str],
        pre_auth_fields: Optional[Dict[str, str]] = None,
        code_challenge: Optional[str] = None,
    ) -> str:
        """Build the provider's OAuth2 authorization URL."""
        params = {
            "client_id": credentials["clientId"],
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": self.scope_separator.join(self.scopes),
            "state": state,
        }
        params.update(self._extra_auth_params())
        if code_challenge:
            params["code_challenge"] = code_challenge
            params["code_challenge_method"] = "S256"
        return f"{self._authorize_url(pre_auth_fields)}?{urlencode(params)}"

    def _authorize_url(self, pre_auth_fields: Optional[Dict[str, str]]) -> str:
        return self.authorize_url

    def _token_url(self, pre_auth_fields: Optional[Dict[str, str]]) -> str:
        return self.token_url

    def _extra_auth_params(self) -> Dict[str, str]:
        return {}

    async def _post_token(self, url: str, data: Dict[str, str]) -> Dict[str, Any]:
        async with self._client() as client:
            resp = await client.post(url, data=data, headers={"Accept": "application/json"})
        try:
            payload = resp.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}
        if resp.status_code >= 400 or "error" in payload:
            detail = payload.get("error_description") or payload.get("error") or f"HTTP {resp.status_code}"
            raise OAuthExchangeError(f"{self.display_name} token endpoint error: {detail}")
        return payload

    async def exchange_code(
        self,
        code: str,
        redirect_uri: str,
        credentials: Dict[str, str],
        pre_auth_fields: Optional[Dict[str, str]] = None,
        code_verifier: Optional[str] = None,
    ) -> TokenGrant:
        """Exchange the authorization code for tokens."""
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "client_id": credentials["clientId"],
            "client_secret": credentials["clientSecret"],
        }
        if code_verifier:
            data["code_verifier"] = code_verifier
        payload = await self._post_token(self._token_url(pre_auth_fields), data)
        if not payload.get("access_token"):
            raise OAuthExchangeError(f"{self.display_name} token response had no access_token")
        grant = TokenGrant(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token"),
            expires_in=payload.get("expires_in"),
        )
        return await self._enrich_grant(grant, payload, pre_auth_fields or {})

    async def _enrich_grant(
        self,
        grant: TokenGrant,
        payload: Dict[str, Any],
        pre_auth_fields: Dict[str, str],
    ) -> TokenGrant:
        """Hook for providers that need extra lookups (team id, cloud id, …)."""
        return grant

    async def refresh_access_token(
        self,
        refresh_token: str,
        credentials: Dict[str, str],
        config: Optional[Dict[str, Any]] = None,
    ) -> TokenGrant:
        """Refresh an expired access token."""
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": credentials["clientId"],
            "client_secret": credentials["clientSecret"],
        }
        try:
            payload = await self._post_token(self._refresh_url(config or {}), data)
        except OAuthExchangeError as exc:
            raise TokenRefreshError(str(exc), retryable=False) from exc
        except httpx.TransportError as exc:
            raise TokenRefreshError(f"{self.display_name} token refresh failed: {exc}", retryable=True) from exc
        if not payload.get("access_token"):
            raise TokenRefreshError(f"{self.display_name} refresh response had no access_token", retryable=False)
        try:
            return TokenGrant(
                access_token=payload["access_token"],
                refresh_token=payload.get("refresh_token"),
                expires_in=payload.get("expires_in"),
            )
        except ValueError as exc:
            raise TokenRefreshError(f"{self.display_name} refresh response malformed: {exc}", retryable=False) from exc

    def _refresh_url(self, config: Dict[str, Any]) -> str:
        return self.token_url

    async def revoke_token(self, access_token: str, credentials: Optional[Dict[str, str]] = None) -> bool:
        """
        Revoke the token at the provider (optional).
        Returns True on success, False if provider doesn't support revocation.
        """
        return False

    # ── Hook handler ────────────────────────────────────────────────────

    def handles(self, event_type: str) -> bool:
        return event_type in self.supported_events

    async def run(self, event: EventData, target: Dict[str, Any], ctx: IntegrationContext) -> HookResult:
        """
        Deliver one event.  Remote failures are classified into a
        ``HookResult`` instead of raised.
        """
        if not self.handles(event.type):
            return HookResult.ok()
        try:
            return await self._deliver(event, target, ctx)
        except httpx.HTTPError as exc:
            logger.warning("%s delivery of %s failed: %s", self.integration_type, event.type, exc)
            return failure_from_exception(exc)

    @abstractmethod
    async def _deliver(self, event: EventData, target: Dict[str, Any], ctx: IntegrationContext) -> HookResult:
        ...

    @abstractmethod
    async def test_connection(self, ctx: IntegrationContext) -> ConnectionTestResult:
        """Lightweight read-only call validating the stored credentials."""
        ...

    # ── Cascade archive ─────────────────────────────────────────────────

    @property
    def supports_archive(self) -> bool:
        return type(self).archive is not BaseIntegration.archive

    async def archive(self, ctx: ArchiveContext) -> ArchiveResult:
        return ArchiveResult(success=False, error=f"Archive not supported for {self.integration_type}")

    async def _test_get(self, url: str, headers: Dict[str, str]) -> ConnectionTestResult:
        """Shared ``test_connection`` body for simple authenticated GETs."""
        try:
            async with self._client() as client:
                resp = await client.get(url, headers=headers)
        except httpx.HTTPError as exc:
            return ConnectionTestResult(ok=False, error=str(exc) or "Connection failed")
        if resp.is_success:
            return ConnectionTestResult(ok=True)
        return ConnectionTestResult(ok=False, error=f"{self.display_name} API {resp.status_code}")
