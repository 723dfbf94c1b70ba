"""
OAuthFlow — the connect / callback handshake for every OAuth integration.

    create_state       signed state for an admin starting a connection
    build_connect_url  verified state → provider authorize URL
    handle_callback    provider redirect → code exchange → saved connection

``handle_callback`` never raises for handshake problems; every failure is a
redirect back to the tenant's settings page carrying a reason code.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlencode

import httpx

from integrations.errors import (
    ConfigurationError,
    DecryptionError,
    IntegrationError,
    InvalidStateError,
)
from integrations.platform_credentials import PlatformCredentialStore
from integrations.registry import IntegrationRegistry
from integrations.state import StateSigner
from integrations.store import ConnectionStore

logger = logging.getLogger(__name__)

SETTINGS_PATH = "/admin/settings/integrations"


def generate_code_verifier() -> str:
    return secrets.token_urlsafe(64)[:96]


def code_challenge_for(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode()).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode()


def is_allowed_domain(domain: str, allowed: List[str]) -> bool:
    """Exact match or subdomain of an allowed suffix; ports are ignored."""
    host = (domain or "").strip().lower().split(":", 1)[0]
    if not host or "/" in domain or "@" in domain:
        return False
    for suffix in allowed:
        suffix = suffix.strip().lower().lstrip(".")
        if suffix and (host == suffix or host.endswith("." + suffix)):
            return True
    return False


def tenant_url(return_domain: str) -> str:
    host = return_domain.split(":", 1)[0]
    scheme = "http" if host in ("localhost", "127.0.0.1") else "https"
    return f"{scheme}://{return_domain}"


def settings_url(base_url: str, integration_type: str, status: str, reason: Optional[str] = None) -> str:
    params = {integration_type: status}
    if reason:
        params["reason"] = reason
    return f"{base_url.rstrip('/')}{SETTINGS_PATH}/{integration_type}?{urlencode(params)}"


class NonceCache:
    """Consumed state nonces, remembered for as long as a state can be valid."""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self._ttl = ttl_seconds
        self._clock = clock
        self._seen: Dict[str, float] = {}

    def consume(self, nonce: str) -> bool:
        """Mark ``nonce`` used; False if it was already used."""
        now = self._clock()
        for key in [k for k, expires in self._seen.items() if expires <= now]:
            del self._seen[key]
        if nonce in self._seen:
            return False
        self._seen[nonce] = now + self._ttl
        return True


@dataclass
class CallbackOutcome:
    redirect_url: Optional[str]
    success: bool
    reason: Optional[str] = None
    status_code: int = 302


class OAuthFlow:
    def __init__(
        self,
        signer: StateSigner,
        registry: IntegrationRegistry,
        store: ConnectionStore,
        credentials: PlatformCredentialStore,
        redirect_base: str,
        allowed_return_domains: List[str],
        fallback_url: str,
    ):
        self._signer = signer
        self._registry = registry
        self._store = store
        self._credentials = credentials
        self._redirect_base = redirect_base.rstrip("/")
        self._allowed_domains = list(allowed_return_domains)
        self._fallback_url = fallback_url
        self._nonces = NonceCache(signer.expiry_seconds)

    def callback_uri(self, integration_type: str) -> str:
        return f"{self._redirect_base}/api/v1/oauth/{integration_type}/callback"

    # ── Connect ─────────────────────────────────────────────────────────

    def create_state(
        self,
        integration_type: str,
        workspace_id: str,
        return_domain: str,
        principal_id: str,
        pre_auth_fields: Optional[Dict[str, str]] = None,
    ) -> str:
        integration = self._registry.require(integration_type)
        if not is_allowed_domain(return_domain, self._allowed_domains):
            raise ConfigurationError(f"Return domain not allowed: {return_domain}")

        fields = dict(pre_auth_fields or {})
        missing = [name for name in integration.pre_auth_fields if not fields.get(name)]
        if missing:
            raise ConfigurationError(f"Missing required fields: {', '.join(missing)}")

        data: Dict[str, Any] = {
            "type": integration_type,
            "workspaceId": workspace_id,
            "returnDomain": return_domain,
            "principalId": principal_id,
            "nonce": secrets.token_urlsafe(16),
        }
        if fields:
            data["preAuthFields"] = fields
        if integration.uses_pkce:
            data["codeVerifier"] = self._signer.encrypt_code_verifier(generate_code_verifier())
        return self._signer.sign(data)

    async def build_connect_url(self, integration_type: str, state: str) -> str:
        """Raises InvalidStateError, UnknownIntegrationError or ConfigurationError."""
        integration = self._registry.require(integration_type)
        data = self._signer.verify(state)
        if data.get("type") != integration_type:
            raise InvalidStateError("invalid_state")

        credentials = await self._credentials.get(integration_type)
        if not credentials:
            raise ConfigurationError(f"Platform credentials not configured for {integration_type}")

        code_challenge = None
        if data.get("codeVerifier"):
            code_challenge = code_challenge_for(self._signer.decrypt_code_verifier(data["codeVerifier"]))
        return integration.build_auth_url(
            state,
            self.callback_uri(integration_type),
            credentials,
            pre_auth_fields=data.get("preAuthFields"),
            code_challenge=code_challenge,
        )

    # ── Callback ────────────────────────────────────────────────────────

    async def handle_callback(
        self,
        integration_type: str,
        code: Optional[str],
        state: Optional[str],
        provider_error: Optional[str] = None,
        cookie_state: Optional[str] = None,
        session_principal_id: Optional[str] = None,
    ) -> CallbackOutcome:
        integration = self._registry.get(integration_type)
        if integration is None:
            return CallbackOutcome(redirect_url=None, success=False, reason="unknown_integration", status_code=404)

        def fail(base: str, reason: str) -> CallbackOutcome:
            logger.warning("OAuth callback for %s rejected: %s", integration_type, reason)
            return CallbackOutcome(redirect_url=settings_url(base, integration_type, "error", reason), success=False,
                                   reason=reason)

        try:
            data = self._signer.verify(state or "")
        except InvalidStateError as exc:
            return fail(self._fallback_url, exc.reason)
        if data.get("type") != integration_type:
            return fail(self._fallback_url, "invalid_state")

        return_domain = str(data.get("returnDomain", ""))
        if not is_allowed_domain(return_domain, self._allowed_domains):
            return fail(self._fallback_url, "invalid_tenant")
        base = tenant_url(return_domain)

        if provider_error:
            return fail(base, f"{integration_type}_denied")
        if not code:
            return fail(base, "invalid_request")
        if cookie_state != state:
            return fail(base, "state_mismatch")
        if not session_principal_id:
            return fail(base, "auth_required")
        if session_principal_id != data.get("principalId"):
            return fail(base, "session_mismatch")
        if not self._nonces.consume(str(data.get("nonce", ""))):
            return fail(base, "state_replayed")

        credentials = await self._credentials.get(integration_type)
        if not credentials:
            return fail(base, "credentials_not_configured")

        code_verifier = None
        if data.get("codeVerifier"):
            try:
                code_verifier = self._signer.decrypt_code_verifier(data["codeVerifier"])
            except DecryptionError:
                logger.error("PKCE verifier in the %s OAuth state could not be decrypted", integration_type)
                return fail(base, "internal_error")

        pre_auth_fields = data.get("preAuthFields") or {}
        access_token: Optional[str] = None
        try:
            grant = await integration.exchange_code(
                code,
                self.callback_uri(integration_type),
                credentials,
                pre_auth_fields=pre_auth_fields,
                code_verifier=code_verifier,
            )
            access_token = grant.access_token
            config = dict(grant.config)
            if pre_auth_fields:
                config.setdefault("preAuthFields", pre_auth_fields)
            await self._store.save_connection(
                data["workspaceId"],
                integration_type,
                data.get("principalId"),
                grant.access_token,
                refresh_token=grant.refresh_token,
                expires_in=grant.expires_in,
                config=config,
                external_workspace_id=grant.external_workspace_id,
                external_workspace_name=grant.external_workspace_name,
            )
        except Exception as exc:
            logger.error("OAuth exchange/save for %s failed: %s", integration_type, exc)
            if access_token:
                await self._revoke_quietly(integration_type, access_token, credentials)
            return fail(base, "exchange_failed")

        logger.info("Connected %s for workspace %s", integration_type, data["workspaceId"])
        return CallbackOutcome(redirect_url=settings_url(base, integration_type, "connected"), success=True)

    async def _revoke_quietly(self, integration_type: str, access_token: str, credentials: Dict[str, str]) -> None:
        integration = self._registry.get(integration_type)
        if integration is None:
            return
        try:
            await integration.revoke_token(access_token, credentials)
        except (IntegrationError, httpx.HTTPError) as exc:
            logger.error("Token revocation after save failure also failed for %s: %s", integration_type, exc)
