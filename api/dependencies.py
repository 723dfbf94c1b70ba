"""
FastAPI dependencies (shared across routes).

``IntegrationServices`` bundles the long-lived objects the routes need.
They are built once at startup from settings (root secret injected here,
never read ad hoc) and stored on ``app.state.services``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import httpx
from fastapi import HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.settings import Settings
from integrations.cascade import CascadeArchiveOrchestrator
from integrations.dispatcher import EventDispatcher
from integrations.encryption import SecretCipher
from integrations.oauth import OAuthFlow
from integrations.platform_credentials import PlatformCredentialStore
from integrations.registry import IntegrationRegistry, build_default_registry
from integrations.state import StateSigner
from integrations.store import ConnectionStore

logger = logging.getLogger(__name__)


@dataclass
class IntegrationServices:
    registry: IntegrationRegistry
    cipher: SecretCipher
    signer: StateSigner
    credentials: PlatformCredentialStore
    store: ConnectionStore
    dispatcher: EventDispatcher
    cascade: CascadeArchiveOrchestrator
    oauth: OAuthFlow


def build_services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    registry: Optional[IntegrationRegistry] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> IntegrationServices:
    """Wire every integration service from ``settings``."""
    registry = registry or build_default_registry(transport=transport)
    cipher = SecretCipher(settings.integration_secret_key)
    signer = StateSigner(
        settings.integration_secret_key,
        cipher=cipher,
        expiry_seconds=settings.oauth_state_ttl_seconds,
    )
    credentials = PlatformCredentialStore(session_factory, cipher, fallback=settings.get_platform_credentials)
    store = ConnectionStore(
        session_factory,
        cipher,
        registry,
        credentials,
        refresh_buffer_seconds=settings.token_refresh_buffer_seconds,
    )
    dispatcher = EventDispatcher(
        session_factory,
        store,
        registry,
        max_attempts=settings.hook_max_attempts,
        backoff_base_seconds=settings.hook_backoff_base_seconds,
        delivery_timeout_seconds=settings.hook_delivery_timeout_seconds,
    )
    cascade = CascadeArchiveOrchestrator(
        session_factory,
        store,
        registry,
        timeout_seconds=settings.cascade_timeout_seconds,
    )
    oauth = OAuthFlow(
        signer,
        registry,
        store,
        credentials,
        redirect_base=settings.oauth_redirect_base,
        allowed_return_domains=settings.allowed_return_domains,
        fallback_url=settings.oauth_fallback_url,
    )
    logger.info("Integration services ready (%d integrations)", len(registry.types()))
    return IntegrationServices(
        registry=registry,
        cipher=cipher,
        signer=signer,
        credentials=credentials,
        store=store,
        dispatcher=dispatcher,
        cascade=cascade,
        oauth=oauth,
    )


def get_services(request: Request) -> IntegrationServices:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Integration services are not initialised",
        )
    return services
