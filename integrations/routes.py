"""
Integration API routes — OAuth connect/callback, connection management,
event intake and cascade archive.

Route prefix: /api/v1
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, RedirectResponse

from api.dependencies import IntegrationServices, get_services
from auth.dependencies import get_current_principal, get_optional_principal, require_integration_admin
from auth.models import AuthenticatedPrincipal
from integrations.base import IntegrationContext
from integrations.errors import (
    ConfigurationError,
    DecryptionError,
    IntegrationError,
    IntegrationNotConnectedError,
    InvalidStateError,
    TokenRefreshError,
    UnknownIntegrationError,
)
from utils.schemas import (
    CascadeRequest,
    ConnectionTestResult,
    ConnectionUpdate,
    ConnectionView,
    ConnectRequest,
    ConnectResponse,
    EventMappingInput,
    PlatformCredentialsInput,
    RaiseEventRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["integrations"])


def _state_cookie(integration_type: str) -> str:
    return f"oauth_state_{integration_type}"


def _http_error(exc: IntegrationError) -> HTTPException:
    if isinstance(exc, (UnknownIntegrationError, IntegrationNotConnectedError)):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, InvalidStateError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"OAuth state rejected: {exc.reason}")
    if isinstance(exc, ConfigurationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Integration error")


# ── OAuth connect / callback ───────────────────────────────────────────


@router.post("/integrations/{integration_type}/connect", response_model=ConnectResponse)
async def start_connect(
    integration_type: str,
    request: Request,
    body: ConnectRequest,
    principal: AuthenticatedPrincipal = Depends(require_integration_admin),
    services: IntegrationServices = Depends(get_services),
) -> ConnectResponse:
    """
    Create a signed state for this admin and return the URL the browser
    should open to start the provider's consent screen.
    """
    try:
        state = services.oauth.create_state(
            integration_type,
            principal.workspace_id,
            body.return_domain,
            principal.principal_id,
            pre_auth_fields=body.pre_auth_fields,
        )
    except IntegrationError as exc:
        raise _http_error(exc)

    connect_url = str(request.url_for("oauth_connect", integration_type=integration_type))
    return ConnectResponse(state=state, connect_url=f"{connect_url}?{urlencode({'state': state})}")


@router.get("/oauth/{integration_type}/connect", name="oauth_connect")
async def oauth_connect(
    integration_type: str,
    request: Request,
    state: str = Query(...),
    services: IntegrationServices = Depends(get_services),
) -> RedirectResponse:
    """Redirect to the provider, pinning the state to this browser with a cookie."""
    try:
        auth_url = await services.oauth.build_connect_url(integration_type, state)
    except IntegrationError as exc:
        raise _http_error(exc)

    response = RedirectResponse(auth_url, status_code=status.HTTP_302_FOUND)
    response.set_cookie(
        _state_cookie(integration_type),
        state,
        max_age=services.signer.expiry_seconds,
        httponly=True,
        secure=request.url.scheme == "https",
        samesite="lax",
    )
    return response


@router.get("/oauth/{integration_type}/callback")
async def oauth_callback(
    integration_type: str,
    request: Request,
    code: Optional[str] = Query(default=None),
    state: Optional[str] = Query(default=None),
    error: Optional[str] = Query(default=None),
    principal: Optional[AuthenticatedPrincipal] = Depends(get_optional_principal),
    services: IntegrationServices = Depends(get_services),
):
    """Provider redirects here after consent; always answers with a redirect."""
    outcome = await services.oauth.handle_callback(
        integration_type,
        code,
        state,
        provider_error=error,
        cookie_state=request.cookies.get(_state_cookie(integration_type)),
        session_principal_id=principal.principal_id if principal else None,
    )
    if outcome.redirect_url is None:
        return JSONResponse({"error": "Unknown integration"}, status_code=outcome.status_code)

    response = RedirectResponse(outcome.redirect_url, status_code=outcome.status_code)
    response.delete_cookie(_state_cookie(integration_type))
    return response


# ── Connections ────────────────────────────────────────────────────────


@router.get("/integrations", response_model=List[ConnectionView])
async def list_integrations(
    principal: AuthenticatedPrincipal = Depends(get_current_principal),
    services: IntegrationServices = Depends(get_services),
) -> List[ConnectionView]:
    """List the workspace's connections (no secrets)."""
    return await services.store.list_connections(principal.workspace_id)


@router.delete("/integrations/{integration_type}")
async def disconnect_integration(
    integration_type: str,
    principal: AuthenticatedPrincipal = Depends(require_integration_admin),
    services: IntegrationServices = Depends(get_services),
) -> Dict[str, Any]:
    """Disconnect; repeating the call is harmless."""
    removed = await services.store.disconnect(principal.workspace_id, integration_type)
    return {"status": "disconnected", "integration_type": integration_type, "removed": removed}


@router.post("/integrations/{integration_type}/test", response_model=ConnectionTestResult)
async def test_integration(
    integration_type: str,
    principal: AuthenticatedPrincipal = Depends(require_integration_admin),
    services: IntegrationServices = Depends(get_services),
) -> ConnectionTestResult:
    try:
        integration = services.registry.require(integration_type)
        connection = await services.store.require_connection(principal.workspace_id, integration_type)
        access_token = await services.store.get_fresh_access_token(connection)
    except TokenRefreshError as exc:
        return ConnectionTestResult(ok=False, error=f"Token refresh failed: {exc}")
    except DecryptionError:
        logger.error("Stored secrets for %s could not be decrypted", integration_type)
        raise
    except IntegrationError as exc:
        raise _http_error(exc)

    ctx = IntegrationContext(
        access_token=access_token,
        config=dict(connection.config or {}),
        external_workspace_id=connection.external_workspace_id,
        workspace_id=principal.workspace_id,
    )
    return await integration.test_connection(ctx)


@router.patch("/integrations/{integration_type}", response_model=ConnectionView)
async def update_integration(
    integration_type: str,
    body: ConnectionUpdate,
    principal: AuthenticatedPrincipal = Depends(require_integration_admin),
    services: IntegrationServices = Depends(get_services),
) -> ConnectionView:
    """Pause / resume a connection or change its settings."""
    try:
        connection = await services.store.update_connection(
            principal.workspace_id, integration_type, status=body.status, config=body.config
        )
    except IntegrationError as exc:
        raise _http_error(exc)
    return services.store.to_view(connection)


@router.put("/integrations/{integration_type}/mappings")
async def put_event_mappings(
    integration_type: str,
    mappings: List[EventMappingInput] = Body(...),
    principal: AuthenticatedPrincipal = Depends(require_integration_admin),
    services: IntegrationServices = Depends(get_services),
) -> List[Dict[str, Any]]:
    saved = []
    try:
        for mapping in mappings:
            row = await services.store.set_event_mapping(principal.workspace_id, integration_type, mapping)
            saved.append(
                {
                    "mapping_id": str(row.mapping_id),
                    "event_type": row.event_type,
                    "action_type": row.action_type,
                    "action_config": row.action_config or {},
                    "filters": row.filters or {},
                    "enabled": row.enabled,
                }
            )
    except IntegrationError as exc:
        raise _http_error(exc)
    return saved


@router.put("/platform-credentials/{integration_type}")
async def put_platform_credentials(
    integration_type: str,
    body: PlatformCredentialsInput,
    principal: AuthenticatedPrincipal = Depends(require_integration_admin),
    services: IntegrationServices = Depends(get_services),
) -> Dict[str, Any]:
    """Store the OAuth app credentials for an integration (encrypted)."""
    integration = services.registry.get(integration_type)
    if integration is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown integration: {integration_type}")
    missing = [f for f in integration.platform_credential_fields if not body.credentials.get(f)]
    if missing:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Missing credential fields: {', '.join(missing)}",
        )
    await services.credentials.save(integration_type, body.credentials, principal.principal_id)
    return {"status": "saved", "integration_type": integration_type}


@router.get("/platform-credentials/{integration_type}")
async def get_platform_credentials_status(
    integration_type: str,
    principal: AuthenticatedPrincipal = Depends(require_integration_admin),
    services: IntegrationServices = Depends(get_services),
) -> Dict[str, Any]:
    """Whether OAuth app credentials exist; the values are never returned."""
    if integration_type not in services.registry:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown integration: {integration_type}")
    configured = await services.credentials.is_configured(integration_type)
    return {"integration_type": integration_type, "configured": configured}


@router.delete("/platform-credentials/{integration_type}")
async def delete_platform_credentials(
    integration_type: str,
    principal: AuthenticatedPrincipal = Depends(require_integration_admin),
    services: IntegrationServices = Depends(get_services),
) -> Dict[str, Any]:
    removed = await services.credentials.delete(integration_type)
    return {"status": "deleted", "integration_type": integration_type, "removed": removed}


# ── Events ─────────────────────────────────────────────────────────────


@router.post("/events", status_code=status.HTTP_202_ACCEPTED)
async def raise_event(
    body: RaiseEventRequest,
    principal: AuthenticatedPrincipal = Depends(get_current_principal),
    services: IntegrationServices = Depends(get_services),
) -> Dict[str, Any]:
    """Accept a domain event; delivery happens in the background."""
    services.dispatcher.raise_event(principal.workspace_id, body.event)
    return {"accepted": True, "event_id": body.event.id, "event_type": body.event.type}


# ── Cascade archive ────────────────────────────────────────────────────


@router.get("/records/{primary_id}/linked")
async def linked_records(
    primary_id: str,
    principal: AuthenticatedPrincipal = Depends(get_current_principal),
    services: IntegrationServices = Depends(get_services),
) -> Dict[str, Any]:
    """What would be affected by deleting ``primary_id``, with suggested choices."""
    views = await services.cascade.request_cascade_delete(principal.workspace_id, primary_id)
    return {
        "links": [v.model_dump() for v in views],
        "default_choices": [c.model_dump() for c in services.cascade.default_choices(views)],
    }


@router.post("/records/{primary_id}/cascade")
async def cascade_archive(
    primary_id: str,
    body: CascadeRequest,
    principal: AuthenticatedPrincipal = Depends(get_current_principal),
    services: IntegrationServices = Depends(get_services),
) -> Dict[str, Any]:
    """Archive the chosen external records of a deleted primary record."""
    views = await services.cascade.request_cascade_delete(principal.workspace_id, primary_id)
    own_links = {v.link_id for v in views}
    choices = [c for c in body.choices if c.link_id in own_links]
    results = await services.cascade.execute_cascade_delete(principal.workspace_id, choices)
    return {"primary_id": primary_id, "results": [r.model_dump() for r in results]}
