"""
FastAPI dependencies for authentication.

Provides ``get_current_principal`` and ``require_integration_admin``, used
across all protected routes.  The bearer token may come from the
``Authorization`` header or, for browser redirects such as the OAuth
callback, from the ``session_token`` cookie.
"""

from __future__ import annotations

from typing import Optional

from fastapi import Cookie, Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from auth.jwt import verify_token
from auth.models import AuthenticatedPrincipal

_bearer_scheme = HTTPBearer(auto_error=False)

SESSION_COOKIE = "session_token"


def _principal_from_token(token: str) -> AuthenticatedPrincipal:
    claims = verify_token(token)
    return AuthenticatedPrincipal(
        principal_id=str(claims["principal_id"]),
        workspace_id=str(claims["workspace_id"]),
        role=str(claims.get("role", "member")),
    )


async def get_optional_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
    session_token: Optional[str] = Cookie(default=None),
) -> Optional[AuthenticatedPrincipal]:
    token = credentials.credentials if credentials else session_token
    if not token:
        return None
    try:
        return _principal_from_token(token)
    except HTTPException:
        return None


async def get_current_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
    session_token: Optional[str] = Cookie(default=None),
) -> AuthenticatedPrincipal:
    """Verify the bearer token and return the authenticated principal."""
    token = credentials.credentials if credentials else session_token
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Bearer token",
        )
    return _principal_from_token(token)


async def require_integration_admin(
    principal: AuthenticatedPrincipal = Depends(get_current_principal),
) -> AuthenticatedPrincipal:
    """Only workspace owners and admins may manage integrations."""
    if not principal.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Integration management requires an admin role",
        )
    return principal
