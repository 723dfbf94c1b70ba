"""
JWT-style token creation and verification.

Tokens are base64-encoded JSON payloads signed with HMAC-SHA256 and carry
the principal, its workspace and its role.  Secret key is loaded from
``config.auth_token_secret`` (env var: ``AUTH_TOKEN_SECRET``).
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from base64 import b64decode, b64encode
from typing import Any, Dict, Optional

from fastapi import HTTPException, status

from config.settings import config


def _secret(secret: Optional[str]) -> bytes:
    return (secret or config.auth_token_secret).encode()


def create_token(
    principal_id: str,
    workspace_id: str,
    role: str = "member",
    *,
    expires_in: Optional[int] = None,
    secret: Optional[str] = None,
) -> str:
    """Create a signed token for ``principal_id`` in ``workspace_id``."""
    payload = {
        "principal_id": principal_id,
        "workspace_id": workspace_id,
        "role": role,
        "exp": int(time.time()) + (expires_in or config.auth_token_expiry_seconds),
    }
    raw = json.dumps(payload).encode()
    sig = hmac.new(_secret(secret), raw, hashlib.sha256).hexdigest()
    return b64encode(raw).decode() + "." + sig


def verify_token(token: str, *, secret: Optional[str] = None) -> Dict[str, Any]:
    """
    Verify token and return its claims.

    Raises ``HTTPException(401)`` on invalid or expired tokens.
    """
    try:
        parts = token.split(".", 1)
        if len(parts) != 2:
            raise ValueError("bad format")
        raw = b64decode(parts[0])
        expected_sig = hmac.new(_secret(secret), raw, hashlib.sha256).hexdigest()
        if not hmac.compare_digest(parts[1], expected_sig):
            raise ValueError("bad signature")
        payload = json.loads(raw)
        if payload.get("exp", 0) < time.time():
            raise ValueError("token expired")
        if not payload.get("principal_id") or not payload.get("workspace_id"):
            raise ValueError("missing claims")
        return payload
    except (ValueError, TypeError, AttributeError) as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid or expired token: {exc}",
        )
