"""
Global middleware and exception handlers.
"""

from __future__ import annotations

import logging
import time
import uuid

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from integrations.errors import DecryptionError, IntegrationError

logger = logging.getLogger(__name__)


def register_middleware(app: FastAPI) -> None:
    """Attach app-level middleware and the integration error handlers."""

    @app.middleware("http")
    async def request_timer(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        response.headers["X-Process-Time"] = f"{elapsed:.4f}"
        response.headers["X-Request-ID"] = request_id
        logger.debug("[%s] %s %s — %.3fs", request_id, request.method, request.url.path, elapsed)
        return response

    @app.exception_handler(DecryptionError)
    async def decryption_error_handler(request: Request, exc: DecryptionError):
        # stored secrets are unreadable (rotated root secret or corruption)
        logger.error("Decryption failure on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse({"detail": "Stored credentials could not be read"}, status_code=500)

    @app.exception_handler(IntegrationError)
    async def integration_error_handler(request: Request, exc: IntegrationError):
        logger.error("Unhandled integration error on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse({"detail": "Integration error"}, status_code=500)
