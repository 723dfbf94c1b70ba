"""
Integration Hooks — application entry point.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.dependencies import IntegrationServices, build_services
from api.middleware import register_middleware
from config.settings import config
from integrations.routes import router as integrations_router

logging.basicConfig(
    level=logging.DEBUG if config.debug else logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(name)s — %(message)s",
    stream=sys.stdout,
)
for _noisy in ("httpcore", "httpx", "urllib3", "asyncio", "sqlalchemy.engine"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


def create_app(services: Optional[IntegrationServices] = None) -> FastAPI:
    """
    Build the app.  ``services`` is for tests; otherwise they are wired from
    settings against the configured database at startup.
    """
    app = FastAPI(
        title=config.app_name,
        version="1.0.0",
        description="Integration connections and event hook dispatch.",
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_middleware(app)

    # Routes
    app.include_router(integrations_router, prefix="/api/v1")

    app.state.services = services

    @app.on_event("startup")
    async def on_startup():
        if app.state.services is None:
            from database.session import async_session_factory, create_tables

            logger.info("Ensuring integration tables exist…")
            await create_tables()
            app.state.services = build_services(config, async_session_factory)
        logger.info("Application ready to accept requests.")

    @app.on_event("shutdown")
    async def on_shutdown():
        if app.state.services is not None:
            logger.info("Draining in-flight event deliveries…")
            await app.state.services.dispatcher.drain()

    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=config.host,
        port=config.port,
        reload=config.debug,
        log_level="debug" if config.debug else "info",
    )
