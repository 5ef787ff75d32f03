"""ASGI application for the landed-cost server.

``create_app`` wires the login routers, the session-backed auth gate and the
product step onto one FastAPI instance. Production runs it through
``landed-cost serve``; tests build it directly and inject a settings object,
a fake clock, an httpx transport for the identity provider and a notifier that
records reset tokens.

Auth services are assembled in the lifespan, after the database is up, so a
provider that is unreachable at boot only disables OIDC login.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from landed_cost.api.errors import register_exception_handlers
from landed_cost.auth.reset import ResetNotifier
from landed_cost.auth.services import AuthServices
from landed_cost.clock import Clock, utc_now
from landed_cost.config import Settings, get_settings
from landed_cost.database.connection import close_db, init_db

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    *,
    clock: Clock = utc_now,
    oidc_transport: httpx.AsyncBaseTransport | None = None,
    reset_notifier: ResetNotifier | None = None,
) -> FastAPI:
    """Build the application.

    Args:
        settings: Overrides the environment-derived settings
        clock: Time source for sessions, token expiry and reset links
        oidc_transport: httpx transport used for identity provider requests
        reset_notifier: Where password reset tokens are delivered
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        await init_db(settings)
        app.state.auth = await AuthServices.create(
            settings,
            clock=clock,
            oidc_transport=oidc_transport,
            reset_notifier=reset_notifier,
        )
        mode = "oidc" if app.state.auth.oidc_enabled else "dev accounts"
        logger.info(f"{settings.app_name} {settings.app_version} ready ({mode})")
        try:
            yield
        finally:
            await close_db()

    show_docs = settings.debug
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Login, sessions and product intake for landed cost quotes",
        docs_url="/docs" if show_docs else None,
        redoc_url="/redoc" if show_docs else None,
        openapi_url="/openapi.json" if show_docs else None,
        lifespan=lifespan,
    )

    # Session cookies must cross from the Vite dev server
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )
    register_exception_handlers(app)

    from landed_cost.api.routes import auth, oidc, products

    app.include_router(oidc.router, prefix="/api", tags=["Login"])
    app.include_router(auth.router, prefix="/api/auth", tags=["Authentication"])
    app.include_router(products.router, prefix="/api", tags=["Products"])

    @app.get("/health", tags=["Health"])
    async def health_check():
        return {"status": "healthy", "version": settings.app_version}

    return app
