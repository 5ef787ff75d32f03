"""Construction of the auth components for one application instance."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from landed_cost.auth.dev import DevAuthHandler
from landed_cost.auth.oidc import OidcSessionManager
from landed_cost.auth.reset import PasswordResetManager, ResetNotifier
from landed_cost.auth.session import MemorySessionStore, SessionStore
from landed_cost.clock import Clock, utc_now
from landed_cost.config import Settings
from landed_cost.database.users import UserStore
from landed_cost.errors import UpstreamUnavailable

logger = logging.getLogger(__name__)


@dataclass
class AuthServices:
    settings: Settings
    clock: Clock
    user_store: UserStore
    session_store: SessionStore
    dev_auth: DevAuthHandler
    reset_manager: PasswordResetManager
    oidc: OidcSessionManager | None = None

    @property
    def oidc_enabled(self) -> bool:
        return self.oidc is not None

    @classmethod
    async def create(
        cls,
        settings: Settings,
        clock: Clock = utc_now,
        oidc_transport: httpx.AsyncBaseTransport | None = None,
        reset_notifier: ResetNotifier | None = None,
    ) -> "AuthServices":
        """Build all components; OIDC only if configured and reachable."""
        user_store = UserStore(timeout=settings.store_timeout_seconds)

        session_store: SessionStore
        if settings.session_backend == "database":
            from landed_cost.database.sessions import DatabaseSessionStore

            session_store = DatabaseSessionStore.from_settings(settings, clock=clock)
        else:
            session_store = MemorySessionStore(settings.session_max_age_seconds, clock=clock)

        oidc = None
        if settings.oidc_configured:
            manager = OidcSessionManager.from_settings(
                settings, user_store=user_store, clock=clock, transport=oidc_transport
            )
            try:
                await manager.discover_config()
            except UpstreamUnavailable as e:
                logger.warning(f"OIDC setup failed, falling back to dev auth: {e}")
            else:
                oidc = manager
                logger.info(f"OIDC login enabled for issuer {manager.issuer_url}")
        else:
            logger.info("OIDC_ISSUER_URL or OIDC_CLIENT_ID not set, using dev auth")

        return cls(
            settings=settings,
            clock=clock,
            user_store=user_store,
            session_store=session_store,
            dev_auth=DevAuthHandler(
                user_store,
                dev_accounts=settings.dev_accounts,
                password_hash_rounds=settings.password_hash_rounds,
            ),
            reset_manager=PasswordResetManager(
                user_store,
                notifier=reset_notifier,
                ttl_seconds=settings.password_reset_ttl_seconds,
                password_hash_rounds=settings.password_hash_rounds,
                clock=clock,
            ),
            oidc=oidc,
        )
