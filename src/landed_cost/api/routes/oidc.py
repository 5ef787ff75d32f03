"""Browser-facing login routes.

These are navigated to directly rather than called with fetch, so every
outcome is a redirect.

## OIDC Flow

1. GET /api/login - Redirect to the provider (or the client login page)
2. GET /api/callback - Exchange the code and start the session
3. GET /api/logout - Drop the session and leave via the provider

When no provider is configured or the login cannot complete, the user is
sent to /api/dev-login, which lands on the client's own login form.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import RedirectResponse

from landed_cost.auth.dependencies import (
    SessionContext,
    clear_session_cookie,
    get_auth_services,
    get_session_context,
    start_session,
)
from landed_cost.auth.principal import OidcPrincipal
from landed_cost.auth.services import AuthServices
from landed_cost.errors import Unauthenticated, UpstreamUnavailable

logger = logging.getLogger(__name__)

router = APIRouter()

DEV_LOGIN_PATH = "/api/dev-login"


@router.get("/login")
async def login(services: AuthServices = Depends(get_auth_services)) -> RedirectResponse:
    """Start the provider login, or fall back to the client login page."""
    if services.oidc is None:
        return RedirectResponse(url=services.settings.client_login_path, status_code=302)

    try:
        url = await services.oidc.begin_login()
    except UpstreamUnavailable as e:
        logger.warning(f"Could not start OIDC login: {e}")
        return RedirectResponse(url=services.settings.client_login_path, status_code=302)

    return RedirectResponse(url=url, status_code=302)


@router.get("/callback")
async def callback(
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
    services: AuthServices = Depends(get_auth_services),
) -> RedirectResponse:
    """Handle the provider redirect after the user authenticates."""
    if services.oidc is None:
        return RedirectResponse(url=DEV_LOGIN_PATH, status_code=302)

    if error or not code or not state:
        logger.warning(f"OIDC callback without a code (error={error})")
        return RedirectResponse(url=DEV_LOGIN_PATH, status_code=302)

    try:
        principal = await services.oidc.complete_login(code, state)
    except (Unauthenticated, UpstreamUnavailable) as e:
        logger.warning(f"OIDC login failed: {e}")
        return RedirectResponse(url=DEV_LOGIN_PATH, status_code=302)

    response = RedirectResponse(url="/", status_code=302)
    try:
        await start_session(response, principal, services)
    except UpstreamUnavailable as e:
        logger.error(f"Could not store session after OIDC login: {e}")
        return RedirectResponse(url=DEV_LOGIN_PATH, status_code=302)

    logger.info(f"OIDC login for subject {principal.claims.subject}")
    return response


@router.get("/dev-login")
async def dev_login(services: AuthServices = Depends(get_auth_services)) -> RedirectResponse:
    """Fallback entry point; the client renders the email/password form."""
    return RedirectResponse(url=services.settings.client_login_path, status_code=302)


@router.get("/logout")
async def logout(
    context: SessionContext = Depends(get_session_context),
    services: AuthServices = Depends(get_auth_services),
) -> RedirectResponse:
    """End the session, then leave through the provider if it issued it."""
    url = "/"
    if context.record is not None:
        if isinstance(context.principal, OidcPrincipal) and services.oidc is not None:
            url = await services.oidc.end_session_url() or "/"
        try:
            await services.session_store.destroy(context.record.session_id)
        except UpstreamUnavailable as e:
            logger.error(f"Failed to destroy session on logout: {e}")

    response = RedirectResponse(url=url, status_code=302)
    clear_session_cookie(response, services)
    return response


@router.get("/dev-info")
async def dev_info(services: AuthServices = Depends(get_auth_services)) -> dict:
    """Developer accounts available for local login. Never served in production."""
    if services.settings.is_production:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not Found")

    return {
        "oidcEnabled": services.oidc_enabled,
        "devAccounts": sorted(services.settings.dev_accounts),
        "instructions": (
            "Log in with a developer account email and its configured password, "
            "or with any email and no password to use a temporary account."
        ),
    }
