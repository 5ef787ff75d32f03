"""FastAPI dependencies for authentication.

``require_auth`` is the single authorization decision for protected routes.
It restores the session from the cookie and then, depending on the principal:

1. ``OidcPrincipal``: requires an authenticated session and a known token
   expiry. An unexpired token is accepted; an expired one gets exactly one
   refresh attempt, and any refresh failure is a 401.
2. ``DevPrincipal``: accepted, exposed with ``claims.subject`` set to the
   principal id.
3. Anything else: 401.

## Usage

```python
from fastapi import Depends
from landed_cost.auth import AuthenticatedUser, require_auth

@router.get("/things")
async def list_things(user: AuthenticatedUser = Depends(require_auth)):
    return {"owner": user.claims.subject}
```
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from fastapi import Depends, Request, Response

from landed_cost.auth.principal import (
    AuthenticatedUser,
    DevPrincipal,
    OidcClaims,
    OidcPrincipal,
    Principal,
)
from landed_cost.auth.services import AuthServices
from landed_cost.auth.session import SessionRecord, create_session_token, verify_session_token
from landed_cost.clock import epoch_seconds
from landed_cost.errors import RefreshFailed, Unauthenticated, UpstreamUnavailable

logger = logging.getLogger(__name__)


@dataclass
class SessionContext:
    """The session restored for the current request, if any."""

    record: SessionRecord | None = None

    @property
    def is_authenticated(self) -> bool:
        return self.record is not None

    @property
    def principal(self) -> Principal | None:
        return self.record.principal if self.record else None


def get_auth_services(request: Request) -> AuthServices:
    return request.app.state.auth


async def get_session_context(
    request: Request,
    services: AuthServices = Depends(get_auth_services),
) -> SessionContext:
    """Restore the session named by the signed cookie.

    Missing, forged or expired cookies, and an unreachable session store,
    all yield an empty context.
    """
    token = request.cookies.get(services.settings.session_cookie_name)
    if not token:
        return SessionContext()

    session_id = verify_session_token(token, services.settings.secret_key, services.clock())
    if session_id is None:
        return SessionContext()

    try:
        record = await services.session_store.get(session_id)
    except UpstreamUnavailable as e:
        logger.warning(f"Session lookup failed, treating request as anonymous: {e}")
        return SessionContext()

    return SessionContext(record=record)


async def authenticate(context: SessionContext, services: AuthServices) -> AuthenticatedUser:
    """Decide whether the session may access a protected route.

    Raises:
        Unauthenticated: No usable principal (``RefreshFailed`` when an
            expired token could not be renewed)
    """
    principal = context.principal

    if isinstance(principal, OidcPrincipal):
        if not context.is_authenticated or principal.claims.expires_at is None:
            raise Unauthenticated()

        if not principal.is_expired(epoch_seconds(services.clock)):
            return AuthenticatedUser(claims=principal.claims, principal=principal)

        if services.oidc is None:
            logger.info("Expired OIDC session while the provider is unavailable")
            raise RefreshFailed()

        await services.oidc.refresh(principal)
        try:
            await services.session_store.save(context.record)
        except UpstreamUnavailable as e:
            # Tokens stay valid for this request; the next one refreshes again
            logger.warning(f"Refreshed tokens not persisted: {e}")
        return AuthenticatedUser(claims=principal.claims, principal=principal)

    if isinstance(principal, DevPrincipal):
        claims = OidcClaims(
            subject=principal.id,
            email=principal.email,
            first_name=principal.first_name,
            last_name=principal.last_name,
        )
        return AuthenticatedUser(claims=claims, principal=principal)

    raise Unauthenticated()


async def require_auth(
    context: SessionContext = Depends(get_session_context),
    services: AuthServices = Depends(get_auth_services),
) -> AuthenticatedUser:
    """Get the authenticated caller or fail with 401."""
    return await authenticate(context, services)


async def start_session(
    response: Response,
    principal: Principal,
    services: AuthServices,
) -> SessionRecord:
    """Create a session record for ``principal`` and set the session cookie.

    The cookie lifetime matches the record's absolute expiry and is never
    renewed afterwards.
    """
    settings = services.settings
    record = await services.session_store.create(principal)

    response.set_cookie(
        key=settings.session_cookie_name,
        value=create_session_token(record, settings.secret_key),
        max_age=settings.session_max_age_seconds,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
    )
    return record


def clear_session_cookie(response: Response, services: AuthServices) -> None:
    settings = services.settings
    response.delete_cookie(
        key=settings.session_cookie_name,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
    )
