"""Authentication and session-state resolution.

Two independent ways to log in share one session model:

- OpenID Connect against the configured identity provider, with access
  tokens refreshed transparently once they expire
- Dev/fallback login (developer accounts, passwordless email login, stored
  credentials from signup) when no provider is configured or reachable

Either way the browser ends up with an HTTP-only cookie naming a server-side
session record, and every protected route goes through ``require_auth``.

## OIDC Flow

1. GET /api/login redirects to the provider's authorization endpoint
2. The provider redirects back to /api/callback with an authorization code
3. The code is exchanged for access, refresh and ID tokens
4. The ID token's claims become the session principal
5. Expired access tokens are refreshed on the next protected request

## Scopes

- openid: For authentication
- email: To identify the user
- profile: For display name and picture
- offline_access: To obtain a refresh token
"""

from landed_cost.auth.dependencies import (
    SessionContext,
    authenticate,
    get_session_context,
    require_auth,
)
from landed_cost.auth.principal import (
    AuthenticatedUser,
    DevPrincipal,
    OidcClaims,
    OidcPrincipal,
    Principal,
)
from landed_cost.auth.services import AuthServices

__all__ = [
    "AuthServices",
    "AuthenticatedUser",
    "DevPrincipal",
    "OidcClaims",
    "OidcPrincipal",
    "Principal",
    "SessionContext",
    "authenticate",
    "get_session_context",
    "require_auth",
]
