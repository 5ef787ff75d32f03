"""OpenID Connect login against the configured identity provider.

Implements the authorization code flow (with PKCE) and access-token refresh.

## Flow

1. ``begin_login`` builds the provider authorization URL with scopes
   ``openid email profile offline_access`` and remembers the pending
   state/nonce/verifier for ten minutes
2. The provider redirects back to ``/api/callback`` with a code
3. ``complete_login`` exchanges the code, verifies the ID token against the
   provider JWKS and returns an ``OidcPrincipal``
4. On later requests the auth gate calls ``refresh`` once the ID token's
   ``exp`` has passed
5. ``end_session_url`` points the browser at the provider logout endpoint

## Provider configuration

Discovery metadata (and the JWKS) are fetched from
``{issuer}/.well-known/openid-configuration`` and cached for up to an hour by
``ProviderConfigCache``. Timeouts and network errors are retried up to three
times per fetch. If a refetch fails, the last good entry keeps being
served. A failure with nothing cached raises ``UpstreamUnavailable``, which
callers turn into a fallback to dev auth.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Awaitable, Callable
from urllib.parse import urlencode

import httpx
from authlib.integrations.base_client import OAuthError
from authlib.integrations.httpx_client import AsyncOAuth2Client
from jose import jwt
from jose.exceptions import JOSEError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from landed_cost.auth.principal import OidcClaims, OidcPrincipal
from landed_cost.clock import Clock, epoch_seconds, utc_now
from landed_cost.config import Settings
from landed_cost.database.users import UserStore
from landed_cost.errors import (
    Conflict,
    RefreshFailed,
    Unauthenticated,
    UpstreamUnavailable,
)

logger = logging.getLogger(__name__)

DEFAULT_SCOPES = ["openid", "email", "profile", "offline_access"]

# Clock skew tolerated when checking ID token expiry
ID_TOKEN_LEEWAY_SECONDS = 60


def _signing_keys(id_token: str, jwks: dict[str, Any]) -> dict[str, Any]:
    """Narrow the provider key set to the key named by the token's ``kid``."""
    kid = jwt.get_unverified_header(id_token).get("kid")
    keys = jwks.get("keys", [])
    if kid is None:
        return {"keys": keys}
    matching = [key for key in keys if key.get("kid") == kid]
    if not matching:
        raise JOSEError(f"No provider key with kid {kid!r}")
    return {"keys": matching}


@dataclass
class ProviderMetadata:
    """The subset of discovery metadata the login flow relies on."""

    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    jwks: dict[str, Any]
    end_session_endpoint: str | None = None
    signing_algorithms: list[str] = field(default_factory=lambda: ["RS256"])

    @classmethod
    def from_discovery(cls, document: dict[str, Any], jwks: dict[str, Any]) -> "ProviderMetadata":
        return cls(
            issuer=document["issuer"],
            authorization_endpoint=document["authorization_endpoint"],
            token_endpoint=document["token_endpoint"],
            jwks=jwks,
            end_session_endpoint=document.get("end_session_endpoint"),
            signing_algorithms=document.get("id_token_signing_alg_values_supported")
            or ["RS256"],
        )


class ProviderConfigCache:
    """Time-bounded memo of provider metadata with an injected clock."""

    def __init__(
        self,
        fetch: Callable[[], Awaitable[ProviderMetadata]],
        max_age_seconds: int = 3600,
        clock: Clock = utc_now,
    ):
        self._fetch = fetch
        self.max_age = timedelta(seconds=max_age_seconds)
        self.clock = clock
        self._value: ProviderMetadata | None = None
        self._fetched_at = None

    @property
    def is_fresh(self) -> bool:
        return (
            self._value is not None
            and self._fetched_at is not None
            and self.clock() - self._fetched_at < self.max_age
        )

    async def get(self) -> ProviderMetadata:
        if self.is_fresh:
            return self._value

        try:
            value = await self._fetch()
        except UpstreamUnavailable:
            if self._value is not None:
                logger.warning("Provider discovery failed, serving cached metadata")
                return self._value
            raise

        self._value = value
        self._fetched_at = self.clock()
        return value

    def invalidate(self) -> None:
        self._value = None
        self._fetched_at = None


@dataclass
class PendingLogin:
    state: str
    nonce: str
    code_verifier: str
    created_at: Any


class PendingLoginStore:
    """Authorization requests awaiting their callback, consumed once."""

    def __init__(self, ttl_seconds: int = 600, clock: Clock = utc_now):
        self.ttl = timedelta(seconds=ttl_seconds)
        self.clock = clock
        self._pending: dict[str, PendingLogin] = {}

    def add(self) -> PendingLogin:
        now = self.clock()
        # Drop abandoned logins
        for state in [s for s, p in self._pending.items() if now - p.created_at >= self.ttl]:
            del self._pending[state]

        pending = PendingLogin(
            state=secrets.token_urlsafe(32),
            nonce=secrets.token_urlsafe(32),
            code_verifier=secrets.token_urlsafe(64),
            created_at=now,
        )
        self._pending[pending.state] = pending
        return pending

    def pop(self, state: str) -> PendingLogin | None:
        pending = self._pending.pop(state, None)
        if pending is None:
            return None
        if self.clock() - pending.created_at >= self.ttl:
            return None
        return pending


class OidcSessionManager:
    """OpenID Connect client bound to one identity provider.

    Example:
        ```python
        manager = OidcSessionManager.from_settings(settings)
        await manager.discover_config()

        url = await manager.begin_login()
        # ... provider redirects back with code/state
        principal = await manager.complete_login(code, state)
        ```
    """

    def __init__(
        self,
        issuer_url: str,
        client_id: str,
        client_secret: str | None = None,
        redirect_uri: str = "http://localhost:5000/api/callback",
        post_logout_redirect_uri: str = "http://localhost:5000",
        scopes: list[str] | None = None,
        discovery_max_age_seconds: int = 3600,
        http_timeout_seconds: float = 10.0,
        user_store: UserStore | None = None,
        clock: Clock = utc_now,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.issuer_url = issuer_url.rstrip("/")
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.post_logout_redirect_uri = post_logout_redirect_uri
        self.scopes = scopes or list(DEFAULT_SCOPES)
        self.http_timeout = http_timeout_seconds
        self.user_store = user_store
        self.clock = clock
        self._transport = transport

        self.config_cache = ProviderConfigCache(
            self._fetch_metadata,
            max_age_seconds=discovery_max_age_seconds,
            clock=clock,
        )
        self.pending_logins = PendingLoginStore(clock=clock)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        user_store: UserStore | None = None,
        clock: Clock = utc_now,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "OidcSessionManager":
        if not settings.oidc_configured:
            raise RuntimeError("OIDC not configured")

        return cls(
            issuer_url=settings.oidc_issuer_url,
            client_id=settings.oidc_client_id,
            client_secret=settings.oidc_client_secret,
            redirect_uri=settings.oidc_redirect_uri,
            post_logout_redirect_uri=settings.oidc_post_logout_redirect_uri,
            scopes=settings.oidc_scopes,
            discovery_max_age_seconds=settings.oidc_discovery_max_age_seconds,
            http_timeout_seconds=settings.oidc_http_timeout_seconds,
            user_store=user_store,
            clock=clock,
            transport=transport,
        )

    @property
    def discovery_url(self) -> str:
        return f"{self.issuer_url}/.well-known/openid-configuration"

    async def discover_config(self) -> ProviderMetadata:
        """Provider metadata, from cache when younger than the max age."""
        return await self.config_cache.get()

    async def _fetch_metadata(self) -> ProviderMetadata:
        try:
            async with httpx.AsyncClient(
                timeout=self.http_timeout, transport=self._transport
            ) as client:
                document = await self._get_json(client, self.discovery_url)

                jwks: dict[str, Any] = {"keys": []}
                if document.get("jwks_uri"):
                    jwks = await self._get_json(client, document["jwks_uri"])

            return ProviderMetadata.from_discovery(document, jwks)
        except (httpx.HTTPError, ValueError, KeyError) as e:
            logger.error(f"OIDC discovery failed for {self.issuer_url}: {e}")
            raise UpstreamUnavailable("Identity provider discovery failed") from e

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.NetworkError)),
        reraise=True,
    )
    async def _get_json(self, client: httpx.AsyncClient, url: str) -> dict[str, Any]:
        response = await client.get(url)
        response.raise_for_status()
        return response.json()

    def _oauth_client(self) -> AsyncOAuth2Client:
        return AsyncOAuth2Client(
            client_id=self.client_id,
            client_secret=self.client_secret,
            scope=" ".join(self.scopes),
            redirect_uri=self.redirect_uri,
            code_challenge_method="S256",
            timeout=self.http_timeout,
            transport=self._transport,
        )

    async def begin_login(self) -> str:
        """Authorization URL to redirect the user agent to."""
        metadata = await self.discover_config()
        pending = self.pending_logins.add()

        async with self._oauth_client() as client:
            url, _ = client.create_authorization_url(
                metadata.authorization_endpoint,
                state=pending.state,
                code_verifier=pending.code_verifier,
                nonce=pending.nonce,
                prompt="login consent",
            )
        return url

    async def complete_login(self, code: str, state: str) -> OidcPrincipal:
        """Exchange the callback code for tokens and build the principal.

        Raises:
            Unauthenticated: Unknown/expired state or an ID token that fails
                verification
            UpstreamUnavailable: The provider could not be reached or refused
                the exchange
        """
        pending = self.pending_logins.pop(state)
        if pending is None:
            raise Unauthenticated("Invalid or expired login state")

        metadata = await self.discover_config()

        try:
            async with self._oauth_client() as client:
                token = await client.fetch_token(
                    metadata.token_endpoint,
                    code=code,
                    code_verifier=pending.code_verifier,
                )
        except (OAuthError, httpx.HTTPError, ValueError, KeyError) as e:
            logger.error(f"Token exchange failed: {e}")
            raise UpstreamUnavailable("Token exchange failed") from e

        id_token = token.get("id_token")
        if not id_token:
            raise Unauthenticated("Token response did not include an ID token")

        claims = self._verify_id_token(
            id_token, metadata, access_token=token.get("access_token"), nonce=pending.nonce
        )
        principal = OidcPrincipal(
            claims=OidcClaims.from_id_token(claims),
            access_token=token["access_token"],
            refresh_token=token.get("refresh_token"),
        )

        await self._upsert_user(principal.claims)
        logger.info(f"OIDC login completed for subject {principal.claims.subject}")
        return principal

    async def refresh(self, principal: OidcPrincipal) -> None:
        """Exchange the refresh token once and update ``principal`` in place.

        Raises:
            RefreshFailed: No refresh token, provider unreachable, or the
                provider rejected the grant
        """
        if not principal.refresh_token:
            raise RefreshFailed()

        try:
            metadata = await self.discover_config()
            async with self._oauth_client() as client:
                token = await client.refresh_token(
                    metadata.token_endpoint,
                    refresh_token=principal.refresh_token,
                )
        except UpstreamUnavailable as e:
            raise RefreshFailed() from e
        except (OAuthError, httpx.HTTPError, ValueError, KeyError) as e:
            logger.info(f"Token refresh rejected for {principal.claims.subject}: {e}")
            raise RefreshFailed() from e

        if not token.get("access_token"):
            raise RefreshFailed()

        if token.get("id_token"):
            try:
                raw = self._verify_id_token(
                    token["id_token"], metadata, access_token=token["access_token"]
                )
            except Unauthenticated as e:
                raise RefreshFailed() from e
            claims = OidcClaims.from_id_token(raw)
            if claims.subject != principal.claims.subject:
                logger.warning("Refreshed ID token subject mismatch")
                raise RefreshFailed()
            principal.claims = claims
        else:
            principal.claims.expires_at = self._access_token_expiry(token, principal)

        principal.access_token = token["access_token"]
        # Providers may not rotate the refresh token
        principal.refresh_token = token.get("refresh_token") or principal.refresh_token

    async def end_session_url(self) -> str | None:
        """Provider logout URL, or None if the provider is unreachable."""
        try:
            metadata = await self.discover_config()
        except UpstreamUnavailable:
            return None
        if not metadata.end_session_endpoint:
            return None

        params = {
            "client_id": self.client_id,
            "post_logout_redirect_uri": self.post_logout_redirect_uri,
        }
        return f"{metadata.end_session_endpoint}?{urlencode(params)}"

    def _access_token_expiry(self, token: dict[str, Any], principal: OidcPrincipal) -> int | None:
        # authlib derives expires_at from the wall clock, so expires_in wins
        if token.get("expires_in"):
            return epoch_seconds(self.clock) + int(token["expires_in"])
        if token.get("expires_at"):
            return int(token["expires_at"])
        # No expiry given: the next request past the old one refreshes again
        return principal.claims.expires_at

    def _verify_id_token(
        self,
        id_token: str,
        metadata: ProviderMetadata,
        access_token: str | None = None,
        nonce: str | None = None,
    ) -> dict[str, Any]:
        try:
            claims = jwt.decode(
                id_token,
                _signing_keys(id_token, metadata.jwks),
                algorithms=metadata.signing_algorithms,
                audience=self.client_id,
                issuer=metadata.issuer,
                access_token=access_token,
                # Expiry is checked below against the injected clock
                options={"verify_exp": False},
            )
        except JOSEError as e:
            logger.warning(f"ID token verification failed: {e}")
            raise Unauthenticated("Invalid ID token") from e

        exp = claims.get("exp")
        if exp is not None and epoch_seconds(self.clock) > int(exp) + ID_TOKEN_LEEWAY_SECONDS:
            raise Unauthenticated("ID token expired")
        if nonce is not None and claims.get("nonce") != nonce:
            raise Unauthenticated("ID token nonce mismatch")
        if "sub" not in claims:
            raise Unauthenticated("ID token has no subject")

        return claims

    async def _upsert_user(self, claims: OidcClaims) -> None:
        if self.user_store is None:
            return
        try:
            await self.user_store.upsert_user(
                claims.subject,
                email=claims.email,
                first_name=claims.first_name,
                last_name=claims.last_name,
                profile_image_url=claims.profile_image_url,
            )
        except (UpstreamUnavailable, Conflict) as e:
            logger.warning(f"Could not store OIDC user, using session only: {e}")
