"""Tests for the OpenID Connect session manager."""

from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from conftest import CLIENT_ID, CLIENT_SECRET, EC_PUBLIC_KEY, ISSUER, unreachable_session
from landed_cost.auth.oidc import (
    OidcSessionManager,
    PendingLoginStore,
    ProviderConfigCache,
    ProviderMetadata,
)
from landed_cost.auth.principal import OidcClaims, OidcPrincipal
from landed_cost.database.users import UserStore
from landed_cost.errors import RefreshFailed, Unauthenticated, UpstreamUnavailable


def make_manager(provider, clock, user_store=None) -> OidcSessionManager:
    return OidcSessionManager(
        issuer_url=ISSUER,
        client_id=CLIENT_ID,
        client_secret=CLIENT_SECRET,
        user_store=user_store,
        clock=clock,
        transport=provider.transport,
    )


async def log_in(manager, provider) -> OidcPrincipal:
    state = provider.accept_authorization(await manager.begin_login())
    return await manager.complete_login("auth-code", state)


class TestProviderConfigCache:
    """Tests for the discovery metadata cache."""

    @pytest.fixture
    def metadata(self):
        return ProviderMetadata(
            issuer=ISSUER,
            authorization_endpoint=f"{ISSUER}/auth",
            token_endpoint=f"{ISSUER}/token",
            jwks={"keys": []},
        )

    async def test_reused_within_max_age(self, clock, metadata):
        """Test that metadata is fetched once per max age."""
        calls = []

        async def fetch():
            calls.append(clock())
            return metadata

        cache = ProviderConfigCache(fetch, max_age_seconds=3600, clock=clock)
        await cache.get()
        clock.advance(3599)
        await cache.get()
        assert len(calls) == 1

        clock.advance(1)
        await cache.get()
        assert len(calls) == 2

    async def test_stale_entry_served_when_refetch_fails(self, clock, metadata):
        """Test that the last good metadata outlives a failed refetch."""
        fail = False

        async def fetch():
            if fail:
                raise UpstreamUnavailable("down")
            return metadata

        cache = ProviderConfigCache(fetch, max_age_seconds=60, clock=clock)
        await cache.get()

        fail = True
        clock.advance(120)
        assert await cache.get() is metadata

    async def test_failure_without_entry(self, clock):
        """Test that a first fetch failure propagates."""

        async def fetch():
            raise UpstreamUnavailable("down")

        cache = ProviderConfigCache(fetch, clock=clock)
        with pytest.raises(UpstreamUnavailable):
            await cache.get()

    async def test_invalidate(self, clock, metadata):
        """Test that invalidate forces a refetch."""
        calls = []

        async def fetch():
            calls.append(1)
            return metadata

        cache = ProviderConfigCache(fetch, clock=clock)
        await cache.get()
        cache.invalidate()
        await cache.get()
        assert len(calls) == 2


class TestPendingLoginStore:
    def test_state_consumed_once(self, clock):
        """Test that a login state can only be used once."""
        store = PendingLoginStore(clock=clock)
        pending = store.add()

        assert store.pop(pending.state) is pending
        assert store.pop(pending.state) is None

    def test_state_expires(self, clock):
        """Test that a pending login expires after its TTL."""
        store = PendingLoginStore(ttl_seconds=600, clock=clock)
        pending = store.add()

        clock.advance(600)
        assert store.pop(pending.state) is None


class TestDiscovery:
    async def test_discover_config(self, provider, clock):
        """Test parsing of the discovery document and JWKS."""
        metadata = await make_manager(provider, clock).discover_config()

        assert metadata.issuer == ISSUER
        assert metadata.token_endpoint == f"{ISSUER}/token"
        assert metadata.signing_algorithms == ["HS256"]
        assert metadata.jwks["keys"][0]["kid"] == "test-key"

    async def test_discovery_cached(self, provider, clock):
        """Test that repeated discovery hits the provider once."""
        manager = make_manager(provider, clock)
        await manager.discover_config()
        await manager.discover_config()
        assert provider.discovery_calls == 1

    async def test_discovery_failure(self, provider, clock):
        """Test that an error response raises UpstreamUnavailable."""
        provider.discovery_ok = False
        with pytest.raises(UpstreamUnavailable):
            await make_manager(provider, clock).discover_config()

    async def test_network_error_retried(self, provider, clock):
        """Test that a dropped connection during discovery is retried."""
        failures = []

        def flaky(request):
            if not failures:
                failures.append(request.url.path)
                raise httpx.ConnectError("connection reset", request=request)
            return provider.handle(request)

        manager = make_manager(provider, clock)
        manager._transport = httpx.MockTransport(flaky)

        metadata = await manager.discover_config()
        assert metadata.issuer == ISSUER
        assert len(failures) == 1


class TestLogin:
    """Tests for the authorization code flow."""

    async def test_authorization_url(self, provider, clock):
        """Test the authorization URL parameters."""
        url = await make_manager(provider, clock).begin_login()
        parsed = urlparse(url)
        query = parse_qs(parsed.query)

        assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == f"{ISSUER}/auth"
        assert query["client_id"] == [CLIENT_ID]
        assert query["response_type"] == ["code"]
        assert query["scope"] == ["openid email profile offline_access"]
        assert query["prompt"] == ["login consent"]
        assert query["code_challenge_method"] == ["S256"]
        assert query["redirect_uri"] == ["http://localhost:5000/api/callback"]
        assert "nonce" in query
        assert "state" in query

    async def test_complete_login(self, provider, clock, user_store):
        """Test code exchange, principal contents and user upsert."""
        manager = make_manager(provider, clock, user_store=user_store)
        principal = await log_in(manager, provider)

        assert principal.claims.subject == "user-123"
        assert principal.claims.email == "oidc.user@example.com"
        assert principal.claims.expires_at == clock.epoch() + 300
        assert principal.access_token == "access-1"
        assert principal.refresh_token == "refresh-1"

        request = provider.token_requests[0]
        assert request["code"] == "auth-code"
        assert request["code_verifier"]

        stored = await user_store.get_user("user-123")
        assert stored.first_name == "Olive"

    async def test_unknown_state(self, provider, clock):
        """Test that an unknown state never reaches the token endpoint."""
        with pytest.raises(Unauthenticated):
            await make_manager(provider, clock).complete_login("auth-code", "forged-state")
        assert provider.token_requests == []

    async def test_state_single_use(self, provider, clock):
        """Test that a callback cannot be replayed."""
        manager = make_manager(provider, clock)
        state = provider.accept_authorization(await manager.begin_login())
        await manager.complete_login("auth-code", state)

        with pytest.raises(Unauthenticated):
            await manager.complete_login("auth-code", state)

    async def test_nonce_mismatch(self, provider, clock):
        """Test rejection of an ID token carrying another nonce."""
        manager = make_manager(provider, clock)
        state = provider.accept_authorization(await manager.begin_login())
        provider.nonce = "replayed-nonce"

        with pytest.raises(Unauthenticated):
            await manager.complete_login("auth-code", state)

    async def test_wrong_audience(self, provider, clock):
        """Test rejection of an ID token issued to another client."""
        manager = make_manager(provider, clock)
        manager.client_id = "some-other-client"
        state = provider.accept_authorization(await manager.begin_login())

        with pytest.raises(Unauthenticated):
            await manager.complete_login("auth-code", state)

    async def test_key_selected_by_kid(self, provider, clock):
        """Test login against a key set that also holds an EC key."""
        provider.extra_keys = [EC_PUBLIC_KEY]
        principal = await log_in(make_manager(provider, clock), provider)
        assert principal.claims.subject == "user-123"

    async def test_mismatched_key_type(self, provider, clock):
        """Test that a token pointing at a key of the wrong type is rejected."""
        provider.extra_keys = [EC_PUBLIC_KEY]
        provider.token_kid = "ec-key"

        with pytest.raises(Unauthenticated):
            await log_in(make_manager(provider, clock), provider)

    async def test_unknown_kid(self, provider, clock):
        """Test that a token naming an unpublished key is rejected."""
        provider.token_kid = "rotated-away"

        with pytest.raises(Unauthenticated):
            await log_in(make_manager(provider, clock), provider)

    async def test_user_store_failure_not_fatal(self, provider, clock):
        """Test that login succeeds when the user row cannot be written."""
        manager = make_manager(provider, clock, user_store=UserStore(session_factory=unreachable_session))
        principal = await log_in(manager, provider)
        assert principal.claims.subject == "user-123"

    async def test_end_session_url(self, provider, clock):
        """Test the provider logout URL."""
        url = await make_manager(provider, clock).end_session_url()
        query = parse_qs(urlparse(url).query)

        assert url.startswith(f"{ISSUER}/session/end?")
        assert query["client_id"] == [CLIENT_ID]
        assert query["post_logout_redirect_uri"] == ["http://localhost:5000"]


class TestRefresh:
    """Tests for access token refresh."""

    async def test_refresh_updates_principal(self, provider, clock):
        """Test that a refresh replaces tokens and claims."""
        manager = make_manager(provider, clock)
        principal = await log_in(manager, provider)

        clock.advance(600)
        await manager.refresh(principal)

        assert principal.access_token == "access-2"
        assert principal.refresh_token == "refresh-2"
        assert principal.claims.expires_at == clock.epoch() + 300
        assert provider.refresh_calls == 1

    async def test_refresh_without_id_token(self, provider, clock):
        """Test that expiry follows expires_in when no ID token comes back."""
        manager = make_manager(provider, clock)
        principal = await log_in(manager, provider)
        provider.refresh_id_token = False

        clock.advance(600)
        await manager.refresh(principal)

        assert principal.access_token == "access-2"
        assert principal.claims.expires_at == clock.epoch() + 300
        assert principal.claims.first_name == "Olive"

    async def test_rejected_refresh(self, provider, clock):
        """Test that a rejected grant leaves the principal unchanged."""
        manager = make_manager(provider, clock)
        principal = await log_in(manager, provider)
        provider.refresh_ok = False

        with pytest.raises(RefreshFailed):
            await manager.refresh(principal)
        assert provider.refresh_calls == 1
        assert principal.access_token == "access-1"

    async def test_no_refresh_token(self, provider, clock):
        """Test that a principal without a refresh token is not refreshed."""
        principal = OidcPrincipal(claims=OidcClaims(subject="user-123", expires_at=1), access_token="a")

        with pytest.raises(RefreshFailed):
            await make_manager(provider, clock).refresh(principal)
        assert provider.token_requests == []

    async def test_subject_change_rejected(self, provider, clock):
        """Test that a refreshed ID token must keep the same subject."""
        manager = make_manager(provider, clock)
        principal = await log_in(manager, provider)
        provider.subject = "someone-else"

        with pytest.raises(RefreshFailed):
            await manager.refresh(principal)

    async def test_unverifiable_id_token(self, provider, clock):
        """Test that a refreshed ID token signed for the wrong key type fails."""
        provider.extra_keys = [EC_PUBLIC_KEY]
        manager = make_manager(provider, clock)
        principal = await log_in(manager, provider)
        provider.token_kid = "ec-key"

        clock.advance(600)
        with pytest.raises(RefreshFailed):
            await manager.refresh(principal)
        assert principal.access_token == "access-1"
