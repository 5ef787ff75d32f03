"""Shared fixtures for the landed-cost tests.

Every test runs against a private in-memory SQLite database, a fake clock it
can move forward, and an identity provider that lives entirely inside an
``httpx.MockTransport``. Nothing leaves the process.
"""

import asyncio
import base64
import os
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, parse_qsl, urlparse

import httpx
import pytest

# Must be in place before landed_cost reads its settings
os.environ.setdefault("SECRET_KEY", "test-secret-key-at-least-32-characters-long")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ENVIRONMENT", "development")

from jose import jwt

from landed_cost.config import Settings
from landed_cost.database.connection import close_db, init_db
from landed_cost.database.encryption import reset_cipher
from landed_cost.database.users import UserStore

DEV_PASSWORD = "$omeRandomPass*"

DEV_ACCOUNTS = {
    "admin@mindrush.com": {"password": DEV_PASSWORD, "first_name": "Admin", "last_name": "User"},
    "dev@mindrush.com": {"password": "dev-password-123", "first_name": "Dev", "last_name": "Tester"},
}

ISSUER = "https://idp.test/oidc"
CLIENT_ID = "test-client-id"
CLIENT_SECRET = "test-client-secret"

# Public P-256 key from RFC 7517 appendix A.1; never matches an HS256 token
EC_PUBLIC_KEY = {
    "kty": "EC",
    "crv": "P-256",
    "x": "MKBCTNIcKUSDii11ySs3526iDZ8AiTo7Tu6KPAqv7D4",
    "y": "4Etl6SRW2YiLUrN5vfvVHuhp7x8PxltmWWlbbM4IFyM",
    "use": "sig",
    "kid": "ec-key",
}


# =============================================================================
# Settings, clock and database
# =============================================================================


@pytest.fixture(autouse=True)
def reset_settings_cache():
    """Reset settings and cipher caches before each test."""
    from landed_cost.config import get_settings

    get_settings.cache_clear()
    reset_cipher()
    yield
    get_settings.cache_clear()
    reset_cipher()


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)

    def epoch(self) -> int:
        return int(self.now.timestamp())


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc))


def make_settings(**overrides) -> Settings:
    values = {
        "secret_key": "test-secret-key-at-least-32-characters-long",
        "database_url": "sqlite+aiosqlite:///:memory:",
        "database_auto_create": True,
        "password_hash_rounds": 4,
        "dev_accounts": DEV_ACCOUNTS,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def oidc_settings() -> Settings:
    return make_settings(
        oidc_issuer_url=ISSUER,
        oidc_client_id=CLIENT_ID,
        oidc_client_secret=CLIENT_SECRET,
    )


@pytest.fixture
async def db(settings):
    """Initialize a fresh in-memory database for the test."""
    await init_db(settings)
    yield
    await close_db()


@pytest.fixture
def user_store(db) -> UserStore:
    return UserStore(timeout=5.0)


# =============================================================================
# Identity provider
# =============================================================================


class FakeProvider:
    """OpenID provider served through ``httpx.MockTransport``.

    ID tokens are HS256-signed with a symmetric key published in the JWKS.
    """

    signing_key = b"provider-signing-key-0123456789abcdef"

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.subject = "user-123"
        self.email = "oidc.user@example.com"
        self.nonce: str | None = None
        self.refresh_ok = True
        self.discovery_ok = True
        self.id_token_lifetime = 300
        self.discovery_calls = 0
        self.token_requests: list[dict[str, str]] = []
        self.issued_access_tokens = 0
        self.token_kid = "test-key"
        self.extra_keys: list[dict] = []
        self.refresh_id_token = True

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    @property
    def refresh_calls(self) -> int:
        return sum(1 for r in self.token_requests if r.get("grant_type") == "refresh_token")

    def discovery_document(self) -> dict:
        return {
            "issuer": ISSUER,
            "authorization_endpoint": f"{ISSUER}/auth",
            "token_endpoint": f"{ISSUER}/token",
            "jwks_uri": f"{ISSUER}/jwks",
            "end_session_endpoint": f"{ISSUER}/session/end",
            "id_token_signing_alg_values_supported": ["HS256"],
        }

    def jwks(self) -> dict:
        k = base64.urlsafe_b64encode(self.signing_key).rstrip(b"=").decode()
        signing = {"kty": "oct", "kid": "test-key", "alg": "HS256", "k": k}
        return {"keys": [*self.extra_keys, signing]}

    def id_token(self, nonce: str | None = None, **claims) -> str:
        now = self.clock.epoch()
        payload = {
            "iss": ISSUER,
            "aud": CLIENT_ID,
            "sub": self.subject,
            "email": self.email,
            "first_name": "Olive",
            "last_name": "Idp",
            "iat": now,
            "exp": now + self.id_token_lifetime,
        }
        if nonce is not None:
            payload["nonce"] = nonce
        payload.update(claims)
        return jwt.encode(
            payload, self.signing_key, algorithm="HS256", headers={"kid": self.token_kid}
        )

    def _tokens(self, nonce: str | None = None) -> dict:
        self.issued_access_tokens += 1
        return {
            "access_token": f"access-{self.issued_access_tokens}",
            "refresh_token": f"refresh-{self.issued_access_tokens}",
            "token_type": "Bearer",
            "expires_in": self.id_token_lifetime,
            "id_token": self.id_token(nonce=nonce),
        }

    def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/oidc/.well-known/openid-configuration":
            self.discovery_calls += 1
            if not self.discovery_ok:
                return httpx.Response(503, text="unavailable")
            return httpx.Response(200, json=self.discovery_document())

        if path == "/oidc/jwks":
            return httpx.Response(200, json=self.jwks())

        if path == "/oidc/token":
            form = dict(parse_qsl(request.content.decode()))
            self.token_requests.append(form)
            if form.get("grant_type") == "authorization_code":
                return httpx.Response(200, json=self._tokens(nonce=self.nonce))
            if form.get("grant_type") == "refresh_token":
                if not self.refresh_ok:
                    return httpx.Response(400, json={"error": "invalid_grant"})
                tokens = self._tokens()
                if not self.refresh_id_token:
                    del tokens["id_token"]
                return httpx.Response(200, json=tokens)

        return httpx.Response(404, json={"error": "not_found"})

    def accept_authorization(self, authorization_url: str) -> str:
        """Act as the user consenting; returns the state to call back with."""
        query = parse_qs(urlparse(authorization_url).query)
        self.nonce = query["nonce"][0]
        return query["state"][0]


@pytest.fixture
def provider(clock) -> FakeProvider:
    return FakeProvider(clock)


# =============================================================================
# Reset token delivery
# =============================================================================


class RecordingNotifier:
    """Keeps reset tokens instead of emailing them."""

    def __init__(self):
        self.sent: list[tuple[str, str, datetime]] = []

    async def send_reset_token(self, email: str, token: str, expires_at: datetime) -> None:
        self.sent.append((email, token, expires_at))

    @property
    def last_token(self) -> str:
        return self.sent[-1][1]


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@asynccontextmanager
async def unreachable_session():
    """Session factory for a credential store that cannot be reached."""
    raise OSError("connection refused")
    yield


@asynccontextmanager
async def slow_session():
    """Session factory for a store that never answers in time."""
    await asyncio.sleep(1)
    yield
