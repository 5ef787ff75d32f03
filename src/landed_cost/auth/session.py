"""Server-side sessions keyed by an opaque id carried in a signed cookie.

The cookie holds a signed JWT whose subject is the session id. The session
record itself (the principal, including identity-provider tokens) stays on
the server in a ``SessionStore``.

## Security

- Tokens are signed with the application secret key
- Sessions expire a fixed period after creation (default: 7 days); activity
  never extends them
- Cookies are HTTP-only to prevent XSS access
- Cookies are Secure in production (HTTPS only)
- SameSite=Lax to prevent CSRF

## Token Structure

```json
{
  "sub": "opaque-session-id",
  "iat": 1234567890,
  "exp": 1235172690,
  "type": "session"
}
```
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

from jose import JWTError, jwt

from landed_cost.auth.principal import Principal
from landed_cost.clock import Clock, utc_now

logger = logging.getLogger(__name__)

# JWT configuration
ALGORITHM = "HS256"
TOKEN_TYPE = "session"


@dataclass
class SessionRecord:
    """A browser session and the principal it authenticates."""

    session_id: str
    principal: Principal
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


def new_session_id() -> str:
    return secrets.token_urlsafe(32)


def create_session_token(record: SessionRecord, secret_key: str) -> str:
    """Create the signed cookie value for a session record."""
    payload = {
        "sub": record.session_id,
        "iat": int(record.created_at.timestamp()),
        "exp": int(record.expires_at.timestamp()),
        "type": TOKEN_TYPE,
    }
    return jwt.encode(payload, secret_key, algorithm=ALGORITHM)


def verify_session_token(token: str, secret_key: str, now: datetime) -> str | None:
    """Verify a session cookie and return the session id it carries.

    Expiry is checked against ``now`` rather than the wall clock.

    Returns:
        The session id if valid, None if invalid or expired
    """
    try:
        payload = jwt.decode(
            token,
            secret_key,
            algorithms=[ALGORITHM],
            options={"verify_exp": False},
        )
    except JWTError as e:
        logger.debug(f"Session token verification failed: {e}")
        return None

    if payload.get("type") != TOKEN_TYPE:
        logger.debug("Invalid token type")
        return None

    session_id = payload.get("sub")
    exp = payload.get("exp")
    if not isinstance(session_id, str) or not isinstance(exp, (int, float)):
        logger.debug("Invalid token payload")
        return None

    if now.timestamp() >= exp:
        logger.debug("Session token expired")
        return None

    return session_id


class SessionStore(Protocol):
    """Time-bounded storage of session records."""

    async def create(self, principal: Principal) -> SessionRecord: ...

    async def get(self, session_id: str) -> SessionRecord | None: ...

    async def save(self, record: SessionRecord) -> None: ...

    async def destroy(self, session_id: str) -> None: ...


class MemorySessionStore:
    """In-process session store.

    Expired records are dropped when read and swept periodically on write.
    """

    def __init__(
        self,
        ttl_seconds: int,
        clock: Clock = utc_now,
        prune_interval_seconds: int = 60 * 60 * 24,
    ):
        self.ttl = timedelta(seconds=ttl_seconds)
        self.clock = clock
        self.prune_interval = timedelta(seconds=prune_interval_seconds)
        self._records: dict[str, SessionRecord] = {}
        self._last_prune = clock()

    def __len__(self) -> int:
        return len(self._records)

    async def create(self, principal: Principal) -> SessionRecord:
        now = self.clock()
        self._maybe_prune(now)
        record = SessionRecord(
            session_id=new_session_id(),
            principal=principal,
            created_at=now,
            expires_at=now + self.ttl,
        )
        self._records[record.session_id] = record
        return record

    async def get(self, session_id: str) -> SessionRecord | None:
        record = self._records.get(session_id)
        if record is None:
            return None
        if record.is_expired(self.clock()):
            del self._records[session_id]
            return None
        return record

    async def save(self, record: SessionRecord) -> None:
        # Never resurrect a session destroyed by a concurrent logout
        if record.session_id in self._records:
            self._records[record.session_id] = record

    async def destroy(self, session_id: str) -> None:
        self._records.pop(session_id, None)

    def _maybe_prune(self, now: datetime) -> None:
        if now - self._last_prune < self.prune_interval:
            return
        expired = [sid for sid, rec in self._records.items() if rec.is_expired(now)]
        for sid in expired:
            del self._records[sid]
        self._last_prune = now
        if expired:
            logger.debug(f"Pruned {len(expired)} expired sessions")
