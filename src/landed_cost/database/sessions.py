"""Database-backed session store.

Stores session records in the ``sessions`` table with the serialized
principal encrypted at rest. Selected with ``SESSION_BACKEND=database`` so
sessions survive process restarts and are shared between workers.

Every operation runs in its own database session bounded by
``STORE_TIMEOUT_SECONDS``. Database failures and timeouts surface as
``UpstreamUnavailable``.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, TypeVar

from cryptography.fernet import Fernet
from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from landed_cost.auth.principal import Principal, principal_from_dict, principal_to_dict
from landed_cost.auth.session import SessionRecord, new_session_id
from landed_cost.clock import Clock, utc_now
from landed_cost.config import Settings
from landed_cost.database.connection import get_db
from landed_cost.database.encryption import create_fernet, decrypt_json, encrypt_json
from landed_cost.database.models import StoredSession
from landed_cost.database.users import SessionFactory
from landed_cost.errors import UpstreamUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is written in UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class DatabaseSessionStore:
    def __init__(
        self,
        ttl_seconds: int,
        clock: Clock = utc_now,
        session_factory: SessionFactory = get_db,
        fernet: Fernet | None = None,
        timeout: float = 5.0,
    ):
        self.ttl = timedelta(seconds=ttl_seconds)
        self.clock = clock
        self._session_factory = session_factory
        self._fernet = fernet
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings, clock: Clock = utc_now) -> "DatabaseSessionStore":
        """Store keyed and bounded by ``settings`` rather than the environment."""
        return cls(
            settings.session_max_age_seconds,
            clock=clock,
            fernet=create_fernet(settings.secret_key, settings.encryption_salt),
            timeout=settings.store_timeout_seconds,
        )

    async def _run(self, operation: str, fn: Callable[[AsyncSession], Awaitable[T]]) -> T:
        async def _in_session() -> T:
            async with self._session_factory() as db:
                return await fn(db)

        try:
            return await asyncio.wait_for(_in_session(), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            logger.error(f"Session store {operation} timed out after {self.timeout}s")
            raise UpstreamUnavailable("Session store unavailable") from e
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"Session store {operation} failed: {e}")
            raise UpstreamUnavailable("Session store unavailable") from e

    async def create(self, principal: Principal) -> SessionRecord:
        now = self.clock()
        record = SessionRecord(
            session_id=new_session_id(),
            principal=principal,
            created_at=now,
            expires_at=now + self.ttl,
        )

        async def _insert(db: AsyncSession) -> None:
            db.add(
                StoredSession(
                    sid=record.session_id,
                    sess=encrypt_json(principal_to_dict(principal), self._fernet),
                    created_at=record.created_at,
                    expire=record.expires_at,
                )
            )
            await db.commit()

        await self._run("create", _insert)
        return record

    async def get(self, session_id: str) -> SessionRecord | None:
        async def _load(db: AsyncSession) -> SessionRecord | None:
            row = await db.get(StoredSession, session_id)
            if row is None:
                return None

            expires_at = _as_utc(row.expire)
            if self.clock() >= expires_at:
                await db.delete(row)
                await db.commit()
                return None

            try:
                principal = principal_from_dict(decrypt_json(row.sess, self._fernet))
            except (ValueError, KeyError, TypeError) as e:
                logger.warning(f"Discarding unreadable session {session_id[:8]}: {e}")
                await db.delete(row)
                await db.commit()
                return None

            return SessionRecord(
                session_id=row.sid,
                principal=principal,
                created_at=_as_utc(row.created_at),
                expires_at=expires_at,
            )

        return await self._run("get", _load)

    async def save(self, record: SessionRecord) -> None:
        async def _update(db: AsyncSession) -> None:
            row = await db.get(StoredSession, record.session_id)
            if row is None:
                # Destroyed by a concurrent logout
                return
            row.sess = encrypt_json(principal_to_dict(record.principal), self._fernet)
            await db.commit()

        await self._run("save", _update)

    async def destroy(self, session_id: str) -> None:
        async def _delete(db: AsyncSession) -> None:
            await db.execute(delete(StoredSession).where(StoredSession.sid == session_id))
            await db.commit()

        await self._run("destroy", _delete)

    async def prune_expired(self) -> int:
        """Delete all expired rows. Returns the number removed."""

        async def _prune(db: AsyncSession) -> int:
            result = await db.execute(
                delete(StoredSession).where(StoredSession.expire <= self.clock())
            )
            await db.commit()
            return result.rowcount

        return await self._run("prune_expired", _prune)
