"""Credential store: persistence for user records.

Each operation opens its own short-lived session through ``get_db`` and is
bounded by ``timeout`` seconds. Infrastructure failures (connection errors,
timeouts) surface as ``UpstreamUnavailable`` so callers can degrade to
session-only operation; a duplicate email surfaces as ``Conflict``.

Email lookups are exact matches. No case normalization is applied, so
``A@b.com`` and ``a@b.com`` are different accounts.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Any, Awaitable, Callable, TypeVar

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from landed_cost.database.connection import get_db
from landed_cost.database.models import User
from landed_cost.errors import Conflict, UpstreamUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]

# Fields callers may write through create/update/upsert
USER_FIELDS = frozenset(
    {
        "email",
        "password_hash",
        "first_name",
        "last_name",
        "profile_image_url",
        "full_name",
        "company_name",
        "is_google_auth",
        "reset_token",
        "reset_token_expires_at",
    }
)


def _check_fields(fields: dict[str, Any]) -> None:
    unknown = set(fields) - USER_FIELDS
    if unknown:
        raise ValueError(f"Unknown user fields: {sorted(unknown)}")


class UserStore:
    """Async repository for ``User`` rows."""

    def __init__(
        self,
        session_factory: SessionFactory = get_db,
        timeout: float = 5.0,
    ):
        self._session_factory = session_factory
        self.timeout = timeout

    async def _run(self, operation: str, fn: Callable[[AsyncSession], Awaitable[T]]) -> T:
        async def _in_session() -> T:
            async with self._session_factory() as session:
                return await fn(session)

        try:
            return await asyncio.wait_for(_in_session(), timeout=self.timeout)
        except IntegrityError as e:
            logger.info(f"User store {operation} rejected by constraint: {e.orig}")
            raise Conflict() from e
        except asyncio.TimeoutError as e:
            logger.error(f"User store {operation} timed out after {self.timeout}s")
            raise UpstreamUnavailable(f"User store {operation} timed out") from e
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"User store {operation} failed: {e}")
            raise UpstreamUnavailable(f"User store {operation} failed") from e

    async def get_user(self, user_id: str) -> User | None:
        async def _get(session: AsyncSession) -> User | None:
            return await session.get(User, user_id)

        return await self._run("get_user", _get)

    async def get_user_by_email(self, email: str) -> User | None:
        async def _get(session: AsyncSession) -> User | None:
            result = await session.execute(select(User).where(User.email == email))
            return result.scalar_one_or_none()

        return await self._run("get_user_by_email", _get)

    async def get_user_by_reset_token(self, token: str, now: datetime) -> User | None:
        """Find the user holding ``token``, treating expired tokens as absent."""

        async def _get(session: AsyncSession) -> User | None:
            result = await session.execute(
                select(User).where(
                    User.reset_token == token,
                    User.reset_token_expires_at.is_not(None),
                    User.reset_token_expires_at > now,
                )
            )
            return result.scalar_one_or_none()

        return await self._run("get_user_by_reset_token", _get)

    async def create_user(self, **fields: Any) -> User:
        _check_fields(fields)

        async def _create(session: AsyncSession) -> User:
            user = User(**fields)
            session.add(user)
            await session.commit()
            await session.refresh(user)
            return user

        return await self._run("create_user", _create)

    async def update_user(self, user_id: str, **fields: Any) -> User | None:
        """Apply a partial update. Returns None if the user does not exist."""
        _check_fields(fields)

        async def _update(session: AsyncSession) -> User | None:
            user = await session.get(User, user_id)
            if user is None:
                return None
            for name, value in fields.items():
                setattr(user, name, value)
            await session.commit()
            await session.refresh(user)
            return user

        return await self._run("update_user", _update)

    async def upsert_user(self, user_id: str, **fields: Any) -> User:
        """Insert the user, or overwrite the given fields if the id exists."""
        _check_fields(fields)

        async def _upsert(session: AsyncSession) -> User:
            user = await session.get(User, user_id)
            if user is None:
                user = User(id=user_id, **fields)
                session.add(user)
            else:
                for name, value in fields.items():
                    setattr(user, name, value)
            await session.commit()
            await session.refresh(user)
            return user

        return await self._run("upsert_user", _upsert)

    async def consume_reset_token(
        self, token: str, password_hash: str, now: datetime
    ) -> bool:
        """Swap in ``password_hash`` and clear the reset token in one statement.

        The update only matches while the token is present and unexpired, so
        of two concurrent consumers at most one sees a matched row.
        """

        async def _consume(session: AsyncSession) -> bool:
            result = await session.execute(
                update(User)
                .where(
                    User.reset_token == token,
                    User.reset_token_expires_at.is_not(None),
                    User.reset_token_expires_at > now,
                )
                .values(
                    password_hash=password_hash,
                    reset_token=None,
                    reset_token_expires_at=None,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

        return await self._run("consume_reset_token", _consume)
