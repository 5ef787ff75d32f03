"""Password reset tokens.

A reset token is a random UUID stored on the user row together with its
expiry (one hour after issue). There is no separate token table.

``request_reset`` answers identically whether or not the email is known, so
the endpoint cannot be used to enumerate accounts. ``consume_reset`` swaps
the password hash and clears the token in a single conditional update; a
token can therefore be consumed at most once.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Protocol

from landed_cost.auth.passwords import hash_password_async
from landed_cost.clock import Clock, utc_now
from landed_cost.database.users import UserStore
from landed_cost.errors import InvalidResetToken, UpstreamUnavailable

logger = logging.getLogger(__name__)

RESET_ACKNOWLEDGEMENT = "If an account with that email exists, we'll send a reset link."
RESET_COMPLETE = "Password reset successfully"


class ResetNotifier(Protocol):
    """Delivers reset tokens to users."""

    async def send_reset_token(self, email: str, token: str, expires_at: datetime) -> None: ...


class LoggingResetNotifier:
    """Writes the token to the application log instead of sending mail."""

    async def send_reset_token(self, email: str, token: str, expires_at: datetime) -> None:
        logger.info(f"Reset token for {email}: {token} (expires {expires_at.isoformat()})")


class PasswordResetManager:
    def __init__(
        self,
        user_store: UserStore,
        notifier: ResetNotifier | None = None,
        ttl_seconds: int = 3600,
        password_hash_rounds: int = 10,
        clock: Clock = utc_now,
    ):
        self.user_store = user_store
        self.notifier = notifier or LoggingResetNotifier()
        self.ttl = timedelta(seconds=ttl_seconds)
        self.password_hash_rounds = password_hash_rounds
        self.clock = clock

    async def request_reset(self, email: str) -> str:
        """Issue a reset token if ``email`` is registered.

        Returns the same acknowledgement in every case, including store and
        delivery failures, which are only logged.
        """
        try:
            await self._issue_token(email)
        except UpstreamUnavailable as e:
            logger.error(f"Reset request for {email} not processed: {e}")
        except OSError as e:
            logger.error(f"Reset token delivery to {email} failed: {e}")

        return RESET_ACKNOWLEDGEMENT

    async def _issue_token(self, email: str) -> None:
        user = await self.user_store.get_user_by_email(email)
        if user is None:
            logger.debug("Reset requested for unknown email")
            return

        token = str(uuid.uuid4())
        expires_at = self.clock() + self.ttl
        await self.user_store.update_user(
            user.id,
            reset_token=token,
            reset_token_expires_at=expires_at,
        )
        await self.notifier.send_reset_token(user.email, token, expires_at)

    async def consume_reset(self, token: str, new_password: str) -> str:
        """Set a new password using ``token``.

        Raises:
            InvalidResetToken: Unknown, expired or already used token (or the
                store could not be reached)
        """
        now = self.clock()
        try:
            user = await self.user_store.get_user_by_reset_token(token, now)
            if user is None:
                raise InvalidResetToken()

            password_hash = await hash_password_async(new_password, self.password_hash_rounds)
            if not await self.user_store.consume_reset_token(token, password_hash, now):
                # Consumed by a concurrent request between lookup and update
                raise InvalidResetToken()
        except UpstreamUnavailable as e:
            logger.error(f"Password reset could not be completed: {e}")
            raise InvalidResetToken() from e

        logger.info(f"Password reset completed for user {user.id}")
        return RESET_COMPLETE
