"""Local login used when no identity provider is available.

Three ways in, checked in this order by ``login``:

1. Developer accounts: a fixed email/password table injected through
   configuration (``DEV_ACCOUNTS``). A wrong password for one of these
   emails is rejected outright.
2. Passwordless: an email without a password upserts a user keyed by that
   email and logs it in. This auto-creates accounts without verification or
   rate limiting; it exists for environments without a provider.
3. Stored credentials: an email with a password that is not a developer
   account is checked against the bcrypt hash stored at signup.

Credential store failures never fail a passwordless login or a signup: the
request proceeds with a session-only principal. Stored-credential logins
cannot be verified without the store and are rejected instead.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass

from landed_cost.auth.passwords import hash_password_async, verify_password_async
from landed_cost.auth.principal import DevPrincipal
from landed_cost.config import DevAccount
from landed_cost.database.models import User
from landed_cost.database.users import UserStore
from landed_cost.errors import AuthenticationFailed, Conflict, UpstreamUnavailable

logger = logging.getLogger(__name__)


@dataclass
class LoginResult:
    principal: DevPrincipal
    user: dict
    session_only: bool = False

    @property
    def message(self) -> str:
        if self.session_only:
            return "Login successful (session only)"
        return "Login successful"


@dataclass
class SignupResult:
    principal: DevPrincipal
    user: dict
    session_only: bool = False

    @property
    def message(self) -> str:
        if self.session_only:
            return "Account created successfully (session only)"
        return "Account created successfully"


def _principal_from_user(user: User) -> DevPrincipal:
    return DevPrincipal(
        id=user.id,
        email=user.email,
        first_name=user.first_name,
        last_name=user.last_name,
    )


class DevAuthHandler:
    """Email(+password) login and signup backed by the credential store."""

    def __init__(
        self,
        user_store: UserStore,
        dev_accounts: dict[str, DevAccount] | None = None,
        password_hash_rounds: int = 10,
    ):
        self.user_store = user_store
        self.dev_accounts = dict(dev_accounts or {})
        self.password_hash_rounds = password_hash_rounds

    def is_dev_account(self, email: str) -> bool:
        return email in self.dev_accounts

    async def login(self, email: str, password: str | None = None) -> LoginResult:
        """Authenticate ``email``.

        Raises:
            AuthenticationFailed: Wrong developer password, unknown stored
                credentials, or stored credentials that cannot be checked
        """
        account = self.dev_accounts.get(email)
        if account is not None and password is not None:
            if not secrets.compare_digest(password.encode(), account.password.encode()):
                logger.info(f"Rejected developer login for {email}")
                raise AuthenticationFailed()
            principal = DevPrincipal(
                id=email,
                email=email,
                first_name=account.first_name,
                last_name=account.last_name,
            )
            return LoginResult(principal=principal, user=principal.to_public_dict())

        if password is None:
            return await self._passwordless_login(email)

        return await self._credential_login(email, password)

    async def _passwordless_login(self, email: str) -> LoginResult:
        try:
            user = await self.user_store.upsert_user(email, email=email)
        except (UpstreamUnavailable, Conflict) as e:
            logger.warning(f"Credential store unavailable, using session-only auth: {e}")
            principal = DevPrincipal(id=email, email=email, first_name="User", last_name="")
            return LoginResult(
                principal=principal, user=principal.to_public_dict(), session_only=True
            )

        return LoginResult(principal=_principal_from_user(user), user=user.to_public_dict())

    async def _credential_login(self, email: str, password: str) -> LoginResult:
        try:
            user = await self.user_store.get_user_by_email(email)
        except UpstreamUnavailable as e:
            logger.warning(f"Cannot verify credentials for {email}: {e}")
            raise AuthenticationFailed() from e

        if user is None or not user.password_hash:
            raise AuthenticationFailed()
        if not await verify_password_async(password, user.password_hash):
            raise AuthenticationFailed()

        return LoginResult(principal=_principal_from_user(user), user=user.to_public_dict())

    async def check_email_exists(self, email: str) -> bool:
        """Whether ``email`` belongs to a developer account or a stored user."""
        if self.is_dev_account(email):
            return True
        try:
            return await self.user_store.get_user_by_email(email) is not None
        except UpstreamUnavailable as e:
            logger.warning(f"Email check degraded, reporting not found: {e}")
            return False

    async def signup(
        self,
        email: str,
        password: str,
        full_name: str,
        company_name: str,
    ) -> SignupResult:
        """Create a password account and return its principal.

        Raises:
            Conflict: The email is already registered
        """
        if self.is_dev_account(email):
            raise Conflict()

        try:
            existing = await self.user_store.get_user_by_email(email)
        except UpstreamUnavailable as e:
            logger.warning(f"Duplicate check failed, proceeding with signup: {e}")
            existing = None
        if existing is not None:
            raise Conflict()

        password_hash = await hash_password_async(password, self.password_hash_rounds)
        first_name, _, last_name = full_name.strip().partition(" ")

        try:
            user = await self.user_store.create_user(
                email=email,
                password_hash=password_hash,
                full_name=full_name,
                company_name=company_name,
                first_name=first_name or None,
                last_name=last_name or None,
                is_google_auth=False,
            )
        except UpstreamUnavailable as e:
            logger.error(f"Signup could not be persisted, using session only: {e}")
            principal = DevPrincipal(
                id=email, email=email, first_name=first_name, last_name=last_name
            )
            user_view = principal.to_public_dict()
            user_view.update(fullName=full_name, companyName=company_name)
            return SignupResult(principal=principal, user=user_view, session_only=True)

        logger.info(f"Account created for {email}")
        return SignupResult(principal=_principal_from_user(user), user=user.to_public_dict())
