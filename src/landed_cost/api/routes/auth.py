"""Account routes used by the React client.

- POST /api/auth/login - Email (+optional password) login
- POST /api/auth/logout - Destroy the session
- GET /api/auth/user - Current user profile
- GET /api/auth/check-email/{email} - Signup email availability
- POST /api/auth/signup - Two-step signup
- POST /api/auth/forgot-password - Request a reset token
- POST /api/auth/reset-password - Set a new password with a reset token

Responses use ``{"message": ...}`` bodies; failures are rendered by the
handlers in ``landed_cost.api.errors``.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from landed_cost.auth.dependencies import (
    SessionContext,
    authenticate,
    clear_session_cookie,
    get_auth_services,
    get_session_context,
    start_session,
)
from landed_cost.auth.passwords import MAX_PASSWORD_BYTES
from landed_cost.auth.principal import OidcPrincipal
from landed_cost.auth.reset import RESET_ACKNOWLEDGEMENT
from landed_cost.auth.services import AuthServices
from landed_cost.errors import Unauthenticated, UpstreamUnavailable

logger = logging.getLogger(__name__)

router = APIRouter()

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MIN_PASSWORD_LENGTH = 8


def _validate_email(value: str) -> str:
    if not EMAIL_PATTERN.match(value):
        raise ValueError("Please enter a valid email address")
    return value


def _validate_password(value: str) -> str:
    if len(value) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(value.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValueError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes")
    return value


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class LoginRequest(CamelModel):
    email: str = Field(..., min_length=1)
    password: str | None = None

    @field_validator("password")
    @classmethod
    def empty_password_is_none(cls, v: str | None) -> str | None:
        return v or None


class SignupStep1(CamelModel):
    email: str
    password: str
    confirm_password: str

    _email = field_validator("email")(_validate_email)
    _password = field_validator("password")(_validate_password)

    @model_validator(mode="after")
    def passwords_match(self) -> "SignupStep1":
        if self.password != self.confirm_password:
            raise ValueError("Passwords don't match")
        return self


class SignupStep2(CamelModel):
    full_name: str = Field(..., min_length=1, max_length=255)
    company_name: str = Field(..., min_length=1, max_length=255)
    accepted_terms: bool

    @field_validator("accepted_terms")
    @classmethod
    def terms_accepted(cls, v: bool) -> bool:
        if not v:
            raise ValueError("You must accept the terms and conditions")
        return v


class SignupRequest(CamelModel):
    step1_data: SignupStep1
    step2_data: SignupStep2


class ForgotPasswordRequest(CamelModel):
    email: str

    _email = field_validator("email")(_validate_email)


class ResetPasswordRequest(CamelModel):
    token: str = Field(..., min_length=1)
    password: str
    confirm_password: str | None = None

    _password = field_validator("password")(_validate_password)

    @model_validator(mode="after")
    def passwords_match(self) -> "ResetPasswordRequest":
        if self.confirm_password is not None and self.password != self.confirm_password:
            raise ValueError("Passwords don't match")
        return self


class MessageResponse(BaseModel):
    message: str


@router.post("/login")
async def login(
    body: LoginRequest,
    response: Response,
    services: AuthServices = Depends(get_auth_services),
) -> dict[str, Any]:
    """Log in with an email and optional password."""
    result = await services.dev_auth.login(body.email, body.password)
    await start_session(response, result.principal, services)

    logger.info(f"User {body.email} logged in")
    return {"message": result.message, "user": result.user}


@router.post("/logout")
async def logout(
    response: Response,
    context: SessionContext = Depends(get_session_context),
    services: AuthServices = Depends(get_auth_services),
):
    """Destroy the current session."""
    if context.record is not None:
        try:
            await services.session_store.destroy(context.record.session_id)
        except UpstreamUnavailable as e:
            logger.error(f"Logout failed: {e}")
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={"message": "Logout failed"},
            )

    clear_session_cookie(response, services)
    return {"message": "Logout successful"}


@router.get("/user")
async def get_user(
    context: SessionContext = Depends(get_session_context),
    services: AuthServices = Depends(get_auth_services),
):
    """Profile of the logged-in user."""
    try:
        user = await authenticate(context, services)
    except Unauthenticated:
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={"message": "Not authenticated"},
        )

    principal = user.principal
    if isinstance(principal, OidcPrincipal):
        try:
            stored = await services.user_store.get_user(user.subject)
        except UpstreamUnavailable:
            logger.info("Database not available, using session data")
            stored = None
        if stored is not None:
            return stored.to_public_dict()

        return {
            "id": user.subject,
            "email": principal.claims.email,
            "firstName": principal.claims.first_name,
            "lastName": principal.claims.last_name,
            "profileImageUrl": principal.claims.profile_image_url,
        }

    return principal.to_public_dict()


@router.get("/check-email/{email}")
async def check_email(
    email: str,
    services: AuthServices = Depends(get_auth_services),
) -> dict[str, bool]:
    """Whether an account already uses ``email``."""
    return {"exists": await services.dev_auth.check_email_exists(email)}


@router.post("/signup", status_code=status.HTTP_201_CREATED)
async def signup(
    body: SignupRequest,
    response: Response,
    services: AuthServices = Depends(get_auth_services),
) -> dict[str, Any]:
    """Create an account from both signup steps and log it in."""
    result = await services.dev_auth.signup(
        email=body.step1_data.email,
        password=body.step1_data.password,
        full_name=body.step2_data.full_name,
        company_name=body.step2_data.company_name,
    )
    await start_session(response, result.principal, services)

    return {"message": result.message, "user": result.user}


@router.post("/forgot-password", response_model=MessageResponse)
async def forgot_password(
    body: ForgotPasswordRequest,
    background_tasks: BackgroundTasks,
    services: AuthServices = Depends(get_auth_services),
) -> MessageResponse:
    """Request a reset token.

    The token is issued after the response is sent, so neither the body nor
    the response time depends on whether the email is registered.
    """
    background_tasks.add_task(services.reset_manager.request_reset, body.email)
    return MessageResponse(message=RESET_ACKNOWLEDGEMENT)


@router.post("/reset-password", response_model=MessageResponse)
async def reset_password(
    body: ResetPasswordRequest,
    services: AuthServices = Depends(get_auth_services),
) -> MessageResponse:
    """Set a new password using a reset token."""
    message = await services.reset_manager.consume_reset(body.token, body.password)
    return MessageResponse(message=message)
