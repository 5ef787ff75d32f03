"""Who is logged in: the in-session principal.

A session holds exactly one of two principal variants:

- ``OidcPrincipal``: authenticated through the identity provider. Carries the
  ID-token claims and the access/refresh tokens.
- ``DevPrincipal``: authenticated locally (developer account, passwordless
  login, stored credentials or signup).

``AuthenticatedUser`` is what protected routes receive from the auth gate. It
exposes ``claims.subject`` for both variants so handlers never branch on the
auth mode.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Union


@dataclass
class OidcClaims:
    subject: str
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    profile_image_url: str | None = None
    expires_at: int | None = None  # epoch seconds

    @classmethod
    def from_id_token(cls, claims: dict[str, Any]) -> "OidcClaims":
        """Build from decoded ID-token claims."""
        exp = claims.get("exp")
        return cls(
            subject=str(claims["sub"]),
            email=claims.get("email"),
            first_name=claims.get("first_name") or claims.get("given_name"),
            last_name=claims.get("last_name") or claims.get("family_name"),
            profile_image_url=claims.get("profile_image_url") or claims.get("picture"),
            expires_at=int(exp) if exp is not None else None,
        )


@dataclass
class OidcPrincipal:
    claims: OidcClaims
    access_token: str
    refresh_token: str | None = None

    def is_expired(self, now_epoch: int) -> bool:
        return self.claims.expires_at is not None and now_epoch > self.claims.expires_at


@dataclass
class DevPrincipal:
    id: str
    email: str | None
    first_name: str | None = None
    last_name: str | None = None

    def to_public_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "firstName": self.first_name,
            "lastName": self.last_name,
        }


Principal = Union[OidcPrincipal, DevPrincipal]


@dataclass
class AuthenticatedUser:
    """Normalized view of the caller handed to protected routes."""

    claims: OidcClaims
    principal: Principal

    @property
    def subject(self) -> str:
        return self.claims.subject


def principal_to_dict(principal: Principal) -> dict[str, Any]:
    """Tagged, JSON-safe representation for persisted sessions."""
    if isinstance(principal, OidcPrincipal):
        return {
            "kind": "oidc",
            "claims": asdict(principal.claims),
            "access_token": principal.access_token,
            "refresh_token": principal.refresh_token,
        }
    if isinstance(principal, DevPrincipal):
        return {"kind": "dev", **asdict(principal)}
    raise TypeError(f"Unsupported principal type: {type(principal).__name__}")


def principal_from_dict(data: dict[str, Any]) -> Principal:
    kind = data.get("kind")
    if kind == "oidc":
        return OidcPrincipal(
            claims=OidcClaims(**data["claims"]),
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
        )
    if kind == "dev":
        return DevPrincipal(
            id=data["id"],
            email=data.get("email"),
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
        )
    raise ValueError(f"Unknown principal kind: {kind!r}")
