"""Database models for the landed-cost portal.

## Security Notes

- Passwords are stored as bcrypt hashes, never in plaintext
- Reset tokens live only on the user row and are cleared on use
- Persisted session payloads (principal, OAuth tokens) are encrypted at rest
  using Fernet symmetric encryption
- Emails are unique as given; no case normalization is applied

## Schema Overview

```
users
sessions (server-side session records, database backend only)
```

Column types are kept dialect-neutral so the same models run on PostgreSQL
(asyncpg) and SQLite (aiosqlite, used by tests and local development).
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all database models."""


def _new_user_id() -> str:
    return str(uuid.uuid4())


class User(Base):
    """User account model.

    Identity-provider users are keyed by the provider's subject claim,
    passwordless/dev users by their email, and signed-up users by a
    generated UUID.
    """

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(255), primary_key=True, default=_new_user_id)
    email: Mapped[str | None] = mapped_column(String(255), unique=True)
    password_hash: Mapped[str | None] = mapped_column(String(255))

    # Profile
    first_name: Mapped[str | None] = mapped_column(String(255))
    last_name: Mapped[str | None] = mapped_column(String(255))
    profile_image_url: Mapped[str | None] = mapped_column(String(512))
    full_name: Mapped[str | None] = mapped_column(String(255))
    company_name: Mapped[str | None] = mapped_column(String(255))
    is_google_auth: Mapped[bool] = mapped_column(Boolean, default=False)

    # Password reset (both set while a request is outstanding)
    reset_token: Mapped[str | None] = mapped_column(String(64), unique=True)
    reset_token_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True)
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def to_public_dict(self) -> dict:
        """Serializable view of the user, credential hash and reset token omitted."""
        return {
            "id": self.id,
            "email": self.email,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "profileImageUrl": self.profile_image_url,
            "fullName": self.full_name,
            "companyName": self.company_name,
            "isGoogleAuth": self.is_google_auth,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self) -> str:
        return f"<User {self.email}>"


class StoredSession(Base):
    """Server-side session record.

    ``sess`` holds the encrypted, serialized principal. Expiry is absolute
    from creation and is never extended on activity.
    """

    __tablename__ = "sessions"

    sid: Mapped[str] = mapped_column(String(64), primary_key=True)
    sess: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expire: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (Index("ix_session_expire", "expire"),)

    def __repr__(self) -> str:
        return f"<StoredSession {self.sid[:8]}>"
