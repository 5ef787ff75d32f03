"""Fernet sealing for session payloads stored in the database.

A stored session carries the principal, which for identity-provider logins
includes access and refresh tokens, so rows in ``sessions`` only ever hold
ciphertext. The key comes from ``SECRET_KEY`` stretched with PBKDF2-HMAC-SHA256
over ``ENCRYPTION_SALT``.
"""

from __future__ import annotations

import base64
import json
import logging
from typing import Any

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = logging.getLogger(__name__)

KDF_ITERATIONS = 480_000

_fernet: Fernet | None = None


def create_fernet(secret_key: str, salt: str) -> Fernet:
    """Build a cipher keyed from ``secret_key`` and ``salt``."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt.encode(),
        iterations=KDF_ITERATIONS,
    )
    return Fernet(base64.urlsafe_b64encode(kdf.derive(secret_key.encode())))


def _default_fernet() -> Fernet:
    global _fernet
    if _fernet is None:
        from landed_cost.config import get_settings

        settings = get_settings()
        _fernet = create_fernet(settings.secret_key, settings.encryption_salt)
    return _fernet


def encrypt_json(payload: dict[str, Any], fernet: Fernet | None = None) -> str:
    token = (fernet or _default_fernet()).encrypt(
        json.dumps(payload, separators=(",", ":")).encode()
    )
    return token.decode()


def decrypt_json(ciphertext: str, fernet: Fernet | None = None) -> dict[str, Any]:
    """Open a value sealed by ``encrypt_json``.

    Raises:
        ValueError: The ciphertext was altered or sealed under another key
    """
    try:
        plaintext = (fernet or _default_fernet()).decrypt(ciphertext.encode())
    except InvalidToken as e:
        logger.error("Stored session payload could not be decrypted")
        raise ValueError("Failed to decrypt session payload") from e
    return json.loads(plaintext)


def reset_cipher() -> None:
    """Forget the cached cipher so the next call rereads settings."""
    global _fernet
    _fernet = None
