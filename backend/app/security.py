"""Encryption of the CalDAV passwords users store on their profile.

``NEOLIST_SECRET_KEY`` holds one or more comma separated passphrases. The first
one encrypts; all of them are tried on decrypt so a passphrase can be rotated
without re-entering every stored password at once.
"""
from __future__ import annotations

import base64
import hashlib
import logging
import os
from functools import lru_cache
from typing import Optional, Tuple

from cryptography.fernet import Fernet, InvalidToken, MultiFernet

logger = logging.getLogger(__name__)

SECRET_KEY_ENV = "NEOLIST_SECRET_KEY"
STORED_PREFIX = "enc:"


class SecretEncryptionError(RuntimeError):
    """A stored CalDAV password cannot be encrypted or read back."""


def _passphrases() -> Tuple[str, ...]:
    raw = os.getenv(SECRET_KEY_ENV, "")
    phrases = tuple(part.strip() for part in raw.split(",") if part.strip())
    if not phrases:
        raise SecretEncryptionError(f"{SECRET_KEY_ENV} is not set; CalDAV passwords cannot be stored.")
    return phrases


@lru_cache(maxsize=4)
def _cipher(phrases: Tuple[str, ...]) -> MultiFernet:
    keys = [base64.urlsafe_b64encode(hashlib.sha256(p.encode("utf-8")).digest()) for p in phrases]
    return MultiFernet([Fernet(key) for key in keys])


def encrypt_secret(value: str) -> str:
    if value.startswith(STORED_PREFIX):
        return value
    token = _cipher(_passphrases()).encrypt(value.encode("utf-8"))
    return STORED_PREFIX + token.decode("ascii")


def decrypt_secret(value: Optional[str]) -> Optional[str]:
    """Plain text of a stored password; legacy unprefixed values are returned as is."""

    if not value:
        return None
    if not value.startswith(STORED_PREFIX):
        return value
    token = value[len(STORED_PREFIX):].encode("ascii")
    try:
        return _cipher(_passphrases()).decrypt(token).decode("utf-8")
    except InvalidToken as exc:
        logger.error("Stored CalDAV password does not match any configured key")
        raise SecretEncryptionError("Stored CalDAV password could not be decrypted.") from exc
