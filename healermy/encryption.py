"""Encryption helpers for the session cookie.

The session blob stored in the ``healermy_session`` cookie is sealed with
AES-256-GCM.  The key is derived from ``SESSION_SECRET`` and ``SESSION_SALT``
with PBKDF2-HMAC-SHA256 so the same pair of environment variables always
yields the same key across processes.  The cookie value is the standard
base64 encoding of ``nonce || ciphertext || tag`` with a 12 byte nonce.

There is no key versioning: changing either secret invalidates every issued
cookie, which callers observe as :class:`DecryptionError` and treat like an
absent session.
"""

from __future__ import annotations

import base64
import binascii
import json
import os
from functools import lru_cache
from typing import Any, Dict, Mapping, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from healermy.config import PortalSettings, get_settings

NONCE_SIZE = 12
KEY_ITERATIONS = 100_000


class DecryptionError(ValueError):
    """Raised when a session ciphertext cannot be authenticated or decoded."""


@lru_cache(maxsize=4)
def _derive_key(secret: str, salt: str) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt.encode("utf-8"),
        iterations=KEY_ITERATIONS,
    )
    return kdf.derive(secret.encode("utf-8"))


def _cipher(settings: Optional[PortalSettings] = None) -> AESGCM:
    secret, salt = (settings or get_settings()).require_session_keys()
    return AESGCM(_derive_key(secret, salt))


def encrypt(plaintext: str, *, settings: Optional[PortalSettings] = None) -> str:
    """Encrypt *plaintext* into a cookie-safe string."""

    if not isinstance(plaintext, str):
        raise TypeError("session plaintext must be a string")
    nonce = os.urandom(NONCE_SIZE)
    sealed = _cipher(settings).encrypt(nonce, plaintext.encode("utf-8"), None)
    return base64.b64encode(nonce + sealed).decode("ascii")


def decrypt(ciphertext: str, *, settings: Optional[PortalSettings] = None) -> str:
    """Return the plaintext for *ciphertext* or raise :class:`DecryptionError`."""

    if not isinstance(ciphertext, str) or not ciphertext:
        raise DecryptionError("Session ciphertext is empty")
    try:
        combined = base64.b64decode(ciphertext.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as exc:
        raise DecryptionError("Session ciphertext contained invalid base64") from exc
    if len(combined) <= NONCE_SIZE:
        raise DecryptionError("Session ciphertext is truncated")
    nonce, sealed = combined[:NONCE_SIZE], combined[NONCE_SIZE:]
    try:
        plaintext = _cipher(settings).decrypt(nonce, sealed, None)
    except InvalidTag as exc:
        raise DecryptionError("Session ciphertext could not be decrypted") from exc
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DecryptionError("Session plaintext was not valid UTF-8") from exc


def encrypt_session(payload: Mapping[str, Any], *, settings: Optional[PortalSettings] = None) -> str:
    """Serialise *payload* as JSON and encrypt it for the session cookie."""

    serialized = json.dumps(dict(payload), separators=(",", ":"), ensure_ascii=False)
    return encrypt(serialized, settings=settings)


def decrypt_session(token: str, *, settings: Optional[PortalSettings] = None) -> Dict[str, Any]:
    """Decrypt a session cookie value back into its JSON mapping."""

    plaintext = decrypt(token, settings=settings)
    try:
        data = json.loads(plaintext)
    except json.JSONDecodeError as exc:
        raise DecryptionError("Session payload was not valid JSON") from exc
    if not isinstance(data, dict):
        raise DecryptionError("Session payload must be a JSON object")
    return data


__all__ = [
    "DecryptionError",
    "decrypt",
    "decrypt_session",
    "encrypt",
    "encrypt_session",
]
