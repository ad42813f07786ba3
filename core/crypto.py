from __future__ import annotations

import base64
import hashlib
import logging
import os

from cryptography.fernet import Fernet, InvalidToken
from django.conf import settings

logger = logging.getLogger(__name__)

_ENC_PREFIX = "enc::"


def _fernet() -> Fernet:
    # A dedicated 44-char Fernet key wins; anything else is stretched with sha256.
    raw = os.getenv("CREDENTIALS_ENCRYPTION_KEY", "").strip() or str(settings.SECRET_KEY)
    if len(raw) == 44:
        return Fernet(raw)
    digest = hashlib.sha256(raw.encode("utf-8")).digest()
    return Fernet(base64.urlsafe_b64encode(digest))


def is_encrypted_secret(value: str | None) -> bool:
    return bool(value) and str(value).startswith(_ENC_PREFIX)


def encrypt_secret(value: str | None) -> str:
    plain = "" if value is None else str(value)
    if not plain or is_encrypted_secret(plain):
        return plain
    token = _fernet().encrypt(plain.encode("utf-8")).decode("utf-8")
    return f"{_ENC_PREFIX}{token}"


def decrypt_secret(value: str | None) -> str:
    raw = "" if value is None else str(value)
    if not is_encrypted_secret(raw):
        # Rows written before encryption was enabled stay readable.
        return raw
    try:
        return _fernet().decrypt(raw[len(_ENC_PREFIX):].encode("utf-8")).decode("utf-8")
    except InvalidToken:
        logger.warning("Trader credential decryption failed: invalid token/key")
        return ""


def mask_secret(value: str | None, visible: int = 4) -> str:
    """Render a credential for logs: keep the last `visible` characters."""
    text = "" if value is None else str(value)
    if len(text) <= visible:
        return "*" * len(text)
    return "*" * (len(text) - visible) + text[-visible:]
