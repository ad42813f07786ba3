from __future__ import annotations

from django.db import models

from core.crypto import decrypt_secret, encrypt_secret


class EncryptedCredentialField(models.TextField):
    """
    Trader API credentials, encrypted at rest with Fernet.

    Python values are plaintext; the column holds `enc::<token>`.
    """

    description = "Encrypted trader credential"

    def from_db_value(self, value, expression, connection):  # type: ignore[override]
        return decrypt_secret(value)

    def to_python(self, value):  # type: ignore[override]
        if value is None:
            return ""
        return decrypt_secret(value) if isinstance(value, str) else value

    def get_prep_value(self, value):  # type: ignore[override]
        return encrypt_secret("" if value is None else str(value))
