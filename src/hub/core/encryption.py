"""Symmetric encryption for integration credentials at rest.

Integration secrets (access tokens, refresh tokens, webhook signing secrets,
platform client secrets) are stored as a single Fernet token per row. The key
is process-wide and loaded once; decrypted values live only for the duration
of the call that needed them.
"""

from __future__ import annotations

import base64
import hashlib
import json
from functools import lru_cache
from typing import Any

from cryptography.fernet import Fernet, InvalidToken

from src.hub.config import get_settings
from src.hub.integrations.errors import SecretsDecryptionError


def derive_fernet_key(secret: str) -> bytes:
    """Derive a urlsafe base64 Fernet key from an arbitrary secret string."""
    digest = hashlib.sha256(secret.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest)


class SecretsCodec:
    """Encrypts and decrypts JSON-serializable secret dicts.

    Args:
        key: A Fernet key (urlsafe base64, 32 bytes decoded).
    """

    def __init__(self, key: bytes | str) -> None:
        self._fernet = Fernet(key)

    def encrypt(self, secrets: dict[str, Any]) -> str:
        """Serialize and encrypt a secrets dict into an opaque token."""
        payload = json.dumps(secrets, separators=(",", ":"), sort_keys=True)
        return self._fernet.encrypt(payload.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str | None) -> dict[str, Any]:
        """Decrypt a token produced by encrypt().

        An empty or missing token decrypts to an empty dict.

        Raises:
            SecretsDecryptionError: If the token was tampered with, was
                encrypted under another key, or does not hold a JSON object.
        """
        if not token:
            return {}
        try:
            raw = self._fernet.decrypt(token.encode("ascii"))
        except (InvalidToken, ValueError) as exc:
            raise SecretsDecryptionError("Stored secrets could not be decrypted") from exc

        data = json.loads(raw)
        if not isinstance(data, dict):
            raise SecretsDecryptionError("Stored secrets are not a JSON object")
        return data


@lru_cache
def get_secrets_codec() -> SecretsCodec:
    """Process-wide codec built from settings."""
    settings = get_settings()
    key = settings.INTEGRATION_ENCRYPTION_KEY or derive_fernet_key(settings.SECRET_KEY)
    return SecretsCodec(key)
