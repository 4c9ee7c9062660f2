from __future__ import annotations

from base64 import urlsafe_b64encode
import hashlib

from cryptography.fernet import Fernet, InvalidToken

from beacon.core.config import Settings, get_settings
from beacon.core.errors import ProviderConfigError, TokenDecryptionError


class TokenCipher:
    # Integration access tokens are stored as Fernet tokens keyed from one configured secret.
    def __init__(self, secret: str | None) -> None:
        source = (secret or "").strip()
        if not source:
            raise ProviderConfigError("SLACK_TOKEN_ENCRYPTION_KEY is required to read Slack tokens")
        digest = hashlib.sha256(source.encode("utf-8")).digest()
        self._fernet = Fernet(urlsafe_b64encode(digest))

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "TokenCipher":
        settings = settings or get_settings()
        return cls(settings.slack_token_encryption_key)

    def encrypt(self, token: str) -> str:
        return self._fernet.encrypt(token.encode("utf-8")).decode("utf-8")

    def decrypt(self, encrypted: str) -> str:
        try:
            return self._fernet.decrypt(encrypted.encode("utf-8")).decode("utf-8")
        except InvalidToken as exc:
            raise TokenDecryptionError("stored token could not be decrypted") from exc
