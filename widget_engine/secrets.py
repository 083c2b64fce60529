"""Encryption utilities for plugin instance credentials."""
from __future__ import annotations

from typing import Protocol

from cryptography.fernet import Fernet, InvalidToken

from widget_engine.errors import EngineError

ENCRYPTED_PREFIX = "fernet:"


class SecretsVault(Protocol):
    def encrypt(self, plaintext: str) -> str:
        raise NotImplementedError

    def decrypt(self, ciphertext: str) -> str:
        raise NotImplementedError


class FernetSecretsVault:
    """Vault backed by a Fernet key from the environment."""

    def __init__(self, key: str | bytes) -> None:
        if not key:
            raise ValueError("WIDGET_ENGINE_ENCRYPTION_KEY not set in environment")
        self._cipher = Fernet(key.encode() if isinstance(key, str) else key)

    def encrypt(self, plaintext: str) -> str:
        return ENCRYPTED_PREFIX + self._cipher.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        token = ciphertext[len(ENCRYPTED_PREFIX):] if ciphertext.startswith(ENCRYPTED_PREFIX) else ciphertext
        return self._cipher.decrypt(token.encode()).decode()


def reveal_secret(value: str | None, vault: SecretsVault | None, *, field_name: str) -> str | None:
    if value is None or not value.startswith(ENCRYPTED_PREFIX):
        return value
    if vault is None:
        raise EngineError(
            status_code=500,
            code="secrets_vault_missing",
            message=f"Credential '{field_name}' is encrypted but no encryption key is configured",
        )
    try:
        return vault.decrypt(value)
    except InvalidToken as exc:
        raise EngineError(
            status_code=500,
            code="invalid_credentials",
            message=f"Credential '{field_name}' cannot be decrypted with the current encryption key",
        ) from exc
