from __future__ import annotations

import base64
import logging
import os
from abc import ABC, abstractmethod
from typing import Dict, Mapping, Optional

from cryptography.fernet import Fernet, InvalidToken

from integration_schema import Integration


ENCRYPTED_PREFIX = "fernet:"

logger = logging.getLogger("lookout.secrets")


class SecretStoreError(RuntimeError):
    pass


class SecretResolutionError(RuntimeError):
    def __init__(self, key: str) -> None:
        super().__init__(f'Secret "{key}" is undefined.')
        self.key = key


def _get_fernet(key: str | None) -> Fernet:
    key = (key or "").strip()
    if not key:
        raise SecretStoreError("LOOKOUT_SECRET_KEY is not set")
    try:
        # Accept raw 32-byte key or urlsafe b64 key
        if len(key) == 32:
            key = base64.urlsafe_b64encode(key.encode("utf-8")).decode("utf-8")
        return Fernet(key.encode("utf-8"))
    except ValueError as exc:
        raise SecretStoreError("Invalid LOOKOUT_SECRET_KEY") from exc


def encrypt_secret(value: str, key: str | None) -> str:
    token = _get_fernet(key).encrypt(value.encode("utf-8"))
    return ENCRYPTED_PREFIX + token.decode("utf-8")


def decrypt_secret(token: str, key: str | None) -> str:
    if token.startswith(ENCRYPTED_PREFIX):
        token = token[len(ENCRYPTED_PREFIX):]
    try:
        value = _get_fernet(key).decrypt(token.encode("utf-8"))
        return value.decode("utf-8")
    except InvalidToken as exc:
        raise SecretStoreError("Invalid secret token") from exc


class SecretsProvider(ABC):
    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        ...

    def load(self) -> None:
        return None

    def get_secrets_for_integration(self, integration: Integration) -> Dict[str, str]:
        """Only the declared secrets; a missing one fails the run."""
        declared = integration.metadata.get("requiredSecrets") or []
        resolved: Dict[str, str] = {}
        for key in declared:
            value = self.get(key)
            if value is None:
                logger.error("secret_missing integration=%s key=%s", integration.name, key)
                raise SecretResolutionError(key)
            resolved[key] = value
        return resolved


class MemorySecrets(SecretsProvider):
    def __init__(self, values: Mapping[str, str] | None = None) -> None:
        self._values = dict(values or {})

    def get(self, key: str) -> Optional[str]:
        return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        self._values[key] = value


class EnvSecrets(SecretsProvider):
    """Secrets from ``<prefix><KEY>`` environment variables.

    Values starting with ``fernet:`` are decrypted with the configured key
    when loaded, so a bad token fails at startup rather than mid-request.
    """

    def __init__(self, prefix: str = "INTEGRATION_", secret_key: str | None = None, environ: Mapping[str, str] | None = None) -> None:
        self._prefix = prefix
        self._secret_key = secret_key
        self._environ = environ
        self._values: Dict[str, str] = {}

    def load(self) -> None:
        environ = self._environ if self._environ is not None else os.environ
        values: Dict[str, str] = {}
        for name, value in environ.items():
            if not name.startswith(self._prefix):
                continue
            key = name[len(self._prefix):]
            if value.startswith(ENCRYPTED_PREFIX):
                value = decrypt_secret(value, self._secret_key)
            values[key] = value
        self._values = values
        logger.info("secrets_loaded source=env prefix=%s count=%s", self._prefix, len(values))

    def get(self, key: str) -> Optional[str]:
        value = self._values.get(key)
        logger.debug("secret_lookup key=%s found=%s", key, value is not None)
        return value
