"""
Encrypted credential store, the persisted tier of API key resolution.

Values are Fernet-encrypted with a key derived from RELAY_MASTER_KEY and
never held in plaintext at rest. The store lives in memory and can be
persisted to a YAML file of encrypted values.

Usage:
    from relay.credentials.store import EncryptedCredentialStore

    store = EncryptedCredentialStore(path="~/.relay/credentials.yaml")
    store.set("anthropic_api_key", "sk-ant-...")
    store.get("anthropic_api_key")  # -> "sk-ant-..."
"""

from __future__ import annotations

import base64
import hashlib
import logging
import os
from pathlib import Path
from typing import Optional

import yaml
from cryptography.fernet import Fernet, InvalidToken

from relay.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

MASTER_KEY_ENV = "RELAY_MASTER_KEY"


# ---------------------------------------------------------------------------
# Encryption Utilities
# ---------------------------------------------------------------------------

def _derive_fernet_key(master_key: str) -> bytes:
    # Fernet wants 32 url-safe base64 bytes; SHA-256 gives exactly 32
    hashed = hashlib.sha256(master_key.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(hashed)


def _get_fernet(master_key: Optional[str] = None) -> Fernet:
    key = master_key or os.environ.get(MASTER_KEY_ENV, "").strip()
    if not key:
        raise ConfigurationError(
            f"{MASTER_KEY_ENV} environment variable is not set. "
            "Generate one with: python -c \"import secrets; print(secrets.token_hex(32))\""
        )
    return Fernet(_derive_fernet_key(key))


def encrypt_value(plaintext: str, master_key: Optional[str] = None) -> str:
    """Encrypt a secret into a storable token string."""
    return _get_fernet(master_key).encrypt(plaintext.encode("utf-8")).decode("utf-8")


def decrypt_value(encrypted_text: str, master_key: Optional[str] = None) -> str:
    """
    Decrypt a token produced by `encrypt_value`.

    Raises:
        InvalidToken: wrong master key or corrupted token.
    """
    return _get_fernet(master_key).decrypt(encrypted_text.encode("utf-8")).decode("utf-8")


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class EncryptedCredentialStore:
    """
    Key/value store of encrypted secrets.

    Satisfies the credential source interface consumed by
    CredentialResolver: `get(key) -> secret | None`.
    """

    def __init__(
        self,
        path: Optional[str | Path] = None,
        master_key: Optional[str] = None,
    ):
        self._path = Path(path).expanduser() if path else None
        self._master_key = master_key
        self._encrypted: dict[str, str] = {}
        if self._path is not None and self._path.exists():
            self._load()

    def _load(self) -> None:
        with open(self._path) as f:
            raw = yaml.safe_load(f) or {}
        if not isinstance(raw, dict):
            raise ConfigurationError(
                f"Credential file must contain a mapping: {self._path}",
                config_path=str(self._path),
            )
        self._encrypted = {str(k): str(v) for k, v in raw.items()}

    def _save(self) -> None:
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with open(self._path, "w") as f:
            yaml.safe_dump(self._encrypted, f, default_flow_style=False)
        os.chmod(self._path, 0o600)

    def set(self, key: str, value: str) -> None:
        if not value or not value.strip():
            raise ValueError(f"Cannot store empty credential for {key}")
        self._encrypted[key] = encrypt_value(value, self._master_key)
        self._save()
        logger.info(
            "credential_stored",
            extra={"credential": key, "storage": "file" if self._path else "memory"},
        )

    def get(self, key: str) -> Optional[str]:
        """Decrypted secret, or None if unset or undecryptable."""
        encrypted = self._encrypted.get(key)
        if encrypted is None:
            return None
        try:
            return decrypt_value(encrypted, self._master_key)
        except InvalidToken:
            logger.error(
                "credential_decrypt_failed",
                extra={"credential": key},
            )
            return None

    def delete(self, key: str) -> bool:
        if key not in self._encrypted:
            return False
        del self._encrypted[key]
        self._save()
        return True

    def has(self, key: str) -> bool:
        return key in self._encrypted

    def keys(self) -> list[str]:
        return sorted(self._encrypted)
