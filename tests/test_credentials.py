"""
Tests for credential storage and resolution.

Covers:
- Fernet key derivation and value encryption
- EncryptedCredentialStore: set/get/delete/has, YAML persistence, wrong master key
- CredentialResolver: store -> env order, TTL cache, invalidate, async stores,
  store failures falling through to the environment
"""

from __future__ import annotations

import os
import stat
from unittest.mock import AsyncMock, MagicMock

import pytest
import yaml
from cryptography.fernet import InvalidToken

from relay.credentials.resolver import CredentialResolver
from relay.credentials.store import (
    MASTER_KEY_ENV,
    EncryptedCredentialStore,
    _derive_fernet_key,
    decrypt_value,
    encrypt_value,
)
from relay.exceptions import ConfigurationError

TEST_MASTER_KEY = "test-master-key-for-provider-relay-42"


@pytest.fixture
def store() -> EncryptedCredentialStore:
    """In-memory store with a fixed master key."""
    return EncryptedCredentialStore(master_key=TEST_MASTER_KEY)


# ---------------------------------------------------------------------------
# Encryption
# ---------------------------------------------------------------------------

class TestEncryption:
    """Key derivation and value encryption."""

    def test_derivation_is_deterministic(self):
        assert _derive_fernet_key("a") == _derive_fernet_key("a")
        assert _derive_fernet_key("a") != _derive_fernet_key("b")

    def test_derived_key_length(self):
        assert len(_derive_fernet_key("x")) == 44

    def test_encrypt_decrypt(self):
        token = encrypt_value("sk-ant-secret", TEST_MASTER_KEY)
        assert "sk-ant-secret" not in token
        assert decrypt_value(token, TEST_MASTER_KEY) == "sk-ant-secret"

    def test_wrong_key_rejected(self):
        token = encrypt_value("secret", TEST_MASTER_KEY)
        with pytest.raises(InvalidToken):
            decrypt_value(token, "another-key")

    def test_master_key_from_env(self, monkeypatch):
        monkeypatch.setenv(MASTER_KEY_ENV, TEST_MASTER_KEY)
        assert decrypt_value(encrypt_value("v")) == "v"

    def test_missing_master_key(self, monkeypatch):
        monkeypatch.delenv(MASTER_KEY_ENV, raising=False)
        with pytest.raises(ConfigurationError, match=MASTER_KEY_ENV):
            encrypt_value("v")


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class TestEncryptedCredentialStore:
    """Encrypted key/value storage."""

    def test_set_and_get(self, store):
        store.set("anthropic_api_key", "sk-ant-123")
        assert store.get("anthropic_api_key") == "sk-ant-123"
        assert store.has("anthropic_api_key")

    def test_get_missing(self, store):
        assert store.get("nope") is None

    def test_empty_value_rejected(self, store):
        with pytest.raises(ValueError):
            store.set("k", "   ")

    def test_delete(self, store):
        store.set("k", "v")
        assert store.delete("k") is True
        assert store.delete("k") is False
        assert not store.has("k")

    def test_keys_sorted(self, store):
        store.set("b", "2")
        store.set("a", "1")
        assert store.keys() == ["a", "b"]

    def test_persists_encrypted_yaml(self, tmp_path):
        path = tmp_path / "creds" / "credentials.yaml"
        EncryptedCredentialStore(path=path, master_key=TEST_MASTER_KEY).set("openai_api_key", "sk-xyz")

        raw = yaml.safe_load(path.read_text())
        assert set(raw) == {"openai_api_key"}
        assert raw["openai_api_key"] != "sk-xyz"
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600

        reopened = EncryptedCredentialStore(path=path, master_key=TEST_MASTER_KEY)
        assert reopened.get("openai_api_key") == "sk-xyz"

    def test_wrong_master_key_reads_none(self, tmp_path):
        path = tmp_path / "credentials.yaml"
        EncryptedCredentialStore(path=path, master_key=TEST_MASTER_KEY).set("k", "v")

        assert EncryptedCredentialStore(path=path, master_key="wrong").get("k") is None

    def test_non_mapping_file_rejected(self, tmp_path):
        path = tmp_path / "credentials.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigurationError):
            EncryptedCredentialStore(path=path, master_key=TEST_MASTER_KEY)


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------

class TestCredentialResolver:
    """Cache -> store -> environment resolution."""

    @pytest.mark.asyncio
    async def test_env_only(self, monkeypatch):
        monkeypatch.setenv("RELAY_TEST_API_KEY", "  from-env  ")
        assert await CredentialResolver("RELAY_TEST_API_KEY").resolve() == "from-env"

    @pytest.mark.asyncio
    async def test_nothing_configured(self, monkeypatch):
        monkeypatch.delenv("RELAY_TEST_API_KEY", raising=False)
        assert await CredentialResolver("RELAY_TEST_API_KEY").resolve() is None

    @pytest.mark.asyncio
    async def test_store_wins_over_env(self, monkeypatch, store):
        monkeypatch.setenv("RELAY_TEST_API_KEY", "from-env")
        store.set("test_key", "from-store")
        resolver = CredentialResolver("RELAY_TEST_API_KEY", store=store, store_key="test_key")
        assert await resolver.resolve() == "from-store"

    @pytest.mark.asyncio
    async def test_store_miss_falls_back_to_env(self, monkeypatch, store):
        monkeypatch.setenv("RELAY_TEST_API_KEY", "from-env")
        resolver = CredentialResolver("RELAY_TEST_API_KEY", store=store, store_key="absent")
        assert await resolver.resolve() == "from-env"

    @pytest.mark.asyncio
    async def test_async_store(self, monkeypatch):
        monkeypatch.delenv("RELAY_TEST_API_KEY", raising=False)
        source = MagicMock()
        source.get = AsyncMock(return_value="async-secret")
        resolver = CredentialResolver("RELAY_TEST_API_KEY", store=source, store_key="k")

        assert await resolver.resolve() == "async-secret"
        source.get.assert_awaited_once_with("k")

    @pytest.mark.asyncio
    async def test_store_failure_falls_through(self, monkeypatch, caplog):
        monkeypatch.setenv("RELAY_TEST_API_KEY", "from-env")
        source = MagicMock()
        source.get.side_effect = RuntimeError("vault unreachable")
        resolver = CredentialResolver("RELAY_TEST_API_KEY", store=source, store_key="k")

        assert await resolver.resolve() == "from-env"
        assert "credential_store_read_failed" in caplog.text

    @pytest.mark.asyncio
    async def test_cached_within_ttl(self, monkeypatch):
        source = MagicMock()
        source.get.return_value = "first"
        resolver = CredentialResolver("RELAY_TEST_API_KEY", store=source, store_key="k", ttl_seconds=60)

        assert await resolver.resolve() == "first"
        source.get.return_value = "second"
        assert await resolver.resolve() == "first"
        assert source.get.call_count == 1

    @pytest.mark.asyncio
    async def test_missing_result_cached_too(self, monkeypatch):
        monkeypatch.delenv("RELAY_TEST_API_KEY", raising=False)
        resolver = CredentialResolver("RELAY_TEST_API_KEY", ttl_seconds=60)

        assert await resolver.resolve() is None
        monkeypatch.setenv("RELAY_TEST_API_KEY", "late")
        assert await resolver.resolve() is None

    @pytest.mark.asyncio
    async def test_invalidate_rereads(self, monkeypatch):
        monkeypatch.setenv("RELAY_TEST_API_KEY", "old")
        resolver = CredentialResolver("RELAY_TEST_API_KEY", ttl_seconds=60)
        assert await resolver.resolve() == "old"

        monkeypatch.setenv("RELAY_TEST_API_KEY", "new")
        resolver.invalidate()
        assert await resolver.resolve() == "new"

    @pytest.mark.asyncio
    async def test_zero_ttl_always_rereads(self, monkeypatch):
        source = MagicMock()
        source.get.side_effect = ["one", "two"]
        resolver = CredentialResolver("RELAY_TEST_API_KEY", store=source, store_key="k", ttl_seconds=0)

        assert await resolver.resolve() == "one"
        assert await resolver.resolve() == "two"
