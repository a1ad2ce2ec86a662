import base64

import keyring
import pytest
from keyring.errors import KeyringError, PasswordDeleteError

from config import AppConfig
from secret_store import (
    EncodedFallbackStore,
    KeyringSecretStore,
    LayeredSecretStore,
    SecretStorageError,
)
from tests.conftest import FailingSecretStore, ReadOnlySecretStore


def test_primary_write_clears_fallback_copy(config, primary, fallback, secrets):
    fallback.put("password", "old")
    assert secrets.put("password", "s3cret") == "primary"
    assert primary.get("password") == "s3cret"
    assert fallback.get("password") is None


def test_fallback_used_when_primary_fails(config):
    fallback = EncodedFallbackStore(config)
    secrets = LayeredSecretStore(FailingSecretStore(), fallback)

    assert secrets.put("password", "s3cret") == "fallback"
    assert secrets.get("password") == "s3cret"
    stored = config.get("vault.fallback.password")
    assert base64.b64decode(stored).decode("utf-8") == "s3cret"


def test_fallback_survives_reload(config):
    LayeredSecretStore(FailingSecretStore(), EncodedFallbackStore(config)).put("password", "abcd")
    reloaded = AppConfig(config.user_data_dir)
    assert EncodedFallbackStore(reloaded).get("password") == "abcd"


def test_both_stores_failing_raises(config, monkeypatch):
    def refuse():
        raise OSError("read-only filesystem")

    monkeypatch.setattr(config, "save", refuse)
    secrets = LayeredSecretStore(FailingSecretStore(), EncodedFallbackStore(config))
    with pytest.raises(SecretStorageError):
        secrets.put("password", "s3cret")


def test_read_only_primary_holding_old_value_refuses_write(fallback):
    primary = ReadOnlySecretStore()
    primary.secrets["password"] = "old"
    secrets = LayeredSecretStore(primary, fallback)

    with pytest.raises(SecretStorageError):
        secrets.put("password", "new")
    assert secrets.get("password") == "old"
    assert fallback.get("password") is None


def test_read_only_primary_without_value_uses_fallback(fallback):
    secrets = LayeredSecretStore(ReadOnlySecretStore(), fallback)
    assert secrets.put("password", "new") == "fallback"
    assert secrets.get("password") == "new"


def test_get_prefers_primary(primary, fallback, secrets):
    primary.put("password", "from-keychain")
    fallback.put("password", "from-fallback")
    assert secrets.get("password") == "from-keychain"


def test_get_missing_secret(secrets):
    assert secrets.get("password") is None


def test_unreadable_fallback_is_ignored(config, fallback):
    config.set("vault.fallback.password", "***not base64***")
    assert fallback.get("password") is None


def test_delete_clears_both_stores(primary, fallback, secrets):
    primary.put("password", "a")
    fallback.put("password", "b")
    secrets.delete("password")
    assert primary.get("password") is None
    assert fallback.get("password") is None


def test_delete_tolerates_primary_failure(config):
    fallback = EncodedFallbackStore(config)
    fallback.put("password", "b")
    LayeredSecretStore(FailingSecretStore(), fallback).delete("password")
    assert fallback.get("password") is None


class TestKeyringSecretStore:

    def test_round_trip_through_keyring(self, monkeypatch):
        vault = {}
        monkeypatch.setattr(keyring, "set_password", lambda s, a, p: vault.__setitem__((s, a), p))
        monkeypatch.setattr(keyring, "get_password", lambda s, a: vault.get((s, a)))
        store = KeyringSecretStore("test-service")
        store.put("password", "abcd")
        assert store.get("password") == "abcd"
        assert ("test-service", "password") in vault

    def test_write_failure_is_wrapped(self, monkeypatch):
        def fail(*args):
            raise KeyringError("locked")

        monkeypatch.setattr(keyring, "set_password", fail)
        with pytest.raises(SecretStorageError):
            KeyringSecretStore().put("password", "abcd")

    def test_deleting_missing_entry_is_not_an_error(self, monkeypatch):
        def missing(*args):
            raise PasswordDeleteError("not found")

        monkeypatch.setattr(keyring, "delete_password", missing)
        KeyringSecretStore().delete("password")

