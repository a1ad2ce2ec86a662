"""
Pytest fixtures shared by the test modules.

Provides a throw-away AppConfig per test, in-memory secret stores (one
working, one that refuses everything), and a DataStore wired to a
DocumentCipher.
"""

from datetime import datetime

import pytest

from config import AppConfig
from crypto import DocumentCipher
from models import Material, Person, PersonKind
from secret_store import EncodedFallbackStore, LayeredSecretStore, SecretStorageError
from storage import DataStore
from vault import VaultPasswordManager, VaultSession


class MemorySecretStore:
    """Keychain stand-in keeping secrets in a dict."""

    def __init__(self):
        self.secrets = {}

    def put(self, account, secret):
        self.secrets[account] = secret

    def get(self, account):
        return self.secrets.get(account)

    def delete(self, account):
        self.secrets.pop(account, None)


class FailingSecretStore:
    """A store whose every call fails, like a locked or missing keychain."""

    def put(self, account, secret):
        raise SecretStorageError("keychain unavailable")

    def get(self, account):
        raise SecretStorageError("keychain unavailable")

    def delete(self, account):
        raise SecretStorageError("keychain unavailable")


class ReadOnlySecretStore(MemorySecretStore):
    """A keychain that still answers reads but refuses writes and deletes."""

    def put(self, account, secret):
        raise SecretStorageError("keychain is read-only")

    def delete(self, account):
        raise SecretStorageError("keychain is read-only")


class AccountFailingSecretStore(MemorySecretStore):
    """Works normally except for writes to the accounts listed in *refused*."""

    def __init__(self, *refused):
        super().__init__()
        self.refused = set(refused)

    def put(self, account, secret):
        if account in self.refused:
            raise SecretStorageError(f"cannot write {account}")
        super().put(account, secret)


@pytest.fixture
def config(tmp_path):
    """Fresh configuration rooted in a temporary directory."""
    return AppConfig(str(tmp_path / "userdata"))


@pytest.fixture
def primary():
    return MemorySecretStore()


@pytest.fixture
def fallback(config):
    return EncodedFallbackStore(config)


@pytest.fixture
def secrets(primary, fallback):
    return LayeredSecretStore(primary, fallback)


@pytest.fixture
def cipher(config, secrets):
    c = DocumentCipher(config, secrets)
    yield c
    c.cleanup_temp_files()


@pytest.fixture
def store(config, cipher):
    return DataStore(config, cipher)


@pytest.fixture
def passwords(config, secrets):
    return VaultPasswordManager(config, secrets)


@pytest.fixture
def session(passwords, store):
    return VaultSession(passwords, store)


@pytest.fixture
def configured_session(session):
    """A vault set up with password 'abcd' and answer 'Rex', then locked."""
    session.setup("abcd", "abcd", "Quel est le nom de votre premier animal de compagnie ?", "Rex")
    session.lock()
    return session


@pytest.fixture
def drill(store):
    """A material ready to be lent, rented or repaired."""
    return store.add_material(Material(name="Perceuse", category="Outillage", value=120.0))


@pytest.fixture
def alice(store):
    return store.add_person(Person(last_name="Martin", first_name="Alice"))


@pytest.fixture
def now():
    return datetime(2024, 5, 15, 14, 30)


@pytest.fixture
def bob(store):
    return store.add_person(Person(last_name="Durand", first_name="Bob", kind=PersonKind.MECHANIC))
