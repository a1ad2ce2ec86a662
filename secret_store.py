"""
secret_store.py – Storage of vault secrets.

Three classes live here:

  - KeyringSecretStore   : the primary store, backed by the platform
                           keychain through the 'keyring' package.
  - EncodedFallbackStore : the secondary store, which keeps secrets
                           base64-encoded in the application preferences
                           (config.json).
  - LayeredSecretStore   : the policy used by the rest of the application:
                           write to the primary store first and silently
                           fall back to the encoded store when that fails;
                           read primary first, then fallback.

Every store exposes the same three calls:

    put(account, secret)      -> None
    get(account)              -> str or None
    delete(account)           -> None

and signals failure by raising SecretStorageError.

KNOWN WEAKNESS: EncodedFallbackStore is obfuscation, not encryption.  Anyone
who can read config.json can decode a secret that ended up there.  It only
exists so the vault keeps working on systems without a usable keychain;
LayeredSecretStore logs a warning every time it is used.
"""

import base64
import binascii
import logging
from typing import Optional

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

from config import SECRET_SERVICE

logger = logging.getLogger("Materiel")


class SecretStorageError(Exception):
    """Raised when a secret cannot be written, read or deleted."""


class KeyringSecretStore:
    """
    Secrets kept in the platform keychain.

    Parameters
    ----------
    service : str
        Keychain service name; accounts are stored beneath it.
    """

    def __init__(self, service: str = SECRET_SERVICE) -> None:
        self.service = service

    def put(self, account: str, secret: str) -> None:
        try:
            keyring.set_password(self.service, account, secret)
        except KeyringError as exc:
            raise SecretStorageError(f"Keychain write failed for {account!r}: {exc}") from exc

    def get(self, account: str) -> Optional[str]:
        try:
            return keyring.get_password(self.service, account)
        except KeyringError as exc:
            raise SecretStorageError(f"Keychain read failed for {account!r}: {exc}") from exc

    def delete(self, account: str) -> None:
        try:
            keyring.delete_password(self.service, account)
        except PasswordDeleteError:
            # Nothing stored under this account.
            logger.debug("No keychain entry to delete for %s", account)
        except KeyringError as exc:
            raise SecretStorageError(f"Keychain delete failed for {account!r}: {exc}") from exc


class EncodedFallbackStore:
    """
    Secrets kept base64-encoded in the application preferences.

    Parameters
    ----------
    config : AppConfig
        Preference storage; values live under 'vault.fallback.<account>'.
    """

    PREFIX = "vault.fallback."

    def __init__(self, config) -> None:
        self.config = config

    def _key(self, account: str) -> str:
        return self.PREFIX + account

    def _save(self) -> None:
        try:
            self.config.save()
        except OSError as exc:
            raise SecretStorageError(f"Could not write preferences: {exc}") from exc

    def put(self, account: str, secret: str) -> None:
        encoded = base64.b64encode(secret.encode("utf-8")).decode("ascii")
        self.config.set(self._key(account), encoded)
        self._save()

    def get(self, account: str) -> Optional[str]:
        encoded = self.config.get(self._key(account))
        if encoded is None:
            return None
        try:
            return base64.b64decode(encoded, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            logger.warning("Ignoring unreadable fallback secret for %s", account)
            return None

    def delete(self, account: str) -> None:
        if self.config.get(self._key(account)) is None:
            return
        self.config.remove(self._key(account))
        self._save()


class LayeredSecretStore:
    """
    Primary-first, fallback-second secret storage.

    Parameters
    ----------
    primary : KeyringSecretStore (or any store with the same interface)
    fallback : EncodedFallbackStore (or any store with the same interface)
    """

    def __init__(self, primary, fallback) -> None:
        self.primary = primary
        self.fallback = fallback

    def put(self, account: str, secret: str) -> str:
        """
        Store *secret* under *account*.

        The previous primary entry is deleted first, then the new value is
        written to the primary store.  On success any fallback copy is
        removed; on failure the value goes to the fallback store instead.

        Returns "primary" or "fallback" depending on where the secret landed.
        Raises SecretStorageError when both stores refuse the write, or when
        the primary refuses it but still returns an older value: get() reads
        the primary first, so a fallback copy would never be seen.
        """
        try:
            self.primary.delete(account)
        except SecretStorageError as exc:
            logger.debug("Primary delete before write failed for %s: %s", account, exc)

        try:
            self.primary.put(account, secret)
        except SecretStorageError as exc:
            try:
                stale = self.primary.get(account)
            except SecretStorageError:
                stale = None
            if stale is not None:
                logger.error("Primary store refused %s but still holds an older value", account)
                raise SecretStorageError(
                    f"Cannot replace {account}: the keychain still holds the previous value"
                ) from exc
            logger.warning(
                "Primary secret store unavailable for %s (%s); using encoded fallback",
                account, exc,
            )
        else:
            try:
                self.fallback.delete(account)
            except SecretStorageError:
                logger.exception("Could not clear stale fallback copy of %s", account)
            logger.info("Secret %s stored in primary store", account)
            return "primary"

        try:
            self.fallback.put(account, secret)
        except SecretStorageError:
            logger.error("Both secret stores failed for %s", account)
            raise
        logger.info("Secret %s stored in fallback store", account)
        return "fallback"

    def get(self, account: str) -> Optional[str]:
        """Return the secret for *account* from the primary store, else the fallback, else None."""
        try:
            value = self.primary.get(account)
        except SecretStorageError as exc:
            logger.warning("Primary secret store read failed for %s: %s", account, exc)
            value = None
        if value is not None:
            return value

        value = self.fallback.get(account)
        if value is not None:
            logger.info("Secret %s read from fallback store", account)
        return value

    def delete(self, account: str) -> None:
        """
        Delete *account* from both stores.

        A primary failure is logged and the fallback is still cleared;
        a fallback failure propagates.
        """
        try:
            self.primary.delete(account)
        except SecretStorageError:
            logger.exception("Primary secret delete failed for %s", account)
        self.fallback.delete(account)
