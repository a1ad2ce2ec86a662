"""
crypto.py – Encryption of vault attachments.

This module contains DocumentCipher, the single place responsible for the
cryptographic side of the vault:

  - Generating the document key on first use and keeping it in the
    secret store (same primary-then-fallback policy as the vault password).
  - Encrypting photo and invoice bytes to '<item-id>.<kind>.enc' files in
    the vault directory, and decrypting them back.
  - Decrypting an attachment to a temporary file so it can be opened with
    an external viewer, and removing those temporary files on exit.
  - Forgetting the key during a full vault reset, after which every
    existing attachment is unreadable.

Encryption uses Fernet (AES-128-CBC + HMAC-SHA256) from the 'cryptography'
package.  The key is random and independent of the vault password, so
changing or recovering the password never requires re-encrypting files.
"""

import logging
import os
import tempfile
from typing import List, Optional

from cryptography.fernet import Fernet

logger = logging.getLogger("Materiel")

KEY_ACCOUNT = "documentKey"

# Attachment kinds stored per vault item.
PHOTO = "photo"
INVOICE = "invoice"


class DocumentCipher:
    """
    Encrypts and decrypts vault attachments.

    Parameters
    ----------
    config : AppConfig
        Provides the vault directory.
    secrets : LayeredSecretStore
        Where the Fernet key is kept.
    """

    def __init__(self, config, secrets) -> None:
        self.config = config
        self.secrets = secrets
        self._key: Optional[bytes] = None

        # Temporary plaintext files created during this session.
        self._temp_files: List[str] = []

    # ------------------------------------------------------------------
    # Key management
    # ------------------------------------------------------------------

    def _fernet(self) -> Fernet:
        """Return a Fernet for the document key, creating and storing the key if needed."""
        if self._key is None:
            stored = self.secrets.get(KEY_ACCOUNT)
            if stored:
                self._key = stored.encode("ascii")
            else:
                key = Fernet.generate_key()
                self.secrets.put(KEY_ACCOUNT, key.decode("ascii"))
                logger.info("Generated new vault document key")
                self._key = key
        return Fernet(self._key)

    def forget_key(self) -> None:
        """Delete the document key everywhere; existing attachments become unreadable."""
        self.secrets.delete(KEY_ACCOUNT)
        self._key = None
        logger.info("Vault document key deleted")

    # ------------------------------------------------------------------
    # Encrypt / decrypt helpers
    # ------------------------------------------------------------------

    def encrypt_bytes_to_file(self, data: bytes, out_path: str) -> None:
        """Encrypt *data* and write the ciphertext to *out_path*."""
        token = self._fernet().encrypt(data)
        with open(out_path, "wb") as fh:
            fh.write(token)

    def decrypt_file(self, path: str) -> bytes:
        """
        Return the plaintext of the encrypted file at *path*.

        Raises cryptography.fernet.InvalidToken when the key does not match
        (for instance after a full reset) or the file is corrupted.
        """
        with open(path, "rb") as fh:
            return self._fernet().decrypt(fh.read())

    def decrypt_file_to_temp(self, path: str, suffix: str = "") -> str:
        """
        Decrypt *path* to a temporary file and return its name.

        The file is removed by cleanup_temp_files().
        """
        plaintext = self.decrypt_file(path)
        tmp = tempfile.NamedTemporaryFile(delete=False, suffix=suffix)
        tmp.write(plaintext)
        tmp.close()
        self._temp_files.append(tmp.name)
        return tmp.name

    def cleanup_temp_files(self) -> None:
        for path in list(self._temp_files):
            try:
                if os.path.exists(path):
                    os.remove(path)
            except OSError:
                logger.exception("Failed to remove temp file %s", path)
        self._temp_files.clear()

    # ------------------------------------------------------------------
    # Vault attachments
    # ------------------------------------------------------------------

    def attachment_path(self, item_id: str, kind: str) -> str:
        return os.path.join(self.config.vault_dir, f"{item_id}.{kind}.enc")

    def store_attachment(self, item_id: str, kind: str, data: bytes) -> str:
        path = self.attachment_path(item_id, kind)
        self.encrypt_bytes_to_file(data, path)
        return path

    def load_attachment(self, item_id: str, kind: str) -> Optional[bytes]:
        """Return the decrypted attachment, or None when the item has none."""
        path = self.attachment_path(item_id, kind)
        if not os.path.exists(path):
            return None
        return self.decrypt_file(path)

    def remove_attachment(self, item_id: str, kind: str) -> None:
        path = self.attachment_path(item_id, kind)
        if os.path.exists(path):
            os.remove(path)
