"""
vault.py – Vault credentials and the lock/unlock state machine.

This module drives every authentication flow of the vault (coffre-fort):

  - VaultPasswordManager : storage and verification of the vault password
    and of the recovery question/answer, on top of LayeredSecretStore.
  - BiometricAuthenticator : the biometric capability.  The default
    implementation reports itself unavailable; a platform front-end can
    subclass it.
  - VaultSession : the state machine walked through by the front-end:
    first-time setup, unlock, lock, recovery through the secret question,
    password change, and the two-step full reset that wipes the vault.

VaultSession depends on VaultPasswordManager and on DataStore (for the full
reset) but never prompts the user itself; every step is a method call
taking the values the user typed, and failures are raised as VaultError
subclasses the front-end can turn into a message and a retry.
"""

import logging
from enum import Enum
from typing import Callable, Optional

from config import (
    MIN_PASSWORD_LENGTH,
    MIN_RECOVERY_ANSWER_LENGTH,
    RESET_CONFIRMATION_WORD,
)
from secret_store import SecretStorageError

logger = logging.getLogger("Materiel")

# Secret-store accounts.
PASSWORD_ACCOUNT = "password"
ANSWER_ACCOUNT = "recoveryAnswer"

# Preference keys in config.json.
HAS_PASSWORD_KEY = "vault.has_password"
QUESTION_KEY = "vault.recovery_question"


class VaultError(Exception):
    """Base class for errors raised by the vault flows."""


class InvalidPasswordError(VaultError):
    """The password is wrong, or too short to be accepted."""


class PasswordMismatchError(VaultError):
    """The password and its confirmation differ."""


class RecoveryAnswerError(VaultError):
    """The recovery answer is wrong, or too short to be accepted."""


class InvalidStateError(VaultError):
    """The requested action is not possible in the current state."""


class ResetConfirmationError(VaultError):
    """The confirmation word typed for a full reset is not the expected one."""


def normalize_answer(answer: str) -> str:
    """Recovery answers are compared lower-cased with surrounding whitespace removed."""
    return answer.strip().lower()


class VaultPasswordManager:
    """
    Stores and checks the vault password and the recovery answer.

    Secrets go through *secrets* (primary keychain, encoded fallback); the
    has-password flag and the recovery question are plain preferences in
    *config*.

    Parameters
    ----------
    config : AppConfig
    secrets : LayeredSecretStore
    """

    def __init__(self, config, secrets) -> None:
        self.config = config
        self.secrets = secrets

    # ------------------------------------------------------------------
    # Preferences
    # ------------------------------------------------------------------

    def _save_preferences(self) -> None:
        # The flag is informative; losing it is logged, not fatal.
        try:
            self.config.save()
        except OSError:
            logger.exception("Failed to save vault preferences")

    @property
    def has_password(self) -> bool:
        return bool(self.config.get(HAS_PASSWORD_KEY, False))

    # ------------------------------------------------------------------
    # Password
    # ------------------------------------------------------------------

    def set_password(self, password: str) -> bool:
        """
        Store *password* as the vault password.

        Returns False (and stores nothing) when it is shorter than
        MIN_PASSWORD_LENGTH.  Raises SecretStorageError when neither the
        keychain nor the fallback could keep it.
        """
        if len(password) < MIN_PASSWORD_LENGTH:
            return False
        where = self.secrets.put(PASSWORD_ACCOUNT, password)
        self.config.set(HAS_PASSWORD_KEY, True)
        self._save_preferences()
        logger.info("Vault password set (%s store)", where)
        return True

    def verify_password(self, candidate: str) -> bool:
        """Exact comparison with the stored password; False when none is stored."""
        stored = self.secrets.get(PASSWORD_ACCOUNT)
        if stored is None:
            logger.warning("No vault password found in any store")
            return False
        return candidate == stored

    def change_password(self, old: str, new: str) -> bool:
        if not self.verify_password(old):
            return False
        return self.set_password(new)

    # ------------------------------------------------------------------
    # Recovery question
    # ------------------------------------------------------------------

    def set_recovery_question(self, question: str, answer: str) -> bool:
        normalized = normalize_answer(answer)
        if len(normalized) < MIN_RECOVERY_ANSWER_LENGTH:
            return False
        self.secrets.put(ANSWER_ACCOUNT, normalized)
        self.config.set(QUESTION_KEY, question)
        self._save_preferences()
        logger.info("Recovery question set")
        return True

    def get_recovery_question(self) -> Optional[str]:
        return self.config.get(QUESTION_KEY)

    def verify_recovery_answer(self, candidate: str) -> bool:
        stored = self.secrets.get(ANSWER_ACCOUNT)
        if stored is None:
            return False
        return normalize_answer(candidate) == stored

    def reset_password_with_recovery(self, answer: str, new: str) -> bool:
        if not self.verify_recovery_answer(answer):
            return False
        return self.set_password(new)

    # ------------------------------------------------------------------
    # Removal
    # ------------------------------------------------------------------

    def remove_password(self) -> None:
        """Forget the password, the recovery answer and question, and the flag."""
        for account in (PASSWORD_ACCOUNT, ANSWER_ACCOUNT):
            try:
                self.secrets.delete(account)
            except SecretStorageError:
                logger.exception("Could not delete vault secret %s", account)
        self.config.remove(QUESTION_KEY)
        self.config.set(HAS_PASSWORD_KEY, False)
        self._save_preferences()
        logger.info("Vault credentials removed")


class BiometricAuthenticator:
    """
    Biometric capability (fingerprint, face, ...).

    This base implementation has no sensor: is_available() is False and
    authenticate() reports a failure.
    """

    def is_available(self) -> bool:
        return False

    def authenticate(self, reason: str, callback: Callable[[bool], None]) -> None:
        callback(False)


class VaultState(str, Enum):
    UNINITIALIZED = "uninitialized"
    LOCKED = "locked"
    UNLOCKED = "unlocked"
    RECOVERY_ANSWER = "recovery_answer"
    RECOVERY_NEW_PASSWORD = "recovery_new_password"
    RESET_WARNING = "reset_warning"
    RESET_CONFIRMATION = "reset_confirmation"


_RECOVERY_STATES = (VaultState.RECOVERY_ANSWER, VaultState.RECOVERY_NEW_PASSWORD)
_RESET_STATES = (VaultState.RESET_WARNING, VaultState.RESET_CONFIRMATION)


class VaultSession:
    """
    Lock state of the vault for one run of the application.

    Parameters
    ----------
    passwords : VaultPasswordManager
    store : DataStore
        Wiped by confirm_full_reset().
    biometrics : BiometricAuthenticator, optional
    dispatch : callable, optional
        Runs the biometric callback on the main context; by default the
        callback is simply called.
    """

    def __init__(self, passwords: VaultPasswordManager, store,
                 biometrics: Optional[BiometricAuthenticator] = None,
                 dispatch: Optional[Callable[[Callable[[], None]], None]] = None) -> None:
        self.passwords = passwords
        self.store = store
        self.biometrics = biometrics or BiometricAuthenticator()
        self.dispatch = dispatch or (lambda fn: fn())

        self.failed_attempts = 0
        # State to go back to when a recovery or reset flow is cancelled.
        self._return_state: Optional[VaultState] = None
        # Recovery answer validated in RECOVERY_ANSWER, reused for the reset.
        self._recovery_answer: Optional[str] = None

        self.state = VaultState.LOCKED if passwords.has_password else VaultState.UNINITIALIZED

    def _require_state(self, *allowed: VaultState) -> None:
        if self.state not in allowed:
            raise InvalidStateError(f"Not possible while the vault is {self.state.value}")

    @staticmethod
    def _check_new_password(password: str, confirmation: str) -> None:
        if len(password) < MIN_PASSWORD_LENGTH:
            raise InvalidPasswordError(
                f"The password must contain at least {MIN_PASSWORD_LENGTH} characters."
            )
        if password != confirmation:
            raise PasswordMismatchError("The passwords do not match.")

    @staticmethod
    def _check_answer(answer: str) -> None:
        if len(normalize_answer(answer)) < MIN_RECOVERY_ANSWER_LENGTH:
            raise RecoveryAnswerError(
                f"The answer must contain at least {MIN_RECOVERY_ANSWER_LENGTH} characters."
            )

    @property
    def is_unlocked(self) -> bool:
        return self.state is VaultState.UNLOCKED

    # ------------------------------------------------------------------
    # Setup, unlock, lock
    # ------------------------------------------------------------------

    def setup(self, password: str, confirmation: str, question: str, answer: str) -> None:
        """First-time configuration: password plus recovery question; leaves the vault unlocked."""
        self._require_state(VaultState.UNINITIALIZED)
        self._check_new_password(password, confirmation)
        self._check_answer(answer)
        self.passwords.set_password(password)
        try:
            self.passwords.set_recovery_question(question, answer)
        except SecretStorageError:
            logger.error("Recovery answer could not be stored; undoing vault setup")
            self.passwords.remove_password()
            raise
        self.state = VaultState.UNLOCKED
        logger.info("Vault configured")

    def unlock(self, password: str) -> None:
        self._require_state(VaultState.LOCKED)
        if not self.passwords.verify_password(password):
            self.failed_attempts += 1
            logger.warning("Vault unlock failed (%d attempt(s))", self.failed_attempts)
            raise InvalidPasswordError("Incorrect password.")
        self.failed_attempts = 0
        self.state = VaultState.UNLOCKED
        logger.info("Vault unlocked")

    def unlock_with_biometrics(self, reason: str = "Déverrouiller le coffre-fort") -> bool:
        """
        Ask the biometric capability to authenticate.

        The result is applied on the dispatch context.  Returns True when
        the vault ended up unlocked.
        """
        self._require_state(VaultState.LOCKED)
        if not self.biometrics.is_available():
            return False

        def on_result(success: bool) -> None:
            def apply() -> None:
                if success and self.state is VaultState.LOCKED:
                    self.failed_attempts = 0
                    self.state = VaultState.UNLOCKED
                    logger.info("Vault unlocked with biometrics")
            self.dispatch(apply)

        self.biometrics.authenticate(reason, on_result)
        return self.is_unlocked

    def lock(self) -> None:
        self._require_state(VaultState.UNLOCKED)
        self.state = VaultState.LOCKED
        logger.info("Vault locked")

    def change_password(self, old: str, new: str, confirmation: str,
                        question: Optional[str] = None, answer: Optional[str] = None) -> None:
        """Replace the password while unlocked, optionally with a new recovery pair."""
        self._require_state(VaultState.UNLOCKED)
        self._check_new_password(new, confirmation)
        if question is not None:
            self._check_answer(answer or "")
        if not self.passwords.change_password(old, new):
            raise InvalidPasswordError("The current password is incorrect.")
        if question is not None:
            self.passwords.set_recovery_question(question, answer)

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    def begin_recovery(self) -> str:
        """Enter the recovery flow; returns the question to ask."""
        self._require_state(VaultState.LOCKED)
        question = self.passwords.get_recovery_question()
        if not question:
            raise InvalidStateError("No recovery question has been configured.")
        self._return_state = self.state
        self.state = VaultState.RECOVERY_ANSWER
        return question

    def submit_recovery_answer(self, answer: str) -> None:
        self._require_state(VaultState.RECOVERY_ANSWER)
        if not self.passwords.verify_recovery_answer(answer):
            logger.warning("Wrong recovery answer")
            raise RecoveryAnswerError("Incorrect answer.")
        self._recovery_answer = answer
        self.state = VaultState.RECOVERY_NEW_PASSWORD

    def submit_new_password(self, password: str, confirmation: str) -> None:
        self._require_state(VaultState.RECOVERY_NEW_PASSWORD)
        self._check_new_password(password, confirmation)
        if not self.passwords.reset_password_with_recovery(self._recovery_answer, password):
            raise RecoveryAnswerError("The recovery answer is no longer valid.")
        self._recovery_answer = None
        self._return_state = None
        self.failed_attempts = 0
        self.state = VaultState.UNLOCKED
        logger.info("Vault password reset through recovery question")

    # ------------------------------------------------------------------
    # Full reset
    # ------------------------------------------------------------------

    def begin_full_reset(self) -> None:
        self._require_state(VaultState.LOCKED, VaultState.UNLOCKED, *_RECOVERY_STATES)
        if self.state not in _RECOVERY_STATES:
            self._return_state = self.state
        self.state = VaultState.RESET_WARNING

    def acknowledge_reset_warning(self) -> None:
        self._require_state(VaultState.RESET_WARNING)
        self.state = VaultState.RESET_CONFIRMATION

    def back(self) -> None:
        """Go back one step inside the recovery or reset flow."""
        if self.state is VaultState.RESET_CONFIRMATION:
            self.state = VaultState.RESET_WARNING
        elif self.state is VaultState.RECOVERY_NEW_PASSWORD:
            self._recovery_answer = None
            self.state = VaultState.RECOVERY_ANSWER
        else:
            self.cancel()

    def confirm_full_reset(self, text: str) -> int:
        """
        Wipe the vault: every item and attachment, the document key and the
        credentials.  *text* must be exactly RESET_CONFIRMATION_WORD.

        Returns the number of items deleted.
        """
        self._require_state(VaultState.RESET_CONFIRMATION)
        if text != RESET_CONFIRMATION_WORD:
            raise ResetConfirmationError(f"Type {RESET_CONFIRMATION_WORD} to confirm.")
        count = self.store.delete_all_vault_items()
        self.passwords.remove_password()
        self._return_state = None
        self._recovery_answer = None
        self.failed_attempts = 0
        self.state = VaultState.UNINITIALIZED
        logger.warning("Vault fully reset")
        return count

    def cancel(self) -> None:
        """Leave the recovery or reset flow and return where it was started from."""
        self._require_state(*_RECOVERY_STATES, *_RESET_STATES)
        self.state = self._return_state or VaultState.LOCKED
        self._return_state = None
        self._recovery_answer = None
