"""
config.py – Settings, paths and constants for Materiel.

AppConfig is the one object every other module receives to find its files:

  - the user-data directory (resolved with appdirs, or given explicitly)
    and everything stored beneath it: entity collections, encrypted vault
    attachments, config.json and the rotating log;
  - the user settings kept in config.json (default VAT rate, currency,
    CSV decimal separator, ...), read and written through get()/set()/save();
  - the "vault.*" preference keys stored in that same file (has-password
    flag, recovery question, fallback secrets).

Constants used across the application (password rules, recovery questions,
predefined categories, keychain service name) live at module level.

This module imports nothing else from the application, so any module may
depend on it.
"""

import json
import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Optional

import appdirs

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

APP_NAME = "Materiel"

APP_VERSION = "1.0.0"

# Vault password / recovery rules.
MIN_PASSWORD_LENGTH = 4
MIN_RECOVERY_ANSWER_LENGTH = 2

# Word the user must type to confirm a full vault reset.
RESET_CONFIRMATION_WORD = "SUPPRIMER"

# Service name under which vault secrets are kept in the platform keychain.
SECRET_SERVICE = "com.materiel.coffrefort"

RECOVERY_QUESTIONS = [
    "Quel est le nom de votre premier animal de compagnie ?",
    "Quel est le prénom de votre meilleur ami d'enfance ?",
    "Quelle est la ville de naissance de votre mère ?",
    "Quel est le nom de votre école primaire ?",
    "Quel est votre plat préféré ?",
    "Quelle est la marque de votre première voiture ?",
]

VAULT_CATEGORIES = [
    "Électronique",
    "Bijoux",
    "Art & Décoration",
    "Mobilier",
    "Électroménager",
    "Instruments de musique",
    "Sport & Loisirs",
    "Véhicules",
    "Vêtements de valeur",
    "Collections",
    "Autre",
]

ARTICLE_CATEGORIES = [
    "Électronique",
    "Vêtements",
    "Accessoires",
    "Alimentation",
    "Maison & Déco",
    "Jouets",
    "Sport & Loisirs",
    "Livres & Papeterie",
    "Bijoux",
    "Autre",
]

# Settings present in every config.json; missing ones are filled in on load.
DEFAULT_CONFIG: dict = {
    # VAT rate pre-selected for new articles and transactions.
    "default_tax_rate": "20%",
    "currency": "€",
    # A payment is "due soon" when its due date falls within this many days.
    "payment_due_soon_days": 3,
    "csv_decimal_separator": ",",
    # Width, in characters, of every column of the Excel export.
    "excel_column_width": 18,
}

LOG_MAX_BYTES = 2_000_000
LOG_BACKUPS = 3


class AppConfig:
    """
    Paths, settings and logging for one data directory.

    Parameters
    ----------
    user_data_dir : str, optional
        Where to keep everything.  Defaults to the per-user application
        directory of the platform (appdirs).

    Attributes
    ----------
    user_data_dir : str
    data_dir : str
        One '<collection>.json' file per entity collection.
    vault_dir : str
        Encrypted vault attachments.
    config_path : str
        config.json (settings and vault preferences).
    log_path : str
    data : dict
        Settings currently in memory.
    logger : logging.Logger
        The application logger, with a rotating file handler on log_path.
    """

    def __init__(self, user_data_dir: Optional[str] = None) -> None:
        self.user_data_dir: str = user_data_dir or self._get_user_data_dir()

        self.data_dir:    str = os.path.join(self.user_data_dir, "data")
        self.vault_dir:   str = os.path.join(self.user_data_dir, "vault")
        self.config_path: str = os.path.join(self.user_data_dir, "config.json")
        self.log_path:    str = os.path.join(self.user_data_dir, "app.log")
        for directory in (self.user_data_dir, self.data_dir, self.vault_dir):
            os.makedirs(directory, exist_ok=True)

        self.logger: logging.Logger = self._setup_logger()
        self.data: dict = self._load()
        self.logger.info("Using data directory %s", self.user_data_dir)

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    @staticmethod
    def _get_user_data_dir() -> str:
        return appdirs.user_data_dir(APP_NAME)

    def _setup_logger(self) -> logging.Logger:
        """
        Attach a RotatingFileHandler for log_path to the application logger.

        Several AppConfig objects may point at the same directory (tests,
        reloads); the handler is attached only once per file.
        """
        logger = logging.getLogger(APP_NAME)
        logger.setLevel(logging.DEBUG)

        log_path = os.path.abspath(self.log_path)
        if all(getattr(h, "baseFilename", None) != log_path for h in logger.handlers):
            handler = RotatingFileHandler(
                log_path,
                maxBytes=LOG_MAX_BYTES,
                backupCount=LOG_BACKUPS,
                encoding="utf-8",
            )
            handler.setFormatter(
                logging.Formatter("%(asctime)s %(levelname)s: %(message)s")
            )
            logger.addHandler(handler)

        return logger

    def _load(self) -> dict:
        """
        Return the settings from config.json merged over DEFAULT_CONFIG.

        An unreadable file is logged and replaced by the defaults in memory;
        it is only overwritten on the next save().
        """
        settings = dict(DEFAULT_CONFIG)
        if not os.path.exists(self.config_path):
            return settings
        try:
            with open(self.config_path, "r", encoding="utf-8") as fh:
                stored = json.load(fh)
        except (OSError, ValueError):
            self.logger.exception("Could not read %s; using default settings", self.config_path)
            return settings
        settings.update(stored)
        return settings

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def save(self) -> None:
        """
        Write the settings to config.json.

        OSError propagates; each caller decides whether it can carry on.
        """
        with open(self.config_path, "w", encoding="utf-8") as fh:
            json.dump(self.data, fh, indent=2, ensure_ascii=False)
        self.logger.debug("Settings saved")

    def get(self, key: str, default=None):
        return self.data.get(key, default)

    def set(self, key: str, value) -> None:
        """Change a setting in memory; save() makes it permanent."""
        self.data[key] = value

    def remove(self, key: str) -> None:
        self.data.pop(key, None)

    @property
    def currency(self) -> str:
        return self.get("currency", DEFAULT_CONFIG["currency"])

    @property
    def due_soon_days(self) -> int:
        return int(self.get("payment_due_soon_days", DEFAULT_CONFIG["payment_due_soon_days"]))

    def collection_path(self, name: str) -> str:
        """Path of the JSON file holding the collection *name*."""
        return os.path.join(self.data_dir, f"{name}.json")
