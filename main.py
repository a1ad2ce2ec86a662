"""
main.py – Application entry point.

All logic lives in specialised modules; this file only wires them together
and exposes them as command-line actions:

  config.py        – AppConfig           : constants, file paths, config I/O, logging
  pricing.py       – tax, discount, deposit and rental calculations
  models.py        – entity dataclasses
  storage.py       – DataStore           : collections, validation, ledger
  secret_store.py  – keychain store with encoded fallback
  crypto.py        – DocumentCipher      : encrypted vault attachments
  vault.py         – VaultSession        : setup, unlock, recovery, full reset
  export.py        – JSON / CSV / Excel export, vault import

Usage:
    materiel vault setup|unlock|recover|change-password|reset|status
    materiel vault export DESTINATION
    materiel vault import FILE
    materiel price --unit-price 10 --quantity 3 --rate 20% --discount-kind percentage --discount-value 10
    materiel export json|csv|xlsx DESTINATION
"""

import argparse
import getpass
import logging
import sys
from typing import List, Optional

import export
import pricing
from config import APP_VERSION, RECOVERY_QUESTIONS, RESET_CONFIRMATION_WORD, AppConfig
from crypto import DocumentCipher
from pricing import DiscountKind, TaxRate
from secret_store import (
    EncodedFallbackStore,
    KeyringSecretStore,
    LayeredSecretStore,
    SecretStorageError,
)
from storage import DataStore, EntryValidationError, validate_price_inputs
from vault import VaultError, VaultPasswordManager, VaultSession, VaultState

logger = logging.getLogger("Materiel")


class Application:
    """Every long-lived object of one run, built from a data directory."""

    def __init__(self, data_dir: Optional[str] = None) -> None:
        self.config = AppConfig(data_dir)
        self.secrets = LayeredSecretStore(KeyringSecretStore(), EncodedFallbackStore(self.config))
        self.cipher = DocumentCipher(self.config, self.secrets)
        self.store = DataStore(self.config, self.cipher)
        self.passwords = VaultPasswordManager(self.config, self.secrets)
        self.session = VaultSession(self.passwords, self.store)


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

def _ask_secret(prompt: str) -> str:
    return getpass.getpass(prompt)


def _ask(prompt: str) -> str:
    return input(prompt)


def _choose_question() -> str:
    for number, question in enumerate(RECOVERY_QUESTIONS, start=1):
        print(f"  {number}. {question}")
    choice = _ask("Question de récupération (numéro) : ").strip()
    try:
        return RECOVERY_QUESTIONS[int(choice) - 1]
    except (ValueError, IndexError):
        raise VaultError("Choix de question invalide.") from None


# ---------------------------------------------------------------------------
# Vault commands
# ---------------------------------------------------------------------------

def cmd_vault_status(app: Application, args) -> int:
    if app.session.state is VaultState.UNINITIALIZED:
        print("Coffre-fort non configuré.")
        return 0
    print("Coffre-fort verrouillé.")
    print(f"Objets : {len(app.store.vault_items)}")
    question = app.passwords.get_recovery_question()
    print(f"Question de récupération : {question or 'aucune'}")
    return 0


def cmd_vault_setup(app: Application, args) -> int:
    password = _ask_secret("Nouveau mot de passe : ")
    confirmation = _ask_secret("Confirmer le mot de passe : ")
    question = _choose_question()
    answer = _ask("Réponse : ")
    app.session.setup(password, confirmation, question, answer)
    print("Coffre-fort configuré.")
    return 0


def _print_vault(app: Application) -> None:
    currency = app.config.currency
    for item in sorted(app.store.vault_items, key=lambda i: i.name.casefold()):
        print(f"  {item.name} [{item.category}] {item.estimated_value:.2f} {currency}")
    for category, value in app.store.vault_value_by_category().items():
        print(f"  = {category} : {value:.2f} {currency}")
    print(f"Valeur totale : {app.store.total_vault_value():.2f} {currency}")


def cmd_vault_unlock(app: Application, args) -> int:
    app.session.unlock(_ask_secret("Mot de passe : "))
    print("Coffre-fort déverrouillé.")
    _print_vault(app)
    return 0


def cmd_vault_recover(app: Application, args) -> int:
    question = app.session.begin_recovery()
    print(question)
    app.session.submit_recovery_answer(_ask("Réponse : "))
    password = _ask_secret("Nouveau mot de passe : ")
    confirmation = _ask_secret("Confirmer le mot de passe : ")
    app.session.submit_new_password(password, confirmation)
    print("Mot de passe réinitialisé.")
    return 0


def cmd_vault_change_password(app: Application, args) -> int:
    old = _ask_secret("Mot de passe actuel : ")
    app.session.unlock(old)
    new = _ask_secret("Nouveau mot de passe : ")
    confirmation = _ask_secret("Confirmer le mot de passe : ")
    question = answer = None
    if args.new_question:
        question = _choose_question()
        answer = _ask("Réponse : ")
    app.session.change_password(old, new, confirmation, question, answer)
    print("Mot de passe modifié.")
    return 0


def cmd_vault_reset(app: Application, args) -> int:
    app.session.begin_full_reset()
    print("ATTENTION : tous les objets du coffre-fort, leurs photos et factures")
    print("ainsi que le mot de passe seront définitivement supprimés.")
    if _ask("Continuer ? [o/N] ").strip().lower() not in ("o", "oui", "y", "yes"):
        app.session.cancel()
        print("Réinitialisation annulée.")
        return 1
    app.session.acknowledge_reset_warning()
    count = app.session.confirm_full_reset(_ask(f"Tapez {RESET_CONFIRMATION_WORD} pour confirmer : ").strip())
    print(f"Coffre-fort réinitialisé ({count} objet(s) supprimé(s)).")
    return 0


def cmd_vault_export(app: Application, args) -> int:
    app.session.unlock(_ask_secret("Mot de passe : "))
    path = export.export_vault(app.store, args.destination)
    print(f"Coffre-fort exporté : {path} ({len(app.store.vault_items)} objet(s))")
    return 0


def cmd_vault_import(app: Application, args) -> int:
    app.session.unlock(_ask_secret("Mot de passe : "))
    count = export.import_vault(app.store, args.source)
    print(f"{count} objet(s) importé(s).")
    _print_vault(app)
    return 0


# ---------------------------------------------------------------------------
# Pricing and export commands
# ---------------------------------------------------------------------------

def cmd_price(app: Application, args) -> int:
    validate_price_inputs(args.unit_price, args.quantity,
                          DiscountKind(args.discount_kind), args.discount_value)
    amounts = pricing.compute_transaction(
        args.unit_price, args.quantity, TaxRate(args.rate),
        DiscountKind(args.discount_kind), args.discount_value,
    )
    currency = app.config.currency
    lines = [
        ("Total HT", amounts.gross_excl_tax),
        ("TVA", amounts.tax),
        ("Total TTC", amounts.gross_incl_tax),
        ("Remise", amounts.discount),
        ("Net TTC", amounts.net_incl_tax),
        ("Net HT", amounts.net_excl_tax),
        ("TVA nette", amounts.net_tax),
    ]
    for label, value in lines:
        print(f"{label:<10} {value:>12.2f} {currency}")
    return 0


def cmd_export(app: Application, args) -> int:
    if args.format == "json":
        path = export.export_json(app.store, args.destination, args.collections)
    elif args.format == "csv":
        path = export.export_commerce_csv(
            app.store, args.destination, app.config.get("csv_decimal_separator", ","))
    else:
        path = export.export_commerce_xlsx(
            app.store, args.destination, int(app.config.get("excel_column_width", 18)))
    print(f"Exporté : {path}")
    return 0


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="materiel", description="Gestion de matériel et coffre-fort.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {APP_VERSION}")
    parser.add_argument("--data-dir", help="Répertoire des données (par défaut : dossier utilisateur).")
    commands = parser.add_subparsers(dest="command", required=True)

    vault = commands.add_parser("vault", help="Coffre-fort")
    vault_commands = vault.add_subparsers(dest="action", required=True)
    vault_commands.add_parser("status").set_defaults(func=cmd_vault_status)
    vault_commands.add_parser("setup").set_defaults(func=cmd_vault_setup)
    vault_commands.add_parser("unlock").set_defaults(func=cmd_vault_unlock)
    vault_commands.add_parser("recover").set_defaults(func=cmd_vault_recover)
    change = vault_commands.add_parser("change-password")
    change.add_argument("--new-question", action="store_true",
                        help="Définir aussi une nouvelle question de récupération.")
    change.set_defaults(func=cmd_vault_change_password)
    vault_commands.add_parser("reset").set_defaults(func=cmd_vault_reset)
    vault_export = vault_commands.add_parser("export", help="Exporter les objets (sans les pièces jointes).")
    vault_export.add_argument("destination", help="Fichier ou répertoire de destination.")
    vault_export.set_defaults(func=cmd_vault_export)
    vault_import = vault_commands.add_parser("import", help="Importer des objets exportés.")
    vault_import.add_argument("source", help="Fichier produit par 'vault export'.")
    vault_import.set_defaults(func=cmd_vault_import)

    price = commands.add_parser("price", help="Calculer une transaction")
    price.add_argument("--unit-price", type=float, required=True)
    price.add_argument("--quantity", type=float, default=1.0)
    price.add_argument("--rate", choices=[r.value for r in TaxRate], default=TaxRate.STANDARD.value)
    price.add_argument("--discount-kind", choices=[k.value for k in DiscountKind],
                       default=DiscountKind.NONE.value)
    price.add_argument("--discount-value", type=float, default=0.0)
    price.set_defaults(func=cmd_price)

    exp = commands.add_parser("export", help="Exporter les données")
    exp.add_argument("format", choices=["json", "csv", "xlsx"])
    exp.add_argument("destination", help="Fichier ou répertoire de destination.")
    exp.add_argument("--collections", nargs="+", choices=export.EXPORTABLE,
                     default=list(export.COMMERCE_COLLECTIONS), metavar="COLLECTION",
                     help="Collections à inclure dans l'export JSON.")
    exp.set_defaults(func=cmd_export)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Parse the command line, build the application and run the command."""
    args = build_parser().parse_args(argv)
    app = Application(args.data_dir)
    try:
        return args.func(app, args)
    except (VaultError, EntryValidationError, SecretStorageError) as exc:
        print(f"Erreur : {exc}", file=sys.stderr)
        return 1
    except OSError as exc:
        logger.exception("I/O error while running %s", args.command)
        print(f"Erreur : {exc}", file=sys.stderr)
        return 1
    finally:
        app.cipher.cleanup_temp_files()


if __name__ == "__main__":
    sys.exit(main())
