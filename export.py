"""
export.py – Export and import of application data.

  - JSON export of any set of collections (ISO-8601 dates, sorted keys).
  - Commerce CSV (articles, transactions and a summary) laid out for a
    spreadsheet opened in a French locale: UTF-8 with BOM, ';' delimiter,
    ',' decimal separator.
  - Commerce Excel workbook built with openpyxl, one sheet per section.
  - Vault JSON export (item metadata only; encrypted attachments stay on
    this machine) and import, merging items by id.
"""

import csv
import io
import json
import logging
import os
from datetime import datetime
from functools import partial
from typing import Iterable, List, Optional

from openpyxl import Workbook
from openpyxl.styles import Font
from openpyxl.utils import get_column_letter

import pricing
import serialization
from models import PaymentMethod, TransactionKind, VaultItem
from storage import COLLECTIONS, STRING_LISTS, EntryValidationError

logger = logging.getLogger("Materiel")

BOM = "\ufeff"

# Excel display format of amounts and weights.
NUMBER_FORMAT = "0.00"

COMMERCE_COLLECTIONS = ("articles", "transactions")

# Everything export_json() knows how to write.
EXPORTABLE = (*COLLECTIONS, *STRING_LISTS)

ARTICLE_HEADERS = [
    "Nom", "Catégorie", "Référence", "Prix Achat HT", "TVA Achat",
    "Prix Vente HT", "TVA Vente", "Prix Vente TTC", "Marge %", "Mode Vente",
    "Stock", "Seuil Alerte", "Fournisseur",
]

TRANSACTION_HEADERS = [
    "Date", "Type", "Article", "Quantité/Poids", "Prix Unitaire HT", "TVA",
    "Montant TTC", "Mode Paiement", "Client/Fournisseur", "Payé", "Notes",
]

PAYMENT_LABELS = {
    PaymentMethod.CASH: "Espèces",
    PaymentMethod.CARD: "Carte bancaire",
    PaymentMethod.CHEQUE: "Chèque",
    PaymentMethod.TRANSFER: "Virement",
    PaymentMethod.OTHER: "Autre",
}


def format_number(value: float, decimal_separator: str = ",") -> str:
    return f"{value:.2f}".replace(".", decimal_separator)


def _default_filename(prefix: str, extension: str, now: Optional[datetime] = None) -> str:
    stamp = (now or datetime.now()).strftime("%Y-%m-%d_%H%M")
    return f"{prefix}_{stamp}.{extension}"


# ---------------------------------------------------------------------------
# JSON
# ---------------------------------------------------------------------------

def export_json(store, path: str, collections: Iterable[str] = COMMERCE_COLLECTIONS,
                now: Optional[datetime] = None) -> str:
    """
    Write the given collections of *store* to *path* as one JSON document.

    When *path* is a directory a timestamped file name is chosen inside it.
    Returns the path written.  Raises EntryValidationError for an unknown
    collection name.
    """
    collections = tuple(collections)
    unknown = [name for name in collections if name not in EXPORTABLE]
    if unknown:
        raise EntryValidationError(f"Unknown collection(s): {', '.join(unknown)}", field="collections")
    if os.path.isdir(path):
        path = os.path.join(path, _default_filename("export", "json", now))
    payload = {"export_date": now or datetime.now()}
    for name in collections:
        payload[name] = getattr(store, name)
    with open(path, "w", encoding="utf-8") as fh:
        fh.write(serialization.dumps(payload, sort_keys=True))
    logger.info("Exported %s to %s", ", ".join(collections), path)
    return path


# ---------------------------------------------------------------------------
# Commerce rows shared by CSV and Excel
# ---------------------------------------------------------------------------

def _article_rows(store, fmt, kg) -> List[list]:
    rows = []
    for a in sorted(store.articles, key=lambda a: a.name):
        if a.sold_by_weight:
            mode = "Au poids (kg)"
            stock = kg(a.stock_kg)
            alert = kg(a.stock_alert_kg)
        else:
            mode = "À l'unité"
            stock = a.stock_quantity
            alert = a.stock_alert
        rows.append([
            a.name, a.category, a.reference,
            fmt(a.purchase_price_ht), a.purchase_tax_rate.value,
            fmt(a.sale_price_ht), a.sale_tax_rate.value,
            fmt(a.sale_price_ttc), fmt(a.margin_percent),
            mode, stock, alert, a.supplier,
        ])
    return rows


def _transaction_rows(store, fmt, kg) -> List[list]:
    rows = []
    for t in sorted(store.transactions, key=lambda t: t.date, reverse=True):
        amount = kg(t.weight) if t.sold_by_weight else t.quantity
        rows.append([
            t.date.strftime("%d/%m/%Y %H:%M"),
            "Vente" if t.kind is TransactionKind.SALE else "Achat",
            t.article_name, amount, fmt(t.unit_price_ht), t.tax_rate.value,
            fmt(t.total_incl_tax), PAYMENT_LABELS[t.payment_method],
            t.counterparty, "Oui" if t.paid else "Non", t.notes,
        ])
    return rows


def _summary_rows(store, fmt) -> List[list]:
    sales = store.total_sales()
    purchases = store.total_purchases()
    return [
        ["Total Ventes TTC", fmt(sales)],
        ["Total Achats TTC", fmt(purchases)],
        ["Bénéfice", fmt(sales - purchases)],
    ]


# ---------------------------------------------------------------------------
# CSV
# ---------------------------------------------------------------------------

def commerce_csv(store, decimal_separator: str = ",") -> str:
    """Return the commerce CSV document (BOM included) as text."""
    fmt = partial(format_number, decimal_separator=decimal_separator)

    def kg(value):
        return fmt(value) + " kg"

    buf = io.StringIO()
    buf.write(BOM)
    writer = csv.writer(buf, delimiter=";", lineterminator="\n")

    writer.writerow(["ARTICLES"])
    writer.writerow(ARTICLE_HEADERS)
    writer.writerows(_article_rows(store, fmt, kg))
    buf.write("\n\n")

    writer.writerow(["TRANSACTIONS"])
    writer.writerow(TRANSACTION_HEADERS)
    writer.writerows(_transaction_rows(store, fmt, kg))
    buf.write("\n\n")

    writer.writerow(["RÉSUMÉ"])
    writer.writerows(_summary_rows(store, fmt))
    return buf.getvalue()


def export_commerce_csv(store, path: str, decimal_separator: str = ",",
                        now: Optional[datetime] = None) -> str:
    if os.path.isdir(path):
        path = os.path.join(path, _default_filename("commerce", "csv", now))
    # newline="" keeps the writer's "\n" terminators untouched.
    with open(path, "w", encoding="utf-8", newline="") as fh:
        fh.write(commerce_csv(store, decimal_separator))
    logger.info("Exported commerce CSV to %s", path)
    return path


# ---------------------------------------------------------------------------
# Excel
# ---------------------------------------------------------------------------

def build_commerce_workbook(store, column_width: int = 18) -> Workbook:
    """
    Build the commerce workbook: sheets Articles, Transactions and Résumé.

    Amounts and weights are written as numbers rounded to the cent and
    shown with NUMBER_FORMAT; every column gets *column_width*.
    """
    fmt = pricing.round2
    wb = Workbook()
    sheets = [
        ("Articles", ARTICLE_HEADERS, _article_rows(store, fmt, fmt)),
        ("Transactions", TRANSACTION_HEADERS, _transaction_rows(store, fmt, fmt)),
        ("Résumé", ["Libellé", "Montant"], _summary_rows(store, fmt)),
    ]
    ws = wb.active
    for index, (title, headers, rows) in enumerate(sheets):
        if index:
            ws = wb.create_sheet()
        ws.title = title
        ws.append(headers)
        for cell in ws[1]:
            cell.font = Font(bold=True)
        for row in rows:
            ws.append(row)
        for cells in ws.iter_rows(min_row=2):
            for cell in cells:
                if isinstance(cell.value, float):
                    cell.number_format = NUMBER_FORMAT
        for col in range(1, len(headers) + 1):
            ws.column_dimensions[get_column_letter(col)].width = column_width
    return wb


def export_commerce_xlsx(store, path: str, column_width: int = 18,
                         now: Optional[datetime] = None) -> str:
    if os.path.isdir(path):
        path = os.path.join(path, _default_filename("commerce", "xlsx", now))
    build_commerce_workbook(store, column_width).save(path)
    logger.info("Exported commerce workbook to %s", path)
    return path


# ---------------------------------------------------------------------------
# Vault
# ---------------------------------------------------------------------------

def export_vault(store, path: str, now: Optional[datetime] = None) -> str:
    """Write the vault items (metadata only) to *path*."""
    return export_json(store, path, collections=("vault_items",), now=now)


def import_vault(store, path: str) -> int:
    """
    Merge vault items from a file written by export_vault().

    Items whose id already exists replace the stored metadata but keep
    their attachments; new items are added without attachments, since the
    encrypted files are not part of the export.  Returns the number of items imported.
    Raises EntryValidationError when *path* is not a vault export.
    """
    with open(path, "r", encoding="utf-8") as fh:
        try:
            payload = json.load(fh)
        except ValueError as exc:
            raise EntryValidationError(f"{path} is not a JSON file: {exc}", field="source") from exc
    if not isinstance(payload, dict) or not isinstance(payload.get("vault_items"), list):
        raise EntryValidationError(f"{path} is not a vault export.", field="source")
    items = serialization.from_list(VaultItem, payload["vault_items"])

    existing = {item.id: index for index, item in enumerate(store.vault_items)}
    for item in items:
        if item.id in existing:
            current = store.vault_items[existing[item.id]]
            item.has_photo = current.has_photo
            item.has_invoice = current.has_invoice
            item.invoice_is_pdf = current.invoice_is_pdf
            store.vault_items[existing[item.id]] = item
        else:
            item.has_photo = item.has_invoice = item.invoice_is_pdf = False
            store.vault_items.append(item)
    store.save("vault_items")
    logger.info("Imported %d vault item(s) from %s", len(items), path)
    return len(items)
