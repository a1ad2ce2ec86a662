import json
import os
from datetime import datetime

import pytest
from openpyxl import load_workbook

import export
from models import Article, CommerceTransaction, PaymentMethod, TransactionKind, VaultItem
from storage import EntryValidationError

WHEN = datetime(2024, 5, 15, 10, 45)


@pytest.fixture
def shop(store):
    mug = store.add_article(Article(name="Mug", reference="M-1", purchase_price_ht=4.0,
                                    sale_price_ht=10.0, stock_quantity=10, supplier='Céra "Plus"'))
    store.record_transaction(CommerceTransaction(
        kind=TransactionKind.SALE, article_name="Mug", unit_price_ht=10.0, quantity=3,
        payment_method=PaymentMethod.CARD, counterparty="Alice", date=WHEN, article_id=mug.id,
    ))
    store.record_transaction(CommerceTransaction(
        kind=TransactionKind.PURCHASE, article_name="Mug", unit_price_ht=4.0, quantity=5,
        date=WHEN, paid=False,
    ))
    return store


def test_commerce_csv_layout(shop):
    text = export.commerce_csv(shop)
    assert text.startswith("\ufeffARTICLES\n")
    lines = text[1:].split("\n")
    assert lines[1] == ";".join(export.ARTICLE_HEADERS)
    assert lines[2] == 'Mug;Autre;M-1;4,00;20%;10,00;20%;12,00;150,00;À l\'unité;7;0;"Céra ""Plus"""'

    assert "TRANSACTIONS" in lines
    assert "15/05/2024 10:45;Vente;Mug;3;10,00;20%;36,00;Carte bancaire;Alice;Oui;" in lines

    summary = lines[lines.index("RÉSUMÉ") + 1:]
    assert summary[:3] == ["Total Ventes TTC;36,00", "Total Achats TTC;24,00", "Bénéfice;12,00"]


def test_decimal_separator_is_configurable(shop):
    assert "Total Ventes TTC;36.00" in export.commerce_csv(shop, decimal_separator=".")


def test_csv_file_into_directory(shop, tmp_path):
    path = export.export_commerce_csv(shop, str(tmp_path), now=WHEN)
    assert os.path.basename(path) == "commerce_2024-05-15_1045.csv"
    with open(path, "rb") as fh:
        assert fh.read(3) == b"\xef\xbb\xbf"


def test_json_export(shop, tmp_path):
    path = export.export_json(shop, str(tmp_path / "out.json"), now=WHEN)
    with open(path, encoding="utf-8") as fh:
        text = fh.read()
    data = json.loads(text)
    assert data["export_date"] == "2024-05-15T10:45:00"
    assert data["articles"][0]["name"] == "Mug"
    assert data["transactions"][0]["date"] == "2024-05-15T10:45:00"
    assert list(data["articles"][0]) == sorted(data["articles"][0])


def test_excel_workbook(shop, tmp_path):
    path = export.export_commerce_xlsx(shop, str(tmp_path / "commerce.xlsx"), column_width=22)
    wb = load_workbook(path)
    assert wb.sheetnames == ["Articles", "Transactions", "Résumé"]
    articles = wb["Articles"]
    assert [c.value for c in articles[1]] == export.ARTICLE_HEADERS
    assert articles["A2"].value == "Mug"
    assert articles.column_dimensions["A"].width == 22
    assert wb["Transactions"].max_row == 3
    summary = wb["Résumé"]
    assert summary["B2"].value == 36.0
    assert summary["B2"].number_format == export.NUMBER_FORMAT
    assert articles["D2"].value == 4.0
    assert articles["D2"].number_format == export.NUMBER_FORMAT
    assert articles["K2"].value == 7


def test_json_export_rejects_unknown_collection(shop, tmp_path):
    with pytest.raises(EntryValidationError) as info:
        export.export_json(shop, str(tmp_path / "out.json"), collections=["articles", "bogus"])
    assert info.value.field == "collections"
    assert not (tmp_path / "out.json").exists()


def test_json_export_of_string_lists(shop, tmp_path):
    shop.add_supplier("Céra")
    path = export.export_json(shop, str(tmp_path / "out.json"), collections=["suppliers"], now=WHEN)
    with open(path, encoding="utf-8") as fh:
        assert json.load(fh)["suppliers"] == ["Céra"]


def test_vault_round_trip_merges_by_id(store, config, tmp_path):
    ring = store.add_vault_item(VaultItem(name="Bague", estimated_value=500.0), photo=b"img")
    path = export.export_vault(store, str(tmp_path / "vault.json"), now=WHEN)

    ring.estimated_value = 1.0
    store.update_vault_item(ring)
    with open(path, encoding="utf-8") as fh:
        data = json.load(fh)
    data["vault_items"].append({"name": "Montre", "id": "new-id", "has_photo": True})
    with open(path, "w", encoding="utf-8") as fh:
        json.dump(data, fh)

    assert export.import_vault(store, path) == 2
    assert len(store.vault_items) == 2
    assert store.get_vault_item(ring.id).estimated_value == 500.0
    assert store.get_vault_item(ring.id).has_photo
    assert not store.get_vault_item("new-id").has_photo
