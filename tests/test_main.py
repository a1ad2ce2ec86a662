import json

import pytest

import main
from models import VaultItem
from tests.conftest import MemorySecretStore


@pytest.fixture
def data_dir(tmp_path, monkeypatch):
    # Every Application in a test shares one in-memory keychain.
    keychain = MemorySecretStore()
    monkeypatch.setattr(main, "KeyringSecretStore", lambda: keychain)
    return str(tmp_path / "data")


def answers(monkeypatch, secret=(), plain=()):
    secret, plain = iter(secret), iter(plain)
    monkeypatch.setattr(main, "_ask_secret", lambda prompt: next(secret))
    monkeypatch.setattr(main, "_ask", lambda prompt: next(plain))


def run(data_dir, *args):
    return main.main(["--data-dir", data_dir, *args])


def test_price_command(data_dir, capsys):
    assert run(data_dir, "price", "--unit-price", "10", "--quantity", "3",
               "--discount-kind", "percentage", "--discount-value", "10") == 0
    out = capsys.readouterr().out
    assert "Net TTC" in out and "32.40" in out
    assert "Net HT" in out and "27.00" in out


def test_vault_setup_unlock_and_recover(data_dir, monkeypatch, capsys):
    answers(monkeypatch, secret=["abcd", "abcd"], plain=["1", "Rex"])
    assert run(data_dir, "vault", "setup") == 0

    answers(monkeypatch, secret=["wrong"])
    assert run(data_dir, "vault", "unlock") == 1
    assert "Erreur" in capsys.readouterr().err

    answers(monkeypatch, secret=["abcd"])
    assert run(data_dir, "vault", "unlock") == 0

    answers(monkeypatch, secret=["wxyz", "wxyz"], plain=["rex"])
    assert run(data_dir, "vault", "recover") == 0
    answers(monkeypatch, secret=["wxyz"])
    assert run(data_dir, "vault", "unlock") == 0


def test_vault_reset(data_dir, monkeypatch, capsys):
    answers(monkeypatch, secret=["abcd", "abcd"], plain=["2", "Paul"])
    run(data_dir, "vault", "setup")

    answers(monkeypatch, plain=["o", "supprimer"])
    assert run(data_dir, "vault", "reset") == 1

    answers(monkeypatch, plain=["o", "SUPPRIMER"])
    assert run(data_dir, "vault", "reset") == 0
    capsys.readouterr()
    run(data_dir, "vault", "status")
    assert "non configuré" in capsys.readouterr().out


def test_export_csv(data_dir, tmp_path):
    target = tmp_path / "commerce.csv"
    assert run(data_dir, "export", "csv", str(target)) == 0
    assert target.read_text(encoding="utf-8-sig").startswith("ARTICLES")


@pytest.mark.parametrize("args", [
    ["--unit-price", "10", "--discount-kind", "percentage", "--discount-value", "150"],
    ["--unit-price", "-5"],
    ["--unit-price", "10", "--quantity", "0"],
    ["--unit-price", "10", "--discount-kind", "fixed", "--discount-value", "-1"],
])
def test_price_command_rejects_invalid_input(data_dir, capsys, args):
    assert run(data_dir, "price", *args) == 1
    captured = capsys.readouterr()
    assert "Erreur" in captured.err
    assert "Net TTC" not in captured.out


def test_export_json_rejects_unknown_collection(data_dir, tmp_path, capsys):
    with pytest.raises(SystemExit) as info:
        run(data_dir, "export", "json", str(tmp_path / "out.json"), "--collections", "bogus")
    assert info.value.code == 2
    assert "bogus" in capsys.readouterr().err
    assert not (tmp_path / "out.json").exists()


def test_export_json_with_collections(data_dir, tmp_path):
    target = tmp_path / "out.json"
    assert run(data_dir, "export", "json", str(target), "--collections", "persons", "suppliers") == 0
    data = json.loads(target.read_text(encoding="utf-8"))
    assert data["persons"] == [] and data["suppliers"] == []


def test_vault_export_and_import(data_dir, monkeypatch, tmp_path, capsys):
    answers(monkeypatch, secret=["abcd", "abcd"], plain=["1", "Rex"])
    run(data_dir, "vault", "setup")
    main.Application(data_dir).store.add_vault_item(VaultItem(name="Bague", estimated_value=500.0))

    target = tmp_path / "vault.json"
    answers(monkeypatch, secret=["wrong"])
    assert run(data_dir, "vault", "export", str(target)) == 1
    assert not target.exists()

    answers(monkeypatch, secret=["abcd"])
    assert run(data_dir, "vault", "export", str(target)) == 0
    assert json.loads(target.read_text(encoding="utf-8"))["vault_items"][0]["name"] == "Bague"

    other = str(tmp_path / "other")
    answers(monkeypatch, secret=["efgh", "efgh"], plain=["1", "Rex"])
    run(other, "vault", "setup")
    capsys.readouterr()
    answers(monkeypatch, secret=["efgh"])
    assert run(other, "vault", "import", str(target)) == 0
    assert "1 objet(s) importé(s)" in capsys.readouterr().out
    assert [i.name for i in main.Application(other).store.vault_items] == ["Bague"]


def test_vault_import_rejects_other_files(data_dir, monkeypatch, tmp_path, capsys):
    answers(monkeypatch, secret=["abcd", "abcd"], plain=["1", "Rex"])
    run(data_dir, "vault", "setup")
    bogus = tmp_path / "notes.txt"
    bogus.write_text("pas du JSON", encoding="utf-8")
    answers(monkeypatch, secret=["abcd"])
    assert run(data_dir, "vault", "import", str(bogus)) == 1
    assert "Erreur" in capsys.readouterr().err
