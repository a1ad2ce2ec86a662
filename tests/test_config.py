import json
import os

from config import DEFAULT_CONFIG, AppConfig


def test_layout(tmp_path):
    config = AppConfig(str(tmp_path))
    assert os.path.isdir(config.data_dir)
    assert os.path.isdir(config.vault_dir)
    assert config.collection_path("articles") == os.path.join(config.data_dir, "articles.json")
    assert config.get("default_tax_rate") == "20%"


def test_save_and_backfill(tmp_path):
    with open(tmp_path / "config.json", "w", encoding="utf-8") as fh:
        json.dump({"currency": "CHF"}, fh)
    config = AppConfig(str(tmp_path))
    assert config.get("currency") == "CHF"
    assert config.get("payment_due_soon_days") == DEFAULT_CONFIG["payment_due_soon_days"]

    config.set("vault.has_password", True)
    config.save()
    assert AppConfig(str(tmp_path)).get("vault.has_password") is True


def test_corrupt_config_uses_defaults(tmp_path):
    (tmp_path / "config.json").write_text("{oops", encoding="utf-8")
    assert AppConfig(str(tmp_path)).data == DEFAULT_CONFIG


def test_logger_handler_added_once(tmp_path):
    first = AppConfig(str(tmp_path))
    AppConfig(str(tmp_path))
    log_path = os.path.abspath(first.log_path)
    handlers = [h for h in first.logger.handlers if getattr(h, "baseFilename", None) == log_path]
    assert len(handlers) == 1
