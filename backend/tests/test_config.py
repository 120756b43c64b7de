"""Tests for settings loading and storage path resolution."""
from pathlib import Path

from chatline.config import AppConfig, get_config, load_config, reset_config, set_config


def test_defaults_when_files_missing(tmp_path):
    cfg = load_config(settings_path=tmp_path / "chatline.settings.yaml")
    assert cfg.messages.default_page_size == 50
    assert cfg.messages.max_page_size == 100
    assert cfg.presence.broadcast_enabled is True
    assert cfg.secrets.jwt.algorithm == "HS256"


def test_relative_db_paths_resolve_from_settings_dir(tmp_path):
    settings_file = tmp_path / "chatline.settings.yaml"
    settings_file.write_text(
        "storage:\n"
        "  chat_db_path: data/chat.duckdb\n"
        "  users_db_path: ':memory:'\n"
        "presence:\n"
        "  broadcast_enabled: false\n",
        encoding="utf-8",
    )

    cfg = load_config(settings_path=settings_file)

    assert Path(cfg.storage.chat_db_path) == tmp_path / "data" / "chat.duckdb"
    assert cfg.storage.users_db_path == ":memory:"
    assert cfg.presence.broadcast_enabled is False


def test_absolute_db_path_unchanged(tmp_path):
    absolute = tmp_path / "elsewhere" / "chat.duckdb"
    settings_file = tmp_path / "chatline.settings.yaml"
    settings_file.write_text(f"storage:\n  chat_db_path: {absolute}\n", encoding="utf-8")

    cfg = load_config(settings_path=settings_file)
    assert Path(cfg.storage.chat_db_path) == absolute


def test_secrets_loaded_next_to_settings(tmp_path):
    (tmp_path / "chatline.settings.yaml").write_text("logging:\n  level: debug\n", encoding="utf-8")
    (tmp_path / "chatline.secrets.yaml").write_text(
        "jwt:\n  secret_key: from-file\n", encoding="utf-8"
    )

    cfg = load_config(settings_path=tmp_path / "chatline.settings.yaml")

    assert cfg.logging.level == "debug"
    assert cfg.secrets.jwt.secret_key == "from-file"


def test_set_and_reset_config():
    custom = AppConfig()
    custom.messages.max_text_length = 10
    set_config(custom)
    assert get_config() is custom

    reset_config()
    set_config(AppConfig())
    assert get_config().messages.max_text_length == 4000
