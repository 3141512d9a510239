"""Tests for settings/secrets loading."""
from pathlib import Path

import pytest
from pydantic import ValidationError

from messaging.config import AppConfig, JWT_SECRET_ENV, get_config, load_config, set_config


def test_missing_files_fall_back_to_defaults(tmp_path):
    cfg = load_config(settings_path=tmp_path / "absent.settings.yaml")

    assert cfg.server.port == 10000
    assert cfg.messaging.max_content_length == 2000
    assert cfg.messaging.max_room_members == 50
    assert cfg.messaging.typing_timeout_seconds == 5.0
    assert cfg.store.db_path == "messages.duckdb"
    assert cfg.secrets.jwt.algorithm == "HS256"


def test_settings_and_secrets_are_merged(tmp_path):
    settings_file = tmp_path / "messaging.settings.yaml"
    settings_file.write_text(
        "server:\n"
        "  port: 9000\n"
        "messaging:\n"
        "  typing_timeout_seconds: 2.5\n"
        "logging:\n"
        "  level: DEBUG\n",
        encoding="utf-8",
    )
    (tmp_path / "messaging.secrets.yaml").write_text(
        "jwt:\n"
        "  secret_key: from-file\n",
        encoding="utf-8",
    )

    cfg = load_config(settings_path=settings_file)

    assert cfg.server.port == 9000
    assert cfg.messaging.typing_timeout_seconds == 2.5
    assert cfg.logging.level == "debug"
    assert cfg.secrets.jwt.secret_key == "from-file"


def test_env_secret_wins_over_file(tmp_path, monkeypatch):
    settings_file = tmp_path / "messaging.settings.yaml"
    settings_file.write_text("server:\n  port: 9000\n", encoding="utf-8")
    (tmp_path / "messaging.secrets.yaml").write_text(
        "jwt:\n  secret_key: from-file\n", encoding="utf-8"
    )
    monkeypatch.setenv(JWT_SECRET_ENV, "from-env")

    cfg = load_config(settings_path=settings_file)
    assert cfg.secrets.jwt.secret_key == "from-env"


def test_relative_db_path_resolves_against_settings_dir(tmp_path):
    settings_file = tmp_path / "messaging.settings.yaml"
    settings_file.write_text("store:\n  db_path: data/messages.duckdb\n", encoding="utf-8")

    cfg = load_config(settings_path=settings_file)
    assert Path(cfg.store.db_path) == tmp_path.resolve() / "data" / "messages.duckdb"


def test_memory_db_path_is_kept(tmp_path):
    settings_file = tmp_path / "messaging.settings.yaml"
    settings_file.write_text("store:\n  db_path: ':memory:'\n", encoding="utf-8")

    cfg = load_config(settings_path=settings_file)
    assert cfg.store.db_path == ":memory:"


def test_unknown_log_level_is_rejected():
    with pytest.raises(ValidationError):
        AppConfig(logging={"level": "chatty"})


def test_set_config_replaces_process_config():
    custom = AppConfig(server={"port": 1234})
    set_config(custom)
    try:
        assert get_config() is custom
    finally:
        set_config(None)
