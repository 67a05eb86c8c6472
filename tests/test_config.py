"""Tests for settings loading."""

import pytest

from hookrelay.config import Settings, load_settings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    monkeypatch.delenv("HOOKRELAY_CONFIG", raising=False)
    monkeypatch.setenv("HOOKRELAY_CONFIG_DIR", str(tmp_path / "config"))


class TestSettings:
    def test_defaults(self):
        settings = Settings()
        assert settings.storage.backend == "sqlite"
        assert settings.api.port == 5000
        assert settings.api.api_key == ""
        assert settings.relay.break_char == "🤖"
        assert settings.relay.enrichment_policy == "fail_open"
        assert settings.relay.events == []
        assert settings.signal.enabled is False

    def test_sqlite_path_defaults_to_data_dir(self, tmp_path):
        settings = Settings(data_dir=str(tmp_path))
        assert settings.get_sqlite_path() == tmp_path / "webhooks.db"

    def test_nested_env_override(self, monkeypatch):
        monkeypatch.setenv("HOOKRELAY_API__API_KEY", "from-env")
        monkeypatch.setenv("HOOKRELAY_RELAY__DELIVERY_TIMEOUT", "2.5")
        settings = Settings()
        assert settings.api.api_key == "from-env"
        assert settings.relay.delivery_timeout == 2.5


class TestLoadSettings:
    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_settings(tmp_path / "absent.yaml")
        assert settings.api.port == 5000

    def test_yaml_values(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            "api:\n"
            "  port: 6000\n"
            "  api_key: from-yaml\n"
            "relay:\n"
            "  events: [message, message_ack]\n"
            "storage:\n"
            "  backend: postgres\n"
        )
        settings = load_settings(path)
        assert settings.api.port == 6000
        assert settings.api.api_key == "from-yaml"
        assert settings.relay.events == ["message", "message_ack"]
        assert settings.storage.backend == "postgres"

    def test_env_overrides_yaml(self, tmp_path, monkeypatch):
        path = tmp_path / "config.yaml"
        path.write_text("log_level: DEBUG\n")
        monkeypatch.setenv("HOOKRELAY_LOG_LEVEL", "WARNING")
        assert load_settings(path).log_level == "WARNING"

    def test_config_path_from_env(self, tmp_path, monkeypatch):
        path = tmp_path / "other.yaml"
        path.write_text("api:\n  port: 7000\n")
        monkeypatch.setenv("HOOKRELAY_CONFIG", str(path))
        assert load_settings().api.port == 7000

    def test_default_config_dir(self, tmp_path):
        config_dir = tmp_path / "config"
        config_dir.mkdir()
        (config_dir / "config.yaml").write_text("api:\n  port: 8000\n")
        assert load_settings().api.port == 8000
