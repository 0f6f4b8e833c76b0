"""Tests for YAML settings loading."""
import pytest

import config.settings as settings_module
from config.settings import Settings, load_settings


@pytest.fixture(autouse=True)
def _reset_settings():
    yield
    settings_module._settings = None


class TestLoadSettings:
    def test_bundled_defaults(self):
        settings = load_settings()
        assert settings.app_name == "WAFlow"
        assert settings.database.store_backend == "memory"
        assert settings.flow_engine.max_invalid_responses == 0
        assert settings.lead_fetch.api_url.startswith("https://mapi.indiamart.com/")

    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_settings(str(tmp_path / "absent.yaml"))
        assert settings == Settings()

    def test_env_substitution(self, tmp_path, monkeypatch):
        monkeypatch.setenv("WA_TOKEN", "secret-token")
        path = tmp_path / "settings.yaml"
        path.write_text(
            "whatsapp:\n"
            "  access_token: \"${WA_TOKEN}\"\n"
            "  phone_number_id: \"${UNSET_VARIABLE_XYZ}\"\n"
        )
        settings = load_settings(str(path))
        assert settings.whatsapp.access_token == "secret-token"
        assert settings.whatsapp.phone_number_id == "${UNSET_VARIABLE_XYZ}"

    def test_env_default(self, tmp_path, monkeypatch):
        monkeypatch.delenv("WAFLOW_TEST_DB", raising=False)
        path = tmp_path / "settings.yaml"
        path.write_text("database:\n  url: \"${WAFLOW_TEST_DB:-sqlite:///./fallback.db}\"\n")
        assert load_settings(str(path)).database.url == "sqlite:///./fallback.db"

        monkeypatch.setenv("WAFLOW_TEST_DB", "postgresql://db/waflow")
        assert load_settings(str(path)).database.url == "postgresql://db/waflow"

    def test_sections_and_unknown_keys(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text(
            "timezone: \"UTC\"\n"
            "database:\n"
            "  store_backend: sql\n"
            "  legacy_option: 1\n"
            "scheduler:\n"
            "  enabled: false\n"
            "  message_interval_seconds: 15\n"
        )
        settings = load_settings(str(path))
        assert settings.timezone == "UTC"
        assert settings.database.store_backend == "sql"
        assert settings.database.url == "sqlite:///./waflow.db"
        assert settings.scheduler.enabled is False
        assert settings.scheduler.message_interval_seconds == 15
        assert settings.lead_fetch.enabled is True

    def test_config_path_from_environment(self, tmp_path, monkeypatch):
        path = tmp_path / "custom.yaml"
        path.write_text("app_name: \"Custom\"\n")
        monkeypatch.setenv("WAFLOW_CONFIG", str(path))
        assert load_settings().app_name == "Custom"
