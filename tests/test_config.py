"""Tests for broker configuration."""

from unittest.mock import patch

import pytest
from pydantic import ValidationError

from credbroker.config import BrokerSettings, load_settings_from_env

_ENV_VARS = (
    "GOOGLE_CLIENT_ID",
    "MICROSOFT_CLIENT_ID",
    "MICROSOFT_CLIENT_SECRET",
    "CREDBROKER_CALLBACK_SCHEME",
    "CREDBROKER_DATABASE_URL",
    "CREDBROKER_HTTP_TIMEOUT_SECONDS",
    "CREDBROKER_STATE_TTL_SECONDS",
    "CREDBROKER_MASTER_KEY_NAME",
    "CREDBROKER_LOG_LEVEL",
    "CREDBROKER_JSON_LOGS",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class TestBrokerSettings:
    """Tests for BrokerSettings validation."""

    def test_defaults(self) -> None:
        settings = BrokerSettings()

        assert settings.callback_scheme == "credbroker"
        assert settings.http_timeout_seconds == 20.0
        assert settings.state_ttl_seconds == 600
        assert settings.log_level == "INFO"
        assert settings.json_logs is True

    def test_log_level_is_normalized(self) -> None:
        assert BrokerSettings(log_level="debug").log_level == "DEBUG"

    def test_invalid_log_level(self) -> None:
        with pytest.raises(ValidationError):
            BrokerSettings(log_level="chatty")

    @pytest.mark.parametrize("scheme", ["1app", "my app", "app/cb", ""])
    def test_invalid_callback_scheme(self, scheme: str) -> None:
        with pytest.raises(ValidationError):
            BrokerSettings(callback_scheme=scheme)

    def test_callback_scheme_is_lowercased(self) -> None:
        settings = BrokerSettings(callback_scheme="CredBroker")
        assert settings.callback_scheme == "credbroker"

    def test_timeout_bounds(self) -> None:
        with pytest.raises(ValidationError):
            BrokerSettings(http_timeout_seconds=0.5)

    def test_secret_hidden_from_repr(self) -> None:
        """The Microsoft client secret should not appear in repr output."""
        settings = BrokerSettings(microsoft_client_secret="super-secret")
        assert "super-secret" not in repr(settings)

    def test_settings_are_frozen(self) -> None:
        settings = BrokerSettings()
        with pytest.raises(ValidationError):
            settings.log_level = "DEBUG"


class TestLoadSettingsFromEnv:
    """Tests for load_settings_from_env."""

    def test_defaults(self) -> None:
        """Without variables the defaults should be used."""
        with patch("credbroker.config.load_dotenv"):
            settings = load_settings_from_env()

        assert settings == BrokerSettings()

    def test_reads_variables(self, monkeypatch) -> None:
        monkeypatch.setenv("GOOGLE_CLIENT_ID", "1234-abc.apps.googleusercontent.com")
        monkeypatch.setenv("MICROSOFT_CLIENT_ID", "ms-id")
        monkeypatch.setenv("MICROSOFT_CLIENT_SECRET", "ms-secret")
        monkeypatch.setenv("CREDBROKER_CALLBACK_SCHEME", "myapp")
        monkeypatch.setenv("CREDBROKER_DATABASE_URL", "sqlite+aiosqlite:///:memory:")
        monkeypatch.setenv("CREDBROKER_HTTP_TIMEOUT_SECONDS", "5")
        monkeypatch.setenv("CREDBROKER_STATE_TTL_SECONDS", "120")
        monkeypatch.setenv("CREDBROKER_MASTER_KEY_NAME", "myapp.key")
        monkeypatch.setenv("CREDBROKER_LOG_LEVEL", "warning")
        monkeypatch.setenv("CREDBROKER_JSON_LOGS", "false")

        with patch("credbroker.config.load_dotenv"):
            settings = load_settings_from_env()

        assert settings.google_client_id == "1234-abc.apps.googleusercontent.com"
        assert settings.microsoft_client_id == "ms-id"
        assert settings.microsoft_client_secret == "ms-secret"
        assert settings.callback_scheme == "myapp"
        assert settings.database_url == "sqlite+aiosqlite:///:memory:"
        assert settings.http_timeout_seconds == 5.0
        assert settings.state_ttl_seconds == 120
        assert settings.master_key_name == "myapp.key"
        assert settings.log_level == "WARNING"
        assert settings.json_logs is False

    @pytest.mark.parametrize("value,expected", [("1", True), ("on", True), ("no", False)])
    def test_json_logs_flag(self, monkeypatch, value: str, expected: bool) -> None:
        monkeypatch.setenv("CREDBROKER_JSON_LOGS", value)

        with patch("credbroker.config.load_dotenv"):
            settings = load_settings_from_env()

        assert settings.json_logs is expected

    def test_invalid_value_raises(self, monkeypatch) -> None:
        monkeypatch.setenv("CREDBROKER_STATE_TTL_SECONDS", "5")

        with patch("credbroker.config.load_dotenv"):
            with pytest.raises(ValidationError):
                load_settings_from_env()
