"""Unit tests for configuration and settings."""
import pytest
from pydantic import ValidationError

from common.config import Settings, get_settings, reset_settings_cache


class TestSettings:
    """Test configuration management."""

    def test_get_settings_returns_same_instance(self):
        """Test that get_settings returns a cached instance."""
        assert get_settings() is get_settings()

    def test_reset_settings_cache(self):
        """Test that the settings cache can be reset."""
        settings1 = get_settings()
        reset_settings_cache()
        settings2 = get_settings()

        assert settings1 is not settings2

    def test_environment_overrides(self, monkeypatch):
        """Test that environment variables override defaults."""
        monkeypatch.setenv("DATABASE_URL", "sqlite:///./other.db")
        monkeypatch.setenv("ACCESS_TOKEN_EXPIRE_MINUTES", "5")
        monkeypatch.setenv("NOTIFICATION_BACKEND", "queue")

        settings = Settings()

        assert settings.database_url == "sqlite:///./other.db"
        assert settings.access_token_expire_minutes == 5
        assert settings.notification_backend == "queue"

    def test_unknown_notification_backend_is_rejected(self, monkeypatch):
        """Test that an unknown notification backend fails validation."""
        monkeypatch.setenv("NOTIFICATION_BACKEND", "carrier-pigeon")

        with pytest.raises(ValidationError):
            Settings()

    def test_defaults(self, monkeypatch):
        """Test default configuration values."""
        for name in ("NOTIFICATION_BACKEND", "RATE_LIMITING_ENABLED", "DATABASE_URL"):
            monkeypatch.delenv(name, raising=False)

        settings = Settings(_env_file=None)

        assert settings.database_url == "sqlite:///./booking.db"
        assert settings.jwt_algorithm == "HS256"
        assert settings.access_token_expire_minutes == 180
        assert settings.rate_limiting_enabled is True
        assert settings.trust_forwarded_for is False
        assert settings.notification_backend == "log"
        assert settings.cors_origins == ["*"]

    def test_service_ports_configuration(self):
        """Test service port configuration."""
        settings = get_settings()

        assert settings.users_service_port == 8001
        assert settings.catalog_service_port == 8002
        assert settings.bookings_service_port == 8003
