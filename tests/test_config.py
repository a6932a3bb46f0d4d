"""Tests for settings and database URL handling."""
import logging

import pytest
from datetime import timedelta

from app.config import Settings
from app.database import engine_options, normalise_database_url
from app.models.enums import ActivationType


class TestSettings:

    def test_defaults(self):
        settings = Settings()
        assert settings.verification_window == timedelta(minutes=5)
        assert settings.MAX_VERIFICATION_ATTEMPTS == 3
        assert settings.grant_duration(ActivationType.MEDICAL_PROFESSIONAL) == timedelta(hours=72)
        assert settings.grant_duration("legal_representative") == timedelta(days=30)

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("EMERGENCY_VERIFICATION_WINDOW_MINUTES", "10")
        monkeypatch.setenv("EMERGENCY_GRANT_DURATION_HOURS", '{"panic_button": 12}')
        monkeypatch.setenv("DATABASE_URL", "postgresql://db/emergency")

        settings = Settings()

        assert settings.verification_window == timedelta(minutes=10)
        assert settings.grant_duration(ActivationType.PANIC_BUTTON) == timedelta(hours=12)
        assert settings.DATABASE_URL == "postgresql://db/emergency"

    def test_unconfigured_type(self):
        settings = Settings(GRANT_DURATION_HOURS={"panic_button": 1})
        with pytest.raises(KeyError):
            settings.grant_duration(ActivationType.SMS_CODE)

    def test_jwt_secret_is_generated(self):
        assert len(Settings().JWT_SECRET) == 64


class TestDatabaseUrl:

    def test_postgres_scheme_normalised(self):
        assert normalise_database_url("postgres://u:p@host/db") == "postgresql://u:p@host/db"
        assert normalise_database_url("sqlite:///./x.db") == "sqlite:///./x.db"

    def test_engine_options(self):
        assert engine_options("sqlite:///./x.db")["connect_args"]["check_same_thread"] is False
        assert engine_options("postgresql://host/db")["pool_pre_ping"] is True


class TestJwtSecretWarning:

    def test_generated_secret_is_reported(self, caplog):
        from app.main import warn_if_jwt_secret_generated

        settings = Settings()
        assert settings.jwt_secret_generated is True

        with caplog.at_level(logging.WARNING, logger="app.main"):
            warn_if_jwt_secret_generated(settings)

        assert "auto-generated JWT secret" in caplog.text

    def test_configured_secret_is_quiet(self, monkeypatch, caplog):
        from app.main import warn_if_jwt_secret_generated

        monkeypatch.setenv("EMERGENCY_JWT_SECRET", "configured-secret-configured-secret-42")
        settings = Settings()
        assert settings.jwt_secret_generated is False

        with caplog.at_level(logging.WARNING, logger="app.main"):
            warn_if_jwt_secret_generated(settings)

        assert caplog.text == ""
