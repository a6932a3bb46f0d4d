"""Application settings loaded from the environment."""
import secrets
from datetime import timedelta
from functools import lru_cache
from typing import Dict, List

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Hours of access granted once a request is activated, keyed by activation type
DEFAULT_GRANT_DURATION_HOURS = {
    "panic_button": 24,
    "sms_code": 24,
    "trusted_contact": 24,
    "medical_professional": 72,
    "legal_representative": 30 * 24,
}


class Settings(BaseSettings):
    """Policy constants for emergency activation. Override with EMERGENCY_* env vars."""

    model_config = SettingsConfigDict(
        env_prefix="EMERGENCY_",
        env_file=".env",
        case_sensitive=True,
        extra="ignore"
    )

    APP_NAME: str = "If I'm Gone - Emergency Activation"
    APP_VERSION: str = "0.1.0"
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: List[str] = ["*"]

    # Also read from the platform-provided DATABASE_URL
    DATABASE_URL: str = Field(
        "sqlite:///./emergency.db",
        validation_alias=AliasChoices("EMERGENCY_DATABASE_URL", "DATABASE_URL")
    )

    # Verification
    VERIFICATION_WINDOW_MINUTES: int = 5
    MAX_VERIFICATION_ATTEMPTS: int = 3

    # Grant durations (hours) per activation type
    GRANT_DURATION_HOURS: Dict[str, int] = Field(
        default_factory=lambda: dict(DEFAULT_GRANT_DURATION_HOURS)
    )

    # Emergency access tokens
    TOKEN_EXPIRATION_HOURS: int = 72
    TOKEN_MAX_USES: int = 10
    ACCESS_LOG_RETENTION: int = 10000
    JWT_SECRET: str = Field(default_factory=lambda: secrets.token_hex(32))
    JWT_ALGORITHM: str = "HS256"

    @property
    def verification_window(self) -> timedelta:
        return timedelta(minutes=self.VERIFICATION_WINDOW_MINUTES)

    @property
    def jwt_secret_generated(self) -> bool:
        """True when no secret was configured and a per-process one is in use."""
        return "JWT_SECRET" not in self.model_fields_set

    def grant_duration(self, activation_type) -> timedelta:
        """Access window for an activation type (enum or raw value)."""
        key = getattr(activation_type, "value", activation_type)
        if key not in self.GRANT_DURATION_HOURS:
            raise KeyError(f"No grant duration configured for activation type '{key}'")
        return timedelta(hours=self.GRANT_DURATION_HOURS[key])


@lru_cache()
def get_settings() -> Settings:
    return Settings()
