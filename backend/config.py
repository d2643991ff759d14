"""Application configuration using pydantic-settings."""

from typing import Any

from pydantic import field_validator
from pydantic.fields import FieldInfo
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from services.credential_manager import CREDENTIAL_KEYS, get_credential


class KeychainSettingsSource(PydanticBaseSettingsSource):
    """Load secret fields from the OS keychain via ``keyring``.

    Only fields whose uppercase name appears in
    :data:`~services.credential_manager.CREDENTIAL_KEYS` are looked up.
    All other fields return ``None`` so the next source in the chain
    handles them.
    """

    def get_field_value(
        self, field: FieldInfo, field_name: str
    ) -> tuple[Any, str, bool]:
        env_name = field_name.upper()
        if env_name not in CREDENTIAL_KEYS:
            return None, field_name, False
        value = get_credential(env_name)
        return value, field_name, False

    def __call__(self) -> dict[str, Any]:
        d: dict[str, Any] = {}
        for field_name, field_info in self.settings_cls.model_fields.items():
            value, key, is_complex = self.get_field_value(field_info, field_name)
            if value is not None:
                d[key] = value
        return d


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            KeychainSettingsSource(settings_cls),
            env_settings,
            dotenv_settings,
            file_secret_settings,
        )

    # Database
    DATABASE_URL: str = "sqlite:///./treasury_sync.db"

    # Secret used to derive the Fernet key for provider tokens at rest
    CREDENTIAL_ENCRYPTION_KEY: str = ""

    # Tink credentials (optional - for Tink open banking connections)
    TINK_CLIENT_ID: str = ""
    TINK_CLIENT_SECRET: str = ""
    TINK_REDIRECT_URI: str = ""
    TINK_API_BASE_URL: str = "https://api.tink.com"
    TINK_AUTHORIZE_URL: str = "https://link.tink.com/1.0/authorize"

    # Plaid credentials (optional - for Plaid connections)
    PLAID_CLIENT_ID: str = ""
    PLAID_SECRET: str = ""
    PLAID_ENVIRONMENT: str = "sandbox"

    # Sync engine tuning
    TOKEN_REFRESH_MARGIN_SECONDS: int = 60
    RATE_LIMIT_MAX_ATTEMPTS: int = 4
    RATE_LIMIT_BACKOFF_SECONDS: float = 2.0
    RATE_LIMIT_MAX_BACKOFF_SECONDS: float = 60.0
    FETCH_TIMEOUT_SECONDS: float = 120.0
    RECONCILE_TIMEOUT_SECONDS: float = 120.0
    SYNC_MAX_CONCURRENCY: int = 4
    SYNC_FAILURE_THRESHOLD: int = 3
    INITIAL_SYNC_LOOKBACK_DAYS: int = 90
    INCREMENTAL_OVERLAP_DAYS: int = 3
    STALE_JOB_AFTER_MINUTES: int = 60

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate and normalize LOG_LEVEL to an uppercase Python logging level."""
        valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid:
            raise ValueError(f"LOG_LEVEL must be one of {valid}, got {v!r}")
        return v.upper()

    @field_validator("SYNC_MAX_CONCURRENCY", "RATE_LIMIT_MAX_ATTEMPTS", "SYNC_FAILURE_THRESHOLD")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Reject zero or negative pool sizes and attempt counts."""
        if v < 1:
            raise ValueError(f"must be at least 1, got {v}")
        return v

    # App settings
    ENVIRONMENT: str = "development"
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"


settings = Settings()
