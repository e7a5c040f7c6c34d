"""
Configuration for the Household Ledger backend.

Settings are grouped per concern and loaded from environment variables
(and an optional .env file) with pydantic-settings.
"""

from functools import lru_cache
from pathlib import Path
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_PROGRESS_DIR = Path(__file__).parent.parent.parent / "progress"


class ImportSettings(BaseSettings):
    """Spreadsheet import limits and interactive session storage."""

    model_config = SettingsConfigDict(
        env_prefix="IMPORT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    max_file_size_mb: int = Field(default=5, ge=1, le=50)
    allowed_extensions: str = Field(
        default="csv,xlsx,xls",
        description="Comma-separated list of accepted file extensions",
    )
    progress_dir: Path = Field(default=DEFAULT_PROGRESS_DIR)
    error_display_limit: int = Field(default=50, ge=1)
    preview_row_limit: int = Field(default=20, ge=1)
    commit_cooldown_seconds: float = Field(default=3.0, ge=0.0)
    session_ttl_hours: float = Field(default=24.0, gt=0.0)

    @property
    def max_file_size_bytes(self) -> int:
        return self.max_file_size_mb * 1024 * 1024

    @property
    def allowed_extensions_list(self) -> List[str]:
        return [ext.strip().lower() for ext in self.allowed_extensions.split(",") if ext.strip()]


class SecuritySettings(BaseSettings):
    """Rate limits and phone verification parameters."""

    model_config = SettingsConfigDict(
        env_prefix="SECURITY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    challenge_secret: str = Field(
        default="change-me",
        description="HMAC key used to sign phone verification challenges",
    )
    rate_limit_per_minute: int = Field(default=30, ge=1)
    code_rate_limit_per_minute: int = Field(default=5, ge=1)
    challenge_ttl_seconds: int = Field(default=300, ge=30)
    dedup_window_seconds: float = Field(default=30.0, ge=0.0)
    webhook_timeout_seconds: float = Field(default=10.0, gt=0.0)
    external_api_token: str = Field(
        default="",
        description="Shared bearer token for /external/query; empty disables the endpoint",
    )


class TracingSettings(BaseSettings):
    """Langfuse tracing configuration. Tracing is off without a public key."""

    model_config = SettingsConfigDict(
        env_prefix="LANGFUSE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    public_key: str = ""
    secret_key: str = ""
    host: str = "http://localhost:3001"
    debug: bool = False


class AppSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_environment: str = Field(default="development")
    debug_mode: bool = Field(default=False)
    log_level: str = Field(default="INFO")
    cors_origins: str = Field(
        default="http://localhost:13030",
        description="Comma-separated list of allowed browser origins",
    )

    @property
    def cors_origins_list(self) -> List[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


class Settings(BaseSettings):
    """Root settings container; sub-settings load lazily."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def imports(self) -> ImportSettings:
        return ImportSettings()

    @property
    def security(self) -> SecuritySettings:
        return SecuritySettings()

    @property
    def tracing(self) -> TracingSettings:
        return TracingSettings()

    @property
    def app(self) -> AppSettings:
        return AppSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Call get_settings.cache_clear() to reload after changing the environment.
    """
    return Settings()
