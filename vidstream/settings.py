from __future__ import annotations

from typing import Literal

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import BackendKind


class AppSettings(BaseSettings):
    """Configuration for the HTTP layer, streaming and uploads."""

    model_config = SettingsConfigDict(
        env_prefix="", case_sensitive=False, extra="ignore"
    )

    environment: str = Field(
        default="development",
        validation_alias=AliasChoices("VIDSTREAM_ENV", "APP_ENV"),
    )
    log_level: str = Field(
        default="INFO",
        validation_alias="VIDSTREAM_LOG_LEVEL",
    )
    default_backend: BackendKind = Field(
        default=BackendKind.GCS,
        validation_alias="VIDSTREAM_DEFAULT_BACKEND",
    )
    default_folder: str = Field(
        default="Videos",
        validation_alias="VIDSTREAM_DEFAULT_FOLDER",
    )
    chunk_size: int = Field(
        default=64 * 1024,
        gt=0,
        validation_alias="VIDSTREAM_CHUNK_SIZE",
    )
    default_content_type: str = Field(
        default="video/mp4",
        validation_alias="VIDSTREAM_DEFAULT_CONTENT_TYPE",
    )
    cache_control: str = Field(
        default="public, max-age=3600",
        validation_alias="VIDSTREAM_CACHE_CONTROL",
    )
    max_upload_size: int = Field(
        default=500 * 1024 * 1024,
        gt=0,
        validation_alias="VIDSTREAM_MAX_UPLOAD_SIZE",
    )
    max_upload_files: int = Field(
        default=10,
        gt=0,
        validation_alias="VIDSTREAM_MAX_UPLOAD_FILES",
    )
    cors_origins: str = Field(
        default="*",
        validation_alias="VIDSTREAM_CORS_ORIGINS",
    )

    @field_validator("default_backend", mode="before")
    @classmethod
    def _parse_backend(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() == "production"

    @property
    def allowed_origins(self) -> list[str]:
        origins = [origin.strip() for origin in self.cors_origins.split(",")]
        return [origin for origin in origins if origin] or ["*"]


class S3Settings(BaseSettings):
    """Configuration for the S3-compatible storage backend."""

    model_config = SettingsConfigDict(
        env_prefix="", case_sensitive=False, extra="ignore"
    )

    endpoint: str | None = Field(
        default=None,
        validation_alias="VIDSTREAM_S3_ENDPOINT",
    )
    access_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "VIDSTREAM_S3_ACCESS_KEY_ID",
            "AWS_ACCESS_KEY_ID",
        ),
    )
    secret_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "VIDSTREAM_S3_SECRET_ACCESS_KEY",
            "AWS_SECRET_ACCESS_KEY",
        ),
    )
    session_token: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "VIDSTREAM_S3_SESSION_TOKEN",
            "AWS_SESSION_TOKEN",
        ),
    )
    region: str = Field(
        default="us-east-1",
        validation_alias=AliasChoices(
            "VIDSTREAM_S3_REGION",
            "AWS_REGION",
        ),
    )
    bucket: str | None = Field(
        default=None,
        validation_alias="VIDSTREAM_S3_BUCKET",
    )
    addressing_style: Literal["auto", "virtual", "path"] = Field(
        default="auto",
        validation_alias="VIDSTREAM_S3_ADDRESSING_STYLE",
    )
    public_base_url: str | None = Field(
        default=None,
        validation_alias="VIDSTREAM_S3_PUBLIC_BASE_URL",
    )
    connect_timeout: float = Field(
        default=10.0,
        gt=0,
        validation_alias="VIDSTREAM_S3_CONNECT_TIMEOUT",
    )
    read_timeout: float = Field(
        default=300.0,
        gt=0,
        validation_alias="VIDSTREAM_S3_READ_TIMEOUT",
    )

    @field_validator("endpoint", "public_base_url", mode="after")
    @classmethod
    def _strip_trailing_slash(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip().rstrip("/") or None

    @property
    def enabled(self) -> bool:
        """Check if the S3 backend is configured."""
        return bool(self.bucket)


class GCSSettings(BaseSettings):
    """Configuration for the Google Cloud Storage backend."""

    model_config = SettingsConfigDict(
        env_prefix="", case_sensitive=False, extra="ignore"
    )

    bucket: str | None = Field(
        default=None,
        validation_alias=AliasChoices("VIDSTREAM_GCS_BUCKET", "GCS_BUCKET_NAME"),
    )
    project: str | None = Field(
        default=None,
        validation_alias=AliasChoices("VIDSTREAM_GCS_PROJECT", "GCS_PROJECT_ID"),
    )
    credentials: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "VIDSTREAM_GCS_CREDENTIALS", "GCS_CREDENTIALS"
        ),
    )
    key_file: str | None = Field(
        default=None,
        validation_alias=AliasChoices("VIDSTREAM_GCS_KEY_FILE", "GCS_KEY_FILE"),
    )
    connect_timeout: float = Field(
        default=10.0,
        gt=0,
        validation_alias="VIDSTREAM_GCS_CONNECT_TIMEOUT",
    )
    read_timeout: float = Field(
        default=300.0,
        gt=0,
        validation_alias="VIDSTREAM_GCS_READ_TIMEOUT",
    )
    reader_buffer_size: int = Field(
        default=4 * 1024 * 1024,
        gt=0,
        validation_alias="VIDSTREAM_GCS_READER_BUFFER_SIZE",
    )

    @property
    def enabled(self) -> bool:
        """Check if the GCS backend is configured."""
        return bool(self.bucket)


def load_app_settings_from_env() -> AppSettings:
    """Load application settings from environment variables."""
    return AppSettings()


def load_s3_settings_from_env() -> S3Settings:
    """Load S3 backend settings from environment variables.

    Returns:
        S3Settings instance populated from environment variables.
    """
    return S3Settings()


def load_gcs_settings_from_env() -> GCSSettings:
    """Load GCS backend settings from environment variables.

    Returns:
        GCSSettings instance populated from environment variables.
    """
    return GCSSettings()
