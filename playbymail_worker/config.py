"""
Typed settings for the play-by-mail turn sheet worker.

Uses Pydantic Settings to load configuration from environment variables
with validation and type safety. A root .env file is read when present
so local development matches the deployed containers.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .validate_env import validate_env


class PipelineConfig(BaseModel):
    # Per-channel attempt budget before the channel is abandoned
    delivery_retry_budget: int = Field(default=3, ge=1)
    delivery_backoff_base_seconds: int = Field(default=30, ge=0)
    delivery_backoff_factor: int = Field(default=2, ge=1)
    delivery_backoff_jitter: float = Field(default=0.25, ge=0.0, lt=1.0)
    # Used when a game does not set turn_duration_hours
    default_turn_duration_hours: int = Field(default=168, ge=1)
    # Sheets left in draft/rendered longer than this are re-emitted by the sweep
    stalled_sheet_minutes: int = Field(default=30, ge=1)


class OCRConfig(BaseModel):
    # "tesseract" or "openai:<model>"
    ocr_model: str = "tesseract"
    openai_api_key: str | None = None
    tesseract_cmd: str | None = None
    tesseract_lang: str = "eng"
    request_timeout_seconds: int = 60


class DeliveryConfig(BaseModel):
    # smtp | forwardemail | fake
    email_transport: str = "fake"
    sender_address: str = "turns@playbymail.local"
    smtp_host: str = "localhost"
    smtp_port: int = 587
    smtp_username: str | None = None
    smtp_password: str | None = None
    smtp_use_tls: bool = True
    forwardemail_base_url: str = "https://api.forwardemail.net"
    forwardemail_api_key: str | None = None
    physical_post_api_url: str | None = None
    physical_post_api_key: str | None = None
    physical_local_dir: str = "./print_spool"
    request_timeout_seconds: int = 30


class StorageConfig(BaseModel):
    artifact_dir: str = "./artifacts"


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    In containers the variables are passed directly. For local development
    a root .env file is read when present. Nested groups can be overridden
    through the top-level aliases below without double-underscore syntax.
    """
    model_config = SettingsConfigDict(
        env_file=Path(__file__).resolve().parents[1] / ".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        extra="allow",
    )

    database_url: str = Field(..., alias="DATABASE_URL")

    @field_validator("database_url", mode="before")
    @classmethod
    def convert_async_to_sync(cls, v: str) -> str:
        """Rewrite an asyncpg URL to psycopg; workers use synchronous sessions."""
        if isinstance(v, str) and "asyncpg" in v:
            return v.replace("asyncpg", "psycopg")
        return v

    redis_url: str = Field("redis://localhost:6379/3", alias="REDIS_URL")
    environment: str = Field("development", alias="ENVIRONMENT")
    log_level: str | None = Field(None, alias="LOG_LEVEL")
    sql_echo: bool = Field(False, alias="SQL_ECHO")

    pipeline_config: PipelineConfig = Field(default_factory=PipelineConfig)
    ocr_config: OCRConfig = Field(default_factory=OCRConfig)
    delivery_config: DeliveryConfig = Field(default_factory=DeliveryConfig)
    storage_config: StorageConfig = Field(default_factory=StorageConfig)

    ocr_model_override: str | None = Field(None, alias="OCR_MODEL")
    openai_api_key: str | None = Field(None, alias="OPENAI_API_KEY")
    delivery_retry_budget_override: int | None = Field(None, alias="DELIVERY_RETRY_BUDGET")
    delivery_backoff_base_override: int | None = Field(None, alias="DELIVERY_BACKOFF_BASE_SECONDS")
    email_transport_override: str | None = Field(None, alias="EMAIL_TRANSPORT")
    smtp_host_override: str | None = Field(None, alias="SMTP_HOST")
    smtp_username_override: str | None = Field(None, alias="SMTP_USERNAME")
    smtp_password_override: str | None = Field(None, alias="SMTP_PASSWORD")
    forwardemail_api_key_override: str | None = Field(None, alias="FORWARDEMAIL_API_KEY")
    physical_post_api_url_override: str | None = Field(None, alias="PHYSICAL_POST_API_URL")
    physical_post_api_key_override: str | None = Field(None, alias="PHYSICAL_POST_API_KEY")
    artifact_dir_override: str | None = Field(None, alias="ARTIFACT_DIR")

    @model_validator(mode="after")
    def _apply_overrides(self) -> Settings:
        """Copy top-level env aliases into the nested config groups."""
        if self.ocr_model_override:
            self.ocr_config.ocr_model = self.ocr_model_override
        if self.openai_api_key:
            self.ocr_config.openai_api_key = self.openai_api_key
        if self.delivery_retry_budget_override is not None:
            self.pipeline_config.delivery_retry_budget = self.delivery_retry_budget_override
        if self.delivery_backoff_base_override is not None:
            self.pipeline_config.delivery_backoff_base_seconds = self.delivery_backoff_base_override
        if self.email_transport_override:
            self.delivery_config.email_transport = self.email_transport_override
        if self.smtp_host_override:
            self.delivery_config.smtp_host = self.smtp_host_override
        if self.smtp_username_override:
            self.delivery_config.smtp_username = self.smtp_username_override
        if self.smtp_password_override:
            self.delivery_config.smtp_password = self.smtp_password_override
        if self.forwardemail_api_key_override:
            self.delivery_config.forwardemail_api_key = self.forwardemail_api_key_override
        if self.physical_post_api_url_override:
            self.delivery_config.physical_post_api_url = self.physical_post_api_url_override
        if self.physical_post_api_key_override:
            self.delivery_config.physical_post_api_key = self.physical_post_api_key_override
        if self.artifact_dir_override:
            self.storage_config.artifact_dir = self.artifact_dir_override
        return self


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Return cached settings instance.

    Environment validation runs first so a misconfigured worker fails at
    startup instead of on its first job.
    """
    validate_env()
    return Settings()


# Global settings instance - import this in other modules
settings = get_settings()
