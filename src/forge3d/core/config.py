"""Application configuration using Pydantic BaseSettings."""

import logging

import structlog
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """Database and logging settings, enough for commands that only touch the database."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Database Configuration
    database_url: str = Field(alias="DATABASE_URL")
    db_pool_size: int = Field(default=50, alias="DB_POOL_SIZE")
    auto_create_tables: bool = Field(default=True, alias="AUTO_CREATE_TABLES")

    # Application Environment
    app_env: str = Field(default="development", alias="APP_ENV")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")


class Settings(DatabaseSettings):
    """Application settings loaded from environment variables."""

    # CORS Configuration
    cors_origins: str = Field(default="http://localhost:5173", alias="CORS_ORIGINS")

    # Server Configuration
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=3000, alias="PORT")

    # Tripo3D generation provider
    tripo3d_api_key: str = Field(default="", alias="TRIPO3D_API_KEY")
    tripo3d_api_url: str = Field(
        default="https://api.tripo3d.ai/v2/openapi", alias="TRIPO3D_API_URL"
    )
    tripo3d_model_version: str = Field(default="v2.5-20250123", alias="TRIPO3D_MODEL_VERSION")
    http_timeout_seconds: float = Field(default=30.0, alias="HTTP_TIMEOUT_SECONDS")

    # Qiniu object storage (durable copies of generated assets)
    qiniu_access_key: str = Field(default="", alias="QINIU_ACCESS_KEY")
    qiniu_secret_key: str = Field(default="", alias="QINIU_SECRET_KEY")
    qiniu_bucket: str = Field(default="", alias="QINIU_BUCKET")
    qiniu_domain: str = Field(default="", alias="QINIU_DOMAIN")
    qiniu_upload_host: str = Field(default="https://upload.qiniup.com", alias="QINIU_UPLOAD_HOST")

    # Poll worker
    poll_worker_interval_seconds: float = Field(default=0.5, alias="POLL_WORKER_INTERVAL_SECONDS")
    worker_batch_size: int = Field(default=20, alias="WORKER_BATCH_SIZE")
    poll_job_lease_seconds: int = Field(default=120, alias="POLL_JOB_LEASE_SECONDS")

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @model_validator(mode="after")
    def validate_required_config(self) -> "Settings":
        """Fail fast on missing provider or storage credentials.

        Every missing variable is listed in one error. Test environments skip
        the check so fixtures can build settings without credentials.
        """
        if self.app_env in ("test", "testing"):
            return self

        missing = []

        if not self.tripo3d_api_key:
            missing.append("TRIPO3D_API_KEY: API key from https://platform.tripo3d.ai")

        for name in ("qiniu_access_key", "qiniu_secret_key", "qiniu_bucket", "qiniu_domain"):
            if not getattr(self, name):
                missing.append(f"{name.upper()}: Qiniu bucket credentials and public domain")

        if missing:
            error_msg = "CRITICAL: Missing required environment variables:\n\n" + "\n".join(
                f"  - {m}" for m in missing
            )
            error_msg += "\n\nThe application cannot start without these variables."
            raise ValueError(error_msg)

        return self


def configure_logging(settings: DatabaseSettings) -> None:
    """Configure structlog for the current APP_ENV.

    Production renders one JSON object per event for the log pipeline; every
    other environment gets the colored console renderer. Context bound with
    structlog.contextvars (e.g. a task_id) is merged into each event.
    """
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    shared = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if settings.app_env == "production":
        renderers = [
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        renderers = [structlog.dev.ConsoleRenderer()]

    structlog.configure(
        processors=shared + renderers,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
