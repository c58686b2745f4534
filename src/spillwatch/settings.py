from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    spillwatch_db_backend: str = Field(default="sqlite", alias="SPILLWATCH_DB_BACKEND")
    spillwatch_db_path: Path = Field(
        default=Path("./data/spillwatch.db"), alias="SPILLWATCH_DB_PATH"
    )
    spillwatch_mongodb_uri: str = Field(
        default="mongodb://127.0.0.1:27017",
        alias="SPILLWATCH_MONGODB_URI",
    )
    spillwatch_mongodb_db: str = Field(default="spillwatch", alias="SPILLWATCH_MONGODB_DB")
    spillwatch_feed_poll_seconds: float = Field(
        default=1.0,
        alias="SPILLWATCH_FEED_POLL_SECONDS",
        ge=0.05,
        le=30.0,
    )
    spillwatch_auto_refresh_seconds: float | None = Field(
        default=None,
        alias="SPILLWATCH_AUTO_REFRESH_SECONDS",
        ge=1.0,
    )

    spillwatch_log_level: str = Field(default="INFO", alias="SPILLWATCH_LOG_LEVEL")
    spillwatch_log_json: bool = Field(default=False, alias="SPILLWATCH_LOG_JSON")
    spillwatch_enable_metrics: bool = Field(default=True, alias="SPILLWATCH_ENABLE_METRICS")

    spillwatch_api_key: str | None = Field(default=None, alias="SPILLWATCH_API_KEY")
    spillwatch_cors_origins: str = Field(default="", alias="SPILLWATCH_CORS_ORIGINS")
    spillwatch_max_request_mb: int = Field(
        default=2, alias="SPILLWATCH_MAX_REQUEST_MB", ge=1, le=200
    )

    spillwatch_copernicus_client_id: str | None = Field(
        default=None, alias="SPILLWATCH_COPERNICUS_CLIENT_ID"
    )
    spillwatch_copernicus_client_secret: str | None = Field(
        default=None, alias="SPILLWATCH_COPERNICUS_CLIENT_SECRET"
    )
    spillwatch_copernicus_token_url: str = Field(
        default=(
            "https://identity.dataspace.copernicus.eu/auth/realms/CDSE/"
            "protocol/openid-connect/token"
        ),
        alias="SPILLWATCH_COPERNICUS_TOKEN_URL",
    )
    spillwatch_copernicus_catalog_url: str = Field(
        default="https://catalogue.dataspace.copernicus.eu",
        alias="SPILLWATCH_COPERNICUS_CATALOG_URL",
    )
    spillwatch_sentinelhub_url: str = Field(
        default="https://sh.dataspace.copernicus.eu",
        alias="SPILLWATCH_SENTINELHUB_URL",
    )
    spillwatch_catalog_page_size: int = Field(
        default=10, alias="SPILLWATCH_CATALOG_PAGE_SIZE", ge=1, le=1000
    )
    spillwatch_catalog_max_results: int = Field(
        default=10, alias="SPILLWATCH_CATALOG_MAX_RESULTS", ge=1, le=5000
    )
    spillwatch_catalog_max_concurrency: int = Field(
        default=4, alias="SPILLWATCH_CATALOG_MAX_CONCURRENCY", ge=1, le=64
    )
    spillwatch_catalog_timeout_seconds: float = Field(
        default=60.0, alias="SPILLWATCH_CATALOG_TIMEOUT_SECONDS", ge=1.0, le=600.0
    )

    @property
    def cors_origins(self) -> list[str]:
        if not self.spillwatch_cors_origins.strip():
            return []
        return [item.strip() for item in self.spillwatch_cors_origins.split(",") if item.strip()]

    @property
    def db_backend(self) -> str:
        return self.spillwatch_db_backend.strip().lower()

    def ensure_runtime_dirs(self) -> None:
        if self.db_backend == "sqlite":
            self.spillwatch_db_path.parent.mkdir(parents=True, exist_ok=True)


@lru_cache
def get_settings() -> Settings:
    settings = Settings()
    settings.ensure_runtime_dirs()
    return settings
