import json
from functools import lru_cache
from typing import List, Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_CORS = ["http://localhost:3000", "http://localhost:5173"]


def _split_origins(raw: str | None) -> List[str]:
    """CORS_ORIGINS may be a JSON list or a comma-separated string."""
    raw = (raw or "").strip()
    if raw.startswith("["):
        try:
            items = json.loads(raw)
        except ValueError:
            items = []
    else:
        items = raw.split(",")
    origins = [x.strip() for x in items if isinstance(x, str) and x.strip()]
    return origins or _DEFAULT_CORS.copy()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # App
    env: str = Field(default="development", description="ENV")
    debug: bool = Field(default=False, description="DEBUG")
    log_level: str | None = Field(default=None, alias="LOG_LEVEL")
    secret_key: str = Field(default="change-me-in-production-min-32-chars")

    # "mongo" in deployments, "memory" for local runs and tests
    storage_backend: Literal["mongo", "memory"] = Field(default="mongo", alias="STORAGE_BACKEND")

    # MongoDB
    mongodb_uri: str = Field(default="mongodb://localhost:27017", alias="MONGODB_URI")
    mongodb_db_name: str = Field(default="coin_ledger", alias="MONGODB_DB_NAME")

    sentry_dsn: str | None = Field(default=None, alias="SENTRY_DSN")

    cors_origins_raw: str = Field(
        default=",".join(_DEFAULT_CORS),
        alias="CORS_ORIGINS",
        description="Comma-separated or JSON list",
    )

    # Duplicate charge detection (seconds, exclusive upper bound)
    duplicate_window_seconds: int = Field(default=60, gt=0)
    suspicious_window_seconds: int = Field(default=120, gt=0)

    # Optimistic append: attempts before ConcurrentModification
    ledger_max_retries: int = Field(default=5, ge=1)

    # Bulk refunds: which member of a duplicate group is kept
    refund_keep_policy: Literal["earliest", "latest"] = "earliest"
    bulk_refund_default_reason: str = "Refund for duplicate/illegitimate transactions"

    @property
    def cors_origins(self) -> List[str]:
        return _split_origins(self.cors_origins_raw)

    @model_validator(mode="after")
    def _windows_nest(self) -> "Settings":
        if self.suspicious_window_seconds < self.duplicate_window_seconds:
            raise ValueError("suspicious_window_seconds must be >= duplicate_window_seconds")
        return self


@lru_cache
def get_settings() -> Settings:
    return Settings()
