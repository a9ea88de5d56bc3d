from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    db_path: Path = Field(
        default=Path("data/alert-ingest.db"), validation_alias="DB_PATH"
    )
    user_agent: str = Field(
        default="Security-Intelligence-Platform/1.0", validation_alias="USER_AGENT"
    )

    feeds_dir: Path = Field(default=Path("feeds"), validation_alias="FEEDS_DIR")
    classification_rules_path: Path | None = Field(
        default=Path("rules/classification.yaml"),
        validation_alias="CLASSIFICATION_RULES_PATH",
    )
    rule_backend: str = Field(
        default="store", pattern="^(store|static)$", validation_alias="RULE_BACKEND"
    )

    max_concurrent_sources: int = Field(
        default=4, ge=1, validation_alias="MAX_CONCURRENT_SOURCES"
    )
    retry_base_delay_seconds: float = Field(
        default=1.0, ge=0.0, validation_alias="RETRY_BASE_DELAY_SECONDS"
    )
    retry_max_delay_seconds: float = Field(
        default=30.0, ge=0.0, validation_alias="RETRY_MAX_DELAY_SECONDS"
    )

    description_max_length: int = Field(
        default=1000, ge=4, validation_alias="DESCRIPTION_MAX_LENGTH"
    )
    health_window: int = Field(default=10, ge=1, validation_alias="HEALTH_WINDOW")

    scheduler_enabled: bool = Field(
        default=False, validation_alias="SCHEDULER_ENABLED"
    )
    scheduler_tick_seconds: int = Field(
        default=60, ge=1, validation_alias="SCHEDULER_TICK_SECONDS"
    )

    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
