"""
chartguard Configuration Module.

Handles application settings, feature flags and query tunables.
Uses pydantic-settings for validation and type safety.

Hard safety ceilings (the 50,000 point cap, per-chart limits) are constants in
chartguard.engine.safety and are intentionally not configurable.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class FeatureFlags(BaseSettings):
    """Feature flags for enabling/disabling query surfaces."""

    model_config = SettingsConfigDict(env_prefix="FEATURE_")

    scatter: bool = True
    tables: bool = True
    progressive: bool = True
    plan_explain: bool = True
    dataset_loading: bool = True

    def to_dict(self) -> dict[str, bool]:
        """Return feature flags as dictionary for health endpoint."""
        return {
            "scatter": self.scatter,
            "tables": self.tables,
            "progressive": self.progressive,
            "plan_explain": self.plan_explain,
            "dataset_loading": self.dataset_loading,
        }


class QuerySettings(BaseSettings):
    """Tunables for the query service and dataset loading."""

    model_config = SettingsConfigDict(env_prefix="QUERY_")

    sampling_seed: int = Field(default=42, description="Seed shared by every deterministic sampler")
    min_samples_per_stratum: int = Field(default=10, ge=0, description="Floor for stratified sampling")
    large_dataset_warning_rows: int = Field(
        default=100_000,
        description="Table queries on a dataset above this many rows (before filters) carry a pagination warning",
    )
    max_dataset_memory_mb: int = Field(
        default=2048,
        description="Loaded frames larger than this are rejected",
    )
    data_dir: str | None = Field(
        default=None,
        description="If set, relative dataset paths are resolved against this directory",
    )


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application
    app_env: Literal["development", "staging", "production"] = "development"
    app_debug: bool = False
    app_log_level: str = "INFO"
    app_host: str = "127.0.0.1"
    app_port: int = 8000

    # Nested settings
    features: FeatureFlags = Field(default_factory=FeatureFlags)
    query: QuerySettings = Field(default_factory=QuerySettings)

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.app_env == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
