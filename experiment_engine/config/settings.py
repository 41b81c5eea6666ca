"""
Central configuration management using Pydantic settings.

Provides type-safe configuration with validation, environment variable
support, and YAML configuration file loading.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# Base paths
BASE_DIR = Path(__file__).resolve().parent.parent.parent
CONFIG_DIR = Path(__file__).resolve().parent


class AnalysisSettings(BaseModel):
    """Statistical analysis defaults applied when a test omits them."""

    significance_level: float = Field(default=0.05, gt=0, lt=1, description="Two-sided alpha")
    power: float = Field(default=0.80, gt=0, lt=1, description="Target statistical power")
    confidence_level: float = Field(default=0.95, gt=0, lt=1, description="Interval coverage")
    bootstrap_iterations: int = Field(default=2000, ge=100, description="Bootstrap resamples")
    bootstrap_chunk_size: int = Field(default=250, ge=1, description="Resamples between cancellation checks")
    bayesian_draws: int = Field(default=20000, ge=1000, description="Monte Carlo posterior draws")
    random_seed: int = Field(default=42, description="Seed for resampling and posterior draws")
    weight_tolerance: float = Field(default=1e-3, gt=0, description="Allowed drift in weight sum")
    max_looks: int = Field(default=5, ge=1, description="Default planned sequential looks")
    multiple_testing_correction: str = Field(
        default="benjamini_hochberg",
        description="Correction across treatment comparisons",
    )

    @field_validator("multiple_testing_correction")
    @classmethod
    def validate_correction(cls, v: str) -> str:
        """Restrict to the supported corrections."""
        allowed = {"bonferroni", "benjamini_hochberg", "none"}
        if v not in allowed:
            raise ValueError(f"multiple_testing_correction must be one of {sorted(allowed)}")
        return v


class BanditSettings(BaseModel):
    """Multi-armed bandit defaults."""

    exploration_epsilon: float = Field(default=0.05, ge=0, lt=1, description="Per-arm weight floor")
    thompson_draws: int = Field(default=10000, ge=100, description="Draws per weight update")


class StorageSettings(BaseModel):
    """Storage backend configuration settings."""

    backend: str = Field(default="memory", description="Storage backend (memory or file)")
    path: Path = Field(default=BASE_DIR / "data" / "experiments", description="File backend directory")
    lock_stripes: int = Field(default=64, ge=1, description="Striped locks for assignment creation")

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        """Restrict to the shipped backends."""
        v = v.lower()
        if v not in ("memory", "file"):
            raise ValueError("backend must be 'memory' or 'file'")
        return v


class LoggingSettings(BaseModel):
    """Logging configuration settings."""

    level: str = Field(default="INFO", description="Log level")
    format: str = Field(default="json", description="Log format (json or text)")
    file_path: Path | None = Field(default=None, description="Log file path")


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        env_prefix="EXPERIMENT_ENGINE_",
        extra="ignore",
    )

    # Application settings
    app_name: str = "Experiment Engine"
    app_version: str = "1.0.0"
    debug: bool = False
    environment: str = Field(default="development", description="Environment (development, staging, production)")

    # Component settings
    analysis: AnalysisSettings = Field(default_factory=AnalysisSettings)
    bandit: BanditSettings = Field(default_factory=BanditSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @classmethod
    def load_yaml_config(cls, config_path: Path) -> dict[str, Any]:
        """Load configuration from a YAML file."""
        if config_path.exists():
            with open(config_path, "r") as f:
                return yaml.safe_load(f) or {}
        return {}

    def load_engine_config(self, config_path: Path | None = None) -> None:
        """Overlay analysis and bandit defaults from YAML.

        Environment variables still win: only sections left at their
        defaults are replaced by the YAML values.
        """
        config = self.load_yaml_config(config_path or CONFIG_DIR / "engine.yaml")
        if not config:
            return
        if "analysis" in config and "analysis" not in self.model_fields_set:
            self.analysis = AnalysisSettings(**config["analysis"])
        if "bandit" in config and "bandit" not in self.model_fields_set:
            self.bandit = BanditSettings(**config["bandit"])
        if "storage" in config and "storage" not in self.model_fields_set:
            self.storage = StorageSettings(**config["storage"])


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached settings instance with all configurations loaded.

    Loads configurations in order:
    1. Base settings from environment and .env file
    2. Analysis, bandit and storage defaults from engine.yaml
    """
    settings = Settings()
    settings.load_engine_config()
    return settings
