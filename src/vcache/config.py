"""Configuration models and YAML loading."""

from __future__ import annotations

from pathlib import Path
from typing import Any, List, Mapping

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from vcache.utils.cache_key import normalise_workdir

DEFAULT_CONFIG_NAME = "vcache.yaml"

__all__ = [
    "CacheConfig",
    "ConfigError",
    "DEFAULT_CONFIG_NAME",
    "HistoryConfig",
    "PhaseConfig",
    "RetentionPolicy",
    "Settings",
    "StepConfig",
    "ValidationConfig",
    "load_config",
    "parse_config",
]


class ConfigError(ValueError):
    """Raised when the configuration file cannot be parsed or validated."""


class ConfigModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


class RetentionPolicy(ConfigModel):
    """Bounds applied to the validation history."""

    max_runs_per_tree: int = Field(default=10, ge=1)
    max_output_bytes: int = Field(default=10_000, ge=1)
    warn_after_days: int = Field(default=30, ge=1)
    warn_after_count: int = Field(default=1000, ge=1)


class HistoryConfig(ConfigModel):
    enabled: bool = True
    notes_ref: str = "vcache/history/validate"
    retention: RetentionPolicy = Field(default_factory=RetentionPolicy)


class CacheConfig(ConfigModel):
    enabled: bool = True
    notes_ref: str = "vcache/cache/run"
    timeout_secs: float = Field(default=30.0, gt=0)
    max_attempts: int = Field(default=4, ge=1, le=10)
    retry_delay_secs: float = Field(default=0.05, ge=0)


class StepConfig(ConfigModel):
    name: str
    command: str
    workdir: str = ""

    @field_validator("workdir")
    @classmethod
    def _clean_workdir(cls, value: str) -> str:
        return normalise_workdir(value)


class PhaseConfig(ConfigModel):
    name: str
    steps: List[StepConfig] = Field(default_factory=list)


class ValidationConfig(ConfigModel):
    fail_fast: bool = True
    phases: List[PhaseConfig] = Field(default_factory=list)


class Settings(ConfigModel):
    """Top-level configuration document."""

    history: HistoryConfig = Field(default_factory=HistoryConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    validation: ValidationConfig = Field(default_factory=ValidationConfig)


def parse_config(data: Mapping[str, Any] | None) -> Settings:
    """Validate a raw mapping into :class:`Settings`."""
    try:
        return Settings.model_validate(dict(data or {}))
    except ValidationError as error:
        raise ConfigError(f"Invalid configuration: {error}") from error


def load_config(config_path: Path | str) -> Settings:
    """Load YAML configuration from disk; a missing file yields defaults."""
    path = Path(config_path)
    if not path.exists():
        return Settings()

    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        raise ConfigError(f"Failed to parse config {path}: {error}") from error

    if not isinstance(data, Mapping):
        raise ConfigError("Configuration must be a mapping at the top level.")
    return parse_config(data)
