"""Configuration management using YAML and Pydantic."""

import os
import re
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from migrator.exceptions import ConfigurationError
from migrator.models import ResolutionStrategy


def _substitute_env_vars(value: str) -> str:
    """Substitute environment variables in string.

    Supports ${VAR} and ${VAR:-default} syntax.

    Args:
        value: String potentially containing env var references

    Returns:
        String with environment variables substituted
    """
    pattern = r"\$\{([^}:]+)(?::-([^}]*))?\}"

    def replacer(match: re.Match[str]) -> str:
        var_name = match.group(1)
        default = match.group(2)
        env_value = os.getenv(var_name)
        if env_value is not None:
            return env_value
        if default is not None:
            return default
        raise ConfigurationError(
            f"Environment variable {var_name} not set and no default provided",
            context={"variable": var_name},
        )

    return re.sub(pattern, replacer, value)


def _substitute_env_in_dict(data: Any) -> Any:
    """Recursively substitute environment variables in a nested structure."""
    if isinstance(data, dict):
        return {key: _substitute_env_in_dict(value) for key, value in data.items()}
    elif isinstance(data, list):
        return [_substitute_env_in_dict(item) for item in data]
    elif isinstance(data, str):
        return _substitute_env_vars(data)
    return data


class DatabaseConfig(BaseModel):
    """Database connection configuration."""

    name: str = Field(description="Database name")
    host: str = Field(default="localhost", description="Database host")
    port: int = Field(default=5432, description="Database port", gt=0, lt=65536)
    user: str = Field(description="Database user")
    password_env: Optional[str] = Field(
        default=None,
        description="Environment variable name containing database password (preferred)",
    )
    password: Optional[str] = Field(
        default=None,
        description="Database password (development only - use password_env in production)",
    )
    pool_size: int = Field(default=5, description="Connection pool size", gt=0, le=50)
    command_timeout: float = Field(
        default=300.0,
        description="Per-statement timeout in seconds",
        gt=0,
    )
    application_name: str = Field(
        default="migrator",
        description="application_name reported to PostgreSQL",
    )

    @model_validator(mode="after")
    def validate_password_source(self) -> "DatabaseConfig":
        """Validate that at most one password source is provided."""
        if self.password_env and self.password:
            raise ValueError(
                "Cannot specify both 'password_env' and 'password'. "
                "Use 'password_env' for production (recommended) or 'password' for development only."
            )
        return self

    def get_password(self) -> Optional[str]:
        """Get password from environment variable or config file.

        Returns:
            Database password, or None for trust/peer authentication

        Raises:
            ConfigurationError: If the password environment variable is not set
        """
        if self.password_env:
            password = os.getenv(self.password_env)
            if not password:
                raise ConfigurationError(
                    f"Environment variable {self.password_env} not set",
                    context={"database": self.name},
                )
            return password
        return self.password


class EngineOptions(BaseModel):
    """Options recognised by the batch engine."""

    batch_size: int = Field(default=500, description="Items per batch", gt=0)
    max_retries: int = Field(
        default=3,
        description="Attempts per batch, including the first",
        ge=1,
    )
    retry_delay: float = Field(
        default=1.0,
        description="Base retry delay in seconds; attempt n waits retry_delay * 2^(n-1)",
        ge=0,
    )
    max_retry_delay: float = Field(
        default=60.0,
        description="Cap on a single retry delay in seconds",
        ge=0,
    )
    parallelism: int = Field(default=1, description="Concurrent batches", ge=1, le=8)
    progress_reporting_interval: int = Field(
        default=10,
        description="Notify progress listeners every N batches",
        ge=1,
    )
    continue_on_error: bool = Field(
        default=True,
        description="Continue with the next batch after a batch exhausts its retries",
    )
    enable_checkpointing: bool = Field(default=True, description="Load and save checkpoints")
    checkpoint_interval: int = Field(
        default=1,
        description="Persist a checkpoint every N committed batches",
        ge=1,
    )
    batch_timeout: Optional[float] = Field(
        default=None,
        description="Per-attempt timeout in seconds (None disables)",
        gt=0,
    )
    stale_after_seconds: float = Field(
        default=3600.0,
        description="An IN_PROGRESS checkpoint not updated for this long may be resumed",
        gt=0,
    )
    max_reported_errors: int = Field(
        default=100,
        description="Maximum number of errors kept in run statistics",
        ge=1,
    )

    @model_validator(mode="after")
    def validate_delays(self) -> "EngineOptions":
        """Validate that the delay cap is not below the base delay."""
        if self.max_retry_delay < self.retry_delay:
            raise ValueError("max_retry_delay must be >= retry_delay")
        return self


class CheckpointConfig(BaseModel):
    """Checkpoint storage configuration."""

    storage_type: str = Field(
        default="database",
        description="Storage backend for checkpoints (database, local)",
    )
    local_directory: str = Field(
        default=".migrator/checkpoints",
        description="Directory for local checkpoint files",
    )
    retention_days: int = Field(
        default=7,
        description="Terminal checkpoints older than this are removed by cleanup",
        ge=1,
    )

    @field_validator("storage_type")
    @classmethod
    def validate_storage_type(cls, v: str) -> str:
        """Validate storage type."""
        if v not in ("database", "local"):
            raise ValueError("storage_type must be 'database' or 'local'")
        return v


class MappingConfig(BaseModel):
    """Identifier mapping configuration."""

    cache_enabled: bool = Field(default=True, description="Cache mappings in memory")
    preload_entity_types: list[str] = Field(
        default_factory=list,
        description="Entity types whose mappings are loaded into the cache at startup",
    )


class ComparisonOptions(BaseModel):
    """Options for differential comparison of one entity."""

    source_table: Optional[str] = Field(
        default=None,
        description="Source table name recorded on differentials (defaults to entity type)",
    )
    target_table: Optional[str] = Field(
        default=None,
        description="Target table name; conflict updates are applied here (defaults to entity type)",
    )
    compare_fields: Optional[list[str]] = Field(
        default=None,
        description="Fields to compare (None compares the fields both records share)",
    )
    ignore_fields: list[str] = Field(
        default_factory=lambda: ["id", "created_at", "updated_at"],
        description="Fields never compared",
    )
    conflict_threshold: float = Field(
        default=0.0,
        description="Numeric differences up to this value are not conflicts",
        ge=0,
    )
    sampling_rate: float = Field(
        default=1.0,
        description="Fraction of legacy ids compared (1.0 = full scan)",
        gt=0,
        le=1,
    )
    sample_seed: Optional[int] = Field(default=None, description="Seed for sampling")
    strip_whitespace: bool = Field(
        default=False,
        description="Ignore leading and trailing whitespace when comparing text values",
    )
    resolution_strategy: ResolutionStrategy = Field(
        default=ResolutionStrategy.SOURCE_WINS,
        description="Strategy recorded on created differentials",
    )
    persist: bool = Field(default=True, description="Persist detected differentials")


class ResolutionOptions(BaseModel):
    """Options for conflict resolution."""

    strategy: ResolutionStrategy = Field(
        default=ResolutionStrategy.SOURCE_WINS,
        description="Default resolution strategy",
    )
    sub_batch_size: int = Field(
        default=50,
        description="Differentials per resolution sub-batch, and legacy ids per statement",
        gt=0,
    )
    enable_backups: bool = Field(
        default=True,
        description="Snapshot affected target rows before mutating them",
    )
    dry_run: bool = Field(default=False, description="Report without writing")
    max_retries: int = Field(
        default=3,
        description="Attempts per differential on transient database errors",
        ge=1,
    )
    retry_delay: float = Field(default=1.0, description="Base retry delay in seconds", ge=0)
    target_id_column: str = Field(
        default="id",
        description="Target column holding the generated identifier",
    )
    protected_columns: list[str] = Field(
        default_factory=lambda: ["id", "created_at", "updated_at"],
        description="Target columns never written by conflict updates",
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(default="INFO", description="Log level")
    format: str = Field(default="json", description="Log format (json, console)")

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        """Validate log format."""
        if v not in ("json", "console"):
            raise ValueError("format must be 'json' or 'console'")
        return v


class MonitoringConfig(BaseModel):
    """Monitoring and metrics configuration."""

    metrics_enabled: bool = Field(default=False, description="Enable Prometheus metrics")
    metrics_port: int = Field(
        default=8000,
        description="Port for Prometheus metrics endpoint",
        gt=0,
        lt=65536,
    )


class MigratorConfig(BaseModel):
    """Root configuration model."""

    version: str = Field(description="Configuration version")
    state_database: DatabaseConfig = Field(
        description="Database holding checkpoints, mappings, differentials and backups",
    )
    source_database: Optional[DatabaseConfig] = Field(
        default=None,
        description="Legacy source database (read by record readers)",
    )
    engine: EngineOptions = Field(default_factory=EngineOptions)
    checkpoints: CheckpointConfig = Field(default_factory=CheckpointConfig)
    mapping: MappingConfig = Field(default_factory=MappingConfig)
    comparison: ComparisonOptions = Field(default_factory=ComparisonOptions)
    resolution: ResolutionOptions = Field(default_factory=ResolutionOptions)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: str) -> str:
        """Validate configuration version."""
        if v != "1.0":
            raise ValueError(f"Unsupported configuration version: {v}")
        return v


def load_config(config_path: Path) -> MigratorConfig:
    """Load and validate configuration from YAML file.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        Validated configuration object

    Raises:
        ConfigurationError: If configuration is invalid
    """
    try:
        with open(config_path, encoding="utf-8") as f:
            raw_config = yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigurationError(f"Configuration file not found: {config_path}") from None
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in configuration file: {e}") from e

    if not raw_config:
        raise ConfigurationError("Configuration file is empty", context={"path": str(config_path)})

    config_data = _substitute_env_in_dict(raw_config)

    try:
        return MigratorConfig.model_validate(config_data)
    except ValidationError as e:
        raise ConfigurationError(
            f"Configuration validation failed: {e}",
            context={"path": str(config_path)},
        ) from e
