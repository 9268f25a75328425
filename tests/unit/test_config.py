"""Unit tests for configuration module."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from migrator.config import (
    CheckpointConfig,
    ComparisonOptions,
    DatabaseConfig,
    EngineOptions,
    MigratorConfig,
    ResolutionOptions,
    load_config,
)
from migrator.exceptions import ConfigurationError
from migrator.models import ResolutionStrategy

VALID_CONFIG = """
version: "1.0"
state_database:
  name: migration_state
  host: ${MIGRATOR_DB_HOST:-localhost}
  user: migrator
  password_env: MIGRATOR_DB_PASSWORD
engine:
  batch_size: 250
  parallelism: 4
  continue_on_error: false
checkpoints:
  storage_type: local
  local_directory: /tmp/checkpoints
resolution:
  strategy: target_wins
logging:
  level: DEBUG
  format: console
"""


def write_config(tmp_path: Path, content: str) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(content, encoding="utf-8")
    return path


def test_engine_options_defaults() -> None:
    """Test default engine options."""
    options = EngineOptions()

    assert options.batch_size == 500
    assert options.max_retries == 3
    assert options.retry_delay == 1.0
    assert options.max_retry_delay == 60.0
    assert options.parallelism == 1
    assert options.progress_reporting_interval == 10
    assert options.continue_on_error is True
    assert options.enable_checkpointing is True
    assert options.checkpoint_interval == 1
    assert options.batch_timeout is None
    assert options.stale_after_seconds == 3600.0
    assert options.max_reported_errors == 100


def test_engine_options_validation() -> None:
    """Test engine option bounds."""
    with pytest.raises(ValidationError):
        EngineOptions(parallelism=9)
    with pytest.raises(ValidationError):
        EngineOptions(max_retries=0)
    with pytest.raises(ValidationError):
        EngineOptions(batch_size=0)
    with pytest.raises(ValidationError, match="max_retry_delay"):
        EngineOptions(retry_delay=10, max_retry_delay=5)


def test_comparison_and_resolution_defaults() -> None:
    """Test comparison and resolution defaults."""
    comparison = ComparisonOptions()
    assert comparison.sampling_rate == 1.0
    assert comparison.conflict_threshold == 0.0
    assert comparison.ignore_fields == ["id", "created_at", "updated_at"]

    resolution = ResolutionOptions()
    assert resolution.strategy == ResolutionStrategy.SOURCE_WINS
    assert resolution.sub_batch_size == 50
    assert resolution.enable_backups is True

    with pytest.raises(ValidationError):
        ComparisonOptions(sampling_rate=0)
    with pytest.raises(ValidationError):
        ComparisonOptions(sampling_rate=1.5)


def test_database_config_password(monkeypatch: pytest.MonkeyPatch) -> None:
    """Test password sources."""
    monkeypatch.setenv("MIGRATOR_TEST_PASSWORD", "secret")
    config = DatabaseConfig(name="db", user="u", password_env="MIGRATOR_TEST_PASSWORD")
    assert config.get_password() == "secret"

    assert DatabaseConfig(name="db", user="u").get_password() is None

    monkeypatch.delenv("MIGRATOR_TEST_PASSWORD")
    with pytest.raises(ConfigurationError, match="MIGRATOR_TEST_PASSWORD not set"):
        config.get_password()


def test_database_config_rejects_two_password_sources() -> None:
    """Test that password and password_env are exclusive."""
    with pytest.raises(ValidationError, match="Cannot specify both"):
        DatabaseConfig(name="db", user="u", password="p", password_env="P")


def test_checkpoint_config_storage_type() -> None:
    """Test checkpoint storage type validation."""
    assert CheckpointConfig(storage_type="local").storage_type == "local"
    with pytest.raises(ValidationError, match="storage_type"):
        CheckpointConfig(storage_type="s3")


def test_load_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Test loading a valid configuration file."""
    monkeypatch.setenv("MIGRATOR_DB_HOST", "db.internal")

    config = load_config(write_config(tmp_path, VALID_CONFIG))

    assert isinstance(config, MigratorConfig)
    assert config.state_database.host == "db.internal"
    assert config.state_database.port == 5432
    assert config.source_database is None
    assert config.engine.batch_size == 250
    assert config.engine.parallelism == 4
    assert config.engine.continue_on_error is False
    assert config.engine.max_retries == 3
    assert config.checkpoints.storage_type == "local"
    assert config.resolution.strategy == ResolutionStrategy.TARGET_WINS
    assert config.logging.format == "console"
    assert config.monitoring.metrics_enabled is False


def test_load_config_env_default(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Test ${VAR:-default} substitution."""
    monkeypatch.delenv("MIGRATOR_DB_HOST", raising=False)

    config = load_config(write_config(tmp_path, VALID_CONFIG))

    assert config.state_database.host == "localhost"


def test_load_config_missing_env_var(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Test substitution of an unset variable without default."""
    monkeypatch.delenv("MIGRATOR_UNSET_VAR", raising=False)
    path = write_config(
        tmp_path,
        'version: "1.0"\nstate_database:\n  name: ${MIGRATOR_UNSET_VAR}\n  user: u\n',
    )

    with pytest.raises(ConfigurationError, match="MIGRATOR_UNSET_VAR not set"):
        load_config(path)


def test_load_config_errors(tmp_path: Path) -> None:
    """Test invalid configuration files."""
    with pytest.raises(ConfigurationError, match="not found"):
        load_config(tmp_path / "missing.yaml")

    with pytest.raises(ConfigurationError, match="Invalid YAML"):
        load_config(write_config(tmp_path, "version: [unclosed"))

    with pytest.raises(ConfigurationError, match="empty"):
        load_config(write_config(tmp_path, ""))

    with pytest.raises(ConfigurationError, match="validation failed"):
        load_config(write_config(tmp_path, 'version: "2.0"\n'))
