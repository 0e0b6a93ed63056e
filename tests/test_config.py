"""Tests for EngineConfig, logging setup and state directory resolution."""

import logging
from pathlib import Path

import pytest

from blockflow.config import EngineConfig, configure_logging
from blockflow.engine.state_config import StateConfig

# =============================================================================
# EngineConfig.from_env
# =============================================================================


def test_defaults_without_environment() -> None:
    """Test that an empty environment yields the documented defaults."""
    config = EngineConfig.from_env({})

    assert config.log_level == "INFO"
    assert config.state_dir is None
    assert config.default_timeout == 30
    assert config.cache_ttl == 300
    assert config.cache_max_entries == 1000
    assert config.max_parallel_nodes == 4
    assert config.redact_min_length == 4
    assert config.env == {}


def test_reads_blockflow_variables(tmp_path: Path) -> None:
    """Test that BLOCKFLOW_* variables are parsed into typed fields."""
    config = EngineConfig.from_env(
        {
            "BLOCKFLOW_LOG_LEVEL": "debug",
            "BLOCKFLOW_STATE_DIR": str(tmp_path),
            "BLOCKFLOW_DEFAULT_TIMEOUT": "5",
            "BLOCKFLOW_CACHE_TTL": "60",
            "BLOCKFLOW_CACHE_MAX_ENTRIES": "10",
            "BLOCKFLOW_MAX_PARALLEL_NODES": "8",
            "BLOCKFLOW_REDACT_MIN_LENGTH": "2",
        }
    )

    assert config.log_level == "DEBUG"
    assert config.state_dir == tmp_path
    assert config.default_timeout == 5.0
    assert config.cache_ttl == 60.0
    assert config.cache_max_entries == 10
    assert config.max_parallel_nodes == 8
    assert config.redact_min_length == 2


def test_env_prefix_extends_template_environment() -> None:
    """Test that BLOCKFLOW_ENV_<NAME> variables become env namespace entries."""
    config = EngineConfig.from_env(
        {"BLOCKFLOW_ENV_REGION": "us-east-1", "BLOCKFLOW_ENV_": "ignored", "HOME": "/root"}
    )

    assert config.env == {"REGION": "us-east-1"}


def test_invalid_log_level_falls_back_to_info(capsys: pytest.CaptureFixture[str]) -> None:
    """Test that an unknown log level warns on stderr and uses INFO."""
    config = EngineConfig.from_env({"BLOCKFLOW_LOG_LEVEL": "chatty"})

    assert config.log_level == "INFO"
    assert "Invalid BLOCKFLOW_LOG_LEVEL" in capsys.readouterr().err


def test_non_positive_timeout_is_rejected() -> None:
    """Test that pydantic validation guards numeric settings."""
    with pytest.raises(ValueError):
        EngineConfig.from_env({"BLOCKFLOW_DEFAULT_TIMEOUT": "0"})


def test_configure_logging_sets_root_level() -> None:
    """Test that configure_logging applies the requested level."""
    configure_logging("WARNING")
    assert logging.getLogger().level == logging.WARNING
    configure_logging("INFO")
    assert logging.getLogger().level == logging.INFO


# =============================================================================
# StateConfig
# =============================================================================


def test_state_dir_override_is_created(tmp_path: Path) -> None:
    """Test that an explicit state dir is used and created on access."""
    state = StateConfig(EngineConfig(state_dir=tmp_path / "custom"))

    assert state.state_dir == tmp_path / "custom"
    assert state.state_dir.is_dir()
    assert state.db_path == tmp_path / "custom" / "state.db"
    assert state.workflows_dir.is_dir()


def test_default_state_dir_is_stable_per_directory(tmp_path: Path) -> None:
    """Test that the default state dir hashes the working directory."""
    first = StateConfig.default_state_dir(tmp_path / "a")
    again = StateConfig.default_state_dir(tmp_path / "a")
    other = StateConfig.default_state_dir(tmp_path / "b")

    assert first == again
    assert first != other
    assert first.parent == Path.home() / ".blockflow" / "states"
    assert len(first.name) == 16
