"""Engine configuration and logging setup.

All environment access for the engine happens here. Everything downstream
(contexts, executors, the store) receives an EngineConfig instance, so a
test can build one explicitly and never touch os.environ.

Environment variables:
    BLOCKFLOW_LOG_LEVEL            DEBUG|INFO|WARNING|ERROR|CRITICAL (default INFO)
    BLOCKFLOW_STATE_DIR            State directory (default ~/.blockflow/states/<hash-of-cwd>)
    BLOCKFLOW_DEFAULT_TIMEOUT      Per-attempt block timeout in seconds (default 30)
    BLOCKFLOW_CACHE_TTL            Result cache TTL in seconds (default 300)
    BLOCKFLOW_CACHE_MAX_ENTRIES    Result cache size bound (default 1000)
    BLOCKFLOW_MAX_PARALLEL_NODES   Default node concurrency (default 4)
    BLOCKFLOW_REDACT_MIN_LENGTH    Shortest secret value that gets redacted (default 4)
    BLOCKFLOW_ENV_<NAME>           Exposed to templates as {{env.<NAME>}}
"""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import Mapping
from pathlib import Path

from pydantic import BaseModel, Field

ENV_PREFIX = "BLOCKFLOW_ENV_"
VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class EngineConfig(BaseModel):
    """Runtime configuration shared by every component of one engine instance."""

    log_level: str = Field(default="INFO")
    state_dir: Path | None = Field(
        default=None, description="Override for the on-disk state directory"
    )
    default_timeout: float = Field(default=30.0, gt=0, description="Seconds per block attempt")
    cache_ttl: float = Field(default=300.0, ge=0, description="Seconds")
    cache_max_entries: int = Field(default=1000, ge=1)
    max_parallel_nodes: int = Field(default=4, ge=1)
    redact_min_length: int = Field(
        default=4, ge=1, description="Secret values shorter than this are not redacted"
    )
    env: dict[str, str] = Field(
        default_factory=dict,
        description="Values exposed through the {{env.*}} namespace (extends the allow-list)",
    )

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> EngineConfig:
        """Build a config from BLOCKFLOW_* variables.

        Args:
            environ: Mapping to read instead of os.environ (tests)
        """
        source = os.environ if environ is None else environ

        log_level = source.get("BLOCKFLOW_LOG_LEVEL", "INFO").upper()
        if log_level not in VALID_LOG_LEVELS:
            print(
                f"Warning: Invalid BLOCKFLOW_LOG_LEVEL '{log_level}'. "
                f"Valid levels: {', '.join(sorted(VALID_LOG_LEVELS))}. "
                "Using INFO.",
                file=sys.stderr,
            )
            log_level = "INFO"

        values: dict[str, object] = {
            "log_level": log_level,
            "env": {
                key[len(ENV_PREFIX) :]: value
                for key, value in source.items()
                if key.startswith(ENV_PREFIX) and len(key) > len(ENV_PREFIX)
            },
        }
        if source.get("BLOCKFLOW_STATE_DIR"):
            values["state_dir"] = Path(source["BLOCKFLOW_STATE_DIR"]).expanduser()
        for field_name, var_name in (
            ("default_timeout", "BLOCKFLOW_DEFAULT_TIMEOUT"),
            ("cache_ttl", "BLOCKFLOW_CACHE_TTL"),
            ("cache_max_entries", "BLOCKFLOW_CACHE_MAX_ENTRIES"),
            ("max_parallel_nodes", "BLOCKFLOW_MAX_PARALLEL_NODES"),
            ("redact_min_length", "BLOCKFLOW_REDACT_MIN_LENGTH"),
        ):
            if source.get(var_name):
                values[field_name] = source[var_name]

        return cls.model_validate(values)


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging to stderr (stdout carries command output)."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        stream=sys.stderr,
        force=True,
    )


__all__ = ["EngineConfig", "configure_logging"]
