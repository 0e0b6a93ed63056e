"""State directory configuration and management.

Each working directory gets its own state directory, named after the first
16 hex characters of the SHA256 of its path, unless EngineConfig.state_dir
overrides it.

Architecture:
    ~/.blockflow/
      states/
        <hash-of-cwd>/
          state.db          # SQLite database (workflows, executions, timeline)
          workflows/        # Workflow definition JSON files
            enrich-leads.json
"""

from __future__ import annotations

import hashlib
from pathlib import Path

from ..config import EngineConfig


class StateConfig:
    """Resolves on-disk locations for one engine configuration.

    Example:
        state = StateConfig(EngineConfig.from_env())
        state.db_path
        # Returns: ~/.blockflow/states/a1b2c3d4e5f6a7b8/state.db
    """

    def __init__(self, config: EngineConfig | None = None, cwd: Path | None = None):
        self.config = config or EngineConfig()
        self.cwd = cwd or Path.cwd()

    @staticmethod
    def default_state_dir(cwd: Path) -> Path:
        """``~/.blockflow/states/<sha256(cwd)[:16]>``."""
        cwd_hash = hashlib.sha256(str(cwd).encode()).hexdigest()[:16]
        return Path.home() / ".blockflow" / "states" / cwd_hash

    @property
    def state_dir(self) -> Path:
        """State directory, created on first access."""
        state_dir = self.config.state_dir or self.default_state_dir(self.cwd)
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir

    @property
    def workflows_dir(self) -> Path:
        workflows_dir = self.state_dir / "workflows"
        workflows_dir.mkdir(parents=True, exist_ok=True)
        return workflows_dir

    @property
    def db_path(self) -> Path:
        return self.state_dir / "state.db"


__all__ = ["StateConfig"]
