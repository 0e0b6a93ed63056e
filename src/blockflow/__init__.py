"""blockflow - workflow DAG orchestration engine.

Runs workflows of typed blocks connected by data-flow edges, with per-node
retries, timeouts, caching and progress reporting. See ``blockflow.engine``
for the engine API and ``blockflow.cli`` for the command line.
"""

from .config import EngineConfig, configure_logging
from .engine import (
    ContextFactory,
    WorkflowDefinition,
    WorkflowOrchestrator,
    WorkflowValidator,
    create_default_registry,
)

__version__ = "0.1.0"

__all__ = [
    "ContextFactory",
    "EngineConfig",
    "WorkflowDefinition",
    "WorkflowOrchestrator",
    "WorkflowValidator",
    "__version__",
    "configure_logging",
    "create_default_registry",
]
