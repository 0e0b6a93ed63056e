"""
Workflow file loader.

Reads workflow definitions from JSON or YAML files (``.json``, ``.yaml``,
``.yml``). YAML is parsed with ``yaml.safe_load``; JSON documents go through
the same parser since JSON is valid YAML, except ``.json`` files, which use
the json module so syntax errors point at the right line and column.

Loading does not validate: ``load_workflow_document`` returns the raw dict
so WorkflowValidator can report every problem at once, and
``load_workflow_from_file`` additionally parses it into a WorkflowDefinition.
"""

import json
import logging
from pathlib import Path
from typing import Any

import yaml

from .load_result import LoadResult
from .schema import WorkflowDefinition

logger = logging.getLogger(__name__)

WORKFLOW_SUFFIXES = (".json", ".yaml", ".yml")


def parse_workflow_text(content: str, source: str = "<string>") -> LoadResult[dict[str, Any]]:
    """
    Parse a JSON or YAML document into a dict.

    Returns:
        LoadResult.success(dict) or LoadResult.failure(message)
    """
    try:
        if source.endswith(".json"):
            data = json.loads(content)
        else:
            data = yaml.safe_load(content)
    except json.JSONDecodeError as e:
        return LoadResult.failure(f"Invalid JSON in {source}: {e}")
    except yaml.YAMLError as e:
        return LoadResult.failure(f"Invalid YAML syntax in {source}: {e}")

    if not isinstance(data, dict):
        return LoadResult.failure(
            f"Workflow {source} must be an object, got {type(data).__name__}"
        )
    return LoadResult.success(data)


def load_workflow_document(file_path: str | Path) -> LoadResult[dict[str, Any]]:
    """
    Read a workflow file into its raw dict form.

    Example:
        result = load_workflow_document("workflows/enrich.yaml")
        if result.is_success:
            validation = WorkflowValidator(registry).validate(result.value)
    """
    path = Path(file_path)

    if not path.exists():
        return LoadResult.failure(f"Workflow file not found: {file_path}")

    if not path.is_file():
        return LoadResult.failure(f"Path is not a file: {file_path}")

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        return LoadResult.failure(f"Failed to read file '{file_path}': {e}")

    return parse_workflow_text(content, source=str(path))


def load_workflow_from_file(file_path: str | Path) -> LoadResult[WorkflowDefinition]:
    """Read and parse a workflow file into a WorkflowDefinition."""
    document = load_workflow_document(file_path)
    if not document.is_success:
        return LoadResult.failure(document.error or f"Failed to load {file_path}")
    return WorkflowDefinition.from_dict(document.unwrap())


def discover_workflows(directory: str | Path) -> LoadResult[list[WorkflowDefinition]]:
    """
    Load every workflow file in a directory (non-recursive).

    Invalid files are skipped with warnings and do not fail the operation.
    """
    dir_path = Path(directory)

    if not dir_path.exists():
        return LoadResult.failure(f"Directory not found: {directory}")

    if not dir_path.is_dir():
        return LoadResult.failure(f"Path is not a directory: {directory}")

    workflows: list[WorkflowDefinition] = []
    errors: list[str] = []

    for workflow_file in sorted(dir_path.iterdir()):
        if workflow_file.suffix not in WORKFLOW_SUFFIXES or not workflow_file.is_file():
            continue
        result = load_workflow_from_file(workflow_file)
        if result.is_success:
            workflows.append(result.unwrap())
        else:
            errors.append(f"{workflow_file.name}: {result.error}")

    if errors:
        logger.warning(f"{len(errors)} workflow(s) failed to load:")
        for error in errors:
            logger.warning(f"  - {error}")

    return LoadResult.success(workflows, metadata={"errors": errors})


__all__ = [
    "WORKFLOW_SUFFIXES",
    "discover_workflows",
    "load_workflow_document",
    "load_workflow_from_file",
    "parse_workflow_text",
]
