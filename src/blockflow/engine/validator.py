"""
Workflow definition validator.

Checks run on the raw wire-format document, in order:
    1. structure   required top-level fields (aborts on failure)
    2. nodes       id uniqueness, type, config, schemas, timeout, retryConfig
    3. edges       edge id uniqueness, source/target existence, self-loops,
                   port types, adapter shape
    4. dag         cycle detection (single iterative DFS), reachability
    5. schemas     workflow-level schema documents and $ref resolution
    6. globals     timeout, retryPolicy, errorHandling, maxParallelNodes
    7. practices   warnings only (input/output nodes, unknown types, globals)

Validation never mutates the definition and is safe to call repeatedly.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from .dag import DAGResolver
from .edge_adapter import validate_adapter
from .schema import IssueType, ValidationIssue, ValidationResult, WorkflowDefinition
from .validation import check_schema_definition

if TYPE_CHECKING:
    from .executor_base import BlockRegistry

logger = logging.getLogger(__name__)

ERROR_HANDLING_MODES = ("continue", "stop")


def is_input_type(block_type: Any) -> bool:
    return isinstance(block_type, str) and (block_type == "input" or block_type.startswith("input."))


def is_output_type(block_type: Any) -> bool:
    return isinstance(block_type, str) and (
        block_type == "output" or block_type.startswith("output.")
    )


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _find_refs(schema: Any) -> list[str]:
    refs: list[str] = []
    if isinstance(schema, dict):
        if isinstance(schema.get("$ref"), str):
            refs.append(schema["$ref"])
        for value in schema.values():
            refs.extend(_find_refs(value))
    elif isinstance(schema, list):
        for item in schema:
            refs.extend(_find_refs(item))
    return refs


class _Collector:
    def __init__(self) -> None:
        self.errors: list[ValidationIssue] = []
        self.warnings: list[ValidationIssue] = []

    def error(
        self,
        issue_type: IssueType,
        message: str,
        path: str | None = None,
        node_id: str | None = None,
    ) -> None:
        self.errors.append(
            ValidationIssue(type=issue_type, message=message, path=path, node_id=node_id)
        )

    def warning(
        self,
        issue_type: IssueType,
        message: str,
        suggestion: str | None = None,
        node_id: str | None = None,
        path: str | None = None,
    ) -> None:
        self.warnings.append(
            ValidationIssue(
                type=issue_type,
                message=message,
                suggestion=suggestion,
                node_id=node_id,
                path=path,
            )
        )

    def result(self) -> ValidationResult:
        return ValidationResult(
            valid=not self.errors, errors=list(self.errors), warnings=list(self.warnings)
        )


class WorkflowValidator:
    """
    Validates workflow definitions.

    Args:
        registry: Optional block registry; when given, node types it does not
            know produce a warning
    """

    def __init__(self, registry: BlockRegistry | None = None):
        self.registry = registry

    def validate(self, workflow: WorkflowDefinition | dict[str, Any]) -> ValidationResult:
        """Validate a definition (model or raw dict). Never raises on bad input."""
        data = workflow.to_dict() if isinstance(workflow, WorkflowDefinition) else workflow
        issues = _Collector()

        if not isinstance(data, dict):
            issues.error("schema", "Workflow definition must be an object")
            return issues.result()

        self._validate_structure(data, issues)
        if issues.errors:
            return issues.result()

        nodes: list[Any] = data["nodes"]
        edges: list[Any] = data["edges"]
        schemas = data.get("schemas") if isinstance(data.get("schemas"), dict) else None

        node_ids = self._validate_nodes(nodes, schemas, issues)
        self._validate_edges(edges, node_ids, issues)
        waves = self._validate_dag(nodes, edges, node_ids, issues)
        self._validate_workflow_schemas(schemas, issues)
        self._validate_globals(data.get("globals"), issues)
        self._check_practices(data, nodes, issues)

        result = issues.result()
        if result.valid:
            result.execution_waves = waves
        else:
            logger.debug(
                f"Workflow '{data.get('workflowId')}' failed validation with "
                f"{len(result.errors)} error(s)"
            )
        return result

    # ------------------------------------------------------------------
    # Individual passes
    # ------------------------------------------------------------------

    def _validate_structure(self, data: dict[str, Any], issues: _Collector) -> None:
        workflow_id = data.get("workflowId")
        if not isinstance(workflow_id, str) or not workflow_id:
            issues.error("schema", "Missing required field: workflowId", path="workflowId")

        if not isinstance(data.get("nodes"), list):
            issues.error("schema", "Missing or invalid field: nodes (must be array)", path="nodes")

        if not isinstance(data.get("edges"), list):
            issues.error("schema", "Missing or invalid field: edges (must be array)", path="edges")

        version = data.get("version")
        if version is not None and not (_is_number(version) or isinstance(version, str)):
            issues.error(
                "schema", "Invalid field: version (must be number or string)", path="version"
            )

        if "metadata" in data and not isinstance(data["metadata"], dict):
            issues.error("schema", "Invalid field: metadata (must be object)", path="metadata")

    def _validate_nodes(
        self, nodes: list[Any], schemas: dict[str, Any] | None, issues: _Collector
    ) -> set[str]:
        node_ids: set[str] = set()

        for index, node in enumerate(nodes):
            node_path = f"nodes[{index}]"
            if not isinstance(node, dict):
                issues.error("schema", "Node must be an object", path=node_path)
                continue

            node_id = node.get("id")
            if not isinstance(node_id, str) or not node_id:
                issues.error("schema", "Invalid or missing node ID", path=f"{node_path}.id")
                node_id = None
            elif node_id in node_ids:
                issues.error(
                    "duplicate", f"Duplicate node ID: {node_id}", path=node_path, node_id=node_id
                )
            else:
                node_ids.add(node_id)

            block_type = node.get("type")
            if not isinstance(block_type, str) or not block_type:
                issues.error(
                    "schema", "Missing node type", path=f"{node_path}.type", node_id=node_id
                )
            elif self.registry is not None and not self.registry.has(block_type):
                issues.warning(
                    "best_practice",
                    f"Unknown block type: {block_type}",
                    suggestion="Register the block type in the BlockRegistry before executing",
                    node_id=node_id,
                )

            name = node.get("name")
            if name is not None and not isinstance(name, str):
                issues.error(
                    "schema", "Invalid node name (must be string)", path=f"{node_path}.name",
                    node_id=node_id,
                )
            elif not name:
                issues.warning(
                    "best_practice",
                    "Node has no name",
                    suggestion="Give every node a human-readable name",
                    node_id=node_id,
                )

            config = node.get("config")
            if config is not None and not isinstance(config, dict):
                issues.error(
                    "config", "Invalid node config (must be object)", path=f"{node_path}.config",
                    node_id=node_id,
                )

            for key, label in (("inputSchema", "input"), ("outputSchema", "output")):
                node_schema = node.get(key)
                if node_schema is None:
                    continue
                for problem in check_schema_definition(node_schema, schemas, key):
                    issues.error(
                        "schema",
                        f"Invalid {label} schema: {problem}",
                        path=f"{node_path}.{key}",
                        node_id=node_id,
                    )

            if "timeout" in node and node["timeout"] is not None:
                timeout = node["timeout"]
                if not _is_number(timeout) or timeout <= 0:
                    issues.error(
                        "config",
                        "Invalid timeout (must be positive number)",
                        path=f"{node_path}.timeout",
                        node_id=node_id,
                    )

            retry_config = node.get("retryConfig")
            if retry_config is not None:
                self._validate_retry_policy(
                    retry_config, f"{node_path}.retryConfig", "retryConfig", issues, node_id
                )

        return node_ids

    def _validate_retry_policy(
        self,
        policy: Any,
        path: str,
        label: str,
        issues: _Collector,
        node_id: str | None = None,
    ) -> None:
        if not isinstance(policy, dict):
            issues.error("config", f"Invalid {label} (must be object)", path=path, node_id=node_id)
            return
        max_retries = policy.get("maxRetries", 0)
        if not isinstance(max_retries, int) or isinstance(max_retries, bool) or max_retries < 0:
            issues.error(
                "config",
                f"Invalid {label}.maxRetries (must be integer >= 0)",
                path=f"{path}.maxRetries",
                node_id=node_id,
            )
        multiplier = policy.get("backoffMultiplier", 2)
        if not _is_number(multiplier) or multiplier < 1:
            issues.error(
                "config",
                f"Invalid {label}.backoffMultiplier (must be >= 1)",
                path=f"{path}.backoffMultiplier",
                node_id=node_id,
            )
        initial_delay = policy.get("initialDelay", 0)
        if not _is_number(initial_delay) or initial_delay < 0:
            issues.error(
                "config",
                f"Invalid {label}.initialDelay (must be >= 0)",
                path=f"{path}.initialDelay",
                node_id=node_id,
            )

    def _validate_edges(self, edges: list[Any], node_ids: set[str], issues: _Collector) -> None:
        edge_ids: set[str] = set()

        for index, edge in enumerate(edges):
            edge_path = f"edges[{index}]"
            if not isinstance(edge, dict):
                issues.error("schema", "Edge must be an object", path=edge_path)
                continue

            edge_id = edge.get("id")
            if edge_id:
                if edge_id in edge_ids:
                    issues.error("duplicate", f"Duplicate edge ID: {edge_id}", path=edge_path)
                edge_ids.add(edge_id)

            for end, label in (("source", "Source"), ("target", "Target")):
                ref = edge.get(end)
                if not ref:
                    issues.error("connection", f"Missing edge {end}", path=f"{edge_path}.{end}")
                elif ref not in node_ids:
                    issues.error(
                        "connection", f"{label} node not found: {ref}", path=f"{edge_path}.{end}"
                    )

            source = edge.get("source")
            if source and source == edge.get("target"):
                issues.error(
                    "dag", "Self-loops are not allowed", path=edge_path, node_id=source
                )

            for port in ("sourcePort", "targetPort"):
                if edge.get(port) is not None and not isinstance(edge[port], str):
                    issues.error(
                        "connection", f"Invalid {port} (must be string)", path=f"{edge_path}.{port}"
                    )

            adapter = edge.get("adapter")
            if adapter is not None:
                adapter_check = validate_adapter(adapter)
                for problem in adapter_check.errors:
                    issues.error(
                        "connection", f"Invalid adapter: {problem}", path=f"{edge_path}.adapter"
                    )

            condition = edge.get("condition")
            if condition is not None and not isinstance(condition, dict):
                issues.error(
                    "connection",
                    "Invalid condition (must be object)",
                    path=f"{edge_path}.condition",
                )

    def _validate_dag(
        self,
        nodes: list[Any],
        edges: list[Any],
        node_ids: set[str],
        issues: _Collector,
    ) -> list[list[str]]:
        ordered_ids = [
            node["id"]
            for node in nodes
            if isinstance(node, dict) and isinstance(node.get("id"), str) and node["id"] in node_ids
        ]
        ordered_ids = list(dict.fromkeys(ordered_ids))
        pairs = [
            (edge["source"], edge["target"])
            for edge in edges
            if isinstance(edge, dict)
            and edge.get("source") in node_ids
            and edge.get("target") in node_ids
            # self-loops are already reported
            and edge.get("source") != edge.get("target")
        ]
        resolver = DAGResolver(ordered_ids, pairs)

        cycle = resolver.find_cycle()
        if cycle:
            issues.error(
                "dag", f"Cycle detected: {' -> '.join(cycle)}", path="edges", node_id=cycle[0]
            )
            return []

        types = {
            node["id"]: node.get("type")
            for node in nodes
            if isinstance(node, dict) and node.get("id") in node_ids
        }
        starts = [node_id for node_id in ordered_ids if is_input_type(types.get(node_id))]
        if not starts:
            starts = resolver.roots()
        reachable = resolver.reachable_from(starts)
        for node_id in ordered_ids:
            if node_id not in reachable:
                issues.warning(
                    "dag",
                    "Node is unreachable from any input node",
                    suggestion="Connect the node or remove it",
                    node_id=node_id,
                    path=f"nodes.{node_id}",
                )

        return resolver.get_execution_waves().unwrap_or([])

    def _validate_workflow_schemas(
        self, schemas: dict[str, Any] | None, issues: _Collector
    ) -> None:
        if not schemas:
            return
        for schema_id, schema in schemas.items():
            problems = check_schema_definition(schema, schemas, schema_id)
            if problems:
                issues.error(
                    "schema",
                    f"Invalid schema definition: {schema_id} ({'; '.join(problems)})",
                    path=f"schemas.{schema_id}",
                )

    def _validate_globals(self, globals_: Any, issues: _Collector) -> None:
        if globals_ is None:
            return
        if not isinstance(globals_, dict):
            issues.error("config", "Invalid globals (must be object)", path="globals")
            return

        timeout = globals_.get("timeout")
        if timeout is not None and (not _is_number(timeout) or timeout <= 0):
            issues.error(
                "config", "Invalid globals.timeout (must be positive number)",
                path="globals.timeout",
            )

        retry_policy = globals_.get("retryPolicy")
        if retry_policy is not None:
            self._validate_retry_policy(
                retry_policy, "globals.retryPolicy", "globals.retryPolicy", issues
            )

        error_handling = globals_.get("errorHandling")
        if error_handling is not None and error_handling not in ERROR_HANDLING_MODES:
            issues.error(
                "config",
                f"Invalid globals.errorHandling '{error_handling}' "
                f"(expected one of: {', '.join(ERROR_HANDLING_MODES)})",
                path="globals.errorHandling",
            )

        max_parallel = globals_.get("maxParallelNodes")
        if max_parallel is not None and (
            not isinstance(max_parallel, int) or isinstance(max_parallel, bool) or max_parallel < 1
        ):
            issues.error(
                "config",
                "Invalid globals.maxParallelNodes (must be integer >= 1)",
                path="globals.maxParallelNodes",
            )

    def _check_practices(
        self, data: dict[str, Any], nodes: list[Any], issues: _Collector
    ) -> None:
        if not data.get("name"):
            issues.warning(
                "best_practice", "Workflow has no name", suggestion="Set a workflow name"
            )

        types = [node.get("type") for node in nodes if isinstance(node, dict)]
        if not any(is_input_type(block_type) for block_type in types):
            issues.warning(
                "best_practice",
                "No input blocks found. Workflow may not have data source.",
                suggestion="Add an input block to define the data source",
            )
        if not any(is_output_type(block_type) for block_type in types):
            issues.warning(
                "best_practice",
                "No output blocks found. Workflow may not produce results.",
                suggestion="Add an output block to store or return results",
            )

        globals_ = data.get("globals") if isinstance(data.get("globals"), dict) else {}
        if not globals_.get("timeout"):
            issues.warning(
                "best_practice",
                "No global timeout configured. Workflows may run indefinitely.",
                suggestion="Set a global timeout in workflow.globals.timeout",
            )
        if not globals_.get("retryPolicy"):
            issues.warning(
                "best_practice",
                "No global retry policy configured. Transient failures may fail the workflow.",
                suggestion="Set a retry policy in workflow.globals.retryPolicy",
            )


def validate_workflow(
    workflow: WorkflowDefinition | dict[str, Any], registry: BlockRegistry | None = None
) -> ValidationResult:
    """Validate ``workflow`` with a one-off WorkflowValidator."""
    return WorkflowValidator(registry).validate(workflow)


__all__ = ["WorkflowValidator", "is_input_type", "is_output_type", "validate_workflow"]
