"""Shared formatting utilities for CLI output.

Two output styles:
- Markdown: human-readable with headers and lists (default)
- JSON: machine-readable structured data (``--json``)
"""

import json
from typing import Any

from .engine.block_status import WorkflowStatus
from .engine.executor_base import BlockMetadata
from .engine.progress import ProgressEvent
from .engine.schema import ValidationResult, WorkflowExecutionResult
from .engine.workflow_store import Page

STATUS_ICONS = {
    "completed": "✓",
    "partial": "◐",
    "failed": "✗",
    "cancelled": "⊘",
    "skipped": "○",
    "running": "…",
    "pending": "·",
}


def to_json(data: Any) -> str:
    """Serialize data (pydantic models included) as indented JSON."""
    if hasattr(data, "model_dump"):
        data = data.model_dump(by_alias=True, mode="json")
    return json.dumps(data, indent=2, default=str, ensure_ascii=False)


# =============================================================================
# Workflows
# =============================================================================


def format_workflow_list_markdown(page: Page, tags: list[str] | None = None) -> str:
    """Format a page of workflow records as markdown."""
    if not page.data:
        tag_msg = f" with tags: {', '.join(tags)}" if tags else ""
        return f"No workflows found{tag_msg}"

    header = f"## Workflows ({page.count})"
    if tags:
        header += f"\n**Filtered by tags**: {', '.join(tags)}"

    lines = [header, ""]
    for record in page.data:
        state = "" if record.get("is_active", True) else " (inactive)"
        line = f"- **{record['id']}** v{record.get('version', '1')}: {record.get('name', '')}{state}"
        if record.get("category"):
            line += f" [{record['category']}]"
        lines.append(line)

    if page.has_more:
        lines.append("")
        lines.append(f"_Showing {len(page.data)} of {page.count} (offset {page.offset})_")
    return "\n".join(lines)


def format_workflow_markdown(record: dict[str, Any]) -> str:
    """Format one stored workflow (metadata + definition) as markdown."""
    definition = record.get("definition") or {}
    lines = [f"# Workflow: {record.get('name') or record['id']}", ""]
    if definition.get("description"):
        lines.extend([definition["description"], ""])

    lines.extend(
        [
            "## Configuration",
            f"- **ID**: {record['id']}",
            f"- **Version**: {record.get('version', '1')}",
            f"- **Active**: {'yes' if record.get('is_active', True) else 'no'}",
        ]
    )
    if record.get("category"):
        lines.append(f"- **Category**: {record['category']}")
    if record.get("tags"):
        lines.append(f"- **Tags**: {', '.join(record['tags'])}")
    lines.append(
        f"- **Executions**: {record.get('total_executions', 0)} "
        f"({record.get('successful_executions', 0)} ok, "
        f"{record.get('failed_executions', 0)} failed)"
    )

    nodes = definition.get("nodes") or []
    if nodes:
        lines.extend(["", f"## Nodes ({len(nodes)})"])
        for node in nodes:
            lines.append(f"- **{node.get('id')}** ({node.get('type')}) {node.get('name', '')}".rstrip())

    edges = definition.get("edges") or []
    if edges:
        lines.extend(["", f"## Edges ({len(edges)})"])
        for edge in edges:
            port = f" [{edge['sourcePort']}]" if edge.get("sourcePort") else ""
            adapter = f" via {edge['adapter']['type']}" if edge.get("adapter") else ""
            lines.append(f"- {edge.get('source')}{port} → {edge.get('target')}{adapter}")

    return "\n".join(lines)


def format_validation_markdown(result: ValidationResult, source: str = "") -> str:
    """Format a validation result as markdown."""
    title = f"Validation: {source}" if source else "Validation"
    verdict = "✓ valid" if result.valid else "✗ invalid"
    lines = [f"## {title} ({verdict})"]

    if result.errors:
        lines.extend(["", f"### Errors ({len(result.errors)})"])
        for issue in result.errors:
            where = f" [{issue.node_id}]" if issue.node_id else ""
            lines.append(f"- ({issue.type}){where} {issue.message}")
            if issue.suggestion:
                lines.append(f"  - suggestion: {issue.suggestion}")

    if result.warnings:
        lines.extend(["", f"### Warnings ({len(result.warnings)})"])
        for issue in result.warnings:
            where = f" [{issue.node_id}]" if issue.node_id else ""
            lines.append(f"- ({issue.type}){where} {issue.message}")

    if result.execution_waves:
        lines.extend(["", "### Execution order"])
        for index, wave in enumerate(result.execution_waves, start=1):
            lines.append(f"{index}. {', '.join(wave)}")

    return "\n".join(lines)


# =============================================================================
# Executions
# =============================================================================


def format_execution_result_markdown(result: WorkflowExecutionResult, verbose: bool = False) -> str:
    """Format a workflow run's result as markdown."""
    status = result.status.value
    meta = result.metadata
    lines = [
        f"## Execution {result.execution_id}",
        "",
        f"**Status**: {STATUS_ICONS.get(status, '')} {status}",
        f"**Workflow**: {result.workflow_id}",
        f"**Duration**: {meta.execution_time:.1f}ms",
        f"**Nodes**: {meta.completed_nodes}/{meta.total_nodes} completed, "
        f"{meta.failed_nodes} failed, {meta.skipped_nodes} skipped",
    ]

    primary_error = result.first_error()
    if primary_error and result.status != WorkflowStatus.COMPLETED:
        lines.append(f"**Error**: {primary_error}")

    if result.validation is not None and result.validation.errors:
        lines.extend(["", format_validation_markdown(result.validation)])

    if meta.warnings:
        lines.extend(["", "### Warnings"])
        lines.extend(f"- {warning}" for warning in meta.warnings)

    if result.node_results:
        lines.extend(["", "### Nodes"])
        for node_id, node_result in result.node_results.items():
            node_status = node_result.status.value
            line = (
                f"- {STATUS_ICONS.get(node_status, '')} **{node_id}** {node_status} "
                f"({node_result.execution_time:.1f}ms"
            )
            if node_result.retry_count:
                line += f", {node_result.retry_count} retries"
            if node_result.cache_hit:
                line += ", cached"
            line += ")"
            if node_result.error:
                line += f": {node_result.error}"
            lines.append(line)

    if result.output is not None:
        lines.extend(["", "### Output", "```json", to_json(result.output), "```"])

    if verbose and result.timeline:
        lines.extend(["", "### Timeline"])
        for event in result.timeline:
            percentage = event.get("percentage")
            prefix = f"{percentage:5.1f}% " if isinstance(percentage, (int, float)) else ""
            lines.append(f"- {prefix}{event.get('event')} {json.dumps(event.get('details', {}))}")

    return "\n".join(lines)


def format_execution_list_markdown(page: Page) -> str:
    if not page.data:
        return "No executions found"

    lines = [f"## Executions ({page.count})", ""]
    for record in page.data:
        status = record.get("status", "")
        duration = record.get("execution_time")
        took = f" in {duration:.0f}ms" if isinstance(duration, (int, float)) else ""
        lines.append(
            f"- {STATUS_ICONS.get(status, '')} **{record['id']}** {record['workflow_id']} "
            f"[{record.get('mode')}] {status}{took} ({record.get('started_at')})"
        )
    if page.has_more:
        lines.append("")
        lines.append(f"_Showing {len(page.data)} of {page.count} (offset {page.offset})_")
    return "\n".join(lines)


def format_progress_line(event: ProgressEvent) -> str:
    """One line for ``exec --watch``."""
    subject = f" {event.node_id}" if event.node_id else ""
    status = event.details.get("status")
    suffix = f" ({status})" if status and event.node_id else ""
    return f"[{event.percentage:5.1f}%] {event.event}{subject}{suffix}"


# =============================================================================
# Blocks
# =============================================================================


def format_block_list_markdown(blocks: list[BlockMetadata], category: str | None = None) -> str:
    if not blocks:
        return f"No blocks found in category: {category}" if category else "No blocks registered"

    header = f"## Blocks ({len(blocks)})"
    if category:
        header += f"\n**Category**: {category}"
    lines = [header, ""]
    for meta in blocks:
        mock = " (mock)" if meta.supports_mock else ""
        lines.append(f"- **{meta.type}** [{meta.category}]{mock}: {meta.description}")
    return "\n".join(lines)


def format_block_markdown(meta: BlockMetadata, baseline: dict[str, Any] | None = None) -> str:
    lines = [
        f"# Block: {meta.name}",
        "",
        meta.description or "No description",
        "",
        f"- **Type**: {meta.type}",
        f"- **Category**: {meta.category}",
        f"- **Version**: {meta.version}",
        f"- **Supports mock mode**: {'yes' if meta.supports_mock else 'no'}",
        f"- **Cacheable**: {'yes' if meta.cacheable else 'no'}",
    ]
    if baseline:
        lines.extend(["", "## Baseline test config", "```json", to_json(baseline), "```"])
    return "\n".join(lines)


__all__ = [
    "STATUS_ICONS",
    "format_block_list_markdown",
    "format_block_markdown",
    "format_execution_list_markdown",
    "format_execution_result_markdown",
    "format_progress_line",
    "format_validation_markdown",
    "format_workflow_list_markdown",
    "format_workflow_markdown",
    "to_json",
]
