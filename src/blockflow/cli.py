"""Command-line interface for blockflow.

Usage:
    blockflow list [--tag T] [--category C] [--active | --inactive]
    blockflow get ID
    blockflow create -f FILE
    blockflow update ID -f FILE
    blockflow delete ID [-y]
    blockflow validate (-f FILE | ID)
    blockflow exec (ID | -f FILE) [--input JSON | --input-file F] [--mode M] [--var k=v] [--watch]
    blockflow executions [--workflow ID] [--status S] [--mode M]
    blockflow blocks list|get|test|baseline

Exit codes: 0 success, 1 validation/argument/not-found/failed run, 2 partial run.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import traceback
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from . import __version__
from .config import EngineConfig, configure_logging
from .engine.block_executor import CoreBlockExecutor, ExecuteOptions
from .engine.block_status import ExecutionMode, ExecutionStatus, WorkflowStatus
from .engine.exceptions import WorkflowNotFoundError
from .engine.execution_context import ContextFactory
from .engine.executor_base import BlockRegistry, create_default_registry
from .engine.loader import load_workflow_document, parse_workflow_text
from .engine.orchestrator import WorkflowOrchestrator
from .engine.progress import ProgressChannel
from .engine.secrets import EnvVarSecretProvider
from .engine.state_config import StateConfig
from .engine.tracking import ExecutionRecorder
from .engine.validator import WorkflowValidator
from .engine.workflow_store import WorkflowStore
from .formatting import (
    format_block_list_markdown,
    format_block_markdown,
    format_execution_list_markdown,
    format_execution_result_markdown,
    format_progress_line,
    format_validation_markdown,
    format_workflow_list_markdown,
    format_workflow_markdown,
    to_json,
)

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_PARTIAL = 2


class CLIError(Exception):
    """A user-facing error that maps to exit code 1."""


Handler = Callable[[argparse.Namespace, EngineConfig], Awaitable[int]]


# =============================================================================
# Helpers
# =============================================================================


def _emit(text: str) -> None:
    print(text)


def _parse_json_arg(raw: str, what: str) -> Any:
    """Parse inline JSON, or the contents of a file when ``raw`` names one."""
    candidate = Path(raw)
    if not raw.lstrip().startswith(("{", "[")) and candidate.is_file():
        raw = candidate.read_text(encoding="utf-8")
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise CLIError(f"Invalid JSON for {what}: {e}") from e


def _parse_vars(pairs: list[str] | None) -> dict[str, Any]:
    """``k=v`` pairs; values that parse as JSON keep their type."""
    variables: dict[str, Any] = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise CLIError(f"Invalid --var '{pair}', expected key=value")
        try:
            variables[key] = json.loads(value)
        except json.JSONDecodeError:
            variables[key] = value
    return variables


def _read_definition(path: str) -> dict[str, Any]:
    result = load_workflow_document(path)
    if not result.is_success:
        raise CLIError(result.error or f"Failed to load {path}")
    return result.unwrap()


async def _open_store(config: EngineConfig) -> WorkflowStore:
    store = WorkflowStore.from_config(StateConfig(config))
    await store.init()
    return store


async def _stored_definition(store: WorkflowStore, workflow_id: str) -> dict[str, Any]:
    record = await store.get_workflow(workflow_id)
    if record is None:
        raise WorkflowNotFoundError(workflow_id)
    return record["definition"]


def _registry() -> BlockRegistry:
    return create_default_registry(discover_plugins=True)


def _exit_code_for(status: WorkflowStatus) -> int:
    if status == WorkflowStatus.COMPLETED:
        return EXIT_OK
    if status == WorkflowStatus.PARTIAL:
        return EXIT_PARTIAL
    return EXIT_ERROR


# =============================================================================
# Workflow commands
# =============================================================================


async def cmd_list(args: argparse.Namespace, config: EngineConfig) -> int:
    store = await _open_store(config)
    page = await store.list_workflows(
        is_active=args.active,
        category=args.category,
        tags=args.tag or None,
        limit=args.limit,
        offset=args.offset,
    )
    _emit(to_json(page) if args.json else format_workflow_list_markdown(page, args.tag))
    return EXIT_OK


async def cmd_get(args: argparse.Namespace, config: EngineConfig) -> int:
    store = await _open_store(config)
    record = await store.get_workflow(args.workflow_id)
    if record is None:
        raise WorkflowNotFoundError(args.workflow_id)
    _emit(to_json(record) if args.json else format_workflow_markdown(record))
    return EXIT_OK


async def cmd_create(args: argparse.Namespace, config: EngineConfig) -> int:
    definition = _read_definition(args.file)
    validation = WorkflowValidator(_registry()).validate(definition)
    if not validation.valid:
        _emit(format_validation_markdown(validation, args.file))
        return EXIT_ERROR

    store = await _open_store(config)
    record = await store.create_workflow(
        definition, category=args.category, tags=args.tag or [], is_active=not args.inactive
    )
    _emit(f"Created workflow {record['id']}")
    return EXIT_OK


async def cmd_update(args: argparse.Namespace, config: EngineConfig) -> int:
    definition = _read_definition(args.file)
    validation = WorkflowValidator(_registry()).validate(definition)
    if not validation.valid:
        _emit(format_validation_markdown(validation, args.file))
        return EXIT_ERROR
    if definition.get("workflowId") not in (None, args.workflow_id):
        raise CLIError(
            f"File defines workflow '{definition.get('workflowId')}', not '{args.workflow_id}'"
        )

    store = await _open_store(config)
    record = await store.update_workflow(args.workflow_id, definition=definition)
    _emit(f"Updated workflow {record['id']}")
    return EXIT_OK


async def cmd_delete(args: argparse.Namespace, config: EngineConfig) -> int:
    if not args.yes:
        answer = input(f"Delete workflow '{args.workflow_id}'? [y/N] ").strip().lower()
        if answer not in ("y", "yes"):
            _emit("Aborted")
            return EXIT_OK

    store = await _open_store(config)
    if not await store.delete_workflow(args.workflow_id):
        raise WorkflowNotFoundError(args.workflow_id)
    _emit(f"Deleted workflow {args.workflow_id}")
    return EXIT_OK


async def cmd_validate(args: argparse.Namespace, config: EngineConfig) -> int:
    if args.file:
        definition, source = _read_definition(args.file), args.file
    elif args.workflow_id:
        store = await _open_store(config)
        definition, source = await _stored_definition(store, args.workflow_id), args.workflow_id
    else:
        raise CLIError("validate needs a workflow ID or -f FILE")

    result = WorkflowValidator(_registry()).validate(definition)
    _emit(to_json(result) if args.json else format_validation_markdown(result, source))
    return EXIT_OK if result.valid else EXIT_ERROR


# =============================================================================
# Execution commands
# =============================================================================


def _initial_input(args: argparse.Namespace) -> Any:
    if args.input is not None and args.input_file is not None:
        raise CLIError("Use either --input or --input-file, not both")
    if args.input is not None:
        return _parse_json_arg(args.input, "--input")
    if args.input_file is not None:
        return _parse_json_arg(Path(args.input_file).read_text(encoding="utf-8"), "--input-file")
    return None


async def cmd_exec(args: argparse.Namespace, config: EngineConfig) -> int:
    if bool(args.workflow_id) == bool(args.file):
        raise CLIError("exec needs exactly one of a workflow ID or -f FILE")

    initial_input = _initial_input(args)
    variables = _parse_vars(args.var)

    store: WorkflowStore | None = None
    if args.file:
        definition = _read_definition(args.file)
    else:
        store = await _open_store(config)
        definition = await _stored_definition(store, args.workflow_id)

    secrets = await EnvVarSecretProvider().load_all()
    progress = ProgressChannel()
    if args.watch:
        progress.add_listener(lambda event: print(format_progress_line(event), file=sys.stderr))

    context = ContextFactory(config).create(
        str(definition.get("workflowId") or args.workflow_id or Path(args.file).stem),
        mode=args.mode,
        variables=variables,
        secrets=secrets,
        progress=progress,
        disable_cache=args.no_cache,
    )

    recorder: ExecutionRecorder | None = None
    if not args.no_record:
        recorder = ExecutionRecorder(store or await _open_store(config))
        await recorder.start(context, definition, initial_input)

    orchestrator = WorkflowOrchestrator(_registry(), config=config, strict_mock=args.strict_mock)
    result = await orchestrator.execute(definition, context, initial_input)
    if recorder is not None:
        await recorder.finish(result)

    if args.json:
        _emit(to_json(result))
    else:
        _emit(format_execution_result_markdown(result, verbose=args.verbose))
    return _exit_code_for(result.status)


async def cmd_executions(args: argparse.Namespace, config: EngineConfig) -> int:
    store = await _open_store(config)
    page = await store.list_executions(
        workflow_id=args.workflow,
        status=args.status,
        mode=args.mode,
        limit=args.limit,
        offset=args.offset,
    )
    _emit(to_json(page) if args.json else format_execution_list_markdown(page))
    return EXIT_OK


# =============================================================================
# Block commands
# =============================================================================


def _baseline_path(block_type: str, directory: str | Path) -> Path:
    return Path(directory) / f"{block_type}.json"


def _default_baseline_dir(config: EngineConfig) -> Path:
    return StateConfig(config).state_dir / "baselines"


def _baseline_for(registry: BlockRegistry, block_type: str) -> dict[str, Any]:
    executor_class = registry.get_class(block_type)
    config = dict(executor_class.baseline_config) if executor_class else {}
    block_input = executor_class.baseline_input if executor_class else {}
    return {"type": block_type, "config": config, "input": block_input, "mode": "test"}


async def cmd_blocks_list(args: argparse.Namespace, config: EngineConfig) -> int:
    registry = _registry()
    blocks = registry.get_by_category(args.category) if args.category else registry.get_all_metadata()
    blocks = sorted(blocks, key=lambda meta: meta.type)
    if args.json:
        _emit(to_json([meta.model_dump(by_alias=True) for meta in blocks]))
    else:
        _emit(format_block_list_markdown(blocks, args.category))
    return EXIT_OK


async def cmd_blocks_get(args: argparse.Namespace, config: EngineConfig) -> int:
    registry = _registry()
    meta = registry.get_metadata(args.block_type)
    if meta is None:
        raise CLIError(f"Unknown block type: {args.block_type}")
    baseline = _baseline_for(registry, args.block_type)
    if args.json:
        _emit(to_json({**meta.model_dump(by_alias=True), "baseline": baseline}))
    else:
        _emit(format_block_markdown(meta, baseline))
    return EXIT_OK


async def cmd_blocks_baseline(args: argparse.Namespace, config: EngineConfig) -> int:
    registry = _registry()
    if not registry.has(args.block_type):
        raise CLIError(f"Unknown block type: {args.block_type}")
    directory = Path(args.output) if args.output else _default_baseline_dir(config)
    directory.mkdir(parents=True, exist_ok=True)
    path = _baseline_path(args.block_type, directory)
    path.write_text(to_json(_baseline_for(registry, args.block_type)) + "\n", encoding="utf-8")
    _emit(f"Wrote baseline {path}")
    return EXIT_OK


async def cmd_blocks_test(args: argparse.Namespace, config: EngineConfig) -> int:
    registry = _registry()
    if not registry.has(args.block_type):
        raise CLIError(f"Unknown block type: {args.block_type}")

    block_config: dict[str, Any] = {}
    block_input: Any = None
    mode = args.mode
    if args.use_baseline:
        directory = Path(args.baseline_dir) if args.baseline_dir else _default_baseline_dir(config)
        path = _baseline_path(args.block_type, directory)
        if not path.is_file():
            raise CLIError(f"No baseline for {args.block_type} at {path}; run 'blocks baseline' first")
        baseline = parse_workflow_text(path.read_text(encoding="utf-8"), str(path)).unwrap()
        block_config = baseline.get("config") or {}
        block_input = baseline.get("input")
        mode = args.mode or baseline.get("mode")
    if args.config is not None:
        block_config = _parse_json_arg(args.config, "--config")
    if args.input is not None:
        block_input = _parse_json_arg(args.input, "--input")
    if not isinstance(block_config, dict):
        raise CLIError("--config must be a JSON object")

    context = ContextFactory(config).create(
        f"block-test-{args.block_type}",
        mode=mode or ExecutionMode.TEST.value,
        secrets=await EnvVarSecretProvider().load_all(),
        disable_cache=True,
    )
    if context.is_mock_mode() and context.validate_mock_capability([args.block_type], registry):
        print(f"Warning: {args.block_type} does not support {context.mode.value} mode", file=sys.stderr)

    executor = CoreBlockExecutor(registry, config=config)
    result = await executor.execute(
        "test", args.block_type, block_config, block_input, context, ExecuteOptions(enable_cache=False)
    )

    if args.json:
        _emit(to_json(result))
    else:
        _emit(f"## Block test: {args.block_type} ({result.status.value})")
        if result.error:
            _emit(f"**Error**: {result.error}")
        _emit("```json\n" + to_json(result.output) + "\n```")
    return EXIT_OK if result.status == ExecutionStatus.COMPLETED else EXIT_ERROR


# =============================================================================
# Parser
# =============================================================================


def _add_json_flag(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--json", action="store_true", help="Output JSON instead of markdown")


def _add_paging(parser: argparse.ArgumentParser, default_limit: int = 50) -> None:
    parser.add_argument("--limit", type=int, default=default_limit, help="Page size (max 100)")
    parser.add_argument("--offset", type=int, default=0, help="Rows to skip")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="blockflow", description="Run and manage block workflow DAGs"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--verbose", "-v", action="store_true", help="DEBUG logging and stack traces on errors"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    list_parser = subparsers.add_parser("list", help="List stored workflows")
    list_parser.add_argument("--tag", action="append", help="Require tag (repeatable)")
    list_parser.add_argument("--category", help="Filter by category")
    state = list_parser.add_mutually_exclusive_group()
    state.add_argument("--active", dest="active", action="store_const", const=True)
    state.add_argument("--inactive", dest="active", action="store_const", const=False)
    _add_paging(list_parser)
    _add_json_flag(list_parser)
    list_parser.set_defaults(func=cmd_list)

    get_parser = subparsers.add_parser("get", help="Show one stored workflow")
    get_parser.add_argument("workflow_id")
    _add_json_flag(get_parser)
    get_parser.set_defaults(func=cmd_get)

    create_parser = subparsers.add_parser("create", help="Store a workflow from a file")
    create_parser.add_argument("-f", "--file", required=True, help="JSON or YAML definition")
    create_parser.add_argument("--category")
    create_parser.add_argument("--tag", action="append")
    create_parser.add_argument("--inactive", action="store_true")
    create_parser.set_defaults(func=cmd_create)

    update_parser = subparsers.add_parser("update", help="Replace a stored workflow's definition")
    update_parser.add_argument("workflow_id")
    update_parser.add_argument("-f", "--file", required=True)
    update_parser.set_defaults(func=cmd_update)

    delete_parser = subparsers.add_parser("delete", help="Delete a stored workflow")
    delete_parser.add_argument("workflow_id")
    delete_parser.add_argument("-y", "--yes", action="store_true", help="Skip confirmation")
    delete_parser.set_defaults(func=cmd_delete)

    validate_parser = subparsers.add_parser("validate", help="Validate a workflow")
    validate_parser.add_argument("workflow_id", nargs="?")
    validate_parser.add_argument("-f", "--file")
    _add_json_flag(validate_parser)
    validate_parser.set_defaults(func=cmd_validate)

    exec_parser = subparsers.add_parser("exec", help="Execute a workflow")
    exec_parser.add_argument("workflow_id", nargs="?")
    exec_parser.add_argument("-f", "--file", help="Run a definition file instead of a stored workflow")
    exec_parser.add_argument("--input", help="Initial input as JSON")
    exec_parser.add_argument("--input-file", help="File holding the initial input JSON")
    exec_parser.add_argument(
        "--mode", choices=[mode.value for mode in ExecutionMode], default="production"
    )
    exec_parser.add_argument("--var", action="append", help="Workflow variable key=value (repeatable)")
    exec_parser.add_argument("--watch", action="store_true", help="Print progress events to stderr")
    exec_parser.add_argument("--no-cache", action="store_true", help="Bypass the result cache")
    exec_parser.add_argument("--no-record", action="store_true", help="Do not persist the execution")
    exec_parser.add_argument(
        "--strict-mock", action="store_true", help="Fail demo/test runs that include live-only blocks"
    )
    exec_parser.add_argument(
        "--verbose", "-v", action="store_true", default=argparse.SUPPRESS,
        help="Include the timeline in the report",
    )
    _add_json_flag(exec_parser)
    exec_parser.set_defaults(func=cmd_exec)

    executions_parser = subparsers.add_parser("executions", help="List execution history")
    executions_parser.add_argument("--workflow", help="Filter by workflow ID")
    executions_parser.add_argument("--status", help="Filter by status")
    executions_parser.add_argument("--mode", choices=[mode.value for mode in ExecutionMode])
    _add_paging(executions_parser)
    _add_json_flag(executions_parser)
    executions_parser.set_defaults(func=cmd_executions)

    blocks_parser = subparsers.add_parser("blocks", help="Inspect and test blocks")
    blocks_sub = blocks_parser.add_subparsers(dest="blocks_command", required=True)

    blocks_list = blocks_sub.add_parser("list", help="List registered block types")
    blocks_list.add_argument("--category")
    _add_json_flag(blocks_list)
    blocks_list.set_defaults(func=cmd_blocks_list)

    blocks_get = blocks_sub.add_parser("get", help="Show one block type")
    blocks_get.add_argument("block_type")
    _add_json_flag(blocks_get)
    blocks_get.set_defaults(func=cmd_blocks_get)

    blocks_test = blocks_sub.add_parser("test", help="Run one block in isolation")
    blocks_test.add_argument("block_type")
    blocks_test.add_argument("--config", help="Block config as JSON or a JSON file path")
    blocks_test.add_argument("--input", help="Block input as JSON or a JSON file path")
    blocks_test.add_argument("--mode", choices=[mode.value for mode in ExecutionMode])
    blocks_test.add_argument("--use-baseline", action="store_true")
    blocks_test.add_argument("--baseline-dir", help="Directory holding baseline files")
    _add_json_flag(blocks_test)
    blocks_test.set_defaults(func=cmd_blocks_test)

    blocks_baseline = blocks_sub.add_parser("baseline", help="Write a baseline test config")
    blocks_baseline.add_argument("block_type")
    blocks_baseline.add_argument("-o", "--output", help="Output directory")
    blocks_baseline.set_defaults(func=cmd_blocks_baseline)

    return parser


def main(argv: list[str] | None = None, config: EngineConfig | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    config = config or EngineConfig.from_env()
    configure_logging("DEBUG" if args.verbose else config.log_level)
    handler: Handler = args.func

    try:
        return asyncio.run(handler(args, config))
    except (CLIError, WorkflowNotFoundError, ValueError, KeyError, OSError) as e:
        message = e.args[0] if isinstance(e, KeyError) and e.args else e
        print(f"Error: {message}", file=sys.stderr)
        if args.verbose:
            traceback.print_exc()
        return EXIT_ERROR
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        return EXIT_ERROR


__all__ = ["build_parser", "main"]
