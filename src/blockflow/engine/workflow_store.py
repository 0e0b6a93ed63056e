"""Persistent workflow and execution storage using SQLite + JSON files.

Architecture:
    - SQLite (state.db): workflow metadata and counters, executions,
      block executions and timeline events
    - JSON files (workflows/*.json): full workflow definitions
    - Write-through: every write is persisted immediately
    - Blocking sqlite3/file I/O runs in the default thread pool

Storage Layout:
    ~/.blockflow/states/<hash-of-cwd>/
      state.db
      workflows/
        enrich-leads.json

The store persists what it is given. Callers that hold secrets
(ExecutionRecorder) redact payloads before they get here.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import sqlite3
from collections.abc import Callable
from contextlib import closing
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field

from .exceptions import WorkflowNotFoundError
from .schema import WorkflowDefinition
from .state_config import StateConfig

logger = logging.getLogger(__name__)

# Workflow ids double as file names
WORKFLOW_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")

MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 50

TERMINAL_EXECUTION_STATUSES = frozenset({"completed", "partial", "failed", "cancelled"})

_WORKFLOW_ORDER_COLUMNS = frozenset(
    {"created_at", "updated_at", "name", "total_executions", "last_executed_at"}
)
_WORKFLOW_FIELDS = frozenset({"name", "description", "category", "tags", "is_active", "version"})
_EXECUTION_FIELDS = frozenset(
    {
        "status",
        "output",
        "error",
        "progress",
        "completed_at",
        "execution_time",
        "total_nodes",
        "completed_nodes",
        "failed_nodes",
        "skipped_nodes",
        "metadata",
    }
)
_BLOCK_FIELDS = frozenset(
    {
        "status",
        "input",
        "output",
        "error",
        "execution_time",
        "retry_count",
        "started_at",
        "completed_at",
        "metadata",
    }
)
_JSON_COLUMNS = frozenset({"tags", "input", "output", "metadata", "details", "variables"})


class Page(BaseModel):
    """One page of a list query."""

    data: list[dict[str, Any]] = Field(default_factory=list)
    count: int = Field(default=0, description="Total matching rows, ignoring limit/offset")
    has_more: bool = False
    limit: int = DEFAULT_PAGE_SIZE
    offset: int = 0


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _encode(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, default=str, ensure_ascii=False)


def _row_to_dict(row: sqlite3.Row) -> dict[str, Any]:
    record = dict(row)
    for key in _JSON_COLUMNS & record.keys():
        if record[key] is not None:
            record[key] = json.loads(record[key])
    if "is_active" in record:
        record["is_active"] = bool(record["is_active"])
    return record


def _clamp_limit(limit: int | None) -> int:
    if limit is None:
        return DEFAULT_PAGE_SIZE
    return max(1, min(int(limit), MAX_PAGE_SIZE))


class WorkflowStore:
    """Persistent storage for workflow definitions and execution history.

    Uses SQLite WAL mode so several processes started from the same
    directory can share one state directory.

    Example:
        store = WorkflowStore.from_config(EngineConfig.from_env())
        await store.init()

        await store.create_workflow(definition, category="enrichment", tags=["leads"])
        page = await store.list_workflows(tags=["leads"], limit=20)
    """

    def __init__(self, db_path: Path, workflows_dir: Path):
        self._db_path = Path(db_path)
        self._workflows_dir = Path(workflows_dir)

    @classmethod
    def from_config(cls, state: StateConfig | Any = None) -> WorkflowStore:
        """Store rooted at the state directory of an EngineConfig or StateConfig."""
        state_config = state if isinstance(state, StateConfig) else StateConfig(state)
        return cls(state_config.db_path, state_config.workflows_dir)

    @property
    def db_path(self) -> Path:
        return self._db_path

    async def init(self) -> None:
        """Create tables and indexes. Must be called before using the store."""
        await self._run_in_executor(self._init_db)
        logger.info(f"WorkflowStore initialized: db={self._db_path}")

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    def _init_db(self) -> None:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._workflows_dir.mkdir(parents=True, exist_ok=True)

        with closing(self._connect()) as conn, conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS workflows (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    version TEXT NOT NULL,
                    description TEXT,
                    category TEXT,
                    tags TEXT NOT NULL DEFAULT '[]',
                    is_active INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    total_executions INTEGER NOT NULL DEFAULT 0,
                    successful_executions INTEGER NOT NULL DEFAULT 0,
                    failed_executions INTEGER NOT NULL DEFAULT 0,
                    last_executed_at TEXT
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS executions (
                    id TEXT PRIMARY KEY,
                    workflow_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    mode TEXT NOT NULL,
                    input TEXT,
                    output TEXT,
                    variables TEXT,
                    error TEXT,
                    progress REAL NOT NULL DEFAULT 0,
                    started_at TEXT NOT NULL,
                    completed_at TEXT,
                    execution_time REAL,
                    total_nodes INTEGER NOT NULL DEFAULT 0,
                    completed_nodes INTEGER NOT NULL DEFAULT 0,
                    failed_nodes INTEGER NOT NULL DEFAULT 0,
                    skipped_nodes INTEGER NOT NULL DEFAULT 0,
                    metadata TEXT
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS block_executions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    execution_id TEXT NOT NULL
                        REFERENCES executions(id) ON DELETE CASCADE,
                    node_id TEXT NOT NULL,
                    block_type TEXT NOT NULL,
                    status TEXT NOT NULL,
                    input TEXT,
                    output TEXT,
                    error TEXT,
                    execution_time REAL,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    started_at TEXT,
                    completed_at TEXT,
                    metadata TEXT,
                    UNIQUE (execution_id, node_id)
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS timeline_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    execution_id TEXT NOT NULL
                        REFERENCES executions(id) ON DELETE CASCADE,
                    node_id TEXT,
                    event TEXT NOT NULL,
                    percentage REAL,
                    details TEXT,
                    timestamp TEXT NOT NULL
                )
            """)

            conn.execute("CREATE INDEX IF NOT EXISTS idx_workflows_category ON workflows(category)")
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_executions_workflow ON executions(workflow_id)"
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_executions_status ON executions(status)")
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_executions_started ON executions(started_at DESC)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_timeline_execution "
                "ON timeline_events(execution_id, id)"
            )

        logger.debug("Database schema initialized with WAL mode")

    # ==================================================================
    # Workflows
    # ==================================================================

    def _definition_file(self, workflow_id: str) -> Path:
        return self._workflows_dir / f"{workflow_id}.json"

    def _write_definition(self, workflow_id: str, definition: dict[str, Any]) -> None:
        """Atomic write: temp file + rename."""
        target = self._definition_file(workflow_id)
        temp_file = target.with_suffix(".json.tmp")
        with open(temp_file, "w", encoding="utf-8") as f:
            json.dump(definition, f, indent=2, default=str, ensure_ascii=False)
        temp_file.replace(target)

    def _read_definition(self, workflow_id: str) -> dict[str, Any] | None:
        path = self._definition_file(workflow_id)
        if not path.exists():
            logger.warning(f"Definition file missing for workflow '{workflow_id}'")
            return None
        with open(path, encoding="utf-8") as f:
            data: dict[str, Any] = json.load(f)
        return data

    @staticmethod
    def _definition_dict(definition: WorkflowDefinition | dict[str, Any]) -> dict[str, Any]:
        if isinstance(definition, WorkflowDefinition):
            return definition.to_dict()
        return dict(definition)

    async def create_workflow(
        self,
        definition: WorkflowDefinition | dict[str, Any],
        category: str | None = None,
        tags: list[str] | None = None,
        is_active: bool = True,
    ) -> dict[str, Any]:
        """Store a new workflow definition.

        Raises:
            ValueError: Missing/unsafe workflowId, or the id already exists
        """
        data = self._definition_dict(definition)
        workflow_id = str(data.get("workflowId") or "")
        if not WORKFLOW_ID_PATTERN.match(workflow_id):
            raise ValueError(f"Invalid workflowId: {workflow_id!r}")

        def _create() -> dict[str, Any]:
            now = _now()
            with closing(self._connect()) as conn, conn:
                try:
                    conn.execute(
                        """
                        INSERT INTO workflows
                            (id, name, version, description, category, tags, is_active,
                             created_at, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            workflow_id,
                            str(data.get("name") or workflow_id),
                            str(data.get("version", 1)),
                            data.get("description"),
                            category,
                            _encode(list(tags or [])),
                            int(is_active),
                            now,
                            now,
                        ),
                    )
                except sqlite3.IntegrityError as e:
                    raise ValueError(f"Workflow already exists: {workflow_id}") from e
                self._write_definition(workflow_id, data)
            return self._get_workflow(workflow_id) or {}

        record = await self._run_in_executor(_create)
        logger.info(f"Workflow created: {workflow_id}")
        return record

    def _get_workflow(self, workflow_id: str) -> dict[str, Any] | None:
        with closing(self._connect()) as conn:
            row = conn.execute("SELECT * FROM workflows WHERE id = ?", (workflow_id,)).fetchone()
        if row is None:
            return None
        record = _row_to_dict(row)
        record["definition"] = self._read_definition(workflow_id)
        return record

    async def get_workflow(self, workflow_id: str) -> dict[str, Any] | None:
        """Workflow metadata plus its ``definition``, or None when unknown."""
        return await self._run_in_executor(lambda: self._get_workflow(workflow_id))

    async def update_workflow(
        self,
        workflow_id: str,
        definition: WorkflowDefinition | dict[str, Any] | None = None,
        **fields: Any,
    ) -> dict[str, Any]:
        """Replace the definition and/or update metadata fields.

        Accepted fields: name, description, category, tags, is_active, version.

        Raises:
            WorkflowNotFoundError: Unknown workflow id
            ValueError: Unknown field, or the definition's workflowId differs
        """
        unknown = set(fields) - _WORKFLOW_FIELDS
        if unknown:
            raise ValueError(f"Cannot update workflow fields: {', '.join(sorted(unknown))}")

        data = self._definition_dict(definition) if definition is not None else None
        if data is not None:
            if data.get("workflowId", workflow_id) != workflow_id:
                raise ValueError("Definition workflowId does not match the stored workflow")
            data["workflowId"] = workflow_id
            fields.setdefault("name", data.get("name") or workflow_id)
            fields.setdefault("version", data.get("version", 1))
            fields.setdefault("description", data.get("description"))

        def _update() -> dict[str, Any]:
            with closing(self._connect()) as conn, conn:
                exists = conn.execute(
                    "SELECT 1 FROM workflows WHERE id = ?", (workflow_id,)
                ).fetchone()
                if exists is None:
                    raise WorkflowNotFoundError(workflow_id)

                assignments = ["updated_at = ?"]
                values: list[Any] = [_now()]
                for key, value in fields.items():
                    if key == "tags":
                        value = _encode(list(value or []))
                    elif key == "is_active":
                        value = int(bool(value))
                    elif key == "version":
                        value = str(value)
                    assignments.append(f"{key} = ?")
                    values.append(value)
                values.append(workflow_id)
                conn.execute(
                    f"UPDATE workflows SET {', '.join(assignments)} WHERE id = ?", values
                )
                if data is not None:
                    self._write_definition(workflow_id, data)
            return self._get_workflow(workflow_id) or {}

        return await self._run_in_executor(_update)

    async def delete_workflow(self, workflow_id: str) -> bool:
        """Delete a workflow and its definition file. Execution history is kept."""

        def _delete() -> bool:
            with closing(self._connect()) as conn, conn:
                cursor = conn.execute("DELETE FROM workflows WHERE id = ?", (workflow_id,))
                deleted = cursor.rowcount > 0
            self._definition_file(workflow_id).unlink(missing_ok=True)
            return deleted

        return await self._run_in_executor(_delete)

    async def list_workflows(
        self,
        is_active: bool | None = None,
        category: str | None = None,
        tags: list[str] | None = None,
        limit: int | None = None,
        offset: int = 0,
        order_by: str = "updated_at",
        order_direction: Literal["asc", "desc"] = "desc",
    ) -> Page:
        """List workflow metadata (definitions are not loaded).

        ``tags`` matches workflows carrying every listed tag.
        """
        if order_by not in _WORKFLOW_ORDER_COLUMNS:
            raise ValueError(f"Cannot order workflows by: {order_by}")
        direction = "ASC" if order_direction.lower() == "asc" else "DESC"
        limit = _clamp_limit(limit)
        offset = max(0, offset)

        clauses: list[str] = []
        params: list[Any] = []
        if is_active is not None:
            clauses.append("is_active = ?")
            params.append(int(is_active))
        if category is not None:
            clauses.append("category = ?")
            params.append(category)
        for tag in tags or []:
            clauses.append("EXISTS (SELECT 1 FROM json_each(workflows.tags) WHERE value = ?)")
            params.append(tag)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        def _query() -> Page:
            with closing(self._connect()) as conn:
                count = conn.execute(f"SELECT COUNT(*) FROM workflows {where}", params).fetchone()[0]
                rows = conn.execute(
                    f"SELECT * FROM workflows {where} ORDER BY {order_by} {direction}, id "
                    "LIMIT ? OFFSET ?",
                    [*params, limit, offset],
                ).fetchall()
            data = [_row_to_dict(row) for row in rows]
            return Page(
                data=data,
                count=count,
                has_more=offset + len(data) < count,
                limit=limit,
                offset=offset,
            )

        return await self._run_in_executor(_query)

    # ==================================================================
    # Executions
    # ==================================================================

    async def create_execution(
        self,
        execution_id: str,
        workflow_id: str,
        mode: str,
        input: Any = None,
        variables: dict[str, Any] | None = None,
        status: str = "running",
        total_nodes: int = 0,
    ) -> dict[str, Any]:
        def _create() -> dict[str, Any]:
            with closing(self._connect()) as conn, conn:
                conn.execute(
                    """
                    INSERT INTO executions
                        (id, workflow_id, status, mode, input, variables, started_at, total_nodes)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        execution_id,
                        workflow_id,
                        status,
                        mode,
                        _encode(input),
                        _encode(variables),
                        _now(),
                        total_nodes,
                    ),
                )
            return self._get_execution(execution_id) or {}

        return await self._run_in_executor(_create)

    def _get_execution(self, execution_id: str) -> dict[str, Any] | None:
        with closing(self._connect()) as conn:
            row = conn.execute("SELECT * FROM executions WHERE id = ?", (execution_id,)).fetchone()
        return _row_to_dict(row) if row is not None else None

    async def get_execution(self, execution_id: str) -> dict[str, Any] | None:
        return await self._run_in_executor(lambda: self._get_execution(execution_id))

    async def update_execution(self, execution_id: str, **fields: Any) -> None:
        """Update execution columns.

        Setting a terminal ``status`` also stamps ``completed_at`` and updates
        the workflow's counters (once per execution).

        Raises:
            ValueError: Unknown field
            KeyError: Unknown execution id
        """
        unknown = set(fields) - _EXECUTION_FIELDS
        if unknown:
            raise ValueError(f"Cannot update execution fields: {', '.join(sorted(unknown))}")

        def _update() -> None:
            with closing(self._connect()) as conn, conn:
                row = conn.execute(
                    "SELECT workflow_id, status FROM executions WHERE id = ?", (execution_id,)
                ).fetchone()
                if row is None:
                    raise KeyError(f"Execution not found: {execution_id}")

                values_by_column = dict(fields)
                new_status = values_by_column.get("status")
                finishing = (
                    new_status in TERMINAL_EXECUTION_STATUSES
                    and row["status"] not in TERMINAL_EXECUTION_STATUSES
                )
                if finishing:
                    values_by_column.setdefault("completed_at", _now())

                assignments: list[str] = []
                values: list[Any] = []
                for key, value in values_by_column.items():
                    if key in _JSON_COLUMNS:
                        value = _encode(value)
                    assignments.append(f"{key} = ?")
                    values.append(value)
                if assignments:
                    values.append(execution_id)
                    conn.execute(
                        f"UPDATE executions SET {', '.join(assignments)} WHERE id = ?", values
                    )

                if finishing:
                    conn.execute(
                        """
                        UPDATE workflows SET
                            total_executions = total_executions + 1,
                            successful_executions = successful_executions + ?,
                            failed_executions = failed_executions + ?,
                            last_executed_at = ?
                        WHERE id = ?
                        """,
                        (
                            int(new_status == "completed"),
                            int(new_status == "failed"),
                            values_by_column["completed_at"],
                            row["workflow_id"],
                        ),
                    )

        await self._run_in_executor(_update)

    async def set_execution_status(
        self, execution_id: str, status: str, error: str | None = None
    ) -> None:
        fields: dict[str, Any] = {"status": status}
        if error is not None:
            fields["error"] = error
        await self.update_execution(execution_id, **fields)

    async def update_progress(self, execution_id: str, percentage: float) -> None:
        await self.update_execution(execution_id, progress=float(percentage))

    async def list_executions(
        self,
        workflow_id: str | None = None,
        status: str | None = None,
        mode: str | None = None,
        started_after: datetime | str | None = None,
        started_before: datetime | str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> Page:
        """List executions, most recent first (limit max 100, default 50)."""
        limit = _clamp_limit(limit)
        offset = max(0, offset)

        clauses: list[str] = []
        params: list[Any] = []
        for column, value in (("workflow_id", workflow_id), ("status", status), ("mode", mode)):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)
        if started_after is not None:
            clauses.append("started_at >= ?")
            params.append(
                started_after.isoformat() if isinstance(started_after, datetime) else started_after
            )
        if started_before is not None:
            clauses.append("started_at <= ?")
            params.append(
                started_before.isoformat()
                if isinstance(started_before, datetime)
                else started_before
            )
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        def _query() -> Page:
            with closing(self._connect()) as conn:
                count = conn.execute(
                    f"SELECT COUNT(*) FROM executions {where}", params
                ).fetchone()[0]
                rows = conn.execute(
                    f"SELECT * FROM executions {where} ORDER BY started_at DESC, id "
                    "LIMIT ? OFFSET ?",
                    [*params, limit, offset],
                ).fetchall()
            data = [_row_to_dict(row) for row in rows]
            return Page(
                data=data,
                count=count,
                has_more=offset + len(data) < count,
                limit=limit,
                offset=offset,
            )

        return await self._run_in_executor(_query)

    async def delete_old_executions(self, days: int) -> int:
        """Delete executions started more than ``days`` days ago. Returns the count."""
        cutoff = (datetime.now(UTC) - timedelta(days=days)).isoformat()

        def _delete() -> int:
            with closing(self._connect()) as conn, conn:
                cursor = conn.execute("DELETE FROM executions WHERE started_at < ?", (cutoff,))
                return cursor.rowcount

        deleted = await self._run_in_executor(_delete)
        if deleted:
            logger.info(f"Deleted {deleted} execution(s) older than {days} day(s)")
        return deleted

    async def get_execution_stats(self, workflow_id: str | None = None) -> dict[str, Any]:
        """Counts per status, average duration and success rate (percent)."""
        where = "WHERE workflow_id = ?" if workflow_id else ""
        params = [workflow_id] if workflow_id else []

        def _query() -> dict[str, Any]:
            with closing(self._connect()) as conn:
                by_status = dict(
                    conn.execute(
                        f"SELECT status, COUNT(*) FROM executions {where} GROUP BY status", params
                    ).fetchall()
                )
                average = conn.execute(
                    f"SELECT AVG(execution_time) FROM executions {where}", params
                ).fetchone()[0]
            total = sum(by_status.values())
            finished = sum(
                count for status, count in by_status.items()
                if status in TERMINAL_EXECUTION_STATUSES
            )
            completed = by_status.get("completed", 0)
            return {
                "total": total,
                "by_status": by_status,
                "average_execution_time": round(average, 3) if average is not None else None,
                "success_rate": round(completed / finished * 100, 2) if finished else 0.0,
            }

        return await self._run_in_executor(_query)

    # ==================================================================
    # Block executions
    # ==================================================================

    async def create_block_execution(
        self,
        execution_id: str,
        node_id: str,
        block_type: str,
        status: str = "running",
        input: Any = None,
        started_at: datetime | None = None,
    ) -> None:
        def _create() -> None:
            with closing(self._connect()) as conn, conn:
                conn.execute(
                    """
                    INSERT INTO block_executions
                        (execution_id, node_id, block_type, status, input, started_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT (execution_id, node_id) DO UPDATE SET
                        status = excluded.status,
                        input = COALESCE(excluded.input, block_executions.input),
                        started_at = COALESCE(block_executions.started_at, excluded.started_at)
                    """,
                    (
                        execution_id,
                        node_id,
                        block_type,
                        status,
                        _encode(input),
                        (started_at or datetime.now(UTC)).isoformat(),
                    ),
                )

        await self._run_in_executor(_create)

    async def update_block_execution(self, execution_id: str, node_id: str, **fields: Any) -> None:
        """Update a block execution row.

        Raises:
            ValueError: Unknown field
        """
        unknown = set(fields) - _BLOCK_FIELDS
        if unknown:
            raise ValueError(f"Cannot update block execution fields: {', '.join(sorted(unknown))}")
        if not fields:
            return

        assignments: list[str] = []
        values: list[Any] = []
        for key, value in fields.items():
            if key in _JSON_COLUMNS:
                value = _encode(value)
            elif isinstance(value, datetime):
                value = value.isoformat()
            assignments.append(f"{key} = ?")
            values.append(value)
        values.extend([execution_id, node_id])

        def _update() -> None:
            with closing(self._connect()) as conn, conn:
                conn.execute(
                    f"UPDATE block_executions SET {', '.join(assignments)} "
                    "WHERE execution_id = ? AND node_id = ?",
                    values,
                )

        await self._run_in_executor(_update)

    async def get_block_executions(self, execution_id: str) -> list[dict[str, Any]]:
        def _query() -> list[dict[str, Any]]:
            with closing(self._connect()) as conn:
                rows = conn.execute(
                    "SELECT * FROM block_executions WHERE execution_id = ? ORDER BY id",
                    (execution_id,),
                ).fetchall()
            return [_row_to_dict(row) for row in rows]

        return await self._run_in_executor(_query)

    # ==================================================================
    # Timeline
    # ==================================================================

    async def add_timeline_event(
        self,
        execution_id: str,
        event: str,
        details: dict[str, Any] | None = None,
        percentage: float | None = None,
        node_id: str | None = None,
        timestamp: datetime | str | None = None,
    ) -> None:
        await self.add_timeline_events(
            execution_id,
            [
                {
                    "event": event,
                    "details": details,
                    "percentage": percentage,
                    "node_id": node_id,
                    "timestamp": timestamp,
                }
            ],
        )

    async def add_timeline_events(self, execution_id: str, events: list[dict[str, Any]]) -> None:
        """Insert several events in one transaction (keys as in add_timeline_event)."""
        if not events:
            return
        rows = []
        for item in events:
            timestamp = item.get("timestamp") or datetime.now(UTC)
            rows.append(
                (
                    execution_id,
                    item.get("node_id"),
                    item["event"],
                    item.get("percentage"),
                    _encode(item.get("details") or {}),
                    timestamp.isoformat() if isinstance(timestamp, datetime) else str(timestamp),
                )
            )

        def _insert() -> None:
            with closing(self._connect()) as conn, conn:
                conn.executemany(
                    """
                    INSERT INTO timeline_events
                        (execution_id, node_id, event, percentage, details, timestamp)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    rows,
                )

        await self._run_in_executor(_insert)

    async def get_timeline_events(
        self, execution_id: str, node_id: str | None = None
    ) -> list[dict[str, Any]]:
        """Events of one execution in insertion order, optionally for one node."""
        query = "SELECT * FROM timeline_events WHERE execution_id = ?"
        params: list[Any] = [execution_id]
        if node_id is not None:
            query += " AND node_id = ?"
            params.append(node_id)
        query += " ORDER BY id"

        def _query() -> list[dict[str, Any]]:
            with closing(self._connect()) as conn:
                rows = conn.execute(query, params).fetchall()
            return [_row_to_dict(row) for row in rows]

        return await self._run_in_executor(_query)

    async def _run_in_executor[T](self, func: Callable[[], T]) -> T:
        """Run blocking function in thread pool executor."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func)


__all__ = ["DEFAULT_PAGE_SIZE", "MAX_PAGE_SIZE", "Page", "WorkflowStore"]
