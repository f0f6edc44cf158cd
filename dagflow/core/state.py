"""SQLite state management for workflow definitions and runs.

Definitions, nodes and edges are written by GraphStore. Runs and node
executions are written by the engine through the methods below. All state
needed to continue a suspended run lives in these rows, so resumption works
across process restarts.
"""

import json
import sqlite3
import uuid
from collections.abc import Generator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from dagflow.core.models import (
    ExecutionFilters,
    ExecutionStatus,
    NodeExecution,
    NodeStatus,
    WorkflowExecution,
)

DEFAULT_LIST_LIMIT = 50


def _utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


def _new_id() -> str:
    return str(uuid.uuid4())


class _SafeJSONEncoder(json.JSONEncoder):
    """JSON encoder that handles datetime and Pydantic models.

    Node outputs come from external collaborators and may contain either.
    """

    def default(self, obj: Any) -> Any:
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, BaseModel):
            return obj.model_dump(mode="json")
        if isinstance(obj, Path):
            return str(obj)
        return super().default(obj)


def _safe_json_dumps(obj: Any) -> str:
    """Serialize object to JSON string, handling datetime and Pydantic models."""
    return json.dumps(obj, cls=_SafeJSONEncoder)


def _json_or_none(value: str | None) -> Any:
    if value is None:
        return None
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return None


class Database:
    """SQLite database holding workflow graphs and their execution state."""

    SCHEMA = """
    -- Workflow definitions
    CREATE TABLE IF NOT EXISTS workflow_definitions (
        id TEXT PRIMARY KEY,
        project_id TEXT DEFAULT NULL,
        name TEXT NOT NULL,
        description TEXT,
        is_enabled INTEGER NOT NULL DEFAULT 1,
        version INTEGER NOT NULL DEFAULT 1,
        created_by TEXT NOT NULL,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL
    );

    -- Nodes of a definition (config is an open JSON map)
    CREATE TABLE IF NOT EXISTS workflow_nodes (
        id TEXT PRIMARY KEY,
        workflow_id TEXT NOT NULL,
        node_type TEXT NOT NULL,
        name TEXT NOT NULL,
        config JSON NOT NULL,
        position_x INTEGER NOT NULL DEFAULT 0,
        position_y INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMP NOT NULL,
        FOREIGN KEY (workflow_id) REFERENCES workflow_definitions(id) ON DELETE CASCADE
    );

    -- Directed edges (source/target always belong to workflow_id)
    CREATE TABLE IF NOT EXISTS workflow_edges (
        id TEXT PRIMARY KEY,
        workflow_id TEXT NOT NULL,
        source_node_id TEXT NOT NULL,
        target_node_id TEXT NOT NULL,
        condition_expr JSON DEFAULT NULL,
        label TEXT DEFAULT NULL,
        sort_order INTEGER NOT NULL DEFAULT 0,
        FOREIGN KEY (workflow_id) REFERENCES workflow_definitions(id) ON DELETE CASCADE,
        FOREIGN KEY (source_node_id) REFERENCES workflow_nodes(id) ON DELETE CASCADE,
        FOREIGN KEY (target_node_id) REFERENCES workflow_nodes(id) ON DELETE CASCADE
    );

    -- Runs
    CREATE TABLE IF NOT EXISTS workflow_executions (
        id TEXT PRIMARY KEY,
        workflow_id TEXT NOT NULL,
        trigger_node_id TEXT NOT NULL,
        entity_type TEXT NOT NULL,
        entity_id TEXT NOT NULL,
        status TEXT NOT NULL CHECK(status IN ('running', 'waiting', 'completed', 'failed', 'cancelled')),
        context JSON NOT NULL,
        started_at TIMESTAMP NOT NULL,
        completed_at TIMESTAMP,
        error_message TEXT,
        FOREIGN KEY (workflow_id) REFERENCES workflow_definitions(id) ON DELETE CASCADE
    );

    -- Per-node execution state. node_id is deliberately not a foreign key:
    -- replacing a definition's graph must not erase run history.
    CREATE TABLE IF NOT EXISTS workflow_node_executions (
        id TEXT PRIMARY KEY,
        execution_id TEXT NOT NULL,
        node_id TEXT NOT NULL,
        status TEXT NOT NULL CHECK(status IN ('pending', 'running', 'completed', 'failed', 'skipped', 'waiting')),
        input_data JSON,
        output_data JSON,
        error_message TEXT,
        started_at TIMESTAMP,
        completed_at TIMESTAMP,
        FOREIGN KEY (execution_id) REFERENCES workflow_executions(id) ON DELETE CASCADE
    );

    CREATE INDEX IF NOT EXISTS idx_definitions_project ON workflow_definitions(project_id, is_enabled);
    CREATE INDEX IF NOT EXISTS idx_nodes_workflow ON workflow_nodes(workflow_id);
    CREATE INDEX IF NOT EXISTS idx_edges_workflow ON workflow_edges(workflow_id);
    CREATE INDEX IF NOT EXISTS idx_exec_workflow ON workflow_executions(workflow_id);
    CREATE INDEX IF NOT EXISTS idx_exec_entity ON workflow_executions(entity_type, entity_id);
    CREATE INDEX IF NOT EXISTS idx_exec_status ON workflow_executions(status);
    CREATE INDEX IF NOT EXISTS idx_node_exec_execution ON workflow_node_executions(execution_id, status);
    """

    def __init__(self, db_path: str | Path = ".dagflow/state.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        """Initialize database schema and enable WAL mode for better concurrency."""
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(self.SCHEMA)

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Context manager for database connections.

        Uses a 30-second busy timeout to handle concurrent access gracefully
        instead of immediately failing with "database is locked".
        """
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 30000")
        # Cascading deletes of nodes/edges/runs depend on this
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except sqlite3.OperationalError as e:
            conn.rollback()
            if "database is locked" in str(e):
                raise sqlite3.OperationalError(
                    f"Database locked after 30s timeout. Check for long-running transactions: {e}"
                ) from e
            raise
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """Explicit transaction context for atomic operations."""
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            yield conn

    # --- Runs ---

    def create_execution(
        self,
        workflow_id: str,
        trigger_node_id: str,
        entity_type: str,
        entity_id: str,
        context: dict[str, Any],
    ) -> str:
        """Insert a run in 'running' status and return its id."""
        execution_id = _new_id()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO workflow_executions
                    (id, workflow_id, trigger_node_id, entity_type, entity_id,
                     status, context, started_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    execution_id,
                    workflow_id,
                    trigger_node_id,
                    entity_type,
                    entity_id,
                    ExecutionStatus.RUNNING.value,
                    _safe_json_dumps(context),
                    _utc_now().isoformat(),
                ),
            )
        return execution_id

    def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM workflow_executions WHERE id = ?", (execution_id,)
            ).fetchone()
            return self._row_to_execution(row) if row else None

    def list_executions(self, filters: ExecutionFilters | None = None) -> list[WorkflowExecution]:
        """List runs, newest first."""
        filters = filters or ExecutionFilters()
        query = "SELECT * FROM workflow_executions WHERE 1=1"
        params: list[Any] = []
        if filters.workflow_id:
            query += " AND workflow_id = ?"
            params.append(filters.workflow_id)
        if filters.entity_type:
            query += " AND entity_type = ?"
            params.append(filters.entity_type)
        if filters.entity_id:
            query += " AND entity_id = ?"
            params.append(filters.entity_id)
        if filters.status:
            query += " AND status = ?"
            params.append(filters.status.value)
        query += " ORDER BY started_at DESC, rowid DESC LIMIT ?"
        params.append(filters.limit or DEFAULT_LIST_LIMIT)

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
            return [self._row_to_execution(row) for row in rows]

    def set_execution_status(
        self,
        execution_id: str,
        status: ExecutionStatus,
        error: str | None = None,
        expected: tuple[ExecutionStatus, ...] | None = None,
    ) -> bool:
        """Set run status, optionally only when the current status is in ``expected``.

        Terminal statuses also stamp completed_at. Returns True if a row changed.
        """
        query = "UPDATE workflow_executions SET status = ?"
        params: list[Any] = [status.value]
        if status.is_terminal:
            query += ", completed_at = ?"
            params.append(_utc_now().isoformat())
        if error is not None:
            query += ", error_message = ?"
            params.append(error)
        query += " WHERE id = ?"
        params.append(execution_id)
        if expected:
            query += f" AND status IN ({','.join('?' * len(expected))})"
            params.extend(s.value for s in expected)

        with self._connect() as conn:
            return conn.execute(query, params).rowcount > 0

    def update_execution_context(self, execution_id: str, node_outputs: dict[str, Any]) -> None:
        """Merge the current node outputs into the run context."""
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT context FROM workflow_executions WHERE id = ?", (execution_id,)
            ).fetchone()
            context = (_json_or_none(row["context"]) if row else None) or {}
            context["nodeOutputs"] = node_outputs
            conn.execute(
                "UPDATE workflow_executions SET context = ? WHERE id = ?",
                (_safe_json_dumps(context), execution_id),
            )

    # --- Node executions ---

    def create_node_execution(
        self,
        execution_id: str,
        node_id: str,
        status: NodeStatus,
        input_data: dict[str, Any] | None = None,
    ) -> str:
        """Insert a node execution; terminal statuses are stamped completed immediately."""
        node_exec_id = _new_id()
        now = _utc_now().isoformat()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO workflow_node_executions
                    (id, execution_id, node_id, status, input_data, started_at, completed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    node_exec_id,
                    execution_id,
                    node_id,
                    status.value,
                    _safe_json_dumps(input_data) if input_data is not None else None,
                    now,
                    now if status.is_terminal else None,
                ),
            )
        return node_exec_id

    def finish_node_execution(
        self,
        node_exec_id: str,
        status: NodeStatus,
        output: Any = None,
        error: str | None = None,
    ) -> None:
        """Move a node execution to a terminal status."""
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE workflow_node_executions
                SET status = ?, output_data = ?, error_message = ?, completed_at = ?
                WHERE id = ?
                """,
                (
                    status.value,
                    _safe_json_dumps(output) if output is not None else None,
                    error,
                    _utc_now().isoformat(),
                    node_exec_id,
                ),
            )

    def suspend_node_execution(self, node_exec_id: str, execution_id: str) -> None:
        """Mark a node execution and its run as waiting in one transaction."""
        with self.transaction() as conn:
            conn.execute(
                "UPDATE workflow_node_executions SET status = ? WHERE id = ?",
                (NodeStatus.WAITING.value, node_exec_id),
            )
            conn.execute(
                "UPDATE workflow_executions SET status = ? WHERE id = ? AND status IN (?, ?)",
                (
                    ExecutionStatus.WAITING.value,
                    execution_id,
                    ExecutionStatus.RUNNING.value,
                    ExecutionStatus.WAITING.value,
                ),
            )

    def resume_node_execution(self, execution_id: str, node_id: str, result: Any) -> bool:
        """Complete a waiting node and set its run back to running.

        Both updates are conditioned on the current 'waiting' state, so of two
        concurrent resumes of the same node only one applies. Returns True if
        this call performed the transition.
        """
        with self.transaction() as conn:
            updated = conn.execute(
                """
                UPDATE workflow_node_executions
                SET status = ?, output_data = ?, completed_at = ?
                WHERE execution_id = ? AND node_id = ? AND status = ?
                """,
                (
                    NodeStatus.COMPLETED.value,
                    _safe_json_dumps(result),
                    _utc_now().isoformat(),
                    execution_id,
                    node_id,
                    NodeStatus.WAITING.value,
                ),
            ).rowcount
            if not updated:
                return False
            conn.execute(
                "UPDATE workflow_executions SET status = ? WHERE id = ? AND status = ?",
                (ExecutionStatus.RUNNING.value, execution_id, ExecutionStatus.WAITING.value),
            )
            return True

    def skip_waiting_node_executions(self, execution_id: str) -> int:
        """Mark every waiting node of a run as skipped (used on cancel)."""
        with self._connect() as conn:
            return conn.execute(
                """
                UPDATE workflow_node_executions SET status = ?, completed_at = ?
                WHERE execution_id = ? AND status = ?
                """,
                (
                    NodeStatus.SKIPPED.value,
                    _utc_now().isoformat(),
                    execution_id,
                    NodeStatus.WAITING.value,
                ),
            ).rowcount

    def get_node_executions(self, execution_id: str) -> list[NodeExecution]:
        """Node executions of a run in the order they started."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM workflow_node_executions
                WHERE execution_id = ? ORDER BY started_at, rowid
                """,
                (execution_id,),
            ).fetchall()
            return [self._row_to_node_execution(row) for row in rows]

    # --- Row mappers ---

    def _row_to_execution(self, row: sqlite3.Row) -> WorkflowExecution:
        return WorkflowExecution(
            id=row["id"],
            workflow_id=row["workflow_id"],
            trigger_node_id=row["trigger_node_id"],
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            status=ExecutionStatus(row["status"]),
            context=_json_or_none(row["context"]) or {},
            started_at=datetime.fromisoformat(row["started_at"]),
            completed_at=(
                datetime.fromisoformat(row["completed_at"]) if row["completed_at"] else None
            ),
            error_message=row["error_message"],
        )

    def _row_to_node_execution(self, row: sqlite3.Row) -> NodeExecution:
        return NodeExecution(
            id=row["id"],
            execution_id=row["execution_id"],
            node_id=row["node_id"],
            status=NodeStatus(row["status"]),
            input_data=_json_or_none(row["input_data"]),
            output_data=_json_or_none(row["output_data"]),
            error_message=row["error_message"],
            started_at=datetime.fromisoformat(row["started_at"]) if row["started_at"] else None,
            completed_at=(
                datetime.fromisoformat(row["completed_at"]) if row["completed_at"] else None
            ),
        )
