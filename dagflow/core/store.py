"""Definition CRUD on top of the state database.

A definition and its nodes/edges are always written in one transaction.
Updating with a node list replaces the whole graph: existing edges are
deleted, then existing nodes, then the new set is inserted.
"""

import json
import logging
import sqlite3
import uuid

from dagflow.core.graph_schema import (
    DefinitionCreate,
    DefinitionUpdate,
    DefinitionWithGraph,
    EdgeSpec,
    NodeSpec,
    WorkflowDefinition,
    WorkflowEdge,
    WorkflowNode,
)
from dagflow.core.state import Database, _json_or_none, _safe_json_dumps, _utc_now

logger = logging.getLogger(__name__)


class GraphStore:
    """Durable storage for workflow definitions and their graphs."""

    def __init__(self, db: Database):
        self.db = db

    def create_definition(self, data: DefinitionCreate) -> DefinitionWithGraph:
        """Create a definition together with its nodes and edges."""
        definition_id = str(uuid.uuid4())
        now = _utc_now().isoformat()
        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO workflow_definitions
                    (id, project_id, name, description, is_enabled, version,
                     created_by, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, 1, ?, ?, ?)
                """,
                (
                    definition_id,
                    data.project_id,
                    data.name,
                    data.description,
                    int(data.is_enabled),
                    data.created_by,
                    now,
                    now,
                ),
            )
            self._insert_graph(conn, definition_id, data.nodes, data.edges)

        problems = data.validate_graph()
        if problems:
            logger.warning(f"Definition '{data.name}' ({definition_id}) saved with problems: {problems}")
        return self.get_definition(definition_id)

    def get_definition(self, definition_id: str) -> DefinitionWithGraph | None:
        with self.db._connect() as conn:
            row = conn.execute(
                "SELECT * FROM workflow_definitions WHERE id = ?", (definition_id,)
            ).fetchone()
            if not row:
                return None
            node_rows = conn.execute(
                """
                SELECT * FROM workflow_nodes WHERE workflow_id = ?
                ORDER BY position_y, position_x, rowid
                """,
                (definition_id,),
            ).fetchall()
            edge_rows = conn.execute(
                "SELECT * FROM workflow_edges WHERE workflow_id = ? ORDER BY sort_order, rowid",
                (definition_id,),
            ).fetchall()

        return DefinitionWithGraph(
            **self._row_to_definition(row).model_dump(),
            nodes=[self._row_to_node(r) for r in node_rows],
            edges=[self._row_to_edge(r) for r in edge_rows],
        )

    def list_definitions(
        self,
        project_id: str | None = None,
        enabled: bool | None = None,
    ) -> list[WorkflowDefinition]:
        """List definitions, newest first.

        With a project id, returns that project's definitions plus global ones.
        """
        query = "SELECT * FROM workflow_definitions WHERE 1=1"
        params: list = []
        if project_id:
            query += " AND (project_id = ? OR project_id IS NULL)"
            params.append(project_id)
        if enabled is not None:
            query += " AND is_enabled = ?"
            params.append(int(enabled))
        query += " ORDER BY created_at DESC, rowid DESC"

        with self.db._connect() as conn:
            rows = conn.execute(query, params).fetchall()
            return [self._row_to_definition(r) for r in rows]

    def list_enabled_graphs(self) -> list[DefinitionWithGraph]:
        """Every enabled definition with its graph loaded."""
        graphs = []
        for definition in self.list_definitions(enabled=True):
            graph = self.get_definition(definition.id)
            if graph is not None:
                graphs.append(graph)
        return graphs

    def update_definition(
        self, definition_id: str, data: DefinitionUpdate
    ) -> DefinitionWithGraph | None:
        """Patch metadata and optionally replace the graph. Bumps version."""
        fields = data.model_fields_set
        sets = []
        params: list = []
        for column in ("name", "description", "project_id"):
            if column in fields:
                sets.append(f"{column} = ?")
                params.append(getattr(data, column))
        sets.append("version = version + 1")
        sets.append("updated_at = ?")
        params.append(_utc_now().isoformat())

        with self.db.transaction() as conn:
            exists = conn.execute(
                "SELECT 1 FROM workflow_definitions WHERE id = ?", (definition_id,)
            ).fetchone()
            if not exists:
                return None
            conn.execute(
                f"UPDATE workflow_definitions SET {', '.join(sets)} WHERE id = ?",
                (*params, definition_id),
            )
            if data.nodes is not None:
                conn.execute("DELETE FROM workflow_edges WHERE workflow_id = ?", (definition_id,))
                conn.execute("DELETE FROM workflow_nodes WHERE workflow_id = ?", (definition_id,))
                self._insert_graph(conn, definition_id, data.nodes, data.edges or [])

        return self.get_definition(definition_id)

    def delete_definition(self, definition_id: str) -> bool:
        """Delete a definition; nodes, edges and runs cascade."""
        with self.db._connect() as conn:
            return (
                conn.execute(
                    "DELETE FROM workflow_definitions WHERE id = ?", (definition_id,)
                ).rowcount
                > 0
            )

    def toggle_enabled(self, definition_id: str, enabled: bool) -> WorkflowDefinition | None:
        with self.db._connect() as conn:
            conn.execute(
                "UPDATE workflow_definitions SET is_enabled = ?, updated_at = ? WHERE id = ?",
                (int(enabled), _utc_now().isoformat(), definition_id),
            )
            row = conn.execute(
                "SELECT * FROM workflow_definitions WHERE id = ?", (definition_id,)
            ).fetchone()
            return self._row_to_definition(row) if row else None

    # --- Helpers ---

    def _insert_graph(
        self,
        conn: sqlite3.Connection,
        definition_id: str,
        nodes: list[NodeSpec],
        edges: list[EdgeSpec],
    ) -> None:
        now = _utc_now().isoformat()
        node_ids = []
        for node in nodes:
            node_id = str(uuid.uuid4())
            conn.execute(
                """
                INSERT INTO workflow_nodes
                    (id, workflow_id, node_type, name, config, position_x, position_y, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    node_id,
                    definition_id,
                    node.node_type,
                    node.name,
                    _safe_json_dumps(node.config),
                    node.position_x,
                    node.position_y,
                    now,
                ),
            )
            node_ids.append(node_id)

        for edge in edges:
            # Edges pointing outside the supplied node list are dropped
            if not (0 <= edge.source_index < len(node_ids) and 0 <= edge.target_index < len(node_ids)):
                logger.warning(
                    f"Dropping edge {edge.source_index}->{edge.target_index} of {definition_id}: "
                    "index out of range"
                )
                continue
            conn.execute(
                """
                INSERT INTO workflow_edges
                    (id, workflow_id, source_node_id, target_node_id, condition_expr, label, sort_order)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(uuid.uuid4()),
                    definition_id,
                    node_ids[edge.source_index],
                    node_ids[edge.target_index],
                    json.dumps(edge.condition_expr) if edge.condition_expr else None,
                    edge.label,
                    edge.sort_order,
                ),
            )

    def _row_to_definition(self, row: sqlite3.Row) -> WorkflowDefinition:
        return WorkflowDefinition(
            id=row["id"],
            project_id=row["project_id"],
            name=row["name"],
            description=row["description"],
            is_enabled=bool(row["is_enabled"]),
            version=row["version"],
            created_by=row["created_by"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _row_to_node(self, row: sqlite3.Row) -> WorkflowNode:
        return WorkflowNode(
            id=row["id"],
            workflow_id=row["workflow_id"],
            node_type=row["node_type"],
            name=row["name"],
            config=_json_or_none(row["config"]) or {},
            position_x=row["position_x"],
            position_y=row["position_y"],
            created_at=row["created_at"],
        )

    def _row_to_edge(self, row: sqlite3.Row) -> WorkflowEdge:
        return WorkflowEdge(
            id=row["id"],
            workflow_id=row["workflow_id"],
            source_node_id=row["source_node_id"],
            target_node_id=row["target_node_id"],
            condition_expr=_json_or_none(row["condition_expr"]),
            label=row["label"],
            sort_order=row["sort_order"],
        )
