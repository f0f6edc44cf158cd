"""Workflow graph schema definitions using Pydantic models.

A workflow definition owns typed nodes (trigger, condition, action, approval,
delay, agent) and directed edges. Node configuration is an open map whose keys
are interpreted per node type; edges carry an optional condition expression,
an optional branch label ("yes"/"no" below condition nodes) and a sort order
that fixes the order in which sibling branches are visited.

Cycles are legal at the data level. validate_graph() reports them, and the
engine fails any run that reaches a node twice.
"""

from datetime import datetime
from enum import Enum
from typing import Any

import jsonschema
import networkx as nx
from pydantic import BaseModel, Field

from dagflow.core.actions import ActionType
from dagflow.core.conditions import Operator
from dagflow.core.triggers import TriggerType


class NodeType(str, Enum):
    """Supported node types in workflow graphs"""

    TRIGGER = "trigger"  # Starts a run when a domain event matches
    CONDITION = "condition"  # Yes/no branch on a field of the triggering entity
    ACTION = "action"  # Side effect via the action dispatcher
    APPROVAL = "approval"  # Suspends the run until resumed
    DELAY = "delay"  # Suspends the run until an external scheduler resumes it
    AGENT = "agent"  # External agent capability with retry/backoff


NODE_TYPES = frozenset(t.value for t in NodeType)


class WorkflowDefinition(BaseModel):
    """Definition metadata (without the graph)."""

    id: str
    project_id: str | None = None  # None = global definition
    name: str
    description: str | None = None
    is_enabled: bool = True
    version: int = 1
    created_by: str = "system"
    created_at: datetime | None = None
    updated_at: datetime | None = None


class WorkflowNode(BaseModel):
    """A node of a stored definition.

    node_type is kept as a plain string: rows written by newer editors may
    carry types this engine does not know, and those are skipped at run time
    rather than rejected on load.
    """

    id: str
    workflow_id: str
    node_type: str
    name: str
    config: dict[str, Any] = Field(default_factory=dict)
    position_x: int = 0
    position_y: int = 0
    created_at: datetime | None = None

    @property
    def is_trigger(self) -> bool:
        return self.node_type == NodeType.TRIGGER


class WorkflowEdge(BaseModel):
    """Directed edge between two nodes of the same definition."""

    id: str
    workflow_id: str
    source_node_id: str
    target_node_id: str
    condition_expr: dict[str, Any] | None = None  # {field, operator, value}
    label: str | None = None
    sort_order: int = 0


class DefinitionWithGraph(WorkflowDefinition):
    """Complete workflow definition including nodes and edges."""

    nodes: list[WorkflowNode] = Field(default_factory=list)
    edges: list[WorkflowEdge] = Field(default_factory=list)

    def get_node(self, node_id: str) -> WorkflowNode | None:
        return next((n for n in self.nodes if n.id == node_id), None)

    def trigger_nodes(self) -> list[WorkflowNode]:
        return [n for n in self.nodes if n.is_trigger]

    def adjacency(self) -> dict[str, list[WorkflowEdge]]:
        """Outgoing edges per source node, each list sorted by sort_order.

        sorted() is stable, so edges with equal sort_order keep storage order.
        """
        adj: dict[str, list[WorkflowEdge]] = {}
        for edge in self.edges:
            adj.setdefault(edge.source_node_id, []).append(edge)
        return {src: sorted(edges, key=lambda e: e.sort_order) for src, edges in adj.items()}

    def validate_graph(self) -> list[str]:
        """Validate graph structure and node configs. Returns list of validation problems."""
        errors = _validate_structure(
            [(n.id, n.node_type) for n in self.nodes],
            [(e.id, e.source_node_id, e.target_node_id) for e in self.edges],
        )
        return errors + _validate_configs(
            [(n.id, n.node_type, n.config) for n in self.nodes],
            [(e.id, e.condition_expr) for e in self.edges],
        )


# --- Create / update payloads ---


class NodeSpec(BaseModel):
    """Node as supplied by an editor; ids are assigned on insert."""

    node_type: str
    name: str
    config: dict[str, Any] = Field(default_factory=dict)
    position_x: int = 0
    position_y: int = 0


class EdgeSpec(BaseModel):
    """Edge referencing nodes by their index in the accompanying node list.

    Indexing into the same payload makes cross-definition edges impossible.
    """

    source_index: int
    target_index: int
    condition_expr: dict[str, Any] | None = None
    label: str | None = None
    sort_order: int = 0


class DefinitionCreate(BaseModel):
    """Payload for creating a definition together with its graph."""

    project_id: str | None = None
    name: str
    description: str | None = None
    created_by: str = "system"
    is_enabled: bool = True
    nodes: list[NodeSpec] = Field(default_factory=list)
    edges: list[EdgeSpec] = Field(default_factory=list)

    def validate_graph(self) -> list[str]:
        """Validate the payload graph, addressing nodes as '#<index>'."""
        errors = []
        node_count = len(self.nodes)
        pairs = []
        for i, edge in enumerate(self.edges):
            for side, index in (("source", edge.source_index), ("target", edge.target_index)):
                if not 0 <= index < node_count:
                    errors.append(f"Edge {i}: {side} index {index} out of range")
            pairs.append((str(i), f"#{edge.source_index}", f"#{edge.target_index}"))
        nodes = [(f"#{i}", n.node_type) for i, n in enumerate(self.nodes)]
        errors += _validate_structure(nodes, pairs, check_endpoints=False)
        return errors + _validate_configs(
            [(f"#{i}", n.node_type, n.config) for i, n in enumerate(self.nodes)],
            [(str(i), e.condition_expr) for i, e in enumerate(self.edges)],
        )


class DefinitionUpdate(BaseModel):
    """Partial update. Only fields explicitly set are applied.

    Supplying ``nodes`` replaces the whole graph (edges are taken from
    ``edges`` and indexed into the new node list).
    """

    name: str | None = None
    description: str | None = None
    project_id: str | None = None
    nodes: list[NodeSpec] | None = None
    edges: list[EdgeSpec] | None = None


# --- Structural validation ---

MAX_CYCLES_TO_REPORT = 20


def _validate_structure(
    nodes: list[tuple[str, str]],
    edges: list[tuple[str, str, str]],
    check_endpoints: bool = True,
) -> list[str]:
    errors = []

    seen_node_ids = set()
    for node_id, _ in nodes:
        if node_id in seen_node_ids:
            errors.append(f"Duplicate node ID: '{node_id}'")
        seen_node_ids.add(node_id)

    for node_id, node_type in nodes:
        if node_type not in NODE_TYPES:
            errors.append(f"Node '{node_id}': unknown node type '{node_type}' (will be skipped)")

    triggers = [node_id for node_id, node_type in nodes if node_type == NodeType.TRIGGER]
    if not triggers:
        errors.append("No trigger node: the workflow can never start")

    G = nx.DiGraph()
    G.add_nodes_from(seen_node_ids)
    for edge_id, source, target in edges:
        if source not in seen_node_ids or target not in seen_node_ids:
            if check_endpoints:
                errors.append(f"Edge {edge_id}: endpoint not found ({source} -> {target})")
            continue
        G.add_edge(source, target)

    # Only cycles a run can actually reach matter to the engine
    reachable: set[str] = set()
    for trigger in triggers:
        reachable |= nx.descendants(G, trigger) | {trigger}
    for count, cycle in enumerate(nx.simple_cycles(G.subgraph(reachable)), start=1):
        if count > MAX_CYCLES_TO_REPORT:
            errors.append(f"More than {MAX_CYCLES_TO_REPORT} cycles; simplify the graph")
            break
        errors.append(f"Cycle reachable from a trigger: {' -> '.join(cycle)} (runs will fail)")

    return errors


# --- Node config schemas ---

_NUMERIC = {"type": ["number", "string"]}

CONDITION_SCHEMA = {
    "type": "object",
    "required": ["field", "operator"],
    "properties": {
        "field": {"type": "string", "minLength": 1},
        "operator": {"enum": [op.value for op in Operator]},
    },
}

# Only keys the engine reads are constrained; editors may store extra keys.
NODE_CONFIG_SCHEMAS: dict[str, dict[str, Any]] = {
    NodeType.TRIGGER.value: {
        "type": "object",
        "required": ["triggerType"],
        "properties": {
            "triggerType": {"enum": [t.value for t in TriggerType]},
            "progressThreshold": _NUMERIC,
            "progressDirection": {"enum": ["above", "below"]},
            "thresholdPercent": _NUMERIC,
        },
    },
    NodeType.CONDITION.value: CONDITION_SCHEMA,
    NodeType.ACTION.value: {
        "type": "object",
        "required": ["actionType"],
        "properties": {
            "actionType": {"enum": [a.value for a in ActionType]},
            "field": {"type": "string"},
            "capabilityId": {"type": "string"},
            "input": {"type": "object"},
        },
    },
    NodeType.AGENT.value: {
        "type": "object",
        "required": ["capabilityId"],
        "properties": {
            "capabilityId": {"type": "string", "minLength": 1},
            "input": {"type": "object"},
            "retries": {"type": "integer", "minimum": 0},
            "backoffMs": {"type": "number", "minimum": 0},
            "projectId": {"type": "string"},
        },
    },
    NodeType.APPROVAL.value: {"type": "object"},
    NodeType.DELAY.value: {"type": "object"},
}


def _schema_errors(subject: str, instance: Any, schema: dict[str, Any]) -> list[str]:
    validator = jsonschema.Draft202012Validator(schema)
    errors = []
    for error in sorted(validator.iter_errors(instance), key=lambda e: list(e.absolute_path)):
        path = ".".join(str(p) for p in error.absolute_path)
        errors.append(f"{subject}: config{'.' + path if path else ''}: {error.message}")
    return errors


def _validate_configs(
    nodes: list[tuple[str, str, dict[str, Any]]],
    edge_conditions: list[tuple[str, dict[str, Any] | None]],
) -> list[str]:
    """Check node configs and edge conditions against the per-type schemas.

    Problems are reported, never fixed: the engine treats a bad config as a
    no-op (trigger never fires, action skipped) rather than an error.
    """
    errors = []
    for node_id, node_type, config in nodes:
        schema = NODE_CONFIG_SCHEMAS.get(node_type)
        if schema is not None:
            errors += _schema_errors(f"Node '{node_id}'", config, schema)
    for edge_id, condition in edge_conditions:
        if condition:
            errors += _schema_errors(f"Edge {edge_id} condition", condition, CONDITION_SCHEMA)
    return errors
