"""Core modules for the dagflow workflow engine."""

from dagflow.core.collaborators import Collaborators
from dagflow.core.config import EngineConfig, load_config
from dagflow.core.engine import CycleDetectedError, WorkflowEngine
from dagflow.core.graph_schema import (
    DefinitionCreate,
    DefinitionUpdate,
    DefinitionWithGraph,
    EdgeSpec,
    NodeSpec,
    NodeType,
)
from dagflow.core.models import (
    ExecutionFilters,
    ExecutionStatus,
    ExecutionWithNodes,
    NodeStatus,
)
from dagflow.core.nodes import AgentInvocationError, WorkflowError
from dagflow.core.state import Database
from dagflow.core.store import GraphStore

__all__ = [
    "AgentInvocationError",
    "Collaborators",
    "CycleDetectedError",
    "Database",
    "DefinitionCreate",
    "DefinitionUpdate",
    "DefinitionWithGraph",
    "EdgeSpec",
    "EngineConfig",
    "ExecutionFilters",
    "ExecutionStatus",
    "ExecutionWithNodes",
    "GraphStore",
    "NodeSpec",
    "NodeStatus",
    "NodeType",
    "WorkflowEngine",
    "WorkflowError",
    "load_config",
]
