"""Run-time data models for workflow executions.

Uses Pydantic for rows read back from the state database.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class ExecutionStatus(str, Enum):
    """Status of a workflow run."""

    RUNNING = "running"
    WAITING = "waiting"  # Suspended at an approval/delay node
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            ExecutionStatus.COMPLETED,
            ExecutionStatus.FAILED,
            ExecutionStatus.CANCELLED,
        )


class NodeStatus(str, Enum):
    """Execution status for a single node within a run"""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    WAITING = "waiting"

    @property
    def is_terminal(self) -> bool:
        return self in (NodeStatus.COMPLETED, NodeStatus.FAILED, NodeStatus.SKIPPED)


class WorkflowExecution(BaseModel):
    """One run of a definition for a specific triggering event."""

    id: str
    workflow_id: str
    trigger_node_id: str
    entity_type: str
    entity_id: str
    status: ExecutionStatus
    context: dict[str, Any] = Field(default_factory=dict)
    started_at: datetime
    completed_at: datetime | None = None
    error_message: str | None = None


class NodeExecution(BaseModel):
    """Recorded state of one node within one run."""

    id: str
    execution_id: str
    node_id: str
    status: NodeStatus
    input_data: dict[str, Any] | None = None
    output_data: Any = None
    error_message: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


class ExecutionWithNodes(WorkflowExecution):
    """A run together with its node executions (ordered by start time)."""

    node_executions: list[NodeExecution] = Field(default_factory=list)

    def node_statuses(self) -> dict[str, NodeStatus]:
        """Latest status per node id."""
        return {ne.node_id: ne.status for ne in self.node_executions}


class ExecutionFilters(BaseModel):
    """Filters for listing runs."""

    workflow_id: str | None = None
    entity_type: str | None = None
    entity_id: str | None = None
    status: ExecutionStatus | None = None
    limit: int | None = None
