# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the dagflow test suite.

This module provides:
- A temporary SQLite state database and graph store
- Recording fakes for the external collaborators (tasks, projects,
  notifications, agents, audit log)
- An engine wired to those fakes with a recording sleep
- Builders for tasks and definitions

Usage:
    Fixtures are discovered by pytest automatically.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable

import pytest

from dagflow.core.collaborators import (
    AgentResult,
    AuditRecord,
    CallContext,
    Collaborators,
    NotificationRequest,
)
from dagflow.core.config import EngineConfig
from dagflow.core.engine import WorkflowEngine
from dagflow.core.graph_schema import DefinitionCreate, DefinitionWithGraph, EdgeSpec, NodeSpec
from dagflow.core.state import Database
from dagflow.core.store import GraphStore

# =============================================================================
# Database Fixtures
# =============================================================================


@pytest.fixture
def test_db(tmp_path: Path) -> Database:
    """Create a fresh state database in a temporary directory."""
    return Database(tmp_path / ".dagflow" / "state.db")


@pytest.fixture
def store(test_db: Database) -> GraphStore:
    return GraphStore(test_db)


# =============================================================================
# Collaborator Fakes
# =============================================================================


class FakeTaskService:
    """In-memory task service recording every mutation."""

    def __init__(self):
        self.tasks: dict[str, dict[str, Any]] = {}
        self.schedules: dict[str, dict[str, Any]] = {}
        self.updates: list[tuple[str, dict[str, Any]]] = []
        self.activities: list[tuple] = []

    def find_task_by_id(self, task_id: str) -> dict[str, Any] | None:
        return self.tasks.get(task_id)

    def update_task(self, task_id: str, changes: dict[str, Any]) -> None:
        self.updates.append((task_id, changes))

    def log_activity(self, task_id, user_id, user_name, action, field_name, old_value, description):
        self.activities.append((task_id, user_id, user_name, action, field_name, old_value, description))

    def find_schedule_by_id(self, schedule_id: str) -> dict[str, Any] | None:
        return self.schedules.get(schedule_id)


class FakeProjectService:
    def __init__(self):
        self.projects: dict[str, dict[str, Any]] = {}

    def find_by_id(self, project_id: str) -> dict[str, Any] | None:
        return self.projects.get(project_id)


class FakeNotificationService:
    def __init__(self):
        self.sent: list[NotificationRequest] = []

    def create(self, request: NotificationRequest) -> None:
        self.sent.append(request)


class FakeAgentRegistry:
    """Agent registry returning scripted results in order.

    Each scripted item is an AgentResult or an exception to raise. Once the
    script is exhausted every call succeeds with ``{"ok": True}``.
    """

    def __init__(self):
        self.script: list[AgentResult | Exception] = []
        self.calls: list[tuple[str, dict[str, Any], CallContext]] = []

    def invoke(self, capability_id: str, input_data: dict[str, Any], context: CallContext) -> AgentResult:
        self.calls.append((capability_id, input_data, context))
        if self.script:
            item = self.script.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        return AgentResult(success=True, output={"ok": True}, duration_ms=5)


class FakeAuditLog:
    def __init__(self):
        self.records: list[AuditRecord] = []

    def append(self, record: AuditRecord) -> None:
        self.records.append(record)


@pytest.fixture
def services() -> Collaborators:
    """Collaborator bundle made of recording fakes."""
    return Collaborators(
        tasks=FakeTaskService(),
        projects=FakeProjectService(),
        notifications=FakeNotificationService(),
        agents=FakeAgentRegistry(),
        audit=FakeAuditLog(),
    )


@pytest.fixture
def sleeps() -> list[float]:
    """Delays requested by the engine (nothing actually sleeps)."""
    return []


@pytest.fixture
def engine(test_db: Database, services: Collaborators, sleeps: list[float]) -> WorkflowEngine:
    return WorkflowEngine(test_db, services, config=EngineConfig(), sleep=sleeps.append)


# =============================================================================
# Builders
# =============================================================================


@pytest.fixture
def make_task() -> Callable[..., dict[str, Any]]:
    """Factory for task snapshots.

    Example:
        task = make_task(status="in_progress", progressPercentage=40)
    """

    def _make(**overrides: Any) -> dict[str, Any]:
        task = {
            "id": "task-1",
            "name": "Pour foundation",
            "status": "not_started",
            "progressPercentage": 0,
            "priority": "medium",
            "assignedTo": None,
            "dependency": None,
            "scheduleId": "sched-1",
            "endDate": None,
        }
        task.update(overrides)
        return task

    return _make


@pytest.fixture
def make_definition(store: GraphStore) -> Callable[..., DefinitionWithGraph]:
    """Create and store a definition from compact node/edge tuples.

    Nodes are ``(node_type, name, config)``. Edges are ``(source, target)``
    index pairs, or ``(source, target, extras)`` where extras holds label,
    sort_order or condition_expr. Stored nodes keep list order, so
    ``definition.nodes[i]`` is node i.

    Example:
        definition = make_definition(
            nodes=[("trigger", "Start", {"triggerType": "manual"}),
                   ("action", "Log", {"actionType": "log_activity"})],
            edges=[(0, 1)],
        )
    """

    def _make(
        nodes: list[tuple[str, str, dict[str, Any]]],
        edges: list[tuple] = (),
        name: str = "Test workflow",
        **kwargs: Any,
    ) -> DefinitionWithGraph:
        node_specs = [
            NodeSpec(node_type=node_type, name=node_name, config=config, position_y=i * 100)
            for i, (node_type, node_name, config) in enumerate(nodes)
        ]
        edge_specs = []
        for edge in edges:
            extras = edge[2] if len(edge) > 2 else {}
            edge_specs.append(EdgeSpec(source_index=edge[0], target_index=edge[1], **extras))
        return store.create_definition(
            DefinitionCreate(name=name, nodes=node_specs, edges=edge_specs, **kwargs)
        )

    return _make

