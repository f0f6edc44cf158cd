"""Workflow execution engine.

Coordinates:
- Trigger matching for task and project events
- Run creation and the recursive graph walk
- Node dispatch through per-type handlers
- Suspension at approval/delay nodes and resumption from persisted rows
- Run completion, failure and cancellation

Walks are synchronous: a single event starts zero or more runs, and each is
walked until it completes, fails or suspends before control returns. Sibling
edges are visited one at a time in ascending sort order. Nothing is kept in
memory between a suspension and its resume; resume rebuilds the run state
from the node execution rows.
"""

import logging
import time
from collections.abc import Callable
from datetime import datetime
from typing import Any

from dagflow.core.actions import ActionDispatcher
from dagflow.core.collaborators import AuditRecord, Collaborators, best_effort
from dagflow.core.conditions import evaluate_condition
from dagflow.core.config import EngineConfig
from dagflow.core.graph_schema import DefinitionWithGraph, WorkflowEdge, WorkflowNode
from dagflow.core.models import (
    ExecutionFilters,
    ExecutionStatus,
    ExecutionWithNodes,
    NodeStatus,
    WorkflowExecution,
)
from dagflow.core.nodes import (
    NodeOutcome,
    RunContext,
    SkipHandler,
    WorkflowError,
    build_handlers,
)
from dagflow.core.state import Database
from dagflow.core.store import GraphStore
from dagflow.core.triggers import matches_project_trigger, matches_trigger

logger = logging.getLogger(__name__)

ENTITY_TASK = "task"
ENTITY_UNKNOWN = "unknown"
AUDIT_ACTION = "workflow.execute"


class CycleDetectedError(WorkflowError):
    """A run reached a node it had already visited."""

    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"Cycle detected at node '{node_id}'")


class _RunAborted(Exception):
    """Internal: a node failed and the failure is already recorded."""

    pass


def _entity_id(entity: dict[str, Any] | None) -> str:
    if entity is None or entity.get("id") is None:
        return ""
    return str(entity["id"])


def _initial_context(entity: dict[str, Any] | None) -> dict[str, Any]:
    if entity is None:
        return {}
    progress = entity.get("progressPercentage")
    return {
        "taskId": entity.get("id"),
        "taskName": entity.get("name"),
        "status": entity.get("status"),
        "progress": progress if progress is not None else entity.get("progress"),
    }


class WorkflowEngine:
    """Starts, walks, suspends and resumes workflow runs."""

    def __init__(
        self,
        db: Database,
        services: Collaborators,
        config: EngineConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.db = db
        self.store = GraphStore(db)
        self.services = services
        self.config = config or EngineConfig()
        self.dispatcher = ActionDispatcher(services, system_actor=self.config.system_actor)
        self.handlers = build_handlers(
            self.dispatcher,
            services.agents,
            default_backoff_ms=self.config.default_backoff_ms,
            system_actor=self.config.system_actor,
            sleep=sleep,
        )
        self._skip = SkipHandler()

    # ========== Event entry points ==========

    def evaluate_task_change(
        self,
        new_task: dict[str, Any],
        old_task: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> list[str]:
        """Start a run for every enabled trigger node the change satisfies.

        Every enabled definition is considered, whatever its project scope.
        Errors are logged and never raised, so the task write that caused
        the event is never affected.

        Returns:
            Ids of the runs that were started.
        """
        started: list[str] = []
        try:
            definitions = self.store.list_enabled_graphs()
        except Exception:
            logger.exception("Failed to load workflow definitions for task change")
            return started

        for definition in definitions:
            for trigger in definition.trigger_nodes():
                try:
                    if matches_trigger(trigger.config, new_task, old_task, now=now):
                        started.append(self.start(definition, trigger, new_task).id)
                except Exception:
                    logger.exception(
                        f"Workflow '{definition.name}' failed to start for task "
                        f"{_entity_id(new_task)!r}"
                    )
        return started

    def evaluate_project_change(
        self,
        project_id: str,
        change_type: str,
        data: dict[str, Any],
    ) -> list[str]:
        """Start runs for project-level triggers (budget, project status).

        Runs started here have no entity. Errors are logged, never raised.
        """
        started: list[str] = []
        try:
            definitions = self.store.list_enabled_graphs()
        except Exception:
            logger.exception(f"Failed to load workflow definitions for project {project_id}")
            return started

        for definition in definitions:
            for trigger in definition.trigger_nodes():
                try:
                    if matches_project_trigger(trigger.config, change_type, data):
                        logger.info(
                            f"Project {project_id} {change_type} fired workflow '{definition.name}'"
                        )
                        started.append(self.start(definition, trigger, None).id)
                except Exception:
                    logger.exception(
                        f"Workflow '{definition.name}' failed to start for project {project_id}"
                    )
        return started

    def trigger_manual(
        self,
        definition_id: str,
        entity_type: str,
        entity_id: str,
    ) -> ExecutionWithNodes | None:
        """Run a definition from its first trigger node.

        Returns None if the definition does not exist or has no trigger node.
        For ``entity_type == "task"`` the entity is loaded from the task service.
        """
        definition = self.store.get_definition(definition_id)
        if definition is None:
            return None
        triggers = definition.trigger_nodes()
        if not triggers:
            logger.warning(f"Definition {definition_id} has no trigger node, cannot run manually")
            return None

        entity = None
        if entity_type == ENTITY_TASK:
            entity = self.services.tasks.find_task_by_id(entity_id)
            if entity is None:
                logger.info(f"Task {entity_id} not found, running without an entity")
        return self.start(definition, triggers[0], entity)

    # ========== Run lifecycle ==========

    def start(
        self,
        definition: DefinitionWithGraph,
        trigger_node: WorkflowNode,
        entity: dict[str, Any] | None,
    ) -> ExecutionWithNodes:
        """Create a run for ``trigger_node`` and walk it until it settles."""
        run_id = self.db.create_execution(
            definition.id,
            trigger_node.id,
            ENTITY_TASK if entity is not None else ENTITY_UNKNOWN,
            _entity_id(entity),
            _initial_context(entity),
        )
        self.db.create_node_execution(run_id, trigger_node.id, NodeStatus.COMPLETED)
        logger.info(f"Started run {run_id} of '{definition.name}' from trigger '{trigger_node.name}'")

        ctx = RunContext.for_definition(run_id, definition, entity)
        ctx.visited.add(trigger_node.id)
        self._walk(ctx, trigger_node.id)

        run = self.get_execution(run_id)
        self._audit(definition, trigger_node, entity, run)
        return run

    def resume_execution(
        self,
        execution_id: str,
        node_id: str,
        result: Any = None,
    ) -> ExecutionWithNodes | None:
        """Complete a waiting node with ``result`` and continue the run.

        Returns None unless the run exists and is waiting. If the node is not
        waiting (already resumed, or never suspended) nothing changes and the
        current run state is returned.
        """
        run = self.db.get_execution(execution_id)
        if run is None or run.status != ExecutionStatus.WAITING:
            return None
        definition = self.store.get_definition(run.workflow_id)
        if definition is None:
            logger.warning(f"Definition {run.workflow_id} of run {execution_id} no longer exists")
            return None

        entity = None
        if run.entity_type == ENTITY_TASK and run.entity_id:
            entity = self.services.tasks.find_task_by_id(run.entity_id)

        if not self.db.resume_node_execution(execution_id, node_id, result):
            logger.info(f"Node '{node_id}' of run {execution_id} is not waiting, resume ignored")
            return self.get_execution(execution_id)

        ctx = RunContext.for_definition(execution_id, definition, entity)
        for node_exec in self.db.get_node_executions(execution_id):
            if node_exec.status in (NodeStatus.COMPLETED, NodeStatus.SKIPPED):
                ctx.visited.add(node_exec.node_id)
                if node_exec.status == NodeStatus.COMPLETED and node_exec.output_data is not None:
                    ctx.node_outputs[node_exec.node_id] = node_exec.output_data
        ctx.visited.add(node_id)
        ctx.node_outputs[node_id] = result
        self.db.update_execution_context(execution_id, ctx.node_outputs)

        logger.info(f"Resumed run {execution_id} at node '{node_id}'")
        self._walk(ctx, node_id)
        return self.get_execution(execution_id)

    def cancel_execution(self, execution_id: str) -> ExecutionWithNodes | None:
        """Cancel a running or waiting run; its waiting nodes become skipped."""
        run = self.db.get_execution(execution_id)
        if run is None:
            return None
        if self.db.set_execution_status(
            execution_id,
            ExecutionStatus.CANCELLED,
            expected=(ExecutionStatus.RUNNING, ExecutionStatus.WAITING),
        ):
            self.db.skip_waiting_node_executions(execution_id)
            logger.info(f"Cancelled run {execution_id}")
        return self.get_execution(execution_id)

    # ========== Queries ==========

    def get_execution(self, execution_id: str) -> ExecutionWithNodes | None:
        run = self.db.get_execution(execution_id)
        if run is None:
            return None
        return ExecutionWithNodes(
            **run.model_dump(),
            node_executions=self.db.get_node_executions(execution_id),
        )

    def list_executions(self, filters: ExecutionFilters | None = None) -> list[WorkflowExecution]:
        filters = filters or ExecutionFilters()
        if filters.limit is None:
            filters = filters.model_copy(update={"limit": self.config.list_limit})
        return self.db.list_executions(filters)

    # ========== Graph walk ==========

    def _walk(self, ctx: RunContext, from_node_id: str) -> None:
        """Advance from a node, then settle the run's status."""
        try:
            self._advance(ctx, from_node_id)
        except CycleDetectedError as e:
            logger.error(f"Run {ctx.run_id}: {e}")
            self.db.set_execution_status(
                ctx.run_id,
                ExecutionStatus.FAILED,
                error=str(e),
                expected=(ExecutionStatus.RUNNING, ExecutionStatus.WAITING),
            )
        except _RunAborted:
            pass
        self._settle(ctx.run_id)

    def _advance(self, ctx: RunContext, from_node_id: str) -> None:
        for edge in ctx.outgoing(from_node_id):
            if edge.target_node_id in ctx.visited:
                raise CycleDetectedError(edge.target_node_id)
            if edge.condition_expr and not evaluate_condition(edge.condition_expr, ctx.entity):
                logger.debug(f"Edge {edge.id} condition not met, branch not taken")
                continue
            self._visit(ctx, edge)

    def _follow_branch(self, ctx: RunContext, edges: list[WorkflowEdge]) -> None:
        """Follow the edges a condition node selected. Visited targets are passed over."""
        for edge in edges:
            if edge.target_node_id in ctx.visited:
                continue
            self._visit(ctx, edge)

    def _visit(self, ctx: RunContext, edge: WorkflowEdge) -> None:
        target = ctx.node_map.get(edge.target_node_id)
        if target is None:
            return
        ctx.visited.add(target.id)
        self._execute_node(ctx, target)

    def _execute_node(self, ctx: RunContext, node: WorkflowNode) -> None:
        input_data = {"taskId": ctx.entity.get("id")} if ctx.entity is not None else None
        node_exec_id = self.db.create_node_execution(
            ctx.run_id, node.id, NodeStatus.RUNNING, input_data
        )
        handler = self.handlers.get(node.node_type, self._skip)

        try:
            result = handler.execute(node, ctx)
            if result.outcome == NodeOutcome.SUSPEND:
                self.db.suspend_node_execution(node_exec_id, ctx.run_id)
                logger.info(f"Run {ctx.run_id} waiting at '{node.name}' ({node.id})")
                return
            # Recording the output is part of the node: an unserialisable value fails it
            self.db.finish_node_execution(node_exec_id, result.status, output=result.output)
            if result.output is not None:
                ctx.node_outputs[node.id] = result.output
            self.db.update_execution_context(ctx.run_id, ctx.node_outputs)
        except Exception as e:
            message = str(e) or type(e).__name__
            logger.error(f"Run {ctx.run_id}: node '{node.name}' ({node.id}) failed: {message}")
            ctx.node_outputs.pop(node.id, None)
            self.db.finish_node_execution(node_exec_id, NodeStatus.FAILED, error=message)
            self.db.set_execution_status(ctx.run_id, ExecutionStatus.FAILED, error=message)
            raise _RunAborted(message) from e

        if result.outcome == NodeOutcome.BRANCHED:
            self._follow_branch(ctx, result.follow)
        else:
            self._advance(ctx, node.id)

    def _settle(self, execution_id: str) -> None:
        """Derive the final status of a run whose walk has unwound.

        Only a running run is touched. Any waiting node keeps the run waiting;
        otherwise, once every node is terminal, the run completes (or fails if
        any node failed).
        """
        run = self.db.get_execution(execution_id)
        if run is None or run.status != ExecutionStatus.RUNNING:
            return

        statuses = [ne.status for ne in self.db.get_node_executions(execution_id)]
        if NodeStatus.WAITING in statuses:
            self.db.set_execution_status(
                execution_id, ExecutionStatus.WAITING, expected=(ExecutionStatus.RUNNING,)
            )
        elif all(status.is_terminal for status in statuses):
            final = (
                ExecutionStatus.FAILED
                if NodeStatus.FAILED in statuses
                else ExecutionStatus.COMPLETED
            )
            self.db.set_execution_status(execution_id, final, expected=(ExecutionStatus.RUNNING,))
            logger.info(f"Run {execution_id} {final.value}")

    def _audit(
        self,
        definition: DefinitionWithGraph,
        trigger_node: WorkflowNode,
        entity: dict[str, Any] | None,
        run: ExecutionWithNodes | None,
    ) -> None:
        record = AuditRecord(
            actor_id=self.config.system_actor,
            actor_type="system",
            action=AUDIT_ACTION,
            entity_type="workflow",
            entity_id=definition.id,
            payload={
                "executionId": run.id if run else None,
                "workflowName": definition.name,
                "triggerNode": trigger_node.name,
                "entityType": ENTITY_TASK if entity is not None else ENTITY_UNKNOWN,
                "entityId": _entity_id(entity),
                "status": run.status.value if run else "unknown",
            },
            source="system",
        )
        best_effort(self.services.audit.append, record, description=AUDIT_ACTION)
