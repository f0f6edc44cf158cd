"""Per-type node handlers.

Each node kind is executed by a NodeHandler returning a NodeResult. The
handler decides what the node produces; the engine owns persistence and
graph traversal:

- ADVANCE: the node finished (completed or skipped), continue along all
  outgoing edges.
- BRANCHED: the node picked its own followers (condition nodes).
- SUSPEND: the run waits for an explicit resume.

Handlers raise on execution errors; the engine records the failure.
"""

import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from dagflow.core.actions import ActionDispatcher
from dagflow.core.collaborators import AgentRegistry, CallContext
from dagflow.core.conditions import evaluate_condition
from dagflow.core.graph_schema import DefinitionWithGraph, NodeType, WorkflowEdge, WorkflowNode
from dagflow.core.models import NodeStatus
from dagflow.core.templates import resolve_templates
from dagflow.core.utils import is_number

logger = logging.getLogger(__name__)


class WorkflowError(Exception):
    """Base error for workflow execution failures."""

    pass


class AgentInvocationError(WorkflowError):
    """Every attempt of an agent node failed."""

    pass


class NodeOutcome(str, Enum):
    ADVANCE = "advance"
    BRANCHED = "branched"
    SUSPEND = "suspend"


@dataclass
class NodeResult:
    outcome: NodeOutcome
    status: NodeStatus = NodeStatus.COMPLETED
    output: Any = None
    follow: list[WorkflowEdge] = field(default_factory=list)


@dataclass
class RunContext:
    """State of one walk through a definition.

    Created fresh by every start or resume and never shared between runs.
    """

    run_id: str
    definition: DefinitionWithGraph
    entity: dict[str, Any] | None
    node_outputs: dict[str, Any] = field(default_factory=dict)
    visited: set[str] = field(default_factory=set)
    adjacency: dict[str, list[WorkflowEdge]] = field(default_factory=dict)
    node_map: dict[str, WorkflowNode] = field(default_factory=dict)

    @classmethod
    def for_definition(
        cls,
        run_id: str,
        definition: DefinitionWithGraph,
        entity: dict[str, Any] | None,
    ) -> "RunContext":
        return cls(
            run_id=run_id,
            definition=definition,
            entity=entity,
            adjacency=definition.adjacency(),
            node_map={n.id: n for n in definition.nodes},
        )

    def outgoing(self, node_id: str) -> list[WorkflowEdge]:
        return self.adjacency.get(node_id, [])


class NodeHandler(ABC):
    """Executes one kind of node."""

    @abstractmethod
    def execute(self, node: WorkflowNode, ctx: RunContext) -> NodeResult:
        pass


class ConditionHandler(NodeHandler):
    """Evaluates the node's comparison and selects the matching branch.

    Unlabelled edges are always followed; labelled edges only when the label
    is "yes" for a true result or "no" for a false one.
    """

    def execute(self, node: WorkflowNode, ctx: RunContext) -> NodeResult:
        result = evaluate_condition(node.config, ctx.entity)
        branch = "yes" if result else "no"
        follow = [e for e in ctx.outgoing(node.id) if not e.label or e.label == branch]
        return NodeResult(NodeOutcome.BRANCHED, output={"result": result}, follow=follow)


class ActionHandler(NodeHandler):
    def __init__(self, dispatcher: ActionDispatcher):
        self.dispatcher = dispatcher

    def execute(self, node: WorkflowNode, ctx: RunContext) -> NodeResult:
        config = resolve_templates(node.config, ctx.node_outputs, ctx.entity)
        output = self.dispatcher.dispatch(config, ctx.entity)
        return NodeResult(NodeOutcome.ADVANCE, output=output)


@dataclass
class AgentRetryPolicy:
    """Bounded retry with linear backoff for agent invocations."""

    retries: int = 0
    backoff_ms: int = 1000

    @property
    def max_attempts(self) -> int:
        return 1 + self.retries

    def get_delay(self, attempt: int) -> float:
        """Seconds to wait before ``attempt`` (0 = first try, no wait)."""
        return self.backoff_ms * attempt / 1000.0

    @classmethod
    def from_config(cls, config: dict[str, Any], default_backoff_ms: int) -> "AgentRetryPolicy":
        retries = config.get("retries")
        backoff = config.get("backoffMs")
        # Malformed values fall back to defaults instead of failing the run
        return cls(
            retries=max(int(retries), 0) if is_number(retries) else 0,
            backoff_ms=max(int(backoff), 0) if is_number(backoff) else default_backoff_ms,
        )


class AgentHandler(NodeHandler):
    """Invokes an agent capability, retrying failed attempts.

    An attempt fails when the registry reports ``success=False`` or raises.
    The input is re-resolved before every attempt.
    """

    def __init__(
        self,
        agents: AgentRegistry,
        default_backoff_ms: int = 1000,
        system_actor: str = "system",
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.agents = agents
        self.default_backoff_ms = default_backoff_ms
        self.system_actor = system_actor
        self.sleep = sleep

    def execute(self, node: WorkflowNode, ctx: RunContext) -> NodeResult:
        capability_id = node.config.get("capabilityId")
        policy = AgentRetryPolicy.from_config(node.config, self.default_backoff_ms)
        call_context = CallContext(
            actor_id=self.system_actor,
            actor_type="system",
            source="system",
            project_id=node.config.get("projectId"),
        )

        last_error = "Agent invocation failed"
        for attempt in range(policy.max_attempts):
            if attempt > 0:
                delay = policy.get_delay(attempt)
                logger.info(
                    f"Retrying agent '{capability_id}' (attempt {attempt + 1}/"
                    f"{policy.max_attempts}) after {delay:.1f}s"
                )
                self.sleep(delay)

            input_data = resolve_templates(node.config.get("input") or {}, ctx.node_outputs, ctx.entity)
            try:
                result = self.agents.invoke(capability_id, input_data, call_context)
            except Exception as e:
                last_error = str(e) or type(e).__name__
                logger.warning(f"Agent '{capability_id}' raised on attempt {attempt + 1}: {e}")
                continue

            if result.success:
                return NodeResult(
                    NodeOutcome.ADVANCE,
                    output={"agentOutput": result.output, "durationMs": result.duration_ms},
                )
            last_error = result.error or "Agent invocation failed"
            logger.warning(f"Agent '{capability_id}' failed on attempt {attempt + 1}: {last_error}")

        raise AgentInvocationError(last_error)


class SuspendHandler(NodeHandler):
    """Approval and delay nodes: wait until resumed from outside."""

    def execute(self, node: WorkflowNode, ctx: RunContext) -> NodeResult:
        return NodeResult(NodeOutcome.SUSPEND, status=NodeStatus.WAITING)


class SkipHandler(NodeHandler):
    """Pass-through for node types the engine does not execute."""

    def execute(self, node: WorkflowNode, ctx: RunContext) -> NodeResult:
        logger.debug(f"Skipping node '{node.id}' of type '{node.node_type}'")
        return NodeResult(NodeOutcome.ADVANCE, status=NodeStatus.SKIPPED)


def build_handlers(
    dispatcher: ActionDispatcher,
    agents: AgentRegistry,
    default_backoff_ms: int = 1000,
    system_actor: str = "system",
    sleep: Callable[[float], None] = time.sleep,
) -> dict[str, NodeHandler]:
    """Handlers keyed by node type. Types without an entry (including
    ``trigger`` reached mid-graph) are skipped."""
    suspend = SuspendHandler()
    return {
        NodeType.CONDITION.value: ConditionHandler(),
        NodeType.ACTION.value: ActionHandler(dispatcher),
        NodeType.AGENT.value: AgentHandler(agents, default_backoff_ms, system_actor, sleep),
        NodeType.APPROVAL.value: suspend,
        NodeType.DELAY.value: suspend,
    }
