"""Interfaces of the services the engine drives but does not own.

Task storage, project lookup, notifications, the agent registry and the
audit log all live outside this package. The engine only sees the
Protocols below; deployments pass concrete implementations in a
Collaborators bundle.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

logger = logging.getLogger(__name__)


@dataclass
class CallContext:
    """Who is calling an agent capability, and on whose behalf."""

    actor_id: str = "system"
    actor_type: str = "system"
    source: str = "system"
    project_id: str | None = None


@dataclass
class AgentResult:
    """Outcome of one agent capability invocation."""

    success: bool
    output: Any = None
    error: str | None = None
    duration_ms: int = 0


@dataclass
class NotificationRequest:
    user_id: str
    type: str
    severity: str
    title: str
    message: str
    project_id: str | None = None
    link_type: str | None = None
    link_id: str | None = None


@dataclass
class AuditRecord:
    """Immutable audit entry describing a run."""

    actor_id: str
    actor_type: str
    action: str
    entity_type: str
    entity_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    source: str = "system"


class TaskService(Protocol):
    """Entity lookup and mutation for tasks."""

    def find_task_by_id(self, task_id: str) -> dict[str, Any] | None: ...

    def update_task(self, task_id: str, changes: dict[str, Any]) -> Any: ...

    def log_activity(
        self,
        task_id: str,
        user_id: str,
        user_name: str,
        action: str,
        field_name: str | None,
        old_value: Any,
        description: str,
    ) -> Any: ...

    def find_schedule_by_id(self, schedule_id: str) -> dict[str, Any] | None: ...


class ProjectService(Protocol):
    def find_by_id(self, project_id: str) -> dict[str, Any] | None: ...


class NotificationService(Protocol):
    def create(self, request: NotificationRequest) -> Any: ...


class AgentRegistry(Protocol):
    """Registry of pluggable agent capabilities."""

    def invoke(
        self, capability_id: str, input_data: dict[str, Any], context: CallContext
    ) -> AgentResult: ...


class AuditLog(Protocol):
    def append(self, record: AuditRecord) -> Any: ...


@dataclass
class Collaborators:
    """Bundle of external services handed to the engine."""

    tasks: TaskService
    projects: ProjectService
    notifications: NotificationService
    agents: AgentRegistry
    audit: AuditLog


# --- Best-effort calls ---


@dataclass
class BestEffortResult:
    """Result of a call whose failure must not affect the caller.

    ``ok`` is False when the call raised; the exception is kept in ``error``
    and has already been logged.
    """

    ok: bool
    value: Any = None
    error: Exception | None = None


def best_effort(
    func: Callable[..., Any],
    *args: Any,
    description: str = "",
    **kwargs: Any,
) -> BestEffortResult:
    """Call ``func``, capturing and logging any exception instead of raising."""
    try:
        return BestEffortResult(ok=True, value=func(*args, **kwargs))
    except Exception as e:
        logger.warning(f"Best-effort call failed ({description or func!r}): {e}")
        return BestEffortResult(ok=False, error=e)
