"""In-process collaborators for running the engine from the command line.

The real task, project, notification and agent services live outside this
package. For administrative use the CLI wires these stand-ins: entities
come from an optional snapshot file, and every side effect is logged and
recorded instead of being applied anywhere.

Snapshot file format (YAML or JSON)::

    tasks:
      t-1: {id: t-1, name: Pour foundation, status: in_progress, scheduleId: s-1}
    schedules:
      s-1: {id: s-1, projectId: p-1}
    projects:
      p-1: {id: p-1, projectManagerId: u-7}
"""

import logging
from pathlib import Path
from typing import Any

import yaml

from dagflow.core.collaborators import (
    AgentResult,
    AuditRecord,
    CallContext,
    Collaborators,
    NotificationRequest,
)

logger = logging.getLogger(__name__)


class SnapshotError(Exception):
    """Snapshot file could not be loaded."""

    pass


class SnapshotTaskService:
    """Serves tasks and schedules from a snapshot; writes are only recorded."""

    def __init__(
        self,
        tasks: dict[str, dict[str, Any]] | None = None,
        schedules: dict[str, dict[str, Any]] | None = None,
    ):
        self.tasks = tasks or {}
        self.schedules = schedules or {}
        self.updates: list[tuple[str, dict[str, Any]]] = []
        self.activities: list[dict[str, Any]] = []

    def find_task_by_id(self, task_id: str) -> dict[str, Any] | None:
        return self.tasks.get(task_id)

    def update_task(self, task_id: str, changes: dict[str, Any]) -> None:
        logger.info(f"[dry-run] update task {task_id}: {changes}")
        self.updates.append((task_id, changes))

    def log_activity(
        self,
        task_id: str,
        user_id: str,
        user_name: str,
        action: str,
        field_name: str | None,
        old_value: Any,
        description: str,
    ) -> None:
        logger.info(f"[dry-run] activity on task {task_id}: {description}")
        self.activities.append(
            {"task_id": task_id, "user_id": user_id, "action": action, "description": description}
        )

    def find_schedule_by_id(self, schedule_id: str) -> dict[str, Any] | None:
        return self.schedules.get(schedule_id)


class SnapshotProjectService:
    def __init__(self, projects: dict[str, dict[str, Any]] | None = None):
        self.projects = projects or {}

    def find_by_id(self, project_id: str) -> dict[str, Any] | None:
        return self.projects.get(project_id)


class LoggingNotificationService:
    def __init__(self):
        self.sent: list[NotificationRequest] = []

    def create(self, request: NotificationRequest) -> None:
        logger.info(
            f"[dry-run] notify {request.user_id} ({request.severity}): {request.title}"
        )
        self.sent.append(request)


class UnavailableAgentRegistry:
    """No agent capabilities are reachable from the CLI; every call fails."""

    def invoke(
        self, capability_id: str, input_data: dict[str, Any], context: CallContext
    ) -> AgentResult:
        logger.warning(f"Agent '{capability_id}' requested but no agent registry is configured")
        return AgentResult(
            success=False, error=f"No agent registry configured for '{capability_id}'"
        )


class LoggingAuditLog:
    def __init__(self):
        self.records: list[AuditRecord] = []

    def append(self, record: AuditRecord) -> None:
        logger.info(f"[audit] {record.action} {record.entity_type}:{record.entity_id} {record.payload}")
        self.records.append(record)


def load_snapshot(path: Path) -> dict[str, dict[str, dict[str, Any]]]:
    """Read a snapshot file into ``{"tasks": ..., "schedules": ..., "projects": ...}``."""
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except OSError as e:
        raise SnapshotError(f"Cannot read snapshot {path}: {e}") from e
    except yaml.YAMLError as e:
        raise SnapshotError(f"Invalid snapshot {path}: {e}") from e
    if not isinstance(data, dict):
        raise SnapshotError(f"Snapshot {path} must contain a mapping")

    snapshot = {}
    for section in ("tasks", "schedules", "projects"):
        entries = data.get(section) or {}
        if not isinstance(entries, dict):
            raise SnapshotError(f"Snapshot section '{section}' must map ids to records")
        records = {}
        for key, value in entries.items():
            if value is not None and not isinstance(value, dict):
                raise SnapshotError(f"Snapshot record '{section}.{key}' must be a mapping")
            # Records default their id to the mapping key
            records[str(key)] = {"id": str(key), **(value or {})}
        snapshot[section] = records
    return snapshot


def standalone_collaborators(snapshot_path: Path | None = None) -> Collaborators:
    snapshot = load_snapshot(snapshot_path) if snapshot_path else {}
    return Collaborators(
        tasks=SnapshotTaskService(snapshot.get("tasks"), snapshot.get("schedules")),
        projects=SnapshotProjectService(snapshot.get("projects")),
        notifications=LoggingNotificationService(),
        agents=UnavailableAgentRegistry(),
        audit=LoggingAuditLog(),
    )
