"""Side effects of ``action`` nodes.

The dispatcher receives a node config whose templates have already been
resolved and returns a JSON-serialisable payload that becomes the node's
recorded output. Unknown action types and incomplete configs are reported
as skipped rather than raised.
"""

import logging
from enum import Enum
from typing import Any

from dagflow.core.collaborators import (
    CallContext,
    Collaborators,
    NotificationRequest,
    best_effort,
)

logger = logging.getLogger(__name__)

DEFAULT_NOTIFICATION_TYPE = "workflow_action"
DEFAULT_SEVERITY = "medium"
DEFAULT_ACTIVITY_MESSAGE = "Workflow action executed"

# Identity recorded on activity lines written by workflows
WORKFLOW_USER_ID = "1"
WORKFLOW_USER_NAME = "Workflow"
WORKFLOW_ACTIVITY_ACTION = "workflow-action"


class ActionType(str, Enum):
    UPDATE_FIELD = "update_field"
    LOG_ACTIVITY = "log_activity"
    SEND_NOTIFICATION = "send_notification"
    INVOKE_AGENT = "invoke_agent"


class ActionDispatcher:
    """Executes action node configs against the external services."""

    def __init__(self, services: Collaborators, system_actor: str = "system"):
        self.services = services
        self.system_actor = system_actor

    def dispatch(self, config: dict[str, Any], entity: dict[str, Any] | None) -> dict[str, Any]:
        """Run the action named by ``config['actionType']``.

        Args:
            config: Resolved node configuration
            entity: Snapshot of the triggering task, or None

        Returns:
            Payload describing what was done (always contains ``action``).
        """
        action_type = config.get("actionType")
        handler = {
            ActionType.UPDATE_FIELD.value: self._update_field,
            ActionType.LOG_ACTIVITY.value: self._log_activity,
            ActionType.SEND_NOTIFICATION.value: self._send_notification,
            ActionType.INVOKE_AGENT.value: self._invoke_agent,
        }.get(action_type)
        if handler is None:
            logger.info(f"Skipping unknown action type: {action_type!r}")
            return {"action": action_type, "skipped": True}
        return handler(config, entity)

    def _update_field(self, config: dict[str, Any], entity: dict[str, Any] | None) -> dict[str, Any]:
        field_name = config.get("field")
        value = config.get("value")
        if entity is None or not field_name or value is None:
            return {"action": ActionType.UPDATE_FIELD.value, "skipped": True}
        self.services.tasks.update_task(entity["id"], {field_name: value})
        return {"action": ActionType.UPDATE_FIELD.value, "field": field_name, "value": value}

    def _log_activity(self, config: dict[str, Any], entity: dict[str, Any] | None) -> dict[str, Any]:
        message = config.get("message")
        if entity is not None:
            self.services.tasks.log_activity(
                entity["id"],
                WORKFLOW_USER_ID,
                WORKFLOW_USER_NAME,
                WORKFLOW_ACTIVITY_ACTION,
                None,
                None,
                message or DEFAULT_ACTIVITY_MESSAGE,
            )
        return {"action": ActionType.LOG_ACTIVITY.value, "message": message}

    def _send_notification(
        self, config: dict[str, Any], entity: dict[str, Any] | None
    ) -> dict[str, Any]:
        message = config.get("message")
        logger.info(
            f"Workflow notification: {message or 'Notification'} - "
            f"Task: {(entity or {}).get('name') or 'N/A'}"
        )
        outcome = best_effort(
            self._notify_project_owner, config, entity, description="send_notification"
        )
        notified = bool(outcome.ok and outcome.value)
        return {"action": ActionType.SEND_NOTIFICATION.value, "message": message, "notified": notified}

    def _notify_project_owner(self, config: dict[str, Any], entity: dict[str, Any] | None) -> bool:
        """Notify the manager (or creator) of the entity's project. False if nobody found."""
        project_id = None
        if entity is not None and entity.get("scheduleId"):
            schedule = self.services.tasks.find_schedule_by_id(entity["scheduleId"])
            project_id = (schedule or {}).get("projectId")
        project_id = project_id or config.get("projectId")
        if not project_id:
            return False

        project = self.services.projects.find_by_id(project_id) or {}
        user_id = project.get("projectManagerId") or project.get("createdBy")
        if not user_id:
            return False

        message = config.get("message")
        self.services.notifications.create(
            NotificationRequest(
                user_id=user_id,
                type=config.get("notificationType") or DEFAULT_NOTIFICATION_TYPE,
                severity=config.get("severity") or DEFAULT_SEVERITY,
                title=config.get("title") or message or "Workflow notification",
                message=message or "A workflow action was triggered.",
                project_id=project_id,
                link_type=config.get("linkType"),
                link_id=config.get("linkId"),
            )
        )
        return True

    def _invoke_agent(self, config: dict[str, Any], entity: dict[str, Any] | None) -> dict[str, Any]:
        capability_id = config.get("capabilityId")
        input_data = config.get("input")
        result = self.services.agents.invoke(
            capability_id,
            input_data if isinstance(input_data, dict) else {},
            CallContext(
                actor_id=self.system_actor,
                actor_type="system",
                source="system",
                project_id=config.get("projectId"),
            ),
        )
        return {
            "action": ActionType.INVOKE_AGENT.value,
            "capabilityId": capability_id,
            "success": result.success,
            "output": result.output,
        }
