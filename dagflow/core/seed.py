"""Built-in workflow definitions and YAML definition loading.

Definition files use the create payload shape: ``nodes`` is a list of node
specs and ``edges`` reference nodes by their position in that list. A file
holds either one definition or a ``definitions`` list.
"""

import logging
from pathlib import Path
from typing import Any

import pydantic
import yaml

from dagflow.core.graph_schema import DefinitionCreate
from dagflow.core.store import GraphStore

logger = logging.getLogger(__name__)

DEFAULT_DEFINITIONS_YAML = """
definitions:
  - name: Auto-complete on 100% progress
    description: When a task reaches 100% progress, automatically set status to completed
    nodes:
      - node_type: trigger
        name: Progress reaches 100%
        config: {triggerType: progress_threshold, progressThreshold: 100, progressDirection: above}
      - node_type: action
        name: Set status to completed
        config: {actionType: update_field, field: status, value: completed}
        position_y: 100
    edges:
      - {source_index: 0, target_index: 1}

  - name: Log when task starts
    description: Log activity when a task moves to in_progress
    nodes:
      - node_type: trigger
        name: Status changes to in_progress
        config: {triggerType: status_change, toStatus: in_progress}
      - node_type: action
        name: Log activity
        config: {actionType: log_activity, message: Task work has started}
        position_y: 100
    edges:
      - {source_index: 0, target_index: 1}

  - name: Notify on cancellation
    description: Send notification when a task is cancelled
    nodes:
      - node_type: trigger
        name: Status changes to cancelled
        config: {triggerType: status_change, toStatus: cancelled}
      - node_type: action
        name: Send notification
        config: {actionType: send_notification, message: A task has been cancelled}
        position_y: 100
    edges:
      - {source_index: 0, target_index: 1}

  - name: "On task overdue: reschedule agent"
    description: When a task passes its end date, invoke the auto-reschedule agent and notify the PM
    nodes:
      - node_type: trigger
        name: Task overdue
        config: {triggerType: date_passed}
      - node_type: agent
        name: Run reschedule agent
        config:
          capabilityId: auto-reschedule-v1
          input: {scheduleId: "{{task.scheduleId}}"}
          retries: 1
          backoffMs: 2000
        position_y: 100
      - node_type: action
        name: Notify PM
        config:
          actionType: send_notification
          severity: high
          message: Agent detected overdue task and generated a reschedule proposal.
        position_y: 200
    edges:
      - {source_index: 0, target_index: 1}
      - {source_index: 1, target_index: 2}

  - name: "On task marked urgent: notify PM"
    description: When a task priority changes to urgent, send a high-severity notification
    nodes:
      - node_type: trigger
        name: Priority changed to urgent
        config: {triggerType: priority_change, toPriority: urgent}
      - node_type: action
        name: Notify PM of urgent task
        config:
          actionType: send_notification
          severity: high
          message: "Task priority escalated to urgent: {{task.name}}"
        position_y: 100
    edges:
      - {source_index: 0, target_index: 1}
"""


class DefinitionFileError(Exception):
    """A definition document could not be parsed or validated."""

    pass


def parse_definitions(data: Any, source: str = "<string>") -> list[DefinitionCreate]:
    """Turn a loaded YAML document into create payloads."""
    if isinstance(data, dict) and "definitions" in data:
        items = data["definitions"]
    else:
        items = [data]
    if not isinstance(items, list) or not all(isinstance(item, dict) for item in items):
        raise DefinitionFileError(f"{source}: expected a definition mapping or a 'definitions' list")

    definitions = []
    for i, item in enumerate(items):
        try:
            definitions.append(DefinitionCreate(**item))
        except pydantic.ValidationError as e:
            raise DefinitionFileError(f"{source}: definition {i} is invalid: {e}") from e
    return definitions


def load_definition_file(path: Path) -> list[DefinitionCreate]:
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise DefinitionFileError(f"Invalid YAML in {path}: {e}") from e
    return parse_definitions(data, source=str(path))


def default_definitions() -> list[DefinitionCreate]:
    return parse_definitions(yaml.safe_load(DEFAULT_DEFINITIONS_YAML), source="defaults")


def install_defaults(store: GraphStore) -> list[str]:
    """Create the built-in definitions that are not installed yet.

    Definitions are matched by name, so running this twice is harmless.
    Returns the ids of the definitions created.
    """
    existing = {d.name for d in store.list_definitions()}
    created = []
    for definition in default_definitions():
        if definition.name in existing:
            logger.debug(f"Default workflow '{definition.name}' already installed")
            continue
        created.append(store.create_definition(definition).id)
    return created
