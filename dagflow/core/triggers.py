"""Trigger matching for domain events.

Pure predicates deciding whether an event satisfies a trigger node's config.
Entity-level triggers look at a new/old snapshot pair of a task; project-level
triggers (budget threshold, project status) are matched separately against
the event payload because they carry no task.

Unknown or malformed trigger configurations never match.
"""

import logging
from collections.abc import Callable
from datetime import UTC, date, datetime
from enum import Enum
from typing import Any

from dagflow.core.utils import to_number

logger = logging.getLogger(__name__)

Entity = dict[str, Any]


class TriggerType(str, Enum):
    """Trigger types understood by the matchers."""

    STATUS_CHANGE = "status_change"
    PROGRESS_THRESHOLD = "progress_threshold"
    DATE_PASSED = "date_passed"
    TASK_CREATED = "task_created"
    ASSIGNMENT_CHANGE = "assignment_change"
    DEPENDENCY_CHANGE = "dependency_change"
    PRIORITY_CHANGE = "priority_change"
    MANUAL = "manual"
    # Project-level, see matches_project_trigger()
    BUDGET_THRESHOLD = "budget_threshold"
    PROJECT_STATUS_CHANGE = "project_status_change"


class ProjectChange(str, Enum):
    """Project-level change types fed to evaluate_project_change()."""

    BUDGET_UPDATE = "budget_update"
    PROJECT_STATUS_CHANGE = "project_status_change"


DEFAULT_BUDGET_THRESHOLD_PERCENT = 90


def _progress(entity: Entity) -> float:
    value = entity.get("progressPercentage")
    if value is None:
        value = entity.get("progress")
    number = to_number(value)
    return 0.0 if number != number else number  # NaN -> 0


def _parse_date(value: Any) -> datetime | None:
    """Parse an end date; naive values are taken as UTC."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            logger.debug(f"Unparseable endDate: {value!r}")
            return None
    else:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _field_changed(
    field: str,
    target_key: str,
    blank_is_empty: bool = True,
) -> Callable[[dict, Entity, Entity | None, datetime], bool]:
    """Build a matcher for 'field changed, optionally to a specific value'.

    With ``blank_is_empty`` a missing value and "" count as the same value.
    """

    def matcher(config: dict, new: Entity, old: Entity | None, now: datetime) -> bool:
        if old is None:
            return False
        before, after = old.get(field), new.get(field)
        if blank_is_empty:
            before, after = before or "", after or ""
        if before == after:
            return False
        target = config.get(target_key)
        if target and new.get(field) != target:
            return False
        return True

    return matcher


def _status_change(config: dict, new: Entity, old: Entity | None, now: datetime) -> bool:
    if old is None:
        return False
    if old.get("status") == new.get("status"):
        return False
    if config.get("fromStatus") and old.get("status") != config["fromStatus"]:
        return False
    if config.get("toStatus") and new.get("status") != config["toStatus"]:
        return False
    return True


def _progress_threshold(config: dict, new: Entity, old: Entity | None, now: datetime) -> bool:
    threshold = to_number(config.get("progressThreshold", 0))
    if threshold != threshold:
        return False
    progress = _progress(new)
    if config.get("progressDirection") == "below":
        return progress <= threshold
    return progress >= threshold


def _date_passed(config: dict, new: Entity, old: Entity | None, now: datetime) -> bool:
    end = _parse_date(new.get("endDate"))
    return end is not None and end < now


def _task_created(config: dict, new: Entity, old: Entity | None, now: datetime) -> bool:
    if old is not None:
        return False
    if config.get("statusFilter") and new.get("status") != config["statusFilter"]:
        return False
    return True


def _manual(config: dict, new: Entity, old: Entity | None, now: datetime) -> bool:
    return True


_ENTITY_MATCHERS: dict[str, Callable[[dict, Entity, Entity | None, datetime], bool]] = {
    TriggerType.STATUS_CHANGE.value: _status_change,
    TriggerType.PROGRESS_THRESHOLD.value: _progress_threshold,
    TriggerType.DATE_PASSED.value: _date_passed,
    TriggerType.TASK_CREATED.value: _task_created,
    TriggerType.ASSIGNMENT_CHANGE.value: _field_changed("assignedTo", "toAssignee"),
    TriggerType.DEPENDENCY_CHANGE.value: _field_changed("dependency", "toDependency"),
    TriggerType.PRIORITY_CHANGE.value: _field_changed("priority", "toPriority", blank_is_empty=False),
    TriggerType.MANUAL.value: _manual,
}


def matches_trigger(
    config: dict[str, Any],
    new_entity: Entity,
    old_entity: Entity | None,
    now: datetime | None = None,
) -> bool:
    """Decide whether a task change fires a trigger node.

    Args:
        config: Trigger node configuration (``triggerType`` plus filters)
        new_entity: Task snapshot after the change
        old_entity: Task snapshot before the change, None on creation
        now: Reference time for ``date_passed`` (defaults to current UTC time)

    Returns:
        True if the trigger fires. Project-level and unknown trigger types
        always return False here.
    """
    matcher = _ENTITY_MATCHERS.get(config.get("triggerType"))
    if matcher is None:
        return False
    return matcher(config, new_entity, old_entity, now or datetime.now(UTC))


def matches_project_trigger(
    config: dict[str, Any],
    change_type: str,
    data: dict[str, Any],
) -> bool:
    """Decide whether a project-level change fires a trigger node.

    ``budget_update`` fires ``budget_threshold`` triggers when the supplied
    utilization percentage reaches the configured threshold.
    ``project_status_change`` fires same-named triggers, filtered by optional
    ``fromStatus``/``toStatus`` (an absent filter means "don't care").
    """
    trigger_type = config.get("triggerType")

    if change_type == ProjectChange.BUDGET_UPDATE and trigger_type == TriggerType.BUDGET_THRESHOLD:
        utilization = to_number(data.get("utilization", 0))
        threshold = to_number(config.get("thresholdPercent", DEFAULT_BUDGET_THRESHOLD_PERCENT))
        return utilization >= threshold

    if (
        change_type == ProjectChange.PROJECT_STATUS_CHANGE
        and trigger_type == TriggerType.PROJECT_STATUS_CHANGE
    ):
        if config.get("toStatus") and data.get("newStatus") != config["toStatus"]:
            return False
        if config.get("fromStatus") and data.get("oldStatus") != config["fromStatus"]:
            return False
        return True

    return False
