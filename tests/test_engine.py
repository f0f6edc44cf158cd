"""Tests for the workflow execution engine.

Tests cover:
- Run completion and failure semantics
- Sibling ordering and deterministic walks
- Cycle protection (including a shared successor reached twice)
- Condition branching
- Suspension at approval/delay nodes and resumption
- Template flow between nodes
- Agent retry with linear backoff
- Trigger evaluation for task and project changes
- Manual runs, cancellation, auditing and run listing
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from decimal import Decimal

import pytest

from dagflow.core.collaborators import AgentResult
from dagflow.core.config import EngineConfig
from dagflow.core.engine import WorkflowEngine
from dagflow.core.models import ExecutionFilters, ExecutionStatus, NodeStatus

MANUAL = {"triggerType": "manual"}


def _log(message: str) -> dict:
    return {"actionType": "log_activity", "message": message}


def _set_config(db, node_id: str, config: dict) -> None:
    """Rewrite a stored node config (node ids are only known after insert)."""
    with db._connect() as conn:
        conn.execute(
            "UPDATE workflow_nodes SET config = ? WHERE id = ?", (json.dumps(config), node_id)
        )


def _trail(run, definition) -> list[tuple[str, str]]:
    """(node name, status) for each node execution, in start order."""
    names = {n.id: n.name for n in definition.nodes}
    return [(names[ne.node_id], ne.status.value) for ne in run.node_executions]


@pytest.fixture
def task(services, make_task):
    """A task known to the task service."""
    task = make_task()
    services.tasks.tasks[task["id"]] = task
    return task


def _run(engine, definition, task=None):
    entity_id = task["id"] if task else "missing"
    return engine.trigger_manual(definition.id, "task", entity_id)


class TestCompletion:
    def test_linear_run_completes(self, engine, services, make_definition, task):
        definition = make_definition(
            nodes=[("trigger", "Start", MANUAL), ("action", "Log", _log("hello"))],
            edges=[(0, 1)],
        )

        run = _run(engine, definition, task)

        assert run.status == ExecutionStatus.COMPLETED
        assert run.completed_at is not None
        assert run.entity_type == "task"
        assert run.entity_id == "task-1"
        assert _trail(run, definition) == [("Start", "completed"), ("Log", "completed")]
        assert services.tasks.activities[0][-1] == "hello"

    def test_context_holds_entity_and_outputs(self, engine, make_definition, task):
        definition = make_definition(
            nodes=[("trigger", "Start", MANUAL), ("action", "Log", _log("hello"))],
            edges=[(0, 1)],
        )
        run = _run(engine, definition, task)

        log_id = definition.nodes[1].id
        assert run.context["taskId"] == "task-1"
        assert run.context["taskName"] == "Pour foundation"
        assert run.context["status"] == "not_started"
        assert run.context["progress"] == 0
        assert run.context["nodeOutputs"] == {log_id: {"action": "log_activity", "message": "hello"}}

    def test_node_input_records_task(self, engine, make_definition, task):
        definition = make_definition(
            nodes=[("trigger", "Start", MANUAL), ("action", "Log", _log("x"))], edges=[(0, 1)]
        )
        run = _run(engine, definition, task)
        assert run.node_executions[0].input_data is None
        assert run.node_executions[1].input_data == {"taskId": "task-1"}

    def test_trigger_only_definition_completes(self, engine, make_definition, task):
        definition = make_definition(nodes=[("trigger", "Start", MANUAL)])
        assert _run(engine, definition, task).status == ExecutionStatus.COMPLETED

    def test_run_without_entity(self, engine, services, make_definition):
        definition = make_definition(
            nodes=[("trigger", "Start", MANUAL), ("action", "Log", _log("x"))], edges=[(0, 1)]
        )

        run = engine.trigger_manual(definition.id, "project", "p-1")

        assert run.status == ExecutionStatus.COMPLETED
        assert run.entity_type == "unknown"
        assert run.entity_id == ""
        assert services.tasks.activities == []

    def test_node_error_fails_run_and_stops_siblings(self, engine, services, make_definition, task):
        def broken_update(task_id, changes):
            raise RuntimeError("task store unavailable")

        services.tasks.update_task = broken_update
        definition = make_definition(
            nodes=[
                ("trigger", "Start", MANUAL),
                ("action", "Update", {"actionType": "update_field", "field": "status", "value": "x"}),
                ("action", "Log", _log("after")),
            ],
            edges=[(0, 1, {"sort_order": 0}), (0, 2, {"sort_order": 1})],
        )

        run = _run(engine, definition, task)

        assert run.status == ExecutionStatus.FAILED
        assert run.error_message == "task store unavailable"
        failed = run.node_executions[1]
        assert failed.status == NodeStatus.FAILED
        assert failed.error_message == "task store unavailable"
        assert services.tasks.activities == []

    def test_unknown_node_type_is_skipped(self, engine, services, make_definition, task):
        definition = make_definition(
            nodes=[
                ("trigger", "Start", MANUAL),
                ("webhook", "Call out", {"url": "http://example.invalid"}),
                ("trigger", "Nested trigger", MANUAL),
                ("action", "Log", _log("reached")),
            ],
            edges=[(0, 1), (1, 2), (2, 3)],
        )

        run = _run(engine, definition, task)

        assert run.status == ExecutionStatus.COMPLETED
        assert _trail(run, definition) == [
            ("Start", "completed"),
            ("Call out", "skipped"),
            ("Nested trigger", "skipped"),
            ("Log", "completed"),
        ]
        assert services.tasks.activities[0][-1] == "reached"

    def test_edge_condition_not_met(self, engine, services, make_definition, task):
        definition = make_definition(
            nodes=[("trigger", "Start", MANUAL), ("action", "Urgent only", _log("urgent"))],
            edges=[(0, 1, {"condition_expr": {"field": "priority", "operator": "equals", "value": "urgent"}})],
        )

        run = _run(engine, definition, task)

        assert run.status == ExecutionStatus.COMPLETED
        assert _trail(run, definition) == [("Start", "completed")]
        assert services.tasks.activities == []


class TestOrdering:
    def test_siblings_follow_sort_order(self, engine, services, make_definition, task):
        definition = make_definition(
            nodes=[
                ("trigger", "Start", MANUAL),
                ("action", "A", _log("A")),
                ("action", "B", _log("B")),
                ("action", "C", _log("C")),
            ],
            edges=[(0, 1, {"sort_order": 2}), (0, 2, {"sort_order": 0}), (0, 3, {"sort_order": 1})],
        )

        _run(engine, definition, task)

        assert [a[-1] for a in services.tasks.activities] == ["B", "C", "A"]

    def test_depth_first(self, engine, services, make_definition, task):
        """A branch is walked to its end before the next sibling starts."""
        definition = make_definition(
            nodes=[
                ("trigger", "Start", MANUAL),
                ("action", "A", _log("A")),
                ("action", "A1", _log("A1")),
                ("action", "B", _log("B")),
            ],
            edges=[(0, 1, {"sort_order": 0}), (1, 2), (0, 3, {"sort_order": 1})],
        )

        _run(engine, definition, task)

        assert [a[-1] for a in services.tasks.activities] == ["A", "A1", "B"]

    def test_repeated_runs_are_identical(self, engine, make_definition, task):
        definition = make_definition(
            nodes=[
                ("trigger", "Start", MANUAL),
                ("condition", "Started?", {"field": "status", "operator": "equals", "value": "x"}),
                ("action", "Yes", _log("yes")),
                ("action", "No", _log("no")),
                ("action", "Always", _log("always")),
            ],
            edges=[(0, 1), (1, 2, {"label": "yes"}), (1, 3, {"label": "no"}), (0, 4, {"sort_order": 1})],
        )

        first = _run(engine, definition, task)
        second = _run(engine, definition, task)

        assert _trail(first, definition) == _trail(second, definition)
        assert first.id != second.id


class TestCycles:
    def test_back_edge_fails_run(self, engine, make_definition, task):
        definition = make_definition(
            nodes=[
                ("trigger", "Start", MANUAL),
                ("action", "A", _log("A")),
                ("action", "B", _log("B")),
            ],
            edges=[(0, 1), (1, 2), (2, 1)],
        )

        run = _run(engine, definition, task)

        a_id = definition.nodes[1].id
        assert run.status == ExecutionStatus.FAILED
        assert run.error_message == f"Cycle detected at node '{a_id}'"
        assert "Cycle detected" in run.error_message
        # A ran exactly once
        assert [ne.node_id for ne in run.node_executions].count(a_id) == 1

    def test_shared_successor_counts_as_revisit(self, engine, make_definition, task):
        definition = make_definition(
            nodes=[
                ("trigger", "Start", MANUAL),
                ("action", "Left", _log("L")),
                ("action", "Right", _log("R")),
                ("action", "Join", _log("J")),
            ],
            edges=[(0, 1, {"sort_order": 0}), (0, 2, {"sort_order": 1}), (1, 3), (2, 3)],
        )

        run = _run(engine, definition, task)

        assert run.status == ExecutionStatus.FAILED
        assert run.error_message == f"Cycle detected at node '{definition.nodes[3].id}'"

    def test_self_loop(self, engine, make_definition, task):
        definition = make_definition(
            nodes=[("trigger", "Start", MANUAL), ("action", "A", _log("A"))],
            edges=[(0, 1), (1, 1)],
        )
        assert _run(engine, definition, task).status == ExecutionStatus.FAILED


class TestConditionBranching:
    @pytest.fixture
    def branching(self, make_definition):
        return make_definition(
            nodes=[
                ("trigger", "Start", MANUAL),
                ("condition", "In progress?", {"field": "status", "operator": "equals", "value": "in_progress"}),
                ("action", "Yes", {"actionType": "update_field", "field": "priority", "value": "high"}),
                ("action", "No", {"actionType": "update_field", "field": "priority", "value": "low"}),
                ("action", "Either", _log("either")),
            ],
            edges=[
                (0, 1),
                (1, 2, {"label": "yes", "sort_order": 0}),
                (1, 3, {"label": "no", "sort_order": 1}),
                (1, 4, {"sort_order": 2}),
            ],
        )

    @pytest.mark.parametrize(
        "status,result,priority,taken,not_taken",
        [
            ("in_progress", True, "high", "Yes", "No"),
            ("not_started", False, "low", "No", "Yes"),
        ],
    )
    def test_exactly_one_labelled_branch(
        self, engine, services, branching, make_task, status, result, priority, taken, not_taken
    ):
        services.tasks.tasks["task-1"] = make_task(status=status)

        run = engine.trigger_manual(branching.id, "task", "task-1")

        names = [name for name, _ in _trail(run, branching)]
        assert taken in names
        assert not_taken not in names
        assert "Either" in names
        assert services.tasks.updates == [("task-1", {"priority": priority})]
        assert run.context["nodeOutputs"][branching.nodes[1].id] == {"result": result}
        assert run.status == ExecutionStatus.COMPLETED

    def test_no_matching_branch_completes(self, engine, make_definition, task):
        definition = make_definition(
            nodes=[
                ("trigger", "Start", MANUAL),
                ("condition", "Done?", {"field": "status", "operator": "equals", "value": "done"}),
                ("action", "Yes", _log("yes")),
            ],
            edges=[(0, 1), (1, 2, {"label": "yes"})],
        )

        run = _run(engine, definition, task)

        assert run.status == ExecutionStatus.COMPLETED
        assert _trail(run, definition) == [("Start", "completed"), ("Done?", "completed")]

    def test_condition_without_entity_takes_no_branch(self, engine, services, make_definition):
        definition = make_definition(
            nodes=[
                ("trigger", "Start", MANUAL),
                ("condition", "Check", {"field": "status", "operator": "not_equals", "value": "x"}),
                ("action", "No", _log("no")),
            ],
            edges=[(0, 1), (1, 2, {"label": "no"})],
        )

        run = engine.trigger_manual(definition.id, "project", "p-1")

        assert run.status == ExecutionStatus.COMPLETED
        assert [name for name, _ in _trail(run, definition)] == ["Start", "Check", "No"]


class TestSuspendResume:
    @pytest.fixture
    def approval_flow(self, make_definition):
        return make_definition(
            nodes=[
                ("trigger", "Start", MANUAL),
                ("approval", "PM approval", {"approverRole": "pm"}),
                ("action", "Complete", {"actionType": "update_field", "field": "status", "value": "completed"}),
            ],
            edges=[(0, 1), (1, 2)],
        )

    def test_round_trip(self, engine, services, approval_flow, task):
        approval_id = approval_flow.nodes[1].id

        run = _run(engine, approval_flow, task)

        assert run.status == ExecutionStatus.WAITING
        assert run.node_statuses()[approval_id] == NodeStatus.WAITING
        assert services.tasks.updates == []

        resumed = engine.resume_execution(run.id, approval_id, {"approved": True})

        assert resumed.status == ExecutionStatus.COMPLETED
        assert services.tasks.updates == [("task-1", {"status": "completed"})]
        approval_exec = next(ne for ne in resumed.node_executions if ne.node_id == approval_id)
        assert approval_exec.status == NodeStatus.COMPLETED
        assert approval_exec.output_data == {"approved": True}
        assert resumed.context["nodeOutputs"][approval_id] == {"approved": True}

    def test_second_resume_has_no_effect(self, engine, services, approval_flow, task):
        approval_id = approval_flow.nodes[1].id
        run = _run(engine, approval_flow, task)
        engine.resume_execution(run.id, approval_id, {"approved": True})

        assert engine.resume_execution(run.id, approval_id, {"approved": False}) is None
        assert len(services.tasks.updates) == 1
        assert engine.get_execution(run.id).status == ExecutionStatus.COMPLETED

    def test_resume_of_node_that_is_not_waiting(self, engine, services, approval_flow, task):
        run = _run(engine, approval_flow, task)

        current = engine.resume_execution(run.id, approval_flow.nodes[0].id, {})

        assert current.status == ExecutionStatus.WAITING
        assert services.tasks.updates == []

    def test_resume_unknown_run(self, engine):
        assert engine.resume_execution("nope", "node", {}) is None

    def test_delay_node_suspends(self, engine, make_definition, task):
        definition = make_definition(
            nodes=[("trigger", "Start", MANUAL), ("delay", "Wait a day", {"delayHours": 24})],
            edges=[(0, 1)],
        )
        run = _run(engine, definition, task)
        assert run.status == ExecutionStatus.WAITING
        assert engine.resume_execution(run.id, definition.nodes[1].id).status == ExecutionStatus.COMPLETED

    def test_siblings_of_suspended_node_still_run(self, engine, services, make_definition, task):
        definition = make_definition(
            nodes=[
                ("trigger", "Start", MANUAL),
                ("approval", "Approve", {}),
                ("action", "Log", _log("sibling")),
            ],
            edges=[(0, 1, {"sort_order": 0}), (0, 2, {"sort_order": 1})],
        )

        run = _run(engine, definition, task)

        assert run.status == ExecutionStatus.WAITING
        assert services.tasks.activities[0][-1] == "sibling"
        resumed = engine.resume_execution(run.id, definition.nodes[1].id, {})
        assert resumed.status == ExecutionStatus.COMPLETED
        assert len(services.tasks.activities) == 1

    def test_parallel_approvals(self, engine, make_definition, task):
        definition = make_definition(
            nodes=[("trigger", "Start", MANUAL), ("approval", "First", {}), ("approval", "Second", {})],
            edges=[(0, 1), (0, 2)],
        )
        first, second = definition.nodes[1].id, definition.nodes[2].id
        run = _run(engine, definition, task)

        assert engine.resume_execution(run.id, first, {}).status == ExecutionStatus.WAITING
        assert engine.resume_execution(run.id, second, {}).status == ExecutionStatus.COMPLETED

    def test_resume_rebuilds_outputs(self, engine, services, test_db, make_definition, task):
        definition = make_definition(
            nodes=[
                ("trigger", "Start", MANUAL),
                ("action", "Before", _log("hello")),
                ("approval", "Approve", {}),
                ("action", "After", {}),
            ],
            edges=[(0, 1), (1, 2), (2, 3)],
        )
        before, approval, after = (n.id for n in definition.nodes[1:])
        _set_config(
            test_db,
            after,
            _log(f"{{{{nodes.{before}.message}}}} then {{{{nodes.{approval}.note}}}} for {{{{task.name}}}}"),
        )

        run = _run(engine, definition, task)
        engine.resume_execution(run.id, approval, {"note": "ok"})

        assert services.tasks.activities[-1][-1] == "hello then ok for Pour foundation"

    def test_resumed_walk_still_detects_cycles(self, engine, make_definition, task):
        definition = make_definition(
            nodes=[
                ("trigger", "Start", MANUAL),
                ("action", "A", _log("A")),
                ("approval", "Approve", {}),
            ],
            edges=[(0, 1), (1, 2), (2, 1)],
        )
        run = _run(engine, definition, task)

        resumed = engine.resume_execution(run.id, definition.nodes[2].id, {})

        assert resumed.status == ExecutionStatus.FAILED
        assert "Cycle detected" in resumed.error_message


class TestTemplates:
    def test_task_fields_in_action(self, engine, services, make_definition, task):
        definition = make_definition(
            nodes=[
                ("trigger", "Start", MANUAL),
                ("action", "Log", _log("{{task.name}} at {{task.progressPercentage}}%")),
                ("action", "Copy", {"actionType": "update_field", "field": "notes", "value": "{{task.scheduleId}}"}),
            ],
            edges=[(0, 1), (1, 2)],
        )

        _run(engine, definition, task)

        assert services.tasks.activities[0][-1] == "Pour foundation at 0%"
        assert services.tasks.updates == [("task-1", {"notes": "sched-1"})]

    def test_agent_output_flows_to_action(self, engine, services, test_db, make_definition, task):
        services.agents.script.append(AgentResult(success=True, output={"proposal": {"days": 3}}))
        definition = make_definition(
            nodes=[
                ("trigger", "Start", MANUAL),
                ("agent", "Reschedule", {"capabilityId": "auto-reschedule-v1"}),
                ("action", "Apply", {}),
            ],
            edges=[(0, 1), (1, 2)],
        )
        agent_id = definition.nodes[1].id
        _set_config(
            test_db,
            definition.nodes[2].id,
            {
                "actionType": "update_field",
                "field": "delayDays",
                "value": f"{{{{nodes.{agent_id}.agentOutput.proposal.days}}}}",
            },
        )

        _run(engine, definition, task)

        # Whole-token values keep their type
        assert services.tasks.updates == [("task-1", {"delayDays": 3})]

    def test_unresolved_token_left_verbatim(self, engine, services, make_definition, task):
        definition = make_definition(
            nodes=[("trigger", "Start", MANUAL), ("action", "Log", _log("see {{nodes.ghost.x}}"))],
            edges=[(0, 1)],
        )
        _run(engine, definition, task)
        assert services.tasks.activities[0][-1] == "see {{nodes.ghost.x}}"


class TestAgentRetry:
    def _definition(self, make_definition, **config):
        return make_definition(
            nodes=[
                ("trigger", "Start", MANUAL),
                ("agent", "Agent", {"capabilityId": "cap", **config}),
                ("action", "After", _log("after")),
            ],
            edges=[(0, 1), (1, 2)],
        )

    def test_recovers_within_retries(self, engine, services, sleeps, make_definition, task):
        services.agents.script.extend(
            [AgentResult(success=False, error="busy"), AgentResult(success=False, error="busy")]
        )
        definition = self._definition(make_definition, retries=2)

        run = _run(engine, definition, task)

        assert run.status == ExecutionStatus.COMPLETED
        assert len(services.agents.calls) == 3
        assert sleeps == [1.0, 2.0]
        agent_output = run.context["nodeOutputs"][definition.nodes[1].id]
        assert agent_output == {"agentOutput": {"ok": True}, "durationMs": 5}

    def test_exhausted_retries_fail_run(self, engine, services, sleeps, make_definition, task):
        services.agents.script.extend(
            [AgentResult(success=False, error="busy"), AgentResult(success=False, error="gave up")]
        )
        definition = self._definition(make_definition, retries=1)

        run = _run(engine, definition, task)

        assert run.status == ExecutionStatus.FAILED
        assert run.error_message == "gave up"
        assert len(services.agents.calls) == 2
        assert sleeps == [1.0]
        assert services.tasks.activities == []
        assert run.node_statuses()[definition.nodes[1].id] == NodeStatus.FAILED

    def test_no_retries_by_default(self, engine, services, sleeps, make_definition, task):
        services.agents.script.append(AgentResult(success=False))
        run = _run(engine, self._definition(make_definition), task)
        assert run.status == ExecutionStatus.FAILED
        assert run.error_message == "Agent invocation failed"
        assert sleeps == []

    def test_exception_counts_as_attempt(self, engine, services, sleeps, make_definition, task):
        services.agents.script.append(TimeoutError("agent timed out"))
        run = _run(engine, self._definition(make_definition, retries=1), task)
        assert run.status == ExecutionStatus.COMPLETED
        assert len(services.agents.calls) == 2
        assert sleeps == [1.0]

    def test_unstorable_output_fails_run(self, engine, services, make_definition, task):
        """An output that cannot be written to the database fails the node, not the caller."""
        services.agents.script.append(AgentResult(success=True, output={"cost": Decimal("1.5")}))
        definition = self._definition(make_definition)

        run = _run(engine, definition, task)

        assert run.status == ExecutionStatus.FAILED
        assert "not JSON serializable" in run.error_message
        assert run.completed_at is not None
        statuses = run.node_statuses()
        assert statuses[definition.nodes[0].id] == NodeStatus.COMPLETED
        assert statuses[definition.nodes[1].id] == NodeStatus.FAILED
        assert definition.nodes[2].id not in statuses
        assert definition.nodes[1].id not in run.context.get("nodeOutputs", {})

    def test_custom_backoff(self, engine, services, sleeps, make_definition, task):
        services.agents.script.extend([AgentResult(success=False), AgentResult(success=False)])
        _run(engine, self._definition(make_definition, retries=2, backoffMs=250), task)
        assert sleeps == [0.25, 0.5]

    def test_configured_default_backoff(self, test_db, services, make_definition, task):
        delays = []
        engine = WorkflowEngine(
            test_db, services, config=EngineConfig(default_backoff_ms=40), sleep=delays.append
        )
        services.agents.script.append(AgentResult(success=False))
        _run(engine, self._definition(make_definition, retries=1), task)
        assert delays == [0.04]

    def test_input_resolved_and_context_passed(self, engine, services, make_definition, task):
        definition = self._definition(
            make_definition, input={"scheduleId": "{{task.scheduleId}}"}, projectId="p-1"
        )
        _run(engine, definition, task)

        capability, input_data, context = services.agents.calls[0]
        assert capability == "cap"
        assert input_data == {"scheduleId": "sched-1"}
        assert context.actor_type == "system"
        assert context.project_id == "p-1"


class TestTaskChangeTriggers:
    def _status_flow(self, make_definition, **kwargs):
        return make_definition(
            nodes=[
                ("trigger", "To in progress", {"triggerType": "status_change", "toStatus": "in_progress"}),
                ("action", "Log", _log("started")),
            ],
            edges=[(0, 1)],
            **kwargs,
        )

    def test_status_change_starts_run(self, engine, services, make_definition, make_task):
        self._status_flow(make_definition)

        started = engine.evaluate_task_change(
            make_task(status="in_progress"), make_task(status="not_started")
        )

        assert len(started) == 1
        assert engine.get_execution(started[0]).status == ExecutionStatus.COMPLETED
        assert services.tasks.activities[0][-1] == "started"

    def test_unchanged_status_starts_nothing(self, engine, make_definition, make_task):
        self._status_flow(make_definition)
        task = make_task(status="in_progress")
        assert engine.evaluate_task_change(task, dict(task)) == []

    def test_disabled_definition_ignored(self, engine, make_definition, make_task):
        self._status_flow(make_definition, is_enabled=False)
        started = engine.evaluate_task_change(
            make_task(status="in_progress"), make_task(status="not_started")
        )
        assert started == []

    def test_project_scoped_definition_still_evaluated(self, engine, make_definition, make_task):
        self._status_flow(make_definition, project_id="other-project")
        started = engine.evaluate_task_change(
            make_task(status="in_progress"), make_task(status="not_started")
        )
        assert len(started) == 1

    @pytest.mark.parametrize(
        "direction,threshold,progress,fires",
        [
            ("above", 100, 99, False),
            ("above", 100, 100, True),
            ("below", 20, 20, True),
            ("below", 20, 21, False),
        ],
    )
    def test_progress_threshold_boundaries(
        self, engine, make_definition, make_task, direction, threshold, progress, fires
    ):
        make_definition(
            nodes=[
                (
                    "trigger",
                    "Threshold",
                    {
                        "triggerType": "progress_threshold",
                        "progressThreshold": threshold,
                        "progressDirection": direction,
                    },
                )
            ]
        )
        started = engine.evaluate_task_change(make_task(progressPercentage=progress), make_task())
        assert bool(started) is fires

    @pytest.mark.parametrize(
        "end_date,fires",
        [("2026-03-01", True), ("2026-03-02T12:00:00Z", False), (None, False), ("someday", False)],
    )
    def test_date_passed(self, engine, make_definition, make_task, end_date, fires):
        make_definition(nodes=[("trigger", "Overdue", {"triggerType": "date_passed"})])
        now = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)
        started = engine.evaluate_task_change(make_task(endDate=end_date), None, now=now)
        assert bool(started) is fires

    def test_task_created(self, engine, make_definition, make_task):
        make_definition(
            nodes=[("trigger", "Created", {"triggerType": "task_created", "statusFilter": "not_started"})]
        )
        assert len(engine.evaluate_task_change(make_task(), None)) == 1
        assert engine.evaluate_task_change(make_task(), make_task()) == []

    def test_every_matching_trigger_starts_a_run(self, engine, make_definition, make_task):
        make_definition(
            nodes=[
                ("trigger", "Urgent", {"triggerType": "priority_change", "toPriority": "urgent"}),
                ("trigger", "Any priority", {"triggerType": "priority_change"}),
            ]
        )
        started = engine.evaluate_task_change(make_task(priority="urgent"), make_task())
        assert len(started) == 2

    def test_store_failure_is_logged_not_raised(self, engine, make_task, caplog):
        def broken():
            raise RuntimeError("disk gone")

        engine.store.list_enabled_graphs = broken
        with caplog.at_level(logging.ERROR):
            assert engine.evaluate_task_change(make_task(), None) == []
        assert "Failed to load workflow definitions" in caplog.text

    def test_one_failing_definition_does_not_block_others(
        self, engine, make_definition, make_task, monkeypatch
    ):
        trigger = {"triggerType": "task_created"}
        make_definition(nodes=[("trigger", "T", trigger)], name="broken")
        healthy = make_definition(nodes=[("trigger", "T", trigger)], name="healthy")
        original_start = engine.start

        def flaky_start(definition, trigger_node, entity):
            if definition.name == "broken":
                raise RuntimeError("boom")
            return original_start(definition, trigger_node, entity)

        monkeypatch.setattr(engine, "start", flaky_start)

        started = engine.evaluate_task_change(make_task(), None)

        assert len(started) == 1
        assert engine.get_execution(started[0]).workflow_id == healthy.id


class TestProjectChangeTriggers:
    def test_budget_threshold(self, engine, make_definition):
        make_definition(
            nodes=[
                ("trigger", "Budget", {"triggerType": "budget_threshold", "thresholdPercent": 80}),
                ("action", "Notify", {"actionType": "send_notification", "message": "Budget"}),
            ],
            edges=[(0, 1)],
        )

        assert engine.evaluate_project_change("p-1", "budget_update", {"utilization": 79}) == []
        started = engine.evaluate_project_change("p-1", "budget_update", {"utilization": 80})

        assert len(started) == 1
        run = engine.get_execution(started[0])
        assert run.entity_type == "unknown"
        assert run.entity_id == ""
        assert run.status == ExecutionStatus.COMPLETED

    def test_default_budget_threshold(self, engine, make_definition):
        make_definition(nodes=[("trigger", "Budget", {"triggerType": "budget_threshold"})])
        assert engine.evaluate_project_change("p-1", "budget_update", {"utilization": 89}) == []
        assert len(engine.evaluate_project_change("p-1", "budget_update", {"utilization": 90})) == 1

    def test_project_status_change(self, engine, make_definition):
        make_definition(
            nodes=[("trigger", "On hold", {"triggerType": "project_status_change", "toStatus": "on_hold"})]
        )
        change = {"oldStatus": "active", "newStatus": "on_hold"}
        assert len(engine.evaluate_project_change("p-1", "project_status_change", change)) == 1
        change = {"oldStatus": "active", "newStatus": "closed"}
        assert engine.evaluate_project_change("p-1", "project_status_change", change) == []

    def test_task_triggers_ignore_project_changes(self, engine, make_definition):
        make_definition(nodes=[("trigger", "Manual", MANUAL)])
        assert engine.evaluate_project_change("p-1", "budget_update", {"utilization": 100}) == []


class TestManualTrigger:
    def test_missing_definition(self, engine):
        assert engine.trigger_manual("nope", "task", "task-1") is None

    def test_definition_without_trigger(self, engine, make_definition):
        definition = make_definition(nodes=[("action", "Log", _log("x"))])
        assert engine.trigger_manual(definition.id, "task", "task-1") is None

    def test_unknown_task_runs_without_entity(self, engine, make_definition):
        definition = make_definition(nodes=[("trigger", "Start", MANUAL)])
        run = engine.trigger_manual(definition.id, "task", "ghost")
        assert run.status == ExecutionStatus.COMPLETED
        assert run.entity_type == "unknown"

    def test_uses_first_trigger(self, engine, make_definition, task):
        definition = make_definition(
            nodes=[("trigger", "First", MANUAL), ("trigger", "Second", MANUAL)]
        )
        run = _run(engine, definition, task)
        assert run.trigger_node_id == definition.nodes[0].id


class TestCancel:
    def test_cancel_waiting_run(self, engine, make_definition, task):
        definition = make_definition(
            nodes=[("trigger", "Start", MANUAL), ("approval", "Approve", {})], edges=[(0, 1)]
        )
        run = _run(engine, definition, task)

        cancelled = engine.cancel_execution(run.id)

        assert cancelled.status == ExecutionStatus.CANCELLED
        assert cancelled.completed_at is not None
        assert cancelled.node_statuses()[definition.nodes[1].id] == NodeStatus.SKIPPED
        assert engine.resume_execution(run.id, definition.nodes[1].id, {}) is None

    def test_cancel_finished_run_is_noop(self, engine, make_definition, task):
        run = _run(engine, make_definition(nodes=[("trigger", "Start", MANUAL)]), task)
        assert engine.cancel_execution(run.id).status == ExecutionStatus.COMPLETED

    def test_cancel_unknown(self, engine):
        assert engine.cancel_execution("nope") is None


class TestAudit:
    def test_run_start_is_audited(self, engine, services, make_definition, task):
        definition = make_definition(nodes=[("trigger", "Start", MANUAL)], name="Audited")

        run = _run(engine, definition, task)

        (record,) = services.audit.records
        assert record.action == "workflow.execute"
        assert record.entity_type == "workflow"
        assert record.entity_id == definition.id
        assert record.actor_type == "system"
        assert record.payload == {
            "executionId": run.id,
            "workflowName": "Audited",
            "triggerNode": "Start",
            "entityType": "task",
            "entityId": "task-1",
            "status": "completed",
        }

    def test_audit_failure_does_not_affect_run(self, engine, services, make_definition, task):
        def broken(record):
            raise RuntimeError("audit log full")

        services.audit.append = broken
        run = _run(engine, make_definition(nodes=[("trigger", "Start", MANUAL)]), task)
        assert run.status == ExecutionStatus.COMPLETED


class TestListExecutions:
    def test_filters(self, engine, services, make_definition, make_task):
        services.tasks.tasks["task-1"] = make_task()
        services.tasks.tasks["task-2"] = make_task(id="task-2")
        definition = make_definition(
            nodes=[("trigger", "Start", MANUAL), ("approval", "Approve", {})], edges=[(0, 1)]
        )
        other = make_definition(nodes=[("trigger", "Start", MANUAL)], name="Other")
        waiting = engine.trigger_manual(definition.id, "task", "task-1")
        engine.trigger_manual(definition.id, "task", "task-2")
        engine.trigger_manual(other.id, "task", "task-1")

        by_entity = engine.list_executions(ExecutionFilters(entity_type="task", entity_id="task-1"))
        assert len(by_entity) == 2

        by_workflow = engine.list_executions(ExecutionFilters(workflow_id=definition.id))
        assert len(by_workflow) == 2

        by_status = engine.list_executions(ExecutionFilters(status=ExecutionStatus.COMPLETED))
        assert [r.workflow_id for r in by_status] == [other.id]

        engine.cancel_execution(waiting.id)
        by_status = engine.list_executions(ExecutionFilters(status=ExecutionStatus.WAITING))
        assert len(by_status) == 1

    def test_newest_first_and_configured_limit(self, test_db, services, make_definition, task):
        engine = WorkflowEngine(test_db, services, config=EngineConfig(list_limit=2))
        definition = make_definition(nodes=[("trigger", "Start", MANUAL)])
        ids = [_run(engine, definition, task).id for _ in range(3)]

        listed = engine.list_executions()

        assert [r.id for r in listed] == ids[:0:-1]
        assert len(engine.list_executions(ExecutionFilters(limit=5))) == 3
