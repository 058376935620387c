"""Tests for workflow validation and the run coordinator."""

import tempfile
from pathlib import Path

import pytest

from fleet_orchestrator.core import bots as bots_mod
from fleet_orchestrator.core import projects as projects_mod
from fleet_orchestrator.core import tasks as tasks_mod
from fleet_orchestrator.core import workflows as wf
from fleet_orchestrator.db.engine import init_db
from fleet_orchestrator.errors import (
    NotFoundError,
    ValidationError,
    WorkflowCycleError,
    WorkflowValidationError,
)


@pytest.fixture
def db():
    with tempfile.TemporaryDirectory() as tmp:
        conn = init_db(Path(tmp) / "test.db")
        projects_mod.ensure_default_workspace(conn, "ws")
        yield conn
        conn.close()


def _steps(run_id, db):
    return {s.step_id: s.status for s in wf.get_run_steps(db, run_id)}


TWO_STEP = {
    "steps": [
        {"id": "a", "type": "bot_task", "dependsOn": []},
        {"id": "b", "type": "bot_task", "dependsOn": ["a"]},
    ]
}


class TestValidation:
    def test_three_step_cycle_rejected(self):
        definition = {
            "steps": [
                {"id": "A", "type": "wait", "dependsOn": ["B"]},
                {"id": "B", "type": "wait", "dependsOn": ["C"]},
                {"id": "C", "type": "wait", "dependsOn": ["A"]},
            ]
        }
        with pytest.raises(WorkflowCycleError, match="Cycle detected in workflow at step"):
            wf.load_definition(definition)

    def test_unknown_dependency(self):
        definition = {"steps": [{"id": "a", "type": "wait", "dependsOn": ["zzz"]}]}
        with pytest.raises(WorkflowValidationError, match="Unknown step 'zzz'"):
            wf.load_definition(definition)

    def test_topological_order(self):
        definition = wf.parse_workflow_definition(
            {
                "steps": [
                    {"id": "c", "type": "wait", "dependsOn": ["b"]},
                    {"id": "b", "type": "wait", "dependsOn": ["a"]},
                    {"id": "a", "type": "wait"},
                ]
            }
        )
        assert [s.id for s in wf.validate_steps(definition.steps)] == ["a", "b", "c"]

    def test_long_linear_chain(self):
        steps = [{"id": "s0", "type": "wait"}] + [
            {"id": f"s{i}", "type": "wait", "dependsOn": [f"s{i - 1}"]} for i in range(1, 1500)
        ]
        definition = wf.load_definition({"steps": list(reversed(steps))})
        ordered = wf.validate_steps(definition.steps)
        assert [s.id for s in ordered] == [f"s{i}" for i in range(1500)]

        steps[0]["dependsOn"] = ["s1499"]
        with pytest.raises(WorkflowCycleError):
            wf.load_definition({"steps": steps})

    @pytest.mark.parametrize(
        "raw, message",
        [
            ("not json", "Invalid workflow definition JSON"),
            ({"nosteps": []}, "'steps' array"),
            ({"steps": [{"id": "x", "type": "teleport"}]}, "invalid type"),
            ({"steps": [{"type": "wait"}]}, "non-empty string 'id'"),
            ({"steps": [{"id": "x", "type": "wait"}, {"id": "x", "type": "wait"}]}, "Duplicate"),
            ({"steps": [], "onFailure": "panic"}, "Invalid onFailure"),
        ],
    )
    def test_structural_errors(self, raw, message):
        with pytest.raises(WorkflowValidationError, match=message):
            wf.parse_workflow_definition(raw)

    def test_cyclic_workflow_not_stored(self, db):
        definition = {
            "steps": [
                {"id": "a", "type": "wait", "dependsOn": ["b"]},
                {"id": "b", "type": "wait", "dependsOn": ["a"]},
            ]
        }
        with pytest.raises(WorkflowCycleError):
            wf.create_workflow(db, "ws", "Loop", definition)
        assert wf.list_workflows(db, "ws") == []


class TestWorkflowCRUD:
    def test_create_and_get(self, db):
        workflow = wf.create_workflow(db, "ws", "Nightly crawl", TWO_STEP)
        assert workflow.id == "nightly-crawl"
        fetched = wf.require_workflow(db, "nightly-crawl")
        assert [s.id for s in fetched.definition.steps] == ["a", "b"]
        assert fetched.definition.on_failure == "stop"

    def test_definition_round_trips_camel_case(self, db):
        wf.create_workflow(db, "ws", "Grouped", {
            "steps": [{"id": "a", "type": "bot_task", "botGroupId": "gpu", "config": {"taskId": "t"}}],
            "onFailure": "continue",
        })
        data = wf.definition_to_dict(wf.require_workflow(db, "grouped").definition)
        assert data["onFailure"] == "continue"
        assert data["steps"][0]["botGroupId"] == "gpu"
        assert data["steps"][0]["config"] == {"taskId": "t"}

    def test_update_does_not_touch_running_run(self, db):
        wf.create_workflow(db, "ws", "Flow", TWO_STEP)
        start = wf.start_run(db, "flow")
        wf.update_workflow(db, "flow", definition={"steps": [{"id": "z", "type": "wait"}]})
        run = wf.require_run(db, start.run_id)
        assert [s.id for s in run.definition.steps] == ["a", "b"]

    def test_workspace_mismatch_is_not_found(self, db):
        projects_mod.create_workspace(db, "other", "Other")
        wf.create_workflow(db, "ws", "Flow", TWO_STEP)
        with pytest.raises(NotFoundError):
            wf.start_run(db, "flow", workspace_id="other")


class TestRunCoordinator:
    def test_end_to_end_two_steps(self, db):
        wf.create_workflow(db, "ws", "Flow", TWO_STEP)

        start = wf.start_run(db, "flow")
        assert start.steps_initialized == 2
        assert wf.require_run(db, start.run_id).status == "running"
        assert _steps(start.run_id, db) == {"a": "pending", "b": "pending"}

        advance = wf.advance_run(db, start.run_id)
        assert advance.advanced_step_ids == ["a"]
        assert advance.completed is False
        assert _steps(start.run_id, db) == {"a": "running", "b": "pending"}

        advance = wf.complete_step(db, start.run_id, "a", "ok")
        assert advance.advanced_step_ids == ["b"]
        assert _steps(start.run_id, db)["b"] == "running"

        advance = wf.complete_step(db, start.run_id, "b", "ok")
        assert advance.completed is True
        assert advance.status == "completed"
        run = wf.require_run(db, start.run_id)
        assert run.status == "completed"
        assert run.completed_at is not None

    def test_advance_is_idempotent(self, db):
        wf.create_workflow(db, "ws", "Flow", TWO_STEP)
        start, first = wf.run_workflow(db, "flow")
        assert first.advanced_step_ids == ["a"]

        second = wf.advance_run(db, start.run_id)
        assert second.advanced_step_ids == []
        assert second.status == "running"
        assert wf.require_run(db, start.run_id).status == "running"

    def test_parallel_roots_advance_together(self, db):
        wf.create_workflow(db, "ws", "Fan", {
            "steps": [
                {"id": "x", "type": "wait"},
                {"id": "y", "type": "wait"},
                {"id": "join", "type": "parallel", "dependsOn": ["x", "y"]},
            ]
        })
        start, advance = wf.run_workflow(db, "fan")
        assert advance.advanced_step_ids == ["x", "y"]
        wf.complete_step(db, start.run_id, "x")
        assert _steps(start.run_id, db)["join"] == "pending"
        advance = wf.complete_step(db, start.run_id, "y")
        assert advance.advanced_step_ids == ["join"]

    def test_completing_pending_step_rejected(self, db):
        wf.create_workflow(db, "ws", "Flow", TWO_STEP)
        start = wf.start_run(db, "flow")
        with pytest.raises(ValidationError, match="has not started"):
            wf.complete_step(db, start.run_id, "b")

    def test_unknown_step_and_run(self, db):
        wf.create_workflow(db, "ws", "Flow", TWO_STEP)
        start = wf.start_run(db, "flow")
        with pytest.raises(NotFoundError):
            wf.complete_step(db, start.run_id, "nope")
        with pytest.raises(NotFoundError):
            wf.advance_run(db, "no-such-run")

    def test_terminal_step_not_reopened(self, db):
        wf.create_workflow(db, "ws", "Flow", TWO_STEP)
        start, _ = wf.run_workflow(db, "flow")
        wf.complete_step(db, start.run_id, "a", "first")
        wf.fail_step(db, start.run_id, "a", "late failure")
        step = [s for s in wf.get_run_steps(db, start.run_id) if s.step_id == "a"][0]
        assert step.status == "completed"
        assert step.result == "first"


class TestFailurePolicies:
    def test_stop_fails_run_and_skips_pending(self, db):
        wf.create_workflow(db, "ws", "Flow", TWO_STEP)
        start, _ = wf.run_workflow(db, "flow")
        advance = wf.fail_step(db, start.run_id, "a", "boom")
        assert advance.completed is True
        assert advance.status == "failed"
        assert _steps(start.run_id, db) == {"a": "failed", "b": "skipped"}

    def test_failed_run_stays_failed(self, db):
        wf.create_workflow(db, "ws", "Flow", TWO_STEP)
        start, _ = wf.run_workflow(db, "flow")
        wf.fail_step(db, start.run_id, "a")
        again = wf.advance_run(db, start.run_id)
        assert again.advanced_step_ids == []
        assert again.status == "failed"

    def test_continue_runs_independent_branches(self, db):
        wf.create_workflow(db, "ws", "Branches", {
            "onFailure": "continue",
            "steps": [
                {"id": "left", "type": "wait"},
                {"id": "left-child", "type": "wait", "dependsOn": ["left"]},
                {"id": "grandchild", "type": "wait", "dependsOn": ["left-child"]},
                {"id": "right", "type": "wait"},
                {"id": "right-child", "type": "wait", "dependsOn": ["right"]},
            ],
        })
        start, _ = wf.run_workflow(db, "branches")
        wf.fail_step(db, start.run_id, "left", "broken")
        statuses = _steps(start.run_id, db)
        assert statuses["left-child"] == "skipped"
        assert statuses["grandchild"] == "skipped"
        assert statuses["right"] == "running"

        wf.complete_step(db, start.run_id, "right")
        advance = wf.complete_step(db, start.run_id, "right-child")
        assert advance.status == "failed"
        assert _steps(start.run_id, db)["right-child"] == "completed"

    def test_retry_reattempts_until_max(self, db):
        wf.create_workflow(db, "ws", "Flaky", {
            "onFailure": "retry",
            "steps": [{"id": "flaky", "type": "approval", "config": {"maxAttempts": 2}}],
        })
        start, _ = wf.run_workflow(db, "flaky")

        advance = wf.fail_step(db, start.run_id, "flaky", "first")
        assert advance.status == "running"
        step = wf.get_run_steps(db, start.run_id)[0]
        assert step.status == "running"
        assert step.attempts == 2

        advance = wf.fail_step(db, start.run_id, "flaky", "second")
        assert advance.status == "failed"
        assert wf.get_run_steps(db, start.run_id)[0].error == "second"


class TestBotTaskSteps:
    def test_step_dispatches_and_bot_report_advances_run(self, db):
        tasks_mod.create_task(db, "Fetch data", "ws")
        tasks_mod.create_task(db, "Train model", "ws")
        bots_mod.register_bot(db, "ws", "Worker", max_concurrent_tasks=2)
        wf.create_workflow(db, "ws", "Pipeline", {
            "steps": [
                {"id": "fetch", "type": "bot_task", "config": {"taskId": "fetch-data"}},
                {"id": "train", "type": "bot_task", "dependsOn": ["fetch"],
                 "config": {"taskId": "train-model"}},
            ]
        })
        start, _ = wf.run_workflow(db, "pipeline")
        fetch = wf.get_run_steps(db, start.run_id)[0]
        assert fetch.bot_task_id is not None
        assert tasks_mod.get_task(db, "fetch-data").status == "in_progress"

        bots_mod.report_bot_task_status(db, fetch.bot_task_id, "completed", "rows=10")
        steps = {s.step_id: s for s in wf.get_run_steps(db, start.run_id)}
        assert steps["fetch"].status == "completed"
        assert steps["fetch"].result == "rows=10"
        assert steps["train"].status == "running"

        bots_mod.report_bot_task_status(db, steps["train"].bot_task_id, "failed", "oom")
        run = wf.require_run(db, start.run_id)
        assert run.status == "failed"

    def test_no_bot_leaves_step_running_unassigned(self, db):
        tasks_mod.create_task(db, "Orphan job", "ws")
        wf.create_workflow(db, "ws", "Solo", {
            "steps": [{"id": "s", "type": "bot_task", "config": {"taskId": "orphan-job"}}]
        })
        start, advance = wf.run_workflow(db, "solo")
        assert advance.advanced_step_ids == ["s"]
        step = wf.get_run_steps(db, start.run_id)[0]
        assert step.status == "running"
        assert step.bot_task_id is None
