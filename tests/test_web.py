"""Tests for the HTTP API."""

import os
import tempfile
from pathlib import Path

import pytest
from starlette.testclient import TestClient

from fleet_orchestrator.core import bots as bots_mod
from fleet_orchestrator.core import projects as projects_mod
from fleet_orchestrator.core import tasks as tasks_mod
from fleet_orchestrator.db.engine import init_db
from fleet_orchestrator.web.app import create_app


@pytest.fixture
def web_env():
    """Set up a temp environment for web API testing."""
    with tempfile.TemporaryDirectory() as tmp:
        db_path = Path(tmp) / "test.db"
        env = {"FO_DB_PATH": str(db_path)}
        old_env = {}
        for k, v in env.items():
            old_env[k] = os.environ.get(k)
            os.environ[k] = v

        # Seed data
        db = init_db(db_path)
        projects_mod.ensure_default_workspace(db, "demo")
        tasks_mod.create_task(db, "Setup database", "demo", description="Create tables")
        tasks_mod.create_task(db, "Build API", "demo", depends_on=["setup-database"])
        tasks_mod.create_task(db, "Write tests", "demo", priority="high")
        bots_mod.register_bot(db, "demo", "Builder", max_concurrent_tasks=2)
        db.close()

        app = create_app()
        client = TestClient(app)
        yield client

        for k, v in old_env.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v


class TestWorkspacesAPI:
    def test_list_workspaces(self, web_env):
        resp = web_env.get("/api/workspaces")
        assert resp.status_code == 200
        assert [w["id"] for w in resp.json()] == ["demo"]


class TestTasksAPI:
    def test_list_tasks(self, web_env):
        resp = web_env.get("/api/workspaces/demo/tasks")
        assert resp.status_code == 200
        assert len(resp.json()) == 3

    def test_list_tasks_by_status(self, web_env):
        resp = web_env.get("/api/workspaces/demo/tasks?status=done")
        assert resp.json() == []

    def test_create_task(self, web_env):
        resp = web_env.post("/api/workspaces/demo/tasks", json={"title": "Deploy", "priority": "urgent"})
        assert resp.status_code == 201
        assert resp.json()["id"] == "deploy"
        assert resp.json()["priority"] == "urgent"

    def test_create_task_invalid_priority(self, web_env):
        resp = web_env.post("/api/workspaces/demo/tasks", json={"title": "Deploy", "priority": "asap"})
        assert resp.status_code == 400
        assert "Invalid priority" in resp.json()["error"]

    def test_get_task(self, web_env):
        resp = web_env.get("/api/tasks/build-api")
        assert resp.status_code == 200
        data = resp.json()
        assert data["depends_on"] == ["setup-database"]
        assert data["events"][0]["event_type"] == "created"

    def test_get_task_not_found(self, web_env):
        resp = web_env.get("/api/tasks/nonexistent")
        assert resp.status_code == 404

    def test_unknown_workspace(self, web_env):
        assert web_env.get("/api/workspaces/nope/tasks").status_code == 404

    def test_invalid_json_body(self, web_env):
        resp = web_env.post(
            "/api/workspaces/demo/tasks",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )
        assert resp.status_code == 400


class TestSchedulingAPI:
    def test_schedule_and_report(self, web_env):
        resp = web_env.post("/api/workspaces/demo/schedule")
        assert resp.status_code == 200
        assignments = resp.json()
        assert [a["task_id"] for a in assignments] == ["write-tests", "setup-database"]

        bot_task_id = assignments[1]["bot_task_id"]
        resp = web_env.post(f"/api/bot-tasks/{bot_task_id}/report", json={"status": "completed"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "completed"

        resp = web_env.get("/api/tasks/setup-database")
        assert resp.json()["status"] == "done"

    def test_report_invalid_status(self, web_env):
        resp = web_env.post("/api/bot-tasks/whatever/report", json={"status": "exploded"})
        assert resp.status_code == 400

    def test_register_bot(self, web_env):
        resp = web_env.post("/api/workspaces/demo/bots", json={"name": "Tester", "bot_group": "qa"})
        assert resp.status_code == 201
        resp = web_env.get("/api/workspaces/demo/bots")
        assert [b["id"] for b in resp.json()] == ["builder", "tester"]


class TestWorkflowsAPI:
    DEFINITION = {
        "steps": [
            {"id": "approve", "type": "approval"},
            {"id": "notify", "type": "wait", "dependsOn": ["approve"]},
        ]
    }

    def test_run_end_to_end(self, web_env):
        resp = web_env.post("/api/workspaces/demo/workflows", json={"name": "Release", "definition": self.DEFINITION})
        assert resp.status_code == 201
        assert resp.json()["definition"]["steps"][1]["dependsOn"] == ["approve"]

        resp = web_env.post("/api/workflows/release/run")
        assert resp.status_code == 201
        data = resp.json()
        assert data["steps_initialized"] == 2
        assert data["advanced_step_ids"] == ["approve"]
        assert data["completed"] is False
        run_id = data["run_id"]

        resp = web_env.post(f"/api/runs/{run_id}/advance")
        assert resp.json()["advanced_step_ids"] == []

        resp = web_env.post(f"/api/runs/{run_id}/steps/approve/complete", json={"result": "lgtm"})
        assert resp.json()["advanced_step_ids"] == ["notify"]

        resp = web_env.post(f"/api/runs/{run_id}/steps/notify/fail", json={"error": "smtp down"})
        assert resp.json() == {"advanced_step_ids": [], "completed": True, "status": "failed"}

        resp = web_env.get(f"/api/runs/{run_id}")
        steps = {s["step_id"]: s for s in resp.json()["steps"]}
        assert steps["approve"]["result"] == "lgtm"
        assert steps["notify"]["error"] == "smtp down"

    def test_cyclic_definition_rejected(self, web_env):
        definition = {
            "steps": [
                {"id": "a", "type": "wait", "dependsOn": ["c"]},
                {"id": "b", "type": "wait", "dependsOn": ["a"]},
                {"id": "c", "type": "wait", "dependsOn": ["b"]},
            ]
        }
        resp = web_env.post("/api/workspaces/demo/workflows", json={"name": "Loop", "definition": definition})
        assert resp.status_code == 400
        assert "Cycle detected" in resp.json()["error"]

    def test_unknown_workflow_and_run(self, web_env):
        assert web_env.post("/api/workflows/missing/run").status_code == 404
        assert web_env.get("/api/runs/missing").status_code == 404

    def test_pending_step_cannot_complete(self, web_env):
        web_env.post("/api/workspaces/demo/workflows", json={"name": "Release", "definition": self.DEFINITION})
        run_id = web_env.post("/api/workflows/release/runs").json()["run_id"]
        resp = web_env.post(f"/api/runs/{run_id}/steps/notify/complete")
        assert resp.status_code == 400


class TestAutomationAPI:
    def test_evaluate_rules_without_rules(self, web_env):
        resp = web_env.post(
            "/api/workspaces/demo/rules/evaluate",
            json={"trigger": "task.created", "payload": {"x": 1}},
        )
        assert resp.status_code == 200
        assert resp.json() == {"matched": 0, "actions_executed": 0, "results": []}

    def test_check_escalations_and_alerts(self, web_env):
        resp = web_env.post("/api/workspaces/demo/escalations/check")
        assert resp.status_code == 200
        assert resp.json()["rules_checked"] == 0
        assert web_env.get("/api/workspaces/demo/alerts").json() == []
