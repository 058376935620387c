"""Tests for the bot registry and assignment reporting."""

import tempfile
from pathlib import Path

import pytest

from fleet_orchestrator.core import bots as bots_mod
from fleet_orchestrator.core import projects as projects_mod
from fleet_orchestrator.core import tasks as tasks_mod
from fleet_orchestrator.db.engine import init_db
from fleet_orchestrator.errors import NotFoundError, ValidationError


@pytest.fixture
def db():
    with tempfile.TemporaryDirectory() as tmp:
        conn = init_db(Path(tmp) / "test.db")
        projects_mod.ensure_default_workspace(conn, "ws")
        tasks_mod.create_task(conn, "Crawl site", "ws")
        bots_mod.register_bot(conn, "ws", "Crawler", max_concurrent_tasks=2, capabilities=["http"])
        yield conn
        conn.close()


class TestRegistry:
    def test_register(self, db):
        bot = bots_mod.get_bot(db, "crawler")
        assert bot.status == "idle"
        assert bot.max_concurrent_tasks == 2
        assert bot.capabilities == ["http"]

    def test_register_requires_workspace(self, db):
        with pytest.raises(NotFoundError):
            bots_mod.register_bot(db, "missing", "Ghost")

    def test_register_rejects_zero_capacity(self, db):
        with pytest.raises(ValidationError):
            bots_mod.register_bot(db, "ws", "Lazy", max_concurrent_tasks=0)

    def test_set_status(self, db):
        assert bots_mod.set_bot_status(db, "crawler", "offline").status == "offline"
        with pytest.raises(ValidationError):
            bots_mod.set_bot_status(db, "crawler", "asleep")

    def test_list_filters_by_status(self, db):
        bots_mod.register_bot(db, "ws", "Parser", status="error")
        assert [b.id for b in bots_mod.list_bots(db, "ws", status="error")] == ["parser"]


class TestReporting:
    def test_running_then_completed(self, db):
        bt = bots_mod.assign_bot_task(db, "crawler", "crawl-site")
        running = bots_mod.report_bot_task_status(db, bt.id, "running")
        assert running.status == "running"
        assert running.started_at is not None

        done = bots_mod.report_bot_task_status(db, bt.id, "completed", "42 pages")
        assert done.status == "completed"
        assert done.output_summary == "42 pages"
        assert tasks_mod.get_task(db, "crawl-site").status == "done"

    def test_terminal_assignment_rejects_reports(self, db):
        bt = bots_mod.assign_bot_task(db, "crawler", "crawl-site")
        bots_mod.report_bot_task_status(db, bt.id, "failed", "timeout")
        with pytest.raises(ValidationError, match="already failed"):
            bots_mod.report_bot_task_status(db, bt.id, "completed")

    def test_invalid_report_status(self, db):
        bt = bots_mod.assign_bot_task(db, "crawler", "crawl-site")
        with pytest.raises(ValidationError):
            bots_mod.report_bot_task_status(db, bt.id, "cancelled")

    def test_unknown_assignment(self, db):
        with pytest.raises(NotFoundError):
            bots_mod.report_bot_task_status(db, "nope", "running")

    def test_failed_with_retries_requeues(self, db):
        bt = bots_mod.assign_bot_task(db, "crawler", "crawl-site", max_retries=2)
        bots_mod.report_bot_task_status(db, bt.id, "failed")

        pending = bots_mod.list_bot_tasks(db, task_id="crawl-site", status="pending")
        assert len(pending) == 1
        assert pending[0].retry_count == 1
        assert pending[0].retry_after is not None

    def test_failed_without_retries(self, db):
        bt = bots_mod.assign_bot_task(db, "crawler", "crawl-site")
        bots_mod.report_bot_task_status(db, bt.id, "failed")
        assert bots_mod.list_bot_tasks(db, task_id="crawl-site", status="pending") == []
        assert bots_mod.active_assignment_count(db, "crawler") == 0

    def test_cancel(self, db):
        bt = bots_mod.assign_bot_task(db, "crawler", "crawl-site")
        assert bots_mod.cancel_bot_task(db, bt.id).status == "cancelled"
        with pytest.raises(ValidationError):
            bots_mod.cancel_bot_task(db, bt.id)
